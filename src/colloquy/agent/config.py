"""
Agent configuration.

Settings are read from COLLOQUY_* environment variables, with a .env file
loaded first when present.

Environment Variables:
    COLLOQUY_PROVIDER: Chat provider (anthropic, openai, ollama)
    COLLOQUY_MODEL: Model name (provider default when unset)
    COLLOQUY_API_KEY: API key (falls back to ANTHROPIC_API_KEY / OPENAI_API_KEY)
    COLLOQUY_BASE_URL: Custom provider endpoint
    COLLOQUY_EMBEDDING_PROVIDER: Embedding provider (openai, ollama, none)
    COLLOQUY_EMBEDDING_MODEL: Embedding model name
    COLLOQUY_TOOL_POLICY: Policy rules, e.g. "get_*=auto,delete_*=deny"
    COLLOQUY_DATABASE_URL: PostgreSQL DSN (in-memory stores when unset)
    COLLOQUY_LOG_LEVEL: Root log level (default INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .domain.entities import ApprovalPolicy, MemorySettings, Parameters, ToolDefinition
from .tools.policy import ApprovalPolicyTable, parse_policy

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_PROVIDER_KEY_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


@dataclass
class AgentSettings:
    """Configuration for an agent instance.

    Attributes:
        agent_id: Identifier owning this agent's conversations
        provider: Chat provider name (anthropic, openai, ollama)
        model: Model name; empty means the provider default
        api_key: Provider API key
        base_url: Custom provider endpoint
        embedding_provider: Embedding provider name (openai, ollama, none)
        embedding_model: Embedding model name
        embedding_api_key: Key for the embedding provider (defaults to api_key)
        temperature: Sampling temperature
        max_tokens: Maximum tokens per response
        system_prompt: System prompt placed before the assembled context
        request_timeout: Provider request timeout in seconds
        max_context_messages: Size of the recency window
        use_vector_store: Whether long-term retrieval is enabled
        retrieval_top_k: Number of long-term records to retrieve
        retrieval_min_similarity: Minimum cosine similarity for retrieval
        similarity_weight: Re-ranking weight of similarity
        recency_weight: Re-ranking weight of recency
        thread_weight: Re-ranking weight of same-thread affinity
        context_token_budget: Token budget for the recency window
        max_tool_rounds: Tool rounds allowed per turn
        approval_timeout_seconds: Wait bound for approval decisions
        tool_policy: Policy rules string
        default_tool_policy: Policy for tools no rule matches
        summarize_after_items: Item count that triggers summarization (0 = off)
        database_url: PostgreSQL DSN; in-memory stores when None
        log_level: Root log level
    """

    agent_id: str = "default"
    provider: str = "anthropic"
    model: str = ""
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    embedding_provider: str = "none"
    embedding_model: Optional[str] = None
    embedding_api_key: Optional[str] = None
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = "You are a helpful assistant."
    request_timeout: float = 60.0
    max_context_messages: int = 20
    use_vector_store: bool = True
    retrieval_top_k: int = 5
    retrieval_min_similarity: float = 0.7
    similarity_weight: float = 0.75
    recency_weight: float = 0.20
    thread_weight: float = 0.05
    context_token_budget: Optional[int] = None
    max_tool_rounds: int = 8
    approval_timeout_seconds: float = 60.0
    tool_policy: str = ""
    default_tool_policy: str = "auto"
    summarize_after_items: int = 40
    database_url: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> AgentSettings:
        """Build settings from the environment (and a .env file)."""
        load_dotenv(dotenv_path)

        provider = os.getenv("COLLOQUY_PROVIDER", cls.provider).strip().lower()
        api_key = os.getenv("COLLOQUY_API_KEY")
        if not api_key and provider in _PROVIDER_KEY_VARS:
            api_key = os.getenv(_PROVIDER_KEY_VARS[provider])

        embedding_provider = os.getenv("COLLOQUY_EMBEDDING_PROVIDER", cls.embedding_provider).strip().lower()
        embedding_api_key = os.getenv("COLLOQUY_EMBEDDING_API_KEY")
        if not embedding_api_key and embedding_provider in _PROVIDER_KEY_VARS:
            embedding_api_key = os.getenv(_PROVIDER_KEY_VARS[embedding_provider])

        settings = cls(
            agent_id=os.getenv("COLLOQUY_AGENT_ID", cls.agent_id),
            provider=provider,
            model=os.getenv("COLLOQUY_MODEL", cls.model),
            api_key=api_key,
            base_url=os.getenv("COLLOQUY_BASE_URL") or None,
            embedding_provider=embedding_provider,
            embedding_model=os.getenv("COLLOQUY_EMBEDDING_MODEL") or None,
            embedding_api_key=embedding_api_key,
            temperature=_env_float("COLLOQUY_TEMPERATURE", cls.temperature),
            max_tokens=_env_int("COLLOQUY_MAX_TOKENS", None),
            system_prompt=os.getenv("COLLOQUY_SYSTEM_PROMPT", cls.system_prompt),
            request_timeout=_env_float("COLLOQUY_REQUEST_TIMEOUT", cls.request_timeout),
            max_context_messages=_env_int("COLLOQUY_MAX_CONTEXT_MESSAGES", cls.max_context_messages),
            use_vector_store=_env_bool("COLLOQUY_USE_VECTOR_STORE", cls.use_vector_store),
            retrieval_top_k=_env_int("COLLOQUY_RETRIEVAL_TOP_K", cls.retrieval_top_k),
            retrieval_min_similarity=_env_float(
                "COLLOQUY_RETRIEVAL_MIN_SIMILARITY", cls.retrieval_min_similarity
            ),
            similarity_weight=_env_float("COLLOQUY_SIMILARITY_WEIGHT", cls.similarity_weight),
            recency_weight=_env_float("COLLOQUY_RECENCY_WEIGHT", cls.recency_weight),
            thread_weight=_env_float("COLLOQUY_THREAD_WEIGHT", cls.thread_weight),
            context_token_budget=_env_int("COLLOQUY_CONTEXT_TOKEN_BUDGET", None),
            max_tool_rounds=_env_int("COLLOQUY_MAX_TOOL_ROUNDS", cls.max_tool_rounds),
            approval_timeout_seconds=_env_float(
                "COLLOQUY_APPROVAL_TIMEOUT", cls.approval_timeout_seconds
            ),
            tool_policy=os.getenv("COLLOQUY_TOOL_POLICY", cls.tool_policy),
            default_tool_policy=os.getenv("COLLOQUY_DEFAULT_TOOL_POLICY", cls.default_tool_policy),
            summarize_after_items=_env_int(
                "COLLOQUY_SUMMARIZE_AFTER_ITEMS", cls.summarize_after_items
            ),
            database_url=os.getenv("COLLOQUY_DATABASE_URL") or os.getenv("DATABASE_URL") or None,
            log_level=os.getenv("COLLOQUY_LOG_LEVEL", cls.log_level),
        )
        logger.debug(
            f"Loaded settings: provider={settings.provider}, "
            f"embedding_provider={settings.embedding_provider}, "
            f"database={'yes' if settings.database_url else 'no'}"
        )
        return settings

    def memory_settings(self) -> MemorySettings:
        return MemorySettings(
            max_context_messages=self.max_context_messages,
            use_vector_store=self.use_vector_store,
            retrieval_top_k=self.retrieval_top_k,
            retrieval_min_similarity=self.retrieval_min_similarity,
            similarity_weight=self.similarity_weight,
            recency_weight=self.recency_weight,
            thread_weight=self.thread_weight,
            context_token_budget=self.context_token_budget,
        )

    def parameters(self, tools: tuple[ToolDefinition, ...] = ()) -> Parameters:
        """Immutable per-turn snapshot of these settings."""
        return Parameters(
            model=self.model,
            system_prompt=self.system_prompt,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            tools=tuple(tools),
            memory=self.memory_settings(),
        )

    def policy_table(self) -> ApprovalPolicyTable:
        default: ApprovalPolicy = parse_policy(self.default_tool_policy)
        return ApprovalPolicyTable.from_string(self.tool_policy, default=default)
