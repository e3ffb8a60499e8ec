"""
Base Chat Client Implementation.

Provides common functionality for all chat providers: configuration,
per-request event sequencing and system prompt assembly.
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional

from ..domain.entities import ChatEvent, ErrorType, Message, MessageRole, Parameters
from ..domain.ports import IChatApiClient

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """Configuration for chat and embedding providers.

    Attributes:
        api_key: API key for the provider
        model: Model name to use
        embedding_model: Model for embeddings (if different)
        base_url: Optional custom base URL
        timeout: Request timeout in seconds
        max_retries: SDK-level retry attempts
        max_tokens: Default max tokens when Parameters leaves it unset
    """

    api_key: Optional[str]
    model: str
    embedding_model: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = 60.0
    max_retries: int = 3
    max_tokens: int = 4096
    extra: dict[str, Any] = field(default_factory=dict)


class EventSequence:
    """Creates ChatEvents with increasing sequence numbers for one request."""

    def __init__(self):
        self._next: Callable[[], int] = itertools.count(1).__next__

    def text_delta(self, text: str) -> ChatEvent:
        return ChatEvent.text_delta(text, sequence=self._next())

    def tool_call_start(self, tool_call_id: str, name: str) -> ChatEvent:
        return ChatEvent.tool_call_start(tool_call_id, name, sequence=self._next())

    def tool_call_end(self, tool_call_id: str, arguments: dict, name: Optional[str] = None) -> ChatEvent:
        return ChatEvent.tool_call_end(tool_call_id, arguments, sequence=self._next(), name=name)

    def error(self, message: str, error_type: ErrorType) -> ChatEvent:
        return ChatEvent.error_event(message, error_type, sequence=self._next())

    def done(self) -> ChatEvent:
        return ChatEvent.done(sequence=self._next())


class BaseChatClient(IChatApiClient, ABC):
    """Base class for chat client implementations.

    Subclasses implement send() as an async generator that never raises
    for provider failures: errors are yielded as ERROR events carrying
    an ErrorType, which the Agent maps to its error taxonomy.
    """

    def __init__(self, config: ProviderConfig):
        """Initialize the client.

        Args:
            config: Provider configuration
        """
        self.config = config

    @property
    def model_name(self) -> str:
        """Return the default model name."""
        return self.config.model

    def _model_for(self, params: Parameters) -> str:
        return params.model or self.config.model

    def _system_text(self, context: list[Message], params: Parameters) -> Optional[str]:
        """Merge the configured system prompt with SYSTEM items (e.g. the summary)."""
        parts = []
        if params.system_prompt:
            parts.append(params.system_prompt)
        parts.extend(m.content for m in context if m.role == MessageRole.SYSTEM and m.content)
        return "\n\n".join(parts) or None

    @abstractmethod
    def send(self, context: list[Message], params: Parameters) -> AsyncIterator[ChatEvent]:
        """Stream a response. Must be implemented by subclasses."""
        pass

    async def close(self) -> None:
        """Release HTTP resources."""
        pass

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
