"""
Provider selection from configuration.

One ChatApiClient implementation per provider; the configured name picks
which one is built. No runtime type inspection happens downstream.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from ..domain.ports import IChatApiClient, IEmbeddingProvider
from .anthropic import AnthropicChatClient
from .base import ProviderConfig
from .ollama import OllamaChatClient, OllamaEmbeddingProvider
from .openai import OpenAIChatClient, OpenAIEmbeddingProvider

if TYPE_CHECKING:
    from ..config import AgentSettings

logger = logging.getLogger(__name__)

CHAT_CLIENTS = {
    "anthropic": AnthropicChatClient,
    "openai": OpenAIChatClient,
    "ollama": OllamaChatClient,
}

EMBEDDING_PROVIDERS = {
    "openai": OpenAIEmbeddingProvider,
    "ollama": OllamaEmbeddingProvider,
}


def create_chat_client(settings: AgentSettings) -> IChatApiClient:
    """Build the chat client named by settings.provider.

    Raises:
        ValueError: Unknown provider, or a hosted provider without an API key
    """
    client_cls = CHAT_CLIENTS.get(settings.provider)
    if client_cls is None:
        raise ValueError(
            f"Unknown chat provider {settings.provider!r} "
            f"(expected one of {sorted(CHAT_CLIENTS)})"
        )
    if client_cls is not OllamaChatClient and not settings.api_key:
        raise ValueError(f"No API key configured for provider {settings.provider!r}")

    config = ProviderConfig(
        api_key=settings.api_key,
        model=settings.model or client_cls.DEFAULT_MODEL,
        base_url=settings.base_url,
        timeout=settings.request_timeout,
        max_tokens=settings.max_tokens or 4096,
    )
    logger.info(f"Using {settings.provider} chat provider with model: {config.model}")
    return client_cls(config)


def create_embedding_provider(settings: AgentSettings) -> Optional[IEmbeddingProvider]:
    """Build the embedding provider, or None when long-term memory is off."""
    name = settings.embedding_provider
    if name in ("", "none"):
        logger.info("No embedding provider configured - long-term memory disabled")
        return None

    provider_cls = EMBEDDING_PROVIDERS.get(name)
    if provider_cls is None:
        raise ValueError(
            f"Unknown embedding provider {name!r} "
            f"(expected one of {sorted(EMBEDDING_PROVIDERS)} or 'none')"
        )

    api_key = settings.embedding_api_key or (settings.api_key if name == settings.provider else None)
    if provider_cls is OpenAIEmbeddingProvider and not api_key:
        raise ValueError("No API key configured for the openai embedding provider")

    config = ProviderConfig(
        api_key=api_key,
        model=settings.model or "",
        embedding_model=settings.embedding_model,
        base_url=settings.base_url if name == settings.provider else None,
        timeout=settings.request_timeout,
    )
    provider = provider_cls(config)
    logger.info(f"Embedding provider configured: {provider.model_name}")
    return provider
