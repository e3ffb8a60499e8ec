"""Chat and embedding provider implementations."""

from .base import BaseChatClient, EventSequence, ProviderConfig
from .anthropic import AnthropicChatClient
from .openai import OpenAIChatClient, OpenAIEmbeddingProvider
from .ollama import OllamaChatClient, OllamaEmbeddingProvider
from .factory import create_chat_client, create_embedding_provider

__all__ = [
    "BaseChatClient",
    "EventSequence",
    "ProviderConfig",
    "AnthropicChatClient",
    "OpenAIChatClient",
    "OpenAIEmbeddingProvider",
    "OllamaChatClient",
    "OllamaEmbeddingProvider",
    "create_chat_client",
    "create_embedding_provider",
]
