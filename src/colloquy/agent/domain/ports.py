"""
Port interfaces (abstract base classes) for the agent module.

These define the contracts that adapters must implement.
Following the Ports & Adapters (Hexagonal) architecture pattern.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, AsyncIterator, Optional
from uuid import UUID

if TYPE_CHECKING:
    from .entities import (
        ChatEvent,
        Conversation,
        MemoryRecord,
        Message,
        Parameters,
    )


# ============================================
# Chat API Client Interface
# ============================================


class IChatApiClient(ABC):
    """Interface for chat providers (Claude, GPT, Ollama, etc.).

    Implementations handle the specifics of each provider's wire format
    while yielding a normalized ChatEvent stream to the orchestrator.
    """

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the default model identifier."""
        pass

    @abstractmethod
    def send(
        self,
        context: list[Message],
        params: Parameters,
    ) -> AsyncIterator[ChatEvent]:
        """Send an assembled context and stream the response.

        Args:
            context: Ordered conversation items to send
            params: Model, sampling and tool settings for this turn

        Yields:
            ChatEvent objects: TEXT_DELTA, TOOL_CALL_START, TOOL_CALL_END,
            then DONE or ERROR
        """
        pass


# ============================================
# Embedding Provider Interface
# ============================================


class IEmbeddingProvider(ABC):
    """Interface for embedding providers.

    Failures raise EmbeddingError, never a raw SDK exception.
    """

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the embedding model name."""
        pass

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimension."""
        pass

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Generate an embedding for the given text."""
        pass

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        return [await self.embed(text) for text in texts]


# ============================================
# Conversation Store Interface
# ============================================


class IConversationStore(ABC):
    """Interface for conversation persistence.

    Eventual durability is enough; the core does not need strict consistency.
    """

    @abstractmethod
    async def create(self, conversation: Conversation) -> Conversation:
        """Create a new conversation."""
        pass

    @abstractmethod
    async def load(self, conversation_id: UUID) -> Optional[Conversation]:
        """Load a conversation with its items, or None if missing."""
        pass

    @abstractmethod
    async def save(self, conversation: Conversation) -> None:
        """Persist conversation metadata (title, summary, timestamps)."""
        pass

    @abstractmethod
    async def save_items(self, conversation_id: UUID, items: list[Message]) -> None:
        """Append items to a stored conversation, in order."""
        pass

    @abstractmethod
    async def delete(self, conversation_id: UUID) -> bool:
        """Delete a conversation and all its items."""
        pass

    @abstractmethod
    async def list(self, agent_id: str, limit: int = 20, offset: int = 0) -> list[Conversation]:
        """List conversations owned by an agent (without items)."""
        pass


# ============================================
# Vector Index Interface
# ============================================


class IVectorIndex(ABC):
    """Interface for long-term memory vector storage and similarity search."""

    @abstractmethod
    async def add(self, record: MemoryRecord) -> None:
        """Index a record. Re-adding the same message is a no-op."""
        pass

    @abstractmethod
    async def query(
        self,
        embedding: list[float],
        top_k: int,
        min_similarity: float = 0.0,
    ) -> list[tuple[MemoryRecord, float]]:
        """Return up to top_k (record, similarity) pairs with similarity >= min_similarity.

        Raises:
            VectorIndexUnavailableError: If the index cannot serve queries
        """
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: UUID) -> int:
        """Remove every record of a conversation. Returns the number removed."""
        pass
