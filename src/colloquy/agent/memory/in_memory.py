"""
In-process conversation store and vector index.

Used by tests and single-process deployments. Both keep everything in
dictionaries and copy on the way in and out, so callers never share
mutable state with the store.
"""

from __future__ import annotations

import copy
import logging
import math
from typing import Optional, Sequence
from uuid import UUID

from ..domain.entities import Conversation, MemoryRecord, Message
from ..domain.errors import StorageError, VectorIndexUnavailableError
from ..domain.ports import IConversationStore, IVectorIndex

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors (0.0 if either is all zeros)."""
    if len(a) != len(b):
        raise ValueError(f"Dimension mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryConversationStore(IConversationStore):
    """Dictionary-backed conversation store."""

    def __init__(self):
        self._conversations: dict[UUID, Conversation] = {}

    async def create(self, conversation: Conversation) -> Conversation:
        if conversation.id in self._conversations:
            raise StorageError(f"Conversation {conversation.id} already exists")
        self._conversations[conversation.id] = copy.deepcopy(conversation)
        logger.debug(f"Created conversation {conversation.id}")
        return conversation

    async def load(self, conversation_id: UUID) -> Optional[Conversation]:
        stored = self._conversations.get(conversation_id)
        return copy.deepcopy(stored) if stored is not None else None

    async def save(self, conversation: Conversation) -> None:
        stored = self._conversations.get(conversation.id)
        if stored is None:
            raise StorageError(f"Conversation {conversation.id} not found")
        stored.title = conversation.title
        stored.summary = conversation.summary
        stored.metadata = dict(conversation.metadata)
        stored.updated_at = conversation.updated_at

    async def save_items(self, conversation_id: UUID, items: list[Message]) -> None:
        stored = self._conversations.get(conversation_id)
        if stored is None:
            raise StorageError(f"Conversation {conversation_id} not found")
        for item in items:
            stored.add_message(item)

    async def delete(self, conversation_id: UUID) -> bool:
        return self._conversations.pop(conversation_id, None) is not None

    async def list(self, agent_id: str, limit: int = 20, offset: int = 0) -> list[Conversation]:
        owned = sorted(
            (c for c in self._conversations.values() if c.agent_id == agent_id),
            key=lambda c: c.updated_at,
            reverse=True,
        )
        return [
            Conversation(
                agent_id=c.agent_id,
                id=c.id,
                title=c.title,
                summary=c.summary,
                metadata=dict(c.metadata),
                created_at=c.created_at,
                updated_at=c.updated_at,
            )
            for c in owned[offset:offset + limit]
        ]


class InMemoryVectorIndex(IVectorIndex):
    """Brute-force cosine similarity index.

    Set `available = False` to simulate an index outage; queries then
    raise VectorIndexUnavailableError.
    """

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = dimension
        self.available = True
        self._records: dict[UUID, MemoryRecord] = {}  # keyed by message id

    def __len__(self) -> int:
        return len(self._records)

    async def add(self, record: MemoryRecord) -> None:
        if self.dimension is not None and len(record.embedding) != self.dimension:
            raise ValueError(
                f"Embedding dimension {len(record.embedding)} does not match index ({self.dimension})"
            )
        self._records.setdefault(record.message_id, record)

    async def query(
        self,
        embedding: list[float],
        top_k: int,
        min_similarity: float = 0.0,
    ) -> list[tuple[MemoryRecord, float]]:
        if not self.available:
            raise VectorIndexUnavailableError("In-memory vector index is unavailable")
        if top_k <= 0:
            return []

        scored = []
        for record in self._records.values():
            if len(record.embedding) != len(embedding):
                continue
            similarity = cosine_similarity(embedding, record.embedding)
            if similarity >= min_similarity:
                scored.append((record, similarity))

        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:top_k]

    async def delete_conversation(self, conversation_id: UUID) -> int:
        doomed = [k for k, r in self._records.items() if r.conversation_id == conversation_id]
        for key in doomed:
            del self._records[key]
        return len(doomed)
