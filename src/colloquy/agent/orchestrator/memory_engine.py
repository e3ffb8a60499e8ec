"""
Memory Engine for Agent Orchestrator.

Assembles the context sent to the chat provider from:
- The conversation summary (global orientation)
- A bounded recency window (local coherence)
- Re-ranked long-term memory from the vector index (distant facts)
- The new user input, always last

Also indexes appended items into long-term memory in the background.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import uuid
from datetime import datetime
from typing import Callable, Iterable, Optional, Union
from uuid import UUID

from ..domain.entities import (
    Conversation,
    MemoryRecord,
    MemorySettings,
    Message,
    MessageRole,
    RetrievalResult,
    utcnow,
)
from ..domain.errors import EmbeddingError, MemoryRetrievalError
from ..domain.events import MemoryIndexed
from ..domain.ports import IEmbeddingProvider, IVectorIndex
from ..memory.indexing_worker import IndexingWorker
from .event_router import EventRouter

logger = logging.getLogger(__name__)

# Stable namespace for ids of derived (never persisted) context items
_CONTEXT_NAMESPACE = uuid.UUID("6f1c2b1e-4f7a-4c59-9a53-2f3c1f0d6a11")

_INDEXABLE_ROLES = (MessageRole.USER, MessageRole.ASSISTANT)


def estimate_tokens(text: str) -> int:
    """Rough token estimate (4 characters per token)."""
    return (len(text) + 3) // 4


def item_key(message: Message) -> str:
    """Structural hash of (role, content length, creation timestamp)."""
    raw = f"{message.role.value}|{len(message.content)}|{message.created_at.isoformat()}"
    return hashlib.sha256(raw.encode()).hexdigest()


class MemoryEngine:
    """Hybrid short-term / long-term memory for one agent.

    Usage:
        engine = MemoryEngine(
            embedding_provider=embedder,
            vector_index=index,
            router=router,
        )

        context = await engine.assemble_context(
            conversation,
            Message.user("Where did we leave the deployment?"),
            settings=MemorySettings(max_context_messages=10),
        )

        # After the turn is committed
        engine.index_items(new_items)

    Architecture:
        - Retrieval failures of any kind degrade to the recency window;
          they are logged and never fail the turn
        - Assembly builds a new list; the conversation is never mutated
        - Indexing runs through an IndexingWorker when one is supplied,
          otherwise as tracked background tasks
    """

    def __init__(
        self,
        embedding_provider: Optional[IEmbeddingProvider] = None,
        vector_index: Optional[IVectorIndex] = None,
        router: Optional[EventRouter] = None,
        indexing_worker: Optional[IndexingWorker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the memory engine.

        Args:
            embedding_provider: Provider used for query and item embeddings
            vector_index: Long-term memory index
            router: Router for MemoryIndexed events
            indexing_worker: Optional worker with retries and dead-lettering
            clock: Returns "now" for recency scoring (defaults to UTC now)
        """
        self.embedding_provider = embedding_provider
        self.vector_index = vector_index
        self.router = router
        self.indexing_worker = indexing_worker
        self.clock = clock or utcnow
        self._tasks: set[asyncio.Task] = set()
        # Deleted conversations; their in-flight items are never indexed
        self._forgotten: set[UUID] = set()

    @property
    def long_term_available(self) -> bool:
        return self.embedding_provider is not None and self.vector_index is not None

    # ============================================
    # Context assembly
    # ============================================

    async def assemble_context(
        self,
        conversation: Conversation,
        new_user_input: Union[str, Message],
        settings: Optional[MemorySettings] = None,
    ) -> list[Message]:
        """Build the ordered context for one provider call.

        Order: [summary] + [recency window] + [retrieved, rank order] + [new input]

        Args:
            conversation: Conversation as of the start of the turn
            new_user_input: The input being answered (not yet appended)
            settings: Memory settings for this turn

        Returns:
            A new list of items; the conversation is left untouched
        """
        settings = settings or MemorySettings()
        new_message = self._as_message(conversation, new_user_input)

        window = self.recency_window(conversation, settings)
        retrieved: list[RetrievalResult] = []

        if settings.retrieval_enabled and self.long_term_available and new_message.content.strip():
            candidates = await self.retrieve(new_message.content, conversation.id, settings)
            retrieved = self.deduplicate(candidates, window)

        context: list[Message] = []
        if conversation.summary:
            context.append(self._summary_message(conversation))
        context.extend(window)
        context.extend(
            r.record.to_message(similarity=r.similarity, score=r.score) for r in retrieved
        )
        context.append(new_message)

        logger.debug(
            f"Assembled context for {conversation.id}: "
            f"window={len(window)}, retrieved={len(retrieved)}, "
            f"summary={'yes' if conversation.summary else 'no'}"
        )
        return context

    def recency_window(self, conversation: Conversation, settings: MemorySettings) -> list[Message]:
        """Last max_context_messages items, trimmed to the token budget."""
        if settings.max_context_messages <= 0:
            return []
        window = list(conversation.messages[-settings.max_context_messages:])

        budget = settings.context_token_budget
        if budget is not None:
            total = sum(estimate_tokens(m.content) for m in window)
            while window and total > budget:
                dropped = window.pop(0)
                total -= estimate_tokens(dropped.content)
            if total > budget:
                logger.debug("Recency window trimmed to empty by token budget")

        # A tool result without its requesting assistant item cannot be sent
        while window and window[0].role == MessageRole.TOOL:
            window.pop(0)

        return window

    async def retrieve(
        self,
        query: str,
        conversation_id: UUID,
        settings: MemorySettings,
    ) -> list[RetrievalResult]:
        """Query long-term memory and re-rank the candidates.

        Returns an empty list (recency-only) when embedding or the index fails.
        """
        try:
            try:
                embedding = await self.embedding_provider.embed(query)
            except MemoryRetrievalError:
                raise
            except Exception as e:
                raise EmbeddingError(f"Embedding failed: {e}", original_error=e) from e

            matches = await self.vector_index.query(
                embedding,
                top_k=settings.retrieval_top_k,
                min_similarity=settings.retrieval_min_similarity,
            )
        except MemoryRetrievalError as e:
            logger.warning(f"Long-term retrieval unavailable, using recency window only: {e}")
            return []
        except Exception as e:
            logger.warning(
                f"Long-term retrieval failed, using recency window only: {e}",
                exc_info=True,
            )
            return []

        candidates = [
            (record, similarity)
            for record, similarity in matches
            if similarity >= settings.retrieval_min_similarity
        ]
        return self.rerank(candidates, conversation_id, settings)

    def rerank(
        self,
        candidates: Iterable[tuple[MemoryRecord, float]],
        conversation_id: UUID,
        settings: MemorySettings,
    ) -> list[RetrievalResult]:
        """Score = w_sim*similarity + w_rec*recency + w_thread*same_thread.

        Ties are broken by more-recent-first.
        """
        now = self.clock()
        results = []
        for record, similarity in candidates:
            recency = self.recency_score(record.created_at, now, settings.recency_half_life_seconds)
            same_thread = record.conversation_id == conversation_id
            score = (
                settings.similarity_weight * similarity
                + settings.recency_weight * recency
                + settings.thread_weight * (1.0 if same_thread else 0.0)
            )
            results.append(
                RetrievalResult(
                    record=record,
                    similarity=similarity,
                    recency=recency,
                    same_thread=same_thread,
                    score=score,
                )
            )

        results.sort(key=lambda r: (r.score, r.record.created_at), reverse=True)
        return results

    @staticmethod
    def recency_score(created_at: datetime, now: datetime, half_life_seconds: float) -> float:
        """Exponential decay of age, 1.0 for brand new items, 0.5 at one half-life."""
        age = max(0.0, (now - created_at).total_seconds())
        return math.exp(-math.log(2) * age / half_life_seconds)

    @staticmethod
    def deduplicate(
        results: list[RetrievalResult],
        window: list[Message],
    ) -> list[RetrievalResult]:
        """Drop retrieved items already in the window or retrieved twice."""
        seen = {item_key(m) for m in window}
        unique = []
        for result in results:
            key = item_key(result.record.to_message())
            if key in seen:
                continue
            seen.add(key)
            unique.append(result)
        return unique

    def _as_message(self, conversation: Conversation, new_user_input: Union[str, Message]) -> Message:
        if isinstance(new_user_input, Message):
            return new_user_input
        return Message.user(
            new_user_input,
            id=uuid.uuid5(
                _CONTEXT_NAMESPACE,
                f"{conversation.id}:input:{conversation.item_count}:{new_user_input}",
            ),
            created_at=self.clock(),
        )

    @staticmethod
    def _summary_message(conversation: Conversation) -> Message:
        return Message.system(
            f"Summary of the conversation so far:\n{conversation.summary}",
            id=uuid.uuid5(_CONTEXT_NAMESPACE, f"{conversation.id}:summary:{conversation.summary}"),
            conversation_id=conversation.id,
            created_at=conversation.created_at,
            metadata={"summary": True},
        )

    # ============================================
    # Indexing
    # ============================================

    def index_items(self, items: Iterable[Message], turn_id: Optional[str] = None) -> int:
        """Schedule appended items for embedding and indexing.

        Only user and assistant items with content are indexed. Returns
        immediately; failures are logged and never reach the caller.

        Returns:
            Number of items scheduled
        """
        if not self.long_term_available:
            return 0

        indexable = [
            m
            for m in items
            if m.role in _INDEXABLE_ROLES and m.content.strip() and m.conversation_id is not None
            and m.conversation_id not in self._forgotten
        ]
        if not indexable:
            return 0

        if self.indexing_worker is not None:
            for message in indexable:
                self.indexing_worker.submit(message)
        else:
            task = asyncio.create_task(self._index(indexable, turn_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        logger.debug(f"Scheduled {len(indexable)} item(s) for indexing")
        return len(indexable)

    async def _index(self, items: list[Message], turn_id: Optional[str] = None) -> tuple[int, int]:
        indexed = failed = 0
        try:
            embeddings = await self.embedding_provider.embed_batch([m.content for m in items])
        except Exception as e:
            logger.warning(f"Indexing failed, {len(items)} item(s) not embedded: {e}")
            embeddings = None
            failed = len(items)

        if embeddings is not None:
            for message, embedding in zip(items, embeddings):
                if message.conversation_id in self._forgotten:
                    continue
                try:
                    record = MemoryRecord.from_message(
                        message,
                        embedding,
                        embedding_model=self.embedding_provider.model_name,
                    )
                    await self.vector_index.add(record)
                    indexed += 1
                except Exception as e:
                    failed += 1
                    logger.warning(f"Failed to index message {message.id}: {e}")

        if self.router is not None and items[0].conversation_id not in self._forgotten:
            self.router.publish(
                MemoryIndexed(
                    conversation_id=items[0].conversation_id,
                    turn_id=turn_id,
                    indexed=indexed,
                    failed=failed,
                )
            )
        logger.debug(f"Indexed {indexed} item(s), {failed} failed")
        return indexed, failed

    async def drain(self) -> None:
        """Wait for scheduled indexing to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.indexing_worker is not None:
            await self.indexing_worker.drain()

    async def forget_conversation(self, conversation_id: UUID) -> int:
        """Remove every memory record of a conversation.

        Indexing already in flight for the conversation is allowed to
        settle first and skips its writes, so nothing reappears after
        the delete.
        """
        self._forgotten.add(conversation_id)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.indexing_worker is not None:
            await self.indexing_worker.forget_conversation(conversation_id)
        if self.vector_index is None:
            return 0
        removed = await self.vector_index.delete_conversation(conversation_id)
        logger.info(f"Removed {removed} memory record(s) of conversation {conversation_id}")
        return removed
