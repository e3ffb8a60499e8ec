"""
Background Indexing Worker.

Embeds appended conversation items and writes them into the vector
index off the turn's critical path. Failed jobs are retried with
exponential backoff and moved to a dead letter list once retries are
exhausted.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from ..domain.entities import MemoryRecord, Message, utcnow
from ..domain.events import MemoryIndexed
from ..domain.ports import IEmbeddingProvider, IVectorIndex

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Indexing job status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEAD = "dead"  # Dead letter queue - max retries exceeded
    DISCARDED = "discarded"  # Conversation deleted before the job finished


@dataclass(eq=False)
class IndexingJob:
    """One conversation item waiting to be embedded and indexed."""

    message: Message
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    not_before: float = 0.0  # loop time before which the job is not retried
    created_at: datetime = field(default_factory=utcnow)

    @property
    def conversation_id(self) -> Optional[UUID]:
        return self.message.conversation_id


class IndexingWorker:
    """Background worker for memory indexing.

    Features:
    - Batch embedding for efficiency
    - Retry with exponential backoff
    - Dead letter list for failed jobs
    - Graceful shutdown support

    Usage:
        worker = IndexingWorker(embedding_provider, vector_index, router=router)
        task = asyncio.create_task(worker.start())  # Runs until stopped

        worker.submit(message)

        worker.stop()
        await task
        # or
        await worker.process_batch(batch_size=10)  # Single batch
    """

    # Configuration
    MAX_RETRIES = 3
    BASE_RETRY_DELAY_SECONDS = 5
    MAX_RETRY_DELAY_SECONDS = 300  # 5 minutes
    POLL_INTERVAL_SECONDS = 2
    DEFAULT_BATCH_SIZE = 10

    def __init__(
        self,
        embedding_provider: IEmbeddingProvider,
        vector_index: IVectorIndex,
        router: Any = None,
        worker_id: Optional[str] = None,
        max_retries: Optional[int] = None,
        base_retry_delay: Optional[float] = None,
        max_retry_delay: Optional[float] = None,
    ):
        """Initialize the indexing worker.

        Args:
            embedding_provider: Provider for generating embeddings
            vector_index: Index receiving the memory records
            router: Optional EventRouter for MemoryIndexed events
            worker_id: Unique identifier for this worker instance
            max_retries: Attempts before a job is dead-lettered
            base_retry_delay: First retry delay in seconds (doubles per retry)
            max_retry_delay: Upper bound for the retry delay
        """
        self.embedding_provider = embedding_provider
        self.vector_index = vector_index
        self.router = router
        self.worker_id = worker_id or f"indexer-{id(self)}"
        self.max_retries = max_retries if max_retries is not None else self.MAX_RETRIES
        self.base_retry_delay = (
            base_retry_delay if base_retry_delay is not None else self.BASE_RETRY_DELAY_SECONDS
        )
        self.max_retry_delay = (
            max_retry_delay if max_retry_delay is not None else self.MAX_RETRY_DELAY_SECONDS
        )
        self._pending: list[IndexingJob] = []
        self._dead: list[IndexingJob] = []
        self._completed = 0
        self._running = False
        self._wakeup = asyncio.Event()
        self._batch_lock = asyncio.Lock()
        self._forgotten: set[UUID] = set()

    # ============================================
    # Submission
    # ============================================

    def submit(self, message: Message) -> IndexingJob:
        """Queue an appended item for indexing."""
        if message.conversation_id is None:
            raise ValueError("Only appended messages can be indexed")
        job = IndexingJob(message=message)
        if job.conversation_id in self._forgotten:
            job.status = JobStatus.DISCARDED
            return job
        self._pending.append(job)
        self._wakeup.set()
        return job

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def dead_letters(self) -> list[IndexingJob]:
        return list(self._dead)

    # ============================================
    # Worker loop
    # ============================================

    async def start(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        """Start the worker loop.

        Runs continuously until stop() is called.

        Args:
            batch_size: Number of jobs to process per batch
            poll_interval: Seconds between checks for retryable jobs
        """
        self._running = True
        logger.info(f"Starting indexing worker {self.worker_id}")

        while self._running:
            try:
                processed = await self.process_batch(batch_size)

                if processed == 0:
                    self._wakeup.clear()
                    try:
                        await asyncio.wait_for(self._wakeup.wait(), timeout=poll_interval)
                    except asyncio.TimeoutError:
                        pass  # Normal timeout, re-check delayed retries
                else:
                    logger.debug(f"Worker {self.worker_id} processed {processed} jobs")

            except asyncio.CancelledError:
                logger.info(f"Worker {self.worker_id} cancelled")
                break
            except Exception as e:
                logger.exception(f"Worker {self.worker_id} error: {e}")
                await asyncio.sleep(1)

        logger.info(f"Worker {self.worker_id} stopped")

    def stop(self) -> None:
        """Signal the worker to stop gracefully."""
        self._running = False
        self._wakeup.set()

    async def drain(self) -> None:
        """Process every job that is ready now; delayed retries stay queued."""
        while await self.process_batch() > 0:
            pass

    # ============================================
    # Processing
    # ============================================

    async def process_batch(self, batch_size: int = DEFAULT_BATCH_SIZE) -> int:
        """Process a batch of ready indexing jobs.

        Returns:
            Number of jobs processed
        """
        async with self._batch_lock:
            return await self._process_ready(batch_size)

    async def _process_ready(self, batch_size: int) -> int:
        now = asyncio.get_running_loop().time()
        jobs = [j for j in self._pending if j.not_before <= now][:batch_size]
        if not jobs:
            return 0

        for job in jobs:
            self._pending.remove(job)
            job.status = JobStatus.PROCESSING

        texts = [job.message.content for job in jobs]
        try:
            embeddings = await self.embedding_provider.embed_batch(texts)
        except Exception as e:
            logger.error(f"Batch embedding failed: {e}")
            for job in jobs:
                self._mark_job_failed(job, str(e))
            self._publish(jobs)
            return len(jobs)

        for job, embedding in zip(jobs, embeddings):
            if job.conversation_id in self._forgotten:
                job.status = JobStatus.DISCARDED
                continue
            try:
                record = MemoryRecord.from_message(
                    job.message,
                    embedding,
                    embedding_model=self.embedding_provider.model_name,
                )
                await self.vector_index.add(record)
                job.status = JobStatus.COMPLETED
                self._completed += 1
            except Exception as e:
                logger.error(f"Failed to index message {job.message.id}: {e}")
                self._mark_job_failed(job, str(e))

        self._publish(jobs)
        return len(jobs)

    def _mark_job_failed(self, job: IndexingJob, error: str) -> None:
        """Reschedule a failed job, or dead-letter it after max retries."""
        if job.conversation_id in self._forgotten:
            job.status = JobStatus.DISCARDED
            return

        job.retry_count += 1
        job.last_error = error[:500]

        if job.retry_count >= self.max_retries:
            job.status = JobStatus.DEAD
            self._dead.append(job)
            logger.warning(
                f"Job for message {job.message.id} moved to dead letter queue after "
                f"{job.retry_count} retries: {error}"
            )
            return

        delay = min(
            self.base_retry_delay * (2 ** (job.retry_count - 1)),
            self.max_retry_delay,
        )
        job.status = JobStatus.PENDING
        job.not_before = asyncio.get_running_loop().time() + delay
        self._pending.append(job)
        logger.info(
            f"Job for message {job.message.id} scheduled for retry in {delay}s "
            f"({job.retry_count}/{self.max_retries}): {error}"
        )

    def _publish(self, jobs: list[IndexingJob]) -> None:
        if self.router is None:
            return
        counts: dict[Optional[UUID], list[int]] = defaultdict(lambda: [0, 0])
        for job in jobs:
            if job.status == JobStatus.DISCARDED:
                continue
            counts[job.conversation_id][0 if job.status == JobStatus.COMPLETED else 1] += 1
        for conversation_id, (indexed, failed) in counts.items():
            self.router.publish(
                MemoryIndexed(conversation_id=conversation_id, indexed=indexed, failed=failed)
            )

    # ============================================
    # Maintenance
    # ============================================

    def retry_dead_jobs(self, max_jobs: int = 100) -> int:
        """Move dead-lettered jobs back to the queue with a fresh retry count.

        Returns:
            Number of jobs retried
        """
        retried = self._dead[:max_jobs]
        del self._dead[:max_jobs]
        for job in retried:
            job.status = JobStatus.PENDING
            job.retry_count = 0
            job.not_before = 0.0
            self._pending.append(job)
        if retried:
            logger.info(f"Retried {len(retried)} dead letter jobs")
            self._wakeup.set()
        return len(retried)

    def discard_conversation(self, conversation_id: UUID) -> int:
        """Drop queued and dead-lettered jobs of a deleted conversation."""
        before = len(self._pending) + len(self._dead)
        self._pending = [j for j in self._pending if j.conversation_id != conversation_id]
        self._dead = [j for j in self._dead if j.conversation_id != conversation_id]
        return before - len(self._pending) - len(self._dead)

    async def forget_conversation(self, conversation_id: UUID) -> int:
        """Stop indexing a deleted conversation.

        Drops its queued jobs and waits for the batch in flight, which
        skips the conversation's writes. No record of the conversation
        is added to the index once this returns.

        Returns:
            Number of queued jobs dropped
        """
        self._forgotten.add(conversation_id)
        dropped = self.discard_conversation(conversation_id)
        async with self._batch_lock:
            pass
        logger.debug(f"Dropped {dropped} indexing job(s) of conversation {conversation_id}")
        return dropped

    def get_stats(self) -> dict[str, Any]:
        """Get worker statistics.

        Returns:
            Dict with job counts by status
        """
        stats: dict[str, Any] = {
            "pending": len(self._pending),
            "completed": self._completed,
            "dead": len(self._dead),
        }
        if self._pending:
            oldest = min(j.created_at for j in self._pending)
            stats["oldest_pending_age_seconds"] = (utcnow() - oldest).total_seconds()
        return stats
