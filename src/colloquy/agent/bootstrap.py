"""
Agent wiring from settings.

Builds the provider clients, stores, memory engine, coordinator and
Agent for one conversation. PostgreSQL + pgvector are used when a
database URL is configured, in-memory stores otherwise.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import asyncpg

from .config import AgentSettings
from .domain.ports import IConversationStore, IVectorIndex
from .memory import (
    ConversationSummarizer,
    InMemoryConversationStore,
    InMemoryVectorIndex,
    IndexingWorker,
    PgVectorIndex,
    PostgresConversationStore,
    close_pool,
    create_pool,
    ensure_schema,
)
from .orchestrator.agent import Agent
from .orchestrator.approval_channel import ApprovalChannel
from .orchestrator.conversation_manager import ConversationManager
from .orchestrator.event_router import EventRouter
from .orchestrator.memory_engine import MemoryEngine
from .orchestrator.tool_coordinator import ToolCallCoordinator
from .providers.factory import create_chat_client, create_embedding_provider
from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class AgentRuntime:
    """An initialized Agent plus the resources it owns."""

    agent: Agent
    router: EventRouter
    indexing_worker: Optional[IndexingWorker] = None
    worker_task: Optional[asyncio.Task] = None
    db_pool: Optional[asyncpg.Pool] = None

    async def close(self) -> None:
        """Stop the agent, flush events and release connections."""
        await self.agent.stop()
        if self.indexing_worker is not None:
            self.indexing_worker.stop()
        if self.worker_task is not None:
            await self.worker_task
        await self.agent.chat_client.close()
        await self.router.close()
        if self.db_pool is not None:
            await close_pool(self.db_pool)


async def create_agent(
    settings: Optional[AgentSettings] = None,
    registry: Optional[ToolRegistry] = None,
    router: Optional[EventRouter] = None,
    conversation_id: Optional[UUID] = None,
) -> AgentRuntime:
    """Build and initialize an Agent from settings.

    Args:
        settings: Agent settings (read from the environment if None)
        registry: Tool executors available to the model
        router: Event router to publish on (created if None)
        conversation_id: Conversation to resume (a new one if None)

    Returns:
        AgentRuntime whose agent is Ready
    """
    settings = settings or AgentSettings.from_env()
    registry = registry or ToolRegistry()
    router = router or EventRouter()

    chat_client = create_chat_client(settings)
    embedder = create_embedding_provider(settings)

    db_pool: Optional[asyncpg.Pool] = None
    store: IConversationStore
    index: Optional[IVectorIndex] = None
    if settings.database_url:
        db_pool = await create_pool(settings.database_url)
        await ensure_schema(db_pool, embedding_dimension=embedder.dimension if embedder else 1536)
        store = PostgresConversationStore(db_pool)
        if embedder is not None:
            index = PgVectorIndex(db_pool, embedding_model=embedder.model_name)
        logger.info("Using PostgreSQL conversation store")
    else:
        store = InMemoryConversationStore()
        if embedder is not None:
            index = InMemoryVectorIndex(dimension=embedder.dimension)
        logger.warning("No database configured - conversations will be in-memory only")

    worker: Optional[IndexingWorker] = None
    worker_task: Optional[asyncio.Task] = None
    if embedder is not None and index is not None:
        worker = IndexingWorker(embedder, index, router=router)
        worker_task = asyncio.create_task(worker.start(), name="memory-indexer")

    memory_engine = MemoryEngine(
        embedding_provider=embedder,
        vector_index=index,
        router=router,
        indexing_worker=worker,
    )
    coordinator = ToolCallCoordinator(
        registry,
        policy=settings.policy_table(),
        approvals=ApprovalChannel(),
        router=router,
        approval_timeout_seconds=settings.approval_timeout_seconds,
    )
    summarizer = None
    if settings.summarize_after_items > 0:
        summarizer = ConversationSummarizer(
            chat_client,
            summarize_after_items=settings.summarize_after_items,
        )

    agent = Agent(
        agent_id=settings.agent_id,
        chat_client=chat_client,
        memory_engine=memory_engine,
        coordinator=coordinator,
        router=router,
        conversations=ConversationManager(store, memory_engine),
        parameters=settings.parameters(tuple(registry.definitions())),
        max_tool_rounds=settings.max_tool_rounds,
        summarizer=summarizer,
    )
    await agent.initialize(conversation_id)
    return AgentRuntime(
        agent=agent,
        router=router,
        indexing_worker=worker,
        worker_task=worker_task,
        db_pool=db_pool,
    )
