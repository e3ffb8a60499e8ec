"""
Unit tests for conversation persistence.

Covers the in-memory store, the PostgreSQL store and pgvector index
(against a mocked asyncpg pool) and the ConversationManager.
"""

import json
import uuid
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from colloquy.agent.domain.entities import (
    Conversation,
    MemoryRecord,
    Message,
    MessageRole,
    ToolCallRequest,
)
from colloquy.agent.domain.errors import StorageError, VectorIndexUnavailableError
from colloquy.agent.memory.conversation import PostgresConversationStore
from colloquy.agent.memory.in_memory import InMemoryConversationStore
from colloquy.agent.memory.pgvector import PgVectorIndex, parse_vector_literal, to_vector_literal
from colloquy.agent.orchestrator.conversation_manager import ConversationManager

from fakes import FIXED_NOW


# ============================================
# Helpers
# ============================================


class AsyncContextManager:
    """Helper class to create async context managers for mocking."""

    def __init__(self, return_value):
        self.return_value = return_value

    async def __aenter__(self):
        return self.return_value

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


@pytest.fixture
def mock_db_pool():
    """Create a mock database pool."""
    pool = MagicMock()

    mock_conn = AsyncMock()
    mock_conn.execute = AsyncMock()
    mock_conn.executemany = AsyncMock()
    mock_conn.fetch = AsyncMock(return_value=[])
    mock_conn.fetchrow = AsyncMock(return_value=None)
    mock_conn.fetchval = AsyncMock(return_value=1)
    mock_conn.transaction = MagicMock(return_value=AsyncContextManager(None))

    pool.acquire = MagicMock(return_value=AsyncContextManager(mock_conn))
    pool._mock_conn = mock_conn  # Store for test access
    return pool


def conversation_row(conversation_id, **overrides):
    row = {
        "id": conversation_id,
        "agent_id": "support-bot",
        "title": "Billing",
        "summary": None,
        "metadata": "{}",
        "created_at": FIXED_NOW,
        "updated_at": FIXED_NOW,
    }
    row.update(overrides)
    return row


# ============================================
# In-memory store
# ============================================


class TestInMemoryConversationStore:
    """Tests for InMemoryConversationStore."""

    @pytest.mark.asyncio
    async def test_loaded_copies_are_isolated(self):
        store = InMemoryConversationStore()
        conversation = await store.create(Conversation(agent_id="a"))
        await store.save_items(conversation.id, [Message.user("hi")])

        loaded = await store.load(conversation.id)
        loaded.add_message(Message.user("not saved"))

        assert (await store.load(conversation.id)).item_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_create_and_missing_conversation(self):
        store = InMemoryConversationStore()
        conversation = await store.create(Conversation(agent_id="a"))

        with pytest.raises(StorageError):
            await store.create(conversation)
        with pytest.raises(StorageError):
            await store.save_items(uuid.uuid4(), [Message.user("orphan")])
        assert await store.load(uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_list_is_scoped_and_recent_first(self):
        store = InMemoryConversationStore()
        older = await store.create(Conversation(agent_id="a"))
        newer = await store.create(Conversation(agent_id="a"))
        await store.create(Conversation(agent_id="b"))
        await store.save_items(newer.id, [Message.user("latest")])

        listed = await store.list("a")

        assert [c.id for c in listed] == [newer.id, older.id]
        assert all(c.messages == [] for c in listed)


# ============================================
# PostgreSQL store
# ============================================


class TestPostgresConversationStore:
    """Tests for PostgresConversationStore."""

    @pytest.mark.asyncio
    async def test_create_with_items(self, mock_db_pool):
        conn = mock_db_pool._mock_conn
        conn.fetchrow.return_value = {"created_at": FIXED_NOW, "updated_at": FIXED_NOW}
        store = PostgresConversationStore(mock_db_pool)
        conversation = Conversation(agent_id="support-bot")
        conversation.add_message(Message.user("hello"))

        created = await store.create(conversation)

        assert created.created_at == FIXED_NOW
        rows = conn.executemany.call_args.args[1]
        assert [(r[2], r[3], r[4]) for r in rows] == [(0, "user", "hello")]

    @pytest.mark.asyncio
    async def test_load_orders_items_and_parses_tool_calls(self, mock_db_pool):
        conn = mock_db_pool._mock_conn
        conversation_id = uuid.uuid4()
        conn.fetchrow.return_value = conversation_row(conversation_id, summary="So far")
        conn.fetch.return_value = [
            {
                "id": uuid.uuid4(),
                "role": "user",
                "content": "Weather?",
                "tool_calls": None,
                "tool_call_id": None,
                "name": None,
                "model_used": None,
                "metadata": "{}",
                "created_at": FIXED_NOW,
            },
            {
                "id": uuid.uuid4(),
                "role": "assistant",
                "content": "",
                "tool_calls": json.dumps([{"id": "c1", "name": "get_weather", "arguments": {"city": "Oslo"}}]),
                "tool_call_id": None,
                "name": None,
                "model_used": "gpt-4o",
                "metadata": "{}",
                "created_at": FIXED_NOW,
            },
        ]
        store = PostgresConversationStore(mock_db_pool)

        conversation = await store.load(conversation_id)

        assert conversation.summary == "So far"
        assert [m.role for m in conversation.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert conversation.messages[1].tool_calls == (ToolCallRequest("c1", "get_weather", {"city": "Oslo"}),)
        assert all(m.conversation_id == conversation_id for m in conversation.messages)
        assert "ORDER BY position ASC" in conn.fetch.call_args.args[0]

    @pytest.mark.asyncio
    async def test_load_missing(self, mock_db_pool):
        store = PostgresConversationStore(mock_db_pool)

        assert await store.load(uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_save_items_continues_positions(self, mock_db_pool):
        conn = mock_db_pool._mock_conn
        conn.fetchval.side_effect = [1, 3]
        store = PostgresConversationStore(mock_db_pool)

        await store.save_items(uuid.uuid4(), [Message.user("a"), Message.assistant("b")])

        rows = conn.executemany.call_args.args[1]
        assert [r[2] for r in rows] == [3, 4]
        assert "FOR UPDATE" in conn.fetchval.call_args_list[0].args[0]

    @pytest.mark.asyncio
    async def test_save_items_to_missing_conversation(self, mock_db_pool):
        mock_db_pool._mock_conn.fetchval.return_value = None
        store = PostgresConversationStore(mock_db_pool)

        with pytest.raises(StorageError):
            await store.save_items(uuid.uuid4(), [Message.user("a")])

    @pytest.mark.asyncio
    async def test_save_missing_conversation(self, mock_db_pool):
        mock_db_pool._mock_conn.execute.return_value = "UPDATE 0"
        store = PostgresConversationStore(mock_db_pool)

        with pytest.raises(StorageError):
            await store.save(Conversation(agent_id="a"))

    @pytest.mark.asyncio
    async def test_delete(self, mock_db_pool):
        mock_db_pool._mock_conn.execute.return_value = "DELETE 1"
        store = PostgresConversationStore(mock_db_pool)

        assert await store.delete(uuid.uuid4()) is True

    @pytest.mark.asyncio
    async def test_driver_errors_become_storage_errors(self, mock_db_pool):
        mock_db_pool._mock_conn.fetchrow.side_effect = asyncpg.PostgresError("relation does not exist")
        store = PostgresConversationStore(mock_db_pool)

        with pytest.raises(StorageError) as exc_info:
            await store.load(uuid.uuid4())
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_list_adds_preview(self, mock_db_pool):
        conversation_id = uuid.uuid4()
        mock_db_pool._mock_conn.fetch.return_value = [
            {**conversation_row(conversation_id), "last_message": "x" * 150}
        ]
        store = PostgresConversationStore(mock_db_pool)

        [conversation] = await store.list("support-bot")

        assert conversation.metadata["last_message_preview"] == "x" * 100


# ============================================
# pgvector index
# ============================================


class TestPgVectorIndex:
    """Tests for PgVectorIndex."""

    def test_vector_literals(self):
        assert to_vector_literal([1, 0.5]) == "[1.0,0.5]"
        assert parse_vector_literal("[1.0,0.5]") == (1.0, 0.5)
        assert parse_vector_literal("[]") == ()

    @pytest.mark.asyncio
    async def test_query_filters_by_model(self, mock_db_pool):
        conn = mock_db_pool._mock_conn
        conversation_id = uuid.uuid4()
        conn.fetch.return_value = [
            {
                "id": uuid.uuid4(),
                "message_id": uuid.uuid4(),
                "conversation_id": conversation_id,
                "role": "user",
                "content": "runbook location",
                "embedding": "[0.6,0.8]",
                "embedding_model": "text-embedding-3-small",
                "created_at": FIXED_NOW,
                "similarity": 0.91,
            }
        ]
        index = PgVectorIndex(mock_db_pool, embedding_model="text-embedding-3-small")

        [(record, similarity)] = await index.query([0.6, 0.8], top_k=5, min_similarity=0.7)

        assert record.content == "runbook location"
        assert record.embedding == (0.6, 0.8)
        assert similarity == 0.91
        args = conn.fetch.call_args.args
        assert "embedding_model = $4" in args[0]
        assert args[1:] == ("[0.6,0.8]", 0.7, 5, "text-embedding-3-small")

    @pytest.mark.asyncio
    async def test_query_failure_means_unavailable(self, mock_db_pool):
        mock_db_pool._mock_conn.fetch.side_effect = asyncpg.PostgresError("connection reset")
        index = PgVectorIndex(mock_db_pool)

        with pytest.raises(VectorIndexUnavailableError):
            await index.query([1.0], top_k=3)

    @pytest.mark.asyncio
    async def test_add_ignores_duplicates(self, mock_db_pool):
        index = PgVectorIndex(mock_db_pool)
        message = Message.user("hi", conversation_id=uuid.uuid4())

        await index.add(MemoryRecord.from_message(message, [0.1, 0.2]))

        sql = mock_db_pool._mock_conn.execute.call_args.args[0]
        assert "ON CONFLICT (message_id) DO NOTHING" in sql

    @pytest.mark.asyncio
    async def test_delete_conversation_count(self, mock_db_pool):
        mock_db_pool._mock_conn.execute.return_value = "DELETE 3"
        index = PgVectorIndex(mock_db_pool)

        assert await index.delete_conversation(uuid.uuid4()) == 3


# ============================================
# Conversation manager
# ============================================


class TestConversationManager:
    """Tests for ConversationManager."""

    @pytest.mark.asyncio
    async def test_get_or_create_with_unknown_id(self, store):
        manager = ConversationManager(store)
        wanted = uuid.uuid4()

        conversation = await manager.get_or_create(wanted, agent_id="a")

        assert conversation.id == wanted
        assert await store.load(wanted) is not None

    @pytest.mark.asyncio
    async def test_append_items_binds_and_persists(self, store):
        manager = ConversationManager(store)
        conversation = await manager.get_or_create(None, agent_id="a")

        appended = await manager.append_items(conversation, [Message.user("q"), Message.assistant("a")])

        assert all(m.conversation_id == conversation.id for m in appended)
        assert [m.content for m in (await store.load(conversation.id)).messages] == ["q", "a"]

    @pytest.mark.asyncio
    async def test_failed_commit_leaves_conversation_unchanged(self, store):
        manager = ConversationManager(store)
        conversation = await manager.get_or_create(None, agent_id="a")
        store.save_items = AsyncMock(side_effect=StorageError("disk full"))

        with pytest.raises(StorageError):
            await manager.append_items(conversation, [Message.user("lost")])

        assert conversation.item_count == 0

    @pytest.mark.asyncio
    async def test_without_store(self):
        manager = ConversationManager()

        conversation = await manager.get_or_create(None, agent_id="a")
        await manager.append_items(conversation, [Message.user("only in memory")])

        assert conversation.item_count == 1
        assert await manager.list_conversations("a") == []
        assert await manager.get_history(conversation.id) is None

    @pytest.mark.asyncio
    async def test_delete_forgets_memory(self, store, memory_engine, vector_index):
        manager = ConversationManager(store, memory_engine)
        conversation = await manager.get_or_create(None, agent_id="a")
        appended = await manager.append_items(conversation, [Message.user("secret")])
        memory_engine.index_items(appended)
        await memory_engine.drain()

        assert await manager.delete(conversation.id) is True

        assert await store.load(conversation.id) is None
        assert len(vector_index) == 0
