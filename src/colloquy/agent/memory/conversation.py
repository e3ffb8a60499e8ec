"""
Conversation Store Implementation.

Handles conversation and item persistence in PostgreSQL. Items carry an
explicit position so their order survives equal timestamps.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional
from uuid import UUID

import asyncpg

from ..domain.entities import (
    Conversation,
    Message,
    MessageRole,
    ToolCallRequest,
)
from ..domain.errors import StorageError
from ..domain.ports import IConversationStore
from .database import storage_transaction

logger = logging.getLogger(__name__)


def _load_json(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class PostgresConversationStore(IConversationStore):
    """PostgreSQL-based conversation store.

    Usage:
        store = PostgresConversationStore(db_pool)

        # Create conversation
        conv = await store.create(Conversation(agent_id="support-bot", title="Billing"))

        # Append items
        await store.save_items(conv.id, [Message.user("Where is my invoice?")])

        # Load conversation with items
        conv = await store.load(conv.id)
    """

    def __init__(self, db_pool: asyncpg.Pool):
        """Initialize the conversation store.

        Args:
            db_pool: Async database connection pool
        """
        self.db = db_pool

    async def create(self, conversation: Conversation) -> Conversation:
        """Create a new conversation.

        Args:
            conversation: Conversation to create

        Returns:
            Created conversation with database timestamps
        """
        async with storage_transaction(self.db) as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO colloquy_conversations (
                    id, agent_id, title, summary, metadata, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7)
                RETURNING created_at, updated_at
                """,
                conversation.id,
                conversation.agent_id,
                conversation.title,
                conversation.summary,
                json.dumps(conversation.metadata),
                conversation.created_at,
                conversation.updated_at,
            )
            conversation.created_at = row["created_at"]
            conversation.updated_at = row["updated_at"]

            if conversation.messages:
                await self._insert_items(conn, conversation.id, conversation.messages, start=0)

        logger.info(f"Created conversation {conversation.id} for agent {conversation.agent_id}")
        return conversation

    async def load(self, conversation_id: UUID) -> Optional[Conversation]:
        """Load a conversation by ID with items.

        Returns:
            Conversation with items in position order, or None if not found
        """
        async with storage_transaction(self.db) as conn:
            row = await conn.fetchrow(
                """
                SELECT id, agent_id, title, summary, metadata, created_at, updated_at
                FROM colloquy_conversations
                WHERE id = $1
                """,
                conversation_id,
            )

            if not row:
                return None

            conversation = self._row_to_conversation(row)

            item_rows = await conn.fetch(
                """
                SELECT id, role, content, tool_calls, tool_call_id, name,
                       model_used, metadata, created_at
                FROM colloquy_messages
                WHERE conversation_id = $1
                ORDER BY position ASC
                """,
                conversation_id,
            )

        # Items are loaded in stored order; bypass add_message so updated_at is kept
        conversation.messages = [self._row_to_message(r, conversation_id) for r in item_rows]
        return conversation

    async def save(self, conversation: Conversation) -> None:
        """Persist title, summary, metadata and updated_at."""
        async with storage_transaction(self.db) as conn:
            result = await conn.execute(
                """
                UPDATE colloquy_conversations
                SET title = $1, summary = $2, metadata = $3::jsonb, updated_at = $4
                WHERE id = $5
                """,
                conversation.title,
                conversation.summary,
                json.dumps(conversation.metadata),
                conversation.updated_at,
                conversation.id,
            )

        if result == "UPDATE 0":
            raise StorageError(f"Conversation {conversation.id} not found")
        logger.debug(f"Saved conversation {conversation.id}")

    async def save_items(self, conversation_id: UUID, items: list[Message]) -> None:
        """Append items after the last stored position, in one transaction."""
        if not items:
            return

        async with storage_transaction(self.db) as conn:
            # Lock the parent row so concurrent appends cannot take the same positions
            exists = await conn.fetchval(
                "SELECT 1 FROM colloquy_conversations WHERE id = $1 FOR UPDATE",
                conversation_id,
            )
            if not exists:
                raise StorageError(f"Conversation {conversation_id} not found")

            start = await conn.fetchval(
                "SELECT COALESCE(MAX(position) + 1, 0) FROM colloquy_messages WHERE conversation_id = $1",
                conversation_id,
            )
            await self._insert_items(conn, conversation_id, items, start=start)
            await conn.execute(
                "UPDATE colloquy_conversations SET updated_at = NOW() WHERE id = $1",
                conversation_id,
            )

        logger.debug(f"Appended {len(items)} item(s) to conversation {conversation_id}")

    async def delete(self, conversation_id: UUID) -> bool:
        """Delete a conversation and all its items.

        Returns:
            True if deleted, False if not found
        """
        async with storage_transaction(self.db) as conn:
            result = await conn.execute(
                "DELETE FROM colloquy_conversations WHERE id = $1",
                conversation_id,
            )

        deleted = result == "DELETE 1"
        if deleted:
            logger.info(f"Deleted conversation {conversation_id}")
        return deleted

    async def list(self, agent_id: str, limit: int = 20, offset: int = 0) -> list[Conversation]:
        """List conversations for an agent, most recently updated first.

        Returns:
            Conversations without items; the last item preview is in metadata
        """
        async with storage_transaction(self.db) as conn:
            rows = await conn.fetch(
                """
                SELECT c.id, c.agent_id, c.title, c.summary, c.metadata,
                       c.created_at, c.updated_at,
                       (SELECT content FROM colloquy_messages m
                        WHERE m.conversation_id = c.id
                        ORDER BY m.position DESC LIMIT 1) AS last_message
                FROM colloquy_conversations c
                WHERE c.agent_id = $1
                ORDER BY c.updated_at DESC
                LIMIT $2 OFFSET $3
                """,
                agent_id,
                limit,
                offset,
            )

        conversations = []
        for row in rows:
            conv = self._row_to_conversation(row)
            if row["last_message"]:
                conv.metadata["last_message_preview"] = row["last_message"][:100]
            conversations.append(conv)
        return conversations

    # ============================================
    # Row mapping
    # ============================================

    async def _insert_items(
        self,
        conn: asyncpg.Connection,
        conversation_id: UUID,
        items: list[Message],
        start: int,
    ) -> None:
        await conn.executemany(
            """
            INSERT INTO colloquy_messages (
                id, conversation_id, position, role, content, tool_calls,
                tool_call_id, name, model_used, metadata, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10::jsonb, $11)
            """,
            [
                (
                    item.id,
                    conversation_id,
                    start + offset,
                    item.role.value,
                    item.content,
                    json.dumps(
                        [{"id": tc.id, "name": tc.name, "arguments": tc.arguments} for tc in item.tool_calls]
                    )
                    if item.tool_calls
                    else None,
                    item.tool_call_id,
                    item.name,
                    item.model_used,
                    json.dumps(item.metadata, default=str),
                    item.created_at,
                )
                for offset, item in enumerate(items)
            ],
        )

    @staticmethod
    def _row_to_conversation(row: asyncpg.Record) -> Conversation:
        return Conversation(
            id=row["id"],
            agent_id=row["agent_id"],
            title=row["title"],
            summary=row["summary"],
            metadata=_load_json(row["metadata"]) or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_message(row: asyncpg.Record, conversation_id: UUID) -> Message:
        tool_calls = tuple(
            ToolCallRequest(
                id=tc.get("id", ""),
                name=tc.get("name", ""),
                arguments=tc.get("arguments") or {},
            )
            for tc in (_load_json(row["tool_calls"]) or [])
        )
        return Message(
            id=row["id"],
            conversation_id=conversation_id,
            role=MessageRole(row["role"]),
            content=row["content"],
            tool_calls=tool_calls,
            tool_call_id=row["tool_call_id"],
            name=row["name"],
            model_used=row["model_used"],
            metadata=_load_json(row["metadata"]) or {},
            created_at=row["created_at"],
        )
