"""
Conversation Manager.

Handles conversation lifecycle: creation, loading, committing turn
items in order, listing and deletion (including long-term memory).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from ..domain.entities import Conversation, Message
from ..domain.ports import IConversationStore

if TYPE_CHECKING:
    from .memory_engine import MemoryEngine

logger = logging.getLogger(__name__)


class ConversationManager:
    """Manages conversation lifecycle operations.

    Usage:
        manager = ConversationManager(conversation_store, memory_engine)

        conversation = await manager.get_or_create(None, agent_id="support-bot")

        # Commit a finished turn
        await manager.append_items(conversation, [user_message, assistant_message])

        conversations = await manager.list_conversations("support-bot", limit=20)
        await manager.delete(conversation.id)
    """

    def __init__(
        self,
        conversation_store: Optional[IConversationStore] = None,
        memory_engine: Optional[MemoryEngine] = None,
    ):
        """Initialize the conversation manager.

        Args:
            conversation_store: Store for conversation persistence.
                               If None, conversations live in memory only.
            memory_engine: Engine whose records are removed on delete
        """
        self.store = conversation_store
        self.memory_engine = memory_engine

    async def get_or_create(
        self,
        conversation_id: Optional[UUID],
        agent_id: str,
        title: Optional[str] = None,
    ) -> Conversation:
        """Get existing or create new conversation.

        Args:
            conversation_id: Existing conversation ID or None
            agent_id: Owning agent
            title: Title for a newly created conversation

        Returns:
            Conversation object (existing or newly created)
        """
        if conversation_id and self.store:
            conversation = await self.store.load(conversation_id)
            if conversation:
                logger.debug(
                    f"Loaded conversation {conversation_id} "
                    f"with {conversation.item_count} items"
                )
                return conversation
            logger.warning(f"Conversation {conversation_id} not found, creating a new one")

        conversation = Conversation(agent_id=agent_id, title=title)
        if conversation_id:
            conversation.id = conversation_id

        if self.store:
            conversation = await self.store.create(conversation)
            logger.info(f"Created new conversation {conversation.id} for agent {agent_id}")
        else:
            logger.warning(
                "No conversation store available - conversation will be in-memory only"
            )

        return conversation

    async def append_items(self, conversation: Conversation, items: list[Message]) -> list[Message]:
        """Durably append items, then add them to the in-memory conversation.

        Nothing is added in memory if the store rejects the write, so a
        failed commit leaves the conversation as it was.

        Returns:
            The appended items, bound to the conversation
        """
        bound = [
            item if item.conversation_id == conversation.id else replace(item, conversation_id=conversation.id)
            for item in items
        ]
        if self.store:
            await self.store.save_items(conversation.id, bound)
        appended = [conversation.add_message(item) for item in bound]
        logger.debug(f"Appended {len(appended)} item(s) to conversation {conversation.id}")
        return appended

    async def save(self, conversation: Conversation) -> None:
        """Persist conversation metadata (title, summary)."""
        if self.store:
            await self.store.save(conversation)

    async def get_history(self, conversation_id: UUID) -> Optional[Conversation]:
        """Load a conversation with its items."""
        if not self.store:
            logger.warning("No conversation store available - cannot retrieve history")
            return None
        return await self.store.load(conversation_id)

    async def list_conversations(
        self,
        agent_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Conversation]:
        """List an agent's conversations, most recent first."""
        if not self.store:
            logger.warning("No conversation store available - returning empty list")
            return []

        conversations = await self.store.list(agent_id, limit, offset)
        logger.debug(f"Listed {len(conversations)} conversations for agent {agent_id}")
        return conversations

    async def delete(self, conversation_id: UUID) -> bool:
        """Delete a conversation, its items and its memory records."""
        deleted = False
        if self.store:
            deleted = await self.store.delete(conversation_id)
        if self.memory_engine is not None:
            await self.memory_engine.forget_conversation(conversation_id)
        if deleted:
            logger.info(f"Deleted conversation {conversation_id}")
        return deleted
