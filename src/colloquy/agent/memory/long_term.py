"""
Long-term conversation summarization.

Condenses the part of a conversation that has scrolled out of the
recency window into a short summary. The summary is placed first in
every assembled context.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..domain.entities import (
    ChatEventType,
    Conversation,
    Message,
    MessageRole,
    Parameters,
)
from ..domain.errors import ProviderError
from ..domain.ports import IChatApiClient

logger = logging.getLogger(__name__)


class ConversationSummarizer:
    """Summarizes conversations for context management.

    Usage:
        summarizer = ConversationSummarizer(chat_client, summarize_after_items=40)

        if summarizer.should_summarize(conversation):
            summary = await summarizer.summarize(conversation.messages[:-20])
    """

    SUMMARY_PROMPT = """Summarize the following conversation in 2-3 sentences.
Focus on the main topic, any decisions made, and key information exchanged.

CONVERSATION:
{conversation}

SUMMARY:"""

    # Conversation metadata key holding the item count at the last summary
    SUMMARIZED_ITEMS_KEY = "summarized_items"

    def __init__(
        self,
        chat_client: Optional[IChatApiClient] = None,
        summarize_after_items: int = 40,
        resummarize_every: Optional[int] = None,
        model: Optional[str] = None,
    ):
        """Initialize the summarizer.

        Args:
            chat_client: Chat client used for summarization (None = heuristic only)
            summarize_after_items: Item count that triggers the first summary
            resummarize_every: New items needed before refreshing a summary
                (default: half of summarize_after_items)
            model: Model override for summary requests
        """
        self.chat_client = chat_client
        self.summarize_after_items = summarize_after_items
        self.resummarize_every = resummarize_every or max(1, summarize_after_items // 2)
        self.model = model

    def should_summarize(self, conversation: Conversation) -> bool:
        """Whether the conversation has grown enough since the last summary."""
        if self.summarize_after_items <= 0 or conversation.item_count < self.summarize_after_items:
            return False
        last = conversation.metadata.get(self.SUMMARIZED_ITEMS_KEY)
        if last is None or not conversation.summary:
            return True
        return conversation.item_count - last >= self.resummarize_every

    async def summarize(self, messages: list[Message], max_length: int = 500) -> str:
        """Summarize a list of conversation items.

        Args:
            messages: Items to summarize
            max_length: Maximum summary length

        Returns:
            Conversation summary
        """
        if not self.chat_client:
            return self._simple_summarize(messages)

        prompt = self.SUMMARY_PROMPT.format(conversation=self._format_conversation(messages))
        params = Parameters(
            model=self.model or self.chat_client.model_name,
            temperature=0.5,
            max_tokens=200,
        )

        try:
            summary = await self._complete(prompt, params)
            return summary.strip()[:max_length] or self._simple_summarize(messages)
        except Exception as e:
            logger.error(f"Summarization failed: {e}")
            return self._simple_summarize(messages)

    async def _complete(self, prompt: str, params: Parameters) -> str:
        """Run a single non-tool request and collect the streamed text."""
        parts: list[str] = []
        async for event in self.chat_client.send([Message.user(prompt)], params):
            if event.type == ChatEventType.TEXT_DELTA and event.content:
                parts.append(event.content)
            elif event.type == ChatEventType.ERROR:
                raise ProviderError(event.error or "Summary request failed")
            elif event.type == ChatEventType.DONE:
                break
        return "".join(parts)

    def _format_conversation(self, messages: list[Message]) -> str:
        """Format messages for prompting."""
        lines = []
        for msg in messages:
            if msg.role == MessageRole.SYSTEM:
                continue
            role = msg.role.value.upper()
            content = msg.content[:500]  # Truncate long messages
            lines.append(f"{role}: {content}")
        return "\n\n".join(lines)

    def _simple_summarize(self, messages: list[Message]) -> str:
        """Simple summarization without a model."""
        if not messages:
            return "Empty conversation"

        for msg in messages:
            if msg.role == MessageRole.USER:
                return f"Conversation about: {msg.content[:200]}"

        return f"Conversation with {len(messages)} messages"
