"""
Approval Channel.

Holds tool calls suspended in the AwaitingApproval state, each backed by
a resolvable future, until an external collaborator answers through
resolve() or the wait times out.

Supports:
- Multi-conversation isolation
- Single-use decisions (a resolved approval cannot be resolved again)
- Bulk cleanup when a turn is canceled
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from ..domain.entities import ToolCall, utcnow
from ..domain.errors import ApprovalTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalDecision:
    """An external approval decision."""

    approved: bool
    reason: Optional[str] = None


@dataclass
class PendingApproval:
    """A tool call waiting for a decision."""

    tool_call_id: str
    tool_name: str
    arguments: dict[str, Any]
    conversation_id: Optional[UUID]
    future: asyncio.Future = field(repr=False)
    requested_at: datetime = field(default_factory=utcnow)


class ApprovalChannel:
    """Manages pending approval decisions.

    Usage:
        channel = ApprovalChannel()

        # Coordinator side
        channel.open(tool_call, conversation_id)
        decision = await channel.wait(tool_call.id, timeout=30)

        # External side (UI, operator, policy service)
        channel.resolve(tool_call.id, approved=True)
    """

    def __init__(self):
        # Structure: {tool_call_id: PendingApproval}
        self._pending: dict[str, PendingApproval] = {}

    def open(self, call: ToolCall, conversation_id: Optional[UUID] = None) -> PendingApproval:
        """Register a tool call as awaiting approval."""
        if call.id in self._pending:
            return self._pending[call.id]

        pending = PendingApproval(
            tool_call_id=call.id,
            tool_name=call.name,
            arguments=dict(call.arguments),
            conversation_id=conversation_id,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[call.id] = pending
        logger.debug(f"Awaiting approval for {call.name} ({call.id})")
        return pending

    def resolve(self, tool_call_id: str, approved: bool, reason: Optional[str] = None) -> bool:
        """Deliver a decision for a pending tool call.

        Returns:
            True if the decision was accepted, False if no such call is pending
        """
        pending = self._pending.get(tool_call_id)
        if pending is None or pending.future.done():
            logger.warning(f"No pending approval for tool call {tool_call_id}")
            return False

        pending.future.set_result(ApprovalDecision(approved=approved, reason=reason))
        logger.info(
            f"Approval for {pending.tool_name} ({tool_call_id}) "
            f"{'granted' if approved else 'denied'}"
        )
        return True

    async def wait(self, tool_call_id: str, timeout: Optional[float] = None) -> ApprovalDecision:
        """Wait for the decision on an opened call.

        Raises:
            ApprovalTimeoutError: If no decision arrives within timeout
        """
        pending = self._pending.get(tool_call_id)
        if pending is None:
            raise KeyError(f"Tool call {tool_call_id} is not awaiting approval")

        try:
            decision = await asyncio.wait_for(asyncio.shield(pending.future), timeout=timeout)
        except asyncio.TimeoutError:
            self.discard(tool_call_id)
            raise ApprovalTimeoutError(tool_call_id, timeout) from None
        except asyncio.CancelledError:
            self.discard(tool_call_id)
            raise

        self._pending.pop(tool_call_id, None)
        return decision

    def pending(self, conversation_id: Optional[UUID] = None) -> list[PendingApproval]:
        """List pending approvals, optionally for one conversation."""
        return [
            p
            for p in self._pending.values()
            if not p.future.done()
            and (conversation_id is None or p.conversation_id == conversation_id)
        ]

    def has_pending(self, conversation_id: Optional[UUID] = None) -> bool:
        return bool(self.pending(conversation_id))

    def cancel_conversation(self, conversation_id: UUID) -> int:
        """Drop every pending approval of a conversation.

        Returns:
            Number of approvals discarded
        """
        ids = [p.tool_call_id for p in self.pending(conversation_id)]
        for tool_call_id in ids:
            self.discard(tool_call_id)
        if ids:
            logger.info(f"Discarded {len(ids)} pending approvals for conversation {conversation_id}")
        return len(ids)

    def discard(self, tool_call_id: str) -> None:
        """Forget a call; a waiter still blocked on it is cancelled."""
        pending = self._pending.pop(tool_call_id, None)
        if pending is not None and not pending.future.done():
            pending.future.cancel()
