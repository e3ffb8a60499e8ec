"""
Typed events published through the EventRouter.

Every event derives from AgentEvent, so subscribing to a base class
receives all of its subclasses. Events are immutable.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from .entities import AgentResponse, AgentStatus, ToolCallState, utcnow
from .errors import ErrorCategory


@dataclass(frozen=True)
class AgentEvent:
    """Base class for every published event.

    Attributes:
        conversation_id: Conversation the event belongs to
        turn_id: Turn (correlation) identifier, if emitted inside a turn
        sequence: Per-turn sequence number for ordering
        event_id: Unique event ID for idempotent consumers
        timestamp: Creation time
    """

    conversation_id: Optional[UUID] = None
    turn_id: Optional[str] = None
    sequence: int = 0
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)


# ============================================
# Lifecycle
# ============================================


@dataclass(frozen=True)
class StatusChanged(AgentEvent):
    previous: AgentStatus = AgentStatus.UNINITIALIZED
    current: AgentStatus = AgentStatus.UNINITIALIZED


@dataclass(frozen=True)
class TurnStarted(AgentEvent):
    user_input: str = ""


@dataclass(frozen=True)
class TurnCompleted(AgentEvent):
    response: Optional[AgentResponse] = None


@dataclass(frozen=True)
class TurnCanceled(AgentEvent):
    pass


@dataclass(frozen=True)
class TurnFailed(AgentEvent):
    """A turn aborted. `category` is the categorized reason."""

    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    retryable: bool = False


# ============================================
# Streaming
# ============================================


@dataclass(frozen=True)
class TextDelta(AgentEvent):
    text: str = ""
    round: int = 1


# ============================================
# Tools
# ============================================


@dataclass(frozen=True)
class ToolCallEvent(AgentEvent):
    """Base class for tool lifecycle events."""

    tool_call_id: str = ""
    tool_name: str = ""


@dataclass(frozen=True)
class ToolCallRequested(ToolCallEvent):
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ApprovalRequested(ToolCallEvent):
    """An external decision is needed; answer with ApprovalChannel.resolve()."""

    arguments: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: Optional[float] = None


@dataclass(frozen=True)
class ApprovalResolved(ToolCallEvent):
    approved: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class ToolCallStateChanged(ToolCallEvent):
    previous: ToolCallState = ToolCallState.REQUESTED
    current: ToolCallState = ToolCallState.REQUESTED
    reason: Optional[str] = None


@dataclass(frozen=True)
class ToolCallFinished(ToolCallEvent):
    state: ToolCallState = ToolCallState.COMPLETED
    content: str = ""
    reason: Optional[str] = None


# ============================================
# Memory
# ============================================


@dataclass(frozen=True)
class MemoryIndexed(AgentEvent):
    indexed: int = 0
    failed: int = 0


@dataclass(frozen=True)
class ConversationSummarized(AgentEvent):
    summary: str = ""
