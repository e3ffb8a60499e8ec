"""
Domain entities for the agent orchestration core.

These are pure domain objects with no infrastructure dependencies.
They define the core data structures used throughout the agent module.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .errors import InvalidToolCallTransition


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every created_at field."""
    return datetime.now(timezone.utc)


# ============================================
# Message Types
# ============================================


class MessageRole(str, Enum):
    """Role of a message in a conversation."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool call requested by the model in its response stream.

    Attributes:
        id: Provider-assigned call identifier (for correlation)
        name: Requested function name
        arguments: Parsed arguments
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Message:
    """A single conversation item.

    Messages are immutable once created. Corrections are modeled as new
    items, never in-place edits.

    Attributes:
        role: Message role (user, assistant, system, tool)
        content: Message text content
        id: Unique message identifier
        conversation_id: Parent conversation ID (set when appended)
        tool_calls: Tool calls requested by an assistant message
        tool_call_id: Tool call this message answers (tool messages only)
        name: Tool name for tool messages
        model_used: Model that generated an assistant message
        metadata: Additional metadata
        created_at: Creation timestamp
    """

    role: MessageRole
    content: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    conversation_id: Optional[uuid.UUID] = None
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    model_used: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def user(cls, content: str, **kwargs: Any) -> Message:
        return cls(role=MessageRole.USER, content=content, **kwargs)

    @classmethod
    def assistant(cls, content: str, **kwargs: Any) -> Message:
        return cls(role=MessageRole.ASSISTANT, content=content, **kwargs)

    @classmethod
    def system(cls, content: str, **kwargs: Any) -> Message:
        return cls(role=MessageRole.SYSTEM, content=content, **kwargs)

    @classmethod
    def tool(cls, output: ToolOutput, **kwargs: Any) -> Message:
        return cls(
            role=MessageRole.TOOL,
            content=output.content,
            tool_call_id=output.tool_call_id,
            name=output.name,
            **kwargs,
        )


# ============================================
# Conversation
# ============================================


@dataclass
class Conversation:
    """A conversation containing an ordered list of items.

    Mutated only by appending items or updating the summary. The
    position of an appended item is never reassigned.

    Attributes:
        agent_id: Agent (orchestrator instance) that owns this conversation
        id: Unique conversation identifier
        title: Conversation title
        summary: Summary of older items, placed first in assembled context
        messages: Ordered list of items
        metadata: Additional metadata
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    agent_id: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    title: Optional[str] = None
    summary: Optional[str] = None
    messages: list[Message] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.agent_id:
            raise ValueError("agent_id is required")
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def item_count(self) -> int:
        return len(self.messages)

    def add_message(self, message: Message) -> Message:
        """Append a message to this conversation.

        Returns:
            The appended message, bound to this conversation
        """
        if message.conversation_id != self.id:
            message = replace(message, conversation_id=self.id)
        self.messages.append(message)
        self.updated_at = utcnow()
        return message

    def update_summary(self, summary: Optional[str]) -> None:
        self.summary = summary
        self.updated_at = utcnow()


# ============================================
# Memory
# ============================================


@dataclass(frozen=True)
class MemoryRecord:
    """Embedding of one conversation item plus its payload.

    Created asynchronously after an item is durably appended. Never
    mutated; removed when its parent conversation is deleted.

    Attributes:
        message_id: Source conversation item
        conversation_id: Thread the item belongs to
        role: Role of the source item
        content: Source item text (needed to rebuild the item on retrieval)
        created_at: Creation timestamp of the source item
        embedding: Vector embedding
        embedding_model: Model that produced the embedding
        id: Record identifier
    """

    message_id: uuid.UUID
    conversation_id: uuid.UUID
    role: MessageRole
    content: str
    created_at: datetime
    embedding: tuple[float, ...]
    embedding_model: Optional[str] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    @classmethod
    def from_message(
        cls,
        message: Message,
        embedding: list[float],
        embedding_model: Optional[str] = None,
    ) -> MemoryRecord:
        if message.conversation_id is None:
            raise ValueError("Only appended messages can be indexed")
        return cls(
            message_id=message.id,
            conversation_id=message.conversation_id,
            role=message.role,
            content=message.content,
            created_at=message.created_at,
            embedding=tuple(embedding),
            embedding_model=embedding_model,
        )

    def to_message(self, **metadata: Any) -> Message:
        """Rebuild the conversation item this record was made from."""
        return Message(
            id=self.message_id,
            role=self.role,
            content=self.content,
            conversation_id=self.conversation_id,
            created_at=self.created_at,
            metadata={"retrieved": True, **metadata},
        )


@dataclass
class RetrievalResult:
    """A retrieved record with its ranking components.

    Ephemeral: exists only for one context-assembly pass.
    """

    record: MemoryRecord
    similarity: float
    recency: float
    same_thread: bool
    score: float = 0.0


# ============================================
# Tool System
# ============================================


@dataclass(frozen=True)
class ToolDefinition:
    """Definition of an available tool.

    Attributes:
        name: Tool name (e.g., 'get_weather')
        description: Human-readable description
        parameters: JSON Schema for parameters
        timeout_seconds: Maximum execution time (None = unbounded)
    """

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    timeout_seconds: Optional[float] = 30.0

    def to_openai_format(self) -> dict[str, Any]:
        """Convert to OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic_format(self) -> dict[str, Any]:
        """Convert to Anthropic tool use format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


class ToolCallState(str, Enum):
    """Lifecycle state of a tool call."""

    REQUESTED = "requested"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    DENIED = "denied"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallState.DENIED, ToolCallState.COMPLETED, ToolCallState.FAILED)


_TRANSITIONS: dict[ToolCallState, frozenset[ToolCallState]] = {
    ToolCallState.REQUESTED: frozenset({
        ToolCallState.AWAITING_APPROVAL,
        ToolCallState.APPROVED,
        ToolCallState.DENIED,
        ToolCallState.FAILED,
    }),
    ToolCallState.AWAITING_APPROVAL: frozenset({
        ToolCallState.APPROVED,
        ToolCallState.DENIED,
    }),
    ToolCallState.APPROVED: frozenset({ToolCallState.EXECUTING, ToolCallState.FAILED}),
    ToolCallState.EXECUTING: frozenset({ToolCallState.COMPLETED, ToolCallState.FAILED}),
    ToolCallState.DENIED: frozenset(),
    ToolCallState.COMPLETED: frozenset(),
    ToolCallState.FAILED: frozenset(),
}


class ApprovalPolicy(str, Enum):
    """Outcome of matching a tool call against the policy table."""

    AUTO_APPROVE = "auto_approve"
    REQUIRE_APPROVAL = "require_approval"
    ALWAYS_DENY = "always_deny"


@dataclass
class ToolCall:
    """A tool call tracked through its lifecycle.

    Owned by the ToolCallCoordinator; the Agent refers to it by id.

    Attributes:
        id: Tool call identifier (same as the provider's request id)
        name: Requested function name
        arguments: Arguments passed to the tool
        state: Current lifecycle state
        reason: Why the call was denied or failed (e.g. 'timeout', 'no_executor')
        output: Tool output content once terminal
        created_at: Creation timestamp
        completed_at: When the call reached a terminal state
    """

    name: str
    arguments: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: ToolCallState = ToolCallState.REQUESTED
    reason: Optional[str] = None
    output: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @classmethod
    def from_request(cls, request: ToolCallRequest) -> ToolCall:
        return cls(id=request.id, name=request.name, arguments=dict(request.arguments))

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition(self, new_state: ToolCallState, reason: Optional[str] = None) -> ToolCallState:
        """Move to a new state, rejecting illegal transitions.

        Returns:
            The previous state
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidToolCallTransition(self.id, self.state.value, new_state.value)
        previous = self.state
        self.state = new_state
        if reason is not None:
            self.reason = reason
        if new_state.is_terminal:
            self.completed_at = utcnow()
        return previous


@dataclass(frozen=True)
class ToolOutput:
    """Result of one tool call, reported back to the model.

    Attributes:
        tool_call_id: ID of the tool call this is a result for
        name: Tool name
        content: Output text (error message for failures)
        state: Terminal state of the call
        reason: Denial/failure reason, if any
    """

    tool_call_id: str
    name: str
    content: str
    state: ToolCallState
    reason: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.state != ToolCallState.COMPLETED

    @classmethod
    def from_call(cls, call: ToolCall) -> ToolOutput:
        return cls(
            tool_call_id=call.id,
            name=call.name,
            content=call.output or "",
            state=call.state,
            reason=call.reason,
        )


# ============================================
# Agent State & Parameters
# ============================================


class AgentStatus(str, Enum):
    """Agent lifecycle status. Single writer (the Agent), many readers."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    PROCESSING = "processing"
    AWAITING_TOOL_RESULT = "awaiting_tool_result"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass(frozen=True)
class MemorySettings:
    """Context-assembly settings for one turn.

    The re-ranking weights are tunable defaults.
    """

    max_context_messages: int = 20
    use_vector_store: bool = True
    retrieval_top_k: int = 5
    retrieval_min_similarity: float = 0.7
    similarity_weight: float = 0.75
    recency_weight: float = 0.20
    thread_weight: float = 0.05
    recency_half_life_seconds: float = 7 * 24 * 3600.0
    context_token_budget: Optional[int] = None

    def __post_init__(self):
        if self.max_context_messages < 0:
            raise ValueError("max_context_messages must be >= 0")
        if self.retrieval_top_k < 0:
            raise ValueError("retrieval_top_k must be >= 0")
        if self.recency_half_life_seconds <= 0:
            raise ValueError("recency_half_life_seconds must be > 0")

    @property
    def retrieval_enabled(self) -> bool:
        return self.use_vector_store and self.retrieval_top_k > 0


@dataclass(frozen=True)
class Parameters:
    """Immutable per-turn snapshot of model, sampling, tool and memory settings."""

    model: str
    system_prompt: Optional[str] = None
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    tools: tuple[ToolDefinition, ...] = ()
    memory: MemorySettings = field(default_factory=MemorySettings)


@dataclass(frozen=True)
class AgentResponse:
    """Outcome of one completed turn."""

    turn_id: str
    conversation_id: uuid.UUID
    message: Message
    tool_outputs: tuple[ToolOutput, ...] = ()
    rounds: int = 1

    @property
    def content(self) -> str:
        return self.message.content


# ============================================
# Provider Stream Events
# ============================================


class ChatEventType(str, Enum):
    """Types of normalized provider stream events."""

    TEXT_DELTA = "text_delta"  # Partial text token
    TOOL_CALL_START = "tool_call_start"  # Tool invocation begins
    TOOL_CALL_END = "tool_call_end"  # Tool invocation complete with arguments
    ERROR = "error"  # Error occurred
    DONE = "done"  # Stream finished


class ErrorType(str, Enum):
    """Types of errors in provider streams."""

    RECOVERABLE = "recoverable"  # Can retry
    FATAL = "fatal"  # Must abort
    TIMEOUT = "timeout"  # Provider timeout
    RATE_LIMIT = "rate_limit"  # Rate limited, back off
    AUTHENTICATION = "authentication"  # Bad credentials, never retry


@dataclass
class ChatEvent:
    """A normalized event from a ChatApiClient stream.

    Attributes:
        type: Event type
        sequence: Sequence number for ordering
        content: Text content (for TEXT_DELTA, ERROR)
        tool_call_id: Links TOOL_CALL_* events
        tool_name: Tool name (for TOOL_CALL_START / TOOL_CALL_END)
        tool_arguments: Tool arguments (for TOOL_CALL_END)
        error: Error message (for ERROR events)
        error_type: Type of error
        metadata: Additional event metadata
    """

    type: ChatEventType
    sequence: int = 0
    content: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_arguments: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    metadata: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {"type": self.type.value, "sequence": self.sequence}
        if self.content is not None:
            result["content"] = self.content
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        if self.tool_name is not None:
            result["tool_name"] = self.tool_name
        if self.tool_arguments is not None:
            result["tool_arguments"] = self.tool_arguments
        if self.error is not None:
            result["error"] = self.error
        if self.error_type is not None:
            result["error_type"] = self.error_type.value
        if self.metadata is not None:
            result["metadata"] = self.metadata
        return result

    @classmethod
    def text_delta(cls, text: str, sequence: int = 0) -> ChatEvent:
        """Create a text delta event."""
        return cls(type=ChatEventType.TEXT_DELTA, sequence=sequence, content=text)

    @classmethod
    def tool_call_start(cls, tool_call_id: str, name: str, sequence: int = 0) -> ChatEvent:
        """Create a tool call start event."""
        return cls(
            type=ChatEventType.TOOL_CALL_START,
            sequence=sequence,
            tool_call_id=tool_call_id,
            tool_name=name,
        )

    @classmethod
    def tool_call_end(
        cls,
        tool_call_id: str,
        arguments: dict[str, Any],
        sequence: int = 0,
        name: Optional[str] = None,
    ) -> ChatEvent:
        """Create a tool call end event."""
        return cls(
            type=ChatEventType.TOOL_CALL_END,
            sequence=sequence,
            tool_call_id=tool_call_id,
            tool_name=name,
            tool_arguments=arguments,
        )

    @classmethod
    def error_event(cls, message: str, error_type: ErrorType, sequence: int = 0) -> ChatEvent:
        """Create an error event."""
        return cls(
            type=ChatEventType.ERROR,
            sequence=sequence,
            content=message,
            error=message,
            error_type=error_type,
        )

    @classmethod
    def done(cls, sequence: int = 0, metadata: Optional[dict[str, Any]] = None) -> ChatEvent:
        """Create a done event."""
        return cls(type=ChatEventType.DONE, sequence=sequence, metadata=metadata)
