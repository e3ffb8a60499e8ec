"""
Error taxonomy for the agent orchestration core.

Errors local to one tool call are contained and reported back to the
model. Errors affecting the whole turn abort it and surface both as an
exception and as a TurnFailed event.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Categorized reason carried by every AgentError."""

    TRANSIENT_PROVIDER = "transient_provider"
    AUTHENTICATION = "authentication"
    PROVIDER = "provider"
    TOOL_EXECUTION = "tool_execution"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"
    MEMORY_RETRIEVAL = "memory_retrieval"
    APPROVAL_TIMEOUT = "approval_timeout"
    AGENT_STATE = "agent_state"
    CANCELED = "canceled"
    STORAGE = "storage"
    INTERNAL = "internal"


class AgentError(Exception):
    """Base exception for the orchestration core."""

    category: ErrorCategory = ErrorCategory.INTERNAL
    retryable: bool = False

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        retryable: Optional[bool] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category
        if retryable is not None:
            self.retryable = retryable
        self.original_error = original_error


class TransientProviderError(AgentError):
    """Network/timeout/rate-limit failure; retryable by caller policy."""

    category = ErrorCategory.TRANSIENT_PROVIDER
    retryable = True


class AuthenticationError(AgentError):
    """Provider rejected credentials. Never retried."""

    category = ErrorCategory.AUTHENTICATION


class ProviderError(AgentError):
    """Non-transient provider failure."""

    category = ErrorCategory.PROVIDER


class ToolExecutionError(AgentError):
    """A tool executor raised. Reported to the model, not fatal to the turn."""

    category = ErrorCategory.TOOL_EXECUTION

    def __init__(self, tool_name: str, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message, original_error=original_error)
        self.tool_name = tool_name


class ToolLoopExceeded(AgentError):
    """The model kept requesting tools past the configured round limit."""

    category = ErrorCategory.TOOL_LOOP_EXCEEDED

    def __init__(self, max_rounds: int):
        super().__init__(f"Tool loop exceeded maximum of {max_rounds} rounds")
        self.max_rounds = max_rounds


class MemoryRetrievalError(AgentError):
    """Long-term retrieval failed. Context assembly degrades to recency-only."""

    category = ErrorCategory.MEMORY_RETRIEVAL
    retryable = True


class EmbeddingError(MemoryRetrievalError):
    """Embedding provider failed to produce a vector."""


class VectorIndexUnavailableError(MemoryRetrievalError):
    """Vector index cannot serve queries right now."""


class ApprovalTimeoutError(AgentError):
    """No approval decision arrived in time; the call is denied."""

    category = ErrorCategory.APPROVAL_TIMEOUT

    def __init__(self, tool_call_id: str, timeout_seconds: float):
        super().__init__(
            f"Approval for tool call {tool_call_id} timed out after {timeout_seconds}s"
        )
        self.tool_call_id = tool_call_id
        self.timeout_seconds = timeout_seconds


class InvalidToolCallTransition(AgentError):
    """Illegal state transition on a ToolCall."""

    category = ErrorCategory.INTERNAL

    def __init__(self, tool_call_id: str, from_state: str, to_state: str):
        super().__init__(
            f"Tool call {tool_call_id}: illegal transition {from_state} -> {to_state}"
        )
        self.tool_call_id = tool_call_id
        self.from_state = from_state
        self.to_state = to_state


class AgentNotReadyError(AgentError):
    """A turn was requested while the agent cannot accept one."""

    category = ErrorCategory.AGENT_STATE

    def __init__(self, status: str):
        super().__init__(f"Agent is not ready (status={status})")
        self.status = status


class AgentStoppedError(AgentNotReadyError):
    """The agent has been stopped; it accepts no further turns."""


class TurnCanceledError(AgentError):
    """The turn was canceled through Agent.cancel()."""

    category = ErrorCategory.CANCELED

    def __init__(self, turn_id: str):
        super().__init__(f"Turn {turn_id} was canceled")
        self.turn_id = turn_id


class StorageError(AgentError):
    """The conversation store failed to persist or load."""

    category = ErrorCategory.STORAGE
    retryable = True
