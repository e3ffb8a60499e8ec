"""Domain entities, events, errors and port interfaces for the agent module."""

from .entities import (
    AgentResponse,
    AgentStatus,
    ApprovalPolicy,
    ChatEvent,
    ChatEventType,
    Conversation,
    ErrorType,
    MemoryRecord,
    MemorySettings,
    Message,
    MessageRole,
    Parameters,
    RetrievalResult,
    ToolCall,
    ToolCallRequest,
    ToolCallState,
    ToolDefinition,
    ToolOutput,
)
from .errors import (
    AgentError,
    AgentNotReadyError,
    AgentStoppedError,
    ApprovalTimeoutError,
    AuthenticationError,
    EmbeddingError,
    ErrorCategory,
    InvalidToolCallTransition,
    MemoryRetrievalError,
    ProviderError,
    StorageError,
    ToolExecutionError,
    ToolLoopExceeded,
    TransientProviderError,
    TurnCanceledError,
    VectorIndexUnavailableError,
)
from .ports import (
    IChatApiClient,
    IConversationStore,
    IEmbeddingProvider,
    IVectorIndex,
)

__all__ = [
    # Entities
    "AgentResponse",
    "AgentStatus",
    "ApprovalPolicy",
    "ChatEvent",
    "ChatEventType",
    "Conversation",
    "ErrorType",
    "MemoryRecord",
    "MemorySettings",
    "Message",
    "MessageRole",
    "Parameters",
    "RetrievalResult",
    "ToolCall",
    "ToolCallRequest",
    "ToolCallState",
    "ToolDefinition",
    "ToolOutput",
    # Errors
    "AgentError",
    "AgentNotReadyError",
    "AgentStoppedError",
    "ApprovalTimeoutError",
    "AuthenticationError",
    "EmbeddingError",
    "ErrorCategory",
    "InvalidToolCallTransition",
    "MemoryRetrievalError",
    "ProviderError",
    "StorageError",
    "ToolExecutionError",
    "ToolLoopExceeded",
    "TransientProviderError",
    "TurnCanceledError",
    "VectorIndexUnavailableError",
    # Ports
    "IChatApiClient",
    "IConversationStore",
    "IEmbeddingProvider",
    "IVectorIndex",
]
