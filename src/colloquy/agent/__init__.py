"""
Colloquy Agent Orchestration Core.

Turns a sequence of user inputs into provider calls, assembles context
from recent history and retrieved long-term memory, coordinates tool
calls (including human approval) and fans out streaming events.

Architecture:
- Domain: Entities, events, errors and port interfaces
- Providers: Chat and embedding clients (Anthropic, OpenAI, Ollama)
- Memory: Conversation stores, vector indexes, indexing worker, summarizer
- Tools: Executor registry and approval policy table
- Orchestrator: Agent, MemoryEngine, ToolCallCoordinator, EventRouter

Key Features:
- Hybrid memory: recency window plus re-ranked vector retrieval
- Tool call state machine with approval gating and timeouts
- Non-blocking typed publish/subscribe event delivery
- Cancellable turns that never leave partial items behind
"""

# Domain
from .domain.entities import (
    AgentResponse,
    AgentStatus,
    ApprovalPolicy,
    Conversation,
    MemorySettings,
    Message,
    MessageRole,
    Parameters,
    ToolCall,
    ToolCallState,
    ToolDefinition,
    ToolOutput,
)
from .domain.errors import AgentError, ErrorCategory
from .domain import events

# Orchestrator
from .orchestrator import (
    Agent,
    ApprovalChannel,
    ConversationManager,
    EventRouter,
    MemoryEngine,
    ToolCallCoordinator,
)

# Tools
from .tools import ApprovalPolicyTable, ToolRegistry

# Configuration
from .config import AgentSettings, setup_logging
from .bootstrap import AgentRuntime, create_agent

__all__ = [
    # Domain
    "AgentResponse",
    "AgentStatus",
    "ApprovalPolicy",
    "Conversation",
    "MemorySettings",
    "Message",
    "MessageRole",
    "Parameters",
    "ToolCall",
    "ToolCallState",
    "ToolDefinition",
    "ToolOutput",
    "AgentError",
    "ErrorCategory",
    "events",
    # Orchestrator
    "Agent",
    "ApprovalChannel",
    "ConversationManager",
    "EventRouter",
    "MemoryEngine",
    "ToolCallCoordinator",
    # Tools
    "ApprovalPolicyTable",
    "ToolRegistry",
    # Configuration
    "AgentSettings",
    "setup_logging",
    "AgentRuntime",
    "create_agent",
]
