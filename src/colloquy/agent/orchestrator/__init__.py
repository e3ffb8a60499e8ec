"""Agent Orchestrator.

The orchestrator composes the components of one agent:
- Chat client for response generation
- Memory engine for context assembly and long-term indexing
- Tool call coordinator for policy, approval and execution
- Event router for lifecycle, streaming and tool events

Provides:
- Agent (per-turn state machine)
- Conversation lifecycle management
- Approval channel for externally resolved tool calls
- Per-turn event streaming
"""

from .agent import Agent
from .approval_channel import ApprovalChannel, ApprovalDecision, PendingApproval
from .conversation_manager import ConversationManager
from .event_router import EventRouter
from .event_streamer import EventStreamer
from .memory_engine import MemoryEngine, estimate_tokens, item_key
from .tool_coordinator import ToolCallCoordinator

__all__ = [
    # Main orchestrator
    "Agent",
    # Core components
    "MemoryEngine",
    "ToolCallCoordinator",
    "EventRouter",
    "EventStreamer",
    "ConversationManager",
    "ApprovalChannel",
    "ApprovalDecision",
    "PendingApproval",
    # Helpers
    "estimate_tokens",
    "item_key",
]
