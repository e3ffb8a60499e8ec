"""Tool system for the agent.

Provides:
- Tool registry mapping function names to executors
- Approval policy table (exact, prefix wildcard, default)
"""

from .policy import ApprovalPolicyTable, parse_policy
from .registry import RegisteredTool, ToolRegistry

__all__ = [
    "ApprovalPolicyTable",
    "RegisteredTool",
    "ToolRegistry",
    "parse_policy",
]
