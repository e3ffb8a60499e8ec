"""
Approval policy table.

Each tool call is matched by exact name first, then by the longest
matching prefix wildcard ("fs_*"), else the table default.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..domain.entities import ApprovalPolicy

logger = logging.getLogger(__name__)

_POLICY_ALIASES = {
    "auto": ApprovalPolicy.AUTO_APPROVE,
    "auto_approve": ApprovalPolicy.AUTO_APPROVE,
    "allow": ApprovalPolicy.AUTO_APPROVE,
    "require": ApprovalPolicy.REQUIRE_APPROVAL,
    "require_approval": ApprovalPolicy.REQUIRE_APPROVAL,
    "ask": ApprovalPolicy.REQUIRE_APPROVAL,
    "deny": ApprovalPolicy.ALWAYS_DENY,
    "always_deny": ApprovalPolicy.ALWAYS_DENY,
}


def parse_policy(value: str) -> ApprovalPolicy:
    try:
        return _POLICY_ALIASES[value.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown approval policy: {value!r}") from None


class ApprovalPolicyTable:
    """Maps tool names to approval policies.

    Usage:
        table = ApprovalPolicyTable(default=ApprovalPolicy.REQUIRE_APPROVAL)
        table.set("get_weather", ApprovalPolicy.AUTO_APPROVE)
        table.set("delete_*", ApprovalPolicy.ALWAYS_DENY)

        table.evaluate("delete_file")  # ALWAYS_DENY
    """

    def __init__(
        self,
        rules: Optional[dict[str, ApprovalPolicy]] = None,
        default: ApprovalPolicy = ApprovalPolicy.AUTO_APPROVE,
    ):
        self.default = default
        self._exact: dict[str, ApprovalPolicy] = {}
        self._prefixes: dict[str, ApprovalPolicy] = {}
        for pattern, policy in (rules or {}).items():
            self.set(pattern, policy)

    def set(self, pattern: str, policy: ApprovalPolicy) -> None:
        """Add a rule. A trailing '*' makes it a prefix wildcard."""
        if not pattern:
            raise ValueError("Policy pattern must not be empty")
        if pattern.endswith("*"):
            self._prefixes[pattern[:-1]] = policy
        else:
            self._exact[pattern] = policy

    def evaluate(self, tool_name: str) -> ApprovalPolicy:
        """Resolve the policy for a tool name."""
        if tool_name in self._exact:
            return self._exact[tool_name]

        best: Optional[str] = None
        for prefix in self._prefixes:
            if tool_name.startswith(prefix) and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is not None:
            return self._prefixes[best]

        return self.default

    @classmethod
    def from_string(
        cls,
        spec: str,
        default: ApprovalPolicy = ApprovalPolicy.AUTO_APPROVE,
    ) -> ApprovalPolicyTable:
        """Parse 'name=policy,prefix*=policy' (e.g. 'get_*=auto,delete_*=deny').

        A bare '*=policy' entry sets the default.
        """
        table = cls(default=default)
        for entry in spec.split(","):
            entry = entry.strip()
            if not entry:
                continue
            if "=" not in entry:
                raise ValueError(f"Invalid policy entry: {entry!r}")
            pattern, value = (part.strip() for part in entry.split("=", 1))
            policy = parse_policy(value)
            if pattern == "*":
                table.default = policy
            else:
                table.set(pattern, policy)
        logger.debug(
            f"Loaded policy table: {len(table._exact)} exact, "
            f"{len(table._prefixes)} prefix rules, default={table.default.value}"
        )
        return table
