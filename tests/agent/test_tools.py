"""
Unit tests for the tool registry and approval policy table.
"""

import pytest

from colloquy.agent.domain.entities import ApprovalPolicy, ToolDefinition
from colloquy.agent.tools.policy import ApprovalPolicyTable, parse_policy
from colloquy.agent.tools.registry import ToolRegistry


class TestToolRegistry:
    """Tests for ToolRegistry."""

    def test_register_and_lookup(self):
        registry = ToolRegistry()

        def get_weather(city: str) -> str:
            """Current weather for a city."""
            return "sunny"

        registry.register("get_weather", get_weather, timeout_seconds=5)

        tool = registry.lookup("get_weather")
        assert tool.executor is get_weather
        assert tool.definition.description == "Current weather for a city."
        assert tool.definition.timeout_seconds == 5
        assert "get_weather" in registry
        assert registry.lookup("missing") is None

    def test_decorator_registration(self):
        registry = ToolRegistry()

        @registry.tool(description="Add two numbers")
        def add(a: int, b: int) -> int:
            return a + b

        assert add(1, 2) == 3
        assert [d.name for d in registry.definitions()] == ["add"]

    def test_replacing_and_unregistering(self):
        registry = ToolRegistry()
        registry.register("echo", lambda text: text)
        registry.register("echo", lambda text: text.upper())

        assert len(registry) == 1
        assert registry.lookup("echo").executor("a") == "A"
        assert registry.unregister("echo") is True
        assert registry.unregister("echo") is False

    def test_rejects_invalid_registrations(self):
        registry = ToolRegistry()

        with pytest.raises(ValueError):
            registry.register("", lambda: None)
        with pytest.raises(TypeError):
            registry.register("not_callable", "nope")
        with pytest.raises(ValueError):
            registry.register("a", lambda: None, definition=ToolDefinition(name="b"))

    def test_definition_formats(self):
        definition = ToolDefinition(
            name="search",
            description="Search documents",
            parameters={"type": "object", "properties": {"q": {"type": "string"}}},
        )

        assert definition.to_openai_format()["function"]["name"] == "search"
        assert definition.to_anthropic_format()["input_schema"]["properties"]["q"]["type"] == "string"


class TestApprovalPolicyTable:
    """Tests for policy matching."""

    def test_exact_beats_prefix(self):
        table = ApprovalPolicyTable(
            {"fs_*": ApprovalPolicy.ALWAYS_DENY, "fs_read": ApprovalPolicy.AUTO_APPROVE}
        )

        assert table.evaluate("fs_read") == ApprovalPolicy.AUTO_APPROVE
        assert table.evaluate("fs_write") == ApprovalPolicy.ALWAYS_DENY

    def test_longest_prefix_wins(self):
        table = ApprovalPolicyTable(
            {"db_*": ApprovalPolicy.REQUIRE_APPROVAL, "db_drop_*": ApprovalPolicy.ALWAYS_DENY}
        )

        assert table.evaluate("db_drop_table") == ApprovalPolicy.ALWAYS_DENY
        assert table.evaluate("db_select") == ApprovalPolicy.REQUIRE_APPROVAL

    def test_default_applies_to_unmatched(self):
        table = ApprovalPolicyTable(default=ApprovalPolicy.REQUIRE_APPROVAL)

        assert table.evaluate("anything") == ApprovalPolicy.REQUIRE_APPROVAL

    def test_from_string(self):
        table = ApprovalPolicyTable.from_string("get_*=auto, delete_*=deny, send_email=ask, *=require")

        assert table.evaluate("get_weather") == ApprovalPolicy.AUTO_APPROVE
        assert table.evaluate("delete_file") == ApprovalPolicy.ALWAYS_DENY
        assert table.evaluate("send_email") == ApprovalPolicy.REQUIRE_APPROVAL
        assert table.default == ApprovalPolicy.REQUIRE_APPROVAL

    def test_from_string_rejects_garbage(self):
        with pytest.raises(ValueError):
            ApprovalPolicyTable.from_string("get_weather")
        with pytest.raises(ValueError):
            ApprovalPolicyTable.from_string("get_weather=maybe")

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("AUTO", ApprovalPolicy.AUTO_APPROVE),
            (" require_approval ", ApprovalPolicy.REQUIRE_APPROVAL),
            ("deny", ApprovalPolicy.ALWAYS_DENY),
        ],
    )
    def test_parse_policy(self, value, expected):
        assert parse_policy(value) == expected
