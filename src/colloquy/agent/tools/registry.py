"""
Tool Registry.

Maps function names to executors and their definitions. The registry is
injected into the ToolCallCoordinator; there is no global instance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from ..domain.entities import ToolDefinition

logger = logging.getLogger(__name__)

ToolExecutorFn = Callable[..., Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class RegisteredTool:
    """A tool definition with the callable that executes it."""

    definition: ToolDefinition
    executor: ToolExecutorFn

    @property
    def name(self) -> str:
        return self.definition.name


class ToolRegistry:
    """Registry of tool executors keyed by function name.

    Executors receive the call arguments as keyword arguments and may be
    plain functions or coroutine functions.

    Usage:
        registry = ToolRegistry()

        async def get_weather(city: str) -> dict:
            ...

        registry.register("get_weather", get_weather, description="Current weather")

        @registry.tool(description="Add two numbers")
        def add(a: int, b: int) -> int:
            return a + b

        executor = registry.lookup("get_weather")
    """

    def __init__(self):
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        executor: ToolExecutorFn,
        description: str = "",
        parameters: Optional[dict[str, Any]] = None,
        timeout_seconds: Optional[float] = 30.0,
        definition: Optional[ToolDefinition] = None,
    ) -> RegisteredTool:
        """Register (or replace) an executor under a function name."""
        if not name:
            raise ValueError("Tool name is required")
        if not callable(executor):
            raise TypeError(f"Executor for {name!r} is not callable")

        if definition is None:
            definition = ToolDefinition(
                name=name,
                description=description or (executor.__doc__ or "").strip(),
                parameters=parameters or {"type": "object", "properties": {}},
                timeout_seconds=timeout_seconds,
            )
        elif definition.name != name:
            raise ValueError(f"Definition name {definition.name!r} does not match {name!r}")

        if name in self._tools:
            logger.info(f"Replacing executor for tool {name!r}")

        tool = RegisteredTool(definition=definition, executor=executor)
        self._tools[name] = tool
        logger.debug(f"Registered tool {name!r}")
        return tool

    def tool(
        self,
        name: Optional[str] = None,
        description: str = "",
        parameters: Optional[dict[str, Any]] = None,
        timeout_seconds: Optional[float] = 30.0,
    ) -> Callable[[ToolExecutorFn], ToolExecutorFn]:
        """Decorator form of register()."""

        def decorator(fn: ToolExecutorFn) -> ToolExecutorFn:
            self.register(
                name or fn.__name__,
                fn,
                description=description,
                parameters=parameters,
                timeout_seconds=timeout_seconds,
            )
            return fn

        return decorator

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def lookup(self, name: str) -> Optional[RegisteredTool]:
        """Return the registered tool, or None if no executor exists."""
        return self._tools.get(name)

    def definitions(self) -> list[ToolDefinition]:
        """All tool definitions, in registration order."""
        return [tool.definition for tool in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
