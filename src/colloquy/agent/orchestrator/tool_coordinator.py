"""
Tool Call Coordinator.

Tracks in-flight tool calls, applies the approval policy, dispatches to
registered executors and hands the outputs back to the Agent.

State machine per call:
    Requested -> (policy) -> {Approved | AwaitingApproval | Denied}
    AwaitingApproval -> {Approved | Denied}
    Approved -> Executing -> {Completed | Failed}
    Requested -> Failed            (no executor registered)
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import OrderedDict
from typing import Any, Optional, Union
from uuid import UUID

from ..domain.entities import (
    ApprovalPolicy,
    ToolCall,
    ToolCallRequest,
    ToolCallState,
    ToolOutput,
)
from ..domain.errors import ApprovalTimeoutError, ToolExecutionError
from ..domain.events import (
    ApprovalRequested,
    ApprovalResolved,
    ToolCallFinished,
    ToolCallRequested,
    ToolCallStateChanged,
)
from ..tools.policy import ApprovalPolicyTable
from ..tools.registry import RegisteredTool, ToolRegistry
from .approval_channel import ApprovalChannel, ApprovalDecision
from .event_router import EventRouter
from .event_streamer import EventStreamer

logger = logging.getLogger(__name__)

REASON_TIMEOUT = "timeout"
REASON_NO_EXECUTOR = "no_executor"
REASON_POLICY = "policy"
REASON_DENIED = "denied"
REASON_CANCELED = "canceled"
REASON_EXCEPTION = "exception"


class ToolCallCoordinator:
    """Resolves a batch of tool call requests into outputs.

    Blocks the calling turn (not other turns) until every call in the
    batch is terminal. Outputs come back in request order.

    Usage:
        coordinator = ToolCallCoordinator(
            registry=registry,
            policy=ApprovalPolicyTable(default=ApprovalPolicy.AUTO_APPROVE),
            approvals=ApprovalChannel(),
            router=router,
            approval_timeout_seconds=30,
        )

        outputs = await coordinator.handle_tool_call_requests(requests)

    Architecture:
        - Policy and approval waits happen first; approvals are awaited
          concurrently so one slow decision does not delay the others
        - Approved calls then execute one at a time in request order
        - Executor exceptions become Failed outputs, not turn failures
        - A call already executing when the turn is canceled runs to
          completion; its result is discarded
    """

    def __init__(
        self,
        registry: ToolRegistry,
        policy: Optional[ApprovalPolicyTable] = None,
        approvals: Optional[ApprovalChannel] = None,
        router: Optional[EventRouter] = None,
        approval_timeout_seconds: Optional[float] = 60.0,
        max_history: int = 1000,
    ):
        """Initialize the coordinator.

        Args:
            registry: Executors keyed by function name
            policy: Approval policy table (default: auto-approve everything)
            approvals: Channel holding calls that await a decision
            router: Router for lifecycle events when no streamer is passed
            approval_timeout_seconds: Wait bound for approval decisions
            max_history: Number of tracked calls kept for lookup
        """
        self.registry = registry
        self.policy = policy or ApprovalPolicyTable()
        self.approvals = approvals or ApprovalChannel()
        self.router = router
        self.approval_timeout_seconds = approval_timeout_seconds
        self.max_history = max_history
        self._calls: OrderedDict[str, ToolCall] = OrderedDict()
        self._detached: set[asyncio.Task] = set()

    # ============================================
    # Public API
    # ============================================

    def get(self, tool_call_id: str) -> Optional[ToolCall]:
        """Look up a tracked tool call by id."""
        return self._calls.get(tool_call_id)

    def resolve(self, tool_call_id: str, approved: bool, reason: Optional[str] = None) -> bool:
        """Deliver an approval decision (shortcut to the approval channel)."""
        return self.approvals.resolve(tool_call_id, approved, reason)

    @property
    def detached_executions(self) -> int:
        """Executions still running after their turn was canceled."""
        return len(self._detached)

    async def handle_tool_call_requests(
        self,
        requests: list[ToolCallRequest],
        streamer: Optional[EventStreamer] = None,
        conversation_id: Optional[UUID] = None,
    ) -> list[ToolOutput]:
        """Drive every requested call to a terminal state.

        Args:
            requests: Tool calls requested by the model, in order
            streamer: Per-turn event streamer (sequence + correlation id)
            conversation_id: Conversation the calls belong to

        Returns:
            One ToolOutput per request, in request order
        """
        if streamer is None:
            streamer = EventStreamer(self.router, conversation_id=conversation_id)
        if conversation_id is None:
            conversation_id = streamer.conversation_id

        calls = [self._track(ToolCall.from_request(request)) for request in requests]
        logger.info(f"Handling {len(calls)} tool call(s): {[c.name for c in calls]}")

        try:
            for call in calls:
                streamer.emit(
                    ToolCallRequested,
                    tool_call_id=call.id,
                    tool_name=call.name,
                    arguments=dict(call.arguments),
                )
                self._apply_policy(call, streamer, conversation_id)

            await self._collect_approvals(calls, streamer)

            for call in calls:
                if call.state == ToolCallState.APPROVED:
                    await self._execute(call, streamer)

        except asyncio.CancelledError:
            self._abandon(calls, streamer)
            raise

        for call in calls:
            streamer.emit(
                ToolCallFinished,
                tool_call_id=call.id,
                tool_name=call.name,
                state=call.state,
                content=call.output or "",
                reason=call.reason,
            )

        return [ToolOutput.from_call(call) for call in calls]

    # ============================================
    # Policy & Approval
    # ============================================

    def _apply_policy(
        self,
        call: ToolCall,
        streamer: EventStreamer,
        conversation_id: Optional[UUID],
    ) -> None:
        policy = self.policy.evaluate(call.name)
        logger.debug(f"Policy for {call.name}: {policy.value}")

        if policy == ApprovalPolicy.ALWAYS_DENY:
            self._deny(call, streamer, REASON_POLICY)
            return

        # Nothing to approve without an executor
        if self.registry.lookup(call.name) is None:
            logger.warning(f"No executor registered for tool {call.name!r}")
            self._fail(call, streamer, REASON_NO_EXECUTOR, f"Tool '{call.name}' is not available: no executor registered.")
            return

        if policy == ApprovalPolicy.AUTO_APPROVE:
            self._transition(call, ToolCallState.APPROVED, streamer)
        else:
            self._transition(call, ToolCallState.AWAITING_APPROVAL, streamer)
            self.approvals.open(call, conversation_id)
            streamer.emit(
                ApprovalRequested,
                tool_call_id=call.id,
                tool_name=call.name,
                arguments=dict(call.arguments),
                timeout_seconds=self.approval_timeout_seconds,
            )

    async def _collect_approvals(self, calls: list[ToolCall], streamer: EventStreamer) -> None:
        awaiting = [c for c in calls if c.state == ToolCallState.AWAITING_APPROVAL]
        if not awaiting:
            return

        decisions = await asyncio.gather(*(self._wait_for_decision(c) for c in awaiting))

        for call, decision in zip(awaiting, decisions):
            if isinstance(decision, ApprovalTimeoutError):
                streamer.emit(
                    ApprovalResolved,
                    tool_call_id=call.id,
                    tool_name=call.name,
                    approved=False,
                    reason=REASON_TIMEOUT,
                )
                self._deny(call, streamer, REASON_TIMEOUT)
                continue

            streamer.emit(
                ApprovalResolved,
                tool_call_id=call.id,
                tool_name=call.name,
                approved=decision.approved,
                reason=decision.reason,
            )
            if decision.approved:
                self._transition(call, ToolCallState.APPROVED, streamer)
            else:
                self._deny(call, streamer, decision.reason or REASON_DENIED)

    async def _wait_for_decision(
        self, call: ToolCall
    ) -> Union[ApprovalDecision, ApprovalTimeoutError]:
        try:
            return await self.approvals.wait(call.id, timeout=self.approval_timeout_seconds)
        except ApprovalTimeoutError as e:
            logger.warning(str(e))
            return e

    # ============================================
    # Execution
    # ============================================

    async def _execute(self, call: ToolCall, streamer: EventStreamer) -> None:
        tool = self.registry.lookup(call.name)
        if tool is None:
            self._fail(call, streamer, REASON_NO_EXECUTOR, f"Tool '{call.name}' is not available: no executor registered.")
            return

        self._transition(call, ToolCallState.EXECUTING, streamer)
        logger.info(f"Executing tool: {call.name}")

        task = asyncio.ensure_future(self._invoke(tool, call.arguments))
        timeout = tool.definition.timeout_seconds

        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            self._detach(call, task, streamer)
            self._fail(call, streamer, REASON_TIMEOUT, f"Tool '{call.name}' timed out after {timeout}s")
            return
        except asyncio.CancelledError:
            self._detach(call, task, streamer)
            raise
        except Exception as e:
            error = ToolExecutionError(call.name, str(e), original_error=e)
            logger.warning(f"Tool execution failed: {call.name}: {error}")
            self._fail(call, streamer, REASON_EXCEPTION, f"Tool '{call.name}' failed: {e}")
            return

        call.output = self._format_result(result)
        self._transition(call, ToolCallState.COMPLETED, streamer)
        logger.debug(f"Tool {call.name} result: {call.output[:200]}")

    async def _invoke(self, tool: RegisteredTool, arguments: dict[str, Any]) -> Any:
        fn = tool.executor
        if inspect.iscoroutinefunction(fn):
            result = await fn(**arguments)
        else:
            result = await asyncio.to_thread(fn, **arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _detach(self, call: ToolCall, task: asyncio.Task, streamer: EventStreamer) -> None:
        """Let an in-flight execution finish in the background; discard its result."""
        if task.done():
            return
        self._detached.add(task)

        def _on_done(t: asyncio.Task) -> None:
            self._detached.discard(t)
            if t.cancelled():
                outcome = "was cancelled"
            elif t.exception() is not None:
                outcome = f"failed: {t.exception()}"
            else:
                outcome = "completed"
            logger.info(f"Detached execution of {call.name} ({call.id}) {outcome}; result discarded")

        task.add_done_callback(_on_done)

    def _abandon(self, calls: list[ToolCall], streamer: EventStreamer) -> None:
        """Bring every non-terminal call to a terminal state after cancellation."""
        for call in calls:
            if call.is_terminal:
                continue
            if call.state in (ToolCallState.REQUESTED, ToolCallState.AWAITING_APPROVAL):
                self.approvals.discard(call.id)
                self._deny(call, streamer, REASON_CANCELED)
            else:
                self._fail(call, streamer, REASON_CANCELED, f"Tool '{call.name}' was canceled with its turn.")
        logger.info(f"Abandoned tool batch of {len(calls)} call(s) after cancellation")

    # ============================================
    # Helpers
    # ============================================

    def _track(self, call: ToolCall) -> ToolCall:
        self._calls[call.id] = call
        self._calls.move_to_end(call.id)
        while len(self._calls) > self.max_history:
            oldest_id, oldest = next(iter(self._calls.items()))
            if not oldest.is_terminal:
                break
            del self._calls[oldest_id]
        return call

    def _transition(
        self,
        call: ToolCall,
        state: ToolCallState,
        streamer: EventStreamer,
        reason: Optional[str] = None,
    ) -> None:
        previous = call.transition(state, reason)
        streamer.emit(
            ToolCallStateChanged,
            tool_call_id=call.id,
            tool_name=call.name,
            previous=previous,
            current=state,
            reason=reason,
        )

    def _deny(self, call: ToolCall, streamer: EventStreamer, reason: str) -> None:
        call.output = f"Tool call '{call.name}' was denied ({reason})."
        self._transition(call, ToolCallState.DENIED, streamer, reason)

    def _fail(self, call: ToolCall, streamer: EventStreamer, reason: str, message: str) -> None:
        call.output = message
        self._transition(call, ToolCallState.FAILED, streamer, reason)

    @staticmethod
    def _format_result(result: Any) -> str:
        if result is None:
            return ""
        if isinstance(result, str):
            return result
        try:
            return json.dumps(result, default=str)
        except (TypeError, ValueError):
            return str(result)
