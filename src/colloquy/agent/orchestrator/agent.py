"""
Agent Orchestrator.

Owns the per-turn state machine and composes the memory engine, the
chat client, the tool call coordinator and the event router to run one
conversational turn end-to-end.

Status machine:
    Uninitialized -> Initializing -> Ready -> Processing -> {Ready | Error}
    Processing <-> AwaitingToolResult   (once per tool round)
    any -> Stopped                      (terminal)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from typing import Optional
from uuid import UUID

from ..domain.entities import (
    AgentResponse,
    AgentStatus,
    ChatEvent,
    ChatEventType,
    Conversation,
    ErrorType,
    Message,
    MessageRole,
    Parameters,
    ToolCallRequest,
    ToolOutput,
)
from ..domain.errors import (
    AgentError,
    AgentNotReadyError,
    AgentStoppedError,
    AuthenticationError,
    ErrorCategory,
    ProviderError,
    ToolLoopExceeded,
    TransientProviderError,
    TurnCanceledError,
)
from ..domain.events import (
    ConversationSummarized,
    StatusChanged,
    TextDelta,
    TurnCanceled,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
)
from ..domain.ports import IChatApiClient
from ..memory.long_term import ConversationSummarizer
from .conversation_manager import ConversationManager
from .event_router import EventRouter
from .event_streamer import EventStreamer
from .memory_engine import MemoryEngine
from .tool_coordinator import ToolCallCoordinator

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ROUNDS = 8

_PROVIDER_ERRORS: dict[ErrorType, type[AgentError]] = {
    ErrorType.RECOVERABLE: TransientProviderError,
    ErrorType.TIMEOUT: TransientProviderError,
    ErrorType.RATE_LIMIT: TransientProviderError,
    ErrorType.AUTHENTICATION: AuthenticationError,
    ErrorType.FATAL: ProviderError,
}

# Statuses from which a new turn may start
_ACCEPTING = (AgentStatus.READY, AgentStatus.ERROR)


class Agent:
    """One orchestrator instance bound to one conversation.

    A turn runs at a time; a send() while a turn is in flight is rejected
    rather than queued. Independent Agent instances may run concurrently.

    Usage:
        agent = Agent(
            agent_id="support-bot",
            chat_client=client,
            memory_engine=MemoryEngine(embedder, index, router),
            coordinator=ToolCallCoordinator(registry, router=router),
            router=router,
            conversations=ConversationManager(store),
            parameters=settings.parameters(tuple(registry.definitions())),
        )

        async with agent:
            response = await agent.send("What's the weather in Oslo?")
            print(response.content)

    Architecture:
        - Turn items (user input, assistant rounds, tool outputs) are staged
          and committed to the conversation only when the turn completes
        - Cancellation and failures leave the conversation untouched
        - Indexing and summarization run in the background after commit
    """

    def __init__(
        self,
        agent_id: str,
        chat_client: IChatApiClient,
        memory_engine: MemoryEngine,
        coordinator: ToolCallCoordinator,
        router: Optional[EventRouter] = None,
        conversations: Optional[ConversationManager] = None,
        parameters: Optional[Parameters] = None,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        summarizer: Optional[ConversationSummarizer] = None,
    ):
        """Initialize the agent.

        Args:
            agent_id: Owner id for conversations created by this agent
            chat_client: Provider client
            memory_engine: Context assembly and indexing
            coordinator: Tool call coordinator
            router: Event router (a private one is created if None)
            conversations: Conversation lifecycle manager (in-memory if None)
            parameters: Default per-turn parameters
            max_tool_rounds: Tool rounds allowed before ToolLoopExceeded
            summarizer: Optional background conversation summarizer
        """
        if max_tool_rounds < 0:
            raise ValueError("max_tool_rounds must be >= 0")

        self.agent_id = agent_id
        self.chat_client = chat_client
        self.memory_engine = memory_engine
        self.coordinator = coordinator
        self.router = router or EventRouter()
        self.conversations = conversations or ConversationManager(memory_engine=memory_engine)
        self.parameters = parameters or Parameters(model=chat_client.model_name)
        self.max_tool_rounds = max_tool_rounds
        self.summarizer = summarizer

        self._status = AgentStatus.UNINITIALIZED
        self._conversation: Optional[Conversation] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._turn_id: Optional[str] = None
        self._cancel_requested = False
        self._committing = False
        self._background: set[asyncio.Task] = set()

    # ============================================
    # State
    # ============================================

    @property
    def status(self) -> AgentStatus:
        return self._status

    @property
    def conversation(self) -> Optional[Conversation]:
        return self._conversation

    @property
    def conversation_id(self) -> Optional[UUID]:
        return self._conversation.id if self._conversation else None

    @property
    def current_turn_id(self) -> Optional[str]:
        """Id of the turn in flight, if any."""
        return self._turn_id

    def _set_status(self, status: AgentStatus, streamer: Optional[EventStreamer] = None) -> None:
        previous = self._status
        if previous == status:
            return
        self._status = status
        logger.debug(f"Agent {self.agent_id}: {previous.value} -> {status.value}")
        if streamer is not None:
            streamer.emit(StatusChanged, previous=previous, current=status)
        else:
            self.router.publish(
                StatusChanged(conversation_id=self.conversation_id, previous=previous, current=status)
            )

    # ============================================
    # Lifecycle
    # ============================================

    async def initialize(self, conversation_id: Optional[UUID] = None) -> Conversation:
        """Load (or create) the conversation and become Ready.

        Calling it again on a Ready agent returns the current conversation.
        """
        if self._status == AgentStatus.STOPPED:
            raise AgentStoppedError(self._status.value)
        if self._status != AgentStatus.UNINITIALIZED:
            return self._conversation

        self._set_status(AgentStatus.INITIALIZING)
        try:
            self._conversation = await self.conversations.get_or_create(
                conversation_id, agent_id=self.agent_id
            )
        except Exception as e:
            logger.error(f"Agent {self.agent_id} failed to initialize: {e}")
            self._set_status(AgentStatus.ERROR)
            raise

        self._set_status(AgentStatus.READY)
        logger.info(
            f"Agent {self.agent_id} ready on conversation {self._conversation.id} "
            f"({self._conversation.item_count} items)"
        )
        return self._conversation

    async def stop(self) -> None:
        """Stop the agent. Cancels a turn in flight; Stopped is terminal."""
        if self._status == AgentStatus.STOPPED:
            return

        task = self._turn_task
        self._set_status(AgentStatus.STOPPED)

        if task is not None and not task.done():
            self._cancel_requested = True
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.memory_engine.drain()
        logger.info(f"Agent {self.agent_id} stopped")

    async def __aenter__(self) -> Agent:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # ============================================
    # Turns
    # ============================================

    async def send(self, user_input: str, parameters: Optional[Parameters] = None) -> AgentResponse:
        """Run one turn and return the final assistant response.

        Accepted from Ready, and also from Error: a failed turn leaves the
        conversation unchanged, so the next send() starts a fresh turn
        without an explicit reset.

        Args:
            user_input: The user's message
            parameters: Overrides for this turn (defaults to self.parameters)

        Returns:
            AgentResponse with the final assistant item

        Raises:
            AgentNotReadyError: A turn is in flight or the agent is not initialized
            AgentStoppedError: The agent was stopped
            TurnCanceledError: cancel() was called during the turn
            AgentError: Any turn failure (TransientProviderError, ToolLoopExceeded, ...)
        """
        if self._status == AgentStatus.STOPPED:
            raise AgentStoppedError(self._status.value)
        if self._status not in _ACCEPTING or self._conversation is None:
            raise AgentNotReadyError(self._status.value)

        turn_id = str(uuid.uuid4())
        params = parameters or self.parameters
        streamer = EventStreamer(self.router, conversation_id=self._conversation.id, turn_id=turn_id)

        self._turn_id = turn_id
        self._cancel_requested = False
        self._set_status(AgentStatus.PROCESSING, streamer)

        self._turn_task = asyncio.create_task(
            self._run_turn(user_input, params, streamer),
            name=f"turn-{turn_id}",
        )
        try:
            return await self._turn_task
        except asyncio.CancelledError:
            if self._cancel_requested:
                raise TurnCanceledError(turn_id) from None
            raise
        finally:
            self._turn_task = None
            self._turn_id = None

    def cancel(self) -> bool:
        """Cancel the turn in flight.

        Returns:
            True if a turn was canceled, False if there was nothing to cancel
        """
        task = self._turn_task
        if task is None or task.done() or self._committing:
            return False
        logger.info(f"Canceling turn {self._turn_id}")
        self._cancel_requested = True
        task.cancel()
        return True

    def resolve_approval(self, tool_call_id: str, approved: bool, reason: Optional[str] = None) -> bool:
        """Answer an ApprovalRequested event."""
        return self.coordinator.resolve(tool_call_id, approved, reason)

    async def _run_turn(self, user_input: str, params: Parameters, streamer: EventStreamer) -> AgentResponse:
        conversation = self._conversation
        turn_id = streamer.turn_id
        staged: list[Message] = []
        tool_outputs: list[ToolOutput] = []

        user_message = Message.user(user_input, conversation_id=conversation.id)
        staged.append(user_message)
        streamer.emit(TurnStarted, user_input=user_input)
        logger.info(f"Turn {turn_id} started on conversation {conversation.id}")

        try:
            context = await self.memory_engine.assemble_context(conversation, user_message, params.memory)

            rounds = 0
            tool_rounds = 0
            while True:
                rounds += 1
                text, requests = await self._stream_response(context, params, streamer, rounds)

                assistant_message = Message.assistant(
                    text,
                    conversation_id=conversation.id,
                    tool_calls=tuple(requests),
                    model_used=params.model or self.chat_client.model_name,
                )
                staged.append(assistant_message)
                context.append(assistant_message)

                if not requests:
                    break

                if tool_rounds >= self.max_tool_rounds:
                    raise ToolLoopExceeded(self.max_tool_rounds)
                tool_rounds += 1

                self._set_status(AgentStatus.AWAITING_TOOL_RESULT, streamer)
                outputs = await self.coordinator.handle_tool_call_requests(
                    requests, streamer=streamer, conversation_id=conversation.id
                )
                self._set_status(AgentStatus.PROCESSING, streamer)

                for output in outputs:
                    tool_message = Message.tool(output, conversation_id=conversation.id)
                    staged.append(tool_message)
                    context.append(tool_message)
                tool_outputs.extend(outputs)

            self._committing = True
            try:
                appended = await self.conversations.append_items(conversation, staged)
            finally:
                self._committing = False

        except asyncio.CancelledError:
            logger.info(f"Turn {turn_id} canceled, conversation left at {conversation.item_count} items")
            if self._status != AgentStatus.STOPPED:
                self._set_status(AgentStatus.READY, streamer)
            streamer.emit(TurnCanceled)
            raise

        except AgentError as e:
            self._fail_turn(e, streamer)
            raise

        except Exception as e:
            logger.exception(f"Turn {turn_id} failed unexpectedly: {e}")
            error = AgentError(f"Turn failed: {e}", category=ErrorCategory.INTERNAL, original_error=e)
            self._fail_turn(error, streamer)
            raise error from e

        self.memory_engine.index_items(appended, turn_id=turn_id)

        final = next(m for m in reversed(appended) if m.role == MessageRole.ASSISTANT)
        response = AgentResponse(
            turn_id=turn_id,
            conversation_id=conversation.id,
            message=final,
            tool_outputs=tuple(tool_outputs),
            rounds=rounds,
        )

        self._set_status(AgentStatus.READY, streamer)
        streamer.emit(TurnCompleted, response=response)
        logger.info(
            f"Turn {turn_id} completed: {len(appended)} items appended, "
            f"{len(tool_outputs)} tool call(s), {rounds} round(s)"
        )

        self._maybe_summarize(conversation, params)
        return response

    async def _stream_response(
        self,
        context: list[Message],
        params: Parameters,
        streamer: EventStreamer,
        round_number: int,
    ) -> tuple[str, list[ToolCallRequest]]:
        """Consume one provider stream.

        Returns:
            (assistant text, tool call requests in stream order)
        """
        parts: list[str] = []
        requests: list[ToolCallRequest] = []
        names: dict[str, str] = {}

        stream = self.chat_client.send(list(context), params)
        try:
            async for event in stream:
                if event.type == ChatEventType.TEXT_DELTA:
                    if event.content:
                        parts.append(event.content)
                        streamer.emit(TextDelta, text=event.content, round=round_number)

                elif event.type == ChatEventType.TOOL_CALL_START:
                    if event.tool_call_id and event.tool_name:
                        names[event.tool_call_id] = event.tool_name

                elif event.type == ChatEventType.TOOL_CALL_END:
                    name = event.tool_name or names.get(event.tool_call_id or "")
                    if not event.tool_call_id or not name:
                        logger.warning(f"Ignoring tool call without id or name: {event.to_dict()}")
                        continue
                    requests.append(
                        ToolCallRequest(
                            id=event.tool_call_id,
                            name=name,
                            arguments=event.tool_arguments or {},
                        )
                    )

                elif event.type == ChatEventType.ERROR:
                    raise self._provider_error(event)

                elif event.type == ChatEventType.DONE:
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        return "".join(parts), requests

    @staticmethod
    def _provider_error(event: ChatEvent) -> AgentError:
        error_cls = _PROVIDER_ERRORS.get(event.error_type or ErrorType.FATAL, ProviderError)
        return error_cls(event.error or event.content or "Provider error")

    def _fail_turn(self, error: AgentError, streamer: EventStreamer) -> None:
        logger.error(f"Turn {streamer.turn_id} failed ({error.category.value}): {error.message}")
        if self._status != AgentStatus.STOPPED:
            self._set_status(AgentStatus.ERROR, streamer)
        streamer.emit(
            TurnFailed,
            category=error.category,
            message=error.message,
            retryable=error.retryable,
        )

    # ============================================
    # Summarization
    # ============================================

    def _maybe_summarize(self, conversation: Conversation, params: Parameters) -> None:
        if self.summarizer is None or not self.summarizer.should_summarize(conversation):
            return
        if any(t.get_name() == "summarize" for t in self._background):
            return

        window = params.memory.max_context_messages
        older = list(conversation.messages[:-window]) if window else list(conversation.messages)
        if not older:
            return

        task = asyncio.create_task(self._summarize(conversation, older), name="summarize")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _summarize(self, conversation: Conversation, older: list[Message]) -> None:
        try:
            summary = await self.summarizer.summarize(older)
            conversation.update_summary(summary)
            conversation.metadata[ConversationSummarizer.SUMMARIZED_ITEMS_KEY] = conversation.item_count
            await self.conversations.save(conversation)
        except Exception as e:
            logger.warning(f"Summarization of conversation {conversation.id} failed: {e}")
            return

        self.router.publish(ConversationSummarized(conversation_id=conversation.id, summary=summary))
        logger.info(f"Summarized {len(older)} items of conversation {conversation.id}")

    # ============================================
    # Conversation management
    # ============================================

    async def delete_conversation(self) -> bool:
        """Delete the current conversation and its memory, then start a new one."""
        if self._status == AgentStatus.STOPPED:
            raise AgentStoppedError(self._status.value)
        if self._status not in _ACCEPTING or self._conversation is None:
            raise AgentNotReadyError(self._status.value)

        old_id = self._conversation.id
        self.coordinator.approvals.cancel_conversation(old_id)
        deleted = await self.conversations.delete(old_id)
        self._conversation = await self.conversations.get_or_create(None, agent_id=self.agent_id)
        logger.info(f"Agent {self.agent_id} moved from {old_id} to new conversation {self._conversation.id}")
        return deleted

    async def list_conversations(self, limit: int = 20, offset: int = 0) -> list[Conversation]:
        return await self.conversations.list_conversations(self.agent_id, limit, offset)

    def history(self) -> list[Message]:
        """Snapshot of the committed items."""
        return list(self._conversation.messages) if self._conversation else []

    def with_parameters(self, **changes) -> Parameters:
        """Derive a Parameters snapshot from the defaults, e.g. for one turn."""
        return replace(self.parameters, **changes)
