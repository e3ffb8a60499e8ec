"""
Unit tests for the Agent orchestrator.

Drives full turns against a scripted chat client: plain replies, tool
rounds, provider failures, the tool round limit, cancellation and the
status machine.
"""

import asyncio

import pytest

from colloquy.agent.domain.entities import (
    AgentStatus,
    ApprovalPolicy,
    ErrorType,
    MemorySettings,
    MessageRole,
    Parameters,
    ToolCallState,
)
from colloquy.agent.domain.errors import (
    AgentNotReadyError,
    AgentStoppedError,
    AuthenticationError,
    ErrorCategory,
    ProviderError,
    ToolLoopExceeded,
    TransientProviderError,
    TurnCanceledError,
)
from colloquy.agent.domain.events import (
    ApprovalRequested,
    ConversationSummarized,
    StatusChanged,
    TextDelta,
    TurnCanceled,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
)
from colloquy.agent.memory.long_term import ConversationSummarizer
from colloquy.agent.orchestrator.agent import Agent
from colloquy.agent.orchestrator.conversation_manager import ConversationManager
from colloquy.agent.orchestrator.tool_coordinator import ToolCallCoordinator
from colloquy.agent.tools.policy import ApprovalPolicyTable

from fakes import error_reply, text_reply, tool_reply


def of_type(events, event_type):
    return [e for e in events if isinstance(e, event_type)]


class TestLifecycle:
    """Tests for initialize/stop and the status machine."""

    @pytest.mark.asyncio
    async def test_initialize_creates_conversation(self, agent, router, recorded):
        conversation = await agent.initialize()
        await router.wait_idle()

        assert agent.status == AgentStatus.READY
        assert conversation.agent_id == "test-agent"
        assert agent.conversation_id == conversation.id
        assert [e.current for e in of_type(recorded, StatusChanged)] == [
            AgentStatus.INITIALIZING,
            AgentStatus.READY,
        ]

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, agent):
        first = await agent.initialize()
        second = await agent.initialize()

        assert first is second

    @pytest.mark.asyncio
    async def test_initialize_resumes_existing_conversation(self, agent, chat_client, memory_engine, coordinator, router, store):
        await agent.initialize()
        await agent.send("remember me")

        resumed = Agent(
            agent_id="test-agent",
            chat_client=chat_client,
            memory_engine=memory_engine,
            coordinator=coordinator,
            router=router,
            conversations=ConversationManager(store, memory_engine),
        )
        conversation = await resumed.initialize(agent.conversation_id)

        assert conversation.item_count == 2
        assert conversation.messages[0].content == "remember me"

    @pytest.mark.asyncio
    async def test_send_before_initialize_is_rejected(self, agent):
        with pytest.raises(AgentNotReadyError):
            await agent.send("hello")

    @pytest.mark.asyncio
    async def test_stopped_is_terminal(self, agent):
        async with agent:
            assert agent.status == AgentStatus.READY

        assert agent.status == AgentStatus.STOPPED
        with pytest.raises(AgentStoppedError):
            await agent.send("hello")
        with pytest.raises(AgentStoppedError):
            await agent.initialize()

    @pytest.mark.asyncio
    async def test_stop_cancels_turn_in_flight(self, agent, chat_client):
        await agent.initialize()
        chat_client.gate = asyncio.Event()

        turn = asyncio.create_task(agent.send("long question"))
        await chat_client.started.wait()
        await agent.stop()

        with pytest.raises(TurnCanceledError):
            await turn
        assert agent.status == AgentStatus.STOPPED
        assert agent.history() == []


class TestTurns:
    """Tests for completed turns."""

    @pytest.mark.asyncio
    async def test_simple_turn(self, agent, chat_client, router, recorded):
        chat_client.scripts = [text_reply("Hi", " there!")]
        await agent.initialize()

        response = await agent.send("Hello")
        await router.wait_idle()

        assert response.content == "Hi there!"
        assert response.rounds == 1
        assert [m.role for m in agent.history()] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert agent.history()[1].model_used == "fake-model"
        assert agent.status == AgentStatus.READY
        assert agent.current_turn_id is None

        turn_events = [e for e in recorded if e.turn_id == response.turn_id]
        assert [e.sequence for e in turn_events] == list(range(1, len(turn_events) + 1))
        assert isinstance(turn_events[-1], TurnCompleted)
        assert of_type(turn_events, TurnStarted)[0].user_input == "Hello"
        assert [e.text for e in of_type(turn_events, TextDelta)] == ["Hi", " there!"]

    @pytest.mark.asyncio
    async def test_context_ends_with_new_input(self, agent, chat_client):
        await agent.initialize()
        await agent.send("first")
        await agent.send("second")

        context, params = chat_client.calls[1]
        assert [m.content for m in context] == ["first", "ok", "second"]
        assert params.model == "fake-model"

    @pytest.mark.asyncio
    async def test_completed_turn_is_indexed(self, agent, memory_engine, vector_index):
        await agent.initialize()
        await agent.send("index me")
        await memory_engine.drain()

        assert len(vector_index) == 2

    @pytest.mark.asyncio
    async def test_per_turn_parameters(self, agent, chat_client):
        await agent.initialize()
        params = agent.with_parameters(temperature=0.0, memory=MemorySettings(max_context_messages=0))

        await agent.send("precise please", parameters=params)

        assert chat_client.calls[0][1].temperature == 0.0
        assert agent.parameters.temperature == 0.7

    @pytest.mark.asyncio
    async def test_error_status_accepts_next_turn(self, agent, chat_client):
        chat_client.scripts = [error_reply("overloaded", ErrorType.RATE_LIMIT), text_reply("recovered")]
        await agent.initialize()

        with pytest.raises(TransientProviderError):
            await agent.send("try")
        assert agent.status == AgentStatus.ERROR

        response = await agent.send("try again")
        assert response.content == "recovered"
        assert agent.status == AgentStatus.READY


class TestToolRounds:
    """Tests for turns that call tools."""

    @pytest.mark.asyncio
    async def test_tool_round_then_answer(self, agent, chat_client, registry, router, recorded):
        registry.register("get_weather", lambda city: f"sunny in {city}")
        chat_client.scripts = [
            tool_reply(("c1", "get_weather", {"city": "Oslo"})),
            text_reply("It is sunny in Oslo."),
        ]
        await agent.initialize()

        response = await agent.send("Weather in Oslo?")
        await router.wait_idle()

        assert response.content == "It is sunny in Oslo."
        assert response.rounds == 2
        assert [o.content for o in response.tool_outputs] == ["sunny in Oslo"]

        history = agent.history()
        assert [m.role for m in history] == [
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.TOOL,
            MessageRole.ASSISTANT,
        ]
        assert history[1].tool_calls[0].name == "get_weather"
        assert history[2].tool_call_id == "c1"

        second_context = chat_client.calls[1][0]
        assert second_context[-1].role == MessageRole.TOOL
        assert AgentStatus.AWAITING_TOOL_RESULT in [e.current for e in of_type(recorded, StatusChanged)]

    @pytest.mark.asyncio
    async def test_failing_tool_does_not_fail_turn(self, agent, chat_client, registry):
        def get_weather(city):
            raise TimeoutError("weather API unreachable")

        registry.register("get_weather", get_weather)
        chat_client.scripts = [
            tool_reply(("c1", "get_weather", {"city": "Oslo"})),
            text_reply("Sorry, I could not fetch the weather."),
        ]
        await agent.initialize()

        response = await agent.send("Weather in Oslo?")

        [output] = response.tool_outputs
        assert output.state == ToolCallState.FAILED
        assert "weather API unreachable" in agent.history()[2].content
        assert response.content == "Sorry, I could not fetch the weather."
        assert agent.status == AgentStatus.READY

    @pytest.mark.asyncio
    async def test_tool_loop_exceeded(self, agent, chat_client, registry, router, recorded):
        registry.register("again", lambda: "more")
        chat_client.scripts = [tool_reply((f"c{i}", "again", {})) for i in range(4)]
        await agent.initialize()

        with pytest.raises(ToolLoopExceeded):
            await agent.send("loop forever")
        await router.wait_idle()

        assert len(chat_client.calls) == 4
        assert agent.history() == []
        assert agent.status == AgentStatus.ERROR
        [failed] = of_type(recorded, TurnFailed)
        assert failed.category == ErrorCategory.TOOL_LOOP_EXCEEDED

    @pytest.mark.asyncio
    async def test_approval_through_agent(self, chat_client, memory_engine, registry, router, store):
        registry.register("deploy", lambda env: f"deployed to {env}")
        coordinator = ToolCallCoordinator(
            registry,
            policy=ApprovalPolicyTable(default=ApprovalPolicy.REQUIRE_APPROVAL),
            router=router,
            approval_timeout_seconds=1,
        )
        agent = Agent(
            agent_id="ops-bot",
            chat_client=chat_client,
            memory_engine=memory_engine,
            coordinator=coordinator,
            router=router,
            conversations=ConversationManager(store, memory_engine),
        )
        router.subscribe(ApprovalRequested, lambda e: agent.resolve_approval(e.tool_call_id, approved=True))
        chat_client.scripts = [tool_reply(("d1", "deploy", {"env": "staging"})), text_reply("Done.")]
        await agent.initialize()

        response = await agent.send("Deploy to staging")

        assert response.tool_outputs[0].content == "deployed to staging"


class TestFailures:
    """Tests for provider failures."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error_type, error_cls, retryable",
        [
            (ErrorType.RATE_LIMIT, TransientProviderError, True),
            (ErrorType.TIMEOUT, TransientProviderError, True),
            (ErrorType.AUTHENTICATION, AuthenticationError, False),
            (ErrorType.FATAL, ProviderError, False),
        ],
    )
    async def test_provider_error_fails_turn(
        self, agent, chat_client, router, recorded, error_type, error_cls, retryable
    ):
        chat_client.scripts = [error_reply("provider said no", error_type)]
        await agent.initialize()

        with pytest.raises(error_cls) as exc_info:
            await agent.send("hello")
        await router.wait_idle()

        assert exc_info.value.retryable is retryable
        assert agent.status == AgentStatus.ERROR
        assert agent.history() == []
        [failed] = of_type(recorded, TurnFailed)
        assert failed.message == "provider said no"
        assert failed.retryable is retryable


class TestCancellation:
    """Tests for cancel()."""

    @pytest.mark.asyncio
    async def test_cancel_leaves_conversation_unchanged(self, agent, chat_client, router, recorded):
        await agent.initialize()
        await agent.send("first")
        chat_client.gate = asyncio.Event()
        chat_client.started.clear()

        turn = asyncio.create_task(agent.send("never answered"))
        await chat_client.started.wait()

        assert agent.cancel() is True
        with pytest.raises(TurnCanceledError):
            await turn
        await router.wait_idle()

        assert agent.conversation.item_count == 2
        assert agent.status == AgentStatus.READY
        assert chat_client.closed_streams == 2
        assert len(of_type(recorded, TurnCanceled)) == 1

    @pytest.mark.asyncio
    async def test_cancel_while_tool_runs_discards_its_result(
        self, agent, chat_client, coordinator, registry, router, recorded
    ):
        started = asyncio.Event()
        release = asyncio.Event()
        finished = []

        async def export_report(name: str) -> str:
            started.set()
            await release.wait()
            finished.append(name)
            return f"exported {name}"

        registry.register("export_report", export_report)
        chat_client.scripts = [tool_reply(("r1", "export_report", {"name": "q3"})), text_reply("done")]
        await agent.initialize()

        turn = asyncio.create_task(agent.send("Export the Q3 report"))
        await started.wait()

        assert agent.status == AgentStatus.AWAITING_TOOL_RESULT
        assert agent.cancel() is True
        with pytest.raises(TurnCanceledError):
            await turn

        assert coordinator.detached_executions == 1
        release.set()
        for _ in range(100):
            if coordinator.detached_executions == 0:
                break
            await asyncio.sleep(0.01)
        await router.wait_idle()

        assert finished == ["q3"]
        assert coordinator.detached_executions == 0
        assert agent.status == AgentStatus.READY
        assert agent.conversation.item_count == 0
        assert agent.history() == []
        assert coordinator.get("r1").state == ToolCallState.FAILED
        assert len(chat_client.calls) == 1
        assert len(of_type(recorded, TurnCanceled)) == 1

    @pytest.mark.asyncio
    async def test_cancel_without_turn(self, agent):
        await agent.initialize()

        assert agent.cancel() is False

    @pytest.mark.asyncio
    async def test_concurrent_send_is_rejected(self, agent, chat_client):
        await agent.initialize()
        chat_client.gate = asyncio.Event()

        turn = asyncio.create_task(agent.send("first"))
        await chat_client.started.wait()

        with pytest.raises(AgentNotReadyError):
            await agent.send("second")

        chat_client.gate.set()
        response = await turn
        assert response.content == "ok"
        assert agent.conversation.item_count == 2


class TestConversations:
    """Tests for summarization and conversation management."""

    @pytest.mark.asyncio
    async def test_background_summary(self, chat_client, memory_engine, coordinator, router, store, recorded):
        agent = Agent(
            agent_id="test-agent",
            chat_client=chat_client,
            memory_engine=memory_engine,
            coordinator=coordinator,
            router=router,
            conversations=ConversationManager(store, memory_engine),
            parameters=Parameters(model="fake-model", memory=MemorySettings(max_context_messages=2)),
            summarizer=ConversationSummarizer(summarize_after_items=4),
        )
        await agent.initialize()
        await agent.send("plan the migration")
        await agent.send("and the rollback")
        await agent.stop()
        await router.wait_idle()

        conversation = agent.conversation
        assert conversation.summary == "Conversation about: plan the migration"
        assert conversation.metadata[ConversationSummarizer.SUMMARIZED_ITEMS_KEY] == 4
        assert (await store.load(conversation.id)).summary == conversation.summary
        assert len(of_type(recorded, ConversationSummarized)) == 1

    @pytest.mark.asyncio
    async def test_delete_conversation(self, agent, memory_engine, vector_index):
        await agent.initialize()
        await agent.send("forget this")
        await memory_engine.drain()
        old_id = agent.conversation_id

        assert await agent.delete_conversation() is True

        assert agent.conversation_id != old_id
        assert agent.history() == []
        assert len(vector_index) == 0

    @pytest.mark.asyncio
    async def test_delete_conversation_while_indexing(self, agent, embedder, memory_engine, vector_index):
        await agent.initialize()
        embedder.gate = asyncio.Event()

        await agent.send("secret to forget")
        await embedder.started.wait()

        deleting = asyncio.create_task(agent.delete_conversation())
        await asyncio.sleep(0)
        embedder.gate.set()

        assert await deleting is True
        await memory_engine.drain()

        assert len(vector_index) == 0

    @pytest.mark.asyncio
    async def test_list_conversations(self, agent):
        await agent.initialize()
        await agent.send("hello")

        [listed] = await agent.list_conversations()

        assert listed.id == agent.conversation_id
