"""
Shared fixtures for the agent tests.
"""

import pytest

from colloquy.agent.domain.entities import Parameters
from colloquy.agent.domain.events import AgentEvent
from colloquy.agent.memory.in_memory import InMemoryConversationStore, InMemoryVectorIndex
from colloquy.agent.orchestrator.agent import Agent
from colloquy.agent.orchestrator.conversation_manager import ConversationManager
from colloquy.agent.orchestrator.event_router import EventRouter
from colloquy.agent.orchestrator.memory_engine import MemoryEngine
from colloquy.agent.orchestrator.tool_coordinator import ToolCallCoordinator
from colloquy.agent.tools.registry import ToolRegistry

from fakes import FIXED_NOW, FakeChatClient, FakeEmbedder


@pytest.fixture
def router():
    return EventRouter()


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def chat_client():
    return FakeChatClient()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vector_index():
    return InMemoryVectorIndex()


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def memory_engine(embedder, vector_index, router):
    return MemoryEngine(
        embedding_provider=embedder,
        vector_index=vector_index,
        router=router,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def coordinator(registry, router):
    return ToolCallCoordinator(registry, router=router, approval_timeout_seconds=1.0)


@pytest.fixture
def agent(chat_client, memory_engine, coordinator, router, store):
    return Agent(
        agent_id="test-agent",
        chat_client=chat_client,
        memory_engine=memory_engine,
        coordinator=coordinator,
        router=router,
        conversations=ConversationManager(store, memory_engine),
        parameters=Parameters(model="fake-model"),
        max_tool_rounds=3,
    )


@pytest.fixture
def recorded(router):
    """List receiving every event published on the router."""
    events: list = []
    router.subscribe(AgentEvent, events.append)
    return events
