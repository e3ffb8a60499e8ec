"""
Unit tests for the EventRouter and EventStreamer.

Covers typed subscriptions, FIFO delivery, handler isolation and
per-turn sequencing.
"""

import asyncio

import pytest

from colloquy.agent.domain.events import (
    AgentEvent,
    TextDelta,
    ToolCallEvent,
    ToolCallFinished,
    ToolCallRequested,
    TurnStarted,
)
from colloquy.agent.orchestrator.event_router import EventRouter
from colloquy.agent.orchestrator.event_streamer import EventStreamer


class TestSubscriptions:
    """Tests for subscribe/unsubscribe."""

    @pytest.mark.asyncio
    async def test_handler_receives_only_its_type(self, router):
        deltas = []
        router.subscribe(TextDelta, deltas.append)

        router.publish(TextDelta(text="a"))
        router.publish(TurnStarted(user_input="hi"))
        await router.wait_idle()

        assert [e.text for e in deltas] == ["a"]

    @pytest.mark.asyncio
    async def test_base_class_subscription_receives_subclasses(self, router):
        tool_events = []
        router.subscribe(ToolCallEvent, tool_events.append)

        router.publish(ToolCallRequested(tool_call_id="c1", tool_name="t"))
        router.publish(ToolCallFinished(tool_call_id="c1", tool_name="t"))
        router.publish(TextDelta(text="x"))
        await router.wait_idle()

        assert [type(e) for e in tool_events] == [ToolCallRequested, ToolCallFinished]

    @pytest.mark.asyncio
    async def test_unsubscribe_callable(self, router):
        received = []
        unsubscribe = router.subscribe(TextDelta, received.append)

        assert unsubscribe() is True
        assert unsubscribe() is False

        router.publish(TextDelta(text="ignored"))
        await router.wait_idle()
        assert received == []
        assert router.handler_count() == 0

    def test_subscribe_rejects_non_event_types(self, router):
        with pytest.raises(TypeError):
            router.subscribe(str, print)


class TestDelivery:
    """Tests for ordering, isolation and non-blocking publish."""

    @pytest.mark.asyncio
    async def test_fifo_per_event_type(self, router):
        received = []
        router.subscribe(TextDelta, lambda e: received.append(e.text))

        for i in range(50):
            router.publish(TextDelta(text=str(i)))
        await router.wait_idle()

        assert received == [str(i) for i in range(50)]

    @pytest.mark.asyncio
    async def test_publish_does_not_wait_for_slow_handlers(self, router):
        release = asyncio.Event()
        received = []

        async def slow(event):
            await release.wait()
            received.append(event)

        router.subscribe(TextDelta, slow)
        router.publish(TextDelta(text="a"))

        # Producer continues while the handler is still blocked
        assert received == []
        release.set()
        await router.wait_idle()
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_handler_exception_does_not_stop_other_handlers(self, router):
        received = []

        def broken(event):
            raise RuntimeError("ui crashed")

        router.subscribe(TextDelta, broken)
        router.subscribe(TextDelta, received.append)

        router.publish(TextDelta(text="a"))
        router.publish(TextDelta(text="b"))
        await router.wait_idle()

        assert [e.text for e in received] == ["a", "b"]
        assert router.handler_errors == 2

    @pytest.mark.asyncio
    async def test_async_and_sync_handlers(self, router):
        received = []

        async def async_handler(event):
            received.append(("async", event.text))

        router.subscribe(TextDelta, async_handler)
        router.subscribe(TextDelta, lambda e: received.append(("sync", e.text)))

        router.publish(TextDelta(text="a"))
        await router.wait_idle()

        assert sorted(received) == [("async", "a"), ("sync", "a")]

    @pytest.mark.asyncio
    async def test_close_delivers_pending_then_drops(self):
        router = EventRouter()
        received = []
        router.subscribe(AgentEvent, received.append)

        router.publish(TextDelta(text="before"))
        await router.close()
        router.publish(TextDelta(text="after"))

        assert [e.text for e in received] == ["before"]


class TestEventStreamer:
    """Tests for per-turn sequencing."""

    @pytest.mark.asyncio
    async def test_sequence_and_correlation(self, router, recorded):
        streamer = EventStreamer(router, turn_id="turn-1")

        streamer.emit(TurnStarted, user_input="hello")
        streamer.emit(TextDelta, text="Hi")
        await router.wait_idle()

        assert [e.sequence for e in recorded] == [1, 2]
        assert {e.turn_id for e in recorded} == {"turn-1"}

    def test_reset(self):
        streamer = EventStreamer(turn_id="a")
        streamer.create_event(TextDelta, text="x")
        assert streamer.sequence == 1

        streamer.reset(turn_id="b")

        event = streamer.create_event(TextDelta, text="y")
        assert event.sequence == 1
        assert event.turn_id == "b"
