"""
Event Router.

Typed publish/subscribe hub distributing lifecycle, streaming, tool and
memory events to any number of listeners.

- publish() never blocks the producer: events go onto a queue drained
  by a single dispatcher task, so delivery is FIFO in publish order.
- Handlers are registered per event class; a handler subscribed to a
  base class receives every subclass.
- A handler exception is logged and does not stop delivery to the
  remaining handlers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from ..domain.events import AgentEvent

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=AgentEvent)

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventRouter:
    """Non-blocking, multi-subscriber event hub.

    Usage:
        router = EventRouter()

        def on_delta(event: TextDelta) -> None:
            print(event.text, end="")

        unsubscribe = router.subscribe(TextDelta, on_delta)
        router.publish(TextDelta(text="Hello"))
        await router.wait_idle()
        unsubscribe()

    Architecture:
        - One asyncio.Queue per router, one dispatcher task per event loop
        - Dispatcher is started lazily on the first publish
        - Handlers may be plain functions or coroutine functions
    """

    def __init__(self):
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._queue: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False
        self.published_count = 0
        self.handler_errors = 0

    # ============================================
    # Subscriptions
    # ============================================

    def subscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> Callable[[], bool]:
        """Register a handler for an event class (and its subclasses).

        Returns:
            A callable that removes this subscription
        """
        if not (isinstance(event_type, type) and issubclass(event_type, AgentEvent)):
            raise TypeError(f"{event_type!r} is not an AgentEvent type")
        self._handlers[event_type].append(handler)
        logger.debug(f"Subscribed {getattr(handler, '__name__', handler)!r} to {event_type.__name__}")
        return lambda: self.unsubscribe(event_type, handler)

    def unsubscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> bool:
        """Remove a handler. Returns False if it was not registered."""
        handlers = self._handlers.get(event_type)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._handlers[event_type]
        return True

    def handler_count(self, event_type: Optional[type] = None) -> int:
        if event_type is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(event_type, []))

    # ============================================
    # Publishing
    # ============================================

    def publish(self, event: AgentEvent) -> None:
        """Queue an event for delivery. Returns immediately."""
        if self._closed:
            logger.debug(f"Router closed, dropping {type(event).__name__}")
            return
        self._ensure_dispatcher()
        self._queue.put_nowait(event)
        self.published_count += 1

    async def wait_idle(self) -> None:
        """Wait until every event published so far has been delivered."""
        if self._queue is not None and self._dispatcher is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Deliver pending events, then stop the dispatcher."""
        await self.wait_idle()
        self._closed = True
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

    # ============================================
    # Dispatch
    # ============================================

    def _ensure_dispatcher(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._dispatcher is None or self._dispatcher.done():
            if self._loop is not loop:
                self._queue = asyncio.Queue()
                self._loop = loop
            self._dispatcher = loop.create_task(self._dispatch_loop())

    async def _dispatch_loop(self) -> None:
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                await self._deliver(event)
            finally:
                queue.task_done()

    def _handlers_for(self, event: AgentEvent) -> list[Handler]:
        handlers: list[Handler] = []
        for cls in type(event).__mro__:
            handlers.extend(self._handlers.get(cls, ()))
        return handlers

    async def _deliver(self, event: AgentEvent) -> None:
        for handler in self._handlers_for(event):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.handler_errors += 1
                logger.warning(
                    f"Event handler {getattr(handler, '__name__', handler)!r} failed "
                    f"on {type(event).__name__}: {e}",
                    exc_info=True,
                )
