"""
Autopilot - Event Hub
=====================

In-process fan-out of engine events with a bounded replay buffer.
A newly attached listener first receives the buffered history, then
live events. One failing listener never blocks delivery to the others.
"""

import asyncio
import inspect
from collections import deque
from typing import Any, Awaitable, Callable, Deque, List, Set, Union

import structlog

from autopilot.core.events import AutoEvent

logger = structlog.get_logger()

Listener = Callable[[AutoEvent], Union[None, Awaitable[None]]]


class EventHub:
    """Listener registry plus ring buffer of recent events."""

    def __init__(self, buffer_size: int = 500):
        self.listeners: Set[Listener] = set()
        self.buffer: Deque[AutoEvent] = deque(maxlen=buffer_size)
        self._tasks: Set[asyncio.Task] = set()

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """
        Attach a listener and replay buffered history to it.

        Returns:
            A callable that detaches the listener
        """
        self.listeners.add(listener)
        for event in list(self.buffer):
            self._deliver(listener, event)
        return lambda: self.remove_listener(listener)

    def remove_listener(self, listener: Listener) -> None:
        self.listeners.discard(listener)

    def emit(self, event: AutoEvent) -> None:
        self.buffer.append(event)
        for listener in list(self.listeners):
            self._deliver(listener, event)

    def clear(self) -> None:
        self.buffer.clear()

    def history(self) -> List[AutoEvent]:
        return list(self.buffer)

    # ======================================================================
    # Delivery
    # ======================================================================

    def _deliver(self, listener: Listener, event: AutoEvent) -> None:
        try:
            result = listener(event)
        except Exception as e:
            logger.warning("Event listener failed", event_type=event.type.value, error=str(e))
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: "asyncio.Future[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Async event listener failed", error=str(exc))
