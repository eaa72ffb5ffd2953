"""
Event subscription system for the AgentWire worker runtime.

Lifecycle events are queued and delivered by a background pump task,
so a slow observer never stalls connection processing.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Coroutine

from agentwire_runtime.types import WorkerEvent

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[[WorkerEvent], Coroutine[Any, Any, None] | None]


class EventManager:
    """Queues lifecycle events and fans them out to observers."""

    def __init__(self, max_pending: int = 1000) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._wildcard_handlers: list[EventHandler] = []
        self._queue: asyncio.Queue[WorkerEvent] = asyncio.Queue(maxsize=max_pending)
        self._pump_task: asyncio.Task[None] | None = None

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for a specific event type."""
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Register a handler for all event types."""
        self._wildcard_handlers.append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler | None = None) -> None:
        """Remove a handler (or all handlers) for an event type."""
        if handler is None:
            self._handlers.pop(event_type, None)
        else:
            handlers = self._handlers.get(event_type, [])
            self._handlers[event_type] = [h for h in handlers if h is not handler]

    def has_subscribers(self, event_type: str) -> bool:
        return bool(self._handlers.get(event_type)) or bool(self._wildcard_handlers)

    def emit(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        """Queue an event for delivery. Never blocks."""
        if not self.has_subscribers(event_type):
            return
        event = WorkerEvent(type=event_type, data=data or {})
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full; dropping %s event", event_type)
            return
        self._ensure_pump()

    async def _dispatch(self, event: WorkerEvent) -> None:
        """Dispatch an event to all matching handlers."""
        handlers = list(self._handlers.get(event.type, []))
        handlers.extend(self._wildcard_handlers)

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error in event handler for %s", event.type)

    async def _pump(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    def _ensure_pump(self) -> None:
        if self._pump_task is not None and not self._pump_task.done():
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Delivered once a loop starts the pump
            return
        self._pump_task = asyncio.create_task(self._pump())

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        if self._queue.empty():
            return
        self._ensure_pump()
        await self._queue.join()

    async def stop(self, timeout: float = 5.0) -> None:
        """Deliver pending events (bounded by ``timeout``) and stop the pump."""
        try:
            await asyncio.wait_for(self.drain(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out delivering pending events on shutdown")
        if self._pump_task and not self._pump_task.done():
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
        self._pump_task = None
