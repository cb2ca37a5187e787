"""
Event hub surfacing asynchronous client outcomes to registered listeners.

Listeners are kept per event type and called in registration order. There
is no replay: a listener registered after an event fired never sees it.
"""

import asyncio
import functools
import inspect
import logging
from typing import Any, Awaitable, Callable

from .message_types import EVENTS

EventHandler = Callable[..., Any]


class _Listener:
    __slots__ = ("handler", "once")

    def __init__(self, handler: EventHandler, once: bool = False):
        self.handler = handler
        self.once = once


class EventHub:
    """Fan-out of client events to any number of listeners per event type."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._listeners: dict[str, list[_Listener]] = {event: [] for event in EVENTS.ALL}
        self._tasks: set[asyncio.Future] = set()

    def _check_event(self, event: str) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown event type: {event}")

    def on(self, event: str, handler: EventHandler) -> EventHandler:
        """Register a listener. Returns the handler so it can be used as a decorator."""
        self._check_event(event)
        self._listeners[event].append(_Listener(handler))
        return handler

    def once(self, event: str, handler: EventHandler) -> EventHandler:
        """Register a listener that is removed from this event after its first call."""
        self._check_event(event)
        self._listeners[event].append(_Listener(handler, once=True))
        return handler

    def off(self, event: str, handler: EventHandler) -> None:
        """Remove the earliest registration of the handler for this event only."""
        self._check_event(event)
        listeners = self._listeners[event]
        for listener in listeners:
            if listener.handler == handler:
                listeners.remove(listener)
                return

    def listener_count(self, event: str) -> int:
        self._check_event(event)
        return len(self._listeners[event])

    def schedule(self, awaitable: Awaitable, source: str) -> asyncio.Future:
        """
        Run a coroutine returned by a listener or callback as a task.

        The task is referenced until it finishes; a failure is logged with
        the given source description.
        """
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._task_done, source))
        return task

    def _task_done(self, source: str, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Error in {source}: {error}")

    def emit(self, event: str, *args) -> None:
        """
        Call every listener of the event with the given payload.

        A listener that raises is logged and does not stop the others.
        Coroutines returned by listeners are scheduled on the running loop.
        """
        self._check_event(event)
        listeners = list(self._listeners[event])
        if not listeners and event == EVENTS.ERROR:
            self.logger.debug(f"Unhandled error event: {args[0] if args else None}")
            return

        for listener in listeners:
            if listener.once:
                try:
                    self._listeners[event].remove(listener)
                except ValueError:
                    continue
            handler = listener.handler
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    self.schedule(result, f"{event} listener {handler!r}")
            except Exception as e:
                self.logger.error(f"Error in {event} listener {handler!r}: {e}")

    def clear(self) -> None:
        for listeners in self._listeners.values():
            listeners.clear()
