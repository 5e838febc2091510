"""
Event Utilities - callback registration and background task tracking.

External collaborators (call transport, transcription engine) expose their
activity as named events. EventEmitter gives every adapter the same
``on(event, handler)`` surface; handlers may be plain functions or
coroutine functions.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]

# Strong references to fire-and-forget tasks so they are not garbage collected
_background_tasks: Set[asyncio.Task] = set()


def _log_task_result(task: asyncio.Task):
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc!r}", exc_info=exc)


def spawn(coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
    """Schedule a coroutine on the running loop and keep it referenced."""
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    _background_tasks.add(task)
    task.add_done_callback(_log_task_result)
    return task


class EventEmitter:
    """Minimal named-event dispatcher."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler):
        """Register a handler for an event."""
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Optional[Handler] = None):
        """Remove one handler, or every handler for the event."""
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def remove_all_listeners(self):
        self._handlers.clear()

    def emit(self, event: str, *args: Any) -> int:
        """
        Invoke every handler registered for ``event``.

        Coroutine results are scheduled as background tasks. A failing
        handler is logged and does not stop delivery to the others.

        Returns:
            Number of handlers invoked.
        """
        handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                result = handler(*args)
            except Exception:
                logger.exception(f"Handler for '{event}' raised")
                continue
            if inspect.isawaitable(result):
                spawn(result, name=f"event:{event}")
        return len(handlers)
