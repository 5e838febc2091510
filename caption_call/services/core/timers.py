"""
Keyed single-shot timers.

Every timer has a purpose key (e.g. ``expiry:mine``). Scheduling a key that
is already pending cancels the earlier firing first, so at most one timer per
key is ever live.

Usage:
    timers = TimerRegistry()
    timers.schedule("expiry:mine", 5.0, clear_caption)
    timers.cancel("expiry:mine")
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


class TimerRegistry:
    """Cancellable single-shot asyncio timers keyed by purpose."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(
        self,
        key: str,
        delay: float,
        callback: Callable[[], Any],
    ) -> asyncio.Task:
        """
        Arm ``callback`` to run once after ``delay`` seconds.

        Re-arming an existing key cancels its pending firing.
        """
        self.cancel(key)
        task = asyncio.ensure_future(self._run(key, delay, callback))
        task.set_name(f"timer:{key}")
        self._tasks[key] = task
        return task

    async def _run(self, key: str, delay: float, callback: Callable[[], Any]):
        await asyncio.sleep(delay)
        current = asyncio.current_task()
        if self._tasks.get(key) is current:
            del self._tasks[key]
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Timer '{key}' callback failed")

    def cancel(self, key: str) -> bool:
        """Cancel a pending timer. Returns True if one was pending."""
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_many(self, keys: Iterable[str]) -> int:
        return sum(1 for key in keys if self.cancel(key))

    def cancel_all(self) -> int:
        return self.cancel_many(list(self._tasks))

    def get(self, key: str) -> Optional[asyncio.Task]:
        task = self._tasks.get(key)
        if task is None or task.done():
            return None
        return task

    def is_pending(self, key: str) -> bool:
        return self.get(key) is not None

    def pending_keys(self) -> list[str]:
        return [key for key, task in self._tasks.items() if not task.done()]
