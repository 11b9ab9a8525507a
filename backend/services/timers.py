"""
Cancellable one-shot timers keyed by correlation id.

Each timer is an asyncio task that sleeps until its delay elapses and then
awaits the callback. Whether the callback still has work to do is decided by
the caller's own state transition (under the room lock); the registry only
guarantees that at most one timer exists per key.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class TimerRegistry:
    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def start(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        """Schedule ``callback`` after ``delay`` seconds, replacing any timer for ``key``."""
        self.cancel(key)
        self._tasks[key] = asyncio.create_task(self._run(key, delay, callback))

    async def _run(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(max(delay, 0.0))
        # Fired: forget the handle before running so cancel() is a no-op from here on
        if self._tasks.get(key) is asyncio.current_task():
            self._tasks.pop(key, None)
        try:
            await callback()
        except Exception:
            logger.exception("Timer %s callback failed", key)

    def cancel(self, key: str) -> bool:
        """Cancel a timer that has not fired yet. Returns True if one was cancelled."""
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def active(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)

    def __len__(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())
