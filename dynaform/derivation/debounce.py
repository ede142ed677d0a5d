"""
DYNAFORM Debounce Scheduler

One restartable timer per rule instance on the running asyncio loop, plus
the in-flight task each instance may own after its timer fires.

Keys are instance keys. Scheduling an armed key restarts its timer;
spawning a task for a key cancels the task it replaces.
"""

from __future__ import annotations
from typing import Any, Awaitable, Callable, Dict, Optional
import asyncio
import logging

logger = logging.getLogger(__name__)


class DebounceScheduler:
    """
    Timers and tasks keyed by rule instance.

    Usage:
        scheduler = DebounceScheduler()
        scheduler.schedule("email", 300, fire)    # inside a running loop
        await scheduler.wait_idle()
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stats = {"scheduled": 0, "restarted": 0, "fired": 0, "cancelled": 0}

    def _get_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        if self._loop is not None and not self._loop.is_closed():
            return self._loop
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    @property
    def has_loop(self) -> bool:
        return self._get_loop() is not None

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def schedule(self, key: str, delay_ms: int, callback: Callable[[], Any]) -> bool:
        """
        Arm (or restart) the timer for ``key``.

        Returns:
            False if no event loop is available; nothing is scheduled
        """
        loop = self._get_loop()
        if loop is None:
            return False

        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
            self._stats["restarted"] += 1

        handle = loop.call_later(max(delay_ms, 0) / 1000.0, self._fire, key, callback)
        self._timers[key] = handle
        self._stats["scheduled"] += 1
        return True

    def _fire(self, key: str, callback: Callable[[], Any]) -> None:
        self._timers.pop(key, None)
        self._stats["fired"] += 1
        try:
            callback()
        except Exception as e:
            logger.exception(f"Debounced callback for '{key}' failed: {e}")

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def spawn(self, key: str, coro: Awaitable[Any]) -> Optional[asyncio.Task]:
        """Run ``coro`` as the in-flight task of ``key``, cancelling the one it replaces."""
        loop = self._get_loop()
        if loop is None:
            if asyncio.iscoroutine(coro):
                coro.close()
            return None

        previous = self._tasks.pop(key, None)
        if previous is not None and not previous.done():
            previous.cancel()

        task = loop.create_task(coro)
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._task_done(k, t))
        return task

    def _task_done(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"In-flight derivation for '{key}' crashed: {task.exception()}")

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(self, key: str) -> bool:
        """Cancel the timer and in-flight task of ``key``."""
        cancelled = False
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
            cancelled = True
        task = self._tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
            cancelled = True
        if cancelled:
            self._stats["cancelled"] += 1
        return cancelled

    def cancel_prefix(self, prefix: str) -> int:
        """Cancel everything owned by a key and its descendants (an array item)."""
        keys = {k for k in list(self._timers) + list(self._tasks) if k == prefix or k.startswith(prefix + ".")}
        return sum(1 for k in keys if self.cancel(k))

    def cancel_all(self) -> int:
        keys = set(self._timers) | set(self._tasks)
        return sum(1 for k in keys if self.cancel(k))

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def pending(self, key: Optional[str] = None) -> bool:
        """Whether a timer or task is outstanding (for ``key``, or at all)."""
        if key is None:
            return bool(self._timers) or any(not t.done() for t in self._tasks.values())
        task = self._tasks.get(key)
        return key in self._timers or (task is not None and not task.done())

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "armed_timers": len(self._timers),
            "in_flight": len([t for t in self._tasks.values() if not t.done()]),
        }

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """
        Wait until no timer is armed and no task is in flight.

        Work started by a fired timer is awaited too.

        Raises:
            asyncio.TimeoutError: if ``timeout`` seconds pass first
        """
        if timeout is not None:
            await asyncio.wait_for(self._drain(), timeout)
        else:
            await self._drain()

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while self.pending():
            tasks = [t for t in self._tasks.values() if not t.done()]
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
                continue
            if self._timers:
                delay = min(h.when() for h in self._timers.values()) - loop.time()
                await asyncio.sleep(max(delay, 0) + 0.001)
