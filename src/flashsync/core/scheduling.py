from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

LOG = logging.getLogger("flashsync.scheduling")

Tick = Callable[[], Union[None, Awaitable[None]]]


async def _call(fn: Callable[[], Any]) -> None:
    result = fn()
    if inspect.isawaitable(result):
        await result


class IntervalScheduler:
    """Runs ``tick`` every ``interval`` seconds on the running loop until stopped.

    A failing tick is logged and the schedule keeps going. ``stop`` may be
    called from inside ``tick`` and any number of times.
    """

    def __init__(self, interval: float, tick: Tick, *, name: str = "poll", immediate: bool = True) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self._tick = tick
        self._name = name
        self._immediate = immediate
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stopped

    def start(self) -> None:
        if self._stopped:
            raise RuntimeError("scheduler already stopped")
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(), name=self._name)

    def stop(self) -> None:
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_stopped(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        if self._immediate:
            await self._safe_tick()
        while not self._stopped:
            await asyncio.sleep(self.interval)
            if self._stopped:
                break
            await self._safe_tick()

    async def _safe_tick(self) -> None:
        try:
            await _call(self._tick)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOG.exception("scheduled_tick_failed", extra={"scheduler": self._name})


class OneShotTimer:
    """Calls ``callback`` once after ``delay`` seconds unless cancelled first."""

    def __init__(self, delay: float, callback: Tick, *, name: str = "timer") -> None:
        self.delay = max(0.0, delay)
        self._callback = callback
        self._name = name
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._fired = False

    @property
    def active(self) -> bool:
        return self._task is not None and not self._cancelled and not self._fired

    @property
    def fired(self) -> bool:
        return self._fired

    def start(self) -> "OneShotTimer":
        if self._task is None and not self._cancelled:
            self._task = asyncio.get_running_loop().create_task(self._run(), name=self._name)
        return self

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        if self._cancelled:
            return
        self._fired = True
        try:
            await _call(self._callback)
        except Exception:
            LOG.exception("timer_callback_failed", extra={"timer": self._name})
