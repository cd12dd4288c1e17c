"""Clock and cooperative scheduling primitives on top of asyncio.

Every self-rescheduling chain in the engine (timer ticks, idle polls,
coordinator sweeps) holds exactly one handle returned by ``call_later`` and
cancels it on shutdown. Blocking or async work is started with ``spawn`` so
that completion is delivered back on the same loop.
"""

from __future__ import annotations

import asyncio
import ctypes
import sys
import time
from datetime import datetime
from typing import Any, Callable, Coroutine, Optional, Protocol


class Cancellable(Protocol):
    def cancel(self) -> Any: ...


def _unbiased_interrupt_ms() -> float:
    # 100 ns units, excluding time spent in sleep or hibernation.
    value = ctypes.c_ulonglong()
    ctypes.windll.kernel32.QueryUnbiasedInterruptTime(ctypes.byref(value))  # type: ignore[attr-defined]
    return value.value / 10_000.0


class Clock:
    """Monotonic milliseconds for measurement, wall time for records."""

    def monotonic_ms(self) -> float:
        return time.monotonic() * 1000.0

    def now(self) -> datetime:
        return datetime.now()

    def wall_ms(self) -> float:
        return time.time() * 1000.0

    def awake_ms(self) -> float:
        """Milliseconds that stop advancing while the host sleeps.

        ``time.monotonic`` already pauses during suspend on Linux and macOS.
        On Windows it may keep counting, so the unbiased interrupt time is used.
        """
        if sys.platform == "win32":
            return _unbiased_interrupt_ms()
        return self.monotonic_ms()


class Scheduler(Protocol):
    clock: Clock

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> Cancellable: ...

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> Cancellable: ...


class AsyncioScheduler:
    """Scheduler bound to the running asyncio loop."""

    def __init__(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._loop = loop
        self.clock = clock or Clock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(max(delay_ms, 0.0) / 1000.0, callback)

    @property
    def tasks(self) -> frozenset[asyncio.Task]:
        return frozenset(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        # The loop only keeps weak references to tasks.
        task = self.loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
