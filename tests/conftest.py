from __future__ import annotations

import heapq
import itertools
from datetime import datetime, timedelta

import pytest

BASE_TIME = datetime(2024, 3, 4, 9, 0, 0)
BASE_WALL_MS = 1_709_542_800_000.0


class FakeClock:
    """Deterministic clock; monotonic and wall time move together unless jumped."""

    def __init__(self) -> None:
        self.mono = 0.0
        self.wall_offset = 0.0
        self.asleep = 0.0

    def monotonic_ms(self) -> float:
        return self.mono

    def wall_ms(self) -> float:
        return BASE_WALL_MS + self.mono + self.wall_offset

    def now(self) -> datetime:
        return BASE_TIME + timedelta(milliseconds=self.mono + self.wall_offset)

    def awake_ms(self) -> float:
        return self.mono - self.asleep

    def jump_wall(self, ms: float) -> None:
        self.wall_offset += ms

    def sleep_host(self, ms: float) -> None:
        """Suspend with a monotonic clock that keeps counting, as Windows may."""
        self.mono += ms
        self.asleep += ms


class FakeHandle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTaskHandle(FakeHandle):
    def __init__(self, coro) -> None:
        super().__init__()
        self.coro = coro

    def cancel(self) -> None:
        if not self.cancelled:
            self.cancelled = True
            self.coro.close()


class FakeScheduler:
    """Scheduler driven by ``advance``; ``lateness_ms`` delays every firing."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock or FakeClock()
        self.lateness_ms = 0.0
        self._timers: list = []
        self._seq = itertools.count()
        self._tasks: list[FakeTaskHandle] = []

    def call_later(self, delay_ms, callback):
        handle = FakeHandle()
        due = self.clock.mono + max(delay_ms, 0.0)
        heapq.heappush(self._timers, (due, next(self._seq), callback, handle))
        return handle

    def spawn(self, coro):
        handle = FakeTaskHandle(coro)
        self._tasks.append(handle)
        return handle

    @property
    def pending_timers(self) -> int:
        return sum(1 for *_, handle in self._timers if not handle.cancelled)

    @property
    def pending_tasks(self) -> int:
        return sum(1 for handle in self._tasks if not handle.cancelled)

    def _pop_due(self, target: float):
        while self._timers and self._timers[0][0] + self.lateness_ms <= target:
            due, _, callback, handle = heapq.heappop(self._timers)
            if handle.cancelled:
                continue
            return due + self.lateness_ms, callback
        return None

    def advance(self, ms: float) -> None:
        """Fire due callbacks synchronously; spawned coroutines are left queued."""
        target = self.clock.mono + ms
        while (item := self._pop_due(target)) is not None:
            fire_at, callback = item
            self.clock.mono = max(self.clock.mono, fire_at)
            callback()
        self.clock.mono = target

    async def drain(self) -> None:
        while self._tasks:
            handle = self._tasks.pop(0)
            if handle.cancelled:
                continue
            await handle.coro

    async def run_for(self, ms: float) -> None:
        """Like ``advance`` but awaits spawned work after every callback."""
        target = self.clock.mono + ms
        await self.drain()
        while (item := self._pop_due(target)) is not None:
            fire_at, callback = item
            self.clock.mono = max(self.clock.mono, fire_at)
            callback()
            await self.drain()
        self.clock.mono = target


class ScriptedIdleSource:
    """Idle source returning a settable value, or raising when ``error`` is set."""

    def __init__(self, idle_ms: int = 0) -> None:
        self.idle_ms = idle_ms
        self.error: Exception | None = None
        self.calls = 0

    async def __call__(self) -> int:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.idle_ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler(clock: FakeClock) -> FakeScheduler:
    return FakeScheduler(clock)


@pytest.fixture
def idle_source() -> ScriptedIdleSource:
    return ScriptedIdleSource()
