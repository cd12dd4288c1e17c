import asyncio
from datetime import timedelta

import pytest

from task_timer.config import IdleSettings
from task_timer.idle import IdleDetector, activity_bucket
from task_timer.models import ActivitySource


class RampSource:
    """Idle time that grows with the fake clock until ``touch`` is called."""

    def __init__(self, clock):
        self.clock = clock
        self.last_input = 0.0

    async def __call__(self):
        return int(self.clock.mono - self.last_input)

    def touch(self):
        self.last_input = self.clock.mono


@pytest.fixture
def settings():
    return IdleSettings(idle_threshold=timedelta(minutes=1))


@pytest.fixture
def events():
    return []


def make_detector(source, scheduler, settings, events):
    detector = IdleDetector(source, scheduler, settings)
    detector.on_idle_change(lambda *args: events.append(args))
    return detector


async def test_sustained_inactivity_becomes_idle_once(clock, scheduler, settings, events):
    detector = make_detector(RampSource(clock), scheduler, settings, events)
    detector.start()
    await scheduler.run_for(59_500)
    assert events == []

    await scheduler.run_for(30_000)
    assert len(events) == 1
    is_idle, idle_ms, confidence = events[0]
    assert is_idle is True
    assert idle_ms == 60_000
    assert confidence >= 0.7
    assert detector.is_idle


async def test_poll_interval_backs_off_while_idle(clock, scheduler, settings):
    detector = IdleDetector(RampSource(clock), scheduler, settings)
    detector.start()
    await scheduler.run_for(80_000)
    assert detector.is_idle
    assert detector.interval_ms > 1000
    assert detector.interval_ms <= 5000


async def test_polled_activity_after_idle_reports_active(clock, scheduler, settings, events):
    source = RampSource(clock)
    detector = make_detector(source, scheduler, settings, events)
    detector.start()
    await scheduler.run_for(65_000)
    assert detector.is_idle

    source.touch()
    await scheduler.run_for(6_000)
    assert not detector.is_idle
    is_idle, _, confidence = events[-1]
    assert is_idle is False
    assert 0.5 <= confidence < 0.8


async def test_user_input_forces_active_at_full_confidence(clock, scheduler, settings, events):
    detector = make_detector(RampSource(clock), scheduler, settings, events)
    detector.start()
    await scheduler.run_for(65_000)
    assert detector.is_idle

    assert detector.record_user_input("key")
    assert events[-1] == (False, 0, 1.0)
    assert not detector.is_idle
    assert detector.interval_ms == 1000
    assert detector.history[-1].source is ActivitySource.USER


def test_user_input_is_debounced(clock, scheduler, idle_source):
    detector = IdleDetector(idle_source, scheduler)
    assert detector.record_user_input()
    clock.mono += 500
    assert not detector.record_user_input()
    clock.mono += 600
    assert detector.record_user_input("scroll")


async def test_low_confidence_reading_does_not_flip_state(scheduler, idle_source, events):
    settings = IdleSettings(idle_threshold=timedelta(minutes=1), min_confidence=0.7)
    detector = make_detector(idle_source, scheduler, settings, events)
    idle_source.idle_ms = 120_000

    assert await detector.check() is False
    assert events == []
    assert detector.get_idle_status().consecutive_idle_checks == 1


async def test_basic_mode_trusts_every_reading(scheduler, idle_source, events):
    settings = IdleSettings(idle_threshold=timedelta(minutes=1), verification_mode="basic")
    detector = make_detector(idle_source, scheduler, settings, events)
    idle_source.idle_ms = 120_000

    assert await detector.check() is True
    assert events == [(True, 120_000, 1.0)]


def test_unknown_verification_mode_is_rejected():
    with pytest.raises(ValueError):
        IdleSettings(verification_mode="paranoid")


async def test_failed_reads_are_counted_and_slow_polling(scheduler, idle_source):
    settings = IdleSettings(max_check_failures=3)
    detector = IdleDetector(idle_source, scheduler, settings)
    idle_source.error = OSError("no display")

    assert await detector.check() is None
    assert detector.get_idle_status().error_count == 1
    assert detector.history[-1].source is ActivitySource.ESTIMATED

    await detector.check()
    await detector.check()
    assert detector.interval_ms == 2000
    assert detector.get_idle_status().error_count == 0

    idle_source.error = None
    await detector.check()
    assert detector.get_idle_status().error_count == 0


async def test_forced_idle_holds_until_activity(scheduler, idle_source, events):
    detector = make_detector(idle_source, scheduler, IdleSettings(), events)
    detector.force_idle("screen locked")
    assert events == [(True, 0, 1.0)]

    assert await detector.check() is True
    assert detector.is_idle

    detector.reset_activity()
    assert events[-1] == (False, 0, 1.0)
    assert await detector.check() is False


async def test_polling_chain_runs_every_interval(scheduler, idle_source):
    detector = IdleDetector(idle_source, scheduler)
    detector.start()
    await scheduler.run_for(5_000)
    assert idle_source.calls == 5


def test_stop_cancels_pending_poll(scheduler, idle_source):
    detector = IdleDetector(idle_source, scheduler)
    detector.start()
    assert scheduler.pending_timers == 1
    detector.stop()
    assert scheduler.pending_timers == 0
    assert not detector.is_running


async def test_status_reports_recent_history(clock, scheduler, idle_source):
    detector = IdleDetector(idle_source, scheduler)
    for _ in range(15):
        clock.mono += 1000
        await detector.check()
    status = detector.get_idle_status()
    assert len(status.recent_history) == 10
    assert status.threshold_ms == 300_000
    assert status.verification_mode == "multi_level"
    assert not status.is_idle


class GatedSource:
    """Blocks the first reading until ``release`` is set."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        self.entered.set()
        if self.calls == 1:
            await self.release.wait()
        return 0


async def test_restart_during_check_keeps_one_poll_chain(scheduler, monkeypatch):
    spawned = []

    def spawn(coro):
        task = asyncio.get_running_loop().create_task(coro)
        spawned.append(task)
        return task

    monkeypatch.setattr(scheduler, "spawn", spawn)
    source = GatedSource()
    detector = IdleDetector(source, scheduler)
    detector.start()
    scheduler.advance(1_000)
    await source.entered.wait()

    detector.stop()
    detector.start()
    await asyncio.gather(*spawned, return_exceptions=True)
    assert scheduler.pending_timers == 1

    scheduler.advance(1_000)
    await asyncio.gather(*spawned, return_exceptions=True)
    assert source.calls == 2
    assert scheduler.pending_timers == 1
    detector.stop()


async def test_history_outside_window_is_pruned(clock, scheduler, idle_source):
    settings = IdleSettings(history_window=timedelta(minutes=10))
    detector = IdleDetector(idle_source, scheduler, settings)
    await detector.check()
    await detector.check()
    assert len(detector.history) == 2

    clock.mono += timedelta(minutes=11).total_seconds() * 1000
    await detector.check()
    assert len(detector.history) == 1
    assert detector.history[0].timestamp == clock.now()


async def test_history_is_trimmed_when_full(clock, scheduler, idle_source):
    detector = IdleDetector(idle_source, scheduler)
    for _ in range(1000):
        clock.mono += 1
        await detector.check()
    assert len(detector.history) == 1000

    clock.mono += 1
    await detector.check()
    assert len(detector.history) == 500
    assert detector.history[-1].timestamp == clock.now()


async def test_patterns_blend_readings_per_time_bucket(clock, scheduler, idle_source):
    detector = IdleDetector(idle_source, scheduler)
    bucket = activity_bucket(clock.now())

    idle_source.idle_ms = 1_000
    await detector.check()
    assert detector.patterns[bucket] == 1_000

    clock.mono += 1_000
    idle_source.idle_ms = 3_000
    await detector.check()
    assert detector.patterns[bucket] == pytest.approx(1_000 * 0.8 + 3_000 * 0.2)
