import logging

import pytest

from task_timer.config import TimerSettings
from task_timer.timer import PrecisionTimer, round_seconds


@pytest.fixture
def saves():
    return []


@pytest.fixture
def timer(scheduler, saves):
    return PrecisionTimer(scheduler, TimerSettings(), save=lambda task_id, text: saves.append((task_id, text)))


def test_round_seconds_is_half_up():
    assert round_seconds(1499) == 1
    assert round_seconds(1500) == 2
    assert round_seconds(2500) == 3


def test_start_tick_stop_adds_to_initial_seconds(timer, scheduler, saves):
    assert timer.start(7, initial_seconds=120)
    scheduler.advance(45_000)
    assert timer.total_seconds() == 165
    assert timer.stop() == 165
    assert saves[-1] == (7, "00:02:45")
    assert timer.current_task_id is None
    assert scheduler.pending_timers == 0


def test_pause_banks_elapsed_time(timer, scheduler):
    timer.start(1, initial_seconds=60)
    scheduler.advance(45_000)
    assert timer.pause() == 105
    scheduler.advance(600_000)
    assert timer.total_seconds() == 105
    assert timer.resume()
    scheduler.advance(15_000)
    assert timer.stop() == 120


def test_start_while_running_is_rejected(timer, scheduler, caplog):
    timer.start(1)
    scheduler.advance(2_000)
    with caplog.at_level(logging.WARNING):
        assert not timer.start(2)
    assert "Timer is already running" in caplog.text
    assert timer.current_task_id == 1
    assert timer.total_seconds() == 2


def test_pause_when_not_running_warns(timer, caplog):
    with caplog.at_level(logging.WARNING):
        assert timer.pause() == 0
    assert "Timer is not running" in caplog.text


def test_banking_without_running_segment_raises(timer):
    with pytest.raises(RuntimeError, match="no running segment"):
        timer._bank_elapsed(stop_running=True)


def test_second_pause_does_not_double_count(timer, scheduler):
    timer.start(1)
    scheduler.advance(10_000)
    assert timer.pause() == 10
    assert timer.pause() == 10


def test_resume_without_task_is_an_error(timer, caplog):
    with caplog.at_level(logging.ERROR):
        assert not timer.resume()
    assert "Cannot resume timer without task ID" in caplog.text


def test_stop_without_task_returns_zero(timer, saves):
    assert timer.stop() == 0
    assert saves == []


def test_start_stops_previously_paused_task(timer, scheduler, saves):
    timer.start(1)
    scheduler.advance(5_000)
    timer.pause()
    assert timer.start(2)
    assert (1, "00:00:05") in saves
    assert timer.current_task_id == 2
    assert timer.total_seconds() == 0


def test_tick_events_reach_listeners(timer, scheduler):
    events = []
    timer.add_listener(events.append)
    timer.start(1)
    scheduler.advance(3_000)
    assert [event.total_seconds for event in events] == [1, 2, 3]
    assert all(event.drift_ms == 0 for event in events)


def test_failing_listener_does_not_stop_ticking(timer, scheduler):
    def broken(event):
        raise RuntimeError("boom")

    timer.add_listener(broken)
    timer.start(1)
    scheduler.advance(5_000)
    assert timer.is_running
    assert timer.total_seconds() == 5


def test_periodic_save_every_thirty_seconds(timer, scheduler, saves):
    timer.start(3)
    scheduler.advance(29_000)
    assert saves == []
    scheduler.advance(2_000)
    assert saves and saves[-1][0] == 3


def test_late_ticks_shrink_interval(timer, scheduler):
    scheduler.lateness_ms = 100
    timer.start(1)
    scheduler.advance(5_000)
    assert timer.interval_ms < 1000
    assert timer.quality.correction_count >= 1
    assert timer.quality.recommended_interval_ms() == 250
    assert timer.total_seconds() == 5


def test_accurate_ticks_grow_interval(timer, scheduler):
    timer.start(1)
    scheduler.advance(10_000)
    assert timer.interval_ms == pytest.approx(1050)


def test_set_tick_interval_bounds(timer):
    assert not timer.set_tick_interval(50)
    assert not timer.set_tick_interval(6000)
    assert timer.set_tick_interval(500)
    assert timer.interval_ms == 500


def test_stop_resets_quality(timer, scheduler):
    scheduler.lateness_ms = 200
    timer.start(1)
    scheduler.advance(3_000)
    timer.stop()
    assert timer.quality.sample_count == 0
    assert timer.interval_ms == 1000
