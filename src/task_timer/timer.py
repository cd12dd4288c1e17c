"""Single-task precision timer with self-correcting adaptive ticks."""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Callable, Optional

from .config import TimerSettings, to_ms
from .models import TickEvent, TimerState
from .observers import ListenerSet
from .quality import QualityMonitor
from .scheduler import Cancellable, Scheduler
from .time_codec import format_duration

logger = logging.getLogger(__name__)

MIN_TICK_INTERVAL_MS = 100
MAX_TICK_INTERVAL_MS = 5000

SaveCallback = Callable[[int, str], None]
TickListener = Callable[[TickEvent], None]


def round_seconds(milliseconds: float) -> int:
    """Half-up rounding of a non-negative millisecond count to seconds."""
    return int(math.floor(milliseconds / 1000.0 + 0.5))


class PrecisionTimer:
    """Accumulates elapsed time for one task at a time.

    The timer never runs a fixed periodic callback. Each tick measures how far
    the loop overshot the delay it asked for, banks the real elapsed time, and
    arms exactly one next callback whose delay adapts to the observed drift:
    large drift shrinks the interval toward ``min_interval``, a run of accurate
    ticks grows it toward ``max_interval``.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        settings: Optional[TimerSettings] = None,
        save: Optional[SaveCallback] = None,
        quality: Optional[QualityMonitor] = None,
    ) -> None:
        self.settings = settings or TimerSettings()
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self._save = save
        self.quality = quality or QualityMonitor(to_ms(self.settings.target_accuracy))
        self._listeners: ListenerSet[TickListener] = ListenerSet("timer tick")
        self._state = TimerState()
        self._handle: Optional[Cancellable] = None

        self._min_interval_ms = to_ms(self.settings.min_interval)
        self._max_interval_ms = to_ms(self.settings.max_interval)
        self._default_interval_ms = to_ms(self.settings.tick_interval)
        self._interval_ms = self._clamp(self._default_interval_ms)
        self._scheduled_delay_ms = self._interval_ms
        self._good_ticks = 0
        self._tick_failures = 0
        self._last_saved_seconds = 0

    # ---- read-only views ----

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state.running

    @property
    def current_task_id(self) -> Optional[int]:
        return self._state.task_id

    @property
    def interval_ms(self) -> float:
        return self._interval_ms

    def total_seconds(self) -> int:
        state = self._state
        if state.running and state.start_instant is not None:
            elapsed = self._clock.monotonic_ms() - state.start_instant
            return round_seconds(state.accumulated_ms + elapsed)
        return round_seconds(state.accumulated_ms)

    def add_listener(self, listener: TickListener) -> Callable[[], None]:
        return self._listeners.add(listener)

    # ---- lifecycle ----

    def start(self, task_id: int, initial_seconds: int = 0) -> bool:
        if self._state.running:
            logger.warning("Timer is already running")
            return False
        if self._state.task_id is not None:
            logger.info(
                "Stopping paused task %s before starting task %s",
                self._state.task_id,
                task_id,
            )
            self.stop()

        initial = max(0, int(initial_seconds))
        self._state = TimerState(
            running=True,
            start_instant=self._clock.monotonic_ms(),
            accumulated_ms=initial * 1000,
            task_id=task_id,
        )
        self._last_saved_seconds = initial
        self._good_ticks = 0
        self._tick_failures = 0
        self._arm()
        logger.info("Started timer for task %s at %s", task_id, format_duration(initial))
        return True

    def pause(self) -> int:
        if not self._state.running:
            logger.warning("Timer is not running")
            return round_seconds(self._state.accumulated_ms)

        self._cancel_tick()
        self._bank_elapsed(stop_running=True)
        seconds = round_seconds(self._state.accumulated_ms)
        self._persist()
        logger.info("Paused timer for task %s at %s", self._state.task_id, format_duration(seconds))
        return seconds

    def resume(self) -> bool:
        if self._state.running:
            logger.warning("Timer is already running")
            return False
        if self._state.task_id is None:
            logger.error("Cannot resume timer without task ID")
            return False

        self._state = replace(
            self._state, running=True, start_instant=self._clock.monotonic_ms()
        )
        self._good_ticks = 0
        self._arm()
        logger.info("Resumed timer for task %s", self._state.task_id)
        return True

    def stop(self) -> int:
        if self._state.task_id is None:
            logger.debug("Stop requested with no active task")
            return 0

        self._cancel_tick()
        if self._state.running:
            self._bank_elapsed(stop_running=True)
        task_id = self._state.task_id
        final_seconds = round_seconds(self._state.accumulated_ms)
        self._persist()

        self._state = TimerState()
        self.quality.reset()
        self._interval_ms = self._clamp(self._default_interval_ms)
        self._good_ticks = 0
        self._tick_failures = 0
        self._last_saved_seconds = 0
        logger.info("Stopped timer for task %s at %s", task_id, format_duration(final_seconds))
        return final_seconds

    def set_tick_interval(self, interval_ms: float) -> bool:
        if not MIN_TICK_INTERVAL_MS <= interval_ms <= MAX_TICK_INTERVAL_MS:
            logger.warning(
                "Tick interval must be between %d and %d ms, got %s",
                MIN_TICK_INTERVAL_MS,
                MAX_TICK_INTERVAL_MS,
                interval_ms,
            )
            return False
        self._default_interval_ms = float(interval_ms)
        self._interval_ms = self._clamp(self._default_interval_ms)
        logger.debug("Tick interval set to %.0f ms", self._interval_ms)
        return True

    # ---- ticking ----

    def _arm(self) -> None:
        delay = self._interval_ms
        recommended = self.quality.recommended_interval_ms()
        if recommended < self._default_interval_ms:
            delay = min(delay, recommended)
        self._scheduled_delay_ms = delay
        self._handle = self._scheduler.call_later(delay, self._on_tick)

    def _cancel_tick(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _on_tick(self) -> None:
        self._handle = None
        if not self._state.running:
            return
        try:
            self._process_tick()
        except Exception:
            self._tick_failures += 1
            logger.exception(
                "Timer tick failed for task %s (%d consecutive)",
                self._state.task_id,
                self._tick_failures,
            )
            if self._tick_failures >= self.settings.max_tick_failures:
                logger.warning(
                    "Resetting drift tracking after %d failed ticks", self._tick_failures
                )
                self.quality.reset()
                self._interval_ms = self._clamp(self._default_interval_ms)
                self._good_ticks = 0
                self._tick_failures = 0
        else:
            self._tick_failures = 0
        if self._state.running:
            self._arm()

    def _process_tick(self) -> None:
        elapsed = self._bank_elapsed(stop_running=False)
        drift = elapsed - self._scheduled_delay_ms
        self.quality.record_drift(drift)
        self._adapt_interval(drift)

        total = self.total_seconds()
        self._listeners.notify(
            TickEvent(
                total_seconds=total,
                drift_ms=drift,
                timestamp=self._clock.now(),
                quality_score=self.quality.quality_score,
            )
        )
        if total - self._last_saved_seconds >= self.settings.save_every.total_seconds():
            self._persist()

    def _adapt_interval(self, drift_ms: float) -> None:
        step = self.settings.adjust_step
        if abs(drift_ms) > to_ms(self.settings.drift_threshold):
            self.quality.record_correction()
            self._good_ticks = 0
            self._interval_ms = self._clamp(self._interval_ms * (1.0 - step))
            logger.debug(
                "Drift %.1f ms over threshold; interval now %.0f ms", drift_ms, self._interval_ms
            )
            return
        self._good_ticks += 1
        if self._good_ticks >= self.settings.good_ticks_before_growth:
            self._interval_ms = self._clamp(self._interval_ms * (1.0 + step))
            self._good_ticks = 0

    def _bank_elapsed(self, *, stop_running: bool) -> float:
        """Fold the running segment into ``accumulated_ms``; returns its length."""
        state = self._state
        if state.start_instant is None:
            raise RuntimeError("Timer has no running segment to bank")
        elapsed = self._clock.monotonic_ms() - state.start_instant
        banked = int(round(elapsed))
        if stop_running:
            self._state = replace(
                state,
                running=False,
                start_instant=None,
                accumulated_ms=state.accumulated_ms + banked,
            )
        else:
            # Advance by the banked amount so sub-millisecond remainders carry over.
            self._state = replace(
                state,
                accumulated_ms=state.accumulated_ms + banked,
                start_instant=state.start_instant + banked,
            )
        return elapsed

    def _persist(self) -> None:
        state = self._state
        if state.task_id is None:
            return
        seconds = round_seconds(state.accumulated_ms)
        self._last_saved_seconds = seconds
        if self._save is None:
            return
        try:
            self._save(state.task_id, format_duration(seconds))
        except Exception:
            logger.exception("Failed to hand off elapsed time for task %s", state.task_id)

    def _clamp(self, interval_ms: float) -> float:
        return min(max(interval_ms, self._min_interval_ms), self._max_interval_ms)
