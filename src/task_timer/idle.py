"""Confidence-weighted idle/active detection over a polled idle source."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import IdleSettings, to_ms
from .idle_sources import MAX_SANE_IDLE_MS, IdleSource
from .models import ActivityHistoryEntry, ActivitySource, IdleStatus
from .observers import ListenerSet
from .scheduler import Cancellable, Scheduler

logger = logging.getLogger(__name__)


class Confidence:
    LOW = 0.25
    MEDIUM = 0.5
    HIGH = 0.75
    VERY_HIGH = 0.9
    MAXIMUM = 1.0


# magnitude, temporal consistency, pattern match, sequence
SIGNAL_WEIGHTS = (0.4, 0.3, 0.2, 0.1)

MAX_HISTORY = 1000
TRIMMED_HISTORY = 500
RECENT_HISTORY = 10
PATTERN_BUCKET_HOURS = 2
PATTERN_KEEP_WEIGHT = 0.8
IDLE_BACKOFF_FACTOR = 1.5

IdleListener = Callable[[bool, Optional[int], Optional[float]], None]


def activity_bucket(moment: datetime) -> int:
    return moment.hour // PATTERN_BUCKET_HOURS


class IdleDetector:
    """Polls an idle source and publishes idle/active transitions.

    Each reading is scored by four independent checks (plausible magnitude,
    growth consistent with elapsed time, agreement with the learned
    time-of-day pattern, and how many consecutive readings agree). The public
    state only flips when the fused confidence reaches ``min_confidence``.
    Direct user input bypasses scoring and always means active.
    """

    def __init__(
        self,
        source: IdleSource,
        scheduler: Scheduler,
        settings: Optional[IdleSettings] = None,
    ) -> None:
        self.settings = settings or IdleSettings()
        self._source = source
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self._listeners: ListenerSet[IdleListener] = ListenerSet("idle change")

        self._threshold_ms = int(to_ms(self.settings.idle_threshold))
        self._base_interval_ms = to_ms(self.settings.check_interval)
        self._interval_ms = self._base_interval_ms

        self._is_idle = False
        self._idle_time_ms = 0
        self._confidence = Confidence.MAXIMUM
        self._last_activity = self._clock.now()
        self._locked = False

        self._history: list[ActivityHistoryEntry] = []
        self._patterns: dict[int, float] = {}
        self._last_sample: Optional[tuple[float, int]] = None
        self._last_input_ms: Optional[float] = None
        self._consecutive_idle = 0
        self._consecutive_active = 0
        self._error_count = 0

        self._running = False
        self._handle: Optional[Cancellable] = None
        self._inflight: Optional[Cancellable] = None
        self._generation = 0

    # ---- read-only views ----

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_idle(self) -> bool:
        return self._is_idle

    @property
    def confidence(self) -> float:
        return self._confidence

    @property
    def interval_ms(self) -> float:
        return self._interval_ms

    @property
    def history(self) -> tuple[ActivityHistoryEntry, ...]:
        return tuple(self._history)

    @property
    def patterns(self) -> dict[int, float]:
        return dict(self._patterns)

    def on_idle_change(self, listener: IdleListener) -> Callable[[], None]:
        return self._listeners.add(listener)

    def get_idle_status(self) -> IdleStatus:
        return IdleStatus(
            is_idle=self._is_idle,
            idle_time_ms=self._idle_time_ms,
            threshold_ms=self._threshold_ms,
            last_activity=self._last_activity,
            confidence=self._confidence,
            verification_mode=self.settings.verification_mode,
            recent_history=tuple(self._history[-RECENT_HISTORY:]),
            consecutive_idle_checks=self._consecutive_idle,
            poll_interval_ms=int(self._interval_ms),
            error_count=self._error_count,
        )

    # ---- lifecycle ----

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._last_sample = None
        self._arm()
        logger.info(
            "Idle detection started (threshold %d ms, every %.0f ms)",
            self._threshold_ms,
            self._interval_ms,
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._generation += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._inflight is not None:
            self._inflight.cancel()
            self._inflight = None
        logger.info("Idle detection stopped")

    def _arm(self) -> None:
        self._handle = self._scheduler.call_later(self._interval_ms, self._on_poll_due)

    def _on_poll_due(self) -> None:
        self._handle = None
        if not self._running:
            return
        self._inflight = self._scheduler.spawn(self._poll(self._generation))

    async def _poll(self, generation: int) -> None:
        try:
            await self.check()
        finally:
            # A poll cancelled by stop() must not re-arm a chain started since.
            if generation == self._generation:
                self._inflight = None
                if self._running:
                    self._arm()

    # ---- polling ----

    async def check(self) -> Optional[bool]:
        """Take one reading; returns the public idle flag, or None on failure."""
        try:
            idle_ms = int(await self._source())
        except Exception as exc:
            self._record_failure(exc)
            return None
        self._error_count = 0
        return self._apply_sample(idle_ms)

    def _apply_sample(self, idle_ms: int) -> bool:
        now_ms = self._clock.monotonic_ms()
        now = self._clock.now()
        self._prune_history(now)

        raw_idle = idle_ms >= self._threshold_ms
        if raw_idle:
            self._consecutive_idle += 1
            self._consecutive_active = 0
        else:
            self._consecutive_active += 1
            self._consecutive_idle = 0

        confidence = self._verify(idle_ms, raw_idle, now_ms, now)
        self._last_sample = (now_ms, idle_ms)
        self._idle_time_ms = idle_ms
        self._record(ActivityHistoryEntry(now, idle_ms, confidence, ActivitySource.SYSTEM))

        if not raw_idle:
            self._last_activity = now - timedelta(milliseconds=idle_ms)

        if raw_idle == self._is_idle:
            self._confidence = confidence
        elif not raw_idle and self._locked:
            logger.debug("Screen locked; ignoring active reading of %d ms", idle_ms)
        elif confidence >= self.settings.min_confidence:
            self._transition(raw_idle, idle_ms, confidence)
        else:
            logger.debug(
                "Ignoring %s reading (%d ms) at confidence %.2f",
                "idle" if raw_idle else "active",
                idle_ms,
                confidence,
            )

        self._adapt_interval()
        return self._is_idle

    def _verify(self, idle_ms: int, raw_idle: bool, now_ms: float, now: datetime) -> float:
        if self.settings.verification_mode == "basic":
            return Confidence.MAXIMUM
        signals = (
            self._magnitude_signal(idle_ms),
            self._temporal_signal(idle_ms, now_ms),
            self._pattern_signal(idle_ms, now),
            self._sequence_signal(raw_idle),
        )
        return round(sum(w * s for w, s in zip(SIGNAL_WEIGHTS, signals)), 4)

    def _magnitude_signal(self, idle_ms: int) -> float:
        if idle_ms < 0 or idle_ms > MAX_SANE_IDLE_MS:
            return Confidence.LOW
        if self._last_sample is not None:
            _, previous_idle = self._last_sample
            if idle_ms - previous_idle > 2 * self._interval_ms:
                return Confidence.MEDIUM
        return Confidence.VERY_HIGH

    def _temporal_signal(self, idle_ms: int, now_ms: float) -> float:
        if self._last_sample is None:
            return Confidence.MEDIUM
        previous_ms, previous_idle = self._last_sample
        expected_growth = max(now_ms - previous_ms, 0.0)
        if idle_ms < previous_idle:
            # Input happened in between: the new reading must fit in the gap.
            return Confidence.VERY_HIGH if idle_ms <= expected_growth * 1.1 else Confidence.LOW
        if expected_growth <= 0:
            return Confidence.MEDIUM
        discrepancy = abs((idle_ms - previous_idle) - expected_growth) / expected_growth
        if discrepancy < 0.1:
            return Confidence.VERY_HIGH
        if discrepancy < 0.3:
            return Confidence.HIGH
        if discrepancy < 0.5:
            return Confidence.MEDIUM
        return Confidence.LOW

    def _pattern_signal(self, idle_ms: int, now: datetime) -> float:
        average = self._patterns.get(activity_bucket(now))
        if average is None:
            return Confidence.MEDIUM
        deviation = abs(idle_ms - average) / max(average, 1.0)
        if deviation < 0.3:
            return Confidence.HIGH
        if deviation < 0.6:
            return Confidence.MEDIUM
        return Confidence.LOW

    def _sequence_signal(self, raw_idle: bool) -> float:
        streak = self._consecutive_idle if raw_idle else self._consecutive_active
        if streak >= 5:
            return Confidence.VERY_HIGH
        if streak >= 3:
            return Confidence.HIGH
        return Confidence.MEDIUM

    def _adapt_interval(self) -> None:
        if self._is_idle:
            ceiling = self._base_interval_ms * self.settings.max_interval_multiplier
            self._interval_ms = min(self._interval_ms * IDLE_BACKOFF_FACTOR, ceiling)
        else:
            self._interval_ms = max(self._interval_ms * 0.5, self._base_interval_ms)

    def _record_failure(self, exc: Exception) -> None:
        self._error_count += 1
        logger.warning(
            "Failed to get system idle time (%d consecutive): %s", self._error_count, exc
        )
        self._record(
            ActivityHistoryEntry(
                self._clock.now(), self._idle_time_ms, Confidence.LOW, ActivitySource.ESTIMATED
            )
        )
        if self._error_count >= self.settings.max_check_failures:
            cap = to_ms(self.settings.failure_interval_cap)
            self._interval_ms = min(self._interval_ms * 2, cap)
            logger.warning("Idle polling slowed to %.0f ms after repeated failures", self._interval_ms)
            self._error_count = 0

    # ---- direct activity ----

    def record_user_input(self, kind: str = "pointer") -> bool:
        """Pointer/key/scroll event; returns False when debounced."""
        now_ms = self._clock.monotonic_ms()
        debounce_ms = to_ms(self.settings.input_debounce)
        if self._last_input_ms is not None and now_ms - self._last_input_ms < debounce_ms:
            return False
        self._last_input_ms = now_ms
        logger.debug("User input (%s)", kind)
        self._mark_active()
        return True

    def reset_activity(self) -> None:
        logger.info("Activity reset by user")
        self._mark_active()

    def force_idle(self, reason: str = "screen locked") -> None:
        """Hold the idle state regardless of polled readings until activity resumes."""
        self._locked = True
        self._confidence = Confidence.MAXIMUM
        self._record(
            ActivityHistoryEntry(
                self._clock.now(), self._idle_time_ms, Confidence.MAXIMUM, ActivitySource.SYSTEM
            )
        )
        logger.info("Forcing idle state: %s", reason)
        if not self._is_idle:
            self._transition(True, self._idle_time_ms, Confidence.MAXIMUM)

    def _mark_active(self) -> None:
        now = self._clock.now()
        self._locked = False
        self._consecutive_idle = 0
        self._idle_time_ms = 0
        self._last_activity = now
        self._interval_ms = self._base_interval_ms
        self._confidence = Confidence.MAXIMUM
        self._record(ActivityHistoryEntry(now, 0, Confidence.MAXIMUM, ActivitySource.USER))
        if self._is_idle:
            self._transition(False, 0, Confidence.MAXIMUM)

    def _transition(self, is_idle: bool, idle_ms: int, confidence: float) -> None:
        self._is_idle = is_idle
        self._confidence = confidence
        logger.info(
            "System became %s (idle %d ms, confidence %.2f)",
            "idle" if is_idle else "active",
            idle_ms,
            confidence,
        )
        self._listeners.notify(is_idle, idle_ms, confidence)

    # ---- history ----

    def _record(self, entry: ActivityHistoryEntry) -> None:
        self._history.append(entry)
        if len(self._history) > MAX_HISTORY:
            del self._history[:-TRIMMED_HISTORY]
        bucket = activity_bucket(entry.timestamp)
        previous = self._patterns.get(bucket)
        if previous is None:
            self._patterns[bucket] = float(entry.idle_time_ms)
        else:
            self._patterns[bucket] = (
                previous * PATTERN_KEEP_WEIGHT + entry.idle_time_ms * (1 - PATTERN_KEEP_WEIGHT)
            )

    def _prune_history(self, now: datetime) -> None:
        cutoff = now - self.settings.history_window
        index = 0
        while index < len(self._history) and self._history[index].timestamp < cutoff:
            index += 1
        if index:
            del self._history[:index]
