"""Binds the precision timer and idle detector to task identity and host power events."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Coroutine, Iterable, Optional, Protocol, Union

import psutil

from .config import CoordinatorSettings, to_ms
from .idle import IdleDetector
from .idle_sources import IdleSource
from .models import (
    ActivityRecord,
    CoordinatorStats,
    IntegrityReport,
    PauseSuggestion,
    PowerNotice,
    ResumeSuggestion,
    SuspendedTimerRecord,
    TaskRecord,
)
from .observers import ListenerSet
from .scheduler import Cancellable, Scheduler
from .time_codec import is_valid_duration
from .timer import PrecisionTimer

logger = logging.getLogger(__name__)

IDLE_REASON = "idle"
SYSTEM_SUSPEND_REASON = "system suspend"
HIGH_LOAD = 0.8
LOW_LOAD = 0.3
MAX_LOAD_HISTORY = 10

Suggestion = Union[ResumeSuggestion, PauseSuggestion]
LoadSampler = Callable[[], float]


class TaskSource(Protocol):
    def active_tasks(self) -> Iterable[TaskRecord]: ...

    def completed_task_ids(self) -> Iterable[int]: ...


def system_load() -> float:
    """Average of CPU and memory utilisation in [0, 1]."""
    cpu = psutil.cpu_percent(interval=None) / 100.0
    memory = psutil.virtual_memory().percent / 100.0
    return (cpu + memory) / 2.0


class ActivityCoordinator:
    """Owns suspension records and resume suggestions for registered tasks.

    Idle transitions pause the running task when confident enough and resume
    it only on stronger evidence; host suspend/resume bypasses confidence.
    Periodic sweeps purge stale registrations, check stored data and suggest
    resuming tasks once the machine is in use again.
    """

    def __init__(
        self,
        timer: PrecisionTimer,
        detector: IdleDetector,
        scheduler: Scheduler,
        settings: Optional[CoordinatorSettings] = None,
        idle_source: Optional[IdleSource] = None,
        task_source: Optional[TaskSource] = None,
        load_sampler: LoadSampler = system_load,
    ) -> None:
        self.settings = settings or CoordinatorSettings()
        self._timer = timer
        self._detector = detector
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self._idle_source = idle_source
        self._task_source = task_source
        self._load_sampler = load_sampler

        self._activities: dict[int, ActivityRecord] = {}
        self._suspended: dict[int, SuspendedTimerRecord] = {}
        self._suggestions: dict[int, ResumeSuggestion] = {}
        self._pause_suggested: set[int] = set()
        self._load_history: list[float] = []
        self._monitor_interval_ms = to_ms(self.settings.monitor_interval)
        self._last_maintenance: Optional[datetime] = None

        self._suspend_listeners: ListenerSet[Callable[[PowerNotice], None]] = ListenerSet("system suspend")
        self._resume_listeners: ListenerSet[Callable[[PowerNotice], None]] = ListenerSet("system resume")
        self._suggestion_listeners: ListenerSet[Callable[[Suggestion], None]] = ListenerSet("suggestion")

        self._started = False
        self._handles: dict[str, Cancellable] = {}
        self._generation = 0
        self._unsubscribe_idle: Optional[Callable[[], None]] = None

    # ---- subscriptions ----

    def on_system_suspend(self, listener: Callable[[PowerNotice], None]) -> Callable[[], None]:
        return self._suspend_listeners.add(listener)

    def on_system_resume(self, listener: Callable[[PowerNotice], None]) -> Callable[[], None]:
        return self._resume_listeners.add(listener)

    def on_suggestion(self, listener: Callable[[Suggestion], None]) -> Callable[[], None]:
        return self._suggestion_listeners.add(listener)

    # ---- lifecycle ----

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._unsubscribe_idle = self._detector.on_idle_change(self._on_idle_change)
        self._schedule("monitor", lambda: self._monitor_interval_ms, self.monitor_active_timers)
        self._schedule_async(
            "maintenance", to_ms(self.settings.maintenance_interval), self.run_maintenance
        )
        self._schedule_async(
            "suggestions", to_ms(self.settings.suggestion_interval), self.generate_resume_suggestions
        )
        logger.info("Activity coordinator started")

    def shutdown(self) -> None:
        self._started = False
        self._generation += 1
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            handle.cancel()
        if self._unsubscribe_idle is not None:
            self._unsubscribe_idle()
            self._unsubscribe_idle = None
        self._activities.clear()
        self._suspended.clear()
        self._suggestions.clear()
        self._pause_suggested.clear()
        logger.info("Activity coordinator shutdown completed")

    def _schedule(self, name: str, delay_ms: Callable[[], float], job: Callable[[], object]) -> None:
        def fire() -> None:
            self._handles.pop(name, None)
            if not self._started:
                return
            try:
                job()
            except Exception:
                logger.exception("Background %s run failed", name)
            if self._started:
                self._schedule(name, delay_ms, job)

        self._handles[name] = self._scheduler.call_later(delay_ms(), fire)

    def _schedule_async(
        self, name: str, delay_ms: float, job: Callable[[], Coroutine[Any, Any, object]]
    ) -> None:
        generation = self._generation

        def fire() -> None:
            self._handles.pop(name, None)
            if self._started:
                self._handles[name] = self._scheduler.spawn(cycle())

        async def cycle() -> None:
            try:
                await job()
            except Exception:
                logger.exception("Background %s run failed", name)
            finally:
                if self._started and generation == self._generation:
                    self._schedule_async(name, delay_ms, job)

        self._handles[name] = self._scheduler.call_later(delay_ms, fire)

    # ---- registration ----

    def register_activity(self, task_id: int) -> None:
        now_ms = self._clock.monotonic_ms()
        self._activities[task_id] = ActivityRecord(started_at=now_ms, last_activity=now_ms)
        self._pause_suggested.discard(task_id)
        logger.info("Timer activity registered for task %s", task_id)

    def unregister_activity(self, task_id: int) -> bool:
        known = (
            task_id in self._activities
            or task_id in self._suspended
            or task_id in self._suggestions
        )
        if not known:
            logger.debug("Task %s is not registered", task_id)
            return False
        self._activities.pop(task_id, None)
        self._suspended.pop(task_id, None)
        self._suggestions.pop(task_id, None)
        self._pause_suggested.discard(task_id)
        logger.info("Timer activity unregistered for task %s", task_id)
        return True

    def touch_activity(self, task_id: int) -> None:
        record = self._activities.get(task_id)
        if record is not None:
            record.last_activity = self._clock.monotonic_ms()
            self._pause_suggested.discard(task_id)

    def acknowledge_resume(self, task_id: int) -> None:
        """Drop the suspension and suggestion once the caller resumed the task."""
        self._suspended.pop(task_id, None)
        self._suggestions.pop(task_id, None)
        self.touch_activity(task_id)

    def is_registered(self, task_id: int) -> bool:
        return task_id in self._activities

    @property
    def suspended_records(self) -> dict[int, SuspendedTimerRecord]:
        return dict(self._suspended)

    @property
    def resume_suggestions(self) -> dict[int, ResumeSuggestion]:
        return dict(self._suggestions)

    # ---- idle transitions ----

    def _on_idle_change(
        self, is_idle: bool, idle_ms: Optional[int], confidence: Optional[float]
    ) -> None:
        task_id = self._timer.current_task_id
        if task_id is None or task_id not in self._activities:
            return
        score = confidence if confidence is not None else 0.0

        if is_idle:
            if score < self.settings.pause_confidence:
                logger.debug("Idle at confidence %.2f is below the pause floor", score)
                return
            if not self._timer.is_running:
                return
            self._timer.pause()
            self._suspended[task_id] = SuspendedTimerRecord(
                task_id=task_id, timestamp=self._clock.now(), reason=IDLE_REASON
            )
            logger.info("Paused task %s after %s ms idle (confidence %.2f)", task_id, idle_ms, score)
            return

        self.touch_activity(task_id)
        record = self._suspended.get(task_id)
        if record is None or record.reason != IDLE_REASON or self._timer.is_running:
            return
        if score >= self.settings.resume_confidence:
            self._suspended.pop(task_id, None)
            self._suggestions.pop(task_id, None)
            self._timer.resume()
            logger.info("Resumed task %s on activity (confidence %.2f)", task_id, score)
        else:
            self._suggest_resume(task_id, "Activity detected after idle pause")

    def _suggest_resume(self, task_id: int, reason: str) -> bool:
        if task_id in self._suggestions:
            return False
        suggestion = ResumeSuggestion(task_id=task_id, reason=reason, timestamp=self._clock.now())
        self._suggestions[task_id] = suggestion
        logger.info("Resume suggestion generated for task %s", task_id)
        self._suggestion_listeners.notify(suggestion)
        return True

    # ---- host power events ----

    def handle_system_suspend(self) -> PowerNotice:
        now = self._clock.now()
        if self._timer.is_running:
            self._timer.pause()
        affected = tuple(self._activities)
        for task_id in affected:
            self._suspended[task_id] = SuspendedTimerRecord(
                task_id=task_id, timestamp=now, reason=SYSTEM_SUSPEND_REASON
            )
        notice = PowerNotice(kind="suspend", timestamp=now, task_ids=affected)
        if affected:
            logger.info("System suspend detected, suspended %d timers", len(affected))
            self._suspend_listeners.notify(notice)
        return notice

    def handle_system_resume(self) -> PowerNotice:
        now = self._clock.now()
        resumed = tuple(
            task_id
            for task_id, record in self._suspended.items()
            if record.reason == SYSTEM_SUSPEND_REASON
        )
        for task_id in resumed:
            del self._suspended[task_id]
        notice = PowerNotice(kind="resume", timestamp=now, task_ids=resumed)
        if resumed:
            logger.info("System resume detected, %d timers awaiting confirmation", len(resumed))
            self._resume_listeners.notify(notice)
        return notice

    def handle_screen_lock(self) -> None:
        self._detector.force_idle("screen locked")

    def handle_screen_unlock(self) -> None:
        self._detector.reset_activity()

    # ---- housekeeping ----

    async def run_maintenance(self) -> IntegrityReport:
        logger.info("Running background maintenance tasks")
        self.cleanup_old_records()
        inactive = self.check_inactive_timers()
        report = await self.validate_data_integrity(inactive)
        self._last_maintenance = self._clock.now()
        logger.info("Background maintenance completed")
        return report

    def cleanup_old_records(self) -> list[int]:
        cutoff = self._clock.monotonic_ms() - to_ms(self.settings.record_max_age)
        stale = [
            task_id
            for task_id, record in self._activities.items()
            if record.last_activity < cutoff
        ]
        for task_id in stale:
            self.unregister_activity(task_id)
        if stale:
            logger.info("Cleaned up %d old activity records", len(stale))
        return stale

    def check_inactive_timers(self) -> tuple[int, ...]:
        now_ms = self._clock.monotonic_ms()
        limit = to_ms(self.settings.inactivity_warning)
        inactive: list[int] = []
        for task_id, record in self._activities.items():
            idle_for = now_ms - record.last_activity
            if idle_for > limit:
                logger.warning(
                    "Timer %s has been inactive for %d minutes", task_id, round(idle_for / 60000)
                )
                inactive.append(task_id)
        return tuple(inactive)

    async def validate_data_integrity(self, inactive: tuple[int, ...] = ()) -> IntegrityReport:
        if self._task_source is None:
            return IntegrityReport(inactive_task_ids=inactive)
        try:
            tasks, completed_ids = await asyncio.to_thread(self._read_task_source)
        except Exception:
            logger.exception("Error validating data integrity")
            return IntegrityReport(inactive_task_ids=inactive)

        overlapping = tuple(sorted({task.id for task in tasks} & completed_ids))
        if overlapping:
            logger.warning(
                "Data integrity issue: %d overlapping task IDs found", len(overlapping)
            )
        malformed: list[int] = []
        for task in tasks:
            if not is_valid_duration(task.actual_time) or not is_valid_duration(task.estimated_time):
                logger.warning(
                    'Invalid time format in task %s: actual="%s", estimated="%s"',
                    task.id,
                    task.actual_time,
                    task.estimated_time,
                )
                malformed.append(task.id)
        return IntegrityReport(
            overlapping_ids=overlapping,
            malformed_durations=tuple(malformed),
            inactive_task_ids=inactive,
        )

    def _read_task_source(self) -> tuple[list[TaskRecord], set[int]]:
        source = self._task_source
        if source is None:
            return [], set()
        return list(source.active_tasks()), set(source.completed_task_ids())

    async def generate_resume_suggestions(self) -> list[int]:
        candidates = [task_id for task_id in self._suspended if task_id not in self._suggestions]
        if not candidates or self._idle_source is None:
            return []
        try:
            idle_ms = await self._idle_source()
        except Exception:
            logger.exception("Error generating resume suggestion")
            return []
        if idle_ms >= to_ms(self.settings.suggestion_idle_threshold):
            return []
        created: list[int] = []
        for task_id in candidates:
            if task_id not in self._suspended:
                continue
            if self._suggest_resume(task_id, "System activity detected after timer suspension"):
                created.append(task_id)
        return created

    def monitor_active_timers(self) -> list[int]:
        """Suggest pausing registered tasks that have gone quiet for too long."""
        self._adjust_monitor_interval()
        now_ms = self._clock.monotonic_ms()
        limit = to_ms(self.settings.pause_suggestion_after)
        level = "high" if self._load_history and self._load_history[-1] > HIGH_LOAD else "normal"
        suggested: list[int] = []
        for task_id, record in list(self._activities.items()):
            if task_id in self._suspended or task_id in self._pause_suggested:
                continue
            idle_for = now_ms - record.last_activity
            if idle_for <= limit:
                continue
            logger.info(
                "Timer %s has been inactive for %d minutes", task_id, round(idle_for / 60000)
            )
            self._pause_suggested.add(task_id)
            suggested.append(task_id)
            self._suggestion_listeners.notify(
                PauseSuggestion(
                    task_id=task_id,
                    reason=f"Extended inactivity detected ({level} load)",
                    timestamp=self._clock.now(),
                )
            )
        return suggested

    @property
    def monitor_interval_ms(self) -> float:
        return self._monitor_interval_ms

    def _adjust_monitor_interval(self) -> None:
        try:
            load = float(self._load_sampler())
        except Exception as exc:
            logger.warning("Failed to calculate system load: %s", exc)
            load = 0.5
        self._load_history.append(load)
        if len(self._load_history) > MAX_LOAD_HISTORY:
            self._load_history.pop(0)
        average = sum(self._load_history) / len(self._load_history)
        if average > HIGH_LOAD:
            self._monitor_interval_ms = min(
                self._monitor_interval_ms * 1.2, to_ms(self.settings.max_monitor_interval)
            )
        elif average < LOW_LOAD:
            self._monitor_interval_ms = max(
                self._monitor_interval_ms * 0.8, to_ms(self.settings.min_monitor_interval)
            )

    def get_stats(self) -> CoordinatorStats:
        return CoordinatorStats(
            active_timers=len(self._activities),
            suspended_timers=len(self._suspended),
            pending_resume_suggestions=len(self._suggestions),
            last_maintenance_run=self._last_maintenance,
        )
