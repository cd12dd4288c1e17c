"""Wires the timer, idle detector, coordinator and task store into one engine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from .config import EngineSettings
from .coordinator import ActivityCoordinator, LoadSampler, system_load
from .db import TaskNotFound, TaskStore
from .idle import IdleDetector
from .idle_sources import IdleSource, IdleSourceUnavailable, system_idle_source
from .models import TaskStats
from .persistence import PersistenceWriter
from .power import SuspendWatcher
from .scheduler import AsyncioScheduler, Scheduler
from .time_codec import format_duration, parse_duration
from .timer import PrecisionTimer

logger = logging.getLogger(__name__)


async def _unavailable_idle_source() -> int:
    raise IdleSourceUnavailable("no idle source for this platform")


class TrackingEngine:
    """One explicitly constructed set of engine components sharing a scheduler."""

    def __init__(
        self,
        store: TaskStore,
        settings: Optional[EngineSettings] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        idle_source: Optional[IdleSource] = None,
        load_sampler: LoadSampler = system_load,
        watch_suspend: bool = True,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.store = store
        self.scheduler = scheduler or AsyncioScheduler()

        if idle_source is None:
            try:
                idle_source = system_idle_source()
            except IdleSourceUnavailable as exc:
                logger.warning("Idle detection disabled: %s", exc)
        self.idle_available = idle_source is not None

        self.writer = PersistenceWriter(
            store.save_elapsed_time, self.scheduler, self.settings.persistence
        )
        self.timer = PrecisionTimer(
            self.scheduler, self.settings.timer, save=self.writer.request_save
        )
        self.detector = IdleDetector(
            idle_source or _unavailable_idle_source, self.scheduler, self.settings.idle
        )
        self.coordinator = ActivityCoordinator(
            self.timer,
            self.detector,
            self.scheduler,
            self.settings.coordinator,
            idle_source=idle_source,
            task_source=store,
            load_sampler=load_sampler,
        )
        self.watcher = (
            SuspendWatcher(self.coordinator, self.scheduler, gap=self.settings.suspend_gap)
            if watch_suspend
            else None
        )
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.coordinator.start()
        if self.idle_available:
            self.detector.start()
        if self.watcher is not None:
            self.watcher.start()
        logger.info("Tracking engine started")

    async def stop(self) -> None:
        """Stop background work and flush the running task's time."""
        if not self._started:
            return
        self._started = False
        if self.watcher is not None:
            self.watcher.stop()
        self.detector.stop()
        task_id = self.timer.current_task_id
        if task_id is not None:
            self.timer.stop()
            await self._flush(task_id)
        self.coordinator.shutdown()
        logger.info("Tracking engine stopped")

    # ---- task control ----

    async def start_task(self, task_id: int) -> bool:
        task = await asyncio.to_thread(self.store.get_task, task_id)
        if task is None:
            raise TaskNotFound(f"No task found for id={task_id}")
        previous = self.timer.current_task_id
        started = self.timer.start(task_id, parse_duration(task.actual_time))
        if not started:
            return False
        if previous is not None and previous != task_id:
            self.coordinator.unregister_activity(previous)
        self.coordinator.register_activity(task_id)
        return True

    def pause_task(self) -> int:
        return self.timer.pause()

    def resume_task(self) -> bool:
        resumed = self.timer.resume()
        task_id = self.timer.current_task_id
        if resumed and task_id is not None:
            self.coordinator.acknowledge_resume(task_id)
        return resumed

    def stop_task(self) -> int:
        task_id = self.timer.current_task_id
        seconds = self.timer.stop()
        if task_id is not None:
            self.coordinator.unregister_activity(task_id)
        return seconds

    async def complete_task(self, task_id: int) -> TaskStats:
        if self.timer.current_task_id == task_id:
            self.stop_task()
            await self._flush(task_id)
        else:
            self.coordinator.unregister_activity(task_id)
        return await asyncio.to_thread(self.store.complete_task, task_id)

    def record_input(self, kind: str = "pointer") -> bool:
        accepted = self.detector.record_user_input(kind)
        task_id = self.timer.current_task_id
        if task_id is not None:
            self.coordinator.touch_activity(task_id)
        return accepted

    async def _flush(self, task_id: int) -> None:
        if not await self.writer.flush(task_id):
            logger.error("Final time for task %s was not saved", task_id)

    # ---- reporting ----

    def status(self) -> Dict[str, Any]:
        state = self.timer.state
        total = self.timer.total_seconds()
        idle = self.detector.get_idle_status()
        error = self.writer.last_error
        return {
            "timer": {
                "running": state.running,
                "task_id": state.task_id,
                "total_seconds": total,
                "elapsed": format_duration(total),
                "interval_ms": round(self.timer.interval_ms),
            },
            "quality": asdict(self.timer.quality.snapshot()),
            "idle": {
                "available": self.idle_available,
                "running": self.detector.is_running,
                "is_idle": idle.is_idle,
                "idle_time_ms": idle.idle_time_ms,
                "threshold_ms": idle.threshold_ms,
                "confidence": idle.confidence,
                "last_activity": idle.last_activity.isoformat(),
                "verification_mode": idle.verification_mode,
                "consecutive_idle_checks": idle.consecutive_idle_checks,
                "poll_interval_ms": idle.poll_interval_ms,
                "error_count": idle.error_count,
            },
            "coordinator": _stats_payload(self.coordinator),
            "save_error": (
                {
                    "task_id": error.task_id,
                    "duration": error.duration,
                    "attempts": error.attempts,
                    "message": error.message,
                    "timestamp": error.timestamp.isoformat(),
                }
                if error is not None
                else None
            ),
        }


def _stats_payload(coordinator: ActivityCoordinator) -> Dict[str, Any]:
    stats = coordinator.get_stats()
    return {
        "active_timers": stats.active_timers,
        "suspended_timers": stats.suspended_timers,
        "pending_resume_suggestions": stats.pending_resume_suggestions,
        "last_maintenance_run": (
            stats.last_maintenance_run.isoformat() if stats.last_maintenance_run else None
        ),
        "suspended": {
            str(task_id): record.reason
            for task_id, record in coordinator.suspended_records.items()
        },
    }
