"""Domain models shared by the timer, idle detector and coordinator."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ActivitySource(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ESTIMATED = "estimated"


@dataclass(frozen=True, slots=True)
class TimerState:
    """Snapshot of the single timed task."""

    running: bool = False
    start_instant: Optional[float] = None
    accumulated_ms: int = 0
    task_id: Optional[int] = None


@dataclass(frozen=True, slots=True)
class TickEvent:
    total_seconds: int
    drift_ms: float
    timestamp: datetime
    quality_score: float


@dataclass(frozen=True, slots=True)
class QualityReport:
    average_drift_ms: float
    max_drift_ms: float
    quality_score: float
    correction_count: int
    sample_count: int
    status: str
    recommended_interval_ms: int


@dataclass(frozen=True, slots=True)
class ActivityHistoryEntry:
    timestamp: datetime
    idle_time_ms: int
    confidence: float
    source: ActivitySource


@dataclass(frozen=True, slots=True)
class IdleStatus:
    is_idle: bool
    idle_time_ms: int
    threshold_ms: int
    last_activity: datetime
    confidence: float
    verification_mode: str
    recent_history: tuple[ActivityHistoryEntry, ...]
    consecutive_idle_checks: int
    poll_interval_ms: int
    error_count: int


@dataclass(frozen=True, slots=True)
class SuspendedTimerRecord:
    task_id: int
    timestamp: datetime
    reason: str


@dataclass(frozen=True, slots=True)
class ResumeSuggestion:
    task_id: int
    reason: str
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class PauseSuggestion:
    task_id: int
    reason: str
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class PowerNotice:
    """Emitted after a host suspend or resume with the affected task ids."""

    kind: str
    timestamp: datetime
    task_ids: tuple[int, ...]


@dataclass(slots=True)
class ActivityRecord:
    started_at: float
    last_activity: float


@dataclass(frozen=True, slots=True)
class CoordinatorStats:
    active_timers: int
    suspended_timers: int
    pending_resume_suggestions: int
    last_maintenance_run: Optional[datetime]


@dataclass(frozen=True, slots=True)
class IntegrityReport:
    overlapping_ids: tuple[int, ...] = ()
    malformed_durations: tuple[int, ...] = ()
    inactive_task_ids: tuple[int, ...] = ()

    @property
    def ok(self) -> bool:
        return not (self.overlapping_ids or self.malformed_durations)


@dataclass(slots=True)
class TaskRecord:
    """A stored task and its textual durations."""

    id: int
    title: str
    estimated_time: str = "00:00:00"
    actual_time: str = "00:00:00"
    status: str = "not-started"
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class TaskStats:
    """Actual versus estimated time for one task."""

    task_id: int
    actual_time: str
    estimated_time: str
    actual_seconds: int
    estimated_seconds: int
    variance_seconds: int
    efficiency: float
    updated_at: Optional[datetime] = None
