"""Configuration models and helpers for the tracking engine."""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

VERIFICATION_MODES = ("multi_level", "basic")


def to_ms(value: timedelta) -> float:
    return value.total_seconds() * 1000.0


@dataclass(slots=True)
class TimerSettings:
    """Tuning for the precision timer's adaptive ticking."""

    tick_interval: timedelta = timedelta(milliseconds=1000)
    min_interval: timedelta = timedelta(milliseconds=50)
    max_interval: timedelta = timedelta(milliseconds=2000)
    drift_threshold: timedelta = timedelta(milliseconds=30)
    adjust_step: float = 0.05
    good_ticks_before_growth: int = 10
    save_every: timedelta = timedelta(seconds=30)
    max_tick_failures: int = 5
    target_accuracy: timedelta = timedelta(milliseconds=50)


@dataclass(slots=True)
class IdleSettings:
    """Runtime configuration for the idle detector."""

    idle_threshold: timedelta = timedelta(minutes=5)
    check_interval: timedelta = timedelta(seconds=1)
    max_interval_multiplier: float = 5.0
    min_confidence: float = 0.5
    verification_mode: str = "multi_level"
    history_window: timedelta = timedelta(hours=1)
    input_debounce: timedelta = timedelta(seconds=1)
    max_check_failures: int = 10
    failure_interval_cap: timedelta = timedelta(seconds=10)

    def __post_init__(self) -> None:
        if self.verification_mode not in VERIFICATION_MODES:
            raise ValueError(
                f"verification_mode must be one of {VERIFICATION_MODES}, "
                f"got {self.verification_mode!r}"
            )
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError("min_confidence must be within [0, 1]")


@dataclass(slots=True)
class CoordinatorSettings:
    """Thresholds and sweep intervals for the activity coordinator."""

    pause_confidence: float = 0.7
    resume_confidence: float = 0.8
    maintenance_interval: timedelta = timedelta(minutes=5)
    suggestion_interval: timedelta = timedelta(minutes=1)
    suggestion_idle_threshold: timedelta = timedelta(minutes=5)
    record_max_age: timedelta = timedelta(hours=24)
    inactivity_warning: timedelta = timedelta(minutes=30)
    monitor_interval: timedelta = timedelta(minutes=5)
    min_monitor_interval: timedelta = timedelta(minutes=1)
    max_monitor_interval: timedelta = timedelta(minutes=15)
    pause_suggestion_after: timedelta = timedelta(minutes=15)


@dataclass(slots=True)
class PersistenceSettings:
    """Retry policy for elapsed-time writes."""

    max_attempts: int = 3
    backoff_base: timedelta = timedelta(milliseconds=500)


@dataclass(slots=True)
class EngineSettings:
    """All tunables for one engine instance."""

    timer: TimerSettings = field(default_factory=TimerSettings)
    idle: IdleSettings = field(default_factory=IdleSettings)
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    persistence: PersistenceSettings = field(default_factory=PersistenceSettings)
    suspend_gap: timedelta = timedelta(seconds=30)

    @classmethod
    def from_intervals(
        cls,
        idle_minutes: float,
        check_seconds: float = 1.0,
        tick_ms: float | None = None,
    ) -> "EngineSettings":
        settings = cls()
        settings.idle = replace(
            settings.idle,
            idle_threshold=timedelta(minutes=idle_minutes),
            check_interval=timedelta(seconds=check_seconds),
        )
        if tick_ms is not None:
            settings.timer = replace(
                settings.timer, tick_interval=timedelta(milliseconds=tick_ms)
            )
        return settings

    @classmethod
    def from_toml(cls, data: dict[str, Any]) -> "EngineSettings":
        """Build settings from parsed TOML; durations are given in milliseconds."""
        settings = cls(
            timer=_section(TimerSettings, data.get("timer", {})),
            idle=_section(IdleSettings, data.get("idle", {})),
            coordinator=_section(CoordinatorSettings, data.get("coordinator", {})),
            persistence=_section(PersistenceSettings, data.get("persistence", {})),
        )
        if "suspend_gap" in data:
            settings.suspend_gap = timedelta(milliseconds=float(data["suspend_gap"]))
        return settings

    @classmethod
    def load(cls, path: Optional[Path]) -> "EngineSettings":
        if path is None or not Path(path).exists():
            return cls()
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
        logger.info("Loaded engine settings from %s", path)
        return cls.from_toml(data)


def _section(model: type, raw: dict[str, Any]) -> Any:
    known = {f.name: f for f in fields(model)}
    kwargs: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            logger.warning("Ignoring unknown %s option %r", model.__name__, key)
            continue
        default = known[key].default
        if isinstance(default, timedelta):
            kwargs[key] = timedelta(milliseconds=float(value))
        elif isinstance(default, bool):
            kwargs[key] = bool(value)
        elif isinstance(default, int):
            kwargs[key] = int(value)
        elif isinstance(default, float):
            kwargs[key] = float(value)
        else:
            kwargs[key] = value
    return model(**kwargs)
