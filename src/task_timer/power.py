"""Host suspend detection from awake-time versus wall clock discontinuities."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from .config import to_ms
from .coordinator import ActivityCoordinator
from .scheduler import Cancellable, Scheduler

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 5000.0


class SuspendWatcher:
    """Reports a suspend/resume pair to the coordinator after the host slept.

    The clock's awake time stops while the machine is suspended and the wall
    clock does not, so a forward wall-clock jump larger than ``gap`` between
    two polls means the host was asleep. Backward jumps are clock adjustments
    and are only logged.
    """

    def __init__(
        self,
        coordinator: ActivityCoordinator,
        scheduler: Scheduler,
        gap: timedelta = timedelta(seconds=30),
        poll_interval_ms: float = DEFAULT_POLL_INTERVAL_MS,
    ) -> None:
        self._coordinator = coordinator
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self._gap_ms = to_ms(gap)
        self._poll_interval_ms = poll_interval_ms
        self._handle: Optional[Cancellable] = None
        self._last_awake: Optional[float] = None
        self._last_wall: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self._handle is not None:
            return
        self._last_awake = self._clock.awake_ms()
        self._last_wall = self._clock.wall_ms()
        self._handle = self._scheduler.call_later(self._poll_interval_ms, self._on_poll)

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _on_poll(self) -> None:
        self._handle = None
        try:
            self.check()
        except Exception:
            logger.exception("Suspend check failed")
        self._handle = self._scheduler.call_later(self._poll_interval_ms, self._on_poll)

    def check(self) -> float:
        """Compare both clocks since the last poll; returns the wall-clock jump in ms."""
        current_awake = self._clock.awake_ms()
        current_wall = self._clock.wall_ms()
        jump = 0.0
        if self._last_awake is not None and self._last_wall is not None:
            expected_wall = self._last_wall + (current_awake - self._last_awake)
            jump = current_wall - expected_wall
        self._last_awake = current_awake
        self._last_wall = current_wall

        if jump > self._gap_ms:
            logger.info("Host was suspended for about %.0f s", jump / 1000.0)
            self._coordinator.handle_system_suspend()
            self._coordinator.handle_system_resume()
        elif jump < -self._gap_ms:
            logger.info("Wall clock moved back by %.0f s", -jump / 1000.0)
        return jump
