"""Retrying hand-off of elapsed time to the task store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .config import PersistenceSettings
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

AsyncSave = Callable[[int, str], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class SaveFailure:
    """Sticky record of a write that exhausted its retries."""

    task_id: int
    duration: str
    attempts: int
    message: str
    timestamp: datetime


class PersistenceWriter:
    """Runs ``save(task_id, text)`` with bounded exponential backoff.

    Writes are fire-and-forget from the timer's point of view: ``request_save``
    queues the write on the scheduler and returns immediately. When every
    attempt fails the failure is kept in ``last_error`` until a caller clears it.
    """

    def __init__(
        self,
        save: AsyncSave,
        scheduler: Scheduler,
        settings: Optional[PersistenceSettings] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._save = save
        self._scheduler = scheduler
        self.settings = settings or PersistenceSettings()
        self._sleep = sleep
        self._last_error: Optional[SaveFailure] = None
        self._pending: dict[int, str] = {}
        self._inflight: dict[int, asyncio.Event] = {}

    @property
    def last_error(self) -> Optional[SaveFailure]:
        return self._last_error

    def clear_error(self) -> None:
        if self._last_error is not None:
            logger.info("Cleared save error for task %s", self._last_error.task_id)
        self._last_error = None

    def request_save(self, task_id: int, duration: str) -> None:
        """Queue a write; requests for a task coalesce to the latest duration."""
        queued = task_id in self._pending
        self._pending[task_id] = duration
        if not queued:
            self._scheduler.spawn(self._write_pending(task_id))

    async def flush(self, task_id: int) -> bool:
        """Write the queued duration for ``task_id`` now, after any write in progress."""
        inflight = self._inflight.get(task_id)
        if inflight is not None:
            await inflight.wait()
        duration = self._pending.pop(task_id, None)
        if duration is None:
            return True
        return await self.save_with_retry(task_id, duration)

    async def _write_pending(self, task_id: int) -> None:
        inflight = self._inflight.get(task_id)
        if inflight is not None:
            await inflight.wait()
        duration = self._pending.pop(task_id, None)
        if duration is None:
            return
        done = asyncio.Event()
        self._inflight[task_id] = done
        try:
            await self.save_with_retry(task_id, duration)
        finally:
            done.set()
            if self._inflight.get(task_id) is done:
                del self._inflight[task_id]

    async def save_with_retry(self, task_id: int, duration: str) -> bool:
        attempts = max(1, self.settings.max_attempts)
        base_delay = self.settings.backoff_base.total_seconds()
        last_exc: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                await self._save(task_id, duration)
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "Saving %s for task %s failed (attempt %d/%d): %s",
                    duration,
                    task_id,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts:
                    await self._sleep(base_delay * (2 ** (attempt - 1)))
                continue
            logger.debug("Saved %s for task %s", duration, task_id)
            return True

        self._last_error = SaveFailure(
            task_id=task_id,
            duration=duration,
            attempts=attempts,
            message=f"Could not save {duration} for task {task_id}: {last_exc}",
            timestamp=self._scheduler.clock.now(),
        )
        logger.error(self._last_error.message)
        return False
