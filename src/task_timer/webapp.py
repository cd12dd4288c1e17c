"""FastAPI application that exposes a local JSON API for the tracking engine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from .config import EngineSettings
from .db import TaskNotFound, TaskStore
from .engine import TrackingEngine
from .models import PowerNotice, TaskRecord, TaskStats
from .paths import get_db_path
from .time_codec import DurationError

logger = logging.getLogger(__name__)


class TaskPayload(BaseModel):
    title: str
    estimated_time: str = "00:00:00"

    model_config = ConfigDict(extra="forbid")


class TimerStartPayload(BaseModel):
    task_id: int

    model_config = ConfigDict(extra="forbid")


class IntervalPayload(BaseModel):
    interval_ms: float

    model_config = ConfigDict(extra="forbid")


class InputPayload(BaseModel):
    kind: str = Field(default="pointer", pattern="^(pointer|key|scroll)$")

    model_config = ConfigDict(extra="forbid")


def create_app(
    *,
    db_path: Optional[Path] = None,
    settings: Optional[EngineSettings] = None,
    engine: Optional[TrackingEngine] = None,
) -> FastAPI:
    """Instantiate the FastAPI application."""
    if engine is None:
        engine = TrackingEngine(TaskStore(Path(db_path or get_db_path())), settings)
    store = engine.store

    app = FastAPI(title="Task Timer", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.engine = engine

    @app.on_event("startup")
    async def _startup() -> None:
        engine.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await engine.stop()

    @app.get("/api/status")
    async def status(request: Request) -> Dict[str, Any]:
        payload = request.app.state.engine.status()
        payload["database_path"] = str(store.db_path)
        return payload

    @app.get("/api/tasks")
    async def list_tasks() -> Dict[str, Any]:
        tasks = await asyncio.to_thread(store.active_tasks)
        return {"tasks": [_task_payload(task) for task in tasks]}

    @app.post("/api/tasks", status_code=201)
    async def create_task(payload: TaskPayload) -> Dict[str, Any]:
        try:
            task = await asyncio.to_thread(
                store.create_task, payload.title, payload.estimated_time
            )
        except ValueError as exc:
            logger.info("Rejected task payload: %s", exc)
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"task": _task_payload(task)}

    @app.post("/api/tasks/{task_id}/complete")
    async def complete_task(task_id: int) -> Dict[str, Any]:
        try:
            stats = await engine.complete_task(task_id)
        except TaskNotFound as exc:
            raise HTTPException(status_code=404, detail="Task not found") from exc
        except DurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"stats": _stats_payload(stats)}

    @app.get("/api/tasks/{task_id}/stats")
    async def task_stats(task_id: int) -> Dict[str, Any]:
        try:
            stats = await asyncio.to_thread(store.time_stats, task_id)
        except DurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if stats is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return {"stats": _stats_payload(stats)}

    @app.post("/api/timer/start")
    async def start_timer(payload: TimerStartPayload) -> Dict[str, Any]:
        try:
            started = await engine.start_task(payload.task_id)
        except TaskNotFound as exc:
            raise HTTPException(status_code=404, detail="Task not found") from exc
        except DurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"started": started, "timer": engine.status()["timer"]}

    @app.post("/api/timer/pause")
    async def pause_timer() -> Dict[str, Any]:
        return {"total_seconds": engine.pause_task(), "timer": engine.status()["timer"]}

    @app.post("/api/timer/resume")
    async def resume_timer() -> Dict[str, Any]:
        return {"resumed": engine.resume_task(), "timer": engine.status()["timer"]}

    @app.post("/api/timer/stop")
    async def stop_timer() -> Dict[str, Any]:
        return {"total_seconds": engine.stop_task(), "timer": engine.status()["timer"]}

    @app.put("/api/timer/interval")
    async def set_interval(payload: IntervalPayload) -> Dict[str, Any]:
        if not engine.timer.set_tick_interval(payload.interval_ms):
            raise HTTPException(
                status_code=400, detail="interval_ms must be between 100 and 5000"
            )
        return {"interval_ms": round(engine.timer.interval_ms)}

    @app.post("/api/idle/reset")
    async def reset_idle() -> Dict[str, Any]:
        engine.detector.reset_activity()
        return {"idle": engine.status()["idle"]}

    @app.post("/api/idle/input")
    async def record_input(payload: InputPayload) -> Dict[str, Any]:
        return {"accepted": engine.record_input(payload.kind)}

    @app.post("/api/power/suspend")
    async def power_suspend() -> Dict[str, Any]:
        return _notice_payload(engine.coordinator.handle_system_suspend())

    @app.post("/api/power/resume")
    async def power_resume() -> Dict[str, Any]:
        return _notice_payload(engine.coordinator.handle_system_resume())

    @app.post("/api/power/lock")
    async def screen_lock() -> Dict[str, Any]:
        engine.coordinator.handle_screen_lock()
        return {"timer": engine.status()["timer"]}

    @app.post("/api/power/unlock")
    async def screen_unlock() -> Dict[str, Any]:
        engine.coordinator.handle_screen_unlock()
        return {"timer": engine.status()["timer"]}

    @app.post("/api/errors/clear")
    async def clear_errors() -> Dict[str, Any]:
        engine.writer.clear_error()
        return {"save_error": None}

    return app


def _task_payload(task: TaskRecord) -> Dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "estimated_time": task.estimated_time,
        "actual_time": task.actual_time,
        "status": task.status,
        "updated_at": task.updated_at.isoformat() if task.updated_at else None,
    }


def _stats_payload(stats: TaskStats) -> Dict[str, Any]:
    payload = asdict(stats)
    payload["updated_at"] = stats.updated_at.isoformat() if stats.updated_at else None
    return payload


def _notice_payload(notice: PowerNotice) -> Dict[str, Any]:
    return {
        "kind": notice.kind,
        "timestamp": notice.timestamp.isoformat(),
        "task_ids": list(notice.task_ids),
    }
