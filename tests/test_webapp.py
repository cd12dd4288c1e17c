import pytest
from fastapi.testclient import TestClient

from task_timer.db import TaskStore
from task_timer.engine import TrackingEngine
from task_timer.webapp import create_app


async def _no_idle():
    return 0


@pytest.fixture
def client(tmp_path):
    engine = TrackingEngine(
        TaskStore(tmp_path / "tasks.sqlite3"),
        idle_source=_no_idle,
        load_sampler=lambda: 0.2,
        watch_suspend=False,
    )
    with TestClient(create_app(engine=engine)) as client:
        yield client


def _create(client, title="Write docs", estimate="00:30:00"):
    response = client.post("/api/tasks", json={"title": title, "estimated_time": estimate})
    assert response.status_code == 201
    return response.json()["task"]


def test_status(client):
    payload = client.get("/api/status").json()
    assert payload["timer"]["running"] is False
    assert payload["idle"]["running"] is True
    assert payload["database_path"].endswith("tasks.sqlite3")


def test_create_and_list_tasks(client):
    task = _create(client)
    assert task["estimated_time"] == "00:30:00"
    tasks = client.get("/api/tasks").json()["tasks"]
    assert [t["id"] for t in tasks] == [task["id"]]


def test_invalid_duration_is_a_bad_request(client):
    response = client.post("/api/tasks", json={"title": "x", "estimated_time": "00:75:00"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid time range"


def test_timer_lifecycle(client):
    task = _create(client)
    started = client.post("/api/timer/start", json={"task_id": task["id"]}).json()
    assert started["started"] is True
    assert started["timer"]["task_id"] == task["id"]

    again = client.post("/api/timer/start", json={"task_id": task["id"]}).json()
    assert again["started"] is False

    paused = client.post("/api/timer/pause").json()
    assert paused["timer"]["running"] is False
    assert client.post("/api/timer/resume").json()["resumed"] is True

    stopped = client.post("/api/timer/stop").json()
    assert stopped["timer"]["task_id"] is None


def test_start_unknown_task(client):
    response = client.post("/api/timer/start", json={"task_id": 999})
    assert response.status_code == 404


def test_tick_interval(client):
    assert client.put("/api/timer/interval", json={"interval_ms": 20}).status_code == 400
    response = client.put("/api/timer/interval", json={"interval_ms": 500})
    assert response.json() == {"interval_ms": 500}


def test_user_input_is_debounced(client):
    assert client.post("/api/idle/input", json={"kind": "key"}).json()["accepted"] is True
    assert client.post("/api/idle/input", json={"kind": "key"}).json()["accepted"] is False
    assert client.post("/api/idle/input", json={"kind": "wheel"}).status_code == 422


def test_power_events(client):
    task = _create(client)
    client.post("/api/timer/start", json={"task_id": task["id"]})

    suspended = client.post("/api/power/suspend").json()
    assert suspended["task_ids"] == [task["id"]]
    assert client.get("/api/status").json()["timer"]["running"] is False

    resumed = client.post("/api/power/resume").json()
    assert resumed["task_ids"] == [task["id"]]


def test_screen_lock_pauses_and_unlock_resumes(client):
    task = _create(client)
    client.post("/api/timer/start", json={"task_id": task["id"]})
    assert client.post("/api/power/lock").json()["timer"]["running"] is False
    assert client.post("/api/power/unlock").json()["timer"]["running"] is True


def test_complete_and_stats(client):
    task = _create(client, estimate="00:10:00")
    stats = client.get(f"/api/tasks/{task['id']}/stats").json()["stats"]
    assert stats["estimated_seconds"] == 600

    completed = client.post(f"/api/tasks/{task['id']}/complete").json()["stats"]
    assert completed["task_id"] == task["id"]
    assert client.get("/api/tasks").json()["tasks"] == []
    assert client.get(f"/api/tasks/{task['id']}/stats").status_code == 404


def test_clear_errors(client):
    assert client.post("/api/errors/clear").json() == {"save_error": None}
