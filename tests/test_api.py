"""Tests for the admin HTTP API (storyloom.api)."""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from storyloom.api import create_app
from storyloom.models import ExecutionStatus, NarrativeExecution, TaskState

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def client(storage) -> TestClient:
    storage.save_task(TaskState(task_id="t1", actor_name="bard", next_run=NOW,
                                consecutive_failures=4, is_paused=True, paused_at=NOW))
    return TestClient(create_app(storage))


def test_health(client: TestClient) -> None:
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_list_tasks(client: TestClient) -> None:
    tasks = client.get("/api/tasks").json()
    assert [t["task_id"] for t in tasks] == ["t1"]
    assert tasks[0]["is_paused"] is True


def test_resume_resets_counter(client: TestClient, storage) -> None:
    resp = client.post("/api/tasks/t1/resume")
    assert resp.status_code == 200
    assert resp.json()["is_paused"] is False
    assert storage.get_task("t1").consecutive_failures == 0


def test_pause(client: TestClient, storage) -> None:
    client.post("/api/tasks/t1/resume")
    assert client.post("/api/tasks/t1/pause").json()["is_paused"] is True
    assert storage.get_task("t1").is_paused


def test_unknown_task_404(client: TestClient) -> None:
    assert client.post("/api/tasks/ghost/resume").status_code == 404
    assert client.get("/api/tasks/ghost").status_code == 404


def test_execution_detail(client: TestClient, storage) -> None:
    execution = NarrativeExecution(
        narrative_name="n", actor_name="bard", task_id="t1", started_at=NOW,
        status=ExecutionStatus.SUCCEEDED,
    )
    storage.save_execution(execution)
    body = client.get(f"/api/executions/{execution.id}").json()
    assert body["status"] == "succeeded"
    assert body["acts"] == []
    assert [e["id"] for e in client.get("/api/tasks/t1/executions").json()] == [execution.id]
    assert client.get("/api/executions/nope").status_code == 404


def test_state_scope_inspect_and_clear(client: TestClient, state) -> None:
    state.set_many("actor-bard", {"mood": "wry", "visits": 3})

    entries = client.get("/api/state/actor-bard").json()
    assert [(e["key"], e["value"]) for e in entries] == [("mood", "wry"), ("visits", 3)]

    assert client.delete("/api/state/actor-bard").json() == {"cleared": "actor-bard"}
    assert client.get("/api/state/actor-bard").json() == []
