"""Admin HTTP API: task inspection, manual pause/resume, execution records, state scopes."""

from __future__ import annotations

from fastapi import APIRouter, FastAPI, HTTPException, Request

from storyloom.state import StateStore
from storyloom.tracker import ExecutionTracker

router = APIRouter()


def _storage(request: Request):
    return request.app.state.storage


def _tracker(request: Request) -> ExecutionTracker:
    return request.app.state.tracker


# ── Health ───────────────────────────────────────────────


@router.get("/health")
async def health(request: Request):
    breaker = getattr(_storage(request), "breaker", None)
    return {
        "status": "ok",
        "persistence": breaker.state.value if breaker is not None else "closed",
    }


# ── Tasks ────────────────────────────────────────────────


@router.get("/tasks")
async def list_tasks(request: Request):
    """List every task with its scheduling state."""
    return [t.model_dump(mode="json") for t in _storage(request).list_tasks()]


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, request: Request):
    task = _storage(request).get_task(task_id)
    if task is None:
        raise HTTPException(404, "Task not found")
    return task.model_dump(mode="json")


@router.post("/tasks/{task_id}/pause")
async def pause_task(task_id: str, request: Request):
    task = _tracker(request).pause(task_id)
    if task is None:
        raise HTTPException(404, "Task not found")
    return task.model_dump(mode="json")


@router.post("/tasks/{task_id}/resume")
async def resume_task(task_id: str, request: Request):
    """Unpause a task and reset its failure counter."""
    task = _tracker(request).resume(task_id)
    if task is None:
        raise HTTPException(404, "Task not found")
    return task.model_dump(mode="json")


@router.get("/tasks/{task_id}/executions")
async def list_task_executions(task_id: str, request: Request):
    return [e.model_dump(mode="json") for e in _storage(request).list_executions(task_id)]


# ── Executions ───────────────────────────────────────────


@router.get("/executions/{execution_id}")
async def get_execution(execution_id: str, request: Request):
    """An execution record with its acts and processor outcomes."""
    storage = _storage(request)
    execution = storage.get_execution(execution_id)
    if execution is None:
        raise HTTPException(404, "Execution not found")
    return {
        **execution.model_dump(mode="json"),
        "acts": [a.model_dump(mode="json") for a in storage.get_acts(execution_id)],
        "processors": [
            r.model_dump(mode="json") for r in storage.get_processor_runs(execution_id)
        ],
    }


# ── State ────────────────────────────────────────────────


@router.get("/state/{scope}")
async def get_state(scope: str, request: Request):
    """Every key in one state scope, e.g. "actor-bard"."""
    return [e.model_dump(mode="json") for e in StateStore(_storage(request)).entries(scope)]


@router.delete("/state/{scope}")
async def clear_state(scope: str, request: Request):
    StateStore(_storage(request)).clear(scope)
    return {"cleared": scope}


def create_app(storage, tracker: ExecutionTracker | None = None) -> FastAPI:
    app = FastAPI(title="storyloom")
    app.state.storage = storage
    app.state.tracker = tracker or ExecutionTracker(storage)
    app.include_router(router, prefix="/api")
    return app
