"""FastMCP server exposing task administration as MCP tools.

Tools:
  - list_tasks()          every task with its scheduling state
  - pause_task(task_id)   pause a task until it is resumed
  - resume_task(task_id)  unpause a task and reset its failure counter

The server works on whatever storage was installed with configure(); `main.py --mcp`
does this at startup and tests install a tmp_path-backed store.

Usage:
    python -m storyloom.mcp_server --data-dir data
"""

from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from storyloom.tracker import ExecutionTracker

mcp = FastMCP("storyloom-admin")

_storage = None
_tracker: ExecutionTracker | None = None


def configure(storage, tracker: ExecutionTracker | None = None) -> None:
    """Install the store the tools operate on."""
    global _storage, _tracker
    _storage = storage
    _tracker = tracker or ExecutionTracker(storage)


def _require_tracker() -> ExecutionTracker:
    if _tracker is None:
        raise RuntimeError("storyloom MCP server is not configured")
    return _tracker


@mcp.tool()
def list_tasks() -> list[dict]:
    """List every task with its scheduling state."""
    _require_tracker()
    return [t.model_dump(mode="json") for t in _storage.list_tasks()]


@mcp.tool()
def pause_task(task_id: str) -> dict:
    """Pause a task. It will not run again until resumed."""
    task = _require_tracker().pause(task_id)
    if task is None:
        raise ValueError(f"Unknown task {task_id!r}")
    return task.model_dump(mode="json")


@mcp.tool()
def resume_task(task_id: str) -> dict:
    """Resume a paused task and reset its consecutive failure count."""
    task = _require_tracker().resume(task_id)
    if task is None:
        raise ValueError(f"Unknown task {task_id!r}")
    return task.model_dump(mode="json")


if __name__ == "__main__":
    import argparse
    from pathlib import Path

    from storyloom.storage import Storage

    parser = argparse.ArgumentParser(description="storyloom admin MCP server")
    parser.add_argument("--data-dir", type=Path, default=Path("data"))
    args = parser.parse_args()
    configure(Storage(args.data_dir))
    mcp.run()
