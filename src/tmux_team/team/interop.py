"""Optional hooks for workers that keep task state in a foreign team layout.

Interop is always fail-open: a failing hook is logged, persisted next to the worker
as ``interop-<hook>-failed.json`` and otherwise ignored.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from tmux_team.team.models import DoneSignal, TaskRecord, TaskStatus, to_iso, utc_now
from tmux_team.team.store import TeamStore, read_json_safe, write_json_atomic

logger = logging.getLogger(__name__)

LEAD_NAME = "tmux-team-lead"


class InteropAdapter(Protocol):
    """Bridge between the native task files and a foreign state convention."""

    async def bootstrap(self, *, team_name: str, worker: str, task: TaskRecord) -> None:
        """Seed the foreign state area when a worker is spawned."""

    async def poll_completion(
        self,
        *,
        team_name: str,
        worker: str,
        task_id: str,
    ) -> DoneSignal | None:
        """Return a done signal once the foreign task record is terminal."""


class ForeignTeamStateAdapter:
    """Reads ``<root>/<team>/tasks/task-<id>.json`` and writes mailbox messages.

    ``observe`` mode only polls; ``active`` mode also delivers the assignment into the
    foreign mailbox at spawn time.
    """

    def __init__(self, root: Path, *, mode: str = "observe") -> None:
        self.root = root
        self.mode = mode

    def task_path(self, team_name: str, task_id: str) -> Path:
        return self.root / team_name / "tasks" / f"task-{task_id}.json"

    def mailbox_path(self, team_name: str, worker: str) -> Path:
        return self.root / team_name / "mailbox" / f"{worker}.json"

    async def bootstrap(self, *, team_name: str, worker: str, task: TaskRecord) -> None:
        if self.mode != "active":
            return
        message = {
            "message_id": str(uuid4()),
            "from_worker": LEAD_NAME,
            "to_worker": worker,
            "body": (
                f"## Task Assignment\nTask ID: {task.id}\nSubject: {task.subject}\n\n"
                f"{task.description}"
            ),
            "created_at": to_iso(utc_now()),
        }
        await asyncio.to_thread(
            write_json_atomic,
            self.mailbox_path(team_name, worker),
            {"worker": worker, "messages": [message]},
        )

    async def poll_completion(
        self,
        *,
        team_name: str,
        worker: str,
        task_id: str,
    ) -> DoneSignal | None:
        raw = await asyncio.to_thread(read_json_safe, self.task_path(team_name, task_id))
        if raw is None:
            return None
        status = raw.get("status")
        if not isinstance(raw.get("id"), str) or not isinstance(status, str):
            return None
        if status not in (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value):
            return None
        summary = raw.get("result") or raw.get("error") or f"Task {status}"
        completed_at = raw.get("completed_at")
        return DoneSignal(
            task_id=raw["id"],
            status=TaskStatus(status),
            summary=str(summary),
            completed_at=completed_at if isinstance(completed_at, str) else to_iso(utc_now()),
        )


async def run_interop_bootstrap(
    adapter: InteropAdapter,
    store: TeamStore,
    *,
    team_name: str,
    worker: str,
    task: TaskRecord,
) -> bool:
    """Run the bootstrap hook; ``False`` (after recording why) when it failed."""

    try:
        await adapter.bootstrap(team_name=team_name, worker=worker, task=task)
    except Exception as error:  # noqa: BLE001
        logger.warning(
            "Interop bootstrap failed (fail-open) for %s task %s: %s. "
            "Worker will proceed without interop.",
            worker,
            task.id,
            error,
        )
        await _record_failure(store, hook="bootstrap", worker=worker, task_id=task.id, error=error)
        return False
    return True


async def run_interop_poll(
    adapter: InteropAdapter,
    store: TeamStore,
    *,
    team_name: str,
    worker: str,
    task_id: str,
) -> bool:
    """Translate a terminal foreign task into ``done.json``; ``True`` when one was written."""

    try:
        signal = await adapter.poll_completion(team_name=team_name, worker=worker, task_id=task_id)
        if signal is None:
            return False
        await store.write_done_signal(worker, signal)
    except Exception as error:  # noqa: BLE001
        logger.warning("Interop poll failed (fail-open) for %s task %s: %s", worker, task_id, error)
        await _record_failure(store, hook="poll", worker=worker, task_id=task_id, error=error)
        return False
    return True


async def _record_failure(
    store: TeamStore,
    *,
    hook: str,
    worker: str,
    task_id: str,
    error: BaseException,
) -> None:
    payload = {
        "workerName": worker,
        "taskId": task_id,
        "error": str(error),
        "failedAt": to_iso(utc_now()),
        "failOpen": True,
    }
    try:
        await store.write_marker(store.paths.interop_failure_path(worker, hook), payload)
    except OSError:
        logger.warning("Unable to persist interop %s failure for %s", hook, worker, exc_info=True)
