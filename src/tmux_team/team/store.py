"""File-backed store for team tasks and worker signal files.

Every mutation of a task file goes through :meth:`TeamStore.with_task_lock`, which
re-reads the record while holding ``tasks/<id>.lock``. Claims give up at once on a
busy lock; terminal updates and rollbacks wait up to ``lock_wait_ms`` and then raise
:class:`TaskLockBusyError` so the caller can retry instead of losing the update.

Blocking filesystem calls are pushed to a worker thread so callers on the event loop
never block.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from collections.abc import Callable, Sequence
from contextlib import suppress
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

from tmux_team.team.errors import TaskLockBusyError
from tmux_team.team.file_lock import DEFAULT_STALE_LOCK_MS, held_lock
from tmux_team.team.models import (
    DoneSignal,
    Heartbeat,
    TaskRecord,
    TaskSpec,
    TaskStatus,
    TeamConfig,
    to_iso,
    utc_now,
)
from tmux_team.team.paths import TeamPaths

logger = logging.getLogger(__name__)

T = TypeVar("T")

ORCHESTRATOR_HOLDER = "orchestrator"
DEFAULT_LOCK_WAIT_MS = 2_000
LOCK_RETRY_SECONDS = 0.05


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Write JSON via temp file, fsync and rename so readers never see partial data."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp.{uuid4().hex}")
    fd = os.open(tmp_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True))
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except Exception:
        with suppress(OSError):
            tmp_path.unlink()
        raise
    _fsync_dir(path.parent)


def read_json_safe(path: Path) -> dict[str, Any] | None:
    """Load a JSON object, returning ``None`` when missing or unreadable."""

    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _fsync_dir(directory: Path) -> None:
    try:
        dir_fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        logger.debug("Directory fsync failed for %s", directory, exc_info=True)
    finally:
        os.close(dir_fd)


def _task_sort_key(task_id: str) -> tuple[int, int, str]:
    if task_id.isdigit():
        return (0, int(task_id), task_id)
    return (1, 0, task_id)


class TeamStore:
    """Tasks, config and per-worker signal files of one team."""

    def __init__(
        self,
        paths: TeamPaths,
        *,
        stale_lock_ms: int = DEFAULT_STALE_LOCK_MS,
        holder: str = ORCHESTRATOR_HOLDER,
        lock_wait_ms: int = DEFAULT_LOCK_WAIT_MS,
    ) -> None:
        self.paths = paths
        self.stale_lock_ms = stale_lock_ms
        self.holder = holder
        self.lock_wait_ms = lock_wait_ms

    # -- config ---------------------------------------------------------------

    async def write_config(self, config: TeamConfig) -> None:
        await asyncio.to_thread(write_json_atomic, self.paths.config_path, config.to_payload())

    async def read_config(self) -> TeamConfig | None:
        raw = await asyncio.to_thread(read_json_safe, self.paths.config_path)
        if raw is None:
            return None
        return TeamConfig.from_payload(raw)

    # -- tasks ----------------------------------------------------------------

    async def create_tasks(self, specs: Sequence[TaskSpec]) -> list[TaskRecord]:
        """Write ``pending`` task files with sequential ids starting at ``1``."""

        return await asyncio.to_thread(self._create_tasks_sync, list(specs))

    def _create_tasks_sync(self, specs: list[TaskSpec]) -> list[TaskRecord]:
        self.paths.tasks_dir.mkdir(parents=True, exist_ok=True)
        created_at = to_iso(utc_now())
        records: list[TaskRecord] = []
        for index, spec in enumerate(specs, start=1):
            record = TaskRecord(
                id=str(index),
                subject=spec.subject,
                description=spec.description,
                created_at=created_at,
            )
            write_json_atomic(self.paths.task_path(record.id), record.to_payload())
            records.append(record)
        return records

    async def read_task(self, task_id: str) -> TaskRecord | None:
        return await asyncio.to_thread(self._read_task_sync, task_id)

    def _read_task_sync(self, task_id: str) -> TaskRecord | None:
        raw = read_json_safe(self.paths.task_path(task_id))
        if raw is None:
            return None
        try:
            return TaskRecord.from_payload(raw)
        except ValueError:
            logger.warning("Ignoring malformed task file for task %s", task_id, exc_info=True)
            return None

    async def write_task(self, task: TaskRecord) -> None:
        await asyncio.to_thread(write_json_atomic, self.paths.task_path(task.id), task.to_payload())

    async def list_tasks(self) -> list[TaskRecord]:
        return await asyncio.to_thread(self._list_tasks_sync)

    def _list_tasks_sync(self) -> list[TaskRecord]:
        if not self.paths.tasks_dir.is_dir():
            return []
        task_ids = sorted(
            (path.stem for path in self.paths.tasks_dir.glob("*.json")),
            key=_task_sort_key,
        )
        tasks: list[TaskRecord] = []
        for task_id in task_ids:
            record = self._read_task_sync(task_id)
            if record is not None:
                tasks.append(record)
        return tasks

    async def next_pending_task_id(self) -> str | None:
        for task in await self.list_tasks():
            if task.status is TaskStatus.PENDING:
                return task.id
        return None

    async def all_tasks_terminal(self) -> bool:
        tasks = await self.list_tasks()
        return all(task.status.is_terminal for task in tasks)

    async def with_task_lock(
        self,
        task_id: str,
        fn: Callable[[], T],
        *,
        holder: str | None = None,
        wait: bool = False,
    ) -> T | None:
        """Run blocking ``fn`` while holding the task lock.

        Without ``wait`` a busy lock returns ``None`` at once. With ``wait`` the lock is
        retried for ``lock_wait_ms`` before :class:`TaskLockBusyError` is raised.
        """

        return await asyncio.to_thread(self._with_task_lock_sync, task_id, fn, holder, wait)

    def _with_task_lock_sync(
        self,
        task_id: str,
        fn: Callable[[], T],
        holder: str | None,
        wait: bool,
    ) -> T | None:
        deadline = time.monotonic() + self.lock_wait_ms / 1000
        while True:
            with held_lock(
                self.paths.lock_path(task_id),
                holder=holder or self.holder,
                stale_after_ms=self.stale_lock_ms,
            ) as handle:
                if handle is not None:
                    return fn()
            if not wait:
                return None
            if time.monotonic() >= deadline:
                raise TaskLockBusyError(task_id)
            time.sleep(LOCK_RETRY_SECONDS)

    async def _mutate(
        self,
        task_id: str,
        mutate: Callable[[TaskRecord], bool],
        *,
        holder: str | None = None,
        wait: bool = False,
    ) -> bool:
        def locked() -> bool:
            task = self._read_task_sync(task_id)
            if task is None or not mutate(task):
                return False
            write_json_atomic(self.paths.task_path(task.id), task.to_payload())
            return True

        return bool(await self.with_task_lock(task_id, locked, holder=holder, wait=wait))

    async def mark_task_in_progress(self, task_id: str, owner: str) -> bool:
        """Claim a pending task; ``False`` when it is no longer pending or the lock is busy."""

        def claim(task: TaskRecord) -> bool:
            if task.status is not TaskStatus.PENDING:
                return False
            task.transition(TaskStatus.IN_PROGRESS)
            task.owner = owner
            return True

        return await self._mutate(task_id, claim, holder=owner)

    async def reset_task_to_pending(self, task_id: str) -> bool:
        """Roll an ``in_progress`` claim back so the task can be claimed again."""

        def rollback(task: TaskRecord) -> bool:
            if task.status is not TaskStatus.IN_PROGRESS:
                return False
            task.transition(TaskStatus.PENDING)
            return True

        return await self._mutate(task_id, rollback, wait=True)

    async def mark_task_terminal(self, task_id: str, status: TaskStatus, summary: str) -> bool:
        """Finish an ``in_progress`` task; terminal tasks are never changed again."""

        def finish(task: TaskRecord) -> bool:
            if task.status.is_terminal:
                logger.debug("Task %s already %s", task.id, task.status.value)
                return False
            if task.status is not TaskStatus.IN_PROGRESS:
                logger.warning(
                    "Ignoring %s signal for task %s in status %s",
                    status.value,
                    task.id,
                    task.status.value,
                )
                return False
            task.transition(status)
            task.result = summary
            task.summary = summary
            return True

        return await self._mutate(task_id, finish, wait=True)

    async def mark_task_from_done(self, task_id: str, signal: DoneSignal) -> bool:
        return await self.mark_task_terminal(task_id, signal.status, signal.summary)

    async def mark_task_failed_dead_pane(self, task_id: str, worker: str) -> bool:
        return await self.mark_task_terminal(
            task_id,
            TaskStatus.FAILED,
            f"Worker pane died before done.json was written ({worker})",
        )

    async def assign_pending_task(self, task_id: str, owner: str) -> TaskRecord | None:
        """Claim a pending task and return its previous state for rollback."""

        def claim() -> TaskRecord | None:
            task = self._read_task_sync(task_id)
            if task is None or task.status is not TaskStatus.PENDING:
                return None
            previous = TaskRecord.from_payload(task.to_payload())
            task.transition(TaskStatus.IN_PROGRESS)
            task.owner = owner
            write_json_atomic(self.paths.task_path(task.id), task.to_payload())
            return previous

        return await self.with_task_lock(task_id, claim, holder=owner)

    async def restore_task(self, previous: TaskRecord) -> bool:
        """Restore a snapshot taken before an assignment whose notification failed."""

        def restore() -> bool:
            current = self._read_task_sync(previous.id)
            if current is None or current.status.is_terminal:
                return False
            write_json_atomic(self.paths.task_path(previous.id), previous.to_payload())
            return True

        return bool(await self.with_task_lock(previous.id, restore, wait=True))

    # -- worker files ---------------------------------------------------------

    async def read_done_signal(self, worker: str) -> DoneSignal | None:
        raw = await asyncio.to_thread(read_json_safe, self.paths.done_path(worker))
        if raw is None:
            return None
        try:
            return DoneSignal.from_payload(raw)
        except ValueError:
            logger.warning("Ignoring malformed done signal from %s", worker, exc_info=True)
            return None

    async def write_done_signal(self, worker: str, signal: DoneSignal) -> None:
        await asyncio.to_thread(
            write_json_atomic,
            self.paths.done_path(worker),
            signal.to_payload(),
        )

    async def clear_done_signal(self, worker: str) -> None:
        await asyncio.to_thread(self._unlink_quietly, self.paths.done_path(worker))

    async def read_heartbeat(self, worker: str) -> Heartbeat | None:
        raw = await asyncio.to_thread(read_json_safe, self.paths.heartbeat_path(worker))
        if raw is None:
            return None
        return Heartbeat.from_payload(raw)

    async def has_shutdown_ack(self, worker: str) -> bool:
        return await asyncio.to_thread(self.paths.shutdown_ack_path(worker).exists)

    async def write_marker(self, path: Path, payload: dict[str, Any]) -> None:
        await asyncio.to_thread(write_json_atomic, path, payload)

    async def remove_state(self) -> None:
        await asyncio.to_thread(shutil.rmtree, self.paths.root, True)

    @staticmethod
    def _unlink_quietly(path: Path) -> None:
        with suppress(FileNotFoundError):
            path.unlink()
