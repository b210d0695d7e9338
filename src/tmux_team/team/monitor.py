"""Point-in-time snapshot of a running team."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from tmux_team.team.models import TaskRecord, TaskStatus, to_iso, utc_now
from tmux_team.team.state import TeamRuntime


class TeamPhase(str, Enum):
    """Coarse team progress inferred from task counts."""

    PLANNING = "planning"
    EXECUTING = "executing"
    FIXING = "fixing"
    COMPLETED = "completed"


@dataclass(slots=True)
class TaskCounts:
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.completed + self.failed

    @property
    def outstanding(self) -> int:
        return self.pending + self.in_progress

    @classmethod
    def from_tasks(cls, tasks: Sequence[TaskRecord]) -> TaskCounts:
        counts = cls()
        for task in tasks:
            if task.status is TaskStatus.PENDING:
                counts.pending += 1
            elif task.status is TaskStatus.IN_PROGRESS:
                counts.in_progress += 1
            elif task.status is TaskStatus.COMPLETED:
                counts.completed += 1
            else:
                counts.failed += 1
        return counts


@dataclass(slots=True)
class WorkerSnapshot:
    name: str
    pane_id: str
    task_id: str
    alive: bool
    heartbeat_at: str | None
    stalled: bool


@dataclass(slots=True)
class TeamSnapshot:
    """What ``monitor_team`` observed, plus timing."""

    team_name: str
    phase: TeamPhase
    counts: TaskCounts
    tasks: list[TaskRecord]
    workers: list[WorkerSnapshot] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    taken_at: str = ""
    watchdog_failed: bool = False

    @property
    def all_tasks_terminal(self) -> bool:
        return self.counts.outstanding == 0

    @property
    def no_live_workers(self) -> bool:
        return not any(worker.alive for worker in self.workers)


def infer_phase(counts: TaskCounts) -> TeamPhase:
    if counts.in_progress == 0 and counts.pending > 0 and counts.completed == 0:
        return TeamPhase.PLANNING
    if counts.failed > 0 and counts.pending == 0 and counts.in_progress == 0:
        return TeamPhase.FIXING
    if counts.completed > 0 and counts.outstanding == 0 and counts.failed == 0:
        return TeamPhase.COMPLETED
    return TeamPhase.EXECUTING


def snapshot_tasks(team_name: str, tasks: Sequence[TaskRecord]) -> TeamSnapshot:
    """Snapshot from task files alone, for teams without a live session."""

    counts = TaskCounts.from_tasks(tasks)
    return TeamSnapshot(
        team_name=team_name,
        phase=infer_phase(counts),
        counts=counts,
        tasks=list(tasks),
        taken_at=to_iso(utc_now()),
    )


async def monitor_team(runtime: TeamRuntime) -> TeamSnapshot:
    tasks = await runtime.store.list_tasks()
    snapshot = snapshot_tasks(runtime.team_name, tasks)
    now = utc_now()
    workers = list(runtime.active_workers.values())
    alive, heartbeats = await asyncio.gather(
        asyncio.gather(*(runtime.supervisor.is_worker_alive(worker.pane_id) for worker in workers)),
        asyncio.gather(*(runtime.store.read_heartbeat(worker.name) for worker in workers)),
    )
    stall_ms = runtime.settings.watchdog.stall_threshold_ms
    for worker, is_alive, heartbeat in zip(workers, alive, heartbeats, strict=True):
        snapshot.workers.append(
            WorkerSnapshot(
                name=worker.name,
                pane_id=worker.pane_id,
                task_id=worker.task_id,
                alive=is_alive,
                heartbeat_at=(
                    to_iso(heartbeat.updated_at)
                    if heartbeat is not None and heartbeat.updated_at is not None
                    else None
                ),
                stalled=heartbeat is not None
                and heartbeat.is_stalled(now=now, threshold_ms=stall_ms, since=worker.spawned_at),
            ),
        )
    snapshot.elapsed_seconds = (now - runtime.started_at).total_seconds()
    snapshot.watchdog_failed = runtime.watchdog is not None and runtime.watchdog.failed
    return snapshot
