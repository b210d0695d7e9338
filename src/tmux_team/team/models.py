"""Domain models for team tasks, worker signals and runtime bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS}),
    # in_progress -> pending is the rollback used when a fresh worker cannot be notified.
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING},
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised when a task status change is outside the transition table."""

    def __init__(self, task_id: str, current: TaskStatus, target: TaskStatus) -> None:
        super().__init__(
            f"Task {task_id}: transition {current.value} -> {target.value} is not allowed",
        )
        self.task_id = task_id
        self.current = current
        self.target = target


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def from_iso(value: str) -> datetime:
    """Parse ISO datetime (``Z`` suffix accepted) and ensure timezone-aware UTC fallback."""

    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(slots=True)
class TaskSpec:
    """Task definition supplied when a team is started."""

    subject: str
    description: str


@dataclass(slots=True)
class TaskRecord:
    """One unit of assignable work persisted as ``tasks/<id>.json``."""

    id: str
    subject: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    owner: str | None = None
    result: str | None = None
    summary: str | None = None
    created_at: str | None = None
    assigned_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None

    def transition(self, target: TaskStatus, *, now: datetime | None = None) -> None:
        """Apply a status change validated against the transition table."""

        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status, target)
        stamp = to_iso(now or utc_now())
        self.status = target
        if target is TaskStatus.IN_PROGRESS:
            self.assigned_at = stamp
        elif target is TaskStatus.PENDING:
            self.owner = None
            self.assigned_at = None
        elif target is TaskStatus.COMPLETED:
            self.completed_at = stamp
        else:
            self.failed_at = stamp

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "subject": self.subject,
            "description": self.description,
            "status": self.status.value,
            "owner": self.owner,
            "result": self.result,
            "createdAt": self.created_at,
        }
        optional = {
            "summary": self.summary,
            "assignedAt": self.assigned_at,
            "completedAt": self.completed_at,
            "failedAt": self.failed_at,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> TaskRecord:
        """Deserialize and validate a task record."""

        task_id = raw.get("id")
        if not isinstance(task_id, str) or not task_id.strip():
            raise ValueError("task.id must be a non-empty string")
        try:
            status = TaskStatus(raw.get("status", TaskStatus.PENDING.value))
        except ValueError as error:
            raise ValueError(f"task {task_id}: unknown status {raw.get('status')!r}") from error
        owner = raw.get("owner")
        return cls(
            id=task_id,
            subject=str(raw.get("subject", "")),
            description=str(raw.get("description", "")),
            status=status,
            owner=owner if isinstance(owner, str) else None,
            result=_optional_str(raw.get("result")),
            summary=_optional_str(raw.get("summary")),
            created_at=_optional_str(raw.get("createdAt")),
            assigned_at=_optional_str(raw.get("assignedAt")),
            completed_at=_optional_str(raw.get("completedAt")),
            failed_at=_optional_str(raw.get("failedAt")),
        )


@dataclass(slots=True)
class DoneSignal:
    """Worker-written completion marker ``workers/<name>/done.json``."""

    task_id: str
    status: TaskStatus
    summary: str
    completed_at: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "status": self.status.value,
            "summary": self.summary,
            "completedAt": self.completed_at,
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> DoneSignal:
        status_raw = raw.get("status")
        if status_raw not in (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value):
            raise ValueError(f"done.status must be 'completed' or 'failed', got {status_raw!r}")
        task_id = raw.get("taskId")
        return cls(
            task_id=str(task_id) if task_id not in (None, "") else "",
            status=TaskStatus(status_raw),
            summary=str(raw.get("summary") or ""),
            completed_at=_optional_str(raw.get("completedAt")),
        )


@dataclass(slots=True)
class Heartbeat:
    """Worker liveness file ``workers/<name>/heartbeat.json``."""

    updated_at: datetime | None
    current_task_id: str | None = None

    def is_stalled(
        self,
        *,
        now: datetime,
        threshold_ms: int,
        since: datetime | None = None,
    ) -> bool:
        """Older than ``threshold_ms``; a beat left over from before ``since`` counts from ``since``."""

        if self.updated_at is None:
            return False
        reference = self.updated_at
        if since is not None and since > reference:
            reference = since
        return (now - reference).total_seconds() * 1000 > threshold_ms

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> Heartbeat:
        updated_raw = raw.get("updatedAt")
        updated_at: datetime | None = None
        if isinstance(updated_raw, str) and updated_raw.strip():
            try:
                updated_at = from_iso(updated_raw)
            except ValueError:
                updated_at = None
        current = raw.get("currentTaskId")
        return cls(updated_at=updated_at, current_task_id=_optional_str(current))


@dataclass(slots=True)
class TeamConfig:
    """Team configuration snapshot persisted as ``config.json``."""

    name: str
    agent_types: list[str]
    task_count: int
    cwd: str
    worker_count: int
    session_name: str | None = None
    leader_pane_id: str | None = None
    created_at: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def agent_type_for(self, worker_index: int) -> str:
        return self.agent_types[worker_index % len(self.agent_types)]

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "agentTypes": list(self.agent_types),
            "taskCount": self.task_count,
            "cwd": self.cwd,
            "workerCount": self.worker_count,
            "sessionName": self.session_name,
            "leaderPaneId": self.leader_pane_id,
            "createdAt": self.created_at,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> TeamConfig:
        name = raw.get("name")
        agent_types = raw.get("agentTypes")
        if not isinstance(name, str) or not name:
            raise ValueError("config.name must be a non-empty string")
        if not isinstance(agent_types, list) or not agent_types:
            raise ValueError("config.agentTypes must be a non-empty array")
        metadata = raw.get("metadata")
        return cls(
            name=name,
            agent_types=[str(item) for item in agent_types],
            task_count=int(raw.get("taskCount", 0)),
            cwd=str(raw.get("cwd", "")),
            worker_count=int(raw.get("workerCount", len(agent_types))),
            session_name=_optional_str(raw.get("sessionName")),
            leader_pane_id=_optional_str(raw.get("leaderPaneId")),
            created_at=_optional_str(raw.get("createdAt")),
            metadata=metadata if isinstance(metadata, dict) else {},
        )


@dataclass(slots=True)
class ActiveWorker:
    """Runtime-only view of a worker currently occupying a pane."""

    name: str
    pane_id: str
    task_id: str
    agent_type: str
    spawned_at: datetime = field(default_factory=utc_now)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
