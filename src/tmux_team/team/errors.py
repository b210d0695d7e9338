"""Typed failures raised by task updates, worker spawning and assignment."""

from __future__ import annotations


class SpawnError(RuntimeError):
    """Worker spawn or notification failure with a stable, parseable reason.

    Reasons: ``worker_pane_split_failed:<worker>``, ``worker_pane_not_ready:<worker>``,
    ``worker_notify_failed:<worker>:<stage>`` and ``task_claim_failed:<task>``.
    """

    def __init__(self, reason: str, *, worker: str | None = None, task_id: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.worker = worker
        self.task_id = task_id

    @property
    def kind(self) -> str:
        return self.reason.split(":", 1)[0]

    @classmethod
    def pane_not_ready(cls, worker: str, task_id: str) -> SpawnError:
        return cls(f"worker_pane_not_ready:{worker}", worker=worker, task_id=task_id)

    @classmethod
    def notify_failed(cls, worker: str, stage: str, task_id: str) -> SpawnError:
        return cls(f"worker_notify_failed:{worker}:{stage}", worker=worker, task_id=task_id)

    @classmethod
    def claim_failed(cls, task_id: str) -> SpawnError:
        return cls(f"task_claim_failed:{task_id}", task_id=task_id)

    @classmethod
    def split_failed(cls, worker: str, task_id: str) -> SpawnError:
        return cls(f"worker_pane_split_failed:{worker}", worker=worker, task_id=task_id)


class TaskLockBusyError(RuntimeError):
    """A task lock stayed held by someone else for the whole wait window."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Lock for task {task_id} is busy")
        self.task_id = task_id
