"""Name validation and on-disk layout of a team state directory."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

TEAM_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,48}[a-z0-9]$")
WORKER_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")
TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
SESSION_PREFIX = "tmux-team-"
_SESSION_UNSAFE = re.compile(r"[^a-zA-Z0-9-]")
_SESSION_NAME_MAX = 50
_WORKER_SLOT = re.compile(r"worker-(\d+)")


def validate_team_name(name: str) -> str:
    if not TEAM_NAME_PATTERN.fullmatch(name):
        raise ValueError(
            f"Invalid team name {name!r}: use 2-50 lowercase letters, digits or dashes, "
            "starting and ending with a letter or digit",
        )
    return name


def validate_worker_name(name: str) -> str:
    if not WORKER_NAME_PATTERN.fullmatch(name):
        raise ValueError(f"Invalid worker name {name!r}")
    return name


def validate_task_id(task_id: str) -> str:
    if not TASK_ID_PATTERN.fullmatch(task_id) or set(task_id) == {"."}:
        raise ValueError(f"Invalid task id {task_id!r}")
    return task_id


def worker_name(index: int) -> str:
    """Deterministic worker name for a zero-based slot index."""

    return f"worker-{index + 1}"


def sanitize_name(name: str) -> str:
    """Reduce a name to characters tmux accepts in a session name."""

    sanitized = _SESSION_UNSAFE.sub("", name)
    if not sanitized:
        raise ValueError(f"Name {name!r} has no valid characters")
    if len(sanitized) < 2:
        raise ValueError(f"Name {name!r} is too short after sanitizing")
    return sanitized[:_SESSION_NAME_MAX]


def session_name_for(team_name: str) -> str:
    return f"{SESSION_PREFIX}{sanitize_name(team_name)}"


@dataclass(frozen=True, slots=True)
class TeamPaths:
    """Filesystem layout rooted at ``<state_dir>/<team>``."""

    root: Path

    @classmethod
    def for_team(cls, *, state_dir: Path, team_name: str, cwd: Path) -> TeamPaths:
        base = state_dir if state_dir.is_absolute() else cwd / state_dir
        return cls(root=base / validate_team_name(team_name))

    @property
    def tasks_dir(self) -> Path:
        return self.root / "tasks"

    @property
    def workers_dir(self) -> Path:
        return self.root / "workers"

    @property
    def config_path(self) -> Path:
        return self.root / "config.json"

    @property
    def shutdown_path(self) -> Path:
        return self.root / "shutdown.json"

    @property
    def watchdog_failed_path(self) -> Path:
        return self.root / "watchdog-failed.json"

    def task_path(self, task_id: str) -> Path:
        return self.tasks_dir / f"{validate_task_id(task_id)}.json"

    def lock_path(self, task_id: str) -> Path:
        return self.tasks_dir / f"{validate_task_id(task_id)}.lock"

    def worker_dir(self, name: str) -> Path:
        return self.workers_dir / validate_worker_name(name)

    def heartbeat_path(self, name: str) -> Path:
        return self.worker_dir(name) / "heartbeat.json"

    def inbox_path(self, name: str) -> Path:
        return self.worker_dir(name) / "inbox.md"

    def done_path(self, name: str) -> Path:
        return self.worker_dir(name) / "done.json"

    def shutdown_ack_path(self, name: str) -> Path:
        return self.worker_dir(name) / "shutdown-ack.json"

    def overlay_path(self, name: str) -> Path:
        return self.worker_dir(name) / "AGENTS.md"

    def ready_path(self, name: str) -> Path:
        return self.worker_dir(name) / ".ready"

    def interop_failure_path(self, name: str, hook: str) -> Path:
        return self.worker_dir(name) / f"interop-{hook}-failed.json"


def worker_index(name: str) -> int:
    """Zero-based slot index of a ``worker-N`` name."""

    match = _WORKER_SLOT.fullmatch(name)
    if match is None or int(match.group(1)) < 1:
        raise ValueError(f"Not a slot worker name: {name!r}")
    return int(match.group(1)) - 1
