from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from tmux_team.team.interop import (
    LEAD_NAME,
    ForeignTeamStateAdapter,
    run_interop_bootstrap,
    run_interop_poll,
)
from tmux_team.team.models import TaskRecord, TaskStatus
from tmux_team.team.store import read_json_safe, write_json_atomic
from tmux_team.team.watchdog import Watchdog

pytestmark = [
    allure.epic("Team Runtime"),
    allure.feature("Foreign State Interop"),
]


class BrokenAdapter:
    async def bootstrap(self, *, team_name: str, worker: str, task: TaskRecord) -> None:
        raise RuntimeError("mailbox unavailable")

    async def poll_completion(self, *, team_name: str, worker: str, task_id: str):
        raise OSError("permission denied")


def _foreign_task(root: Path, task_id: str, **fields) -> None:
    write_json_atomic(root / "alpha" / "tasks" / f"task-{task_id}.json", {"id": task_id, **fields})


@pytest.mark.asyncio
async def test_terminal_foreign_task_becomes_done_signal(start_fake_team, tmp_path: Path) -> None:
    runtime = await start_fake_team(task_count=1)
    root = tmp_path / "foreign"
    adapter = ForeignTeamStateAdapter(root)
    _foreign_task(root, "1", status="completed", result="merged upstream")

    written = await run_interop_poll(
        adapter,
        runtime.store,
        team_name="alpha",
        worker="worker-1",
        task_id="1",
    )

    assert written
    signal = await runtime.store.read_done_signal("worker-1")
    assert signal is not None
    assert signal.task_id == "1"
    assert signal.status is TaskStatus.COMPLETED
    assert signal.summary == "merged upstream"


@pytest.mark.asyncio
async def test_unfinished_or_malformed_foreign_task_is_ignored(tmp_path: Path) -> None:
    root = tmp_path / "foreign"
    adapter = ForeignTeamStateAdapter(root)

    assert await adapter.poll_completion(team_name="alpha", worker="worker-1", task_id="1") is None

    _foreign_task(root, "1", status="in_progress")
    assert await adapter.poll_completion(team_name="alpha", worker="worker-1", task_id="1") is None

    write_json_atomic(root / "alpha" / "tasks" / "task-2.json", {"status": "completed"})
    assert await adapter.poll_completion(team_name="alpha", worker="worker-1", task_id="2") is None

    _foreign_task(root, "3", status="failed", error="lint errors")
    signal = await adapter.poll_completion(team_name="alpha", worker="worker-1", task_id="3")
    assert signal is not None
    assert signal.status is TaskStatus.FAILED
    assert signal.summary == "lint errors"


@pytest.mark.asyncio
async def test_active_mode_delivers_assignment_to_mailbox(tmp_path: Path) -> None:
    root = tmp_path / "foreign"
    task = TaskRecord(id="4", subject="Fix parser", description="Handle empty input.")

    await ForeignTeamStateAdapter(root, mode="observe").bootstrap(team_name="alpha", worker="worker-1", task=task)
    assert not (root / "alpha" / "mailbox").exists()

    await ForeignTeamStateAdapter(root, mode="active").bootstrap(team_name="alpha", worker="worker-1", task=task)

    mailbox = json.loads((root / "alpha" / "mailbox" / "worker-1.json").read_text("utf-8"))
    assert mailbox["worker"] == "worker-1"
    [message] = mailbox["messages"]
    assert message["from_worker"] == LEAD_NAME
    assert message["to_worker"] == "worker-1"
    assert "Task ID: 4" in message["body"]
    assert "Handle empty input." in message["body"]


@pytest.mark.asyncio
async def test_failing_hooks_fail_open_and_leave_a_marker(start_fake_team) -> None:
    runtime = await start_fake_team(task_count=1)
    task = await runtime.store.read_task("1")
    assert task is not None

    booted = await run_interop_bootstrap(
        BrokenAdapter(),
        runtime.store,
        team_name="alpha",
        worker="worker-1",
        task=task,
    )
    polled = await run_interop_poll(
        BrokenAdapter(),
        runtime.store,
        team_name="alpha",
        worker="worker-1",
        task_id="1",
    )

    assert not booted
    assert not polled
    bootstrap_marker = read_json_safe(runtime.paths.interop_failure_path("worker-1", "bootstrap"))
    assert bootstrap_marker is not None
    assert bootstrap_marker["failOpen"] is True
    assert bootstrap_marker["error"] == "mailbox unavailable"
    poll_marker = read_json_safe(runtime.paths.interop_failure_path("worker-1", "poll"))
    assert poll_marker is not None
    assert poll_marker["taskId"] == "1"
    assert not runtime.paths.done_path("worker-1").exists()


@pytest.mark.asyncio
async def test_watchdog_picks_up_foreign_completion(start_fake_team, tmp_path: Path) -> None:
    runtime = await start_fake_team(task_count=1)
    root = tmp_path / "foreign"
    runtime.interop = ForeignTeamStateAdapter(root)
    _foreign_task(root, "1", status="completed", result="done elsewhere")

    await Watchdog(runtime, runtime.settings.watchdog).tick()

    task = await runtime.store.read_task("1")
    assert task is not None
    assert task.status is TaskStatus.COMPLETED
    assert task.summary == "done elsewhere"
    assert not runtime.active_workers


@pytest.mark.asyncio
async def test_broken_interop_does_not_count_as_watchdog_failure(start_fake_team) -> None:
    runtime = await start_fake_team(task_count=1)
    runtime.interop = BrokenAdapter()
    watchdog = Watchdog(runtime, runtime.settings.watchdog)

    for _ in range(4):
        await watchdog.tick()

    assert watchdog.consecutive_failures == 0
    assert not watchdog.failed
    assert runtime.active_workers["worker-1"].task_id == "1"
