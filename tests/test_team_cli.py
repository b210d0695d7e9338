from __future__ import annotations

import asyncio
import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import FakeTmux, RecordingSleep, fake_cli_validator, finish_tasks_on_launch

from tmux_team.main import tmux_team
from tmux_team.team.controllers import TeamCliController, parse_run_payload
from tmux_team.team.runtime import build_supervisor
from tmux_team.team.store import write_json_atomic

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Team Commands"),
]


@pytest.fixture(autouse=True)
def fake_controller(
    monkeypatch: pytest.MonkeyPatch,
    fake_tmux: FakeTmux,
    fake_sleep: RecordingSleep,
) -> TeamCliController:
    for name in ("TMUX_TEAM_INTEROP_MODE", "TMUX_TEAM_INTEROP_STATE_DIR", "TMUX_TEAM_STATE_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TMUX_TEAM_WATCHDOG_INTERVAL_MS", "10")
    monkeypatch.setenv("TMUX_TEAM_POLL_INTERVAL_MS", "10")
    monkeypatch.setenv("TMUX_TEAM_LAYOUT_DEBOUNCE_MS", "0")
    controller = TeamCliController(
        supervisor_factory=lambda settings: build_supervisor(
            settings,
            tmux=fake_tmux,
            environ={},
            sleep=fake_sleep,
        ),
        cli_validator=fake_cli_validator,
        install_signal_handlers=False,
    )
    monkeypatch.setattr("tmux_team.main.TEAM_CONTROLLER", controller)
    return controller


def _location(tmp_path: Path) -> list[str]:
    return ["--cwd", str(tmp_path), "--state-dir", str(tmp_path / "state")]


def _job(tmp_path: Path, task_count: int = 2) -> str:
    return json.dumps(
        {
            "teamName": "alpha",
            "agentTypes": ["codex"],
            "tasks": [
                {"subject": f"Task {index}", "description": f"Do thing {index}"}
                for index in range(1, task_count + 1)
            ],
            "cwd": str(tmp_path),
            "pollIntervalMs": 10,
        },
    )


def _json_document(output: str) -> dict:
    document, _ = json.JSONDecoder().raw_decode(output[output.index("{") :])
    return document


def test_run_supervises_team_to_completion(fake_tmux: FakeTmux, tmp_path: Path) -> None:
    finish_tasks_on_launch(fake_tmux, tmp_path / "state" / "alpha")

    result = CliRunner().invoke(
        tmux_team,
        ["run", "--state-dir", str(tmp_path / "state")],
        input=_job(tmp_path),
    )

    assert result.exit_code == 0, result.output
    payload = _json_document(result.stdout)
    assert payload["status"] == "completed"
    assert payload["teamName"] == "alpha"
    assert payload["workerCount"] == 1
    assert payload["taskResults"] == [
        {"taskId": "1", "status": "completed", "summary": "completed by worker-1"},
        {"taskId": "2", "status": "completed", "summary": "completed by worker-1"},
    ]
    assert "tmux-team-alpha" not in fake_tmux.sessions
    assert not (tmp_path / "state" / "alpha").exists()


def test_run_with_failed_tasks_exits_non_zero(fake_tmux: FakeTmux, tmp_path: Path) -> None:
    finish_tasks_on_launch(fake_tmux, tmp_path / "state" / "alpha", status="failed")

    result = CliRunner().invoke(
        tmux_team,
        ["run", "--state-dir", str(tmp_path / "state")],
        input=_job(tmp_path, task_count=1),
    )

    assert result.exit_code == 1
    payload = _json_document(result.stdout)
    assert payload["status"] == "failed"
    assert payload["taskResults"][0]["summary"] == "failed by worker-1"


def test_run_rejects_incomplete_job(tmp_path: Path) -> None:
    result = CliRunner().invoke(tmux_team, ["run", "--state-dir", str(tmp_path / "state")], input="{}")

    assert result.exit_code == 1
    assert "Input missing required fields" in result.output


def test_parse_run_payload_validates_shapes(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="not valid JSON"):
        parse_run_payload("{")
    with pytest.raises(TypeError, match="JSON object"):
        parse_run_payload("[]")
    with pytest.raises(ValueError, match="missing required fields: tasks, cwd"):
        parse_run_payload(json.dumps({"teamName": "alpha", "agentTypes": ["codex"]}))

    base = json.loads(_job(tmp_path))
    with pytest.raises(ValueError, match="agentTypes"):
        parse_run_payload(json.dumps({**base, "agentTypes": []}))
    with pytest.raises(ValueError, match="task.subject"):
        parse_run_payload(json.dumps({**base, "tasks": [{"subject": " "}]}))
    with pytest.raises(ValueError, match="workerCount"):
        parse_run_payload(json.dumps({**base, "workerCount": 0}))

    parsed = parse_run_payload(json.dumps({**base, "agentTypes": [" Codex "], "workerCount": 2}))
    assert parsed.request.agent_types == ["codex"]
    assert parsed.request.worker_count == 2
    assert parsed.request.tasks[1].description == "Do thing 2"
    assert parsed.poll_interval_ms == 10


def test_status_reports_live_team(start_fake_team, tmp_path: Path) -> None:
    asyncio.run(start_fake_team(task_count=2))

    result = CliRunner().invoke(
        tmux_team,
        ["status", "alpha", "--format", "json", *_location(tmp_path)],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["phase"] == "executing"
    assert payload["taskCounts"] == {
        "total": 2,
        "pending": 1,
        "inProgress": 1,
        "completed": 0,
        "failed": 0,
    }
    assert payload["workers"][0]["name"] == "worker-1"
    assert payload["workers"][0]["paneId"] == "%1"
    assert payload["workers"][0]["alive"] is True
    assert payload["watchdogFailed"] is False


def test_status_table_falls_back_to_task_files(
    start_fake_team,
    fake_tmux: FakeTmux,
    tmp_path: Path,
) -> None:
    asyncio.run(start_fake_team(task_count=1))
    fake_tmux.sessions.clear()

    result = CliRunner().invoke(tmux_team, ["status", "alpha", *_location(tmp_path)])

    assert result.exit_code == 0, result.output
    lines = result.stdout.splitlines()
    assert lines[0] == "Team: alpha phase=executing"
    assert lines[1] == "Tasks: total=1 pending=0 in_progress=1 completed=0 failed=0"
    assert "Workers: 0" in lines


def test_status_of_unknown_team_fails(tmp_path: Path) -> None:
    result = CliRunner().invoke(tmux_team, ["status", "ghost", *_location(tmp_path)])

    assert result.exit_code == 1
    assert "Team ghost not found" in result.output


def test_shutdown_kills_session_and_removes_state(
    start_fake_team,
    fake_tmux: FakeTmux,
    tmp_path: Path,
) -> None:
    asyncio.run(start_fake_team(task_count=1))

    result = CliRunner().invoke(tmux_team, ["shutdown", "alpha", *_location(tmp_path)])

    assert result.exit_code == 0, result.output
    assert result.stdout.strip() == "Team alpha shut down"
    assert "tmux-team-alpha" not in fake_tmux.sessions
    assert not (tmp_path / "state" / "alpha").exists()

    again = CliRunner().invoke(tmux_team, ["shutdown", "alpha", *_location(tmp_path)])
    assert again.exit_code == 1
    assert "Team alpha not found" in again.output


def test_shutdown_without_session_cleans_up_state(
    start_fake_team,
    fake_tmux: FakeTmux,
    tmp_path: Path,
) -> None:
    asyncio.run(start_fake_team(task_count=1))
    fake_tmux.sessions.clear()

    kept = CliRunner().invoke(tmux_team, ["shutdown", "alpha", "--keep-state", *_location(tmp_path)])
    assert kept.stdout.strip() == "Team alpha: session not running"
    assert (tmp_path / "state" / "alpha").exists()

    removed = CliRunner().invoke(tmux_team, ["shutdown", "alpha", *_location(tmp_path)])
    assert removed.stdout.strip() == "Team alpha: session not running, state removed"
    assert not (tmp_path / "state" / "alpha").exists()


def test_assign_spawns_idle_worker(start_fake_team, fake_tmux: FakeTmux, tmp_path: Path) -> None:
    asyncio.run(start_fake_team(task_count=3, worker_count=1))

    result = CliRunner().invoke(
        tmux_team,
        ["assign", "alpha", "3", "worker-2", *_location(tmp_path)],
    )

    assert result.exit_code == 0, result.output
    assert result.stdout.strip() == "Task 3 assigned to worker-2 (pane %2)"
    assert fake_tmux.panes["%2"].tag == "worker-2"
    assert "/usr/bin/codex" in fake_tmux.panes["%2"].submitted[0]


def test_assign_to_busy_worker_is_refused(start_fake_team, tmp_path: Path) -> None:
    asyncio.run(start_fake_team(task_count=2))

    result = CliRunner().invoke(
        tmux_team,
        ["assign", "alpha", "2", "worker-1", *_location(tmp_path)],
    )

    assert result.exit_code == 1
    assert "still working on task 1" in result.output


def test_resume_finishes_the_remaining_tasks(
    start_fake_team,
    fake_tmux: FakeTmux,
    tmp_path: Path,
) -> None:
    asyncio.run(start_fake_team(task_count=2))
    team_root = tmp_path / "state" / "alpha"
    write_json_atomic(
        team_root / "workers" / "worker-1" / "done.json",
        {"taskId": "1", "status": "completed", "summary": "finished while detached"},
    )
    finish_tasks_on_launch(fake_tmux, team_root)

    result = CliRunner().invoke(tmux_team, ["resume", "alpha", *_location(tmp_path)])

    assert result.exit_code == 0, result.output
    payload = _json_document(result.stdout)
    assert payload["status"] == "completed"
    assert [item["summary"] for item in payload["taskResults"]] == [
        "finished while detached",
        "completed by worker-1",
    ]


def test_resume_of_stopped_team_fails(tmp_path: Path) -> None:
    result = CliRunner().invoke(tmux_team, ["resume", "ghost", *_location(tmp_path)])

    assert result.exit_code == 1
    assert "Team ghost is not running" in result.output


def test_agents_lists_availability(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "tmux_team.team.controllers.is_cli_available",
        lambda agent_type: agent_type == "codex",
    )

    result = CliRunner().invoke(tmux_team, ["agents"])

    assert result.exit_code == 0, result.output
    lines = result.stdout.splitlines()
    assert lines[0] == "Agents:"
    assert "  codex binary=codex available=yes prompt_mode=yes" in lines
    assert "  claude binary=claude available=no prompt_mode=no" in lines
    assert "    Install Claude Code: npm install -g @anthropic-ai/claude-code" in lines
