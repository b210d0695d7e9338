"""Controllers for team CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tmux_team.config import Settings
from tmux_team.team.contracts import (
    get_contract,
    is_cli_available,
    supported_agent_types,
    validate_cli_available,
)
from tmux_team.team.models import TaskSpec
from tmux_team.team.monitor import TeamSnapshot, monitor_team, snapshot_tasks
from tmux_team.team.paths import TeamPaths
from tmux_team.team.runtime import (
    TeamStartRequest,
    build_supervisor,
    resume_team,
    shutdown_team,
    start_team,
    start_watchdog,
)
from tmux_team.team.session import PaneSupervisor
from tmux_team.team.state import TeamRuntime
from tmux_team.team.store import TeamStore
from tmux_team.team.workers import assign_task

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TeamRunCommand:
    """CLI input for a foreground team run; ``payload`` is the stdin JSON document."""

    payload: str
    state_dir: Path | None = None


@dataclass(slots=True)
class TeamResumeCommand:
    """CLI input for re-attaching supervision to a running team."""

    team_name: str
    cwd: Path
    state_dir: Path | None = None


@dataclass(slots=True)
class TeamStatusCommand:
    """CLI input for a team status snapshot."""

    team_name: str
    cwd: Path
    state_dir: Path | None = None
    output_format: str = "table"


@dataclass(slots=True)
class TeamShutdownCommand:
    """CLI input for team teardown."""

    team_name: str
    cwd: Path
    state_dir: Path | None = None
    keep_state: bool = False


@dataclass(slots=True)
class TeamAssignCommand:
    """CLI input for handing a pending task to a worker."""

    team_name: str
    cwd: Path
    task_id: str
    worker: str
    state_dir: Path | None = None


@dataclass(slots=True)
class TeamRunResult:
    """Final JSON document of a supervised run."""

    payload: dict[str, Any]
    success: bool

    @property
    def lines(self) -> list[str]:
        return [json.dumps(self.payload, ensure_ascii=False, indent=2)]


@dataclass(slots=True)
class TeamRunInput:
    request: TeamStartRequest
    poll_interval_ms: int | None = None


def parse_run_payload(raw: str) -> TeamRunInput:
    """Validate the stdin job description."""

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Input is not valid JSON: {error}") from error
    if not isinstance(data, dict):
        raise TypeError("Input must be a JSON object")
    missing = [key for key in ("teamName", "agentTypes", "tasks", "cwd") if key not in data]
    if missing:
        raise ValueError(f"Input missing required fields: {', '.join(missing)}")

    agent_types = data["agentTypes"]
    if not isinstance(agent_types, list) or not agent_types:
        raise ValueError("agentTypes must be a non-empty array")
    if not all(isinstance(item, str) and item.strip() for item in agent_types):
        raise ValueError("agentTypes entries must be non-empty strings")

    raw_tasks = data["tasks"]
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise ValueError("tasks must be a non-empty array")
    tasks: list[TaskSpec] = []
    for item in raw_tasks:
        if not isinstance(item, dict):
            raise TypeError("tasks entries must be objects")
        subject = item.get("subject")
        description = item.get("description", "")
        if not isinstance(subject, str) or not subject.strip():
            raise ValueError("task.subject must be a non-empty string")
        if not isinstance(description, str):
            raise TypeError("task.description must be a string")
        tasks.append(TaskSpec(subject=subject, description=description))

    worker_count = data.get("workerCount")
    if worker_count is not None and (not isinstance(worker_count, int) or worker_count < 1):
        raise ValueError("workerCount must be an integer >= 1")
    poll_interval = data.get("pollIntervalMs")
    if poll_interval is not None and (not isinstance(poll_interval, int) or poll_interval < 1):
        raise ValueError("pollIntervalMs must be an integer >= 1")

    return TeamRunInput(
        request=TeamStartRequest(
            team_name=str(data["teamName"]),
            agent_types=[item.strip().lower() for item in agent_types],
            tasks=tasks,
            cwd=Path(str(data["cwd"])),
            worker_count=worker_count,
        ),
        poll_interval_ms=poll_interval,
    )


@dataclass(slots=True)
class TeamCliController:
    """Bridges synchronous click commands to the async team runtime."""

    supervisor_factory: Callable[[Settings], PaneSupervisor] = build_supervisor
    cli_validator: Callable[[str], str] = validate_cli_available
    install_signal_handlers: bool = True

    def run(self, command: TeamRunCommand) -> TeamRunResult:
        settings = self._settings(command.state_dir)
        run_input = parse_run_payload(command.payload)
        poll_ms = run_input.poll_interval_ms or settings.poll_interval_ms
        return asyncio.run(self._run_async(settings, run_input.request, poll_ms))

    def resume(self, command: TeamResumeCommand) -> TeamRunResult:
        settings = self._settings(command.state_dir)
        return asyncio.run(self._resume_async(settings, command))

    def status(self, command: TeamStatusCommand) -> list[str]:
        settings = self._settings(command.state_dir)
        snapshot = asyncio.run(self._status_async(settings, command))
        if command.output_format == "json":
            return [json.dumps(_snapshot_payload(snapshot), ensure_ascii=False, indent=2)]
        return _render_snapshot(snapshot)

    def shutdown(self, command: TeamShutdownCommand) -> list[str]:
        settings = self._settings(command.state_dir)
        return asyncio.run(self._shutdown_async(settings, command))

    def assign(self, command: TeamAssignCommand) -> list[str]:
        settings = self._settings(command.state_dir)
        pane_id = asyncio.run(self._assign_async(settings, command))
        return [f"Task {command.task_id} assigned to {command.worker} (pane {pane_id})"]

    def agents(self) -> list[str]:
        lines = ["Agents:"]
        for agent_type in supported_agent_types():
            contract = get_contract(agent_type)
            available = is_cli_available(agent_type)
            lines.append(
                f"  {agent_type} binary={contract.binary} "
                f"available={'yes' if available else 'no'} "
                f"prompt_mode={'yes' if contract.supports_prompt_mode else 'no'}",
            )
            if not available:
                lines.append(f"    {contract.install_instructions}")
        return lines

    # -- async bodies ---------------------------------------------------------

    async def _run_async(
        self,
        settings: Settings,
        request: TeamStartRequest,
        poll_ms: int,
    ) -> TeamRunResult:
        started = time.monotonic()
        runtime = await start_team(
            request,
            settings=settings,
            supervisor=self.supervisor_factory(settings),
            cli_validator=self.cli_validator,
        )
        return await self._supervise(runtime, poll_ms=poll_ms, started=started)

    async def _resume_async(self, settings: Settings, command: TeamResumeCommand) -> TeamRunResult:
        started = time.monotonic()
        runtime = await self._reattach(settings, command.team_name, command.cwd)
        start_watchdog(runtime)
        return await self._supervise(runtime, poll_ms=settings.poll_interval_ms, started=started)

    async def _supervise(
        self,
        runtime: TeamRuntime,
        *,
        poll_ms: int,
        started: float,
    ) -> TeamRunResult:
        stop_requested = asyncio.Event()
        installed = self._install_signal_handlers(stop_requested)
        try:
            status = await self._wait_for_outcome(runtime, poll_ms, stop_requested)
            tasks = await runtime.store.list_tasks()
        finally:
            self._remove_signal_handlers(installed)
            await shutdown_team(runtime)
        payload = {
            "status": status,
            "teamName": runtime.team_name,
            "taskResults": [
                {"taskId": task.id, "status": task.status.value, "summary": task.summary or ""}
                for task in tasks
            ],
            "duration": round(time.monotonic() - started, 3),
            "workerCount": runtime.config.worker_count,
        }
        return TeamRunResult(payload=payload, success=status == "completed")

    async def _wait_for_outcome(
        self,
        runtime: TeamRuntime,
        poll_ms: int,
        stop_requested: asyncio.Event,
    ) -> str:
        while True:
            snapshot = await monitor_team(runtime)
            if snapshot.all_tasks_terminal:
                return "completed" if snapshot.counts.failed == 0 else "failed"
            if snapshot.watchdog_failed:
                logger.error("Watchdog failed; giving up on team %s", runtime.team_name)
                return "failed"
            recycling = runtime.watchdog is not None and runtime.watchdog.is_ticking
            if not runtime.active_workers and not recycling:
                # The snapshot may predate a tick that finished the last task.
                if await runtime.store.all_tasks_terminal():
                    continue
                logger.error(
                    "No live workers left with %d tasks outstanding",
                    snapshot.counts.outstanding,
                )
                return "failed"
            with suppress(TimeoutError):
                await asyncio.wait_for(stop_requested.wait(), timeout=poll_ms / 1000)
            if stop_requested.is_set():
                logger.warning("Interrupted; shutting team %s down", runtime.team_name)
                return "failed"

    async def _status_async(self, settings: Settings, command: TeamStatusCommand) -> TeamSnapshot:
        runtime = await resume_team(
            command.team_name,
            settings=settings,
            cwd=command.cwd,
            supervisor=self.supervisor_factory(settings),
        )
        if runtime is not None:
            return await monitor_team(runtime)
        store = self._store(settings, command.team_name, command.cwd)
        if await store.read_config() is None:
            raise LookupError(f"Team {command.team_name} not found")
        return snapshot_tasks(command.team_name, await store.list_tasks())

    async def _shutdown_async(
        self,
        settings: Settings,
        command: TeamShutdownCommand,
    ) -> list[str]:
        runtime = await resume_team(
            command.team_name,
            settings=settings,
            cwd=command.cwd,
            supervisor=self.supervisor_factory(settings),
        )
        if runtime is not None:
            await shutdown_team(runtime, remove_state=not command.keep_state)
            return [f"Team {command.team_name} shut down"]
        store = self._store(settings, command.team_name, command.cwd)
        if await store.read_config() is None:
            raise LookupError(f"Team {command.team_name} not found")
        if command.keep_state:
            return [f"Team {command.team_name}: session not running"]
        await store.remove_state()
        return [f"Team {command.team_name}: session not running, state removed"]

    async def _assign_async(self, settings: Settings, command: TeamAssignCommand) -> str:
        runtime = await self._reattach(settings, command.team_name, command.cwd)
        try:
            return await assign_task(runtime, command.task_id, command.worker)
        finally:
            await runtime.layout.flush()
            runtime.layout.dispose()

    # -- helpers --------------------------------------------------------------

    async def _reattach(self, settings: Settings, team_name: str, cwd: Path) -> TeamRuntime:
        """Resume a live team so it can spawn workers again."""

        runtime = await resume_team(
            team_name,
            settings=settings,
            cwd=cwd,
            supervisor=self.supervisor_factory(settings),
        )
        if runtime is None:
            raise LookupError(f"Team {team_name} is not running")
        for agent_type in dict.fromkeys(runtime.config.agent_types):
            runtime.binary_paths[agent_type] = await asyncio.to_thread(self.cli_validator, agent_type)
        return runtime

    def _settings(self, state_dir: Path | None) -> Settings:
        settings = Settings.from_env(state_dir=state_dir)
        settings.validate()
        return settings

    @staticmethod
    def _store(settings: Settings, team_name: str, cwd: Path) -> TeamStore:
        paths = TeamPaths.for_team(state_dir=settings.state_dir, team_name=team_name, cwd=cwd.resolve())
        return TeamStore(paths, stale_lock_ms=settings.stale_lock_ms)

    def _install_signal_handlers(self, stop_requested: asyncio.Event) -> list[signal.Signals]:
        if not self.install_signal_handlers:
            return []
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, stop_requested.set)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("Cannot install handler for %s", signum, exc_info=True)
                continue
            installed.append(signum)
        return installed

    @staticmethod
    def _remove_signal_handlers(installed: list[signal.Signals]) -> None:
        loop = asyncio.get_running_loop()
        for signum in installed:
            loop.remove_signal_handler(signum)


def _snapshot_payload(snapshot: TeamSnapshot) -> dict[str, Any]:
    return {
        "teamName": snapshot.team_name,
        "phase": snapshot.phase.value,
        "taskCounts": {
            "total": snapshot.counts.total,
            "pending": snapshot.counts.pending,
            "inProgress": snapshot.counts.in_progress,
            "completed": snapshot.counts.completed,
            "failed": snapshot.counts.failed,
        },
        "tasks": [task.to_payload() for task in snapshot.tasks],
        "workers": [
            {
                "name": worker.name,
                "paneId": worker.pane_id,
                "taskId": worker.task_id,
                "alive": worker.alive,
                "lastHeartbeatAt": worker.heartbeat_at,
                "stalled": worker.stalled,
            }
            for worker in snapshot.workers
        ],
        "elapsedSeconds": round(snapshot.elapsed_seconds, 3),
        "watchdogFailed": snapshot.watchdog_failed,
        "takenAt": snapshot.taken_at,
    }


def _render_snapshot(snapshot: TeamSnapshot) -> list[str]:
    counts = snapshot.counts
    lines = [
        f"Team: {snapshot.team_name} phase={snapshot.phase.value}",
        f"Tasks: total={counts.total} pending={counts.pending} "
        f"in_progress={counts.in_progress} completed={counts.completed} failed={counts.failed}",
    ]
    for task in snapshot.tasks:
        lines.append(
            f"  {task.id} status={task.status.value} owner={task.owner or '-'} "
            f"subject={task.subject!r} summary={task.summary or '-'}",
        )
    lines.append(f"Workers: {len(snapshot.workers)}")
    for worker in snapshot.workers:
        lines.append(
            f"  {worker.name} pane={worker.pane_id} task={worker.task_id} "
            f"alive={'yes' if worker.alive else 'no'} "
            f"stalled={'yes' if worker.stalled else 'no'} "
            f"heartbeat={worker.heartbeat_at or '-'}",
        )
    return lines
