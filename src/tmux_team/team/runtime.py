"""Team startup, resume and shutdown."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from tmux_team.config import Settings
from tmux_team.team.bootstrap import generate_worker_overlay, write_worker_overlay
from tmux_team.team.contracts import ContractError, get_contract, validate_cli_available
from tmux_team.team.errors import SpawnError
from tmux_team.team.interop import ForeignTeamStateAdapter, InteropAdapter
from tmux_team.team.layout import LayoutStabilizer
from tmux_team.team.models import ActiveWorker, TaskSpec, TaskStatus, TeamConfig, to_iso, utc_now
from tmux_team.team.paths import (
    TeamPaths,
    session_name_for,
    validate_team_name,
    worker_index,
    worker_name,
)
from tmux_team.team.session import PaneSupervisor, Sleep, TeamSession
from tmux_team.team.state import TeamRuntime
from tmux_team.team.store import TeamStore
from tmux_team.team.tmux import TmuxClient, TmuxError, TmuxRunner
from tmux_team.team.watchdog import Watchdog
from tmux_team.team.workers import spawn_next_pending

logger = logging.getLogger(__name__)

SHUTDOWN_ACK_POLL_SECONDS = 0.5


@dataclass(slots=True)
class TeamStartRequest:
    """Everything needed to bring a team up."""

    team_name: str
    agent_types: list[str]
    tasks: list[TaskSpec]
    cwd: Path
    worker_count: int | None = None
    extra_instructions: str | None = None
    metadata: dict[str, object] = field(default_factory=dict)


def build_supervisor(
    settings: Settings,
    *,
    tmux: TmuxRunner | None = None,
    environ: Mapping[str, str] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> PaneSupervisor:
    return PaneSupervisor(
        tmux or TmuxClient(),
        shell_ready_timeout_ms=settings.pane.shell_ready_timeout_ms,
        pane_ready_timeout_ms=settings.pane.pane_ready_timeout_ms,
        auto_interrupt_retry=settings.pane.auto_interrupt_retry,
        environ=environ,
        sleep=sleep,
    )


def build_interop(settings: Settings, cwd: Path) -> InteropAdapter | None:
    if settings.interop_mode == "off" or settings.interop_state_dir is None:
        return None
    root = settings.interop_state_dir
    if not root.is_absolute():
        root = cwd / root
    return ForeignTeamStateAdapter(root, mode=settings.interop_mode)


def start_watchdog(runtime: TeamRuntime) -> Watchdog:
    watchdog = Watchdog(runtime, runtime.settings.watchdog)
    runtime.watchdog = watchdog
    runtime.stop_watchdog = watchdog.start()
    return watchdog


async def start_team(  # noqa: PLR0913
    request: TeamStartRequest,
    *,
    settings: Settings,
    supervisor: PaneSupervisor | None = None,
    interop: InteropAdapter | None = None,
    cli_validator: Callable[[str], str] = validate_cli_available,
    watchdog: bool = True,
) -> TeamRuntime:
    """Create task files, open the session, spawn the first workers and start the watchdog."""

    team_name = validate_team_name(request.team_name)
    if not request.agent_types:
        raise ValueError("At least one agent type is required")
    if not request.tasks:
        raise ValueError("At least one task is required")
    worker_count = request.worker_count or len(request.agent_types)
    if worker_count < 1:
        raise ValueError("worker_count must be >= 1")

    binary_paths: dict[str, str] = {}
    for agent_type in dict.fromkeys(request.agent_types):
        get_contract(agent_type)
        binary_paths[agent_type] = await asyncio.to_thread(cli_validator, agent_type)

    cwd = request.cwd.resolve()
    paths = TeamPaths.for_team(state_dir=settings.state_dir, team_name=team_name, cwd=cwd)
    store = TeamStore(paths, stale_lock_ms=settings.stale_lock_ms)
    if paths.root.exists():
        logger.info("Discarding previous state for team %s at %s", team_name, paths.root)
        await store.remove_state()
    records = await store.create_tasks(request.tasks)

    config = TeamConfig(
        name=team_name,
        agent_types=list(request.agent_types),
        task_count=len(records),
        cwd=str(cwd),
        worker_count=worker_count,
        created_at=to_iso(utc_now()),
        metadata=dict(request.metadata),
    )
    for index in range(len(records)):
        name = worker_name(index)
        overlay = generate_worker_overlay(
            team_name=team_name,
            worker=name,
            agent_type=config.agent_type_for(index),
            tasks=records,
            paths=paths,
            cwd=cwd,
            extra_instructions=request.extra_instructions,
        )
        await asyncio.to_thread(write_worker_overlay, paths, name, overlay)

    supervisor = supervisor or build_supervisor(settings)
    session = await supervisor.create_team_session(team_name, cwd)
    config.session_name = session.session_name
    config.leader_pane_id = session.leader_pane_id
    config.metadata["ownsSession"] = session.owns_session
    await store.write_config(config)

    runtime = TeamRuntime(
        config=config,
        cwd=cwd,
        paths=paths,
        store=store,
        supervisor=supervisor,
        session=session,
        layout=LayoutStabilizer(
            supervisor.tmux,
            session_target=session.session_name,
            leader_pane_id=session.leader_pane_id,
            debounce_ms=settings.pane.layout_debounce_ms,
        ),
        settings=settings,
        binary_paths=binary_paths,
        interop=interop if interop is not None else build_interop(settings, cwd),
    )

    for index in range(min(worker_count, len(records))):
        name = worker_name(index)
        try:
            if await spawn_next_pending(runtime, name) is None:
                break
        except (SpawnError, TmuxError, ContractError) as error:
            logger.warning("Initial spawn of %s failed: %s", name, error)

    if watchdog:
        start_watchdog(runtime)
    logger.info(
        "Team %s started: %d tasks, %d active workers",
        team_name,
        len(records),
        len(runtime.active_workers),
    )
    return runtime


async def shutdown_team(
    runtime: TeamRuntime,
    *,
    timeout_ms: int | None = None,
    remove_state: bool = True,
) -> None:
    """Request shutdown, wait for acknowledgements where workers send them, then tear down."""

    if runtime.watchdog is not None:
        await runtime.watchdog.aclose()
    elif runtime.stop_watchdog is not None:
        runtime.stop_watchdog()

    await runtime.store.write_marker(
        runtime.paths.shutdown_path,
        {"requestedAt": to_iso(utc_now()), "teamName": runtime.team_name},
    )

    if _expects_shutdown_ack(runtime.config.agent_types):
        await _wait_for_shutdown_acks(
            runtime,
            timeout_ms=runtime.settings.shutdown_timeout_ms if timeout_ms is None else timeout_ms,
        )

    await runtime.supervisor.kill_team_session(runtime.session, list(runtime.worker_pane_ids))
    runtime.active_workers.clear()
    runtime.worker_pane_ids.clear()
    runtime.layout.dispose()
    if remove_state:
        await runtime.store.remove_state()
    logger.info("Team %s shut down", runtime.team_name)


def _expects_shutdown_ack(agent_types: list[str]) -> bool:
    for agent_type in dict.fromkeys(agent_types):
        try:
            if get_contract(agent_type).acknowledges_shutdown:
                return True
        except ContractError:
            logger.debug("Unknown agent type %s in team config", agent_type)
    return False


async def _wait_for_shutdown_acks(runtime: TeamRuntime, *, timeout_ms: int) -> None:
    workers = list(runtime.active_workers)
    waited = 0.0
    timeout = timeout_ms / 1000
    while workers:
        acked = await asyncio.gather(*(runtime.store.has_shutdown_ack(name) for name in workers))
        workers = [name for name, ack in zip(workers, acked, strict=True) if not ack]
        if not workers:
            return
        if waited >= timeout:
            logger.warning("Shutdown not acknowledged by: %s", ", ".join(workers))
            return
        await runtime.supervisor.sleep(SHUTDOWN_ACK_POLL_SECONDS)
        waited += SHUTDOWN_ACK_POLL_SECONDS


async def resume_team(
    team_name: str,
    *,
    settings: Settings,
    cwd: Path,
    supervisor: PaneSupervisor | None = None,
    interop: InteropAdapter | None = None,
) -> TeamRuntime | None:
    """Rebuild runtime state from task files and live panes; ``None`` if the team is gone."""

    cwd = cwd.resolve()
    paths = TeamPaths.for_team(state_dir=settings.state_dir, team_name=team_name, cwd=cwd)
    store = TeamStore(paths, stale_lock_ms=settings.stale_lock_ms)
    config = await store.read_config()
    if config is None:
        return None

    supervisor = supervisor or build_supervisor(settings)
    session_name = config.session_name or session_name_for(team_name)
    if not await supervisor.has_session(session_name):
        return None
    panes = await supervisor.list_panes(session_name)
    if not panes:
        return None
    leader = config.leader_pane_id if config.leader_pane_id in panes else panes[0]
    worker_panes = [pane for pane in panes if pane != leader]

    tags = await asyncio.gather(*(supervisor.pane_worker_tag(pane) for pane in worker_panes))
    tagged = {tag: pane for tag, pane in zip(tags, worker_panes, strict=True) if tag}
    untagged = [pane for tag, pane in zip(tags, worker_panes, strict=True) if not tag]

    active: dict[str, ActiveWorker] = {}
    for task in await store.list_tasks():
        if task.status is not TaskStatus.IN_PROGRESS or not task.owner or task.owner in active:
            continue
        try:
            index = worker_index(task.owner)
        except ValueError:
            logger.warning("Task %s owned by unknown worker %s", task.id, task.owner)
            continue
        pane = tagged.get(task.owner)
        if pane is None and index < len(untagged):
            pane = untagged[index]
        if pane is None:
            logger.warning("No pane found for %s (task %s)", task.owner, task.id)
            continue
        active[task.owner] = ActiveWorker(
            name=task.owner,
            pane_id=pane,
            task_id=task.id,
            agent_type=config.agent_type_for(index),
        )

    owns_session = bool(config.metadata.get("ownsSession", ":" not in session_name))
    session = TeamSession(
        session_name=session_name,
        leader_pane_id=leader,
        owns_session=owns_session,
    )
    runtime = TeamRuntime(
        config=config,
        cwd=Path(config.cwd) if config.cwd else cwd,
        paths=paths,
        store=store,
        supervisor=supervisor,
        session=session,
        layout=LayoutStabilizer(
            supervisor.tmux,
            session_target=session_name,
            leader_pane_id=leader,
            debounce_ms=settings.pane.layout_debounce_ms,
        ),
        settings=settings,
        worker_pane_ids=worker_panes,
        active_workers=active,
        interop=interop if interop is not None else build_interop(settings, cwd),
    )
    logger.info(
        "Resumed team %s: %d worker panes, %d active workers",
        team_name,
        len(worker_panes),
        len(active),
    )
    return runtime
