"""Worker pane lifecycle: spawn for a task, kill, and direct assignment."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from tmux_team.team.bootstrap import (
    append_inbox,
    build_assignment_message,
    build_initial_task_instruction,
    display_path,
    write_inbox,
)
from tmux_team.team.contracts import get_contract, resolve_cli_binary_path, worker_env
from tmux_team.team.errors import SpawnError, TaskLockBusyError
from tmux_team.team.interop import run_interop_bootstrap
from tmux_team.team.launch import WorkerLaunch, build_worker_start_command
from tmux_team.team.models import ActiveWorker, TaskRecord, TaskStatus
from tmux_team.team.paths import worker_index
from tmux_team.team.state import TeamRuntime
from tmux_team.team.tmux import TmuxError

logger = logging.getLogger(__name__)


async def spawn_worker_for_task(runtime: TeamRuntime, worker: str, task_id: str) -> str:
    """Claim ``task_id`` and start ``worker`` on it in a new pane; return the pane id.

    Any failure after the claim kills the partial pane and puts the task back to
    ``pending`` before :class:`SpawnError` is raised.
    """

    store = runtime.store
    supervisor = runtime.supervisor
    agent_type = runtime.config.agent_type_for(worker_index(worker))
    contract = get_contract(agent_type)
    binary = runtime.binary_paths.get(agent_type) or resolve_cli_binary_path(contract.binary)

    if not await store.mark_task_in_progress(task_id, worker):
        raise SpawnError.claim_failed(task_id)
    task = await store.read_task(task_id)
    if task is None:
        raise SpawnError.claim_failed(task_id)

    pane_id: str | None = None
    stage = "tag"
    prompt_mode = contract.supports_prompt_mode
    try:
        pane_id = await supervisor.split_worker_pane(
            leader_pane_id=runtime.session.leader_pane_id,
            worker_pane_ids=runtime.worker_pane_ids,
            cwd=runtime.cwd,
        )
        await supervisor.tag_worker_pane(pane_id, worker)
        stage = "inbox"

        instruction = build_initial_task_instruction(
            team_name=runtime.team_name,
            worker=worker,
            task=task,
            paths=runtime.paths,
            cwd=runtime.cwd,
        )
        await asyncio.to_thread(write_inbox, runtime.paths, worker, instruction)

        stage = "launch"
        args = contract.build_args()
        if prompt_mode:
            args.extend(contract.prompt_mode_args(instruction))
        start_command = build_worker_start_command(
            WorkerLaunch(
                env=worker_env(runtime.team_name, worker, agent_type),
                binary=binary,
                args=args,
            ),
            source_rc=not runtime.settings.pane.skip_shell_rc,
        )
        await supervisor.spawn_worker_in_pane(pane_id, start_command, wait_for_shell=prompt_mode)
    except (TmuxError, OSError, ValueError) as error:
        await _abandon_spawn(runtime, worker, pane_id, task_id)
        if pane_id is None:
            raise SpawnError.split_failed(worker, task_id) from error
        raise SpawnError.notify_failed(worker, stage, task_id) from error

    runtime.worker_pane_ids.append(pane_id)
    runtime.active_workers[worker] = ActiveWorker(
        name=worker,
        pane_id=pane_id,
        task_id=task_id,
        agent_type=agent_type,
    )
    runtime.layout.request_layout()

    if not prompt_mode:
        if not await supervisor.wait_for_pane_ready(pane_id):
            await _abandon_spawn(runtime, worker, pane_id, task_id)
            raise SpawnError.pane_not_ready(worker, task_id)
        inbox = display_path(runtime.paths.inbox_path(worker), runtime.cwd)
        if not await supervisor.send_to_worker(pane_id, f"Read and execute your task from: {inbox}"):
            await _abandon_spawn(runtime, worker, pane_id, task_id)
            raise SpawnError.notify_failed(worker, "initial-inbox", task_id)

    if runtime.interop is not None:
        await run_interop_bootstrap(
            runtime.interop,
            store,
            team_name=runtime.team_name,
            worker=worker,
            task=task,
        )

    logger.info(
        "Spawned %s (%s) for task %s in pane %s",
        worker,
        agent_type,
        task_id,
        pane_id,
    )
    return pane_id


async def spawn_next_pending(runtime: TeamRuntime, worker: str) -> str | None:
    """Spawn ``worker`` on the first pending task it can claim; ``None`` if none is left."""

    for task in await runtime.store.list_tasks():
        if task.status is not TaskStatus.PENDING:
            continue
        try:
            return await spawn_worker_for_task(runtime, worker, task.id)
        except SpawnError as error:
            if error.kind != "task_claim_failed":
                raise
            logger.debug("Task %s claimed elsewhere; trying next", task.id)
    return None


async def kill_worker_pane(runtime: TeamRuntime, worker: str, pane_id: str) -> None:
    """Kill the pane first, then forget it, so no tick sees a half torn down worker."""

    await runtime.supervisor.kill_pane(pane_id)
    with suppress(ValueError):
        runtime.worker_pane_ids.remove(pane_id)
    active = runtime.active_workers.get(worker)
    if active is not None and active.pane_id == pane_id:
        del runtime.active_workers[worker]
    runtime.layout.request_layout()


async def assign_task(runtime: TeamRuntime, task_id: str, worker: str) -> str:
    """Give a pending task to ``worker``; returns the worker's pane id.

    An idle slot gets a fresh pane. A running worker whose task already finished is
    told about the new task through its inbox; if that message cannot be delivered,
    the task is restored to its previous state.
    """

    active = runtime.active_workers.get(worker)
    if active is None:
        return await spawn_worker_for_task(runtime, worker, task_id)

    current = await runtime.store.read_task(active.task_id)
    if current is not None and current.status is TaskStatus.IN_PROGRESS:
        raise ValueError(f"Worker {worker} is still working on task {active.task_id}")

    previous = await runtime.store.assign_pending_task(task_id, worker)
    if previous is None:
        raise SpawnError.claim_failed(task_id)
    message = f"new-task:{task_id}"
    try:
        await asyncio.to_thread(
            append_inbox,
            runtime.paths,
            worker,
            build_assignment_message(worker=worker, task=previous, paths=runtime.paths, cwd=runtime.cwd),
        )
    except OSError as error:
        await _restore_assignment(runtime, previous)
        raise SpawnError.notify_failed(worker, "inbox", task_id) from error
    if not await runtime.supervisor.send_to_worker(active.pane_id, message):
        await _restore_assignment(runtime, previous)
        raise SpawnError.notify_failed(worker, message, task_id)
    active.task_id = task_id
    logger.info("Assigned task %s to %s", task_id, worker)
    return active.pane_id


async def _abandon_spawn(
    runtime: TeamRuntime,
    worker: str,
    pane_id: str | None,
    task_id: str,
) -> None:
    if pane_id is not None:
        await kill_worker_pane(runtime, worker, pane_id)
    try:
        await runtime.store.reset_task_to_pending(task_id)
    except TaskLockBusyError:
        logger.error("Could not release task %s after failed spawn of %s; lock is busy", task_id, worker)


async def _restore_assignment(runtime: TeamRuntime, previous: TaskRecord) -> None:
    try:
        await runtime.store.restore_task(previous)
    except TaskLockBusyError:
        logger.error("Could not restore task %s after failed assignment; lock is busy", previous.id)
