"""Periodic reconciliation of worker panes against task state."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from tmux_team.config import WatchdogSettings
from tmux_team.team.errors import SpawnError, TaskLockBusyError
from tmux_team.team.interop import run_interop_poll
from tmux_team.team.models import ActiveWorker, DoneSignal, TaskStatus, to_iso, utc_now
from tmux_team.team.state import TeamRuntime
from tmux_team.team.workers import kill_worker_pane, spawn_next_pending

logger = logging.getLogger(__name__)


class Watchdog:
    """Detect done, dead and stalled workers each tick and recycle their slots.

    Ticks never overlap: a tick that fires while the previous one is still running is
    skipped. ``max_consecutive_failures`` failed ticks in a row write
    ``watchdog-failed.json`` and stop the loop for good.
    """

    def __init__(
        self,
        runtime: TeamRuntime,
        settings: WatchdogSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.runtime = runtime
        self.settings = settings
        self.clock = clock
        self.unresponsive_counts: dict[str, int] = {}
        self.consecutive_failures = 0
        self.failed = False
        self.last_error: str | None = None
        self._in_flight = False
        self._stopped = False
        self._loop_task: asyncio.Task[None] | None = None
        self._tick_task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._stopped

    @property
    def is_ticking(self) -> bool:
        return self._in_flight

    def start(self) -> Callable[[], None]:
        """Begin ticking every ``interval_ms``; returns the idempotent stop callable."""

        if self._loop_task is None and not self._stopped:
            self._loop_task = asyncio.ensure_future(self._run_loop())
        return self.stop

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
        self.runtime.layout.dispose()

    async def aclose(self) -> None:
        """Stop and wait for an in-flight tick to finish."""

        self.stop()
        if self._tick_task is not None and not self._tick_task.done():
            await asyncio.gather(self._tick_task, return_exceptions=True)

    async def _run_loop(self) -> None:
        interval = self.settings.interval_ms / 1000
        while not self._stopped:
            await asyncio.sleep(interval)
            if self._stopped:
                break
            if self._in_flight:
                logger.debug("Previous watchdog tick still running; skipping")
                continue
            self._tick_task = asyncio.ensure_future(self.tick())

    async def tick(self) -> None:
        if self._in_flight or self.failed:
            return
        self._in_flight = True
        try:
            await self._reconcile()
        except Exception as error:  # noqa: BLE001
            self.consecutive_failures += 1
            self.last_error = str(error) or type(error).__name__
            logger.exception(
                "Watchdog tick failed (%d/%d consecutive)",
                self.consecutive_failures,
                self.settings.max_consecutive_failures,
            )
            if self.consecutive_failures >= self.settings.max_consecutive_failures:
                await self._trip()
        else:
            self.consecutive_failures = 0
        finally:
            self._in_flight = False

    async def _reconcile(self) -> None:
        runtime = self.runtime
        workers = list(runtime.active_workers.values())
        if not workers:
            return

        if runtime.interop is not None:
            await asyncio.gather(
                *(
                    run_interop_poll(
                        runtime.interop,
                        runtime.store,
                        team_name=runtime.team_name,
                        worker=worker.name,
                        task_id=worker.task_id,
                    )
                    for worker in workers
                ),
            )

        done_signals, alive = await asyncio.gather(
            asyncio.gather(*(runtime.store.read_done_signal(worker.name) for worker in workers)),
            asyncio.gather(*(runtime.supervisor.is_worker_alive(worker.pane_id) for worker in workers)),
        )
        now = self.clock()
        for worker, signal, is_alive in zip(workers, done_signals, alive, strict=True):
            if runtime.active_workers.get(worker.name) is not worker:
                continue
            try:
                if signal is not None:
                    await self._handle_done(worker, signal)
                elif not is_alive:
                    logger.warning("Worker %s pane %s died", worker.name, worker.pane_id)
                    await runtime.store.mark_task_failed_dead_pane(worker.task_id, worker.name)
                    self.unresponsive_counts.pop(worker.name, None)
                    await self._recycle(worker)
                else:
                    await self._check_heartbeat(worker, now)
            except TaskLockBusyError as error:
                # Worker, pane and done.json stay as they are for the next tick.
                logger.warning(
                    "Task %s is locked elsewhere; retrying %s next tick",
                    error.task_id,
                    worker.name,
                )

        await runtime.layout.flush()

    async def _handle_done(self, worker: ActiveWorker, signal: DoneSignal) -> None:
        store = self.runtime.store
        if signal.task_id and signal.task_id != worker.task_id:
            logger.warning(
                "Worker %s reported task %s but is assigned task %s",
                worker.name,
                signal.task_id,
                worker.task_id,
            )
            await store.mark_task_terminal(
                worker.task_id,
                TaskStatus.FAILED,
                f"Worker reported task {signal.task_id} done while assigned task "
                f"{worker.task_id} ({worker.name})",
            )
        else:
            await store.mark_task_from_done(worker.task_id, signal)
            logger.info(
                "Worker %s reported task %s %s",
                worker.name,
                worker.task_id,
                signal.status.value,
            )
        self.unresponsive_counts.pop(worker.name, None)
        await store.clear_done_signal(worker.name)
        await self._recycle(worker)

    async def _check_heartbeat(self, worker: ActiveWorker, now: datetime) -> None:
        heartbeat = await self.runtime.store.read_heartbeat(worker.name)
        stalled = heartbeat is not None and heartbeat.is_stalled(
            now=now,
            threshold_ms=self.settings.stall_threshold_ms,
            since=worker.spawned_at,
        )
        if not stalled:
            self.unresponsive_counts.pop(worker.name, None)
            return

        count = self.unresponsive_counts.get(worker.name, 0) + 1
        threshold = self.settings.unresponsive_kill_threshold
        if count < threshold:
            self.unresponsive_counts[worker.name] = count
            logger.warning(
                "Worker %s heartbeat is stale (%d/%d)",
                worker.name,
                count,
                threshold,
            )
            return

        logger.warning("Worker %s unresponsive for %d checks; killing pane", worker.name, count)
        await self.runtime.store.mark_task_terminal(
            worker.task_id,
            TaskStatus.FAILED,
            f"Worker stopped sending heartbeats for {count} consecutive checks ({worker.name})",
        )
        self.unresponsive_counts.pop(worker.name, None)
        await self._recycle(worker)

    async def _recycle(self, worker: ActiveWorker) -> None:
        """Kill the worker's pane and give its slot the next pending task."""

        await kill_worker_pane(self.runtime, worker.name, worker.pane_id)
        if await self.runtime.store.all_tasks_terminal():
            return
        try:
            await spawn_next_pending(self.runtime, worker.name)
        except SpawnError as error:
            logger.warning("Could not respawn %s: %s", worker.name, error.reason)

    async def _trip(self) -> None:
        self.failed = True
        payload = {
            "failedAt": to_iso(utc_now()),
            "consecutiveFailures": self.consecutive_failures,
            "lastError": self.last_error,
        }
        try:
            await self.runtime.store.write_marker(self.runtime.paths.watchdog_failed_path, payload)
        except OSError:
            logger.exception("Unable to write watchdog failure marker")
        logger.error(
            "Watchdog stopped after %d consecutive failures: %s",
            self.consecutive_failures,
            self.last_error,
        )
        self.stop()
