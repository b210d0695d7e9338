"""Debounced, serialized tmux layout recomputation."""

from __future__ import annotations

import asyncio
import logging

from tmux_team.team.tmux import TmuxError, TmuxRunner

logger = logging.getLogger(__name__)

MAIN_LAYOUT = "main-vertical"
MIN_WIDTH_FOR_SPLIT = 40


class LayoutStabilizer:
    """Collapse bursts of layout requests into one recompute at a time.

    ``request_layout`` arms a debounce timer; a request arriving while a recompute is
    running sets a flag that triggers exactly one trailing run. ``flush`` runs now (or
    waits for the in-flight run) and ``dispose`` releases waiters without running.
    """

    def __init__(
        self,
        tmux: TmuxRunner,
        *,
        session_target: str,
        leader_pane_id: str,
        debounce_ms: int = 150,
    ) -> None:
        self.tmux = tmux
        self.session_target = session_target
        self.leader_pane_id = leader_pane_id
        self.debounce_ms = debounce_ms
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._queued = False
        self._disposed = False
        self._waiters: list[asyncio.Future[None]] = []

    @property
    def is_pending(self) -> bool:
        return self._timer is not None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def request_layout(self) -> None:
        if self._disposed:
            return
        if self._running:
            self._queued = True
            return
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce_ms / 1000, self._on_timer)

    async def flush(self) -> None:
        if self._disposed:
            return
        self._cancel_timer()
        if self._running:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            await waiter
            return
        await self._apply_layout()

    def dispose(self) -> None:
        self._disposed = True
        self._cancel_timer()
        self._release_waiters()

    def _on_timer(self) -> None:
        self._timer = None
        if self._disposed or self._running:
            return
        self._task = asyncio.ensure_future(self._apply_layout())

    async def _apply_layout(self) -> None:
        self._running = True
        try:
            target = self.session_target
            await self._step("select-layout", "-t", target, MAIN_LAYOUT)
            width = _parse_width(
                await self._step("display-message", "-p", "-t", target, "#{window_width}"),
            )
            if width >= MIN_WIDTH_FOR_SPLIT:
                await self._step(
                    "set-window-option",
                    "-t",
                    target,
                    "main-pane-width",
                    str(width // 2),
                )
                await self._step("select-layout", "-t", target, MAIN_LAYOUT)
            await self._step("select-pane", "-t", self.leader_pane_id)
        finally:
            self._running = False
            self._release_waiters()
            if self._queued and not self._disposed:
                self._queued = False
                self.request_layout()

    async def _step(self, *args: str) -> str:
        try:
            return await self.tmux.run(*args)
        except TmuxError:
            logger.debug("Layout step %s failed", args[0], exc_info=True)
            return ""

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _release_waiters(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)


def _parse_width(raw: str) -> int:
    value = raw.strip()
    return int(value) if value.isdigit() else 0
