from __future__ import annotations

import asyncio

import allure
import pytest
from conftest import FakeTmux

from tmux_team.team.layout import LayoutStabilizer

pytestmark = [
    allure.epic("Team Runtime"),
    allure.feature("Pane Layout"),
]


class GatedTmux(FakeTmux):
    """Holds every ``select-layout`` until the gate opens."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def run(self, *args: str) -> str:
        if args[0] == "select-layout":
            await self.gate.wait()
        return await super().run(*args)


def _stabilizer(tmux: FakeTmux, debounce_ms: int = 20) -> LayoutStabilizer:
    return LayoutStabilizer(tmux, session_target="tmux-team-alpha", leader_pane_id="%0", debounce_ms=debounce_ms)


def _runs(tmux: FakeTmux) -> int:
    return len(tmux.commands("select-pane"))


@pytest.mark.asyncio
async def test_burst_of_requests_collapses_into_one_run(fake_tmux: FakeTmux) -> None:
    layout = _stabilizer(fake_tmux)

    for _ in range(5):
        layout.request_layout()
    assert layout.is_pending
    await asyncio.sleep(0.15)

    assert _runs(fake_tmux) == 1
    assert not layout.is_pending
    assert fake_tmux.commands("set-window-option") == [
        ("set-window-option", "-t", "tmux-team-alpha", "main-pane-width", "100"),
    ]
    assert fake_tmux.commands("select-layout")[0] == (
        "select-layout",
        "-t",
        "tmux-team-alpha",
        "main-vertical",
    )
    assert fake_tmux.calls[-1] == ("select-pane", "-t", "%0")


@pytest.mark.asyncio
async def test_narrow_window_skips_main_pane_width(fake_tmux: FakeTmux) -> None:
    fake_tmux.window_width = 30
    layout = _stabilizer(fake_tmux)

    await layout.flush()

    assert not fake_tmux.commands("set-window-option")
    assert len(fake_tmux.commands("select-layout")) == 1


@pytest.mark.asyncio
async def test_requests_during_a_run_trigger_exactly_one_trailing_run() -> None:
    tmux = GatedTmux()
    layout = _stabilizer(tmux, debounce_ms=0)

    layout.request_layout()
    await asyncio.sleep(0.05)
    assert layout.is_running

    for _ in range(3):
        layout.request_layout()
    tmux.gate.set()
    await asyncio.sleep(0.15)

    assert _runs(tmux) == 2
    assert not layout.is_running
    assert not layout.is_pending


@pytest.mark.asyncio
async def test_flush_runs_immediately_and_cancels_timer(fake_tmux: FakeTmux) -> None:
    layout = _stabilizer(fake_tmux, debounce_ms=10_000)
    layout.request_layout()

    await layout.flush()

    assert _runs(fake_tmux) == 1
    assert not layout.is_pending


@pytest.mark.asyncio
async def test_flush_waits_for_in_flight_run() -> None:
    tmux = GatedTmux()
    layout = _stabilizer(tmux, debounce_ms=0)
    layout.request_layout()
    await asyncio.sleep(0.05)

    flushed = asyncio.ensure_future(layout.flush())
    await asyncio.sleep(0.01)
    assert not flushed.done()

    tmux.gate.set()
    await asyncio.wait_for(flushed, timeout=1)
    assert _runs(tmux) == 1


@pytest.mark.asyncio
async def test_dispose_cancels_pending_work(fake_tmux: FakeTmux) -> None:
    layout = _stabilizer(fake_tmux)
    layout.request_layout()

    layout.dispose()
    await asyncio.sleep(0.05)
    layout.request_layout()
    await layout.flush()

    assert layout.is_disposed
    assert not fake_tmux.calls


@pytest.mark.asyncio
async def test_dispose_releases_flush_waiters() -> None:
    tmux = GatedTmux()
    layout = _stabilizer(tmux, debounce_ms=0)
    layout.request_layout()
    await asyncio.sleep(0.05)

    flushed = asyncio.ensure_future(layout.flush())
    await asyncio.sleep(0.01)
    layout.dispose()

    await asyncio.wait_for(flushed, timeout=1)
    tmux.gate.set()
    await asyncio.sleep(0.05)
    assert _runs(tmux) == 1


@pytest.mark.asyncio
async def test_failing_tmux_steps_do_not_escape(fake_tmux: FakeTmux) -> None:
    fake_tmux.fail("select-layout")
    layout = _stabilizer(fake_tmux)

    await layout.flush()

    assert _runs(fake_tmux) == 1
