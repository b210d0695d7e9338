"""Shared test fixtures."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from tmux_team.config import PaneSettings, Settings, WatchdogSettings
from tmux_team.team.models import TaskSpec
from tmux_team.team.runtime import TeamStartRequest, build_supervisor, start_team
from tmux_team.team.session import WORKER_PANE_OPTION, PaneSupervisor
from tmux_team.team.state import TeamRuntime
from tmux_team.team.store import write_json_atomic
from tmux_team.team.tmux import TmuxError


@dataclass
class FakePane:
    """Screen, typed input and key history of one fake tmux pane."""

    pane_id: str
    screen: str = "$ "
    input: str = ""
    dead: bool = False
    in_copy_mode: bool = False
    consumes_input: bool = True
    ignore_submits: int = 0
    tag: str | None = None
    scripted_screens: list[str] = field(default_factory=list)
    literals: list[str] = field(default_factory=list)
    keys: list[str] = field(default_factory=list)
    submitted: list[str] = field(default_factory=list)

    def render(self) -> str:
        screen = self.scripted_screens.pop(0) if self.scripted_screens else self.screen
        return f"{screen}{self.input}"


class FakeTmux:
    """In-memory tmux that understands the subcommands the supervisor issues."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.sessions: dict[str, list[str]] = {}
        self.panes: dict[str, FakePane] = {}
        self.failures: dict[str, int] = {}
        self.current_window = "main:1"
        self.window_width = 200
        self.default_screen = "$ "
        self.default_consumes_input = True
        self.on_submit: Callable[[FakePane, str], None] | None = None
        self._next_pane = 0

    def fail(self, subcommand: str, times: int = 1_000) -> None:
        self.failures[subcommand] = times

    def commands(self, subcommand: str) -> list[tuple[str, ...]]:
        return [call for call in self.calls if call[0] == subcommand]

    def add_pane(self, session: str | None = None) -> FakePane:
        pane = FakePane(
            pane_id=f"%{self._next_pane}",
            screen=self.default_screen,
            consumes_input=self.default_consumes_input,
        )
        self._next_pane += 1
        self.panes[pane.pane_id] = pane
        if session is not None:
            self.sessions.setdefault(session, []).append(pane.pane_id)
        return pane

    async def run(self, *args: str) -> str:
        self.calls.append(args)
        command = args[0]
        remaining = self.failures.get(command, 0)
        if remaining:
            self.failures[command] = remaining - 1
            raise TmuxError(f"tmux {command} failed", command=("tmux", *args))
        handler = getattr(self, "_" + command.replace("-", "_"))
        return handler(list(args[1:]))

    # -- helpers --------------------------------------------------------------

    @staticmethod
    def _target(rest: list[str]) -> str | None:
        if "-t" in rest:
            return rest[rest.index("-t") + 1]
        return None

    def _pane(self, pane_id: str | None) -> FakePane:
        pane = self.panes.get(pane_id or "")
        if pane is None:
            raise TmuxError(f"can't find pane: {pane_id}")
        return pane

    def _session(self, target: str | None) -> list[str]:
        name = (target or "").lstrip("=")
        if name not in self.sessions:
            raise TmuxError(f"can't find session: {name}")
        return self.sessions[name]

    # -- subcommands ----------------------------------------------------------

    def _new_session(self, rest: list[str]) -> str:
        name = rest[rest.index("-s") + 1]
        self.sessions[name] = []
        self.add_pane(name)
        return ""

    def _kill_session(self, rest: list[str]) -> str:
        panes = self._session(self._target(rest))
        for pane_id in panes:
            self.panes.pop(pane_id, None)
        del self.sessions[self._target(rest).lstrip("=")]
        return ""

    def _has_session(self, rest: list[str]) -> str:
        self._session(self._target(rest))
        return ""

    def _list_panes(self, rest: list[str]) -> str:
        return "".join(f"{pane_id}\n" for pane_id in self._session(self._target(rest)))

    def _display_message(self, rest: list[str]) -> str:
        fmt = rest[-1]
        target = self._target(rest)
        if fmt == "#{pane_id}":
            return f"{self._session(target)[0]}\n"
        if fmt == "#S:#I":
            return f"{self.current_window}\n"
        if fmt == "#{window_width}":
            return f"{self.window_width}\n"
        pane = self._pane(target)
        if fmt == "#{pane_dead}":
            return "1\n" if pane.dead else "0\n"
        if fmt == "#{pane_in_mode}":
            return "1\n" if pane.in_copy_mode else "0\n"
        if fmt == f"#{{{WORKER_PANE_OPTION}}}":
            return f"{pane.tag or ''}\n"
        raise TmuxError(f"unsupported format {fmt}")

    def _set_option(self, rest: list[str]) -> str:
        if "-p" in rest:
            key, value = rest[-2:]
            if key == WORKER_PANE_OPTION:
                self._pane(self._target(rest)).tag = value
        return ""

    def _select_pane(self, rest: list[str]) -> str:
        return ""

    def _select_layout(self, rest: list[str]) -> str:
        return ""

    def _set_window_option(self, rest: list[str]) -> str:
        return ""

    def _split_window(self, rest: list[str]) -> str:
        target = self._target(rest)
        for name, panes in self.sessions.items():
            if target in panes:
                return f"{self.add_pane(name).pane_id}\n"
        raise TmuxError(f"can't find pane: {target}")

    def _kill_pane(self, rest: list[str]) -> str:
        pane = self._pane(self._target(rest))
        del self.panes[pane.pane_id]
        for panes in self.sessions.values():
            if pane.pane_id in panes:
                panes.remove(pane.pane_id)
        return ""

    def _capture_pane(self, rest: list[str]) -> str:
        return self._pane(self._target(rest)).render()

    def _send_keys(self, rest: list[str]) -> str:
        pane = self._pane(self._target(rest))
        keys = rest[2:]
        if keys[0] == "-l":
            text = keys[-1]
            pane.literals.append(text)
            pane.input += text
            return ""
        key = keys[0]
        pane.keys.append(key)
        if key == "C-u":
            pane.input = ""
        elif key in ("Enter", "C-m"):
            if pane.ignore_submits > 0:
                pane.ignore_submits -= 1
            elif pane.consumes_input and pane.input:
                submitted, pane.input = pane.input, ""
                pane.submitted.append(submitted)
                if self.on_submit is not None:
                    self.on_submit(pane, submitted)
        return ""


class RecordingSleep:
    """Drop-in for ``asyncio.sleep`` that returns at once and remembers durations."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture()
def fake_tmux() -> FakeTmux:
    return FakeTmux()


@pytest.fixture()
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        state_dir=tmp_path / "state",
        watchdog=WatchdogSettings(
            interval_ms=10,
            stall_threshold_ms=60_000,
            unresponsive_kill_threshold=3,
            max_consecutive_failures=3,
        ),
        pane=PaneSettings(layout_debounce_ms=0),
    )


@pytest.fixture()
def supervisor(settings: Settings, fake_tmux: FakeTmux, fake_sleep: RecordingSleep) -> PaneSupervisor:
    return build_supervisor(settings, tmux=fake_tmux, environ={}, sleep=fake_sleep)


def fake_cli_validator(agent_type: str) -> str:
    return f"/usr/bin/{agent_type}"


@pytest.fixture()
def start_fake_team(
    tmp_path: Path,
    settings: Settings,
    supervisor: PaneSupervisor,
) -> Callable[..., object]:
    """Return an async factory that starts a team on the fake tmux without a watchdog."""

    async def _start(
        *,
        agent_types: list[str] | None = None,
        task_count: int = 2,
        worker_count: int | None = None,
        team_name: str = "alpha",
    ) -> TeamRuntime:
        request = TeamStartRequest(
            team_name=team_name,
            agent_types=agent_types or ["codex"],
            tasks=[
                TaskSpec(subject=f"Task {index}", description=f"Do thing {index}")
                for index in range(1, task_count + 1)
            ],
            cwd=tmp_path,
            worker_count=worker_count,
        )
        return await start_team(
            request,
            settings=settings,
            supervisor=supervisor,
            cli_validator=fake_cli_validator,
            watchdog=False,
        )

    return _start


_WORKER_ENV = re.compile(r"TMUX_TEAM_WORKER=[\w-]+/(worker-\d+)")
_TASK_LINE = re.compile(r"Task ID: (\S+)")


def finish_tasks_on_launch(fake_tmux: FakeTmux, team_root: Path, *, status: str = "completed") -> None:
    """Make every prompt-mode worker write its done signal as soon as it is launched."""

    def _on_submit(pane: FakePane, submitted: str) -> None:
        worker = _WORKER_ENV.search(submitted)
        task = _TASK_LINE.search(submitted)
        if worker is None or task is None:
            return
        name = worker.group(1)
        write_json_atomic(
            team_root / "workers" / name / "done.json",
            {"taskId": task.group(1), "status": status, "summary": f"{status} by {name}"},
        )

    fake_tmux.on_submit = _on_submit
