"""Pane supervisor: tmux sessions, worker panes, readiness and message delivery."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from tmux_team.team.paths import session_name_for
from tmux_team.team.tmux import TmuxError, TmuxRunner

logger = logging.getLogger(__name__)

PANE_ID_PATTERN = re.compile(r"^%\d+$")
WORKER_PANE_OPTION = "@tmux_team_worker"
SESSION_WIDTH = 200
SESSION_HEIGHT = 50
CAPTURE_LINES = 80
MAX_MESSAGE_CHARS = 200
SUBMIT_ROUNDS = 6
ADAPTIVE_SUBMIT_ROUNDS = 4

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class DeliveryHeuristics:
    """Text patterns used to read agent CLI state from captured pane output."""

    shell_prompt: re.Pattern[str] = re.compile(r"[$#%>]\s*$", re.MULTILINE)
    trust_prompt: re.Pattern[str] = re.compile(
        r"Do you trust the contents of this directory\?",
        re.IGNORECASE,
    )
    trust_choices: re.Pattern[str] = re.compile(
        r"Yes, continue|No, quit|Press enter to continue",
        re.IGNORECASE,
    )
    active_task: re.Pattern[str] = re.compile(
        r"esc to interrupt|background terminal running",
        re.IGNORECASE,
    )
    ready_prompt_prefixes: tuple[str, ...] = (">", "❯", "›")
    ready_markers: re.Pattern[str] = re.compile(r"gpt-[\w.-]+|\d+% left", re.IGNORECASE)
    trust_tail_lines: int = 12
    active_tail_lines: int = 40
    ready_tail_lines: int = 20


DEFAULT_HEURISTICS = DeliveryHeuristics()


@dataclass(slots=True)
class TeamSession:
    """Where worker panes live and who owns the tmux session."""

    session_name: str
    leader_pane_id: str
    owns_session: bool


def normalize_capture(text: str) -> str:
    return re.sub(r"\s+", " ", text.replace("\r", "")).strip()


def _tail_lines(capture: str, count: int, *, non_empty: bool) -> list[str]:
    lines = capture.replace("\r", "").split("\n")
    if non_empty:
        lines = [line for line in lines if line.strip()]
    return lines[-count:]


def pane_has_trust_prompt(capture: str, heuristics: DeliveryHeuristics = DEFAULT_HEURISTICS) -> bool:
    tail = "\n".join(_tail_lines(capture, heuristics.trust_tail_lines, non_empty=True))
    return bool(heuristics.trust_prompt.search(tail) and heuristics.trust_choices.search(tail))


def pane_has_active_task(capture: str, heuristics: DeliveryHeuristics = DEFAULT_HEURISTICS) -> bool:
    tail = "\n".join(_tail_lines(capture, heuristics.active_tail_lines, non_empty=False))
    return bool(heuristics.active_task.search(tail))


def pane_looks_ready(capture: str, heuristics: DeliveryHeuristics = DEFAULT_HEURISTICS) -> bool:
    for line in _tail_lines(capture, heuristics.ready_tail_lines, non_empty=True):
        if line.lstrip().startswith(heuristics.ready_prompt_prefixes):
            return True
        if heuristics.ready_markers.search(line):
            return True
    return False


def pane_tail_contains(capture: str, text: str) -> bool:
    needle = normalize_capture(text)
    if not needle:
        return False
    return needle in normalize_capture(capture)


class PaneSupervisor:
    """Async facade over the tmux CLI for one orchestrating process."""

    def __init__(  # noqa: PLR0913
        self,
        tmux: TmuxRunner,
        *,
        shell_ready_timeout_ms: int = 10_000,
        pane_ready_timeout_ms: int = 8_000,
        auto_interrupt_retry: bool = True,
        heuristics: DeliveryHeuristics = DEFAULT_HEURISTICS,
        environ: Mapping[str, str] | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.tmux = tmux
        self.shell_ready_timeout_ms = shell_ready_timeout_ms
        self.pane_ready_timeout_ms = pane_ready_timeout_ms
        self.auto_interrupt_retry = auto_interrupt_retry
        self.heuristics = heuristics
        self._environ = os.environ if environ is None else environ
        self.sleep = sleep

    # -- sessions -------------------------------------------------------------

    async def create_team_session(self, team_name: str, cwd: Path) -> TeamSession:
        """Create a dedicated session, or reuse the current window when already inside tmux."""

        if self._environ.get("TMUX"):
            session = await self._attach_current_window()
        else:
            name = session_name_for(team_name)
            try:
                await self.tmux.run("kill-session", "-t", f"={name}")
            except TmuxError:
                logger.debug("No previous session named %s", name)
            await self.tmux.run(
                "new-session",
                "-d",
                "-s",
                name,
                "-x",
                str(SESSION_WIDTH),
                "-y",
                str(SESSION_HEIGHT),
                "-c",
                str(cwd),
            )
            leader = (await self.tmux.run("display-message", "-t", name, "-p", "#{pane_id}")).strip()
            _require_pane_id(leader)
            session = TeamSession(session_name=name, leader_pane_id=leader, owns_session=True)

        await self._best_effort("set-option", "-t", session.session_name, "mouse", "on")
        await self._best_effort("select-pane", "-t", session.leader_pane_id)
        await self.sleep(0.3)
        logger.info(
            "Team session ready: session=%s leader=%s dedicated=%s",
            session.session_name,
            session.leader_pane_id,
            session.owns_session,
        )
        return session

    async def _attach_current_window(self) -> TeamSession:
        pane = self._environ.get("TMUX_PANE", "").strip()
        if pane:
            target = (await self.tmux.run("display-message", "-p", "-t", pane, "#S:#I")).strip()
        else:
            raw = (await self.tmux.run("display-message", "-p", "#S:#I #{pane_id}")).strip()
            target, _, pane = raw.partition(" ")
        _require_pane_id(pane)
        if not target:
            raise TmuxError("Unable to resolve current tmux window")
        return TeamSession(session_name=target, leader_pane_id=pane, owns_session=False)

    async def has_session(self, session_name: str) -> bool:
        target = session_name if ":" in session_name else f"={session_name}"
        try:
            await self.tmux.run("has-session", "-t", target)
        except TmuxError:
            return False
        return True

    async def list_panes(self, session_name: str) -> list[str]:
        raw = await self.tmux.run("list-panes", "-t", session_name, "-F", "#{pane_id}")
        return [line.strip() for line in raw.splitlines() if PANE_ID_PATTERN.match(line.strip())]

    async def kill_team_session(
        self,
        session: TeamSession,
        worker_pane_ids: Sequence[str] = (),
    ) -> None:
        """Kill the dedicated session, or only the worker panes when sharing a window."""

        if session.owns_session and ":" not in session.session_name:
            await self._best_effort("kill-session", "-t", f"={session.session_name}")
            return
        for pane_id in worker_pane_ids:
            if pane_id != session.leader_pane_id:
                await self.kill_pane(pane_id)

    # -- panes ----------------------------------------------------------------

    async def split_worker_pane(
        self,
        *,
        leader_pane_id: str,
        worker_pane_ids: Sequence[str],
        cwd: Path,
    ) -> str:
        """First worker splits right of the leader, later ones stack under the last worker."""

        if worker_pane_ids:
            direction, target = "-v", worker_pane_ids[-1]
        else:
            direction, target = "-h", leader_pane_id
        raw = await self.tmux.run(
            "split-window",
            direction,
            "-t",
            target,
            "-d",
            "-P",
            "-F",
            "#{pane_id}",
            "-c",
            str(cwd),
        )
        pane_id = raw.strip()
        _require_pane_id(pane_id)
        return pane_id

    async def tag_worker_pane(self, pane_id: str, worker: str) -> None:
        await self._best_effort("set-option", "-p", "-t", pane_id, WORKER_PANE_OPTION, worker)

    async def pane_worker_tag(self, pane_id: str) -> str | None:
        try:
            raw = await self.tmux.run(
                "display-message",
                "-p",
                "-t",
                pane_id,
                f"#{{{WORKER_PANE_OPTION}}}",
            )
        except TmuxError:
            return None
        return raw.strip() or None

    async def kill_pane(self, pane_id: str) -> None:
        await self._best_effort("kill-pane", "-t", pane_id)

    async def is_worker_alive(self, pane_id: str) -> bool:
        try:
            raw = await self.tmux.run("display-message", "-t", pane_id, "-p", "#{pane_dead}")
        except TmuxError:
            return False
        return raw.strip() == "0"

    async def capture_pane(self, pane_id: str, lines: int = CAPTURE_LINES) -> str:
        try:
            return await self.tmux.run("capture-pane", "-t", pane_id, "-p", "-S", f"-{lines}")
        except TmuxError:
            return ""

    async def pane_in_copy_mode(self, pane_id: str) -> bool:
        try:
            raw = await self.tmux.run("display-message", "-t", pane_id, "-p", "#{pane_in_mode}")
        except TmuxError:
            return False
        return raw.strip() == "1"

    # -- readiness ------------------------------------------------------------

    async def wait_for_shell_ready(self, pane_id: str, timeout_ms: int | None = None) -> bool:
        """Poll for a shell prompt with backoff; ``False`` on timeout (caller proceeds anyway)."""

        timeout = (timeout_ms or self.shell_ready_timeout_ms) / 1000
        delay = 0.2
        waited = 0.0
        while True:
            capture = await self.capture_pane(pane_id)
            if capture and self.heuristics.shell_prompt.search(capture):
                return True
            if waited >= timeout:
                break
            step = min(delay, timeout - waited)
            await self.sleep(step)
            waited += step
            delay = min(delay * 1.5, 2.0)
        logger.warning(
            "Shell in pane %s not ready: timed out after %dms",
            pane_id,
            int(timeout * 1000),
        )
        return False

    async def wait_for_pane_ready(
        self,
        pane_id: str,
        timeout_ms: int | None = None,
        poll_ms: int = 500,
    ) -> bool:
        """Poll until an interactive agent shows its input prompt."""

        timeout = (timeout_ms or self.pane_ready_timeout_ms) / 1000
        waited = 0.0
        while True:
            capture = await self.capture_pane(pane_id)
            if pane_looks_ready(capture, self.heuristics):
                return True
            if waited >= timeout:
                return False
            step = min(poll_ms / 1000, timeout - waited)
            await self.sleep(step)
            waited += step

    async def spawn_worker_in_pane(
        self,
        pane_id: str,
        start_command: str,
        *,
        wait_for_shell: bool = True,
    ) -> None:
        if wait_for_shell and not await self.wait_for_shell_ready(pane_id):
            logger.warning("Typing start command into pane %s without a shell prompt", pane_id)
        await self.tmux.run("send-keys", "-t", pane_id, "-l", start_command)
        await self.tmux.run("send-keys", "-t", pane_id, "Enter")

    # -- delivery -------------------------------------------------------------

    async def send_to_worker(self, pane_id: str, message: str) -> bool:
        """Type ``message`` into an agent CLI and submit it; ``False`` if delivery failed.

        Messages longer than ``MAX_MESSAGE_CHARS`` are cut; longer content belongs in
        the worker inbox.
        """

        text = message[:MAX_MESSAGE_CHARS]
        if len(message) > MAX_MESSAGE_CHARS:
            logger.warning(
                "Message to pane %s truncated from %d to %d characters",
                pane_id,
                len(message),
                MAX_MESSAGE_CHARS,
            )
        try:
            return await self._deliver(pane_id, text)
        except TmuxError:
            logger.debug("Message delivery to %s failed", pane_id, exc_info=True)
            return False

    async def _deliver(self, pane_id: str, text: str) -> bool:
        if await self.pane_in_copy_mode(pane_id):
            logger.warning("Pane %s is in copy mode; message not sent", pane_id)
            return False
        capture = await self.capture_pane(pane_id)
        busy = pane_has_active_task(capture, self.heuristics)
        if pane_has_trust_prompt(capture, self.heuristics):
            await self._keys(pane_id, "C-m")
            await self.sleep(0.12)
            await self._keys(pane_id, "C-m")
            await self.sleep(0.2)

        if await self.pane_in_copy_mode(pane_id):
            return False
        await self.tmux.run("send-keys", "-t", pane_id, "-l", "--", text)
        await self.sleep(0.15)

        for round_index in range(SUBMIT_ROUNDS):
            if round_index == 0 and busy:
                await self._keys(pane_id, "Tab")
                await self.sleep(0.08)
                await self._keys(pane_id, "C-m")
            else:
                await self._keys(pane_id, "C-m")
                await self.sleep(0.2)
                await self._keys(pane_id, "C-m")
            await self.sleep(0.14)
            capture = await self.capture_pane(pane_id)
            if not pane_tail_contains(capture, text):
                return True

        if await self.pane_in_copy_mode(pane_id):
            return False
        if self.should_retry_after_interrupt(capture, text, busy=busy):
            logger.info("Message still visible in %s; clearing input and resending", pane_id)
            await self._keys(pane_id, "C-u")
            await self.sleep(0.08)
            if await self.pane_in_copy_mode(pane_id):
                return False
            await self.tmux.run("send-keys", "-t", pane_id, "-l", "--", text)
            await self.sleep(0.12)
            for _ in range(ADAPTIVE_SUBMIT_ROUNDS):
                await self._keys(pane_id, "C-m")
                await self.sleep(0.18)
                await self._keys(pane_id, "C-m")
                await self.sleep(0.14)
                capture = await self.capture_pane(pane_id)
                if not pane_tail_contains(capture, text):
                    return True

        if await self.pane_in_copy_mode(pane_id):
            return False
        await self._keys(pane_id, "C-m")
        await self.sleep(0.12)
        await self._keys(pane_id, "C-m")
        await self.sleep(0.14)
        capture = await self.capture_pane(pane_id)
        if pane_tail_contains(capture, text):
            logger.warning("Message to pane %s was not consumed", pane_id)
            return False
        return True

    def should_retry_after_interrupt(self, capture: str, text: str, *, busy: bool) -> bool:
        """Clear-and-resend only when the agent was busy and now sits idle on our text."""

        if not self.auto_interrupt_retry or not busy:
            return False
        if not pane_tail_contains(capture, text):
            return False
        if pane_has_active_task(capture, self.heuristics):
            return False
        return pane_looks_ready(capture, self.heuristics)

    async def _keys(self, pane_id: str, key: str) -> None:
        await self.tmux.run("send-keys", "-t", pane_id, key)

    async def _best_effort(self, *args: str) -> None:
        try:
            await self.tmux.run(*args)
        except TmuxError:
            logger.debug("tmux %s failed", args[0], exc_info=True)


def _require_pane_id(pane_id: str) -> None:
    if not PANE_ID_PATTERN.match(pane_id):
        raise TmuxError(f"Unexpected tmux pane id: {pane_id!r}")
