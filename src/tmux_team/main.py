"""CLI entrypoint for tmux-team."""

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from tmux_team import __version__
from tmux_team.team.controllers import (
    TeamAssignCommand,
    TeamCliController,
    TeamResumeCommand,
    TeamRunCommand,
    TeamShutdownCommand,
    TeamStatusCommand,
)
from tmux_team.team.errors import SpawnError
from tmux_team.team.tmux import TmuxError

click.rich_click.USE_MARKDOWN = True
TEAM_CONTROLLER = TeamCliController()

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

T = TypeVar("T")

_STATE_DIR_OPTION = click.option(
    "--state-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Team state directory (relative paths resolve against the team cwd).",
)
_CWD_OPTION = click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path(),
    show_default=True,
    help="Working directory the team was started in.",
)


@click.group()
@click.version_option(version=__version__, prog_name="tmux-team")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Log level for messages written to stderr.",
)
def tmux_team(log_level: str) -> None:
    """Run teams of CLI coding agents in tmux panes.

    Tasks are claimed from JSON files, one worker pane per task; a watchdog
    recycles panes that finish, die or stop sending heartbeats.
    """

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


@tmux_team.command("run")
@_STATE_DIR_OPTION
def team_run(state_dir: Path | None) -> None:
    """Start a team from a JSON job on stdin and supervise it to completion.

    Input: `{"teamName", "agentTypes", "tasks": [{"subject", "description"}], "cwd"}`
    with optional `workerCount` and `pollIntervalMs`. Prints the result JSON and
    exits non-zero unless every task completed.
    """

    payload = click.get_text_stream("stdin").read()
    result = _call(lambda: TEAM_CONTROLLER.run(TeamRunCommand(payload=payload, state_dir=state_dir)))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(f"Team run {result.payload['status']}.")


@tmux_team.command("resume")
@click.argument("team_name")
@_CWD_OPTION
@_STATE_DIR_OPTION
def team_resume(team_name: str, cwd: Path, state_dir: Path | None) -> None:
    """Re-attach to a running team's session and supervise it to completion."""

    result = _call(
        lambda: TEAM_CONTROLLER.resume(
            TeamResumeCommand(team_name=team_name, cwd=cwd, state_dir=state_dir),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(f"Team run {result.payload['status']}.")


@tmux_team.command("status")
@click.argument("team_name")
@_CWD_OPTION
@_STATE_DIR_OPTION
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def team_status(team_name: str, cwd: Path, state_dir: Path | None, output_format: str) -> None:
    """Show task counts, phase and worker liveness."""

    _emit_lines(
        _call(
            lambda: TEAM_CONTROLLER.status(
                TeamStatusCommand(
                    team_name=team_name,
                    cwd=cwd,
                    state_dir=state_dir,
                    output_format=output_format.lower(),
                ),
            ),
        ),
    )


@tmux_team.command("shutdown")
@click.argument("team_name")
@_CWD_OPTION
@_STATE_DIR_OPTION
@click.option(
    "--keep-state/--remove-state",
    default=False,
    show_default=True,
    help="Keep task files after the session is killed.",
)
def team_shutdown(team_name: str, cwd: Path, state_dir: Path | None, keep_state: bool) -> None:
    """Kill the team's panes and session."""

    _emit_lines(
        _call(
            lambda: TEAM_CONTROLLER.shutdown(
                TeamShutdownCommand(
                    team_name=team_name,
                    cwd=cwd,
                    state_dir=state_dir,
                    keep_state=keep_state,
                ),
            ),
        ),
    )


@tmux_team.command("assign")
@click.argument("team_name")
@click.argument("task_id")
@click.argument("worker")
@_CWD_OPTION
@_STATE_DIR_OPTION
def team_assign(  # noqa: PLR0913
    team_name: str,
    task_id: str,
    worker: str,
    cwd: Path,
    state_dir: Path | None,
) -> None:
    """Hand pending task TASK_ID to WORKER (for example `worker-2`)."""

    _emit_lines(
        _call(
            lambda: TEAM_CONTROLLER.assign(
                TeamAssignCommand(
                    team_name=team_name,
                    cwd=cwd,
                    task_id=task_id,
                    worker=worker,
                    state_dir=state_dir,
                ),
            ),
        ),
    )


@tmux_team.command("agents")
def team_agents() -> None:
    """List supported agent CLIs and whether they are installed."""

    _emit_lines(TEAM_CONTROLLER.agents())


def _call(action: Callable[[], T]) -> T:
    try:
        return action()
    except SpawnError as error:
        raise click.ClickException(f"Spawn failed: {error.reason}") from error
    except TmuxError as error:
        raise click.ClickException(f"tmux failed: {error}") from error
    except (LookupError, TypeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    tmux_team()
