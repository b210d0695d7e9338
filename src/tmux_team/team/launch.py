"""Shell command construction for launching a worker inside a pane."""

from __future__ import annotations

import os
import re
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
DEFAULT_SHELL = "/bin/sh"


@dataclass(slots=True)
class WorkerLaunch:
    """What to run in a worker pane: a binary with args, or an opaque shell command."""

    env: dict[str, str] = field(default_factory=dict)
    binary: str | None = None
    args: list[str] = field(default_factory=list)
    command: str | None = None


def login_shell(environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    return env.get("SHELL") or DEFAULT_SHELL


def rc_file_for(shell: str, home: str) -> str:
    """``~/.bashrc`` for bash, ``~/.zshrc`` for zsh and so on."""

    return f"{home}/.{Path(shell).name}rc"


def build_worker_start_command(
    launch: WorkerLaunch,
    *,
    shell: str | None = None,
    source_rc: bool = True,
    home: str | None = None,
) -> str:
    """Build one ``env ... <shell> -lc 'exec ...'`` line to type into a pane.

    The target is ``exec``-ed so the pane process tree has no extra shell once running.
    """

    if launch.binary is None and not launch.command:
        raise ValueError("WorkerLaunch needs either a binary or a command")
    for key in launch.env:
        if not ENV_KEY_PATTERN.fullmatch(key):
            raise ValueError(f"Invalid environment variable name: {key!r}")

    shell = shell or login_shell()
    home = home if home is not None else os.path.expanduser("~")
    rc_prefix = ""
    if source_rc and home:
        rc_path = shlex.quote(rc_file_for(shell, home))
        rc_prefix = f"[ -f {rc_path} ] && . {rc_path}; "

    env_words = [f"{key}={shlex.quote(value)}" for key, value in launch.env.items()]
    if launch.binary is not None:
        script = f'{rc_prefix}exec "$@"'
        words = [
            "env",
            *env_words,
            shlex.quote(shell),
            "-lc",
            shlex.quote(script),
            "--",
            shlex.quote(launch.binary),
            *(shlex.quote(arg) for arg in launch.args),
        ]
    else:
        script = f"{rc_prefix}exec {launch.command}"
        words = ["env", *env_words, shlex.quote(shell), "-c", shlex.quote(script)]
    return " ".join(words)
