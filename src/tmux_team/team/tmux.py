"""Async wrapper around the ``tmux`` executable."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class TmuxError(RuntimeError):
    """Failed tmux invocation with its arguments and stderr."""

    def __init__(self, message: str, *, command: tuple[str, ...] = (), stderr: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class TmuxRunner(Protocol):
    """Anything that can run one tmux subcommand and return its stdout."""

    async def run(self, *args: str) -> str:
        """Run ``tmux <args>`` and return stdout; raise :class:`TmuxError` on failure."""


class TmuxClient:
    """Invoke tmux as a subprocess without blocking the event loop."""

    def __init__(self, binary: str = "tmux") -> None:
        self.binary = binary

    async def run(self, *args: str) -> str:
        command = (self.binary, *args)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as error:
            raise TmuxError(f"Unable to start {self.binary}: {error}", command=command) from error
        stdout, stderr = await process.communicate()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise TmuxError(
                f"tmux {' '.join(args[:1])} exited with {process.returncode}: {stderr_text}",
                command=command,
                stderr=stderr_text,
            )
        return stdout.decode("utf-8", errors="replace")
