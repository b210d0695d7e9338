"""Cross-process exclusive lock files with stale-lock reclaim."""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from pathlib import Path

from tmux_team.team.models import to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_STALE_LOCK_MS = 30_000


@dataclass(slots=True)
class LockHandle:
    """Open lock file owned by the current process."""

    fd: int
    path: Path


def is_pid_alive(pid: int) -> bool:
    """Probe a process with signal 0; permission denied still means it exists."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except ProcessLookupError:
        return False
    except OSError:
        return False
    return True


def is_lock_stale(path: Path, *, stale_after_ms: int = DEFAULT_STALE_LOCK_MS) -> bool:
    """Lock is stale when it is old enough and its holder is gone or unknown."""

    try:
        mtime = path.stat().st_mtime
    except FileNotFoundError:
        return True
    age_ms = (time.time() - mtime) * 1000
    if age_ms < stale_after_ms:
        return False
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, ValueError):
        return True
    pid = payload.get("pid") if isinstance(payload, dict) else None
    if not isinstance(pid, int):
        return True
    return not is_pid_alive(pid)


def acquire_lock(
    path: Path,
    *,
    holder: str,
    stale_after_ms: int = DEFAULT_STALE_LOCK_MS,
) -> LockHandle | None:
    """Create the lock file exclusively; ``None`` means someone else holds it."""

    path.parent.mkdir(parents=True, exist_ok=True)
    for attempt in range(2):
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            if attempt == 0 and is_lock_stale(path, stale_after_ms=stale_after_ms):
                logger.warning("Breaking stale lock %s", path)
                with suppress(FileNotFoundError):
                    path.unlink()
                continue
            return None
        payload = {"pid": os.getpid(), "workerName": holder, "timestamp": to_iso(utc_now())}
        try:
            os.write(fd, json.dumps(payload).encode("utf-8"))
        except OSError:
            os.close(fd)
            with suppress(OSError):
                path.unlink()
            raise
        return LockHandle(fd=fd, path=path)
    return None


def release_lock(handle: LockHandle) -> None:
    with suppress(OSError):
        os.close(handle.fd)
    with suppress(OSError):
        handle.path.unlink()


@contextmanager
def held_lock(
    path: Path,
    *,
    holder: str,
    stale_after_ms: int = DEFAULT_STALE_LOCK_MS,
) -> Iterator[LockHandle | None]:
    """Yield the lock handle (or ``None`` when busy) and always release it."""

    handle = acquire_lock(path, holder=holder, stale_after_ms=stale_after_ms)
    try:
        yield handle
    finally:
        if handle is not None:
            release_lock(handle)
