"""Runtime configuration for the tmux worker team."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

INTEROP_MODES = ("off", "observe", "active")


@dataclass(slots=True)
class WatchdogSettings:
    """Tick loop, stall detection and circuit breaker settings."""

    interval_ms: int = 1_000
    stall_threshold_ms: int = 60_000
    unresponsive_kill_threshold: int = 3
    max_consecutive_failures: int = 3


@dataclass(slots=True)
class PaneSettings:
    """Pane readiness and message delivery settings."""

    shell_ready_timeout_ms: int = 10_000
    pane_ready_timeout_ms: int = 8_000
    auto_interrupt_retry: bool = True
    skip_shell_rc: bool = False
    layout_debounce_ms: int = 150


@dataclass(slots=True)
class Settings:
    """Application settings grouped by runtime concern."""

    state_dir: Path = Path(".tmux-team/state/team")
    stale_lock_ms: int = 30_000
    shutdown_timeout_ms: int = 30_000
    poll_interval_ms: int = 5_000
    interop_mode: str = "off"
    interop_state_dir: Path | None = None
    watchdog: WatchdogSettings = field(default_factory=WatchdogSettings)
    pane: PaneSettings = field(default_factory=PaneSettings)

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local runs."""

        return cls(
            state_dir=state_dir
            or Path(os.getenv("TMUX_TEAM_STATE_DIR", ".tmux-team/state/team")),
            stale_lock_ms=int(os.getenv("TMUX_TEAM_STALE_LOCK_MS", "30000")),
            shutdown_timeout_ms=int(os.getenv("TMUX_TEAM_SHUTDOWN_TIMEOUT_MS", "30000")),
            poll_interval_ms=int(os.getenv("TMUX_TEAM_POLL_INTERVAL_MS", "5000")),
            interop_mode=os.getenv("TMUX_TEAM_INTEROP_MODE", "off").strip().lower(),
            interop_state_dir=_env_path("TMUX_TEAM_INTEROP_STATE_DIR"),
            watchdog=WatchdogSettings(
                interval_ms=int(os.getenv("TMUX_TEAM_WATCHDOG_INTERVAL_MS", "1000")),
                stall_threshold_ms=int(os.getenv("TMUX_TEAM_STALL_THRESHOLD_MS", "60000")),
                unresponsive_kill_threshold=int(
                    os.getenv("TMUX_TEAM_UNRESPONSIVE_KILL_THRESHOLD", "3"),
                ),
                max_consecutive_failures=int(
                    os.getenv("TMUX_TEAM_MAX_CONSECUTIVE_FAILURES", "3"),
                ),
            ),
            pane=PaneSettings(
                shell_ready_timeout_ms=int(
                    os.getenv("TMUX_TEAM_SHELL_READY_TIMEOUT_MS", "10000"),
                ),
                pane_ready_timeout_ms=int(
                    os.getenv("TMUX_TEAM_PANE_READY_TIMEOUT_MS", "8000"),
                ),
                auto_interrupt_retry=os.getenv("TMUX_TEAM_AUTO_INTERRUPT_RETRY", "1").strip()
                != "0",
                skip_shell_rc=_env_bool("TMUX_TEAM_NO_RC", default=False),
                layout_debounce_ms=int(os.getenv("TMUX_TEAM_LAYOUT_DEBOUNCE_MS", "150")),
            ),
        )

    def validate(self) -> None:
        """Validate numeric thresholds and enumerated options."""

        positive_fields = {
            "TMUX_TEAM_WATCHDOG_INTERVAL_MS": self.watchdog.interval_ms,
            "TMUX_TEAM_STALL_THRESHOLD_MS": self.watchdog.stall_threshold_ms,
            "TMUX_TEAM_UNRESPONSIVE_KILL_THRESHOLD": self.watchdog.unresponsive_kill_threshold,
            "TMUX_TEAM_MAX_CONSECUTIVE_FAILURES": self.watchdog.max_consecutive_failures,
            "TMUX_TEAM_STALE_LOCK_MS": self.stale_lock_ms,
            "TMUX_TEAM_POLL_INTERVAL_MS": self.poll_interval_ms,
            "TMUX_TEAM_SHELL_READY_TIMEOUT_MS": self.pane.shell_ready_timeout_ms,
            "TMUX_TEAM_PANE_READY_TIMEOUT_MS": self.pane.pane_ready_timeout_ms,
        }
        for name, value in positive_fields.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")
        if self.pane.layout_debounce_ms < 0:
            raise ValueError("TMUX_TEAM_LAYOUT_DEBOUNCE_MS must be >= 0")
        if self.shutdown_timeout_ms < 0:
            raise ValueError("TMUX_TEAM_SHUTDOWN_TIMEOUT_MS must be >= 0")
        if self.interop_mode not in INTEROP_MODES:
            raise ValueError(
                f"TMUX_TEAM_INTEROP_MODE must be one of {', '.join(INTEROP_MODES)}, "
                f"got {self.interop_mode!r}",
            )
        if self.interop_mode != "off" and self.interop_state_dir is None:
            raise ValueError("TMUX_TEAM_INTEROP_STATE_DIR is required when interop is enabled")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None
