"""In-process bookkeeping for one running team."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from tmux_team.config import Settings
from tmux_team.team.interop import InteropAdapter
from tmux_team.team.layout import LayoutStabilizer
from tmux_team.team.models import ActiveWorker, TeamConfig, utc_now
from tmux_team.team.paths import TeamPaths
from tmux_team.team.session import PaneSupervisor, TeamSession
from tmux_team.team.store import TeamStore

if TYPE_CHECKING:
    from tmux_team.team.watchdog import Watchdog


@dataclass(slots=True)
class TeamRuntime:
    """Everything the orchestrating process knows about its team.

    ``worker_pane_ids`` is in creation order. ``active_workers`` maps a worker name to
    the pane it exclusively owns; an entry is removed only after its pane was killed.
    """

    config: TeamConfig
    cwd: Path
    paths: TeamPaths
    store: TeamStore
    supervisor: PaneSupervisor
    session: TeamSession
    layout: LayoutStabilizer
    settings: Settings
    worker_pane_ids: list[str] = field(default_factory=list)
    active_workers: dict[str, ActiveWorker] = field(default_factory=dict)
    binary_paths: dict[str, str] = field(default_factory=dict)
    interop: InteropAdapter | None = None
    watchdog: Watchdog | None = None
    stop_watchdog: Callable[[], None] | None = None
    started_at: datetime = field(default_factory=utc_now)

    @property
    def team_name(self) -> str:
        return self.config.name
