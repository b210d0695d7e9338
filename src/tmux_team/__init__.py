"""Tmux worker-pane orchestrator for CLI coding agents."""

__version__ = "0.1.0"
