"""Worker-pane orchestrator for CLI coding agents running in tmux.

How the pieces fit
~~~~~~~~~~~~~~~~~~
Tasks live as plain JSON files under ``<state_dir>/<team>/tasks``. Every change to
a task file happens under an exclusive ``<id>.lock`` created with ``O_EXCL``, so a
resumed orchestrator or a direct ``assign`` call from another process cannot both
claim the same task. A lock whose holder PID is gone and which is older than the
stale threshold is broken once and retried.

Workers are agent CLIs (codex, claude, gemini) started in tmux panes split off the
leader pane. They report back through files only: ``done.json`` when finished and
``heartbeat.json`` while working. The watchdog polls those files plus pane liveness
once per interval and turns every worker-side problem into a terminal task status:
done signals finish the task, dead panes and long-stalled heartbeats fail it, and
the freed slot picks up the next pending task.

Why not a message broker?
~~~~~~~~~~~~~~~~~~~~~~~~~
The agents already speak "read a file, write a file". A broker would add a daemon
to a single-machine tool and still need the same pane supervision and readiness
heuristics on top.
"""
