"""Instruction text handed to workers: inbox messages and the protocol overlay."""

from __future__ import annotations

import os
import re
from collections.abc import Sequence
from pathlib import Path

from tmux_team.team.models import TaskRecord
from tmux_team.team.paths import TeamPaths

MAX_PROMPT_CHARS = 4_000
_RESERVED_TAGS = re.compile(
    r"<(/?)(TASK_SUBJECT|TASK_DESCRIPTION|INBOX_MESSAGE|INSTRUCTIONS|SYSTEM)[^>]*>",
    re.IGNORECASE,
)


def sanitize_prompt_content(content: str | None, max_chars: int = MAX_PROMPT_CHARS) -> str:
    """Cap length and neutralise tags that could be mistaken for prompt structure."""

    if not content:
        return ""
    sanitized = content[:max_chars]
    return _RESERVED_TAGS.sub(lambda match: f"[{match.group(1)}{match.group(2)}]", sanitized)


def display_path(path: Path, cwd: Path) -> str:
    """Path as a worker running in ``cwd`` should type it."""

    try:
        return os.path.relpath(path, cwd)
    except ValueError:
        return str(path)


def done_signal_command(paths: TeamPaths, worker: str, task_id: str, cwd: Path) -> str:
    done_path = display_path(paths.done_path(worker), cwd)
    done_dir = display_path(paths.worker_dir(worker), cwd)
    return (
        f"mkdir -p {done_dir} && echo '{{\"taskId\":\"{task_id}\",\"status\":\"completed\","
        f"\"summary\":\"done\",\"completedAt\":\"'$(date -u +%Y-%m-%dT%H:%M:%SZ)'\"}}' "
        f"> {done_path}"
    )


def build_initial_task_instruction(
    *,
    team_name: str,
    worker: str,
    task: TaskRecord,
    paths: TeamPaths,
    cwd: Path,
) -> str:
    ready_path = display_path(paths.ready_path(worker), cwd)
    lines = [
        "## Initial Task Assignment",
        f"Task ID: {task.id}",
        f"Worker: {worker}",
        f"Team: {team_name}",
        f"Subject: {sanitize_prompt_content(task.subject)}",
        "",
        "## FIRST ACTION REQUIRED",
        "Before doing anything else, write your ready sentinel file:",
        "```bash",
        f"mkdir -p $(dirname {ready_path}) && touch {ready_path}",
        "```",
        "",
        sanitize_prompt_content(task.description),
        "",
        "When complete, write done signal using a bash command (do NOT use a file-write tool):",
        "```bash",
        done_signal_command(paths, worker, task.id, cwd),
        "```",
        'For failures, set status to "failed" and include the error in summary.',
        "",
        "IMPORTANT: Execute ONLY the task assigned to you in this inbox. After writing "
        "done.json, exit immediately. Do not read from the task directory or claim other tasks.",
    ]
    return "\n".join(lines)


def build_assignment_message(
    *,
    worker: str,
    task: TaskRecord,
    paths: TeamPaths,
    cwd: Path,
) -> str:
    lines = [
        "",
        "## New Task Assignment",
        f"Task ID: {task.id}",
        f"Subject: {sanitize_prompt_content(task.subject)}",
        "",
        sanitize_prompt_content(task.description),
        "",
        "When complete, write done signal:",
        "```bash",
        done_signal_command(paths, worker, task.id, cwd),
        "```",
        "",
    ]
    return "\n".join(lines)


def generate_worker_overlay(  # noqa: PLR0913
    *,
    team_name: str,
    worker: str,
    agent_type: str,
    tasks: Sequence[TaskRecord],
    paths: TeamPaths,
    cwd: Path,
    extra_instructions: str | None = None,
) -> str:
    """Markdown protocol document placed next to each worker's inbox."""

    def rel(path: Path) -> str:
        return display_path(path, cwd)

    task_list = (
        "\n".join(f"- **Task {task.id}**: {sanitize_prompt_content(task.subject)}" for task in tasks)
        or "- No tasks assigned yet. Check your inbox for assignments."
    )
    sections = [
        "# Team Worker Protocol",
        "",
        "## FIRST ACTION REQUIRED",
        "Before doing anything else, write your ready sentinel file:",
        "```bash",
        f"mkdir -p $(dirname {rel(paths.ready_path(worker))}) && touch {rel(paths.ready_path(worker))}",
        "```",
        "",
        "## Identity",
        f"- **Team**: {team_name}",
        f"- **Worker**: {worker}",
        f"- **Agent Type**: {agent_type}",
        f"- **Environment**: TMUX_TEAM_WORKER={team_name}/{worker}",
        "",
        "## Your Tasks",
        task_list,
        "",
        "## Communication Protocol",
        f"- **Inbox**: Read {rel(paths.inbox_path(worker))} for new instructions",
        f"- **Heartbeat**: Update {rel(paths.heartbeat_path(worker))} every few minutes:",
        "  ```json",
        f'  {{"workerName":"{worker}","status":"working","updatedAt":"<ISO timestamp>",'
        '"currentTaskId":"<id or null>"}',
        "  ```",
        "",
        "## Task Completion Protocol",
        "When you finish a task (success or failure), write a done signal using a bash command "
        "(do NOT use a file-write tool):",
        "```bash",
        done_signal_command(paths, worker, "<id>", cwd),
        "```",
        '- For failures, replace "completed" with "failed" and "done" with "failed".',
        '- Use "completed" or "failed" only for status.',
        "",
        "## Shutdown Protocol",
        f"When you see a shutdown request (check {rel(paths.shutdown_path)}):",
        "1. Finish your current task if close to completion",
        f"2. Write an ACK file: {rel(paths.shutdown_ack_path(worker))}",
        "3. Exit",
        "",
    ]
    if extra_instructions:
        sections.extend(
            ["## Additional Instructions", sanitize_prompt_content(extra_instructions), ""],
        )
    return "\n".join(sections)


def write_worker_overlay(paths: TeamPaths, worker: str, overlay: str) -> Path:
    path = paths.overlay_path(worker)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(overlay, "utf-8")
    return path


def write_inbox(paths: TeamPaths, worker: str, content: str) -> Path:
    path = paths.inbox_path(worker)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, "utf-8")
    return path


def append_inbox(paths: TeamPaths, worker: str, content: str) -> Path:
    path = paths.inbox_path(worker)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(content)
    return path
