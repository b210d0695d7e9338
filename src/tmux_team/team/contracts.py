"""Agent launch contracts: executable, arguments and prompt-mode conventions."""

from __future__ import annotations

import functools
import logging
import os
import re
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SUPPORTED_AGENTS = ("claude", "codex", "gemini")
_UNSAFE_BINARY_CHARS = re.compile(r"[/\\;|&$`()\"'\s]")
UNTRUSTED_PATH_PREFIXES = ("/tmp/", "/var/tmp/", "/dev/shm/")
TRUSTED_PATH_PREFIXES = (
    "/usr/bin/",
    "/usr/local/bin/",
    "/bin/",
    "/opt/",
    "/opt/homebrew/bin/",
    "/nix/store/",
    "/snap/bin/",
)
VERSION_PROBE_TIMEOUT_SECONDS = 10


class ContractError(ValueError):
    """Unknown agent type or an executable that cannot be used safely."""


@dataclass(frozen=True, slots=True)
class AgentContract:
    """How to launch one kind of agent CLI inside a worker pane."""

    agent_type: str
    binary: str
    install_instructions: str
    base_args: tuple[str, ...] = ()
    model_flag: str = "--model"
    default_model: str | None = None
    supports_prompt_mode: bool = False
    prompt_flag: str | None = None
    acknowledges_shutdown: bool = False

    def build_args(self, model: str | None = None, extra_flags: Sequence[str] = ()) -> list[str]:
        args = list(self.base_args)
        chosen_model = model or self.default_model
        if chosen_model:
            args.extend([self.model_flag, chosen_model])
        args.extend(extra_flags)
        return args

    def prompt_mode_args(self, instruction: str) -> list[str]:
        """Launch-time instruction arguments; empty when prompt mode is unsupported."""

        if not self.supports_prompt_mode:
            return []
        if self.prompt_flag:
            return [self.prompt_flag, instruction]
        return [instruction]


_CONTRACTS: dict[str, AgentContract] = {
    "claude": AgentContract(
        agent_type="claude",
        binary="claude",
        install_instructions="Install Claude Code: npm install -g @anthropic-ai/claude-code",
        base_args=("--dangerously-skip-permissions",),
    ),
    "codex": AgentContract(
        agent_type="codex",
        binary="codex",
        install_instructions="Install Codex CLI: npm install -g @openai/codex",
        base_args=("--dangerously-bypass-approvals-and-sandbox",),
        supports_prompt_mode=True,
    ),
    "gemini": AgentContract(
        agent_type="gemini",
        binary="gemini",
        install_instructions="Install Gemini CLI: npm install -g @google/gemini-cli",
        base_args=("--yolo",),
        default_model="gemini-2.5-pro",
        supports_prompt_mode=True,
        prompt_flag="-p",
    ),
}


def register_contract(contract: AgentContract) -> None:
    """Add or replace the contract for ``contract.agent_type``."""

    _CONTRACTS[contract.agent_type.strip().lower()] = contract


def get_contract(agent_type: str) -> AgentContract:
    contract = _CONTRACTS.get(agent_type.strip().lower())
    if contract is None:
        supported = ", ".join(sorted(_CONTRACTS))
        raise ContractError(f"Unknown agent type {agent_type!r}. Supported: {supported}")
    return contract


def supported_agent_types() -> tuple[str, ...]:
    return tuple(sorted(_CONTRACTS))


@functools.lru_cache(maxsize=None)
def resolve_cli_binary_path(binary: str) -> str:
    """Resolve ``binary`` on PATH to a trusted absolute path."""

    if not binary or _UNSAFE_BINARY_CHARS.search(binary):
        raise ContractError(f"Refusing to resolve unsafe executable name: {binary!r}")
    resolved = shutil.which(binary)
    if resolved is None:
        raise ContractError(f"Executable not found in PATH: {binary}")
    resolved = os.path.realpath(resolved)
    if not os.path.isabs(resolved):
        raise ContractError(f"Resolved path for {binary} is not absolute: {resolved}")
    if resolved.startswith(UNTRUSTED_PATH_PREFIXES):
        raise ContractError(f"Refusing to run {binary} from a world-writable location: {resolved}")
    home = os.path.expanduser("~")
    if not resolved.startswith(TRUSTED_PATH_PREFIXES) and not resolved.startswith(f"{home}/"):
        logger.warning("Executable %s resolved outside trusted prefixes: %s", binary, resolved)
    return resolved


def is_cli_available(agent_type: str) -> bool:
    """Probe ``<binary> --version``."""

    try:
        path = resolve_cli_binary_path(get_contract(agent_type).binary)
        completed = subprocess.run(  # noqa: S603
            [path, "--version"],
            capture_output=True,
            text=True,
            timeout=VERSION_PROBE_TIMEOUT_SECONDS,
            check=False,
        )
    except (ContractError, OSError, subprocess.TimeoutExpired):
        return False
    return completed.returncode == 0


def validate_cli_available(agent_type: str) -> str:
    """Return the resolved executable or raise with install instructions."""

    contract = get_contract(agent_type)
    if not is_cli_available(agent_type):
        raise ContractError(
            f"CLI for agent type {agent_type!r} is not available. "
            f"{contract.install_instructions}",
        )
    return resolve_cli_binary_path(contract.binary)


def worker_env(team_name: str, worker: str, agent_type: str) -> dict[str, str]:
    env = {
        "TMUX_TEAM_WORKER": f"{team_name}/{worker}",
        "TMUX_TEAM_NAME": team_name,
        "TMUX_TEAM_AGENT_TYPE": agent_type,
    }
    path = os.environ.get("PATH")
    if path:
        env["PATH"] = path
    return env
