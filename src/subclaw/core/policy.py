"""Shell policy for sub-agent commands.

Sub-agents run unattended, so by default every command is allowed except
a fixed set of destructive or interactive ones.  Setting
``subclaw_ALLOWED_COMMANDS`` switches to allow-list mode.

Matching is by **base command** (the first non ``VAR=value`` token), not by
substring, so "dd" inside a path never trips the deny list.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import subprocess
import sys
from typing import Iterable, Optional, Set

logger = logging.getLogger("subclaw.policy")

# Matched as substrings in the full command
DEFAULT_DENIED_PATTERNS = {
    "rm -rf /",
    ":(){:|:&};:",  # fork bomb
}

# Matched only against the extracted base command
DEFAULT_DENIED_BASE_COMMANDS = {
    "format",
    "dd",
    "shutdown",
    "reboot",
    "pause",    # waits for keypress (Windows)
    "choice",   # waits for keypress (Windows)
    "read",     # waits for stdin
}

DEFAULT_DENIED_BASE_PREFIXES = {
    "mkfs",
}


@dataclass
class ShellPolicy:
    allowed_commands: Set[str] = field(default_factory=set)
    denied_commands: Set[str] = field(default_factory=set)
    allow_all: bool = True

    @staticmethod
    def base_command(command: str) -> str:
        for part in command.strip().split():
            if "=" in part and not part.startswith("-"):
                continue
            return part.lower()
        return ""

    def is_allowed(self, command: str) -> bool:
        if not command or not command.strip():
            return False
        cmd_lower = command.strip().lower()
        for pattern in DEFAULT_DENIED_PATTERNS:
            if pattern in cmd_lower:
                logger.warning("Policy: command matches denied pattern '%s'", pattern)
                return False
        base = self.base_command(command)
        if base in DEFAULT_DENIED_BASE_COMMANDS or base in self.denied_commands:
            logger.warning("Policy: base command '%s' denied", base)
            return False
        if any(base.startswith(prefix) for prefix in DEFAULT_DENIED_BASE_PREFIXES):
            logger.warning("Policy: base command '%s' matches a denied prefix", base)
            return False
        if self.allowed_commands:
            return base in self.allowed_commands
        return self.allow_all

    def add_allowed(self, commands: Iterable[str]) -> None:
        self.allowed_commands.update(c.lower().strip() for c in commands if c.strip())

    def add_denied(self, commands: Iterable[str]) -> None:
        self.denied_commands.update(c.lower().strip() for c in commands if c.strip())


def load_shell_policy() -> ShellPolicy:
    allow_all = os.getenv("subclaw_ALLOW_ALL_COMMANDS", "true").lower() in {"1", "true", "yes"}
    policy = ShellPolicy(allow_all=allow_all)
    policy.add_allowed(os.getenv("subclaw_ALLOWED_COMMANDS", "").split(","))
    policy.add_denied(os.getenv("subclaw_DENIED_COMMANDS", "").split(","))
    logger.info(
        "Loaded shell policy: allow_all=%s, allowed=%s, denied=%s",
        allow_all, policy.allowed_commands or "(any)", policy.denied_commands or "(defaults)",
    )
    return policy


@dataclass
class ShellResult:
    stdout: str
    stderr: str
    returncode: int
    timed_out: bool = False

    def combined(self) -> str:
        out = self.stdout or ""
        if self.stderr:
            out += f"\nSTDERR: {self.stderr}"
        return out


def run_shell(
    command: str,
    policy: ShellPolicy,
    timeout: float = 60.0,
    cwd: Optional[str] = None,
) -> ShellResult:
    """Run a policy-checked shell command; non-zero exit is reported, not raised."""
    if not policy.is_allowed(command):
        raise PermissionError(f"command not allowed by policy: {ShellPolicy.base_command(command)}")

    logger.info("Executing command (timeout=%ss): %s", timeout, command[:200])
    kwargs: dict = {
        "capture_output": True,
        "text": True,
        "shell": True,
        "timeout": timeout,
        "encoding": "utf-8",
        "errors": "replace",
    }
    if cwd:
        kwargs["cwd"] = cwd
    if sys.platform == "win32":
        kwargs["executable"] = os.environ.get("COMSPEC", "cmd.exe")

    try:
        proc = subprocess.run(command, **kwargs)
    except subprocess.TimeoutExpired as exc:
        logger.warning("Command timed out after %ss: %s", timeout, command[:200])
        partial = exc.stdout if isinstance(exc.stdout, str) else ""
        return ShellResult(
            stdout=partial,
            stderr=f"Command timed out after {timeout:g}s and was killed.",
            returncode=-1,
            timed_out=True,
        )
    if proc.returncode != 0:
        logger.debug("Command exited %d: %s", proc.returncode, (proc.stderr or "")[:300])
    return ShellResult(
        stdout=(proc.stdout or "").strip(),
        stderr=(proc.stderr or "").strip(),
        returncode=proc.returncode,
    )
