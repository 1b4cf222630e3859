"""Background shell commands a sub-agent can start and poll.

``start`` returns a short job id immediately; the command runs on a daemon
thread.  Identical running commands are deduplicated, an identical command
finished within the cooldown returns the earlier job, and at most
``max_concurrent`` jobs run at once.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import threading
import time
from typing import Callable, Dict, Optional
import uuid

from subclaw.core.policy import ShellPolicy, ShellResult, run_shell

logger = logging.getLogger("subclaw.background")

CHECK_OUTPUT_CHARS = 5000
_RETENTION_SECONDS = 3600.0
_SECRET_PATTERNS = (
    (re.compile(r"(API_KEY|TOKEN|SECRET|PASSWORD|KEY)=\S+", re.IGNORECASE), r"\1=***"),
    (re.compile(r"(Bearer\s+)\S+", re.IGNORECASE), r"\1***"),
)
_NUMBER = re.compile(r"[\d.]+")


def sanitize_command(command: str) -> str:
    """Mask credentials before a command reaches a log line."""
    for pattern, repl in _SECRET_PATTERNS:
        command = pattern.sub(repl, command)
    return command


def _first_number(text: str) -> Optional[float]:
    for match in _NUMBER.finditer(text):
        try:
            return float(match.group(0))
        except ValueError:
            continue
    return None


def _as_float(raw: str) -> Optional[float]:
    try:
        return float(raw.strip())
    except ValueError:
        return None


def evaluate_condition(output: str, condition: str) -> bool:
    """Evaluate a trigger condition against command output.

    Supported: ``contains:x``, ``!contains:x``, ``==v``, ``!=v``, ``>=n``,
    ``<=n``, ``>n``, ``<n``.  Numeric comparisons use the first number in the
    output.  Anything else is true when the output differs from it.
    """
    cond = condition.strip()
    out = output.strip()

    if cond.startswith("!contains:"):
        return cond[len("!contains:"):].strip() not in out
    if cond.startswith("contains:"):
        return cond[len("contains:"):].strip() in out

    number = _first_number(out)
    for op in ("!=", "=="):
        if cond.startswith(op):
            value = cond[2:].strip()
            wanted = _as_float(value)
            if wanted is not None and number is not None:
                return (number != wanted) if op == "!=" else (number == wanted)
            return (out != value) if op == "!=" else (out == value)
    for op, width in ((">=", 2), ("<=", 2), (">", 1), ("<", 1)):
        if cond.startswith(op):
            wanted = _as_float(cond[width:])
            if wanted is None or number is None:
                return False
            if op == ">=":
                return number >= wanted
            if op == "<=":
                return number <= wanted
            if op == ">":
                return number > wanted
            return number < wanted
    return out != cond


@dataclass
class BackgroundJob:
    job_id: str
    command: str
    condition: Optional[str] = None
    timeout: float = 120.0
    status: str = "running"
    output: str = ""
    error: Optional[str] = None
    started_at: float = 0.0
    completed_at: Optional[float] = None

    def condition_met(self) -> Optional[bool]:
        if not self.condition or self.status == "running":
            return None
        return evaluate_condition(self.output or self.error or "", self.condition)


class BackgroundJobManager:
    def __init__(
        self,
        policy: Optional[ShellPolicy] = None,
        timeout: float = 120.0,
        max_concurrent: int = 3,
        cooldown: float = 60.0,
        runner: Optional[Callable[[str, float], ShellResult]] = None,
    ) -> None:
        self.policy = policy or ShellPolicy()
        self.timeout = timeout
        self.max_concurrent = max_concurrent
        self.cooldown = cooldown
        self._runner = runner or (lambda cmd, t: run_shell(cmd, self.policy, timeout=t))
        self._jobs: Dict[str, BackgroundJob] = {}
        self._lock = threading.RLock()

    def start(self, command: str, condition: Optional[str] = None) -> Optional[str]:
        """Start ``command`` in the background; ``None`` when at capacity."""
        now = time.time()
        with self._lock:
            self._prune(now)
            running = [j for j in self._jobs.values() if j.status == "running"]
            for job in running:
                if job.command == command:
                    logger.info("Skipped duplicate background job (already running as %s)", job.job_id)
                    return job.job_id
            for job in self._jobs.values():
                if job.command == command and job.completed_at and now - job.completed_at < self.cooldown:
                    logger.info("Skipped background job (cooldown, was %s)", job.job_id)
                    return job.job_id
            if len(running) >= self.max_concurrent:
                logger.info("Skipped background job (max %d concurrent)", self.max_concurrent)
                return None
            job = BackgroundJob(
                job_id=uuid.uuid4().hex[:8],
                command=command,
                condition=condition,
                timeout=self.timeout,
                started_at=now,
            )
            self._jobs[job.job_id] = job

        logger.info("Background job [%s]: %s (timeout %ss)", job.job_id, sanitize_command(command)[:60], job.timeout)
        threading.Thread(
            target=self._run, args=(job,), daemon=True, name=f"bg-{job.job_id}"
        ).start()
        return job.job_id

    def _run(self, job: BackgroundJob) -> None:
        try:
            result = self._runner(job.command, job.timeout)
        except Exception as exc:  # noqa: BLE001
            with self._lock:
                job.status = "failed"
                job.error = str(exc)
                job.completed_at = time.time()
            return
        with self._lock:
            job.output = result.combined().strip()
            if result.timed_out:
                job.status = "timeout"
                job.error = f"Command timed out after {job.timeout:g}s"
            elif result.returncode != 0:
                job.status = "failed"
                job.error = result.stderr or f"exit code {result.returncode}"
            else:
                job.status = "completed"
            job.completed_at = time.time()
        logger.info("Background job [%s] %s", job.job_id, job.status)

    def _prune(self, now: float) -> None:
        stale = [
            jid for jid, j in self._jobs.items()
            if j.completed_at and now - j.completed_at > _RETENTION_SECONDS
        ]
        for jid in stale:
            del self._jobs[jid]

    def get(self, job_id: str) -> Optional[BackgroundJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def describe(self, job_id: str) -> str:
        job = self.get(job_id)
        if job is None:
            return f"Task '{job_id}' not found"
        if job.status == "running":
            return f"Status: running ({time.time() - job.started_at:.0f}s elapsed)"
        output = (job.output or job.error or "(empty)")[:CHECK_OUTPUT_CHARS]
        text = f"Status: {job.status}\nOutput:\n{output}"
        met = job.condition_met()
        if met is not None:
            text += f"\nCondition '{job.condition}': {'met' if met else 'not met'}"
        return text
