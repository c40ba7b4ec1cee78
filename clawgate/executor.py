"""Executes a single job attempt: lock, resolve payload, deliver, classify."""

import subprocess
import time
import uuid
from pathlib import Path
from typing import Dict, List, Mapping, NamedTuple, Optional

from .config import Settings, resolve_reply_account
from .lock import LockManager
from .logger import JobLogger
from .models import ExecutionLog, ExitCode, Job, utcnow
from .templates import PayloadError, resolve_payload

JOB_MARKER = "🤖 CLAWGATE SCHEDULED JOB ———————————————"


class CommandResult(NamedTuple):
    exit_code: Optional[int]
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    grace_used: bool = False
    spawn_error: Optional[str] = None


class ExecuteResult(NamedTuple):
    success: bool
    exit_code: ExitCode
    output: str = ""
    error: Optional[str] = None
    duration_ms: int = 0
    command: Optional[List[str]] = None
    attempted: bool = False


def run_command(
    args: List[str],
    timeout: float,
    grace: float,
    kill_delay: float = 5.0,
    log: Optional[JobLogger] = None,
) -> CommandResult:
    """Run ``args`` with a two-stage timeout.

    Passing ``timeout`` only logs that the process is now in its grace
    period. After ``timeout + grace`` the process gets SIGTERM, and SIGKILL
    ``kill_delay`` seconds later if it is still alive.
    """
    start = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - start) * 1000)

    try:
        proc = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as e:
        return CommandResult(None, "", "", elapsed_ms(), spawn_error=str(e))

    grace_used = False
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        grace_used = True
        if log:
            log.warning("Execution time exceeded %.0fs, entering grace period for handoff...", timeout)
        try:
            stdout, stderr = proc.communicate(timeout=grace)
        except subprocess.TimeoutExpired:
            if log:
                log.error("Total timeout exceeded (%.0fs), terminating process %s", timeout + grace, proc.pid)
            proc.terminate()
            try:
                stdout, stderr = proc.communicate(timeout=kill_delay)
            except subprocess.TimeoutExpired:
                if log:
                    log.error("Process %s ignored SIGTERM, killing", proc.pid)
                proc.kill()
                stdout, stderr = proc.communicate()
            return CommandResult(proc.returncode, stdout or "", stderr or "", elapsed_ms(),
                                 timed_out=True, grace_used=True)

    return CommandResult(proc.returncode, stdout or "", stderr or "", elapsed_ms(), grace_used=grace_used)


class Executor:
    """Runs jobs through the external delivery command."""

    def __init__(self, settings: Settings, locks: LockManager):
        self.settings = settings
        self.locks = locks
        self.templates_dir = Path(settings.templates_dir)
        self.openclaw_bin = settings.openclaw_bin
        self.agents: Dict[str, str] = dict(settings.agents)

    def build_command(self, job: Job, payload: str) -> List[str]:
        """Argument vector for delivering ``payload`` to the job's target."""
        target = job.target
        parts = [self.openclaw_bin, "agent"]
        if target.agent_id:
            parts += ["--agent", target.agent_id]
        parts += ["--message", f"{JOB_MARKER}\n\n{payload}"]
        if target.channel:
            parts += ["--channel", target.channel]
        if target.to:
            parts += ["--to", target.to]
        reply_account = target.reply_account or resolve_reply_account(self.agents, target.agent_id)
        if reply_account:
            parts += ["--reply-account", reply_account]
        parts.append("--deliver")
        return parts

    def execute(
        self,
        job: Job,
        log: JobLogger,
        dry_run: bool = False,
        force: bool = False,
        variables: Optional[Mapping[str, str]] = None,
    ) -> ExecuteResult:
        """Run one attempt of ``job``.

        ``attempted`` on the result is True only when the delivery command
        was actually started; only those attempts count as runs.
        """
        log.info("Starting execution of job %s (%s)", job.id, job.name)

        if not job.execution.enabled and not force:
            log.info("Job %s is disabled, skipping", job.id)
            return ExecuteResult(False, ExitCode.DISABLED, error="Job is disabled")

        if dry_run:
            return self._dry_run(job, log, variables)

        if not self.locks.lock(job.id):
            info = self.locks.get_lock_info(job.id)
            pid = info.pid if info else "unknown"
            log.error("Job %s is already running (PID: %s)", job.id, pid)
            return ExecuteResult(False, ExitCode.ALREADY_RUNNING, error=f"Job already running (PID: {pid})")

        started_at = utcnow()
        try:
            try:
                payload = resolve_payload(job.payload, self.templates_dir, variables)
            except (PayloadError, OSError) as e:
                log.error("Failed to resolve payload: %s", e)
                return ExecuteResult(False, ExitCode.VALIDATION_ERROR, error=f"Payload resolution failed: {e}")

            command = self.build_command(job, payload)
            log.info("Command: %s", " ".join(command))

            timeout = job.execution.timeout_ms or self.settings.timeout_ms
            log.info(
                "Execution timeout: %sms, total timeout (with grace): %sms",
                timeout, timeout + self.settings.handoff_grace_ms,
            )
            try:
                outcome = run_command(
                    command,
                    timeout / 1000.0,
                    self.settings.handoff_grace_ms / 1000.0,
                    self.settings.kill_delay_ms / 1000.0,
                    log,
                )
            except Exception as e:
                log.error("Execution error: %s", e)
                result = ExecuteResult(False, ExitCode.EXECUTION_FAILED, error=str(e), command=command, attempted=True)
            else:
                result = self._classify(outcome, command)
                if result.success and outcome.grace_used:
                    log.info("Execution succeeded during grace period (total: %sms)", outcome.duration_ms)
        finally:
            self.locks.unlock(job.id)

        if result.success:
            status = "success"
        elif result.exit_code == ExitCode.TIMEOUT:
            status = "timeout"
        else:
            status = "failure"
        log.execution(ExecutionLog(
            id=str(uuid.uuid4()),
            job_id=job.id,
            scheduled_at=started_at,
            started_at=started_at,
            completed_at=utcnow(),
            duration_ms=result.duration_ms,
            status=status,
            error=result.error,
            output=result.output,
            command=" ".join(command),
        ))
        log.info("Execution %s in %sms", "succeeded" if result.success else "failed", result.duration_ms)
        return result

    def _classify(self, outcome: CommandResult, command: List[str]) -> ExecuteResult:
        if outcome.spawn_error is not None:
            return ExecuteResult(False, ExitCode.CONNECTION_FAILED, error=outcome.spawn_error,
                                 duration_ms=outcome.duration_ms, command=command, attempted=True)
        if outcome.timed_out:
            error = outcome.stderr or f"Timed out and was terminated (exit {outcome.exit_code})"
            return ExecuteResult(False, ExitCode.TIMEOUT, output=outcome.stdout, error=error,
                                 duration_ms=outcome.duration_ms, command=command, attempted=True)
        if outcome.exit_code == 0:
            return ExecuteResult(True, ExitCode.SUCCESS, output=outcome.stdout, error=outcome.stderr or None,
                                 duration_ms=outcome.duration_ms, command=command, attempted=True)
        error = outcome.stderr or f"Exit code: {outcome.exit_code}"
        return ExecuteResult(False, ExitCode.EXECUTION_FAILED, output=outcome.stdout, error=error,
                             duration_ms=outcome.duration_ms, command=command, attempted=True)

    def _dry_run(self, job: Job, log: JobLogger, variables: Optional[Mapping[str, str]]) -> ExecuteResult:
        try:
            payload = resolve_payload(job.payload, self.templates_dir, variables)
        except (PayloadError, OSError) as e:
            log.error("Failed to resolve payload: %s", e)
            return ExecuteResult(False, ExitCode.VALIDATION_ERROR, error=f"Payload resolution failed: {e}")
        command = self.build_command(job, payload)
        log.info("Dry run - not executing: %s", " ".join(command))
        return ExecuteResult(True, ExitCode.SUCCESS, output=f"Would execute: {' '.join(command)}", command=command)
