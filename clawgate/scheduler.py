"""Job lifecycle: create, run, record results, auto-delete and crontab sync."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, NamedTuple, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import Settings
from .cron import CrontabSynchronizer, next_run, validate_cron_expression
from .executor import ExecuteResult, Executor
from .lock import LockManager
from .logger import JobLogger
from .models import CreateJobInput, ExitCode, Job, JobPayload, JobTarget, utcnow
from .schedule_parser import ParseResult, compile_schedule
from .storage import FileJobStore, JobStore

logger = logging.getLogger(__name__)


class RunOutcome(NamedTuple):
    exit_code: ExitCode
    result: Optional[ExecuteResult] = None
    job: Optional[Job] = None
    deleted: bool = False


class Scheduler:
    """Coordinates the job store, locks, executor and crontab."""

    def __init__(
        self,
        settings: Settings,
        store: Optional[JobStore] = None,
        locks: Optional[LockManager] = None,
        crontab: Optional[CrontabSynchronizer] = None,
        executor: Optional[Executor] = None,
    ):
        self.settings = settings
        settings.ensure_dirs()
        self.store = store or FileJobStore(settings.jobs_dir)
        self.locks = locks or LockManager(settings.locks_dir)
        self.crontab = crontab or CrontabSynchronizer(settings.cli_command, settings.crontab_file)
        self.executor = executor or Executor(settings, self.locks)

    def compile(self, expression: str, timezone: Optional[str] = None) -> ParseResult:
        """Compile a schedule with relative forms anchored in ``timezone``."""
        name = timezone or self.settings.timezone
        try:
            zone = ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {name}")
        return compile_schedule(expression, now=datetime.now(zone))

    def build_input(
        self,
        name: str,
        schedule: str,
        message: str,
        agent: Optional[str] = None,
        channel: Optional[str] = None,
        to: Optional[str] = None,
        timezone: Optional[str] = None,
        auto_delete: bool = False,
        enabled: bool = True,
        target_type: str = "agent",
        reply_account: Optional[str] = None,
    ) -> CreateJobInput:
        """Compile the schedule and validate the fields of a new job.

        Raises ParseError for the schedule and ValidationError for the rest.
        """
        timezone = timezone or self.settings.timezone
        parsed = self.compile(schedule, timezone)
        if not validate_cron_expression(parsed.cron_expression):
            raise ValueError(f"Invalid cron expression: {parsed.cron_expression}")
        return CreateJobInput(
            name=name,
            description=parsed.description,
            schedule=parsed.cron_expression,
            timezone=timezone,
            target=JobTarget(
                type=target_type,
                agent_id=agent,
                channel=channel or self.settings.default_channel,
                to=to,
                reply_account=reply_account,
            ),
            payload=JobPayload(type="text", content=message),
            enabled=enabled,
            auto_delete=auto_delete or parsed.is_one_time,
            max_runs=parsed.max_runs,
        )

    def create(self, data: CreateJobInput) -> Job:
        """Persist a new job and add its crontab entry."""
        if not validate_cron_expression(data.schedule):
            raise ValueError(f"Invalid cron expression: {data.schedule}")
        job = self.store.create(
            data,
            timezone=self.settings.timezone,
            timeout_ms=self.settings.timeout_ms,
            max_retries=self.settings.max_retries,
            retry_delay_ms=self.settings.retry_delay_ms,
        )
        job = self._refresh_next_run(job)
        self.crontab.add(job.id, job.schedule.cron_expression, job.schedule.timezone)
        logger.info("Created job %s (%s)", job.id, job.name)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self.store.get(job_id)

    def list(self, agent: Optional[str] = None, enabled_only: bool = False) -> List[Job]:
        """Jobs sorted by name, optionally filtered."""
        jobs = self.store.list()
        if agent:
            jobs = [j for j in jobs if j.target.agent_id == agent]
        if enabled_only:
            jobs = [j for j in jobs if j.execution.enabled]
        return jobs

    def edit(
        self,
        job_id: str,
        message: Optional[str] = None,
        schedule: Optional[str] = None,
        enabled: Optional[bool] = None,
        agent: Optional[str] = None,
    ) -> Optional[Job]:
        """Change a job's content, schedule, agent or enabled flag."""
        job = self.store.get(job_id)
        if job is None:
            return None

        changes: Dict[str, Any] = {}
        if message is not None:
            changes["payload"] = {"type": "text", "content": message}
        if enabled is not None:
            changes["execution"] = {"enabled": enabled}
        if agent is not None:
            changes["target"] = {"agent_id": agent}

        parsed = None
        if schedule is not None:
            parsed = self.compile(schedule, job.schedule.timezone)
            if not validate_cron_expression(parsed.cron_expression):
                raise ValueError(f"Invalid cron expression: {parsed.cron_expression}")
            changes["schedule"] = {"cron_expression": parsed.cron_expression}
            changes["description"] = parsed.description
            if parsed.max_runs:
                changes.setdefault("execution", {})["max_runs"] = parsed.max_runs
            if parsed.is_one_time:
                changes.setdefault("execution", {})["auto_delete"] = True

        updated = self.store.update(job_id, changes)
        if updated is not None and parsed is not None:
            updated = self._refresh_next_run(updated)
            self.crontab.add(job_id, updated.schedule.cron_expression, updated.schedule.timezone)
        return updated

    def delete(self, job_id: str) -> bool:
        """Remove a job's crontab entry, then the job itself."""
        if not self.store.exists(job_id):
            return False
        self.crontab.remove(job_id)
        return self.store.delete(job_id)

    def run(
        self,
        job_id: str,
        dry_run: bool = False,
        force: bool = False,
        variables: Optional[Mapping[str, str]] = None,
    ) -> RunOutcome:
        """Execute a job once and apply the result to its state."""
        job = self.store.get(job_id)
        if job is None:
            # Drop any trigger line still pointing at the missing job
            self.crontab.remove(job_id)
            return RunOutcome(ExitCode.NOT_FOUND)

        with JobLogger(self.settings.logs_dir, job_id) as log:
            result = self.executor.execute(
                job, log,
                dry_run=dry_run or self.settings.dry_run,
                force=force,
                variables=variables,
            )
            if not result.attempted:
                return RunOutcome(result.exit_code, result, job)

            updated = self.record_result(job_id, result)
            deleted = False
            if updated is not None and self.should_delete(updated, result):
                self.remove_job(updated, log)
                deleted = True
        return RunOutcome(result.exit_code, result, updated, deleted)

    def record_result(self, job_id: str, result: ExecuteResult) -> Optional[Job]:
        """Count a finished attempt against the job's state."""
        current = self.store.get(job_id)
        if current is None:
            logger.warning("Job %s disappeared before its result could be recorded", job_id)
            return None
        state = current.state
        updated = self.store.update_state(job_id, {
            "last_run": utcnow(),
            "last_result": "success" if result.success else "failure",
            "last_error": None if result.success else result.error,
            "run_count": state.run_count + 1,
            "fail_count": state.fail_count + (0 if result.success else 1),
        })
        return self._refresh_next_run(updated) if updated else None

    @staticmethod
    def should_delete(job: Job, result: ExecuteResult) -> bool:
        """Whether a job is finished after this result.

        A run limit counts every attempt, failed or not. Without a limit,
        auto-delete jobs go away after their first success.
        """
        if job.execution.max_runs:
            return job.state.run_count >= job.execution.max_runs
        return job.execution.auto_delete and result.success

    def remove_job(self, job: Job, log: Optional[JobLogger] = None) -> None:
        """Drop the crontab entry before the record so no entry outlives its job."""
        self.crontab.remove(job.id)
        self.store.delete(job.id)
        if job.execution.max_runs:
            message = f"Job {job.id} deleted after {job.state.run_count}/{job.execution.max_runs} runs"
        else:
            message = f"Job {job.id} auto-deleted after successful execution"
        if log:
            log.info(message)
        else:
            logger.info(message)

    def install(self) -> int:
        """Rebuild the managed crontab region from every stored job."""
        jobs = self.store.list()
        entries = []
        for job in jobs:
            try:
                entries.append(self.crontab.make_entry(
                    job.id, job.schedule.cron_expression, job.schedule.timezone
                ))
            except (ValueError, AttributeError, TypeError) as e:
                logger.warning("Skipping job %s: %s", job.id, e)
        self.crontab.sync(entries)
        return len(entries)

    def uninstall(self) -> None:
        self.crontab.uninstall()

    def _refresh_next_run(self, job: Job) -> Job:
        upcoming = next_run(job.schedule.cron_expression, job.schedule.timezone)
        if upcoming is None:
            return job
        return self.store.update(job.id, {"schedule": {"next_run": upcoming}}) or job
