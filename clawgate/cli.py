"""CLI interface for clawgate."""

import json
import sys
from typing import Optional

import click
from pydantic import ValidationError

from .config import Settings
from .cron import CrontabError
from .logger import read_executions, read_log, setup_logging
from .models import ExitCode, Job, format_validation_errors
from .schedule_parser import ParseError, schedule_examples
from .scheduler import Scheduler


# Global scheduler instance
_scheduler: Optional[Scheduler] = None


def get_scheduler() -> Scheduler:
    """Get or create the scheduler instance."""
    global _scheduler
    if _scheduler is None:
        try:
            settings = Settings()
        except ValidationError as e:
            click.echo("✗ Invalid configuration:", err=True)
            click.echo(format_validation_errors(e), err=True)
            sys.exit(ExitCode.CONFIG_ERROR)
        _scheduler = Scheduler(settings)
    return _scheduler


def _fail(message: str, code: ExitCode) -> None:
    click.echo(f"✗ {message}", err=True)
    sys.exit(code)


def _echo_examples() -> None:
    click.echo("Examples:")
    for example in schedule_examples():
        click.echo(f"  {example}")


def _require_job(job_id: str) -> Job:
    job = get_scheduler().get(job_id)
    if job is None:
        _fail(f"Job not found: {job_id}", ExitCode.NOT_FOUND)
    return job


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool):
    """ClawGate - scheduled messages for agents"""
    setup_logging(verbose)


@cli.command()
@click.option("--name", "-n", help="Job name")
@click.option("--schedule", "-s", help="Schedule, e.g. '9am every Monday', 'every 15 minutes', '0 9 * * *'")
@click.option("--agent", "-a", help="Target agent ID")
@click.option("--message", "-m", help="Message content")
@click.option("--channel", "-c", help="Channel (telegram, slack, ...)")
@click.option("--to", "-t", help="Recipient, defaults to the session user")
@click.option("--timezone", "-z", help="IANA timezone for the schedule")
@click.option("--type", "target_type", type=click.Choice(["agent", "message"]), default="agent", help="Target type")
@click.option("--reply-account", help="Account replies are sent from")
@click.option("--auto-delete", is_flag=True, help="Delete the job after its first successful run")
@click.option("--disabled", is_flag=True, help="Create the job disabled")
@click.option("--dry-run", is_flag=True, help="Show the job without creating it")
@click.option("--examples", is_flag=True, help="Show schedule examples")
def create(name, schedule, agent, message, channel, to, timezone, target_type,
           reply_account, auto_delete, disabled, dry_run, examples):
    """Create a scheduled job.

    Example:
        clawgate create -n standup -s "9am every weekday" -a main -m "Post the standup"
    """
    if examples:
        _echo_examples()
        click.echo("\nStandard cron expressions like '0 9 * * 1' also work.")
        return

    missing = [opt for opt, value in (("--name", name), ("--schedule", schedule), ("--message", message)) if not value]
    if missing:
        _fail(f"Missing required option(s): {', '.join(missing)}", ExitCode.VALIDATION_ERROR)

    scheduler = get_scheduler()
    try:
        data = scheduler.build_input(
            name=name,
            schedule=schedule,
            message=message,
            agent=agent,
            channel=channel,
            to=to,
            timezone=timezone,
            auto_delete=auto_delete,
            enabled=not disabled,
            target_type=target_type,
            reply_account=reply_account,
        )
    except ParseError as e:
        click.echo(f"✗ Schedule parsing error: {e}", err=True)
        _echo_examples()
        sys.exit(ExitCode.VALIDATION_ERROR)
    except ValidationError as e:
        click.echo("✗ Validation errors:", err=True)
        click.echo(format_validation_errors(e), err=True)
        sys.exit(ExitCode.VALIDATION_ERROR)
    except ValueError as e:
        _fail(str(e), ExitCode.VALIDATION_ERROR)

    if dry_run:
        click.echo("Dry run - would create job:")
        click.echo(data.model_dump_json(indent=2))
        if data.max_runs:
            click.echo(f"\nNote: this job will auto-delete after {data.max_runs} runs")
        return

    try:
        job = scheduler.create(data)
    except CrontabError as e:
        _fail(f"Failed to update crontab: {e}", ExitCode.FAILURE)

    click.echo(f"✓ Created job {job.id} ({job.name})")
    click.echo(f"  Schedule: {job.description} ({job.schedule.cron_expression})")
    if job.execution.max_runs:
        click.echo(f"  Will run {job.execution.max_runs} time(s), then auto-delete")
    elif job.execution.auto_delete:
        click.echo("  One-time job")
    click.echo(f"  Target: {job.target.type} {job.target.agent_id or ''}")
    if job.target.to:
        click.echo(f"  To: {job.target.to}")


@cli.command(name="list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--agent", help="Only jobs for this agent")
@click.option("--enabled", is_flag=True, help="Only enabled jobs")
def list_jobs(as_json: bool, agent: Optional[str], enabled: bool):
    """List scheduled jobs.

    Example:
        clawgate list --agent main
    """
    jobs = get_scheduler().list(agent=agent, enabled_only=enabled)

    if as_json:
        click.echo(json.dumps([job.model_dump(mode="json", by_alias=True) for job in jobs], indent=2))
        return

    if not jobs:
        click.echo("No jobs found")
        return

    click.echo(f"\n{'ID':<36} {'Name':<20} {'Schedule':<15} {'Enabled':<7}")
    click.echo("-" * 80)
    for job in jobs:
        cron = job.schedule.cron_expression if job.schedule else "N/A"
        enabled_mark = "✓" if job.execution.enabled else "✗"
        click.echo(f"{job.id:<36} {(job.name or '')[:20]:<20} {cron or 'N/A':<15} {enabled_mark:<7}")
    click.echo(f"\nTotal: {len(jobs)} jobs")


@cli.command()
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def show(job_id: str, as_json: bool):
    """Show job details."""
    job = _require_job(job_id)

    if as_json:
        click.echo(job.to_json())
        return

    click.echo(f"Job: {job.name} ({job.id})")
    click.echo(f"Description: {job.description or 'N/A'}")
    click.echo(f"Enabled: {'Yes' if job.execution.enabled else 'No'}")
    click.echo(f"Auto-delete: {'Yes' if job.execution.auto_delete else 'No'}")
    if job.execution.max_runs:
        remaining = job.execution.max_runs - job.state.run_count
        click.echo(f"Max runs: {job.state.run_count}/{job.execution.max_runs} ({remaining} remaining)")
    click.echo(f"Schedule: {job.schedule.cron_expression}")
    click.echo(f"Timezone: {job.schedule.timezone}")
    click.echo(f"Next run: {job.schedule.next_run or 'N/A'}")
    click.echo(f"Target: {job.target.type} {job.target.agent_id or ''}")
    click.echo(f"Channel: {job.target.channel or 'N/A'}")
    click.echo(f"To: {job.target.to or '(default)'}")
    click.echo(f"Payload: {job.payload.type}")
    click.echo(f"Last run: {job.state.last_run or 'Never'}")
    click.echo(f"Last result: {job.state.last_result or 'N/A'}")
    if job.state.last_error:
        click.echo(f"Last error: {job.state.last_error}")
    click.echo(f"Run count: {job.state.run_count}")
    click.echo(f"Fail count: {job.state.fail_count}")


@cli.command()
@click.argument("job_id")
@click.option("--dry-run", is_flag=True, help="Show the delivery command without running it")
@click.option("--force", is_flag=True, help="Run even if the job is disabled")
@click.option("--var", "variables", multiple=True, help="Template variable as name=value")
@click.option("--verbose", is_flag=True, help="Print full output")
def execute(job_id: str, dry_run: bool, force: bool, variables, verbose: bool):
    """Execute a job now.

    This is what the crontab entries call.
    """
    extra = {}
    for item in variables:
        key, sep, value = item.partition("=")
        if not sep or not key:
            _fail(f"Invalid --var {item!r}, expected name=value", ExitCode.VALIDATION_ERROR)
        extra[key] = value

    try:
        outcome = get_scheduler().run(job_id, dry_run=dry_run, force=force, variables=extra)
    except ValidationError as e:
        click.echo(f"✗ Job {job_id} has an invalid record; the run result was not saved:", err=True)
        click.echo(format_validation_errors(e), err=True)
        sys.exit(ExitCode.VALIDATION_ERROR)
    except CrontabError as e:
        _fail(f"Failed to update crontab: {e}", ExitCode.FAILURE)

    if outcome.exit_code == ExitCode.NOT_FOUND:
        _fail(f"Job not found: {job_id}", ExitCode.NOT_FOUND)

    result = outcome.result
    if result.success:
        click.echo("✓ Execution succeeded")
        if result.output:
            click.echo(f"Output: {result.output if verbose else result.output[:500]}")
        if outcome.deleted:
            click.echo(f"✓ Job {job_id} removed after its final run")
        sys.exit(ExitCode.SUCCESS)

    click.echo("✗ Execution failed", err=True)
    if result.error:
        click.echo(f"Error: {result.error}", err=True)
    if outcome.deleted:
        click.echo(f"Job {job_id} removed after its final run", err=True)
    sys.exit(outcome.exit_code)


@cli.command()
@click.argument("job_id")
@click.option("--message", help="New message content")
@click.option("--schedule", help="New schedule expression")
@click.option("--enabled", type=click.BOOL, help="true or false")
@click.option("--agent", help="New target agent")
def edit(job_id: str, message, schedule, enabled, agent):
    """Edit a job.

    Example:
        clawgate edit <id> --enabled false
    """
    _require_job(job_id)
    try:
        updated = get_scheduler().edit(job_id, message=message, schedule=schedule, enabled=enabled, agent=agent)
    except ParseError as e:
        click.echo(f"✗ Schedule parsing error: {e}", err=True)
        _echo_examples()
        sys.exit(ExitCode.VALIDATION_ERROR)
    except ValidationError as e:
        click.echo("✗ Validation errors:", err=True)
        click.echo(format_validation_errors(e), err=True)
        sys.exit(ExitCode.VALIDATION_ERROR)
    except ValueError as e:
        _fail(str(e), ExitCode.VALIDATION_ERROR)
    except CrontabError as e:
        _fail(f"Failed to update crontab: {e}", ExitCode.FAILURE)

    if updated is None:
        _fail(f"Job not found: {job_id}", ExitCode.NOT_FOUND)
    click.echo(f"✓ Updated job {job_id}")


@cli.command()
@click.argument("job_id")
@click.option("--force", is_flag=True, help="Confirm deletion")
def delete(job_id: str, force: bool):
    """Delete a job and its crontab entry."""
    job = _require_job(job_id)
    if not force:
        click.echo(f'Are you sure you want to delete "{job.name}" ({job_id})?')
        click.echo("Use --force to confirm")
        sys.exit(ExitCode.FAILURE)

    try:
        get_scheduler().delete(job_id)
    except CrontabError as e:
        _fail(f"Failed to update crontab: {e}", ExitCode.FAILURE)
    click.echo(f"✓ Deleted job {job_id}")


@cli.command()
@click.option("--show", "action", flag_value="show", help="Show managed crontab entries")
@click.option("--install", "action", flag_value="install", help="Rebuild entries from all jobs")
@click.option("--uninstall", "action", flag_value="uninstall", help="Remove all managed entries")
@click.pass_context
def cron(ctx, action: Optional[str]):
    """Manage the system crontab."""
    scheduler = get_scheduler()
    try:
        if action == "show":
            entries = scheduler.crontab.list()
            click.echo("ClawGate crontab entries:")
            for entry in entries:
                tz = f" ({entry.timezone})" if entry.timezone else ""
                click.echo(f"  {entry.cron_expression} - {entry.job_id}{tz}")
            if not entries:
                click.echo("  (none)")
        elif action == "install":
            count = scheduler.install()
            click.echo(f"✓ Installed {count} jobs to crontab")
        elif action == "uninstall":
            scheduler.uninstall()
            click.echo("✓ Removed all ClawGate entries from crontab")
        else:
            click.echo(ctx.get_help())
    except CrontabError as e:
        _fail(f"Cron command failed: {e}", ExitCode.FAILURE)


@cli.command()
@click.argument("job_id")
@click.option("--last", is_flag=True, help="Show only the last execution")
def logs(job_id: str, last: bool):
    """Show a job's execution logs."""
    logs_dir = get_scheduler().settings.logs_dir
    if last:
        records = read_executions(logs_dir, job_id)
        if not records:
            _fail(f"No executions recorded for {job_id}", ExitCode.NOT_FOUND)
        click.echo(records[-1].model_dump_json(by_alias=True, indent=2))
        return

    text = read_log(logs_dir, job_id)
    if text is None:
        _fail(f"No logs for {job_id}", ExitCode.NOT_FOUND)
    click.echo(text, nl=False)


if __name__ == "__main__":
    cli()
