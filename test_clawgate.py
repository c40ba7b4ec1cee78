"""Test suite for ClawGate - job store, locks, crontab sync, executor and CLI."""

import json
import logging
import os
import stat
import subprocess
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from clawgate import cli as cli_module
from clawgate.cli import cli
from clawgate.config import Settings
from clawgate.cron import (
    FOOTER,
    HEADER,
    CrontabSynchronizer,
    convert_cron_to_utc,
    next_run,
    validate_cron_expression,
)
from clawgate.executor import run_command
from clawgate.lock import LockManager, is_process_running
from clawgate.logger import read_executions
from clawgate.models import CreateJobInput, ExitCode, JobPayload, JobTarget, LockInfo
from clawgate.scheduler import Scheduler
from clawgate.storage import FileJobStore, deep_merge
from clawgate.templates import PayloadError, resolve_payload, substitute_variables

USER_CRONTAB = "MAILTO=ops@example.com\n# nightly backup\n0 3 * * * /usr/local/bin/backup --all\n"


def make_bin(directory: Path, exit_code: int = 0, body: str = 'echo "delivered"') -> Path:
    """Write a fake delivery command that records its arguments."""
    path = directory / f"fake-openclaw-{exit_code}"
    path.write_text(
        "#!/bin/sh\n"
        f'printf "%s\\n" "$@" >> "{directory}/calls.log"\n'
        f"{body}\n"
        f"exit {exit_code}\n",
        encoding="utf-8",
    )
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "state_dir": tmp_path / "state",
        "crontab_file": tmp_path / "crontab",
        "dry_run": False,
    }
    values.update(overrides)
    if "openclaw_bin" not in values:
        values["openclaw_bin"] = str(make_bin(tmp_path))
    return Settings(**values)


def job_input(name="standup", schedule="0 9 * * 1", message="Post the standup", **kwargs) -> CreateJobInput:
    return CreateJobInput(
        name=name,
        schedule=schedule,
        target=JobTarget(agent_id="main", channel="telegram"),
        payload=JobPayload(type="text", content=message),
        **kwargs,
    )


def calls(tmp_path: Path) -> str:
    log = tmp_path / "calls.log"
    return log.read_text(encoding="utf-8") if log.exists() else ""


@pytest.fixture
def store(tmp_path):
    return FileJobStore(tmp_path / "jobs")


@pytest.fixture
def locks(tmp_path):
    return LockManager(tmp_path / "locks")


@pytest.fixture
def scheduler(tmp_path):
    return Scheduler(make_settings(tmp_path))


# ---------------------------------------------------------------------------
# Job store
# ---------------------------------------------------------------------------

class TestJobStore:
    def test_create_and_get(self, store):
        """Test: Create a job and read it back."""
        job = store.create(job_input(), timezone="Europe/Paris")
        loaded = store.get(job.id)
        assert loaded == job
        assert loaded.schedule.timezone == "Europe/Paris"
        assert loaded.state.run_count == 0
        assert loaded.execution.enabled is True

    def test_file_uses_camel_case(self, store, tmp_path):
        """Test: Job files are written with camelCase keys."""
        job = store.create(job_input())
        data = json.loads((tmp_path / "jobs" / f"{job.id}.json").read_text(encoding="utf-8"))
        assert data["id"] == job.id
        assert data["schedule"]["cronExpression"] == "0 9 * * 1"
        assert data["execution"]["timeoutMs"] == 300000
        assert "runCount" in data["state"]
        assert "createdAt" in data

    def test_ids_are_unique(self, store):
        ids = {store.create(job_input()).id for _ in range(5)}
        assert len(ids) == 5

    def test_get_missing(self, store):
        assert store.get("does-not-exist") is None
        assert store.exists("does-not-exist") is False

    def test_update_never_changes_id(self, store):
        """Test: update merges fields but keeps the id and creation time."""
        job = store.create(job_input())
        updated = store.update(job.id, {"id": "hijacked", "name": "renamed", "execution": {"enabled": False}})
        assert updated.id == job.id
        assert updated.name == "renamed"
        assert updated.execution.enabled is False
        assert updated.execution.timeout_ms == job.execution.timeout_ms
        assert updated.created_at == job.created_at
        assert updated.updated_at >= job.updated_at
        assert store.get("hijacked") is None

    def test_update_state(self, store):
        job = store.create(job_input())
        updated = store.update_state(job.id, {"run_count": 2, "last_result": "success"})
        assert updated.state.run_count == 2
        assert updated.state.last_result == "success"
        assert store.get(job.id).state.run_count == 2

    def test_update_missing(self, store):
        assert store.update("nope", {"name": "x"}) is None

    def test_list_sorted_by_name(self, store):
        """Test: list returns jobs ordered by name, ignoring case."""
        for name in ("bravo", "Alpha", "charlie"):
            store.create(job_input(name=name))
        assert [j.name for j in store.list()] == ["Alpha", "bravo", "charlie"]

    def test_delete(self, store):
        job = store.create(job_input())
        assert store.delete(job.id) is True
        assert store.get(job.id) is None
        assert store.delete(job.id) is False

    def test_corrupt_file_is_skipped(self, store, tmp_path):
        """Test: Unparseable job files read as missing."""
        good = store.create(job_input())
        (tmp_path / "jobs" / "broken.json").write_text("{not json", encoding="utf-8")
        assert store.get("broken") is None
        assert [j.id for j in store.list()] == [good.id]

    def test_invalid_record_is_returned_with_warning(self, store, tmp_path, caplog):
        """Test: A record that fails validation still loads, with a warning."""
        job = store.create(job_input())
        path = tmp_path / "jobs" / f"{job.id}.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        data["execution"]["timeoutMs"] = 5
        path.write_text(json.dumps(data), encoding="utf-8")

        with caplog.at_level(logging.WARNING, logger="clawgate.storage"):
            loaded = store.get(job.id)

        assert loaded is not None
        assert loaded.id == job.id
        assert loaded.name == "standup"
        assert loaded.execution.timeout_ms == 5
        assert loaded.schedule.cron_expression == "0 9 * * 1"
        assert any(job.id in record.getMessage() for record in caplog.records)

    def test_deep_merge(self):
        base = {"a": 1, "nested": {"x": 1, "y": 2}}
        merged = deep_merge(base, {"nested": {"y": 3}, "b": 2})
        assert merged == {"a": 1, "b": 2, "nested": {"x": 1, "y": 3}}
        assert base["nested"]["y"] == 2


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------

def dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


class TestLocks:
    def test_lock_is_exclusive(self, locks):
        """Test: A held lock cannot be acquired again until released."""
        assert locks.lock("job1") is True
        assert locks.is_locked("job1") is True
        assert locks.lock("job1") is False
        locks.unlock("job1")
        assert locks.is_locked("job1") is False
        assert locks.lock("job1") is True

    def test_lock_info(self, locks):
        locks.lock("job1")
        info = locks.get_lock_info("job1")
        assert info.pid == os.getpid()
        assert info.started_at.tzinfo is not None

    def test_unlock_is_idempotent(self, locks):
        locks.unlock("never-locked")
        locks.lock("job1")
        locks.unlock("job1")
        locks.unlock("job1")
        assert locks.get_lock_info("job1") is None

    def test_stale_lock_is_purged(self, locks, tmp_path):
        """Test: A marker left by a dead process is removed and the lock granted."""
        marker = tmp_path / "locks" / "job1.lock"
        marker.write_text(LockInfo(pid=dead_pid()).model_dump_json(by_alias=True), encoding="utf-8")

        assert locks.is_locked("job1") is False
        assert not marker.exists()
        assert locks.lock("job1") is True

    def test_unreadable_lock_is_purged(self, locks, tmp_path):
        marker = tmp_path / "locks" / "job1.lock"
        marker.write_text("garbage", encoding="utf-8")
        assert locks.lock("job1") is True
        assert locks.get_lock_info("job1").pid == os.getpid()

    def test_no_temp_files_left(self, locks, tmp_path):
        locks.lock("job1")
        locks.lock("job1")
        assert sorted(p.name for p in (tmp_path / "locks").iterdir()) == ["job1.guard", "job1.lock"]

    def test_stale_purge_has_single_winner(self, locks, tmp_path, monkeypatch):
        """Test: Two processes racing to replace a stale lock cannot both acquire it."""
        stale = dead_pid()
        marker = tmp_path / "locks" / "job1.lock"
        marker.write_text(LockInfo(pid=stale).model_dump_json(by_alias=True), encoding="utf-8")
        other = LockManager(tmp_path / "locks")
        results = {}
        racer = []

        def running(pid):
            # While the first caller is looking at the stale marker, start a rival lock()
            if pid == stale and not racer:
                thread = threading.Thread(target=lambda: results.update(other=other.lock("job1")))
                racer.append(thread)
                thread.start()
                thread.join(0.5)
            return pid > 0 and pid != stale

        monkeypatch.setattr("clawgate.lock.is_process_running", running)
        results["first"] = locks.lock("job1")
        racer[0].join(5)

        assert results == {"first": True, "other": False}
        assert locks.get_lock_info("job1").pid == os.getpid()

    def test_is_process_running(self):
        assert is_process_running(os.getpid()) is True
        assert is_process_running(dead_pid()) is False
        assert is_process_running(0) is False


# ---------------------------------------------------------------------------
# Payload templates
# ---------------------------------------------------------------------------

class TestTemplates:
    def test_unknown_placeholders_kept(self):
        assert substitute_variables("Hi {{name}}, {{missing}}", {"name": "Ada"}) == "Hi Ada, {{missing}}"

    def test_builtin_date(self, tmp_path):
        payload = JobPayload(type="text", content="Report for {{date}}")
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        assert resolve_payload(payload, tmp_path) == f"Report for {today}"

    def test_variable_priority(self, tmp_path):
        """Test: Caller variables win over payload variables, which win over built-ins."""
        payload = JobPayload(type="text", content="{{who}} {{date}}", variables={"who": "payload", "date": "d"})
        assert resolve_payload(payload, tmp_path) == "payload d"
        assert resolve_payload(payload, tmp_path, {"who": "caller"}) == "caller d"

    def test_template_payload(self, tmp_path):
        (tmp_path / "standup.txt").write_text("Standup for {{team}}", encoding="utf-8")
        payload = JobPayload(type="template", template="standup", variables={"team": "core"})
        assert resolve_payload(payload, tmp_path) == "Standup for core"

    def test_file_payload_relative_to_templates(self, tmp_path):
        (tmp_path / "note.md").write_text("from file", encoding="utf-8")
        payload = JobPayload(type="file", file_path="note.md")
        assert resolve_payload(payload, tmp_path) == "from file"

    def test_missing_file(self, tmp_path):
        payload = JobPayload(type="file", file_path=str(tmp_path / "missing.txt"))
        with pytest.raises(PayloadError):
            resolve_payload(payload, tmp_path)

    def test_payload_requires_reference(self):
        with pytest.raises(ValueError):
            JobPayload(type="template")


# ---------------------------------------------------------------------------
# Crontab
# ---------------------------------------------------------------------------

class TestCron:
    def test_validate(self):
        assert validate_cron_expression("*/15 * * * *") is True
        assert validate_cron_expression("0 9 * * 1-5") is True
        assert validate_cron_expression("61 9 * * *") is False
        assert validate_cron_expression("0 9 * *") is False
        assert validate_cron_expression("0 9 * * * *") is False

    def test_next_run(self):
        now = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)
        upcoming = next_run("0 9 * * 1", "UTC", now)
        assert upcoming.isoformat() == "2026-10-26T09:00:00+00:00"

    @pytest.mark.parametrize("expression, zone, expected", [
        ("0 9 * * 1", "America/New_York", "0 14 * * 1"),
        ("0 8 * * 1", "Asia/Tokyo", "0 23 * * 0"),
        ("0 9 * * *", "Asia/Kolkata", "30 3 * * *"),
        ("0 9 * * 1", "UTC", "0 9 * * 1"),
        ("*/15 * * * *", "Asia/Tokyo", "*/15 * * * *"),
    ])
    def test_convert_to_utc(self, expression, zone, expected):
        """Test: Simple schedules are shifted by the zone's current offset."""
        january = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
        assert convert_cron_to_utc(expression, zone, january) == expected

    @pytest.mark.parametrize("expression, zone, expected", [
        ("30 1 30 10 *", "Europe/Vilnius", "30 22 29 10 *"),
        ("0 2 31 12 *", "Asia/Tokyo", "0 17 30 12 *"),
        ("0 22 10 2 *", "America/New_York", "0 2 11 2 *"),
        ("0 1 1 1 *", "Asia/Tokyo", "0 1 1 1 *"),
        ("0 22 28 2 *", "America/New_York", "0 22 28 2 *"),
    ])
    def test_convert_to_utc_crossing_midnight(self, expression, zone, expected):
        """Test: Day-of-month moves back from any day but the 1st, and forward only up to the 28th."""
        october = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        assert convert_cron_to_utc(expression, zone, october) == expected

    def test_add_preserves_user_lines(self, tmp_path):
        """Test: Lines outside the managed region survive add, remove and uninstall."""
        table = tmp_path / "crontab"
        table.write_text(USER_CRONTAB, encoding="utf-8")
        sync = CrontabSynchronizer("clawgate", table)

        sync.add("job-1", "0 9 * * 1", "UTC")
        sync.add("job-2", "*/5 * * * *", "UTC")
        content = table.read_text(encoding="utf-8")
        assert content.startswith(USER_CRONTAB)
        assert HEADER in content and FOOTER in content
        assert "0 9 * * 1 clawgate execute job-1 # tz:UTC" in content
        assert [e.job_id for e in sync.list()] == ["job-1", "job-2"]

        sync.remove("job-1")
        assert [e.job_id for e in sync.list()] == ["job-2"]
        assert table.read_text(encoding="utf-8").startswith(USER_CRONTAB)

        sync.uninstall()
        assert table.read_text(encoding="utf-8") == USER_CRONTAB

    def test_add_replaces_existing_entry(self, tmp_path):
        sync = CrontabSynchronizer("clawgate", tmp_path / "crontab")
        sync.add("job-1", "0 9 * * 1", "UTC")
        sync.add("job-1", "0 10 * * 1", "UTC")
        entries = sync.list()
        assert len(entries) == 1
        assert entries[0].cron_expression == "0 10 * * 1"

    def test_remove_last_entry_drops_region(self, tmp_path):
        table = tmp_path / "crontab"
        sync = CrontabSynchronizer("clawgate", table)
        sync.add("job-1", "0 9 * * 1")
        sync.remove("job-1")
        assert HEADER not in table.read_text(encoding="utf-8")

    def test_remove_missing_does_not_write(self, tmp_path):
        table = tmp_path / "crontab"
        table.write_text(USER_CRONTAB, encoding="utf-8")
        before = table.stat().st_mtime_ns
        CrontabSynchronizer("clawgate", table).remove("ghost")
        assert table.stat().st_mtime_ns == before

    def test_missing_trailing_newline_is_added(self, tmp_path):
        """Test: A table without a final newline gains exactly one, which uninstall keeps."""
        table = tmp_path / "crontab"
        table.write_text("0 3 * * * /bin/true", encoding="utf-8")
        sync = CrontabSynchronizer("clawgate", table)
        sync.add("job-1", "0 9 * * 1")
        assert table.read_text(encoding="utf-8").startswith("0 3 * * * /bin/true\n" + HEADER)

        sync.uninstall()
        assert table.read_text(encoding="utf-8") == "0 3 * * * /bin/true\n"

    @pytest.mark.parametrize("job_id", ["bad id", "x; rm -rf /", "a/b"])
    def test_rejects_unsafe_ids(self, tmp_path, job_id):
        with pytest.raises(ValueError):
            CrontabSynchronizer("clawgate", tmp_path / "crontab").make_entry(job_id, "0 9 * * 1")

    def test_rejects_invalid_cron(self, tmp_path):
        with pytest.raises(ValueError):
            CrontabSynchronizer("clawgate", tmp_path / "crontab").make_entry("job-1", "99 9 * * 1")


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------

class TestRunCommand:
    def test_success(self):
        result = run_command([sys.executable, "-c", "print('ok')"], timeout=10, grace=1)
        assert result.exit_code == 0
        assert result.stdout.strip() == "ok"
        assert result.timed_out is False
        assert result.grace_used is False

    def test_finishes_within_grace(self):
        """Test: A command that overruns the timeout but finishes in the grace period succeeds."""
        result = run_command(
            [sys.executable, "-c", "import time; time.sleep(0.5)"],
            timeout=0.1, grace=10,
        )
        assert result.exit_code == 0
        assert result.grace_used is True
        assert result.timed_out is False

    def test_killed_after_grace(self):
        """Test: A command still running after timeout plus grace is terminated."""
        result = run_command(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            timeout=0.1, grace=0.2, kill_delay=1,
        )
        assert result.timed_out is True
        assert result.exit_code != 0
        assert result.duration_ms < 10000

    def test_undecodable_output_still_succeeds(self):
        """Test: Output that is not valid UTF-8 does not turn a zero exit into a failure."""
        script = "import sys; sys.stdout.buffer.write(b'ok \\xff'); sys.exit(0)"
        result = run_command([sys.executable, "-c", script], timeout=10, grace=1)
        assert result.exit_code == 0
        assert result.stdout == "ok \ufffd"

    def test_spawn_error(self, tmp_path):
        result = run_command([str(tmp_path / "missing-binary")], timeout=1, grace=1)
        assert result.spawn_error is not None
        assert result.exit_code is None


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class TestScheduler:
    def test_create_installs_trigger(self, scheduler, tmp_path):
        """Test: Creating a job stores it and adds a crontab line without the message."""
        data = scheduler.build_input(name="standup", schedule="every monday at 9am",
                                     message="SECRET-CONTENT; rm -rf ~", agent="main")
        job = scheduler.create(data)

        assert scheduler.get(job.id) is not None
        assert job.schedule.cron_expression == "0 9 * * 1"
        assert job.schedule.next_run is not None
        assert job.target.channel == "telegram"
        table = (tmp_path / "crontab").read_text(encoding="utf-8")
        assert f"execute {job.id}" in table
        assert "SECRET" not in table

    def test_build_input_one_time(self, scheduler):
        data = scheduler.build_input(name="ping", schedule="in 10 minutes", message="hi")
        assert data.auto_delete is True
        assert data.max_runs is None

    def test_build_input_count(self, scheduler):
        data = scheduler.build_input(name="ping", schedule="every tuesday at 9am 4x", message="hi")
        assert data.schedule == "0 9 * * 2"
        assert data.max_runs == 4

    def test_build_input_unknown_timezone(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.build_input(name="ping", schedule="daily", message="hi", timezone="Mars/Base")

    def test_successful_run(self, scheduler, tmp_path):
        """Test: A successful run counts once and is logged."""
        job = scheduler.create(job_input(message="Hello {{who}}"))
        outcome = scheduler.run(job.id, variables={"who": "team"})

        assert outcome.exit_code == ExitCode.SUCCESS
        assert outcome.deleted is False
        stored = scheduler.get(job.id)
        assert stored.state.run_count == 1
        assert stored.state.fail_count == 0
        assert stored.state.last_result == "success"
        assert stored.state.last_run is not None

        recorded = calls(tmp_path)
        assert "Hello team" in recorded
        assert "--deliver" in recorded
        assert "--reply-account\ndefault" in recorded
        assert scheduler.locks.is_locked(job.id) is False

        history = read_executions(scheduler.settings.logs_dir, job.id)
        assert len(history) == 1
        assert history[0].status == "success"

    def test_failed_run(self, tmp_path):
        """Test: A non-zero exit counts as a run and a failure."""
        scheduler = Scheduler(make_settings(tmp_path, openclaw_bin=str(make_bin(tmp_path, exit_code=3))))
        job = scheduler.create(job_input())
        outcome = scheduler.run(job.id)

        assert outcome.exit_code == ExitCode.EXECUTION_FAILED
        stored = scheduler.get(job.id)
        assert stored.state.run_count == 1
        assert stored.state.fail_count == 1
        assert stored.state.last_result == "failure"
        assert stored.state.last_error
        assert read_executions(scheduler.settings.logs_dir, job.id)[0].status == "failure"

    def test_mixed_results_are_counted(self, tmp_path):
        """Test: After N runs, runCount is N and failCount is the number of failures."""
        ok, bad = str(make_bin(tmp_path, exit_code=0)), str(make_bin(tmp_path, exit_code=1))
        scheduler = Scheduler(make_settings(tmp_path, openclaw_bin=ok))
        job = scheduler.create(job_input())

        for binary in (ok, bad, ok, bad, bad):
            scheduler.executor.openclaw_bin = binary
            scheduler.run(job.id)

        stored = scheduler.get(job.id)
        assert stored.state.run_count == 5
        assert stored.state.fail_count == 3
        assert stored.state.last_result == "failure"

    def test_one_time_job_with_binary_output_is_deleted(self, tmp_path):
        noisy = make_bin(tmp_path, body="printf 'sent \\377\\n'")
        scheduler = Scheduler(make_settings(tmp_path, openclaw_bin=str(noisy)))
        job = scheduler.create(job_input(auto_delete=True))
        outcome = scheduler.run(job.id)
        assert outcome.exit_code == ExitCode.SUCCESS
        assert outcome.deleted is True

    def test_missing_binary(self, tmp_path):
        scheduler = Scheduler(make_settings(tmp_path, openclaw_bin=str(tmp_path / "nope")))
        job = scheduler.create(job_input())
        outcome = scheduler.run(job.id)
        assert outcome.exit_code == ExitCode.CONNECTION_FAILED
        assert scheduler.get(job.id).state.fail_count == 1

    def test_timeout(self, tmp_path):
        """Test: A run that outlives timeout plus grace is killed and reported as a timeout."""
        slow = make_bin(tmp_path, body="exec sleep 30")
        scheduler = Scheduler(make_settings(tmp_path, openclaw_bin=str(slow),
                                            handoff_grace_ms=0, kill_delay_ms=1000))
        job = scheduler.create(job_input(timeout_ms=1000))
        outcome = scheduler.run(job.id)

        assert outcome.exit_code == ExitCode.TIMEOUT
        assert scheduler.get(job.id).state.fail_count == 1
        assert read_executions(scheduler.settings.logs_dir, job.id)[0].status == "timeout"

    def test_max_runs_deletes_even_on_failure(self, tmp_path):
        """Test: A job with a run limit is deleted once the limit is reached, failed or not."""
        scheduler = Scheduler(make_settings(tmp_path, openclaw_bin=str(make_bin(tmp_path, exit_code=1))))
        job = scheduler.create(job_input(max_runs=2))

        first = scheduler.run(job.id)
        assert first.deleted is False
        assert scheduler.get(job.id).state.run_count == 1

        second = scheduler.run(job.id)
        assert second.deleted is True
        assert second.exit_code == ExitCode.EXECUTION_FAILED
        assert scheduler.get(job.id) is None
        assert job.id not in (tmp_path / "crontab").read_text(encoding="utf-8")

    def test_auto_delete_after_success(self, scheduler, tmp_path):
        job = scheduler.create(job_input(auto_delete=True))
        outcome = scheduler.run(job.id)
        assert outcome.deleted is True
        assert scheduler.get(job.id) is None
        assert job.id not in (tmp_path / "crontab").read_text(encoding="utf-8")

    def test_auto_delete_keeps_failed_job(self, tmp_path):
        scheduler = Scheduler(make_settings(tmp_path, openclaw_bin=str(make_bin(tmp_path, exit_code=1))))
        job = scheduler.create(job_input(auto_delete=True))
        outcome = scheduler.run(job.id)
        assert outcome.deleted is False
        assert scheduler.get(job.id).state.fail_count == 1

    def test_lock_contention(self, scheduler, tmp_path):
        """Test: A run while another process holds the lock changes nothing."""
        job = scheduler.create(job_input())
        assert scheduler.locks.lock(job.id)

        outcome = scheduler.run(job.id)
        assert outcome.exit_code == ExitCode.ALREADY_RUNNING
        assert scheduler.get(job.id).state.run_count == 0
        assert calls(tmp_path) == ""
        assert scheduler.locks.is_locked(job.id) is True
        scheduler.locks.unlock(job.id)

    def test_disabled_job(self, scheduler, tmp_path):
        job = scheduler.create(job_input(enabled=False))
        outcome = scheduler.run(job.id)
        assert outcome.exit_code == ExitCode.DISABLED
        assert scheduler.get(job.id).state.run_count == 0
        assert calls(tmp_path) == ""

    def test_force_runs_disabled_job(self, scheduler):
        job = scheduler.create(job_input(enabled=False))
        assert scheduler.run(job.id, force=True).exit_code == ExitCode.SUCCESS
        assert scheduler.get(job.id).state.run_count == 1

    def test_dry_run(self, scheduler, tmp_path):
        """Test: A dry run builds the command but neither runs it nor counts it."""
        job = scheduler.create(job_input(auto_delete=True))
        outcome = scheduler.run(job.id, dry_run=True)
        assert outcome.exit_code == ExitCode.SUCCESS
        assert "--deliver" in outcome.result.output
        assert calls(tmp_path) == ""
        assert scheduler.get(job.id).state.run_count == 0
        assert scheduler.locks.is_locked(job.id) is False

    def test_missing_payload_file(self, scheduler, tmp_path):
        job = scheduler.create(job_input())
        scheduler.store.update(job.id, {"payload": {"type": "file", "file_path": "gone.txt"}})
        outcome = scheduler.run(job.id)

        assert outcome.exit_code == ExitCode.VALIDATION_ERROR
        assert scheduler.get(job.id).state.run_count == 0
        assert scheduler.locks.is_locked(job.id) is False
        assert calls(tmp_path) == ""

    def test_run_missing_job_drops_trigger(self, scheduler, tmp_path):
        scheduler.crontab.add("orphan", "0 9 * * 1")
        outcome = scheduler.run("orphan")
        assert outcome.exit_code == ExitCode.NOT_FOUND
        assert scheduler.crontab.list() == []

    def test_edit_schedule(self, scheduler):
        job = scheduler.create(job_input())
        updated = scheduler.edit(job.id, schedule="daily at 5pm", message="new text")
        assert updated.schedule.cron_expression == "0 17 * * *"
        assert updated.payload.content == "new text"
        assert [e.cron_expression for e in scheduler.crontab.list()] == ["0 17 * * *"]

    def test_edit_enabled_and_agent(self, scheduler):
        job = scheduler.create(job_input())
        updated = scheduler.edit(job.id, enabled=False, agent="ops")
        assert updated.execution.enabled is False
        assert updated.target.agent_id == "ops"
        assert updated.target.channel == "telegram"

    def test_list_filters(self, scheduler):
        scheduler.create(job_input(name="a"))
        scheduler.create(job_input(name="b", enabled=False))
        assert [j.name for j in scheduler.list()] == ["a", "b"]
        assert [j.name for j in scheduler.list(enabled_only=True)] == ["a"]
        assert scheduler.list(agent="other") == []

    def test_delete(self, scheduler, tmp_path):
        job = scheduler.create(job_input())
        assert scheduler.delete(job.id) is True
        assert scheduler.get(job.id) is None
        assert scheduler.crontab.list() == []
        assert scheduler.delete(job.id) is False

    def test_install_rebuilds_region(self, scheduler, tmp_path):
        """Test: install writes one entry per job and keeps user lines."""
        table = tmp_path / "crontab"
        jobs = [scheduler.create(job_input(name=n)) for n in ("a", "b")]
        table.write_text(USER_CRONTAB, encoding="utf-8")

        assert scheduler.install() == 2
        assert sorted(e.job_id for e in scheduler.crontab.list()) == sorted(j.id for j in jobs)
        assert table.read_text(encoding="utf-8").startswith(USER_CRONTAB)

        scheduler.uninstall()
        assert table.read_text(encoding="utf-8") == USER_CRONTAB


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestSettings:
    def test_config_file_and_env(self, tmp_path, monkeypatch):
        """Test: Environment overrides config.json, which overrides defaults."""
        state = tmp_path / "state"
        state.mkdir()
        (state / "config.json").write_text(
            json.dumps({"timezone": "Europe/Paris", "default_channel": "slack"}), encoding="utf-8"
        )
        monkeypatch.setenv("CLAWGATE_TIMEZONE", "Asia/Tokyo")
        monkeypatch.setenv("OPENCLAW_BIN", "/opt/openclaw")

        settings = Settings(state_dir=state)
        assert settings.timezone == "Asia/Tokyo"
        assert settings.default_channel == "slack"
        assert settings.openclaw_bin == "/opt/openclaw"
        assert settings.timeout_ms == 300000

    def test_bad_config_file_ignored(self, tmp_path):
        state = tmp_path / "state"
        state.mkdir()
        (state / "config.json").write_text("[oops", encoding="utf-8")
        assert Settings(state_dir=state).default_channel == "telegram"

    def test_layout(self, tmp_path):
        settings = Settings(state_dir=tmp_path / "state")
        settings.ensure_dirs()
        for name in ("jobs", "logs", "locks", "templates"):
            assert (tmp_path / "state" / name).is_dir()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setattr(cli_module, "_scheduler", None)
    monkeypatch.setenv("CLAWGATE_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("CLAWGATE_CRONTAB_FILE", str(tmp_path / "crontab"))
    monkeypatch.setenv("OPENCLAW_BIN", str(make_bin(tmp_path)))
    return CliRunner()


def create_via_cli(runner, *extra):
    result = runner.invoke(cli, ["create", "-n", "standup", "-s", "every monday at 9am",
                                 "-a", "main", "-m", "hello", *extra])
    assert result.exit_code == 0, result.output
    return cli_module.get_scheduler().list()[0]


class TestCLI:
    def test_create_and_list(self, runner):
        job = create_via_cli(runner)
        result = runner.invoke(cli, ["list", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data[0]["id"] == job.id
        assert data[0]["schedule"]["cronExpression"] == "0 9 * * 1"

    def test_create_bad_schedule(self, runner):
        """Test: An unparseable schedule exits with the validation code and shows examples."""
        result = runner.invoke(cli, ["create", "-n", "x", "-s", "whenever", "-m", "hi"])
        assert result.exit_code == ExitCode.VALIDATION_ERROR
        assert "Examples" in result.output

    def test_create_dry_run(self, runner):
        result = runner.invoke(cli, ["create", "-n", "x", "-s", "daily 3x", "-m", "hi", "--dry-run"])
        assert result.exit_code == 0
        assert "3 runs" in result.output
        assert cli_module.get_scheduler().list() == []

    def test_examples(self, runner):
        result = runner.invoke(cli, ["create", "--examples"])
        assert result.exit_code == 0
        assert "every 15 minutes" in result.output

    def test_show(self, runner):
        job = create_via_cli(runner)
        result = runner.invoke(cli, ["show", job.id, "--json"])
        assert result.exit_code == 0
        assert json.loads(result.output)["name"] == "standup"

        missing = runner.invoke(cli, ["show", "nope"])
        assert missing.exit_code == ExitCode.NOT_FOUND

    def test_execute(self, runner):
        job = create_via_cli(runner)
        result = runner.invoke(cli, ["execute", job.id])
        assert result.exit_code == 0, result.output
        assert cli_module.get_scheduler().get(job.id).state.run_count == 1

        last = runner.invoke(cli, ["logs", job.id, "--last"])
        assert last.exit_code == 0
        assert json.loads(last.output)["status"] == "success"

    def test_execute_disabled(self, runner):
        job = create_via_cli(runner)
        assert runner.invoke(cli, ["edit", job.id, "--enabled", "false"]).exit_code == 0
        result = runner.invoke(cli, ["execute", job.id])
        assert result.exit_code == ExitCode.DISABLED

    def test_execute_invalid_record(self, runner, tmp_path):
        """Test: A record that cannot be re-saved exits with the validation code, not a traceback."""
        job = create_via_cli(runner)
        path = tmp_path / "state" / "jobs" / f"{job.id}.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        data["execution"]["retryDelayMs"] = -5
        path.write_text(json.dumps(data), encoding="utf-8")

        result = runner.invoke(cli, ["execute", job.id])
        assert result.exit_code == ExitCode.VALIDATION_ERROR
        assert "retryDelayMs" in result.output or "retry_delay_ms" in result.output

    def test_delete_requires_force(self, runner):
        job = create_via_cli(runner)
        assert runner.invoke(cli, ["delete", job.id]).exit_code == ExitCode.FAILURE
        assert cli_module.get_scheduler().get(job.id) is not None
        assert runner.invoke(cli, ["delete", job.id, "--force"]).exit_code == 0
        assert cli_module.get_scheduler().get(job.id) is None

    def test_cron_show(self, runner):
        job = create_via_cli(runner)
        result = runner.invoke(cli, ["cron", "--show"])
        assert result.exit_code == 0
        assert job.id in result.output
