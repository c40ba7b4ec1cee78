"""Crontab synchronization.

Each managed line only carries a job id. Message content is looked up from
the job store when the line fires, so nothing user-supplied ever appears in
the crontab itself.
"""

import logging
import re
import subprocess
from datetime import datetime
from pathlib import Path
from typing import List, NamedTuple, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

logger = logging.getLogger(__name__)

HEADER = "# ClawGate managed jobs - DO NOT EDIT BELOW"
FOOTER = "# ClawGate end"
PREAMBLE = [
    "# This section is managed by ClawGate. Manual edits will be overwritten.",
    "# Schedules with a timezone are converted to UTC.",
]

JOB_ID_RE = re.compile(r"^[\w-]+$")
ENTRY_RE = re.compile(
    r"^(\S+\s+\S+\s+\S+\s+\S+\s+\S+)\s+.*?\bexecute\s+([\w-]+)(?:\s+#\s+tz:(\S+))?\s*$"
)
UTC_ZONES = ("UTC", "Etc/UTC", "GMT", "Etc/GMT")


class CrontabError(RuntimeError):
    """Raised when the trigger table cannot be read or written."""


class CronEntry(NamedTuple):
    job_id: str
    cron_expression: str
    timezone: str
    line: str


def validate_cron_expression(expression: str) -> bool:
    """Whether ``expression`` is a valid 5-field cron expression."""
    if len(expression.split()) != 5:
        return False
    return croniter.is_valid(expression)


def next_run(expression: str, timezone: str = "UTC", now: Optional[datetime] = None) -> Optional[datetime]:
    """Next fire time of ``expression`` evaluated in ``timezone``."""
    try:
        zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    base = now.astimezone(zone) if now else datetime.now(zone)
    try:
        return croniter(expression, base).get_next(datetime)
    except (ValueError, KeyError) as e:
        logger.warning("Cannot compute next run for %r: %s", expression, e)
        return None


def _simple(field: str) -> bool:
    return field.isdigit()


def convert_cron_to_utc(expression: str, timezone: Optional[str], now: Optional[datetime] = None) -> str:
    """Shift a cron expression written in ``timezone`` to UTC.

    Only expressions with a plain numeric hour can be shifted. Crossing
    midnight moves a numeric day-of-month or day-of-week along with it.
    Anything else is returned unchanged.
    """
    parts = expression.split()
    if len(parts) != 5 or not timezone or timezone in UTC_ZONES:
        return expression
    try:
        zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %s, leaving %r unconverted", timezone, expression)
        return expression

    minute, hour, day, month, day_of_week = parts
    offset = (now.astimezone(zone) if now else datetime.now(zone)).utcoffset()
    offset_minutes = int(offset.total_seconds() // 60) if offset else 0
    if offset_minutes == 0:
        return expression
    if not _simple(hour) or (offset_minutes % 60 and not _simple(minute)):
        logger.warning("Cannot convert %r from %s to UTC; using it as-is", expression, timezone)
        return expression

    if _simple(minute):
        total = int(hour) * 60 + int(minute) - offset_minutes
        day_shift, total = divmod(total, 24 * 60)
        minute, hour = str(total % 60), str(total // 60)
    else:
        total = int(hour) - offset_minutes // 60
        day_shift, total = divmod(total, 24)
        hour = str(total)

    if day_shift:
        if day != "*":
            # A forward shift past the 28th may not exist in every month
            shifted = int(day) + day_shift if _simple(day) else 0
            if not _simple(day) or shifted < 1 or (day_shift > 0 and shifted > 28):
                logger.warning("Cannot convert %r from %s to UTC; using it as-is", expression, timezone)
                return expression
            day = str(shifted)
        if day_of_week != "*":
            if not _simple(day_of_week):
                logger.warning("Cannot convert %r from %s to UTC; using it as-is", expression, timezone)
                return expression
            day_of_week = str((int(day_of_week) + day_shift) % 7)

    return f"{minute} {hour} {day} {month} {day_of_week}"


def _split(content: str) -> Tuple[List[str], List[str], List[str]]:
    """Split a table into (before, managed, after) lines, keeping line endings."""
    lines = content.splitlines(keepends=True)
    start = next((i for i, line in enumerate(lines) if line.rstrip("\r\n") == HEADER), None)
    if start is None:
        return lines, [], []
    end = next(
        (i for i in range(start + 1, len(lines)) if lines[i].rstrip("\r\n") == FOOTER),
        len(lines),
    )
    return lines[:start], lines[start + 1:end], lines[end + 1:]


def parse_entries(content: str) -> List[CronEntry]:
    """Entries in the managed region of ``content``."""
    _, managed, _ = _split(content)
    entries = []
    for raw in managed:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        match = ENTRY_RE.match(line)
        if match:
            entries.append(CronEntry(match.group(2), match.group(1), match.group(3) or "", line))
        else:
            logger.warning("Ignoring unrecognized line in managed crontab region: %s", line)
    return entries


def render(content: str, entries: Sequence[CronEntry]) -> str:
    """``content`` with its managed region regenerated from ``entries``."""
    before, _, after = _split(content)
    block: List[str] = []
    if entries:
        block = [HEADER + "\n"] + [line + "\n" for line in PREAMBLE]
        block += [entry.line + "\n" for entry in entries]
        block.append(FOOTER + "\n")
        # A table missing its final newline gains one; removing the region later keeps it
        if before and not before[-1].endswith("\n"):
            before[-1] += "\n"
    return "".join(before + block + after)


class CrontabSynchronizer:
    """Keeps the managed crontab region in step with the job store.

    With ``table_path`` set the table is a plain file; otherwise it is the
    invoking user's crontab, read with ``crontab -l`` and written with
    ``crontab -``.
    """

    def __init__(self, command: str = "clawgate", table_path: Optional[Path] = None):
        self.command = command
        self.table_path = Path(table_path) if table_path else None

    def read_table(self) -> str:
        if self.table_path is not None:
            if not self.table_path.exists():
                return ""
            with open(self.table_path, "r", encoding="utf-8", newline="") as f:
                return f.read()
        try:
            result = subprocess.run(["crontab", "-l"], capture_output=True, text=True)
        except OSError as e:
            raise CrontabError(f"Cannot run crontab: {e}")
        if result.returncode != 0:
            # "no crontab for <user>"
            return ""
        return result.stdout

    def write_table(self, content: str) -> None:
        if self.table_path is not None:
            self.table_path.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.table_path.with_suffix(".tmp")
            with open(temp_file, "w", encoding="utf-8", newline="") as f:
                f.write(content)
            temp_file.replace(self.table_path)
            return
        try:
            subprocess.run(["crontab", "-"], input=content, text=True, capture_output=True, check=True)
        except subprocess.CalledProcessError as e:
            raise CrontabError(f"crontab rejected the new table: {e.stderr.strip()}")
        except OSError as e:
            raise CrontabError(f"Cannot run crontab: {e}")

    def make_entry(self, job_id: str, cron_expression: str, timezone: Optional[str] = None) -> CronEntry:
        """Render the trigger line for a job."""
        if not JOB_ID_RE.match(job_id):
            raise ValueError(f"Invalid job id: {job_id!r}")
        if not validate_cron_expression(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression!r}")
        scheduled = convert_cron_to_utc(cron_expression, timezone)
        line = f"{scheduled} {self.command} execute {job_id}"
        if timezone:
            line += f" # tz:{timezone}"
        return CronEntry(job_id, scheduled, timezone or "", line)

    def list(self) -> List[CronEntry]:
        """Managed entries currently in the table."""
        return parse_entries(self.read_table())

    def add(self, job_id: str, cron_expression: str, timezone: Optional[str] = None) -> None:
        """Add or replace the entry for a job."""
        entry = self.make_entry(job_id, cron_expression, timezone)
        existing = self.read_table()
        entries = [e for e in parse_entries(existing) if e.job_id != job_id]
        entries.append(entry)
        self.write_table(render(existing, entries))

    def remove(self, job_id: str) -> None:
        """Remove the entry for a job, if present."""
        existing = self.read_table()
        entries = parse_entries(existing)
        remaining = [e for e in entries if e.job_id != job_id]
        if len(remaining) == len(entries):
            return
        self.write_table(render(existing, remaining))

    def sync(self, entries: Sequence[CronEntry]) -> None:
        """Replace the whole managed region with ``entries``."""
        existing = self.read_table()
        self.write_table(render(existing, entries))

    def uninstall(self) -> None:
        """Remove the managed region."""
        self.sync([])
