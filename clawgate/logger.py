"""Per-job log files and execution history."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .models import ExecutionLog

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
EXECUTIONS_FILE = "executions.jsonl"


class JobLogger:
    """Writes one job's log lines to ``<logs_dir>/<job_id>/<date>.log``.

    Lines also propagate to the ``clawgate.job`` logger, so whatever the CLI
    configured for the console sees them too. Execution records are kept
    separately as JSON lines in ``executions.jsonl``.
    """

    def __init__(self, logs_dir: Path, job_id: str):
        self.job_id = job_id
        self.job_dir = Path(logs_dir) / job_id
        self.job_dir.mkdir(parents=True, exist_ok=True)
        date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        self.log_file = self.job_dir / f"{date}.log"

        self._logger = logging.getLogger(f"clawgate.job.{job_id}")
        self._logger.setLevel(logging.DEBUG)
        self._handler = logging.FileHandler(self.log_file, encoding="utf-8")
        self._handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self._logger.addHandler(self._handler)

    def info(self, message: str, *args) -> None:
        self._logger.info(message, *args)

    def warning(self, message: str, *args) -> None:
        self._logger.warning(message, *args)

    def error(self, message: str, *args) -> None:
        self._logger.error(message, *args)

    def execution(self, record: ExecutionLog) -> None:
        """Append an execution record to the job's history."""
        path = self.job_dir / EXECUTIONS_FILE
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(record.model_dump_json(by_alias=True))
                f.write("\n")
        except OSError as e:
            logger.error("Failed to write execution log for %s: %s", self.job_id, e)

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()

    def __enter__(self) -> "JobLogger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def read_executions(logs_dir: Path, job_id: str) -> List[ExecutionLog]:
    """Execution records for a job, oldest first. Corrupt lines are skipped."""
    path = Path(logs_dir) / job_id / EXECUTIONS_FILE
    if not path.exists():
        return []
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                records.append(ExecutionLog.model_validate_json(line))
            except ValidationError:
                logger.warning("Skipping corrupt execution record for %s", job_id)
    return records


def read_log(logs_dir: Path, job_id: str) -> Optional[str]:
    """Text of the most recent daily log for a job."""
    job_dir = Path(logs_dir) / job_id
    if not job_dir.is_dir():
        return None
    files = sorted(job_dir.glob("*.log"))
    if not files:
        return None
    return files[-1].read_text(encoding="utf-8")


def setup_logging(verbose: bool = False) -> None:
    """Console logging for the CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )
