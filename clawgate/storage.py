"""Persistent job storage using one JSON file per job."""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .models import (
    CreateJobInput,
    ExecutionConfig,
    Job,
    JobPayload,
    JobRunState,
    JobSchedule,
    JobTarget,
    format_validation_errors,
    utcnow,
)

logger = logging.getLogger(__name__)

_SECTIONS = {
    "schedule": JobSchedule,
    "target": JobTarget,
    "payload": JobPayload,
    "execution": ExecutionConfig,
    "state": JobRunState,
}


def deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``updates`` over ``base``, recursing into nested dicts."""
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class JobStore(ABC):
    """Keyed set of job records."""

    @abstractmethod
    def create(self, data: CreateJobInput, timezone: str = "UTC", timeout_ms: int = 300000,
               max_retries: int = 3, retry_delay_ms: int = 5000) -> Job:
        """Create and persist a new job."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID, or None if it does not exist."""

    @abstractmethod
    def list(self) -> List[Job]:
        """All jobs sorted by name."""

    @abstractmethod
    def update(self, job_id: str, changes: Dict[str, Any]) -> Optional[Job]:
        """Merge ``changes`` into a job. The id is never changed."""

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        """Remove a job. Returns False if it did not exist."""

    def update_state(self, job_id: str, changes: Dict[str, Any]) -> Optional[Job]:
        """Merge ``changes`` into a job's run state."""
        return self.update(job_id, {"state": changes})

    def exists(self, job_id: str) -> bool:
        return self.get(job_id) is not None


class FileJobStore(JobStore):
    """Jobs stored as ``<jobs_dir>/<id>.json``."""

    def __init__(self, jobs_dir: Path):
        self.jobs_dir = Path(jobs_dir)
        self.jobs_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.json"

    def _write_json(self, file_path: Path, data: str) -> None:
        """Write JSON text with an atomic rename."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            f.write(data)
            f.write("\n")
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Optional[Dict[str, Any]]:
        """Read a job file, returning None if it is missing or unreadable."""
        if not file_path.exists():
            return None
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to read job file %s: %s", file_path, e)
            return None
        if not isinstance(data, dict):
            logger.error("Job file %s does not contain an object", file_path)
            return None
        return data

    def _save(self, job: Job) -> None:
        self._write_json(self._path(job.id), job.to_json())

    def _load(self, job_id: str, data: Dict[str, Any]) -> Job:
        try:
            return Job.model_validate(data)
        except ValidationError as e:
            logger.warning("Job %s failed validation:\n%s", job_id, format_validation_errors(e))
            return self._degraded(job_id, data)

    @staticmethod
    def _degraded(job_id: str, data: Dict[str, Any]) -> Job:
        """Build a Job from a record that failed validation, keeping what is there."""
        fields: Dict[str, Any] = {
            "id": data.get("id", job_id),
            "name": data.get("name", ""),
            "description": data.get("description"),
        }
        for name in ("created_at", "updated_at"):
            alias = Job.model_fields[name].alias
            if alias in data:
                fields[name] = data[alias]
        for key, model in _SECTIONS.items():
            raw = data.get(key)
            if not isinstance(raw, dict):
                raw = {}
            try:
                fields[key] = model.model_validate(raw)
            except ValidationError:
                fields[key] = _construct(model, raw)
        return Job.model_construct(**fields)

    def create(self, data: CreateJobInput, timezone: str = "UTC", timeout_ms: int = 300000,
               max_retries: int = 3, retry_delay_ms: int = 5000) -> Job:
        """Add a new job with a fresh id."""
        job_id = str(uuid.uuid4())
        while self._path(job_id).exists():
            job_id = str(uuid.uuid4())

        now = utcnow()
        job = Job(
            id=job_id,
            name=data.name,
            description=data.description,
            schedule=JobSchedule(
                cron_expression=data.schedule,
                timezone=data.timezone or timezone,
            ),
            target=data.target,
            payload=data.payload,
            execution=ExecutionConfig(
                enabled=data.enabled,
                timeout_ms=data.timeout_ms or timeout_ms,
                max_retries=max_retries,
                retry_delay_ms=retry_delay_ms,
                auto_delete=data.auto_delete,
                max_runs=data.max_runs,
            ),
            state=JobRunState(),
            created_at=now,
            updated_at=now,
        )
        self._save(job)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        data = self._read_json(self._path(job_id))
        if data is None:
            return None
        return self._load(job_id, data)

    def list(self) -> List[Job]:
        """Get all jobs."""
        jobs = []
        for path in sorted(self.jobs_dir.glob("*.json")):
            job = self.get(path.stem)
            if job is not None:
                jobs.append(job)
        return sorted(jobs, key=lambda j: (j.name or "").casefold())

    def update(self, job_id: str, changes: Dict[str, Any]) -> Optional[Job]:
        """Update an existing job."""
        job = self.get(job_id)
        if job is None:
            return None
        changes = {k: v for k, v in changes.items() if k not in ("id", "created_at")}
        merged = deep_merge(job.model_dump(), changes)
        merged["id"] = job.id
        merged["updated_at"] = utcnow()
        updated = Job.model_validate(merged)
        self._save(updated)
        return updated

    def delete(self, job_id: str) -> bool:
        """Delete a job file."""
        path = self._path(job_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def exists(self, job_id: str) -> bool:
        return self._path(job_id).exists()


def _construct(model, raw: Dict[str, Any]):
    """Unvalidated instance of ``model``; required fields missing from ``raw`` are None."""
    values = {}
    for name, info in model.model_fields.items():
        if info.alias in raw:
            values[name] = raw[info.alias]
        elif name in raw:
            values[name] = raw[name]
        elif info.is_required():
            values[name] = None
    return model.model_construct(**values)
