"""Data models for jobs, locks and execution logs."""

from datetime import datetime, timezone
from enum import IntEnum
from typing import Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class ExitCode(IntEnum):
    """Process exit codes shared by every CLI command."""
    SUCCESS = 0
    FAILURE = 1
    NOT_FOUND = 2
    DISABLED = 3
    ALREADY_RUNNING = 4
    VALIDATION_ERROR = 5
    CONFIG_ERROR = 6
    CONNECTION_FAILED = 7
    EXECUTION_FAILED = 8
    TIMEOUT = 9
    LOCK_CONFLICT = 10


class CamelModel(BaseModel):
    """Base model serialized with camelCase field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobSchedule(CamelModel):
    """When a job fires."""
    cron_expression: str
    timezone: str = "UTC"
    next_run: Optional[datetime] = None

    @field_validator("cron_expression")
    @classmethod
    def _five_fields(cls, value: str) -> str:
        if len(value.split()) != 5:
            raise ValueError("cron expression must have exactly 5 fields")
        return " ".join(value.split())

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone: {value}")
        return value


class JobTarget(CamelModel):
    """Addressing for the delivery command."""
    type: Literal["agent", "message"] = "agent"
    agent_id: Optional[str] = None
    channel: Optional[str] = None
    to: Optional[str] = None
    reply_account: Optional[str] = None


class JobPayload(CamelModel):
    """Message content or a reference resolved at execution time."""
    type: Literal["text", "template", "file"] = "text"
    content: Optional[str] = None
    template: Optional[str] = None
    file_path: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_reference(self) -> "JobPayload":
        if self.type == "text" and not self.content:
            raise ValueError("content is required when type is 'text'")
        if self.type == "template" and not self.template:
            raise ValueError("template is required when type is 'template'")
        if self.type == "file" and not self.file_path:
            raise ValueError("filePath is required when type is 'file'")
        return self


class ExecutionConfig(CamelModel):
    """Per-job execution settings."""
    enabled: bool = True
    timeout_ms: int = Field(300000, ge=1000)
    max_retries: int = Field(3, ge=0)
    retry_delay_ms: int = Field(5000, ge=0)
    auto_delete: bool = False
    max_runs: Optional[int] = Field(None, ge=1)


class JobRunState(CamelModel):
    """Outcome bookkeeping updated after every run."""
    last_run: Optional[datetime] = None
    last_result: Optional[Literal["success", "failure"]] = None
    last_error: Optional[str] = None
    run_count: int = Field(0, ge=0)
    fail_count: int = Field(0, ge=0)


class Job(CamelModel):
    """A scheduled message delivery."""
    id: str
    name: str
    description: Optional[str] = None
    schedule: JobSchedule
    target: JobTarget
    payload: JobPayload
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    state: JobRunState = Field(default_factory=JobRunState)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("name")
    @classmethod
    def _non_empty_name(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("name must be a non-empty string")
        return value

    def to_json(self) -> str:
        """Serialize with the stable camelCase field names."""
        return self.model_dump_json(by_alias=True, indent=2)


class CreateJobInput(BaseModel):
    """Caller-supplied fields for a new job."""
    name: str
    description: Optional[str] = None
    schedule: str
    timezone: Optional[str] = None
    target: JobTarget
    payload: JobPayload
    enabled: bool = True
    auto_delete: bool = False
    max_runs: Optional[int] = Field(None, ge=1)
    timeout_ms: Optional[int] = Field(None, ge=1000)

    @field_validator("name", "schedule")
    @classmethod
    def _required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must be a non-empty string")
        return value.strip()


class LockInfo(CamelModel):
    """Marker describing the process currently executing a job."""
    pid: int
    started_at: datetime = Field(default_factory=utcnow)


class ExecutionLog(CamelModel):
    """One record in a job's execution history."""
    id: str
    job_id: str
    scheduled_at: datetime
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    status: Literal["success", "failure", "timeout", "cancelled"]
    error: Optional[str] = None
    output: Optional[str] = None
    command: Optional[str] = None


def format_validation_errors(exc: ValidationError) -> str:
    """Render a ValidationError as one indented line per problem."""
    lines: List[str] = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"]) or "(root)"
        lines.append(f"  - {field}: {error['msg']}")
    return "\n".join(lines)
