"""Pipeline Pydantic models — job definitions and runtime state.

Key exports:
    Definition models: JobDefinition, ArtifactSpec, EnvironmentBinding
    Runtime state models: PipelineRun, JobRun, Artifact, Environment, PipelineResult
    Enums: WhenMode, JobStatus, BlockReason, PipelineStatus, ManualGatePolicy
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from convoy.pipeline.context import PipelineContext
from convoy.pipeline.rules import TriggerRule

# Stage order used when a pipeline does not declare its own
DEFAULT_STAGES: tuple[str, ...] = ("test", "build", "publish", "kubernetes", "flaming-fir")

DEFAULT_ARTIFACT_NAME = "${CI_JOB_NAME}_${CI_COMMIT_REF_NAME}"
DEFAULT_ARTIFACT_EXPIRY = "7 days"

MAX_RETRIES = 10


# ── Enums ────────────────────────────────────────────────────────────────────


class WhenMode(str, Enum):
    """When a runnable job starts."""

    ON_SUCCESS = "on_success"
    MANUAL = "manual"


class JobStatus(str, Enum):
    """Job run lifecycle states."""

    CREATED = "created"
    RUNNING = "running"
    MANUAL = "manual"  # parked, awaiting approval
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"  # trigger rule said skip
    BLOCKED = "blocked"  # an upstream requirement was not met
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_JOB_STATUSES


_TERMINAL_JOB_STATUSES = frozenset(
    {
        JobStatus.SUCCESS,
        JobStatus.FAILED,
        JobStatus.SKIPPED,
        JobStatus.BLOCKED,
        JobStatus.CANCELLED,
    }
)


class BlockReason(str, Enum):
    """Why a job ended up BLOCKED instead of running."""

    DEPENDENCY_FAILED = "dependency_failed"
    DEPENDENCY_SKIPPED = "dependency_skipped"
    DEPENDENCY_PENDING = "dependency_pending"
    ARTIFACT_UNAVAILABLE = "artifact_unavailable"
    STAGE_FAILED = "stage_failed"

    @property
    def is_failure(self) -> bool:
        """Whether a job blocked for this reason fails the pipeline."""
        return self in (
            BlockReason.DEPENDENCY_FAILED,
            BlockReason.ARTIFACT_UNAVAILABLE,
            BlockReason.STAGE_FAILED,
        )


class PipelineStatus(str, Enum):
    """Pipeline run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ManualGatePolicy(str, Enum):
    """Whether later stages start while manual jobs await approval."""

    PROCEED = "proceed"
    WAIT = "wait"


# ── Job name validation ──────────────────────────────────────────────────────

JOB_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.:/-]*$")
STAGE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
CALLABLE_TARGET_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_.]*:[a-zA-Z_][a-zA-Z0-9_]*$")


# ── Definition Models ────────────────────────────────────────────────────────


class ArtifactSpec(BaseModel):
    """What a job publishes on success and for how long."""

    paths: list[str] = []
    name: str = DEFAULT_ARTIFACT_NAME
    expire_in: str = DEFAULT_ARTIFACT_EXPIRY
    when: Literal["on_success"] = "on_success"

    @field_validator("paths", mode="before")
    @classmethod
    def _coerce_paths(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("expire_in")
    @classmethod
    def _validate_expiry(cls, value: str) -> str:
        _parse_duration_seconds(value)
        return value

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=_parse_duration_seconds(self.expire_in))


class EnvironmentBinding(BaseModel):
    """Deployment target a job writes to."""

    name: str
    url: str | None = None
    skip_if_current: bool = False

    @model_validator(mode="before")
    @classmethod
    def _coerce_name(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": data}
        return data


class JobDefinition(BaseModel):
    """A single schedulable unit of work.

    The body is opaque to the engine. It is either given directly as
    ``body`` (any ``JobBody``), built from ``script`` lines, or imported from
    a ``callable`` target.
    """

    name: str
    stage: str
    rule: TriggerRule | None = None
    dependencies: list[str] = []
    retry: int = Field(0, ge=0, le=MAX_RETRIES)
    allow_failure: bool = False
    when: WhenMode = WhenMode.ON_SUCCESS
    artifacts: ArtifactSpec | None = None
    environment: EnvironmentBinding | None = None
    variables: dict[str, str] = {}
    timeout: str | None = None
    tags: list[str] = []  # runner tags, exposed to bodies as CI_RUNNER_TAGS

    # Shell body
    before_script: list[str] = []
    script: list[str] = []
    after_script: list[str] = []

    # Python body
    callable_target: str | None = Field(None, alias="callable")

    # Injected body; never serialized
    body: Any = Field(None, exclude=True, repr=False)

    model_config = {"populate_by_name": True, "arbitrary_types_allowed": True}

    @model_validator(mode="before")
    @classmethod
    def _collect_rule(cls, data: Any) -> Any:
        # only/except may be given at job level, as in pipeline files
        if isinstance(data, dict) and ("only" in data or "except" in data):
            data = dict(data)
            rule = {"only": data.pop("only", None), "except": data.pop("except", None)}
            data["rule"] = rule
        return data

    @field_validator("before_script", "script", "after_script", "tags", "dependencies", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("variables", mode="before")
    @classmethod
    def _stringify_variables(cls, value: Any) -> Any:
        if not value:
            return {}
        return {str(k): "" if v is None else str(v) for k, v in dict(value).items()}

    @model_validator(mode="after")
    def validate_job(self) -> JobDefinition:
        if not JOB_NAME_PATTERN.match(self.name):
            msg = f"Job name '{self.name}' must match pattern {JOB_NAME_PATTERN.pattern}"
            raise ValueError(msg)
        if not STAGE_NAME_PATTERN.match(self.stage):
            msg = f"Job '{self.name}': invalid stage name '{self.stage}'"
            raise ValueError(msg)
        if self.name in self.dependencies:
            msg = f"Job '{self.name}' cannot depend on itself"
            raise ValueError(msg)
        if self.callable_target and not CALLABLE_TARGET_PATTERN.match(self.callable_target):
            msg = (
                f"Job '{self.name}': invalid callable target '{self.callable_target}' "
                "(expected 'module.path:function')"
            )
            raise ValueError(msg)
        if self.body is None and not self.script and not self.callable_target:
            msg = f"Job '{self.name}' needs a 'script', a 'callable' or a body"
            raise ValueError(msg)
        if self.timeout is not None:
            _parse_duration_seconds(self.timeout)
        return self

    @property
    def is_manual(self) -> bool:
        return self.when == WhenMode.MANUAL

    @property
    def max_attempts(self) -> int:
        return 1 + self.retry

    def parse_timeout_seconds(self) -> int | None:
        if not self.timeout:
            return None
        return _parse_duration_seconds(self.timeout)


# ── Runtime State Models ─────────────────────────────────────────────────────


class Artifact(BaseModel):
    """A published job output, scoped to one pipeline run."""

    job_name: str
    run_id: str
    name: str
    blob: bytes = Field(repr=False)
    created_at: datetime
    expires_at: datetime

    @property
    def size(self) -> int:
        return len(self.blob)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def describe(self) -> dict[str, Any]:
        """JSON-friendly metadata without the blob."""
        return {
            "job_name": self.job_name,
            "run_id": self.run_id,
            "name": self.name,
            "size": self.size,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


class JobRun(BaseModel):
    """Runtime state of one job in one pipeline run."""

    run_id: str
    job_name: str
    stage: str
    status: JobStatus = JobStatus.CREATED
    when: WhenMode = WhenMode.ON_SUCCESS
    allow_failure: bool = False

    # Retry tracking
    attempt: int = 0
    max_attempts: int = 1

    # Blocking
    block_reason: BlockReason | None = None
    blocked_by: list[str] = []

    # Results
    environment: str | None = None
    exit_code: int | None = None
    error_message: str | None = None
    approved_by: str | None = None
    output: str = ""

    # Timing
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def awaiting_approval(self) -> bool:
        return self.status == JobStatus.MANUAL

    @property
    def failed(self) -> bool:
        """Whether the job did not achieve its goal (regardless of allow_failure)."""
        if self.status == JobStatus.FAILED:
            return True
        return self.status == JobStatus.BLOCKED and bool(self.block_reason and self.block_reason.is_failure)

    @property
    def counts_as_failure(self) -> bool:
        """Whether this job turns the pipeline verdict to FAILED."""
        return self.failed and not self.allow_failure

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class PipelineRun(BaseModel):
    """Runtime state of a pipeline execution."""

    run_id: str
    pipeline_name: str
    context: PipelineContext
    status: PipelineStatus = PipelineStatus.PENDING
    stages: list[str] = []

    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    error_message: str | None = None


class Environment(BaseModel):
    """A deployment target and what was last deployed to it."""

    name: str
    url: str | None = None
    last_deployed_version: str | None = None
    last_deployed_at: datetime | None = None
    last_run_id: str | None = None
    last_job_name: str | None = None


class PipelineResult(BaseModel):
    """What a pipeline run produced: verdict, per-job status, artifacts."""

    run_id: str
    pipeline_name: str
    status: PipelineStatus
    jobs: dict[str, JobRun] = {}
    artifacts: dict[str, Artifact] = {}

    @property
    def success(self) -> bool:
        return self.status == PipelineStatus.SUCCESS

    @property
    def awaiting_approval(self) -> list[str]:
        return [name for name, job in self.jobs.items() if job.awaiting_approval]

    @property
    def allowed_failures(self) -> list[str]:
        """Jobs that failed but were allowed to."""
        return [name for name, job in self.jobs.items() if job.failed and job.allow_failure]

    @property
    def failed_jobs(self) -> list[str]:
        return [name for name, job in self.jobs.items() if job.counts_as_failure]

    def status_of(self, job_name: str) -> JobStatus:
        return self.jobs[job_name].status

    def summary(self) -> dict[str, Any]:
        """JSON-friendly view with artifact metadata instead of blobs."""
        return {
            "run_id": self.run_id,
            "pipeline_name": self.pipeline_name,
            "status": self.status.value,
            "awaiting_approval": self.awaiting_approval,
            "allowed_failures": self.allowed_failures,
            "jobs": {name: job.model_dump(mode="json") for name, job in self.jobs.items()},
            "artifacts": {name: a.describe() for name, a in self.artifacts.items()},
        }


# ── Helpers ──────────────────────────────────────────────────────────────────

_DURATION_UNITS = {
    "s": 1,
    "sec": 1,
    "secs": 1,
    "second": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "mins": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hr": 3600,
    "hrs": 3600,
    "hour": 3600,
    "hours": 3600,
    "d": 86400,
    "day": 86400,
    "days": 86400,
    "w": 604800,
    "week": 604800,
    "weeks": 604800,
}

_DURATION_PART_RE = re.compile(r"(\d+)\s*([a-zA-Z]*)\s*")


def _parse_duration_seconds(duration: str) -> int:
    """Parse a duration like '30s', '5m', '2h', '7 days' or '1 day 12 hours' to seconds.

    A bare number is seconds. Raises ValueError on invalid format.
    """
    text = duration.strip()
    if not text:
        msg = "Invalid duration format: ''"
        raise ValueError(msg)

    total = 0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART_RE.match(text, pos)
        if not match:
            msg = f"Invalid duration format: '{duration}'. Expected e.g. '30m', '2h', '7 days'"
            raise ValueError(msg)
        unit = match.group(2).lower() or "s"
        if unit not in _DURATION_UNITS:
            msg = f"Invalid duration unit '{match.group(2)}' in '{duration}'"
            raise ValueError(msg)
        total += int(match.group(1)) * _DURATION_UNITS[unit]
        pos = match.end()
    return total
