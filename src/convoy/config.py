"""Configuration loading for Convoy.

Reads a pipeline YAML file: stages, global variables, runtime settings,
reusable job templates and the jobs themselves. Pydantic models validate the
schema; ``PipelineFile.job_definitions()`` resolves ``extends`` chains into
concrete ``JobDefinition`` objects.

    name: substrate
    stages: [test, build, publish]
    variables: {ARCH: x86_64}
    runtime: {max_runners: 4, manual_policy: proceed}
    templates:
      build-only: {only: [master, tags, web]}
    jobs:
      build-linux-release:
        extends: [build-only]
        stage: build
        script: ["./scripts/build.sh"]
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from convoy.pipeline.context import PipelineContext, TriggerSource
from convoy.pipeline.errors import PipelineConfigError
from convoy.pipeline.models import (
    DEFAULT_STAGES,
    JobDefinition,
    ManualGatePolicy,
    _parse_duration_seconds,
)
from convoy.pipeline.planner import PipelineGraph
from convoy.pipeline.rules import validate_rule

logger = logging.getLogger(__name__)

# Jobs whose key starts with this prefix are templates, not jobs
HIDDEN_JOB_PREFIX = "."


# ── Config Models ────────────────────────────────────────────────────────────


class RuntimeConfig(BaseModel):
    max_runners: int = Field(4, ge=1)  # bodies running at once
    manual_policy: ManualGatePolicy = ManualGatePolicy.PROCEED
    db_path: str | None = None  # run history database (none = in-memory only)
    workdir: str | None = None  # base dir for shell job working directories
    housekeeping_interval: int = Field(60, ge=1)  # seconds between expiry sweeps
    keep_finished_runs: str = "1 day"  # settled runs stay queryable this long

    @field_validator("keep_finished_runs")
    @classmethod
    def _check_keep_finished_runs(cls, value: str) -> str:
        _parse_duration_seconds(value)
        return value


class PipelineFile(BaseModel):
    """Top-level pipeline file."""

    name: str = "pipeline"
    stages: list[str] = Field(default_factory=lambda: list(DEFAULT_STAGES))
    variables: dict[str, str] = Field(default_factory=dict)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    templates: dict[str, dict[str, Any]] = Field(default_factory=dict)
    jobs: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @field_validator("variables", mode="before")
    @classmethod
    def _stringify_variables(cls, value: Any) -> Any:
        if not value:
            return {}
        return {str(k): "" if v is None else str(v) for k, v in dict(value).items()}

    @field_validator("templates", "jobs", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        if value is None:
            return {}
        for key, body in dict(value).items():
            if body is not None and not isinstance(body, dict):
                msg = f"'{key}' must be a mapping, got {type(body).__name__}"
                raise ValueError(msg)
        return {k: (v or {}) for k, v in dict(value).items()}

    # ── Templates ────────────────────────────────────────────────────────────

    def all_templates(self) -> dict[str, dict[str, Any]]:
        """Named templates plus hidden (``.name``) jobs."""
        templates = dict(self.templates)
        for key, body in self.jobs.items():
            if key.startswith(HIDDEN_JOB_PREFIX):
                templates[key] = body
        return templates

    def job_names(self) -> list[str]:
        return [key for key in self.jobs if not key.startswith(HIDDEN_JOB_PREFIX)]

    def resolve_job(self, name: str) -> dict[str, Any]:
        """Merge a job's ``extends`` chain into one mapping.

        Fragments merge shallowly in order; later keys override earlier ones
        and the job's own keys are applied last.
        """
        if name not in self.jobs:
            msg = f"Unknown job '{name}'"
            raise PipelineConfigError(msg)
        return _merge_extends(self.jobs[name], self.all_templates(), [f"job '{name}'"])

    def job_definitions(self) -> list[JobDefinition]:
        """Concrete job definitions, templates resolved. Raises PipelineConfigError."""
        definitions: list[JobDefinition] = []
        for name in self.job_names():
            merged = self.resolve_job(name)
            merged["name"] = name
            try:
                definitions.append(JobDefinition.model_validate(merged))
            except ValidationError as exc:
                msg = f"Job '{name}': {_format_validation_error(exc)}"
                raise PipelineConfigError(msg) from exc
        return definitions

    # ── Graph / context ──────────────────────────────────────────────────────

    def graph(self) -> PipelineGraph:
        return PipelineGraph.build(self.stages, self.job_definitions())

    def validate_pipeline(self) -> list[str]:
        """Every template, job, graph and rule problem, one message each."""
        errors: list[str] = []
        definitions: list[JobDefinition] = []
        for name in self.job_names():
            try:
                merged = self.resolve_job(name)
                merged["name"] = name
                definitions.append(JobDefinition.model_validate(merged))
            except PipelineConfigError as exc:
                errors.append(str(exc))
            except ValidationError as exc:
                errors.append(f"Job '{name}': {_format_validation_error(exc)}")

        errors.extend(PipelineGraph(self.stages, definitions).validate())
        for job in definitions:
            for problem in validate_rule(job.rule):
                errors.append(f"Job '{job.name}': {problem}")
        return errors

    def build_context(
        self,
        ref: str,
        *,
        tag: bool = False,
        sha: str = "",
        source: TriggerSource | str = TriggerSource.PUSH,
        variables: dict[str, str] | None = None,
    ) -> PipelineContext:
        """Context for one invocation; the file's variables become globals."""
        return PipelineContext(
            ref=ref,
            is_tag=tag,
            commit_sha=sha,
            source=TriggerSource(source),
            project_name=self.name,
            variables=dict(variables or {}),
            global_variables=dict(self.variables),
        )


def _merge_extends(
    body: dict[str, Any],
    templates: dict[str, dict[str, Any]],
    stack: list[str],
) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for parent in _extends_list(body.get("extends"), stack[0]):
        if parent not in templates:
            msg = f"{stack[0]}: unknown template '{parent}'"
            raise PipelineConfigError(msg)
        if f"template '{parent}'" in stack:
            chain = " -> ".join([*stack, f"template '{parent}'"])
            msg = f"Template cycle: {chain}"
            raise PipelineConfigError(msg)
        merged.update(
            _merge_extends(templates[parent], templates, [*stack, f"template '{parent}'"])
        )
    merged.update({k: v for k, v in body.items() if k != "extends"})
    return merged


def _extends_list(value: Any, owner: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    msg = f"{owner}: 'extends' must be a template name or a list of names"
    raise PipelineConfigError(msg)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


# ── Config Loader ────────────────────────────────────────────────────────────


def load_pipeline_file(path: Path | str) -> PipelineFile:
    """Load and validate a pipeline YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        PipelineConfigError: If the YAML or the schema is invalid.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Pipeline file not found: {path}")

    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise PipelineConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise PipelineConfigError(f"{path}: top level must be a mapping")

    try:
        pipeline = PipelineFile(**raw)
    except ValidationError as exc:
        raise PipelineConfigError(f"{path}: {_format_validation_error(exc)}") from exc

    apply_env_overrides(pipeline.runtime)
    logger.info("Loaded pipeline '%s' from %s (%d jobs)", pipeline.name, path, len(pipeline.job_names()))
    return pipeline


def apply_env_overrides(runtime: RuntimeConfig) -> RuntimeConfig:
    """Environment variable overrides for deployment."""
    max_runners = os.environ.get("CONVOY_MAX_RUNNERS")
    if max_runners:
        try:
            runtime.max_runners = max(1, int(max_runners))
        except ValueError as exc:
            raise PipelineConfigError(f"CONVOY_MAX_RUNNERS must be an integer, got {max_runners!r}") from exc

    manual_policy = os.environ.get("CONVOY_MANUAL_POLICY")
    if manual_policy:
        try:
            runtime.manual_policy = ManualGatePolicy(manual_policy.lower())
        except ValueError as exc:
            raise PipelineConfigError(
                f"CONVOY_MANUAL_POLICY must be 'proceed' or 'wait', got {manual_policy!r}"
            ) from exc

    db_path = os.environ.get("CONVOY_DB_PATH")
    if db_path:
        runtime.db_path = db_path

    workdir = os.environ.get("CONVOY_WORKDIR")
    if workdir:
        runtime.workdir = workdir

    return runtime
