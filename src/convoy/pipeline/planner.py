"""Dependency resolver and stage scheduler.

``PipelineGraph`` checks that a set of job definitions forms a valid
staged DAG and turns it into a ``PipelinePlan`` for a given context:

    - stages in ascending order
    - inside each stage, runnable jobs in dependency order (Kahn's algorithm,
      ties broken by declaration order)
    - rule-skipped jobs listed separately

``resolve_blocking`` decides, from the live status of a job's
dependencies, whether the job may start or is Skipped-Blocked and why.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping, Sequence

from pydantic import BaseModel

from convoy.pipeline.context import PipelineContext
from convoy.pipeline.errors import PipelineGraphError
from convoy.pipeline.models import BlockReason, JobDefinition, JobRun, JobStatus
from convoy.pipeline.rules import RuleDecision, evaluate

logger = logging.getLogger("convoy.pipeline.planner")


# ── Plan Models ──────────────────────────────────────────────────────────────


class StagePlan(BaseModel):
    """Jobs of one stage for one context."""

    name: str
    jobs: list[str] = []
    skipped: list[str] = []

    @property
    def is_empty(self) -> bool:
        return not self.jobs


class PipelinePlan(BaseModel):
    """Ordered stages with their runnable and rule-skipped jobs."""

    stages: list[StagePlan] = []

    @property
    def runnable(self) -> list[str]:
        return [job for stage in self.stages for job in stage.jobs]

    @property
    def skipped(self) -> list[str]:
        return [job for stage in self.stages for job in stage.skipped]

    def stage(self, name: str) -> StagePlan | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def describe(self) -> list[str]:
        """Human-readable plan, one line per stage."""
        lines = []
        for stage in self.stages:
            jobs = ", ".join(stage.jobs) or "-"
            line = f"{stage.name}: {jobs}"
            if stage.skipped:
                line += f"  (skipped: {', '.join(stage.skipped)})"
            lines.append(line)
        return lines


# ── Graph ────────────────────────────────────────────────────────────────────


class PipelineGraph:
    """Validated job graph over an ordered list of stages.

    Usage::

        graph = PipelineGraph.build(["test", "build"], jobs)
        plan = graph.plan(PipelineContext.for_push("master"))
    """

    def __init__(self, stages: Sequence[str], jobs: Iterable[JobDefinition]):
        self._stages = list(stages)
        self._stage_index = {name: i for i, name in enumerate(self._stages)}
        self._job_list = list(jobs)
        self._jobs: dict[str, JobDefinition] = {}
        for job in self._job_list:
            self._jobs.setdefault(job.name, job)

    @classmethod
    def build(cls, stages: Sequence[str], jobs: Iterable[JobDefinition]) -> PipelineGraph:
        """Construct and validate; raises PipelineGraphError listing every problem."""
        graph = cls(stages, jobs)
        errors = graph.validate()
        if errors:
            raise PipelineGraphError(errors)
        return graph

    @property
    def stages(self) -> list[str]:
        return list(self._stages)

    @property
    def jobs(self) -> dict[str, JobDefinition]:
        return dict(self._jobs)

    def get(self, name: str) -> JobDefinition | None:
        return self._jobs.get(name)

    def stage_index(self, stage: str) -> int:
        return self._stage_index[stage]

    def jobs_in_stage(self, stage: str) -> list[JobDefinition]:
        return [job for job in self._jobs.values() if job.stage == stage]

    def dependents(self, name: str) -> list[str]:
        """Jobs that directly depend on ``name``."""
        return [job.name for job in self._jobs.values() if name in job.dependencies]

    # ── Validation ──────────────────────────────────────────────────────────

    def validate(self) -> list[str]:
        """Return every structural problem of the graph (empty when valid)."""
        errors: list[str] = []

        if len(set(self._stages)) != len(self._stages):
            errors.append(f"Duplicate stage names in {self._stages}")

        seen: set[str] = set()
        for job in self._job_list:
            if job.name in seen:
                errors.append(f"Duplicate job name '{job.name}'")
            seen.add(job.name)

        for job in self._jobs.values():
            if job.stage not in self._stage_index:
                errors.append(f"Job '{job.name}': unknown stage '{job.stage}'")
                continue
            for dep in job.dependencies:
                if dep == job.name:
                    errors.append(f"Job '{job.name}' depends on itself")
                    continue
                upstream = self._jobs.get(dep)
                if upstream is None:
                    errors.append(f"Job '{job.name}': unknown dependency '{dep}'")
                    continue
                if upstream.stage not in self._stage_index:
                    continue
                if self._stage_index[upstream.stage] > self._stage_index[job.stage]:
                    errors.append(
                        f"Job '{job.name}' (stage '{job.stage}') depends on '{dep}' "
                        f"in later stage '{upstream.stage}'"
                    )

        errors.extend(self._detect_cycles())
        return errors

    def _detect_cycles(self) -> list[str]:
        errors: list[str] = []
        for stage in self._stages:
            names = [job.name for job in self.jobs_in_stage(stage)]
            try:
                self._topological_order(names)
            except PipelineGraphError as exc:
                errors.extend(exc.errors)
        return errors

    def _topological_order(self, names: Sequence[str]) -> list[str]:
        """Order ``names`` so that same-set dependencies come first."""
        members = set(names)
        in_degree = {name: 0 for name in names}
        downstream: dict[str, list[str]] = {name: [] for name in names}
        for name in names:
            for dep in self._jobs[name].dependencies:
                if dep in members and dep != name:
                    in_degree[name] += 1
                    downstream[dep].append(name)

        position = {name: i for i, name in enumerate(names)}
        queue = deque(name for name in names if in_degree[name] == 0)
        ordered: list[str] = []
        while queue:
            current = queue.popleft()
            ordered.append(current)
            ready = []
            for nxt in downstream[current]:
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    ready.append(nxt)
            queue.extend(sorted(ready, key=position.__getitem__))

        if len(ordered) != len(names):
            stuck = sorted(set(names) - set(ordered), key=position.__getitem__)
            raise PipelineGraphError([f"Dependency cycle between jobs: {', '.join(stuck)}"])
        return ordered

    # ── Planning ────────────────────────────────────────────────────────────

    def plan(self, context: PipelineContext) -> PipelinePlan:
        """Evaluate trigger rules and order runnable jobs per stage."""
        stages: list[StagePlan] = []
        for stage in self._stages:
            runnable: list[str] = []
            skipped: list[str] = []
            for job in self.jobs_in_stage(stage):
                if evaluate(job.rule, context) == RuleDecision.RUN:
                    runnable.append(job.name)
                else:
                    skipped.append(job.name)
            stages.append(
                StagePlan(name=stage, jobs=self._topological_order(runnable), skipped=skipped)
            )
        plan = PipelinePlan(stages=stages)
        logger.debug(
            "Planned %d runnable / %d skipped job(s) for ref %s",
            len(plan.runnable),
            len(plan.skipped),
            context.ref,
        )
        return plan


# ── Blocking ─────────────────────────────────────────────────────────────────

_PENDING_STATUSES = (JobStatus.CREATED, JobStatus.RUNNING, JobStatus.MANUAL)


def resolve_blocking(
    job: JobDefinition,
    job_runs: Mapping[str, JobRun],
    definitions: Mapping[str, JobDefinition],
) -> tuple[BlockReason | None, list[str]]:
    """Decide whether ``job`` may start given its dependencies' current status.

    A dependency is satisfied when it succeeded, or when it failed and is
    marked ``allow_failure``. Returns ``(None, [])`` when every dependency is
    satisfied, otherwise the reason and the offending dependencies.

    A skipped dependency that declares artifacts leaves its consumer without
    an input, so the consumer is ``artifact_unavailable`` (a failure) rather
    than ``dependency_skipped``. Precedence: failed, artifact unavailable,
    pending, skipped.
    """
    failed: list[str] = []
    pending: list[str] = []
    skipped: list[str] = []

    for dep in job.dependencies:
        run = job_runs.get(dep)
        definition = definitions.get(dep)
        allow_failure = definition.allow_failure if definition else False
        if run is None:
            skipped.append(dep)
            continue

        status = run.status
        if status == JobStatus.SUCCESS:
            continue
        if status == JobStatus.FAILED:
            if not allow_failure:
                failed.append(dep)
            continue
        if status == JobStatus.BLOCKED:
            if run.block_reason and run.block_reason.is_failure and not allow_failure:
                failed.append(dep)
            else:
                skipped.append(dep)
            continue
        if status in _PENDING_STATUSES:
            pending.append(dep)
            continue
        # SKIPPED, CANCELLED
        skipped.append(dep)

    if failed:
        return BlockReason.DEPENDENCY_FAILED, failed
    unavailable = [dep for dep in skipped if _declares_artifacts(definitions.get(dep))]
    if unavailable:
        return BlockReason.ARTIFACT_UNAVAILABLE, unavailable
    if pending:
        return BlockReason.DEPENDENCY_PENDING, pending
    if skipped:
        return BlockReason.DEPENDENCY_SKIPPED, skipped
    return None, []


def _declares_artifacts(definition: JobDefinition | None) -> bool:
    return definition is not None and definition.artifacts is not None
