"""Pipeline controller — drives one pipeline run stage by stage.

Key exports:
    PipelineController — run_pipeline(), start_pipeline(), approve(), reject(),
        cancel(), wait(), result(), forget().

Scheduling model:

    - stages run strictly in order
    - inside a stage every runnable job gets its own task; a job first waits
      until each dependency has settled, then either blocks (see
      ``resolve_blocking``) or runs through the ``JobExecutor``
    - the stage barrier waits for every non-manual job; manual jobs hold it
      only until they park, except under the ``wait`` manual policy where
      they hold it until they finish
    - once a stage ends with a failure, every job of the later stages is
      blocked with ``stage_failed``

The verdict is recomputed on every job status change and persisted when a
``RunRegistry`` is attached.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from collections.abc import Awaitable, Iterable, Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path

from convoy.pipeline.artifacts import ArtifactStore, Clock
from convoy.pipeline.context import PipelineContext
from convoy.pipeline.environments import EnvironmentTracker
from convoy.pipeline.executor import ApprovalGate, JobExecutor
from convoy.pipeline.models import (
    DEFAULT_STAGES,
    BlockReason,
    JobDefinition,
    JobRun,
    JobStatus,
    ManualGatePolicy,
    PipelineResult,
    PipelineRun,
    PipelineStatus,
)
from convoy.pipeline.planner import PipelineGraph, PipelinePlan, StagePlan, resolve_blocking
from convoy.pipeline.registry import RunRegistry

logger = logging.getLogger("convoy.pipeline.engine")


# ── Run State ────────────────────────────────────────────────────────────────


class _RunState:
    """Everything the controller tracks for one live run."""

    def __init__(
        self,
        run: PipelineRun,
        graph: PipelineGraph,
        plan: PipelinePlan,
        job_runs: dict[str, JobRun],
    ):
        self.run = run
        self.graph = graph
        self.plan = plan
        self.definitions = graph.jobs
        self.job_runs = job_runs
        self.gates: dict[str, ApprovalGate] = {
            name: ApprovalGate(name) for name, job in self.definitions.items() if job.is_manual
        }
        self.settled: dict[str, asyncio.Event] = {name: asyncio.Event() for name in job_runs}
        self.tasks: dict[str, asyncio.Task] = {}
        self.driver: asyncio.Task | None = None
        self.scheduled = asyncio.Event()
        self.cancelled = False

    def active_tasks(self) -> list[asyncio.Task]:
        """Job tasks still doing (or about to do) work, excluding parked manual jobs."""
        return [
            task
            for name, task in self.tasks.items()
            if not task.done() and self.job_runs[name].status != JobStatus.MANUAL
        ]


# ── Pipeline Controller ──────────────────────────────────────────────────────


class PipelineController:
    """Top-level driver for pipeline runs.

    Usage::

        controller = PipelineController(max_runners=4)
        result = await controller.run_pipeline(jobs, PipelineContext.for_push("master"))
        if result.awaiting_approval:
            await controller.approve(result.run_id, "deploy", actor="ops")
            result = await controller.wait(result.run_id)
    """

    def __init__(
        self,
        store: ArtifactStore | None = None,
        registry: RunRegistry | None = None,
        *,
        max_runners: int = 4,
        manual_policy: ManualGatePolicy = ManualGatePolicy.PROCEED,
        workdir: Path | None = None,
        environments: EnvironmentTracker | None = None,
        clock: Clock | None = None,
    ):
        self._store = store or ArtifactStore(clock)
        self._registry = registry
        self._environments = environments or EnvironmentTracker(registry)
        self._executor = JobExecutor(
            self._store, self._environments, max_runners=max_runners, workdir=workdir
        )
        self.manual_policy = ManualGatePolicy(manual_policy)
        self._runs: dict[str, _RunState] = {}

    @property
    def store(self) -> ArtifactStore:
        return self._store

    @property
    def environments(self) -> EnvironmentTracker:
        return self._environments

    async def initialize(self) -> None:
        """Load persisted environment state."""
        await self._environments.load()

    # ── Starting runs ────────────────────────────────────────────────────────

    async def run_pipeline(
        self,
        jobs: Iterable[JobDefinition],
        context: PipelineContext,
        *,
        stages: Sequence[str] | None = None,
        name: str = "pipeline",
    ) -> PipelineResult:
        """Run every stage and return once scheduling is done.

        Manual jobs still awaiting approval are reported in
        ``result.awaiting_approval``; use ``approve()`` and ``wait()`` to
        finish them.
        """
        run_id = await self.start_pipeline(jobs, context, stages=stages, name=name)
        await self._await_driver(self._runs[run_id])
        return self.result(run_id)

    async def start_pipeline(
        self,
        jobs: Iterable[JobDefinition],
        context: PipelineContext,
        *,
        stages: Sequence[str] | None = None,
        name: str = "pipeline",
    ) -> str:
        """Validate, plan and launch a run in the background. Returns the run id.

        Raises PipelineGraphError when the job graph is invalid.
        """
        stage_names = list(stages) if stages else list(DEFAULT_STAGES)
        graph = PipelineGraph.build(stage_names, jobs)
        plan = graph.plan(context)

        run_id = f"run-{uuid.uuid4().hex[:12]}"
        now = _utcnow()
        run = PipelineRun(
            run_id=run_id,
            pipeline_name=name,
            context=context,
            stages=stage_names,
            created_at=now,
        )

        definitions = graph.jobs
        job_runs: dict[str, JobRun] = {}
        for stage_plan in plan.stages:
            for job_name in [*stage_plan.jobs, *stage_plan.skipped]:
                job = definitions[job_name]
                job_runs[job_name] = JobRun(
                    run_id=run_id,
                    job_name=job_name,
                    stage=job.stage,
                    status=JobStatus.SKIPPED if job_name in stage_plan.skipped else JobStatus.CREATED,
                    when=job.when,
                    allow_failure=job.allow_failure,
                    max_attempts=job.max_attempts,
                    environment=job.environment.name if job.environment else None,
                    created_at=now,
                )

        state = _RunState(run, graph, plan, job_runs)
        for job_name in plan.skipped:
            state.settled[job_name].set()
        self._runs[run_id] = state

        if self._registry:
            await self._registry.create_pipeline_run(run)
            for job_run in job_runs.values():
                await self._registry.upsert_job_run(job_run)

        logger.info(
            "Started pipeline '%s' run %s for ref %s (%d runnable, %d skipped)",
            name,
            run_id,
            context.ref,
            len(plan.runnable),
            len(plan.skipped),
        )
        state.driver = asyncio.create_task(self._drive(state), name=f"convoy-{run_id}")
        return run_id

    # ── Driving stages ───────────────────────────────────────────────────────

    async def _drive(self, state: _RunState) -> None:
        run = state.run
        run.status = PipelineStatus.RUNNING
        run.started_at = _utcnow()
        await self._persist_run(state)

        failed_stage: str | None = None
        try:
            for stage_plan in state.plan.stages:
                self._store.expire()
                if failed_stage is not None:
                    await self._block_stage(state, stage_plan, failed_stage)
                    continue
                await self._run_stage(state, stage_plan)
                if any(state.job_runs[name].counts_as_failure for name in stage_plan.jobs):
                    failed_stage = stage_plan.name
                    logger.warning(
                        "Stage '%s' failed in run %s; later stages will not run",
                        stage_plan.name,
                        run.run_id,
                    )
        finally:
            state.scheduled.set()
        await self._refresh_verdict(state)

    async def _run_stage(self, state: _RunState, stage_plan: StagePlan) -> None:
        if stage_plan.is_empty:
            return
        logger.info("Run %s: stage '%s' started (%s)", state.run.run_id, stage_plan.name, ", ".join(stage_plan.jobs))

        barrier: list[Awaitable[object]] = []
        for job_name in stage_plan.jobs:
            task = asyncio.create_task(
                self._run_job(state, job_name), name=f"convoy-{state.run.run_id}-{job_name}"
            )
            state.tasks[job_name] = task
            job = state.definitions[job_name]
            # pre-approved manual jobs count like any other job
            if (
                not job.is_manual
                or self.manual_policy == ManualGatePolicy.WAIT
                or state.gates[job_name].decided
            ):
                barrier.append(task)
            else:
                # only until it parks (or blocks)
                barrier.append(state.settled[job_name].wait())

        await asyncio.gather(*barrier, return_exceptions=True)

    async def _block_stage(self, state: _RunState, stage_plan: StagePlan, failed_stage: str) -> None:
        for job_name in stage_plan.jobs:
            job_run = state.job_runs[job_name]
            job_run.status = JobStatus.BLOCKED
            job_run.block_reason = BlockReason.STAGE_FAILED
            job_run.blocked_by = []
            job_run.error_message = f"Earlier stage '{failed_stage}' failed"
            job_run.completed_at = _utcnow()
            await self._on_status(state, job_run)

    async def _run_job(self, state: _RunState, job_name: str) -> None:
        job = state.definitions[job_name]
        job_run = state.job_runs[job_name]

        for dep in job.dependencies:
            event = state.settled.get(dep)
            if event is not None:
                await event.wait()

        reason, blocked_by = resolve_blocking(job, state.job_runs, state.definitions)
        if reason is not None:
            job_run.status = JobStatus.BLOCKED
            job_run.block_reason = reason
            job_run.blocked_by = blocked_by
            job_run.error_message = f"{reason.value}: {', '.join(blocked_by)}"
            job_run.completed_at = _utcnow()
            logger.info("Job '%s' blocked (%s) in run %s", job_name, job_run.error_message, state.run.run_id)
            await self._on_status(state, job_run)
            return

        try:
            await self._executor.execute(
                job,
                job_run,
                context=state.run.context,
                definitions=state.definitions,
                gate=state.gates.get(job_name),
                on_status=functools.partial(self._on_status, state),
            )
        except asyncio.CancelledError:
            state.settled[job_name].set()
            raise
        except Exception as exc:
            logger.exception("Job '%s' crashed in run %s", job_name, state.run.run_id)
            job_run.status = JobStatus.FAILED
            job_run.error_message = f"Internal error: {exc}"
            job_run.completed_at = _utcnow()
            await self._on_status(state, job_run)

    async def _on_status(self, state: _RunState, job_run: JobRun) -> None:
        settled = job_run.is_terminal or (
            job_run.status == JobStatus.MANUAL and self.manual_policy == ManualGatePolicy.PROCEED
        )
        if settled:
            state.settled[job_run.job_name].set()
        if self._registry:
            await self._registry.upsert_job_run(job_run)
        await self._refresh_verdict(state)

    # ── Verdict ──────────────────────────────────────────────────────────────

    def _compute_status(self, state: _RunState) -> PipelineStatus:
        if state.cancelled:
            return PipelineStatus.CANCELLED
        if not state.scheduled.is_set():
            return PipelineStatus.RUNNING
        if any(jr.status in (JobStatus.CREATED, JobStatus.RUNNING) for jr in state.job_runs.values()):
            return PipelineStatus.RUNNING
        if any(jr.counts_as_failure for jr in state.job_runs.values()):
            return PipelineStatus.FAILED
        return PipelineStatus.SUCCESS

    async def _refresh_verdict(self, state: _RunState) -> None:
        status = self._compute_status(state)
        run = state.run
        if status == run.status:
            return
        run.status = status
        if status in (PipelineStatus.SUCCESS, PipelineStatus.FAILED, PipelineStatus.CANCELLED):
            run.completed_at = _utcnow()
            awaiting = [n for n, jr in state.job_runs.items() if jr.status == JobStatus.MANUAL]
            logger.info(
                "Pipeline '%s' run %s %s%s",
                run.pipeline_name,
                run.run_id,
                status.value,
                f" ({len(awaiting)} awaiting approval)" if awaiting else "",
            )
        else:
            run.completed_at = None
        await self._persist_run(state)

    async def _persist_run(self, state: _RunState) -> None:
        if self._registry:
            await self._registry.update_pipeline_run(state.run)

    # ── External signals ─────────────────────────────────────────────────────

    async def approve(self, run_id: str, job_name: str, actor: str = "") -> bool:
        """Approve a manual job. Approving twice is a no-op.

        Returns False when the job was already rejected or can no longer run.
        Raises KeyError for an unknown run or job, ValueError for a job that
        is not manual.
        """
        state, job_run, gate = self._manual_job(run_id, job_name)
        if gate.decided:
            return gate.approved is True
        if job_run.is_terminal:
            return False
        gate.approve(actor)
        job_run.approved_by = actor or None
        if job_run.status == JobStatus.MANUAL:
            # approved, pending execution
            job_run.status = JobStatus.CREATED
            await self._on_status(state, job_run)
        return True

    async def reject(self, run_id: str, job_name: str, actor: str = "", reason: str = "") -> bool:
        """Reject a manual job; it ends FAILED without retry."""
        state, job_run, gate = self._manual_job(run_id, job_name)
        if gate.decided:
            return gate.approved is False
        if job_run.is_terminal:
            return False
        gate.reject(actor, reason)
        task = state.tasks.get(job_name)
        if job_run.status == JobStatus.MANUAL and task is not None:
            # the parked task records the rejection as soon as it wakes
            await asyncio.wait([task])
        return True

    async def cancel(self, run_id: str) -> bool:
        """Abort a run: cancel every job task and mark non-terminal jobs CANCELLED.

        Published artifacts are kept until they expire. Returns False when
        there was nothing left to cancel.
        """
        state = self._get(run_id)
        pending_jobs = [jr for jr in state.job_runs.values() if not jr.is_terminal]
        driver_running = state.driver is not None and not state.driver.done()
        if state.cancelled or (not pending_jobs and not driver_running):
            return False

        state.cancelled = True
        to_cancel = [t for t in state.tasks.values() if not t.done()]
        if driver_running:
            to_cancel.insert(0, state.driver)
        for task in to_cancel:
            task.cancel()
        await asyncio.gather(*to_cancel, return_exceptions=True)

        now = _utcnow()
        for job_run in state.job_runs.values():
            if not job_run.is_terminal:
                job_run.status = JobStatus.CANCELLED
                job_run.completed_at = now
                job_run.error_message = job_run.error_message or "Pipeline cancelled"
            state.settled[job_run.job_name].set()
            if self._registry:
                await self._registry.upsert_job_run(job_run)
        state.scheduled.set()
        logger.info("Pipeline run %s cancelled", run_id)
        await self._refresh_verdict(state)
        return True

    async def wait(self, run_id: str, timeout: float | None = None) -> PipelineResult:
        """Wait for scheduling and for every approved manual job to finish.

        Jobs still parked awaiting approval are not waited for.
        """
        state = self._get(run_id)

        async def _wait_all() -> None:
            await self._await_driver(state)
            while True:
                active = state.active_tasks()
                if not active:
                    return
                await asyncio.wait(active)

        await asyncio.wait_for(_wait_all(), timeout=timeout)
        return self.result(run_id)

    # ── Inspection ───────────────────────────────────────────────────────────

    def result(self, run_id: str) -> PipelineResult:
        """Snapshot of a run: verdict, per-job status and live artifacts."""
        state = self._get(run_id)
        return PipelineResult(
            run_id=run_id,
            pipeline_name=state.run.pipeline_name,
            status=state.run.status,
            jobs={name: jr.model_copy() for name, jr in state.job_runs.items()},
            artifacts=self._store.for_run(run_id),
        )

    def has_run(self, run_id: str) -> bool:
        return run_id in self._runs

    def list_runs(self) -> list[PipelineRun]:
        return [state.run.model_copy() for state in self._runs.values()]

    def plan_of(self, run_id: str) -> PipelinePlan:
        return self._get(run_id).plan

    async def forget(self, run_id: str) -> bool:
        """Drop a run from memory, cancelling anything still parked or running."""
        state = self._runs.get(run_id)
        if state is None:
            return False
        if any(not t.done() for t in state.tasks.values()) or (
            state.driver is not None and not state.driver.done()
        ):
            await self.cancel(run_id)
        del self._runs[run_id]
        return True

    async def prune_finished(self, older_than: timedelta, now: datetime | None = None) -> list[str]:
        """Forget settled runs that completed more than ``older_than`` ago.

        Runs with a job still awaiting approval are kept, as are their
        artifacts. Returns the forgotten run ids.
        """
        cutoff = (now or _utcnow()) - older_than
        pruned = []
        for run_id, state in list(self._runs.items()):
            run = state.run
            if run.status not in (PipelineStatus.SUCCESS, PipelineStatus.FAILED, PipelineStatus.CANCELLED):
                continue
            if run.completed_at is None or run.completed_at > cutoff:
                continue
            if any(jr.status == JobStatus.MANUAL for jr in state.job_runs.values()):
                continue
            await self.forget(run_id)
            self._store.purge_run(run_id)
            pruned.append(run_id)
        if pruned:
            logger.info("Forgot %d finished run(s)", len(pruned))
        return pruned

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _await_driver(self, state: _RunState) -> None:
        driver = state.driver
        if driver is None:
            return
        await asyncio.wait([driver])
        if not driver.cancelled() and driver.exception() is not None:
            raise driver.exception()

    def _get(self, run_id: str) -> _RunState:
        state = self._runs.get(run_id)
        if state is None:
            msg = f"Unknown pipeline run '{run_id}'"
            raise KeyError(msg)
        return state

    def _manual_job(self, run_id: str, job_name: str) -> tuple[_RunState, JobRun, ApprovalGate]:
        state = self._get(run_id)
        job_run = state.job_runs.get(job_name)
        if job_run is None:
            msg = f"Unknown job '{job_name}' in run '{run_id}'"
            raise KeyError(msg)
        gate = state.gates.get(job_name)
        if gate is None:
            msg = f"Job '{job_name}' is not a manual job"
            raise ValueError(msg)
        return state, job_run, gate


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
