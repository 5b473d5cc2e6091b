"""Execution engine — drives one job from CREATED to a terminal status.

Per job:

    1. manual gate      ``when: manual`` parks the job in MANUAL on its
                        ApprovalGate, outside the runner pool
    2. inputs           artifacts of declared dependencies are read from the
                        store; missing or expired ones block the job
    3. environment      deploys to one environment run one at a time;
                        ``skip_if_current`` short-circuits a no-op redeploy
    4. attempts         up to ``1 + retry`` body runs inside the runner
                        semaphore; non-zero exit, exception or timeout fails
                        the attempt
    5. publish          artifact blob and deployed version recorded on success

Every status change is reported through the ``on_status`` callback.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from convoy.pipeline.artifacts import ArtifactStore
from convoy.pipeline.bodies import BodyResult, JobInvocation, invoke_body, resolve_body
from convoy.pipeline.context import DEPLOY_TAG, PipelineContext
from convoy.pipeline.environments import EnvironmentTracker
from convoy.pipeline.errors import (
    ApprovalRejected,
    ArtifactExpired,
    ArtifactNotFound,
    DependencyUnsatisfied,
    ExecutionFailure,
    PipelineConfigError,
    PipelineError,
)
from convoy.pipeline.models import BlockReason, JobDefinition, JobRun, JobStatus
from convoy.pipeline.templates import VariableExpander, build_variables

logger = logging.getLogger("convoy.pipeline.executor")

StatusCallback = Callable[[JobRun], Awaitable[None]]

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


# ── Approval Gate ────────────────────────────────────────────────────────────


class ApprovalGate:
    """One-shot approve/reject signal for a manual job.

    The first decision wins. Repeating it is a no-op that returns True;
    contradicting it returns False and changes nothing.
    """

    def __init__(self, job_name: str):
        self.job_name = job_name
        self.approved: bool | None = None
        self.actor: str = ""
        self.reason: str = ""
        self._event = asyncio.Event()

    @property
    def decided(self) -> bool:
        return self.approved is not None

    def approve(self, actor: str = "") -> bool:
        if self.decided:
            return self.approved is True
        self.approved = True
        self.actor = actor
        self._event.set()
        logger.info("Manual job '%s' approved by %s", self.job_name, actor or "unknown")
        return True

    def reject(self, actor: str = "", reason: str = "") -> bool:
        if self.decided:
            return self.approved is False
        self.approved = False
        self.actor = actor
        self.reason = reason
        self._event.set()
        logger.warning("Manual job '%s' rejected by %s: %s", self.job_name, actor or "unknown", reason)
        return True

    async def wait(self) -> bool:
        """Block until a decision arrives; returns True when approved."""
        await self._event.wait()
        return bool(self.approved)


# ── Job Executor ─────────────────────────────────────────────────────────────


class JobExecutor:
    """Runs job bodies with retries inside a bounded runner pool.

    Usage::

        executor = JobExecutor(store, max_runners=4)
        await executor.execute(job, job_run, context=ctx, definitions=defs)
    """

    def __init__(
        self,
        store: ArtifactStore,
        environments: EnvironmentTracker | None = None,
        *,
        max_runners: int = 4,
        workdir: Path | None = None,
    ):
        if max_runners < 1:
            msg = f"max_runners must be at least 1, got {max_runners}"
            raise ValueError(msg)
        self._store = store
        self._environments = environments or EnvironmentTracker()
        self._semaphore = asyncio.Semaphore(max_runners)
        self._workdir = workdir
        self.max_runners = max_runners

    @property
    def environments(self) -> EnvironmentTracker:
        return self._environments

    async def execute(
        self,
        job: JobDefinition,
        job_run: JobRun,
        *,
        context: PipelineContext,
        definitions: Mapping[str, JobDefinition],
        gate: ApprovalGate | None = None,
        on_status: StatusCallback | None = None,
    ) -> JobRun:
        """Drive ``job_run`` to a terminal status and return it.

        Cancellation marks the job CANCELLED and propagates.
        """
        try:
            await self._execute(job, job_run, context, definitions, gate, on_status)
        except asyncio.CancelledError:
            job_run.status = JobStatus.CANCELLED
            job_run.completed_at = _utcnow()
            job_run.error_message = job_run.error_message or "Cancelled"
            logger.info("Job '%s' cancelled (run %s)", job.name, job_run.run_id)
            raise
        return job_run

    async def _execute(
        self,
        job: JobDefinition,
        job_run: JobRun,
        context: PipelineContext,
        definitions: Mapping[str, JobDefinition],
        gate: ApprovalGate | None,
        on_status: StatusCallback | None,
    ) -> None:
        run_id = job_run.run_id
        job_run.max_attempts = job.max_attempts
        if job.environment:
            job_run.environment = job.environment.name

        # 1. Manual gate
        if job.is_manual:
            gate = gate or ApprovalGate(job.name)
            if not gate.decided:
                job_run.status = JobStatus.MANUAL
                await _notify(on_status, job_run)
                logger.info("Job '%s' awaiting approval (run %s)", job.name, run_id)
            if not await gate.wait():
                rejection = ApprovalRejected(job.name, gate.actor, gate.reason)
                await self._finish(job_run, JobStatus.FAILED, on_status, error=str(rejection))
                return
            job_run.approved_by = gate.actor or None
            job_run.status = JobStatus.CREATED
            await _notify(on_status, job_run)

        try:
            body = resolve_body(job)
        except PipelineConfigError as exc:
            await self._finish(job_run, JobStatus.FAILED, on_status, error=str(exc))
            return

        # 2. Inputs
        try:
            inputs = self.collect_inputs(job, run_id, definitions)
        except DependencyUnsatisfied as exc:
            job_run.block_reason = BlockReason.ARTIFACT_UNAVAILABLE
            job_run.blocked_by = [exc.dependency]
            await self._finish(job_run, JobStatus.BLOCKED, on_status, error=str(exc))
            return

        variables = self.job_variables(job, context, run_id)

        # 3. Environment
        lock: Any = contextlib.nullcontext()
        if job.environment:
            lock = self._environments.lock(job.environment.name)
        async with lock:
            if job.environment and job.environment.skip_if_current:
                target = variables.get(DEPLOY_TAG) or context.commit_sha
                if self._environments.is_current(job.environment.name, target):
                    logger.info(
                        "Job '%s': environment %s already at %s, skipping deploy",
                        job.name,
                        job.environment.name,
                        target,
                    )
                    job_run.output = f"Environment {job.environment.name} already at {target}"
                    await self._finish(job_run, JobStatus.SUCCESS, on_status)
                    return

            # 4. Attempts
            result = await self._run_attempts(job, job_run, body, context, variables, inputs, on_status)
            if result is None:
                return

            # 5. Publish
            try:
                await self._publish(job, job_run, context, variables, result)
            except PipelineError as exc:
                logger.exception("Job '%s' succeeded but its outputs could not be recorded", job.name)
                await self._finish(job_run, JobStatus.FAILED, on_status, error=str(exc))
                return

        await self._finish(job_run, JobStatus.SUCCESS, on_status)

    async def _run_attempts(
        self,
        job: JobDefinition,
        job_run: JobRun,
        body: Callable[..., Any],
        context: PipelineContext,
        variables: dict[str, str],
        inputs: dict[str, bytes],
        on_status: StatusCallback | None,
    ) -> BodyResult | None:
        """Run the body until it succeeds or the retry budget is spent.

        Returns the successful result, or None after marking the job FAILED.
        """
        timeout = job.parse_timeout_seconds()
        failure: ExecutionFailure | None = None

        for attempt in range(1, job.max_attempts + 1):
            async with self._semaphore:
                job_run.attempt = attempt
                job_run.status = JobStatus.RUNNING
                job_run.started_at = job_run.started_at or _utcnow()
                job_run.exit_code = None
                await _notify(on_status, job_run)
                logger.info(
                    "Job '%s' attempt %d/%d started (run %s)",
                    job.name,
                    attempt,
                    job.max_attempts,
                    job_run.run_id,
                )

                invocation = JobInvocation(
                    job=job,
                    context=context,
                    run_id=job_run.run_id,
                    attempt=attempt,
                    variables=dict(variables),
                    inputs=dict(inputs),
                    workdir=self._job_workdir(job_run.run_id, job.name),
                    environment=self._environments.get(job.environment.name) if job.environment else None,
                )
                try:
                    result = await self._invoke(body, invocation, timeout)
                    if not result.success:
                        failure = ExecutionFailure(
                            job.name, attempt, f"exit code {result.exit_code}", result.exit_code
                        )
                except ExecutionFailure as exc:
                    result = None
                    failure = exc
                except Exception as exc:
                    logger.exception("Job '%s' attempt %d raised", job.name, attempt)
                    result = None
                    failure = ExecutionFailure(job.name, attempt, f"{type(exc).__name__}: {exc}")

            if result is not None:
                job_run.output = result.output
                job_run.exit_code = result.exit_code
            if result is not None and result.success:
                job_run.error_message = None
                return result

            job_run.exit_code = failure.exit_code if failure else job_run.exit_code
            job_run.error_message = str(failure)
            if attempt < job.max_attempts:
                logger.warning("%s; retrying (%d attempt(s) left)", failure, job.max_attempts - attempt)

        await self._finish(job_run, JobStatus.FAILED, on_status, error=job_run.error_message)
        return None

    async def _invoke(
        self, body: Callable[..., Any], invocation: JobInvocation, timeout: int | None
    ) -> BodyResult:
        if timeout is None:
            return await invoke_body(body, invocation)
        try:
            return await asyncio.wait_for(invoke_body(body, invocation), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ExecutionFailure(
                invocation.job_name, invocation.attempt, f"timed out after {timeout}s"
            ) from exc

    async def _publish(
        self,
        job: JobDefinition,
        job_run: JobRun,
        context: PipelineContext,
        variables: dict[str, str],
        result: BodyResult,
    ) -> None:
        if job.artifacts is not None:
            if result.artifact is None:
                logger.warning("Job '%s' declares artifacts but produced none", job.name)
            else:
                name = VariableExpander(variables).expand(job.artifacts.name)
                await self._store.put_async(
                    job.name, job_run.run_id, result.artifact, job.artifacts.ttl, name=name
                )

        if job.environment is not None:
            version = result.version or variables.get(DEPLOY_TAG) or context.commit_sha or None
            await self._environments.record_deployment(
                job.environment.name,
                version,
                run_id=job_run.run_id,
                job_name=job.name,
                url=job.environment.url,
            )

    async def _finish(
        self,
        job_run: JobRun,
        status: JobStatus,
        on_status: StatusCallback | None,
        *,
        error: str | None = None,
    ) -> None:
        job_run.status = status
        job_run.completed_at = _utcnow()
        if error is not None:
            job_run.error_message = error
        log = logger.info if status == JobStatus.SUCCESS else logger.warning
        log(
            "Job '%s' finished: %s%s (run %s)",
            job_run.job_name,
            status.value,
            f" ({job_run.error_message})" if status != JobStatus.SUCCESS and job_run.error_message else "",
            job_run.run_id,
        )
        await _notify(on_status, job_run)

    # ── Inputs / variables ───────────────────────────────────────────────────

    def collect_inputs(
        self,
        job: JobDefinition,
        run_id: str,
        definitions: Mapping[str, JobDefinition],
    ) -> dict[str, bytes]:
        """Artifacts of every dependency that declares some, by job name.

        Raises DependencyUnsatisfied when one is missing or expired.
        """
        inputs: dict[str, bytes] = {}
        for dep in job.dependencies:
            upstream = definitions.get(dep)
            if upstream is None or upstream.artifacts is None:
                continue
            try:
                inputs[dep] = self._store.get(dep, run_id)
            except ArtifactExpired as exc:
                raise DependencyUnsatisfied(job.name, dep, "artifact expired") from exc
            except ArtifactNotFound as exc:
                raise DependencyUnsatisfied(job.name, dep, "artifact not found") from exc
        return inputs

    @staticmethod
    def job_variables(job: JobDefinition, context: PipelineContext, run_id: str) -> dict[str, str]:
        """Predefined < global < job < trigger variables, each layer expanded."""
        predefined = context.predefined_variables(run_id)
        predefined["CI_JOB_NAME"] = job.name
        predefined["CI_JOB_STAGE"] = job.stage
        if job.environment:
            predefined["CI_ENVIRONMENT_NAME"] = job.environment.name
        if job.tags:
            predefined["CI_RUNNER_TAGS"] = ",".join(job.tags)
        return build_variables(
            [predefined, context.global_variables, job.variables, context.variables]
        )

    def _job_workdir(self, run_id: str, job_name: str) -> Path | None:
        if self._workdir is None:
            return None
        return self._workdir / run_id / _UNSAFE_PATH_CHARS.sub("_", job_name)


async def _notify(callback: StatusCallback | None, job_run: JobRun) -> None:
    if callback is not None:
        await callback(job_run)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
