"""Tests for the PipelineController — staged execution of a whole pipeline.

Covers:
- Verdict rules (allow_failure, failure-blocking, stage_failed)
- Stage barrier ordering
- Trigger rules and DEPLOY_TAG
- Artifact hand-off and retention
- Retries
- Manual gates (proceed / wait policies, approve, reject, pre-approval)
- Cancellation, persistence, bookkeeping
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from convoy.pipeline.context import PipelineContext
from convoy.pipeline.engine import PipelineController
from convoy.pipeline.errors import ArtifactExpired, PipelineGraphError
from convoy.pipeline.models import (
    BlockReason,
    JobDefinition,
    JobStatus,
    ManualGatePolicy,
    PipelineStatus,
)
from convoy.pipeline.registry import open_registry

STAGES = ["test", "build", "publish", "kubernetes"]
T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


# ── Helpers ──────────────────────────────────────────────────────────────────


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def job(name: str, stage: str, body=None, **overrides) -> JobDefinition:
    return JobDefinition(name=name, stage=stage, body=body or (lambda inv: 0), **overrides)


def fails(inv):
    return 1


def scripted(*exit_codes):
    calls: list[int] = []

    def body(invocation):
        calls.append(invocation.attempt)
        return exit_codes[len(calls) - 1]

    body.calls = calls
    return body


async def wait_for_status(controller, run_id, job_name, status, timeout: float = 2.0):
    async def _poll():
        while controller.result(run_id).status_of(job_name) != status:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def controller():
    return PipelineController(max_runners=4)


@pytest.fixture
def master():
    return PipelineContext.for_push("master", commit_sha="abc123", project_name="substrate")


async def run(controller, jobs, ctx, stages=STAGES):
    return await controller.run_pipeline(jobs, ctx, stages=stages, name="substrate")


# ── Verdict ──────────────────────────────────────────────────────────────────


class TestVerdict:
    async def test_all_success(self, controller, master):
        result = await run(controller, [job("unit", "test"), job("build", "build")], master)
        assert result.status == PipelineStatus.SUCCESS
        assert result.success
        assert {name: jr.status for name, jr in result.jobs.items()} == {
            "unit": JobStatus.SUCCESS,
            "build": JobStatus.SUCCESS,
        }

    async def test_allow_failure_does_not_flip_verdict(self, controller, master):
        result = await run(
            controller,
            [
                job("check-line-width", "test", fails, allow_failure=True),
                job("unit", "test"),
                job("build", "build"),
            ],
            master,
        )
        assert result.status == PipelineStatus.SUCCESS
        assert result.status_of("check-line-width") == JobStatus.FAILED
        assert result.allowed_failures == ["check-line-width"]
        # the next stage still ran
        assert result.status_of("build") == JobStatus.SUCCESS

    async def test_failure_is_partial_within_stage(self, controller, master):
        result = await run(
            controller,
            [
                job("build", "build", fails),
                job("package", "build", dependencies=["build"]),
                job("docs", "build"),
                job("publish", "publish"),
            ],
            master,
        )
        assert result.status == PipelineStatus.FAILED
        assert result.status_of("build") == JobStatus.FAILED
        assert result.jobs["package"].block_reason == BlockReason.DEPENDENCY_FAILED
        assert result.status_of("docs") == JobStatus.SUCCESS
        publish = result.jobs["publish"]
        assert publish.status == JobStatus.BLOCKED
        assert publish.block_reason == BlockReason.STAGE_FAILED
        assert set(result.failed_jobs) == {"build", "package", "publish"}

    async def test_dependency_on_allowed_failure_runs(self, controller, master):
        result = await run(
            controller,
            [
                job("flaky", "test", fails, allow_failure=True),
                job("build", "build", dependencies=["flaky"]),
            ],
            master,
        )
        assert result.status_of("build") == JobStatus.SUCCESS

    async def test_invalid_graph_raises(self, controller, master):
        with pytest.raises(PipelineGraphError):
            await run(controller, [job("ship", "nowhere")], master)


# ── Ordering ─────────────────────────────────────────────────────────────────


class TestStageOrdering:
    async def test_barrier_between_stages(self, controller, master):
        log: list[tuple[str, str]] = []

        def timed(name: str, delay: float):
            async def body(invocation):
                log.append(("start", name))
                await asyncio.sleep(delay)
                log.append(("end", name))

            return body

        await run(
            controller,
            [
                job("test-a", "test", timed("test-a", 0.03)),
                job("test-b", "test", timed("test-b", 0.01)),
                job("build", "build", timed("build", 0)),
            ],
            master,
        )
        build_start = log.index(("start", "build"))
        assert log.index(("end", "test-a")) < build_start
        assert log.index(("end", "test-b")) < build_start

    async def test_independent_jobs_run_concurrently(self, controller, master):
        started = asyncio.Event()

        async def first(invocation):
            # only finishes if the second job runs meanwhile
            await asyncio.wait_for(started.wait(), 1)

        async def second(invocation):
            started.set()

        result = await run(controller, [job("a", "test", first), job("b", "test", second)], master)
        assert result.success

    async def test_same_stage_dependency_waits(self, controller, master):
        log: list[str] = []

        async def slow(invocation):
            await asyncio.sleep(0.02)
            log.append("fmt")

        def after(invocation):
            log.append("lint")

        await run(
            controller,
            [job("lint", "test", after, dependencies=["fmt"]), job("fmt", "test", slow)],
            master,
        )
        assert log == ["fmt", "lint"]


# ── Trigger rules ────────────────────────────────────────────────────────────


class TestTriggerRules:
    def _jobs(self):
        return [
            job(
                "build-linux-release",
                "build",
                only=["master", "tags", "web"],
                **{"except": {"variables": ["$DEPLOY_TAG"]}},
            ),
            job("publish-docker", "publish", dependencies=["build-linux-release"]),
            job("deploy-k8s", "kubernetes", only={"variables": ["$DEPLOY_TAG"]}),
        ]

    async def test_deploy_tag_skips_build(self, controller):
        ctx = PipelineContext.for_web("master", {"DEPLOY_TAG": "v1.2.0"})
        result = await run(controller, self._jobs(), ctx)
        assert result.status_of("build-linux-release") == JobStatus.SKIPPED
        publish = result.jobs["publish-docker"]
        assert publish.status == JobStatus.BLOCKED
        assert publish.block_reason == BlockReason.DEPENDENCY_SKIPPED
        assert result.status_of("deploy-k8s") == JobStatus.SUCCESS
        assert result.status == PipelineStatus.SUCCESS

    async def test_plain_push_builds(self, controller, master):
        result = await run(controller, self._jobs(), master)
        assert result.status_of("build-linux-release") == JobStatus.SUCCESS
        assert result.status_of("publish-docker") == JobStatus.SUCCESS
        assert result.status_of("deploy-k8s") == JobStatus.SKIPPED

    async def test_feature_branch_skips(self, controller):
        result = await run(controller, self._jobs(), PipelineContext.for_push("feature/x"))
        assert result.status_of("build-linux-release") == JobStatus.SKIPPED

    async def test_malformed_rule_skips(self, controller, master):
        result = await run(controller, [job("odd", "test", only=["/[bad/"])], master)
        assert result.status_of("odd") == JobStatus.SKIPPED


# ── Artifacts ────────────────────────────────────────────────────────────────


class TestArtifacts:
    async def test_build_output_reaches_publish(self, controller, master):
        received = {}

        def publish(invocation):
            received.update(invocation.inputs)

        result = await run(
            controller,
            [
                job("test", "test"),
                job("build", "build", lambda inv: b"polkadot-binary", artifacts={"paths": ["artifacts/"]}),
                job("publish", "publish", publish, dependencies=["build"]),
            ],
            master,
        )
        assert result.status == PipelineStatus.SUCCESS
        assert all(jr.status == JobStatus.SUCCESS for jr in result.jobs.values())
        assert received == {"build": b"polkadot-binary"}
        assert result.artifacts["build"].name == "build_master"

    async def test_seven_day_retention(self, master):
        clock = FakeClock()
        controller = PipelineController(clock=clock)
        result = await run(
            controller,
            [job("build", "build", lambda inv: b"x", artifacts={"expire_in": "7 days"})],
            master,
        )
        assert result.artifacts["build"].expires_at == T0 + timedelta(days=7)
        assert controller.store.get("build", result.run_id) == b"x"

        clock.advance(timedelta(days=7))
        with pytest.raises(ArtifactExpired):
            controller.store.get("build", result.run_id)
        assert controller.result(result.run_id).artifacts == {}

    async def test_consumer_of_skipped_producer_fails(self, controller, master):
        jobs = [
            job("build", "build", lambda inv: b"x", artifacts={}, only=["tags"]),
            job("publish", "publish", dependencies=["build"]),
        ]
        result = await run(controller, jobs, master)
        assert result.status_of("build") == JobStatus.SKIPPED
        publish = result.jobs["publish"]
        assert publish.status == JobStatus.BLOCKED
        assert publish.block_reason == BlockReason.ARTIFACT_UNAVAILABLE
        assert publish.blocked_by == ["build"]
        assert result.status == PipelineStatus.FAILED

    async def test_consumer_allowed_to_fail_keeps_verdict(self, controller, master):
        jobs = [
            job("build", "build", lambda inv: b"x", artifacts={}, only=["tags"]),
            job("publish", "publish", dependencies=["build"], allow_failure=True),
        ]
        result = await run(controller, jobs, master)
        assert result.jobs["publish"].block_reason == BlockReason.ARTIFACT_UNAVAILABLE
        assert result.allowed_failures == ["publish"]
        assert result.status == PipelineStatus.SUCCESS

    async def test_expired_input_blocks_consumer(self, master):
        clock = FakeClock()
        controller = PipelineController(clock=clock)

        def time_passes(invocation):
            clock.advance(timedelta(hours=2))

        result = await run(
            controller,
            [
                job("build", "build", lambda inv: b"x", artifacts={"expire_in": "1 hour"}),
                job("wait", "build", time_passes, dependencies=["build"]),
                job("publish", "publish", dependencies=["build"]),
            ],
            master,
        )
        publish = result.jobs["publish"]
        assert publish.status == JobStatus.BLOCKED
        assert publish.block_reason == BlockReason.ARTIFACT_UNAVAILABLE
        assert result.status == PipelineStatus.FAILED

    async def test_shell_jobs_hand_off_bundle(self, tmp_path, master):
        controller = PipelineController(workdir=tmp_path)
        result = await run(
            controller,
            [
                JobDefinition(
                    name="build",
                    stage="build",
                    script=["mkdir -p artifacts", 'echo "$CI_COMMIT_REF_NAME" > artifacts/ref.txt'],
                    artifacts={"paths": ["artifacts/"]},
                ),
                JobDefinition(
                    name="publish",
                    stage="publish",
                    dependencies=["build"],
                    script=['test "$(cat artifacts/ref.txt)" = master'],
                ),
            ],
            master,
        )
        assert result.status == PipelineStatus.SUCCESS, result.jobs["publish"].output


# ── Retries ──────────────────────────────────────────────────────────────────


class TestRetries:
    async def test_fail_fail_success_with_one_retry(self, controller, master):
        body = scripted(1, 1, 0)
        result = await run(controller, [job("build", "build", body, retry=1)], master)
        assert result.status_of("build") == JobStatus.FAILED
        assert result.jobs["build"].attempt == 2
        assert result.status == PipelineStatus.FAILED

    async def test_fail_success_with_one_retry(self, controller, master):
        body = scripted(1, 0)
        result = await run(controller, [job("build", "build", body, retry=1)], master)
        assert result.status_of("build") == JobStatus.SUCCESS
        assert result.jobs["build"].attempt == 2
        assert result.success


# ── Manual gates ─────────────────────────────────────────────────────────────


class TestManualGates:
    def _jobs(self, deploy_body=None):
        return [
            job("build", "build"),
            job("deploy", "publish", deploy_body, when="manual"),
        ]

    async def test_pending_gate_does_not_affect_verdict(self, controller, master):
        result = await run(controller, self._jobs(), master)
        assert result.status == PipelineStatus.SUCCESS
        assert result.awaiting_approval == ["deploy"]
        assert result.status_of("deploy") == JobStatus.MANUAL

    async def test_approval_runs_the_job(self, controller, master):
        result = await run(controller, self._jobs(), master)
        assert await controller.approve(result.run_id, "deploy", actor="ops")

        final = await controller.wait(result.run_id, timeout=2)
        assert final.status == PipelineStatus.SUCCESS
        assert final.awaiting_approval == []
        assert final.status_of("deploy") == JobStatus.SUCCESS
        assert final.jobs["deploy"].approved_by == "ops"

    async def test_approval_is_idempotent(self, controller, master):
        result = await run(controller, self._jobs(), master)
        assert await controller.approve(result.run_id, "deploy")
        assert await controller.approve(result.run_id, "deploy")
        final = await controller.wait(result.run_id, timeout=2)
        assert final.status_of("deploy") == JobStatus.SUCCESS

    async def test_failed_approved_job_fails_pipeline(self, controller, master):
        result = await run(controller, self._jobs(fails), master)
        await controller.approve(result.run_id, "deploy")
        final = await controller.wait(result.run_id, timeout=2)
        assert final.status == PipelineStatus.FAILED

    async def test_rejection(self, controller, master):
        result = await run(controller, self._jobs(), master)
        assert await controller.reject(result.run_id, "deploy", actor="ops", reason="freeze")

        final = controller.result(result.run_id)
        assert final.status_of("deploy") == JobStatus.FAILED
        assert "rejected by ops: freeze" in final.jobs["deploy"].error_message
        assert final.status == PipelineStatus.FAILED
        # the first decision wins
        assert not await controller.approve(result.run_id, "deploy")

    async def test_dependent_of_pending_gate_is_blocked(self, controller, master):
        result = await run(
            controller,
            [*self._jobs(), job("smoke", "kubernetes", dependencies=["deploy"])],
            master,
        )
        smoke = result.jobs["smoke"]
        assert smoke.status == JobStatus.BLOCKED
        assert smoke.block_reason == BlockReason.DEPENDENCY_PENDING
        assert result.status == PipelineStatus.SUCCESS

    async def test_manual_alone_in_last_stage(self, controller, master):
        result = await run(controller, [job("deploy", "kubernetes", when="manual")], master)
        assert result.status == PipelineStatus.SUCCESS
        assert result.awaiting_approval == ["deploy"]

    async def test_pre_approval(self, controller, master):
        run_id = await controller.start_pipeline(
            [*self._jobs(), job("smoke", "kubernetes", dependencies=["deploy"])], master, stages=STAGES
        )
        await controller.approve(run_id, "deploy", actor="cli")
        final = await controller.wait(run_id, timeout=2)
        assert final.status_of("deploy") == JobStatus.SUCCESS
        assert final.status_of("smoke") == JobStatus.SUCCESS

    async def test_wait_policy_holds_later_stages(self, master):
        controller = PipelineController(manual_policy=ManualGatePolicy.WAIT)
        run_id = await controller.start_pipeline(
            [job("deploy", "build", when="manual"), job("smoke", "publish")], master, stages=STAGES
        )
        await wait_for_status(controller, run_id, "deploy", JobStatus.MANUAL)
        await asyncio.sleep(0.02)
        assert controller.result(run_id).status_of("smoke") == JobStatus.CREATED
        assert controller.result(run_id).status == PipelineStatus.RUNNING

        await controller.approve(run_id, "deploy")
        final = await controller.wait(run_id, timeout=2)
        assert final.status_of("smoke") == JobStatus.SUCCESS
        assert final.status == PipelineStatus.SUCCESS

    async def test_unknown_and_non_manual_jobs(self, controller, master):
        result = await run(controller, self._jobs(), master)
        with pytest.raises(KeyError):
            await controller.approve("run-missing", "deploy")
        with pytest.raises(KeyError):
            await controller.approve(result.run_id, "ghost")
        with pytest.raises(ValueError, match="not a manual job"):
            await controller.approve(result.run_id, "build")


# ── Cancellation ─────────────────────────────────────────────────────────────


class TestCancel:
    async def test_cancel_running_pipeline(self, controller, master):
        async def hang(invocation):
            await asyncio.sleep(10)

        run_id = await controller.start_pipeline(
            [job("build", "build", hang), job("publish", "publish")], master, stages=STAGES
        )
        await wait_for_status(controller, run_id, "build", JobStatus.RUNNING)

        assert await controller.cancel(run_id)
        result = controller.result(run_id)
        assert result.status == PipelineStatus.CANCELLED
        assert result.status_of("build") == JobStatus.CANCELLED
        assert result.status_of("publish") == JobStatus.CANCELLED
        assert not await controller.cancel(run_id)

    async def test_cancel_keeps_artifacts(self, controller, master):
        async def hang(invocation):
            await asyncio.sleep(10)

        run_id = await controller.start_pipeline(
            [job("build", "build", lambda inv: b"x", artifacts={}), job("publish", "publish", hang)],
            master,
            stages=STAGES,
        )
        await wait_for_status(controller, run_id, "publish", JobStatus.RUNNING)
        await controller.cancel(run_id)
        assert controller.store.get("build", run_id) == b"x"

    async def test_cancel_parked_manual_job(self, controller, master):
        result = await run(controller, [job("deploy", "publish", when="manual")], master)
        assert await controller.cancel(result.run_id)
        assert controller.result(result.run_id).status_of("deploy") == JobStatus.CANCELLED

    async def test_cancel_finished_run(self, controller, master):
        result = await run(controller, [job("unit", "test")], master)
        assert not await controller.cancel(result.run_id)


# ── Persistence / bookkeeping ────────────────────────────────────────────────


class TestPersistence:
    async def test_statuses_persisted(self, tmp_path, master):
        registry = await open_registry(tmp_path / "runs.db")
        try:
            controller = PipelineController(registry=registry)
            await controller.initialize()
            result = await run(
                controller,
                [
                    job("unit", "test"),
                    job("deploy", "publish", environment="parity-prod"),
                ],
                master,
            )

            stored = await registry.get_pipeline_run(result.run_id)
            assert stored.status == PipelineStatus.SUCCESS
            assert stored.completed_at is not None
            jobs = {jr.job_name: jr for jr in await registry.get_job_runs(result.run_id)}
            assert jobs["unit"].status == JobStatus.SUCCESS
            assert jobs["deploy"].environment == "parity-prod"

            env = await registry.get_environment("parity-prod")
            assert env.last_deployed_version == "abc123"
        finally:
            await registry.close()

    async def test_environment_state_survives_restart(self, tmp_path):
        ctx = PipelineContext.for_web("master", {"DEPLOY_TAG": "v1.2.0"})
        calls = []

        def deploy(invocation):
            calls.append(invocation.run_id)

        jobs = [job("deploy", "kubernetes", deploy, environment={"name": "prod", "skip_if_current": True})]
        for _ in range(2):
            registry = await open_registry(tmp_path / "runs.db")
            try:
                controller = PipelineController(registry=registry)
                await controller.initialize()
                result = await run(controller, jobs, ctx)
                assert result.success
            finally:
                await registry.close()
        assert len(calls) == 1


class TestBookkeeping:
    async def test_list_and_forget(self, controller, master):
        result = await run(controller, [job("unit", "test")], master)
        assert [r.run_id for r in controller.list_runs()] == [result.run_id]
        assert controller.has_run(result.run_id)
        assert controller.plan_of(result.run_id).runnable == ["unit"]

        assert await controller.forget(result.run_id)
        assert not controller.has_run(result.run_id)
        assert not await controller.forget(result.run_id)

    async def test_prune_finished_runs(self, controller, master):
        done = await run(controller, [job("build", "build", lambda inv: b"x", artifacts={})], master)
        parked = await run(controller, [job("deploy", "publish", when="manual")], master)
        assert parked.awaiting_approval == ["deploy"]

        later = datetime.now(timezone.utc) + timedelta(hours=2)
        assert await controller.prune_finished(timedelta(days=1), now=later) == []

        pruned = await controller.prune_finished(timedelta(hours=1), now=later)
        assert pruned == [done.run_id]
        assert not controller.has_run(done.run_id)
        assert controller.store.for_run(done.run_id) == {}
        assert controller.has_run(parked.run_id)

    async def test_prune_keeps_running_runs(self, controller, master):
        release = asyncio.Event()

        async def slow(inv):
            await release.wait()

        run_id = await controller.start_pipeline([job("unit", "test", slow)], master, stages=STAGES)
        later = datetime.now(timezone.utc) + timedelta(days=30)
        assert await controller.prune_finished(timedelta(0), now=later) == []
        release.set()
        final = await controller.wait(run_id, timeout=2)
        assert final.status == PipelineStatus.SUCCESS

    async def test_unknown_run(self, controller):
        with pytest.raises(KeyError):
            controller.result("run-missing")

    async def test_default_stages(self, controller, master):
        result = await controller.run_pipeline(
            [job("unit", "test"), job("deploy", "flaming-fir")], master
        )
        assert result.success
