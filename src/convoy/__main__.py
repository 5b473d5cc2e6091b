"""Convoy CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from convoy.config import PipelineFile, load_pipeline_file
from convoy.pipeline.context import PipelineContext, TriggerSource
from convoy.pipeline.engine import PipelineController
from convoy.pipeline.errors import PipelineConfigError
from convoy.pipeline.models import JobStatus, ManualGatePolicy, PipelineResult
from convoy.pipeline.registry import open_registry

logger = logging.getLogger("convoy")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


# ── Helpers ──────────────────────────────────────────────────────────────────


def _parse_vars(pairs: list[str] | None) -> dict[str, str]:
    variables: dict[str, str] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise PipelineConfigError(f"--var expects KEY=VALUE, got {pair!r}")
        key, value = pair.split("=", 1)
        variables[key.strip()] = value
    return variables


def _build_context(pipeline: PipelineFile, args: argparse.Namespace) -> PipelineContext:
    return pipeline.build_context(
        args.ref,
        tag=args.tag,
        sha=args.sha,
        source=args.source,
        variables=_parse_vars(args.var),
    )


def _print_result(result: PipelineResult) -> None:
    print(f"Pipeline {result.pipeline_name} ({result.run_id}): {result.status.value}")
    for name, job in result.jobs.items():
        line = f"  [{job.stage}] {name}: {job.status.value}"
        if job.block_reason:
            line += f" ({job.block_reason.value})"
        if job.attempt > 1:
            line += f" after {job.attempt} attempts"
        if job.allow_failure and job.failed:
            line += " [allowed to fail]"
        if job.error_message and job.status not in (JobStatus.SUCCESS, JobStatus.SKIPPED):
            line += f" - {job.error_message}"
        print(line)
    if result.awaiting_approval:
        print(f"Awaiting approval: {', '.join(result.awaiting_approval)}")
    for name, artifact in result.artifacts.items():
        print(f"Artifact {artifact.name} from {name}: {artifact.size} bytes, expires {artifact.expires_at.isoformat()}")


# ── Commands ─────────────────────────────────────────────────────────────────


def cmd_validate(args: argparse.Namespace) -> int:
    pipeline = load_pipeline_file(args.file)
    errors = pipeline.validate_pipeline()
    if errors:
        print(f"{args.file}: {len(errors)} problem(s)")
        for err in errors:
            print(f"  - {err}")
        return EXIT_FAILED
    print(f"{args.file}: OK ({len(pipeline.job_names())} jobs, {len(pipeline.stages)} stages)")
    return EXIT_OK


def cmd_plan(args: argparse.Namespace) -> int:
    pipeline = load_pipeline_file(args.file)
    context = _build_context(pipeline, args)
    plan = pipeline.graph().plan(context)
    print(f"Plan for {pipeline.name} @ {context.ref} ({context.source.value}{', tag' if context.is_tag else ''})")
    for line in plan.describe():
        print(f"  {line}")
    return EXIT_OK


def cmd_run(args: argparse.Namespace) -> int:
    pipeline = load_pipeline_file(args.file)
    if args.max_runners:
        pipeline.runtime.max_runners = args.max_runners
    if args.workdir:
        pipeline.runtime.workdir = str(args.workdir)
    context = _build_context(pipeline, args)
    result = asyncio.run(_run(pipeline, context, args.approve or []))
    _print_result(result)
    return EXIT_OK if result.success else EXIT_FAILED


async def _run(pipeline: PipelineFile, context: PipelineContext, approve: list[str]) -> PipelineResult:
    runtime = pipeline.runtime
    manual_policy = runtime.manual_policy
    if manual_policy == ManualGatePolicy.WAIT:
        # nobody can approve once the CLI is running
        logger.warning("Manual policy 'wait' is not supported by 'convoy run'; using 'proceed'")
        manual_policy = ManualGatePolicy.PROCEED

    registry = await open_registry(runtime.db_path) if runtime.db_path else None
    try:
        controller = PipelineController(
            registry=registry,
            max_runners=runtime.max_runners,
            manual_policy=manual_policy,
            workdir=Path(runtime.workdir) if runtime.workdir else None,
        )
        await controller.initialize()
        run_id = await controller.start_pipeline(
            pipeline.job_definitions(), context, stages=pipeline.stages, name=pipeline.name
        )
        for job_name in approve:
            try:
                await controller.approve(run_id, job_name, actor="cli")
            except (KeyError, ValueError) as exc:
                await controller.cancel(run_id)
                raise PipelineConfigError(f"--approve {job_name}: {exc}") from exc
        return await controller.wait(run_id)
    finally:
        if registry:
            await registry.close()


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from convoy.server import create_app

    pipeline = load_pipeline_file(args.file)
    app = create_app(pipeline)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return EXIT_OK


# ── Parser ───────────────────────────────────────────────────────────────────


def _add_context_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--ref", default="master", help="Branch or tag name (default: master)")
    parser.add_argument("--tag", action="store_true", help="The ref is a tag")
    parser.add_argument("--sha", default="", help="Commit SHA")
    parser.add_argument(
        "--source",
        default=TriggerSource.PUSH.value,
        choices=[s.value for s in TriggerSource],
        help="Trigger source (default: push)",
    )
    parser.add_argument(
        "--var",
        action="append",
        metavar="KEY=VALUE",
        help="Trigger variable, e.g. --var DEPLOY_TAG=v1.2.0 (repeatable)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="convoy",
        description="Convoy — multi-stage pipeline orchestration engine",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    subparsers = parser.add_subparsers(dest="command")

    validate_parser = subparsers.add_parser("validate", help="Validate a pipeline file")
    validate_parser.add_argument("file", type=Path, help="Pipeline YAML file")
    validate_parser.set_defaults(func=cmd_validate)

    plan_parser = subparsers.add_parser("plan", help="Show which jobs would run, stage by stage")
    plan_parser.add_argument("file", type=Path, help="Pipeline YAML file")
    _add_context_args(plan_parser)
    plan_parser.set_defaults(func=cmd_plan)

    run_parser = subparsers.add_parser("run", help="Run a pipeline locally")
    run_parser.add_argument("file", type=Path, help="Pipeline YAML file")
    _add_context_args(run_parser)
    run_parser.add_argument(
        "--approve",
        action="append",
        metavar="JOB",
        help="Approve a manual job up front (repeatable)",
    )
    run_parser.add_argument("--max-runners", type=int, default=None, help="Concurrent job bodies")
    run_parser.add_argument("--workdir", type=Path, default=None, help="Base directory for job workdirs")
    run_parser.set_defaults(func=cmd_run)

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP signal server")
    serve_parser.add_argument("file", type=Path, help="Pipeline YAML file")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_CONFIG)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        code = args.func(args)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(EXIT_CONFIG)
    except PipelineConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(EXIT_CONFIG)
    sys.exit(code)


if __name__ == "__main__":
    main()
