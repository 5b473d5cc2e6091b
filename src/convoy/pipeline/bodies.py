"""Job bodies — the opaque work a job runs.

The engine never looks inside a body. It calls it with a ``JobInvocation``
and reads back a ``BodyResult``:

    exit_code == 0   success
    exit_code != 0   failure (retried while budget remains)
    artifact         bytes published on success when the job declares artifacts
    version          deployed version recorded for environment-bound jobs

Two bodies ship with convoy:

    ShellBody     runs before_script / script / after_script lines in a
                  working directory; artifacts are tar.gz bundles
    CallableBody  calls a Python function, given directly or imported from
                  a ``module.path:function`` target

Any callable (sync or async) taking a ``JobInvocation`` is a valid body.
Return values are coerced: ``None`` means success, an ``int`` is an exit
code, ``bytes`` is an artifact, a ``dict`` is parsed as a ``BodyResult``.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import io
import logging
import os
import tarfile
import tempfile
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel

from convoy.pipeline.context import PipelineContext
from convoy.pipeline.errors import PipelineConfigError
from convoy.pipeline.models import CALLABLE_TARGET_PATTERN, Environment, JobDefinition

logger = logging.getLogger("convoy.pipeline.bodies")

# Keep at most this much captured output per job
MAX_OUTPUT_CHARS = 64 * 1024


# ── Invocation / Result ──────────────────────────────────────────────────────


@dataclass
class JobInvocation:
    """Everything a body may look at while it runs."""

    job: JobDefinition
    context: PipelineContext
    run_id: str
    attempt: int
    variables: dict[str, str] = field(default_factory=dict)
    inputs: dict[str, bytes] = field(default_factory=dict)
    workdir: Path | None = None
    environment: Environment | None = None

    @property
    def job_name(self) -> str:
        return self.job.name


class BodyResult(BaseModel):
    """Outcome of one body execution."""

    exit_code: int = 0
    artifact: bytes | None = None
    output: str = ""
    version: str | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class JobBody(Protocol):
    """Called by the executor to do the job's work."""

    def __call__(self, invocation: JobInvocation) -> BodyResult | Awaitable[BodyResult]:
        ...


# ── Calling bodies ───────────────────────────────────────────────────────────


def coerce_result(value: Any) -> BodyResult:
    """Turn whatever a body returned into a ``BodyResult``."""
    if isinstance(value, BodyResult):
        return value
    if value is None:
        return BodyResult()
    if isinstance(value, bool):
        return BodyResult(exit_code=0 if value else 1)
    if isinstance(value, int):
        return BodyResult(exit_code=value)
    if isinstance(value, (bytes, bytearray)):
        return BodyResult(artifact=bytes(value))
    if isinstance(value, dict):
        return BodyResult.model_validate(value)
    msg = f"Job body returned unsupported type {type(value).__name__}"
    raise TypeError(msg)


async def invoke_body(body: Callable[..., Any], invocation: JobInvocation) -> BodyResult:
    """Call a sync or async body and coerce its result.

    Sync bodies run in a worker thread so they neither stall other jobs nor
    outlive their timeout on the event loop.
    """
    if _is_async_callable(body):
        result = await body(invocation)
    else:
        result = await asyncio.to_thread(body, invocation)
        if inspect.isawaitable(result):
            result = await result
    return coerce_result(result)


def _is_async_callable(body: Callable[..., Any]) -> bool:
    if inspect.iscoroutinefunction(body):
        return True
    return inspect.iscoroutinefunction(getattr(body, "__call__", None))


def resolve_body(job: JobDefinition) -> Callable[..., Any]:
    """Pick the body for a job: explicit body, then callable target, then script.

    Raises PipelineConfigError when nothing runnable is configured or the
    callable target cannot be imported.
    """
    if job.body is not None:
        return job.body
    if job.callable_target:
        return CallableBody.from_target(job.callable_target)
    if job.script:
        return ShellBody.from_job(job)
    msg = f"Job '{job.name}' has no body to run"
    raise PipelineConfigError(msg)


# ── Shell body ───────────────────────────────────────────────────────────────


class ShellBody:
    """Run shell lines with ``asyncio.create_subprocess_shell``.

    ``before_script`` and ``script`` lines run in order and stop at the first
    non-zero exit. ``after_script`` always runs afterwards; its exit codes are
    logged and ignored. Artifact ``paths`` are bundled once every line has run.
    """

    def __init__(
        self,
        script: Sequence[str],
        *,
        before_script: Sequence[str] = (),
        after_script: Sequence[str] = (),
        artifact_paths: Sequence[str] = (),
    ):
        self.before_script = list(before_script)
        self.script = list(script)
        self.after_script = list(after_script)
        self.artifact_paths = list(artifact_paths)

    @classmethod
    def from_job(cls, job: JobDefinition) -> ShellBody:
        return cls(
            job.script,
            before_script=job.before_script,
            after_script=job.after_script,
            artifact_paths=job.artifacts.paths if job.artifacts else (),
        )

    async def __call__(self, invocation: JobInvocation) -> BodyResult:
        if invocation.workdir is not None:
            invocation.workdir.mkdir(parents=True, exist_ok=True)
            return await self._run_in(invocation.workdir, invocation)
        with tempfile.TemporaryDirectory(prefix="convoy-") as tmp:
            return await self._run_in(Path(tmp), invocation)

    async def _run_in(self, workdir: Path, invocation: JobInvocation) -> BodyResult:
        env = dict(os.environ)
        env.update(invocation.variables)

        for dep, blob in invocation.inputs.items():
            unpack_bundle(blob, workdir, name=dep)

        output: list[str] = []
        exit_code, text = await _run_script(self.before_script + self.script, workdir, env)
        output.append(text)
        if exit_code != 0:
            logger.info("Job '%s' script exited %d", invocation.job_name, exit_code)

        if self.after_script:
            code, text = await _run_script(self.after_script, workdir, env)
            output.append(text)
            if code != 0:
                logger.debug("Job '%s' after_script exited %d (ignored)", invocation.job_name, code)

        artifact = None
        if exit_code == 0 and self.artifact_paths:
            artifact = pack_bundle(workdir, self.artifact_paths)

        return BodyResult(
            exit_code=exit_code,
            artifact=artifact,
            output="".join(output)[-MAX_OUTPUT_CHARS:],
        )


async def _run_script(lines: Sequence[str], cwd: Path, env: dict[str, str]) -> tuple[int, str]:
    # One shell for all lines so variables and cwd carry over; errexit stops
    # at the first failing line.
    if not lines:
        return 0, ""
    script = "set -e\n" + "\n".join(lines)
    proc = await asyncio.create_subprocess_shell(
        script,
        cwd=str(cwd),
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await proc.communicate()
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise
    return proc.returncode or 0, stdout.decode(errors="replace")


# ── Bundles ──────────────────────────────────────────────────────────────────


def pack_bundle(workdir: Path, paths: Sequence[str]) -> bytes:
    """Pack ``paths`` (relative to ``workdir``) into a gzipped tarball."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for raw in paths:
            rel = raw.strip().rstrip("/")
            if rel.startswith("./"):
                rel = rel[2:]
            source = workdir / rel
            if not source.exists():
                logger.warning("Artifact path '%s' not found in %s", raw, workdir)
                continue
            tar.add(source, arcname=rel)
    return buffer.getvalue()


def unpack_bundle(blob: bytes, workdir: Path, *, name: str = "artifact") -> None:
    """Unpack a gzipped tarball into ``workdir``.

    Blobs that are not tarballs (e.g. from a callable body) are written to
    ``<workdir>/<name>.artifact`` instead.
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(blob), mode="r:*") as tar:
            tar.extractall(workdir, filter="data")
    except tarfile.ReadError:
        target = workdir / f"{name.replace('/', '_')}.artifact"
        target.write_bytes(blob)
        logger.debug("Input from '%s' is not a bundle, wrote %s", name, target)


# ── Callable body ────────────────────────────────────────────────────────────


class CallableBody:
    """Wrap a Python function taking a ``JobInvocation``."""

    def __init__(self, fn: Callable[..., Any], *, target: str | None = None):
        self.fn = fn
        self.target = target or getattr(fn, "__qualname__", repr(fn))

    @classmethod
    def from_target(cls, target: str) -> CallableBody:
        """Import ``module.path:function``. Raises PipelineConfigError on failure."""
        if not CALLABLE_TARGET_PATTERN.match(target):
            msg = f"Invalid callable target '{target}' (expected 'module.path:function')"
            raise PipelineConfigError(msg)
        module_path, func_name = target.split(":", 1)
        try:
            module = importlib.import_module(module_path)
        except ImportError as exc:
            msg = f"Cannot import module '{module_path}' for callable '{target}': {exc}"
            raise PipelineConfigError(msg) from exc
        fn = getattr(module, func_name, None)
        if fn is None or not callable(fn):
            msg = f"'{func_name}' in module '{module_path}' is not callable"
            raise PipelineConfigError(msg)
        return cls(fn, target=target)

    async def __call__(self, invocation: JobInvocation) -> BodyResult:
        logger.debug("Calling %s for job '%s'", self.target, invocation.job_name)
        return await invoke_body(self.fn, invocation)

    def __repr__(self) -> str:
        return f"CallableBody({self.target!r})"
