"""Run registry — SQLite persistence for pipeline runs, job runs and environments.

Key exports:
    RunRegistry — CRUD for pipeline_runs, job_runs and environments.
    open_registry — connect, configure row factory, create tables.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

import aiosqlite

from convoy.pipeline.context import PipelineContext
from convoy.pipeline.models import (
    BlockReason,
    Environment,
    JobRun,
    JobStatus,
    PipelineRun,
    PipelineStatus,
    WhenMode,
)

logger = logging.getLogger("convoy.pipeline.registry")


class RunRegistry:
    """SQLite-backed persistence for pipeline run history.

    Takes an already-open aiosqlite connection whose ``row_factory`` is
    ``aiosqlite.Row``. Call `initialize()` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all tables if they don't exist."""
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Run registry tables initialized")

    async def close(self) -> None:
        await self._db.close()

    # ── Pipeline Run CRUD ────────────────────────────────────────────────────

    async def create_pipeline_run(self, run: PipelineRun) -> None:
        """Insert a new pipeline run."""
        await self._db.execute(
            """
            INSERT INTO pipeline_runs (
                run_id, pipeline_name, status, context, stages,
                created_at, started_at, completed_at, error_message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.run_id,
                run.pipeline_name,
                run.status.value,
                run.context.model_dump_json(),
                json.dumps(run.stages),
                _dt_to_str(run.created_at),
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.error_message,
            ),
        )
        await self._db.commit()

    async def get_pipeline_run(self, run_id: str) -> PipelineRun | None:
        """Fetch a pipeline run by ID."""
        cursor = await self._db.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_pipeline_run(row)

    async def list_pipeline_runs(
        self, *, status: PipelineStatus | None = None, limit: int = 50
    ) -> list[PipelineRun]:
        """Most recent runs first, optionally filtered by status."""
        if status:
            cursor = await self._db.execute(
                "SELECT * FROM pipeline_runs WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                (status.value, limit),
            )
        else:
            cursor = await self._db.execute(
                "SELECT * FROM pipeline_runs ORDER BY created_at DESC LIMIT ?",
                (limit,),
            )
        rows = await cursor.fetchall()
        return [_row_to_pipeline_run(r) for r in rows]

    async def update_pipeline_run(self, run: PipelineRun) -> None:
        """Update a pipeline run's mutable fields."""
        await self._db.execute(
            """
            UPDATE pipeline_runs SET
                status = ?, started_at = ?, completed_at = ?, error_message = ?
            WHERE run_id = ?
            """,
            (
                run.status.value,
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.error_message,
                run.run_id,
            ),
        )
        await self._db.commit()

    async def delete_pipeline_run(self, run_id: str) -> None:
        """Delete a pipeline run and its job runs."""
        await self._db.execute("DELETE FROM job_runs WHERE run_id = ?", (run_id,))
        await self._db.execute("DELETE FROM pipeline_runs WHERE run_id = ?", (run_id,))
        await self._db.commit()

    # ── Job Run CRUD ─────────────────────────────────────────────────────────

    async def upsert_job_run(self, job: JobRun) -> None:
        """Insert or update a job run (keyed by run_id + job_name)."""
        await self._db.execute(
            """
            INSERT INTO job_runs (
                run_id, job_name, stage, status, when_mode, allow_failure,
                attempt, max_attempts, block_reason, blocked_by,
                environment, exit_code, error_message, approved_by,
                created_at, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id, job_name) DO UPDATE SET
                status = excluded.status,
                attempt = excluded.attempt,
                block_reason = excluded.block_reason,
                blocked_by = excluded.blocked_by,
                exit_code = excluded.exit_code,
                error_message = excluded.error_message,
                approved_by = excluded.approved_by,
                started_at = excluded.started_at,
                completed_at = excluded.completed_at
            """,
            (
                job.run_id,
                job.job_name,
                job.stage,
                job.status.value,
                job.when.value,
                int(job.allow_failure),
                job.attempt,
                job.max_attempts,
                job.block_reason.value if job.block_reason else None,
                json.dumps(job.blocked_by),
                job.environment,
                job.exit_code,
                job.error_message,
                job.approved_by,
                _dt_to_str(job.created_at),
                _dt_to_str(job.started_at),
                _dt_to_str(job.completed_at),
            ),
        )
        await self._db.commit()

    async def get_job_runs(self, run_id: str) -> list[JobRun]:
        """All job runs of a pipeline run, in insertion order."""
        cursor = await self._db.execute(
            "SELECT * FROM job_runs WHERE run_id = ? ORDER BY rowid",
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_job_run(r) for r in rows]

    async def get_job_run(self, run_id: str, job_name: str) -> JobRun | None:
        cursor = await self._db.execute(
            "SELECT * FROM job_runs WHERE run_id = ? AND job_name = ?",
            (run_id, job_name),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_job_run(row)

    # ── Environments ─────────────────────────────────────────────────────────

    async def upsert_environment(self, env: Environment) -> None:
        await self._db.execute(
            """
            INSERT INTO environments (
                name, url, last_deployed_version, last_deployed_at, last_run_id, last_job_name
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                url = excluded.url,
                last_deployed_version = excluded.last_deployed_version,
                last_deployed_at = excluded.last_deployed_at,
                last_run_id = excluded.last_run_id,
                last_job_name = excluded.last_job_name
            """,
            (
                env.name,
                env.url,
                env.last_deployed_version,
                _dt_to_str(env.last_deployed_at),
                env.last_run_id,
                env.last_job_name,
            ),
        )
        await self._db.commit()

    async def get_environment(self, name: str) -> Environment | None:
        cursor = await self._db.execute("SELECT * FROM environments WHERE name = ?", (name,))
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_environment(row)

    async def list_environments(self) -> list[Environment]:
        cursor = await self._db.execute("SELECT * FROM environments ORDER BY name")
        rows = await cursor.fetchall()
        return [_row_to_environment(r) for r in rows]


async def open_registry(db_path: str | Path) -> RunRegistry:
    """Open (or create) a registry database at ``db_path``."""
    path = Path(db_path)
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(path))
    db.row_factory = aiosqlite.Row
    registry = RunRegistry(db)
    await registry.initialize()
    return registry


# ── Schema ───────────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id TEXT PRIMARY KEY,
    pipeline_name TEXT NOT NULL,
    status TEXT DEFAULT 'pending',
    context TEXT NOT NULL DEFAULT '{}',
    stages TEXT NOT NULL DEFAULT '[]',

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    started_at TEXT,
    completed_at TEXT,

    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_status
    ON pipeline_runs(status);

CREATE TABLE IF NOT EXISTS job_runs (
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    job_name TEXT NOT NULL,
    stage TEXT NOT NULL,

    status TEXT DEFAULT 'created',
    when_mode TEXT DEFAULT 'on_success',
    allow_failure INTEGER DEFAULT 0,

    attempt INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 1,

    block_reason TEXT,
    blocked_by TEXT DEFAULT '[]',

    environment TEXT,
    exit_code INTEGER,
    error_message TEXT,
    approved_by TEXT,

    created_at TEXT,
    started_at TEXT,
    completed_at TEXT,

    PRIMARY KEY (run_id, job_name)
);

CREATE TABLE IF NOT EXISTS environments (
    name TEXT PRIMARY KEY,
    url TEXT,
    last_deployed_version TEXT,
    last_deployed_at TEXT,
    last_run_id TEXT,
    last_job_name TEXT
);
"""


# ── Row Converters ───────────────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_pipeline_run(row: aiosqlite.Row) -> PipelineRun:
    """Convert a database row to a PipelineRun model."""
    return PipelineRun(
        run_id=row["run_id"],
        pipeline_name=row["pipeline_name"],
        status=PipelineStatus(row["status"]),
        context=PipelineContext.model_validate_json(row["context"]),
        stages=json.loads(row["stages"] or "[]"),
        created_at=_str_to_dt(row["created_at"]),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        error_message=row["error_message"],
    )


def _row_to_job_run(row: aiosqlite.Row) -> JobRun:
    """Convert a database row to a JobRun model."""
    return JobRun(
        run_id=row["run_id"],
        job_name=row["job_name"],
        stage=row["stage"],
        status=JobStatus(row["status"]),
        when=WhenMode(row["when_mode"]) if row["when_mode"] else WhenMode.ON_SUCCESS,
        allow_failure=bool(row["allow_failure"]),
        attempt=row["attempt"] or 0,
        max_attempts=row["max_attempts"] or 1,
        block_reason=BlockReason(row["block_reason"]) if row["block_reason"] else None,
        blocked_by=json.loads(row["blocked_by"] or "[]"),
        environment=row["environment"],
        exit_code=row["exit_code"],
        error_message=row["error_message"],
        approved_by=row["approved_by"],
        created_at=_str_to_dt(row["created_at"]),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_environment(row: aiosqlite.Row) -> Environment:
    """Convert a database row to an Environment model."""
    return Environment(
        name=row["name"],
        url=row["url"],
        last_deployed_version=row["last_deployed_version"],
        last_deployed_at=_str_to_dt(row["last_deployed_at"]),
        last_run_id=row["last_run_id"],
        last_job_name=row["last_job_name"],
    )
