"""Convoy Server — FastAPI application around one pipeline file.

Startup sequence:
1. Load the pipeline file (unless one was passed in)
2. Open the run registry when ``runtime.db_path`` is set
3. Build the pipeline controller and load environment state
4. Mount the API router
5. Start the housekeeping loop (artifact expiry, finished-run pruning)

Shutdown:
1. Stop the housekeeping loop
2. Cancel runs that are still active
3. Close the registry database
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from convoy.api import configure as configure_api
from convoy.api import router as api_router
from convoy.config import PipelineFile, load_pipeline_file
from convoy.housekeeping import Housekeeper
from convoy.pipeline.engine import PipelineController
from convoy.pipeline.models import PipelineStatus
from convoy.pipeline.registry import RunRegistry, open_registry

logger = logging.getLogger(__name__)


class ConvoyServer:
    """Encapsulates server components and lifecycle."""

    def __init__(self, pipeline: PipelineFile | Path | str):
        self._source = pipeline
        self.pipeline: PipelineFile | None = pipeline if isinstance(pipeline, PipelineFile) else None
        self.registry: RunRegistry | None = None
        self.controller: PipelineController | None = None
        self.housekeeper: Housekeeper | None = None

    async def start(self) -> None:
        """Initialize components."""
        if self.pipeline is None:
            self.pipeline = load_pipeline_file(self._source)
        runtime = self.pipeline.runtime
        logger.info("Convoy server starting (pipeline=%s)", self.pipeline.name)

        if runtime.db_path:
            self.registry = await open_registry(runtime.db_path)

        self.controller = PipelineController(
            registry=self.registry,
            max_runners=runtime.max_runners,
            manual_policy=runtime.manual_policy,
            workdir=Path(runtime.workdir) if runtime.workdir else None,
        )
        await self.controller.initialize()
        configure_api(self.controller, self.pipeline)
        self.housekeeper = Housekeeper(self.controller, runtime)
        await self.housekeeper.start()
        logger.info(
            "Convoy server ready (max_runners=%d, manual_policy=%s, registry=%s)",
            runtime.max_runners,
            runtime.manual_policy.value,
            runtime.db_path or "none",
        )

    async def stop(self) -> None:
        """Graceful shutdown — cancel active runs and close the database."""
        logger.info("Convoy server shutting down")
        if self.housekeeper:
            await self.housekeeper.stop()
        if self.controller:
            for run in self.controller.list_runs():
                if run.status in (PipelineStatus.PENDING, PipelineStatus.RUNNING):
                    await self.controller.cancel(run.run_id)
        if self.registry:
            await self.registry.close()


# ── FastAPI App ──────────────────────────────────────────────────────────────


def create_app(pipeline: PipelineFile | Path | str) -> FastAPI:
    """Create the FastAPI application for a pipeline file (or its path)."""
    server = ConvoyServer(pipeline)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan — startup and shutdown."""
        await server.start()
        yield
        await server.stop()

    app = FastAPI(
        title="Convoy",
        version="0.1.0",
        description="Multi-stage pipeline orchestration engine",
        lifespan=lifespan,
    )
    app.state.server = server

    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check with per-status run counts."""
        counts: dict[str, int] = {}
        if server.controller:
            for run in server.controller.list_runs():
                counts[run.status.value] = counts.get(run.status.value, 0) + 1
        return {
            "status": "ok",
            "pipeline": server.pipeline.name if server.pipeline else None,
            "runs": counts,
        }

    return app
