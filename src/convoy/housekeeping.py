"""Periodic sweep for a long-running convoy server.

Each pass purges expired artifacts and forgets settled runs older than
``runtime.keep_finished_runs``. Runs still waiting on a manual approval are
never forgotten.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from convoy.config import RuntimeConfig
from convoy.pipeline.engine import PipelineController
from convoy.pipeline.models import _parse_duration_seconds

logger = logging.getLogger(__name__)


class Housekeeper:
    def __init__(self, controller: PipelineController, runtime: RuntimeConfig):
        self.controller = controller
        self.interval = runtime.housekeeping_interval
        self.keep_finished = timedelta(seconds=_parse_duration_seconds(runtime.keep_finished_runs))
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="housekeeping")
        logger.info("Housekeeping loop started (interval=%ds)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Housekeeping loop stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Housekeeping error")

    async def sweep(self) -> tuple[int, list[str]]:
        """Run one pass. Returns (artifacts purged, run ids forgotten)."""
        purged = self.controller.store.expire()
        forgotten = await self.controller.prune_finished(self.keep_finished)
        logger.debug("Housekeeping pass: %d artifact(s), %d run(s)", purged, len(forgotten))
        return purged, forgotten
