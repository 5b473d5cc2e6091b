"""Environment tracking — what was last deployed where.

Deploy jobs bind to a named environment. After a successful deploy the
tracker records the version, run and job; jobs marked ``skip_if_current``
consult it to avoid redeploying the version already live. Deploys to one
environment are serialized through a per-environment lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from convoy.pipeline.models import Environment

if TYPE_CHECKING:
    from convoy.pipeline.registry import RunRegistry

logger = logging.getLogger("convoy.pipeline.environments")


class EnvironmentTracker:
    """In-memory view of environments, optionally backed by a ``RunRegistry``."""

    def __init__(
        self,
        registry: RunRegistry | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self._registry = registry
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._environments: dict[str, Environment] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def load(self) -> None:
        """Populate from the registry (no-op without one)."""
        if self._registry is None:
            return
        for env in await self._registry.list_environments():
            self._environments[env.name] = env
        logger.debug("Loaded %d environment(s) from registry", len(self._environments))

    def get(self, name: str) -> Environment | None:
        return self._environments.get(name)

    def list(self) -> list[Environment]:
        return sorted(self._environments.values(), key=lambda e: e.name)

    def lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def is_current(self, name: str, version: str | None) -> bool:
        """Whether ``version`` is what ``name`` already runs."""
        if not version:
            return False
        env = self._environments.get(name)
        return env is not None and env.last_deployed_version == version

    async def record_deployment(
        self,
        name: str,
        version: str | None,
        *,
        run_id: str,
        job_name: str,
        url: str | None = None,
    ) -> Environment:
        previous = self._environments.get(name)
        env = Environment(
            name=name,
            url=url or (previous.url if previous else None),
            last_deployed_version=version,
            last_deployed_at=self._clock(),
            last_run_id=run_id,
            last_job_name=job_name,
        )
        self._environments[name] = env
        if self._registry is not None:
            await self._registry.upsert_environment(env)
        logger.info("Environment %s now at version %s (job %s, run %s)", name, version, job_name, run_id)
        return env
