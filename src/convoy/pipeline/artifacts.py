"""Artifact store — expiring job outputs keyed by (job name, run id).

The store is shared by every run in a process; keys are always scoped to a
run id so one run never sees another's artifacts. Each key has exactly one
writer: the job that produced it, publishing once after it succeeded.

Expired entries raise ``ArtifactExpired`` until ``expire()`` purges them,
after which they raise plain ``ArtifactNotFound``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from convoy.pipeline.errors import ArtifactConflictError, ArtifactExpired, ArtifactNotFound
from convoy.pipeline.models import Artifact

logger = logging.getLogger("convoy.pipeline.artifacts")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ArtifactStore:
    """In-memory artifact store with per-entry expiry.

    Usage::

        store = ArtifactStore()
        store.put("build", run_id, blob, timedelta(days=7), name="build_master")
        data = store.get("build", run_id)
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or _utcnow
        self._artifacts: dict[tuple[str, str], Artifact] = {}
        self._lock = asyncio.Lock()

    def now(self) -> datetime:
        return self._clock()

    # ── Writes ──────────────────────────────────────────────────────────────

    def put(
        self,
        job_name: str,
        run_id: str,
        blob: bytes,
        ttl: timedelta,
        *,
        name: str | None = None,
    ) -> Artifact:
        """Publish ``blob`` for (job_name, run_id), visible until ``now + ttl``.

        Raises ArtifactConflictError if a live artifact already holds the key.
        An expired entry under the same key is replaced.
        """
        key = (job_name, run_id)
        now = self.now()
        existing = self._artifacts.get(key)
        if existing is not None and not existing.is_expired(now):
            raise ArtifactConflictError(job_name, run_id)

        artifact = Artifact(
            job_name=job_name,
            run_id=run_id,
            name=name or job_name,
            blob=bytes(blob),
            created_at=now,
            expires_at=now + ttl,
        )
        self._artifacts[key] = artifact
        logger.info(
            "Published artifact '%s' for job %s in run %s (%d bytes, expires %s)",
            artifact.name,
            job_name,
            run_id,
            artifact.size,
            artifact.expires_at.isoformat(),
        )
        return artifact

    async def put_async(
        self,
        job_name: str,
        run_id: str,
        blob: bytes,
        ttl: timedelta,
        *,
        name: str | None = None,
    ) -> Artifact:
        """``put`` serialized against concurrent publishers."""
        async with self._lock:
            return self.put(job_name, run_id, blob, ttl, name=name)

    # ── Reads ───────────────────────────────────────────────────────────────

    def describe(self, job_name: str, run_id: str) -> Artifact:
        """Return the artifact record for a key (blob included).

        Raises ArtifactNotFound, or ArtifactExpired once past its expiry.
        """
        artifact = self._artifacts.get((job_name, run_id))
        if artifact is None:
            raise ArtifactNotFound(job_name, run_id)
        if artifact.is_expired(self.now()):
            raise ArtifactExpired(job_name, run_id)
        return artifact

    def get(self, job_name: str, run_id: str) -> bytes:
        return self.describe(job_name, run_id).blob

    def has(self, job_name: str, run_id: str) -> bool:
        try:
            self.describe(job_name, run_id)
        except ArtifactNotFound:
            return False
        return True

    def for_run(self, run_id: str) -> dict[str, Artifact]:
        """Live artifacts of one run, by job name."""
        now = self.now()
        return {
            job: artifact
            for (job, rid), artifact in self._artifacts.items()
            if rid == run_id and not artifact.is_expired(now)
        }

    # ── Retention ───────────────────────────────────────────────────────────

    def expire(self, now: datetime | None = None) -> int:
        """Purge every entry whose expiry is at or before ``now``. Returns the count."""
        now = now or self.now()
        expired = [key for key, artifact in self._artifacts.items() if artifact.is_expired(now)]
        for key in expired:
            del self._artifacts[key]
        if expired:
            logger.info("Purged %d expired artifact(s)", len(expired))
        return len(expired)

    def purge_run(self, run_id: str) -> int:
        """Drop every artifact of a run regardless of expiry."""
        keys = [key for key in self._artifacts if key[1] == run_id]
        for key in keys:
            del self._artifacts[key]
        return len(keys)

    def __len__(self) -> int:
        return len(self._artifacts)
