"""Render cache: finished artifacts keyed by manifest hash in the output bucket."""

import asyncio
import logging
from typing import Optional

from reelrender.exceptions import CacheWriteError
from reelrender.services.metrics import RenderMetrics
from reelrender.services.storage_service import StorageService

logger = logging.getLogger(__name__)

CACHE_PREFIX = "cache/render/"


def cache_key(manifest_hash: str) -> str:
    return f"{CACHE_PREFIX}{manifest_hash}.mp4"


def artifact_key(project_id: str) -> str:
    """Location of the single current artifact of a project."""
    return f"{project_id}/movie.mp4"


class RenderCache:
    """get/put over opaque artifact keys, plus copy into a project slot.

    Entries are written once after a successful render and never mutated.
    """

    def __init__(self, storage: StorageService, metrics: RenderMetrics) -> None:
        self.storage = storage
        self.metrics = metrics

    async def lookup(self, manifest_hash: str) -> Optional[str]:
        """Return the cache key for a hit, or None on a miss."""
        key = cache_key(manifest_hash)
        if await asyncio.to_thread(self.storage.exists, key):
            self.metrics.cache_hit()
            logger.info(f"[CACHE] Hit {manifest_hash[:12]}")
            return key
        self.metrics.cache_miss()
        logger.info(f"[CACHE] Miss {manifest_hash[:12]}")
        return None

    async def copy_to_project(self, manifest_hash: str, project_id: str) -> str:
        """Copy a cached artifact into the project's current-artifact slot."""
        dest = artifact_key(project_id)
        await asyncio.to_thread(self.storage.copy, cache_key(manifest_hash), dest)
        return dest

    async def store(self, manifest_hash: str, source_key: str) -> bool:
        """Copy a freshly published artifact into the cache.

        Best effort: a failure is logged and counted, never raised.
        """
        key = cache_key(manifest_hash)
        try:
            await asyncio.to_thread(self.storage.copy, source_key, key)
        except Exception as e:
            self.metrics.cache_write_failure()
            err = CacheWriteError(f"Render cache write failed for {manifest_hash[:12]}: {e}")
            logger.warning(f"[CACHE] {err.message}")
            return False
        self.metrics.cache_write()
        logger.info(f"[CACHE] Stored {manifest_hash[:12]} from {source_key}")
        return True

    async def invalidate(
        self,
        project_id: Optional[str] = None,
        cache_id: Optional[str] = None,
    ) -> list[str]:
        """Delete a cache entry and/or a project's current artifact.

        Returns the deleted keys.
        """
        candidates: list[str] = []
        if cache_id:
            candidates.append(cache_id if cache_id.startswith(CACHE_PREFIX) else cache_key(cache_id))
        if project_id:
            candidates.append(artifact_key(project_id))
        deleted = []
        for key in candidates:
            if await asyncio.to_thread(self.storage.delete_file, key):
                deleted.append(key)
        logger.info(f"[CACHE] Invalidated {len(deleted)} object(s): {deleted}")
        return deleted
