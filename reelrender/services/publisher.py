"""Uploads finished renders and decides how callers may read them."""

import asyncio
import logging
from dataclasses import dataclass

from reelrender.config import get_settings
from reelrender.exceptions import StorageError
from reelrender.render.cache import artifact_key
from reelrender.services.retry import retry_with_backoff
from reelrender.services.storage_service import StorageService

logger = logging.getLogger(__name__)

VIDEO_CONTENT_TYPE = "video/mp4"


@dataclass
class PublishedArtifact:
    key: str
    url: str
    public: bool


class ArtifactPublisher:
    """Persists the current artifact of a project and issues its URL.

    Access mode depends only on the `published` flag: published artifacts
    are made public, drafts get a time-limited signed URL.
    """

    def __init__(self, storage: StorageService, sleep=asyncio.sleep) -> None:
        self.storage = storage
        self._sleep = sleep

    async def upload(self, local_path: str, project_id: str, job_id: str | None = None) -> str:
        """Upload a finished video into the project's artifact slot, with retry."""
        key = artifact_key(project_id)

        async def _upload() -> str:
            return await asyncio.to_thread(self.storage.upload_file, local_path, key, VIDEO_CONTENT_TYPE)

        try:
            await retry_with_backoff(_upload, description=f"upload {key}", sleep=self._sleep)
        except Exception as e:
            raise StorageError(f"Failed to upload {key}: {e}", job_id=job_id) from e
        logger.info(f"[PUBLISH] Uploaded {key} (job {job_id})")
        return key

    async def issue_url(self, key: str, published: bool, job_id: str | None = None) -> PublishedArtifact:
        """Make `key` public or sign it, with retry."""
        settings = get_settings()

        async def _public() -> str:
            await asyncio.to_thread(self.storage.make_public, key)
            return self.storage.get_public_url(key)

        async def _signed() -> str:
            return await asyncio.to_thread(
                self.storage.generate_signed_url, key, settings.draft_url_expiration_minutes
            )

        try:
            url = await retry_with_backoff(
                _public if published else _signed,
                description=f"{'publish' if published else 'sign'} {key}",
                sleep=self._sleep,
            )
        except Exception as e:
            raise StorageError(f"Failed to issue URL for {key}: {e}", job_id=job_id) from e
        return PublishedArtifact(key=key, url=url, public=published)

    async def publish(
        self,
        local_path: str,
        project_id: str,
        published: bool,
        job_id: str | None = None,
    ) -> PublishedArtifact:
        key = await self.upload(local_path, project_id, job_id=job_id)
        return await self.issue_url(key, published, job_id=job_id)
