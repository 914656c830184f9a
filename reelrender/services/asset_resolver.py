"""
Locate and fetch a project's render inputs from the asset store.

Input bucket layout per project:
    {project}/scene-{i}-*.png|jpg   candidate images for scene i (first wins)
    {project}/narration.mp3         narration bed
    {project}/captions.srt          full-project caption track
    {project}/music.wav             optional background music
    {project}/clips/scene-{i}.mp4   optional pre-generated motion clip

Resolution is metadata only (keys and checksums, for the manifest). Files are
downloaded separately, after a cache miss, into the request's work directory.
"""

import asyncio
import logging
import os
import posixpath
import re
from typing import Optional

from reelrender.exceptions import AssetNotFoundError, StorageError
from reelrender.render.models import ResolvedAsset, ResolvedAssets
from reelrender.services.retry import retry_with_backoff
from reelrender.services.storage_service import StorageService, parse_gs_uri

logger = logging.getLogger(__name__)

_CLIP_NAME_RE = re.compile(r"clips/scene-(\d+)\.mp4$")


def clip_key(project_id: str, scene_index: int) -> str:
    return f"{project_id}/clips/scene-{scene_index}.mp4"


def clip_index(key: str) -> Optional[int]:
    match = _CLIP_NAME_RE.search(key)
    return int(match.group(1)) if match else None


class AssetResolver:
    """Resolves asset references against the input bucket."""

    def __init__(self, storage: StorageService, sleep=asyncio.sleep) -> None:
        self.storage = storage
        self._sleep = sleep

    def resolve_reference(self, project_id: str, reference: Optional[str], default_name: str) -> str:
        """Turn a `gs://` URI or bare key into a key in the input bucket.

        URIs pointing outside the input bucket or outside the project fall
        back to the project's default object name.
        """
        default_key = f"{project_id}/{default_name}"
        if not reference:
            return default_key
        parsed = parse_gs_uri(reference)
        if parsed:
            bucket, key = parsed
            if bucket == self.storage.bucket_name and f"{project_id}/" in key:
                return key
            return default_key
        return reference.lstrip("/")

    async def scene_images(self, project_id: str, scene_count: int) -> list[Optional[str]]:
        """First image key per scene index, or None where a scene has none."""
        objects = await asyncio.to_thread(self.storage.list_objects, f"{project_id}/scene-")
        keys = sorted(o.key for o in objects)
        images: list[Optional[str]] = []
        for i in range(scene_count):
            prefix = f"scene-{i}-"
            images.append(next((k for k in keys if posixpath.basename(k).startswith(prefix)), None))
        return images

    async def _checksum(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self.storage.get_checksum, key)

    async def _required(self, key: str) -> ResolvedAsset:
        checksum = await self._checksum(key)
        if checksum is None:
            raise AssetNotFoundError(f"gs://{self.storage.bucket_name}/{key}")
        return ResolvedAsset(key=key, checksum=checksum)

    async def resolve(
        self,
        project_id: str,
        scene_count: int,
        *,
        narration: Optional[str],
        captions: Optional[str] = None,
        music: Optional[str] = None,
        need_captions: bool = True,
    ) -> ResolvedAssets:
        """Resolve every input of a render to keys and content checksums.

        Raises AssetNotFoundError for a missing narration, music track, or
        (unless captions are disabled) caption track.
        """
        image_keys = await self.scene_images(project_id, scene_count)
        images: list[Optional[ResolvedAsset]] = []
        for key in image_keys:
            checksum = await self._checksum(key) if key else None
            images.append(ResolvedAsset(key=key, checksum=checksum) if key and checksum is not None else None)

        assets = ResolvedAssets(project_id=project_id, images=images)
        assets.narration = await self._required(self.resolve_reference(project_id, narration, "narration.mp3"))
        if need_captions:
            assets.captions = await self._required(self.resolve_reference(project_id, captions, "captions.srt"))
        if music:
            assets.music = await self._required(self.resolve_reference(project_id, music, "music.wav"))

        clips: list[Optional[ResolvedAsset]] = []
        for i in range(scene_count):
            key = clip_key(project_id, i)
            checksum = await self._checksum(key)
            clips.append(ResolvedAsset(key=key, checksum=checksum) if checksum is not None else None)
        assets.clips = clips

        missing = [i for i, img in enumerate(images) if img is None]
        logger.info(
            f"[ASSETS] {project_id}: {scene_count - len(missing)}/{scene_count} scene images, "
            f"{sum(1 for c in clips if c)} clips, music={'yes' if assets.music else 'no'}"
        )
        if missing:
            logger.warning(f"[ASSETS] {project_id}: no image for scenes {missing}")
        return assets

    async def refresh_clips(self, assets: ResolvedAssets) -> None:
        """Re-read clip slots after clip generation."""
        for i in range(len(assets.clips)):
            key = clip_key(assets.project_id, i)
            checksum = await self._checksum(key)
            assets.clips[i] = ResolvedAsset(key=key, checksum=checksum) if checksum is not None else None

    async def download(self, asset: ResolvedAsset, work_dir: str, job_id: Optional[str] = None) -> str:
        """Download one asset into the work directory, retrying transient failures."""
        local_path = os.path.join(work_dir, asset.key.replace("/", "__"))

        async def _fetch() -> str:
            return await asyncio.to_thread(self.storage.download_file, asset.key, local_path)

        try:
            await retry_with_backoff(
                _fetch,
                description=f"download {asset.key}",
                sleep=self._sleep,
            )
        except FileNotFoundError as e:
            raise AssetNotFoundError(f"gs://{self.storage.bucket_name}/{asset.key}", job_id=job_id) from e
        except Exception as e:
            raise StorageError(f"Failed to download {asset.key}: {e}", job_id=job_id) from e
        asset.local_path = local_path
        return local_path

    async def download_all(self, assets: ResolvedAssets, work_dir: str, job_id: Optional[str] = None) -> None:
        """Download images, audio, captions and clips of a resolved render."""
        pending = [a for a in (*assets.images, assets.narration, assets.captions, assets.music) if a]
        pending += [c for c in assets.clips if c]
        await asyncio.gather(*(self.download(a, work_dir, job_id=job_id) for a in pending))
        logger.info(f"[ASSETS] Downloaded {len(pending)} object(s) for {assets.project_id} (job {job_id})")

    async def list_clips(self, project_id: str):
        return await asyncio.to_thread(self.storage.list_objects, f"{project_id}/clips/")
