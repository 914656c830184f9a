"""Per-scene motion clip synthesis through the generative engine."""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from reelrender.config import get_settings
from reelrender.exceptions import AssetNotFoundError
from reelrender.render.generative import GenerativeEngine
from reelrender.render.models import Scene
from reelrender.services.asset_resolver import AssetResolver, clip_key
from reelrender.services.metrics import RenderMetrics

logger = logging.getLogger(__name__)

SceneCallback = Callable[[int, int, str], Awaitable[None] | None]


@dataclass
class ClipOptions:
    """Caller controls for per-scene clip generation."""

    enabled: bool = True
    force: bool = False
    seconds: Optional[int] = None
    concurrency: Optional[int] = None
    model: Optional[str] = None
    prompt: Optional[str] = None


@dataclass
class ClipReport:
    generated: list[int] = field(default_factory=list)
    reused: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)  # no source image
    failed: dict[int, str] = field(default_factory=dict)


def clip_duration_hint(scene: Scene, override: Optional[int] = None) -> int:
    """Scene's own duration, else the override, else the default; at least 2s."""
    seconds = scene.duration or override or get_settings().clip_default_seconds
    return max(2, int(seconds))


def clip_concurrency(requested: Optional[int] = None) -> int:
    settings = get_settings()
    return max(1, min(requested or settings.clip_concurrency, settings.clip_max_concurrency))


class ClipGenerator:
    """Fills missing `{project}/clips/scene-{i}.mp4` objects.

    Scenes are independent: a failed scene is reported and skipped, and the
    compositor falls back to its still image.
    """

    def __init__(
        self,
        engine: GenerativeEngine,
        resolver: AssetResolver,
        metrics: Optional[RenderMetrics] = None,
    ) -> None:
        self.engine = engine
        self.resolver = resolver
        self.storage = resolver.storage
        self.metrics = metrics or engine.metrics

    async def generate_scene(
        self,
        project_id: str,
        scene_index: int,
        work_dir: str,
        *,
        scene: Optional[Scene] = None,
        duration_s: Optional[int] = None,
        prompt: Optional[str] = None,
        model: Optional[str] = None,
        job_id: Optional[str] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> tuple[str, str]:
        """Generate and store one scene's clip. Returns (clip key, model used)."""
        settings = get_settings()
        images = await self.resolver.scene_images(project_id, scene_index + 1)
        image_key = images[scene_index]
        if not image_key:
            raise AssetNotFoundError(f"{project_id}/scene-{scene_index}-*", job_id=job_id)

        image_url = await asyncio.to_thread(
            self.storage.generate_signed_url, image_key, settings.input_url_expiration_minutes
        )
        if duration_s is None and scene is not None:
            duration_s = clip_duration_hint(scene)
        local_path = os.path.join(work_dir, f"gen_clip_{scene_index}.mp4")
        result = await self.engine.generate(
            local_path,
            image_url=image_url,
            prompt=prompt or (scene.prompt if scene else None) or f"Cinematic short motion for scene {scene_index + 1}.",
            duration_s=duration_s,
            model=model,
            job_id=job_id,
            cancel_check=cancel_check,
        )
        key = clip_key(project_id, scene_index)
        await asyncio.to_thread(self.storage.upload_file, local_path, key, "video/mp4")
        logger.info(f"[CLIPS] Saved clip for scene {scene_index} ({duration_s}s) with {result.model}")
        return key, result.model

    async def generate_missing(
        self,
        project_id: str,
        scenes: list[Scene],
        work_dir: str,
        options: ClipOptions,
        *,
        job_id: Optional[str] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
        on_scene: Optional[SceneCallback] = None,
    ) -> ClipReport:
        """Generate clips for scenes lacking one (all scenes when forced)."""
        report = ClipReport()
        semaphore = asyncio.Semaphore(clip_concurrency(options.concurrency))
        images = await self.resolver.scene_images(project_id, len(scenes))

        async def notify(index: int, pct: int, status: str) -> None:
            if on_scene:
                maybe = on_scene(index, pct, status)
                if asyncio.iscoroutine(maybe):
                    await maybe

        async def run(index: int, scene: Scene) -> None:
            key = clip_key(project_id, index)
            if not options.force and await asyncio.to_thread(self.storage.exists, key):
                report.reused.append(index)
                await notify(index, 100, "cached")
                return
            if not images[index]:
                report.skipped.append(index)
                logger.warning(f"[CLIPS] No image for scene {index}; skipping (job {job_id})")
                return
            async with semaphore:
                if cancel_check and cancel_check():
                    report.failed[index] = "job abandoned"
                    logger.info(f"[CLIPS] Scene {index} not submitted, job {job_id} abandoned")
                    return
                await notify(index, 5, "generating")
                try:
                    await self.generate_scene(
                        project_id,
                        index,
                        work_dir,
                        scene=scene,
                        duration_s=clip_duration_hint(scene, options.seconds),
                        prompt=options.prompt or scene.prompt,
                        model=options.model,
                        job_id=job_id,
                        cancel_check=cancel_check,
                    )
                except Exception as e:
                    report.failed[index] = str(e)
                    self.metrics.incr("clip_failure")
                    logger.warning(f"[CLIPS] Scene {index} failed (job {job_id}): {e}")
                    await notify(index, 100, "failed")
                    return
            report.generated.append(index)
            self.metrics.incr("clip_success")
            await notify(index, 100, "complete")

        await asyncio.gather(*(run(i, scene) for i, scene in enumerate(scenes)))
        report.generated.sort()
        report.reused.sort()
        logger.info(
            f"[CLIPS] {project_id}: generated={report.generated} reused={report.reused} "
            f"skipped={report.skipped} failed={sorted(report.failed)} (job {job_id})"
        )
        return report
