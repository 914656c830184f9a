"""
Render orchestration.

A render request flows through:
1. Plan resolution, resolution clamp and scene optimisation
2. Asset resolution (keys + checksums) and the manifest hash
3. Render cache lookup; a hit is copied into the project slot
4. Engine selection: deterministic compositor or generative backend
5. Optional per-scene clip generation, then the engine run
6. Publishing (public or signed URL) and a best-effort cache write

Every request works in its own temporary directory, removed on all exit
paths. Progress is pushed to the job progress broadcaster throughout.
"""

import asyncio
import logging
import tempfile
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

from reelrender.config import get_settings
from reelrender.exceptions import (
    ForbiddenError,
    GenerativeEngineError,
    InvalidArgumentError,
    RenderEngineError,
    StorageError,
)
from reelrender.render.cache import RenderCache, artifact_key
from reelrender.render.clip_generator import ClipGenerator, ClipOptions
from reelrender.render.compositor import CommandRunner, SceneCompositor, run_command
from reelrender.render.generative import GenerativeEngine
from reelrender.render.manifest import build_manifest
from reelrender.render.models import EngineKind, Resolution, ResolvedAssets, Scene, total_duration
from reelrender.schemas.render import GenerateClipRequest, RenderRequest
from reelrender.services.asset_resolver import AssetResolver, clip_index
from reelrender.services.metrics import RenderMetrics
from reelrender.services.plan_service import (
    PlanLookup,
    clamp_resolution,
    get_plan_config,
    map_plan_id_to_tier,
    optimize_scenes,
)
from reelrender.services.progress import JobProgressBroadcaster
from reelrender.services.publisher import ArtifactPublisher
from reelrender.services.storage_service import StorageService

logger = logging.getLogger(__name__)

# Longest job the generative engine takes on when not single-scene
GENERATIVE_MAX_SECONDS = 30.0


@dataclass
class RenderResult:
    video_url: str
    cached: bool
    engine: EngineKind
    job_id: str
    skip_polish: bool = False
    cache_key: Optional[str] = None
    resolution: Optional[Resolution] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "video_url": self.video_url,
            "cached": self.cached,
            "engine": self.engine.value,
            "skip_polish": self.skip_polish,
            "cache_key": self.cache_key,
            "job_id": self.job_id,
            "resolution": str(self.resolution) if self.resolution else None,
        }


def wants_generative(request: RenderRequest) -> bool:
    return request.engine == "fal" or request.use_fal is True


def select_engine(requested: bool, total_s: float, scene_count: int, model: str) -> EngineKind:
    """Generative only when requested and the job is short, single-scene, or
    the configured model is image-to-video."""
    if requested and (total_s <= GENERATIVE_MAX_SECONDS or scene_count == 1 or "image-to-video" in model):
        return EngineKind.GENERATIVE
    return EngineKind.FFMPEG


def new_job_id(project_id: str) -> str:
    return f"render-{project_id}-{int(time.time() * 1000)}"


class RenderService:
    """Runs renders against injected storage, plan lookup, engines and metrics."""

    def __init__(
        self,
        *,
        input_storage: StorageService,
        output_storage: StorageService,
        broadcaster: JobProgressBroadcaster,
        metrics: RenderMetrics,
        plan_lookup: Optional[PlanLookup] = None,
        generative: Optional[GenerativeEngine] = None,
        runner: CommandRunner = run_command,
        sleep=asyncio.sleep,
    ) -> None:
        self.input_storage = input_storage
        self.output_storage = output_storage
        self.broadcaster = broadcaster
        self.metrics = metrics
        self.plan_lookup = plan_lookup
        self.runner = runner
        self.resolver = AssetResolver(input_storage, sleep=sleep)
        self.cache = RenderCache(output_storage, metrics)
        self.publisher = ArtifactPublisher(output_storage, sleep=sleep)
        self.generative = generative or GenerativeEngine(metrics=metrics)
        self.clips = ClipGenerator(self.generative, self.resolver, metrics)
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Render
    # ------------------------------------------------------------------

    async def resolve_plan(self, request: RenderRequest) -> str:
        """Plan lookup wins when configured and a user is given; else the request's plan."""
        if request.user_id and self.plan_lookup is not None:
            plan_id = await asyncio.to_thread(self.plan_lookup.get_plan, request.user_id)
            return map_plan_id_to_tier(plan_id)
        return map_plan_id_to_tier(request.plan)

    async def render(self, request: RenderRequest, job_id: Optional[str] = None) -> RenderResult:
        """Run one render to completion.

        Raises RenderEngineError subclasses carrying the job id.
        """
        job_id = job_id or request.job_id or new_job_id(request.project_id)
        progress = partial(self.broadcaster.push, job_id)
        self.broadcaster.collect_garbage()
        start = time.perf_counter()
        try:
            result = await self._render(request, job_id, progress)
        except RenderEngineError as e:
            e.with_job(job_id)
            self.metrics.incr("render_failures")
            logger.error(f"[RENDER] Job {job_id} failed: {e.code} {e.message}")
            progress(stage="error", message=e.message, error=e.code)
            raise
        except Exception as e:
            self.metrics.incr("render_failures")
            logger.exception(f"[RENDER] Job {job_id} failed unexpectedly")
            progress(stage="error", message=str(e), error="INTERNAL_ERROR")
            raise RenderEngineError(f"Failed to render video: {e}", job_id=job_id) from e

        self.metrics.record_duration("render", time.perf_counter() - start)
        progress(progress=100, stage="done", message="Done", done=True)
        logger.info(
            f"[RENDER] Job {job_id} done: engine={result.engine.value} cached={result.cached} "
            f"url_public={request.published}"
        )
        return result

    async def _render(self, request: RenderRequest, job_id: str, progress) -> RenderResult:
        settings = get_settings()
        project_id = request.project_id
        progress(progress=1, stage="starting", message="Preparing render")

        if not request.scenes:
            return await self._publish_existing(request, job_id)

        if not request.narration_path:
            raise InvalidArgumentError("Missing required fields for rendering: narration_path", job_id=job_id)
        if not request.no_subtitles and not request.captions_path:
            raise InvalidArgumentError("Missing required fields for rendering: captions_path", job_id=job_id)

        tier = await self.resolve_plan(request)
        plan = get_plan_config(tier)
        resolution = clamp_resolution(tier, request.target_width, request.target_height)
        scenes = optimize_scenes(
            [
                Scene(duration=s.duration, camera=s.camera, transition=s.transition, prompt=s.prompt)
                for s in request.scenes
            ],
            tier,
        )
        clip_model = request.clips.model or settings.fal_render_model
        engine = select_engine(wants_generative(request), total_duration(scenes), len(scenes), clip_model)
        logger.info(
            f"[RENDER] Job {job_id}: project={project_id} plan={tier} resolution={resolution} "
            f"scenes={len(scenes)} duration={total_duration(scenes):.1f}s engine={engine.value} "
            f"(env={settings.render_engine or 'unset'}, requested_fal={wants_generative(request)})"
        )
        if engine is EngineKind.GENERATIVE:
            # Raises ConfigurationError before any work when the key is missing
            _ = self.generative.client

        with tempfile.TemporaryDirectory(prefix=f"reelrender_{job_id}_") as work_dir:
            progress(progress=5, stage="resolving", message="Resolving assets", scene_count=len(scenes))
            assets = await self.resolver.resolve(
                project_id,
                len(scenes),
                narration=request.narration_path,
                captions=request.captions_path,
                music=request.music_path,
                need_captions=not request.no_subtitles,
            )
            manifest_for = partial(
                build_manifest,
                scenes,
                engine=engine,
                plan=tier,
                resolution=resolution,
                aspect_ratio=request.aspect_ratio,
                export_preset=request.export_preset,
                no_subtitles=request.no_subtitles,
            )
            manifest_hash = manifest_for(assets).hash

            progress(progress=8, stage="cache", message="Checking render cache")
            if not (request.force or request.clips.force) and await self.cache.lookup(manifest_hash):
                try:
                    dest = await self.cache.copy_to_project(manifest_hash, project_id)
                except Exception as e:
                    raise StorageError(f"Failed to copy cached render: {e}", job_id=job_id) from e
                artifact = await self.publisher.issue_url(dest, request.published, job_id=job_id)
                return RenderResult(
                    video_url=artifact.url,
                    cached=True,
                    engine=engine,
                    job_id=job_id,
                    skip_polish=engine is EngineKind.GENERATIVE,
                    cache_key=manifest_hash,
                    resolution=resolution,
                )

            output_path = f"{work_dir}/final_movie.mp4"
            cancel_check = partial(self.broadcaster.is_abandoned, job_id)
            run = self._run_generative if engine is EngineKind.GENERATIVE else self._run_deterministic
            await run(
                request,
                scenes,
                assets,
                resolution,
                plan.watermark,
                work_dir,
                output_path,
                job_id,
                progress,
                cancel_check,
            )

            # Clip generation may have changed the inputs; key the entry by what was rendered
            manifest_hash = manifest_for(assets).hash
            progress(progress=92, stage="uploading", message="Uploading final video")
            artifact = await self.publisher.publish(output_path, project_id, request.published, job_id=job_id)
            await self.cache.store(manifest_hash, artifact.key)
            self.metrics.incr(f"renders_{engine.value}")

        return RenderResult(
            video_url=artifact.url,
            cached=False,
            engine=engine,
            job_id=job_id,
            skip_polish=engine is EngineKind.GENERATIVE,
            cache_key=manifest_hash,
            resolution=resolution,
        )

    async def _publish_existing(self, request: RenderRequest, job_id: str) -> RenderResult:
        """Re-issue the URL of a project's existing artifact (no scenes given)."""
        key = artifact_key(request.project_id)
        if request.force or not await asyncio.to_thread(self.output_storage.exists, key):
            raise InvalidArgumentError("Missing required fields for rendering: scenes", job_id=job_id)
        logger.info(f"[RENDER] Job {job_id}: publish-only for {request.project_id} (published={request.published})")
        artifact = await self.publisher.issue_url(key, request.published, job_id=job_id)
        return RenderResult(video_url=artifact.url, cached=True, engine=EngineKind.FFMPEG, job_id=job_id)

    def _clip_options(self, request: RenderRequest) -> ClipOptions:
        c = request.clips
        return ClipOptions(
            enabled=c.enabled,
            force=c.force,
            seconds=c.seconds,
            concurrency=c.concurrency,
            model=c.model,
            prompt=c.prompt,
        )

    def _scene_progress(self, progress, total: int):
        def on_scene(index: int, pct: int, status: str) -> None:
            progress(
                progress=10 + int(15 * (index + 1) / max(1, total)) if pct >= 100 else None,
                stage="clips",
                message=f"Scene {index + 1}/{total}: {status}",
                per_scene={index: pct},
                current_scene=index,
            )

        return on_scene

    async def _run_deterministic(
        self,
        request: RenderRequest,
        scenes: list[Scene],
        assets: ResolvedAssets,
        resolution: Resolution,
        watermark: bool,
        work_dir: str,
        output_path: str,
        job_id: str,
        progress,
        cancel_check,
    ) -> None:
        settings = get_settings()
        options = self._clip_options(request)
        clip_model = options.model or settings.fal_render_model
        if options.enabled and self.generative.configured and "image-to-video" in clip_model:
            progress(progress=10, stage="clips", message="Generating missing motion clips")
            report = await self.clips.generate_missing(
                request.project_id,
                scenes,
                work_dir,
                options,
                job_id=job_id,
                cancel_check=cancel_check,
                on_scene=self._scene_progress(progress, len(scenes)),
            )
            await self.resolver.refresh_clips(assets)
            if options.force:
                # A failed regeneration leaves the old clip in place; render the still instead
                for index in report.failed:
                    assets.clips[index] = None

        progress(progress=25, stage="downloading", message="Downloading assets")
        await self.resolver.download_all(assets, work_dir, job_id=job_id)

        compositor = SceneCompositor(
            resolution,
            watermark=watermark,
            export_preset=request.export_preset,
            runner=self.runner,
            job_id=job_id,
        )
        compositor.set_progress_callback(progress)
        with self.metrics.timer("compose"):
            await compositor.compose(scenes, assets, work_dir, output_path, burn_captions=not request.no_subtitles)

    async def _run_generative(
        self,
        request: RenderRequest,
        scenes: list[Scene],
        assets: ResolvedAssets,
        resolution: Resolution,
        watermark: bool,
        work_dir: str,
        output_path: str,
        job_id: str,
        progress,
        cancel_check,
    ) -> None:
        """Generate a clip per scene, then stitch the clips over the audio bed."""
        options = self._clip_options(request)
        options.enabled = True
        progress(progress=10, stage="clips", message=f"Generating {len(scenes)} motion clips", scene_count=len(scenes))
        report = await self.clips.generate_missing(
            request.project_id,
            scenes,
            work_dir,
            options,
            job_id=job_id,
            cancel_check=cancel_check,
            on_scene=self._scene_progress(progress, len(scenes)),
        )
        if report.failed:
            index = min(report.failed)
            raise GenerativeEngineError(
                f"Failed to generate clip for scene {index}: {report.failed[index]}",
                job_id=job_id,
                details={"failed_scenes": sorted(report.failed)},
            )

        await self.resolver.refresh_clips(assets)
        usable = [i for i, clip in enumerate(assets.clips) if clip]
        if not usable:
            raise GenerativeEngineError("No clips were generated", job_id=job_id)

        # Stitching reads clips only
        clips_only = replace(assets, images=[None] * len(scenes))
        progress(progress=75, stage="downloading", message="Downloading clips")
        await self.resolver.download_all(clips_only, work_dir, job_id=job_id)

        compositor = SceneCompositor(
            resolution,
            watermark=watermark,
            export_preset=request.export_preset,
            runner=self.runner,
            job_id=job_id,
        )
        progress(progress=80, stage="composing", message="Stitching clips")
        with self.metrics.timer("compose"):
            await compositor.stitch_clips(
                [assets.clips[i].local_path for i in usable],
                [scenes[i] for i in usable],
                assets,
                work_dir,
                output_path,
            )

    # ------------------------------------------------------------------
    # Background mode
    # ------------------------------------------------------------------

    def start_background(self, request: RenderRequest) -> str:
        """Start a render as a background task and return its job id."""
        job_id = request.job_id or new_job_id(request.project_id)
        self.broadcaster.mark_detached(job_id)
        self.broadcaster.push(job_id, progress=0, stage="queued", message="Render queued")
        task = asyncio.create_task(self._run_background(request, job_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return job_id

    async def _run_background(self, request: RenderRequest, job_id: str) -> None:
        try:
            await self.render(request, job_id=job_id)
        except RenderEngineError as e:
            # Already recorded on the job's progress record
            logger.warning(f"[RENDER] Background job {job_id} ended with {e.code}")

    # ------------------------------------------------------------------
    # Clips and cache administration
    # ------------------------------------------------------------------

    async def generate_clip(self, request: GenerateClipRequest) -> tuple[str, str, str]:
        """Generate one scene's clip. Returns (model, clip key, signed clip URL)."""
        settings = get_settings()
        model = request.model or settings.fal_render_model
        with tempfile.TemporaryDirectory(prefix=f"reelrender_clip_{request.project_id}_") as work_dir:
            key, used_model = await self.clips.generate_scene(
                request.project_id,
                request.scene_index,
                work_dir,
                duration_s=request.duration_s or settings.clip_default_seconds,
                prompt=request.prompt,
                model=model,
            )
        url = await asyncio.to_thread(
            self.input_storage.generate_signed_url, key, settings.draft_url_expiration_minutes
        )
        return used_model, key, url

    def cache_status(self) -> dict[str, Any]:
        settings = get_settings()
        return {
            "service": "render",
            "bucket": {"input": self.input_storage.bucket_name, "output": self.output_storage.bucket_name},
            "engine": settings.render_engine or EngineKind.FFMPEG.value,
            "fal_model": settings.fal_render_model or None,
            "cache": self.metrics.cache_counts,
            "metrics": self.metrics.snapshot(),
            "now": datetime.now(timezone.utc),
        }

    async def project_cache_status(self, project_id: str) -> dict[str, Any]:
        clips = await self.resolver.list_clips(project_id)
        return {
            "project_id": project_id,
            "clips_count": len(clips),
            "clips": [{"name": c.key, "size": c.size, "updated": c.updated} for c in clips],
            "bucket": self.input_storage.bucket_name,
        }

    async def signed_clips(self, project_id: str) -> dict[str, Any]:
        settings = get_settings()
        items = []
        for clip in await self.resolver.list_clips(project_id):
            url = await asyncio.to_thread(
                self.input_storage.generate_signed_url, clip.key, settings.input_url_expiration_minutes
            )
            items.append({"name": clip.key, "url": url, "index": clip_index(clip.key)})
        return {"project_id": project_id, "count": len(items), "items": items}

    async def clear_cache(self, project_id: Optional[str] = None, cache_id: Optional[str] = None) -> list[str]:
        """Operator-only invalidation, allowed in dev mode."""
        if not get_settings().dev_mode:
            raise ForbiddenError("Cache clear allowed only in DEV_MODE")
        return await self.cache.invalidate(project_id=project_id, cache_id=cache_id)
