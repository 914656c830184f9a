"""
Deterministic scene compositor.

Render steps:
1. One silent, fixed-length segment per scene (motion clip, still image with
   camera movement, or a black placeholder), with that scene's slice of the
   caption track burned in. Segments run in parallel on a bounded pool.
2. Join the segments in scene order with cross-fades or hard cuts.
3. Mux narration and optional ducked music once over the joined picture.

Any FFmpeg failure is fatal to the render and raised as CompositorFailureError.
"""

import asyncio
import logging
import os
import shutil
import subprocess
from typing import Any, Callable, Optional

from reelrender.config import get_settings
from reelrender.exceptions import CompositorFailureError
from reelrender.render import filters
from reelrender.render.audio_mixer import AudioMixer
from reelrender.render.captions import CaptionEntry, format_srt, parse_srt, slice_for_scene
from reelrender.render.models import Resolution, ResolvedAssets, Scene, TransitionType, scene_offsets

logger = logging.getLogger(__name__)

CommandRunner = Callable[[list[str]], subprocess.CompletedProcess]
ProgressCallback = Callable[..., Any]


def run_command(cmd: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, capture_output=True, text=True)


class SceneCompositor:
    """Builds and runs the FFmpeg commands for one deterministic render."""

    def __init__(
        self,
        resolution: Resolution,
        *,
        watermark: bool = False,
        export_preset: Optional[str] = None,
        transition_s: Optional[float] = None,
        workers: Optional[int] = None,
        runner: CommandRunner = run_command,
        mixer: Optional[AudioMixer] = None,
        job_id: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        self.resolution = resolution
        self.watermark = watermark
        self.encode_options = filters.encode_options(export_preset)
        self.transition_s = transition_s if transition_s is not None else settings.render_transition_duration_s
        self.workers = max(1, workers or settings.render_scene_workers)
        self.fps = settings.render_fps
        self.ffmpeg_path = settings.ffmpeg_path
        self._runner = runner
        self.mixer = mixer or AudioMixer()
        self.job_id = job_id
        self._progress_callback: Optional[ProgressCallback] = None

    def set_progress_callback(self, callback: ProgressCallback) -> None:
        """Set callback for progress updates."""
        self._progress_callback = callback

    def _update_progress(self, progress: int, stage: str, message: str, **extra: Any) -> None:
        if self._progress_callback:
            self._progress_callback(progress=progress, stage=stage, message=message, **extra)

    # ------------------------------------------------------------------
    # Command builders
    # ------------------------------------------------------------------

    @staticmethod
    def select_source(index: int, assets: ResolvedAssets) -> tuple[str, Optional[str]]:
        """Visual source for a scene: ("clip"|"image"|"color", local path)."""
        clip = assets.clips[index] if index < len(assets.clips) else None
        if clip and clip.local_path:
            return "clip", clip.local_path
        image = assets.images[index] if index < len(assets.images) else None
        if image and image.local_path:
            return "image", image.local_path
        return "color", None

    def build_segment_command(
        self,
        scene: Scene,
        duration: float,
        source: tuple[str, Optional[str]],
        output_path: str,
        srt_path: Optional[str] = None,
    ) -> list[str]:
        """Build the FFmpeg command for one silent scene segment."""
        kind, path = source
        w, h = self.resolution.width, self.resolution.height
        d = f"{duration:.3f}"
        cmd = [self.ffmpeg_path, "-y"]
        if kind == "clip":
            cmd += ["-i", path]
            base = filters.clip_filter(self.resolution, duration)
        elif kind == "image":
            cmd += ["-loop", "1", "-framerate", str(self.fps), "-t", d, "-i", path]
            base = filters.camera_filter(scene.camera, self.resolution)
        else:
            cmd += ["-f", "lavfi", "-t", d, "-i", f"color=black:s={w}x{h}:r={self.fps}"]
            base = "format=yuv420p"

        vf = filters.build_segment_filter(base, srt_path=srt_path, watermark=self.watermark)
        cmd += ["-vf", vf, "-an", "-r", str(self.fps), "-t", d, *self.encode_options, output_path]
        return cmd

    def build_join_command(self, segment_paths: list[str], scenes: list[Scene], output_path: str) -> list[str]:
        """Build the FFmpeg command joining segments with transitions."""
        plan = filters.build_transition_graph(scenes, self._transition_for(scenes))
        cmd = [self.ffmpeg_path, "-y"]
        for path in segment_paths:
            cmd += ["-i", path]
        if plan.filter_complex:
            cmd += ["-filter_complex", plan.filter_complex, "-map", f"[{plan.output_label}]"]
        else:
            cmd += ["-map", "0:v:0"]
        cmd += ["-an", "-r", str(self.fps), *self.encode_options, output_path]
        return cmd

    def _transition_for(self, scenes: list[Scene]) -> float:
        return filters.effective_transition_duration(scenes, self.transition_s)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(self, cmd: list[str], stage: str) -> None:
        logger.debug(f"[RENDER] {stage} command: {' '.join(cmd)}")
        # Use asyncio.to_thread to avoid blocking the event loop
        result = await asyncio.to_thread(self._runner, cmd)
        if result.returncode != 0:
            stderr = result.stderr or ""
            logger.error(f"[RENDER] {stage} failed (job {self.job_id}): {stderr[-500:]}")
            raise CompositorFailureError(
                f"FFmpeg failed at {stage}", stage=stage, stderr=stderr, job_id=self.job_id
            )

    async def render_segment(
        self,
        index: int,
        scene: Scene,
        duration: float,
        assets: ResolvedAssets,
        captions: list[CaptionEntry],
        work_dir: str,
    ) -> str:
        """Render one scene segment; retry once without captions if burn-in fails."""
        output_path = os.path.join(work_dir, f"part_{index}.mp4")
        source = self.select_source(index, assets)

        srt_path = None
        if captions:
            srt_path = os.path.join(work_dir, f"scene_{index}.srt")
            with open(srt_path, "w", encoding="utf-8") as f:
                f.write(format_srt(captions))

        cmd = self.build_segment_command(scene, duration, source, output_path, srt_path)
        try:
            await self._run(cmd, f"scene {index}")
        except CompositorFailureError:
            if not srt_path:
                raise
            logger.warning(f"[RENDER] Scene {index} with subtitles failed, retrying without (job {self.job_id})")
            cmd = self.build_segment_command(scene, duration, source, output_path, None)
            await self._run(cmd, f"scene {index} without subtitles")
        return output_path

    async def compose(
        self,
        scenes: list[Scene],
        assets: ResolvedAssets,
        work_dir: str,
        output_path: str,
        *,
        burn_captions: bool = True,
    ) -> str:
        """Render all scenes into `output_path` and return it."""
        if not scenes:
            raise CompositorFailureError("No scenes to render", stage="prepare", job_id=self.job_id)
        if not assets.narration or not assets.narration.local_path:
            raise CompositorFailureError("Narration audio is not available", stage="prepare", job_id=self.job_id)

        entries: list[CaptionEntry] = []
        if burn_captions and assets.captions and assets.captions.local_path:
            with open(assets.captions.local_path, encoding="utf-8") as f:
                entries = parse_srt(f.read())

        offsets = scene_offsets(scenes, filters.MIN_SCENE_SECONDS)
        transition_s = self._transition_for(scenes)
        lengths = filters.segment_durations(scenes, transition_s)
        total = len(scenes)
        done_count = 0
        semaphore = asyncio.Semaphore(self.workers)

        async def run(i: int) -> str:
            nonlocal done_count
            scene_entries = slice_for_scene(entries, offsets[i], max(filters.MIN_SCENE_SECONDS, scenes[i].duration))
            async with semaphore:
                path = await self.render_segment(i, scenes[i], lengths[i], assets, scene_entries, work_dir)
            done_count += 1
            self._update_progress(
                40 + int(30 * done_count / total),
                "composing",
                f"Scene {done_count}/{total} rendered",
                per_scene={i: 100},
                current_scene=i,
            )
            return path

        self._update_progress(40, "composing", f"Rendering {total} scenes", scene_count=total)
        tasks = [asyncio.create_task(run(i)) for i in range(total)]
        try:
            segment_paths = await asyncio.gather(*tasks)
        except BaseException:
            # One failed segment fails the render; stop the others before the work dir goes away
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        joined_path = os.path.join(work_dir, "video_concat.mp4")
        self._update_progress(72, "composing", "Joining scenes")
        if total == 1:
            shutil.copy(segment_paths[0], joined_path)
        else:
            await self._run(self.build_join_command(list(segment_paths), scenes, joined_path), "join")

        picture_s = sum(max(filters.MIN_SCENE_SECONDS, s.duration) for s in scenes)
        self._update_progress(85, "composing", "Mixing audio")
        music_path = assets.music.local_path if assets.music else None
        mux_cmd = self.mixer.build_mux_command(
            joined_path, assets.narration.local_path, output_path, picture_s, music_path=music_path
        )
        await self._run(mux_cmd, "mux")
        logger.info(f"[RENDER] Composed {total} scenes, {picture_s:.2f}s at {self.resolution} (job {self.job_id})")
        return output_path

    async def stitch_clips(
        self,
        clip_paths: list[str],
        scenes: list[Scene],
        assets: ResolvedAssets,
        work_dir: str,
        output_path: str,
    ) -> str:
        """Hard-cut generated clips into one video and mux the audio bed.

        Used by the generative path: the clips are already final footage, so
        no camera movement, captions or cross-fades are applied.
        """
        cut_scenes = [Scene(duration=s.duration, transition=TransitionType.NONE) for s in scenes]
        segment_paths = []
        for i, (path, scene) in enumerate(zip(clip_paths, cut_scenes)):
            out = os.path.join(work_dir, f"clip_part_{i}.mp4")
            duration = max(filters.MIN_SCENE_SECONDS, scene.duration)
            cmd = self.build_segment_command(scene, duration, ("clip", path), out)
            await self._run(cmd, f"clip {i}")
            segment_paths.append(out)

        joined_path = os.path.join(work_dir, "clips_concat.mp4")
        if len(segment_paths) == 1:
            shutil.copy(segment_paths[0], joined_path)
        else:
            await self._run(self.build_join_command(segment_paths, cut_scenes, joined_path), "join clips")

        picture_s = sum(max(filters.MIN_SCENE_SECONDS, s.duration) for s in cut_scenes)
        music_path = assets.music.local_path if assets.music else None
        await self._run(
            self.mixer.build_mux_command(joined_path, assets.narration.local_path, output_path, picture_s, music_path),
            "mux",
        )
        return output_path
