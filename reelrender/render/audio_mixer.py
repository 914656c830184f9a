"""
Final audio mux for the scene compositor.

This module handles:
- Narration as the primary audio bed
- Music ducking under narration (sidechain compression)
- Narration loudness normalization when there is no music
- Bounding the container to the picture length
"""

from dataclasses import dataclass
from typing import Optional

from reelrender.config import get_settings


@dataclass
class DuckingParams:
    """sidechaincompress settings: music is compressed while narration is loud."""

    threshold: float = 0.05
    ratio: int = 6
    attack_ms: int = 5
    release_ms: int = 300


class AudioMixer:
    """
    FFmpeg-based audio mixer with ducking support.

    Inputs are fixed: 0 = silent picture, 1 = narration, 2 = optional music.
    """

    def __init__(self, ducking: Optional[DuckingParams] = None):
        settings = get_settings()
        self.ffmpeg_path = settings.ffmpeg_path
        self.sample_rate = settings.render_audio_sample_rate
        self.bitrate = settings.render_audio_bitrate
        self.ducking = ducking or DuckingParams()

    def _build_ducking_filter(self, music_stream: str, narration_stream: str) -> str:
        """Build FFmpeg sidechain compression filter for ducking."""
        d = self.ducking
        return (
            f"[{music_stream}][{narration_stream}]sidechaincompress="
            f"threshold={d.threshold}:"
            f"ratio={d.ratio}:"
            f"attack={d.attack_ms}:"
            f"release={d.release_ms}"
            f"[ducked]"
        )

    def build_audio_filter(self, has_music: bool) -> str:
        """filter_complex producing [final_audio].

        The result is padded with silence so audio never ends before the
        picture; the mux trims it to the picture length.
        """
        if not has_music:
            return "[1:a]loudnorm=I=-16:TP=-1.5:LRA=11,apad[final_audio]"
        return ";".join(
            [
                "[1:a]asplit=2[narr][sc]",
                self._build_ducking_filter("2:a", "sc"),
                "[narr][ducked]amix=inputs=2:duration=first:dropout_transition=2,apad[final_audio]",
            ]
        )

    def build_mux_command(
        self,
        video_path: str,
        narration_path: str,
        output_path: str,
        duration_s: float,
        music_path: Optional[str] = None,
    ) -> list[str]:
        """Build the final mux command (picture copied, audio mixed) without executing it."""
        cmd = [self.ffmpeg_path, "-y", "-i", video_path, "-i", narration_path]
        if music_path:
            cmd += ["-i", music_path]
        cmd += [
            "-filter_complex", self.build_audio_filter(bool(music_path)),
            "-map", "0:v:0",
            "-map", "[final_audio]",
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", self.bitrate,
            "-ar", str(self.sample_rate),
            "-t", f"{duration_s:.3f}",
            "-shortest",
            "-movflags", "+faststart",
            output_path,
        ]
        return cmd
