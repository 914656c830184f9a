"""
FFmpeg filter-graph builders for the scene compositor.

Every function here is pure: it maps scene enums and dimensions to filter
strings or option lists without touching the filesystem or running FFmpeg.
"""

from dataclasses import dataclass

from reelrender.render.models import CameraMovement, Resolution, Scene, TransitionType

# Zoom range for zoom-in / zoom-out, as a scale factor over the source
ZOOM_MAX = 1.3
ZOOM_STEP = 0.001

# Pan keeps a slight zoom so the horizontal offset never exposes the edge
PAN_ZOOM = 1.1
PAN_AMPLITUDE_PX = 50

MIN_SCENE_SECONDS = 1.0

CAPTION_STYLE = (
    "Fontsize=18,PrimaryColour=&HFFFFFF&,OutlineColour=&H000000&,"
    "BorderStyle=3,Outline=1,Shadow=1,MarginV=25"
)

WATERMARK_TEXT = "ReelRender"

XFADE_TRANSITIONS: dict[TransitionType, str] = {
    TransitionType.FADE: "fade",
    TransitionType.WIPE_LEFT: "wipeleft",
    TransitionType.WIPE_RIGHT: "wiperight",
    TransitionType.CIRCLE_OPEN: "circleopen",
    TransitionType.DISSOLVE: "dissolve",
}


# ============================================================================
# Per-scene video filters
# ============================================================================


def _centered_zoompan(zoom_expr: str, x_expr: str, resolution: Resolution) -> str:
    return (
        f"zoompan=z='{zoom_expr}':d=1"
        f":x='{x_expr}':y='ih/2-(ih/zoom/2)'"
        f":s={resolution.width}x{resolution.height}"
    )


def camera_filter(camera: CameraMovement, resolution: Resolution) -> str:
    """Video filter for a still image under the given camera movement.

    Zooms stay within 1.0-1.3x and centered; pans oscillate a bounded
    horizontal offset over the input timestamp at a fixed 1.1x zoom.
    """
    center_x = "iw/2-(iw/zoom/2)"
    if camera == CameraMovement.ZOOM_IN:
        vf = _centered_zoompan(f"min(zoom+{ZOOM_STEP},{ZOOM_MAX})", center_x, resolution)
    elif camera == CameraMovement.ZOOM_OUT:
        vf = _centered_zoompan(
            f"if(lte(zoom,1.0),{ZOOM_MAX},max(1.001,zoom-{ZOOM_STEP}))", center_x, resolution
        )
    elif camera == CameraMovement.PAN_LEFT:
        vf = _centered_zoompan(str(PAN_ZOOM), f"{center_x}-{PAN_AMPLITUDE_PX}*sin(in_time)", resolution)
    elif camera == CameraMovement.PAN_RIGHT:
        vf = _centered_zoompan(str(PAN_ZOOM), f"{center_x}+{PAN_AMPLITUDE_PX}*sin(in_time)", resolution)
    else:
        vf = f"scale={resolution.width}:{resolution.height}"
    return f"{vf},format=yuv420p"


def clip_filter(resolution: Resolution, duration: float) -> str:
    """Video filter for a pre-rendered motion clip.

    Scales and letterboxes to the target, and holds the last frame so a clip
    shorter than its scene still fills the segment (the encode trims with -t).
    """
    w, h = resolution.width, resolution.height
    return (
        f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,setsar=1,"
        f"tpad=stop_mode=clone:stop_duration={duration:.3f},format=yuv420p"
    )


def escape_filter_path(path: str) -> str:
    """Quote a filesystem path for use inside a filter argument."""
    return path.replace("\\", "/").replace("'", "'\\''").replace(":", "\\:")


def caption_filter(srt_path: str) -> str:
    return f"subtitles='{escape_filter_path(srt_path)}':force_style='{CAPTION_STYLE}'"


def watermark_filter(text: str = WATERMARK_TEXT) -> str:
    return (
        f"drawtext=text='{text}':fontcolor=white@0.6:fontsize=24"
        ":box=1:boxcolor=black@0.4:boxborderw=5:x=w-tw-10:y=h-th-10"
    )


def build_segment_filter(
    base_filter: str,
    srt_path: str | None = None,
    watermark: bool = False,
) -> str:
    """Chain the source filter with optional caption burn-in and watermark."""
    parts = [base_filter]
    if srt_path:
        parts.append(caption_filter(srt_path))
    if watermark:
        parts.append(watermark_filter())
    return ",".join(parts)


# ============================================================================
# Scene boundaries
# ============================================================================


def xfade_name(transition: TransitionType) -> str | None:
    """xfade transition name, or None for a hard cut."""
    return XFADE_TRANSITIONS.get(transition)


def effective_transition_duration(scenes: list[Scene], transition_s: float) -> float:
    """Cap the cross-fade so it never exceeds half of the shortest scene."""
    if not scenes:
        return transition_s
    shortest = min(max(MIN_SCENE_SECONDS, s.duration) for s in scenes)
    return min(transition_s, shortest / 2)


def segment_durations(scenes: list[Scene], transition_s: float) -> list[float]:
    """Encoded length of each scene segment.

    A segment followed by a cross-fade is rendered `transition_s` longer, so
    the overlap eats the extension and the joined stream keeps the sum of
    scene durations.
    """
    durations = []
    for i, scene in enumerate(scenes):
        d = max(MIN_SCENE_SECONDS, scene.duration)
        if i + 1 < len(scenes) and xfade_name(scenes[i + 1].transition):
            d += transition_s
        durations.append(d)
    return durations


@dataclass
class TransitionPlan:
    filter_complex: str | None
    output_label: str
    offsets: list[float | None]  # per scene boundary; None for hard cuts
    total_duration: float


def build_transition_graph(scenes: list[Scene], transition_s: float) -> TransitionPlan:
    """Join scene segments (inputs 0..n-1) with xfade or concat at each boundary.

    The transition stored on scene i applies to the boundary into scene i.
    Each xfade offset is the running length of the joined stream minus the
    transition duration.
    """
    lengths = segment_durations(scenes, transition_s)
    if len(scenes) <= 1:
        return TransitionPlan(None, "0:v", [], lengths[0] if lengths else 0.0)

    parts: list[str] = []
    offsets: list[float | None] = [None]
    prev = "0:v"
    running = lengths[0]
    for i in range(1, len(scenes)):
        out = "vout" if i == len(scenes) - 1 else f"v{i}"
        name = xfade_name(scenes[i].transition)
        if name:
            offset = running - transition_s
            parts.append(
                f"[{prev}][{i}:v]xfade=transition={name}"
                f":duration={transition_s:.3f}:offset={offset:.3f}[{out}]"
            )
            offsets.append(offset)
            running = offset + lengths[i]
        else:
            parts.append(f"[{prev}][{i}:v]concat=n=2:v=1:a=0[{out}]")
            offsets.append(None)
            running += lengths[i]
        prev = out
    return TransitionPlan(";".join(parts), "vout", offsets, running)


# ============================================================================
# Encoder options
# ============================================================================

_BASE_ENCODE = ["-c:v", "libx264", "-pix_fmt", "yuv420p", "-movflags", "+faststart"]

EXPORT_PRESETS: dict[str, list[str]] = {
    "youtube": [
        "-preset", "slow", "-crf", "18", "-profile:v", "high", "-level", "4.1",
        "-b:v", "8000k", "-maxrate", "10000k", "-bufsize", "20000k",
    ],
    "tiktok": [
        "-preset", "medium", "-crf", "20", "-profile:v", "main", "-level", "4.0",
        "-b:v", "5000k", "-maxrate", "6000k", "-bufsize", "12000k",
    ],
    "square": [
        "-preset", "medium", "-crf", "22", "-profile:v", "main", "-level", "3.1",
        "-b:v", "4000k", "-maxrate", "5000k", "-bufsize", "10000k",
    ],
    "custom": ["-preset", "medium", "-crf", "22"],
}


def encode_options(export_preset: str | None) -> list[str]:
    """libx264 options for an export preset; unknown presets encode as `custom`."""
    preset = EXPORT_PRESETS.get((export_preset or "custom").lower(), EXPORT_PRESETS["custom"])
    return [*_BASE_ENCODE, *preset]
