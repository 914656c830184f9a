"""Domain types shared by the render engines."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class CameraMovement(Enum):
    """Camera motion applied to a static scene image."""

    STATIC = "static"
    ZOOM_IN = "zoom-in"
    ZOOM_OUT = "zoom-out"
    PAN_LEFT = "pan-left"
    PAN_RIGHT = "pan-right"


class TransitionType(Enum):
    """Transition into a scene from the previous one."""

    FADE = "fade"
    WIPE_LEFT = "wipe-left"
    WIPE_RIGHT = "wipe-right"
    CIRCLE_OPEN = "circle-open"
    DISSOLVE = "dissolve"
    NONE = "none"


class EngineKind(Enum):
    """Which engine produced (or will produce) an artifact."""

    FFMPEG = "ffmpeg"
    GENERATIVE = "fal-per-scene-ffmpeg"


@dataclass(frozen=True)
class Resolution:
    width: int
    height: int

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass
class Scene:
    """One narrative unit of a render request."""

    duration: float = 3.0
    camera: CameraMovement = CameraMovement.STATIC
    transition: TransitionType = TransitionType.FADE
    prompt: Optional[str] = None


@dataclass
class ResolvedAsset:
    """A storage object with its content checksum."""

    key: str
    checksum: str
    local_path: Optional[str] = None


@dataclass
class ResolvedAssets:
    """Everything the engines need for one project, resolved against the asset store."""

    project_id: str
    images: list[Optional[ResolvedAsset]] = field(default_factory=list)  # one slot per scene
    narration: Optional[ResolvedAsset] = None
    captions: Optional[ResolvedAsset] = None
    music: Optional[ResolvedAsset] = None
    clips: list[Optional[ResolvedAsset]] = field(default_factory=list)  # one slot per scene


def scene_offsets(scenes: list[Scene], min_duration: float = 0.0) -> list[float]:
    """Global start offset of each scene (running sum of prior durations).

    Durations below `min_duration` count as `min_duration`, matching how the
    compositor stretches short scenes.
    """
    offsets: list[float] = []
    acc = 0.0
    for scene in scenes:
        offsets.append(acc)
        acc += max(min_duration, scene.duration)
    return offsets


def total_duration(scenes: list[Scene]) -> float:
    return sum(scene.duration for scene in scenes)
