"""
Content-addressable render manifests.

A manifest captures everything that affects the bytes of a finished render:
engine, plan tier, encode resolution, export preset, caption switch, the
per-scene parameters, and the content checksum of every resolved input
(stills, motion clips, narration, captions, music). The
project id is deliberately absent so identical projects share cache entries.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Optional

from reelrender.render.models import EngineKind, Resolution, ResolvedAssets, Scene

MANIFEST_VERSION = 1

# Stands in for the checksum of a scene slot that has no image, so the slot
# still contributes to the hash.
MISSING_IMAGE_CHECKSUM = "missing"
# A scene without a motion clip renders from its still image
NO_CLIP_CHECKSUM = "none"


@dataclass
class RenderManifest:
    engine: EngineKind
    plan: str
    resolution: Resolution
    scenes: list[Scene]
    image_checksums: list[str]
    audio_checksum: str = ""
    music_checksum: str = ""
    captions_checksum: str = ""
    clip_checksums: list[str] = field(default_factory=list)
    aspect_ratio: Optional[str] = None
    export_preset: Optional[str] = None
    no_subtitles: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "v": MANIFEST_VERSION,
            "engine": self.engine.value,
            "plan": self.plan,
            "resolution": {"w": self.resolution.width, "h": self.resolution.height},
            "aspect_ratio": self.aspect_ratio,
            "export_preset": self.export_preset,
            "no_subtitles": self.no_subtitles,
            "scenes": [
                {"d": float(s.duration), "c": s.camera.value, "t": s.transition.value}
                for s in self.scenes
            ],
            "inputs": {
                "img": list(self.image_checksums),
                "clips": list(self.clip_checksums),
                "audio": self.audio_checksum,
                "music": self.music_checksum,
                "captions": self.captions_checksum,
            },
        }

    def canonical_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @property
    def hash(self) -> str:
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()


def build_manifest(
    scenes: list[Scene],
    assets: ResolvedAssets,
    *,
    engine: EngineKind,
    plan: str,
    resolution: Resolution,
    aspect_ratio: Optional[str] = None,
    export_preset: Optional[str] = None,
    no_subtitles: bool = False,
) -> RenderManifest:
    """Build the manifest for a render, in scene index order."""
    image_checksums = []
    clip_checksums = []
    for i in range(len(scenes)):
        image = assets.images[i] if i < len(assets.images) else None
        image_checksums.append(image.checksum if image else MISSING_IMAGE_CHECKSUM)
        clip = assets.clips[i] if i < len(assets.clips) else None
        clip_checksums.append(clip.checksum if clip else NO_CLIP_CHECKSUM)

    return RenderManifest(
        engine=engine,
        plan=plan,
        resolution=resolution,
        scenes=list(scenes),
        image_checksums=image_checksums,
        clip_checksums=clip_checksums,
        audio_checksum=assets.narration.checksum if assets.narration else "",
        music_checksum=assets.music.checksum if assets.music else "",
        captions_checksum=assets.captions.checksum if assets.captions and not no_subtitles else "",
        aspect_ratio=aspect_ratio,
        export_preset=export_preset,
        no_subtitles=no_subtitles,
    )


def manifest_hash(*args: Any, **kwargs: Any) -> str:
    """Shorthand for `build_manifest(...).hash`."""
    return build_manifest(*args, **kwargs).hash
