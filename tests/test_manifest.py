"""Tests for render manifests and their content hash."""

import json

import pytest

from reelrender.render.manifest import MISSING_IMAGE_CHECKSUM, NO_CLIP_CHECKSUM, build_manifest, manifest_hash
from reelrender.render.models import (
    CameraMovement,
    EngineKind,
    Resolution,
    ResolvedAsset,
    ResolvedAssets,
    Scene,
    TransitionType,
)

RES = Resolution(854, 480)


def _assets(
    project_id: str = "p1", images=("c0", "c1", "c2"), music: str | None = None, clips=(None, None, None)
) -> ResolvedAssets:
    return ResolvedAssets(
        project_id=project_id,
        images=[ResolvedAsset(f"{project_id}/scene-{i}-a.png", c) if c else None for i, c in enumerate(images)],
        narration=ResolvedAsset(f"{project_id}/narration.mp3", "audio-md5"),
        captions=ResolvedAsset(f"{project_id}/captions.srt", "srt-md5"),
        music=ResolvedAsset(f"{project_id}/music.wav", music) if music else None,
        clips=[ResolvedAsset(f"{project_id}/clips/scene-{i}.mp4", c) if c else None for i, c in enumerate(clips)],
    )


def _scenes() -> list[Scene]:
    return [
        Scene(duration=3),
        Scene(duration=4, transition=TransitionType.FADE),
        Scene(duration=3, transition=TransitionType.DISSOLVE, camera=CameraMovement.ZOOM_IN),
    ]


def _hash(scenes=None, assets=None, **overrides) -> str:
    kwargs = {"engine": EngineKind.FFMPEG, "plan": "free", "resolution": RES}
    kwargs.update(overrides)
    return manifest_hash(scenes or _scenes(), assets or _assets(), **kwargs)


class TestManifestHash:
    def test_same_inputs_same_hash(self):
        assert _hash() == _hash()

    def test_hash_is_sha256_hex(self):
        value = _hash()
        assert len(value) == 64
        int(value, 16)

    def test_project_id_does_not_affect_hash(self):
        assert _hash(assets=_assets("p1")) == _hash(assets=_assets("other-project"))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"engine": EngineKind.GENERATIVE},
            {"plan": "pro"},
            {"resolution": Resolution(1280, 720)},
            {"export_preset": "youtube"},
            {"aspect_ratio": "9:16"},
            {"no_subtitles": True},
        ],
    )
    def test_render_options_change_hash(self, overrides):
        assert _hash(**overrides) != _hash()

    def test_scene_parameters_change_hash(self):
        longer = _scenes()
        longer[1].duration = 5
        recut = _scenes()
        recut[2].transition = TransitionType.NONE
        moved = _scenes()
        moved[0].camera = CameraMovement.PAN_LEFT

        base = _hash()
        assert _hash(scenes=longer) != base
        assert _hash(scenes=recut) != base
        assert _hash(scenes=moved) != base

    def test_input_checksums_change_hash(self):
        assert _hash(assets=_assets(images=("c0", "changed", "c2"))) != _hash()
        assert _hash(assets=_assets(music="m1")) != _hash()

    def test_motion_clips_change_hash(self):
        with_clip = _hash(assets=_assets(clips=(None, "clip-md5", None)))
        assert with_clip != _hash()
        assert _hash(assets=_assets(clips=(None, "regenerated", None))) != with_clip

    def test_scene_order_matters(self):
        scenes = _scenes()
        assert _hash(scenes=list(reversed(scenes))) != _hash(scenes=_scenes())

    def test_integer_and_float_durations_hash_equal(self):
        as_float = _scenes()
        for scene in as_float:
            scene.duration = float(scene.duration)
        assert _hash(scenes=as_float) == _hash()


class TestManifestContent:
    def test_missing_image_uses_placeholder(self):
        manifest = build_manifest(
            _scenes(), _assets(images=("c0", None, "c2")), engine=EngineKind.FFMPEG, plan="free", resolution=RES
        )
        assert manifest.image_checksums == ["c0", MISSING_IMAGE_CHECKSUM, "c2"]

    def test_clip_slots_are_always_present(self):
        manifest = build_manifest(
            _scenes(), _assets(clips=("k0", None, None)), engine=EngineKind.FFMPEG, plan="free", resolution=RES
        )
        assert manifest.to_dict()["inputs"]["clips"] == ["k0", NO_CLIP_CHECKSUM, NO_CLIP_CHECKSUM]

    def test_no_subtitles_drops_caption_checksum(self):
        manifest = build_manifest(
            _scenes(), _assets(), engine=EngineKind.FFMPEG, plan="free", resolution=RES, no_subtitles=True
        )
        assert manifest.to_dict()["inputs"]["captions"] == ""

    def test_canonical_json_is_sorted_and_compact(self):
        manifest = build_manifest(_scenes(), _assets(), engine=EngineKind.FFMPEG, plan="free", resolution=RES)
        text = manifest.canonical_json()
        assert " " not in text
        assert text == json.dumps(json.loads(text), sort_keys=True, separators=(",", ":"))
        data = json.loads(text)
        assert data["resolution"] == {"w": 854, "h": 480}
        assert data["scenes"][2] == {"d": 3.0, "c": "zoom-in", "t": "dissolve"}
        assert "p1" not in text
