from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from reelrender.render.models import CameraMovement, TransitionType


class SceneSpec(BaseModel):
    duration: float = Field(3.0, ge=0)
    camera: CameraMovement = CameraMovement.STATIC
    transition: TransitionType = TransitionType.FADE  # Transition into this scene
    prompt: str | None = None  # Motion prompt for clip generation


class ClipControls(BaseModel):
    enabled: bool = True  # Auto-generate missing motion clips when an engine is configured
    force: bool = False  # Regenerate clips even if they exist
    seconds: int | None = Field(None, gt=0)
    concurrency: int | None = Field(None, gt=0)
    model: str | None = None
    prompt: str | None = None


class RenderRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    job_id: str | None = None
    user_id: str | None = None  # Used for plan lookup when configured
    scenes: list[SceneSpec] = Field(default_factory=list)
    narration_path: str | None = None  # gs://bucket/key or key
    captions_path: str | None = None
    music_path: str | None = None
    plan: str | None = None  # Tier or billing plan id, when no lookup is configured
    engine: Literal["ffmpeg", "fal"] | None = None
    use_fal: bool | None = None
    target_width: int | None = Field(None, gt=0)
    target_height: int | None = Field(None, gt=0)
    aspect_ratio: str | None = None
    export_preset: Literal["youtube", "tiktok", "square", "custom"] | None = None
    no_subtitles: bool = False
    force: bool = False  # Bypass the render cache
    published: bool = False  # Public URL instead of a signed draft URL
    clips: ClipControls = Field(default_factory=ClipControls)
    async_mode: bool = False  # Return a job id immediately and render in the background


class RenderResponse(BaseModel):
    video_url: str
    cached: bool
    engine: str
    skip_polish: bool = False
    cache_key: str | None = None
    job_id: str
    resolution: str | None = None


class RenderAccepted(BaseModel):
    job_id: str
    status: str = "accepted"
    progress_url: str


class GenerateClipRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    scene_index: int = Field(..., ge=0)
    prompt: str | None = None
    duration_s: int | None = Field(None, gt=0)
    model: str | None = None


class GenerateClipResponse(BaseModel):
    model: str
    clip_path: str
    clip_url: str


class JobProgressResponse(BaseModel):
    job_id: str
    progress: int
    stage: str
    message: str
    eta_seconds: float | None = None
    done: bool
    error: str | None = None
    ts: float
    per_scene: dict[str, int] = Field(default_factory=dict)
    scene_count: int | None = None
    current_scene: int | None = None


class BucketInfo(BaseModel):
    input: str
    output: str


class CacheStatusResponse(BaseModel):
    service: str = "render"
    bucket: BucketInfo
    engine: str
    fal_model: str | None
    cache: dict[str, int]
    metrics: dict[str, Any]
    now: datetime


class ClipInfo(BaseModel):
    name: str
    size: int
    updated: datetime | None = None


class ProjectCacheStatusResponse(BaseModel):
    project_id: str
    clips_count: int
    clips: list[ClipInfo]
    bucket: str


class SignedClip(BaseModel):
    name: str
    url: str
    index: int | None = None


class SignedClipsResponse(BaseModel):
    project_id: str
    count: int
    items: list[SignedClip]


class CacheClearRequest(BaseModel):
    project_id: str | None = None
    cache_id: str | None = None


class CacheClearResponse(BaseModel):
    status: str = "ok"
    deleted: list[str]
