from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "ReelRender Engine"
    app_version: str = "0.1.0"
    git_hash: str = "unknown"  # Set via GIT_HASH env var at build time
    environment: Literal["development", "staging", "production"] = "development"
    dev_mode: bool = False  # Enables operator-only endpoints (cache clear)
    log_level: str = "INFO"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Google Cloud Storage
    input_bucket_name: str = "reelrender-assets"
    output_bucket_name: str = "reelrender-renders"
    gcs_project_id: str = ""
    storage_timeout_s: float = 120.0  # Per GCS call

    # Local storage for development (when GCS is not configured)
    use_local_storage: bool = True  # Set to False in production
    local_storage_path: str = "/tmp/reelrender-storage"
    local_storage_base_url: str = "http://localhost:8000/api/storage/files"

    # Firebase (plan lookup)
    firebase_project_id: str = ""
    use_firestore_plans: bool = False

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"

    # Render settings
    render_fps: int = 30
    render_audio_bitrate: str = "192k"
    render_audio_sample_rate: int = 48000
    render_transition_duration_s: float = 0.75
    render_scene_workers: int = 2
    render_engine: str = ""  # RENDER_ENGINE override reported in diagnostics

    # Generative engine (fal.ai queue API)
    fal_api_key: str = ""
    fal_queue_base_url: str = "https://queue.fal.run"
    fal_render_model: str = "fal-ai/ltx-video-13b-distilled/image-to-video"
    fal_premium_model: str = "fal-ai/veo3/fast/image-to-video"
    fal_http_timeout_s: float = 60.0
    fal_poll_interval_s: float = 3.0
    fal_task_timeout_s: float = 600.0
    fal_download_timeout_s: float = 300.0

    # Per-scene clip generation
    clip_default_seconds: int = 8
    clip_concurrency: int = 2
    clip_max_concurrency: int = 4
    clip_default_prompt: str = "Cinematic parallax over the scene; subtle camera motion."

    # Retry policy (asset download / artifact upload)
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 1000

    # URL lifetimes
    draft_url_expiration_minutes: int = 7 * 24 * 60
    input_url_expiration_minutes: int = 60

    # Job progress store
    job_record_ttl_s: int = 3600
    job_abandon_after_s: int = 900
    sse_heartbeat_s: float = 30.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
