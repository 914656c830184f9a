"""
Pytest fixtures for ReelRender tests.

FFmpeg is replaced by a recording fake runner everywhere except tests marked
@pytest.mark.requires_ffmpeg, which need real ffmpeg/ffprobe binaries.
Run `pytest -m "not requires_ffmpeg"` to skip them in CI.
"""

import shutil
import subprocess
from pathlib import Path

import pytest

from reelrender.api.deps import reset_dependencies
from reelrender.config import get_settings
from reelrender.render.generative import GenerativeTask, SubmittedRequest
from reelrender.services.storage_service import LocalStorageService

INPUT_BUCKET = "test-assets"
OUTPUT_BUCKET = "test-renders"

SAMPLE_SRT = """1
00:00:00,000 --> 00:00:02,500
Welcome to the tour.

2
00:00:02,500 --> 00:00:06,000
Here is the second scene.

3
00:00:06,000 --> 00:00:10,000
And that is all.
"""


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg and ffprobe binaries (skipped when absent)",
    )


requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg/ffprobe not installed",
)


@pytest.fixture(autouse=True)
def test_settings(tmp_path, monkeypatch):
    """Isolated settings: local storage under tmp_path, no fal key, no retry delay."""
    monkeypatch.setenv("USE_LOCAL_STORAGE", "true")
    monkeypatch.setenv("LOCAL_STORAGE_PATH", str(tmp_path / "storage"))
    monkeypatch.setenv("INPUT_BUCKET_NAME", INPUT_BUCKET)
    monkeypatch.setenv("OUTPUT_BUCKET_NAME", OUTPUT_BUCKET)
    monkeypatch.setenv("FAL_API_KEY", "")
    monkeypatch.setenv("RENDER_ENGINE", "")
    monkeypatch.setenv("DEV_MODE", "false")
    monkeypatch.setenv("USE_FIRESTORE_PLANS", "false")
    monkeypatch.setenv("RETRY_BASE_DELAY_MS", "0")
    get_settings.cache_clear()
    reset_dependencies()
    yield get_settings()
    get_settings.cache_clear()
    reset_dependencies()


@pytest.fixture
def input_storage() -> LocalStorageService:
    return LocalStorageService(INPUT_BUCKET)


@pytest.fixture
def output_storage() -> LocalStorageService:
    return LocalStorageService(OUTPUT_BUCKET)


@pytest.fixture
def project_assets(input_storage):
    """Upload a three-scene project (images, narration, captions) and return its id."""

    def _make(project_id: str = "proj-1", scenes: int = 3, music: bool = False) -> str:
        for i in range(scenes):
            input_storage.upload_bytes(f"{project_id}/scene-{i}-a.png", f"image-{i}".encode())
        input_storage.upload_bytes(f"{project_id}/narration.mp3", b"narration-bytes")
        input_storage.upload_bytes(f"{project_id}/captions.srt", SAMPLE_SRT.encode())
        if music:
            input_storage.upload_bytes(f"{project_id}/music.wav", b"music-bytes")
        return project_id

    return _make


class FakeRunner:
    """Stands in for ffmpeg: records commands and writes the output file (last argument)."""

    def __init__(self, fail_on: str | None = None, fail_always: bool = False):
        self.commands: list[list[str]] = []
        self.fail_on = fail_on
        self.fail_always = fail_always

    def __call__(self, cmd: list[str]) -> subprocess.CompletedProcess:
        self.commands.append(list(cmd))
        if self.fail_always or (self.fail_on and any(self.fail_on in part for part in cmd)):
            return subprocess.CompletedProcess(cmd, 1, "", "Error initializing filter")
        Path(cmd[-1]).write_bytes(b"fake-mp4")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def joined(self) -> list[str]:
        return [" ".join(c) for c in self.commands]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


class FakeClock:
    """Monotonic clock advanced only by the paired sleep."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


class FakeFalClient:
    """In-memory queue client.

    `statuses` is the sequence returned by successive status polls (the last
    one repeats). Models listed in `failing_models` end FAILED.
    """

    def __init__(
        self,
        statuses: list[str] | None = None,
        failing_models: set[str] | None = None,
        fail_images: tuple[str, ...] = (),
    ):
        self.statuses = statuses or ["IN_PROGRESS", "COMPLETED"]
        self.failing_models = failing_models or set()
        self.fail_images = fail_images
        self.submitted: list[tuple[str, dict]] = []
        self.downloads: list[str] = []
        self._polls: dict[str, int] = {}

    async def submit(self, model: str, payload: dict) -> SubmittedRequest:
        self.submitted.append((model, payload))
        request_id = f"req-{len(self.submitted)}"
        self._polls[request_id] = 0
        return SubmittedRequest(request_id=request_id)

    async def status(self, task: GenerativeTask) -> str:
        if task.model in self.failing_models:
            return "FAILED"
        payload = self.submitted[int(task.request_id.split("-")[1]) - 1][1]
        if any(marker in payload.get("image_url", "") for marker in self.fail_images):
            return "FAILED"
        n = self._polls[task.request_id]
        self._polls[task.request_id] = n + 1
        return self.statuses[min(n, len(self.statuses) - 1)]

    async def result(self, task: GenerativeTask) -> dict:
        return {"video": {"url": f"https://fal.media/files/{task.request_id}.mp4"}}

    async def download(self, url: str, dest_path: str, timeout_s: float | None = None) -> str:
        self.downloads.append(url)
        Path(dest_path).write_bytes(b"generated-clip")
        return dest_path
