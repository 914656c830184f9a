"""
Remote generative video engine (fal.ai queue API).

Each model invocation is a `GenerativeTask` driven through an explicit state
machine: QUEUED -> RUNNING -> COMPLETED | FAILED | TIMED_OUT. Polling uses an
injectable clock and sleep so timeout boundaries are testable without real
delays. Candidate models are tried in priority order; the first success wins
and the last error is propagated when all fail.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from reelrender.config import get_settings
from reelrender.exceptions import ConfigurationError, GenerativeEngineError
from reelrender.services.metrics import RenderMetrics

logger = logging.getLogger(__name__)


class TaskStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATUSES = {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMED_OUT}

_FORWARD: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.QUEUED: {TaskStatus.RUNNING} | TERMINAL_STATUSES,
    TaskStatus.RUNNING: set(TERMINAL_STATUSES),
}

# Queue API status strings
REMOTE_STATUS = {
    "IN_QUEUE": TaskStatus.QUEUED,
    "IN_PROGRESS": TaskStatus.RUNNING,
    "COMPLETED": TaskStatus.COMPLETED,
    "COMPLETED_WITH_WARNINGS": TaskStatus.COMPLETED,
    "FAILED": TaskStatus.FAILED,
    "ERROR": TaskStatus.FAILED,
}


@dataclass
class GenerativeTask:
    """Engine-side state of one remote model invocation."""

    model: str
    request_id: str
    submitted_at: float
    deadline: float
    status: TaskStatus = TaskStatus.QUEUED
    error: Optional[str] = None
    status_url: Optional[str] = None
    response_url: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def advance(self, status: TaskStatus, error: Optional[str] = None) -> bool:
        """Move forward to `status`. Returns False (no change) for a repeated
        or backward status."""
        if status == self.status or status not in _FORWARD.get(self.status, set()):
            return False
        self.status = status
        if error:
            self.error = error
        return True


def pick_video_url(payload: Any) -> Optional[str]:
    """Find the output video URL in a model result payload."""
    if not isinstance(payload, dict):
        return None
    if isinstance(payload.get("output_url"), str):
        return payload["output_url"]
    for field in ("result", "data", "output", "video"):
        value = payload.get(field)
        if isinstance(value, list) and value:
            value = value[0]
        if isinstance(value, dict):
            url = value.get("url") or (value.get("video") or {}).get("url")
            if url:
                return url
    return None


def build_model_input(
    image_url: Optional[str],
    prompt: Optional[str],
    duration_s: Optional[int] = None,
) -> dict[str, Any]:
    """Input payload for an image/text-to-video model.

    Duration is sent under each name the supported models accept.
    """
    payload: dict[str, Any] = {"prompt": prompt or get_settings().clip_default_prompt}
    if image_url:
        payload["image_url"] = image_url
    if duration_s and duration_s > 0:
        payload.update({"duration": duration_s, "seconds": duration_s, "video_length": duration_s})
    return payload


# =============================================================================
# Queue API client
# =============================================================================


@dataclass
class SubmittedRequest:
    request_id: str
    status_url: Optional[str] = None
    response_url: Optional[str] = None


class FalQueueClient:
    """Thin async client for the fal.ai queue REST API (submit/status/result)."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key
        self.base_url = (base_url or settings.fal_queue_base_url).rstrip("/")
        self.timeout_s = timeout_s or settings.fal_http_timeout_s
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"Authorization": f"Key {self.api_key}", "Content-Type": "application/json"},
            timeout=timeout or self.timeout_s,
            transport=self._transport,
        )

    @staticmethod
    def _app_path(model: str) -> str:
        # Status/result live under owner/app, without the model's sub-path
        return "/".join(model.split("/")[:2])

    async def submit(self, model: str, payload: dict[str, Any]) -> SubmittedRequest:
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/{model}", json=payload)
        response.raise_for_status()
        data = response.json()
        request_id = data.get("request_id") or data.get("requestId")
        if not request_id:
            raise GenerativeEngineError(f"{model}: submit returned no request id")
        return SubmittedRequest(
            request_id=request_id,
            status_url=data.get("status_url"),
            response_url=data.get("response_url"),
        )

    async def status(self, task: GenerativeTask) -> str:
        url = task.status_url or f"{self.base_url}/{self._app_path(task.model)}/requests/{task.request_id}/status"
        async with self._client() as client:
            response = await client.get(url)
        response.raise_for_status()
        return str(response.json().get("status", "")).upper()

    async def result(self, task: GenerativeTask) -> dict[str, Any]:
        url = task.response_url or f"{self.base_url}/{self._app_path(task.model)}/requests/{task.request_id}"
        async with self._client() as client:
            response = await client.get(url)
        response.raise_for_status()
        return response.json()

    async def download(self, url: str, dest_path: str, timeout_s: Optional[float] = None) -> str:
        """Stream a generated video to a local file."""
        async with httpx.AsyncClient(
            timeout=timeout_s or get_settings().fal_download_timeout_s,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                with open(dest_path, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
        return dest_path


# =============================================================================
# Engine
# =============================================================================


@dataclass
class GenerationResult:
    model: str
    request_id: str
    video_url: str
    local_path: str


StatusCallback = Callable[[GenerativeTask], Awaitable[None] | None]


class GenerativeEngine:
    """Submit -> poll -> fetch over candidate models."""

    def __init__(
        self,
        client: Optional[FalQueueClient] = None,
        *,
        poll_interval_s: Optional[float] = None,
        task_timeout_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: Optional[RenderMetrics] = None,
    ) -> None:
        settings = get_settings()
        self._client = client
        self.poll_interval_s = poll_interval_s if poll_interval_s is not None else settings.fal_poll_interval_s
        self.task_timeout_s = task_timeout_s if task_timeout_s is not None else settings.fal_task_timeout_s
        self._clock = clock
        self._sleep = sleep
        self.metrics = metrics or RenderMetrics()

    @property
    def client(self) -> FalQueueClient:
        """Queue client, created on first use so a missing key only fails generative paths."""
        if self._client is None:
            settings = get_settings()
            if not settings.fal_api_key:
                raise ConfigurationError("FAL_API_KEY is not configured")
            self._client = FalQueueClient(settings.fal_api_key)
        return self._client

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(get_settings().fal_api_key)

    def candidate_models(self, requested: Optional[str] = None) -> list[str]:
        """Requested model first, then configured, premium and standard defaults."""
        settings = get_settings()
        ordered = [
            requested,
            settings.fal_render_model,
            settings.fal_premium_model,
            "fal-ai/veo3/fast/image-to-video",
            "fal-ai/ltx-video-13b-distilled/image-to-video",
        ]
        candidates: list[str] = []
        for model in ordered:
            if model and model not in candidates:
                candidates.append(model)
        if not candidates:
            raise ConfigurationError("No generative model is configured")
        return candidates

    async def run_task(
        self,
        model: str,
        payload: dict[str, Any],
        *,
        cancel_check: Optional[Callable[[], bool]] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> tuple[GenerativeTask, dict[str, Any]]:
        """Drive one remote invocation to a terminal state and return its result payload."""
        if cancel_check and cancel_check():
            raise GenerativeEngineError(f"{model} not submitted: job abandoned")
        submitted = await self.client.submit(model, payload)
        now = self._clock()
        task = GenerativeTask(
            model=model,
            request_id=submitted.request_id,
            submitted_at=now,
            deadline=now + self.task_timeout_s,
            status_url=submitted.status_url,
            response_url=submitted.response_url,
        )
        logger.info(f"[FAL] Submitted {model} request {task.request_id}")

        while not task.terminal:
            if self._clock() >= task.deadline:
                task.advance(TaskStatus.TIMED_OUT, f"no terminal status within {self.task_timeout_s:.0f}s")
                break
            if cancel_check and cancel_check():
                task.advance(TaskStatus.FAILED, "job abandoned")
                break

            remote = await self.client.status(task)
            new_status = REMOTE_STATUS.get(remote)
            if new_status is None:
                logger.debug(f"[FAL] {task.request_id}: unrecognised status {remote!r}")
            elif task.advance(new_status, f"remote status {remote}" if new_status == TaskStatus.FAILED else None):
                logger.info(f"[FAL] {task.request_id}: {task.status.value}")
                if on_status:
                    maybe = on_status(task)
                    if asyncio.iscoroutine(maybe):
                        await maybe
            if not task.terminal:
                await self._sleep(self.poll_interval_s)

        if task.status != TaskStatus.COMPLETED:
            raise GenerativeEngineError(f"{model} request {task.request_id} {task.status.value}: {task.error}")
        return task, await self.client.result(task)

    async def generate(
        self,
        dest_path: str,
        *,
        image_url: Optional[str] = None,
        prompt: Optional[str] = None,
        duration_s: Optional[int] = None,
        model: Optional[str] = None,
        job_id: Optional[str] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> GenerationResult:
        """Generate one video, trying candidate models until one succeeds.

        Raises:
            ConfigurationError: no API key or model configured
            GenerativeEngineError: every candidate failed or timed out
        """
        client = self.client
        payload = build_model_input(image_url, prompt, duration_s)
        last_error: Optional[Exception] = None

        for candidate in self.candidate_models(model):
            if cancel_check and cancel_check():
                last_error = last_error or GenerativeEngineError("Job abandoned before submission")
                break
            try:
                with self.metrics.timer("generation"):
                    task, result = await self.run_task(
                        candidate, payload, cancel_check=cancel_check, on_status=on_status
                    )
                url = pick_video_url(result)
                if not url:
                    raise GenerativeEngineError(f"{candidate} did not return a video URL")
                await client.download(url, dest_path)
                self.metrics.incr("generation_success")
                return GenerationResult(candidate, task.request_id, url, dest_path)
            except (GenerativeEngineError, httpx.HTTPError, OSError) as e:
                last_error = e
                self.metrics.incr("generation_failure")
                logger.warning(f"[FAL] Model {candidate} failed (job {job_id}): {e}")
                if cancel_check and cancel_check():
                    break

        detail = getattr(last_error, "message", None) or str(last_error)
        raise GenerativeEngineError(f"Remote generation failed: {detail}", job_id=job_id) from last_error
