"""
Tests for the generative engine: task state machine, polling, timeouts,
candidate fallback, and the fal.ai queue client over a mock transport.
"""

import json

import httpx
import pytest
from conftest import FakeClock, FakeFalClient

from reelrender.exceptions import ConfigurationError, GenerativeEngineError
from reelrender.render.generative import (
    FalQueueClient,
    GenerativeEngine,
    GenerativeTask,
    TaskStatus,
    build_model_input,
    pick_video_url,
)
from reelrender.services.metrics import RenderMetrics


def _engine(client, clock: FakeClock, timeout_s: float = 10.0) -> GenerativeEngine:
    return GenerativeEngine(
        client,
        poll_interval_s=3.0,
        task_timeout_s=timeout_s,
        clock=clock,
        sleep=clock.sleep,
        metrics=RenderMetrics(),
    )


class TestTaskStateMachine:
    def _task(self) -> GenerativeTask:
        return GenerativeTask(model="m", request_id="r", submitted_at=0, deadline=10)

    def test_forward_transitions(self):
        task = self._task()
        assert task.advance(TaskStatus.RUNNING)
        assert task.advance(TaskStatus.COMPLETED)
        assert task.terminal

    def test_queued_may_finish_directly(self):
        task = self._task()
        assert task.advance(TaskStatus.FAILED, "remote error")
        assert task.error == "remote error"

    def test_no_backward_or_repeated_transitions(self):
        task = self._task()
        task.advance(TaskStatus.RUNNING)
        assert not task.advance(TaskStatus.RUNNING)
        assert not task.advance(TaskStatus.QUEUED)
        task.advance(TaskStatus.TIMED_OUT)
        assert not task.advance(TaskStatus.COMPLETED)
        assert task.status == TaskStatus.TIMED_OUT


class TestPayloads:
    @pytest.mark.parametrize(
        "payload",
        [
            {"output_url": "https://v/1.mp4"},
            {"video": {"url": "https://v/1.mp4"}},
            {"data": [{"url": "https://v/1.mp4"}]},
            {"result": {"video": {"url": "https://v/1.mp4"}}},
        ],
    )
    def test_pick_video_url(self, payload):
        assert pick_video_url(payload) == "https://v/1.mp4"

    def test_pick_video_url_missing(self):
        assert pick_video_url({"images": []}) is None
        assert pick_video_url("nope") is None

    def test_model_input_sends_duration_under_every_name(self):
        payload = build_model_input("https://img", "slow pan", 6)
        assert payload == {
            "prompt": "slow pan",
            "image_url": "https://img",
            "duration": 6,
            "seconds": 6,
            "video_length": 6,
        }

    def test_model_input_default_prompt(self, test_settings):
        assert build_model_input(None, None)["prompt"] == test_settings.clip_default_prompt


class TestRunTask:
    @pytest.mark.asyncio
    async def test_completes_through_running(self, fake_clock):
        client = FakeFalClient(statuses=["IN_QUEUE", "IN_PROGRESS", "COMPLETED"])
        seen = []
        task, result = await _engine(client, fake_clock).run_task(
            "fal-ai/x/image-to-video", {"prompt": "p"}, on_status=lambda t: seen.append(t.status)
        )
        assert task.status == TaskStatus.COMPLETED
        assert seen == [TaskStatus.RUNNING, TaskStatus.COMPLETED]
        assert result["video"]["url"].endswith(".mp4")
        assert fake_clock.sleeps == [3.0, 3.0]

    @pytest.mark.asyncio
    async def test_times_out_at_deadline(self, fake_clock):
        client = FakeFalClient(statuses=["IN_QUEUE"])
        with pytest.raises(GenerativeEngineError, match="timed_out"):
            await _engine(client, fake_clock, timeout_s=10).run_task("m/a", {})
        # Polls at t=0,3,6,9, then the deadline at 12 is past
        assert len(fake_clock.sleeps) == 4

    @pytest.mark.asyncio
    async def test_remote_failure(self, fake_clock):
        client = FakeFalClient(failing_models={"m/a"})
        with pytest.raises(GenerativeEngineError, match="failed"):
            await _engine(client, fake_clock).run_task("m/a", {})

    @pytest.mark.asyncio
    async def test_abandoned_job_is_not_submitted(self, fake_clock):
        client = FakeFalClient(statuses=["IN_QUEUE"])
        with pytest.raises(GenerativeEngineError, match="abandoned"):
            await _engine(client, fake_clock, timeout_s=600).run_task("m/a", {}, cancel_check=lambda: True)
        assert client.submitted == []
        assert fake_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_cancel_check_stops_polling(self, fake_clock):
        client = FakeFalClient(statuses=["IN_QUEUE"])
        checks = []

        def abandoned() -> bool:
            checks.append(1)
            return len(checks) > 2

        with pytest.raises(GenerativeEngineError, match="abandoned"):
            await _engine(client, fake_clock, timeout_s=600).run_task("m/a", {}, cancel_check=abandoned)
        assert len(client.submitted) == 1
        assert fake_clock.sleeps == [3.0]


class TestGenerate:
    @pytest.mark.asyncio
    async def test_falls_back_to_next_candidate(self, fake_clock, tmp_path):
        client = FakeFalClient(failing_models={"owner/first"})
        engine = _engine(client, fake_clock)

        result = await engine.generate(str(tmp_path / "clip.mp4"), image_url="https://img", model="owner/first")

        assert result.model != "owner/first"
        assert [m for m, _ in client.submitted][:2] == ["owner/first", result.model]
        assert (tmp_path / "clip.mp4").read_bytes() == b"generated-clip"
        assert engine.metrics.get("generation_failure") == 1
        assert engine.metrics.get("generation_success") == 1

    @pytest.mark.asyncio
    async def test_all_candidates_failing_raises_last_error(self, fake_clock, tmp_path):
        client = FakeFalClient(statuses=["IN_QUEUE"])
        engine = _engine(client, fake_clock)
        with pytest.raises(GenerativeEngineError) as exc_info:
            await engine.generate(str(tmp_path / "clip.mp4"), image_url="https://img", job_id="job-5")
        assert exc_info.value.job_id == "job-5"
        assert "timed_out" in exc_info.value.message
        assert len(client.submitted) == len(engine.candidate_models())

    @pytest.mark.asyncio
    async def test_abandoned_job_submits_nothing(self, fake_clock, tmp_path):
        client = FakeFalClient()
        engine = _engine(client, fake_clock)
        with pytest.raises(GenerativeEngineError, match="abandoned"):
            await engine.generate(str(tmp_path / "clip.mp4"), image_url="https://img", cancel_check=lambda: True)
        assert client.submitted == []
        assert engine.metrics.get("generation_failure") == 0

    def test_candidates_are_deduplicated(self, test_settings):
        engine = GenerativeEngine(FakeFalClient())
        candidates = engine.candidate_models(test_settings.fal_render_model)
        assert candidates[0] == test_settings.fal_render_model
        assert len(candidates) == len(set(candidates))

    @pytest.mark.asyncio
    async def test_missing_api_key(self, tmp_path):
        engine = GenerativeEngine()
        assert not engine.configured
        with pytest.raises(ConfigurationError):
            await engine.generate(str(tmp_path / "clip.mp4"), image_url="https://img")


class TestFalQueueClient:
    @pytest.mark.asyncio
    async def test_submit_status_result_download(self, tmp_path):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            path = request.url.path
            if request.method == "POST":
                return httpx.Response(200, json={"request_id": "abc"})
            if path.endswith("/status"):
                return httpx.Response(200, json={"status": "COMPLETED"})
            if path.endswith("/requests/abc"):
                return httpx.Response(200, json={"video": {"url": "https://cdn.example/out.mp4"}})
            if request.url.host == "cdn.example":
                return httpx.Response(200, content=b"mp4-bytes")
            return httpx.Response(404)

        client = FalQueueClient("secret", base_url="https://queue.test", transport=httpx.MockTransport(handler))
        model = "fal-ai/ltx-video/image-to-video"

        submitted = await client.submit(model, {"prompt": "p"})
        task = GenerativeTask(model=model, request_id=submitted.request_id, submitted_at=0, deadline=10)
        assert await client.status(task) == "COMPLETED"
        result = await client.result(task)
        await client.download(pick_video_url(result), str(tmp_path / "out.mp4"))

        assert str(requests[0].url) == f"https://queue.test/{model}"
        assert json.loads(requests[0].content) == {"prompt": "p"}
        assert requests[0].headers["Authorization"] == "Key secret"
        assert str(requests[1].url) == "https://queue.test/fal-ai/ltx-video/requests/abc/status"
        assert (tmp_path / "out.mp4").read_bytes() == b"mp4-bytes"

    @pytest.mark.asyncio
    async def test_uses_urls_from_submit_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(
                    200,
                    json={"request_id": "abc", "status_url": "https://queue.test/custom/status"},
                )
            assert str(request.url) == "https://queue.test/custom/status"
            return httpx.Response(200, json={"status": "in_progress"})

        client = FalQueueClient("k", base_url="https://queue.test", transport=httpx.MockTransport(handler))
        submitted = await client.submit("owner/app", {})
        task = GenerativeTask("owner/app", submitted.request_id, 0, 10, status_url=submitted.status_url)
        assert await client.status(task) == "IN_PROGRESS"

    @pytest.mark.asyncio
    async def test_http_errors_raise(self):
        client = FalQueueClient(
            "k", base_url="https://queue.test", transport=httpx.MockTransport(lambda r: httpx.Response(401))
        )
        with pytest.raises(httpx.HTTPStatusError):
            await client.submit("owner/app", {})
