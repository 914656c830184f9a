"""Tests for the job progress broadcaster and its SSE framing."""

import asyncio
import json

import pytest

from reelrender.services.progress import SSE_HEARTBEAT, JobProgressBroadcaster


class ManualClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def broadcaster(clock) -> JobProgressBroadcaster:
    return JobProgressBroadcaster(record_ttl_s=60, abandon_after_s=30, clock=clock)


class TestPush:
    def test_progress_is_monotonic_and_clamped(self, broadcaster):
        broadcaster.push("j1", progress=40, stage="composing")
        record = broadcaster.push("j1", progress=10)
        assert record.progress == 40
        assert broadcaster.push("j1", progress=250).progress == 100
        assert broadcaster.push("j2", progress=-5).progress == 0

    def test_fields_are_merged(self, broadcaster):
        broadcaster.push("j1", progress=10, stage="clips", message="Scene 1", scene_count=3, per_scene={0: 50})
        record = broadcaster.push("j1", per_scene={1: 100}, current_scene=1)
        assert record.stage == "clips"
        assert record.message == "Scene 1"
        assert record.scene_count == 3
        assert record.per_scene == {0: 50, 1: 100}
        assert record.current_scene == 1

    def test_done_forces_100(self, broadcaster):
        record = broadcaster.push("j1", progress=20, done=True)
        assert record.progress == 100
        assert record.terminal

    def test_updates_after_terminal_are_ignored(self, broadcaster):
        broadcaster.push("j1", progress=30, stage="composing")
        broadcaster.push("j1", stage="error", message="boom", error="COMPOSITOR_FAILURE")
        record = broadcaster.push("j1", progress=90, stage="uploading")
        assert record.stage == "error"
        assert record.progress == 30
        assert broadcaster.get("j1").error == "COMPOSITOR_FAILURE"

    def test_get_unknown_job(self, broadcaster):
        assert broadcaster.get("nope") is None

    def test_sse_frame(self, broadcaster):
        record = broadcaster.push("j1", progress=5, stage="resolving", per_scene={2: 10})
        frame = record.to_sse()
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        payload = json.loads(frame[len("data: "):])
        assert payload["progress"] == 5
        assert payload["per_scene"] == {"2": 10}


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_late_subscriber_gets_snapshot_then_updates(self, broadcaster):
        broadcaster.push("j1", progress=25, stage="downloading")
        received = []

        async def consume():
            async for record in broadcaster.subscribe("j1"):
                received.append(record)

        task = asyncio.create_task(consume())
        while broadcaster.subscriber_count("j1") == 0:
            await asyncio.sleep(0)
        broadcaster.push("j1", progress=50, stage="composing")
        broadcaster.push("j1", stage="done", done=True)
        await asyncio.wait_for(task, timeout=2)

        assert [r.progress for r in received] == [25, 50, 100]
        assert received[-1].done
        assert broadcaster.subscriber_count("j1") == 0

    @pytest.mark.asyncio
    async def test_fan_out_to_multiple_subscribers(self, broadcaster):
        async def collect():
            return [r.progress async for r in broadcaster.subscribe("j1")]

        tasks = [asyncio.create_task(collect()) for _ in range(2)]
        while broadcaster.subscriber_count("j1") < 2:
            await asyncio.sleep(0)
        broadcaster.push("j1", progress=60)
        broadcaster.push("j1", done=True)
        results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=2)
        assert results == [[60, 100], [60, 100]]

    @pytest.mark.asyncio
    async def test_terminal_snapshot_ends_stream_immediately(self, broadcaster):
        broadcaster.push("j1", done=True)
        records = [r async for r in broadcaster.subscribe("j1")]
        assert len(records) == 1 and records[0].done

    @pytest.mark.asyncio
    async def test_heartbeat_when_idle(self, broadcaster):
        frames = []

        async def consume():
            async for frame in broadcaster.sse_stream("j1", heartbeat_s=0.01):
                frames.append(frame)

        task = asyncio.create_task(consume())
        while SSE_HEARTBEAT not in frames:
            await asyncio.sleep(0.01)
        broadcaster.push("j1", done=True)
        await asyncio.wait_for(task, timeout=2)

        assert frames[0] == SSE_HEARTBEAT
        assert frames[-1].startswith("data: ")
        assert json.loads(frames[-1][6:])["done"] is True


class TestAbandonment:
    def test_attached_job_is_never_abandoned(self, broadcaster, clock):
        broadcaster.push("j1", progress=10)
        clock.now += 1000
        assert not broadcaster.is_abandoned("j1")

    def test_detached_job_abandoned_after_timeout(self, broadcaster, clock):
        broadcaster.mark_detached("j1")
        broadcaster.push("j1", progress=10)
        clock.now += 20
        assert not broadcaster.is_abandoned("j1")
        clock.now += 20
        assert broadcaster.is_abandoned("j1")

    def test_polling_keeps_job_alive(self, broadcaster, clock):
        broadcaster.mark_detached("j1")
        clock.now += 25
        broadcaster.get("j1")
        clock.now += 25
        assert not broadcaster.is_abandoned("j1")

    def test_finished_job_is_not_abandoned(self, broadcaster, clock):
        broadcaster.mark_detached("j1")
        broadcaster.push("j1", done=True)
        clock.now += 1000
        assert not broadcaster.is_abandoned("j1")


class TestGarbageCollection:
    def test_terminal_records_expire(self, broadcaster, clock):
        broadcaster.push("finished", done=True)
        broadcaster.push("running", progress=50)
        clock.now += 61
        assert broadcaster.collect_garbage() == 1
        assert broadcaster.get("finished") is None
        assert broadcaster.get("running") is not None

    def test_fresh_terminal_records_kept(self, broadcaster, clock):
        broadcaster.push("finished", done=True)
        clock.now += 10
        assert broadcaster.collect_garbage() == 0
