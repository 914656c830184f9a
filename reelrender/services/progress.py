"""Per-job render progress with publish/subscribe delivery.

Engines push updates from the event loop or from worker threads; subscribers
(SSE streams) consume them through one asyncio.Queue each. A late subscriber
receives the last known record first, and every stream ends after the
terminal record (done or error).
"""

import asyncio
import json
import logging
import threading
import time
from collections import defaultdict
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from reelrender.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class ProgressRecord:
    """Last known state of a job."""

    job_id: str
    progress: int = 0
    stage: str = ""
    message: str = ""
    eta_seconds: Optional[float] = None
    done: bool = False
    error: Optional[str] = None
    ts: float = field(default_factory=time.time)
    per_scene: dict[int, int] = field(default_factory=dict)
    scene_count: Optional[int] = None
    current_scene: Optional[int] = None

    @property
    def terminal(self) -> bool:
        return self.done or self.error is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "progress": self.progress,
            "stage": self.stage,
            "message": self.message,
            "eta_seconds": self.eta_seconds,
            "done": self.done,
            "error": self.error,
            "ts": self.ts,
            "per_scene": {str(k): v for k, v in self.per_scene.items()},
            "scene_count": self.scene_count,
            "current_scene": self.current_scene,
        }

    def to_sse(self) -> str:
        """Format the record as one SSE data frame."""
        return f"data: {json.dumps(self.to_dict())}\n\n"


SSE_HEARTBEAT = ":heartbeat\n\n"

_Subscriber = tuple[asyncio.AbstractEventLoop, "asyncio.Queue[ProgressRecord]"]


class JobProgressBroadcaster:
    """Progress store plus fan-out to subscribers, one entry per job id."""

    def __init__(
        self,
        record_ttl_s: Optional[float] = None,
        abandon_after_s: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        self.record_ttl_s = record_ttl_s if record_ttl_s is not None else settings.job_record_ttl_s
        self.abandon_after_s = abandon_after_s if abandon_after_s is not None else settings.job_abandon_after_s
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, ProgressRecord] = {}
        self._subscribers: dict[str, set[_Subscriber]] = defaultdict(set)
        # Jobs whose caller is not holding the request open, with last observer activity
        self._detached: dict[str, float] = {}

    def push(
        self,
        job_id: str,
        *,
        progress: Optional[float] = None,
        stage: Optional[str] = None,
        message: Optional[str] = None,
        eta_seconds: Optional[float] = None,
        done: bool = False,
        error: Optional[str] = None,
        per_scene: Optional[dict[int, int]] = None,
        scene_count: Optional[int] = None,
        current_scene: Optional[int] = None,
    ) -> ProgressRecord:
        """Merge an update into the job's record and deliver it.

        Progress is clamped to 0-100 and never decreases. Once a record is
        terminal, later updates are ignored.
        """
        with self._lock:
            prev = self._records.get(job_id) or ProgressRecord(job_id=job_id)
            if prev.terminal:
                return replace(prev, per_scene=dict(prev.per_scene))

            value = prev.progress
            if progress is not None:
                value = max(prev.progress, int(round(max(0.0, min(100.0, float(progress))))))
            if done:
                value = 100

            merged_scenes = dict(prev.per_scene)
            if per_scene:
                merged_scenes.update(per_scene)

            record = ProgressRecord(
                job_id=job_id,
                progress=value,
                stage=stage or prev.stage,
                message=message or prev.message,
                eta_seconds=eta_seconds if eta_seconds is not None else prev.eta_seconds,
                done=done,
                error=error,
                ts=self._clock(),
                per_scene=merged_scenes,
                scene_count=scene_count if scene_count is not None else prev.scene_count,
                current_scene=current_scene if current_scene is not None else prev.current_scene,
            )
            self._records[job_id] = record
            subscribers = list(self._subscribers.get(job_id, ()))

        for loop, queue in subscribers:
            snapshot = replace(record, per_scene=dict(record.per_scene))
            try:
                loop.call_soon_threadsafe(queue.put_nowait, snapshot)
            except RuntimeError:
                # Subscriber's loop already closed
                logger.debug(f"[PROGRESS] Dropped update for closed subscriber of {job_id}")

        logger.debug(f"[PROGRESS] {job_id}: {record.stage} {record.progress}% ({len(subscribers)} subscribers)")
        return record

    def get(self, job_id: str) -> Optional[ProgressRecord]:
        with self._lock:
            record = self._records.get(job_id)
            if job_id in self._detached:
                self._detached[job_id] = self._clock()
            if record is None:
                return None
            return replace(record, per_scene=dict(record.per_scene))

    async def subscribe(
        self,
        job_id: str,
        heartbeat_s: Optional[float] = None,
    ) -> AsyncGenerator[Optional[ProgressRecord], None]:
        """Yield records for a job until it is terminal.

        With `heartbeat_s`, yields None whenever no update arrived within
        that many seconds.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[ProgressRecord] = asyncio.Queue()
        subscriber = (loop, queue)

        with self._lock:
            snapshot = self._records.get(job_id)
            if snapshot is not None:
                queue.put_nowait(replace(snapshot, per_scene=dict(snapshot.per_scene)))
            self._subscribers[job_id].add(subscriber)
            count = len(self._subscribers[job_id])
        logger.info(f"[PROGRESS] New subscriber for job {job_id}. Total: {count}")

        try:
            while True:
                try:
                    if heartbeat_s is None:
                        record = await queue.get()
                    else:
                        record = await asyncio.wait_for(queue.get(), timeout=heartbeat_s)
                except asyncio.TimeoutError:
                    yield None
                    continue
                yield record
                if record.terminal:
                    return
        finally:
            with self._lock:
                self._subscribers[job_id].discard(subscriber)
                if not self._subscribers[job_id]:
                    del self._subscribers[job_id]
                if job_id in self._detached:
                    self._detached[job_id] = self._clock()
            logger.info(f"[PROGRESS] Subscriber removed for job {job_id}")

    async def sse_stream(self, job_id: str, heartbeat_s: Optional[float] = None) -> AsyncGenerator[str, None]:
        """SSE frames for a job: data frames plus heartbeat comments."""
        if heartbeat_s is None:
            heartbeat_s = get_settings().sse_heartbeat_s
        async for record in self.subscribe(job_id, heartbeat_s=heartbeat_s):
            yield SSE_HEARTBEAT if record is None else record.to_sse()

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ()))

    # ------------------------------------------------------------------
    # Abandonment and cleanup
    # ------------------------------------------------------------------

    def mark_detached(self, job_id: str) -> None:
        """Record that nobody holds the originating request open for this job."""
        with self._lock:
            self._detached[job_id] = self._clock()

    def is_abandoned(self, job_id: str) -> bool:
        """True for a detached, unfinished job nobody has observed for too long."""
        with self._lock:
            last_seen = self._detached.get(job_id)
            if last_seen is None or self._subscribers.get(job_id):
                return False
            record = self._records.get(job_id)
            if record is not None and record.terminal:
                return False
            return self._clock() - last_seen > self.abandon_after_s

    def collect_garbage(self) -> int:
        """Drop terminal records older than the TTL that nobody is watching."""
        now = self._clock()
        with self._lock:
            expired = [
                job_id
                for job_id, record in self._records.items()
                if record.terminal
                and now - record.ts > self.record_ttl_s
                and not self._subscribers.get(job_id)
            ]
            for job_id in expired:
                del self._records[job_id]
                self._detached.pop(job_id, None)
        if expired:
            logger.info(f"[PROGRESS] Collected {len(expired)} finished job record(s)")
        return len(expired)
