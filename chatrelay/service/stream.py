"""Outbound event stream for one chat turn.

Stages push :class:`StreamEvent` objects into a :class:`StreamAssembler`;
the HTTP layer drains SSE-encoded frames from it. When the stream is
resumable every frame is also appended to the cache so a reconnecting
client can replay it with :func:`resume_stream`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Set

from chatrelay.logging import get_logger

logger = get_logger(__name__)

FINISH = "finish"
ERROR = "error"
TERMINAL_EVENTS = frozenset({FINISH, ERROR})

RESUME_POLL_INTERVAL_SECONDS = 0.25
RESUME_IDLE_TIMEOUT_SECONDS = 30.0


@dataclass
class StreamEvent:
    event: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    def encode(self, event_id: int) -> str:
        """Encode as an SSE frame."""
        lines = [
            f"id: {event_id}",
            f"event: {self.event}",
            f"data: {json.dumps(self.data, default=str)}",
            "",
        ]
        return "\n".join(lines) + "\n"


def frame_event(frame: str) -> Optional[str]:
    for line in frame.splitlines():
        if line.startswith("event: "):
            return line[len("event: "):]
    return None


class StreamAssembler:
    def __init__(
        self,
        stream_id: str,
        *,
        cache=None,
        ttl_seconds: int = 3600,
        resumable: bool = True,
    ) -> None:
        self.stream_id = stream_id
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.resumable = resumable and cache is not None
        self.closed = False
        self._seq = 0
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._side_tasks: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    async def emit(self, event: StreamEvent) -> bool:
        """Write ``event``; returns False once a terminal frame was sent."""
        async with self._lock:
            if self.closed:
                return False
            self._seq += 1
            frame = event.encode(self._seq)
            if event.terminal:
                self.closed = True
            if self.resumable:
                try:
                    await self.cache.append_stream_frame(self.stream_id, frame, self.ttl_seconds)
                    if event.terminal:
                        await self.cache.mark_stream_done(self.stream_id, self.ttl_seconds)
                except Exception as exc:
                    logger.warning("stream_log_append_failed", stream_id=self.stream_id, error=str(exc))
            self._queue.put_nowait(frame)
            if event.terminal:
                self._queue.put_nowait(None)
            return True

    async def data(self, name: str, payload: Dict[str, Any]) -> bool:
        return await self.emit(StreamEvent(f"data-{name}", payload))

    async def finish(self, **payload: Any) -> bool:
        return await self.emit(StreamEvent(FINISH, payload))

    async def error(self, code: str, message: str) -> bool:
        return await self.emit(StreamEvent(ERROR, {"code": code, "message": message}))

    def spawn(self, coro: Awaitable[Optional[StreamEvent]], *, name: str) -> asyncio.Task:
        """Run an out-of-band producer; its event is emitted when it resolves."""

        async def _run() -> None:
            try:
                event = await coro
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("stream_side_task_failed", task=name, error=str(exc))
                return
            if event is not None:
                await self.emit(event)

        task = asyncio.create_task(_run(), name=name)
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)
        return task

    async def drain_side_tasks(self, timeout: float) -> None:
        """Wait briefly for out-of-band producers, cancelling stragglers."""
        pending = list(self._side_tasks)
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        for task in still_running:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


async def resume_stream(
    stream_id: str,
    cache,
    *,
    poll_interval: float = RESUME_POLL_INTERVAL_SECONDS,
    idle_timeout: float = RESUME_IDLE_TIMEOUT_SECONDS,
) -> AsyncIterator[str]:
    """Replay stored frames for ``stream_id`` and tail new ones until terminal."""
    index = 0
    idle = 0.0
    while True:
        frames: List[str] = await cache.read_stream_frames(stream_id, index)
        for frame in frames:
            yield frame
            if frame_event(frame) in TERMINAL_EVENTS:
                return
        index += len(frames)
        if frames:
            idle = 0.0
            continue
        if await cache.is_stream_done(stream_id):
            return
        if idle >= idle_timeout:
            logger.info("stream_resume_idle", stream_id=stream_id)
            return
        await asyncio.sleep(poll_interval)
        idle += poll_interval
