"""
Paced screen-frame broadcast to viewers.

While at least one viewer is registered, a single loop grabs a frame from the
capture collaborator and pushes it as a binary message to every open viewer.
The delay before the next grab is the frame interval minus the time the
cycle took, never less than 1 ms, so slow captures shorten the wait instead
of piling up lag.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Set, Tuple

from .registry import Connection, ConnectionRegistry


logger = logging.getLogger(__name__)

MIN_DELAY = 0.001


class FrameSource(Protocol):
    async def capture_frame(self) -> Optional[bytes]: ...

    def screen_dimensions(self) -> Tuple[int, int]: ...


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"


def compute_delay(interval: float, elapsed: float) -> float:
    """Seconds to wait before the next cycle."""
    return max(MIN_DELAY, interval - elapsed)


class FrameStreamer:
    """
    Owns the pacing loop.

    ``update(viewer_count)`` is the usual entry point: it starts the loop for
    the first viewer and stops it after the last one leaves.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        source: FrameSource,
        interval: float = 1 / 30,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.registry = registry
        self.source = source
        self.interval = interval
        self._clock = clock
        self._sleep = sleep

        self._task: Optional[asyncio.Task] = None
        self._stop_requested = False
        self._closed = False
        self._wake: Optional[asyncio.Event] = None
        self._in_flight: Set[str] = set()
        self._send_tasks: Set[asyncio.Task] = set()

        self.frames_sent = 0
        self.frames_dropped = 0
        self._fps = 0.0
        self._window_start = 0.0
        self._window_frames = 0

    @property
    def state(self) -> StreamState:
        if self._task is not None and not self._task.done() and not self._stop_requested:
            return StreamState.STREAMING
        return StreamState.IDLE

    @property
    def fps(self) -> float:
        """Frames per second measured over the last full 1-second window."""
        return self._fps

    def update(self, viewer_count: int) -> None:
        if viewer_count > 0:
            self.start()
        else:
            self.stop()

    def start(self) -> None:
        """Enter Streaming. Revives a loop that was asked to stop but has not exited yet."""
        if self._closed:
            return
        self._stop_requested = False
        if self._task is not None and not self._task.done():
            return
        self._wake = asyncio.Event()
        self._fps = 0.0
        self._window_start = self._clock()
        self._window_frames = 0
        self._task = asyncio.create_task(self._run())
        logger.info("Streaming started (target %.0f FPS)", 1 / self.interval)

    def stop(self) -> None:
        """Enter Idle. The loop exits at its next wake-up, within one interval."""
        if self._task is None or self._task.done() or self._stop_requested:
            return
        self._stop_requested = True
        if self._wake is not None:
            self._wake.set()
        logger.info("Streaming stopped")

    async def shutdown(self) -> None:
        """Stop the loop for good and wait for it and any pending frame sends.

        Later ``start()`` calls are ignored.
        """
        self._closed = True
        self._stop_requested = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for send in list(self._send_tasks):
            send.cancel()
        if self._send_tasks:
            await asyncio.gather(*self._send_tasks, return_exceptions=True)

    async def _run(self) -> None:
        while not self._stop_requested:
            started = self._clock()

            try:
                frame = await self.source.capture_frame()
            except Exception as e:
                logger.warning("Frame capture error: %s", e)
                frame = None

            if frame:
                self.broadcast(frame)
                self._count_frame(len(frame))

            if self._stop_requested:
                break
            await self._pause(compute_delay(self.interval, self._clock() - started))

    async def _pause(self, delay: float) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        # A stop revoked by start() wakes us early; keep waiting out the delay
        while not self._stop_requested:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return

    def broadcast(self, frame: bytes) -> int:
        """
        Queue ``frame`` for every open viewer. A viewer whose previous frame
        is still being sent skips this one. Returns how many sends were queued.
        """
        queued = 0
        for viewer in self.registry.viewers():
            if not viewer.is_open:
                continue
            if viewer.id in self._in_flight:
                self.frames_dropped += 1
                continue
            self._in_flight.add(viewer.id)
            task = asyncio.create_task(self._send(viewer, frame))
            self._send_tasks.add(task)
            task.add_done_callback(self._send_tasks.discard)
            queued += 1
        return queued

    async def _send(self, viewer: Connection, frame: bytes) -> None:
        try:
            await viewer.transport.send(frame)
            self.frames_sent += 1
        except Exception as e:
            logger.debug("Frame send to %r failed: %s", viewer, e)
        finally:
            self._in_flight.discard(viewer.id)

    def _count_frame(self, size: int) -> None:
        self._window_frames += 1
        now = self._clock()
        window = now - self._window_start
        if window >= 1.0:
            self._fps = self._window_frames / window
            logger.debug("%.1f FPS, frame size %d KB", self._fps, size // 1024)
            self._window_frames = 0
            self._window_start = now
