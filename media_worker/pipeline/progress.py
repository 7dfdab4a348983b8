"""
Progress parsing for ffmpeg stderr and the progress channel handed to callers.
"""

import asyncio
import logging
import re
import time
from typing import AsyncIterator, Callable, Optional

from ..models import JobResult, ProgressEvent

logger = logging.getLogger("media_worker")

TIME_PATTERN = re.compile(r"time=(\d+):(\d+):(\d+)(?:\.(\d+))?")
SPEED_PATTERN = re.compile(r"speed=\s*([\d.]+)x")
FPS_PATTERN = re.compile(r"fps=\s*([\d.]+)")
FRAME_PATTERN = re.compile(r"frame=\s*(\d+)")

ProgressCallback = Callable[[ProgressEvent], None]


def parse_time_to_seconds(line: str) -> Optional[float]:
    """Extract the time=HH:MM:SS.cc token from an ffmpeg status line"""
    match = TIME_PATTERN.search(line)
    if not match:
        return None
    hours, minutes, seconds, fraction = match.groups()
    value = int(hours) * 3600 + int(minutes) * 60 + int(seconds)
    if fraction:
        value += float(f"0.{fraction}")
    return value


def _search_float(pattern: re.Pattern, line: str) -> Optional[float]:
    match = pattern.search(line)
    return float(match.group(1)) if match else None


class ProgressTracker:
    """
    Turns ffmpeg stderr lines into ProgressEvents.

    A tracker covers the window [start_percent, start_percent + span] of the
    overall job so multi-phase jobs can report one continuous percentage.
    """

    def __init__(self, duration: float, stage: str, start_percent: float = 0.0,
                 span: float = 100.0, clock: Callable[[], float] = time.monotonic):
        self.duration = duration
        self.stage = stage
        self.start_percent = start_percent
        self.span = span
        self._clock = clock
        self._started = clock()

    def update(self, line: str) -> Optional[ProgressEvent]:
        current = parse_time_to_seconds(line)
        if current is None or not self.duration or self.duration <= 0:
            return None

        fraction = min(100.0, current / self.duration * 100) / 100
        percent = self.start_percent + fraction * self.span
        elapsed = self._clock() - self._started
        done = percent - self.start_percent
        eta = elapsed / done * (100 - percent) if done > 0 else 0.0

        frame = FRAME_PATTERN.search(line)
        return ProgressEvent(
            percent=percent,
            current_time=current,
            total_duration=self.duration,
            eta_seconds=eta,
            stage=self.stage,
            speed=_search_float(SPEED_PATTERN, line),
            fps=_search_float(FPS_PATTERN, line),
            frame=int(frame.group(1)) if frame else None,
        )

    def line_handler(self, on_progress: Optional[ProgressCallback]) -> Callable[[str], None]:
        """Adapt the tracker to a runner line callback"""
        def handle(line: str) -> None:
            event = self.update(line)
            if event and on_progress:
                on_progress(event)
        return handle


_CLOSED = object()


class ProgressStream:
    """
    Channel of ProgressEvents for one job.

    The producing engine emits events; the service closes the stream with a
    terminal JobResult. Consumers iterate with ``async for`` until the stream
    closes, then read ``await stream.result()``.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._result: Optional[JobResult] = None
        self._done = asyncio.Event()

    def emit(self, event: ProgressEvent) -> None:
        if self._done.is_set():
            return
        self._queue.put_nowait(event)

    def close(self, result: JobResult) -> None:
        if self._done.is_set():
            return
        self._result = result
        self._done.set()
        self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._done.is_set()

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def result(self) -> JobResult:
        await self._done.wait()
        return self._result
