"""Continuously filled, bounded buffer of telemetry frames.

`TelemetryBuffer` drains a queue of `SignalFrame`s (normally fed by
`TCPLoggerStream.spawn_background_reader`) on its own thread, stamps each frame
with the time it arrived relative to the buffer start, and keeps the newest
`capacity` frames. The control thread queries it by time window or by count to get
measurements from before, during and after an action without polling the
instrument itself.

The writer holds the lock for one push/evict, readers hold it for one copy, so a
query never waits longer than one insertion.

Examples
--------
```python
frames = stream.spawn_background_reader()
with TelemetryBuffer(frames, capacity=10_000, num_channels=4) as buf:
    ...
    recent = buf.recent(0.5)  # last half second
```
"""

from __future__ import annotations

import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from loguru import logger

from tipshaper.device.nanonis.stream import STREAM_CLOSED, SignalFrame
from tipshaper.types import NanonisError
from tipshaper.util.defaults import BUFFER_POLL_INTERVAL


@dataclass(frozen=True)
class TimestampedFrame:
    """A sample, stamped in seconds since the buffer started."""

    timestamp: float
    counter: int
    data: tuple[float, ...]


class TelemetryBuffer:
    """Bounded FIFO of timestamped frames, filled on a background thread.

    Parameters
    ----------
    source : queue.Queue
        Queue of `SignalFrame`; `None` on the queue means the producer is gone.
    capacity : int
        Maximum number of frames kept; the oldest frame is evicted first.
    num_channels : int, optional
        Channels per frame, as configured on the TCP logger.
    oversampling : float, optional
        Oversampling configured on the TCP logger.
    clock : Callable[[], float], optional
        Monotonic clock in seconds, by default `time.monotonic`.
    """

    def __init__(
        self,
        source: queue.Queue,
        capacity: int,
        num_channels: int = 0,
        oversampling: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0:
            raise ValueError(f"Buffer capacity must be positive, got {capacity}")
        self._source = source
        self.capacity = capacity
        self.num_channels = num_channels
        self.oversampling = oversampling
        self._clock = clock
        self._start_time = clock()
        self._frames: deque[TimestampedFrame] = deque()
        self._lock = threading.Lock()
        self._shutdown = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._error: Optional[BaseException] = None
        self._n_received = 0
        self._n_evicted = 0

    # ----------------------------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Telemetry buffer already started")
        self._thread = threading.Thread(
            target=self._run, name="telemetry-buffer", daemon=True
        )
        self._thread.start()
        logger.debug("Telemetry buffer started (capacity {} frames)", self.capacity)

    def stop(self) -> None:
        """Signal the thread to exit and join it.

        Raises
        ------
        NanonisError
            If the buffering thread died with an exception.
        """
        self._shutdown.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        logger.debug(
            "Telemetry buffer stopped: {} frames received, {} evicted, {} held",
            self._n_received,
            self._n_evicted,
            self.frame_count(),
        )
        if self._error is not None:
            raise NanonisError(f"Telemetry buffer thread failed: {self._error!r}")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    def _run(self) -> None:
        try:
            while not self._shutdown.is_set():
                try:
                    frame = self._source.get(timeout=BUFFER_POLL_INTERVAL)
                except queue.Empty:
                    continue
                if frame is STREAM_CLOSED:
                    logger.info("Telemetry source disconnected, buffer thread exiting")
                    break
                self.push(frame)
        except Exception as e:
            self._error = e
            logger.exception("Telemetry buffer thread failed.")

    # ----------------------------------------------------------------------------------
    # Writing
    # ----------------------------------------------------------------------------------

    def elapsed(self) -> float:
        """Seconds since the buffer was created, on the buffer's clock."""
        return self._clock() - self._start_time

    def push(self, frame: SignalFrame, timestamp: Optional[float] = None) -> bool:
        """Insert one frame; metadata frames (counter 0) are skipped.

        Returns
        -------
        bool
            True if the frame was stored.
        """
        if frame.is_metadata:
            logger.trace("Skipping metadata frame {}", frame.data)
            return False
        stamped = TimestampedFrame(
            self.elapsed() if timestamp is None else timestamp,
            frame.counter,
            tuple(frame.data),
        )
        with self._lock:
            if len(self._frames) >= self.capacity:
                self._frames.popleft()
                self._n_evicted += 1
            self._frames.append(stamped)
            self._n_received += 1
        return True

    def clear(self) -> None:
        with self._lock:
            n = len(self._frames)
            self._frames.clear()
        logger.debug("Cleared {} frames from telemetry buffer", n)

    # ----------------------------------------------------------------------------------
    # Queries (each returns a copy, oldest first)
    # ----------------------------------------------------------------------------------

    def all(self) -> list[TimestampedFrame]:
        with self._lock:
            return list(self._frames)

    def since(self, t: float) -> list[TimestampedFrame]:
        with self._lock:
            return [f for f in self._frames if f.timestamp >= t]

    def between(self, start: float, end: float) -> list[TimestampedFrame]:
        """Frames with `start <= timestamp <= end`."""
        with self._lock:
            return [f for f in self._frames if start <= f.timestamp <= end]

    def recent(self, duration: float) -> list[TimestampedFrame]:
        return self.since(self.elapsed() - duration)

    def recent_frames(self, n: int) -> list[TimestampedFrame]:
        if n <= 0:
            return []
        with self._lock:
            start = max(0, len(self._frames) - n)
            return [self._frames[i] for i in range(start, len(self._frames))]

    def oldest_frames(self, n: int) -> list[TimestampedFrame]:
        if n <= 0:
            return []
        with self._lock:
            return [self._frames[i] for i in range(min(n, len(self._frames)))]

    def frame_range(self, start: int, count: int) -> list[TimestampedFrame]:
        if start < 0 or count <= 0:
            return []
        with self._lock:
            stop = min(start + count, len(self._frames))
            return [self._frames[i] for i in range(start, stop)]

    def frame_count(self) -> int:
        with self._lock:
            return len(self._frames)

    def has_frames(self, minimum: int = 1) -> bool:
        return self.frame_count() >= minimum

    def stats(self) -> tuple[int, int, float]:
        """-> (frame count, capacity, seconds between oldest and newest frame)."""
        with self._lock:
            count = len(self._frames)
            span = self._frames[-1].timestamp - self._frames[0].timestamp if count else 0.0
        return count, self.capacity, span

    def utilization(self) -> float:
        return self.frame_count() / self.capacity

    def tcp_config(self) -> tuple[int, float]:
        return self.num_channels, self.oversampling

    # ----------------------------------------------------------------------------------
    # Channel helpers
    # ----------------------------------------------------------------------------------

    @staticmethod
    def channel_values(frames: list[TimestampedFrame], position: int) -> np.ndarray:
        """Values at `position` within each frame's data vector."""
        return np.array(
            [f.data[position] for f in frames if position < len(f.data)], dtype=float
        )

    def recent_mean(self, position: int, duration: float) -> Optional[float]:
        values = self.channel_values(self.recent(duration), position)
        if values.size == 0:
            return None
        return float(np.mean(values))
