"""Reader for the Nanonis TCP Logger data stream.

The TCP Logger module pushes one frame per (oversampled) sample on its own port,
typically 6590:

| bytes | content                       |
|-------|-------------------------------|
| 0..4  | number of channels (u32)      |
| 4..8  | oversampling (f32)            |
| 8..16 | frame counter (u64)           |
| 16..18| logger state (u16)            |
| 18..  | one f32 per channel           |

All fields are big-endian. A frame with counter 0 carries channel assignment
metadata rather than a sample.

This module only reads the stream; starting, stopping and configuring the logger go
through the control port (`NanonisClient.tcplog_*`).
"""

from __future__ import annotations

import queue
import socket
import struct
import threading
from dataclasses import dataclass

import numpy as np
from loguru import logger

from tipshaper.device.device import Device
from tipshaper.types import (
    InvalidAddress,
    NanonisIOError,
    NanonisTimeout,
    ProtocolError,
    TCPLogStatus,
)
from tipshaper.util.defaults import STREAM_READ_TIMEOUT

FRAME_HEADER_SIZE = 18
_FRAME_HEADER = struct.Struct(">IfQH")
MAX_STREAM_CHANNELS = 128

# posted on the frame queue once the reader thread has stopped
STREAM_CLOSED = None


@dataclass(frozen=True)
class FrameHeader:
    num_channels: int
    oversampling: float
    counter: int
    state: TCPLogStatus


@dataclass(frozen=True)
class SignalFrame:
    """One raw sample: source counter plus one value per streamed channel."""

    counter: int
    data: tuple[float, ...]

    @property
    def is_metadata(self) -> bool:
        return self.counter == 0


def parse_frame_header(raw: bytes) -> FrameHeader:
    if len(raw) != FRAME_HEADER_SIZE:
        raise ProtocolError(
            f"Frame header must be {FRAME_HEADER_SIZE} bytes, got {len(raw)}"
        )
    num_channels, oversampling, counter, state = _FRAME_HEADER.unpack(raw)
    if num_channels > MAX_STREAM_CHANNELS:
        raise ProtocolError(f"Implausible channel count {num_channels} in frame")
    try:
        status = TCPLogStatus(state)
    except ValueError:
        raise ProtocolError(f"Unknown TCP logger state {state} in frame")
    return FrameHeader(num_channels, oversampling, counter, status)


def parse_frame_data(raw: bytes, num_channels: int) -> tuple[float, ...]:
    if len(raw) != 4 * num_channels:
        raise ProtocolError(
            f"Frame data must be {4 * num_channels} bytes, got {len(raw)}"
        )
    return tuple(np.frombuffer(raw, dtype=">f4").tolist())


class TCPLoggerStream(Device):
    """Connection to the TCP Logger stream port.

    Parameters
    ----------
    host : str
        Address of the Nanonis PC.
    port : int
        Stream port (usually 6590).
    read_timeout : float, optional
        Seconds a single frame read may block, by default 30.
    """

    required_config = {"host": str, "port": int}

    def __init__(self, host: str, port: int, read_timeout: float = STREAM_READ_TIMEOUT):
        super().__init__(host=host, port=port)
        if not host.strip() or not 0 < port < 65536:
            raise InvalidAddress(f"Invalid stream address {host}:{port}")
        self.read_timeout = read_timeout
        self._sock: socket.socket | None = None
        self._reader_thread: threading.Thread | None = None

    def open(self) -> tuple[bool, str]:
        try:
            self._sock = socket.create_connection(
                (self.host, self.port), timeout=self.read_timeout
            )
        except TimeoutError:
            raise NanonisTimeout(f"Connect to stream {self.host}:{self.port} timed out")
        except OSError as e:
            raise NanonisIOError(
                e, context=f"Connecting to TCP stream at {self.host}:{self.port}"
            )
        self._sock.settimeout(self.read_timeout)
        logger.info("Connected to TCP logger stream at {}:{}", self.host, self.port)
        return True, f"Connected to stream {self.host}:{self.port}"

    def close(self):
        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # already disconnected
            self._sock.close()
            self._sock = None
        if self._reader_thread is not None:
            self._reader_thread.join(timeout=self.read_timeout)
            self._reader_thread = None

    def is_connected(self) -> bool:
        return self._sock is not None

    def _recv_exact(self, size: int, what: str) -> bytes:
        if self._sock is None:
            raise NanonisIOError("Stream is not connected", context=what)
        buf = bytearray()
        while len(buf) < size:
            try:
                chunk = self._sock.recv(size - len(buf))
            except TimeoutError:
                raise NanonisTimeout(f"{what} timed out after {self.read_timeout}s")
            except OSError as e:
                raise NanonisIOError(e, context=what)
            if not chunk:
                raise NanonisIOError("Stream closed by peer", context=what)
            buf += chunk
        return bytes(buf)

    def read_frame(self) -> SignalFrame:
        header = parse_frame_header(
            self._recv_exact(FRAME_HEADER_SIZE, "Reading TCP Logger frame header")
        )
        data = parse_frame_data(
            self._recv_exact(4 * header.num_channels, "Reading TCP Logger frame data"),
            header.num_channels,
        )
        return SignalFrame(header.counter, data)

    def spawn_background_reader(self, maxsize: int = 0) -> queue.Queue:
        """Read frames on a daemon thread and deliver them on a queue.

        The thread ends on the first read error (including the socket being closed
        by `close()`), after putting `STREAM_CLOSED` on the queue.
        """
        frames: queue.Queue = queue.Queue(maxsize=maxsize)

        def _reader():
            n_frames = 0
            try:
                while True:
                    frames.put(self.read_frame())
                    n_frames += 1
            except (NanonisIOError, NanonisTimeout, ProtocolError) as e:
                logger.info("TCP stream reader stopping after {} frames: {}", n_frames, e)
            except Exception:
                logger.exception("TCP stream reader failed.")
            finally:
                frames.put(STREAM_CLOSED)

        self._reader_thread = threading.Thread(
            target=_reader, name="tcp-stream-reader", daemon=True
        )
        self._reader_thread.start()
        return frames
