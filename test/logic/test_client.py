"""Tests for the Nanonis control-port client using a scripted socket."""

import struct
from unittest.mock import MagicMock, patch

import pytest
from loguru import logger

from tipshaper.device.nanonis import NanonisClient, ScanSpeed
from tipshaper.device.nanonis.protocol import HEADER_SIZE, create_header
from tipshaper.types import (
    CommandMismatch,
    InvalidAddress,
    InvalidCommand,
    NanonisIOError,
    NanonisTimeout,
    ProtocolError,
    ServerError,
)


def _response(command: str, body: bytes, error: str = "") -> bytes:
    raw_err = error.encode("utf-8")
    body = body + struct.pack(">ii", 0 if not error else -1, len(raw_err)) + raw_err
    return create_header(command, len(body)) + body


class FakeSocket:
    """Serves a scripted byte stream in fixed-size chunks and records writes."""

    def __init__(self, payload: bytes, chunk: int = 1024):
        self.payload = payload
        self.chunk = chunk
        self.sent = bytearray()
        self.closed = False

    def settimeout(self, timeout):
        pass

    def setsockopt(self, *args):
        pass

    def sendall(self, data):
        self.sent += data

    def recv(self, n):
        out = self.payload[: min(n, self.chunk)]
        self.payload = self.payload[len(out) :]
        return out

    def close(self):
        self.closed = True


@pytest.fixture
def connect():
    """Return a factory connecting a client to a FakeSocket with the given payload."""
    with patch("socket.create_connection") as mock_create:

        def _connect(payload: bytes, chunk: int = 1024):
            sock = FakeSocket(payload, chunk)
            mock_create.return_value = sock
            client = NanonisClient("127.0.0.1", 6501)
            client.open()
            return client, sock

        yield _connect


class TestConnection:
    def test_invalid_port(self):
        with pytest.raises(InvalidAddress):
            NanonisClient("127.0.0.1", 0)

    def test_empty_host(self):
        with pytest.raises(InvalidAddress):
            NanonisClient("  ", 6501)

    def test_not_connected(self):
        client = NanonisClient("127.0.0.1", 6501)
        assert not client.is_connected()
        with pytest.raises(InvalidCommand):
            client.bias_get()

    @patch("socket.create_connection", side_effect=TimeoutError)
    def test_connect_timeout(self, mock_create):
        with pytest.raises(NanonisTimeout):
            NanonisClient("127.0.0.1", 6501).open()

    @patch("socket.create_connection", side_effect=ConnectionRefusedError("refused"))
    def test_connect_refused(self, mock_create):
        with pytest.raises(NanonisIOError):
            NanonisClient("127.0.0.1", 6501).open()

    def test_close(self, connect):
        client, sock = connect(b"")
        client.close()
        assert sock.closed
        assert not client.is_connected()
        client.close()


class TestQuickSend:
    def test_request_bytes(self, connect):
        client, sock = connect(_response("Bias.Set", b""))
        client.bias_set(0.5)
        assert bytes(sock.sent[:HEADER_SIZE]) == create_header("Bias.Set", 4)
        assert bytes(sock.sent[HEADER_SIZE:]) == struct.pack(">f", 0.5)

    def test_bias_get(self, connect):
        client, _ = connect(_response("Bias.Get", struct.pack(">f", -1.5)))
        assert client.bias_get() == -1.5

    def test_partial_reads(self, connect):
        client, _ = connect(_response("Bias.Get", struct.pack(">f", 2.0)), chunk=3)
        assert client.bias_get() == 2.0

    def test_error_trailer(self, connect):
        client, _ = connect(
            _response("Bias.Set", b"", error="Bias out of range")
        )
        with pytest.raises(ServerError, match="Bias out of range"):
            client.bias_set(100.0)

    def test_command_mismatch(self, connect):
        client, _ = connect(_response("Bias.Set", b""))
        with pytest.raises(CommandMismatch):
            client.bias_get()

    def test_eof_in_header(self, connect):
        client, _ = connect(b"Bias.G")
        with pytest.raises(NanonisIOError):
            client.bias_get()

    def test_arity_checked_before_io(self, connect):
        client, sock = connect(b"")
        with pytest.raises(InvalidCommand):
            client.quick_send("Bias.Set", [], ["f"], [])
        assert sock.sent == b""

    def test_short_body(self, connect):
        # header declares a float plus trailer, the socket closes after 2 bytes
        client, _ = connect(create_header("Bias.Get", 12) + b"\x3f\x80")
        warnings = []
        sink = logger.add(warnings.append, level="WARNING")
        try:
            with pytest.raises(ProtocolError, match="Not enough data"):
                client.bias_get()
        finally:
            logger.remove(sink)
        assert any("Short response body" in str(m) for m in warnings)

    def test_read_timeout(self, connect):
        client, sock = connect(b"")
        sock.recv = MagicMock(side_effect=TimeoutError)
        with pytest.raises(NanonisTimeout):
            client.bias_get()


class TestCommands:
    def test_signals_names(self, connect):
        names = [b"Current (A)", b"Bias (V)"]
        elements = b"".join(struct.pack(">I", len(n)) + n for n in names)
        body = struct.pack(">II", len(elements), len(names)) + elements
        client, _ = connect(_response("Signals.NamesGet", body))
        assert client.signals_names_get() == ["Current (A)", "Bias (V)"]

    def test_signals_vals(self, connect):
        body = struct.pack(">iff", 2, 1.0, -3.0)
        client, sock = connect(_response("Signals.ValsGet", body))
        assert client.signals_vals_get([0, 24]) == [1.0, -3.0]
        assert bytes(sock.sent[HEADER_SIZE:]) == struct.pack(">Iiii", 2, 0, 24, 1)

    def test_motor_direction(self, connect):
        client, sock = connect(_response("Motor.StartMove", b""))
        client.motor_start_move("Z-", 2, wait=False)
        assert bytes(sock.sent[HEADER_SIZE:]) == struct.pack(">IHII", 5, 2, 0, 0)

    def test_motor_unknown_direction(self, connect):
        client, _ = connect(b"")
        with pytest.raises(InvalidCommand):
            client.motor_start_move("W+", 1)

    def test_tcplog_slot_range(self, connect):
        client, _ = connect(b"")
        with pytest.raises(InvalidCommand):
            client.tcplog_chs_set([24])

    def test_tcplog_oversampling_range(self, connect):
        client, _ = connect(b"")
        with pytest.raises(InvalidCommand):
            client.tcplog_oversampl_set(1001)

    def test_scan_speed(self, connect):
        body = struct.pack(">ffffHf", 1e-6, 2e-6, 0.5, 0.25, 1, 2.0)
        client, _ = connect(_response("Scan.SpeedGet", body))
        speed = client.scan_speed_get()
        assert isinstance(speed, ScanSpeed)
        assert speed.keep_parameter_constant == 1
        assert speed.speed_ratio == 2.0

    def test_folme_position(self, connect):
        payload = _response("FolMe.XYPosGet", struct.pack(">dd", 1e-9, -2e-9))
        payload += _response("FolMe.XYPosSet", b"")
        client, sock = connect(payload)
        assert client.folme_xy_pos_get() == (1e-9, -2e-9)
        client.folme_xy_pos_set(3e-9, 4e-9, wait=False)
        request = bytes(sock.sent[2 * HEADER_SIZE + 4 :])
        assert request == struct.pack(">ddI", 3e-9, 4e-9, 0)

    def test_scalar_readbacks(self, connect):
        payload = (
            _response("Current.Get", struct.pack(">f", 0.5))
            + _response("ZCtrl.SetpntGet", struct.pack(">f", -2.0))
            + _response("Signals.CalibrGet", struct.pack(">ff", 2.0, 0.25))
        )
        client, _ = connect(payload)
        assert client.current_get() == 0.5
        assert client.z_ctrl_setpoint_get() == -2.0
        assert client.signals_calibr_get(76) == (2.0, 0.25)

    def test_motor_stop(self, connect):
        client, sock = connect(_response("Motor.StopMove", b""))
        client.motor_stop_move()
        assert bytes(sock.sent) == create_header("Motor.StopMove", 0)
