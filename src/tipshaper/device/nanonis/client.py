"""Request/response client for the Nanonis control port.

The control session is strictly synchronous: one request is written, then exactly
one response is read back before the next request may be sent. `NanonisClient`
owns the socket and exposes `quick_send`, plus the handful of typed command
wrappers the tip conditioning procedure needs.

Examples
--------
```python
from tipshaper.device.nanonis import NanonisClient

with NanonisClient(host="127.0.0.1", port=6501) as client:
    client.bias_set(-0.5)
    print(client.bias_get())
```
"""

from __future__ import annotations

import socket
from dataclasses import dataclass
from typing import Sequence

from loguru import logger

from tipshaper.device.device import Device
from tipshaper.device.nanonis.protocol import (
    HEADER_SIZE,
    MAX_RETRY_COUNT,
    create_header,
    encode_body,
    parse_response_with_error_check,
    validate_response_header,
)
from tipshaper.types import (
    F32,
    F64,
    I32,
    U16,
    U32,
    ArrayI32,
    InvalidAddress,
    InvalidCommand,
    NanonisIOError,
    NanonisTimeout,
    ProtocolError,
    SignalIndex,
    String,
    TCPLogStatus,
    WireValue,
)
from tipshaper.types.config import ConnectionConfig

# Motor.StartMove direction codes
MOTOR_DIRECTION = {"X+": 0, "X-": 1, "Y+": 2, "Y-": 3, "Z+": 4, "Z-": 5}
TCPLOG_MAX_CHANNEL_SLOT = 23
TCPLOG_MAX_OVERSAMPLING = 1000


@dataclass
class ScanSpeed:
    """Fields of Scan.SpeedGet / Scan.SpeedSet."""

    forward_speed_m_s: float
    backward_speed_m_s: float
    forward_time_per_line_s: float
    backward_time_per_line_s: float
    keep_parameter_constant: int  # 0 no change, 1 speed, 2 time per line
    speed_ratio: float


class NanonisClient(Device):
    """Connection to one Nanonis control port.

    Parameters
    ----------
    host : str
        Address of the Nanonis PC.
    port : int
        Control port, normally one of 6501..6504.
    connection : ConnectionConfig, optional
        Connect/read/write timeouts.
    """

    required_config = {"host": str, "port": int}

    def __init__(
        self, host: str, port: int, connection: ConnectionConfig | None = None
    ):
        super().__init__(host=host, port=port)
        if not host.strip():
            raise InvalidAddress("Empty host address")
        if not 0 < port < 65536:
            raise InvalidAddress(f"Invalid port {port}")
        self.connection = connection or ConnectionConfig()
        self._sock: socket.socket | None = None

    # ----------------------------------------------------------------------------------
    # Connection
    # ----------------------------------------------------------------------------------

    def open(self) -> tuple[bool, str]:
        address = (self.host, self.port)
        logger.debug("Connecting to Nanonis at {}:{}", *address)
        try:
            self._sock = socket.create_connection(
                address, timeout=self.connection.connect_timeout
            )
        except socket.gaierror as e:
            raise InvalidAddress(f"Cannot resolve {self.host}: {e}")
        except TimeoutError:
            logger.warning("Timed out connecting to {}:{}", *address)
            raise NanonisTimeout(
                f"Connect to {self.host}:{self.port} timed out after "
                + f"{self.connection.connect_timeout}s"
            )
        except OSError as e:
            logger.warning("Failed to connect to {}:{}: {}", *address, e)
            raise NanonisIOError(e, context=f"Connecting to {self.host}:{self.port}")
        self._sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        logger.info("Connected to Nanonis at {}:{}", *address)
        return True, f"Connected to {self.host}:{self.port}"

    def close(self):
        if self._sock is not None:
            try:
                self._sock.close()
            finally:
                self._sock = None
                logger.debug("Closed Nanonis connection {}:{}", self.host, self.port)

    def is_connected(self) -> bool:
        return self._sock is not None

    # ----------------------------------------------------------------------------------
    # Transport
    # ----------------------------------------------------------------------------------

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise InvalidCommand("Client is not connected; call open() first")
        return self._sock

    def _write(self, data: bytes, command: str) -> None:
        sock = self._require_socket()
        sock.settimeout(self.connection.write_timeout)
        try:
            sock.sendall(data)
        except TimeoutError:
            raise NanonisTimeout(f"Write of '{command}' timed out")
        except OSError as e:
            raise NanonisIOError(e, context=f"Writing '{command}'")

    def _read_exact(self, size: int, command: str) -> bytes:
        sock = self._require_socket()
        sock.settimeout(self.connection.read_timeout)
        buf = bytearray()
        while len(buf) < size:
            try:
                chunk = sock.recv(size - len(buf))
            except TimeoutError:
                raise NanonisTimeout(f"Read of '{command}' response header timed out")
            except OSError as e:
                raise NanonisIOError(e, context=f"Reading '{command}' response header")
            if not chunk:
                raise NanonisIOError(
                    f"Connection closed after {len(buf)}/{size} header bytes",
                    context=f"Reading '{command}' response header",
                )
            buf += chunk
        return bytes(buf)

    def _read_body(self, size: int, command: str) -> bytes:
        sock = self._require_socket()
        sock.settimeout(self.connection.read_timeout)
        buf = bytearray()
        retries = 0
        while len(buf) < size and retries < MAX_RETRY_COUNT:
            try:
                chunk = sock.recv(size - len(buf))
            except TimeoutError:
                raise NanonisTimeout(f"Read of '{command}' response body timed out")
            except OSError as e:
                raise NanonisIOError(e, context=f"Reading '{command}' response body")
            buf += chunk
            retries += 1
        if len(buf) < size:
            logger.warning(
                "Short response body for '{}': {}/{} bytes after {} reads",
                command,
                len(buf),
                size,
                retries,
            )
        elif retries > 1:
            logger.trace("Body for '{}' assembled from {} reads", command, retries)
        return bytes(buf)

    def quick_send(
        self,
        command: str,
        values: Sequence[WireValue],
        arg_tags: Sequence[str],
        response_tags: Sequence[str],
    ) -> list[WireValue]:
        """Send one command and decode its response.

        Parameters
        ----------
        command : str
            Command name as in the Nanonis TCP protocol documentation.
        values : Sequence[WireValue]
            Arguments, one per entry in `arg_tags`.
        arg_tags : Sequence[str]
            Type tags of the arguments.
        response_tags : Sequence[str]
            Type tags of the declared response fields.

        Returns
        -------
        list[WireValue]
            One value per response tag.

        Raises
        ------
        InvalidCommand
            Argument/tag arity mismatch (raised before any I/O).
        CommandMismatch
            The response echoed another command; the session is desynchronised.
        ServerError
            The response carried a non-empty error trailer.
        NanonisTimeout, NanonisIOError
            Socket failures.
        """
        body = encode_body(values, arg_tags)
        header = create_header(command, len(body))
        logger.trace(
            "-> {} args={} tags={} ({} body bytes)",
            command,
            [v.value for v in values],
            list(arg_tags),
            len(body),
        )
        self._write(header + body, command)

        response_header = self._read_exact(HEADER_SIZE, command)
        body_size = validate_response_header(response_header, command)
        response_body = self._read_body(body_size, command) if body_size else b""

        result = parse_response_with_error_check(response_body, response_tags)
        logger.trace("<- {} {}", command, [v.value for v in result])
        return result

    # ----------------------------------------------------------------------------------
    # Commands
    # ----------------------------------------------------------------------------------

    def _first(self, result: list[WireValue], command: str) -> WireValue:
        if not result:
            raise ProtocolError(f"No value returned by '{command}'")
        return result[0]

    def bias_set(self, bias_v: float) -> None:
        self.quick_send("Bias.Set", [F32(bias_v)], ["f"], [])

    def bias_get(self) -> float:
        return self._first(self.quick_send("Bias.Get", [], [], ["f"]), "Bias.Get").as_f32()

    def bias_pulse(
        self,
        width_s: float,
        bias_v: float,
        wait_until_done: bool = True,
        z_hold: int = 0,
        mode: int = 0,
    ) -> None:
        """Apply a bias pulse.

        Parameters
        ----------
        width_s : float
            Pulse width in seconds.
        bias_v : float
            Pulse bias in volts.
        wait_until_done : bool, optional
            Block until the pulse has finished, by default True.
        z_hold : int, optional
            Z-controller during pulse: 0 no change, 1 hold, 2 don't hold.
        mode : int, optional
            Bias value meaning: 0 keep, 1 relative, 2 absolute.
        """
        self.quick_send(
            "Bias.Pulse",
            [U32(int(wait_until_done)), F32(width_s), F32(bias_v), U16(z_hold), U16(mode)],
            ["I", "f", "f", "H", "H"],
            [],
        )

    def folme_xy_pos_get(self, wait_for_newest: bool = True) -> tuple[float, float]:
        x, y = self.quick_send(
            "FolMe.XYPosGet", [U32(int(wait_for_newest))], ["I"], ["d", "d"]
        )
        return x.as_f64(), y.as_f64()

    def folme_xy_pos_set(self, x_m: float, y_m: float, wait: bool = True) -> None:
        self.quick_send(
            "FolMe.XYPosSet",
            [F64(x_m), F64(y_m), U32(int(wait))],
            ["d", "d", "I"],
            [],
        )

    def motor_start_move(
        self, direction: str, steps: int, group: int = 0, wait: bool = True
    ) -> None:
        if direction not in MOTOR_DIRECTION:
            raise InvalidCommand(
                f"Unknown motor direction '{direction}', use one of {list(MOTOR_DIRECTION)}"
            )
        if not 0 <= steps <= 0xFFFF:
            raise InvalidCommand(f"Motor steps {steps} outside 0..65535")
        self.quick_send(
            "Motor.StartMove",
            [U32(MOTOR_DIRECTION[direction]), U16(steps), U32(group), U32(int(wait))],
            ["I", "H", "I", "I"],
            [],
        )

    def motor_stop_move(self) -> None:
        self.quick_send("Motor.StopMove", [], [], [])

    def z_ctrl_withdraw(self, wait: bool = True, timeout_s: float = 5.0) -> None:
        self.quick_send(
            "ZCtrl.Withdraw",
            [U32(int(wait)), I32(int(timeout_s * 1000))],
            ["I", "i"],
            [],
        )

    def z_ctrl_setpoint_set(self, setpoint: float) -> None:
        self.quick_send("ZCtrl.SetpntSet", [F32(setpoint)], ["f"], [])

    def z_ctrl_setpoint_get(self) -> float:
        result = self.quick_send("ZCtrl.SetpntGet", [], [], ["f"])
        return self._first(result, "ZCtrl.SetpntGet").as_f32()

    def z_ctrl_home_props_set(self, mode: int, home_position_m: float) -> None:
        """mode: 0 no change, 1 relative, 2 absolute."""
        self.quick_send(
            "ZCtrl.HomePropsSet", [U16(mode), F32(home_position_m)], ["H", "f"], []
        )

    def safe_tip_props_set(
        self, auto_recovery: bool, auto_pause_scan: bool, threshold: float
    ) -> None:
        # 0 = no change, 1 = on, 2 = off
        def flag(on: bool) -> U16:
            return U16(1 if on else 2)

        self.quick_send(
            "SafeTip.PropsSet",
            [flag(auto_recovery), flag(auto_pause_scan), F32(threshold)],
            ["H", "H", "f"],
            [],
        )

    def auto_approach_open(self) -> None:
        self.quick_send("AutoApproach.Open", [], [], [])

    def auto_approach_on_off_set(self, on: bool) -> None:
        self.quick_send("AutoApproach.OnOffSet", [U16(int(on))], ["H"], [])

    def auto_approach_on_off_get(self) -> bool:
        result = self.quick_send("AutoApproach.OnOffGet", [], [], ["H"])
        return self._first(result, "AutoApproach.OnOffGet").as_u16() == 1

    def signals_names_get(self) -> list[str]:
        result = self.quick_send("Signals.NamesGet", [], [], ["+*c"])
        return list(self._first(result, "Signals.NamesGet").as_string_array())

    def signals_vals_get(
        self, indices: Sequence[int | SignalIndex], wait_for_newest: bool = True
    ) -> list[float]:
        slots = [int(i) for i in indices]
        result = self.quick_send(
            "Signals.ValsGet",
            [ArrayI32(slots), U32(int(wait_for_newest))],
            ["+*i", "I"],
            ["i", "*f"],
        )
        if len(result) < 2:
            raise ProtocolError("Incomplete Signals.ValsGet response")
        return list(result[1].as_f32_array())

    def signals_calibr_get(self, index: int | SignalIndex) -> tuple[float, float]:
        calibration, offset = self.quick_send(
            "Signals.CalibrGet", [I32(int(index))], ["i"], ["f", "f"]
        )
        return calibration.as_f32(), offset.as_f32()

    def current_get(self) -> float:
        result = self.quick_send("Current.Get", [], [], ["f"])
        return self._first(result, "Current.Get").as_f32()

    def scan_speed_get(self) -> ScanSpeed:
        result = self.quick_send("Scan.SpeedGet", [], [], ["f", "f", "f", "f", "H", "f"])
        fwd, bwd, fwd_t, bwd_t, keep, ratio = result
        return ScanSpeed(
            fwd.as_f32(),
            bwd.as_f32(),
            fwd_t.as_f32(),
            bwd_t.as_f32(),
            keep.as_u16(),
            ratio.as_f32(),
        )

    def scan_speed_set(self, speed: ScanSpeed) -> None:
        self.quick_send(
            "Scan.SpeedSet",
            [
                F32(speed.forward_speed_m_s),
                F32(speed.backward_speed_m_s),
                F32(speed.forward_time_per_line_s),
                F32(speed.backward_time_per_line_s),
                U16(speed.keep_parameter_constant),
                F32(speed.speed_ratio),
            ],
            ["f", "f", "f", "f", "H", "f"],
            [],
        )

    def util_layout_load(self, path: str, load_session: bool = False) -> None:
        self.quick_send(
            "Util.LayoutLoad", [String(path), U32(int(load_session))], ["+*c", "I"], []
        )

    def util_settings_load(self, path: str, load_session: bool = False) -> None:
        self.quick_send(
            "Util.SettingsLoad",
            [String(path), U32(int(load_session))],
            ["+*c", "I"],
            [],
        )

    def tcplog_start(self) -> None:
        self.quick_send("TCPLog.Start", [], [], [])

    def tcplog_stop(self) -> None:
        self.quick_send("TCPLog.Stop", [], [], [])

    def tcplog_chs_set(self, slots: Sequence[int]) -> None:
        """Select which signal slots (0..23) the TCP logger streams."""
        for slot in slots:
            if not 0 <= slot <= TCPLOG_MAX_CHANNEL_SLOT:
                raise InvalidCommand(
                    f"TCP logger channel slot {slot} outside 0..{TCPLOG_MAX_CHANNEL_SLOT}"
                )
        self.quick_send(
            "TCPLog.ChsSet",
            [I32(len(slots)), ArrayI32(list(slots))],
            ["i", "*i"],
            [],
        )

    def tcplog_oversampl_set(self, oversampling: int) -> None:
        if not 0 <= oversampling <= TCPLOG_MAX_OVERSAMPLING:
            raise InvalidCommand(
                f"Oversampling {oversampling} outside 0..{TCPLOG_MAX_OVERSAMPLING}"
            )
        self.quick_send("TCPLog.OversamplSet", [I32(oversampling)], ["i"], [])

    def tcplog_status_get(self) -> TCPLogStatus:
        result = self.quick_send("TCPLog.StatusGet", [], [], ["i"])
        raw = self._first(result, "TCPLog.StatusGet").as_i32()
        try:
            return TCPLogStatus(raw)
        except ValueError:
            raise ProtocolError(f"Unknown TCP logger status {raw}")
