"""Composite SPM operations built from single Nanonis commands.

`SPMDriver` owns the control client and, once `start_buffering` has been called,
the TCP logger stream and its `TelemetryBuffer`. It is what the conditioning
controller talks to: "approach", "reposition", "pulse", "is the tip sharp?".

Always use it as a context manager (or call `close`). Closing stops the telemetry
buffer, withdraws the tip and backs the coarse motor off by two steps, so the tip
is left safe on every exit path.

Examples
--------
```python
with SPMDriver(NanonisClient("127.0.0.1", 6501)) as driver:
    driver.auto_approach(timeout=300)
    shape, value = driver.check_tip_state(signal, (-2.0, 0.0))
```
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np
from loguru import logger

from tipshaper.device.nanonis.stream import TCPLoggerStream
from tipshaper.meas.buffer import TelemetryBuffer
from tipshaper.meas.tip_prep import TipShape
from tipshaper.types import NanonisError, NanonisTimeout
from tipshaper.util.defaults import DEFAULT_BUFFER_CAPACITY, DEFAULT_STREAM_PORT
from tipshaper.util.poll import poll_until

if TYPE_CHECKING:
    from tipshaper.device.nanonis.client import NanonisClient
    from tipshaper.meas.signals import Signal
    from tipshaper.util.save import ActionLogger

APPROACH_POLL_INTERVAL = 0.1  # s
APPROACH_OPEN_WAIT = 0.5  # s, module needs to open before it accepts OnOffSet
TCPLOG_RESTART_WAIT = 0.2  # s
CLOSE_WITHDRAW_TIMEOUT = 1.0  # s
CLOSE_BACKOFF_STEPS = 2


class SPMDriver:
    """High level operations on one Nanonis instance.

    Parameters
    ----------
    client : NanonisClient
        Control connection; opened on entry if not already connected.
    action_logger : ActionLogger, optional
        Receives one record per composite action.
    """

    def __init__(
        self, client: NanonisClient, action_logger: Optional[ActionLogger] = None
    ):
        self.client = client
        self.action_logger = action_logger
        self.buffer: Optional[TelemetryBuffer] = None
        self._stream: Optional[TCPLoggerStream] = None
        self._buffered_indices: list[int] = []
        self._closed = False

    def __enter__(self):
        if not self.client.is_connected():
            self.client.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def record(self, action: str, **data) -> None:
        if self.action_logger is not None:
            self.action_logger.log({"action": action, **data})

    # ----------------------------------------------------------------------------------
    # Approach & positioning
    # ----------------------------------------------------------------------------------

    def auto_approach(self, timeout: float, settle: float = APPROACH_OPEN_WAIT) -> None:
        """Run the auto-approach and block until it finishes.

        Raises
        ------
        NanonisTimeout
            If the approach is still running after `timeout` seconds; the approach
            is stopped first.
        """
        if self.client.auto_approach_on_off_get():
            logger.info("Auto-approach already running")
            self.record("auto_approach", already_running=True)
            return
        self.client.auto_approach_open()
        time.sleep(settle)
        self.client.auto_approach_on_off_set(True)
        t0 = time.monotonic()
        try:
            poll_until(
                lambda: not self.client.auto_approach_on_off_get(),
                timeout,
                interval=APPROACH_POLL_INTERVAL,
                description="auto-approach",
            )
        except NanonisTimeout:
            logger.warning("Auto-approach timed out after {}s, stopping it", timeout)
            self.client.auto_approach_on_off_set(False)
            raise
        duration = time.monotonic() - t0
        logger.debug("Auto-approach finished in {:.1f}s", duration)
        self.record("auto_approach", duration_s=duration)

    def withdraw(self, timeout: float = 5.0, wait: bool = True) -> None:
        self.client.z_ctrl_withdraw(wait=wait, timeout_s=timeout)
        self.record("withdraw", timeout_s=timeout)

    def move_motor_3d(self, dx: int, dy: int, dz: int, wait: bool = True) -> None:
        """Coarse move by signed step counts along each axis (zero axes are skipped)."""
        for axis, steps in (("X", dx), ("Y", dy), ("Z", dz)):
            if steps == 0:
                continue
            direction = f"{axis}+" if steps > 0 else f"{axis}-"
            self.client.motor_start_move(direction, abs(steps), wait=wait)
        self.record("move_motor_3d", dx=dx, dy=dy, dz=dz)

    def safe_reposition(
        self, x_steps: int, y_steps: int, approach_timeout: float = 300.0
    ) -> None:
        """Withdraw, step laterally, then approach again."""
        logger.debug("Safe reposition by ({}, {}) steps", x_steps, y_steps)
        self.withdraw()
        if x_steps:
            self.client.motor_start_move("X+", x_steps, wait=True)
        if y_steps:
            self.client.motor_start_move("Y+", y_steps, wait=True)
        self.auto_approach(approach_timeout)
        self.record("safe_reposition", x_steps=x_steps, y_steps=y_steps)

    # ----------------------------------------------------------------------------------
    # Bias & signals
    # ----------------------------------------------------------------------------------

    def bias_pulse(self, voltage: float, width_s: float) -> None:
        logger.info("Bias pulse {:+.3f} V for {:.0f} ms", voltage, width_s * 1e3)
        self.client.bias_pulse(width_s, voltage, wait_until_done=True)
        self.record("bias_pulse", voltage=voltage, width_s=width_s)

    def set_bias(self, voltage: float) -> None:
        self.client.bias_set(voltage)

    def read_signal(self, signal: Signal) -> float:
        return self.client.signals_vals_get([signal.index], wait_for_newest=True)[0]

    def check_tip_state(
        self, signal: Signal, bounds: tuple[float, float]
    ) -> tuple[TipShape, float]:
        """Sharp if the signal lies inside `bounds` (inclusive), Blunt otherwise."""
        value = self.read_signal(signal)
        lo, hi = bounds
        shape = TipShape.SHARP if lo <= value <= hi else TipShape.BLUNT
        logger.debug(
            "Tip check: {} = {:.4g} in [{}, {}] -> {}",
            signal.name,
            value,
            lo,
            hi,
            shape.value,
        )
        self.record("check_tip_state", signal=signal.name, value=value, shape=shape.value)
        return shape, value

    def sample_signal(self, signal: Signal, window: float) -> float:
        """Mean over the last `window` seconds of buffered data.

        Falls back to a direct read when the signal is not buffered or no frame
        arrived in the window.
        """
        if self.buffer is not None and signal.index in self._buffered_indices:
            position = self._buffered_indices.index(signal.index)
            value = self.buffer.recent_mean(position, window)
            if value is not None:
                return value
        return self.read_signal(signal)

    # ----------------------------------------------------------------------------------
    # Telemetry
    # ----------------------------------------------------------------------------------

    def start_buffering(
        self,
        signals: Sequence[Signal],
        oversampling: int,
        capacity: int = DEFAULT_BUFFER_CAPACITY,
        stream_port: int = DEFAULT_STREAM_PORT,
    ) -> TelemetryBuffer:
        """Route `signals` to the TCP logger and buffer the stream."""
        if self.buffer is not None:
            raise NanonisError("Telemetry buffering already started")
        slots = []
        for signal in signals:
            if signal.tcp_channel is None:
                raise NanonisError(f"Signal '{signal.name}' has no TCP logger channel")
            slots.append(signal.tcp_channel)
        self.client.tcplog_chs_set(slots)
        self.client.tcplog_oversampl_set(oversampling)

        self._stream = TCPLoggerStream(self.client.host, stream_port)
        self._stream.open()
        self.buffer = TelemetryBuffer(
            self._stream.spawn_background_reader(),
            capacity,
            num_channels=len(slots),
            oversampling=oversampling,
        )
        self.buffer.start()
        self._buffered_indices = [s.index for s in signals]

        try:
            self.client.tcplog_stop()
        except NanonisError as e:
            logger.debug("TCPLog.Stop before start failed (ignored): {}", e)
        time.sleep(TCPLOG_RESTART_WAIT)
        self.client.tcplog_start()
        logger.info(
            "Buffering {} on TCP slots {} (oversampling {})",
            [s.name for s in signals],
            slots,
            oversampling,
        )
        return self.buffer

    def stop_buffering(self) -> None:
        if self.buffer is None:
            return
        n_frames = self.buffer.frame_count()
        try:
            self.client.tcplog_stop()
        except NanonisError as e:
            logger.warning("Could not stop TCP logger: {}", e)
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        try:
            self.buffer.stop()
        finally:
            self.buffer = None
            self._buffered_indices = []
        logger.info("Telemetry buffering stopped, {} frames collected", n_frames)

    def buffered_values(self, signal: Signal, duration: float) -> np.ndarray:
        if self.buffer is None or signal.index not in self._buffered_indices:
            return np.array([])
        position = self._buffered_indices.index(signal.index)
        return self.buffer.channel_values(self.buffer.recent(duration), position)

    # ----------------------------------------------------------------------------------
    # Cleanup
    # ----------------------------------------------------------------------------------

    def close(self) -> None:
        """Leave the tip safe and release everything; errors are only logged."""
        if self._closed:
            return
        self._closed = True
        try:
            self.stop_buffering()
        except Exception:
            logger.exception("Error stopping telemetry buffer.")
        if not self.client.is_connected():
            return
        try:
            self.client.z_ctrl_withdraw(wait=False, timeout_s=CLOSE_WITHDRAW_TIMEOUT)
            self.client.motor_start_move("Z-", CLOSE_BACKOFF_STEPS, wait=False)
            logger.info("Tip withdrawn and backed off {} steps", CLOSE_BACKOFF_STEPS)
        except Exception:
            logger.exception("Error leaving tip in a safe position.")
        try:
            self.client.close()
        except Exception:
            logger.exception("Error closing Nanonis client.")
