"""Automated tip conditioning.

`TipController` runs the pulse / reposition / re-measure cycle until the tip is
judged stable:

```
           pre-loop (approach, classify)
                      |
          +-----------+------------+
          v                        v
        BLUNT  --- bad loop --->  SHARP  --- good loop ---> STABLE
          ^   <-------------------  |
          +------ good loop --------+
```

- Bad loop (tip Blunt): pulse at the current pulse voltage, reposition, classify
  the tip from the monitored signal (usually the frequency shift) and update the
  pulse voltage according to the configured `PulseMethod`.
- Good loop (tip Sharp): confirm the classification three times at fresh spots,
  then sweep the bias and check the signal stays put (see
  `tipshaper.meas.stability`). A tip that fails the sweep gets one pulse at the
  maximum voltage and goes back to Blunt.

The controller is the only writer of its state; observers get immutable
`ControllerState` snapshots through the `on_state` callback or `snapshot()`.

Examples
--------
```python
with SPMDriver(client) as driver:
    ctrl = TipController(driver, signal, TipControllerConfig(), shutdown=event)
    final = ctrl.run()
```
"""

from __future__ import annotations

import enum
import os
import threading
import time
import types
from collections import deque
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, Optional

import numpy as np
from loguru import logger
from mashumaro import DataClassDictMixin

from tipshaper.meas.stability import build_sweep_plans, run_bias_sweep
from tipshaper.types import ConfigError, NanonisError, NanonisTimeout, RunStoppedError
from tipshaper.types.config import LinearPulse, SteppingPulse, TipControllerConfig

if TYPE_CHECKING:
    from tipshaper.device.nanonis.client import ScanSpeed
    from tipshaper.meas.driver import SPMDriver
    from tipshaper.meas.signals import Signal
    from tipshaper.meas.stability import SweepPlan


class TipShape(str, enum.Enum):
    BLUNT = "Blunt"
    SHARP = "Sharp"
    STABLE = "Stable"


# ----------------
# Controller actions (for observers and the action log)
# ----------------

ControllerAction = types.SimpleNamespace()
ControllerAction.IDLE = "idle"
ControllerAction.INITIALIZING = "initializing"
ControllerAction.PULSE = "pulse"
ControllerAction.REPOSITION = "reposition"
ControllerAction.CHECK_TIP = "check_tip"
ControllerAction.STABILITY_SWEEP = "stability_sweep"
ControllerAction.FINISHED = "finished"

STATUS_INTERVAL = 10  # cycles between status log lines
REPOSITION_STEPS = (3, 3)  # X+, Y+ motor steps
SWEEP_MOTOR_STEPS = (3, 3, -3)
RELIABILITY_CHECKS = 3
APPROACH_TIMEOUT = 600.0  # s
POST_PULSE_WAIT = 1.0  # s
POST_REPOSITION_SETTLE = 1.0  # s
POST_APPROACH_SETTLE = 2.0  # s
BUFFER_CLEAR_WAIT = 0.5  # s
SWEEP_WITHDRAW_TIMEOUT = 5.0  # s
SWEEP_MOTOR_WAIT = 0.2  # s
HOME_MODE_ABSOLUTE = 2
HOME_POSITION = 50e-9  # m


@dataclass(frozen=True)
class ControllerState(DataClassDictMixin):
    """Read-only view of the controller at one instant."""

    tip_shape: TipShape
    cycle_count: int
    pulse_voltage: float
    freq_shift: Optional[float]
    elapsed_secs: float
    current_action: str
    pulse_count: int = 0
    stopped: bool = False


class TipController:
    """Tip conditioning state machine.

    Parameters
    ----------
    driver : SPMDriver
        Connected driver; its telemetry buffer is used for sampling if running.
    signal : Signal
        Monitored signal (index and optional TCP channel).
    config : TipControllerConfig
        Run parameters.
    shutdown : threading.Event, optional
        Cooperative stop request, checked between cycles and between sweep steps.
    on_state : Callable[[ControllerState], None], optional
        Called with a fresh snapshot after every state change.
    """

    def __init__(
        self,
        driver: SPMDriver,
        signal: Signal,
        config: TipControllerConfig,
        shutdown: Optional[threading.Event] = None,
        on_state: Optional[Callable[[ControllerState], None]] = None,
    ):
        ok, msg = config.validate()
        if not ok:
            raise ConfigError(msg)
        self.driver = driver
        self.signal = signal
        self.config = config
        self.shutdown = shutdown or threading.Event()
        self.on_state = on_state

        self._tip_shape = TipShape.BLUNT
        self._pulse_voltage = config.pulse_method.initial_voltage()
        self._cycles_without_change = 0
        self._pulse_count = 0
        self._cycle = 0
        self._histories: dict[int, deque[float]] = {}
        self._action = ControllerAction.IDLE
        self._start_time: Optional[float] = None
        self._stopped = False

    # ----------------------------------------------------------------------------------
    # Accessors
    # ----------------------------------------------------------------------------------

    @property
    def tip_shape(self) -> TipShape:
        return self._tip_shape

    @property
    def pulse_voltage(self) -> float:
        return self._pulse_voltage

    @property
    def cycles_without_change(self) -> int:
        return self._cycles_without_change

    @property
    def pulse_count(self) -> int:
        return self._pulse_count

    @property
    def cycle_count(self) -> int:
        return self._cycle

    def elapsed(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.monotonic() - self._start_time

    def signal_history(self, index: int) -> list[float]:
        """Recorded values of signal `index`, newest first."""
        return list(self._histories.get(index, ()))

    def last_signal(self, index: int) -> Optional[float]:
        history = self._histories.get(index)
        return history[0] if history else None

    def signal_change(self, index: int) -> Optional[float]:
        history = self._histories.get(index)
        if history is None or len(history) < 2:
            return None
        return history[0] - history[1]

    def clear_histories(self) -> None:
        self._histories.clear()

    def track_signal(self, index: int, value: float) -> None:
        history = self._histories.get(index)
        if history is None:
            history = deque(maxlen=self.config.max_history_size)
            self._histories[index] = history
        history.appendleft(float(value))

    def snapshot(self) -> ControllerState:
        return ControllerState(
            tip_shape=self._tip_shape,
            cycle_count=self._cycle,
            pulse_voltage=self._pulse_voltage,
            freq_shift=self.last_signal(self.signal.index),
            elapsed_secs=self.elapsed(),
            current_action=self._action,
            pulse_count=self._pulse_count,
            stopped=self._stopped,
        )

    def _set_action(self, action: str) -> None:
        self._action = action
        self._publish()

    def _publish(self) -> None:
        if self.on_state is not None:
            self.on_state(self.snapshot())

    # ----------------------------------------------------------------------------------
    # Pulse voltage policy
    # ----------------------------------------------------------------------------------

    def signed_pulse_voltage(self, magnitude: float) -> float:
        """Apply the configured polarity (and periodic switch) for the current pulse."""
        method = self.config.pulse_method
        polarity = method.polarity
        switch = method.random_switch
        if (
            switch is not None
            and switch.enabled
            and self._pulse_count > 0
            and self._pulse_count % switch.switch_every_n_pulses == 0
        ):
            polarity = polarity.opposite()
            logger.debug(
                "Pulse {} uses switched polarity {}", self._pulse_count, polarity.value
            )
        return polarity.apply(magnitude)

    def has_significant_change(self) -> tuple[bool, float]:
        """-> (significant, change) of the newest monitored value vs its baseline.

        The baseline is the previous value right after a change, else the mean of
        the values in the current run of unchanged cycles.
        """
        method = self.config.pulse_method
        if not isinstance(method, SteppingPulse):
            return False, 0.0
        history = self.signal_history(self.signal.index)
        if len(history) < 2:
            return True, 0.0
        stable_len = min(self._cycles_without_change, len(history) - 1)
        if stable_len == 0:
            change = history[0] - history[1]
        else:
            change = history[0] - float(np.mean(history[1 : 1 + stable_len]))
        return abs(change) >= method.threshold.threshold(history[0]), change

    def update_pulse_voltage(self) -> None:
        """Stepping policy: reset on a positive jump, step up after a quiet streak."""
        method = self.config.pulse_method
        if not isinstance(method, SteppingPulse):
            return
        significant, change = self.has_significant_change()
        if significant and change >= 0:
            if self._pulse_voltage != method.voltage_bounds[0]:
                logger.info(
                    "Signal changed by {:+.4g}, pulse voltage reset to {:.3f} V",
                    change,
                    method.voltage_bounds[0],
                )
            self._pulse_voltage = method.voltage_bounds[0]
            self._cycles_without_change = 0
            return

        if significant:
            logger.warning("Signal dropped by {:.4g} after pulse", change)
        self._cycles_without_change += 1
        if self._cycles_without_change >= method.cycles_before_step:
            previous = self._pulse_voltage
            self._pulse_voltage = min(
                self._pulse_voltage + method.step_size, method.voltage_bounds[1]
            )
            self._cycles_without_change = 0
            if self._pulse_voltage != previous:
                logger.info(
                    "No change for {} cycles, pulse voltage {:.3f} V -> {:.3f} V",
                    method.cycles_before_step,
                    previous,
                    self._pulse_voltage,
                )
            else:
                logger.debug("Pulse voltage already at maximum {:.3f} V", previous)

    def _apply_pulse_policy(self, value: float) -> None:
        match self.config.pulse_method:
            case SteppingPulse():
                self.update_pulse_voltage()
            case LinearPulse() as method:
                self._pulse_voltage = method.voltage_for(value)
                logger.debug(
                    "Linear pulse voltage {:.3f} V for signal {:.4g}",
                    self._pulse_voltage,
                    value,
                )
            case _:
                pass

    # ----------------------------------------------------------------------------------
    # Run
    # ----------------------------------------------------------------------------------

    def run(self) -> ControllerState:
        """Condition the tip until Stable, stopped, or a limit is hit.

        Raises
        ------
        NanonisTimeout
            When `max_cycles` or `max_duration_secs` is exceeded.
        NanonisError
            Any instrument error is fatal to the run.
        """
        self._start_time = time.monotonic()
        self._stopped = False
        logger.info(
            "Tip conditioning started: signal '{}' (index {}), bounds {}, method {}",
            self.signal.name,
            self.signal.index,
            self.config.sharp_tip_bounds,
            self.config.pulse_method.method_name,
        )
        try:
            self._tip_shape = self.pre_loop_initialization()
            self._publish()
            while self._tip_shape is not TipShape.STABLE:
                if self.shutdown.is_set():
                    raise RunStoppedError("Shutdown requested")
                self._check_limits()
                self._cycle += 1
                if self._cycle % STATUS_INTERVAL == 0:
                    self._log_status()
                next_shape = self._router(self._tip_shape)
                if next_shape is not self._tip_shape:
                    logger.info(
                        "Tip state (cycle {}): {} -> {}",
                        self._cycle,
                        self._tip_shape.value,
                        next_shape.value,
                    )
                self._tip_shape = next_shape
                self._publish()
        except RunStoppedError as e:
            logger.info("Tip conditioning stopped after {} cycles: {}", self._cycle, e)
            self._stopped = True
        self._set_action(ControllerAction.FINISHED)
        self.driver.record("run_finished", **self.snapshot().to_dict())
        if self._tip_shape is TipShape.STABLE:
            logger.info(
                "Tip stable after {} cycles, {} pulses, {:.1f}s",
                self._cycle,
                self._pulse_count,
                self.elapsed(),
            )
        return self.snapshot()

    def _check_limits(self) -> None:
        max_cycles = self.config.max_cycles
        if max_cycles is not None and self._cycle >= max_cycles:
            raise NanonisTimeout(f"Reached max cycles ({max_cycles}) without a stable tip")
        max_duration = self.config.max_duration_secs
        if max_duration is not None and self.elapsed() >= max_duration:
            raise NanonisTimeout(
                f"Reached max duration ({max_duration:.0f}s) without a stable tip"
            )

    def _log_status(self) -> None:
        last = self.last_signal(self.signal.index)
        logger.info(
            "Cycle {}: tip {}, pulse voltage {:.3f} V, {} pulses, signal {}, {:.0f}s",
            self._cycle,
            self._tip_shape.value,
            self._pulse_voltage,
            self._pulse_count,
            "n/a" if last is None else f"{last:.4g}",
            self.elapsed(),
        )

    def _router(self, shape: TipShape) -> TipShape:
        match shape:
            case TipShape.BLUNT:
                return self.bad_loop()
            case TipShape.SHARP:
                return self.good_loop()
            case TipShape.STABLE:
                return TipShape.STABLE

    # ----------------------------------------------------------------------------------
    # States
    # ----------------------------------------------------------------------------------

    def _classify(self) -> TipShape:
        self._set_action(ControllerAction.CHECK_TIP)
        shape, value = self.driver.check_tip_state(
            self.signal, self.config.sharp_tip_bounds
        )
        self.track_signal(self.signal.index, value)
        return shape

    def _reposition(self) -> None:
        self._set_action(ControllerAction.REPOSITION)
        self.driver.safe_reposition(*REPOSITION_STEPS)
        time.sleep(POST_REPOSITION_SETTLE)

    def _pulse(self, magnitude: float) -> None:
        self._pulse_count += 1
        self._set_action(ControllerAction.PULSE)
        self.driver.bias_pulse(
            self.signed_pulse_voltage(magnitude), self.config.pulse_width_ms / 1e3
        )

    def pre_loop_initialization(self) -> TipShape:
        self._set_action(ControllerAction.INITIALIZING)
        client = self.driver.client
        for path, loader, what in (
            (self.config.layout_file, client.util_layout_load, "layout"),
            (self.config.settings_file, client.util_settings_load, "settings"),
        ):
            if not path:
                continue
            path = os.path.abspath(path)
            if not os.path.exists(path):
                raise ConfigError(f"Nanonis {what} file not found: {path}")
            loader(path)
            logger.info("Loaded Nanonis {} from {}", what, path)

        self.driver.set_bias(self.config.initial_bias_v)
        client.z_ctrl_setpoint_set(self.config.initial_z_setpoint_a)
        client.z_ctrl_home_props_set(HOME_MODE_ABSOLUTE, HOME_POSITION)
        client.safe_tip_props_set(False, True, self.config.safe_tip_threshold)
        self.driver.auto_approach(APPROACH_TIMEOUT)

        if self.driver.buffer is not None:
            self.driver.buffer.clear()
            time.sleep(BUFFER_CLEAR_WAIT)
        time.sleep(POST_APPROACH_SETTLE)
        shape = self._classify()
        logger.info("Initial tip state: {}", shape.value)
        return shape

    def bad_loop(self) -> TipShape:
        self._pulse(self._pulse_voltage)
        time.sleep(POST_PULSE_WAIT)
        self._reposition()
        shape = self._classify()
        self._apply_pulse_policy(self.last_signal(self.signal.index))
        return shape

    def pre_good_loop_check(self) -> tuple[TipShape, Optional[float]]:
        """Confirm a Sharp reading at several fresh spots; -> (shape, baseline)."""
        value = None
        for i in range(RELIABILITY_CHECKS):
            if self.shutdown.is_set():
                raise RunStoppedError("Shutdown requested during tip confirmation")
            self._reposition()
            shape = self._classify()
            value = self.last_signal(self.signal.index)
            if shape is TipShape.BLUNT:
                logger.info(
                    "Sharp reading not confirmed at spot {}/{}", i + 1, RELIABILITY_CHECKS
                )
                return TipShape.BLUNT, value
        return TipShape.SHARP, value

    def good_loop(self) -> TipShape:
        shape, baseline = self.pre_good_loop_check()
        if shape is TipShape.BLUNT:
            return TipShape.BLUNT
        if not self.config.check_stability:
            logger.info("Stability check disabled, accepting sharp tip")
            return TipShape.STABLE
        if baseline is None:
            return TipShape.BLUNT

        stability = self.config.stability
        saved_speed = self._override_scan_speed()
        stable = True
        try:
            for plan in build_sweep_plans(stability):
                self._prepare_sweep(plan)
                self._set_action(ControllerAction.STABILITY_SWEEP)
                result = run_bias_sweep(
                    self.driver, self.signal, plan, stability, baseline, self.shutdown
                )
                self.driver.record(
                    "stability_sweep",
                    start_bias=plan.start_bias,
                    end_bias=plan.end_bias,
                    baseline=baseline,
                    **result.to_dict(),
                )
                if not result.is_stable:
                    stable = False
                    break
        finally:
            self._restore_scan_speed(saved_speed)
            self.driver.set_bias(self.config.initial_bias_v)

        if stable:
            return TipShape.STABLE
        logger.info("Tip unstable under bias sweep, pulsing at maximum voltage")
        self._pulse(self.config.pulse_method.max_voltage())
        self._reposition()
        return self._classify()

    def _prepare_sweep(self, plan: SweepPlan) -> None:
        self.driver.withdraw(SWEEP_WITHDRAW_TIMEOUT)
        self.driver.move_motor_3d(*SWEEP_MOTOR_STEPS)
        time.sleep(SWEEP_MOTOR_WAIT)
        self.driver.set_bias(plan.start_bias)
        self.driver.auto_approach(APPROACH_TIMEOUT)
        time.sleep(POST_APPROACH_SETTLE)

    def _override_scan_speed(self) -> Optional[ScanSpeed]:
        speed = self.config.stability.scan_speed_m_s
        if speed is None:
            return None
        client = self.driver.client
        try:
            saved = client.scan_speed_get()
            client.scan_speed_set(
                replace(
                    saved,
                    forward_speed_m_s=speed,
                    backward_speed_m_s=speed,
                    keep_parameter_constant=1,
                )
            )
        except NanonisError as e:
            logger.warning("Could not set scan speed for stability sweep: {}", e)
            return None
        logger.debug("Scan speed set to {} m/s for stability sweep", speed)
        return saved

    def _restore_scan_speed(self, saved: Optional[ScanSpeed]) -> None:
        if saved is None:
            return
        try:
            self.driver.client.scan_speed_set(saved)
        except NanonisError as e:
            logger.warning("Could not restore scan speed: {}", e)
