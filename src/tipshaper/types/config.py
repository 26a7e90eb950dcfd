"""Configuration types for the Nanonis connection, pulsing and stability checks.

All classes are `mashumaro` dataclasses so they round-trip through plain dicts
(`to_dict` / `from_dict`). Pulse methods and threshold strategies are closed sets of
variants selected by a discriminator field, which keeps a configured run fully
inspectable as data.

Every class with constraints has `validate() -> tuple[bool, str]`, returning
`(is_valid, error_message)`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig
from mashumaro.types import Discriminator

from tipshaper.util.defaults import (
    DEFAULT_BUFFER_CAPACITY,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_HOST_ADDR,
    DEFAULT_LOGLEVEL,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_STREAM_PORT,
    DEFAULT_WRITE_TIMEOUT,
)


@dataclass(kw_only=True)
class ConnectionConfig(DataClassDictMixin):
    """Socket timeouts for the control connection, in seconds."""

    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    write_timeout: float = DEFAULT_WRITE_TIMEOUT


# ======================================================================================
# Pulse methods
# ======================================================================================


class PolaritySign(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"

    def opposite(self) -> PolaritySign:
        if self is PolaritySign.POSITIVE:
            return PolaritySign.NEGATIVE
        return PolaritySign.POSITIVE

    def apply(self, magnitude: float) -> float:
        return magnitude if self is PolaritySign.POSITIVE else -magnitude


@dataclass(kw_only=True)
class RandomPolaritySwitch(DataClassDictMixin):
    """Every `switch_every_n_pulses`-th pulse uses the opposite polarity."""

    enabled: bool = True
    switch_every_n_pulses: int


@dataclass(kw_only=True)
class ThresholdStrategy(DataClassDictMixin):
    """How large a signal change must be to count as significant."""

    class Config(BaseConfig):
        discriminator = Discriminator(field="kind", include_subtypes=True)

    kind: str

    def threshold(self, current_value: float) -> float:
        raise NotImplementedError()


@dataclass(kw_only=True)
class FixedThreshold(ThresholdStrategy):
    kind: str = "fixed"
    value: float

    def threshold(self, current_value: float) -> float:
        return abs(self.value)


@dataclass(kw_only=True)
class ProportionalThreshold(ThresholdStrategy):
    """Threshold proportional to the current signal magnitude, floored at `minimum`."""

    kind: str = "proportional"
    fraction: float
    minimum: float = 0.0

    def threshold(self, current_value: float) -> float:
        return max(abs(self.minimum), abs(self.fraction * current_value))


@dataclass(kw_only=True)
class PulseMethod(DataClassDictMixin):
    """Base for the pulse voltage policies. To be subclassed per policy."""

    class Config(BaseConfig):
        discriminator = Discriminator(field="type", include_subtypes=True)

    type: str
    polarity: PolaritySign = PolaritySign.POSITIVE
    random_switch: Optional[RandomPolaritySwitch] = None

    @property
    def method_name(self) -> str:
        return self.type.capitalize()

    def max_voltage(self) -> float:
        raise NotImplementedError()

    def initial_voltage(self) -> float:
        raise NotImplementedError()

    def validate(self) -> tuple[bool, str]:
        if self.random_switch is not None and self.random_switch.switch_every_n_pulses <= 0:
            return False, "switch_every_n_pulses must be greater than zero"
        return True, ""


def _validate_bounds(name: str, bounds: tuple[float, float]) -> tuple[bool, str]:
    lo, hi = bounds
    if lo <= 0 or hi <= 0:
        return (
            False,
            f"{name} voltage_bounds must be positive (got [{lo}, {hi}]). "
            + "Use polarity to control sign.",
        )
    if lo >= hi:
        return False, f"{name} voltage_bounds: min ({lo}) must be less than max ({hi})"
    return True, ""


@dataclass(kw_only=True)
class FixedPulse(PulseMethod):
    type: str = "fixed"
    voltage: float = 4.0

    def max_voltage(self) -> float:
        return self.voltage

    def initial_voltage(self) -> float:
        return self.voltage

    def validate(self) -> tuple[bool, str]:
        if self.voltage <= 0:
            return (
                False,
                f"Fixed pulse voltage must be positive, got: {self.voltage}. "
                + "Use polarity to control sign.",
            )
        return super().validate()


@dataclass(kw_only=True)
class SteppingPulse(PulseMethod):
    """Raise the voltage one step after `cycles_before_step` cycles without change."""

    type: str = "stepping"
    voltage_bounds: tuple[float, float] = (2.0, 6.0)
    voltage_steps: int = 4
    cycles_before_step: int = 2
    threshold: ThresholdStrategy = field(
        default_factory=lambda: FixedThreshold(value=0.1)
    )

    def max_voltage(self) -> float:
        return self.voltage_bounds[1]

    def initial_voltage(self) -> float:
        return self.voltage_bounds[0]

    @property
    def step_size(self) -> float:
        lo, hi = self.voltage_bounds
        return (hi - lo) / self.voltage_steps

    def validate(self) -> tuple[bool, str]:
        ok, msg = _validate_bounds("Stepping", self.voltage_bounds)
        if not ok:
            return ok, msg
        if self.voltage_steps <= 0:
            return False, "voltage_steps must be greater than zero"
        if self.cycles_before_step <= 0:
            return False, "cycles_before_step must be greater than zero"
        return super().validate()


@dataclass(kw_only=True)
class LinearPulse(PulseMethod):
    """Voltage interpolated from the monitored signal inside `linear_clamp`.

    Outside the clamp range the maximum voltage is used.
    """

    type: str = "linear"
    voltage_bounds: tuple[float, float] = (2.0, 6.0)
    linear_clamp: tuple[float, float] = (-20.0, 0.0)

    def max_voltage(self) -> float:
        return self.voltage_bounds[1]

    def initial_voltage(self) -> float:
        return self.voltage_bounds[0]

    def voltage_for(self, signal_value: float) -> float:
        v_lo, v_hi = self.voltage_bounds
        c_lo, c_hi = self.linear_clamp
        if signal_value < c_lo or signal_value > c_hi:
            return v_hi
        frac = (signal_value - c_lo) / (c_hi - c_lo)
        return v_lo + frac * (v_hi - v_lo)

    def validate(self) -> tuple[bool, str]:
        ok, msg = _validate_bounds("Linear", self.voltage_bounds)
        if not ok:
            return ok, msg
        c_lo, c_hi = self.linear_clamp
        if c_lo >= c_hi:
            return False, f"Linear linear_clamp: min ({c_lo}) must be less than max ({c_hi})"
        return super().validate()


# ======================================================================================
# Stability & controller
# ======================================================================================


class SweepPolarity(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    BOTH = "both"


@dataclass(kw_only=True)
class StabilityConfig(DataClassDictMixin):
    """Bias-sweep stability check.

    `bias_range` is a strictly positive magnitude range; `polarity_mode` picks the
    sign(s) swept.
    """

    check_stability: bool = True
    allowed_change: float = 0.2
    bias_range: tuple[float, float] = (0.01, 2.0)
    bias_steps: int = 1000
    step_period_ms: int = 200
    max_duration_secs: float = 100.0
    polarity_mode: SweepPolarity = SweepPolarity.BOTH
    scan_speed_m_s: Optional[float] = 5e-9

    def validate(self) -> tuple[bool, str]:
        lo, hi = self.bias_range
        if lo <= 0 or hi <= 0:
            return (
                False,
                f"bias_range must be strictly positive (got [{lo}, {hi}]). "
                + "Use polarity_mode to control sign.",
            )
        if lo >= hi:
            return (
                False,
                f"bias_range: lower bound ({lo}) must be less than upper bound ({hi})",
            )
        if self.allowed_change <= 0:
            return False, f"allowed_change must be positive, got: {self.allowed_change}"
        if self.bias_steps <= 0:
            return False, "bias_steps must be greater than zero"
        if self.step_period_ms < 0:
            return False, "step_period_ms must not be negative"
        return True, ""


@dataclass(kw_only=True)
class TipControllerConfig(DataClassDictMixin):
    """Everything the conditioning state machine needs for one run."""

    freq_shift_index: int = 76
    freq_shift_tcp_channel: Optional[int] = 18
    sharp_tip_bounds: tuple[float, float] = (-2.0, 0.0)
    pulse_method: PulseMethod = field(default_factory=lambda: FixedPulse(voltage=4.0))
    max_cycles: Optional[int] = 1000
    max_duration_secs: Optional[float] = 3600.0
    stability: StabilityConfig = field(default_factory=StabilityConfig)
    layout_file: Optional[str] = None
    settings_file: Optional[str] = None
    initial_bias_v: float = -0.5
    initial_z_setpoint_a: float = 100e-12
    safe_tip_threshold: float = 1e-9
    max_history_size: int = 100
    pulse_width_ms: int = 50

    @property
    def allowed_change(self) -> float:
        return self.stability.allowed_change

    @property
    def check_stability(self) -> bool:
        return self.stability.check_stability

    def validate(self) -> tuple[bool, str]:
        lo, hi = self.sharp_tip_bounds
        if lo > hi:
            return False, f"sharp_tip_bounds: min ({lo}) must not exceed max ({hi})"
        if self.max_history_size < 2:
            return False, "max_history_size must be at least 2"
        ok, msg = self.pulse_method.validate()
        if not ok:
            return False, f"Invalid pulse_method: {msg}"
        return self.stability.validate()


# ======================================================================================
# Application (file) configuration
# ======================================================================================


@dataclass(kw_only=True)
class NanonisConfig(DataClassDictMixin):
    host_ip: str = DEFAULT_HOST_ADDR
    control_ports: list[int] = field(default_factory=lambda: [6501, 6502, 6503, 6504])
    layout_file: Optional[str] = None
    settings_file: Optional[str] = None

    def validate(self) -> tuple[bool, str]:
        if not self.host_ip.strip():
            return False, "host_ip must not be empty"
        if not self.control_ports:
            return False, "control_ports must list at least one port"
        for port in self.control_ports:
            if not 0 < port < 65536:
                return False, f"Invalid control port {port}"
        return True, ""


@dataclass(kw_only=True)
class DataAcquisitionConfig(DataClassDictMixin):
    data_port: int = DEFAULT_STREAM_PORT
    sample_rate: int = 2000  # Hz, before oversampling
    buffer_capacity: int = DEFAULT_BUFFER_CAPACITY

    @property
    def oversampling(self) -> int:
        return max(0, min(1000, 2000 // max(1, self.sample_rate)))

    def validate(self) -> tuple[bool, str]:
        if self.sample_rate <= 0:
            return False, "sample_rate must be positive"
        if self.buffer_capacity <= 0:
            return False, "buffer_capacity must be positive"
        return True, ""


@dataclass(kw_only=True)
class ExperimentLoggingConfig(DataClassDictMixin):
    enabled: bool = True
    output_path: str = "./experiments"
    buffer_size: int = 1000
    finalize_json: bool = False


@dataclass(kw_only=True)
class ConsoleConfig(DataClassDictMixin):
    verbosity: str = DEFAULT_LOGLEVEL


@dataclass(kw_only=True)
class TipPrepConfig(DataClassDictMixin):
    sharp_tip_bounds: tuple[float, float] = (-2.0, 0.0)
    max_cycles: Optional[int] = 10000
    max_duration_secs: Optional[float] = 12000.0
    initial_bias_v: float = -0.5
    initial_z_setpoint_a: float = 100e-12
    safe_tip_threshold: float = 1e-9
    max_history_size: int = 100
    pulse_width_ms: int = 50
    freq_shift_signal: str = "freq shift"


@dataclass(kw_only=True)
class AppConfig(DataClassDictMixin):
    """Contents of a tipshaper configuration file."""

    nanonis: NanonisConfig = field(default_factory=NanonisConfig)
    data_acquisition: DataAcquisitionConfig = field(
        default_factory=DataAcquisitionConfig
    )
    experiment_logging: ExperimentLoggingConfig = field(
        default_factory=ExperimentLoggingConfig
    )
    console: ConsoleConfig = field(default_factory=ConsoleConfig)
    tip_prep: TipPrepConfig = field(default_factory=TipPrepConfig)
    stability: StabilityConfig = field(default_factory=StabilityConfig)
    pulse_method: PulseMethod = field(default_factory=lambda: SteppingPulse())
    tcp_channel_mapping: dict[int, int] = field(default_factory=dict)

    def validate(self) -> tuple[bool, str]:
        for section in (self.nanonis, self.data_acquisition, self.stability):
            ok, msg = section.validate()
            if not ok:
                return ok, msg
        ok, msg = self.pulse_method.validate()
        if not ok:
            return False, f"Invalid pulse_method: {msg}"
        for index, channel in self.tcp_channel_mapping.items():
            if not 0 <= index <= 127 or not 0 <= channel <= 23:
                return (
                    False,
                    f"Invalid tcp_channel_mapping {index} -> {channel} "
                    + "(index 0..127, channel 0..23)",
                )
        return True, ""

    def controller_config(
        self, freq_shift_index: int, freq_shift_tcp_channel: Optional[int]
    ) -> TipControllerConfig:
        """Build the run configuration once the monitored signal is resolved."""
        tp = self.tip_prep
        return TipControllerConfig(
            freq_shift_index=freq_shift_index,
            freq_shift_tcp_channel=freq_shift_tcp_channel,
            sharp_tip_bounds=tp.sharp_tip_bounds,
            pulse_method=self.pulse_method,
            max_cycles=tp.max_cycles,
            max_duration_secs=tp.max_duration_secs,
            stability=self.stability,
            layout_file=self.nanonis.layout_file,
            settings_file=self.nanonis.settings_file,
            initial_bias_v=tp.initial_bias_v,
            initial_z_setpoint_a=tp.initial_z_setpoint_a,
            safe_tip_threshold=tp.safe_tip_threshold,
            max_history_size=tp.max_history_size,
            pulse_width_ms=tp.pulse_width_ms,
        )
