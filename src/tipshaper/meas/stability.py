"""Bias-sweep stability check.

A sharp tip is only accepted once the monitored signal stays put while the bias is
swept: the bias magnitude is stepped from the lower to the upper bound of
`StabilityConfig.bias_range`, dwelling `step_period_ms` at each step, and the signal
is compared to the baseline taken before the sweep. The tip is stable if no sample
deviates from the baseline by `allowed_change` or more.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np
from loguru import logger

from tipshaper.types import RunStoppedError
from tipshaper.types.config import StabilityConfig, SweepPolarity

if TYPE_CHECKING:
    from tipshaper.meas.driver import SPMDriver
    from tipshaper.meas.signals import Signal


@dataclass(frozen=True)
class SweepPlan:
    start_bias: float
    end_bias: float
    index: int
    total: int

    @property
    def label(self) -> str:
        return (
            f"sweep {self.index + 1}/{self.total} "
            + f"({self.start_bias:+.3f} V -> {self.end_bias:+.3f} V)"
        )


@dataclass
class StabilityResult:
    is_stable: bool
    max_deviation: float
    samples: np.ndarray = field(default_factory=lambda: np.array([]))
    aborted_early: bool = False
    timed_out: bool = False

    @property
    def n_samples(self) -> int:
        return int(self.samples.size)

    def to_dict(self) -> dict:
        return {
            "is_stable": self.is_stable,
            "max_deviation": self.max_deviation,
            "n_samples": self.n_samples,
            "aborted_early": self.aborted_early,
            "timed_out": self.timed_out,
        }


def build_sweep_plans(config: StabilityConfig) -> list[SweepPlan]:
    lo, hi = config.bias_range
    match config.polarity_mode:
        case SweepPolarity.POSITIVE:
            ranges = [(lo, hi)]
        case SweepPolarity.NEGATIVE:
            ranges = [(-lo, -hi)]
        case SweepPolarity.BOTH:
            ranges = [(lo, hi), (-lo, -hi)]
        case _:
            raise ValueError(f"Unknown polarity mode {config.polarity_mode}")
    return [SweepPlan(a, b, i, len(ranges)) for i, (a, b) in enumerate(ranges)]


def sweep_biases(plan: SweepPlan, steps: int) -> np.ndarray:
    return np.linspace(plan.start_bias, plan.end_bias, steps)


def evaluate_stability(
    samples: Sequence[float] | np.ndarray, baseline: float, allowed: float
) -> StabilityResult:
    """Stable iff every sample lies strictly within `allowed` of `baseline`.

    No samples is judged unstable.
    """
    arr = np.asarray(samples, dtype=float)
    if arr.size == 0:
        return StabilityResult(False, float("inf"), arr)
    max_dev = float(np.max(np.abs(arr - baseline)))
    return StabilityResult(max_dev < allowed, max_dev, arr)


def run_bias_sweep(
    driver: SPMDriver,
    signal: Signal,
    plan: SweepPlan,
    config: StabilityConfig,
    baseline: float,
    shutdown: Optional[threading.Event] = None,
) -> StabilityResult:
    """Step the bias along `plan`, sampling `signal` at each step.

    Stops early (unstable) at the first sample deviating by `allowed_change` or
    more, and stops when `max_duration_secs` has passed, judging the samples so far.

    Raises
    ------
    RunStoppedError
        If `shutdown` is set during the sweep.
    """
    dwell = config.step_period_ms / 1e3
    biases = sweep_biases(plan, config.bias_steps)
    samples: list[float] = []
    t0 = time.monotonic()
    logger.info("Starting {}, baseline {:.4g}", plan.label, baseline)
    for step, bias in enumerate(biases):
        if shutdown is not None and shutdown.is_set():
            raise RunStoppedError(f"Stopped during {plan.label} at step {step}")
        if time.monotonic() - t0 >= config.max_duration_secs:
            result = evaluate_stability(samples, baseline, config.allowed_change)
            result.timed_out = True
            logger.warning(
                "{} hit its {}s limit after {} steps",
                plan.label,
                config.max_duration_secs,
                step,
            )
            return result
        driver.set_bias(float(bias))
        time.sleep(dwell)
        value = driver.sample_signal(signal, dwell if dwell > 0 else 0.05)
        samples.append(value)
        if abs(value - baseline) >= config.allowed_change:
            logger.info(
                "{} unstable at {:+.3f} V: {:.4g} deviates {:.4g} from baseline",
                plan.label,
                bias,
                value,
                abs(value - baseline),
            )
            result = evaluate_stability(samples, baseline, config.allowed_change)
            result.aborted_early = True
            return result

    result = evaluate_stability(samples, baseline, config.allowed_change)
    logger.info(
        "{} finished: max deviation {:.4g} (allowed {}) -> {}",
        plan.label,
        result.max_deviation,
        config.allowed_change,
        "stable" if result.is_stable else "unstable",
    )
    return result
