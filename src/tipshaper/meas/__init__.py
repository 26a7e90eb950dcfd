"""
Tip conditioning procedure.

- `TelemetryBuffer`: background-filled, time-indexed buffer of streamed signals
- `SignalRegistry`: signal lookup by name, alias, index or TCP channel
- `SPMDriver`: composite instrument operations (approach, reposition, pulse, ...)
- `TipController`: the Blunt / Sharp / Stable conditioning state machine
- `tipshaper.meas.stability`: bias-sweep stability check

Examples
--------
```python
from tipshaper.meas import SPMDriver, TipController
with SPMDriver(client) as driver:
    TipController(driver, signal, config).run()
```

See Also
--------
tipshaper.types.config : Controller, pulse and stability configuration
"""

from .buffer import TelemetryBuffer, TimestampedFrame
from .driver import SPMDriver
from .signals import Signal, SignalRegistry
from .stability import StabilityResult, SweepPlan, build_sweep_plans, evaluate_stability
from .tip_prep import ControllerAction, ControllerState, TipController, TipShape

__all__ = [
    "TelemetryBuffer",
    "TimestampedFrame",
    "SPMDriver",
    "Signal",
    "SignalRegistry",
    "StabilityResult",
    "SweepPlan",
    "build_sweep_plans",
    "evaluate_stability",
    "ControllerAction",
    "ControllerState",
    "TipController",
    "TipShape",
]
