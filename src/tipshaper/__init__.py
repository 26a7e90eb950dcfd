# -*- coding: utf-8 -*-
"""# TipShaper Documentation

`Automated tip conditioning for Nanonis-controlled scanning probe microscopes`

A (python) library and command-line tool that drives a Nanonis SPM controller over
its binary TCP protocol and repeatedly pulses, repositions and re-measures the tip
until it is sharp and stable.

Package layout:

- `tipshaper.device`: the Nanonis wire codec, request/response client and telemetry
  stream reader.
- `tipshaper.meas`: the telemetry buffer, signal registry, composite SPM actions,
  bias-sweep stability check and the tip conditioning state machine.
- `tipshaper.types`: configuration dataclasses and the exception family.
- `tipshaper.system`: loading application configuration files.
- `tipshaper.util`: logging, polling and action-log persistence helpers.
- `tipshaper.cli`: the `tipshaper` command.
"""

from ._version import __version__
