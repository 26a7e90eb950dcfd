"""
Value types, configuration classes and exceptions shared across tipshaper.

1. Wire values
    - `WireValue` variants are the closed set of values the Nanonis codec can encode
      and decode (scalars, strings, homogeneous arrays, a 2-D float block).
    - `SignalIndex` and `TCPLogStatus` are small typed wrappers used by callers.

2. Configuration
    - `mashumaro` dataclasses describing the instrument connection, telemetry
      acquisition, pulse methods and stability checks (see `tipshaper.types.config`).

3. Exceptions
    - `NanonisError` roots every failure raised by the protocol stack. Subclasses
      name the failure kind (IO, timeout, protocol, server-reported, ...).

Examples
--------
Handling a server-reported error:
```python
from tipshaper.types import ServerError
try:
    client.bias_set(12.0)
except ServerError as e:
    print(e.code, e.message)
```

See Also
--------
tipshaper.device.nanonis.protocol : Encoding and decoding of wire values
tipshaper.types.config : Configuration dataclasses
"""

from __future__ import annotations


# Exceptions
class NanonisError(Exception):
    """Base exception for everything raised by the Nanonis protocol stack."""

    pass


class NanonisIOError(NanonisError):
    """Socket level failure (connection refused, reset, closed mid-message)."""

    def __init__(self, message, context=""):
        super().__init__(f"{context}: {message}" if context else message)
        self.context = context


class NanonisTimeout(NanonisError):
    """A connect/read/write deadline, or a poll-until-condition deadline, expired."""

    pass


class ProtocolError(NanonisError):
    """The bytes on the wire do not match what the protocol allows."""

    pass


class CommandMismatch(ProtocolError):
    """The response header echoed a different command than the one sent.

    The session is desynchronised; the error is never retried.
    """

    def __init__(self, expected: str, actual: str):
        super().__init__(
            f"Command mismatch: expected '{expected}', got '{actual}'"
        )
        self.expected = expected
        self.actual = actual


class WireTypeError(NanonisError, TypeError):
    """A value does not fit the type tag it is encoded/decoded with."""

    pass


class InvalidCommand(NanonisError, ValueError):
    """Arguments rejected before any I/O (arity, range, closed connection)."""

    pass


class ServerError(NanonisError):
    """The instrument appended a non-empty error trailer to its response."""

    def __init__(self, code: int, message: str):
        super().__init__(f"Server error {code}: {message}")
        self.code = code
        self.message = message


class InvalidAddress(NanonisError, ValueError):
    """Host or port cannot be used to open a connection."""

    pass


class RunStoppedError(Exception):
    """Raised inside a conditioning run when a shutdown was requested."""

    pass


class ConfigError(ValueError):
    """Configuration file missing, unparsable or failing validation."""

    pass


from .wire import (  # noqa: E402
    F32,
    F64,
    I16,
    I32,
    U16,
    U32,
    Array2DF32,
    ArrayF32,
    ArrayF64,
    ArrayI16,
    ArrayI32,
    ArrayString,
    ArrayU16,
    ArrayU32,
    SignalIndex,
    String,
    TCPLogStatus,
    WireValue,
)

__all__ = [
    "NanonisError",
    "NanonisIOError",
    "NanonisTimeout",
    "ProtocolError",
    "CommandMismatch",
    "WireTypeError",
    "InvalidCommand",
    "ServerError",
    "InvalidAddress",
    "RunStoppedError",
    "ConfigError",
    "WireValue",
    "U16",
    "I16",
    "U32",
    "I32",
    "F32",
    "F64",
    "String",
    "ArrayU16",
    "ArrayI16",
    "ArrayU32",
    "ArrayI32",
    "ArrayF32",
    "ArrayF64",
    "ArrayString",
    "Array2DF32",
    "SignalIndex",
    "TCPLogStatus",
]
