"""Values carried by the Nanonis binary protocol.

Every value sent to or received from the controller is one of the frozen
`WireValue` variants below. Arrays are stored as tuples so that values compare
and hash by content; `as_array()` gives a numpy view for numerical work.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, ClassVar

import numpy as np

from tipshaper.types import WireTypeError


@dataclass(frozen=True)
class WireValue:
    """Base of the closed set of wire values."""

    value: Any
    tag: ClassVar[str] = ""

    def _expect(self, *kinds: type) -> Any:
        if not isinstance(self, kinds):
            names = "/".join(k.__name__ for k in kinds)
            raise WireTypeError(
                f"Expected {names}, found {self.__class__.__name__}({self.value!r})"
            )
        return self.value

    def as_u16(self) -> int:
        return self._expect(U16)

    def as_i16(self) -> int:
        return self._expect(I16)

    def as_u32(self) -> int:
        return self._expect(U32)

    def as_i32(self) -> int:
        return self._expect(I32)

    def as_int(self) -> int:
        """Any integer scalar as a python int."""
        return self._expect(U16, I16, U32, I32)

    def as_f32(self) -> float:
        return self._expect(F32)

    def as_f64(self) -> float:
        return self._expect(F64)

    def as_float(self) -> float:
        """Either float scalar as a python float."""
        return self._expect(F32, F64)

    def as_string(self) -> str:
        return self._expect(String)

    def as_string_array(self) -> tuple[str, ...]:
        return self._expect(ArrayString)

    def as_f32_array(self) -> tuple[float, ...]:
        return self._expect(ArrayF32)

    def as_f64_array(self) -> tuple[float, ...]:
        return self._expect(ArrayF64)

    def as_i32_array(self) -> tuple[int, ...]:
        return self._expect(ArrayI32)

    def as_u32_array(self) -> tuple[int, ...]:
        return self._expect(ArrayU32)

    def as_f32_2d(self) -> tuple[tuple[float, ...], ...]:
        return self._expect(Array2DF32)


@dataclass(frozen=True)
class U16(WireValue):
    value: int
    tag: ClassVar[str] = "H"


@dataclass(frozen=True)
class I16(WireValue):
    value: int
    tag: ClassVar[str] = "h"


@dataclass(frozen=True)
class U32(WireValue):
    value: int
    tag: ClassVar[str] = "I"


@dataclass(frozen=True)
class I32(WireValue):
    value: int
    tag: ClassVar[str] = "i"


@dataclass(frozen=True)
class F32(WireValue):
    value: float
    tag: ClassVar[str] = "f"


@dataclass(frozen=True)
class F64(WireValue):
    value: float
    tag: ClassVar[str] = "d"


@dataclass(frozen=True)
class String(WireValue):
    value: str
    tag: ClassVar[str] = "+*c"


@dataclass(frozen=True)
class _Array(WireValue):
    value: tuple
    dtype: ClassVar[str] = ""

    def __post_init__(self):
        if not isinstance(self.value, tuple):
            object.__setattr__(self, "value", tuple(np.asarray(self.value).tolist()))

    def __len__(self):
        return len(self.value)

    def as_array(self) -> np.ndarray:
        return np.asarray(self.value, dtype=self.dtype)


@dataclass(frozen=True)
class ArrayU16(_Array):
    tag: ClassVar[str] = "*H"
    dtype: ClassVar[str] = "uint16"


@dataclass(frozen=True)
class ArrayI16(_Array):
    tag: ClassVar[str] = "*h"
    dtype: ClassVar[str] = "int16"


@dataclass(frozen=True)
class ArrayU32(_Array):
    tag: ClassVar[str] = "*I"
    dtype: ClassVar[str] = "uint32"


@dataclass(frozen=True)
class ArrayI32(_Array):
    tag: ClassVar[str] = "*i"
    dtype: ClassVar[str] = "int32"


@dataclass(frozen=True)
class ArrayF32(_Array):
    tag: ClassVar[str] = "*f"
    dtype: ClassVar[str] = "float32"


@dataclass(frozen=True)
class ArrayF64(_Array):
    tag: ClassVar[str] = "*d"
    dtype: ClassVar[str] = "float64"


@dataclass(frozen=True)
class ArrayString(WireValue):
    value: tuple[str, ...]
    tag: ClassVar[str] = "*+c"

    def __post_init__(self):
        if not isinstance(self.value, tuple):
            object.__setattr__(self, "value", tuple(self.value))

    def __len__(self):
        return len(self.value)


@dataclass(frozen=True)
class Array2DF32(WireValue):
    """Row-major float block; `value` is a tuple of row tuples."""

    value: tuple[tuple[float, ...], ...]
    tag: ClassVar[str] = "2f"

    def __post_init__(self):
        if not isinstance(self.value, tuple) or any(
            not isinstance(row, tuple) for row in self.value
        ):
            rows = np.asarray(self.value, dtype="float32")
            if rows.ndim != 2:
                rows = rows.reshape(len(self.value), -1)
            object.__setattr__(self, "value", tuple(map(tuple, rows.tolist())))

    @property
    def shape(self) -> tuple[int, int]:
        rows = len(self.value)
        return rows, (len(self.value[0]) if rows else 0)

    def as_array(self) -> np.ndarray:
        return np.asarray(self.value, dtype="float32").reshape(self.shape)


@dataclass(frozen=True)
class SignalIndex:
    """Instrument-side signal slot (0..127)."""

    index: int

    def __post_init__(self):
        if not 0 <= int(self.index) <= 127:
            raise ValueError(f"Signal index {self.index} outside 0..127")

    def __int__(self):
        return int(self.index)

    def to_wire(self) -> I32:
        return I32(int(self.index))


class TCPLogStatus(IntEnum):
    DISCONNECTED = 0
    IDLE = 1
    START = 2
    STOP = 3
    RUNNING = 4
    TCP_CONNECT = 5
    TCP_DISCONNECT = 6
    BUFFER_OVERFLOW = 7
