"""Byte-level codec for the Nanonis TCP programming interface.

Every request and response is a 40-byte header followed by a body. The body is a
sequence of big-endian fields whose layout is fixed per command and agreed
out-of-band through a list of type tags, one tag per field.

Header layout
-------------
| bytes  | content                                        |
|--------|------------------------------------------------|
| 0..32  | command name, truncated to 32 bytes, NUL padded |
| 32..36 | body size (u32)                                |
| 36..38 | send-response-back flag (u16, always 1)        |
| 38..40 | reserved, zero                                 |

Type tags
---------
- ``H h I i f d`` : u16, i16, u32, i32, f32, f64 scalars.
- ``*x``          : array of ``x`` (one of ``H h I i f d``) whose length is the
                    integer decoded immediately before it.
- ``+*x``         : array of ``x`` preceded on the wire by its u32 element count.
- ``+*c``         : when encoding a string, u32 byte length then UTF-8 bytes. When
                    decoding (and when encoding a list of strings), u32 total size,
                    u32 element count, then each element as u32 length + bytes.
- ``*-c`` / ``*c``: string whose byte length is the preceding integer.
- ``*+c``         : list of strings whose element count is the preceding integer,
                    each element u32 length + bytes.
- ``2f``          : f32 block; rows and columns are the two preceding integers.

A response may carry an error trailer after the declared fields: i32 status, i32
message length and the message. A non-empty message is surfaced as `ServerError`.

Examples
--------
```python
body = encode_body([F32(0.5)], ["f"])
header = create_header("Bias.Set", len(body))
values = decode_body(payload, ["i", "*f"])
```
"""

from __future__ import annotations

import struct
from typing import Sequence

import numpy as np
from loguru import logger

from tipshaper.types import (
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
    CommandMismatch,
    InvalidCommand,
    ProtocolError,
    ServerError,
    String,
    WireTypeError,
    WireValue,
)

COMMAND_SIZE = 32
HEADER_SIZE = 40
ERROR_INFO_SIZE = 8
MAX_RETRY_COUNT = 1000
MAX_RESPONSE_SIZE = 100 * 1024 * 1024
RESPONSE_FLAG = 1

# element code -> (struct code, numpy big-endian dtype, scalar type, array type)
_ELEMENTS = {
    "H": ("H", ">u2", U16, ArrayU16),
    "h": ("h", ">i2", I16, ArrayI16),
    "I": ("I", ">u4", U32, ArrayU32),
    "i": ("i", ">i4", I32, ArrayI32),
    "f": ("f", ">f4", F32, ArrayF32),
    "d": ("d", ">f8", F64, ArrayF64),
}
_LENGTH_TYPES = (I32, U32)


# ======================================================================================
# Header
# ======================================================================================


def create_header(command: str, body_size: int, response: bool = True) -> bytes:
    """Build the 40-byte request header.

    Parameters
    ----------
    command : str
        Command name, e.g. "Bias.Get". Names longer than 32 bytes are truncated.
    body_size : int
        Size of the body that follows, in bytes.
    response : bool, optional
        Ask the controller to send a response (with error info), by default True.

    Returns
    -------
    bytes
        Exactly `HEADER_SIZE` bytes.
    """
    name = command.encode("utf-8")[:COMMAND_SIZE].ljust(COMMAND_SIZE, b"\0")
    flag = RESPONSE_FLAG if response else 0
    return name + struct.pack(">IHH", body_size, flag, 0)


def validate_response_header(header: bytes, expected_command: str) -> int:
    """Check an echoed response header and return the declared body size.

    Raises
    ------
    ProtocolError
        Header is not 40 bytes, or declares an implausibly large body.
    CommandMismatch
        The echoed command differs from `expected_command`.
    """
    if len(header) != HEADER_SIZE:
        raise ProtocolError(
            f"Response header must be {HEADER_SIZE} bytes, got {len(header)}"
        )
    body_size = struct.unpack(">I", header[COMMAND_SIZE : COMMAND_SIZE + 4])[0]
    actual = header[:COMMAND_SIZE].decode("utf-8", errors="replace").rstrip("\0")
    expected = expected_command.encode("utf-8")[:COMMAND_SIZE].decode(
        "utf-8", errors="replace"
    )
    if actual != expected:
        raise CommandMismatch(expected, actual)
    if body_size > MAX_RESPONSE_SIZE:
        raise ProtocolError(
            f"Response body of {body_size} bytes exceeds limit of {MAX_RESPONSE_SIZE}"
        )
    return body_size


# ======================================================================================
# Encoding
# ======================================================================================


def _split_tag(tag: str) -> tuple[bool, bool, str]:
    """-> (length_prefixed, is_array, element code)."""
    tag = tag.strip()
    if not tag:
        raise WireTypeError("Empty type tag")
    return tag.startswith("+"), "*" in tag, tag[-1]


def _encode_str(text: str) -> bytes:
    raw = text.encode("utf-8")
    return struct.pack(">I", len(raw)) + raw


def _encode_f32(values, tag: str) -> bytes:
    source = np.asarray(values, dtype=float)
    with np.errstate(over="ignore"):
        cast = source.astype(">f4")
    overflow = np.isinf(cast) & np.isfinite(source)
    if overflow.any():
        out_of_range = source[overflow].tolist()
        raise WireTypeError(f"Values {out_of_range} do not fit f32 tag '{tag}'")
    return cast.tobytes()


def encode_value(value: WireValue, tag: str, out: bytearray) -> None:
    """Append the encoding of one value to `out`.

    Raises
    ------
    WireTypeError
        The variant of `value` cannot be written with `tag`.
    """
    prefixed, is_array, code = _split_tag(tag)

    if tag == "2f":
        if not isinstance(value, Array2DF32):
            raise WireTypeError(f"Tag '2f' needs Array2DF32, got {value!r}")
        # rows/cols travel as separate preceding integer fields
        out += _encode_f32(value.value, tag)
        return

    if code == "c":
        if isinstance(value, String):
            raw = value.value.encode("utf-8")
            if prefixed:
                out += struct.pack(">I", len(raw))
            out += raw
            return
        if isinstance(value, ArrayString):
            elements = b"".join(_encode_str(s) for s in value.value)
            if tag == "+*c":
                out += struct.pack(">II", len(elements), len(value.value))
            elif prefixed:
                out += struct.pack(">I", len(value.value))
            out += elements
            return
        raise WireTypeError(f"Tag '{tag}' needs String or ArrayString, got {value!r}")

    if code not in _ELEMENTS:
        raise WireTypeError(f"Unsupported type tag '{tag}'")
    fmt, dtype, scalar_type, array_type = _ELEMENTS[code]

    if not is_array:
        if not isinstance(value, scalar_type):
            raise WireTypeError(
                f"Tag '{tag}' needs {scalar_type.__name__}, got {value!r}"
            )
        try:
            out += struct.pack(">" + fmt, value.value)
        except (struct.error, OverflowError) as e:
            raise WireTypeError(f"Value {value.value!r} does not fit tag '{tag}': {e}")
        return

    if not isinstance(value, array_type):
        raise WireTypeError(f"Tag '{tag}' needs {array_type.__name__}, got {value!r}")
    try:
        if code == "f":
            raw = _encode_f32(value.value, tag)
        else:
            raw = value.as_array().astype(dtype).tobytes()
    except (OverflowError, ValueError) as e:
        raise WireTypeError(f"Values of {array_type.__name__} do not fit '{tag}': {e}")
    if prefixed:
        out += struct.pack(">I", len(value.value))
    out += raw


def encode_body(values: Sequence[WireValue], tags: Sequence[str]) -> bytes:
    """Encode a full request body; arity is checked before anything is written."""
    if len(values) != len(tags):
        raise InvalidCommand(
            f"Got {len(values)} values for {len(tags)} type tags: {list(tags)}"
        )
    out = bytearray()
    for value, tag in zip(values, tags):
        encode_value(value, tag, out)
    return bytes(out)


# ======================================================================================
# Decoding
# ======================================================================================


class _Cursor:
    def __init__(self, data: bytes, offset: int = 0):
        self.data = memoryview(data)
        self.offset = offset

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset

    def take(self, n: int, what: str) -> bytes:
        if n < 0 or n > self.remaining:
            raise ProtocolError(
                f"Not enough data for {what}: need {n} bytes, "
                + f"{self.remaining} remain at offset {self.offset}"
            )
        chunk = bytes(self.data[self.offset : self.offset + n])
        self.offset += n
        return chunk

    def unpack(self, fmt: str, what: str):
        size = struct.calcsize(fmt)
        return struct.unpack(fmt, self.take(size, what))

    def read_str(self, n: int, what: str) -> str:
        return self.take(n, what).decode("utf-8", errors="replace")


def _preceding_length(values: list[WireValue], tag: str) -> int:
    if not values or not isinstance(values[-1], _LENGTH_TYPES):
        raise ProtocolError(
            f"Array length not found: tag '{tag}' needs a preceding i32/u32 value"
        )
    length = values[-1].value
    if length < 0:
        raise ProtocolError(f"Negative length {length} for tag '{tag}'")
    return length


def _decode_one(cursor: _Cursor, tag: str, values: list[WireValue]) -> WireValue:
    if not tag.strip():
        raise ProtocolError("Empty type tag")
    prefixed, is_array, code = _split_tag(tag)

    if tag == "2f":
        if len(values) < 2 or not all(
            isinstance(v, _LENGTH_TYPES) for v in values[-2:]
        ):
            raise ProtocolError(
                "2D array dimensions not found: tag '2f' needs two preceding integers"
            )
        rows, cols = values[-2].value, values[-1].value
        if rows < 0 or cols < 0:
            raise ProtocolError(f"Negative 2D array shape ({rows}, {cols})")
        raw = cursor.take(rows * cols * 4, "2D f32 array")
        block = np.frombuffer(raw, dtype=">f4").reshape(rows, cols)
        return Array2DF32(tuple(map(tuple, block.tolist())))

    if code == "c":
        if tag == "+*c":
            _total, count = cursor.unpack(">II", "string array header")
            return ArrayString(
                tuple(_read_prefixed_strings(cursor, count, "string array"))
            )
        if tag == "*+c":
            count = _preceding_length(values, tag)
            return ArrayString(
                tuple(_read_prefixed_strings(cursor, count, "string array"))
            )
        if tag in ("*-c", "*c"):
            length = _preceding_length(values, tag)
            return String(cursor.read_str(length, "string"))
        if tag == "+c":
            (length,) = cursor.unpack(">I", "string length")
            return String(cursor.read_str(length, "string"))
        raise ProtocolError(f"Unsupported string tag '{tag}'")

    if code not in _ELEMENTS:
        raise ProtocolError(f"Unsupported type tag '{tag}'")
    fmt, dtype, scalar_type, array_type = _ELEMENTS[code]

    if not is_array:
        if len(tag) != 1:
            raise ProtocolError(f"Unsupported type tag '{tag}'")
        (raw,) = cursor.unpack(">" + fmt, f"'{tag}' scalar")
        return scalar_type(raw)

    if prefixed:
        (count,) = cursor.unpack(">I", f"'{tag}' length")
    else:
        count = _preceding_length(values, tag)
    itemsize = np.dtype(dtype).itemsize
    raw = cursor.take(count * itemsize, f"'{tag}' array")
    return array_type(tuple(np.frombuffer(raw, dtype=dtype).tolist()))


def _read_prefixed_strings(cursor: _Cursor, count: int, what: str) -> list[str]:
    out = []
    for _ in range(count):
        (length,) = cursor.unpack(">I", f"{what} element length")
        out.append(cursor.read_str(length, f"{what} element"))
    return out


def parse_response(data: bytes, tags: Sequence[str]) -> tuple[list[WireValue], int]:
    """Decode the declared fields of a response body.

    Returns
    -------
    tuple[list[WireValue], int]
        The decoded values, one per tag, and the number of bytes consumed.
    """
    cursor = _Cursor(data)
    values: list[WireValue] = []
    for tag in tags:
        values.append(_decode_one(cursor, tag, values))
    return values, cursor.offset


def decode_body(data: bytes, tags: Sequence[str]) -> list[WireValue]:
    values, _ = parse_response(data, tags)
    return values


def parse_error_trailer(data: bytes, offset: int) -> None:
    """Raise `ServerError` if an error trailer with a message follows `offset`."""
    cursor = _Cursor(data, offset)
    if cursor.remaining < ERROR_INFO_SIZE:
        return
    status, length = cursor.unpack(">ii", "error trailer")
    if length <= 0:
        return
    raw = cursor.take(length, "error message")
    try:
        message = raw.decode("utf-8").strip().strip("\0")
    except UnicodeDecodeError as e:
        raise ProtocolError(f"Error message is not valid UTF-8: {e}")
    if message:
        logger.debug("Server error trailer: status {} message '{}'", status, message)
        raise ServerError(status, message)


def parse_response_with_error_check(
    data: bytes, tags: Sequence[str]
) -> list[WireValue]:
    """Decode the declared fields, then surface any error trailer."""
    values, consumed = parse_response(data, tags)
    parse_error_trailer(data, consumed)
    return values
