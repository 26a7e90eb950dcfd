"""Tests for the Nanonis wire codec (headers, bodies, error trailers)."""

import struct

import pytest

from tipshaper.device.nanonis.protocol import (
    HEADER_SIZE,
    create_header,
    decode_body,
    encode_body,
    parse_error_trailer,
    parse_response,
    parse_response_with_error_check,
    validate_response_header,
)
from tipshaper.types import (
    F32,
    F64,
    I16,
    I32,
    U16,
    U32,
    Array2DF32,
    ArrayF32,
    ArrayI32,
    ArrayString,
    CommandMismatch,
    InvalidCommand,
    ProtocolError,
    ServerError,
    SignalIndex,
    String,
    WireTypeError,
)


def _trailer(status: int, message: str) -> bytes:
    raw = message.encode("utf-8")
    return struct.pack(">ii", status, len(raw)) + raw


class TestHeader:
    def test_layout(self):
        header = create_header("Bias.Get", 0)
        assert len(header) == HEADER_SIZE
        assert header[0:8] == b"Bias.Get"
        assert header[8:32] == b"\0" * 24
        assert struct.unpack(">I", header[32:36])[0] == 0
        assert struct.unpack(">H", header[36:38])[0] == 1
        assert header[38:40] == b"\0\0"

    def test_body_size_and_no_response(self):
        header = create_header("Bias.Set", 4, response=False)
        assert struct.unpack(">I", header[32:36])[0] == 4
        assert struct.unpack(">H", header[36:38])[0] == 0

    def test_long_command_truncated(self):
        header = create_header("X" * 40, 0)
        assert len(header) == HEADER_SIZE
        assert header[:32] == b"X" * 32

    def test_validate_returns_body_size(self):
        assert validate_response_header(create_header("Bias.Get", 12), "Bias.Get") == 12

    def test_validate_mismatch(self):
        with pytest.raises(CommandMismatch) as excinfo:
            validate_response_header(create_header("Bias.Set", 0), "Bias.Get")
        assert excinfo.value.expected == "Bias.Get"
        assert excinfo.value.actual == "Bias.Set"

    def test_validate_short_header(self):
        with pytest.raises(ProtocolError):
            validate_response_header(b"Bias.Get", "Bias.Get")


class TestScalars:
    @pytest.mark.parametrize(
        "value, tag, raw",
        [
            (U16(7), "H", struct.pack(">H", 7)),
            (I16(-2), "h", struct.pack(">h", -2)),
            (U32(1), "I", struct.pack(">I", 1)),
            (I32(-5), "i", struct.pack(">i", -5)),
            (F32(0.5), "f", struct.pack(">f", 0.5)),
            (F64(-1.25), "d", struct.pack(">d", -1.25)),
        ],
    )
    def test_encode_and_decode(self, value, tag, raw):
        assert encode_body([value], [tag]) == raw
        assert decode_body(raw, [tag]) == [value]

    def test_big_endian(self):
        assert encode_body([U32(1)], ["I"]) == b"\x00\x00\x00\x01"

    def test_wrong_variant(self):
        with pytest.raises(WireTypeError):
            encode_body([F32(1.0)], ["i"])

    def test_out_of_range(self):
        with pytest.raises(WireTypeError):
            encode_body([U16(70000)], ["H"])

    def test_arity_mismatch(self):
        with pytest.raises(InvalidCommand):
            encode_body([F32(1.0), F32(2.0)], ["f"])

    def test_f32_overflow(self):
        with pytest.raises(WireTypeError):
            encode_body([F32(1e40)], ["f"])

    def test_unknown_tag_on_decode(self):
        with pytest.raises(ProtocolError):
            decode_body(b"\x00" * 4, ["q"])
        with pytest.raises(ProtocolError):
            decode_body(b"\x00" * 4, ["fi"])


class TestArrays:
    def test_length_prefixed_int_array(self):
        raw = encode_body([ArrayI32((3, 4))], ["+*i"])
        assert raw == struct.pack(">Iii", 2, 3, 4)

    def test_context_length_from_previous_value(self):
        raw = struct.pack(">ifff", 3, 1.0, 2.0, 3.0)
        values = decode_body(raw, ["i", "*f"])
        assert values[0] == I32(3)
        assert values[1].as_f32_array() == (1.0, 2.0, 3.0)

    def test_context_length_missing(self):
        with pytest.raises(ProtocolError, match="Array length not found"):
            decode_body(struct.pack(">ff", 1.0, 2.0), ["*f"])

    def test_context_length_after_float(self):
        with pytest.raises(ProtocolError):
            decode_body(struct.pack(">ff", 1.0, 2.0), ["f", "*f"])

    def test_truncated_array(self):
        with pytest.raises(ProtocolError, match="Not enough data"):
            decode_body(struct.pack(">if", 3, 1.0), ["i", "*f"])

    def test_f32_array_without_prefix(self):
        raw = encode_body([ArrayF32((1.5, -2.0))], ["*f"])
        assert raw == struct.pack(">ff", 1.5, -2.0)

    def test_2d_array(self):
        raw = struct.pack(">ii", 2, 2) + struct.pack(">ffff", 1.0, 2.0, 3.0, 4.0)
        values = decode_body(raw, ["i", "i", "2f"])
        assert values[2].as_f32_2d() == ((1.0, 2.0), (3.0, 4.0))

    def test_2d_array_encodes_data_only(self):
        raw = encode_body([Array2DF32(((1.0, 2.0),))], ["2f"])
        assert raw == struct.pack(">ff", 1.0, 2.0)

    @pytest.mark.parametrize(
        "value, tag",
        [
            (ArrayF32((1.0, 1e40)), "*f"),
            (ArrayF32((-1e40,)), "+*f"),
            (Array2DF32(((1.0, 1e39),)), "2f"),
        ],
    )
    def test_f32_array_overflow(self, value, tag):
        with pytest.raises(WireTypeError):
            encode_body([value], [tag])

    def test_f32_array_keeps_infinity(self):
        raw = encode_body([ArrayF32((float("inf"),))], ["*f"])
        assert raw == struct.pack(">f", float("inf"))


class TestStrings:
    def test_prefixed_string(self):
        raw = encode_body([String("abc")], ["+c"])
        assert raw == struct.pack(">I", 3) + b"abc"
        assert decode_body(raw, ["+c"]) == [String("abc")]

    def test_string_array_with_total_size(self):
        names = ("Current (A)", "Bias (V)")
        raw = encode_body([ArrayString(names)], ["+*c"])
        total, count = struct.unpack(">II", raw[:8])
        assert count == 2
        assert total == len(raw) - 8
        assert decode_body(raw, ["+*c"])[0].as_string_array() == names

    def test_string_array_with_context_count(self):
        raw = struct.pack(">i", 2) + b"".join(
            struct.pack(">I", len(s)) + s for s in (b"a", b"bc")
        )
        values = decode_body(raw, ["i", "*+c"])
        assert values[1].as_string_array() == ("a", "bc")

    def test_non_ascii_roundtrip(self):
        raw = encode_body([String("Δf (Hz)")], ["+c"])
        assert decode_body(raw, ["+c"])[0].as_string() == "Δf (Hz)"


class TestErrorTrailer:
    def test_reports_consumed_bytes(self):
        raw = struct.pack(">f", 1.0) + _trailer(0, "")
        values, consumed = parse_response(raw, ["f"])
        assert consumed == 4
        assert values == [F32(1.0)]

    def test_empty_message_is_success(self):
        raw = struct.pack(">f", 1.0) + _trailer(0, "")
        assert parse_response_with_error_check(raw, ["f"]) == [F32(1.0)]

    def test_missing_trailer_is_success(self):
        parse_error_trailer(struct.pack(">f", 1.0), 4)

    def test_message_raises(self):
        raw = struct.pack(">f", 0.0) + _trailer(-1, "Invalid bias")
        with pytest.raises(ServerError) as excinfo:
            parse_response_with_error_check(raw, ["f"])
        assert excinfo.value.code == -1
        assert excinfo.value.message == "Invalid bias"

    def test_invalid_utf8(self):
        raw = struct.pack(">ii", 1, 2) + b"\xff\xfe"
        with pytest.raises(ProtocolError):
            parse_error_trailer(raw, 0)


class TestWireValues:
    def test_accessors(self):
        assert U32(3).as_u32() == 3
        assert I16(-3).as_int() == -3
        assert F64(0.25).as_float() == 0.25
        assert ArrayI32((1, 2)).as_i32_array() == (1, 2)

    def test_wrong_accessor(self):
        with pytest.raises(WireTypeError):
            F32(1.0).as_i32()
        with pytest.raises(TypeError):
            String("x").as_float()

    def test_arrays_compare_by_content(self):
        assert ArrayF32([1.0, 2.0]) == ArrayF32((1.0, 2.0))

    def test_signal_index(self):
        assert SignalIndex(76).to_wire() == I32(76)
        assert int(SignalIndex(3)) == 3
        with pytest.raises(ValueError):
            SignalIndex(128)
