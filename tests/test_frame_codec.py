"""Tests for EMC frame encoding and stream decoding."""

import time

import pytest

from emc_flasher.protocol.firmware_sender import CancelToken
from emc_flasher.protocol.frame import (
    CMD_DATA,
    CMD_INIT,
    CMD_PING,
    FrameError,
    HeaderVariant,
    compute_checksum,
    decode_frame,
    encode_frame,
    parse_frame,
    to_hex,
)

from fakes import FakeTransport


class TestEncode:
    """Bit-exact wire layout."""

    def test_ping_frame_bytes(self):
        raw = encode_frame(HeaderVariant.EMC, CMD_PING, bytes([0x01, 0x01]))
        assert to_hex(raw) == "45 4D 43 04 02 00 01 01 08"

    def test_mce_header_magic(self):
        raw = encode_frame(HeaderVariant.MCE, CMD_PING, bytes([0x01, 0x01]))
        assert raw[:3] == b"MCE"
        assert raw[3:] == encode_frame(HeaderVariant.EMC, CMD_PING, bytes([0x01, 0x01]))[3:]

    def test_length_is_little_endian(self):
        payload = bytes(300)
        raw = encode_frame(HeaderVariant.EMC, CMD_DATA, payload)
        assert raw[4] == 300 & 0xFF
        assert raw[5] == 300 >> 8
        assert len(raw) == 3 + 1 + 2 + 300 + 1

    def test_checksum_includes_length_bytes(self):
        payload = bytes([0xFF] * 0x102)
        expected = (0xFC + 0x02 + 0x01 + 0xFF * 0x102) & 0xFF
        assert compute_checksum(0xFC, payload) == expected
        assert encode_frame(HeaderVariant.EMC, 0xFC, payload)[-1] == expected

    def test_empty_payload(self):
        raw = encode_frame(HeaderVariant.EMC, 0x10)
        assert raw == b"EMC\x10\x00\x00\x10"

    def test_payload_too_large_rejected(self):
        with pytest.raises(ValueError):
            encode_frame(HeaderVariant.EMC, CMD_DATA, bytes(0x10000))

    def test_command_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            encode_frame(HeaderVariant.EMC, 0x100, b"")


class TestParseFrame:
    def test_parse_returns_fields_and_raw(self):
        raw = encode_frame(HeaderVariant.EMC, CMD_INIT, b"\x01\x02\x03")
        frame = parse_frame(raw + b"\xAA\xBB")
        assert frame.command == CMD_INIT
        assert frame.payload == b"\x01\x02\x03"
        assert frame.raw == raw
        assert frame.is_valid

    def test_bad_magic(self):
        raw = encode_frame(HeaderVariant.MCE, CMD_PING, b"\x01\x01")
        with pytest.raises(FrameError):
            parse_frame(raw, HeaderVariant.EMC)

    def test_truncated(self):
        raw = encode_frame(HeaderVariant.EMC, CMD_PING, b"\x01\x01")
        with pytest.raises(FrameError):
            parse_frame(raw[:-1])

    def test_bad_checksum(self):
        raw = bytearray(encode_frame(HeaderVariant.EMC, CMD_PING, b"\x01\x01"))
        raw[-1] ^= 0xFF
        with pytest.raises(FrameError):
            parse_frame(bytes(raw))


class TestDecodeStream:
    """decode_frame() over a transport."""

    def test_roundtrip_both_headers(self):
        for header in HeaderVariant:
            for payload in (b"", b"\x00", bytes(range(256)) * 2):
                raw = encode_frame(header, CMD_DATA, payload)
                frame = decode_frame(FakeTransport(incoming=raw), header, 200)
                assert frame is not None
                assert frame.header is header
                assert frame.command == CMD_DATA
                assert frame.payload == payload
                assert frame.raw == raw

    def test_resync_after_noise(self):
        raw = encode_frame(HeaderVariant.EMC, CMD_PING, b"\x02\x01")
        noise = bytes([0x00, 0xFF, 0x13, 0x4D, 0x43, 0x99] * 20)
        frame = decode_frame(FakeTransport(incoming=noise + raw), HeaderVariant.EMC, 200)
        assert frame is not None
        assert frame.payload == b"\x02\x01"

    def test_false_start_never_crashes(self):
        raw = encode_frame(HeaderVariant.EMC, CMD_PING, b"\x02\x01")
        for noise in (b"E", b"EM", b"E\x01", b"EMX", b"\x00E\x00E"):
            transport = FakeTransport(incoming=noise + raw)
            frame = decode_frame(transport, HeaderVariant.EMC, 50)
            assert frame is None or frame.payload == b"\x02\x01"

    def test_wrong_header_variant_is_no_frame(self):
        raw = encode_frame(HeaderVariant.EMC, CMD_PING, b"\x02\x01")
        assert decode_frame(FakeTransport(incoming=raw), HeaderVariant.MCE, 50) is None

    def test_single_bit_flip_rejected(self):
        payload = b"\x01\xA5\x3C"
        raw = encode_frame(HeaderVariant.EMC, CMD_DATA, payload)
        # payload bytes start at offset 6, checksum is last
        positions = list(range(6, 6 + len(payload))) + [len(raw) - 1]
        for pos in positions:
            for bit in range(8):
                corrupted = bytearray(raw)
                corrupted[pos] ^= 1 << bit
                transport = FakeTransport(incoming=bytes(corrupted))
                assert decode_frame(transport, HeaderVariant.EMC, 20) is None

    def test_payload_assembled_across_reads(self):
        payload = bytes(range(100))
        raw = encode_frame(HeaderVariant.EMC, CMD_DATA, payload)
        transport = FakeTransport(incoming=raw, max_chunk=3)
        frame = decode_frame(transport, HeaderVariant.EMC, 200)
        assert frame is not None
        assert frame.payload == payload

    def test_silence_times_out(self):
        start = time.monotonic()
        assert decode_frame(FakeTransport(), HeaderVariant.EMC, 40) is None
        assert time.monotonic() - start >= 0.04

    def test_truncated_frame_times_out(self):
        raw = encode_frame(HeaderVariant.EMC, CMD_DATA, bytes(10))
        assert decode_frame(FakeTransport(incoming=raw[:-3]), HeaderVariant.EMC, 30) is None

    def test_cancel_stops_waiting(self):
        cancel = CancelToken()
        cancel.cancel()
        start = time.monotonic()
        assert decode_frame(FakeTransport(), HeaderVariant.EMC, 5000, cancel) is None
        assert time.monotonic() - start < 1.0

    def test_only_one_frame_consumed(self):
        first = encode_frame(HeaderVariant.EMC, CMD_PING, b"\x01\x01")
        second = encode_frame(HeaderVariant.EMC, CMD_PING, b"\x02\x01")
        transport = FakeTransport(incoming=first + second)
        assert decode_frame(transport, HeaderVariant.EMC, 100).payload == b"\x01\x01"
        assert bytes(transport.rx) == second
