"""
EMC Frame Codec

Frame format:
    [ H1 | H2 | H3 | CMD | LEN_LO | LEN_HI | PAYLOAD... | CHK ]

- H1..H3: header magic, "EMC" or "MCE"
- LEN: little-endian, counts payload bytes only
- CHK = (CMD + LEN_LO + LEN_HI + sum(PAYLOAD)) & 0xFF

Commands:
    0x04  ping / pong   payload [data, 0x01], echoed back
    0xFB  init          payload addr | loadAddr(LE32) | fwSize(LE32) | blockSize(LE16)
    0xFC  data          payload addr | block... | frameIdx(LE16)
    0xFC  ack           payload addr | frameIdx(LE16)
"""

import enum
import struct
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from .transport import EmcTransport, NO_DATA

CMD_PING = 0x04
CMD_INIT = 0xFB
CMD_DATA = 0xFC
CMD_ACK = 0xFC

PING_MARKER = 0x01

HEADER_LEN = 3
OVERHEAD = HEADER_LEN + 3 + 1  # magic + cmd + len(2) + checksum
MAX_PAYLOAD = 0xFFFF

POLL_INTERVAL = 0.002


class HeaderVariant(enum.Enum):
    """Three-byte frame magic."""
    EMC = b"EMC"
    MCE = b"MCE"

    @property
    def magic(self) -> bytes:
        return self.value


class Cancellable(Protocol):
    @property
    def is_cancelled(self) -> bool: ...


class FrameError(ValueError):
    """Malformed frame in a complete buffer."""


@dataclass(frozen=True)
class EmcFrame:
    header: HeaderVariant
    command: int
    payload: bytes
    checksum: int
    raw: bytes = field(repr=False, default=b"")

    @property
    def is_valid(self) -> bool:
        return self.checksum == compute_checksum(self.command, self.payload)

    def to_bytes(self) -> bytes:
        return self.raw or encode_frame(self.header, self.command, self.payload)


def compute_checksum(command: int, payload: bytes) -> int:
    """8-bit additive checksum over command, both length bytes and payload."""
    length = len(payload)
    return (command + (length & 0xFF) + ((length >> 8) & 0xFF) + sum(payload)) & 0xFF


def encode_frame(header: HeaderVariant, command: int, payload: bytes = b"") -> bytes:
    """
    Build a complete frame.

    Args:
        header: Magic variant (EMC or MCE)
        command: Command byte
        payload: Payload bytes (0..65535)

    Returns:
        Frame bytes ready for the wire

    Raises:
        ValueError: If command or payload length is out of range
    """
    if not 0 <= command <= 0xFF:
        raise ValueError(f"Command out of range: {command}")
    if len(payload) > MAX_PAYLOAD:
        raise ValueError(f"Payload too large: {len(payload)} bytes (max {MAX_PAYLOAD})")

    frame = bytearray(header.magic)
    frame.append(command)
    frame.extend(struct.pack("<H", len(payload)))
    frame.extend(payload)
    frame.append(compute_checksum(command, payload))
    return bytes(frame)


def parse_frame(data: bytes, header: HeaderVariant = HeaderVariant.EMC) -> EmcFrame:
    """
    Parse one complete frame from the start of ``data``.

    Trailing bytes after the frame are ignored.

    Raises:
        FrameError: On wrong magic, short buffer or checksum mismatch
    """
    if len(data) < OVERHEAD:
        raise FrameError(f"Frame too short: {len(data)} bytes")
    if data[:HEADER_LEN] != header.magic:
        raise FrameError(f"Bad magic {data[:HEADER_LEN].hex()} (expected {header.magic.hex()})")

    command = data[3]
    (length,) = struct.unpack_from("<H", data, 4)
    end = HEADER_LEN + 3 + length
    if len(data) < end + 1:
        raise FrameError(f"Frame truncated: need {end + 1} bytes, have {len(data)}")

    payload = bytes(data[HEADER_LEN + 3:end])
    checksum = data[end]
    if compute_checksum(command, payload) != checksum:
        raise FrameError(
            f"Checksum mismatch: got 0x{checksum:02X}, "
            f"expected 0x{compute_checksum(command, payload):02X}"
        )
    return EmcFrame(header, command, payload, checksum, bytes(data[:end + 1]))


def decode_frame(
    transport: EmcTransport,
    header: HeaderVariant,
    timeout_ms: Optional[int],
    cancel: Optional[Cancellable] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[EmcFrame]:
    """
    Read one frame from a transport within a single overall deadline.

    Leading bytes that do not start the expected magic are dropped, so noise
    before a real frame is tolerated. A timeout, wrong magic after the first
    byte or a bad checksum all return None; the caller retries the whole
    exchange either way.

    Args:
        transport: Open transport to read from
        header: Expected magic variant
        timeout_ms: Overall deadline in milliseconds (None waits forever)
        cancel: Optional object with ``is_cancelled``; decoding stops early
            and returns None once it is set
        clock: Monotonic clock in seconds

    Returns:
        Decoded frame, or None
    """
    deadline = None if timeout_ms is None else clock() + timeout_ms / 1000.0

    def expired() -> bool:
        if cancel is not None and cancel.is_cancelled:
            return True
        return deadline is not None and clock() >= deadline

    def read_one() -> int:
        while not expired():
            b = transport.read_byte()
            if b != NO_DATA:
                return b
            time.sleep(POLL_INTERVAL)
        return NO_DATA

    magic = header.magic

    # Resync on the first magic byte
    while True:
        b = read_one()
        if b == NO_DATA:
            return None
        if b == magic[0]:
            break

    for expected in magic[1:]:
        if read_one() != expected:
            return None

    fields = []
    for _ in range(3):
        b = read_one()
        if b == NO_DATA:
            return None
        fields.append(b)
    command, len_lo, len_hi = fields
    length = len_lo | (len_hi << 8)

    payload = bytearray()
    while len(payload) < length:
        if expired():
            return None
        chunk = transport.read(length - len(payload))
        if chunk:
            payload.extend(chunk)
        else:
            time.sleep(POLL_INTERVAL)

    checksum = read_one()
    if checksum == NO_DATA:
        return None

    payload = bytes(payload)
    if compute_checksum(command, payload) != checksum:
        return None

    raw = magic + bytes([command, len_lo, len_hi]) + payload + bytes([checksum])
    return EmcFrame(header, command, payload, checksum, raw)


def to_hex(data: bytes) -> str:
    """Upper-case, space separated hex dump (``45 4D 43 ...``)."""
    return " ".join(f"{b:02X}" for b in data)
