"""
EMC Firmware Sender

Drives the cabinet bootloader over any EmcTransport.

Protocol sequence (strictly stop-and-wait, one frame in flight):
1. [optional] PING 0x04 [data, 0x01]                    → echo of the same frame
2. INIT 0xFB [addr | loadAddr LE32 | fwSize LE32 | blockSize LE16]
                                                        → 0xFC [addr | 0x0000]
3. DATA 0xFC [addr | block... | frameIdx LE16], frameIdx = 0, 1, 2, ...
                                                        → 0xFC [addr | frameIdx]

Every exchange flushes stale input, transmits, and waits for one response
frame. A timeout, a garbled frame and a well-formed but non-matching ack
all consume one attempt; ``max_retries + 1`` attempts are made before the
whole transfer fails. There is no end-of-transfer frame.
"""

import enum
import logging
import struct
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from .frame import (
    CMD_ACK,
    CMD_DATA,
    CMD_INIT,
    CMD_PING,
    PING_MARKER,
    EmcFrame,
    HeaderVariant,
    decode_frame,
    encode_frame,
    to_hex,
)
from .transport import EmcTransport, EmcTransportError

logger = logging.getLogger(__name__)

MAX_BLOCK_SIZE = 512
MIN_CABINET_ADDRESS = 1
MAX_CABINET_ADDRESS = 6
MAX_IMAGE_SIZE = 0xFFFFFFFF


class SendOutcome(enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def ok(self) -> bool:
        return self is SendOutcome.SUCCESS


@dataclass(frozen=True)
class ProgressInfo:
    percent: float
    sent_bytes: int
    total_bytes: int


@dataclass
class SenderConfig:
    """
    Protocol policy for one sender.

    Attributes:
        cabinet_address: Target cabinet (1..6)
        load_address: Flash load address sent in INIT (u32)
        block_size: Firmware bytes per DATA frame (1..512)
        max_retries: Extra attempts after the first one (clamped to >= 0)
        ack_timeout_ms: Wait for each INIT/DATA response
        ping_timeout_ms: Wait for each PING echo
        header: Magic used on outgoing frames
        reply_header: Magic expected on responses (defaults to ``header``)
    """
    cabinet_address: int = 1
    load_address: int = 0
    block_size: int = MAX_BLOCK_SIZE
    max_retries: int = 5
    ack_timeout_ms: int = 2000
    ping_timeout_ms: int = 500
    header: HeaderVariant = HeaderVariant.EMC
    reply_header: Optional[HeaderVariant] = None

    def __post_init__(self):
        self.max_retries = max(0, self.max_retries)
        self.ack_timeout_ms = max(1, self.ack_timeout_ms)
        self.ping_timeout_ms = max(1, self.ping_timeout_ms)

    @property
    def response_header(self) -> HeaderVariant:
        return self.reply_header or self.header

    def validate(self) -> None:
        """
        Raises:
            ValueError: If address, load address or block size is out of range
        """
        if not 1 <= self.block_size <= MAX_BLOCK_SIZE:
            raise ValueError(f"block_size must be 1..{MAX_BLOCK_SIZE}, got {self.block_size}")
        if not MIN_CABINET_ADDRESS <= self.cabinet_address <= MAX_CABINET_ADDRESS:
            raise ValueError(
                f"cabinet_address must be {MIN_CABINET_ADDRESS}..{MAX_CABINET_ADDRESS}, "
                f"got {self.cabinet_address}"
            )
        if not 0 <= self.load_address <= 0xFFFFFFFF:
            raise ValueError(f"load_address must fit in 32 bits, got 0x{self.load_address:X}")


@dataclass
class TransferSession:
    """State of one image transfer; discarded when send() returns."""
    cabinet_address: int
    load_address: int
    block_size: int
    total_bytes: int
    frame_index: int = 0
    sent_bytes: int = 0

    @property
    def percent(self) -> float:
        if self.total_bytes == 0:
            return 100.0
        return self.sent_bytes * 100.0 / self.total_bytes


class CancelToken:
    """Cooperative cancellation flag shared between the UI and the sender."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class FlashObserver(Protocol):
    def on_log(self, message: str) -> None: ...

    def on_progress(self, progress: ProgressInfo) -> None: ...


class CallbackObserver:
    """Adapt plain callables to the observer interface."""

    def __init__(
        self,
        log_cb: Optional[Callable[[str], None]] = None,
        progress_cb: Optional[Callable[[ProgressInfo], None]] = None,
    ):
        self.log_cb = log_cb
        self.progress_cb = progress_cb

    def on_log(self, message: str) -> None:
        if self.log_cb:
            self.log_cb(message)

    def on_progress(self, progress: ProgressInfo) -> None:
        if self.progress_cb:
            self.progress_cb(progress)


# Response check: None when the frame is the expected one, else the reason
Matcher = Callable[[EmcFrame], Optional[str]]


def build_ping_payload(data: int) -> bytes:
    return bytes([data & 0xFF, PING_MARKER])


def build_init_payload(cabinet_address: int, load_address: int, firmware_size: int, block_size: int) -> bytes:
    return struct.pack("<BIIH", cabinet_address, load_address, firmware_size, block_size)


def build_data_payload(cabinet_address: int, block: bytes, frame_index: int) -> bytes:
    return bytes([cabinet_address]) + bytes(block) + struct.pack("<H", frame_index & 0xFFFF)


def ack_matcher(cabinet_address: int, frame_index: int) -> Matcher:
    """Expect 0xFC [addr, ..., frameIdx LE16]."""

    def check(frame: EmcFrame) -> Optional[str]:
        if frame.command != CMD_ACK or len(frame.payload) < 3:
            return f"invalid response (cmd=0x{frame.command:02X}, len={len(frame.payload)})"
        addr = frame.payload[0]
        (idx,) = struct.unpack_from("<H", frame.payload, len(frame.payload) - 2)
        if addr != cabinet_address or idx != frame_index:
            return (
                f"ack mismatch (addr={addr}, idx={idx}), "
                f"expected (addr={cabinet_address}, idx={frame_index})"
            )
        return None

    return check


def echo_matcher(command: int, payload: bytes) -> Matcher:
    def check(frame: EmcFrame) -> Optional[str]:
        if frame.command != command or frame.payload != payload:
            return f"not an echo (cmd=0x{frame.command:02X}, payload={to_hex(frame.payload)})"
        return None

    return check


class FirmwareSender:
    """
    Send firmware images to a cabinet controller.

    Example:
        sender = FirmwareSender(transport, SenderConfig(cabinet_address=2))
        if sender.ping().ok:
            outcome = sender.send(image, cancel=token)
    """

    def __init__(
        self,
        transport: EmcTransport,
        config: Optional[SenderConfig] = None,
        observer: Optional[FlashObserver] = None,
    ):
        if transport is None:
            raise ValueError("transport is required")
        self.transport = transport
        self.config = config or SenderConfig()
        self.config.validate()
        self.observer = observer or CallbackObserver()
        self.session: Optional[TransferSession] = None
        self.last_progress: Optional[ProgressInfo] = None

    def _log(self, message: str, level: int = logging.DEBUG) -> None:
        logger.log(level, message)
        self.observer.on_log(message)

    def _report(self, session: TransferSession, percent: Optional[float] = None) -> None:
        info = ProgressInfo(
            percent=session.percent if percent is None else percent,
            sent_bytes=session.sent_bytes,
            total_bytes=session.total_bytes,
        )
        self.last_progress = info
        self.observer.on_progress(info)

    def _require_open(self) -> None:
        if not self.transport.is_open:
            raise EmcTransportError(f"{self.transport} is not open")

    def _exchange(
        self,
        label: str,
        command: int,
        payload: bytes,
        matcher: Matcher,
        timeout_ms: int,
        cancel: Optional[CancelToken],
    ) -> SendOutcome:
        """
        Transmit one frame and wait for its matching response, with retries.

        Raises:
            TransportIOError: If the transport fails to write (not retried)
        """
        cfg = self.config
        tx = encode_frame(cfg.header, command, payload)
        attempts = cfg.max_retries + 1

        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_cancelled:
                self._log(f"{label} cancelled", logging.INFO)
                return SendOutcome.CANCELLED

            self.transport.discard_in_buffer()
            self._log(f"-> {label} TRY {attempt}/{attempts}: {to_hex(tx)}")
            self.transport.write(tx)

            rx = decode_frame(self.transport, cfg.response_header, timeout_ms, cancel)
            if rx is None:
                if cancel is not None and cancel.is_cancelled:
                    self._log(f"{label} cancelled", logging.INFO)
                    return SendOutcome.CANCELLED
                self._log(f"<- {label} TIMEOUT/NO FRAME", logging.WARNING)
                continue

            self._log(f"<- {label} RESP: {to_hex(rx.raw)}")
            problem = matcher(rx)
            if problem is None:
                self._log(f"{label} ACK OK")
                return SendOutcome.SUCCESS
            self._log(f"{label}: {problem}", logging.WARNING)

        self._log(f"{label} failed after {attempts} attempts", logging.ERROR)
        return SendOutcome.FAILED

    def ping(self, data: Optional[int] = None, cancel: Optional[CancelToken] = None) -> SendOutcome:
        """
        Liveness probe: send PING and wait for the identical frame back.

        Args:
            data: First payload byte (defaults to the cabinet address)
            cancel: Optional cancellation token
        """
        self._require_open()
        if data is None:
            data = self.config.cabinet_address
        payload = build_ping_payload(data)
        return self._exchange(
            "PING",
            CMD_PING,
            payload,
            echo_matcher(CMD_PING, payload),
            self.config.ping_timeout_ms,
            cancel,
        )

    def send(self, firmware: bytes, cancel: Optional[CancelToken] = None) -> SendOutcome:
        """
        Transfer a complete firmware image.

        Args:
            firmware: Whole image, already in memory
            cancel: Optional cancellation token

        Returns:
            SendOutcome.SUCCESS, FAILED (retries exhausted) or CANCELLED

        Raises:
            EmcTransportError: If the transport is not open
            TransportIOError: If a write fails
            ValueError: If the image is larger than 4 GiB - 1
        """
        self._require_open()
        total = len(firmware)
        if total > MAX_IMAGE_SIZE:
            raise ValueError(f"Firmware of {total} bytes exceeds the 4-byte size field")

        cfg = self.config
        session = TransferSession(
            cabinet_address=cfg.cabinet_address,
            load_address=cfg.load_address,
            block_size=cfg.block_size,
            total_bytes=total,
        )
        self.session = session
        self.last_progress = None
        try:
            return self._run(session, memoryview(firmware), cancel)
        finally:
            self.session = None

    def _run(self, session: TransferSession, firmware: memoryview, cancel: Optional[CancelToken]) -> SendOutcome:
        addr = session.cabinet_address
        self._log(
            f"INIT: size={session.total_bytes}B, chunk={session.block_size}, "
            f"addr={addr}, load=0x{session.load_address:08X}",
            logging.INFO,
        )

        init_payload = build_init_payload(
            addr, session.load_address, session.total_bytes, session.block_size
        )
        outcome = self._exchange(
            "INIT",
            CMD_INIT,
            init_payload,
            ack_matcher(addr, 0),
            self.config.ack_timeout_ms,
            cancel,
        )
        if not outcome.ok:
            if outcome is SendOutcome.FAILED:
                self._log("INIT failed", logging.ERROR)
            return outcome

        for offset in range(0, session.total_bytes, session.block_size):
            if cancel is not None and cancel.is_cancelled:
                self._log("Transfer cancelled", logging.INFO)
                return SendOutcome.CANCELLED

            block = firmware[offset:offset + session.block_size]
            index = session.frame_index
            outcome = self._exchange(
                f"FRAME {index}",
                CMD_DATA,
                build_data_payload(addr, block, index),
                ack_matcher(addr, index & 0xFFFF),
                self.config.ack_timeout_ms,
                cancel,
            )
            if not outcome.ok:
                if outcome is SendOutcome.FAILED:
                    self._log(f"FRAME {index} failed", logging.ERROR)
                return outcome

            session.sent_bytes += len(block)
            session.frame_index += 1
            self._report(session)

        self._log("All data sent", logging.INFO)
        self._report(session, percent=100.0)
        return SendOutcome.SUCCESS

    def send_file(self, path, cancel: Optional[CancelToken] = None) -> SendOutcome:
        """
        Read a firmware image from disk and send it.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Firmware file not found: {path}")
        firmware = path.read_bytes()
        self._log(f"Firmware file: {path.name} ({len(firmware)} bytes)", logging.INFO)
        return self.send(firmware, cancel)
