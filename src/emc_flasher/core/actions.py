"""
Core workflow actions for EMC Flasher.

Functions here open links, run the sender and turn every outcome
(including exceptions) into an OperationResult, so front ends only
render results.
"""

import hashlib
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional

from emc_flasher.protocol import (
    CallbackObserver,
    CancelToken,
    EmcTransport,
    EmcTransportError,
    FirmwareSender,
    ProgressInfo,
    SendOutcome,
    SenderConfig,
    TransportIOError,
    create_tcp_transport,
    open_serial,
)

from .parsing import LinkSpec
from .results import OperationResult

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "emc_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def open_link(link: LinkSpec) -> EmcTransport:
    """
    Open the transport described by ``link``.

    Serial links are opened and configured here; TCP links dial out or
    wait for the cabinet to connect depending on the host.

    Raises:
        ConnectError: Port/peer unavailable
        TransportTimeoutError: No peer within the connect timeout
    """
    if link.kind == "serial":
        return open_serial(link.device, link.baudrate, timeout=link.send_timeout_ms / 1000.0)

    transport = create_tcp_transport(
        link.host,
        link.port,
        recv_timeout_ms=link.recv_timeout_ms,
        send_timeout_ms=link.send_timeout_ms,
        connect_timeout_ms=link.connect_timeout_ms,
    )
    if link.is_server:
        logger.info(f"Waiting for cabinet to connect on port {link.port}...")
    transport.open()
    return transport


@contextmanager
def _use_transport(link: Optional[LinkSpec], transport: Optional[EmcTransport]):
    """Yield a caller-owned transport as-is, or open (and later close) one."""
    if transport is not None:
        yield transport
        return
    if link is None:
        raise ValueError("Either link or transport is required")
    opened = open_link(link)
    try:
        yield opened
    finally:
        opened.close()


def _link_name(link: Optional[LinkSpec], transport: Optional[EmcTransport]) -> str:
    if transport is not None:
        return str(transport)
    return str(link) if link is not None else ""


def ping_cabinet(
    link: Optional[LinkSpec] = None,
    config: Optional[SenderConfig] = None,
    data: Optional[int] = None,
    cancel: Optional[CancelToken] = None,
    log_cb: Optional[Callable[[str], None]] = None,
    transport: Optional[EmcTransport] = None,
) -> OperationResult:
    """
    Check that a cabinet answers PING.

    Args:
        link: Where to reach the cabinet (ignored if ``transport`` is given)
        config: Sender configuration (address, timeouts, header)
        data: First ping payload byte (defaults to the cabinet address)
        cancel: Optional cancellation token
        log_cb: Optional callback receiving protocol log lines
        transport: Already-open transport to use instead of ``link``

    Returns:
        OperationResult with metadata["outcome"]
    """
    config = config or SenderConfig()
    operation = "ping"
    with _capture_logs() as logs:
        try:
            with _use_transport(link, transport) as active:
                sender = FirmwareSender(active, config, CallbackObserver(log_cb=log_cb))
                outcome = sender.ping(data=data, cancel=cancel)
                result = _result_from_outcome(operation, outcome, str(active), config)
                if outcome is SendOutcome.FAILED:
                    result.add_error(f"Ping failed after {config.max_retries + 1} attempts")
        except (EmcTransportError, ValueError, OSError) as e:
            logger.error(f"{operation} failed: {e}")
            result = OperationResult.failure(
                operation,
                error=str(e),
                link=_link_name(link, transport),
                cabinet=config.cabinet_address,
            )
        result.logs = logs
        return result


def send_firmware(
    firmware: bytes,
    link: Optional[LinkSpec] = None,
    config: Optional[SenderConfig] = None,
    cancel: Optional[CancelToken] = None,
    progress_cb: Optional[Callable[[ProgressInfo], None]] = None,
    log_cb: Optional[Callable[[str], None]] = None,
    ping_first: bool = False,
    transport: Optional[EmcTransport] = None,
) -> OperationResult:
    """
    Transfer a firmware image held in memory.

    Args:
        firmware: Whole firmware image
        link: Where to reach the cabinet (ignored if ``transport`` is given)
        config: Sender configuration
        cancel: Optional cancellation token
        progress_cb: Optional callback(ProgressInfo) after each acked block
        log_cb: Optional callback receiving protocol log lines
        ping_first: Probe with PING before INIT
        transport: Already-open transport to use instead of ``link``

    Returns:
        OperationResult with:
            - ok: True if every block was acknowledged
            - outcome: "success", "failed", "cancelled" or "error"
            - bytes_len: acknowledged firmware bytes
            - hashes["sha256"]: hash of the image
            - metadata["frames"]: number of acknowledged DATA frames
    """
    config = config or SenderConfig()
    operation = "send_firmware"
    sha256 = hashlib.sha256(firmware).hexdigest()

    with _capture_logs() as logs:
        sender = None
        try:
            config.validate()
            with _use_transport(link, transport) as active:
                sender = FirmwareSender(
                    active, config, CallbackObserver(log_cb=log_cb, progress_cb=progress_cb)
                )
                outcome = SendOutcome.SUCCESS
                if ping_first:
                    outcome = sender.ping(cancel=cancel)
                    if outcome is SendOutcome.FAILED:
                        result = _result_from_outcome(operation, outcome, str(active), config)
                        result.add_error("Cabinet did not answer PING; transfer not started")
                        result.hashes["sha256"] = sha256
                        result.logs = logs
                        return result
                if outcome.ok:
                    outcome = sender.send(firmware, cancel=cancel)
                result = _result_from_outcome(operation, outcome, str(active), config)
        except TransportIOError as e:
            logger.error(f"{operation} aborted: {e}")
            result = OperationResult.failure(
                operation,
                error=str(e),
                link=_link_name(link, transport),
                cabinet=config.cabinet_address,
            )
        except (EmcTransportError, ValueError, OSError) as e:
            logger.error(f"{operation} failed: {e}")
            result = OperationResult.failure(
                operation,
                error=str(e),
                link=_link_name(link, transport),
                cabinet=config.cabinet_address,
            )

        progress = sender.last_progress if sender is not None else None
        acked = progress.sent_bytes if progress is not None else 0
        result.bytes_len = acked
        result.hashes["sha256"] = sha256
        result.metadata["total_bytes"] = len(firmware)
        result.metadata["frames"] = -(-acked // config.block_size) if acked else 0
        if result.outcome == "failed":
            result.add_error(f"Transfer failed after {acked}/{len(firmware)} bytes")
        if not firmware and result.ok:
            result.add_warning("Firmware image is empty")
        result.logs = logs
        return result


def send_firmware_file(
    path: str,
    link: Optional[LinkSpec] = None,
    config: Optional[SenderConfig] = None,
    **kwargs,
) -> OperationResult:
    """
    Read a firmware file and transfer it (see send_firmware).
    """
    file_path = Path(path)
    if not file_path.is_file():
        return OperationResult.failure(
            "send_firmware",
            error=f"Firmware file not found: {path}",
            link=_link_name(link, kwargs.get("transport")),
        )
    firmware = file_path.read_bytes()
    logger.info(f"Firmware file: {file_path.name} ({len(firmware)} bytes)")
    result = send_firmware(firmware, link=link, config=config, **kwargs)
    result.metadata["file"] = str(file_path)
    return result


def _result_from_outcome(
    operation: str,
    outcome: SendOutcome,
    link_name: str,
    config: SenderConfig,
) -> OperationResult:
    if outcome.ok:
        return OperationResult.success(
            operation, link=link_name, cabinet=config.cabinet_address
        )
    result = OperationResult.failure(
        operation,
        link=link_name,
        cabinet=config.cabinet_address,
        outcome=outcome.value,
    )
    if outcome is SendOutcome.CANCELLED:
        result.add_error("Cancelled by user")
    return result
