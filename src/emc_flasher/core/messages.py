"""
Standardized warning and message system for EMC Flasher.

Provides structured warning items with stable codes so every front end
reports transfer problems the same way.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Connection
    W_CONNECT_FAILED = "W_CONNECT_FAILED"
    W_CONNECT_TIMEOUT = "W_CONNECT_TIMEOUT"
    W_PORT_NOT_FOUND = "W_PORT_NOT_FOUND"
    W_IO_FAILURE = "W_IO_FAILURE"

    # Protocol
    W_NO_RESPONSE = "W_NO_RESPONSE"
    W_TRANSFER_FAILED = "W_TRANSFER_FAILED"
    W_CANCELLED = "W_CANCELLED"

    # Input
    W_FILE_NOT_FOUND = "W_FILE_NOT_FOUND"
    W_IMAGE_EMPTY = "W_IMAGE_EMPTY"
    W_BAD_CONFIG = "W_BAD_CONFIG"

    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_CONNECT_FAILED:
        "Check the host/port or serial device name and that nothing else holds the port.",
    WarningCode.W_CONNECT_TIMEOUT:
        "Make sure the cabinet is powered and configured to dial this host, or raise --connect-timeout.",
    WarningCode.W_PORT_NOT_FOUND:
        "Run the 'ports' command to list available serial ports.",
    WarningCode.W_IO_FAILURE:
        "The link dropped while sending. Check the cable or network and start the transfer again.",
    WarningCode.W_NO_RESPONSE:
        "Cabinet did not answer. Check the cabinet address, header variant and baud rate.",
    WarningCode.W_TRANSFER_FAILED:
        "Retries exhausted. The transfer restarts from INIT when run again.",
    WarningCode.W_CANCELLED:
        "Transfer was cancelled; the cabinet still holds the previous firmware state.",
    WarningCode.W_FILE_NOT_FOUND:
        "Check the firmware file path.",
    WarningCode.W_IMAGE_EMPTY:
        "The firmware image has no data; only INIT was sent.",
    WarningCode.W_BAD_CONFIG:
        "Cabinet address must be 1..6 and block size 1..512.",
    WarningCode.W_UNKNOWN:
        "Run with --verbose and check the protocol log.",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


def classify_message(message: str) -> WarningCode:
    """Map a free-form warning/error string to a stable code."""
    msg = message.lower()
    if "cancel" in msg:
        return WarningCode.W_CANCELLED
    if "not found" in msg and ("file" in msg or "firmware" in msg):
        return WarningCode.W_FILE_NOT_FOUND
    if "no such file" in msg or "could not open port" in msg or "cannot open port" in msg:
        return WarningCode.W_PORT_NOT_FOUND
    if "no client connected" in msg or "timed out connecting" in msg:
        return WarningCode.W_CONNECT_TIMEOUT
    if "cannot connect" in msg or "cannot resolve" in msg or "cannot listen" in msg:
        return WarningCode.W_CONNECT_FAILED
    if "write error" in msg or "incomplete write" in msg or "not connected" in msg:
        return WarningCode.W_IO_FAILURE
    if "ping" in msg and "fail" in msg:
        return WarningCode.W_NO_RESPONSE
    if "retries" in msg or "failed after" in msg or "transfer failed" in msg:
        return WarningCode.W_TRANSFER_FAILED
    if "empty" in msg:
        return WarningCode.W_IMAGE_EMPTY
    if "must be" in msg:
        return WarningCode.W_BAD_CONFIG
    return WarningCode.W_UNKNOWN


def result_to_warnings(result: "OperationResult") -> List[WarningItem]:
    """
    Convert an OperationResult's warnings and errors to WarningItem list.
    """
    items = [WarningItem.warn(classify_message(w), w) for w in result.warnings]
    for err in result.errors:
        code = classify_message(err)
        if code is WarningCode.W_CANCELLED:
            items.append(WarningItem.warn(code, err))
        else:
            items.append(WarningItem.error(code, err))
    return items
