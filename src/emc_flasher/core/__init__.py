"""
Core module for EMC Flasher.

This module provides the single source of truth for:
- Number / link / header parsing (parsing.py)
- Result objects (results.py)
- Link opening and ping/send workflows (actions.py)
- Standardized warnings/messages (messages.py)

Front ends call into this module rather than driving the sender directly.
"""

from .parsing import (
    LinkSpec,
    parse_int,
    parse_link,
    parse_header_variant,
    parse_payload_hex,
)
from .results import OperationResult
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    classify_message,
    result_to_warnings,
)
from .actions import (
    open_link,
    ping_cabinet,
    send_firmware,
    send_firmware_file,
)

__all__ = [
    # Parsing
    "LinkSpec",
    "parse_int",
    "parse_link",
    "parse_header_variant",
    "parse_payload_hex",
    # Results
    "OperationResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "classify_message",
    "result_to_warnings",
    # Actions
    "open_link",
    "ping_cabinet",
    "send_firmware",
    "send_firmware_file",
]
