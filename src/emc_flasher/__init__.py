"""
EMC Flasher - firmware transfer to cabinet controllers over serial or TCP

Framed, checksummed, stop-and-wait upload for bench testing firmware
updates against real hardware.
"""

__version__ = "0.1.0"

from emc_flasher.protocol import (
    FirmwareSender,
    SenderConfig,
    SendOutcome,
    CancelToken,
    SerialTransport,
    TcpClientTransport,
    TcpServerTransport,
)

__all__ = [
    "FirmwareSender",
    "SenderConfig",
    "SendOutcome",
    "CancelToken",
    "SerialTransport",
    "TcpClientTransport",
    "TcpServerTransport",
    "__version__",
]
