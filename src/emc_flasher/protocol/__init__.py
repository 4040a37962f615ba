"""Cabinet protocol layer - byte transports, EMC framing and the firmware sender."""

from .transport import (
    EmcTransport,
    EmcTransportError,
    ConnectError,
    TransportTimeoutError,
    TransportIOError,
    NO_DATA,
)
from .serial_transport import SerialTransport, open_serial
from .tcp_transport import (
    TcpClientTransport,
    TcpServerTransport,
    create_tcp_transport,
    is_server_host,
)
from .frame import (
    HeaderVariant,
    EmcFrame,
    FrameError,
    CMD_PING,
    CMD_INIT,
    CMD_DATA,
    CMD_ACK,
    compute_checksum,
    encode_frame,
    decode_frame,
    parse_frame,
    to_hex,
)
from .firmware_sender import (
    FirmwareSender,
    SenderConfig,
    SendOutcome,
    ProgressInfo,
    TransferSession,
    CancelToken,
    FlashObserver,
    CallbackObserver,
)

__all__ = [
    # Transport
    "EmcTransport",
    "EmcTransportError",
    "ConnectError",
    "TransportTimeoutError",
    "TransportIOError",
    "NO_DATA",
    "SerialTransport",
    "open_serial",
    "TcpClientTransport",
    "TcpServerTransport",
    "create_tcp_transport",
    "is_server_host",
    # Framing
    "HeaderVariant",
    "EmcFrame",
    "FrameError",
    "CMD_PING",
    "CMD_INIT",
    "CMD_DATA",
    "CMD_ACK",
    "compute_checksum",
    "encode_frame",
    "decode_frame",
    "parse_frame",
    "to_hex",
    # Sender
    "FirmwareSender",
    "SenderConfig",
    "SendOutcome",
    "ProgressInfo",
    "TransferSession",
    "CancelToken",
    "FlashObserver",
    "CallbackObserver",
]
