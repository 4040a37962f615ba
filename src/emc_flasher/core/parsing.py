"""
Centralized parsing helpers for numbers, link strings and header variants.

The CLI (and any other front end) must import these helpers rather than
re-implement them.
"""

from dataclasses import dataclass
from typing import Optional

from emc_flasher.protocol.frame import HeaderVariant
from emc_flasher.protocol.serial_transport import DEFAULT_BAUDRATE
from emc_flasher.protocol.tcp_transport import (
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_RECV_TIMEOUT_MS,
    DEFAULT_SEND_TIMEOUT_MS,
    is_server_host,
)


@dataclass(frozen=True)
class LinkSpec:
    """
    Where the cabinet is reached.

    Attributes:
        kind: "serial" or "tcp"
        device: Serial device name (serial only)
        baudrate: Serial baud rate (serial only)
        host: TCP host; wildcard hosts select the listening role
        port: TCP port
        recv_timeout_ms: Per-read wait on TCP links
        send_timeout_ms: Write timeout (serial read/write timeout too)
        connect_timeout_ms: Wait for a peer (listen) or per connect attempt (dial)
    """
    kind: str
    device: str = ""
    baudrate: int = DEFAULT_BAUDRATE
    host: str = ""
    port: int = 0
    recv_timeout_ms: int = DEFAULT_RECV_TIMEOUT_MS
    send_timeout_ms: int = DEFAULT_SEND_TIMEOUT_MS
    connect_timeout_ms: Optional[int] = DEFAULT_CONNECT_TIMEOUT_MS

    @property
    def is_server(self) -> bool:
        return self.kind == "tcp" and is_server_host(self.host)

    def __str__(self) -> str:
        if self.kind == "serial":
            return f"serial:{self.device}@{self.baudrate}"
        return f"tcp:{self.host}:{self.port}"


def parse_int(value: Optional[str], label: str = "value") -> Optional[int]:
    """
    Parse an integer from string.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x1000" or "0X1000"
        - Hex with h suffix: "1000h" or "1000H"
        - None / blank for "not given"

    Raises:
        ValueError: If value cannot be parsed.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            return int(value, 16)
        if value.lower().endswith("h"):
            return int(value[:-1], 16)
        return int(value)
    except ValueError:
        raise ValueError(
            f"Invalid {label} '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )


def _parse_port(text: str, link: str) -> int:
    try:
        port = int(text)
    except ValueError:
        raise ValueError(f"Invalid TCP port in link '{link}'")
    if not 0 < port <= 0xFFFF:
        raise ValueError(f"TCP port out of range in link '{link}'")
    return port


def parse_link(value: str) -> LinkSpec:
    """
    Parse a link string.

    Accepts:
        - "serial:/dev/ttyUSB0", "serial:COM3@9600"
        - "tcp:192.168.1.50:5000" (dial out)
        - "tcp::5000", "tcp:*:5000", "tcp:0.0.0.0:5000", "tcp:server:5000" (listen)
        - Without scheme: "COM3", "/dev/ttyUSB0@57600" (serial), "host:5000" (tcp)

    Raises:
        ValueError: If the link cannot be parsed.
    """
    if value is None or not value.strip():
        raise ValueError("Link is empty")
    text = value.strip()

    scheme, sep, rest = text.partition(":")
    scheme = scheme.lower()
    if sep and scheme in ("serial", "tcp"):
        kind = scheme
    elif ":" in text and not text.startswith("/"):
        kind, rest = "tcp", text
    else:
        kind, rest = "serial", text

    if kind == "serial":
        device, at, baud = rest.partition("@")
        device = device.strip()
        if not device:
            raise ValueError(f"Missing serial device in link '{value}'")
        baudrate = DEFAULT_BAUDRATE
        if at:
            try:
                baudrate = int(baud)
            except ValueError:
                raise ValueError(f"Invalid baud rate in link '{value}'")
        return LinkSpec(kind="serial", device=device, baudrate=baudrate)

    host, colon, port = rest.rpartition(":")
    if not colon:
        raise ValueError(f"Missing TCP port in link '{value}' (use tcp:host:port)")
    return LinkSpec(kind="tcp", host=host.strip(), port=_parse_port(port.strip(), value))


def parse_header_variant(value: str) -> HeaderVariant:
    """
    Parse "EMC" / "MCE" (case-insensitive).

    Raises:
        ValueError: If the variant is not recognized.
    """
    try:
        return HeaderVariant[(value or "").strip().upper()]
    except KeyError:
        valid = ", ".join(v.name for v in HeaderVariant)
        raise ValueError(f"Unknown header variant '{value}'. Valid: {valid}")


def parse_payload_hex(value: Optional[str]) -> bytes:
    """Parse "01 02 0A", "01020a" or "" into bytes."""
    if not value:
        return b""
    cleaned = value.replace(" ", "").replace(":", "").replace("-", "")
    try:
        return bytes.fromhex(cleaned)
    except ValueError:
        raise ValueError(f"Invalid hex payload '{value}'")
