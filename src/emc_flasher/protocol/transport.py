"""
EMC Byte Transport Layer

Uniform byte-stream interface shared by the serial and TCP links.

Contract:
- open() is idempotent
- close() is best-effort and safe to call repeatedly
- read()/read_byte() never block beyond the per-instance receive timeout
  and report "nothing available" instead of raising
- write() blocks up to the send timeout; a failure closes the transport
  and raises TransportIOError
"""

from abc import ABC, abstractmethod

NO_DATA = -1


class EmcTransportError(Exception):
    """Base exception for transport layer errors"""
    pass


class ConnectError(EmcTransportError, ConnectionError):
    """Peer refused or unreachable (including DNS lookup failure)"""
    pass


class TransportTimeoutError(EmcTransportError, TimeoutError):
    """No peer connected / all connect attempts timed out"""
    pass


class TransportIOError(EmcTransportError, IOError):
    """Write-side failure; the channel is assumed broken"""
    pass


class EmcTransport(ABC):
    """
    Byte transport used by the firmware sender.

    Implementations: SerialTransport, TcpClientTransport, TcpServerTransport.

    Example:
        with create_tcp_transport("192.168.1.50", 5000) as transport:
            transport.open()
            transport.write(frame)
            data = transport.read(16)
    """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True if the underlying channel is currently usable for I/O."""

    @property
    @abstractmethod
    def bytes_to_read(self) -> int:
        """Number of bytes available without blocking (0 when closed)."""

    @abstractmethod
    def open(self) -> None:
        """Establish the channel. No-op if already open."""

    @abstractmethod
    def close(self) -> None:
        """Release the channel. Never raises."""

    @abstractmethod
    def read(self, count: int) -> bytes:
        """
        Read up to ``count`` bytes.

        Returns:
            Received bytes, or b"" when nothing is available, on read
            timeout, or on a transient I/O error.
        """

    @abstractmethod
    def read_byte(self) -> int:
        """Read one byte, or return NO_DATA (-1) under the same conditions as read()."""

    @abstractmethod
    def write(self, data: bytes) -> None:
        """
        Write all of ``data``.

        Raises:
            TransportIOError: If the write fails (transport is closed first)
        """

    def discard_in_buffer(self) -> None:
        """Drop unread input. Best-effort."""

    def discard_out_buffer(self) -> None:
        """Drop pending output. Best-effort."""

    def __enter__(self) -> "EmcTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
