"""
TCP EMC Transport

Two roles, picked once from the host string:
- server role ("", "0.0.0.0", "*", "any", "server"): listen and let the
  cabinet dial in. A background accept loop keeps running; every new
  connection replaces the active one.
- client role (any other host): dial out, up to 3 attempts.

Python sockets have no "bytes available" query, so bytes that can be
pulled without blocking are kept in a read-ahead buffer and served by
the next read.
"""

import ipaddress
import logging
import select
import socket
import threading
import time
from typing import Optional, Tuple

from .transport import (
    EmcTransport,
    ConnectError,
    TransportTimeoutError,
    TransportIOError,
    NO_DATA,
)

logger = logging.getLogger(__name__)

SERVER_HOSTS = frozenset({"", "0.0.0.0", "*", "any", "server"})

DEFAULT_RECV_TIMEOUT_MS = 50
DEFAULT_SEND_TIMEOUT_MS = 2000
DEFAULT_CONNECT_TIMEOUT_MS = 5000

CONNECT_ATTEMPTS = 3
CONNECT_RETRY_DELAY = 1.0
KEEPALIVE_IDLE_MS = 5000
KEEPALIVE_INTERVAL_MS = 2000

ACCEPT_POLL = 0.2
RECV_CHUNK = 4096


def is_server_host(host: Optional[str]) -> bool:
    """True if ``host`` selects the listening (server) role."""
    return (host or "").strip().lower() in SERVER_HOSTS


def enable_keepalive(
    sock: socket.socket,
    idle_ms: int = KEEPALIVE_IDLE_MS,
    interval_ms: int = KEEPALIVE_INTERVAL_MS,
) -> None:
    """Turn on TCP keepalive so a silently dead peer is noticed."""
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, "SIO_KEEPALIVE_VALS"):
            sock.ioctl(socket.SIO_KEEPALIVE_VALS, (1, idle_ms, interval_ms))
            return
        idle = max(1, idle_ms // 1000)
        interval = max(1, interval_ms // 1000)
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, idle)
        elif hasattr(socket, "TCP_KEEPALIVE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, idle)
        if hasattr(socket, "TCP_KEEPINTVL"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, interval)
    except OSError as e:
        logger.debug(f"Keepalive not fully configured: {e}")


class _SocketTransport(EmcTransport):
    """
    Shared I/O on "the currently active connection".

    Every access to ``_conn`` and ``_rx`` happens under ``_lock``; the
    server accept loop takes the same lock to swap connections.
    """

    def __init__(
        self,
        port: int,
        recv_timeout_ms: int = DEFAULT_RECV_TIMEOUT_MS,
        send_timeout_ms: int = DEFAULT_SEND_TIMEOUT_MS,
        connect_timeout_ms: Optional[int] = DEFAULT_CONNECT_TIMEOUT_MS,
    ):
        if not 0 <= port <= 0xFFFF:
            raise ValueError(f"Invalid TCP port: {port}")
        self.port = port
        self.recv_timeout_ms = recv_timeout_ms
        self.send_timeout_ms = send_timeout_ms
        self.connect_timeout_ms = connect_timeout_ms
        self._lock = threading.Lock()
        self._conn: Optional[socket.socket] = None
        self._rx = bytearray()

    def _configure(self, conn: socket.socket) -> None:
        conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        # recv is only issued on a readable socket, so this bounds sendall
        conn.settimeout(self.send_timeout_ms / 1000.0)

    def _drop_locked(self) -> None:
        # A dropped connection has nothing left to read
        conn, self._conn = self._conn, None
        self._rx.clear()
        if conn is not None:
            _close_quietly(conn)

    def _pump_locked(self, wait: float = 0.0) -> None:
        """Move whatever is readable into the read-ahead buffer."""
        while self._conn is not None:
            try:
                readable, _, _ = select.select([self._conn], [], [], wait)
            except (OSError, ValueError):
                self._drop_locked()
                return
            if not readable:
                return
            try:
                chunk = self._conn.recv(RECV_CHUNK)
            except (BlockingIOError, socket.timeout):
                return
            except OSError as e:
                logger.debug(f"{self}: connection lost ({e})")
                self._drop_locked()
                return
            if not chunk:
                logger.debug(f"{self}: peer closed the connection")
                self._drop_locked()
                return
            self._rx.extend(chunk)
            wait = 0.0

    @property
    def is_open(self) -> bool:
        with self._lock:
            if self._conn is None:
                return False
            self._pump_locked()
            return self._conn is not None

    @property
    def bytes_to_read(self) -> int:
        with self._lock:
            self._pump_locked()
            return len(self._rx)

    def discard_in_buffer(self) -> None:
        with self._lock:
            self._pump_locked()
            if self._rx:
                logger.debug(f"{self}: discarded {len(self._rx)} stale bytes")
            self._rx.clear()

    def discard_out_buffer(self) -> None:
        # Nothing is queued on our side of a TCP stream
        pass

    def read(self, count: int) -> bytes:
        if count <= 0:
            return b""
        with self._lock:
            if not self._rx:
                self._pump_locked(self.recv_timeout_ms / 1000.0)
            if not self._rx:
                return b""
            data = bytes(self._rx[:count])
            del self._rx[:count]
            return data

    def read_byte(self) -> int:
        data = self.read(1)
        if not data:
            return NO_DATA
        return data[0]

    def write(self, data: bytes) -> None:
        error = None
        with self._lock:
            if self._conn is None:
                error = f"{self} is not connected"
            else:
                try:
                    self._conn.sendall(data)
                    return
                except OSError as e:
                    error = f"Write error on {self}: {e}"
        self.close()
        raise TransportIOError(error)


class TcpClientTransport(_SocketTransport):
    """
    Dial out to a cabinet (or a serial-to-TCP bridge).

    Example:
        transport = TcpClientTransport("192.168.1.50", 5000)
        transport.open()
    """

    def __init__(
        self,
        host: str,
        port: int,
        recv_timeout_ms: int = DEFAULT_RECV_TIMEOUT_MS,
        send_timeout_ms: int = DEFAULT_SEND_TIMEOUT_MS,
        connect_timeout_ms: Optional[int] = DEFAULT_CONNECT_TIMEOUT_MS,
        connect_attempts: int = CONNECT_ATTEMPTS,
        retry_delay: float = CONNECT_RETRY_DELAY,
    ):
        if host is None:
            raise ValueError("host is required")
        super().__init__(port, recv_timeout_ms, send_timeout_ms, connect_timeout_ms)
        self.host = host.strip()
        self.connect_attempts = max(1, connect_attempts)
        self.retry_delay = retry_delay

    def resolve(self) -> str:
        """
        Resolve the host to an IPv4 address.

        Raises:
            ConnectError: If the name cannot be resolved
        """
        if self.host.lower() == "localhost":
            return "127.0.0.1"
        try:
            ipaddress.ip_address(self.host)
            return self.host
        except ValueError:
            pass
        try:
            infos = socket.getaddrinfo(self.host, self.port, socket.AF_INET, socket.SOCK_STREAM)
        except socket.gaierror as e:
            raise ConnectError(f"Cannot resolve host {self.host}: {e}")
        if not infos:
            raise ConnectError(f"No IPv4 address for host {self.host}")
        return infos[0][4][0]

    def open(self) -> None:
        if self.is_open:
            return

        address = self.resolve()
        timeout = None if self.connect_timeout_ms is None else self.connect_timeout_ms / 1000.0
        last_error: Optional[OSError] = None

        for attempt in range(1, self.connect_attempts + 1):
            try:
                conn = socket.create_connection((address, self.port), timeout=timeout)
                break
            except OSError as e:
                last_error = e
                logger.warning(
                    f"Connect to {address}:{self.port} attempt {attempt}/"
                    f"{self.connect_attempts} failed: {e}"
                )
                if attempt < self.connect_attempts:
                    time.sleep(self.retry_delay)
        else:
            if isinstance(last_error, socket.timeout):
                raise TransportTimeoutError(
                    f"Timed out connecting to {self.host}:{self.port} "
                    f"after {self.connect_attempts} attempts"
                )
            raise ConnectError(f"Cannot connect to {self.host}:{self.port}: {last_error}")

        self._configure(conn)
        enable_keepalive(conn)
        with self._lock:
            self._drop_locked()
            self._conn = conn
            self._rx.clear()
        logger.info(f"Connected to {self.host}:{self.port} ({address})")

    def close(self) -> None:
        with self._lock:
            self._drop_locked()
            self._rx.clear()

    def __str__(self) -> str:
        return f"Tcp({self.host}:{self.port})"


class TcpServerTransport(_SocketTransport):
    """
    Listen for the cabinet's connection.

    open() binds, starts the accept loop and waits up to
    ``connect_timeout_ms`` for the first peer. The accept loop runs until
    close(); a later connection replaces (and shuts down) the current one,
    and reads/writes continue against whichever connection is active.
    """

    def __init__(
        self,
        port: int,
        bind_host: str = "0.0.0.0",
        recv_timeout_ms: int = DEFAULT_RECV_TIMEOUT_MS,
        send_timeout_ms: int = DEFAULT_SEND_TIMEOUT_MS,
        connect_timeout_ms: Optional[int] = DEFAULT_CONNECT_TIMEOUT_MS,
    ):
        super().__init__(port, recv_timeout_ms, send_timeout_ms, connect_timeout_ms)
        self.bind_host = bind_host
        self.peer: Optional[Tuple[str, int]] = None
        self._listener: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._connected = threading.Event()

    @property
    def listening(self) -> bool:
        return self._listener is not None

    @property
    def local_port(self) -> int:
        """Bound port (useful when constructed with port 0)."""
        if self._listener is None:
            return self.port
        return self._listener.getsockname()[1]

    def listen(self) -> None:
        """Bind, listen and start the accept loop. No-op if already listening."""
        if self._listener is not None:
            return
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((self.bind_host, self.port))
            listener.listen(1)
            listener.settimeout(ACCEPT_POLL)
        except OSError as e:
            listener.close()
            raise ConnectError(f"Cannot listen on {self.bind_host}:{self.port}: {e}")

        self._listener = listener
        self._stop = threading.Event()
        self._connected.clear()
        self._accept_thread = threading.Thread(
            target=self._accept_loop,
            args=(listener, self._stop),
            name=f"emc-accept-{self.local_port}",
            daemon=True,
        )
        self._accept_thread.start()
        logger.info(f"Listening on {self.bind_host}:{self.local_port}")

    def _drop_locked(self) -> None:
        super()._drop_locked()
        self._connected.clear()

    def open(self) -> None:
        if self.is_open:
            return
        self.listen()

        timeout = None if self.connect_timeout_ms is None else self.connect_timeout_ms / 1000.0
        if not self._connected.wait(timeout):
            port = self.local_port
            self.close()
            raise TransportTimeoutError(
                f"No client connected on port {port} within {self.connect_timeout_ms} ms"
            )

    def _accept_loop(self, listener: socket.socket, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                conn, addr = listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not stop.is_set():
                    logger.error(f"Accept loop on port {self.port} stopped: {e}")
                break

            try:
                self._configure(conn)
            except OSError as e:
                logger.warning(f"Rejected connection from {addr[0]}:{addr[1]}: {e}")
                _close_quietly(conn)
                continue

            with self._lock:
                if stop.is_set():
                    _close_quietly(conn)
                    break
                replaced = self._conn is not None
                self._drop_locked()
                self._conn = conn
                self._rx.clear()
                self.peer = addr

            if replaced:
                logger.info(f"Client {addr[0]}:{addr[1]} replaced the previous connection")
            else:
                logger.info(f"Client connected from {addr[0]}:{addr[1]}")
            self._connected.set()

    def close(self) -> None:
        self._stop.set()
        with self._lock:
            self._drop_locked()
            self._rx.clear()
            self.peer = None
        listener, self._listener = self._listener, None
        if listener is not None:
            _close_quietly(listener)
        thread, self._accept_thread = self._accept_thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=ACCEPT_POLL * 5)
        self._connected.clear()

    def __str__(self) -> str:
        return f"TcpServer(*:{self.local_port})"


def create_tcp_transport(
    host: Optional[str],
    port: int,
    recv_timeout_ms: int = DEFAULT_RECV_TIMEOUT_MS,
    send_timeout_ms: int = DEFAULT_SEND_TIMEOUT_MS,
    connect_timeout_ms: Optional[int] = DEFAULT_CONNECT_TIMEOUT_MS,
) -> _SocketTransport:
    """
    Build the TCP transport for ``host``: server role for wildcard hosts,
    client role otherwise.
    """
    if is_server_host(host):
        return TcpServerTransport(
            port,
            recv_timeout_ms=recv_timeout_ms,
            send_timeout_ms=send_timeout_ms,
            connect_timeout_ms=connect_timeout_ms,
        )
    return TcpClientTransport(
        host,
        port,
        recv_timeout_ms=recv_timeout_ms,
        send_timeout_ms=send_timeout_ms,
        connect_timeout_ms=connect_timeout_ms,
    )


def _close_quietly(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass
