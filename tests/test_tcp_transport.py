"""Tests for the TCP client and server transports over loopback sockets."""

import socket
import threading
import time

import pytest

from emc_flasher.protocol.firmware_sender import FirmwareSender, SendOutcome, SenderConfig
from emc_flasher.protocol.tcp_transport import (
    TcpClientTransport,
    TcpServerTransport,
    create_tcp_transport,
    is_server_host,
)
from emc_flasher.protocol.transport import ConnectError, TransportIOError, TransportTimeoutError

from fakes import SimulatedCabinet, serve_cabinet_on_socket


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def free_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture
def server():
    transport = TcpServerTransport(0, bind_host="127.0.0.1", connect_timeout_ms=2000)
    transport.listen()
    yield transport
    transport.close()


def dial(server: TcpServerTransport) -> socket.socket:
    sock = socket.create_connection(("127.0.0.1", server.local_port), timeout=2.0)
    return sock


@pytest.mark.parametrize("host,expected", [
    ("", True),
    ("0.0.0.0", True),
    ("*", True),
    ("ANY", True),
    ("server", True),
    (None, True),
    ("127.0.0.1", False),
    ("cabinet.local", False),
])
def test_is_server_host(host, expected):
    assert is_server_host(host) is expected


def test_create_tcp_transport_picks_role():
    assert isinstance(create_tcp_transport("*", 5000), TcpServerTransport)
    client = create_tcp_transport("10.0.0.2", 5000)
    assert isinstance(client, TcpClientTransport)
    assert str(client) == "Tcp(10.0.0.2:5000)"


def test_invalid_port_rejected():
    with pytest.raises(ValueError):
        TcpClientTransport("127.0.0.1", 70000)


class TestServerRole:
    def test_open_times_out_without_client(self):
        transport = TcpServerTransport(0, bind_host="127.0.0.1", connect_timeout_ms=200)
        start = time.monotonic()
        with pytest.raises(TransportTimeoutError):
            transport.open()
        assert time.monotonic() - start >= 0.2
        assert not transport.listening
        assert not transport.is_open

    def test_client_within_deadline_is_accepted(self, server):
        sockets = []
        timer = threading.Timer(0.1, lambda: sockets.append(dial(server)))
        timer.start()
        server.open()
        assert server.is_open
        assert server.peer is not None
        timer.join()
        sockets[0].close()

    def test_read_write_and_buffering(self, server):
        peer = dial(server)
        assert wait_for(lambda: server.is_open)

        peer.sendall(b"abc")
        assert wait_for(lambda: server.bytes_to_read == 3)
        assert server.read(2) == b"ab"
        assert server.read_byte() == ord("c")
        assert server.read(10) == b""

        server.write(b"xyz")
        assert peer.recv(16) == b"xyz"
        peer.close()

    def test_discard_in_buffer_drops_pending_input(self, server):
        peer = dial(server)
        assert wait_for(lambda: server.is_open)
        peer.sendall(b"stale bytes")
        assert wait_for(lambda: server.bytes_to_read > 0)
        server.discard_in_buffer()
        assert server.bytes_to_read == 0
        peer.close()

    def test_new_connection_replaces_active_one(self, server):
        first = dial(server)
        assert wait_for(lambda: server.is_open)
        second = dial(server)
        local = second.getsockname()
        assert wait_for(lambda: server.peer == local)

        server.write(b"\x01\x02")
        assert second.recv(16) == b"\x01\x02"
        assert first.recv(16) == b""
        first.close()
        second.close()

    def test_dial_after_deadline_is_refused(self):
        transport = TcpServerTransport(0, bind_host="127.0.0.1", connect_timeout_ms=150)
        transport.listen()
        port = transport.local_port
        with pytest.raises(TransportTimeoutError):
            transport.open()
        with pytest.raises(OSError):
            late = socket.create_connection(("127.0.0.1", port), timeout=1.0)
            late.close()
        assert not transport.is_open

    def test_accepted_socket_options(self, server):
        peer = dial(server)
        server.open()
        conn = server._conn
        assert conn.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) != 0
        peer.close()

    def test_buffered_bytes_gone_after_peer_close(self, server):
        peer = dial(server)
        assert wait_for(lambda: server.is_open)
        peer.sendall(b"tail")
        peer.close()
        assert wait_for(lambda: not server.is_open)
        assert server.bytes_to_read == 0
        assert server.read(4) == b""

    def test_peer_close_is_detected(self, server):
        peer = dial(server)
        assert wait_for(lambda: server.is_open)
        peer.close()
        assert wait_for(lambda: not server.is_open)
        assert server.listening

    def test_write_without_connection_fails(self, server):
        with pytest.raises(TransportIOError):
            server.write(b"\x00")
        assert not server.listening


class TestClientRole:
    def test_connect_refused(self):
        client = TcpClientTransport("127.0.0.1", free_port(), connect_attempts=2, retry_delay=0)
        with pytest.raises(ConnectError):
            client.open()
        assert not client.is_open

    def test_unresolvable_host(self, monkeypatch):
        def fail(*args, **kwargs):
            raise socket.gaierror(-2, "Name or service not known")

        monkeypatch.setattr(socket, "getaddrinfo", fail)
        client = TcpClientTransport("cabinet.invalid", 5000)
        with pytest.raises(ConnectError):
            client.open()

    def test_localhost_and_literals_skip_dns(self):
        assert TcpClientTransport("localhost", 1).resolve() == "127.0.0.1"
        assert TcpClientTransport("10.1.2.3", 1).resolve() == "10.1.2.3"

    def test_round_trip_against_listener(self):
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]

        with TcpClientTransport("127.0.0.1", port) as client:
            client.open()
            peer, _ = listener.accept()
            assert client.is_open
            client.write(b"ping")
            assert peer.recv(16) == b"ping"
            peer.sendall(b"pong")
            assert wait_for(lambda: client.bytes_to_read == 4)
            assert client.read(4) == b"pong"
            peer.close()

        assert not client.is_open
        listener.close()

    def test_every_attempt_times_out(self, monkeypatch):
        calls = []

        def slow(address, timeout=None):
            calls.append(address)
            raise socket.timeout("timed out")

        monkeypatch.setattr(socket, "create_connection", slow)
        client = TcpClientTransport("127.0.0.1", 5000, retry_delay=0)
        with pytest.raises(TransportTimeoutError):
            client.open()
        assert len(calls) == 3
        assert not client.is_open

    def test_client_socket_options(self):
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        client = TcpClientTransport("127.0.0.1", listener.getsockname()[1])
        try:
            client.open()
            peer, _ = listener.accept()
            conn = client._conn
            assert conn.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) != 0
            assert conn.getsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE) != 0
            peer.close()
        finally:
            client.close()
            listener.close()

    def test_write_when_not_connected(self):
        client = TcpClientTransport("127.0.0.1", 1)
        with pytest.raises(TransportIOError):
            client.write(b"\x00")


def test_firmware_over_tcp_server_role(server):
    cabinet = SimulatedCabinet(address=2)
    stop = threading.Event()
    peer = dial(server)
    worker = threading.Thread(
        target=serve_cabinet_on_socket, args=(peer, cabinet, stop), daemon=True
    )
    worker.start()
    server.open()

    firmware = bytes(i & 0xFF for i in range(1000))
    config = SenderConfig(cabinet_address=2, block_size=128, ack_timeout_ms=1000)
    sender = FirmwareSender(server, config)
    try:
        assert sender.ping() is SendOutcome.SUCCESS
        assert sender.send(firmware) is SendOutcome.SUCCESS
    finally:
        stop.set()
        worker.join(timeout=2)
        peer.close()

    assert bytes(cabinet.received_data) == firmware
    assert cabinet.received_indices == list(range(8))
