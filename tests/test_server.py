"""
Tests for the local proxy listener and the stream pump
"""

import errno
import socket
import struct
import threading
import time
from unittest.mock import MagicMock

import paramiko
import pytest

from pgtunnel.proxy import StreamPump
from pgtunnel.server import LocalPortInUseError, ProxyServer

from conftest import FakeChannel


def poll_until(server: ProxyServer, predicate, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("Timed out waiting for the proxy server")
        server.poll(0.05)


def recv_while_polling(server: ProxyServer, sock: socket.socket, size: int,
                       timeout: float = 5.0) -> bytes:
    sock.setblocking(False)
    data = b""
    deadline = time.monotonic() + timeout
    while len(data) < size and time.monotonic() < deadline:
        server.poll(0.05)
        try:
            chunk = sock.recv(size - len(data))
        except BlockingIOError:
            continue
        if not chunk:
            break
        data += chunk
    return data


@pytest.fixture
def channels():
    return {}


@pytest.fixture
def server(channels):
    """Proxy server on an ephemeral port whose channels are socketpairs"""
    def handler(client_socket, client_address):
        channel = FakeChannel()
        channels[client_address[1]] = channel
        return channel

    proxy_server = ProxyServer(0, handler)
    proxy_server.start()
    yield proxy_server
    proxy_server.close()
    for channel in channels.values():
        channel.remote.close()


def connect(server: ProxyServer) -> socket.socket:
    return socket.create_connection(server.address, timeout=5)


def wait_for_connections(server: ProxyServer, count: int):
    poll_until(server, lambda: server.get_active_connections_count() == count)


# ============================================================================
# Listener
# ============================================================================

class TestProxyServer:
    """Tests for ProxyServer"""

    def test_binds_loopback_only(self, server):
        assert server.address[0] == "127.0.0.1"

    def test_port_in_use(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("localhost", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]

        try:
            with pytest.raises(LocalPortInUseError) as exc_info:
                ProxyServer(port, MagicMock()).start()
        finally:
            blocker.close()

        assert str(exc_info.value) == f"Local port {port} is already in use"
        assert exc_info.value.port == port

    def test_other_bind_errors_propagate(self):
        proxy_server = ProxyServer(0, MagicMock(), bind_host="192.0.2.1")

        with pytest.raises(OSError) as exc_info:
            proxy_server.start()

        assert not isinstance(exc_info.value, LocalPortInUseError)
        assert exc_info.value.errno == errno.EADDRNOTAVAIL

    def test_serve_requires_start(self):
        with pytest.raises(RuntimeError):
            ProxyServer(0, MagicMock()).serve_forever()

    def test_handler_receives_each_connection(self, server, channels):
        clients = [connect(server) for _ in range(3)]

        wait_for_connections(server, 3)

        assert sorted(channels) == sorted(c.getsockname()[1] for c in clients)
        assert server.get_active_connections_count() == 3
        for client in clients:
            client.close()

    def test_forward_error_propagates(self):
        error = paramiko.ChannelException(2, "Connect failed")
        proxy_server = ProxyServer(0, MagicMock(side_effect=error))
        proxy_server.start()
        client = connect(proxy_server)

        try:
            with pytest.raises(paramiko.ChannelException) as exc_info:
                poll_until(proxy_server, lambda: False)

            assert exc_info.value is error
            assert proxy_server.get_active_connections_count() == 0
            assert client.recv(1) == b""
        finally:
            client.close()
            proxy_server.close()

    def test_close_is_idempotent(self, server):
        server.close()
        server.close()

        assert server.server_socket is None
        assert not server.running


# ============================================================================
# Relay
# ============================================================================

class TestRelay:
    """Tests for traffic relayed through the proxy server"""

    def test_no_cross_talk_between_connections(self, server, channels):
        clients = [connect(server) for _ in range(4)]
        wait_for_connections(server, 4)

        for index, client in enumerate(clients):
            client.sendall(f"query-{index}".encode())

        for index, client in enumerate(clients):
            channel = channels[client.getsockname()[1]]
            expected = f"query-{index}".encode()
            assert recv_while_polling(server, channel.remote, len(expected)) == expected

        for index, client in enumerate(clients):
            channels[client.getsockname()[1]].remote.sendall(f"reply-{index}".encode())

        for index, client in enumerate(clients):
            expected = f"reply-{index}".encode()
            assert recv_while_polling(server, client, len(expected)) == expected

        for client in clients:
            client.close()

    def test_preserves_byte_order(self, server, channels):
        client = connect(server)
        wait_for_connections(server, 1)
        payload = bytes(range(256)) * 100

        client.sendall(payload)
        channel = channels[client.getsockname()[1]]

        assert recv_while_polling(server, channel.remote, len(payload)) == payload
        client.close()

    def test_client_half_close_keeps_reply_path_open(self, server, channels):
        client = connect(server)
        wait_for_connections(server, 1)
        channel = channels[client.getsockname()[1]]

        client.sendall(b"last request")
        client.shutdown(socket.SHUT_WR)

        assert recv_while_polling(server, channel.remote, 12) == b"last request"
        poll_until(server, lambda: channel.eof_sent)
        assert not channel.closed

        channel.remote.sendall(b"late reply")
        assert recv_while_polling(server, client, 10) == b"late reply"

        channel.remote.shutdown(socket.SHUT_WR)
        poll_until(server, lambda: server.get_active_connections_count() == 0)
        assert channel.closed
        client.close()

    def test_remote_half_close_keeps_request_path_open(self, server, channels):
        client = connect(server)
        wait_for_connections(server, 1)
        channel = channels[client.getsockname()[1]]

        channel.remote.shutdown(socket.SHUT_WR)
        assert recv_while_polling(server, client, 1) == b""

        client.setblocking(True)
        client.sendall(b"still talking")
        assert recv_while_polling(server, channel.remote, 13) == b"still talking"
        assert server.get_active_connections_count() == 1
        client.close()

    def test_connection_reset_only_affects_that_connection(self, server, channels):
        resetting = connect(server)
        healthy = connect(server)
        wait_for_connections(server, 2)
        reset_channel = channels[resetting.getsockname()[1]]
        healthy_channel = channels[healthy.getsockname()[1]]

        resetting.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        resetting.close()

        poll_until(server, lambda: server.get_active_connections_count() == 1)
        assert reset_channel.closed

        healthy.sendall(b"ping")
        assert recv_while_polling(server, healthy_channel.remote, 4) == b"ping"
        assert not healthy_channel.closed
        healthy.close()


    def test_slow_reader_does_not_stall_other_connections(self, server, channels):
        stalled = connect(server)
        healthy = connect(server)
        wait_for_connections(server, 2)
        stalled_channel = channels[stalled.getsockname()[1]]
        healthy_channel = channels[healthy.getsockname()[1]]

        # Fill every buffer between the remote end and a client that never reads
        stalled_channel.remote.setblocking(False)
        chunk = b"x" * 65536
        flooded = 0
        deadline = time.monotonic() + 1.0
        while time.monotonic() < deadline:
            try:
                flooded += stalled_channel.remote.send(chunk)
            except BlockingIOError:
                server.poll(0.01)
        assert flooded > 0

        healthy.sendall(b"ping")
        assert recv_while_polling(server, healthy_channel.remote, 4) == b"ping"
        healthy_channel.remote.sendall(b"pong")
        assert recv_while_polling(server, healthy, 4) == b"pong"

        late = connect(server)
        wait_for_connections(server, 3)
        late.sendall(b"hello")
        late_channel = channels[late.getsockname()[1]]
        assert recv_while_polling(server, late_channel.remote, 5) == b"hello"

        healthy.close()
        late.close()
        stalled.close()

    def test_slow_channel_open_does_not_stall_other_connections(self):
        release = threading.Event()
        slow_ports = set()
        channels = {}

        def handler(client_socket, client_address):
            if client_address[1] in slow_ports:
                release.wait(5)
            channel = FakeChannel()
            channels[client_address[1]] = channel
            return channel

        proxy_server = ProxyServer(0, handler)
        proxy_server.start()
        slow = connect(proxy_server)
        slow_ports.add(slow.getsockname()[1])

        try:
            fast = connect(proxy_server)
            poll_until(proxy_server, lambda: fast.getsockname()[1] in channels)
            assert slow.getsockname()[1] not in channels

            fast.sendall(b"ping")
            fast_channel = channels[fast.getsockname()[1]]
            assert recv_while_polling(proxy_server, fast_channel.remote, 4) == b"ping"

            release.set()
            wait_for_connections(proxy_server, 2)
            fast.close()
        finally:
            release.set()
            slow.close()
            proxy_server.close()
            for channel in channels.values():
                channel.remote.close()


# ============================================================================
# Stream pump error handling
# ============================================================================

class TestStreamPump:
    """Tests for StreamPump error handling"""

    @pytest.fixture
    def client_socket(self):
        client_socket = MagicMock(spec=socket.socket)
        client_socket.getpeername.return_value = ("127.0.0.1", 40000)
        return client_socket

    @pytest.fixture
    def channel(self):
        channel = MagicMock(spec=paramiko.Channel)
        channel.closed = False
        return channel

    @pytest.fixture
    def on_error(self):
        return MagicMock()

    @pytest.fixture
    def pump(self, client_socket, channel, on_error):
        return StreamPump(client_socket, channel, 1, on_error=on_error)

    def test_connection_reset_destroys_socket_quietly(self, pump, client_socket, channel,
                                                      on_error):
        client_socket.recv.side_effect = ConnectionResetError(errno.ECONNRESET, "reset")

        pump._run(pump._pump_upstream)

        client_socket.close.assert_called_once()
        channel.close.assert_called_once()
        assert pump.closed
        on_error.assert_not_called()

    def test_other_socket_errors_are_reported(self, pump, client_socket, channel, on_error):
        error = OSError(errno.EIO, "I/O error")
        client_socket.recv.side_effect = error

        pump._run(pump._pump_upstream)

        on_error.assert_called_once_with(pump, error)
        assert pump.closed
        channel.close.assert_called_once()

    def test_other_socket_errors_raise_without_error_callback(self, client_socket, channel):
        error = OSError(errno.EIO, "I/O error")
        client_socket.recv.side_effect = error
        pump = StreamPump(client_socket, channel, 1)

        with pytest.raises(OSError) as exc_info:
            pump._run(pump._pump_upstream)

        assert exc_info.value is error

    def test_errors_after_destroy_are_not_reported(self, pump, client_socket, on_error):
        def closed_underneath(size):
            pump.destroy()
            raise OSError(errno.EBADF, "Bad file descriptor")

        client_socket.recv.side_effect = closed_underneath

        pump._run(pump._pump_upstream)

        on_error.assert_not_called()

    def test_client_end_is_informational(self, pump, client_socket, channel):
        client_socket.recv.return_value = b""

        pump._run(pump._pump_upstream)

        channel.shutdown_write.assert_called_once()
        client_socket.close.assert_not_called()
        assert pump.downstream_open
        assert pump.peer_port == 40000

    def test_remote_end_half_closes_client(self, pump, client_socket, channel):
        channel.recv.return_value = b""

        pump._run(pump._pump_downstream)

        client_socket.shutdown.assert_called_once_with(socket.SHUT_WR)
        assert pump.upstream_open
        assert not pump.closed

    def test_reset_while_sending_reply(self, pump, client_socket, channel, on_error):
        channel.recv.return_value = b"reply"
        client_socket.sendall.side_effect = ConnectionResetError(errno.ECONNRESET, "reset")

        pump._run(pump._pump_downstream)

        assert pump.closed
        channel.close.assert_called_once()
        on_error.assert_not_called()

    def test_destroy_notifies_once(self, client_socket, channel):
        on_closed = MagicMock()
        pump = StreamPump(client_socket, channel, 7, on_closed=on_closed)

        pump.destroy()
        pump.destroy()

        on_closed.assert_called_once_with(pump)
        client_socket.shutdown.assert_called_once_with(socket.SHUT_RDWR)
        client_socket.close.assert_called_once()
