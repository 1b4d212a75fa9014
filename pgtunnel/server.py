"""Local TCP listener that hands each accepted connection to a forwarded channel."""

import errno
import itertools
import logging
import queue
import selectors
import socket
import threading
from typing import Callable, Dict, Optional, Tuple

import paramiko

from .config import LOCAL_PG_HOSTNAME
from .logging import log_connection_opened, log_forward_error
from .proxy import StreamPump

ConnectionHandler = Callable[[socket.socket, Tuple[str, int]], paramiko.Channel]


class LocalPortInUseError(Exception):
    """Raised when the local listen port is already taken."""

    def __init__(self, port: int):
        super().__init__(f"Local port {port} is already in use")
        self.port = port


class ProxyServer:
    """
    Local end of the tunnel.

    The listening socket is polled from the calling thread. Every accepted
    connection is handled on its own thread, from opening its channel to the
    end of its relay, so a slow channel open or a client that stops reading
    never holds up the other connections. Unexpected errors raised on those
    threads are re-raised from `poll`.
    """

    def __init__(self, local_port: int, connection_handler: ConnectionHandler,
                 bind_host: str = LOCAL_PG_HOSTNAME,
                 selector: Optional[selectors.BaseSelector] = None,
                 backlog: int = 100):
        """
        Initialize the proxy server.

        Args:
            local_port: Port to listen on
            connection_handler: Returns the forwarded channel for an accepted socket
            bind_host: Local address to bind; never a wildcard address
            selector: Selector watching the listening socket
            backlog: Listen backlog
        """
        self.local_port = local_port
        self.connection_handler = connection_handler
        self.bind_host = bind_host
        self.selector = selector or selectors.DefaultSelector()
        self.backlog = backlog
        self.logger = logging.getLogger(__name__)

        self.server_socket: Optional[socket.socket] = None
        self.running = False
        self.pumps: Dict[int, StreamPump] = {}
        self.connection_lock = threading.Lock()
        self.errors: "queue.Queue[Exception]" = queue.Queue()
        self._connection_ids = itertools.count(1)

    def start(self):
        """
        Bind and listen on the local port.

        Raises:
            LocalPortInUseError: If another process holds the port
            OSError: On any other bind failure
        """
        server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        try:
            server_socket.bind((self.bind_host, self.local_port))
        except OSError as e:
            server_socket.close()
            if e.errno == errno.EADDRINUSE:
                raise LocalPortInUseError(self.local_port) from e
            raise

        server_socket.listen(self.backlog)
        server_socket.setblocking(False)
        self.selector.register(server_socket, selectors.EVENT_READ, self._accept)

        self.server_socket = server_socket
        self.running = True
        self.logger.info(f"Proxy server listening on {self.bind_host}:{self.local_port}")

    @property
    def address(self) -> Tuple[str, int]:
        """Address the listening socket is bound to."""
        return self.server_socket.getsockname()

    def _accept(self, server_socket: socket.socket, mask: int):
        try:
            client_socket, client_address = server_socket.accept()
        except BlockingIOError:
            return

        # Relay threads use blocking I/O; only the listening socket is polled
        client_socket.setblocking(True)
        connection_id = next(self._connection_ids)
        log_connection_opened(self.logger, connection_id, client_address)

        connection_thread = threading.Thread(
            target=self._handle_connection,
            args=(client_socket, client_address, connection_id),
            name=f"pgtunnel-{connection_id}",
            daemon=True,
        )
        connection_thread.start()

    def _handle_connection(self, client_socket: socket.socket,
                           client_address: Tuple[str, int], connection_id: int):
        """Open the forwarded channel for one client and start relaying."""
        try:
            channel = self.connection_handler(client_socket, client_address)
        except Exception as e:
            log_forward_error(self.logger, connection_id, client_address, str(e))
            client_socket.close()
            self.errors.put(e)
            return

        pump = StreamPump(
            client_socket,
            channel,
            connection_id,
            on_closed=self._remove_pump,
            on_error=self._relay_failed,
        )
        with self.connection_lock:
            accepted = self.running
            if accepted:
                self.pumps[connection_id] = pump

        if not accepted:
            # Server closed while the channel was opening
            pump.destroy()
            return

        pump.start()

    def _remove_pump(self, pump: StreamPump):
        with self.connection_lock:
            self.pumps.pop(pump.connection_id, None)

    def _relay_failed(self, pump: StreamPump, error: Exception):
        self.logger.error(f"Connection {pump.connection_id} relay failed: {error}")
        self.errors.put(error)

    def poll(self, timeout: Optional[float] = None):
        """
        Accept pending connections.

        Raises:
            Exception: The first unexpected error from a connection thread
        """
        for key, mask in self.selector.select(timeout):
            callback = key.data
            callback(key.fileobj, mask)

        try:
            error = self.errors.get_nowait()
        except queue.Empty:
            return
        raise error

    def serve_forever(self, poll_interval: float = 1.0):
        """Run the accept loop until the server is closed."""
        if not self.running:
            raise RuntimeError("Proxy server has not been started")

        while self.running:
            self.poll(poll_interval)

    def get_active_connections_count(self) -> int:
        """Get number of active forwarded connections."""
        with self.connection_lock:
            return len(self.pumps)

    def close(self):
        """Close all relays and the listening socket. Safe to call more than once."""
        with self.connection_lock:
            self.running = False
            pumps = list(self.pumps.values())

        for pump in pumps:
            pump.destroy()

        if self.server_socket is not None:
            self.selector.unregister(self.server_socket)
            self.server_socket.close()
            self.server_socket = None
            self.logger.info("Proxy server stopped")


def create_server(local_port: int, connection_handler: ConnectionHandler) -> ProxyServer:
    """Create and return a proxy server instance."""
    return ProxyServer(local_port, connection_handler)
