"""Bidirectional relay between a local client socket and a forwarded channel."""

import errno
import logging
import socket
import threading
from typing import Callable, Optional

import paramiko

from .logging import (
    log_connection_closed,
    log_connection_ended,
    log_connection_reset,
)

BUFFER_SIZE = 16384


class StreamPump:
    """
    Relay traffic for one forwarded connection.

    Each direction runs on its own thread, so a peer that stops reading only
    stalls its own connection. When one side reaches EOF only the write side
    of its peer is shut down, and the other direction keeps flowing until it
    finishes as well.
    """

    def __init__(self, client_socket: socket.socket, channel: paramiko.Channel,
                 connection_id: int,
                 on_closed: Optional[Callable[["StreamPump"], None]] = None,
                 on_error: Optional[Callable[["StreamPump", Exception], None]] = None):
        """
        Initialize the pump.

        Args:
            client_socket: Blocking socket accepted by the local listener
            channel: Forwarded channel to the remote endpoint
            connection_id: Identifier used in log messages
            on_closed: Called once both endpoints have been closed
            on_error: Receives unexpected relay errors after the pump is destroyed
        """
        self.client_socket = client_socket
        self.channel = channel
        self.connection_id = connection_id
        self.on_closed = on_closed
        self.on_error = on_error
        self.logger = logging.getLogger(__name__)

        self.upstream_open = True
        self.downstream_open = True
        self.closed = False
        self.bytes_sent = 0
        self.bytes_received = 0
        self.peer_port = self._peer_port()
        self.state_lock = threading.Lock()
        self.threads = []

    def _peer_port(self) -> int:
        try:
            return self.client_socket.getpeername()[1]
        except (OSError, IndexError, TypeError):
            return 0

    def start(self):
        """Start one relay thread per direction."""
        for direction, pump in (("c2r", self._pump_upstream), ("r2c", self._pump_downstream)):
            thread = threading.Thread(
                target=self._run,
                args=(pump,),
                name=f"pgtunnel-{self.connection_id}-{direction}",
                daemon=True,
            )
            self.threads.append(thread)
            thread.start()

    def join(self, timeout: Optional[float] = None):
        """Wait for both relay threads to finish."""
        for thread in self.threads:
            thread.join(timeout)

    def _run(self, pump: Callable[[], None]):
        try:
            pump()
        except Exception as e:
            if self.closed:
                # Endpoint closed underneath a blocked read or write
                self.logger.debug(f"Connection {self.connection_id} relay stopped: {e}")
                return
            self.destroy()
            if self.on_error is None:
                raise
            self.on_error(self, e)

    def _pump_upstream(self):
        """Pump client -> channel until the client finishes."""
        while not self.closed:
            try:
                data = self.client_socket.recv(BUFFER_SIZE)
            except ConnectionResetError:
                log_connection_reset(self.logger, self.connection_id, self.peer_port)
                self.destroy()
                return

            if not data:
                log_connection_ended(self.logger, self.connection_id, self.peer_port)
                self._finish_upstream()
                return

            if self.channel.closed:
                self._finish_upstream()
                return

            self.channel.sendall(data)
            self.bytes_sent += len(data)

    def _pump_downstream(self):
        """Pump channel -> client until the remote end finishes."""
        while not self.closed:
            data = self.channel.recv(BUFFER_SIZE)
            if not data:
                self._finish_downstream()
                return

            try:
                self.client_socket.sendall(data)
            except ConnectionResetError:
                log_connection_reset(self.logger, self.connection_id, self.peer_port)
                self.destroy()
                return

            self.bytes_received += len(data)

    def _finish_upstream(self):
        if self.closed:
            return
        if not self.channel.closed:
            self.channel.shutdown_write()

        with self.state_lock:
            self.upstream_open = False
            finished = not self.downstream_open

        if finished:
            self.destroy()

    def _finish_downstream(self):
        if self.closed:
            return
        self._shutdown_client(socket.SHUT_WR)

        with self.state_lock:
            self.downstream_open = False
            finished = not self.upstream_open

        if finished:
            self.destroy()

    def _shutdown_client(self, how: int):
        try:
            self.client_socket.shutdown(how)
        except OSError as e:
            # Peer already disconnected
            if e.errno != errno.ENOTCONN:
                raise

    def destroy(self):
        """Close both endpoints. Safe to call more than once, from any thread."""
        with self.state_lock:
            if self.closed:
                return
            self.closed = True
            self.upstream_open = False
            self.downstream_open = False

        # Wakes a relay thread blocked on the client socket
        try:
            self._shutdown_client(socket.SHUT_RDWR)
        finally:
            self.client_socket.close()
            self.channel.close()

        log_connection_closed(
            self.logger, self.connection_id, self.bytes_sent, self.bytes_received
        )

        if self.on_closed:
            self.on_closed(self)
