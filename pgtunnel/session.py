"""SSH session to the bastion host, used to open forwarded channels."""

import logging
import threading
from enum import Enum
from typing import Callable, List, Optional, Tuple

import paramiko

from .auth import get_key_fingerprint, load_private_key, verify_host_key
from .models import SshConnectionInfo

# An ssh-rsa key may be offered with any of its signature algorithms
RSA_HOST_KEY_ALGORITHMS = ["rsa-sha2-512", "rsa-sha2-256", "ssh-rsa"]


def host_key_algorithms(algorithm: str) -> List[str]:
    """Host key algorithms to negotiate for a pinned key of the given type."""
    if algorithm == "ssh-rsa":
        return list(RSA_HOST_KEY_ALGORITHMS)
    return [algorithm]


class HostKeyMismatchError(paramiko.SSHException):
    """Raised when the bastion presents a host key other than the pinned one."""

    def __init__(self, host: str, offered_fingerprint: str):
        super().__init__(
            f"Host key for {host} does not match the pinned key "
            f"(offered {offered_fingerprint})"
        )
        self.host = host
        self.offered_fingerprint = offered_fingerprint


class SessionState(Enum):
    """States of an SSH session."""

    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


class SSHSession:
    """Single outbound SSH connection that multiplexes forwarded channels."""

    def __init__(self, transport_factory: Callable[[Tuple[str, int]], paramiko.Transport] = None):  # type: ignore
        """
        Initialize the SSH session.

        Args:
            transport_factory: Builds a transport for a (host, port) address
        """
        self.logger = logging.getLogger(__name__)
        self.transport_factory = transport_factory or paramiko.Transport
        self.transport: Optional[paramiko.Transport] = None
        self.state = SessionState.UNCONNECTED
        self._state_lock = threading.Lock()

    def connect(self, info: SshConnectionInfo):
        """
        Connect and authenticate to the bastion host.

        The handshake only offers the host key algorithm of the pinned key,
        and the offered key must match it exactly before authentication
        is attempted.

        Raises:
            HostKeyMismatchError: If the bastion identity does not match
            paramiko.SSHException: On any other handshake or auth failure
        """
        with self._state_lock:
            if self.state is not SessionState.UNCONNECTED:
                raise RuntimeError(f"Cannot connect an SSH session in state {self.state.value}")
            self.state = SessionState.CONNECTING

        self.logger.info(f"Connecting to SSH host {info.host}:{info.port}")

        try:
            self.transport = self.transport_factory((info.host, info.port))
            self.transport.get_security_options().key_types = host_key_algorithms(
                info.host_key_algorithm
            )
            self.transport.start_client()

            server_key = self.transport.get_remote_server_key()
            offered = server_key.asbytes()
            if not verify_host_key(offered, info.host_key):
                raise HostKeyMismatchError(info.host, get_key_fingerprint(offered))

            self.logger.info(
                f"Host key for {info.host} verified ({get_key_fingerprint(offered)})"
            )

            self.transport.auth_publickey(info.username, load_private_key(info.private_key))
            if not self.transport.is_authenticated():
                raise paramiko.AuthenticationException(
                    f"Authentication failed for {info.username}@{info.host}"
                )

        except Exception as e:
            self.logger.error(f"Failed to connect to SSH host {info.host}:{info.port}: {e}")
            self.close()
            raise

        with self._state_lock:
            self.state = SessionState.READY

        self.logger.info(f"SSH session established to {info.host}:{info.port}")

    def forward(self, local_addr: str, local_port: int,
                remote_host: str, remote_port: int) -> paramiko.Channel:
        """
        Open a forwarded channel to a remote endpoint.

        Args:
            local_addr: Origin address reported to the remote end
            local_port: Origin port reported to the remote end
            remote_host: Destination host as seen from the bastion
            remote_port: Destination port

        Returns:
            The forwarded channel

        Raises:
            paramiko.ChannelException: If the bastion refuses the channel
            paramiko.SSHException: If the session is no longer usable
        """
        if self.state is not SessionState.READY:
            raise RuntimeError(f"Cannot forward over an SSH session in state {self.state.value}")

        channel = self.transport.open_channel(
            "direct-tcpip",
            dest_addr=(remote_host, remote_port),
            src_addr=(local_addr, local_port),
        )
        self.logger.debug(
            f"Opened forwarded channel {channel.get_id()} to {remote_host}:{remote_port}"
        )
        return channel

    def close(self):
        """Close the SSH session. Safe to call more than once."""
        with self._state_lock:
            if self.state is SessionState.CLOSED:
                return
            self.state = SessionState.CLOSED
            transport, self.transport = self.transport, None

        if transport is None:
            return

        try:
            transport.close()
            self.logger.info("SSH session closed")
        except Exception as e:
            self.logger.warning(f"Error closing SSH session: {e}")

    @property
    def is_ready(self) -> bool:
        """Whether channels can be opened over this session."""
        return self.state is SessionState.READY


def create_ssh_session() -> SSHSession:
    """Create and return an unconnected SSH session."""
    return SSHSession()
