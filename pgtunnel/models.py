"""Data models for the secure tunnel."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .auth import parse_host_key_entry
from .config import DEFAULT_PG_PORT, DEFAULT_SSH_PORT, LOCAL_PG_HOSTNAME


def _validate_port(port: int, label: str):
    if port < 1 or port > 65535:
        raise ValueError(f"Invalid {label} port: {port}")


@dataclass(frozen=True)
class SshConnectionInfo:
    """Ephemeral SSH login credentials and the pinned bastion host key."""

    host: str
    username: str
    private_key: str
    host_key: str
    host_key_algorithm: str
    port: int = DEFAULT_SSH_PORT

    def __post_init__(self):
        """Validate the SSH connection data."""
        if not self.host:
            raise ValueError("SSH host is required")
        if not self.username:
            raise ValueError("SSH username is required")
        if not self.private_key:
            raise ValueError("SSH private key is required")
        if not self.host_key or not self.host_key_algorithm:
            raise ValueError("SSH host key is required")
        _validate_port(self.port, "SSH")

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "SshConnectionInfo":
        """Build from an adhoc SSH user response body."""
        algorithm, host_key = parse_host_key_entry(payload.get("publicSshHostKey", ""))
        return cls(
            host=payload.get("sshHost", ""),
            port=int(payload.get("sshPort") or DEFAULT_SSH_PORT),
            username=payload.get("sshUsername", ""),
            private_key=payload.get("sshPrivateKey", ""),
            host_key=host_key,
            host_key_algorithm=algorithm,
        )

    def __repr__(self) -> str:
        return (
            f"SshConnectionInfo(host={self.host!r}, port={self.port}, "
            f"username={self.username!r}, host_key_algorithm={self.host_key_algorithm!r})"
        )


@dataclass(frozen=True)
class DbConnectionInfo:
    """Ephemeral database login credentials."""

    host: str
    name: str
    username: str
    password: str
    write_access: bool = False
    port: int = DEFAULT_PG_PORT

    def __post_init__(self):
        """Validate the database connection data."""
        if not self.host:
            raise ValueError("Database host is required")
        if not self.name:
            raise ValueError("Database name is required")
        if not self.username:
            raise ValueError("Database username is required")
        _validate_port(self.port, "database")

    @classmethod
    def from_api(cls, payload: Dict[str, Any], write_access: bool) -> "DbConnectionInfo":
        """Build from an adhoc DB user response body."""
        return cls(
            host=payload.get("dbHost", ""),
            port=int(payload.get("dbPort") or DEFAULT_PG_PORT),
            name=payload.get("dbName", ""),
            username=payload.get("dbUsername", ""),
            password=payload.get("dbPassword", ""),
            write_access=write_access,
        )

    def connection_url(self, local_port: int) -> str:
        """Connection URL for a client talking to the local end of the tunnel."""
        return (
            f"postgres://{self.username}:{self.password}"
            f"@{LOCAL_PG_HOSTNAME}:{local_port}/{self.name}"
        )

    def __repr__(self) -> str:
        return (
            f"DbConnectionInfo(host={self.host!r}, port={self.port}, name={self.name!r}, "
            f"username={self.username!r}, write_access={self.write_access})"
        )


class TunnelState(Enum):
    """Lifecycle states of a tunnel session."""

    PROVISIONED = "provisioned"
    CONNECTED = "connected"
    LISTENING = "listening"
    CLOSED = "closed"


@dataclass
class TunnelSession:
    """Represents the single tunnel of a process run."""

    ssh_info: SshConnectionInfo
    db_info: DbConnectionInfo
    local_port: int = DEFAULT_PG_PORT
    connection: Optional[Any] = None
    state: TunnelState = TunnelState.PROVISIONED

    def __post_init__(self):
        """Validate the tunnel session data."""
        _validate_port(self.local_port, "local")

    def mark_connected(self, connection: Any):
        """Record the established SSH connection."""
        if self.state is not TunnelState.PROVISIONED:
            raise RuntimeError(f"Cannot connect a tunnel in state {self.state.value}")
        self.connection = connection
        self.state = TunnelState.CONNECTED

    def mark_listening(self):
        """Record that the local listener is accepting connections."""
        if self.state is not TunnelState.CONNECTED:
            raise RuntimeError(f"Cannot listen on a tunnel in state {self.state.value}")
        self.state = TunnelState.LISTENING

    def mark_closed(self):
        """Record that the tunnel resources have been released."""
        self.state = TunnelState.CLOSED
