"""Shared fixtures for the tunnel tests."""

import socket

import pytest

from pgtunnel.models import DbConnectionInfo, SshConnectionInfo

SSH_HOST = "my-fake-ssh-hostname"
SSH_USERNAME = "ssh-test-user"
SSH_PRIVATE_KEY = "my-fake-ssh-private-key"
HOST_KEY_ALGORITHM = "ssh-ed25519"
HOST_KEY = "AAAAC3NzaC1lZDI1NTE5AAAAIKkk9uh8+g/gKlLlbi4sVv4VJkiaLjYOJj+wVVyTGzhI"

PG_HOST = "my-fake-pg-hostname"
PG_READONLY_USERNAME = "ro_db_test_user"
PG_READWRITE_USERNAME = "rw_db_test_user"
PG_PASSWORD = "my-fake-db-password"
PG_DB_NAME = "fake_db"


class FakeChannel:
    """Socketpair-backed stand-in for a forwarded paramiko channel."""

    def __init__(self):
        self.local, self.remote = socket.socketpair()
        self.closed = False
        self.eof_sent = False

    def fileno(self):
        return self.local.fileno()

    def recv(self, size):
        return self.local.recv(size)

    def sendall(self, data):
        self.local.sendall(data)

    def shutdown_write(self):
        self.eof_sent = True
        self.local.shutdown(socket.SHUT_WR)

    def close(self):
        self.closed = True
        # Wakes a relay thread blocked in recv, as closing a paramiko channel does
        try:
            self.local.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.local.close()


@pytest.fixture
def ssh_info() -> SshConnectionInfo:
    """SSH credentials without an explicit port"""
    return SshConnectionInfo(
        host=SSH_HOST,
        username=SSH_USERNAME,
        private_key=SSH_PRIVATE_KEY,
        host_key=HOST_KEY,
        host_key_algorithm=HOST_KEY_ALGORITHM,
    )


@pytest.fixture
def db_info() -> DbConnectionInfo:
    """Read-only DB credentials without an explicit port"""
    return DbConnectionInfo(
        host=PG_HOST,
        name=PG_DB_NAME,
        username=PG_READONLY_USERNAME,
        password=PG_PASSWORD,
    )
