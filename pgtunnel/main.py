"""Main entry point for the secure tunnel."""

import sys
import signal
import argparse
import logging
from typing import Callable, Optional, TextIO

from .config import Config, DEFAULT_PG_PORT, LOCAL_PG_HOSTNAME, parse_port
from .logging import setup_logging, log_tunnel_ready
from .models import DbConnectionInfo, TunnelSession
from .provisioning import BorealisPgClient, HerokuAuthClient, HerokuAuthError, ProvisioningError
from .server import LocalPortInUseError, ProxyServer, create_server
from .session import SSHSession, create_ssh_session


class ProcessHandle:
    """Signal registration and process exit for the running tunnel."""

    def on_signal(self, signum: int, handler: Callable[[int], None]):
        """Register a handler for a process signal."""
        signal.signal(signum, lambda received, frame: handler(received))

    def exit(self, code: int):
        """Exit the process with the given status."""
        sys.exit(code)


class TunnelApp:
    """Provisions credentials, connects to the bastion, and runs the local proxy."""

    def __init__(self, auth_client: Optional[HerokuAuthClient] = None,
                 api_client: Optional[BorealisPgClient] = None,
                 ssh_session_factory: Callable[[], SSHSession] = create_ssh_session,
                 listener_factory: Callable[..., ProxyServer] = create_server,
                 process: Optional[ProcessHandle] = None,
                 out: Optional[TextIO] = None, err: Optional[TextIO] = None):
        """Initialize the tunnel application with its collaborators."""
        self.logger = logging.getLogger(__name__)
        self.auth_client = auth_client or HerokuAuthClient()
        self.api_client = api_client or BorealisPgClient()
        self.ssh_session_factory = ssh_session_factory
        self.listener_factory = listener_factory
        self.process = process or ProcessHandle()
        self.out = out or sys.stdout
        self.err = err or sys.stderr

        self.tunnel: Optional[TunnelSession] = None
        self.ssh_session: Optional[SSHSession] = None
        self.server: Optional[ProxyServer] = None

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}, shutting down...")
            self.shutdown()
            self.process.exit(0)

        self.process.on_signal(signal.SIGINT, signal_handler)
        self.process.on_signal(signal.SIGTERM, signal_handler)

    def run(self, addon_name: str, local_port: int = DEFAULT_PG_PORT,
            write_access: bool = False) -> int:
        """
        Run the tunnel until interrupted.

        Returns:
            Process exit status
        """
        try:
            with self.auth_client.temporary_token() as token:
                ssh_info = self.api_client.create_ssh_user(addon_name, token)
                db_info = self.api_client.create_db_user(addon_name, token, write_access)
        except (HerokuAuthError, ProvisioningError) as e:
            self.err.write(f"Error: {e}\n")
            return 1

        self.tunnel = TunnelSession(ssh_info=ssh_info, db_info=db_info, local_port=local_port)

        self.server = self.listener_factory(local_port, self._forward_connection)
        try:
            self.server.start()
        except LocalPortInUseError as e:
            self.logger.error(str(e))
            self.err.write(f"Error: {e}\n")
            self.process.exit(1)
            return 1

        self.ssh_session = self.ssh_session_factory()
        try:
            self.ssh_session.connect(ssh_info)
        except Exception:
            self.server.close()
            raise
        self.tunnel.mark_connected(self.ssh_session)

        self.print_connection_instructions(db_info, local_port)
        self.setup_signal_handlers()

        self.tunnel.mark_listening()
        log_tunnel_ready(self.logger, local_port, db_info.host, db_info.port)
        try:
            self.server.serve_forever()
        finally:
            self.shutdown()
        return 0

    def _forward_connection(self, client_socket, client_address):
        """Open the forwarded channel for a newly accepted client socket."""
        db_info = self.tunnel.db_info
        return self.ssh_session.forward(
            LOCAL_PG_HOSTNAME, DEFAULT_PG_PORT, db_info.host, db_info.port
        )

    def print_connection_instructions(self, db_info: DbConnectionInfo, local_port: int):
        """Print how to connect to the database through the tunnel."""
        access = "read/write" if db_info.write_access else "read-only"
        lines = [
            f"Secure tunnel established ({access} access). Use the following "
            "values to connect to the database:",
            f"      Username: {db_info.username}",
            f"      Password: {db_info.password}",
            f"          Host: {LOCAL_PG_HOSTNAME}",
            f"          Port: {local_port}",
            f" Database name: {db_info.name}",
            f"           URL: {db_info.connection_url(local_port)}",
            "",
            "Press Ctrl+C to close the tunnel and exit",
        ]
        self.out.write("\n".join(lines) + "\n")
        self.out.flush()

    def shutdown(self):
        """Close the local relays and the SSH session."""
        if self.server is not None:
            self.server.close()
        if self.ssh_session is not None:
            self.ssh_session.close()
        if self.tunnel is not None:
            self.tunnel.mark_closed()


def _port_argument(value: str) -> int:
    try:
        return parse_port(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        prog="pgtunnel",
        description="Secure tunnel to a Borealis Isolated Postgres add-on"
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    tunnel_parser = subparsers.add_parser(
        'tunnel', help='Open a secure tunnel to the add-on Postgres server'
    )
    tunnel_parser.add_argument(
        '-o', '--addon', required=True,
        help='name or ID of an add-on or one of its attachments'
    )
    tunnel_parser.add_argument(
        '-p', '--port', type=_port_argument, default=DEFAULT_PG_PORT,
        help=f'local port number for the secure tunnel (default: {DEFAULT_PG_PORT})'
    )
    tunnel_parser.add_argument(
        '-w', '--write-access', action='store_true',
        help='allow write access to the add-on Postgres database'
    )

    return parser


def main(argv=None):
    """Main function with command line argument parsing."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command != 'tunnel':
        parser.print_help()
        sys.exit(1)

    Config.validate()
    setup_logging()

    app = TunnelApp()
    sys.exit(app.run(args.addon, args.port, args.write_access))


if __name__ == '__main__':
    main()
