"""Logging configuration for the secure tunnel."""

import logging
import logging.handlers
import sys
from typing import Optional, Tuple

from .config import Config


class TunnelLogger:
    """Custom logger for the secure tunnel."""

    def __init__(self, name: str = "pgtunnel", log_file: Optional[str] = None):
        """Initialize the tunnel logger."""
        self.logger = logging.getLogger(name)
        self.log_file = log_file if log_file is not None else Config.LOG_FILE
        self.log_level = getattr(logging, Config.LOG_LEVEL.upper(), logging.WARNING)

        self._setup_logger()

    def _setup_logger(self):
        """Setup logger with console and optional file handlers."""
        # Clear existing handlers
        self.logger.handlers.clear()

        # Set log level
        self.logger.setLevel(self.log_level)

        # Create formatter
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Console handler; stdout carries the connection instructions
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        if not self.log_file:
            return

        # File handler with rotation
        try:
            file_handler = logging.handlers.RotatingFileHandler(
                self.log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5
            )
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)
        except OSError as e:
            self.logger.warning(f"Could not setup file logging: {e}")

    def get_logger(self) -> logging.Logger:
        """Get the configured logger."""
        return self.logger


def setup_logging(log_file: Optional[str] = None) -> logging.Logger:
    """Setup logging for the tunnel application."""
    tunnel_logger = TunnelLogger(log_file=log_file)
    return tunnel_logger.get_logger()


def log_tunnel_ready(logger: logging.Logger, local_port: int,
                     remote_host: str, remote_port: int):
    """Log that the tunnel is accepting connections."""
    logger.info(
        f"Tunnel READY - Local: localhost:{local_port}, "
        f"Remote: {remote_host}:{remote_port}"
    )


def log_connection_opened(logger: logging.Logger, connection_id: int,
                          peer: Tuple[str, int]):
    """Log a newly forwarded connection."""
    logger.info(
        f"Connection OPENED - ID: {connection_id}, Peer: {peer[0]}:{peer[1]}"
    )


def log_connection_ended(logger: logging.Logger, connection_id: int, peer_port: int):
    """Log a client finishing its side of a connection."""
    logger.debug(
        f"Connection ENDED by client - ID: {connection_id}, Peer port: {peer_port}"
    )


def log_connection_reset(logger: logging.Logger, connection_id: int, peer_port: int):
    """Log a connection reset by the client."""
    logger.info(
        f"Connection RESET by client - ID: {connection_id}, Peer port: {peer_port}"
    )


def log_forward_error(logger: logging.Logger, connection_id: int,
                      peer: Tuple[str, int], error: str):
    """Log a failure to open a forwarded channel."""
    logger.error(
        f"Forward ERROR - ID: {connection_id}, "
        f"Peer: {peer[0]}:{peer[1]}, Error: {error}"
    )


def log_connection_closed(logger: logging.Logger, connection_id: int,
                          sent: int, received: int):
    """Log a connection closure."""
    logger.info(
        f"Connection CLOSED - ID: {connection_id}, "
        f"Bytes sent: {sent}, Bytes received: {received}"
    )
