"""Configuration module for the secure tunnel."""

import os
import re
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

LOCAL_PG_HOSTNAME = "localhost"
DEFAULT_PG_PORT = 5432
DEFAULT_SSH_PORT = 22

_INTEGER_PATTERN = re.compile(r"^-?\d+$")


class Config:
    """Configuration class for the secure tunnel."""

    # API configuration
    HEROKU_API_URL = os.getenv("HEROKU_API_URL", "https://api.heroku.com")
    BOREALIS_PG_API_URL = os.getenv(
        "BOREALIS_PG_API_URL", "https://pg-heroku-addon-api.borealis-data.com"
    )
    HEROKU_API_KEY = os.getenv("HEROKU_API_KEY", "")

    # Temporary auth token configuration
    TEMP_AUTH_DESCRIPTION = "Borealis PG CLI plugin temporary auth token"
    TEMP_AUTH_EXPIRES_IN = int(os.getenv("TEMP_AUTH_EXPIRES_IN", "180"))
    TEMP_AUTH_SCOPE = ["read", "identity"]

    # Logging configuration
    LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING")
    LOG_FILE = os.getenv("LOG_FILE", "")

    @classmethod
    def validate(cls):
        """Validate the configuration."""
        for url in (cls.HEROKU_API_URL, cls.BOREALIS_PG_API_URL):
            if not url.startswith(("https://", "http://")):
                raise ValueError(f"Invalid API URL: {url}")

        if cls.TEMP_AUTH_EXPIRES_IN < 1:
            raise ValueError("Invalid temporary auth expiry")

        if cls.LOG_LEVEL.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {cls.LOG_LEVEL}")


def parse_port(value: str) -> int:
    """
    Parse a local port number for the tunnel listener.

    Raises:
        ValueError: If the value is not an integer or is not a valid port
    """
    text = str(value).strip()
    if not _INTEGER_PATTERN.match(text):
        raise ValueError(f'Value "{value}" is not a valid integer')

    port = int(text)
    if port < 1 or port > 65535:
        raise ValueError(f"Value {port} is outside the range of valid port numbers")

    return port
