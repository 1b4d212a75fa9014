"""Host key pinning and key material handling for the bastion connection."""

import base64
import binascii
import hashlib
import hmac
import io
import logging
from typing import Tuple, Union

import paramiko

logger = logging.getLogger(__name__)

# Private key types the provisioning service may issue, tried in order
_PRIVATE_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def parse_host_key_entry(entry: str) -> Tuple[str, str]:
    """
    Split a public host key entry into its algorithm and base64 key.

    Args:
        entry: Entry in known_hosts form, e.g. "ssh-ed25519 AAAAC3Nz..."

    Returns:
        Tuple of (algorithm, base64_key)
    """
    parts = (entry or "").split()
    if len(parts) < 2:
        raise ValueError("Public host key entry must contain an algorithm and a key")

    return parts[0], parts[1]


def _decode_key(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return b""


def verify_host_key(offered: Union[str, bytes], expected: str) -> bool:
    """
    Check an offered SSH host key against the pinned key.

    The offered key may be the base64 text form or the raw decoded blob.
    Both are compared against the pinned base64 text; anything else is
    rejected.

    Args:
        offered: Host key presented during the handshake
        expected: Pinned host key in base64 text form

    Returns:
        True only if the offered key is exactly the pinned key
    """
    if not expected or not isinstance(expected, str):
        return False

    if isinstance(offered, str):
        if not offered:
            return False
        return hmac.compare_digest(offered.encode(), expected.encode())

    if isinstance(offered, (bytes, bytearray)):
        expected_bytes = _decode_key(expected)
        if not offered or not expected_bytes:
            return False
        return hmac.compare_digest(bytes(offered), expected_bytes)

    return False


def get_key_fingerprint(key_bytes: bytes) -> str:
    """Calculate the SHA256 fingerprint of a public key blob."""
    sha256_hash = hashlib.sha256(key_bytes).digest()
    return "SHA256:" + base64.b64encode(sha256_hash).decode().rstrip('=')


def load_private_key(key_text: str) -> paramiko.PKey:
    """
    Load a private key from its PEM/OpenSSH text form.

    Raises:
        paramiko.SSHException: If the key is not a supported type
    """
    for key_class in _PRIVATE_KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(key_text))
        except (paramiko.SSHException, ValueError) as e:
            logger.debug(f"Private key is not {key_class.__name__}: {e}")

    raise paramiko.SSHException("Unsupported or invalid SSH private key")
