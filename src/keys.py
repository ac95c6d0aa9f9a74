"""Private key loading helpers."""

import io
import os
from pathlib import Path
from typing import Optional

import paramiko

from .exceptions import AuthFailure, ConfigurationError, PathNotFound

# Tried in order; DSA keys are not supported by current paramiko releases
KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def expand_key_path(key_path: str) -> Path:
    """Resolve ``~`` and relative key paths."""
    path = Path(os.path.expanduser(key_path))
    if not path.is_absolute():
        path = path.resolve()
    return path


def read_key_file(key_path: str, max_size: int = 64 * 1024) -> str:
    """Read a private key file and return its text content."""
    if not key_path:
        raise ConfigurationError("Key path is empty")

    path = expand_key_path(key_path)
    if not path.is_file():
        raise PathNotFound(f"Private key file not found: {path}")
    if path.stat().st_size > max_size:
        raise ConfigurationError(f"Private key file is too large: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        raise ConfigurationError(f"Private key file is not a text key: {path}")


def load_private_key(key_content: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse private key text into a paramiko key object."""
    last_error = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(key_content), password=passphrase)
        except paramiko.PasswordRequiredException:
            raise AuthFailure("Private key is encrypted and no passphrase was given")
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
    raise ConfigurationError(f"Unsupported or malformed private key: {last_error}")
