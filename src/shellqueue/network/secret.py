"""Shared secret file handling."""

import hmac
import os
import secrets
from pathlib import Path

import structlog

from ..core.errors import ConfigError


logger = structlog.get_logger()


SECRET_BYTES = 64


def ensure_shared_secret(path: Path) -> bytes:
    """Read the secret, creating a random one on first start."""
    path = Path(path)
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        token = secrets.token_urlsafe(SECRET_BYTES)
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as handle:
            handle.write(token)
        logger.info("shared_secret_created", path=str(path))

    return read_shared_secret(path)


def read_shared_secret(path: Path) -> bytes:
    """The raw file contents are the credential; nothing is derived."""
    try:
        secret = Path(path).read_bytes()
    except OSError as e:
        raise ConfigError(f"Cannot read shared secret: {e}", config_path=str(path))

    if not secret:
        raise ConfigError("Shared secret file is empty", config_path=str(path))
    return secret


def secrets_match(expected: bytes, presented: bytes) -> bool:
    """Byte-for-byte comparison in constant time."""
    return hmac.compare_digest(expected, presented)
