"""Utility functions for the snapshot engine.

This module provides shared helpers used across the engine, such as
checksums, path normalization, timestamps and content encoding.
"""

import base64
import binascii
import hashlib
import re
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Union

from snapshot_engine.models.base import ContentEncoding

Clock = Callable[[], datetime]

_SIZE_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 * 1024,
    "GB": 1024 * 1024 * 1024,
}


def utc_now() -> datetime:
    """Default clock used for capture timestamps."""
    return datetime.now(timezone.utc)


def compute_checksum(data: bytes) -> str:
    """Computes the SHA-256 hex digest of raw file bytes.

    Args:
        data: The file content.

    Returns:
        A hex string representing the checksum.
    """
    return hashlib.sha256(data).hexdigest()


def to_posix(path: Union[str, Path]) -> str:
    """Normalizes path separators to forward slashes."""
    return str(path).replace("\\", "/")


def is_safe_relative_path(relative_path: str) -> bool:
    """Checks that a snapshot path stays inside its base directory.

    Args:
        relative_path: A POSIX-style path taken from a snapshot.

    Returns:
        False for absolute paths, drive-qualified paths and paths with '..'
        segments.
    """
    normalized = to_posix(relative_path)
    if not normalized or normalized.startswith("/"):
        return False
    if re.match(r"^[A-Za-z]:", normalized):
        return False
    return ".." not in PurePosixPath(normalized).parts


def isoformat_timestamp(epoch_seconds: float) -> str:
    """Converts a filesystem timestamp to an ISO-8601 UTC string."""
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def encode_content(data: bytes) -> tuple[str, ContentEncoding]:
    """Encodes raw bytes for storage inside a FileEntry.

    Text that decodes as UTF-8 is stored verbatim; anything else is stored
    base64-encoded.

    Args:
        data: Raw file bytes.

    Returns:
        A tuple of (content, encoding).
    """
    try:
        return data.decode("utf-8"), "utf-8"
    except UnicodeDecodeError:
        return base64.b64encode(data).decode("ascii"), "base64"


def decode_content(content: str, encoding: ContentEncoding = "utf-8") -> bytes:
    """Reverses `encode_content`.

    Raises:
        ValueError: If base64 content is corrupt.
    """
    if encoding == "base64":
        try:
            return base64.b64decode(content.encode("ascii"), validate=True)
        except binascii.Error as e:
            raise ValueError(f"Invalid base64 content: {e}") from e
    return content.encode("utf-8")


def parse_size(limit: Union[str, int]) -> int:
    """Parses a human size such as '100MB' into bytes.

    Args:
        limit: An integer byte count or a string like '512KB' or '1GB'.

    Returns:
        The size in bytes.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    if isinstance(limit, int):
        return limit
    match = re.match(r"^\s*(\d+)\s*([A-Za-z]*)\s*$", limit)
    if not match:
        raise ValueError(f"Invalid size: {limit!r}")
    value, unit = match.groups()
    unit = unit.upper() or "B"
    if unit not in _SIZE_UNITS:
        raise ValueError(f"Unknown size unit: {unit}")
    return int(value) * _SIZE_UNITS[unit]
