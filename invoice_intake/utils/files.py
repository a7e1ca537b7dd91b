"""Filesystem helpers: content hashing and safe relocation."""

import errno
import hashlib
import os
import shutil
from pathlib import Path

from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

_CHUNK_SIZE = 1024 * 1024


def sha256_bytes(data: bytes) -> str:
    """Hex SHA-256 digest of a byte string."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """Hex SHA-256 digest of a file, read in chunks.

    Raises:
        FileNotFoundError: If the file vanished before hashing.
    """
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def move_file_safe(source: Path, destination: Path) -> None:
    """Move a file, atomically when both paths share a filesystem.

    Tries ``os.replace`` first. When the destination is on another device
    the file is copied and the source unlinked afterwards, so a crash in
    between leaves a copy in both places rather than in neither.

    Args:
        source: Existing file to move.
        destination: Target path; parent directories are created.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.replace(source, destination)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        logger.debug("Cross-device move, copying %s -> %s", source, destination)
        shutil.copy2(source, destination)
        source.unlink()


def delete_quietly(path: Path) -> bool:
    """Unlink a file, returning ``False`` when it was already gone."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
