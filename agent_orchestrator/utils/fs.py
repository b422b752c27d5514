"""
File system helpers for session records and plugin scratch files.

This module provides:
- Atomic writes (write to temp file, then rename) for record overwrites
- Exclusive create-if-absent for session ID reservation
- Directory creation and tolerant file removal
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """
    Create a directory if it does not exist (like mkdir -p).

    Raises:
        FileSystemError: If directory creation fails.
    """
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}")


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Write content to a file atomically.

    The content goes to a temp file in the same directory which is then
    renamed over the target, so readers never observe a half-written record.

    Raises:
        FileSystemError: If write operation fails.
    """
    path = Path(path)
    ensure_dir(path.parent)

    try:
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding=encoding) as f:
                f.write(content)
            os.replace(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}")


def create_exclusive(path: str | Path) -> bool:
    """
    Create an empty file only if it does not already exist.

    Uses O_CREAT | O_EXCL, which the OS guarantees to be atomic, so exactly
    one of several concurrent callers gets True.

    Returns:
        True if this call created the file, False if it already existed.

    Raises:
        FileSystemError: For any failure other than the file existing.
    """
    path = Path(path)
    ensure_dir(path.parent)
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        return False
    except OSError as e:
        raise FileSystemError(f"Failed to create {path}: {e}")
    os.close(fd)
    return True


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a file's contents with encoding handling.

    Raises:
        FileSystemError: If file cannot be read or decoded.
    """
    path = Path(path)

    if not path.is_file():
        raise FileSystemError(f"File not found: {path}")

    try:
        return path.read_text(encoding=encoding)
    except UnicodeDecodeError as e:
        raise FileSystemError(f"Failed to decode file {path} with encoding {encoding}: {e}")
    except OSError as e:
        raise FileSystemError(f"Failed to read file {path}: {e}")


def remove_file(path: str | Path) -> bool:
    """
    Remove a file if it exists.

    Returns:
        True if file was removed, False if it didn't exist.

    Raises:
        FileSystemError: If removal fails.
    """
    path = Path(path)
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        raise FileSystemError(f"Failed to remove file {path}: {e}")


def copy_file(src: str | Path, dst: str | Path) -> Path:
    """
    Copy a file to a new location, creating parent directories.

    Raises:
        FileSystemError: If copy fails.
    """
    src = Path(src)
    dst = Path(dst)

    if not src.is_file():
        raise FileSystemError(f"Source file not found: {src}")

    ensure_dir(dst.parent)
    try:
        shutil.copy2(src, dst)
        return dst
    except OSError as e:
        raise FileSystemError(f"Failed to copy {src} to {dst}: {e}")
