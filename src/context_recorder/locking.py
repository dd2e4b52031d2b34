"""File locking and atomic file writes for the context store."""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import portalocker


def lock_path_for(path: Path) -> Path:
    """Path of the lock file guarding `path`."""
    return path.with_suffix(path.suffix + ".lock")


@contextmanager
def write_lock(path: Path, timeout: float = 10.0) -> Generator[None, None, None]:
    """Hold an exclusive lock for writes to `path`.

    The lock lives in a sibling ``<name>.lock`` file so that the target
    itself (a SQLite database, an export file) is never opened by
    portalocker.

    Raises:
        portalocker.LockException: If the lock cannot be acquired in time
    """
    lock_path = lock_path_for(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    if not lock_path.exists():
        lock_path.touch()

    with portalocker.Lock(lock_path, timeout=timeout):
        yield


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> None:
    """Write text to a temp file, then rename it over `path`."""
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with open(tmp_path, "w", encoding=encoding) as f:
            f.write(text)
        os.replace(tmp_path, path)
    except Exception:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def locked_atomic_write_text(
    path: Path,
    text: str,
    encoding: str = "utf-8",
    timeout: float = 10.0,
) -> None:
    """Atomic write while holding the lock for `path`."""
    with write_lock(path, timeout=timeout):
        atomic_write_text(path, text, encoding=encoding)
