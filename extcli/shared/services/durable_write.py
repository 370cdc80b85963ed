"""Crash-safe JSON file writes for run state.

A state file is replaced only by ``os.replace`` of a fully written and
fsynced sibling, so a reader (or the next process) sees the previous
history or the new one. Temp siblings left behind by a crash are swept
by ``sweep_temp_files``.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_TEMP_SUFFIX = ".tmp"


def _temp_prefix(path: Path) -> str:
    return f".{path.name}."


def _sync_directory(directory: Path) -> None:
    # Directory handles cannot be fsynced on Windows and some filesystems.
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        fd = os.open(directory, flags)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_json(path: Path, payload: Any, *, indent: int = 2) -> None:
    """Serialize *payload* and swap it in place of *path*."""
    text = json.dumps(payload, indent=indent, ensure_ascii=False) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=_temp_prefix(path),
        suffix=_TEMP_SUFFIX,
        delete=False,
    ) as handle:
        temp_path = Path(handle.name)
        try:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        except OSError:
            handle.close()
            temp_path.unlink(missing_ok=True)
            raise

    try:
        os.replace(temp_path, path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise
    _sync_directory(path.parent)


def sweep_temp_files(path: Path) -> int:
    """Delete temp siblings of *path* left by an interrupted write."""
    if not path.parent.is_dir():
        return 0
    removed = 0
    for candidate in path.parent.glob(f"{_temp_prefix(path)}*{_TEMP_SUFFIX}"):
        try:
            candidate.unlink()
            removed += 1
        except OSError as exc:
            logger.debug("Could not remove stale temp file %s: %s", candidate, exc)
    if removed:
        logger.info("Removed %d stale temp file(s) next to %s", removed, path.name)
    return removed
