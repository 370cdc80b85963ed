"""Working-directory resolution for external CLI runs."""
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from .errors import ExternalCliProtocolError

logger = logging.getLogger(__name__)


def resolve_working_directory(root: str, path: str) -> str:
    """Absolute, normalized form of *path*; relative paths hang off *root*."""
    expanded = os.path.expanduser(path.strip())
    if os.path.isabs(expanded):
        return os.path.normpath(expanded)
    base = os.path.abspath(os.path.expanduser(root or "."))
    return os.path.normpath(os.path.join(base, expanded))


def _topmost_missing(path: Path) -> Path:
    top = path
    while not top.parent.exists() and top.parent != top:
        top = top.parent
    return top


def prepare_working_directory(
    path: str | None, root: str, create_if_missing: bool,
) -> str:
    """Resolve *path* and make sure it is a usable directory.

    Raises ExternalCliProtocolError naming the path when it is missing
    and may not be created, is not a directory, or cannot be created.
    A failed creation removes whatever part of the tree it made.
    """
    raw = (path or "").strip()
    if not raw:
        raise ExternalCliProtocolError(
            "working_directory is required. Confirm it in conversation before "
            "starting the external CLI run.",
            field_name="working_directory",
        )

    resolved = resolve_working_directory(root, raw)
    target = Path(resolved)

    if target.exists():
        if not target.is_dir():
            raise ExternalCliProtocolError(
                f"Working directory is not a directory: {resolved}",
                path=resolved,
            )
        return resolved

    if not create_if_missing:
        raise ExternalCliProtocolError(
            f"Working directory does not exist: {resolved}. Ask the user to "
            "confirm creation and rerun with create_if_missing=true.",
            path=resolved,
        )

    top = _topmost_missing(target)
    try:
        target.mkdir(parents=True)
    except FileExistsError:
        if target.is_dir():
            return resolved
        raise ExternalCliProtocolError(
            f"Working directory is not a directory: {resolved}",
            path=resolved,
        ) from None
    except OSError as exc:
        if top.exists() and top.is_dir():
            shutil.rmtree(top, ignore_errors=True)
        raise ExternalCliProtocolError(
            f"Failed to create working directory {resolved}: {exc}",
            path=resolved,
        ) from exc

    logger.info("Created working directory %s", resolved)
    return resolved
