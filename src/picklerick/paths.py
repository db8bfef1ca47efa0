"""Canonical filesystem paths for pickle sessions, worktrees and settings."""

from __future__ import annotations

import os
from pathlib import Path

PICKLE_DIR_NAME = ".pickle"

_env_settings = os.environ.get("PICKLE_SETTINGS_PATH")
SETTINGS_PATH = (
    Path(_env_settings).expanduser()
    if _env_settings
    else Path.home() / PICKLE_DIR_NAME / "settings.toml"
)

# Markers that identify a project root, checked from the innermost directory out.
_ROOT_MARKERS = (".pickle-root", ".git", "pyproject.toml", "package.json")


def find_project_root(start_dir: str | Path) -> Path:
    """Walk up from *start_dir* to the nearest directory holding a root marker.

    Falls back to *start_dir* itself when no marker is found.
    """
    start = Path(start_dir).resolve()
    for candidate in (start, *start.parents):
        if any((candidate / marker).exists() for marker in _ROOT_MARKERS):
            return candidate
    return start


def sessions_dir(root: str | Path) -> Path:
    return Path(root) / PICKLE_DIR_NAME / "sessions"


def session_path(root: str | Path, session_id: str) -> Path:
    return sessions_dir(root) / session_id


def worktrees_dir(root: str | Path) -> Path:
    return Path(root) / PICKLE_DIR_NAME / "worktrees"
