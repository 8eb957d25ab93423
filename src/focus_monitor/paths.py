"""Helpers for locating application directories."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from platformdirs import PlatformDirs


APP_NAME = "FocusMonitor"
APP_AUTHOR = "FocusMonitor"


def get_data_dir(override: Optional[Path] = None) -> Path:
    """Return the base directory for persistent data."""
    if override is not None:
        path = Path(override)
    else:
        dirs = PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR, roaming=True)
        path = Path(dirs.user_data_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_json_path(data_dir: Optional[Path] = None) -> Path:
    return get_data_dir(data_dir) / "activity_store.json"


def get_db_path(data_dir: Optional[Path] = None) -> Path:
    return get_data_dir(data_dir) / "activity.sqlite3"


def get_marker_path(data_dir: Optional[Path] = None) -> Path:
    return get_data_dir(data_dir) / "migration_state.json"


def get_log_path(data_dir: Optional[Path] = None) -> Path:
    return get_data_dir(data_dir) / "focus_monitor.log"
