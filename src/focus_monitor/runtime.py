"""Composition root: builds the stores and the coordinator from settings."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import StorageSettings
from .coordinator import StorageCoordinator
from .errors import ScaleLimitExceeded, StorageCorruption
from .json_store import EventLogStore
from .marker import MigrationMarker
from .paths import get_db_path, get_json_path, get_marker_path
from .sql_store import SQLiteEventStore

logger = logging.getLogger(__name__)


def open_json_store(
    path: Path, settings: StorageSettings
) -> tuple[EventLogStore, Optional[str]]:
    """Load the JSON store, setting a corrupt file aside and starting empty."""
    store = EventLogStore(
        path, thresholds=settings.thresholds, scale_limit=settings.scale_limit
    )
    try:
        store.load()
        return store, None
    except ScaleLimitExceeded as exc:
        # Keep every record readable; the migration refuses oversized logs on its own.
        logger.warning("Event log exceeds the configured limit: %s", exc)
        store = EventLogStore(path, thresholds=settings.thresholds)
        store.load()
        return store, str(exc)
    except StorageCorruption as exc:
        quarantine = path.with_name(f"{path.name}.corrupt-{datetime.now():%Y%m%d%H%M%S}")
        logger.error("Event log is corrupt (%s); moving it to %s", exc, quarantine)
        path.replace(quarantine)
        store = EventLogStore(
            path, thresholds=settings.thresholds, scale_limit=settings.scale_limit
        )
        store.load()
        return store, f"{exc}; previous file kept as {quarantine.name}"


def open_sql_store(
    path: Path, settings: StorageSettings
) -> tuple[Optional[SQLiteEventStore], Optional[str]]:
    try:
        return SQLiteEventStore(path, thresholds=settings.thresholds), None
    except StorageCorruption as exc:
        logger.error("SQLite store unavailable: %s", exc)
        return None, str(exc)


def build_coordinator(
    settings: Optional[StorageSettings] = None,
    data_dir: Optional[Path] = None,
) -> StorageCoordinator:
    settings = settings or StorageSettings()
    json_store, json_error = open_json_store(get_json_path(data_dir), settings)
    sql_store, sql_error = open_sql_store(get_db_path(data_dir), settings)
    errors = [message for message in (json_error, sql_error) if message]
    return StorageCoordinator(
        json_store,
        sql_store,
        MigrationMarker(get_marker_path(data_dir)),
        settings=settings,
        startup_error="; ".join(errors) or None,
    )
