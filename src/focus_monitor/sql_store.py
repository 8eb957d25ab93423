"""Relational store backed by SQLite."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Sequence

from . import db
from .categories import (
    FALLBACK_CATEGORY,
    CategoryReference,
    category_id_for,
    is_default_category,
    normalize_category_name,
)
from .errors import StorageCorruption, StorageError, WriteFailure
from .models import (
    DEFAULT_THRESHOLDS,
    ActivationEvent,
    AnalysisEntry,
    AppUsageStat,
    ContextSwitchMetric,
    Session,
    SiteUsageStat,
    StorageType,
    SwitchThresholds,
)
from .reporting import sort_usage_stats

logger = logging.getLogger(__name__)


class SQLiteEventStore:
    """SQLite persistence for events, switches, sessions and categories.

    Writes go through one connection guarded by a lock and each call is a
    single transaction. Reads use a second connection so that, in WAL mode,
    they see the last committed state without waiting for a writer.
    """

    storage_type = StorageType.SQL

    def __init__(
        self,
        path: Path,
        *,
        thresholds: SwitchThresholds = DEFAULT_THRESHOLDS,
    ) -> None:
        self.path = Path(path)
        self.thresholds = thresholds
        self._write_lock = threading.Lock()
        self._read_lock = threading.Lock()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = db.open_database(self.path, check_same_thread=False)
        except (sqlite3.Error, OSError) as exc:
            raise StorageCorruption(f"Cannot open database {self.path}: {exc}") from exc
        try:
            self._reader = db.open_database(self.path, check_same_thread=False)
        except sqlite3.Error as exc:
            self._conn.close()
            raise StorageCorruption(f"Cannot open database {self.path}: {exc}") from exc
        self._closed = False
        logger.info("Opened SQLite store at %s", self.path)

    @contextmanager
    def _writing(self, action: str) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            try:
                with db.transaction(self._conn) as conn:
                    yield conn
            except sqlite3.Error as exc:
                logger.exception("SQLite write failed: %s", action)
                raise WriteFailure(f"Could not {action}: {exc}") from exc

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._read_lock:
            try:
                yield self._reader
            except sqlite3.Error as exc:
                raise StorageError(f"Query against {self.path} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append_event(self, event: ActivationEvent) -> None:
        self.insert_batch([event], [])

    def append_switch(self, switch: ContextSwitchMetric) -> None:
        self.insert_batch([], [switch])

    def insert_batch(
        self,
        events: Sequence[ActivationEvent],
        switches: Sequence[ContextSwitchMetric],
    ) -> None:
        """Upsert one batch of records inside a single transaction."""
        switches = [switch.reclassified(self.thresholds) for switch in switches]
        with self._writing("insert batch") as conn:
            db.write_batch(conn, events, switches)

    def insert_missing(
        self,
        events: Sequence[ActivationEvent],
        switches: Sequence[ContextSwitchMetric],
    ) -> None:
        """Like ``insert_batch`` but rows whose id is already stored are left untouched."""
        switches = [switch.reclassified(self.thresholds) for switch in switches]
        with self._writing("insert missing records") as conn:
            db.write_batch(conn, events, switches, overwrite=False)

    def import_categories(self, categories: Sequence[CategoryReference]) -> None:
        if not categories:
            return
        with self._writing("import categories") as conn:
            db.import_categories(conn, categories)

    def truncate(self) -> None:
        """Remove everything a migration writes, keeping the schema and default categories."""
        with self._writing("truncate migrated tables") as conn:
            db.truncate_migrated_tables(conn)
        logger.info("Truncated migrated tables in %s", self.path)

    def clear(self) -> None:
        """Bulk data reset: migrated tables plus stored analysis entries."""
        with self._writing("clear store") as conn:
            db.truncate_migrated_tables(conn)
            conn.execute("DELETE FROM analysis_entries")

    def close_session(self, session: Session) -> bool:
        """Record the end of a session; False when no row exists for it yet."""
        with self._writing("close session") as conn:
            return bool(db.close_session(conn, session))

    def set_metadata(self, key: str, value: Optional[str]) -> None:
        with self._writing(f"set metadata {key}") as conn:
            db.set_metadata(conn, key, value)

    def update_event_category(self, event_id: str, category_name: str) -> ActivationEvent:
        name = normalize_category_name(category_name)
        with self._writing("update event category") as conn:
            db.ensure_categories(conn, [name])
            updated = conn.execute(
                "UPDATE app_activation_events SET category_name = ? WHERE id = ?",
                (name, event_id),
            ).rowcount
            if not updated:
                raise LookupError(f"No event found for id={event_id}")
            row = conn.execute(
                "SELECT * FROM app_activation_events WHERE id = ?", (event_id,)
            ).fetchone()
        return db.row_to_event(row)

    def recategorize_app(self, bundle_identifier: str, category_name: str) -> int:
        name = normalize_category_name(category_name)
        with self._writing("recategorize app") as conn:
            db.ensure_categories(conn, [name])
            return conn.execute(
                """
                UPDATE app_activation_events SET category_name = ?
                WHERE bundle_identifier = ? AND category_name != ?
                """,
                (name, bundle_identifier, name),
            ).rowcount

    def reassign_category(self, old_name: str, new_name: str) -> int:
        old = normalize_category_name(old_name)
        new = normalize_category_name(new_name)
        if old == new:
            return 0
        with self._writing("reassign category") as conn:
            return db.reassign_category(conn, old, new)

    def add_category(
        self,
        name: str,
        *,
        color_hex: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CategoryReference:
        name = name.strip()
        if not name:
            raise ValueError("Category name must not be empty")
        reference = CategoryReference(
            id=category_id_for(name),
            name=name,
            is_default=False,
            color_hex=color_hex,
            description=description,
        )
        with self._write_lock:
            try:
                with db.transaction(self._conn) as conn:
                    conn.execute(
                        """
                        INSERT INTO app_categories (id, name, is_default, color_hex, description)
                        VALUES (?, ?, 0, ?, ?)
                        """,
                        (reference.id, reference.name, color_hex, description),
                    )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Category {name!r} already exists") from exc
            except sqlite3.Error as exc:
                logger.exception("SQLite write failed: add category")
                raise WriteFailure(f"Could not add category {name!r}: {exc}") from exc
        return reference

    def delete_category(self, name: str, fallback: str = FALLBACK_CATEGORY) -> int:
        """Delete a custom category, moving its events and switches to ``fallback``.

        Returns the number of rows that were reassigned.
        """
        if is_default_category(name) or name == fallback:
            raise ValueError(f"Category {name!r} cannot be deleted")
        with self._writing("delete category") as conn:
            exists = conn.execute(
                "SELECT 1 FROM app_categories WHERE name = ?", (name,)
            ).fetchone()
            if exists is None:
                raise LookupError(f"No category named {name!r}")
            moved = db.reassign_category(conn, name, fallback)
            conn.execute("DELETE FROM app_categories WHERE name = ?", (name,))
        logger.info("Deleted category %s; %d rows moved to %s", name, moved, fallback)
        return moved

    def add_analysis_entry(self, entry: AnalysisEntry) -> None:
        with self._writing("store analysis entry") as conn:
            db.insert_analysis_entry(conn, entry)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[ActivationEvent]:
        with self._reading() as conn:
            return [db.row_to_event(row) for row in db.fetch_events(conn, start, end, limit)]

    def fetch_switches(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[ContextSwitchMetric]:
        with self._reading() as conn:
            return [
                db.row_to_switch(row, self.thresholds)
                for row in db.fetch_switches(conn, start, end, limit)
            ]

    def usage_stats(self, start: datetime, end: datetime) -> list[AppUsageStat]:
        with self._reading() as conn:
            usage_rows = db.fetch_usage_rows(conn, start, end)
            sites = db.group_sites(db.fetch_site_rows(conn, start, end))

        stats = []
        for row in usage_rows:
            key = (row["app_name"], row["bundle_identifier"], row["category_name"])
            breakdown = sorted(
                (
                    SiteUsageStat(
                        site_domain=site["site_domain"],
                        display_title=site["chrome_tab_title"] or site["site_domain"],
                        activation_count=site["activation_count"],
                        last_active=db.parse_db_timestamp(site["last_activation"]),
                    )
                    for site in sites.get(key, [])
                ),
                key=lambda site: (-site.activation_count, site.site_domain),
            )
            stats.append(
                AppUsageStat(
                    app_name=row["app_name"],
                    bundle_identifier=row["bundle_identifier"],
                    category_name=row["category_name"],
                    activation_count=row["activation_count"],
                    last_active=db.parse_db_timestamp(row["last_activation"]),
                    site_breakdown=tuple(breakdown),
                )
            )
        return sort_usage_stats(stats)

    def daily_summary(self, day: datetime) -> Optional[dict]:
        with self._reading() as conn:
            row = db.fetch_summary_by_day(conn, day)
        return dict(row) if row is not None else None

    def count(self) -> tuple[int, int]:
        with self._reading() as conn:
            return (
                db.count_rows(conn, "app_activation_events"),
                db.count_rows(conn, "context_switch_metrics"),
            )

    def is_empty(self) -> bool:
        return self.count() == (0, 0)

    def event_ids(self) -> set[str]:
        with self._reading() as conn:
            return db.fetch_ids(conn, "app_activation_events")

    def switch_ids(self) -> set[str]:
        with self._reading() as conn:
            return db.fetch_ids(conn, "context_switch_metrics")

    def list_sessions(self, limit: Optional[int] = None) -> list[Session]:
        with self._reading() as conn:
            return [db.row_to_session(row) for row in db.fetch_sessions(conn, limit)]

    def list_categories(self) -> list[CategoryReference]:
        with self._reading() as conn:
            rows = db.fetch_categories(conn)
        return [
            CategoryReference(
                id=row["id"],
                name=row["name"],
                is_default=bool(row["is_default"]),
                color_hex=row["color_hex"],
                description=row["description"],
            )
            for row in rows
        ]

    def list_analysis_entries(self, limit: Optional[int] = None) -> list[AnalysisEntry]:
        with self._reading() as conn:
            return [
                db.row_to_analysis_entry(row)
                for row in db.fetch_analysis_entries(conn, limit)
            ]

    def get_metadata(self, key: str) -> Optional[str]:
        with self._reading() as conn:
            return db.get_metadata(conn, key)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with self._write_lock:
            self._conn.close()
        with self._read_lock:
            self._reader.close()
        logger.info("Closed SQLite store at %s", self.path)
