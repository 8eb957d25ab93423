"""SQLite database layer for activation events and context switches."""

from __future__ import annotations

import json
import sqlite3
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

from .categories import DEFAULT_CATEGORIES, CategoryReference, category_id_for
from .models import (
    DEFAULT_THRESHOLDS,
    ActivationEvent,
    AnalysisEntry,
    ContextSwitchMetric,
    Session,
    SwitchThresholds,
)


DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"

MIGRATED_TABLES = ("context_switch_metrics", "app_activation_events", "sessions")

_EVENT_UPDATE = """DO UPDATE SET
            timestamp = excluded.timestamp,
            app_name = excluded.app_name,
            bundle_identifier = excluded.bundle_identifier,
            chrome_tab_title = excluded.chrome_tab_title,
            chrome_tab_url = excluded.chrome_tab_url,
            site_domain = excluded.site_domain,
            category_name = excluded.category_name,
            session_id = excluded.session_id,
            session_start_time = excluded.session_start_time,
            session_end_time = excluded.session_end_time,
            is_session_start = excluded.is_session_start,
            is_session_end = excluded.is_session_end,
            session_switch_count = excluded.session_switch_count"""

_SWITCH_UPDATE = """DO UPDATE SET
            from_app = excluded.from_app,
            to_app = excluded.to_app,
            from_bundle_id = excluded.from_bundle_id,
            to_bundle_id = excluded.to_bundle_id,
            timestamp = excluded.timestamp,
            time_spent = excluded.time_spent,
            switch_type = excluded.switch_type,
            from_category = excluded.from_category,
            to_category = excluded.to_category,
            session_id = excluded.session_id"""


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(DATETIME_FMT) if value is not None else None


def parse_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.strptime(value, DATETIME_FMT)
    except ValueError:
        return datetime.fromisoformat(value)


def open_database(path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    try:
        enable_foreign_keys(conn)
        conn.execute("PRAGMA journal_mode = WAL;")
        conn.execute("PRAGMA synchronous = NORMAL;")
        initialize_schema(conn)
    except sqlite3.Error:
        conn.close()
        raise
    return conn


@contextmanager
def database_connection(
    path: Path, *, check_same_thread: bool = True
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside one write transaction; roll back on any error."""
    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK;")
        raise
    conn.execute("COMMIT;")


def enable_foreign_keys(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS app_categories (
            id TEXT PRIMARY KEY,
            name TEXT UNIQUE NOT NULL,
            is_default INTEGER NOT NULL DEFAULT 0,
            color_hex TEXT,
            description TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            start_time TEXT NOT NULL,
            end_time TEXT,
            switch_count INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS app_activation_events (
            id TEXT PRIMARY KEY,
            timestamp TEXT NOT NULL,
            app_name TEXT,
            bundle_identifier TEXT,
            chrome_tab_title TEXT,
            chrome_tab_url TEXT,
            site_domain TEXT,
            category_name TEXT NOT NULL DEFAULT 'Other',
            session_id TEXT REFERENCES sessions(id),
            session_start_time TEXT,
            session_end_time TEXT,
            is_session_start INTEGER NOT NULL DEFAULT 0,
            is_session_end INTEGER NOT NULL DEFAULT 0,
            session_switch_count INTEGER NOT NULL DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS context_switch_metrics (
            id TEXT PRIMARY KEY,
            from_app TEXT NOT NULL,
            to_app TEXT NOT NULL,
            from_bundle_id TEXT,
            to_bundle_id TEXT,
            timestamp TEXT NOT NULL,
            time_spent REAL NOT NULL CHECK (time_spent >= 0),
            switch_type TEXT NOT NULL CHECK (switch_type IN ('quick', 'normal', 'focused')),
            from_category TEXT NOT NULL,
            to_category TEXT NOT NULL,
            session_id TEXT REFERENCES sessions(id),
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS analysis_entries (
            id TEXT PRIMARY KEY,
            timestamp TEXT NOT NULL,
            insights TEXT NOT NULL,
            data_points INTEGER NOT NULL,
            analysis_type TEXT NOT NULL,
            time_range_analyzed TEXT NOT NULL,
            token_count INTEGER,
            api_model TEXT,
            analysis_version TEXT DEFAULT '1.0',
            data_context TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS storage_metadata (
            key TEXT PRIMARY KEY,
            value TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_events_timestamp
            ON app_activation_events(timestamp DESC);
        CREATE INDEX IF NOT EXISTS idx_events_app_name
            ON app_activation_events(app_name);
        CREATE INDEX IF NOT EXISTS idx_events_bundle
            ON app_activation_events(bundle_identifier);
        CREATE INDEX IF NOT EXISTS idx_events_category
            ON app_activation_events(category_name);
        CREATE INDEX IF NOT EXISTS idx_events_session
            ON app_activation_events(session_id);
        CREATE INDEX IF NOT EXISTS idx_events_domain
            ON app_activation_events(site_domain) WHERE site_domain IS NOT NULL;
        CREATE INDEX IF NOT EXISTS idx_events_date
            ON app_activation_events(date(timestamp));
        CREATE INDEX IF NOT EXISTS idx_events_date_app
            ON app_activation_events(date(timestamp), app_name);
        CREATE INDEX IF NOT EXISTS idx_events_date_category
            ON app_activation_events(date(timestamp), category_name);
        CREATE INDEX IF NOT EXISTS idx_events_session_boundaries
            ON app_activation_events(session_id, is_session_start, is_session_end);

        CREATE INDEX IF NOT EXISTS idx_switches_timestamp
            ON context_switch_metrics(timestamp DESC);
        CREATE INDEX IF NOT EXISTS idx_switches_apps
            ON context_switch_metrics(from_app, to_app);
        CREATE INDEX IF NOT EXISTS idx_switches_bundles
            ON context_switch_metrics(from_bundle_id, to_bundle_id);
        CREATE INDEX IF NOT EXISTS idx_switches_categories
            ON context_switch_metrics(from_category, to_category);
        CREATE INDEX IF NOT EXISTS idx_switches_time_spent
            ON context_switch_metrics(time_spent DESC);
        CREATE INDEX IF NOT EXISTS idx_switches_session
            ON context_switch_metrics(session_id);
        CREATE INDEX IF NOT EXISTS idx_switches_type
            ON context_switch_metrics(switch_type);
        CREATE INDEX IF NOT EXISTS idx_switches_date
            ON context_switch_metrics(date(timestamp));

        CREATE INDEX IF NOT EXISTS idx_analysis_timestamp
            ON analysis_entries(timestamp DESC);
        CREATE INDEX IF NOT EXISTS idx_analysis_type
            ON analysis_entries(analysis_type);
        CREATE INDEX IF NOT EXISTS idx_analysis_date
            ON analysis_entries(date(timestamp));

        CREATE INDEX IF NOT EXISTS idx_sessions_start_time
            ON sessions(start_time DESC);
        CREATE INDEX IF NOT EXISTS idx_sessions_active
            ON sessions(is_active) WHERE is_active = 1;

        CREATE VIEW IF NOT EXISTS daily_app_usage AS
        SELECT
            date(timestamp) AS usage_date,
            app_name,
            bundle_identifier,
            category_name,
            COUNT(*) AS activation_count,
            MAX(timestamp) AS last_activation
        FROM app_activation_events
        WHERE app_name IS NOT NULL
        GROUP BY date(timestamp), app_name, bundle_identifier, category_name;

        CREATE VIEW IF NOT EXISTS daily_switch_summary AS
        SELECT
            date(timestamp) AS switch_date,
            COUNT(*) AS total_switches,
            AVG(time_spent) AS avg_time_spent,
            SUM(CASE WHEN switch_type = 'quick' THEN 1 ELSE 0 END) AS quick_switches,
            SUM(CASE WHEN switch_type = 'normal' THEN 1 ELSE 0 END) AS normal_switches,
            SUM(CASE WHEN switch_type = 'focused' THEN 1 ELSE 0 END) AS focused_periods
        FROM context_switch_metrics
        GROUP BY date(timestamp);

        CREATE VIEW IF NOT EXISTS category_usage_trends AS
        SELECT
            date(timestamp) AS usage_date,
            category_name,
            COUNT(*) AS activation_count,
            COUNT(DISTINCT app_name) AS unique_apps,
            MIN(timestamp) AS first_activation,
            MAX(timestamp) AS last_activation
        FROM app_activation_events
        WHERE app_name IS NOT NULL
        GROUP BY date(timestamp), category_name;
        """
    )
    seed_default_categories(conn)


def seed_default_categories(conn: sqlite3.Connection) -> None:
    conn.executemany(
        """
        INSERT OR IGNORE INTO app_categories (id, name, is_default, color_hex, description)
        VALUES (?, ?, 1, ?, ?)
        """,
        [
            (category.id, category.name, category.color_hex, category.description)
            for category in DEFAULT_CATEGORIES
        ],
    )


# ----------------------------------------------------------------------
# Writes
# ----------------------------------------------------------------------


def ensure_categories(conn: sqlite3.Connection, names: Iterable[str]) -> None:
    """Register category names that are not known yet as custom categories."""
    conn.executemany(
        """
        INSERT INTO app_categories (id, name, is_default)
        VALUES (?, ?, 0)
        ON CONFLICT DO NOTHING
        """,
        [(category_id_for(name), name) for name in sorted(set(names))],
    )


def import_categories(
    conn: sqlite3.Connection, categories: Iterable[CategoryReference]
) -> None:
    """Insert custom categories, refreshing color and description of existing ones."""
    for category in categories:
        conn.execute(
            """
            INSERT INTO app_categories (id, name, is_default, color_hex, description)
            VALUES (?, ?, 0, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (category.id, category.name, category.color_hex, category.description),
        )
        conn.execute(
            """
            UPDATE app_categories SET color_hex = ?, description = ?
            WHERE name = ? AND is_default = 0
            """,
            (category.color_hex, category.description, category.name),
        )


def upsert_sessions(
    conn: sqlite3.Connection,
    events: Sequence[ActivationEvent],
    switches: Sequence[ContextSwitchMetric] = (),
) -> None:
    """Create or widen the session rows referenced by a batch.

    Rows merge by taking the earliest start, the latest known end and the
    highest switch count, so the result does not depend on how records
    were split into batches.
    """
    bounds: dict[str, list] = {}

    def merge(session_id: str, start: datetime, end: Optional[datetime], count: int) -> None:
        current = bounds.get(session_id)
        if current is None:
            bounds[session_id] = [start, end, count]
            return
        current[0] = min(current[0], start)
        if end is not None:
            current[1] = end if current[1] is None else max(current[1], end)
        current[2] = max(current[2], count)

    for event in events:
        if event.session_id is None:
            continue
        end = event.session_end_time
        if end is None and event.is_session_end:
            end = event.timestamp
        merge(
            event.session_id,
            event.session_start_time or event.timestamp,
            end,
            event.session_switch_count,
        )
    for switch in switches:
        if switch.session_id is not None:
            merge(switch.session_id, switch.timestamp, None, 0)

    if not bounds:
        return
    conn.executemany(
        """
        INSERT INTO sessions (id, start_time, end_time, switch_count, is_active)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            start_time = MIN(sessions.start_time, excluded.start_time),
            end_time = CASE
                WHEN excluded.end_time IS NULL THEN sessions.end_time
                WHEN sessions.end_time IS NULL THEN excluded.end_time
                ELSE MAX(sessions.end_time, excluded.end_time)
            END,
            switch_count = MAX(sessions.switch_count, excluded.switch_count),
            is_active = CASE
                WHEN COALESCE(excluded.end_time, sessions.end_time) IS NULL THEN 1
                ELSE 0
            END
        """,
        [
            (
                session_id,
                format_timestamp(start),
                format_timestamp(end),
                count,
                1 if end is None else 0,
            )
            for session_id, (start, end, count) in sorted(bounds.items())
        ],
    )
    enforce_single_active_session(conn)


def enforce_single_active_session(conn: sqlite3.Connection) -> None:
    """Leave only the most recently started open session marked active."""
    conn.execute(
        """
        UPDATE sessions SET is_active = 0
        WHERE is_active = 1
          AND id IS NOT (
            SELECT id FROM sessions
            WHERE end_time IS NULL
            ORDER BY start_time DESC, id DESC
            LIMIT 1
          )
        """
    )


def close_session(conn: sqlite3.Connection, session: Session) -> int:
    updated = conn.execute(
        """
        UPDATE sessions SET
            end_time = ?,
            switch_count = MAX(switch_count, ?),
            is_active = 0
        WHERE id = ?
        """,
        (
            format_timestamp(session.end_time or session.start_time),
            session.switch_count,
            session.id,
        ),
    ).rowcount
    enforce_single_active_session(conn)
    return updated


def upsert_events(
    conn: sqlite3.Connection,
    events: Iterable[ActivationEvent],
    *,
    overwrite: bool = True,
) -> None:
    """Insert events; with ``overwrite=False`` rows that already exist are kept."""
    conflict = _EVENT_UPDATE if overwrite else "DO NOTHING"
    conn.executemany(
        f"""
        INSERT INTO app_activation_events (
            id,
            timestamp,
            app_name,
            bundle_identifier,
            chrome_tab_title,
            chrome_tab_url,
            site_domain,
            category_name,
            session_id,
            session_start_time,
            session_end_time,
            is_session_start,
            is_session_end,
            session_switch_count
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) {conflict}
        """,
        [
            (
                event.id,
                format_timestamp(event.timestamp),
                event.app_name,
                event.bundle_identifier,
                event.chrome_tab_title,
                event.chrome_tab_url,
                event.site_domain,
                event.category_name,
                event.session_id,
                format_timestamp(event.session_start_time),
                format_timestamp(event.session_end_time),
                1 if event.is_session_start else 0,
                1 if event.is_session_end else 0,
                event.session_switch_count,
            )
            for event in events
        ],
    )


def upsert_switches(
    conn: sqlite3.Connection,
    switches: Iterable[ContextSwitchMetric],
    *,
    overwrite: bool = True,
) -> None:
    conflict = _SWITCH_UPDATE if overwrite else "DO NOTHING"
    conn.executemany(
        f"""
        INSERT INTO context_switch_metrics (
            id,
            from_app,
            to_app,
            from_bundle_id,
            to_bundle_id,
            timestamp,
            time_spent,
            switch_type,
            from_category,
            to_category,
            session_id
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) {conflict}
        """,
        [
            (
                switch.id,
                switch.from_app,
                switch.to_app,
                switch.from_bundle_id,
                switch.to_bundle_id,
                format_timestamp(switch.timestamp),
                switch.time_spent,
                switch.switch_type.value,
                switch.from_category,
                switch.to_category,
                switch.session_id,
            )
            for switch in switches
        ],
    )


def write_batch(
    conn: sqlite3.Connection,
    events: Sequence[ActivationEvent],
    switches: Sequence[ContextSwitchMetric],
    *,
    overwrite: bool = True,
) -> None:
    """Write one batch; callers wrap this in ``transaction``."""
    names = [event.category_name for event in events]
    for switch in switches:
        names.extend((switch.from_category, switch.to_category))
    ensure_categories(conn, names)
    upsert_sessions(conn, events, switches)
    upsert_events(conn, events, overwrite=overwrite)
    upsert_switches(conn, switches, overwrite=overwrite)


def reassign_category(conn: sqlite3.Connection, old_name: str, new_name: str) -> int:
    ensure_categories(conn, [new_name])
    changed = conn.execute(
        "UPDATE app_activation_events SET category_name = ? WHERE category_name = ?",
        (new_name, old_name),
    ).rowcount
    changed += conn.execute(
        """
        UPDATE context_switch_metrics SET
            from_category = CASE WHEN from_category = ? THEN ? ELSE from_category END,
            to_category = CASE WHEN to_category = ? THEN ? ELSE to_category END
        WHERE from_category = ? OR to_category = ?
        """,
        (old_name, new_name, old_name, new_name, old_name, old_name),
    ).rowcount
    return changed


def truncate_migrated_tables(conn: sqlite3.Connection) -> None:
    for table in MIGRATED_TABLES:
        conn.execute(f"DELETE FROM {table}")
    conn.execute("DELETE FROM app_categories WHERE is_default = 0")
    conn.execute("DELETE FROM storage_metadata WHERE key LIKE 'migration_%'")


def set_metadata(conn: sqlite3.Connection, key: str, value: Optional[str]) -> None:
    conn.execute(
        """
        INSERT INTO storage_metadata (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, value),
    )


def insert_analysis_entry(conn: sqlite3.Connection, entry: AnalysisEntry) -> None:
    conn.execute(
        """
        INSERT INTO analysis_entries (
            id,
            timestamp,
            insights,
            data_points,
            analysis_type,
            time_range_analyzed,
            token_count,
            api_model,
            analysis_version,
            data_context
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.id,
            format_timestamp(entry.timestamp),
            entry.insights,
            entry.data_points,
            entry.analysis_type,
            entry.time_range_analyzed,
            entry.token_count,
            entry.api_model,
            entry.analysis_version,
            json.dumps(entry.data_context, default=str),
        ),
    )


# ----------------------------------------------------------------------
# Reads
# ----------------------------------------------------------------------


def _range_clause(
    start: Optional[datetime], end: Optional[datetime]
) -> tuple[str, list[object]]:
    clauses: list[str] = []
    params: list[object] = []
    if start is not None:
        clauses.append("timestamp >= ?")
        params.append(format_timestamp(start))
    if end is not None:
        clauses.append("timestamp <= ?")
        params.append(format_timestamp(end))
    return (" WHERE " + " AND ".join(clauses) if clauses else ""), params


def fetch_events(
    conn: sqlite3.Connection,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> list[sqlite3.Row]:
    """Fetch events in ``[start, end]``, newest first."""
    where, params = _range_clause(start, end)
    sql = f"SELECT * FROM app_activation_events{where} ORDER BY timestamp DESC, id"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    return list(conn.execute(sql, params))


def fetch_switches(
    conn: sqlite3.Connection,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> list[sqlite3.Row]:
    where, params = _range_clause(start, end)
    sql = f"SELECT * FROM context_switch_metrics{where} ORDER BY timestamp DESC, id"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    return list(conn.execute(sql, params))


def fetch_usage_rows(
    conn: sqlite3.Connection, start: datetime, end: datetime
) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            """
            SELECT
                app_name,
                bundle_identifier,
                category_name,
                COUNT(*) AS activation_count,
                MAX(timestamp) AS last_activation
            FROM app_activation_events
            WHERE timestamp >= ? AND timestamp <= ?
              AND app_name IS NOT NULL
            GROUP BY app_name, bundle_identifier, category_name
            """,
            (format_timestamp(start), format_timestamp(end)),
        )
    )


def fetch_site_rows(
    conn: sqlite3.Connection, start: datetime, end: datetime
) -> list[sqlite3.Row]:
    """Per-site activation counts; the bare title column comes from the latest row."""
    return list(
        conn.execute(
            """
            SELECT
                app_name,
                bundle_identifier,
                category_name,
                site_domain,
                chrome_tab_title,
                COUNT(*) AS activation_count,
                MAX(timestamp) AS last_activation
            FROM app_activation_events
            WHERE timestamp >= ? AND timestamp <= ?
              AND app_name IS NOT NULL
              AND site_domain IS NOT NULL AND site_domain != ''
            GROUP BY app_name, bundle_identifier, category_name, site_domain
            """,
            (format_timestamp(start), format_timestamp(end)),
        )
    )


def fetch_summary_by_day(conn: sqlite3.Connection, day: datetime) -> Optional[sqlite3.Row]:
    """Return the switch summary row for a given day, if any switches were recorded."""
    return conn.execute(
        "SELECT * FROM daily_switch_summary WHERE switch_date = ?",
        (day.strftime("%Y-%m-%d"),),
    ).fetchone()


def fetch_ids(conn: sqlite3.Connection, table: str) -> set[str]:
    if table not in ("app_activation_events", "context_switch_metrics", "sessions"):
        raise ValueError(f"Unknown table {table}")
    return {row[0] for row in conn.execute(f"SELECT id FROM {table}")}


def count_rows(conn: sqlite3.Connection, table: str) -> int:
    if table not in MIGRATED_TABLES + ("app_categories", "analysis_entries"):
        raise ValueError(f"Unknown table {table}")
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def get_metadata(conn: sqlite3.Connection, key: str) -> Optional[str]:
    row = conn.execute(
        "SELECT value FROM storage_metadata WHERE key = ?", (key,)
    ).fetchone()
    return row[0] if row else None


def fetch_sessions(
    conn: sqlite3.Connection, limit: Optional[int] = None
) -> list[sqlite3.Row]:
    sql = "SELECT * FROM sessions ORDER BY start_time DESC, id"
    params: list[object] = []
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    return list(conn.execute(sql, params))


def fetch_categories(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            """
            SELECT id, name, is_default, color_hex, description
            FROM app_categories
            ORDER BY is_default DESC, name COLLATE NOCASE
            """
        )
    )


def fetch_analysis_entries(
    conn: sqlite3.Connection, limit: Optional[int] = None
) -> list[sqlite3.Row]:
    sql = "SELECT * FROM analysis_entries ORDER BY timestamp DESC, id"
    params: list[object] = []
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    return list(conn.execute(sql, params))


# ----------------------------------------------------------------------
# Row conversion
# ----------------------------------------------------------------------


def row_to_event(row: sqlite3.Row) -> ActivationEvent:
    return ActivationEvent(
        id=row["id"],
        timestamp=parse_db_timestamp(row["timestamp"]),
        app_name=row["app_name"],
        bundle_identifier=row["bundle_identifier"],
        chrome_tab_title=row["chrome_tab_title"],
        chrome_tab_url=row["chrome_tab_url"],
        site_domain=row["site_domain"],
        category_name=row["category_name"],
        session_id=row["session_id"],
        session_start_time=parse_db_timestamp(row["session_start_time"]),
        session_end_time=parse_db_timestamp(row["session_end_time"]),
        is_session_start=bool(row["is_session_start"]),
        is_session_end=bool(row["is_session_end"]),
        session_switch_count=row["session_switch_count"],
    )


def row_to_switch(
    row: sqlite3.Row, thresholds: SwitchThresholds = DEFAULT_THRESHOLDS
) -> ContextSwitchMetric:
    time_spent = float(row["time_spent"])
    return ContextSwitchMetric(
        id=row["id"],
        from_app=row["from_app"],
        to_app=row["to_app"],
        from_bundle_id=row["from_bundle_id"],
        to_bundle_id=row["to_bundle_id"],
        timestamp=parse_db_timestamp(row["timestamp"]),
        time_spent=time_spent,
        switch_type=thresholds.classify(time_spent),
        from_category=row["from_category"],
        to_category=row["to_category"],
        session_id=row["session_id"],
    )


def row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        start_time=parse_db_timestamp(row["start_time"]),
        end_time=parse_db_timestamp(row["end_time"]),
        switch_count=row["switch_count"],
        is_active=bool(row["is_active"]),
    )


def row_to_analysis_entry(row: sqlite3.Row) -> AnalysisEntry:
    return AnalysisEntry(
        id=row["id"],
        timestamp=parse_db_timestamp(row["timestamp"]),
        insights=row["insights"],
        data_points=row["data_points"],
        analysis_type=row["analysis_type"],
        time_range_analyzed=row["time_range_analyzed"],
        token_count=row["token_count"],
        api_model=row["api_model"],
        analysis_version=row["analysis_version"],
        data_context=json.loads(row["data_context"]) if row["data_context"] else {},
    )


def group_sites(rows: Iterable[sqlite3.Row]) -> dict[tuple, list[sqlite3.Row]]:
    grouped: defaultdict[tuple, list[sqlite3.Row]] = defaultdict(list)
    for row in rows:
        grouped[(row["app_name"], row["bundle_identifier"], row["category_name"])].append(row)
    return grouped

