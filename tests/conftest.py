"""Shared fixtures and record factories for the storage tests."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Sequence

import pytest

from focus_monitor.config import StorageSettings
from focus_monitor.coordinator import StorageCoordinator
from focus_monitor.json_store import EventLogStore
from focus_monitor.marker import MigrationMarker
from focus_monitor.models import ActivationEvent, ContextSwitchMetric
from focus_monitor.paths import get_db_path, get_json_path, get_marker_path
from focus_monitor.sql_store import SQLiteEventStore

BASE_TIME = datetime(2024, 3, 4, 9, 0, 0)


def make_event(
    app_name: Optional[str] = "Safari",
    *,
    id: Optional[str] = None,
    at: datetime = BASE_TIME,
    bundle_identifier: Optional[str] = None,
    **fields: Any,
) -> ActivationEvent:
    event = ActivationEvent.create(
        app_name,
        bundle_identifier or (f"com.example.{app_name.lower()}" if app_name else None),
        timestamp=at,
        **fields,
    )
    if id is not None:
        event = replace(event, id=id)
    return event


def make_switch(
    from_app: str,
    to_app: str,
    time_spent: float,
    *,
    id: Optional[str] = None,
    at: datetime = BASE_TIME,
    **fields: Any,
) -> ContextSwitchMetric:
    return ContextSwitchMetric.create(
        from_app, to_app, time_spent, timestamp=at, id=id, **fields
    )


def scenario_records() -> tuple[list[ActivationEvent], list[ContextSwitchMetric]]:
    """Safari, then Xcode 8 s later, then Slack 150 s after that."""
    t0 = BASE_TIME
    t1 = t0 + timedelta(seconds=8)
    t2 = t1 + timedelta(seconds=150)
    events = [
        make_event("Safari", id="E1", at=t0),
        make_event("Xcode", id="E2", at=t1, category_name="Development"),
        make_event("Slack", id="E3", at=t2, category_name="Communication"),
    ]
    switches = [
        make_switch("Safari", "Xcode", 8, id="S1", at=t1, to_category="Development"),
        make_switch(
            "Xcode",
            "Slack",
            150,
            id="S2",
            at=t2,
            from_category="Development",
            to_category="Communication",
        ),
    ]
    return events, switches


def session_records(count: int = 6) -> tuple[list[ActivationEvent], list[ContextSwitchMetric]]:
    """Alternating apps split over two sessions, with custom categories."""
    apps = ["Safari", "Xcode", "Slack"]
    half = count // 2
    events: list[ActivationEvent] = []
    switches: list[ContextSwitchMetric] = []
    for index in range(count):
        first = 0 if index < half else half
        session = "session-a" if index < half else "session-b"
        at = BASE_TIME + timedelta(minutes=index * 2)
        events.append(
            make_event(
                apps[index % 3],
                id=f"event-{index}",
                at=at,
                category_name="Deep Work" if index % 2 else "Productivity",
                session_id=session,
                session_start_time=BASE_TIME + timedelta(minutes=first * 2),
                is_session_start=index == first,
                session_switch_count=index - first + 1,
                site_domain="github.com" if apps[index % 3] == "Safari" else None,
            )
        )
        if index:
            switches.append(
                make_switch(
                    apps[(index - 1) % 3],
                    apps[index % 3],
                    120.0,
                    id=f"switch-{index}",
                    at=at,
                    session_id=session,
                )
            )
    return events, switches


@pytest.fixture()
def settings() -> StorageSettings:
    return StorageSettings(batch_size=2)


@pytest.fixture()
def json_store(tmp_path: Path, settings: StorageSettings) -> EventLogStore:
    store = EventLogStore(get_json_path(tmp_path), thresholds=settings.thresholds)
    store.load()
    return store


@pytest.fixture()
def sql_store(tmp_path: Path, settings: StorageSettings) -> Iterator[SQLiteEventStore]:
    store = SQLiteEventStore(get_db_path(tmp_path), thresholds=settings.thresholds)
    yield store
    store.close()


@pytest.fixture()
def marker(tmp_path: Path) -> MigrationMarker:
    return MigrationMarker(get_marker_path(tmp_path))


@pytest.fixture()
def make_coordinator(
    tmp_path: Path, settings: StorageSettings
) -> Iterator[Callable[..., StorageCoordinator]]:
    """Build a coordinator over ``tmp_path``, optionally seeding the JSON store first."""
    built: list[StorageCoordinator] = []

    def build(
        events: Sequence[ActivationEvent] = (),
        switches: Sequence[ContextSwitchMetric] = (),
        *,
        data_dir: Optional[Path] = None,
        with_sql: bool = True,
    ) -> StorageCoordinator:
        directory = data_dir or tmp_path
        json_store = EventLogStore(get_json_path(directory), thresholds=settings.thresholds)
        json_store.load()
        if events or switches:
            json_store.append_batch(list(events), list(switches))
        sql_store = (
            SQLiteEventStore(get_db_path(directory), thresholds=settings.thresholds)
            if with_sql
            else None
        )
        coordinator = StorageCoordinator(
            json_store,
            sql_store,
            MigrationMarker(get_marker_path(directory)),
            settings=settings,
        )
        built.append(coordinator)
        return coordinator

    yield build
    for coordinator in built:
        coordinator.close()
