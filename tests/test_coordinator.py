from __future__ import annotations

import os
import threading
from datetime import timedelta
from pathlib import Path
from typing import Callable

import pytest

from focus_monitor.config import StorageSettings
from focus_monitor.coordinator import CoordinatorStatus, StorageCoordinator
from focus_monitor.errors import MigrationError, WriteFailure
from focus_monitor.json_store import EventLogStore
from focus_monitor.marker import MigrationMarker
from focus_monitor.models import ActivationEvent, MigrationState, StorageType
from focus_monitor.paths import get_db_path, get_json_path, get_marker_path
from focus_monitor.runtime import build_coordinator
from focus_monitor.sql_store import SQLiteEventStore

from conftest import BASE_TIME, make_event, scenario_records, session_records

Factory = Callable[..., StorageCoordinator]


def _late_event(index: int) -> ActivationEvent:
    return make_event("Terminal", id=f"late-{index}", at=BASE_TIME + timedelta(minutes=10 + index))


class TestStartup:
    def test_empty_json_starts_on_sql(self, make_coordinator: Factory, tmp_path: Path) -> None:
        coordinator = make_coordinator()

        assert coordinator.current_storage_type is StorageType.SQL
        assert coordinator.migration_state is MigrationState.COMPLETED
        assert not coordinator.needs_migration()
        assert MigrationMarker(get_marker_path(tmp_path)).load().state is MigrationState.COMPLETED

        coordinator.add_event(make_event("Safari"))
        assert coordinator.json_store.count() == (0, 0)
        assert coordinator.sql_store.count() == (1, 0)

    def test_existing_json_needs_migration(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*scenario_records())

        assert coordinator.current_storage_type is StorageType.JSON
        assert coordinator.migration_state is MigrationState.NOT_STARTED
        assert coordinator.needs_migration()
        assert [event.id for event in coordinator.query_events()] == ["E3", "E2", "E1"]

    def test_interrupted_migration_is_failed(self, make_coordinator: Factory, tmp_path: Path) -> None:
        marker = MigrationMarker(get_marker_path(tmp_path))
        marker.mark(MigrationState.IN_PROGRESS, source="activity_store.json")

        coordinator = make_coordinator(*scenario_records())

        assert coordinator.migration_state is MigrationState.FAILED
        assert coordinator.last_error == "Migration was interrupted"
        assert coordinator.current_storage_type is StorageType.JSON
        assert coordinator.needs_migration()
        assert marker.load().state is MigrationState.FAILED

    def test_completed_marker_without_sql_stays_on_json(
        self, make_coordinator: Factory, tmp_path: Path
    ) -> None:
        MigrationMarker(get_marker_path(tmp_path)).mark(MigrationState.COMPLETED)

        coordinator = make_coordinator(*scenario_records(), with_sql=False)

        assert coordinator.current_storage_type is StorageType.JSON
        assert coordinator.last_error is not None
        assert not coordinator.start_migration()


class TestMigration:
    def test_scenario_migrates_and_switches_backend(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*scenario_records())

        assert coordinator.run_migration() is MigrationState.COMPLETED

        assert coordinator.current_storage_type is StorageType.SQL
        assert not coordinator.needs_migration()
        assert coordinator.progress == 1.0
        assert [event.id for event in coordinator.query_events()] == ["E3", "E2", "E1"]
        metrics = coordinator.storage_metrics()
        assert (metrics.total_events, metrics.total_context_switches) == (3, 2)
        assert metrics.process_memory_mb > 0

    def test_writes_after_cutover_go_to_sql_only(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*scenario_records())
        coordinator.run_migration()

        coordinator.add_event(_late_event(0))

        assert coordinator.json_store.count() == (3, 2)
        assert coordinator.sql_store.count() == (4, 2)

    def test_progress_never_decreases(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*session_records())
        statuses: list[CoordinatorStatus] = []
        coordinator.subscribe(statuses.append)

        coordinator.run_migration()

        progress = [status.progress for status in statuses]
        assert progress == sorted(progress)
        assert statuses[0].migration_state is MigrationState.IN_PROGRESS
        assert statuses[0].is_loading
        assert statuses[-1].migration_state is MigrationState.COMPLETED
        assert statuses[-1].storage_type is StorageType.SQL
        assert not statuses[-1].is_loading

    def test_failing_listener_does_not_block_others(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*scenario_records())
        seen: list[MigrationState] = []

        def broken(status: CoordinatorStatus) -> None:
            raise RuntimeError("listener bug")

        coordinator.subscribe(broken)
        unsubscribe = coordinator.subscribe(lambda status: seen.append(status.migration_state))

        coordinator.run_migration()
        unsubscribe()
        coordinator.add_event(_late_event(0))

        assert seen[-1] is MigrationState.COMPLETED
        assert coordinator.migration_state is MigrationState.COMPLETED

    def test_dual_writes_land_exactly_once(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*scenario_records())
        added: list[str] = []

        def write_during_migration(status: CoordinatorStatus) -> None:
            if status.migration_state is MigrationState.IN_PROGRESS and len(added) < 3:
                event = _late_event(len(added))
                added.append(event.id)
                coordinator.add_event(event)

        coordinator.subscribe(write_during_migration)
        assert coordinator.run_migration() is MigrationState.COMPLETED

        expected = {"E1", "E2", "E3", *added}
        assert len(added) == 3
        assert coordinator.sql_store.event_ids() == expected
        assert {event.id for event in coordinator.json_store.events()} == expected
        assert coordinator.sql_store.count() == (6, 2)

    def test_failed_sql_half_is_reconciled(
        self, make_coordinator: Factory, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        coordinator = make_coordinator(*scenario_records())
        sql_store = coordinator.sql_store

        def refuse(event: object) -> None:
            raise WriteFailure("database is locked")

        monkeypatch.setattr(sql_store, "append_event", refuse)
        written: list[str] = []

        def write_once(status: CoordinatorStatus) -> None:
            if status.migration_state is MigrationState.IN_PROGRESS and not written:
                event = _late_event(0)
                written.append(event.id)
                coordinator.add_event(event)

        coordinator.subscribe(write_once)

        assert coordinator.run_migration() is MigrationState.COMPLETED
        assert "late-0" in sql_store.event_ids()

    def test_background_migration_with_concurrent_writer(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*session_records(40))
        written: list[str] = []
        stop = threading.Event()

        def writer() -> None:
            index = 0
            while not stop.is_set() and index < 200:
                event = _late_event(index)
                coordinator.add_event(event)
                written.append(event.id)
                index += 1

        thread = threading.Thread(target=writer)
        thread.start()
        assert coordinator.start_migration()
        assert coordinator.wait_for_migration(timeout=30)
        stop.set()
        thread.join(timeout=30)

        assert coordinator.migration_state is MigrationState.COMPLETED
        expected = {f"event-{index}" for index in range(40)} | set(written)
        assert coordinator.sql_store.event_ids() == expected
        assert coordinator.sql_store.count()[0] == len(expected)

    def test_cancel_then_rollback_then_retry(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*session_records())

        def cancel_midway(status: CoordinatorStatus) -> None:
            if status.migration_state is MigrationState.IN_PROGRESS and 0 < status.progress < 1:
                coordinator.cancel_migration()

        unsubscribe = coordinator.subscribe(cancel_midway)
        assert coordinator.run_migration() is MigrationState.FAILED
        unsubscribe()

        assert coordinator.last_error == "Cancelled"
        assert coordinator.current_storage_type is StorageType.JSON
        assert coordinator.run_migration() is MigrationState.FAILED

        transitions: list[MigrationState] = []
        coordinator.subscribe(lambda status: transitions.append(status.migration_state))
        coordinator.rollback_migration()

        assert transitions == [MigrationState.ROLLED_BACK, MigrationState.NOT_STARTED]
        assert coordinator.sql_store.is_empty()
        assert coordinator.run_migration() is MigrationState.COMPLETED
        assert coordinator.sql_store.count() == (6, 5)

    def test_rollback_requires_failed_state(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*scenario_records())

        with pytest.raises(MigrationError):
            coordinator.rollback_migration()

    def test_completed_copy_is_adopted_without_rewriting(
        self, make_coordinator: Factory, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        first = make_coordinator(*scenario_records())
        first.run_migration()
        first.close()
        get_marker_path(tmp_path).unlink()

        def no_writes(self: SQLiteEventStore, events: object, switches: object) -> None:
            raise AssertionError("destination should not be rewritten")

        monkeypatch.setattr(SQLiteEventStore, "insert_batch", no_writes)
        second = make_coordinator()
        assert second.current_storage_type is StorageType.JSON
        assert second.needs_migration()

        assert second.run_migration() is MigrationState.COMPLETED
        assert second.current_storage_type is StorageType.SQL

    def test_forced_rerun_after_completion(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*scenario_records())
        coordinator.run_migration()

        assert coordinator.run_migration() is MigrationState.COMPLETED
        assert coordinator.run_migration(force=True) is MigrationState.COMPLETED
        assert coordinator.sql_store.count() == (3, 2)

    def test_forced_rerun_keeps_edits_made_after_cutover(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*scenario_records())
        coordinator.run_migration()
        coordinator.update_event_category("E1", "Development")
        coordinator.add_event(_late_event(1))

        assert coordinator.run_migration(force=True) is MigrationState.COMPLETED

        events = {event.id: event for event in coordinator.query_events()}
        assert events["E1"].category_name == "Development"
        assert "late-1" in events
        assert coordinator.sql_store.count() == (4, 2)

    def test_cancelled_forced_rerun_leaves_sql_active(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*session_records())
        coordinator.run_migration()
        coordinator.add_event(_late_event(1))

        def cancel_midway(status: CoordinatorStatus) -> None:
            if status.migration_state is MigrationState.IN_PROGRESS and 0 < status.progress < 1:
                coordinator.cancel_migration()

        unsubscribe = coordinator.subscribe(cancel_midway)
        assert coordinator.run_migration(force=True) is MigrationState.COMPLETED
        unsubscribe()

        assert coordinator.last_error == "Cancelled"
        assert coordinator.current_storage_type is StorageType.SQL
        with pytest.raises(MigrationError):
            coordinator.rollback_migration()
        assert coordinator.sql_store.count() == (7, 5)
        coordinator.close()

        restarted = make_coordinator()
        assert restarted.current_storage_type is StorageType.SQL
        assert restarted.migration_state is MigrationState.COMPLETED
        assert "late-1" in {event.id for event in restarted.query_events()}

    def test_failed_state_over_completed_copy_adopts_instead_of_rolling_back(
        self, make_coordinator: Factory, tmp_path: Path
    ) -> None:
        first = make_coordinator(*scenario_records())
        first.run_migration()
        first.close()
        MigrationMarker(get_marker_path(tmp_path)).mark(MigrationState.FAILED, error="lost")

        second = make_coordinator()
        assert second.migration_state is MigrationState.FAILED
        with pytest.raises(MigrationError):
            second.rollback_migration()

        assert second.run_migration() is MigrationState.COMPLETED
        assert second.current_storage_type is StorageType.SQL
        assert second.sql_store.count() == (3, 2)


class TestWrites:
    def test_json_write_failure_is_reported(
        self, make_coordinator: Factory, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        coordinator = make_coordinator(*scenario_records())

        def failing_replace(src: object, dst: object) -> None:
            raise OSError("read-only file system")

        monkeypatch.setattr(os, "replace", failing_replace)
        with pytest.raises(WriteFailure):
            coordinator.add_event(_late_event(0))

        assert coordinator.last_error.startswith("Could not add event")

    def test_categories_follow_the_migration(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*scenario_records())
        coordinator.add_category("Deep Work", color_hex="#112233")
        coordinator.add_event(
            make_event(
                "Figma", id="f1", at=BASE_TIME + timedelta(hours=1), category_name="Side Project"
            )
        )

        names = [category.name for category in coordinator.list_categories()]
        assert {"Deep Work", "Side Project", "Other"} <= set(names)
        with pytest.raises(ValueError):
            coordinator.add_category("deep work")

        coordinator.run_migration()

        by_name = {category.name: category for category in coordinator.list_categories()}
        assert by_name["Deep Work"].color_hex == "#112233"
        assert "Side Project" in by_name
        assert coordinator.delete_category("Side Project") == 1
        assert coordinator.query_events(limit=1)[0].category_name == "Other"

    def test_update_event_category_on_each_backend(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*scenario_records())

        assert coordinator.update_event_category("E1", "News").category_name == "News"
        coordinator.run_migration()
        assert coordinator.update_event_category("E2", "Design").category_name == "Design"

        categories = {event.id: event.category_name for event in coordinator.query_events()}
        assert categories["E1"] == "News"
        assert categories["E2"] == "Design"
        with pytest.raises(LookupError):
            coordinator.update_event_category("missing", "News")

    def test_sessions_only_on_sql(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*session_records())

        assert coordinator.query_sessions() == []
        coordinator.run_migration()
        assert [session.id for session in coordinator.query_sessions()] == ["session-b", "session-a"]


class TestReset:
    def test_reset_on_json_starts_over(self, make_coordinator: Factory, tmp_path: Path) -> None:
        coordinator = make_coordinator(*scenario_records())
        coordinator.add_category("Deep Work")

        coordinator.reset_data()

        assert coordinator.json_store.is_empty()
        assert coordinator.json_store.custom_categories() == ()
        assert coordinator.current_storage_type is StorageType.SQL
        assert coordinator.migration_state is MigrationState.COMPLETED
        assert not coordinator.needs_migration()
        reloaded = EventLogStore(get_json_path(tmp_path))
        reloaded.load()
        assert reloaded.is_empty()

    def test_reset_after_cutover_clears_sql(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*session_records())
        coordinator.run_migration()

        coordinator.reset_data()

        assert coordinator.sql_store.is_empty()
        assert coordinator.query_sessions() == []
        assert "Deep Work" not in {category.name for category in coordinator.list_categories()}
        assert coordinator.current_storage_type is StorageType.SQL
        coordinator.add_event(_late_event(0))
        assert coordinator.storage_metrics().total_events == 1

    def test_reset_refused_while_migrating(self, make_coordinator: Factory) -> None:
        coordinator = make_coordinator(*scenario_records())
        refusals: list[MigrationError] = []

        def reset_midway(status: CoordinatorStatus) -> None:
            if status.migration_state is MigrationState.IN_PROGRESS and not refusals:
                try:
                    coordinator.reset_data()
                except MigrationError as exc:
                    refusals.append(exc)

        coordinator.subscribe(reset_midway)
        assert coordinator.run_migration() is MigrationState.COMPLETED

        assert len(refusals) == 1
        assert coordinator.sql_store.count() == (3, 2)

    @pytest.mark.parametrize("migrated", [False, True])
    def test_reassign_category(self, make_coordinator: Factory, migrated: bool) -> None:
        coordinator = make_coordinator(*session_records())
        if migrated:
            coordinator.run_migration()

        moved = coordinator.reassign_category("Deep Work", "Focus")

        assert moved >= 3
        names = [event.category_name for event in coordinator.query_events()]
        assert names.count("Focus") == 3
        assert "Deep Work" not in names


class TestRuntime:
    def test_corrupt_json_is_set_aside(self, tmp_path: Path) -> None:
        get_json_path(tmp_path).write_text("{broken", encoding="utf-8")

        coordinator = build_coordinator(StorageSettings(), tmp_path)
        try:
            assert coordinator.json_store.is_empty()
            assert "previous file kept as" in coordinator.last_error
            assert list(tmp_path.glob("activity_store.json.corrupt-*"))
        finally:
            coordinator.close()

    def test_corrupt_database_falls_back_to_json(self, tmp_path: Path) -> None:
        get_db_path(tmp_path).write_bytes(b"garbage" * 200)

        coordinator = build_coordinator(StorageSettings(), tmp_path)
        try:
            assert coordinator.sql_store is None
            assert coordinator.current_storage_type is StorageType.JSON
            assert "Cannot open database" in coordinator.last_error
            assert coordinator.run_migration() is MigrationState.NOT_STARTED
        finally:
            coordinator.close()

    def test_oversized_json_stays_usable(self, tmp_path: Path) -> None:
        store = EventLogStore(get_json_path(tmp_path))
        store.load()
        store.append_batch(*scenario_records())

        coordinator = build_coordinator(StorageSettings(scale_limit=2), tmp_path)
        try:
            assert "limit is 2" in coordinator.last_error
            assert coordinator.current_storage_type is StorageType.JSON
            assert len(coordinator.query_events()) == 3
            coordinator.add_event(_late_event(0))
            assert coordinator.storage_metrics().total_events == 4
            assert coordinator.run_migration() is MigrationState.FAILED
            assert coordinator.sql_store.is_empty()
        finally:
            coordinator.close()
