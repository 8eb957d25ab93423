"""Storage coordinator: one read/write surface over the JSON and SQLite backends."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

import psutil

from .categories import (
    DEFAULT_CATEGORIES,
    FALLBACK_CATEGORY,
    CategoryReference,
    category_id_for,
    is_default_category,
)
from .config import StorageSettings
from .errors import AlreadyMigrated, MigrationCancelled, MigrationError, StorageError
from .json_store import EventLogStore
from .marker import MigrationMarker
from .migration import MigrationEngine, MigrationResult
from .models import (
    ActivationEvent,
    AppUsageStat,
    ContextSwitchMetric,
    MigrationState,
    Session,
    StorageType,
)
from .sql_store import SQLiteEventStore

logger = logging.getLogger(__name__)

Store = Union[EventLogStore, SQLiteEventStore]


@dataclass(frozen=True, slots=True)
class CoordinatorStatus:
    migration_state: MigrationState
    progress: float
    storage_type: StorageType
    is_loading: bool
    last_error: Optional[str]


@dataclass(frozen=True, slots=True)
class StorageMetrics:
    storage_type: StorageType
    total_events: int
    total_context_switches: int
    process_memory_mb: float


Listener = Callable[[CoordinatorStatus], None]


class StorageCoordinator:
    """Routes reads and writes to the active backend and drives migration.

    Only the coordinator decides which backend is active. While a migration
    runs, writes go to the JSON store first (its failure is the caller's
    failure) and then to SQLite; a failed SQLite half is repaired by the
    reconciliation pass that follows cutover.
    """

    def __init__(
        self,
        json_store: EventLogStore,
        sql_store: Optional[SQLiteEventStore],
        marker: MigrationMarker,
        *,
        settings: Optional[StorageSettings] = None,
        startup_error: Optional[str] = None,
    ) -> None:
        self.json_store = json_store
        self.sql_store = sql_store
        self.marker = marker
        self.settings = settings or StorageSettings()

        self._lock = threading.Lock()
        self._drained = threading.Condition(self._lock)
        self._inflight = 0
        self._notify_lock = threading.RLock()
        self._control_lock = threading.RLock()
        self._listeners: list[Listener] = []

        self._storage_type = StorageType.JSON
        self._migration_state = MigrationState.NOT_STARTED
        self._progress = 0.0
        self._is_loading = False
        self._last_error = startup_error

        self._thread: Optional[threading.Thread] = None
        self._cancel_event: Optional[threading.Event] = None

        self._select_backend()

    def _select_backend(self) -> None:
        record = self.marker.load()
        sql_available = self.sql_store is not None

        if record.state is MigrationState.COMPLETED:
            self._migration_state = MigrationState.COMPLETED
            self._progress = 1.0
            if sql_available:
                self._storage_type = StorageType.SQL
            else:
                self._last_error = "SQLite store unavailable; using JSON store"
                logger.warning("Migration completed earlier but SQLite is unavailable.")
        elif record.state is MigrationState.IN_PROGRESS:
            self._migration_state = MigrationState.FAILED
            self._last_error = "Migration was interrupted"
            logger.warning("Previous migration was interrupted; marking it failed.")
            self.marker.mark(MigrationState.FAILED, source=record.source, error=self._last_error)
        elif record.state is MigrationState.FAILED:
            self._migration_state = MigrationState.FAILED
            self._last_error = record.error or self._last_error
        elif sql_available and self.json_store.is_empty():
            logger.info("JSON store is empty; starting on SQLite directly.")
            self._storage_type = StorageType.SQL
            self._migration_state = MigrationState.COMPLETED
            self._progress = 1.0
            self.marker.mark(MigrationState.COMPLETED, source="empty")
        logger.info(
            "Storage coordinator using %s backend (migration %s)",
            self._storage_type.value,
            self._migration_state.value,
        )

    # ------------------------------------------------------------------
    # State and notifications
    # ------------------------------------------------------------------

    @property
    def current_storage_type(self) -> StorageType:
        return self._storage_type

    @property
    def migration_state(self) -> MigrationState:
        return self._migration_state

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def status(self) -> CoordinatorStatus:
        with self._lock:
            return self._status_locked()

    def _status_locked(self) -> CoordinatorStatus:
        return CoordinatorStatus(
            migration_state=self._migration_state,
            progress=self._progress,
            storage_type=self._storage_type,
            is_loading=self._is_loading,
            last_error=self._last_error,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for status changes; returns an unsubscribe callable."""
        with self._notify_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._notify_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        with self._notify_lock:
            status = self.status()
            for listener in list(self._listeners):
                try:
                    listener(status)
                except Exception:
                    logger.exception("Status listener %r failed", listener)

    def _update(self, **changes: object) -> None:
        with self._lock:
            for name, value in changes.items():
                setattr(self, f"_{name}", value)
        self._publish()

    def _record_error(self, message: str) -> None:
        self._update(last_error=message)

    def needs_migration(self) -> bool:
        return (
            self._storage_type is StorageType.JSON
            and self._migration_state
            in (MigrationState.NOT_STARTED, MigrationState.FAILED, MigrationState.ROLLED_BACK)
            and not self.json_store.is_empty()
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_event(self, event: ActivationEvent) -> None:
        self._write(
            "add event",
            lambda store: store.append_event(event),
            lambda store: store.append_event(event),
        )

    def add_context_switch(self, switch: ContextSwitchMetric) -> None:
        self._write(
            "add context switch",
            lambda store: store.append_switch(switch),
            lambda store: store.append_switch(switch),
        )

    def add_batch(
        self,
        events: list[ActivationEvent],
        switches: list[ContextSwitchMetric],
    ) -> None:
        self._write(
            "add batch",
            lambda store: store.append_batch(events, switches),
            lambda store: store.insert_batch(events, switches),
        )

    def close_session(self, session: Session) -> None:
        """Persist a session's end time.

        Only the SQLite backend keeps session rows; in JSON mode sessions are
        implied by the events that carry their id.
        """
        store = self._active_store()
        if isinstance(store, SQLiteEventStore):
            self._guarded("close session", lambda: store.close_session(session))
        elif self._migration_state is MigrationState.IN_PROGRESS and self.sql_store is not None:
            self._mirror("close session", lambda sql: sql.close_session(session))
        else:
            logger.debug("Session %s ended at %s", session.id, session.end_time)

    def update_event_category(self, event_id: str, category_name: str) -> ActivationEvent:
        return self._write(
            "update event category",
            lambda store: store.update_event_category(event_id, category_name),
            lambda store: store.update_event_category(event_id, category_name),
        )

    def recategorize_app(self, bundle_identifier: str, category_name: str) -> int:
        return self._write(
            "recategorize app",
            lambda store: store.recategorize_app(bundle_identifier, category_name),
            lambda store: store.recategorize_app(bundle_identifier, category_name),
        )

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

        def add_json(store: EventLogStore) -> CategoryReference:
            reference = CategoryReference(
                id=category_id_for(name),
                name=name,
                color_hex=color_hex,
                description=description,
            )
            store.add_category(reference)
            return reference

        return self._write(
            "add category",
            add_json,
            lambda store: store.add_category(
                name, color_hex=color_hex, description=description
            ),
        )

    def delete_category(self, name: str, fallback: str = FALLBACK_CATEGORY) -> int:
        return self._write(
            "delete category",
            lambda store: store.delete_category(name, fallback),
            lambda store: store.delete_category(name, fallback),
        )

    def reassign_category(self, old_name: str, new_name: str) -> int:
        """Move every event and switch filed under ``old_name`` onto ``new_name``."""
        return self._write(
            "reassign category",
            lambda store: store.reassign_category(old_name, new_name),
            lambda store: store.reassign_category(old_name, new_name),
        )

    def reset_data(self) -> None:
        """Delete every recorded activation and switch from both backends.

        The migration marker is reset as well, so backend selection starts
        over exactly as on a fresh install.
        """
        with self._control_lock:
            if self._migration_state is MigrationState.IN_PROGRESS:
                raise MigrationError("Cannot reset data while a migration is running")
            self._guarded("clear event log", self.json_store.clear)
            if self.sql_store is not None:
                self._guarded("clear database", self.sql_store.clear)
            if self._storage_type is StorageType.JSON:
                self.marker.clear()
                with self._lock:
                    self._migration_state = MigrationState.NOT_STARTED
                    self._progress = 0.0
                    self._select_backend()
            with self._lock:
                self._last_error = None
            self._publish()
            logger.info("All recorded activity deleted")

    def _write(
        self,
        action: str,
        json_write: Callable[[EventLogStore], object],
        sql_write: Callable[[SQLiteEventStore], object],
    ):
        with self._lock:
            storage_type = self._storage_type
            dual = (
                storage_type is StorageType.JSON
                and self._migration_state is MigrationState.IN_PROGRESS
                and self.sql_store is not None
            )
            if dual:
                self._inflight += 1
        try:
            if storage_type is StorageType.SQL:
                return self._guarded(action, lambda: sql_write(self.sql_store))
            result = self._guarded(action, lambda: json_write(self.json_store))
            if dual:
                self._mirror(action, sql_write)
            return result
        finally:
            if dual:
                with self._lock:
                    self._inflight -= 1
                    if not self._inflight:
                        self._drained.notify_all()

    def _guarded(self, action: str, write: Callable[[], object]):
        try:
            return write()
        except StorageError as exc:
            self._record_error(f"Could not {action}: {exc}")
            raise

    def _mirror(
        self, action: str, sql_write: Callable[[SQLiteEventStore], object]
    ) -> None:
        try:
            sql_write(self.sql_store)
        except LookupError:
            # Not copied yet; the engine's delta pass brings the rewritten record.
            logger.debug("Dual-write of %s skipped; row not migrated yet", action)
        except (StorageError, ValueError) as exc:
            logger.warning("SQLite half of dual-write failed (%s): %s", action, exc)
            self._record_error(f"SQLite write deferred to reconciliation: {exc}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _active_store(self) -> Store:
        if self._storage_type is StorageType.SQL and self.sql_store is not None:
            return self.sql_store
        return self.json_store

    def query_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[ActivationEvent]:
        return self._active_store().fetch_events(start, end, limit)

    def query_context_switches(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[ContextSwitchMetric]:
        return self._active_store().fetch_switches(start, end, limit)

    def query_usage_stats(self, start: datetime, end: datetime) -> list[AppUsageStat]:
        return self._active_store().usage_stats(start, end)

    def query_sessions(self, limit: Optional[int] = None) -> list[Session]:
        store = self._active_store()
        if isinstance(store, SQLiteEventStore):
            return store.list_sessions(limit)
        return []

    def list_categories(self) -> list[CategoryReference]:
        store = self._active_store()
        if isinstance(store, SQLiteEventStore):
            return store.list_categories()
        known = {category.name for category in DEFAULT_CATEGORIES}
        custom = {category.name: category for category in store.custom_categories()}
        for name in store.category_names():
            if name not in known and name not in custom and not is_default_category(name):
                custom[name] = CategoryReference(id=category_id_for(name), name=name)
        return list(DEFAULT_CATEGORIES) + sorted(
            custom.values(), key=lambda category: category.name.casefold()
        )

    def storage_metrics(self) -> StorageMetrics:
        total_events, total_switches = self._active_store().count()
        memory = psutil.Process().memory_info().rss / (1024 * 1024)
        return StorageMetrics(
            storage_type=self._storage_type,
            total_events=total_events,
            total_context_switches=total_switches,
            process_memory_mb=memory,
        )

    # ------------------------------------------------------------------
    # Migration control
    # ------------------------------------------------------------------

    def start_migration(self, force: bool = False) -> bool:
        """Start migrating in a background thread; returns False if nothing was started."""
        with self._control_lock:
            engine = self._begin_migration(force)
            if engine is None:
                return False
            thread = threading.Thread(
                target=self._run_engine,
                args=(engine,),
                name="focus-monitor-migration",
                daemon=True,
            )
            self._thread = thread
            thread.start()
        return True

    def run_migration(self, force: bool = False) -> MigrationState:
        """Run a migration on the calling thread and return the resulting state."""
        with self._control_lock:
            engine = self._begin_migration(force)
        if engine is not None:
            self._run_engine(engine)
        return self._migration_state

    def cancel_migration(self) -> bool:
        cancel_event = self._cancel_event
        if cancel_event is None or self._migration_state is not MigrationState.IN_PROGRESS:
            return False
        logger.info("Cancellation requested")
        cancel_event.set()
        return True

    def wait_for_migration(self, timeout: Optional[float] = None) -> bool:
        """Block until the background migration ends; True when no run is active."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            return not thread.is_alive()
        return True

    def rollback_migration(self) -> None:
        """Empty the SQLite tables after a failed run so a fresh attempt can start."""
        with self._control_lock:
            if self._migration_state is not MigrationState.FAILED:
                raise MigrationError(
                    f"Cannot roll back a migration in state {self._migration_state.value}"
                )
            if self._thread is not None and self._thread.is_alive():
                raise MigrationError("Migration thread is still running")
            if self.sql_store is None:
                raise MigrationError("SQLite store unavailable")
            if self._storage_type is StorageType.SQL:
                raise MigrationError("SQLite is the active store; its rows cannot be rolled back")
            engine = MigrationEngine(self.json_store, self.sql_store, settings=self.settings)
            if engine.has_completed_copy():
                raise MigrationError(
                    "SQLite already holds a completed copy; run the migration again to adopt it"
                )
            engine.rollback()
            source = str(self.json_store.path.resolve())
            self.marker.mark(MigrationState.ROLLED_BACK, source=source)
            self._update(migration_state=MigrationState.ROLLED_BACK, progress=0.0)
            self.marker.mark(MigrationState.NOT_STARTED, source=source)
            self._update(migration_state=MigrationState.NOT_STARTED, last_error=None)

    def _begin_migration(self, force: bool) -> Optional[MigrationEngine]:
        if self.sql_store is None:
            self._record_error("SQLite store unavailable; cannot migrate")
            return None
        state = self._migration_state
        if state is MigrationState.IN_PROGRESS:
            logger.info("Migration already running")
            return None
        if state is MigrationState.COMPLETED and not force:
            return None

        after_cutover = self._storage_type is StorageType.SQL
        cancel_event = threading.Event()
        engine = MigrationEngine(
            self.json_store,
            self.sql_store,
            self.marker,
            settings=self.settings,
            on_progress=self._on_progress,
            cancel_event=cancel_event,
            force=force,
            after_cutover=after_cutover,
        )
        if state is MigrationState.FAILED and not engine.has_completed_copy():
            self._record_error("Roll back the failed migration before retrying")
            return None
        try:
            engine.prepare()
        except AlreadyMigrated:
            self._update(
                storage_type=StorageType.SQL,
                migration_state=MigrationState.COMPLETED,
                progress=1.0,
                last_error=None,
            )
            return None
        except StorageError as exc:
            logger.warning("Migration cannot start: %s", exc)
            if after_cutover:
                self._record_error(str(exc))
                return None
            self.marker.mark(
                MigrationState.FAILED, source=engine.source_key, error=str(exc)
            )
            self._update(migration_state=MigrationState.FAILED, last_error=str(exc))
            return None

        self._cancel_event = cancel_event
        self._update(
            migration_state=MigrationState.IN_PROGRESS,
            progress=0.0,
            is_loading=True,
            last_error=None,
        )
        return engine

    def _on_progress(self, written: int, total: int) -> None:
        fraction = min(written / total, 1.0) if total else 1.0
        with self._lock:
            if self._migration_state is not MigrationState.IN_PROGRESS:
                return
            if fraction <= self._progress:
                return
            self._progress = fraction
        self._publish()

    def _run_engine(self, engine: MigrationEngine) -> None:
        try:
            result = engine.run()
        except MigrationCancelled:
            self._abandon(engine, "Cancelled")
            return
        except Exception as exc:
            # The engine already logged the traceback.
            self._abandon(engine, str(exc))
            return
        finally:
            self._cancel_event = None
        self._cut_over(engine, result)

    def _abandon(self, engine: MigrationEngine, error: str) -> None:
        if engine.after_cutover:
            # SQLite stays the live store; only the re-run is lost.
            self._update(
                migration_state=MigrationState.COMPLETED,
                progress=1.0,
                is_loading=False,
                last_error=error,
            )
        else:
            self._update(
                migration_state=MigrationState.FAILED,
                is_loading=False,
                last_error=error,
            )

    def _cut_over(self, engine: MigrationEngine, result: MigrationResult) -> None:
        with self._lock:
            self._storage_type = StorageType.SQL
            self._migration_state = MigrationState.COMPLETED
            self._progress = 1.0
            self._is_loading = False
        self._publish()
        logger.info("Cut over to SQLite after migrating %d records", result.record_count)

        with self._drained:
            while self._inflight:
                self._drained.wait()
        try:
            copied = engine.reconcile(result.watermark)
        except StorageError as exc:
            logger.exception("Post-cutover reconciliation failed")
            self._record_error(f"Reconciliation failed: {exc}")
            return
        if copied:
            logger.info("Reconciliation copied %d records", copied)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def flush(self) -> None:
        self.json_store.flush()

    def close(self, timeout: float = 5.0) -> None:
        thread = self._thread
        if thread is not None and thread.is_alive():
            self.cancel_migration()
            thread.join(timeout)
        self.flush()
        if self.sql_store is not None:
            self.sql_store.close()
