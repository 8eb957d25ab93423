"""One-shot copy of the JSON event log into the SQLite store."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional, Sequence

from .config import StorageSettings
from .errors import (
    AlreadyMigrated,
    MigrationCancelled,
    MigrationError,
    MigrationVerificationMismatch,
    ScaleLimitExceeded,
)
from .json_store import EventLogStore, StoreSnapshot
from .marker import MigrationMarker
from .models import ActivationEvent, ContextSwitchMetric, MigrationState
from .sql_store import SQLiteEventStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

SOURCE_KEY = "migration_source"
STARTED_KEY = "migration_started_at"
COMPLETED_KEY = "migration_completed_at"


@dataclass(frozen=True, slots=True)
class MigrationResult:
    events: int
    switches: int
    delta_records: int
    watermark: int
    verified_at: datetime

    @property
    def record_count(self) -> int:
        return self.events + self.switches


class MigrationEngine:
    """Copies every JSON record into SQLite, then proves the copy is complete.

    The engine reads a snapshot of the source, writes it in fixed-size
    batches, then keeps copying whatever was appended after the snapshot's
    watermark until a pass finds nothing new. Verification compares id sets;
    the source is never modified.
    """

    def __init__(
        self,
        source: EventLogStore,
        destination: SQLiteEventStore,
        marker: Optional[MigrationMarker] = None,
        *,
        settings: Optional[StorageSettings] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        force: bool = False,
        after_cutover: bool = False,
    ) -> None:
        self.source = source
        self.destination = destination
        self.marker = marker
        self.settings = settings or StorageSettings()
        self.on_progress = on_progress
        self.cancel_event = cancel_event or threading.Event()
        self.force = force
        self.after_cutover = after_cutover
        self._prepared = False
        self._replacing_completed = after_cutover

    @property
    def source_key(self) -> str:
        return str(self.source.path.resolve())

    def prepare(self) -> None:
        """Check the destination and record that a run is starting.

        Raises ``AlreadyMigrated`` when the destination already holds a
        finished copy of this source (unless forced) and ``MigrationError``
        when it holds anything else. A run with ``after_cutover`` leaves the
        persisted COMPLETED state alone, since the destination is already
        the live store.
        """
        if self._prepared:
            return
        if not self.destination.is_empty():
            recorded_source = self.destination.get_metadata(SOURCE_KEY)
            completed_at = self.destination.get_metadata(COMPLETED_KEY)
            if recorded_source != self.source_key:
                raise MigrationError(
                    f"{self.destination.path} already contains data; roll back first"
                )
            if completed_at and not self.force:
                logger.info("Destination already holds a completed copy of %s", self.source_key)
                self._mark(MigrationState.COMPLETED)
                raise AlreadyMigrated(f"{self.source_key} was migrated at {completed_at}")
            if not completed_at and not self.force:
                raise MigrationError(
                    f"{self.destination.path} holds a partial migration; roll back first"
                )
            self._replacing_completed = self.after_cutover or bool(completed_at)
            logger.info("Forced re-run over existing rows of %s", self.source_key)

        self.destination.set_metadata(SOURCE_KEY, self.source_key)
        self.destination.set_metadata(STARTED_KEY, datetime.now().isoformat())
        if not self.after_cutover:
            self._mark(MigrationState.IN_PROGRESS)
        self._prepared = True

    def run(self) -> MigrationResult:
        self.prepare()
        try:
            result = self._run_prepared()
        except MigrationCancelled as exc:
            logger.warning("Migration cancelled: %s", exc)
            self._fail("Cancelled")
            raise
        except Exception as exc:
            logger.exception("Migration failed")
            self._fail(str(exc))
            raise
        self._mark(MigrationState.COMPLETED)
        return result

    def _run_prepared(self) -> MigrationResult:
        snapshot = self.source.snapshot()
        limit = self.settings.scale_limit
        if limit is not None and snapshot.record_count > limit:
            raise ScaleLimitExceeded(
                f"Source holds {snapshot.record_count} records; limit is {limit}"
            )

        total = snapshot.record_count
        logger.info(
            "Migrating %d events and %d context switches (watermark %d)",
            len(snapshot.events),
            len(snapshot.switches),
            snapshot.watermark,
        )
        self.destination.import_categories(self.source.custom_categories())
        event_ids = {event.id for event in snapshot.events}
        switch_ids = {switch.id for switch in snapshot.switches}
        written = self._copy(snapshot, 0, total)

        watermark = snapshot.watermark
        delta_records = 0
        for _ in range(self.settings.max_delta_passes):
            delta = self.source.changes_since(watermark)
            watermark = delta.watermark
            if not delta.record_count:
                break
            logger.info("Delta pass copying %d late records", delta.record_count)
            event_ids.update(event.id for event in delta.events)
            switch_ids.update(switch.id for switch in delta.switches)
            total += delta.record_count
            delta_records += delta.record_count
            written = self._copy(delta, written, total)

        self.verify(event_ids, switch_ids)
        verified_at = datetime.now()
        self.destination.set_metadata(COMPLETED_KEY, verified_at.isoformat())
        logger.info(
            "Migration verified: %d events, %d context switches",
            len(event_ids),
            len(switch_ids),
        )
        return MigrationResult(
            events=len(event_ids),
            switches=len(switch_ids),
            delta_records=delta_records,
            watermark=watermark,
            verified_at=verified_at,
        )

    def verify(self, event_ids: set[str], switch_ids: set[str]) -> None:
        """Compare what was copied with what the destination holds.

        Destination ids are read before the current source ids, so a record
        dual-written in between is already present in the source set.
        """
        dest_events = self.destination.event_ids()
        dest_switches = self.destination.switch_ids()
        source_events = {event.id for event in self.source.events()}
        source_switches = {switch.id for switch in self.source.switches()}

        checks = (
            ("events", event_ids, dest_events, source_events),
            ("context switches", switch_ids, dest_switches, source_switches),
        )
        for kind, expected, destination, current in checks:
            missing = expected - destination
            # Rows written straight to SQLite after an earlier cutover have no
            # JSON counterpart.
            unexpected = set() if self._replacing_completed else destination - current
            if missing or unexpected:
                raise MigrationVerificationMismatch(
                    kind,
                    source_count=len(expected),
                    destination_count=len(destination),
                    missing=missing,
                    unexpected=unexpected,
                )

    def reconcile(self, watermark: int) -> int:
        """Copy records the destination lacks after cutover; returns how many."""
        self.destination.import_categories(self.source.custom_categories())
        delta = self.source.changes_since(watermark)
        dest_events = self.destination.event_ids()
        dest_switches = self.destination.switch_ids()
        current = self.source.snapshot()

        events = {event.id: event for event in delta.events}
        events.update(
            (event.id, event) for event in current.events if event.id not in dest_events
        )
        switches = {switch.id: switch for switch in delta.switches}
        switches.update(
            (switch.id, switch)
            for switch in current.switches
            if switch.id not in dest_switches
        )
        pending = StoreSnapshot(tuple(events.values()), tuple(switches.values()), current.watermark)
        if pending.record_count:
            logger.info("Reconciling %d records after cutover", pending.record_count)
            for batch_events, batch_switches in self._batches(pending):
                self._write(batch_events, batch_switches)
        return pending.record_count

    def rollback(self) -> None:
        """Empty the destination's migrated tables; the source is left alone."""
        self.destination.truncate()
        self._prepared = False
        self._replacing_completed = self.after_cutover
        logger.info("Rolled back migration into %s", self.destination.path)

    def _copy(self, snapshot: StoreSnapshot, written: int, total: int) -> int:
        for events, switches in self._batches(snapshot):
            if self.cancel_event.is_set():
                raise MigrationCancelled(written)
            self._write(events, switches)
            written += len(events) + len(switches)
            logger.debug("Migrated %d/%d records", written, total)
            if self.on_progress is not None:
                self.on_progress(written, total)
        return written

    def _batches(
        self, snapshot: StoreSnapshot
    ) -> Iterator[tuple[Sequence[ActivationEvent], Sequence[ContextSwitchMetric]]]:
        size = self.settings.batch_size
        thresholds = self.settings.thresholds
        records: list = list(snapshot.events)
        records.extend(switch.reclassified(thresholds) for switch in snapshot.switches)
        for offset in range(0, len(records), size):
            chunk = records[offset:offset + size]
            yield (
                [record for record in chunk if isinstance(record, ActivationEvent)],
                [record for record in chunk if isinstance(record, ContextSwitchMetric)],
            )

    def has_completed_copy(self) -> bool:
        """True when the destination records a verified copy of this source."""
        return (
            self.destination.get_metadata(SOURCE_KEY) == self.source_key
            and self.destination.get_metadata(COMPLETED_KEY) is not None
        )

    def _write(
        self, events: Sequence[ActivationEvent], switches: Sequence[ContextSwitchMetric]
    ) -> None:
        # Rows already in a completed copy may have been edited since; never overwrite them.
        if self._replacing_completed:
            self.destination.insert_missing(events, switches)
        else:
            self.destination.insert_batch(events, switches)

    def _fail(self, error: str) -> None:
        if self.marker is None:
            return
        if self.after_cutover:
            self.marker.keep_completed(source=self.source_key, error=error)
        else:
            self._mark(MigrationState.FAILED, error=error)

    def _mark(self, state: MigrationState, *, error: Optional[str] = None) -> None:
        if self.marker is not None:
            self.marker.mark(state, source=self.source_key, error=error)
