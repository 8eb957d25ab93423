"""Append-only JSON document store for activation events and context switches."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from .categories import (
    FALLBACK_CATEGORY,
    CategoryReference,
    category_id_for,
    is_default_category,
    normalize_category_name,
)
from .errors import ScaleLimitExceeded, StorageCorruption, WriteFailure
from .models import (
    DEFAULT_THRESHOLDS,
    ActivationEvent,
    AppUsageStat,
    ContextSwitchMetric,
    StorageType,
    SwitchThresholds,
)
from .reporting import build_usage_stats

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = 1


@dataclass(frozen=True, slots=True)
class StoreSnapshot:
    """Immutable view of the store, or of the records added after a watermark."""

    events: tuple[ActivationEvent, ...]
    switches: tuple[ContextSwitchMetric, ...]
    watermark: int

    @property
    def record_count(self) -> int:
        return len(self.events) + len(self.switches)


class EventLogStore:
    """File-backed store that keeps the whole document in memory.

    Mutations are serialized by one lock and each one rewrites the file
    through a temporary sibling that is renamed into place. Readers get the
    current tuples without taking the lock; a mutation swaps in new tuples
    rather than editing the old ones, so a value already handed out never
    changes underneath its reader.

    Every record carries a process-local sequence number. ``snapshot()``
    reports the highest one as a watermark and ``changes_since()`` returns
    whatever was appended or rewritten after it.
    """

    storage_type = StorageType.JSON

    def __init__(
        self,
        path: Path,
        *,
        thresholds: SwitchThresholds = DEFAULT_THRESHOLDS,
        scale_limit: Optional[int] = None,
    ) -> None:
        self.path = Path(path)
        self.thresholds = thresholds
        self.scale_limit = scale_limit
        self._lock = threading.Lock()
        self._events: tuple[ActivationEvent, ...] = ()
        self._switches: tuple[ContextSwitchMetric, ...] = ()
        self._categories: tuple[CategoryReference, ...] = ()
        self._event_seq: dict[str, int] = {}
        self._switch_seq: dict[str, int] = {}
        self._sequence = 0
        self._dirty = False

    @property
    def temp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> tuple[list[ActivationEvent], list[ContextSwitchMetric]]:
        """Read the whole document into memory.

        A document that cannot be parsed in full raises ``StorageCorruption``;
        no attempt is made to salvage individual records.
        """
        with self._lock:
            if self.temp_path.exists():
                logger.warning("Discarding unfinished write %s", self.temp_path)
                self.temp_path.unlink(missing_ok=True)
            if self.path.exists():
                events, switches, categories = self._read_document()
            else:
                logger.info("No event log at %s; starting empty.", self.path)
                events, switches, categories = [], [], []

            total = len(events) + len(switches)
            if self.scale_limit is not None and total > self.scale_limit:
                raise ScaleLimitExceeded(
                    f"{self.path} holds {total} records; limit is {self.scale_limit}"
                )

            self._events = ()
            self._switches = ()
            self._categories = tuple(categories)
            self._event_seq.clear()
            self._switch_seq.clear()
            self._install(events, switches)
            self._dirty = False
            logger.info(
                "Loaded %d events and %d context switches from %s",
                len(events),
                len(switches),
                self.path,
            )
            return list(self._events), list(self._switches)

    def _read_document(
        self,
    ) -> tuple[list[ActivationEvent], list[ContextSwitchMetric], list[CategoryReference]]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise StorageCorruption(f"Event log {self.path} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise StorageCorruption(f"Event log {self.path} cannot be read: {exc}") from exc

        if isinstance(raw, list):
            # Documents written before context switches were tracked.
            raw = {"events": raw, "contextSwitches": []}
        if not isinstance(raw, dict):
            raise StorageCorruption(f"Event log {self.path} has an unexpected layout")
        raw_events = raw.get("events", [])
        raw_switches = raw.get("contextSwitches", [])
        raw_categories = raw.get("customCategories", [])
        if not all(isinstance(value, list) for value in (raw_events, raw_switches, raw_categories)):
            raise StorageCorruption(f"Event log {self.path} has an unexpected layout")

        events = [
            self._parse_record(ActivationEvent.from_json, item, "event", index)
            for index, item in enumerate(raw_events)
        ]
        switches = [
            self._parse_record(
                lambda data: ContextSwitchMetric.from_json(data, self.thresholds),
                item,
                "context switch",
                index,
            )
            for index, item in enumerate(raw_switches)
        ]
        for kind, records in (("event", events), ("context switch", switches)):
            seen: set[str] = set()
            for record in records:
                if record.id in seen:
                    raise StorageCorruption(
                        f"Event log {self.path} contains duplicate {kind} id {record.id}"
                    )
                seen.add(record.id)
        categories = [
            self._parse_record(_category_from_json, item, "category", index)
            for index, item in enumerate(raw_categories)
        ]
        return events, switches, categories

    def _parse_record(self, parse: Any, item: Any, kind: str, index: int) -> Any:
        if not isinstance(item, dict):
            raise StorageCorruption(f"{kind} #{index} in {self.path} is not an object")
        try:
            return parse(item)
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageCorruption(
                f"{kind} #{index} in {self.path} is invalid: {exc!r}"
            ) from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def events(self) -> tuple[ActivationEvent, ...]:
        return self._events

    def switches(self) -> tuple[ContextSwitchMetric, ...]:
        return self._switches

    def count(self) -> tuple[int, int]:
        return len(self._events), len(self._switches)

    def is_empty(self) -> bool:
        return not self._events and not self._switches

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(self._events, self._switches, self._sequence)

    def changes_since(self, watermark: int) -> StoreSnapshot:
        """Records appended or rewritten after ``watermark``."""
        with self._lock:
            events = tuple(
                event for event in self._events if self._event_seq[event.id] > watermark
            )
            switches = tuple(
                switch
                for switch in self._switches
                if self._switch_seq[switch.id] > watermark
            )
            return StoreSnapshot(events, switches, self._sequence)

    def fetch_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[ActivationEvent]:
        """Events in ``[start, end]``, newest first."""
        selected = [
            event for event in self._events if _in_range(event.timestamp, start, end)
        ]
        selected.sort(key=lambda event: event.timestamp, reverse=True)
        return selected[:limit] if limit is not None else selected

    def fetch_switches(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[ContextSwitchMetric]:
        selected = [
            switch for switch in self._switches if _in_range(switch.timestamp, start, end)
        ]
        selected.sort(key=lambda switch: switch.timestamp, reverse=True)
        return selected[:limit] if limit is not None else selected

    def usage_stats(self, start: datetime, end: datetime) -> list[AppUsageStat]:
        return build_usage_stats(self.fetch_events(start, end))

    def category_names(self) -> set[str]:
        names = {event.category_name for event in self._events}
        for switch in self._switches:
            names.update((switch.from_category, switch.to_category))
        names.update(category.name for category in self._categories)
        return names

    def custom_categories(self) -> tuple[CategoryReference, ...]:
        return self._categories

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append_event(self, event: ActivationEvent) -> None:
        self.append_batch([event], [])

    def append_switch(self, switch: ContextSwitchMetric) -> None:
        self.append_batch([], [switch])

    def append_batch(
        self,
        events: Sequence[ActivationEvent],
        switches: Sequence[ContextSwitchMetric],
    ) -> None:
        with self._lock:
            new_events = self._without_replays(events, self._event_seq, self._events)
            new_switches = self._without_replays(
                [switch.reclassified(self.thresholds) for switch in switches],
                self._switch_seq,
                self._switches,
            )
            self._install(new_events, new_switches)
            self._persist_locked()

    def replace_all(
        self,
        events: Iterable[ActivationEvent],
        switches: Iterable[ContextSwitchMetric],
    ) -> None:
        events = list(events)
        switches = [switch.reclassified(self.thresholds) for switch in switches]
        for kind, records in (("event", events), ("context switch", switches)):
            ids = [record.id for record in records]
            if len(ids) != len(set(ids)):
                raise ValueError(f"replace_all received duplicate {kind} ids")
        with self._lock:
            self._events = ()
            self._switches = ()
            self._event_seq.clear()
            self._switch_seq.clear()
            self._install(events, switches)
            self._persist_locked()

    def update_event_category(self, event_id: str, category_name: str) -> ActivationEvent:
        with self._lock:
            for event in self._events:
                if event.id == event_id:
                    break
            else:
                raise LookupError(f"No event found for id={event_id}")
            updated = event.with_category(category_name)
            self._rewrite_events(lambda item: updated if item.id == event_id else item)
            self._persist_locked()
            return updated

    def recategorize_app(self, bundle_identifier: str, category_name: str) -> int:
        """Refile every event of one application under a new category."""
        name = normalize_category_name(category_name)
        with self._lock:
            changed = self._rewrite_events(
                lambda event: event.with_category(name)
                if event.bundle_identifier == bundle_identifier and event.category_name != name
                else event
            )
            if changed:
                self._persist_locked()
            return changed

    def reassign_category(self, old_name: str, new_name: str) -> int:
        """Move every reference to ``old_name`` onto ``new_name``."""
        old = normalize_category_name(old_name)
        new = normalize_category_name(new_name)
        if old == new:
            return 0
        with self._lock:
            changed = self._reassign_locked(old, new)
            if changed:
                self._persist_locked()
            return changed

    def add_category(self, reference: CategoryReference) -> None:
        folded = reference.name.casefold()
        with self._lock:
            if is_default_category(reference.name) or any(
                category.name.casefold() == folded for category in self._categories
            ):
                raise ValueError(f"Category {reference.name!r} already exists")
            self._categories = self._categories + (reference,)
            self._persist_locked()

    def delete_category(self, name: str, fallback: str = FALLBACK_CATEGORY) -> int:
        """Drop a custom category and refile everything that referenced it."""
        if is_default_category(name) or name == fallback:
            raise ValueError(f"Category {name!r} cannot be deleted")
        with self._lock:
            remaining = tuple(c for c in self._categories if c.name != name)
            if len(remaining) == len(self._categories) and name not in self.category_names():
                raise LookupError(f"No category named {name!r}")
            self._categories = remaining
            moved = self._reassign_locked(name, normalize_category_name(fallback))
            self._persist_locked()
            return moved

    def clear(self) -> None:
        with self._lock:
            self._categories = ()
        self.replace_all([], [])

    def flush(self) -> None:
        with self._lock:
            if self._dirty:
                self._persist_locked()

    def close(self) -> None:
        self.flush()

    # ------------------------------------------------------------------
    # Internals (callers hold the lock)
    # ------------------------------------------------------------------

    def _without_replays(self, records: Sequence[Any], seq: dict[str, int], current: tuple) -> list:
        """Drop exact replays of stored records; reject conflicting ids."""
        fresh = []
        pending: dict[str, Any] = {}
        for record in records:
            if record.id in seq or record.id in pending:
                existing = pending.get(record.id)
                if existing is None:
                    existing = next((item for item in current if item.id == record.id), None)
                if existing == record:
                    continue
                raise WriteFailure(f"A different record with id {record.id} is already stored")
            pending[record.id] = record
            fresh.append(record)
        return fresh

    def _install(
        self,
        events: Sequence[ActivationEvent],
        switches: Sequence[ContextSwitchMetric],
    ) -> None:
        for event in events:
            self._sequence += 1
            self._event_seq[event.id] = self._sequence
        for switch in switches:
            self._sequence += 1
            self._switch_seq[switch.id] = self._sequence
        if events:
            self._events = self._events + tuple(events)
        if switches:
            self._switches = self._switches + tuple(switches)

    def _reassign_locked(self, old: str, new: str) -> int:
        changed = self._rewrite_events(
            lambda event: event.with_category(new) if event.category_name == old else event
        )
        changed += self._rewrite_switches(
            lambda switch: replace(
                switch,
                from_category=new if switch.from_category == old else switch.from_category,
                to_category=new if switch.to_category == old else switch.to_category,
            )
            if old in (switch.from_category, switch.to_category)
            else switch
        )
        return changed

    def _rewrite_events(self, transform: Any) -> int:
        changed = 0
        rewritten = []
        for event in self._events:
            new = transform(event)
            if new is not event:
                changed += 1
                self._sequence += 1
                self._event_seq[new.id] = self._sequence
            rewritten.append(new)
        if changed:
            self._events = tuple(rewritten)
        return changed

    def _rewrite_switches(self, transform: Any) -> int:
        changed = 0
        rewritten = []
        for switch in self._switches:
            new = transform(switch)
            if new is not switch:
                changed += 1
                self._sequence += 1
                self._switch_seq[new.id] = self._sequence
            rewritten.append(new)
        if changed:
            self._switches = tuple(rewritten)
        return changed

    def _persist_locked(self) -> None:
        payload = {
            "version": DOCUMENT_VERSION,
            "events": [event.to_json() for event in self._events],
            "contextSwitches": [switch.to_json() for switch in self._switches],
            "customCategories": [_category_to_json(category) for category in self._categories],
        }
        tmp = self.temp_path
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except OSError as exc:
            self._dirty = True
            logger.exception("Failed to persist event log %s", self.path)
            raise WriteFailure(f"Could not write {self.path}: {exc}") from exc
        self._dirty = False
        logger.debug(
            "Persisted %d events and %d context switches.",
            len(self._events),
            len(self._switches),
        )


def _category_to_json(category: CategoryReference) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "colorHex": category.color_hex,
        "description": category.description,
    }


def _category_from_json(data: dict[str, Any]) -> CategoryReference:
    name = str(data["name"]).strip()
    if not name:
        raise ValueError("category name is empty")
    return CategoryReference(
        id=str(data.get("id") or category_id_for(name)),
        name=name,
        is_default=False,
        color_hex=data.get("colorHex"),
        description=data.get("description"),
    )


def _in_range(
    timestamp: datetime, start: Optional[datetime], end: Optional[datetime]
) -> bool:
    if start is not None and timestamp < start:
        return False
    if end is not None and timestamp > end:
        return False
    return True
