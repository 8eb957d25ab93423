"""Durable record of the migration lifecycle.

The marker is a small JSON file next to the stores. It survives restarts so
the coordinator can tell a finished migration from one that was interrupted.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .errors import WriteFailure
from .models import MigrationState, parse_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MarkerRecord:
    state: MigrationState = MigrationState.NOT_STARTED
    source: Optional[str] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_json(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "source": self.source,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "MarkerRecord":
        return cls(
            state=MigrationState(data.get("state", MigrationState.NOT_STARTED.value)),
            source=data.get("source"),
            updated_at=parse_timestamp(data["updatedAt"]) if data.get("updatedAt") else None,
            completed_at=parse_timestamp(data["completedAt"]) if data.get("completedAt") else None,
            error=data.get("error"),
        )


class MigrationMarker:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> MarkerRecord:
        """Return the stored record; a missing or unreadable file means not started."""
        if not self.path.exists():
            return MarkerRecord()
        try:
            with open(self.path, encoding="utf-8") as fh:
                return MarkerRecord.from_json(json.load(fh))
        except (json.JSONDecodeError, OSError, ValueError, TypeError, AttributeError) as exc:
            logger.warning("Unreadable migration marker %s, treating as not started: %s", self.path, exc)
            return MarkerRecord()

    def save(self, record: MarkerRecord) -> MarkerRecord:
        record = replace(record, updated_at=datetime.now())
        tmp = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump(record.to_json(), fh, indent=2)
            tmp.replace(self.path)
        except OSError as exc:
            logger.exception("Failed to write migration marker %s", self.path)
            raise WriteFailure(f"Could not write {self.path}: {exc}") from exc
        logger.debug("Migration marker now %s", record.state.value)
        return record

    def mark(
        self,
        state: MigrationState,
        *,
        source: Optional[str] = None,
        error: Optional[str] = None,
    ) -> MarkerRecord:
        completed_at = datetime.now() if state is MigrationState.COMPLETED else None
        return self.save(
            MarkerRecord(state=state, source=source, completed_at=completed_at, error=error)
        )

    def keep_completed(self, *, source: Optional[str] = None, error: Optional[str] = None) -> MarkerRecord:
        """Record an error without leaving the COMPLETED state."""
        current = self.load()
        if current.state is MigrationState.COMPLETED:
            return self.save(replace(current, error=error))
        return self.mark(MigrationState.COMPLETED, source=source, error=error)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
