"""Exception types raised by the storage layer."""

from __future__ import annotations

from typing import Iterable


class StorageError(Exception):
    """Base class for every storage-layer failure."""


class StorageCorruption(StorageError):
    """A backend file exists but cannot be parsed or opened."""


class WriteFailure(StorageError):
    """A mutation could not be persisted."""


class ScaleLimitExceeded(StorageError):
    """The JSON document holds more records than the configured in-memory limit."""


class MigrationError(StorageError):
    """The JSON to SQLite migration could not complete."""


class AlreadyMigrated(MigrationError):
    """The destination already holds a completed copy of this source."""


class MigrationCancelled(MigrationError):
    def __init__(self, records_written: int = 0) -> None:
        super().__init__(f"Migration cancelled after {records_written} records")
        self.records_written = records_written


class MigrationVerificationMismatch(MigrationError):
    """Post-migration id or count comparison failed."""

    def __init__(
        self,
        kind: str,
        *,
        source_count: int,
        destination_count: int,
        missing: Iterable[str] = (),
        unexpected: Iterable[str] = (),
    ) -> None:
        self.kind = kind
        self.source_count = source_count
        self.destination_count = destination_count
        self.missing = sorted(missing)
        self.unexpected = sorted(unexpected)
        detail = (
            f"{kind}: source={source_count} destination={destination_count} "
            f"missing={len(self.missing)} unexpected={len(self.unexpected)}"
        )
        samples = (self.missing + self.unexpected)[:5]
        if samples:
            detail += f" (e.g. {', '.join(samples)})"
        super().__init__(f"Verification failed for {detail}")
