"""Configuration models and helpers for the storage core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from .models import SwitchThresholds


@dataclass(slots=True)
class StorageSettings:
    """Runtime configuration for storage, migration and session tracking."""

    batch_size: int = 500
    thresholds: SwitchThresholds = field(default_factory=SwitchThresholds)
    session_idle_gap: timedelta = timedelta(minutes=5)
    max_session_duration: timedelta = timedelta(hours=1)
    max_delta_passes: int = 5
    scale_limit: Optional[int] = None

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_delta_passes < 1:
            raise ValueError("max_delta_passes must be at least 1")

    @classmethod
    def from_options(
        cls,
        batch_size: int = 500,
        quick_seconds: float = 10.0,
        focused_seconds: float = 120.0,
        idle_minutes: float = 5.0,
        max_session_minutes: float | None = None,
        scale_limit: int | None = None,
    ) -> "StorageSettings":
        max_session = (
            max_session_minutes
            if max_session_minutes is not None
            else max(idle_minutes, 60.0)
        )
        return cls(
            batch_size=batch_size,
            thresholds=SwitchThresholds(
                quick_below=quick_seconds, focused_from=focused_seconds
            ),
            session_idle_gap=timedelta(minutes=idle_minutes),
            max_session_duration=timedelta(minutes=max_session),
            scale_limit=scale_limit,
        )
