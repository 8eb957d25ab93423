"""Read-side analytics computed over whichever backend is active."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from .models import AppUsageStat, ContextSwitchMetric, SwitchType

if TYPE_CHECKING:
    from .coordinator import StorageCoordinator


MINUTES_LOST_PER_SWITCH = 3.0
SIGNIFICANT_SWITCH_SECONDS = 30.0


@dataclass(frozen=True, slots=True)
class SwitchStatistics:
    quick: int = 0
    normal: int = 0
    focused: int = 0

    @property
    def total(self) -> int:
        return self.quick + self.normal + self.focused


class AnalyticsService:
    def __init__(self, coordinator: "StorageCoordinator") -> None:
        self.coordinator = coordinator

    def _switches(
        self, start: Optional[datetime], end: Optional[datetime]
    ) -> list[ContextSwitchMetric]:
        return self.coordinator.query_context_switches(start, end)

    def usage_stats(self, start: datetime, end: datetime) -> list[AppUsageStat]:
        return self.coordinator.query_usage_stats(start, end)

    def switch_statistics(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> SwitchStatistics:
        counts = Counter(switch.switch_type for switch in self._switches(start, end))
        return SwitchStatistics(
            quick=counts[SwitchType.QUICK],
            normal=counts[SwitchType.NORMAL],
            focused=counts[SwitchType.FOCUSED],
        )

    def estimated_time_lost_minutes(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> float:
        """Each switch away from more than half a minute of work costs a fixed refocus time."""
        significant = sum(
            1
            for switch in self._switches(start, end)
            if switch.time_spent > SIGNIFICANT_SWITCH_SECONDS
        )
        return significant * MINUTES_LOST_PER_SWITCH

    def estimated_cost_lost(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        hourly_rate: float,
    ) -> float:
        return self.estimated_time_lost_minutes(start, end) / 60.0 * hourly_rate

    def category_usage(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[tuple[str, int]]:
        counts = Counter(
            event.category_name
            for event in self.coordinator.query_events(start, end)
            if event.app_name is not None
        )
        return sorted(counts.items(), key=lambda item: (-item[1], item[0]))

    def most_common_switches(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 5,
    ) -> list[tuple[str, str, int]]:
        counts = Counter(
            (switch.from_app, switch.to_app) for switch in self._switches(start, end)
        )
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        return [(from_app, to_app, count) for (from_app, to_app), count in ranked[:limit]]
