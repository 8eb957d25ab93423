from __future__ import annotations

from datetime import timedelta
from typing import Callable

import pytest

from focus_monitor.analytics import AnalyticsService, SwitchStatistics
from focus_monitor.coordinator import StorageCoordinator
from focus_monitor.models import day_bounds
from focus_monitor.reporting import SummaryPrinter, format_duration

from conftest import BASE_TIME, make_event, make_switch

Factory = Callable[..., StorageCoordinator]


def _workday() -> tuple[list, list]:
    events = [
        make_event("Xcode", id="x1", category_name="Development"),
        make_event("Xcode", id="x2", at=BASE_TIME + timedelta(minutes=5), category_name="Development"),
        make_event("Slack", id="s1", at=BASE_TIME + timedelta(minutes=6), category_name="Communication"),
        make_event(None, id="idle", at=BASE_TIME + timedelta(minutes=7)),
    ]
    switches = [
        make_switch("Xcode", "Slack", 5, id="w1", at=BASE_TIME + timedelta(minutes=1)),
        make_switch("Slack", "Xcode", 45, id="w2", at=BASE_TIME + timedelta(minutes=2)),
        make_switch("Xcode", "Slack", 600, id="w3", at=BASE_TIME + timedelta(minutes=12)),
        make_switch("Xcode", "Slack", 30, id="w4", at=BASE_TIME + timedelta(minutes=13)),
    ]
    return events, switches


@pytest.fixture(params=["json", "sql"])
def analytics(request: pytest.FixtureRequest, make_coordinator: Factory) -> AnalyticsService:
    coordinator = make_coordinator(*_workday())
    if request.param == "sql":
        coordinator.run_migration()
    return AnalyticsService(coordinator)


class TestAnalyticsService:
    def test_switch_statistics(self, analytics: AnalyticsService) -> None:
        stats = analytics.switch_statistics(*day_bounds(BASE_TIME))

        assert stats == SwitchStatistics(quick=1, normal=2, focused=1)
        assert stats.total == 4

    def test_time_lost_counts_switches_over_thirty_seconds(self, analytics: AnalyticsService) -> None:
        assert analytics.estimated_time_lost_minutes(*day_bounds(BASE_TIME)) == 6.0
        assert analytics.estimated_cost_lost(*day_bounds(BASE_TIME), hourly_rate=60.0) == 6.0

    def test_category_usage_skips_events_without_app(self, analytics: AnalyticsService) -> None:
        assert analytics.category_usage(*day_bounds(BASE_TIME)) == [
            ("Development", 2),
            ("Communication", 1),
        ]

    def test_most_common_switches(self, analytics: AnalyticsService) -> None:
        assert analytics.most_common_switches(limit=1) == [("Xcode", "Slack", 3)]

    def test_empty_range(self, analytics: AnalyticsService) -> None:
        next_day = day_bounds(BASE_TIME + timedelta(days=1))

        assert analytics.switch_statistics(*next_day).total == 0
        assert analytics.usage_stats(*next_day) == []


class TestSummaryPrinter:
    def test_daily_summary(
        self, analytics: AnalyticsService, capsys: pytest.CaptureFixture[str]
    ) -> None:
        SummaryPrinter(analytics.coordinator, analytics).print_daily_summary(BASE_TIME)

        output = capsys.readouterr().out
        assert "Summary for 2024-03-04" in output
        assert "Context switches: 4" in output
        assert "Estimated time lost: 00:06:00" in output

    def test_empty_day(self, analytics: AnalyticsService, capsys: pytest.CaptureFixture[str]) -> None:
        SummaryPrinter(analytics.coordinator, analytics).print_daily_summary(
            BASE_TIME + timedelta(days=3)
        )

        assert "No activity recorded" in capsys.readouterr().out


def test_format_duration() -> None:
    assert format_duration(3725) == "01:02:05"
