from __future__ import annotations

from dataclasses import replace
from datetime import datetime

import pytest

from focus_monitor.categories import (
    FALLBACK_CATEGORY,
    category_id_for,
    is_default_category,
    normalize_category_name,
)
from focus_monitor.config import StorageSettings
from focus_monitor.models import (
    ActivationEvent,
    ContextSwitchMetric,
    SwitchThresholds,
    SwitchType,
    classify_switch,
    day_bounds,
    parse_timestamp,
)

from conftest import BASE_TIME, make_event, make_switch


class TestSwitchClassification:
    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [
            (0, SwitchType.QUICK),
            (5, SwitchType.QUICK),
            (9.99, SwitchType.QUICK),
            (10, SwitchType.NORMAL),
            (60, SwitchType.NORMAL),
            (119.99, SwitchType.NORMAL),
            (120, SwitchType.FOCUSED),
            (300, SwitchType.FOCUSED),
        ],
    )
    def test_default_boundaries(self, seconds: float, expected: SwitchType) -> None:
        assert classify_switch(seconds) is expected

    def test_custom_thresholds(self) -> None:
        thresholds = SwitchThresholds(quick_below=5, focused_from=60)

        assert thresholds.classify(7) is SwitchType.NORMAL
        assert thresholds.classify(60) is SwitchType.FOCUSED

    def test_invalid_thresholds_rejected(self) -> None:
        with pytest.raises(ValueError):
            SwitchThresholds(quick_below=120, focused_from=10)

    def test_negative_time_spent_rejected(self) -> None:
        with pytest.raises(ValueError):
            make_switch("Safari", "Xcode", -1)

    def test_reclassified_follows_time_spent(self) -> None:
        switch = make_switch("Safari", "Xcode", 45)
        stale = replace(switch, switch_type=SwitchType.FOCUSED)

        assert stale.reclassified().switch_type is SwitchType.NORMAL
        assert switch.reclassified() is switch


class TestJsonShapes:
    def test_event_round_trip_uses_camel_case(self) -> None:
        event = make_event(
            "Google Chrome",
            chrome_tab_url="https://github.com/x",
            site_domain="github.com",
            category_name="Development",
        )

        data = event.to_json()

        assert data["appName"] == "Google Chrome"
        assert data["siteDomain"] == "github.com"
        assert data["categoryName"] == "Development"
        assert ActivationEvent.from_json(data) == event

    def test_event_accepts_legacy_category_object(self) -> None:
        data = {
            "id": "legacy",
            "timestamp": "2024-03-04T09:00:00",
            "appName": "Mail",
            "category": {"id": "communication", "name": "communication"},
        }

        event = ActivationEvent.from_json(data)

        assert event.category_name == "Communication"
        assert event.session_switch_count == 1

    def test_missing_category_falls_back(self) -> None:
        event = ActivationEvent.from_json(
            {"id": "x", "timestamp": "2024-03-04T09:00:00"}
        )

        assert event.category_name == FALLBACK_CATEGORY
        assert event.app_name is None

    def test_switch_type_recomputed_on_load(self) -> None:
        data = make_switch("Safari", "Xcode", 8).to_json()
        data["switchType"] = "focused"

        switch = ContextSwitchMetric.from_json(data)

        assert switch.switch_type is SwitchType.QUICK

    def test_timezone_aware_timestamp_becomes_naive(self) -> None:
        parsed = parse_timestamp("2024-03-04T09:00:00Z")

        assert parsed.tzinfo is None


class TestCategories:
    def test_default_lookup_ignores_case(self) -> None:
        assert is_default_category("social media")
        assert not is_default_category("Deep Work")

    def test_normalize_keeps_custom_names(self) -> None:
        assert normalize_category_name("  Deep Work ") == "Deep Work"
        assert normalize_category_name("") == FALLBACK_CATEGORY
        assert normalize_category_name(None) == FALLBACK_CATEGORY

    def test_category_ids(self) -> None:
        assert category_id_for("Health & Fitness") == "health_fitness"
        assert category_id_for("Deep Work") == "custom_deep_work"


class TestSettings:
    def test_from_options_builds_thresholds(self) -> None:
        settings = StorageSettings.from_options(quick_seconds=5, focused_seconds=90, idle_minutes=2)

        assert settings.thresholds.classify(6) is SwitchType.NORMAL
        assert settings.session_idle_gap.total_seconds() == 120

    def test_rejects_zero_batch_size(self) -> None:
        with pytest.raises(ValueError):
            StorageSettings(batch_size=0)


def test_day_bounds_cover_the_whole_day() -> None:
    start, end = day_bounds(BASE_TIME)

    assert start == datetime(2024, 3, 4)
    assert end.date() == start.date()
    assert end.hour == 23 and end.microsecond == 999999
