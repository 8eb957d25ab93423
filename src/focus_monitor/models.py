"""Domain models for recorded activity."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from .categories import FALLBACK_CATEGORY, normalize_category_name


class SwitchType(str, Enum):
    QUICK = "quick"
    NORMAL = "normal"
    FOCUSED = "focused"


class MigrationState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class StorageType(str, Enum):
    JSON = "json"
    SQL = "sql"


@dataclass(frozen=True, slots=True)
class SwitchThresholds:
    """Dwell-time boundaries (seconds) separating the switch types.

    Intervals are half-open: ``[0, quick_below)`` is quick,
    ``[quick_below, focused_from)`` is normal and anything longer is focused.
    """

    quick_below: float = 10.0
    focused_from: float = 120.0

    def __post_init__(self) -> None:
        if not 0 < self.quick_below < self.focused_from:
            raise ValueError("thresholds must satisfy 0 < quick_below < focused_from")

    def classify(self, time_spent: float) -> SwitchType:
        if time_spent < self.quick_below:
            return SwitchType.QUICK
        if time_spent < self.focused_from:
            return SwitchType.NORMAL
        return SwitchType.FOCUSED


DEFAULT_THRESHOLDS = SwitchThresholds()


def classify_switch(
    time_spent: float, thresholds: SwitchThresholds = DEFAULT_THRESHOLDS
) -> SwitchType:
    return thresholds.classify(time_spent)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        # Stored values are naive local time.
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _optional_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return parse_timestamp(value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Expected a string, got {value!r}")
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True, slots=True)
class ActivationEvent:
    """One instant an application (or browser tab) became frontmost."""

    id: str
    timestamp: datetime
    app_name: Optional[str] = None
    bundle_identifier: Optional[str] = None
    chrome_tab_title: Optional[str] = None
    chrome_tab_url: Optional[str] = None
    site_domain: Optional[str] = None
    category_name: str = FALLBACK_CATEGORY
    session_id: Optional[str] = None
    session_start_time: Optional[datetime] = None
    session_end_time: Optional[datetime] = None
    is_session_start: bool = False
    is_session_end: bool = False
    session_switch_count: int = 1

    @classmethod
    def create(
        cls,
        app_name: Optional[str],
        bundle_identifier: Optional[str] = None,
        *,
        timestamp: Optional[datetime] = None,
        **fields: Any,
    ) -> "ActivationEvent":
        return cls(
            id=new_id(),
            timestamp=timestamp or datetime.now(),
            app_name=app_name,
            bundle_identifier=bundle_identifier,
            **fields,
        )

    def with_category(self, category_name: str) -> "ActivationEvent":
        return replace(self, category_name=normalize_category_name(category_name))

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "appName": self.app_name,
            "bundleIdentifier": self.bundle_identifier,
            "chromeTabTitle": self.chrome_tab_title,
            "chromeTabUrl": self.chrome_tab_url,
            "siteDomain": self.site_domain,
            "categoryName": self.category_name,
            "sessionId": self.session_id,
            "sessionStartTime": _iso(self.session_start_time),
            "sessionEndTime": _iso(self.session_end_time),
            "isSessionStart": self.is_session_start,
            "isSessionEnd": self.is_session_end,
            "sessionSwitchCount": self.session_switch_count,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "ActivationEvent":
        category = data.get("categoryName", data.get("category"))
        return cls(
            id=str(data["id"]),
            timestamp=parse_timestamp(data["timestamp"]),
            app_name=_optional_str(data.get("appName")),
            bundle_identifier=_optional_str(data.get("bundleIdentifier")),
            chrome_tab_title=_optional_str(data.get("chromeTabTitle")),
            chrome_tab_url=_optional_str(data.get("chromeTabUrl")),
            site_domain=_optional_str(data.get("siteDomain")),
            category_name=normalize_category_name(category),
            session_id=_optional_str(data.get("sessionId")),
            session_start_time=_optional_timestamp(data.get("sessionStartTime")),
            session_end_time=_optional_timestamp(data.get("sessionEndTime")),
            is_session_start=bool(data.get("isSessionStart", False)),
            is_session_end=bool(data.get("isSessionEnd", False)),
            session_switch_count=int(data.get("sessionSwitchCount", 1)),
        )


@dataclass(frozen=True, slots=True)
class ContextSwitchMetric:
    """The transition between two consecutive activation events."""

    id: str
    from_app: str
    to_app: str
    timestamp: datetime
    time_spent: float
    switch_type: SwitchType
    from_category: str = FALLBACK_CATEGORY
    to_category: str = FALLBACK_CATEGORY
    from_bundle_id: Optional[str] = None
    to_bundle_id: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.time_spent < 0:
            raise ValueError(f"time_spent must be non-negative, got {self.time_spent}")

    @classmethod
    def create(
        cls,
        from_app: str,
        to_app: str,
        time_spent: float,
        *,
        timestamp: Optional[datetime] = None,
        thresholds: SwitchThresholds = DEFAULT_THRESHOLDS,
        id: Optional[str] = None,
        **fields: Any,
    ) -> "ContextSwitchMetric":
        return cls(
            id=id or new_id(),
            from_app=from_app,
            to_app=to_app,
            timestamp=timestamp or datetime.now(),
            time_spent=float(time_spent),
            switch_type=thresholds.classify(time_spent),
            **fields,
        )

    def reclassified(
        self, thresholds: SwitchThresholds = DEFAULT_THRESHOLDS
    ) -> "ContextSwitchMetric":
        """Return a copy whose switch type agrees with ``time_spent``."""
        expected = thresholds.classify(self.time_spent)
        if expected is self.switch_type:
            return self
        return replace(self, switch_type=expected)

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fromApp": self.from_app,
            "toApp": self.to_app,
            "fromBundleId": self.from_bundle_id,
            "toBundleId": self.to_bundle_id,
            "timestamp": self.timestamp.isoformat(),
            "timeSpent": self.time_spent,
            "switchType": self.switch_type.value,
            "fromCategory": self.from_category,
            "toCategory": self.to_category,
            "sessionId": self.session_id,
        }

    @classmethod
    def from_json(
        cls,
        data: dict[str, Any],
        thresholds: SwitchThresholds = DEFAULT_THRESHOLDS,
    ) -> "ContextSwitchMetric":
        time_spent = float(data["timeSpent"])
        return cls(
            id=str(data["id"]),
            from_app=str(data["fromApp"]),
            to_app=str(data["toApp"]),
            from_bundle_id=_optional_str(data.get("fromBundleId")),
            to_bundle_id=_optional_str(data.get("toBundleId")),
            timestamp=parse_timestamp(data["timestamp"]),
            time_spent=time_spent,
            # The stored label may predate a threshold change.
            switch_type=thresholds.classify(time_spent),
            from_category=normalize_category_name(data.get("fromCategory")),
            to_category=normalize_category_name(data.get("toCategory")),
            session_id=_optional_str(data.get("sessionId")),
        )


@dataclass(frozen=True, slots=True)
class Session:
    id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    switch_count: int = 0
    is_active: bool = True


@dataclass(frozen=True, slots=True)
class SiteUsageStat:
    site_domain: str
    display_title: str
    activation_count: int
    last_active: datetime


@dataclass(frozen=True, slots=True)
class AppUsageStat:
    """Activation totals for one application over a time range."""

    app_name: str
    bundle_identifier: Optional[str]
    category_name: str
    activation_count: int
    last_active: datetime
    site_breakdown: tuple[SiteUsageStat, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class AnalysisEntry:
    """A stored AI insight together with the context it was produced from."""

    id: str
    timestamp: datetime
    insights: str
    data_points: int
    analysis_type: str
    time_range_analyzed: str
    token_count: Optional[int] = None
    api_model: Optional[str] = None
    analysis_version: str = "1.0"
    data_context: dict[str, Any] = field(default_factory=dict)


def day_bounds(day: datetime) -> tuple[datetime, datetime]:
    """First and last instant of the calendar day containing ``day``."""
    start = day.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1) - timedelta(microseconds=1)
