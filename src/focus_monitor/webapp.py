"""FastAPI application exposing the storage coordinator to local collaborators."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict

from .analytics import AnalyticsService
from .categories import FALLBACK_CATEGORY
from .collector import ActivityCollector
from .config import StorageSettings
from .coordinator import StorageCoordinator
from .errors import MigrationError, StorageError, WriteFailure
from .models import ActivationEvent, AppUsageStat, ContextSwitchMetric, day_bounds
from .runtime import build_coordinator
from .sessions import SessionTracker

logger = logging.getLogger(__name__)


class ActivationPayload(BaseModel):
    app_name: Optional[str] = None
    bundle_identifier: Optional[str] = None
    timestamp: Optional[datetime] = None
    category_name: Optional[str] = None
    chrome_tab_title: Optional[str] = None
    chrome_tab_url: Optional[str] = None
    site_domain: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class MigrationRequest(BaseModel):
    force: bool = False

    model_config = ConfigDict(extra="forbid")


class CategoryPayload(BaseModel):
    name: str
    color_hex: Optional[str] = None
    description: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class CategoryAssignment(BaseModel):
    category_name: str

    model_config = ConfigDict(extra="forbid")


def create_app(
    *,
    coordinator: Optional[StorageCoordinator] = None,
    settings: Optional[StorageSettings] = None,
    data_dir: Optional[Path] = None,
) -> FastAPI:
    """Instantiate the FastAPI application."""
    resolved_settings = settings or StorageSettings()
    resolved = coordinator or build_coordinator(resolved_settings, data_dir)
    collector = ActivityCollector(
        resolved,
        SessionTracker(
            idle_gap=resolved_settings.session_idle_gap,
            max_duration=resolved_settings.max_session_duration,
        ),
        resolved_settings.thresholds,
    )

    app = FastAPI(title="Focus Monitor", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.coordinator = resolved
    app.state.collector = collector
    app.state.analytics = AnalyticsService(resolved)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        collector.shutdown()
        resolved.close()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        coordinator: StorageCoordinator = request.app.state.coordinator
        metrics = coordinator.storage_metrics()
        return {
            **asdict(coordinator.status()),
            "needs_migration": coordinator.needs_migration(),
            "metrics": asdict(metrics),
        }

    @app.post("/api/migration")
    def start_migration(payload: MigrationRequest, request: Request) -> Dict[str, Any]:
        coordinator: StorageCoordinator = request.app.state.coordinator
        started = coordinator.start_migration(force=payload.force)
        return {"started": started, **asdict(coordinator.status())}

    @app.post("/api/migration/cancel")
    def cancel_migration(request: Request) -> Dict[str, Any]:
        coordinator: StorageCoordinator = request.app.state.coordinator
        return {"cancelled": coordinator.cancel_migration()}

    @app.post("/api/migration/rollback")
    def rollback_migration(request: Request) -> Dict[str, Any]:
        coordinator: StorageCoordinator = request.app.state.coordinator
        with _storage_errors():
            coordinator.rollback_migration()
        return asdict(coordinator.status())

    @app.get("/api/events")
    def events(
        request: Request,
        date: Optional[str] = Query(default=None, description="Target date in YYYY-MM-DD format."),
        limit: Optional[int] = Query(default=None, ge=1),
    ) -> Dict[str, Any]:
        start, end = _day_range(date)
        found = request.app.state.coordinator.query_events(start, end, limit)
        return {
            "date": start.strftime("%Y-%m-%d"),
            "events": [_event_payload(event) for event in found],
        }

    @app.post("/api/events", status_code=201)
    def record_event(payload: ActivationPayload, request: Request) -> Dict[str, Any]:
        with _storage_errors():
            event = request.app.state.collector.record_activation(
                payload.app_name,
                payload.bundle_identifier,
                timestamp=_naive(payload.timestamp),
                category_name=payload.category_name,
                chrome_tab_title=payload.chrome_tab_title,
                chrome_tab_url=payload.chrome_tab_url,
                site_domain=payload.site_domain,
            )
        return _event_payload(event)

    @app.patch("/api/events/{event_id}")
    def update_event_category(
        event_id: str, payload: CategoryAssignment, request: Request
    ) -> Dict[str, Any]:
        with _storage_errors():
            event = request.app.state.coordinator.update_event_category(
                event_id, payload.category_name
            )
        return _event_payload(event)

    @app.get("/api/switches")
    def switches(
        request: Request,
        date: Optional[str] = Query(default=None, description="Target date in YYYY-MM-DD format."),
        limit: Optional[int] = Query(default=None, ge=1),
    ) -> Dict[str, Any]:
        start, end = _day_range(date)
        found = request.app.state.coordinator.query_context_switches(start, end, limit)
        return {
            "date": start.strftime("%Y-%m-%d"),
            "switches": [_switch_payload(switch) for switch in found],
        }

    @app.get("/api/usage")
    def usage(
        request: Request,
        start: Optional[str] = Query(default=None, description="Start date (inclusive)."),
        end: Optional[str] = Query(default=None, description="End date (inclusive)."),
    ) -> Dict[str, Any]:
        start_day, _ = _day_range(start)
        _, end_bound = _day_range(end or start)
        if end_bound < start_day:
            raise HTTPException(status_code=400, detail="end date must be on or after start date")
        stats = request.app.state.coordinator.query_usage_stats(start_day, end_bound)
        return {
            "start": start_day.strftime("%Y-%m-%d"),
            "end": end_bound.strftime("%Y-%m-%d"),
            "apps": [_usage_payload(stat) for stat in stats],
        }

    @app.get("/api/sessions")
    def sessions(request: Request, limit: Optional[int] = Query(default=50, ge=1)) -> Dict[str, Any]:
        found = request.app.state.coordinator.query_sessions(limit)
        return {"sessions": [asdict(session) for session in found]}

    @app.get("/api/categories")
    def categories(request: Request) -> Dict[str, Any]:
        found = request.app.state.coordinator.list_categories()
        return {"categories": [asdict(category) for category in found]}

    @app.post("/api/categories", status_code=201)
    def add_category(payload: CategoryPayload, request: Request) -> Dict[str, Any]:
        with _storage_errors():
            reference = request.app.state.coordinator.add_category(
                payload.name,
                color_hex=payload.color_hex,
                description=payload.description,
            )
        return asdict(reference)

    @app.delete("/api/categories/{name}")
    def delete_category(
        name: str,
        request: Request,
        fallback: str = Query(default=FALLBACK_CATEGORY),
    ) -> Dict[str, Any]:
        with _storage_errors():
            moved = request.app.state.coordinator.delete_category(name, fallback)
        return {"deleted": name, "reassigned": moved, "fallback": fallback}

    @app.post("/api/categories/{name}/reassign")
    def reassign_category(
        name: str, payload: CategoryAssignment, request: Request
    ) -> Dict[str, Any]:
        with _storage_errors():
            moved = request.app.state.coordinator.reassign_category(name, payload.category_name)
        return {"from": name, "to": payload.category_name, "reassigned": moved}

    @app.delete("/api/data")
    def reset_data(request: Request) -> Dict[str, Any]:
        coordinator: StorageCoordinator = request.app.state.coordinator
        with _storage_errors():
            coordinator.reset_data()
        return asdict(coordinator.status())

    @app.put("/api/apps/{bundle_identifier}/category")
    def recategorize_app(
        bundle_identifier: str, payload: CategoryAssignment, request: Request
    ) -> Dict[str, Any]:
        with _storage_errors():
            changed = request.app.state.coordinator.recategorize_app(
                bundle_identifier, payload.category_name
            )
        return {"bundle_identifier": bundle_identifier, "updated": changed}

    @app.get("/api/summary")
    def summary(
        request: Request,
        date: Optional[str] = Query(default=None, description="Target date in YYYY-MM-DD format."),
        hourly_rate: Optional[float] = Query(default=None, ge=0),
    ) -> Dict[str, Any]:
        start, end = _day_range(date)
        analytics: AnalyticsService = request.app.state.analytics
        statistics = analytics.switch_statistics(start, end)
        payload: Dict[str, Any] = {
            "date": start.strftime("%Y-%m-%d"),
            "switches": {**asdict(statistics), "total": statistics.total},
            "time_lost_minutes": analytics.estimated_time_lost_minutes(start, end),
            "categories": [
                {"category_name": name, "activation_count": count}
                for name, count in analytics.category_usage(start, end)
            ],
            "top_switches": [
                {"from_app": from_app, "to_app": to_app, "count": count}
                for from_app, to_app, count in analytics.most_common_switches(start, end)
            ],
        }
        if hourly_rate is not None:
            payload["cost_lost"] = analytics.estimated_cost_lost(start, end, hourly_rate)
        return payload

    return app


@contextmanager
def _storage_errors() -> Iterator[None]:
    try:
        yield
    except WriteFailure as exc:
        raise HTTPException(status_code=507, detail=str(exc)) from exc
    except MigrationError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StorageError as exc:
        logger.exception("Storage request failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _day_range(value: Optional[str]) -> tuple[datetime, datetime]:
    if not value:
        return day_bounds(datetime.now())
    try:
        return day_bounds(datetime.strptime(value, "%Y-%m-%d"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def _event_payload(event: ActivationEvent) -> Dict[str, Any]:
    return asdict(event)


def _switch_payload(switch: ContextSwitchMetric) -> Dict[str, Any]:
    payload = asdict(switch)
    payload["switch_type"] = switch.switch_type.value
    return payload


def _usage_payload(stat: AppUsageStat) -> Dict[str, Any]:
    payload = asdict(stat)
    payload["site_breakdown"] = [asdict(site) for site in stat.site_breakdown]
    return payload
