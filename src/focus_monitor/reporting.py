"""Usage aggregation helpers and console summaries."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Optional

from .models import ActivationEvent, AppUsageStat, SiteUsageStat, day_bounds

if TYPE_CHECKING:
    from .analytics import AnalyticsService
    from .coordinator import StorageCoordinator


def build_usage_stats(events: Iterable[ActivationEvent]) -> list[AppUsageStat]:
    """Group activations per app/bundle/category, most used first.

    Mirrors the grouping the SQLite backend performs in SQL so both
    backends answer usage queries identically.
    """
    groups: defaultdict[
        tuple[str, Optional[str], str], list[ActivationEvent]
    ] = defaultdict(list)
    for event in events:
        if event.app_name is None:
            continue
        groups[(event.app_name, event.bundle_identifier, event.category_name)].append(event)

    stats = [
        AppUsageStat(
            app_name=app_name,
            bundle_identifier=bundle_id,
            category_name=category,
            activation_count=len(grouped),
            last_active=max(event.timestamp for event in grouped),
            site_breakdown=build_site_breakdown(grouped),
        )
        for (app_name, bundle_id, category), grouped in groups.items()
    ]
    return sort_usage_stats(stats)


def build_site_breakdown(events: Iterable[ActivationEvent]) -> tuple[SiteUsageStat, ...]:
    by_domain: defaultdict[str, list[ActivationEvent]] = defaultdict(list)
    for event in events:
        if event.site_domain:
            by_domain[event.site_domain].append(event)
    sites = []
    for domain, grouped in by_domain.items():
        latest = max(grouped, key=lambda event: event.timestamp)
        sites.append(
            SiteUsageStat(
                site_domain=domain,
                display_title=latest.chrome_tab_title or domain,
                activation_count=len(grouped),
                last_active=latest.timestamp,
            )
        )
    sites.sort(key=lambda site: (-site.activation_count, site.site_domain))
    return tuple(sites)


def sort_usage_stats(stats: list[AppUsageStat]) -> list[AppUsageStat]:
    return sorted(
        stats,
        key=lambda stat: (-stat.activation_count, stat.app_name.casefold(), stat.bundle_identifier or ""),
    )


def format_duration(seconds: float) -> str:
    total_seconds = int(round(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, coordinator: "StorageCoordinator", analytics: "AnalyticsService") -> None:
        self.coordinator = coordinator
        self.analytics = analytics

    def print_daily_summary(self, day: datetime) -> None:
        start, end = day_bounds(day)
        stats = self.analytics.usage_stats(start, end)
        if not stats:
            print("No activity recorded for the selected day.")
            return

        switches = self.analytics.switch_statistics(start, end)
        print(f"Summary for {start.strftime('%Y-%m-%d')} ({self.coordinator.current_storage_type.value} backend)")
        print("-" * 40)
        print(f"Activations:      {sum(stat.activation_count for stat in stats)}")
        print(f"Context switches: {switches.total}")
        print(f"  quick {switches.quick} / normal {switches.normal} / focused {switches.focused}")
        print(f"Estimated time lost: {format_duration(self.analytics.estimated_time_lost_minutes(start, end) * 60)}")
        print()

        print("Top apps:")
        for stat in stats[:5]:
            print(f"  {stat.app_name[:30]:<30} {stat.category_name[:20]:<20} {stat.activation_count:>5}")
            for site in stat.site_breakdown[:3]:
                print(f"    {site.site_domain[:40]:<40} {site.activation_count:>5}")

        categories = self.analytics.category_usage(start, end)
        if categories:
            print()
            print("Categories:")
            for name, count in categories[:5]:
                print(f"  {name[:30]:<30} {count:>5}")

    def print_status(self) -> None:
        status = self.coordinator.status()
        metrics = self.coordinator.storage_metrics()
        print(f"Active backend:   {status.storage_type.value}")
        print(f"Migration state:  {status.migration_state.value}")
        print(f"Progress:         {status.progress:.0%}")
        print(f"Needs migration:  {'yes' if self.coordinator.needs_migration() else 'no'}")
        print(f"Events:           {metrics.total_events}")
        print(f"Context switches: {metrics.total_context_switches}")
        print(f"Process memory:   {metrics.process_memory_mb:.1f} MB")
        if status.last_error:
            print(f"Last error:       {status.last_error}")
