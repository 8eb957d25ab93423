"""Turns observed focus changes into stored events and context switches."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Optional
from urllib.parse import urlparse

from .categories import normalize_category_name
from .errors import StorageError
from .models import DEFAULT_THRESHOLDS, ActivationEvent, ContextSwitchMetric, SwitchThresholds
from .sessions import SessionTracker

if TYPE_CHECKING:
    from .coordinator import StorageCoordinator

logger = logging.getLogger(__name__)

UNKNOWN_APP = "Unknown"


def domain_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    host = urlparse(url).hostname
    if not host:
        return None
    return host[4:] if host.startswith("www.") else host


class ActivityCollector:
    """Receives activations from the focus observer and records them.

    The observer itself lives outside this package; it calls
    ``record_activation`` whenever the frontmost application changes.
    """

    def __init__(
        self,
        coordinator: "StorageCoordinator",
        tracker: Optional[SessionTracker] = None,
        thresholds: SwitchThresholds = DEFAULT_THRESHOLDS,
    ) -> None:
        self.coordinator = coordinator
        self.tracker = tracker or SessionTracker()
        self.thresholds = thresholds
        self._previous: Optional[ActivationEvent] = None
        self._lock = threading.Lock()

    def record_activation(
        self,
        app_name: Optional[str],
        bundle_identifier: Optional[str] = None,
        *,
        timestamp: Optional[datetime] = None,
        category_name: Optional[str] = None,
        chrome_tab_title: Optional[str] = None,
        chrome_tab_url: Optional[str] = None,
        site_domain: Optional[str] = None,
    ) -> ActivationEvent:
        with self._lock:
            timestamp = timestamp or datetime.now()
            previous = self._previous
            if previous is not None and timestamp < previous.timestamp:
                raise ValueError(
                    f"Activation at {timestamp} precedes the previous one at {previous.timestamp}"
                )

            assignment = self.tracker.assign(timestamp)
            if assignment.closed is not None:
                self.coordinator.close_session(assignment.closed)

            event = ActivationEvent.create(
                app_name,
                bundle_identifier,
                timestamp=timestamp,
                chrome_tab_title=chrome_tab_title,
                chrome_tab_url=chrome_tab_url,
                site_domain=site_domain or domain_from_url(chrome_tab_url),
                category_name=normalize_category_name(category_name),
                session_id=assignment.session_id,
                session_start_time=assignment.start_time,
                is_session_start=assignment.is_session_start,
                session_switch_count=assignment.switch_count,
            )
            switch = self._derive_switch(previous, event)
            self._previous = event

            try:
                self.coordinator.add_event(event)
            except StorageError:
                # The JSON store keeps the event for the next flush; the
                # switch into it has to be handed over as well.
                if switch is not None:
                    self._retain_switch(switch)
                raise
            if switch is not None:
                self.coordinator.add_context_switch(switch)
            logger.debug(
                "Recorded activation of %s (%s)", event.app_name, event.bundle_identifier
            )
            return event

    def _derive_switch(
        self, previous: Optional[ActivationEvent], event: ActivationEvent
    ) -> Optional[ContextSwitchMetric]:
        if previous is None:
            return None
        if (previous.app_name, previous.bundle_identifier) == (
            event.app_name,
            event.bundle_identifier,
        ):
            return None
        return ContextSwitchMetric.create(
            previous.app_name or UNKNOWN_APP,
            event.app_name or UNKNOWN_APP,
            (event.timestamp - previous.timestamp).total_seconds(),
            timestamp=event.timestamp,
            thresholds=self.thresholds,
            from_category=previous.category_name,
            to_category=event.category_name,
            from_bundle_id=previous.bundle_identifier,
            to_bundle_id=event.bundle_identifier,
            session_id=event.session_id,
        )

    def _retain_switch(self, switch: ContextSwitchMetric) -> None:
        try:
            self.coordinator.add_context_switch(switch)
        except StorageError as exc:
            logger.warning("Context switch %s is waiting for the next flush: %s", switch.id, exc)

    def shutdown(self) -> None:
        """Close the open session and force pending state to disk."""
        with self._lock:
            closed = self.tracker.close()
            if closed is not None:
                self.coordinator.close_session(closed)
            self.coordinator.flush()
