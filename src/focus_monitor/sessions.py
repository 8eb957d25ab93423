"""Session boundaries derived from gaps between activations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .models import Session, new_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionAssignment:
    """Session fields for one new activation, plus the session it closed, if any."""

    session_id: str
    start_time: datetime
    is_session_start: bool
    switch_count: int
    closed: Optional[Session] = None


@dataclass(slots=True)
class _OpenSession:
    id: str
    start_time: datetime
    last_seen: datetime
    switch_count: int = 1


class SessionTracker:
    """Groups activations into sessions.

    An activation continues the open session while the gap since the
    previous activation is below ``idle_gap`` and the session is younger
    than ``max_duration``; otherwise the open session ends at its last
    activation and a new one starts.
    """

    def __init__(
        self,
        idle_gap: timedelta = timedelta(minutes=5),
        max_duration: timedelta = timedelta(hours=1),
    ) -> None:
        self.idle_gap = idle_gap
        self.max_duration = max_duration
        self._open: Optional[_OpenSession] = None

    @property
    def current(self) -> Optional[Session]:
        if self._open is None:
            return None
        return Session(
            id=self._open.id,
            start_time=self._open.start_time,
            switch_count=self._open.switch_count,
            is_active=True,
        )

    def assign(self, timestamp: datetime) -> SessionAssignment:
        session = self._open
        if session is not None and self._continues(session, timestamp):
            session.switch_count += 1
            session.last_seen = max(session.last_seen, timestamp)
            return SessionAssignment(
                session_id=session.id,
                start_time=session.start_time,
                is_session_start=False,
                switch_count=session.switch_count,
            )

        closed = self.close()
        self._open = _OpenSession(id=new_id(), start_time=timestamp, last_seen=timestamp)
        logger.debug("Started session %s at %s", self._open.id, timestamp)
        return SessionAssignment(
            session_id=self._open.id,
            start_time=timestamp,
            is_session_start=True,
            switch_count=1,
            closed=closed,
        )

    def close(self) -> Optional[Session]:
        """End the open session at its last activation."""
        session = self._open
        if session is None:
            return None
        self._open = None
        return Session(
            id=session.id,
            start_time=session.start_time,
            end_time=session.last_seen,
            switch_count=session.switch_count,
            is_active=False,
        )

    def _continues(self, session: _OpenSession, timestamp: datetime) -> bool:
        return (
            timestamp - session.last_seen < self.idle_gap
            and timestamp - session.start_time < self.max_duration
        )
