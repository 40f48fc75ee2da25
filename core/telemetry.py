"""Structured telemetry emission.

TelemetryEmitter is the single place stages report transitions. Each event
is written three ways:

- to the module logger, with the identifiers in the message
- to an optional asyncio.Queue that a display or shipper can consume
- to a bounded in-memory history for the query surface

Emission is synchronous and never blocks: the queue is unbounded and
put_nowait is used, so a slow consumer cannot stall ingest.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Callable

from schemas.events import EventType, PipelineEvent, Stage

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 1000

_LEVELS = {
    EventType.ALERT_DROPPED: logging.WARNING,
    EventType.RATE_LIMITED: logging.WARNING,
    EventType.POLICY_REJECTED: logging.ERROR,
    EventType.ERROR: logging.ERROR,
    EventType.ALERT_ACCEPTED: logging.DEBUG,
    EventType.OCCURRENCE_UPDATED: logging.DEBUG,
}


class TelemetryEmitter:
    """Fan-out for PipelineEvents.

    Attributes:
        queue: Optional consumer queue. None means events go only to the
            log and the history.
    """

    def __init__(
        self,
        queue: asyncio.Queue | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.queue = queue
        self._history: deque[PipelineEvent] = deque(maxlen=history_size)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def emit(
        self,
        stage: Stage,
        event_type: EventType,
        subject: str,
        message: str,
        policy_version: int,
        **detail,
    ) -> PipelineEvent:
        event = PipelineEvent(
            stage=stage,
            event_type=event_type,
            subject=subject,
            message=message,
            policy_version=policy_version,
            timestamp=self._clock(),
            detail=detail,
        )
        logger.log(
            _LEVELS.get(event_type, logging.INFO),
            "[%s] %s %s: %s (policy v%d) %s",
            stage.value,
            event_type.value,
            subject,
            message,
            policy_version,
            detail or "",
        )
        self._history.append(event)
        if self.queue is not None:
            self.queue.put_nowait(event)
        return event

    def history(self, subject: str | None = None) -> list[PipelineEvent]:
        """Return recorded events, oldest first, optionally for one subject.

        Matches the subject id itself and the incident_id / fingerprint
        carried in event detail.
        """
        if subject is None:
            return list(self._history)
        return [
            e for e in self._history
            if subject in (e.subject, e.detail.get("incident_id"), e.detail.get("fingerprint"))
        ]
