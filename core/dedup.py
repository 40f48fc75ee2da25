"""Alert deduplicator.

Collapses repeated and flapping alerts for the same condition into a single
active Occurrence. The condition is identified by a fingerprint over
(source, resource, metric); severity and payload do not take part, so an
alert that changes severity is still the same condition.

Guarantees:
    - At most one active Occurrence per fingerprint at any instant.
    - count only ever increases while an occurrence is active.
    - An occurrence resolves exactly once — it leaves the active map in the
      same critical section that marks it resolved.

Writers to one fingerprint serialize on a per-fingerprint lock; different
fingerprints never contend.
"""

import hashlib
import logging
from collections import deque
from datetime import datetime

from core.locks import KeyedLock
from core.policy_store import PolicyStore
from core.telemetry import TelemetryEmitter
from schemas.alert import Alert, Severity
from schemas.events import EventType, Stage
from schemas.occurrence import Occurrence, OccurrenceChange, OccurrenceEvent, OccurrenceState

logger = logging.getLogger(__name__)

RESOLVED_HISTORY_SIZE = 5000


def fingerprint(source: str, resource: str, metric: str) -> str:
    """Deterministic key for "the same underlying condition"."""
    key = "\x1f".join((source, resource, metric))
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:20]


class Deduplicator:
    """Maintains fingerprint -> active Occurrence.

    Records in the active map are replaced, never mutated in place, so a
    snapshot handed downstream can be read safely while newer alerts land.

    Attributes:
        _active: Fingerprint -> current active occurrence.
        _resolved: Recently resolved occurrences, newest last.
        _locks: Per-fingerprint locks.
    """

    def __init__(self, policy_store: PolicyStore, telemetry: TelemetryEmitter | None = None) -> None:
        self._policy_store = policy_store
        self._telemetry = telemetry or TelemetryEmitter()
        self._active: dict[str, Occurrence] = {}
        self._resolved: deque[Occurrence] = deque(maxlen=RESOLVED_HISTORY_SIZE)
        self._locks = KeyedLock()

    async def observe(self, alert: Alert) -> OccurrenceEvent | None:
        """Fold one alert into the occurrence map.

        Args:
            alert: A normalized alert from ingest.

        Returns:
            CREATED or UPDATED for a firing alert, RESOLVED for a resolution
            alert that matched an active occurrence, None for a resolution
            alert with nothing to resolve.
        """
        fp = fingerprint(alert.source, alert.resource, alert.metric)
        policy = self._policy_store.current

        async with self._locks.hold(fp):
            current = self._active.get(fp)

            if alert.status == "resolved":
                if current is None:
                    logger.debug("Resolution for %s (%s/%s) with no active occurrence.", fp, alert.resource, alert.metric)
                    return None
                return self._resolve(current, alert.timestamp, "resolved by source", policy.version)

            if current is None:
                occurrence = Occurrence(
                    fingerprint=fp,
                    source=alert.source,
                    resource=alert.resource,
                    metric=alert.metric,
                    resource_type=alert.payload.get("resource_type") or policy.topology.resource_type_of(alert.resource),
                    severity=alert.severity,
                    first_seen=alert.timestamp,
                    last_seen=alert.timestamp,
                    last_alert_id=alert.id,
                )
                change = OccurrenceChange.CREATED
            else:
                occurrence = current.model_copy(update={
                    "count": current.count + 1,
                    "first_seen": min(current.first_seen, alert.timestamp),
                    "last_seen": max(current.last_seen, alert.timestamp),
                    "severity": Severity.highest([current.severity, alert.severity]),
                    "last_alert_id": alert.id,
                })
                change = OccurrenceChange.UPDATED

            self._active[fp] = occurrence

        event_type = EventType.OCCURRENCE_CREATED if change == OccurrenceChange.CREATED else EventType.OCCURRENCE_UPDATED
        self._telemetry.emit(
            Stage.DEDUP, event_type, fp,
            f"{occurrence.resource}/{occurrence.metric} count={occurrence.count}",
            policy.version, fingerprint=fp, severity=occurrence.severity.value,
        )
        return OccurrenceEvent(change=change, occurrence=occurrence, at=alert.timestamp)

    async def sweep(self, now: datetime) -> list[OccurrenceEvent]:
        """Resolve every occurrence quiet for longer than the quiet window.

        Fingerprints are visited in sorted order so the same state always
        yields the same event sequence.
        """
        policy = self._policy_store.current
        quiet = policy.dedup.quiet_window_seconds
        events: list[OccurrenceEvent] = []

        for fp in sorted(self._active):
            if not self._is_quiet(fp, now, quiet):
                continue
            async with self._locks.hold(fp):
                # Re-check: an alert may have landed while we waited.
                if not self._is_quiet(fp, now, quiet):
                    continue
                events.append(self._resolve(self._active[fp], now, "quiet window elapsed", policy.version))

        if events:
            logger.info("Sweep resolved %d occurrence(s).", len(events))
        return events

    def get(self, fp: str) -> Occurrence | None:
        return self._active.get(fp)

    def active(self) -> list[Occurrence]:
        return sorted(self._active.values(), key=lambda o: o.first_seen)

    def resolved(self) -> list[Occurrence]:
        return list(self._resolved)

    # ── Private helpers ───────────────────────────────────────────────────────

    def _is_quiet(self, fp: str, now: datetime, quiet_seconds: float) -> bool:
        occurrence = self._active.get(fp)
        return occurrence is not None and (now - occurrence.last_seen).total_seconds() > quiet_seconds

    def _resolve(self, occurrence: Occurrence, at: datetime, reason: str, policy_version: int) -> OccurrenceEvent:
        """Move an occurrence out of the active map. Caller holds its lock."""
        resolved = occurrence.model_copy(update={
            "state": OccurrenceState.RESOLVED,
            "resolved_at": at,
        })
        del self._active[occurrence.fingerprint]
        self._resolved.append(resolved)

        self._telemetry.emit(
            Stage.DEDUP, EventType.OCCURRENCE_RESOLVED, occurrence.fingerprint,
            f"{occurrence.resource}/{occurrence.metric} {reason} after {occurrence.count} alert(s)",
            policy_version, fingerprint=occurrence.fingerprint,
        )
        return OccurrenceEvent(change=OccurrenceChange.RESOLVED, occurrence=resolved, at=at)
