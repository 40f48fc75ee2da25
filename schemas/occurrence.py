"""Occurrence schema.

An Occurrence is the deduplicated form of one or more Alerts that describe
the same underlying condition. The Deduplicator owns these records; every
other stage sees snapshots carried on OccurrenceEvents.
"""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from schemas.alert import Severity


class OccurrenceState(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class Occurrence(BaseModel):
    """A time-bounded manifestation of one fingerprint.

    Attributes:
        fingerprint: Deterministic key derived from source + resource + metric.
            Unique among active occurrences at any instant.
        occurrence_id: Distinguishes successive occurrences of the same
            fingerprint (a condition that resolves and later recurs).
        source: Origin system of the alerts.
        resource: Affected entity.
        metric: Measured signal.
        resource_type: Optional classification used for remediation lookup.
            Taken from the alert payload's "resource_type" if present.
        severity: Highest severity seen while this occurrence was active.
        first_seen: Timestamp of the first matching alert.
        last_seen: Latest timestamp of any matching alert.
        count: Number of firing alerts folded into this occurrence.
        state: ACTIVE until the quiet window elapses or the source sends
            an explicit resolution.
        resolved_at: When the occurrence was marked resolved.
        last_alert_id: Source id of the most recent alert, for audit.
    """

    fingerprint: str
    occurrence_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source: str
    resource: str
    metric: str
    resource_type: str | None = None
    severity: Severity
    first_seen: datetime
    last_seen: datetime
    count: int = Field(default=1, ge=1)
    state: OccurrenceState = OccurrenceState.ACTIVE
    resolved_at: datetime | None = None
    last_alert_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state == OccurrenceState.ACTIVE


class OccurrenceChange(str, Enum):
    """What the Deduplicator did with an alert, as seen downstream."""

    CREATED = "created"
    UPDATED = "updated"
    RESOLVED = "resolved"


class OccurrenceEvent(BaseModel):
    """A change notification flowing from the Deduplicator to the Correlator.

    Carries a snapshot of the occurrence taken under its fingerprint lock,
    so consumers never read a half-updated record.
    """

    change: OccurrenceChange
    occurrence: Occurrence
    at: datetime
