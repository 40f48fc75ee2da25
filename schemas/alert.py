"""Alert schema.

An Alert is the canonical record every source adapter produces. Whatever
shape a monitoring system sends (Alertmanager batch, CloudWatch alarm,
Sentry webhook, plain JSON), it leaves the ingest layer as one of these.
Alerts are frozen — nothing downstream may edit them after ingest.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Severity(str, Enum):
    """Alert and incident severity, ordered info < warning < critical.

    Extends str so values serialize as plain strings in logs and API output.
    Use rank() when comparing — string comparison would order them
    alphabetically.
    """

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def highest(cls, severities) -> "Severity":
        """Return the most severe value in an iterable (INFO when empty)."""
        return max(severities, key=lambda s: s.rank, default=cls.INFO)


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


class Alert(BaseModel):
    """One raw signal from a monitoring source, after normalization.

    Attributes:
        id: Identifier assigned by the source. Not globally unique — two
            sources may reuse the same id, and a source may resend it.
        source: Origin system tag (e.g. "cloudwatch", "alertmanager").
        resource: Identifier of the affected entity (e.g. "api-gw-1").
        metric: What was measured or tripped (e.g. "4XXError").
        severity: Normalized severity.
        timestamp: When the source observed the condition. Always
            timezone-aware; naive values are taken as UTC.
        status: "firing" for a live condition, "resolved" when the source
            reports the condition cleared.
        payload: Opaque source attributes, kept for audit and executors.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    source: str = Field(min_length=1)
    resource: str = Field(min_length=1)
    metric: str = Field(min_length=1)
    severity: Severity = Severity.WARNING
    timestamp: datetime
    status: Literal["firing", "resolved"] = "firing"
    payload: dict = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
