"""Incident audit trail.

AuditTrail is the append-only record of everything that happened to each
incident: transitions, membership changes, remediation status changes.
Unlike telemetry history it is never truncated, because closed incidents
must stay explainable.

It is not a database. It lives in RAM for the life of the pipeline; swap
in a persistent store when history must survive restarts.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class AuditEntry(BaseModel):
    """One recorded decision.

    Attributes:
        incident_id: Incident the entry belongs to.
        at: Pipeline clock time of the decision.
        kind: Short category ("transition", "attach", "action", ...).
        message: Human-readable description.
        policy_version: Policy version the decision was made under.
        detail: Identifiers and values needed to replay the decision.
    """

    incident_id: str
    at: datetime
    kind: str
    message: str
    policy_version: int
    detail: dict = Field(default_factory=dict)


class AuditTrail:
    """Append-only, per-incident audit log.

    All reads return copies so callers cannot rewrite history.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list[AuditEntry]] = {}

    def record(
        self,
        incident_id: str,
        at: datetime,
        kind: str,
        message: str,
        policy_version: int,
        **detail,
    ) -> AuditEntry:
        entry = AuditEntry(
            incident_id=incident_id,
            at=at,
            kind=kind,
            message=message,
            policy_version=policy_version,
            detail=detail,
        )
        self._entries.setdefault(incident_id, []).append(entry)
        return entry

    def for_incident(self, incident_id: str) -> list[AuditEntry]:
        return list(self._entries.get(incident_id, []))

    def kinds(self, incident_id: str) -> list[str]:
        """Entry kinds for an incident in order. Handy for assertions and display."""
        return [e.kind for e in self._entries.get(incident_id, [])]
