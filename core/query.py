"""Read-only query surface.

IncidentQuery is what dashboards and the HTTP API read from. It joins the
three owners of state (IncidentManager, Deduplicator, RemediationDispatcher)
plus the audit trail and telemetry history into views. Every value it
returns is a copy; nothing here can change pipeline state.
"""

from pydantic import BaseModel, Field

from core.audit import AuditEntry
from core.dedup import Deduplicator
from core.lifecycle import IncidentManager
from core.remediation import RemediationDispatcher
from core.telemetry import TelemetryEmitter
from schemas.events import PipelineEvent
from schemas.incident import Incident, IncidentState
from schemas.occurrence import Occurrence
from schemas.remediation import RemediationAction


class IncidentDetail(BaseModel):
    """Everything known about one incident."""

    incident: Incident
    actions: list[RemediationAction] = Field(default_factory=list)
    audit: list[AuditEntry] = Field(default_factory=list)
    events: list[PipelineEvent] = Field(default_factory=list)


class IncidentQuery:
    def __init__(
        self,
        manager: IncidentManager,
        dedup: Deduplicator,
        dispatcher: RemediationDispatcher,
        telemetry: TelemetryEmitter,
    ) -> None:
        self._manager = manager
        self._dedup = dedup
        self._dispatcher = dispatcher
        self._telemetry = telemetry

    def incidents(self, state: IncidentState | None = None) -> list[Incident]:
        """All incidents, oldest first, optionally filtered by state."""
        return [i for i in self._manager.incidents() if state is None or i.state == state]

    def incident(self, incident_id: str) -> IncidentDetail | None:
        incident = self._manager.get(incident_id)
        if incident is None:
            return None
        return IncidentDetail(
            incident=incident,
            actions=self._dispatcher.actions(incident_id),
            audit=self._manager.audit.for_incident(incident_id),
            events=self._telemetry.history(incident_id),
        )

    def occurrences(self, include_resolved: bool = False) -> list[Occurrence]:
        active = self._dedup.active()
        if not include_resolved:
            return active
        return active + self._dedup.resolved()

    def actions(self, incident_id: str | None = None) -> list[RemediationAction]:
        return self._dispatcher.actions(incident_id)

    def pending_approvals(self) -> list[RemediationAction]:
        return self._dispatcher.pending_approvals()

    def events(self, subject: str | None = None, limit: int | None = None) -> list[PipelineEvent]:
        history = self._telemetry.history(subject)
        return history[-limit:] if limit else history

    def summary(self) -> dict:
        """Counts for a health or overview panel."""
        counts = {state.value: 0 for state in IncidentState}
        for incident in self._manager.incidents():
            counts[incident.state.value] += 1
        return {
            "incidents": counts,
            "active_occurrences": len(self._dedup.active()),
            "pending_approvals": len(self._dispatcher.pending_approvals()),
            "needs_human": sum(1 for i in self._manager.incidents() if i.needs_human and i.state != IncidentState.CLOSED),
        }
