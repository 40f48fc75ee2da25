"""Incident schema.

An Incident is a correlated group of Occurrences believed to share a root
cause. Only the IncidentManager mutates these; the Correlator proposes
membership and the query surface hands out copies.
"""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from schemas.alert import Severity


class IncidentState(str, Enum):
    """Lifecycle states.

    Values:
        OPEN: Initial state on creation.
        ESCALATED: Correlation held above threshold for enough evaluation
            cycles, or severity reached critical.
        REMEDIATING: The dispatcher accepted a remediation request.
        RESOLVED: Every member occurrence resolved (or was detached).
            The cool-down clock is running.
        CLOSED: Terminal. The record is immutable from here on.
    """

    OPEN = "open"
    ESCALATED = "escalated"
    REMEDIATING = "remediating"
    RESOLVED = "resolved"
    CLOSED = "closed"


# Legal state-machine edges. Anything else raises InvalidTransition.
TRANSITIONS: dict[IncidentState, set[IncidentState]] = {
    IncidentState.OPEN: {IncidentState.ESCALATED, IncidentState.RESOLVED},
    IncidentState.ESCALATED: {IncidentState.REMEDIATING, IncidentState.RESOLVED},
    IncidentState.REMEDIATING: {IncidentState.ESCALATED, IncidentState.RESOLVED},
    IncidentState.RESOLVED: {IncidentState.CLOSED, IncidentState.OPEN},
    IncidentState.CLOSED: set(),
}

ACTIONABLE_STATES = frozenset({IncidentState.ESCALATED, IncidentState.REMEDIATING})


class MemberStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    DETACHED = "detached"


class Member(BaseModel):
    """One occurrence's membership in an incident.

    Attributes:
        fingerprint: Fingerprint of the member occurrence.
        resource: Affected entity, copied for topology checks.
        metric: Measured signal, copied for reopen matching.
        resource_type: Classification used for remediation lookup.
        severity: Severity of the member's current occurrence.
        last_seen: Latest alert time of the member's current occurrence.
        join_score: Correlation score at attach time. None for the
            founding member.
        status: ACTIVE, RESOLVED, or DETACHED.
    """

    fingerprint: str
    resource: str
    metric: str
    resource_type: str | None = None
    severity: Severity
    last_seen: datetime
    join_score: float | None = None
    status: MemberStatus = MemberStatus.ACTIVE


class Incident(BaseModel):
    """Correlated cluster of occurrences.

    Attributes:
        incident_id: Generated identifier.
        members: Fingerprint -> Member. Detached members are kept with
            status DETACHED for the audit trail.
        correlation_score: Mean join score of non-founding members; 0.0 for
            a single-member incident.
        severity: Never lower than the highest active member severity.
        state: See IncidentState.
        created_at: Time of the founding occurrence.
        last_activity: Latest member activity, used for window pruning.
        resolved_at: Start of the cool-down.
        closed_at: When the incident became CLOSED.
        reopened_from: Id of the closed incident this one follows up.
        cycles_above_threshold: Consecutive evaluation cycles with the
            correlation score at or above the policy threshold.
        remediation_requested: The dispatcher has already been asked.
        remediated_at: Last successful remediation, if any.
        needs_human: Automation stopped; a person must take over.
        human_reason: Why needs_human was set.
    """

    incident_id: str = Field(default_factory=lambda: f"inc-{uuid.uuid4().hex[:12]}")
    members: dict[str, Member] = Field(default_factory=dict)
    correlation_score: float = Field(default=0.0, ge=0.0, le=1.0)
    severity: Severity = Severity.INFO
    state: IncidentState = IncidentState.OPEN
    created_at: datetime
    last_activity: datetime
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    reopened_from: str | None = None
    cycles_above_threshold: int = 0
    remediation_requested: bool = False
    remediated_at: datetime | None = None
    needs_human: bool = False
    human_reason: str | None = None

    @property
    def member_fingerprints(self) -> set[str]:
        """Fingerprints of members that have not been detached."""
        return {fp for fp, m in self.members.items() if m.status != MemberStatus.DETACHED}

    def active_members(self) -> list[Member]:
        return [m for m in self.members.values() if m.status == MemberStatus.ACTIVE]

    def current_members(self) -> list[Member]:
        return [m for m in self.members.values() if m.status != MemberStatus.DETACHED]

    def primary_member(self) -> Member | None:
        """The most severe current member; ties go to the earliest to join.

        Remediation targets this member's resource and resource type.
        """
        current = sorted(self.current_members(), key=lambda m: -m.severity.rank)
        return current[0] if current else None
