"""Incident lifecycle manager.

IncidentManager is the only writer of Incident records. It applies the
Correlator's membership proposals, keeps severity and correlation score
current, and drives the state machine:

    OPEN ──► ESCALATED ──► REMEDIATING ──► RESOLVED ──► CLOSED
      │          ▲  │            │  ▲           │
      │          └──┼────────────┘  │           └──► OPEN (reactivated)
      └─────────────┴───────────────┘

    OPEN -> ESCALATED        score >= threshold for N evaluation cycles, or severity critical
    ESCALATED -> REMEDIATING dispatcher accepted a remediation request
    REMEDIATING -> ESCALATED remediation failed (automation halts, humans take over)
    * -> RESOLVED            every member resolved or detached
    RESOLVED -> CLOSED       cool-down elapsed; record is immutable from then on
    RESOLVED -> OPEN         a member fingerprint fired again during cool-down

Each incident has its own lock; there is no manager-wide lock. Reads return
deep copies, so nothing outside this module can change an incident.
"""

import logging
from collections import deque
from datetime import datetime
from typing import Callable

from core.audit import AuditTrail
from core.correlator import JOINABLE_STATES, CorrelationDecision
from core.errors import InvalidTransition, StaleIncidentReference
from core.locks import KeyedLock
from core.policy_store import PolicyStore
from core.telemetry import TelemetryEmitter
from schemas.alert import Severity
from schemas.events import EventType, Stage
from schemas.incident import (
    ACTIONABLE_STATES,
    TRANSITIONS,
    Incident,
    IncidentState,
    Member,
    MemberStatus,
)
from schemas.occurrence import Occurrence, OccurrenceChange, OccurrenceEvent

logger = logging.getLogger(__name__)

CLOSED_HISTORY_SIZE = 5000


class IncidentManager:
    """Owns every Incident and its state machine.

    Attributes:
        _incidents: Incident id -> live record (never handed out directly).
        _owner: Fingerprint -> id of the non-closed incident it belongs to.
        _locks: Per-incident locks.
        _on_resolved: Called with an incident id when it enters RESOLVED.
        _on_closed: Called with an incident id when it enters CLOSED.
        _on_evicted: Called with an incident id when its closed record is
            dropped to keep at most closed_history closed incidents.
    """

    def __init__(
        self,
        policy_store: PolicyStore,
        telemetry: TelemetryEmitter | None = None,
        audit: AuditTrail | None = None,
        closed_history: int = CLOSED_HISTORY_SIZE,
    ) -> None:
        self._policy_store = policy_store
        self._telemetry = telemetry or TelemetryEmitter()
        self.audit = audit or AuditTrail()
        self._incidents: dict[str, Incident] = {}
        self._owner: dict[str, str] = {}
        self._locks = KeyedLock()
        self._on_resolved: list[Callable[[str], None]] = []
        self._on_closed: list[Callable[[str], None]] = []
        self._on_evicted: list[Callable[[str], None]] = []
        self._closed: deque[str] = deque()
        self._closed_history = closed_history

    def on_resolved(self, callback: Callable[[str], None]) -> None:
        self._on_resolved.append(callback)

    def on_closed(self, callback: Callable[[str], None]) -> None:
        self._on_closed.append(callback)

    def on_evicted(self, callback: Callable[[str], None]) -> None:
        self._on_evicted.append(callback)

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, incident_id: str) -> Incident | None:
        incident = self._incidents.get(incident_id)
        return incident.model_copy(deep=True) if incident else None

    def incidents(self) -> list[Incident]:
        return [i.model_copy(deep=True) for i in sorted(self._incidents.values(), key=lambda i: i.created_at)]

    def joinable(self) -> dict[str, Incident]:
        """Snapshots of incidents that can still accept new members."""
        return {
            incident_id: incident.model_copy(deep=True)
            for incident_id, incident in self._incidents.items()
            if incident.state in JOINABLE_STATES
        }

    def owner_of(self, fingerprint: str) -> str | None:
        return self._owner.get(fingerprint)

    def is_actionable(self, incident_id: str) -> bool:
        """True only for ESCALATED or REMEDIATING incidents."""
        incident = self._incidents.get(incident_id)
        return incident is not None and incident.state in ACTIONABLE_STATES

    @staticmethod
    def needs_dispatch(incident: Incident) -> bool:
        """Whether the dispatcher should be asked to act on this incident."""
        return (
            incident.state == IncidentState.ESCALATED
            and not incident.remediation_requested
            and not incident.needs_human
        )

    # ── Occurrence events ─────────────────────────────────────────────────────

    async def apply(self, event: OccurrenceEvent, decision: CorrelationDecision | None = None) -> Incident | None:
        """Apply one deduplicator event.

        Args:
            event: CREATED, UPDATED or RESOLVED occurrence change.
            decision: Correlator proposal, required for a CREATED event whose
                fingerprint has no owning incident.

        Returns:
            A snapshot of the affected incident, or None if the event did not
            touch any incident (e.g. an update for a detached fingerprint).
        """
        occurrence = event.occurrence
        owner = self._owner.get(occurrence.fingerprint)

        if event.change == OccurrenceChange.RESOLVED:
            if owner is None:
                return None
            return await self._member_resolved(owner, occurrence, event.at)

        if owner is not None:
            return await self._member_fired(owner, occurrence, event.at)

        if event.change == OccurrenceChange.UPDATED:
            logger.debug("Update for unowned fingerprint %s ignored.", occurrence.fingerprint)
            return None

        if decision is not None and decision.incident_id is not None:
            joined = await self._try_join(decision, occurrence, event.at)
            if joined is not None:
                return joined
        return await self.open_incident(occurrence, event.at)

    async def open_incident(self, occurrence: Occurrence, at: datetime) -> Incident:
        """Create a new incident with the occurrence as its sole member."""
        policy = self._policy_store.current
        incident = Incident(
            members={occurrence.fingerprint: _member(occurrence)},
            severity=occurrence.severity,
            created_at=at,
            last_activity=occurrence.last_seen,
            reopened_from=self._closed_match(occurrence, at),
        )

        async with self._locks.hold(incident.incident_id):
            self._incidents[incident.incident_id] = incident
            self._owner[occurrence.fingerprint] = incident.incident_id

            self._telemetry.emit(
                Stage.LIFECYCLE, EventType.INCIDENT_CREATED, incident.incident_id,
                f"opened for {occurrence.resource}/{occurrence.metric} ({incident.severity.value})",
                policy.version, incident_id=incident.incident_id, fingerprint=occurrence.fingerprint,
                reopened_from=incident.reopened_from,
            )
            self.audit.record(
                incident.incident_id, at, "created",
                f"Opened for {occurrence.resource}/{occurrence.metric}", policy.version,
                fingerprint=occurrence.fingerprint, reopened_from=incident.reopened_from,
            )
            if incident.reopened_from:
                logger.info(
                    "Incident %s follows up closed incident %s.", incident.incident_id, incident.reopened_from,
                )
            self._escalate_if_critical(incident, at)
            return incident.model_copy(deep=True)

    async def attach(self, incident_id: str, occurrence: Occurrence, at: datetime, score: float | None = None) -> Incident:
        """Add an occurrence to an incident.

        The fingerprint must not belong to another incident — moving it is
        an explicit detach followed by an attach.

        Raises:
            KeyError: Unknown incident.
            StaleIncidentReference: The incident is closed.
            ValueError: The fingerprint is owned by a different incident.
        """
        async with self._locks.hold(incident_id):
            incident = self._live(incident_id)
            self._attach_locked(incident, occurrence, at, score)
            return incident.model_copy(deep=True)

    async def detach(self, incident_id: str, fingerprint: str, at: datetime) -> Incident:
        """Remove a member from an incident, keeping it in the audit trail.

        The detached fingerprint is left unowned; it is correlated afresh the
        next time it starts a new occurrence, or can be attached by hand.

        Raises:
            KeyError: Unknown incident or fingerprint not a current member.
            StaleIncidentReference: The incident is closed.
        """
        policy = self._policy_store.current
        async with self._locks.hold(incident_id):
            incident = self._live(incident_id)
            member = incident.members.get(fingerprint)
            if member is None or member.status == MemberStatus.DETACHED:
                raise KeyError(f"Fingerprint '{fingerprint}' is not a member of incident '{incident_id}'.")

            was_active = member.status == MemberStatus.ACTIVE
            member.status = MemberStatus.DETACHED
            self._owner.pop(fingerprint, None)
            incident.correlation_score = _correlation_score(incident)

            self._telemetry.emit(
                Stage.LIFECYCLE, EventType.MEMBER_DETACHED, incident_id,
                f"detached {member.resource}/{member.metric}", policy.version,
                incident_id=incident_id, fingerprint=fingerprint,
            )
            self.audit.record(incident_id, at, "detach", f"Detached {member.resource}/{member.metric}",
                              policy.version, fingerprint=fingerprint)

            if was_active:
                self._settle_after_member_loss(incident, member, at)
            return incident.model_copy(deep=True)

    # ── Periodic evaluation ───────────────────────────────────────────────────

    async def tick(self, now: datetime) -> list[str]:
        """Run one evaluation cycle.

        Counts correlation cycles for OPEN incidents (escalating when the
        score has held for enough consecutive cycles) and closes RESOLVED
        incidents whose cool-down has elapsed.

        Returns:
            Ids of ESCALATED incidents still waiting for a dispatch, sorted.
            This picks up incidents that escalated while the policy had
            automation disabled, once it is fixed.
        """
        policy = self._policy_store.current
        due: list[str] = []

        for incident_id in sorted(self._incidents):
            incident = self._incidents.get(incident_id)
            if incident is None or incident.state == IncidentState.CLOSED:
                continue
            async with self._locks.hold(incident_id):
                if incident.state == IncidentState.OPEN:
                    if incident.correlation_score >= policy.correlation.threshold:
                        incident.cycles_above_threshold += 1
                    else:
                        incident.cycles_above_threshold = 0
                    if incident.cycles_above_threshold >= policy.lifecycle.escalation_cycles:
                        self._transition(
                            incident, IncidentState.ESCALATED, now,
                            f"correlation {incident.correlation_score:.2f} held for "
                            f"{incident.cycles_above_threshold} cycle(s)",
                        )

                elif incident.state == IncidentState.RESOLVED:
                    elapsed = (now - incident.resolved_at).total_seconds()
                    if elapsed >= policy.lifecycle.cooldown_seconds:
                        self._close(incident, now)

                if self.needs_dispatch(incident):
                    due.append(incident_id)

        return due

    # ── Remediation hooks ─────────────────────────────────────────────────────

    async def begin_remediation(self, incident_id: str, at: datetime) -> bool:
        """ESCALATED -> REMEDIATING when the dispatcher accepts a request.

        Returns:
            True if the incident is now REMEDIATING, False if it is not in a
            state that allows remediation.

        Raises:
            StaleIncidentReference: The incident is closed.
        """
        async with self._locks.hold(incident_id):
            incident = self._live(incident_id)
            if incident.state == IncidentState.REMEDIATING:
                return True
            if incident.state != IncidentState.ESCALATED:
                return False
            self._transition(incident, IncidentState.REMEDIATING, at, "remediation accepted")
            return True

    async def complete_remediation(self, incident_id: str, succeeded: bool, detail: str, at: datetime) -> None:
        """Record the outcome of a remediation run.

        Outcomes for incidents no longer REMEDIATING (resolved meanwhile,
        or closed) are ignored — a late success is a no-op.
        """
        async with self._locks.hold(incident_id):
            incident = self._incidents.get(incident_id)
            if incident is None or incident.state != IncidentState.REMEDIATING:
                logger.info(
                    "Ignoring remediation outcome for %s (state %s): %s",
                    incident_id, incident.state.value if incident else "unknown", detail,
                )
                return

            policy = self._policy_store.current
            if succeeded:
                incident.remediated_at = at
                self.audit.record(incident_id, at, "remediated", detail or "remediation succeeded", policy.version)
                if not incident.active_members():
                    self._transition(incident, IncidentState.RESOLVED, at, "remediation confirmed")
                return

            incident.needs_human = True
            incident.human_reason = detail or "remediation failed"
            self._transition(incident, IncidentState.ESCALATED, at, f"remediation failed: {incident.human_reason}")

    async def flag_human(self, incident_id: str, reason: str, at: datetime) -> None:
        """Stop automation for an incident and leave it to a person.

        Raises:
            StaleIncidentReference: The incident is closed.
        """
        async with self._locks.hold(incident_id):
            incident = self._live(incident_id)
            incident.needs_human = True
            incident.human_reason = reason
            policy = self._policy_store.current
            self.audit.record(incident_id, at, "needs_human", reason, policy.version)
            logger.warning("Incident %s needs human attention: %s (policy v%d)", incident_id, reason, policy.version)

    async def mark_remediation_requested(self, incident_id: str) -> None:
        async with self._locks.hold(incident_id):
            incident = self._incidents.get(incident_id)
            if incident is not None:
                incident.remediation_requested = True

    # ── Private helpers ───────────────────────────────────────────────────────

    def _live(self, incident_id: str) -> Incident:
        incident = self._incidents.get(incident_id)
        if incident is None:
            raise KeyError(f"Incident '{incident_id}' not found.")
        if incident.state == IncidentState.CLOSED:
            raise StaleIncidentReference(incident_id)
        return incident

    async def _try_join(self, decision: CorrelationDecision, occurrence: Occurrence, at: datetime) -> Incident | None:
        async with self._locks.hold(decision.incident_id):
            incident = self._incidents.get(decision.incident_id)
            if incident is None or incident.state not in JOINABLE_STATES:
                logger.info(
                    "Proposed incident %s no longer joinable; opening a new one for %s.",
                    decision.incident_id, occurrence.fingerprint,
                )
                return None
            self._attach_locked(incident, occurrence, at, decision.score)
            return incident.model_copy(deep=True)

    def _attach_locked(self, incident: Incident, occurrence: Occurrence, at: datetime, score: float | None) -> None:
        policy = self._policy_store.current
        owner = self._owner.get(occurrence.fingerprint)
        if owner is not None and owner != incident.incident_id:
            raise ValueError(
                f"Fingerprint '{occurrence.fingerprint}' belongs to incident '{owner}'; detach it first."
            )

        member = _member(occurrence)
        member.join_score = score
        incident.members[occurrence.fingerprint] = member
        self._owner[occurrence.fingerprint] = incident.incident_id
        incident.correlation_score = _correlation_score(incident)
        incident.last_activity = max(incident.last_activity, occurrence.last_seen)

        self._telemetry.emit(
            Stage.CORRELATOR, EventType.MEMBER_ATTACHED, incident.incident_id,
            f"{occurrence.resource}/{occurrence.metric} joined"
            + (f" at {score:.2f}" if score is not None else ""),
            policy.version, incident_id=incident.incident_id, fingerprint=occurrence.fingerprint,
            score=score, correlation_score=incident.correlation_score,
        )
        self.audit.record(
            incident.incident_id, at, "attach", f"Attached {occurrence.resource}/{occurrence.metric}",
            policy.version, fingerprint=occurrence.fingerprint, score=score,
        )

        if incident.state == IncidentState.RESOLVED and occurrence.is_active:
            self._transition(incident, IncidentState.OPEN, at, "member attached during cool-down")
        self._raise_severity(incident, occurrence.severity, at)
        self._escalate_if_critical(incident, at)

    async def _member_fired(self, incident_id: str, occurrence: Occurrence, at: datetime) -> Incident | None:
        async with self._locks.hold(incident_id):
            incident = self._incidents.get(incident_id)
            if incident is None or incident.state == IncidentState.CLOSED:
                return None
            member = incident.members[occurrence.fingerprint]
            recurred = member.status == MemberStatus.RESOLVED
            member.status = MemberStatus.ACTIVE
            member.severity = occurrence.severity
            member.last_seen = occurrence.last_seen
            incident.last_activity = max(incident.last_activity, occurrence.last_seen)

            if recurred:
                policy = self._policy_store.current
                self.audit.record(incident_id, at, "recurred", f"{member.resource}/{member.metric} fired again",
                                  policy.version, fingerprint=occurrence.fingerprint)
                if incident.state == IncidentState.RESOLVED:
                    self._transition(incident, IncidentState.OPEN, at, "member fired again during cool-down")

            self._raise_severity(incident, occurrence.severity, at)
            self._escalate_if_critical(incident, at)
            return incident.model_copy(deep=True)

    async def _member_resolved(self, incident_id: str, occurrence: Occurrence, at: datetime) -> Incident | None:
        async with self._locks.hold(incident_id):
            incident = self._incidents.get(incident_id)
            if incident is None or incident.state == IncidentState.CLOSED:
                return None
            member = incident.members.get(occurrence.fingerprint)
            if member is None or member.status != MemberStatus.ACTIVE:
                return incident.model_copy(deep=True)

            member.status = MemberStatus.RESOLVED
            member.last_seen = occurrence.last_seen
            policy = self._policy_store.current
            self.audit.record(incident_id, at, "member_resolved", f"{member.resource}/{member.metric} resolved",
                              policy.version, fingerprint=occurrence.fingerprint)
            self._settle_after_member_loss(incident, member, at)
            return incident.model_copy(deep=True)

    def _settle_after_member_loss(self, incident: Incident, lost: Member, at: datetime) -> None:
        """Recompute severity and maybe resolve after a member resolved or detached."""
        active = incident.active_members()
        if not active:
            if incident.state in (IncidentState.OPEN, IncidentState.ESCALATED, IncidentState.REMEDIATING):
                self._transition(incident, IncidentState.RESOLVED, at, "all members resolved or detached")
            return

        # Only losing the highest-severity member may lower the incident severity.
        if lost.severity == incident.severity:
            remaining = Severity.highest(m.severity for m in active)
            if remaining.rank < incident.severity.rank:
                self._set_severity(incident, remaining, at, f"highest member {lost.resource}/{lost.metric} cleared")

    def _raise_severity(self, incident: Incident, severity: Severity, at: datetime) -> None:
        if severity.rank > incident.severity.rank:
            self._set_severity(incident, severity, at, "member severity increased")

    def _set_severity(self, incident: Incident, severity: Severity, at: datetime, reason: str) -> None:
        policy = self._policy_store.current
        previous = incident.severity
        incident.severity = severity
        self._telemetry.emit(
            Stage.LIFECYCLE, EventType.SEVERITY_CHANGED, incident.incident_id,
            f"{previous.value} -> {severity.value} ({reason})", policy.version,
            incident_id=incident.incident_id, previous=previous.value, current=severity.value,
        )
        self.audit.record(incident.incident_id, at, "severity", f"{previous.value} -> {severity.value}: {reason}",
                          policy.version)

    def _escalate_if_critical(self, incident: Incident, at: datetime) -> None:
        if incident.state == IncidentState.OPEN and incident.severity == Severity.CRITICAL:
            self._transition(incident, IncidentState.ESCALATED, at, "severity reached critical")

    def _transition(self, incident: Incident, target: IncidentState, at: datetime, reason: str) -> None:
        current = incident.state
        if target not in TRANSITIONS[current]:
            raise InvalidTransition(incident.incident_id, current.value, target.value)

        incident.state = target
        if target == IncidentState.RESOLVED:
            incident.resolved_at = at
        elif target == IncidentState.OPEN:
            incident.resolved_at = None
            incident.cycles_above_threshold = 0
            incident.remediation_requested = False
        elif target == IncidentState.CLOSED:
            incident.closed_at = at

        policy = self._policy_store.current
        self._telemetry.emit(
            Stage.LIFECYCLE, EventType.INCIDENT_TRANSITION, incident.incident_id,
            f"{current.value} -> {target.value} ({reason})", policy.version,
            incident_id=incident.incident_id, previous=current.value, current=target.value,
            fingerprints=sorted(incident.member_fingerprints),
        )
        self.audit.record(
            incident.incident_id, at, "transition", f"{current.value} -> {target.value}: {reason}",
            policy.version, previous=current.value, current=target.value,
        )

        callbacks = self._on_resolved if target == IncidentState.RESOLVED else (
            self._on_closed if target == IncidentState.CLOSED else []
        )
        for callback in callbacks:
            callback(incident.incident_id)

    def _close(self, incident: Incident, at: datetime) -> None:
        if any(m.status == MemberStatus.ACTIVE for m in incident.members.values()):
            logger.error("Refusing to close %s: it still has active members.", incident.incident_id)
            return
        for fingerprint in incident.members:
            if self._owner.get(fingerprint) == incident.incident_id:
                del self._owner[fingerprint]
        self._transition(incident, IncidentState.CLOSED, at, "cool-down elapsed")
        self._closed.append(incident.incident_id)
        while len(self._closed) > self._closed_history:
            evicted = self._closed.popleft()
            self._incidents.pop(evicted, None)
            logger.debug("Dropped closed incident %s from memory.", evicted)
            for callback in self._on_evicted:
                callback(evicted)

    def _closed_match(self, occurrence: Occurrence, at: datetime) -> str | None:
        """Most recently closed incident, within the grace period, with the same resource and metric."""
        grace = self._policy_store.current.lifecycle.reopen_grace_seconds
        matches = [
            incident for incident in self._incidents.values()
            if incident.state == IncidentState.CLOSED
            and (at - incident.closed_at).total_seconds() <= grace
            and any(m.resource == occurrence.resource and m.metric == occurrence.metric
                    for m in incident.members.values())
        ]
        if not matches:
            return None
        return max(matches, key=lambda i: (i.closed_at, i.incident_id)).incident_id


def _member(occurrence: Occurrence) -> Member:
    return Member(
        fingerprint=occurrence.fingerprint,
        resource=occurrence.resource,
        metric=occurrence.metric,
        resource_type=occurrence.resource_type,
        severity=occurrence.severity,
        last_seen=occurrence.last_seen,
        status=MemberStatus.ACTIVE if occurrence.is_active else MemberStatus.RESOLVED,
    )


def _correlation_score(incident: Incident) -> float:
    """Mean join score of non-founding current members; 0.0 for a lone founder."""
    scores = [m.join_score for m in incident.current_members() if m.join_score is not None]
    return round(sum(scores) / len(scores), 4) if scores else 0.0
