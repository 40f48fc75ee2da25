"""Occurrence correlator.

The Correlator decides which open incident, if any, a new occurrence belongs
to. It proposes; the IncidentManager applies. It never mutates an incident.

Scoring is a weighted blend of three components, each in [0, 1]:

    temporal  = 1 - (gap to the nearest member's last_seen / window), floored at 0
    resource  = share of current members topologically related to the occurrence
    severity  = 1 - |rank difference| / 2   (info=0, warning=1, critical=2)

    score = (w_t * temporal + w_r * resource + w_s * severity) / (w_t + w_r + w_s)

Weights, window and threshold come from the policy snapshot taken at the
start of each proposal. The scorer is pluggable — any object satisfying
Scorer can replace WeightedScorer (see llm/scorer.py).

Candidate incidents are found through sliding window buckets: every incident
is indexed under the window slot of its latest activity, and a proposal
looks at its own slot and the two neighbours, then filters by topology.

Tie-break: highest score wins; on an exact tie the earlier-created incident
wins, then the lower incident id. Same history + same policy always gives
the same decision.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Protocol

from core.policy_store import PolicyStore
from schemas.incident import Incident, IncidentState
from schemas.occurrence import Occurrence
from schemas.policy import Policy

logger = logging.getLogger(__name__)

JOINABLE_STATES = frozenset({IncidentState.OPEN, IncidentState.ESCALATED, IncidentState.REMEDIATING})


class Scorer(Protocol):
    """Capability: score how well an occurrence fits an incident, in [0, 1]."""

    async def score(self, occurrence: Occurrence, incident: Incident, policy: Policy) -> float:
        ...


@dataclass(frozen=True)
class ScoreBreakdown:
    temporal: float
    resource: float
    severity: float
    total: float


class WeightedScorer:
    """Deterministic default scorer. See the module docstring for the formula."""

    def breakdown(self, occurrence: Occurrence, incident: Incident, policy: Policy) -> ScoreBreakdown:
        members = incident.current_members()
        if not members:
            return ScoreBreakdown(0.0, 0.0, 0.0, 0.0)

        window = policy.correlation.window_seconds
        weights = policy.correlation.weights

        gap = min(abs((occurrence.last_seen - m.last_seen).total_seconds()) for m in members)
        temporal = max(0.0, 1.0 - gap / window)

        related = sum(1 for m in members if policy.topology.related(occurrence.resource, m.resource))
        resource = related / len(members)

        severity = 1.0 - abs(occurrence.severity.rank - incident.severity.rank) / 2.0

        total = (
            weights.temporal * temporal
            + weights.resource * resource
            + weights.severity * severity
        ) / weights.total
        return ScoreBreakdown(temporal, resource, severity, round(total, 4))

    async def score(self, occurrence: Occurrence, incident: Incident, policy: Policy) -> float:
        return self.breakdown(occurrence, incident, policy).total


@dataclass
class CorrelationDecision:
    """The Correlator's proposal for one occurrence.

    Attributes:
        fingerprint: The occurrence being placed.
        incident_id: Incident to join, or None to start a new one.
        score: Score against the chosen incident (0.0 when none).
        candidates: Every evaluated (incident_id, score), best first.
        policy_version: Policy snapshot the decision was made under.
    """

    fingerprint: str
    incident_id: str | None
    score: float
    policy_version: int
    candidates: list[tuple[str, float]] = field(default_factory=list)


class Correlator:
    """Proposes incident membership for new occurrences.

    An occurrence joins the best-scoring candidate whose score is at or
    above the policy threshold, so a score equal to the threshold joins.
    IncidentManager counts escalation cycles with the same comparison.

    Attributes:
        _buckets: Window slot -> ids of incidents last active in that slot.
        _slot_of: Incident id -> its current slot, so re-indexing is O(1).
    """

    def __init__(self, policy_store: PolicyStore, scorer: Scorer | None = None) -> None:
        self._policy_store = policy_store
        self._scorer = scorer or WeightedScorer()
        self._buckets: dict[int, set[str]] = {}
        self._slot_of: dict[str, int] = {}
        self._window: float | None = None

    def track(self, incident: Incident) -> None:
        """Index an incident under the window slot of its latest activity."""
        window = self._policy_store.current.correlation.window_seconds
        if self._window is None:
            self._window = window
        slot = _slot(incident.last_activity, self._window)
        previous = self._slot_of.get(incident.incident_id)
        if previous == slot:
            return
        if previous is not None:
            self._discard(incident.incident_id, previous)
        self._buckets.setdefault(slot, set()).add(incident.incident_id)
        self._slot_of[incident.incident_id] = slot

    def forget(self, incident_id: str) -> None:
        """Drop an incident from the index once it can no longer accept members."""
        slot = self._slot_of.pop(incident_id, None)
        if slot is not None:
            self._discard(incident_id, slot)

    def tracked(self) -> set[str]:
        return set(self._slot_of)

    async def propose(self, occurrence: Occurrence, incidents: Mapping[str, Incident]) -> CorrelationDecision:
        """Score the occurrence against nearby open incidents and pick one.

        Args:
            occurrence: The new occurrence to place.
            incidents: Incident id -> current incident snapshot, as owned by
                the IncidentManager. Ids the index knows but this mapping
                lacks are skipped.

        Returns:
            A CorrelationDecision. incident_id is None when no candidate
            reaches the policy threshold.
        """
        policy = self._policy_store.current
        threshold = policy.correlation.threshold
        window = policy.correlation.window_seconds
        if self._window is not None and window != self._window:
            self._reindex(incidents, window)

        scored: list[tuple[float, datetime, str]] = []
        for incident in self._candidates(occurrence, incidents, window):
            score = max(0.0, min(1.0, await self._scorer.score(occurrence, incident, policy)))
            scored.append((score, incident.created_at, incident.incident_id))

        scored.sort(key=lambda item: (-item[0], item[1], item[2]))
        candidates = [(incident_id, score) for score, _, incident_id in scored]

        chosen = next(((i, s) for i, s in candidates if s >= threshold), None)
        decision = CorrelationDecision(
            fingerprint=occurrence.fingerprint,
            incident_id=chosen[0] if chosen else None,
            score=chosen[1] if chosen else 0.0,
            policy_version=policy.version,
            candidates=candidates,
        )
        logger.debug(
            "Correlation for %s (%s): %d candidate(s), chose %s at %.3f (threshold %.2f, policy v%d).",
            occurrence.fingerprint,
            occurrence.resource,
            len(candidates),
            decision.incident_id,
            decision.score,
            threshold,
            policy.version,
        )
        return decision

    # ── Private helpers ───────────────────────────────────────────────────────

    def _candidates(self, occurrence: Occurrence, incidents: Mapping[str, Incident], window: float) -> list[Incident]:
        slot = _slot(occurrence.last_seen, window)
        ids: set[str] = set()
        for s in (slot - 1, slot, slot + 1):
            ids |= self._buckets.get(s, set())

        policy = self._policy_store.current
        found = []
        for incident_id in sorted(ids):
            incident = incidents.get(incident_id)
            if incident is None or incident.state not in JOINABLE_STATES:
                continue
            if abs((occurrence.last_seen - incident.last_activity).total_seconds()) > window:
                continue
            if not any(policy.topology.related(occurrence.resource, m.resource) for m in incident.current_members()):
                continue
            found.append(incident)
        return found

    def _reindex(self, incidents: Mapping[str, Incident], window: float) -> None:
        """Rebuild the buckets after a policy reload changed the window size."""
        logger.info(
            "Correlation window changed from %.0fs to %.0fs; re-indexing %d incident(s).",
            self._window, window, len(incidents),
        )
        self._buckets.clear()
        self._slot_of.clear()
        self._window = window
        for incident in incidents.values():
            if incident.state in JOINABLE_STATES:
                self.track(incident)

    def _discard(self, incident_id: str, slot: int) -> None:
        bucket = self._buckets.get(slot)
        if bucket is None:
            return
        bucket.discard(incident_id)
        if not bucket:
            del self._buckets[slot]


def _slot(at: datetime, window: float) -> int:
    return int(at.timestamp() // window)
