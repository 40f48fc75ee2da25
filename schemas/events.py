"""Pipeline telemetry event schema.

Every state transition in the pipeline emits one of these. The display
layer and any external log shipper subscribe to them; the pipeline itself
never reads them back to make decisions, so it behaves the same whether or
not anything is listening.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Stage(str, Enum):
    """Pipeline stage that emitted an event. Maps to a display panel."""

    INGEST = "ingest"
    DEDUP = "dedup"
    CORRELATOR = "correlator"
    LIFECYCLE = "lifecycle"
    REMEDIATION = "remediation"
    POLICY = "policy"


class EventType(str, Enum):
    """What happened.

    Values:
        ALERT_ACCEPTED / ALERT_DROPPED: Ingest outcome for one payload.
        OCCURRENCE_*: Deduplicator changes.
        INCIDENT_CREATED / MEMBER_ATTACHED / MEMBER_DETACHED: Membership.
        INCIDENT_TRANSITION: Lifecycle state change.
        SEVERITY_CHANGED: Incident severity moved.
        ACTION_STATUS: A remediation action changed status.
        RATE_LIMITED: Dispatch hit the per-resource limit.
        POLICY_LOADED / POLICY_REJECTED: Policy store reload outcome.
        ERROR: An unexpected failure in a background worker.
    """

    ALERT_ACCEPTED = "alert_accepted"
    ALERT_DROPPED = "alert_dropped"
    OCCURRENCE_CREATED = "occurrence_created"
    OCCURRENCE_UPDATED = "occurrence_updated"
    OCCURRENCE_RESOLVED = "occurrence_resolved"
    INCIDENT_CREATED = "incident_created"
    MEMBER_ATTACHED = "member_attached"
    MEMBER_DETACHED = "member_detached"
    INCIDENT_TRANSITION = "incident_transition"
    SEVERITY_CHANGED = "severity_changed"
    ACTION_STATUS = "action_status"
    RATE_LIMITED = "rate_limited"
    POLICY_LOADED = "policy_loaded"
    POLICY_REJECTED = "policy_rejected"
    ERROR = "error"


class PipelineEvent(BaseModel):
    """A single structured telemetry record.

    Attributes:
        stage: Emitting stage.
        event_type: What happened.
        subject: Id of the thing it happened to — a fingerprint, incident
            id, action id, or policy version.
        message: Short human-readable line for panels and logs.
        policy_version: Policy version in force when the decision was made.
        timestamp: Pipeline clock time of the emission.
        detail: Extra context (fingerprint, incident id, old/new state...).
    """

    stage: Stage
    event_type: EventType
    subject: str
    message: str
    policy_version: int
    timestamp: datetime
    detail: dict = Field(default_factory=dict)
