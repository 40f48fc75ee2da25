"""Remediation schemas.

RemediationAction is a planned or executed response to an incident.
It back-references its incident by id only — the dispatcher owns actions,
the lifecycle manager owns incidents.
"""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ActionKind(str, Enum):
    SCALE = "scale"
    RESTART = "restart"
    NOTIFY = "notify"
    TICKET = "ticket"
    CUSTOM = "custom"


class ActionStatus(str, Enum):
    """Action lifecycle.

    pending -> approved -> executing -> succeeded | failed.
    skipped is reachable from pending, approved or executing when the
    action is rejected, cancelled, or its incident stops being actionable.
    """

    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_ACTION_STATUSES = frozenset({ActionStatus.SUCCEEDED, ActionStatus.FAILED, ActionStatus.SKIPPED})


class RemediationAction(BaseModel):
    """A single remediation step for one incident.

    Attributes:
        action_id: Generated identifier.
        incident_id: The incident this action responds to.
        kind: What the executor should do.
        resource: Target entity (the incident's primary member resource).
        status: Current status; see ActionStatus.
        attempts: Number of executor calls made so far.
        last_error: Detail from the most recent failed attempt.
        requires_approval: Whether an external approval gates execution.
        automated: False for the manual ticket raised after rate limiting.
        params: Free-form arguments from the policy rule.
        policy_version: Policy version the action was planned under.
        created_at: Planning time.
        approved_by: Approver identity, when approval was required.
    """

    action_id: str = Field(default_factory=lambda: f"act-{uuid.uuid4().hex[:12]}")
    incident_id: str
    kind: ActionKind
    resource: str
    status: ActionStatus = ActionStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    requires_approval: bool = False
    automated: bool = True
    params: dict = Field(default_factory=dict)
    policy_version: int = 0
    created_at: datetime
    approved_by: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ACTION_STATUSES


class ExecutionOutcome(BaseModel):
    """What an action executor reports back.

    Transient failures are signalled by raising ExecutorTransientFailure,
    not by returning an outcome — a returned failure is final.
    """

    succeeded: bool
    detail: str = ""
