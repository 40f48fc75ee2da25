"""Remediation dispatcher.

RemediationDispatcher turns an escalated incident into executed actions.
For each dispatch it:

    1. refuses anything not ESCALATED/REMEDIATING, and anything at all while
       the policy has automation disabled (fail closed)
    2. looks up actions by (incident severity, primary resource type)
    3. holds approval-gated actions as pending until approve() is called
    4. enforces the per-resource rate limit; on breach it raises a manual
       ticket instead and hands the incident to humans
    5. moves the incident to REMEDIATING and runs the actions on a dedicated
       task, bounded by a semaphore, retrying transient failures with
       exponential backoff
    6. reports the outcome to the IncidentManager, which does not retry

Execution runs on its own asyncio tasks, so a slow or stuck executor never
blocks ingestion or correlation. If the incident resolves first, the task is
cancelled; a success arriving after that is ignored by the manager.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable

from core.errors import ExecutorTransientFailure, RateLimited, StaleIncidentReference
from core.lifecycle import IncidentManager
from core.policy_store import PolicyStore
from core.telemetry import TelemetryEmitter
from executors.base import ActionExecutor
from schemas.events import EventType, Stage
from schemas.incident import Incident, IncidentState
from schemas.policy import Policy, RateLimitPolicy
from schemas.remediation import ActionKind, ActionStatus, RemediationAction

logger = logging.getLogger(__name__)


class DispatchResult(str, Enum):
    ACCEPTED = "accepted"
    PENDING_APPROVAL = "pending_approval"
    RATE_LIMITED = "rate_limited"
    NO_RULES = "no_rules"
    BLOCKED_POLICY = "blocked_policy"
    NOT_ACTIONABLE = "not_actionable"
    STALE = "stale"


class RateLimiter:
    """Sliding-window count of automated actions per resource."""

    def __init__(self) -> None:
        self._history: dict[str, deque[datetime]] = {}

    def acquire(self, resource: str, now: datetime, limit: RateLimitPolicy, slots: int = 1) -> None:
        """Reserve slots for a resource or raise without reserving any.

        Raises:
            RateLimited: If the reservation would exceed limit.max_actions
                within limit.window_seconds.
        """
        history = self._history.setdefault(resource, deque())
        cutoff = now - timedelta(seconds=limit.window_seconds)
        while history and history[0] <= cutoff:
            history.popleft()
        if len(history) + slots > limit.max_actions:
            raise RateLimited(resource, limit.max_actions, limit.window_seconds)
        history.extend([now] * slots)

    def prune(self, now: datetime, limit: RateLimitPolicy) -> None:
        """Drop expired entries, and resources with none left."""
        cutoff = now - timedelta(seconds=limit.window_seconds)
        for resource in list(self._history):
            history = self._history[resource]
            while history and history[0] <= cutoff:
                history.popleft()
            if not history:
                del self._history[resource]

    def used(self, resource: str) -> int:
        return len(self._history.get(resource, ()))


class RemediationDispatcher:
    """Plans, gates and executes remediation actions.

    Attributes:
        _actions: Action id -> live action record.
        _plans: Incident id -> action ids of its latest plan.
        _tasks: Incident id -> running remediation task.
        _tickets: Running manual-ticket tasks.
    """

    def __init__(
        self,
        policy_store: PolicyStore,
        manager: IncidentManager,
        executor: ActionExecutor,
        telemetry: TelemetryEmitter | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._policy_store = policy_store
        self._manager = manager
        self._executor = executor
        self._telemetry = telemetry or TelemetryEmitter()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._limiter = RateLimiter()
        self._actions: dict[str, RemediationAction] = {}
        self._plans: dict[str, list[str]] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._tickets: set[asyncio.Task] = set()
        self._semaphore: asyncio.Semaphore | None = None
        self._semaphore_size = 0

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, action_id: str) -> RemediationAction | None:
        action = self._actions.get(action_id)
        return action.model_copy() if action else None

    def actions(self, incident_id: str | None = None) -> list[RemediationAction]:
        found = [a for a in self._actions.values() if incident_id is None or a.incident_id == incident_id]
        return [a.model_copy() for a in sorted(found, key=lambda a: a.created_at)]

    def pending_approvals(self) -> list[RemediationAction]:
        return [a for a in self.actions() if a.status == ActionStatus.PENDING and a.requires_approval]

    def rate_used(self, resource: str) -> int:
        return self._limiter.used(resource)

    # ── Dispatch ──────────────────────────────────────────────────────────────

    async def dispatch(self, incident_id: str) -> DispatchResult:
        """Plan and, if allowed, start remediation for one incident.

        Never raises for closed incidents — a dispatch against a closed
        incident is a logged no-op returning STALE.

        Raises:
            KeyError: If the incident id is unknown.
        """
        policy = self._policy_store.current
        now = self._clock()
        incident = self._manager.get(incident_id)
        if incident is None:
            raise KeyError(f"Incident '{incident_id}' not found.")

        if incident.state == IncidentState.CLOSED:
            logger.info("Dispatch for closed incident %s ignored.", incident_id)
            return DispatchResult.STALE
        if not self._manager.is_actionable(incident_id):
            logger.info("Dispatch for %s refused: state is %s.", incident_id, incident.state.value)
            return DispatchResult.NOT_ACTIONABLE
        if not policy.automation_allowed:
            logger.error(
                "Automated remediation for %s blocked: policy v%d has issues: %s",
                incident_id, policy.version, "; ".join(policy.issues),
            )
            return DispatchResult.BLOCKED_POLICY

        primary = incident.primary_member()
        templates = policy.remediation.actions_for(incident.severity, primary.resource_type if primary else None)
        if primary is None or not templates:
            logger.info(
                "No remediation rule for %s (severity=%s, resource_type=%s, policy v%d).",
                incident_id, incident.severity.value, primary.resource_type if primary else None, policy.version,
            )
            return DispatchResult.NO_RULES
        await self._manager.mark_remediation_requested(incident_id)

        plan = [
            RemediationAction(
                incident_id=incident_id,
                kind=template.kind,
                resource=primary.resource,
                requires_approval=template.requires_approval,
                params=dict(template.params),
                policy_version=policy.version,
                created_at=now,
            )
            for template in templates
        ]
        for action in plan:
            self._actions[action.action_id] = action
            self._record(action, f"planned {action.kind.value} for {action.resource}")
        self._plans[incident_id] = [a.action_id for a in plan]

        if any(a.requires_approval for a in plan):
            for action in plan:
                if not action.requires_approval:
                    self._set_status(action, ActionStatus.APPROVED)
            logger.info(
                "Remediation for %s awaiting approval of %d action(s).",
                incident_id, sum(1 for a in plan if a.requires_approval),
            )
            return DispatchResult.PENDING_APPROVAL

        return await self._accept(incident, plan, policy, now)

    async def approve(self, action_id: str, approver: str) -> RemediationAction:
        """Record an external approval; starts the plan once nothing is pending.

        Raises:
            KeyError: Unknown action.
            ValueError: The action is not pending.
        """
        action = self._pending(action_id)
        action.approved_by = approver
        self._set_status(action, ActionStatus.APPROVED, f"approved by {approver}")

        plan = self._plan_actions(action.incident_id)
        if any(a.status == ActionStatus.PENDING for a in plan):
            return action.model_copy()

        incident = self._manager.get(action.incident_id)
        policy = self._policy_store.current
        if incident is None or not self._manager.is_actionable(action.incident_id):
            self._skip(plan, "incident no longer actionable")
        elif not policy.automation_allowed:
            logger.error(
                "Approved plan for %s held: policy v%d disables automation.", action.incident_id, policy.version,
            )
        else:
            await self._accept(incident, plan, policy, self._clock())
        return action.model_copy()

    async def reject(self, action_id: str, reason: str) -> RemediationAction:
        """Reject a pending action. The whole plan is skipped and humans take over.

        Raises:
            KeyError: Unknown action.
            ValueError: The action is not pending.
        """
        action = self._pending(action_id)
        self._skip(self._plan_actions(action.incident_id), f"rejected: {reason}")
        try:
            await self._manager.flag_human(action.incident_id, f"action {action_id} rejected: {reason}", self._clock())
        except StaleIncidentReference:
            pass
        return action.model_copy()

    def cancel(self, incident_id: str) -> None:
        """Stop any remediation for an incident that resolved or closed.

        Running tasks are cancelled cooperatively; pending approvals are skipped.
        """
        task = self._tasks.get(incident_id)
        if task is not None and not task.done() and task is not asyncio.current_task():
            logger.info("Cancelling in-flight remediation for %s.", incident_id)
            task.cancel()
        self._skip(
            [a for a in self._plan_actions(incident_id) if a.status in (ActionStatus.PENDING, ActionStatus.APPROVED)],
            "cancelled: incident resolved",
        )

    def forget(self, incident_id: str) -> None:
        """Drop the action records of an incident no longer kept in memory."""
        self._plans.pop(incident_id, None)
        for action_id in [a.action_id for a in self._actions.values() if a.incident_id == incident_id]:
            del self._actions[action_id]

    async def wait_idle(self) -> None:
        """Wait for every running remediation and ticket task to finish."""
        while self._tasks or self._tickets:
            await asyncio.gather(*self._tasks.values(), *self._tickets, return_exceptions=True)

    async def shutdown(self) -> None:
        for task in [*self._tasks.values(), *self._tickets]:
            task.cancel()
        await self.wait_idle()

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _accept(
        self, incident: Incident, plan: list[RemediationAction], policy: Policy, now: datetime,
    ) -> DispatchResult:
        resource = plan[0].resource
        try:
            self._limiter.prune(now, policy.remediation.rate_limit)
            self._limiter.acquire(resource, now, policy.remediation.rate_limit, slots=len(plan))
        except RateLimited as exc:
            self._skip(plan, str(exc))
            self._telemetry.emit(
                Stage.REMEDIATION, EventType.RATE_LIMITED, incident.incident_id, str(exc), policy.version,
                incident_id=incident.incident_id, resource=resource,
            )
            try:
                await self._manager.flag_human(incident.incident_id, f"rate limited: {exc}", now)
            except StaleIncidentReference:
                return DispatchResult.STALE
            self._open_manual_ticket(incident, resource, str(exc), policy, now)
            return DispatchResult.RATE_LIMITED

        try:
            started = await self._manager.begin_remediation(incident.incident_id, now)
        except StaleIncidentReference:
            self._skip(plan, "incident closed")
            return DispatchResult.STALE
        if not started:
            self._skip(plan, "incident no longer actionable")
            return DispatchResult.NOT_ACTIONABLE

        for action in plan:
            if action.status != ActionStatus.APPROVED:
                self._set_status(action, ActionStatus.APPROVED)
        self._tasks[incident.incident_id] = asyncio.create_task(
            self._run(incident.incident_id, plan, policy),
            name=f"remediate-{incident.incident_id}",
        )
        return DispatchResult.ACCEPTED

    async def _run(self, incident_id: str, plan: list[RemediationAction], policy: Policy) -> None:
        """Execute a plan in order and report the outcome. Never raises except on cancel."""
        try:
            async with self._semaphore_for(policy):
                succeeded, detail = True, "all actions succeeded"
                for action in plan:
                    if not await self._execute_with_retry(action, policy):
                        succeeded = False
                        detail = f"{action.kind.value} on {action.resource}: {action.last_error}"
                        break
                self._skip([a for a in plan if not a.is_terminal], "earlier action failed")
            await self._manager.complete_remediation(incident_id, succeeded, detail, self._clock())
        except asyncio.CancelledError:
            self._skip([a for a in plan if not a.is_terminal], "cancelled: incident resolved")
            raise
        except Exception as exc:
            logger.exception("Remediation task for %s crashed.", incident_id)
            self._skip([a for a in plan if not a.is_terminal], "dispatcher error")
            await self._manager.complete_remediation(incident_id, False, f"dispatcher error: {exc}", self._clock())
        finally:
            if self._tasks.get(incident_id) is asyncio.current_task():
                del self._tasks[incident_id]

    async def _execute_with_retry(self, action: RemediationAction, policy: Policy) -> bool:
        settings = policy.remediation
        for attempt in range(1, settings.max_attempts + 1):
            if action.automated and not self._manager.is_actionable(action.incident_id):
                self._set_status(action, ActionStatus.SKIPPED, "incident no longer actionable")
                return False

            action.attempts = attempt
            self._set_status(action, ActionStatus.EXECUTING, f"attempt {attempt}/{settings.max_attempts}")
            try:
                outcome = await asyncio.wait_for(
                    self._executor.execute(action.model_copy()),
                    timeout=settings.attempt_timeout_seconds,
                )
            except (ExecutorTransientFailure, asyncio.TimeoutError) as exc:
                action.last_error = str(exc) or type(exc).__name__
                logger.warning(
                    "Action %s (%s) attempt %d/%d failed transiently: %s",
                    action.action_id, action.kind.value, attempt, settings.max_attempts, action.last_error,
                )
                if attempt < settings.max_attempts:
                    await self._sleep(settings.backoff_seconds * 2 ** (attempt - 1))
                    continue
                self._set_status(action, ActionStatus.FAILED, f"gave up after {attempt} attempt(s): {action.last_error}")
                return False
            except Exception as exc:
                action.last_error = str(exc) or type(exc).__name__
                logger.error("Executor raised for action %s: %s", action.action_id, exc)
                self._set_status(action, ActionStatus.FAILED, action.last_error)
                return False

            if outcome.succeeded:
                self._set_status(action, ActionStatus.SUCCEEDED, outcome.detail)
                return True
            action.last_error = outcome.detail or "executor reported failure"
            self._set_status(action, ActionStatus.FAILED, action.last_error)
            return False
        return False

    def _open_manual_ticket(self, incident: Incident, resource: str, reason: str, policy: Policy, now: datetime) -> None:
        ticket = RemediationAction(
            incident_id=incident.incident_id,
            kind=ActionKind.TICKET,
            resource=resource,
            automated=False,
            params={"reason": reason, "severity": incident.severity.value},
            policy_version=policy.version,
            created_at=now,
        )
        self._actions[ticket.action_id] = ticket
        self._record(ticket, f"manual ticket for {resource}: {reason}")
        self._set_status(ticket, ActionStatus.APPROVED)

        task = asyncio.create_task(self._run_ticket(ticket, policy), name=f"ticket-{ticket.action_id}")
        self._tickets.add(task)
        task.add_done_callback(self._tickets.discard)

    async def _run_ticket(self, ticket: RemediationAction, policy: Policy) -> None:
        try:
            await self._execute_with_retry(ticket, policy)
        except Exception:
            logger.exception("Manual ticket %s crashed.", ticket.action_id)

    def _pending(self, action_id: str) -> RemediationAction:
        action = self._actions.get(action_id)
        if action is None:
            raise KeyError(f"Action '{action_id}' not found.")
        if action.status != ActionStatus.PENDING:
            raise ValueError(f"Action '{action_id}' is {action.status.value}, not pending.")
        return action

    def _plan_actions(self, incident_id: str) -> list[RemediationAction]:
        return [self._actions[a] for a in self._plans.get(incident_id, [])]

    def _skip(self, actions: list[RemediationAction], reason: str) -> None:
        for action in actions:
            if not action.is_terminal:
                action.last_error = reason
                self._set_status(action, ActionStatus.SKIPPED, reason)

    def _semaphore_for(self, policy: Policy) -> asyncio.Semaphore:
        size = policy.remediation.max_concurrency
        if self._semaphore is None or size != self._semaphore_size:
            self._semaphore = asyncio.Semaphore(size)
            self._semaphore_size = size
        return self._semaphore

    def _set_status(self, action: RemediationAction, status: ActionStatus, detail: str = "") -> None:
        previous = action.status
        action.status = status
        self._record(action, f"{previous.value} -> {status.value}" + (f": {detail}" if detail else ""))

    def _record(self, action: RemediationAction, message: str) -> None:
        policy_version = self._policy_store.version
        self._telemetry.emit(
            Stage.REMEDIATION, EventType.ACTION_STATUS, action.action_id,
            f"{action.kind.value} {message}", policy_version,
            incident_id=action.incident_id, resource=action.resource,
            status=action.status.value, attempts=action.attempts,
        )
        self._manager.audit.record(
            action.incident_id, self._clock(), "action", f"{action.action_id} {action.kind.value} {message}",
            policy_version, action_id=action.action_id, status=action.status.value, attempts=action.attempts,
        )
