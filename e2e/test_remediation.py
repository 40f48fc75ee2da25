"""RemediationDispatcher tests.

Runs the dispatcher against an in-process IncidentManager with scripted
executors. Backoff sleeps are recorded rather than awaited, and the clock
is pinned, so every test is fast and deterministic.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest

from core.dedup import fingerprint
from core.errors import ExecutorTransientFailure, RateLimited
from core.lifecycle import IncidentManager
from core.policy_store import PolicyStore
from core.remediation import DispatchResult, RateLimiter, RemediationDispatcher
from core.telemetry import TelemetryEmitter
from executors.base import ActionExecutor
from executors.dry_run import DryRunExecutor
from schemas.alert import Severity
from schemas.events import EventType
from schemas.incident import ACTIONABLE_STATES, IncidentState
from schemas.occurrence import Occurrence, OccurrenceChange, OccurrenceEvent, OccurrenceState
from schemas.policy import RateLimitPolicy
from schemas.remediation import ActionKind, ActionStatus, ExecutionOutcome

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

POLICY = """
correlation:
  threshold: 0.8
remediation:
  max_attempts: 3
  backoff_seconds: 0.5
  attempt_timeout_seconds: 5
  rate_limit:
    max_actions: 2
    window_seconds: 900
  rules:
    - severity: critical
      resource_type: gateway
      actions:
        - kind: restart
    - severity: critical
      resource_type: database
      actions:
        - kind: scale
          requires_approval: true
          params: {replicas: "+1"}
        - kind: notify
"""


# ── Executors ────────────────────────────────────────────────────────────────

class FlakyExecutor(ActionExecutor):
    """Fails transiently a fixed number of times, then returns outcome."""

    def __init__(self, failures: int, outcome: ExecutionOutcome | None = None):
        self.failures = failures
        self.outcome = outcome or ExecutionOutcome(succeeded=True, detail="ok")
        self.calls = 0

    async def execute(self, action):
        self.calls += 1
        if self.calls <= self.failures:
            raise ExecutorTransientFailure(f"503 on attempt {self.calls}")
        return self.outcome


class BlockingExecutor(ActionExecutor):
    """Blocks until released, so a test can act while an action is in flight."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.finished = False

    async def execute(self, action):
        self.started.set()
        await self.release.wait()
        self.finished = True
        return ExecutionOutcome(succeeded=True)


class SlowExecutor(ActionExecutor):
    async def execute(self, action):
        await asyncio.sleep(1)
        return ExecutionOutcome(succeeded=True)


# ── Harness ──────────────────────────────────────────────────────────────────

class Clock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass
class Harness:
    store: PolicyStore
    manager: IncidentManager
    dispatcher: RemediationDispatcher
    telemetry: TelemetryEmitter
    clock: Clock
    sleeps: list[float] = field(default_factory=list)


def make_harness(executor: ActionExecutor, policy: str = POLICY, sleep=None) -> Harness:
    telemetry = TelemetryEmitter()
    store = PolicyStore(telemetry=telemetry)
    store.load_text(policy)
    manager = IncidentManager(store, telemetry)
    clock = Clock()
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    dispatcher = RemediationDispatcher(
        store, manager, executor, telemetry, clock=clock, sleep=sleep or record_sleep,
    )
    manager.on_resolved(dispatcher.cancel)
    return Harness(store, manager, dispatcher, telemetry, clock, sleeps)


def make_occurrence(resource: str, metric: str, resource_type: str | None, severity=Severity.CRITICAL) -> Occurrence:
    return Occurrence(
        fingerprint=fingerprint("cloudwatch", resource, metric),
        source="cloudwatch",
        resource=resource,
        metric=metric,
        resource_type=resource_type,
        severity=severity,
        first_seen=T0,
        last_seen=T0,
    )


async def open_incident(h: Harness, resource="api-gw-1", metric="5XXError", resource_type="gateway",
                        severity=Severity.CRITICAL):
    occurrence = make_occurrence(resource, metric, resource_type, severity)
    incident = await h.manager.apply(OccurrenceEvent(change=OccurrenceChange.CREATED, occurrence=occurrence, at=h.clock()))
    return incident.incident_id, occurrence


async def resolve(h: Harness, occurrence: Occurrence) -> None:
    done = occurrence.model_copy(update={"state": OccurrenceState.RESOLVED, "resolved_at": h.clock()})
    await h.manager.apply(OccurrenceEvent(change=OccurrenceChange.RESOLVED, occurrence=done, at=h.clock()))


# ── Rate limiter ─────────────────────────────────────────────────────────────

class TestRateLimiter:
    def test_sliding_window(self):
        limiter = RateLimiter()
        limit = RateLimitPolicy(max_actions=1, window_seconds=900)
        limiter.acquire("api-gw-1", T0, limit)
        with pytest.raises(RateLimited, match="api-gw-1"):
            limiter.acquire("api-gw-1", T0 + timedelta(seconds=899), limit)
        limiter.acquire("api-gw-1", T0 + timedelta(seconds=900), limit)
        assert limiter.used("api-gw-1") == 1

    def test_resources_are_independent(self):
        limiter = RateLimiter()
        limit = RateLimitPolicy(max_actions=1, window_seconds=900)
        limiter.acquire("api-gw-1", T0, limit)
        limiter.acquire("api-gw-2", T0, limit)
        assert limiter.used("api-gw-2") == 1

    def test_failed_reservation_takes_nothing(self):
        limiter = RateLimiter()
        limit = RateLimitPolicy(max_actions=2, window_seconds=900)
        with pytest.raises(RateLimited):
            limiter.acquire("orders-db", T0, limit, slots=3)
        assert limiter.used("orders-db") == 0

    def test_prune_drops_idle_resources(self):
        limiter = RateLimiter()
        limit = RateLimitPolicy(max_actions=2, window_seconds=900)
        limiter.acquire("api-gw-1", T0, limit)
        limiter.acquire("orders-db", T0 + timedelta(seconds=600), limit)

        limiter.prune(T0 + timedelta(seconds=900), limit)

        assert limiter._history.keys() == {"orders-db"}
        assert limiter.used("api-gw-1") == 0


# ── Dispatch ─────────────────────────────────────────────────────────────────

class TestDispatch:
    async def test_accepted_plan_runs_and_succeeds(self):
        executor = DryRunExecutor()
        h = make_harness(executor)
        incident_id, _ = await open_incident(h)

        result = await h.dispatcher.dispatch(incident_id)
        assert result == DispatchResult.ACCEPTED
        assert h.manager.get(incident_id).state == IncidentState.REMEDIATING

        await h.dispatcher.wait_idle()

        [action] = h.dispatcher.actions(incident_id)
        assert action.kind == ActionKind.RESTART
        assert action.status == ActionStatus.SUCCEEDED
        assert action.attempts == 1
        assert action.resource == "api-gw-1"
        assert action.policy_version == h.store.version
        assert [a.kind for a in executor.executed] == [ActionKind.RESTART]
        assert h.manager.get(incident_id).remediated_at == T0
        assert h.dispatcher.rate_used("api-gw-1") == 1

    async def test_unknown_incident(self):
        h = make_harness(DryRunExecutor())
        with pytest.raises(KeyError):
            await h.dispatcher.dispatch("inc-missing")

    async def test_open_incident_is_not_actionable(self):
        executor = DryRunExecutor()
        h = make_harness(executor)
        incident_id, _ = await open_incident(h, severity=Severity.WARNING)

        assert await h.dispatcher.dispatch(incident_id) == DispatchResult.NOT_ACTIONABLE
        assert h.dispatcher.actions(incident_id) == []
        assert executor.executed == []

    async def test_closed_incident_is_stale(self):
        h = make_harness(DryRunExecutor())
        incident_id, occurrence = await open_incident(h)
        await resolve(h, occurrence)
        await h.manager.tick(T0 + timedelta(seconds=600))

        assert await h.dispatcher.dispatch(incident_id) == DispatchResult.STALE

    async def test_no_matching_rule(self):
        h = make_harness(DryRunExecutor())
        incident_id, _ = await open_incident(h, resource="checkout-web", resource_type=None)

        assert await h.dispatcher.dispatch(incident_id) == DispatchResult.NO_RULES
        assert not h.manager.get(incident_id).remediation_requested
        assert h.manager.get(incident_id).state == IncidentState.ESCALATED

    async def test_rule_added_by_reload_is_picked_up(self):
        executor = DryRunExecutor()
        h = make_harness(executor)
        incident_id, _ = await open_incident(h, resource="checkout-web", resource_type=None)
        assert await h.dispatcher.dispatch(incident_id) == DispatchResult.NO_RULES
        assert IncidentManager.needs_dispatch(h.manager.get(incident_id))

        h.store.load_text(POLICY + "    - severity: critical\n      actions:\n        - kind: restart\n")
        assert await h.dispatcher.dispatch(incident_id) == DispatchResult.ACCEPTED
        await h.dispatcher.wait_idle()

        assert [a.resource for a in executor.executed] == ["checkout-web"]
        assert h.manager.get(incident_id).remediation_requested

    async def test_policy_issues_block_automation(self):
        executor = DryRunExecutor()
        h = make_harness(executor, policy=POLICY.replace("  threshold: 0.8\n", "  window_seconds: 300\n"))
        incident_id, _ = await open_incident(h)

        assert await h.dispatcher.dispatch(incident_id) == DispatchResult.BLOCKED_POLICY
        assert h.dispatcher.actions(incident_id) == []
        assert IncidentManager.needs_dispatch(h.manager.get(incident_id))

        h.store.load_text(POLICY)
        assert await h.dispatcher.dispatch(incident_id) == DispatchResult.ACCEPTED
        await h.dispatcher.wait_idle()
        assert len(executor.executed) == 1


# ── Actionable states ────────────────────────────────────────────────────────

async def drive_to(h: Harness, state: IncidentState) -> str:
    """Open a critical database incident and move it into state."""
    severity = Severity.WARNING if state == IncidentState.OPEN else Severity.CRITICAL
    incident_id, occurrence = await open_incident(h, resource="orders-db", resource_type="database", severity=severity)
    if state == IncidentState.REMEDIATING:
        await h.manager.begin_remediation(incident_id, h.clock())
    elif state in (IncidentState.RESOLVED, IncidentState.CLOSED):
        await resolve(h, occurrence)
        if state == IncidentState.CLOSED:
            await h.manager.tick(T0 + timedelta(seconds=600))
    return incident_id


class TestActionableStates:
    @pytest.mark.parametrize("state", list(IncidentState))
    async def test_executes_only_when_escalated_or_remediating(self, state):
        executor = DryRunExecutor()
        h = make_harness(executor)
        incident_id = await drive_to(h, state)
        assert h.manager.get(incident_id).state == state

        await h.dispatcher.dispatch(incident_id)
        for action in h.dispatcher.pending_approvals():
            await h.dispatcher.approve(action.action_id, "oncall")
        await h.dispatcher.wait_idle()

        if state in ACTIONABLE_STATES:
            assert [a.kind for a in executor.executed] == [ActionKind.SCALE, ActionKind.NOTIFY]
        else:
            assert executor.executed == []
            assert h.dispatcher.actions(incident_id) == []


    async def test_forget_drops_action_records(self):
        h = make_harness(DryRunExecutor())
        incident_id, _ = await open_incident(h)
        await h.dispatcher.dispatch(incident_id)
        await h.dispatcher.wait_idle()
        assert h.dispatcher.actions(incident_id)

        h.dispatcher.forget(incident_id)
        assert h.dispatcher.actions(incident_id) == []


# ── Retries ──────────────────────────────────────────────────────────────────

class TestRetries:
    async def test_transient_failures_exhaust_attempts(self):
        executor = FlakyExecutor(failures=10)
        h = make_harness(executor)
        incident_id, _ = await open_incident(h)

        await h.dispatcher.dispatch(incident_id)
        await h.dispatcher.wait_idle()

        [action] = h.dispatcher.actions(incident_id)
        assert action.status == ActionStatus.FAILED
        assert action.attempts == 3
        assert executor.calls == 3
        assert h.sleeps == [0.5, 1.0]

        incident = h.manager.get(incident_id)
        assert incident.state == IncidentState.ESCALATED
        assert incident.needs_human
        assert not IncidentManager.needs_dispatch(incident)

    async def test_transient_then_success(self):
        executor = FlakyExecutor(failures=2)
        h = make_harness(executor)
        incident_id, _ = await open_incident(h)

        await h.dispatcher.dispatch(incident_id)
        await h.dispatcher.wait_idle()

        [action] = h.dispatcher.actions(incident_id)
        assert action.status == ActionStatus.SUCCEEDED
        assert action.attempts == 3
        assert not h.manager.get(incident_id).needs_human

    async def test_final_failure_is_not_retried(self):
        executor = FlakyExecutor(failures=0, outcome=ExecutionOutcome(succeeded=False, detail="HTTP 403: forbidden"))
        h = make_harness(executor)
        incident_id, _ = await open_incident(h)

        await h.dispatcher.dispatch(incident_id)
        await h.dispatcher.wait_idle()

        [action] = h.dispatcher.actions(incident_id)
        assert action.status == ActionStatus.FAILED
        assert action.attempts == 1
        assert action.last_error == "HTTP 403: forbidden"
        assert h.manager.get(incident_id).human_reason.endswith("HTTP 403: forbidden")

    async def test_attempt_timeout_counts_as_transient(self):
        policy = POLICY.replace("attempt_timeout_seconds: 5", "attempt_timeout_seconds: 0.01").replace(
            "max_attempts: 3", "max_attempts: 2")
        h = make_harness(SlowExecutor(), policy=policy)
        incident_id, _ = await open_incident(h)

        await h.dispatcher.dispatch(incident_id)
        await h.dispatcher.wait_idle()

        [action] = h.dispatcher.actions(incident_id)
        assert action.status == ActionStatus.FAILED
        assert action.attempts == 2
        assert h.sleeps == [0.5]

    async def test_no_attempt_once_incident_stops_being_actionable(self):
        executor = FlakyExecutor(failures=10)
        holder = {}

        async def resolve_during_backoff(seconds: float) -> None:
            await resolve(holder["h"], holder["occurrence"])

        h = make_harness(executor, sleep=resolve_during_backoff)
        incident_id, occurrence = await open_incident(h)
        holder.update(h=h, occurrence=occurrence)

        await h.dispatcher.dispatch(incident_id)
        await h.dispatcher.wait_idle()

        [action] = h.dispatcher.actions(incident_id)
        assert executor.calls == 1
        assert action.status == ActionStatus.SKIPPED
        assert h.manager.get(incident_id).state == IncidentState.RESOLVED


# ── Rate limiting ────────────────────────────────────────────────────────────

class TestRateLimiting:
    async def test_breach_raises_manual_ticket(self):
        executor = DryRunExecutor()
        h = make_harness(executor)
        first, _ = await open_incident(h, metric="5XXError")
        second, _ = await open_incident(h, metric="Latency")
        third, _ = await open_incident(h, metric="4XXError")

        assert await h.dispatcher.dispatch(first) == DispatchResult.ACCEPTED
        assert await h.dispatcher.dispatch(second) == DispatchResult.ACCEPTED
        assert await h.dispatcher.dispatch(third) == DispatchResult.RATE_LIMITED
        await h.dispatcher.wait_idle()

        restart, ticket = h.dispatcher.actions(third)
        assert restart.status == ActionStatus.SKIPPED
        assert "reached 2" in restart.last_error
        assert ticket.kind == ActionKind.TICKET
        assert not ticket.automated
        assert ticket.status == ActionStatus.SUCCEEDED

        incident = h.manager.get(third)
        assert incident.state == IncidentState.ESCALATED
        assert incident.needs_human
        assert incident.human_reason.startswith("rate limited")
        assert EventType.RATE_LIMITED in [e.event_type for e in h.telemetry.history(third)]
        assert h.dispatcher.rate_used("api-gw-1") == 2

    async def test_budget_frees_up_after_window(self):
        h = make_harness(DryRunExecutor())
        for metric in ("5XXError", "Latency"):
            incident_id, _ = await open_incident(h, metric=metric)
            await h.dispatcher.dispatch(incident_id)

        h.clock.advance(901)
        later, _ = await open_incident(h, metric="4XXError")
        assert await h.dispatcher.dispatch(later) == DispatchResult.ACCEPTED
        await h.dispatcher.wait_idle()

    async def test_other_resources_are_unaffected(self):
        h = make_harness(DryRunExecutor())
        for metric in ("5XXError", "Latency"):
            incident_id, _ = await open_incident(h, metric=metric)
            await h.dispatcher.dispatch(incident_id)

        other, _ = await open_incident(h, resource="api-gw-2")
        assert await h.dispatcher.dispatch(other) == DispatchResult.ACCEPTED
        await h.dispatcher.wait_idle()


# ── Approval ─────────────────────────────────────────────────────────────────

class TestApproval:
    async def test_gated_plan_waits_for_approval(self):
        executor = DryRunExecutor()
        h = make_harness(executor)
        incident_id, _ = await open_incident(h, resource="orders-db", metric="Connections", resource_type="database")

        assert await h.dispatcher.dispatch(incident_id) == DispatchResult.PENDING_APPROVAL
        [pending] = h.dispatcher.pending_approvals()
        assert pending.kind == ActionKind.SCALE
        assert h.manager.get(incident_id).state == IncidentState.ESCALATED
        assert executor.executed == []

        approved = await h.dispatcher.approve(pending.action_id, "oncall-1")
        assert approved.approved_by == "oncall-1"
        assert h.manager.get(incident_id).state == IncidentState.REMEDIATING

        await h.dispatcher.wait_idle()
        assert [a.kind for a in executor.executed] == [ActionKind.SCALE, ActionKind.NOTIFY]
        assert executor.executed[0].params == {"replicas": "+1"}
        assert all(a.status == ActionStatus.SUCCEEDED for a in h.dispatcher.actions(incident_id))

    async def test_approving_twice_is_rejected(self):
        h = make_harness(DryRunExecutor())
        incident_id, _ = await open_incident(h, resource="orders-db", metric="Connections", resource_type="database")
        await h.dispatcher.dispatch(incident_id)
        [pending] = h.dispatcher.pending_approvals()

        await h.dispatcher.approve(pending.action_id, "oncall-1")
        with pytest.raises(ValueError, match="not pending"):
            await h.dispatcher.approve(pending.action_id, "oncall-2")
        await h.dispatcher.wait_idle()

    async def test_unknown_action(self):
        h = make_harness(DryRunExecutor())
        with pytest.raises(KeyError):
            await h.dispatcher.approve("act-missing", "oncall-1")

    async def test_rejection_skips_plan_and_flags_human(self):
        executor = DryRunExecutor()
        h = make_harness(executor)
        incident_id, _ = await open_incident(h, resource="orders-db", metric="Connections", resource_type="database")
        await h.dispatcher.dispatch(incident_id)
        [pending] = h.dispatcher.pending_approvals()

        await h.dispatcher.reject(pending.action_id, "not during peak")

        assert all(a.status == ActionStatus.SKIPPED for a in h.dispatcher.actions(incident_id))
        incident = h.manager.get(incident_id)
        assert incident.needs_human
        assert "not during peak" in incident.human_reason
        assert incident.state == IncidentState.ESCALATED
        assert executor.executed == []

    async def test_resolution_skips_pending_plan(self):
        h = make_harness(DryRunExecutor())
        incident_id, occurrence = await open_incident(
            h, resource="orders-db", metric="Connections", resource_type="database",
        )
        await h.dispatcher.dispatch(incident_id)
        [pending] = h.dispatcher.pending_approvals()

        await resolve(h, occurrence)

        assert all(a.status == ActionStatus.SKIPPED for a in h.dispatcher.actions(incident_id))
        assert h.dispatcher.pending_approvals() == []
        with pytest.raises(ValueError):
            await h.dispatcher.approve(pending.action_id, "oncall-1")


# ── Cancellation ─────────────────────────────────────────────────────────────

class TestCancellation:
    async def test_resolution_cancels_in_flight_action(self):
        executor = BlockingExecutor()
        h = make_harness(executor)
        incident_id, occurrence = await open_incident(h)

        await h.dispatcher.dispatch(incident_id)
        await asyncio.wait_for(executor.started.wait(), timeout=1)

        await resolve(h, occurrence)
        await h.dispatcher.wait_idle()

        [action] = h.dispatcher.actions(incident_id)
        assert action.status == ActionStatus.SKIPPED
        assert action.last_error == "cancelled: incident resolved"
        assert not executor.finished

        incident = h.manager.get(incident_id)
        assert incident.state == IncidentState.RESOLVED
        assert not incident.needs_human

    async def test_shutdown_cancels_running_tasks(self):
        executor = BlockingExecutor()
        h = make_harness(executor)
        incident_id, _ = await open_incident(h)
        await h.dispatcher.dispatch(incident_id)
        await asyncio.wait_for(executor.started.wait(), timeout=1)

        await h.dispatcher.shutdown()

        [action] = h.dispatcher.actions(incident_id)
        assert action.status == ActionStatus.SKIPPED
        assert not executor.finished


# ── Audit ────────────────────────────────────────────────────────────────────

class TestAudit:
    async def test_every_status_change_is_audited(self):
        h = make_harness(DryRunExecutor())
        incident_id, _ = await open_incident(h)
        await h.dispatcher.dispatch(incident_id)
        await h.dispatcher.wait_idle()

        [action] = h.dispatcher.actions(incident_id)
        statuses = [
            e.detail["status"] for e in h.manager.audit.for_incident(incident_id)
            if e.kind == "action" and e.detail["action_id"] == action.action_id
        ]
        assert statuses == ["pending", "approved", "executing", "succeeded"]
