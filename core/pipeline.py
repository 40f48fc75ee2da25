"""Sift pipeline — the top-level orchestrator.

SiftPipeline wires every stage together and is the single entry point the
HTTP app and the CLI use:

    ingest -> dedup -> [ordered queue] -> correlator -> lifecycle -> dispatcher -> executor

Concurrency model:
    - Ingest and dedup run in the caller's task. Dedup serializes per
      fingerprint, so deliveries from different sources proceed in parallel.
    - Occurrence events go through one ordered queue to a single
      correlation worker, which proposes membership and applies it.
      Incident writes serialize per incident inside the IncidentManager.
    - The dedup sweep, the lifecycle ticker and the policy watcher are
      background tasks that never block ingest.
    - Remediation runs on the dispatcher's own tasks.

Without start(), nothing runs in the background and every call is processed
inline before it returns. The CLI replay and the tests use that mode and
drive time explicitly through sweep(now) and tick(now).
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from core.audit import AuditTrail
from core.correlator import JOINABLE_STATES, Correlator, Scorer
from core.dedup import Deduplicator
from core.errors import StaleIncidentReference
from core.lifecycle import IncidentManager
from core.policy_store import DEFAULT_RELOAD_SECONDS, PolicyStore
from core.query import IncidentQuery
from core.remediation import DispatchResult, RemediationDispatcher
from core.telemetry import TelemetryEmitter
from executors.base import ActionExecutor
from executors.dry_run import DryRunExecutor
from ingest.ingestor import EventIngest, IngestReport
from ingest.poller import AlertPoller
from ingest.registry import AdapterRegistry, default_registry
from schemas.alert import Alert
from schemas.events import EventType, Stage
from schemas.incident import Incident
from schemas.occurrence import Occurrence, OccurrenceChange, OccurrenceEvent
from schemas.remediation import RemediationAction

logger = logging.getLogger(__name__)


class SiftPipeline:
    """Owns one instance of every stage and the tasks that connect them.

    Attributes:
        policy_store: Current policy and hot reload.
        telemetry: Structured event fan-out (log, queue, history).
        dedup: Alert -> Occurrence.
        correlator: Occurrence -> proposed incident.
        manager: Incident state machine; sole writer of incidents.
        dispatcher: Remediation gates and execution.
        ingestor: Raw payload -> Alert, via the adapter registry.
        query: Read-only views for the API and display.
        pollers: Pull adapters started with the pipeline.
    """

    def __init__(
        self,
        policy_store: PolicyStore | None = None,
        executor: ActionExecutor | None = None,
        scorer: Scorer | None = None,
        registry: AdapterRegistry | None = None,
        event_queue: asyncio.Queue | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        policy_reload_seconds: float = DEFAULT_RELOAD_SECONDS,
    ) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.telemetry = TelemetryEmitter(queue=event_queue, clock=self._clock)
        self.policy_store = policy_store or PolicyStore()
        self.policy_store.attach_telemetry(self.telemetry)

        self.dedup = Deduplicator(self.policy_store, self.telemetry)
        self.correlator = Correlator(self.policy_store, scorer)
        self.manager = IncidentManager(self.policy_store, self.telemetry, AuditTrail())
        self.dispatcher = RemediationDispatcher(
            self.policy_store,
            self.manager,
            executor or DryRunExecutor(),
            self.telemetry,
            clock=self._clock,
            sleep=sleep,
        )
        self.ingestor = EventIngest(
            registry or default_registry(),
            self._on_alert,
            self.telemetry,
            policy_version=lambda: self.policy_store.version,
        )
        self.query = IncidentQuery(self.manager, self.dedup, self.dispatcher, self.telemetry)
        self.pollers: list[AlertPoller] = []
        self.policy_reload_seconds = policy_reload_seconds

        self.manager.on_resolved(self.dispatcher.cancel)
        self.manager.on_closed(self.correlator.forget)
        self.manager.on_evicted(self.dispatcher.forget)

        self._events: asyncio.Queue[OccurrenceEvent] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._background: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def add_poller(self, url: str, source: str, interval_seconds: float) -> AlertPoller:
        poller = AlertPoller(url, source, self.ingestor, interval_seconds)
        self.pollers.append(poller)
        return poller

    async def start(self) -> None:
        """Start the correlation worker and the background loops."""
        if self.running:
            return
        self._worker = asyncio.create_task(self._correlate_loop(), name="sift-correlator")
        self._background = [
            asyncio.create_task(self._sweep_loop(), name="sift-sweeper"),
            asyncio.create_task(self._tick_loop(), name="sift-ticker"),
        ]
        if self.policy_store.path is not None:
            self._background.append(
                asyncio.create_task(self.policy_store.watch(self.policy_reload_seconds), name="sift-policy-watch")
            )
        for poller in self.pollers:
            self._background.append(asyncio.create_task(poller.run(), name=f"sift-poll-{poller.source}"))
        logger.info(
            "Pipeline started: %d background task(s), policy v%d.", len(self._background), self.policy_store.version,
        )

    async def stop(self) -> None:
        """Cancel background work and wait for it to finish."""
        tasks = [*self._background, *([self._worker] if self._worker else [])]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.dispatcher.shutdown()
        self._background = []
        self._worker = None
        logger.info("Pipeline stopped.")

    async def drain(self) -> None:
        """Wait until every queued occurrence event has been correlated."""
        if self.running:
            await self._events.join()

    # ── Inputs ────────────────────────────────────────────────────────────────

    async def ingest(self, source: str, raw: object) -> IngestReport:
        """Normalize a delivery from a named source adapter and feed it in.

        Raises:
            KeyError: Unknown source adapter.
        """
        return await self.ingestor.ingest(source, raw)

    async def ingest_alert(self, alert: Alert) -> None:
        """Feed an already-normalized Alert straight into dedup."""
        await self._on_alert(alert)

    async def sweep(self, now: datetime | None = None) -> list[OccurrenceEvent]:
        """Run one dedup sweep and forward the resolutions."""
        events = await self.dedup.sweep(now or self._clock())
        for event in events:
            await self._forward(event)
        return events

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Run one lifecycle evaluation cycle and dispatch whatever is due."""
        due = await self.manager.tick(now or self._clock())
        for incident_id in due:
            await self._dispatch(incident_id)
        return due

    # ── Operator actions ──────────────────────────────────────────────────────

    async def approve(self, action_id: str, approver: str) -> RemediationAction:
        return await self.dispatcher.approve(action_id, approver)

    async def reject(self, action_id: str, reason: str) -> RemediationAction:
        return await self.dispatcher.reject(action_id, reason)

    async def detach(self, incident_id: str, fingerprint: str) -> Incident:
        """Remove a member from an incident. See IncidentManager.detach for errors."""
        incident = await self.manager.detach(incident_id, fingerprint, self._clock())
        self._track(incident)
        return incident

    async def attach(self, incident_id: str, fingerprint: str) -> Incident:
        """Add a known occurrence to an incident by fingerprint.

        Raises:
            KeyError: Unknown incident, or no occurrence has that fingerprint.
            ValueError: The fingerprint belongs to another incident.
            StaleIncidentReference: The incident is closed.
        """
        occurrence = self._find_occurrence(fingerprint)
        if occurrence is None:
            raise KeyError(f"No occurrence with fingerprint '{fingerprint}'.")
        incident = await self.manager.attach(incident_id, occurrence, self._clock())
        await self._after_change(incident)
        return incident

    def reload_policy(self):
        """Re-read the policy file now. Raises PolicyError if it cannot be parsed."""
        return self.policy_store.reload(force=True)

    def load_policy_text(self, text: str):
        """Install a policy from YAML text. Raises PolicyError if it cannot be parsed."""
        return self.policy_store.load_text(text)

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _on_alert(self, alert: Alert) -> None:
        event = await self.dedup.observe(alert)
        if event is not None:
            await self._forward(event)

    async def _forward(self, event: OccurrenceEvent) -> None:
        if self.running:
            await self._events.put(event)
        else:
            await self._process(event)

    async def _process(self, event: OccurrenceEvent) -> None:
        """Correlate and apply one occurrence event."""
        decision = None
        occurrence = event.occurrence
        if event.change == OccurrenceChange.CREATED and self.manager.owner_of(occurrence.fingerprint) is None:
            decision = await self.correlator.propose(occurrence, self.manager.joinable())

        incident = await self.manager.apply(event, decision)
        if incident is not None:
            await self._after_change(incident)

    async def _after_change(self, incident: Incident) -> None:
        self._track(incident)
        if IncidentManager.needs_dispatch(incident):
            await self._dispatch(incident.incident_id)

    def _track(self, incident: Incident) -> None:
        if incident.state in JOINABLE_STATES:
            self.correlator.track(incident)

    async def _dispatch(self, incident_id: str) -> DispatchResult | None:
        try:
            result = await self.dispatcher.dispatch(incident_id)
        except StaleIncidentReference as exc:
            logger.info("Dispatch skipped: %s", exc)
            return None
        logger.debug("Dispatch for %s: %s.", incident_id, result.value)
        return result

    def _find_occurrence(self, fingerprint: str) -> Occurrence | None:
        active = self.dedup.get(fingerprint)
        if active is not None:
            return active
        resolved = [o for o in self.dedup.resolved() if o.fingerprint == fingerprint]
        return resolved[-1] if resolved else None

    async def _correlate_loop(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._process(event)
            except Exception as exc:
                logger.exception("Correlation failed for %s.", event.occurrence.fingerprint)
                self._report_error(Stage.CORRELATOR, event.occurrence.fingerprint, exc)
            finally:
                self._events.task_done()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.policy_store.current.dedup.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception as exc:
                logger.exception("Dedup sweep failed.")
                self._report_error(Stage.DEDUP, "sweep", exc)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.policy_store.current.lifecycle.evaluation_interval_seconds)
            try:
                await self.tick()
            except Exception as exc:
                logger.exception("Lifecycle tick failed.")
                self._report_error(Stage.LIFECYCLE, "tick", exc)

    def _report_error(self, stage: Stage, subject: str, exc: Exception) -> None:
        self.telemetry.emit(stage, EventType.ERROR, subject, f"{type(exc).__name__}: {exc}", self.policy_store.version)
