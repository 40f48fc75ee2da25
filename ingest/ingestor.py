"""Event ingest.

EventIngest is the normalization boundary: raw deliveries come in, frozen
Alerts go out to a sink (the pipeline's dedup stage). A delivery that
cannot be normalized is dropped and logged with MalformedEvent — it has
no identity to retry against, so it is never retried.

Batch deliveries are split by the adapter; one bad entry in a batch drops
only that entry.
"""

import logging
from typing import Awaitable, Callable

from pydantic import BaseModel, Field

from core.errors import MalformedEvent
from core.telemetry import TelemetryEmitter
from ingest.base import SourceAdapter
from ingest.registry import AdapterRegistry
from schemas.alert import Alert
from schemas.events import EventType, Stage

logger = logging.getLogger(__name__)

AlertSink = Callable[[Alert], Awaitable[None]]


class IngestReport(BaseModel):
    """What happened to one delivery.

    Attributes:
        source: Adapter name the delivery was routed to.
        accepted: Ids of alerts passed downstream, in delivery order.
        dropped: One reason per dropped entry.
    """

    source: str
    accepted: list[str] = Field(default_factory=list)
    dropped: list[str] = Field(default_factory=list)


class EventIngest:
    """Normalizes deliveries through the adapter registry and forwards Alerts.

    Attributes:
        registry: Adapters by name.
        _sink: Awaited once per accepted Alert, in delivery order.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        sink: AlertSink,
        telemetry: TelemetryEmitter | None = None,
        policy_version: Callable[[], int] = lambda: 0,
    ) -> None:
        self.registry = registry
        self._sink = sink
        self._telemetry = telemetry or TelemetryEmitter()
        self._policy_version = policy_version

    async def ingest(self, source: str, raw: object) -> IngestReport:
        """Normalize one delivery and forward every valid alert in it.

        Args:
            source: Adapter name (e.g. "alertmanager").
            raw: Parsed JSON body.

        Returns:
            IngestReport listing accepted ids and drop reasons.

        Raises:
            KeyError: If no adapter is registered under source.
        """
        adapter = self.registry.get(source)
        if adapter is None:
            raise KeyError(f"No adapter registered for source '{source}'.")

        report = IngestReport(source=source)
        try:
            entries = adapter.explode(raw) if isinstance(raw, dict) else [raw]
        except MalformedEvent as exc:
            self._drop(report, source, exc)
            return report
        except (TypeError, ValueError, AttributeError) as exc:
            self._drop(report, source, _shape_error(adapter, raw, exc))
            return report

        for entry in entries:
            try:
                if not isinstance(entry, dict):
                    raise MalformedEvent("alert entry must be a JSON object", raw=entry)
                alert = adapter.normalize(entry)
            except MalformedEvent as exc:
                self._drop(report, source, exc)
                continue
            except (TypeError, ValueError, AttributeError) as exc:
                self._drop(report, source, _shape_error(adapter, entry, exc))
                continue

            self._telemetry.emit(
                Stage.INGEST, EventType.ALERT_ACCEPTED, alert.id,
                f"{alert.source} {alert.resource}/{alert.metric} {alert.severity.value} {alert.status}",
                self._policy_version(), resource=alert.resource, metric=alert.metric,
            )
            await self._sink(alert)
            report.accepted.append(alert.id)

        return report

    def _drop(self, report: IngestReport, source: str, exc: MalformedEvent) -> None:
        reason = str(exc)
        report.dropped.append(reason)
        logger.debug("Dropped payload from %s: %r", source, exc.raw)
        self._telemetry.emit(
            Stage.INGEST, EventType.ALERT_DROPPED, source,
            f"malformed event dropped: {reason}", self._policy_version(),
        )


def _shape_error(adapter: SourceAdapter, raw: object, exc: Exception) -> MalformedEvent:
    """Wrap an adapter crash on an unexpected payload shape as a drop."""
    logger.warning("Adapter %s failed on payload: %s: %s", adapter.name, type(exc).__name__, exc)
    error = MalformedEvent(f"unexpected payload shape ({type(exc).__name__}: {exc})", raw=raw)
    error.__cause__ = exc
    return error
