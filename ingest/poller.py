"""Pull adapter for sources without push capability.

AlertPoller fetches a JSON document from a URL on a fixed interval and
feeds it through EventIngest under a named adapter. The document may be a
list of alert entries or an object the adapter understands directly (an
Alertmanager-style batch, for instance).

Deduplication makes re-polling the same alerts safe: repeats only bump an
occurrence's count and last_seen.
"""

import asyncio
import logging

import httpx

from ingest.ingestor import EventIngest, IngestReport

logger = logging.getLogger(__name__)

DEFAULT_POLL_SECONDS = 30.0


class AlertPoller:
    """Polls one URL and ingests what it returns.

    Attributes:
        url: Endpoint returning JSON.
        source: Adapter name to normalize with.
        interval_seconds: Delay between polls.
    """

    def __init__(
        self,
        url: str,
        source: str,
        ingest: EventIngest,
        interval_seconds: float = DEFAULT_POLL_SECONDS,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.source = source
        self.interval_seconds = interval_seconds
        self._ingest = ingest
        self._headers = headers or {}
        self._transport = transport

    async def poll_once(self) -> IngestReport:
        """Fetch once and ingest every entry.

        Raises:
            httpx.HTTPError: If the request fails or returns non-2xx.
        """
        async with httpx.AsyncClient(timeout=15, headers=self._headers, transport=self._transport) as client:
            response = await client.get(self.url)
            response.raise_for_status()
            document = response.json()

        report = IngestReport(source=self.source)
        items = document if isinstance(document, list) else [document]
        for item in items:
            partial = await self._ingest.ingest(self.source, item)
            report.accepted.extend(partial.accepted)
            report.dropped.extend(partial.dropped)

        logger.info(
            "Polled %s: %d accepted, %d dropped.", self.url, len(report.accepted), len(report.dropped),
        )
        return report

    async def run(self) -> None:
        """Poll until cancelled. A failed poll is logged and retried next interval."""
        while True:
            try:
                await self.poll_once()
            except httpx.HTTPError as exc:
                logger.error("Poll of %s failed: %s", self.url, exc)
            except Exception:
                logger.exception("Unexpected error polling %s.", self.url)
            await asyncio.sleep(self.interval_seconds)
