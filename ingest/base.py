"""SourceAdapter abstract base class.

Every monitoring system sends its own payload shape. An adapter is the one
place that knows a given shape; it turns a raw payload into the canonical
Alert and nothing else. The rest of the pipeline never sees raw payloads.

To add a source, subclass SourceAdapter, implement name and normalize(),
and register the instance with the AdapterRegistry.
"""

from abc import ABC, abstractmethod

from schemas.alert import Alert


class SourceAdapter(ABC):
    """Abstract base class for all source adapters.

    Adapters are stateless: the same raw payload always normalizes to the
    same Alert, so replaying a payload is safe.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique adapter name, used as the ingest route (e.g. "alertmanager")."""
        ...

    @abstractmethod
    def normalize(self, raw: dict) -> Alert:
        """Turn one raw entry into an Alert.

        Args:
            raw: One alert entry, as returned by explode().

        Returns:
            A validated, frozen Alert.

        Raises:
            MalformedEvent: If source, resource, metric or timestamp cannot
                be determined. The event is dropped, never retried.
        """
        ...

    def explode(self, raw: dict) -> list[dict]:
        """Split a delivery into individual alert entries.

        Most sources send one alert per delivery, so the default returns
        the payload unchanged. Batch sources (Alertmanager) override this.

        Raises:
            MalformedEvent: If the batch envelope itself is unusable.
        """
        return [raw]
