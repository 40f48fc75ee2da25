"""Adapter registry.

AdapterRegistry is the ingest layer's roster of source adapters. The push
endpoint and the poller both look adapters up here by name.

The registry enforces one invariant: adapter names must be unique. Two
adapters with the same name would make the ingest route ambiguous, so
duplicate registration is rejected immediately.
"""

from ingest.adapters import AlertmanagerAdapter, CloudWatchAdapter, GenericAdapter, SentryAdapter
from ingest.base import SourceAdapter


class AdapterRegistry:
    """Tracks registered adapters and provides lookup by name.

    Attributes:
        _adapters: Internal dict mapping adapter name to adapter instance.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, SourceAdapter] = {}

    def register(self, adapter: SourceAdapter) -> None:
        """Register an adapter.

        Raises:
            ValueError: If an adapter with the same name is already registered.
                This is always a wiring error, not a recoverable condition.
        """
        if adapter.name in self._adapters:
            raise ValueError(
                f"Adapter '{adapter.name}' is already registered. "
                "Each adapter must have a unique name."
            )
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> SourceAdapter | None:
        """Look up an adapter by name.

        Returns None rather than raising: an unknown source is a valid query
        result, and the HTTP layer turns it into a 404.
        """
        return self._adapters.get(name)

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def __len__(self) -> int:
        return len(self._adapters)


def default_registry() -> AdapterRegistry:
    """Registry with every built-in adapter."""
    registry = AdapterRegistry()
    for adapter in (GenericAdapter(), AlertmanagerAdapter(), CloudWatchAdapter(), SentryAdapter()):
        registry.register(adapter)
    return registry
