"""Source adapters and the ingest boundary."""

from ingest.adapters import AlertmanagerAdapter, CloudWatchAdapter, GenericAdapter, SentryAdapter
from ingest.base import SourceAdapter
from ingest.ingestor import EventIngest, IngestReport
from ingest.registry import AdapterRegistry, default_registry

__all__ = [
    "SourceAdapter",
    "GenericAdapter",
    "AlertmanagerAdapter",
    "CloudWatchAdapter",
    "SentryAdapter",
    "AdapterRegistry",
    "default_registry",
    "EventIngest",
    "IngestReport",
]
