"""Action executors."""

from executors.base import ActionExecutor
from executors.dry_run import DryRunExecutor
from executors.http import WebhookExecutor
from executors.router import ExecutorRouter

__all__ = ["ActionExecutor", "DryRunExecutor", "WebhookExecutor", "ExecutorRouter"]
