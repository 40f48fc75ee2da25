"""Dry-run executor.

Used when no action webhook is configured and by the CLI replay. Logs every
action it is handed and reports success without touching anything.
"""

import logging

from executors.base import ActionExecutor
from schemas.remediation import ExecutionOutcome, RemediationAction

logger = logging.getLogger(__name__)


class DryRunExecutor(ActionExecutor):
    """Succeeds immediately and keeps a record of what it would have done."""

    def __init__(self) -> None:
        self.executed: list[RemediationAction] = []

    async def execute(self, action: RemediationAction) -> ExecutionOutcome:
        self.executed.append(action)
        logger.info(
            "[dry-run] %s on %s for %s params=%s",
            action.kind.value, action.resource, action.incident_id, action.params,
        )
        return ExecutionOutcome(succeeded=True, detail="dry run")
