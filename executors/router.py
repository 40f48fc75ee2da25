"""Executor router.

ExecutorRouter is itself an ActionExecutor: it picks a concrete executor by
action kind and falls back to a default. The dispatcher holds exactly one
executor, so routing (tickets to the ticketing system, scaling to the
orchestrator) is decided here when the system is wired together.

One invariant: a kind maps to at most one executor. Registering a second
executor for the same kind is a wiring mistake and is rejected.
"""

import logging

from executors.base import ActionExecutor
from schemas.remediation import ActionKind, ExecutionOutcome, RemediationAction

logger = logging.getLogger(__name__)


class ExecutorRouter(ActionExecutor):
    """Routes actions to executors by ActionKind.

    Attributes:
        _default: Executor for kinds with no explicit route.
        _routes: ActionKind -> executor.
    """

    def __init__(self, default: ActionExecutor) -> None:
        self._default = default
        self._routes: dict[ActionKind, ActionExecutor] = {}

    def register(self, kind: ActionKind, executor: ActionExecutor) -> None:
        """Route one action kind to an executor.

        Raises:
            ValueError: If the kind already has a route.
        """
        if kind in self._routes:
            raise ValueError(f"Action kind '{kind.value}' already has an executor.")
        self._routes[kind] = executor

    def executor_for(self, kind: ActionKind) -> ActionExecutor:
        return self._routes.get(kind, self._default)

    async def execute(self, action: RemediationAction) -> ExecutionOutcome:
        executor = self.executor_for(action.kind)
        logger.debug("Routing %s (%s) to %s.", action.action_id, action.kind.value, type(executor).__name__)
        return await executor.execute(action)

    def __len__(self) -> int:
        return len(self._routes)
