"""ActionExecutor abstract base class.

Defines the contract between the remediation dispatcher and whatever actually
carries out an action — a scaling API, a ticketing system, a chat channel.
The dispatcher depends only on this interface; which executor runs which
action kind is decided where the system is wired together (see router.py).
"""

from abc import ABC, abstractmethod

from schemas.remediation import ExecutionOutcome, RemediationAction


class ActionExecutor(ABC):
    """Abstract base class for action executors.

    The dispatcher calls execute() once per attempt, wrapped in a timeout.
    Executors should be cooperative about cancellation: the dispatcher
    cancels the surrounding task when the incident resolves mid-run, which
    raises CancelledError at the executor's next await.

    To add a backend, subclass ActionExecutor and implement execute().
    """

    @abstractmethod
    async def execute(self, action: RemediationAction) -> ExecutionOutcome:
        """Carry out one attempt of an action.

        Args:
            action: A copy of the action. Executors must not rely on mutating
                it — status bookkeeping belongs to the dispatcher.

        Returns:
            ExecutionOutcome with succeeded=True, or succeeded=False for a
            final failure that retrying will not fix.

        Raises:
            ExecutorTransientFailure: For failures worth retrying (timeouts,
                connection errors, 5xx). The dispatcher retries with backoff
                up to the policy's max_attempts.
        """
        ...
