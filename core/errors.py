"""Error taxonomy.

Each error carries the identifiers needed to reconstruct the decision chain
in logs (fingerprint, incident id, resource). Where they are raised and
where they are absorbed:

    MalformedEvent          ingest      -> dropped and logged, never retried
    RateLimited             dispatcher  -> manual ticket, incident stays Escalated
    ExecutorTransientFailure executors  -> retried with backoff, then failed
    StaleIncidentReference  lifecycle   -> absorbed as a no-op by callers
    InvalidTransition       lifecycle   -> programming error, propagates
    PolicyError             policy store-> previous policy stays in force
"""


class SiftError(Exception):
    """Base class for all pipeline errors."""


class MalformedEvent(SiftError):
    """Raised when a payload cannot be normalized into an Alert.

    Includes the raw payload so callers can log it without re-wrapping.
    """

    def __init__(self, message: str, raw: object = None):
        super().__init__(message)
        self.raw = raw


class RateLimited(SiftError):
    """Raised when a resource has used up its automated-action budget."""

    def __init__(self, resource: str, max_actions: int, window_seconds: float):
        super().__init__(
            f"Resource '{resource}' reached {max_actions} automated action(s) "
            f"per {window_seconds:.0f}s."
        )
        self.resource = resource
        self.max_actions = max_actions
        self.window_seconds = window_seconds


class ExecutorTransientFailure(SiftError):
    """Raised by an action executor for failures worth retrying."""


class StaleIncidentReference(SiftError):
    """Raised when a caller targets an incident that is already Closed."""

    def __init__(self, incident_id: str):
        super().__init__(f"Incident '{incident_id}' is closed.")
        self.incident_id = incident_id


class InvalidTransition(SiftError):
    """Raised on an illegal incident state-machine edge."""

    def __init__(self, incident_id: str, current: str, target: str):
        super().__init__(f"Incident '{incident_id}' cannot move from {current} to {target}.")
        self.incident_id = incident_id
        self.current = current
        self.target = target


class PolicyError(SiftError):
    """Raised when a policy document cannot be read or parsed at all."""
