"""Policy schema.

The policy is the operator-editable rule set: dedup timing, correlation
weights and threshold, lifecycle timers, topology, and remediation
mappings. It is loaded from YAML by PolicyStore and treated as read-only
during evaluation — every stage takes one snapshot per decision.

Defaults here are the documented defaults; a missing policy file means
every section runs on them.
"""

import fnmatch

from pydantic import BaseModel, Field, model_validator

from schemas.alert import Severity
from schemas.remediation import ActionKind

# A resource id is linked to another when it extends it after one of these.
PREFIX_SEPARATORS = ("-", ".", "/", ":", "_")


class DedupPolicy(BaseModel):
    quiet_window_seconds: float = Field(default=300.0, gt=0)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)


class CorrelationWeights(BaseModel):
    """Relative weights of the three scoring components.

    Normalized at scoring time, so only the ratios matter.
    """

    temporal: float = Field(default=0.4, ge=0.0)
    resource: float = Field(default=0.4, ge=0.0)
    severity: float = Field(default=0.2, ge=0.0)

    @model_validator(mode="after")
    def _not_all_zero(self) -> "CorrelationWeights":
        if self.temporal + self.resource + self.severity <= 0:
            raise ValueError("at least one correlation weight must be positive")
        return self

    @property
    def total(self) -> float:
        return self.temporal + self.resource + self.severity


class CorrelationPolicy(BaseModel):
    window_seconds: float = Field(default=300.0, gt=0)
    threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    weights: CorrelationWeights = Field(default_factory=CorrelationWeights)


class LifecyclePolicy(BaseModel):
    evaluation_interval_seconds: float = Field(default=30.0, gt=0)
    escalation_cycles: int = Field(default=2, ge=1)
    cooldown_seconds: float = Field(default=600.0, ge=0)
    reopen_grace_seconds: float = Field(default=1800.0, ge=0)


class TopologyPolicy(BaseModel):
    """How resources relate to each other.

    Attributes:
        services: Service name -> list of resource globs. Resources in the
            same service are related.
        dependencies: Explicit [a, b] edges (globs allowed, undirected).
        prefix_linking: Treat "api-gw-1-db" as related to "api-gw-1"
            because it extends it after a separator.
        resource_types: Glob -> resource type, used when an alert does not
            carry a resource_type itself. First match wins.
    """

    services: dict[str, list[str]] = Field(default_factory=dict)
    dependencies: list[tuple[str, str]] = Field(default_factory=list)
    prefix_linking: bool = True
    resource_types: dict[str, str] = Field(default_factory=dict)

    def services_of(self, resource: str) -> set[str]:
        return {
            name
            for name, patterns in self.services.items()
            if any(fnmatch.fnmatchcase(resource, p) for p in patterns)
        }

    def related(self, a: str, b: str) -> bool:
        """Whether two resources are topologically related (symmetric)."""
        if a == b:
            return True
        if self.prefix_linking and (_extends(a, b) or _extends(b, a)):
            return True
        if self.services_of(a) & self.services_of(b):
            return True
        for left, right in self.dependencies:
            if fnmatch.fnmatchcase(a, left) and fnmatch.fnmatchcase(b, right):
                return True
            if fnmatch.fnmatchcase(b, left) and fnmatch.fnmatchcase(a, right):
                return True
        return False

    def resource_type_of(self, resource: str) -> str | None:
        for pattern, resource_type in self.resource_types.items():
            if fnmatch.fnmatchcase(resource, pattern):
                return resource_type
        return None


def _extends(longer: str, shorter: str) -> bool:
    return (
        len(longer) > len(shorter)
        and longer.startswith(shorter)
        and longer[len(shorter)] in PREFIX_SEPARATORS
    )


class ActionTemplate(BaseModel):
    kind: ActionKind
    requires_approval: bool = False
    params: dict = Field(default_factory=dict)


class RemediationRule(BaseModel):
    """Maps (severity, resource type) to the actions to run, in order.

    resource_type "*" matches any type, including incidents whose
    resource type is unknown.
    """

    severity: Severity
    resource_type: str = "*"
    actions: list[ActionTemplate] = Field(min_length=1)


class RateLimitPolicy(BaseModel):
    max_actions: int = Field(default=1, ge=1)
    window_seconds: float = Field(default=900.0, gt=0)


class RemediationPolicy(BaseModel):
    rules: list[RemediationRule] = Field(default_factory=list)
    rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=1.0, ge=0)
    attempt_timeout_seconds: float = Field(default=30.0, gt=0)
    max_concurrency: int = Field(default=4, ge=1)

    def actions_for(self, severity: Severity, resource_type: str | None) -> list[ActionTemplate]:
        """Return the actions of the first rule matching severity and type.

        An exact resource_type match beats a "*" rule regardless of order.
        """
        exact = [r for r in self.rules if r.severity == severity and r.resource_type == resource_type]
        if exact:
            return list(exact[0].actions)
        wildcard = [r for r in self.rules if r.severity == severity and r.resource_type == "*"]
        if wildcard:
            return list(wildcard[0].actions)
        return []


class Policy(BaseModel):
    """A complete, versioned policy snapshot.

    Attributes:
        version: Assigned by PolicyStore; increases on every successful load.
        label: Free-form label from the file (e.g. "2024-11-rollout").
        issues: Validation problems found at load time. Any issue disables
            automated remediation — see automation_allowed.
    """

    version: int = 0
    label: str | None = None
    dedup: DedupPolicy = Field(default_factory=DedupPolicy)
    correlation: CorrelationPolicy = Field(default_factory=CorrelationPolicy)
    lifecycle: LifecyclePolicy = Field(default_factory=LifecyclePolicy)
    topology: TopologyPolicy = Field(default_factory=TopologyPolicy)
    remediation: RemediationPolicy = Field(default_factory=RemediationPolicy)
    issues: list[str] = Field(default_factory=list)

    @property
    def automation_allowed(self) -> bool:
        return not self.issues
