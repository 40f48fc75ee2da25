"""Policy store.

PolicyStore owns the current Policy snapshot. Readers take `store.current`
once per decision and use that snapshot throughout, so a reload never
changes the rules halfway through an evaluation and never touches
in-flight state.

Loading is section-by-section. A section that fails validation falls back
to its defaults and is recorded as an issue on the policy; any issue turns
automated remediation off (fail closed) while correlation keeps running on
the defaults. A document that cannot be parsed at all is rejected and the
previous policy stays in force.
"""

import asyncio
import logging
import pathlib

import yaml
from pydantic import BaseModel, ValidationError

from core.errors import PolicyError
from core.telemetry import TelemetryEmitter
from schemas.events import EventType, Stage
from schemas.policy import (
    CorrelationPolicy,
    DedupPolicy,
    LifecyclePolicy,
    Policy,
    RemediationPolicy,
    TopologyPolicy,
)

logger = logging.getLogger(__name__)

DEFAULT_RELOAD_SECONDS = 5.0

_SECTIONS: dict[str, type[BaseModel]] = {
    "dedup": DedupPolicy,
    "correlation": CorrelationPolicy,
    "lifecycle": LifecyclePolicy,
    "topology": TopologyPolicy,
    "remediation": RemediationPolicy,
}


class PolicyStore:
    """Holds, versions and hot-reloads the policy.

    Attributes:
        path: YAML file to load from. None means defaults only, which is
            what tests and the CLI demo use unless they load text.
    """

    def __init__(
        self,
        path: str | pathlib.Path | None = None,
        telemetry: TelemetryEmitter | None = None,
    ) -> None:
        self.path = pathlib.Path(path) if path is not None else None
        self._telemetry = telemetry
        self._version = 0
        self._current = Policy(version=0)
        self._mtime: float | None = None

        if self.path is not None and self.path.exists():
            self.reload()
        elif self.path is not None:
            logger.warning("Policy file %s not found — running on built-in defaults.", self.path)

    @property
    def current(self) -> Policy:
        return self._current

    @property
    def version(self) -> int:
        return self._current.version

    def attach_telemetry(self, telemetry: TelemetryEmitter) -> None:
        self._telemetry = telemetry

    def install(self, policy: Policy) -> Policy:
        """Install an already-built policy as the next version."""
        self._version += 1
        self._current = policy.model_copy(update={"version": self._version})
        if self._current.issues:
            logger.error(
                "Policy v%d loaded with %d issue(s); automated remediation disabled: %s",
                self._version,
                len(self._current.issues),
                "; ".join(self._current.issues),
            )
        else:
            logger.info("Policy v%d loaded (label=%s).", self._version, self._current.label)
        self._emit(
            EventType.POLICY_LOADED,
            f"v{self._version} loaded" + (" (automation disabled)" if self._current.issues else ""),
            issues=list(self._current.issues),
        )
        return self._current

    def load_text(self, text: str) -> Policy:
        """Parse a YAML document and install it.

        Raises:
            PolicyError: If the text is not valid YAML or not a mapping.
                The previous policy stays in force.
        """
        try:
            policy = build_policy(yaml.safe_load(text))
        except yaml.YAMLError as exc:
            self._emit(EventType.POLICY_REJECTED, f"unparseable policy: {exc}")
            raise PolicyError(f"Policy is not valid YAML: {exc}") from exc
        except PolicyError as exc:
            self._emit(EventType.POLICY_REJECTED, str(exc))
            raise
        return self.install(policy)

    def reload(self, force: bool = False) -> Policy | None:
        """Re-read the policy file if it changed since the last load.

        Returns:
            The newly installed policy, or None if nothing changed.

        Raises:
            PolicyError: If the file cannot be read or parsed.
        """
        if self.path is None:
            return None
        try:
            mtime = self.path.stat().st_mtime
            if not force and self._mtime is not None and mtime == self._mtime:
                return None
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PolicyError(f"Cannot read policy file {self.path}: {exc}") from exc

        policy = self.load_text(text)
        self._mtime = mtime
        return policy

    async def watch(self, interval_seconds: float = DEFAULT_RELOAD_SECONDS) -> None:
        """Poll the policy file and reload on change. Runs until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.reload()
            except PolicyError as exc:
                logger.error("Policy reload failed; keeping v%d. %s", self.version, exc)

    def _emit(self, event_type: EventType, message: str, **detail) -> None:
        if self._telemetry is not None:
            self._telemetry.emit(
                Stage.POLICY, event_type, f"v{self._current.version}", message,
                self._current.version, **detail,
            )


def build_policy(raw: object) -> Policy:
    """Validate a parsed YAML document into a Policy, section by section.

    Raises:
        PolicyError: If the document is not a mapping.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise PolicyError(f"Policy document must be a mapping, got {type(raw).__name__}.")

    issues: list[str] = []
    sections: dict[str, BaseModel] = {}

    for name, model in _SECTIONS.items():
        data = raw.get(name) or {}
        try:
            sections[name] = model.model_validate(data)
        except ValidationError as exc:
            issues.append(f"{name}: {_summarize(exc)}")
            sections[name] = model()

    correlation_raw = raw.get("correlation")
    if not isinstance(correlation_raw, dict) or "threshold" not in correlation_raw:
        issues.append("correlation.threshold is missing")

    unknown = set(raw) - set(_SECTIONS) - {"label", "version"}
    if unknown:
        logger.warning("Ignoring unknown policy keys: %s", sorted(unknown))

    label = raw.get("label", raw.get("version"))
    return Policy(
        label=str(label) if label is not None else None,
        issues=issues,
        **sections,
    )


def _summarize(exc: ValidationError) -> str:
    return ", ".join(
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    )
