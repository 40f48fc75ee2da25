"""Built-in source adapters.

    generic       near-normalized JSON, the shape of the Alert model itself
    alertmanager  Prometheus Alertmanager webhook (batch; one Alert per entry)
    cloudwatch    CloudWatch alarm state change, bare or wrapped in an SNS envelope
    sentry        Sentry issue-alert and error webhooks

Each adapter validates identity fields (source, resource, metric,
timestamp) itself and raises MalformedEvent when one is missing. Severity
is forgiving: unknown labels map to warning.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone

from pydantic import ValidationError

from core.errors import MalformedEvent
from ingest.base import SourceAdapter
from schemas.alert import Alert, Severity

logger = logging.getLogger(__name__)

_SEVERITY_ALIASES = {
    "critical": Severity.CRITICAL,
    "crit": Severity.CRITICAL,
    "fatal": Severity.CRITICAL,
    "page": Severity.CRITICAL,
    "high": Severity.CRITICAL,
    "p1": Severity.CRITICAL,
    "warning": Severity.WARNING,
    "warn": Severity.WARNING,
    "error": Severity.WARNING,
    "medium": Severity.WARNING,
    "p2": Severity.WARNING,
    "p3": Severity.WARNING,
    "info": Severity.INFO,
    "informational": Severity.INFO,
    "low": Severity.INFO,
    "debug": Severity.INFO,
    "none": Severity.INFO,
}

_RESOLVED_STATUSES = {"resolved", "ok", "cleared", "recovered"}


def map_severity(value: object, default: Severity = Severity.WARNING) -> Severity:
    """Map a source's severity label onto info/warning/critical."""
    if value is None:
        return default
    return _SEVERITY_ALIASES.get(str(value).strip().lower(), default)


def parse_timestamp(value: object) -> datetime:
    """Accept ISO-8601 strings, epoch seconds or epoch milliseconds.

    Raises:
        MalformedEvent: If the value is missing or unreadable.
    """
    if value is None or value == "":
        raise MalformedEvent("timestamp is missing")
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedEvent(f"epoch timestamp {value!r} is out of range") from exc
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedEvent(f"timestamp {value!r} is not ISO-8601") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise MalformedEvent(f"timestamp of type {type(value).__name__} is not supported")


def _build(raw: dict, **fields) -> Alert:
    """Construct an Alert, turning validation errors into MalformedEvent."""
    for key in ("source", "resource", "metric"):
        if not fields.get(key):
            raise MalformedEvent(f"{key} is missing", raw=raw)
    if not fields.get("id"):
        fields["id"] = _derived_id(fields)
    try:
        return Alert(**fields)
    except ValidationError as exc:
        raise MalformedEvent(f"alert failed validation: {exc.error_count()} error(s)", raw=raw) from exc


def _mapping(value: object, what: str, raw: object) -> dict:
    """Return a nested JSON object, treating null as empty.

    Raises:
        MalformedEvent: If the value is present but not an object.
    """
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedEvent(f"{what} must be a JSON object, got {type(value).__name__}", raw=raw)
    return value


def _derived_id(fields: dict) -> str:
    """Stable id for sources that do not send one."""
    key = "|".join(str(fields.get(k, "")) for k in ("source", "resource", "metric", "timestamp", "status"))
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


def _status(value: object) -> str:
    return "resolved" if str(value or "").strip().lower() in _RESOLVED_STATUSES else "firing"


class GenericAdapter(SourceAdapter):
    """Payloads already close to the Alert shape.

    Required keys: source, resource, metric, timestamp. Optional: id,
    severity, status, payload. Any other keys are kept in payload.
    """

    _KNOWN = {"id", "source", "resource", "metric", "severity", "timestamp", "status", "payload"}

    @property
    def name(self) -> str:
        return "generic"

    def normalize(self, raw: dict) -> Alert:
        if not isinstance(raw, dict):
            raise MalformedEvent("payload must be a JSON object", raw=raw)
        payload = dict(_mapping(raw.get("payload"), "payload", raw))
        payload.update({k: v for k, v in raw.items() if k not in self._KNOWN})
        try:
            timestamp = parse_timestamp(raw.get("timestamp"))
        except MalformedEvent as exc:
            exc.raw = raw
            raise
        return _build(
            raw,
            id=str(raw["id"]) if raw.get("id") is not None else None,
            source=raw.get("source"),
            resource=raw.get("resource"),
            metric=raw.get("metric"),
            severity=map_severity(raw.get("severity")),
            timestamp=timestamp,
            status=_status(raw.get("status")),
            payload=payload,
        )


class AlertmanagerAdapter(SourceAdapter):
    """Prometheus Alertmanager webhook, version 4.

    A delivery carries a batch of alerts plus commonLabels. Each entry is
    normalized with its own labels layered over the common ones:

        resource  labels.instance, else .pod, .service, .job
        metric    labels.alertname
        severity  labels.severity
        timestamp endsAt for resolved entries, else startsAt
    """

    _RESOURCE_LABELS = ("instance", "pod", "service", "job")

    @property
    def name(self) -> str:
        return "alertmanager"

    def explode(self, raw: dict) -> list[dict]:
        alerts = raw.get("alerts") if isinstance(raw, dict) else None
        if not isinstance(alerts, list):
            raise MalformedEvent("alertmanager delivery has no 'alerts' list", raw=raw)
        common = _mapping(raw.get("commonLabels"), "commonLabels", raw)
        entries = []
        for alert in alerts:
            if not isinstance(alert, dict):
                entries.append({"_invalid": alert})
                continue
            entry = dict(alert)
            labels = alert.get("labels")
            if labels is None:
                entry["labels"] = dict(common)
            elif isinstance(labels, dict):
                entry["labels"] = {**common, **labels}
            # anything else is left for normalize() to reject
            entry.setdefault("status", raw.get("status"))
            entries.append(entry)
        return entries

    def normalize(self, raw: dict) -> Alert:
        labels = _mapping(raw.get("labels"), "labels", raw)
        resource = next((labels[k] for k in self._RESOURCE_LABELS if labels.get(k)), None)
        status = _status(raw.get("status"))
        when = raw.get("endsAt") if status == "resolved" else raw.get("startsAt")
        try:
            timestamp = parse_timestamp(when or raw.get("startsAt"))
        except MalformedEvent as exc:
            exc.raw = raw
            raise
        return _build(
            raw,
            id=raw.get("fingerprint"),
            source=self.name,
            resource=resource,
            metric=labels.get("alertname"),
            severity=map_severity(labels.get("severity")),
            timestamp=timestamp,
            status=status,
            payload={
                "labels": labels,
                "annotations": raw.get("annotations") or {},
                "generatorURL": raw.get("generatorURL"),
                **({"resource_type": labels["resource_type"]} if labels.get("resource_type") else {}),
            },
        )


class CloudWatchAdapter(SourceAdapter):
    """CloudWatch alarm state-change notification.

    Accepts the alarm message itself or the SNS envelope around it (the
    message is then a JSON string under "Message").

        ALARM              firing, with the adapter's alarm severity
        OK                 resolved
        INSUFFICIENT_DATA  firing at info

    The resource is the first dimension value, else the alarm name.
    """

    def __init__(self, alarm_severity: Severity = Severity.WARNING) -> None:
        self.alarm_severity = alarm_severity

    @property
    def name(self) -> str:
        return "cloudwatch"

    def normalize(self, raw: dict) -> Alert:
        message = raw
        if isinstance(raw, dict) and raw.get("Type") == "Notification":
            try:
                message = json.loads(raw.get("Message") or "")
            except json.JSONDecodeError as exc:
                raise MalformedEvent("SNS Message is not JSON", raw=raw) from exc
        if not isinstance(message, dict):
            raise MalformedEvent("alarm message must be a JSON object", raw=raw)

        trigger = _mapping(message.get("Trigger"), "Trigger", raw)
        dimensions = trigger.get("Dimensions") or []
        if not isinstance(dimensions, list):
            raise MalformedEvent("Trigger.Dimensions must be a list", raw=raw)
        resource = next((d.get("value") for d in dimensions if isinstance(d, dict) and d.get("value")), None)
        state = str(message.get("NewStateValue") or "").upper()

        if state == "OK":
            severity, status = self.alarm_severity, "resolved"
        elif state == "INSUFFICIENT_DATA":
            severity, status = Severity.INFO, "firing"
        else:
            severity, status = self.alarm_severity, "firing"

        try:
            timestamp = parse_timestamp(message.get("StateChangeTime"))
        except MalformedEvent as exc:
            exc.raw = raw
            raise
        return _build(
            raw,
            id=raw.get("MessageId") if isinstance(raw, dict) else None,
            source=self.name,
            resource=resource or message.get("AlarmName"),
            metric=trigger.get("MetricName"),
            severity=severity,
            timestamp=timestamp,
            status=status,
            payload={
                "alarm_name": message.get("AlarmName"),
                "namespace": trigger.get("Namespace"),
                "reason": message.get("NewStateReason"),
                "region": message.get("Region"),
            },
        )


class SentryAdapter(SourceAdapter):
    """Sentry issue-alert and error webhooks.

    Sentry sends two shapes, told apart by the key under "data":

    Issue alert:  {"action": "created", "data": {"issue": {"id", "project": {"slug"}, "level", ...}}}
    Error event:  {"action": "created", "data": {"error": {"issue_id", "project", "level", ...}}}

    The project slug is the resource and the issue the metric, so repeats
    of one Sentry issue deduplicate into one occurrence. An issue webhook
    with action "resolved" resolves it.
    """

    @property
    def name(self) -> str:
        return "sentry"

    def normalize(self, raw: dict) -> Alert:
        data = raw.get("data") if isinstance(raw, dict) else None
        if not isinstance(data, dict):
            raise MalformedEvent("sentry payload has no 'data' object", raw=raw)

        if "issue" in data:
            issue = _mapping(data["issue"], "data.issue", raw)
            issue_id = issue.get("id")
            project = issue.get("project")
            level = issue.get("level")
            when = issue.get("lastSeen") or issue.get("firstSeen")
            title = issue.get("title")
        elif "error" in data:
            # project may be a dict {"slug": "..."} or a bare project id
            error = _mapping(data["error"], "data.error", raw)
            issue_id = error.get("issue_id")
            project = error.get("project")
            level = error.get("level")
            when = error.get("datetime") or error.get("timestamp")
            title = error.get("title") or error.get("message")
        else:
            raise MalformedEvent(
                f"unrecognised sentry payload; expected 'issue' or 'error' in data, got {sorted(data)}",
                raw=raw,
            )

        project_slug = project.get("slug") if isinstance(project, dict) else project
        try:
            timestamp = parse_timestamp(when)
        except MalformedEvent as exc:
            exc.raw = raw
            raise
        return _build(
            raw,
            id=f"{issue_id}-{raw.get('action')}" if issue_id else None,
            source=self.name,
            resource=str(project_slug) if project_slug is not None else None,
            metric=f"issue-{issue_id}" if issue_id else None,
            severity=map_severity(level),
            timestamp=timestamp,
            status=_status(raw.get("action")),
            payload={
                "title": title,
                "org": _mapping(raw.get("actor"), "actor", raw).get("name"),
                "action": raw.get("action"),
            },
        )
