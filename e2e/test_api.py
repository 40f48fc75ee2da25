"""API endpoint tests.

Each test builds its own pipeline and app with run_background=False, so
requests are processed inline. TestClient is used as a context manager to
keep one event loop alive across requests.
"""

import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from core.dedup import fingerprint
from core.pipeline import SiftPipeline
from core.policy_store import PolicyStore
from ingest.signing import SIGNATURE_HEADER, sign
from main import create_app

SECRET = "s3cret"
T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

POLICY = """
label: api-tests
correlation:
  threshold: 0.8
topology:
  resource_types:
    "*-db": database
remediation:
  rules:
    - severity: critical
      resource_type: database
      actions:
        - kind: scale
          requires_approval: true
"""


def make_alert(resource: str, metric: str, seconds: int = 0, severity: str = "warning", **extra) -> dict:
    return {
        "id": f"{resource}-{metric}-{seconds}",
        "source": "cloudwatch",
        "resource": resource,
        "metric": metric,
        "severity": severity,
        "timestamp": f"2024-06-01T12:{seconds // 60:02d}:{seconds % 60:02d}Z",
        **extra,
    }


def post_signed(client: TestClient, source: str, payload, secret: str = SECRET):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return client.post(
        f"/alerts/{source}",
        content=body,
        headers={SIGNATURE_HEADER: sign(body, secret), "content-type": "application/json"},
    )


@pytest.fixture
def pipeline() -> SiftPipeline:
    store = PolicyStore()
    store.load_text(POLICY)
    return SiftPipeline(policy_store=store, clock=lambda: T0)


@pytest.fixture
def client(pipeline):
    with TestClient(create_app(pipeline, ingest_secret=SECRET, run_background=False)) as client:
        yield client


# ── Health ───────────────────────────────────────────────────────────────────

class TestHealth:
    def test_health(self, client):
        res = client.get("/health")
        assert res.status_code == 200
        body = res.json()
        assert body["status"] == "ok"
        assert body["policy_version"] == 1
        assert body["automation_allowed"] is True
        assert body["running"] is False

    def test_summary_starts_empty(self, client):
        body = client.get("/summary").json()
        assert body["active_occurrences"] == 0
        assert body["incidents"]["open"] == 0


# ── Intake ───────────────────────────────────────────────────────────────────

class TestIntake:
    def test_signed_delivery_accepted(self, client):
        res = post_signed(client, "generic", make_alert("api-gw-1", "4XXError"))
        assert res.status_code == 202
        assert res.json()["accepted"] == ["api-gw-1-4XXError-0"]
        assert len(client.get("/occurrences").json()) == 1

    def test_unsigned_delivery_rejected(self, client):
        res = client.post("/alerts/generic", json=make_alert("api-gw-1", "4XXError"))
        assert res.status_code == 401

    def test_wrong_secret_rejected(self, client):
        res = post_signed(client, "generic", make_alert("api-gw-1", "4XXError"), secret="other")
        assert res.status_code == 401

    def test_unknown_source(self, client):
        res = post_signed(client, "pagerduty", make_alert("api-gw-1", "4XXError"))
        assert res.status_code == 404

    def test_body_not_json(self, client):
        res = post_signed(client, "generic", b"not json at all")
        assert res.status_code == 400

    def test_everything_dropped(self, client):
        res = post_signed(client, "generic", {"source": "cloudwatch", "resource": "api-gw-1"})
        assert res.status_code == 400
        assert len(res.json()["detail"]["dropped"]) == 1

    def test_wrong_nested_shape_is_a_drop_not_a_crash(self, client):
        res = post_signed(client, "generic", make_alert("api-gw-1", "4XXError", payload="oops"))
        assert res.status_code == 400
        assert len(res.json()["detail"]["dropped"]) == 1

    def test_partial_batch_accepted(self, client):
        batch = {
            "status": "firing",
            "alerts": [
                {"labels": {"alertname": "HighCPU", "instance": "node-1"}, "startsAt": "2024-06-01T12:00:00Z"},
                {"labels": {"instance": "node-2"}, "startsAt": "2024-06-01T12:00:00Z"},
            ],
        }
        res = post_signed(client, "alertmanager", batch)
        assert res.status_code == 202
        assert len(res.json()["accepted"]) == 1
        assert len(res.json()["dropped"]) == 1

    def test_no_secret_means_no_signature_check(self, pipeline):
        with TestClient(create_app(pipeline, ingest_secret="", run_background=False)) as client:
            res = client.post("/alerts/generic", json=make_alert("api-gw-1", "4XXError"))
        assert res.status_code == 202


# ── Query API ────────────────────────────────────────────────────────────────

class TestQuery:
    def test_correlated_incident_listed(self, client):
        post_signed(client, "generic", make_alert("api-gw-1", "4XXError", 90))
        post_signed(client, "generic", make_alert("api-gw-1-db", "DatabaseConnections", 95))

        [incident] = client.get("/incidents").json()
        assert incident["state"] == "open"
        assert incident["correlation_score"] == 0.9933
        assert set(incident["members"]) == {
            fingerprint("cloudwatch", "api-gw-1", "4XXError"),
            fingerprint("cloudwatch", "api-gw-1-db", "DatabaseConnections"),
        }

    def test_filter_by_state(self, client):
        post_signed(client, "generic", make_alert("api-gw-1", "4XXError"))
        assert len(client.get("/incidents", params={"state": "open"}).json()) == 1
        assert client.get("/incidents", params={"state": "closed"}).json() == []

    def test_incident_detail(self, client):
        post_signed(client, "generic", make_alert("api-gw-1", "4XXError"))
        [incident] = client.get("/incidents").json()

        res = client.get(f"/incidents/{incident['incident_id']}")
        assert res.status_code == 200
        detail = res.json()
        assert detail["incident"]["incident_id"] == incident["incident_id"]
        assert detail["audit"][0]["kind"] == "created"
        assert detail["actions"] == []

    def test_incident_not_found(self, client):
        assert client.get("/incidents/inc-missing").status_code == 404

    def test_events_and_limit(self, client):
        post_signed(client, "generic", make_alert("api-gw-1", "4XXError"))
        events = client.get("/events").json()
        assert {"occurrence_created", "incident_created"} <= {e["event_type"] for e in events}
        assert len(client.get("/events", params={"limit": 1}).json()) == 1

    def test_policy_view(self, client):
        body = client.get("/policy").json()
        assert body["label"] == "api-tests"
        assert body["version"] == 1


# ── Operator controls ────────────────────────────────────────────────────────

class TestApprovals:
    def pending_action(self, client, resource: str = "orders-db") -> dict:
        post_signed(client, "generic", make_alert(resource, "Connections", severity="critical"))
        [action] = [a for a in client.get("/actions").json() if a["resource"] == resource]
        assert action["status"] == "pending"
        return action

    def test_approve(self, client):
        action = self.pending_action(client)
        res = client.post(f"/actions/{action['action_id']}/approve", json={"approver": "oncall-1"})
        assert res.status_code == 200
        assert res.json()["status"] == "approved"
        assert res.json()["approved_by"] == "oncall-1"

    def test_approve_twice_conflicts(self, client):
        action = self.pending_action(client)
        client.post(f"/actions/{action['action_id']}/approve", json={"approver": "oncall-1"})
        res = client.post(f"/actions/{action['action_id']}/approve", json={"approver": "oncall-2"})
        assert res.status_code == 409

    def test_approve_unknown(self, client):
        res = client.post("/actions/act-missing/approve", json={"approver": "oncall-1"})
        assert res.status_code == 404

    def test_reject_hands_incident_to_humans(self, client):
        action = self.pending_action(client, "users-db")
        res = client.post(f"/actions/{action['action_id']}/reject", json={"reason": "maintenance window"})
        assert res.status_code == 200
        assert res.json()["status"] == "skipped"

        incident = client.get(f"/incidents/{action['incident_id']}").json()["incident"]
        assert incident["needs_human"] is True
        assert "maintenance window" in incident["human_reason"]

    def test_reject_unknown(self, client):
        res = client.post("/actions/act-missing/reject", json={"reason": "no"})
        assert res.status_code == 404


class TestMembership:
    GW = fingerprint("cloudwatch", "api-gw-1", "4XXError")
    DB = fingerprint("cloudwatch", "api-gw-1-db", "DatabaseConnections")

    def linked_incident(self, client) -> str:
        post_signed(client, "generic", make_alert("api-gw-1", "4XXError", 90))
        post_signed(client, "generic", make_alert("api-gw-1-db", "DatabaseConnections", 95))
        [incident] = client.get("/incidents").json()
        return incident["incident_id"]

    def test_detach_and_reattach(self, client):
        incident_id = self.linked_incident(client)

        res = client.post(f"/incidents/{incident_id}/detach", json={"fingerprint": self.DB})
        assert res.status_code == 200
        assert res.json()["members"][self.DB]["status"] == "detached"

        res = client.post(f"/incidents/{incident_id}/attach", json={"fingerprint": self.DB})
        assert res.status_code == 200
        assert res.json()["members"][self.DB]["status"] == "active"

    def test_detach_non_member(self, client):
        incident_id = self.linked_incident(client)
        res = client.post(f"/incidents/{incident_id}/detach", json={"fingerprint": "fp-unknown"})
        assert res.status_code == 404

    def test_detach_unknown_incident(self, client):
        res = client.post("/incidents/inc-missing/detach", json={"fingerprint": self.GW})
        assert res.status_code == 404

    def test_attach_owned_elsewhere_conflicts(self, client):
        self.linked_incident(client)
        post_signed(client, "generic", make_alert("checkout-web", "HighLatency", 100))
        other = next(i for i in client.get("/incidents").json() if self.GW not in i["members"])

        res = client.post(f"/incidents/{other['incident_id']}/attach", json={"fingerprint": self.GW})
        assert res.status_code == 409
        assert "detach it first" in res.json()["detail"]

    def test_attach_unknown_fingerprint(self, client):
        incident_id = self.linked_incident(client)
        res = client.post(f"/incidents/{incident_id}/attach", json={"fingerprint": "fp-unknown"})
        assert res.status_code == 404


# ── Policy reload ────────────────────────────────────────────────────────────

class TestPolicyReload:
    def test_inline_yaml(self, client):
        res = client.post("/policy/reload", json={"yaml": "label: inline\ncorrelation:\n  threshold: 0.9\n"})
        assert res.status_code == 200
        assert res.json() == {"version": 2, "label": "inline", "issues": [], "automation_allowed": True}
        assert client.get("/health").json()["policy_version"] == 2

    def test_inline_yaml_with_issues_blocks_automation(self, client):
        res = client.post("/policy/reload", json={"yaml": "label: partial\n"})
        assert res.status_code == 200
        assert res.json()["automation_allowed"] is False
        assert res.json()["issues"] == ["correlation.threshold is missing"]

    def test_unparseable_yaml(self, client):
        res = client.post("/policy/reload", json={"yaml": "correlation: [unclosed"})
        assert res.status_code == 400
        assert client.get("/health").json()["policy_version"] == 1

    def test_no_policy_file(self, client):
        assert client.post("/policy/reload").status_code == 400

    def test_file_reload(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(POLICY, encoding="utf-8")
        pipeline = SiftPipeline(policy_store=PolicyStore(path), clock=lambda: T0)
        with TestClient(create_app(pipeline, ingest_secret=SECRET, run_background=False)) as client:
            path.write_text(POLICY.replace("api-tests", "edited"), encoding="utf-8")
            res = client.post("/policy/reload")
        assert res.status_code == 200
        assert res.json()["label"] == "edited"
        assert res.json()["version"] == 2
