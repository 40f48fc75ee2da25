"""Push the demo fixture's alerts to a running Sift server and poll the incidents.

Only the firing "ingest" steps are sent, with their timestamps shifted to the
present. The server's own sweeper and ticker drive time, so escalation shows
up after a couple of evaluation intervals.
"""

import hashlib
import hmac
import json
import os
import pathlib
import sys
import time
import urllib.error
import urllib.request
from datetime import datetime, timezone


BASE_URL = os.environ.get("SIFT_URL", "http://127.0.0.1:8000")
SECRET = os.environ.get("SIFT_INGEST_SECRET", "")
FIXTURE = pathlib.Path(__file__).resolve().parent.parent / "fixtures" / "alerts_demo.json"
TIMEOUT_SECONDS = 120
POLL_INTERVAL_SECONDS = 5.0
TIME_KEYS = {"timestamp", "startsAt", "endsAt"}
RESOLVED = {"resolved", "ok"}


def _request(method: str, path: str, payload: object = None) -> object:
    url = f"{BASE_URL}{path}"
    data = None
    headers = {"Content-Type": "application/json"}

    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        if SECRET:
            headers["X-Sift-Signature"] = hmac.new(SECRET.encode("utf-8"), data, hashlib.sha256).hexdigest()

    req = urllib.request.Request(url=url, method=method, data=data, headers=headers)
    with urllib.request.urlopen(req, timeout=10) as resp:
        body = resp.read().decode("utf-8")
        return json.loads(body) if body else {}


def _shift(value: object, offset) -> object:
    """Move every timestamp field in a fixture payload by offset."""
    if isinstance(value, list):
        return [_shift(v, offset) for v in value]
    if not isinstance(value, dict):
        return value
    shifted = {}
    for key, item in value.items():
        if key in TIME_KEYS and isinstance(item, str):
            when = datetime.fromisoformat(item.replace("Z", "+00:00")) + offset
            shifted[key] = when.isoformat()
        else:
            shifted[key] = _shift(item, offset)
    return shifted


def main() -> int:
    fixture = json.loads(FIXTURE.read_text(encoding="utf-8"))
    offset = datetime.now(timezone.utc) - datetime.fromisoformat(fixture["start"].replace("Z", "+00:00"))
    deliveries = [
        {**s, "payload": _shift(s["payload"], offset)}
        for s in fixture["steps"]
        if s["op"] == "ingest" and s["payload"].get("status", "firing") not in RESOLVED
    ]

    print(f"Posting {len(deliveries)} deliveries to {BASE_URL} ...")
    for step in deliveries:
        try:
            report = _request("POST", f"/alerts/{step['source']}", step["payload"])
            print(f"  {step['source']:<13} accepted={report.get('accepted')}")
        except urllib.error.HTTPError as exc:
            # malformed fixture entries come back as 400 on purpose
            print(f"  {step['source']:<13} HTTP {exc.code}: {exc.read().decode('utf-8')}")
        except urllib.error.URLError as exc:
            print(f"Failed to reach API at {BASE_URL}: {exc}", file=sys.stderr)
            print("Start it first with: sift-server", file=sys.stderr)
            return 1

    print("Polling incidents ...")
    deadline = time.time() + TIMEOUT_SECONDS
    while time.time() < deadline:
        incidents = _request("GET", "/incidents")
        states = sorted(i["state"] for i in incidents)
        print(f"  incidents={len(incidents)} states={states}")

        if any(i["state"] in {"remediating", "escalated"} for i in incidents):
            print("\nActions:")
            print(json.dumps(_request("GET", "/actions"), indent=2))
            return 0

        time.sleep(POLL_INTERVAL_SECONDS)

    print(f"Timed out after {TIMEOUT_SECONDS}s waiting for escalation.", file=sys.stderr)
    return 3


if __name__ == "__main__":
    raise SystemExit(main())
