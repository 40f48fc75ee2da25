"""PolicyStore tests: versioning, fail-closed validation and hot reload."""

import asyncio
import os
import pathlib

import pytest

from core.errors import PolicyError
from core.policy_store import PolicyStore, build_policy
from core.telemetry import TelemetryEmitter
from schemas.events import EventType
from schemas.remediation import ActionKind

EXAMPLE_POLICY = pathlib.Path(__file__).resolve().parent.parent / "policy.example.yaml"

VALID = """
label: canary
correlation:
  threshold: 0.75
  window_seconds: 240
"""


def bump_mtime(path: pathlib.Path, seconds: float = 10) -> None:
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + seconds))


# ── Loading ──────────────────────────────────────────────────────────────────

class TestLoadText:
    def test_defaults_before_any_load(self):
        store = PolicyStore()
        assert store.version == 0
        assert store.current.automation_allowed

    def test_valid_document(self):
        store = PolicyStore()
        policy = store.load_text(VALID)
        assert policy.version == 1
        assert policy.label == "canary"
        assert policy.correlation.threshold == 0.75
        assert policy.correlation.window_seconds == 240
        assert policy.issues == []
        assert store.current is policy

    def test_versions_increase_on_every_load(self):
        store = PolicyStore()
        versions = [store.load_text(VALID).version for _ in range(3)]
        assert versions == [1, 2, 3]

    def test_missing_threshold_disables_automation(self):
        store = PolicyStore()
        policy = store.load_text("dedup:\n  quiet_window_seconds: 120\n")
        assert "correlation.threshold is missing" in policy.issues
        assert not policy.automation_allowed
        assert policy.dedup.quiet_window_seconds == 120
        assert policy.correlation.threshold == 0.8

    def test_bad_section_falls_back_to_defaults(self):
        store = PolicyStore()
        policy = store.load_text(
            "correlation:\n  threshold: 0.8\n  window_seconds: -5\n"
            "dedup:\n  quiet_window_seconds: 60\n"
        )
        assert any(issue.startswith("correlation:") for issue in policy.issues)
        assert policy.correlation.window_seconds == 300
        assert policy.dedup.quiet_window_seconds == 60
        assert not policy.automation_allowed

    def test_unparseable_yaml_keeps_previous_policy(self):
        store = PolicyStore()
        previous = store.load_text(VALID)
        with pytest.raises(PolicyError):
            store.load_text("correlation: [unclosed")
        assert store.current is previous
        assert store.version == 1

    def test_non_mapping_rejected(self):
        with pytest.raises(PolicyError, match="mapping"):
            build_policy(["a", "b"])

    def test_empty_document_is_all_defaults_with_issue(self):
        policy = build_policy(None)
        assert policy.issues == ["correlation.threshold is missing"]

    def test_telemetry_for_load_and_reject(self):
        telemetry = TelemetryEmitter()
        store = PolicyStore(telemetry=telemetry)
        store.load_text(VALID)
        with pytest.raises(PolicyError):
            store.load_text("- just\n- a list\n")
        assert [e.event_type for e in telemetry.history()] == [EventType.POLICY_LOADED, EventType.POLICY_REJECTED]

    def test_example_policy_is_clean(self):
        store = PolicyStore()
        policy = store.load_text(EXAMPLE_POLICY.read_text(encoding="utf-8"))
        assert policy.issues == []
        assert policy.topology.resource_type_of("api-gw-1") == "gateway"
        assert policy.remediation.actions_for("critical", "database")[0].kind == ActionKind.SCALE
        assert policy.remediation.actions_for("critical", "database")[0].requires_approval


# ── File reload ──────────────────────────────────────────────────────────────

class TestFileReload:
    def test_loads_file_on_construction(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(VALID, encoding="utf-8")
        store = PolicyStore(path)
        assert store.version == 1
        assert store.current.label == "canary"

    def test_missing_file_runs_on_defaults(self, tmp_path):
        store = PolicyStore(tmp_path / "absent.yaml")
        assert store.version == 0
        assert store.current.automation_allowed

    def test_reload_only_when_changed(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(VALID, encoding="utf-8")
        store = PolicyStore(path)

        assert store.reload() is None

        path.write_text(VALID.replace("canary", "rollout-2"), encoding="utf-8")
        bump_mtime(path)
        policy = store.reload()
        assert policy.version == 2
        assert policy.label == "rollout-2"

    def test_forced_reload(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(VALID, encoding="utf-8")
        store = PolicyStore(path)
        assert store.reload(force=True).version == 2

    def test_reload_without_path_is_noop(self):
        assert PolicyStore().reload() is None

    async def test_watch_picks_up_edits(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(VALID, encoding="utf-8")
        store = PolicyStore(path)
        task = asyncio.create_task(store.watch(0.01))
        try:
            path.write_text(VALID.replace("0.75", "0.9"), encoding="utf-8")
            bump_mtime(path)
            for _ in range(100):
                if store.version == 2:
                    break
                await asyncio.sleep(0.01)
        finally:
            task.cancel()
        assert store.current.correlation.threshold == 0.9

    async def test_watch_survives_broken_file(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(VALID, encoding="utf-8")
        store = PolicyStore(path)
        task = asyncio.create_task(store.watch(0.01))
        try:
            path.write_text("correlation: [unclosed", encoding="utf-8")
            bump_mtime(path)
            await asyncio.sleep(0.1)
            assert not task.done()
        finally:
            task.cancel()
        assert store.version == 1
