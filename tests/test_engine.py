"""Tests for the StateEngine facade."""

import json
import tempfile

import pytest

from aipm.config.loader import build_configuration, merge_with_defaults
from aipm.errors import StateValidationError
from aipm.state.engine import HISTORY_LIMIT
from aipm.state.refresh import RefreshPolicy, RefreshReason
from aipm.state.schema import STATE_VERSION

from helpers import MAIN, NOW, Clock, FakeVersionControl, days_ago, make_engine


def test_initialize_builds_every_section():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        doc = engine.initialize()
        assert set(doc) == {
            "metadata", "rawConfiguration", "compiledConfiguration", "repositorySnapshot", "decisionSet",
        }
        assert doc["metadata"]["version"] == STATE_VERSION
        assert doc["metadata"]["configFingerprint"] == engine.config.fingerprint
        assert doc["metadata"]["lastOperation"] == "initialize"
        assert doc["compiledConfiguration"]["mainBranch"] == MAIN
        assert engine.store.exists()


def test_document_initializes_lazily():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        assert engine.get("repositorySnapshot.currentBranch") == MAIN
        assert engine.store.exists()


def test_get_and_defaults():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        assert engine.get("decisionSet.canCreateBranch") is True
        assert engine.get_or_default("decisionSet.nothing", "fallback") == "fallback"
        with pytest.raises(KeyError):
            engine.get("decisionSet.nothing")


def test_get_returns_copies():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        reasons = engine.get("decisionSet.cannotCreateReasons")
        reasons.append("tampered")
        assert engine.get("decisionSet.cannotCreateReasons") == []


def test_can_perform():
    with tempfile.TemporaryDirectory() as tmpdir:
        vcs = FakeVersionControl()
        vcs.changes = [(" M", "app.py")]
        engine = make_engine(tmpdir, vcs)
        allowed, reasons = engine.can_perform("create-branch")
        assert not allowed
        assert reasons == ["Working tree has uncommitted changes"]

        allowed, reasons = engine.can_perform("merge")
        assert reasons == ["Cannot merge main branch"]

        allowed, reasons = engine.can_perform("fetch")
        assert not allowed
        assert reasons == ["No remote configured"]

        with pytest.raises(ValueError):
            engine.can_perform("teleport")


def test_prompts_and_workflow_rules():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        assert engine.get_prompt("protectedBranch")["options"][0]["text"] == "Create feature branch"
        assert engine.get_prompt("selectTarget")["message"] == "Merge this branch to:"
        assert engine.get_prompt("nonsense") is None
        assert engine.get_workflow_rule("merging.sessionMerge") == "on-stop"


def test_set_and_increment():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        engine.set("metadata.custom.note", "hello")
        assert engine.get("metadata.custom.note") == "hello"

        assert engine.increment("metadata.custom.counter") == 1
        assert engine.increment("metadata.custom.counter", 4) == 5
        with pytest.raises(StateValidationError):
            engine.increment("metadata.custom.note")


def test_set_rejects_unknown_section():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        with pytest.raises(StateValidationError):
            engine.set("elsewhere.value", 1)


def test_set_many_is_one_transaction():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        engine.set_many({"metadata.custom.a": 1, "metadata.custom.b": 2})
        assert engine.get("metadata.custom") == {"a": 1, "b": 2}
        assert engine.get("metadata.lastOperation") == "update:batch"


def test_failed_write_leaves_document_untouched():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        before = engine.store.read_bytes()
        with pytest.raises(StateValidationError):
            engine.set("repositorySnapshot.currentBranch", "")
        assert engine.store.read_bytes() == before


def test_append_keeps_newest():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        for i in range(5):
            engine.append("metadata.custom.log", i, max_items=3)
        assert engine.get("metadata.custom.log") == [2, 3, 4]


def test_remove():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        engine.set("metadata.custom.flag", True)
        assert engine.remove("metadata.custom.flag")
        assert not engine.remove("metadata.custom.flag")
        with pytest.raises(StateValidationError):
            engine.remove("decisionSet")


def test_snapshot_write_recomputes_decisions():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        assert engine.get("decisionSet.canCreateBranch") is True
        engine.set_many({
            "repositorySnapshot.workingTreeClean": False,
            "repositorySnapshot.uncommittedCount": 3,
        })
        assert engine.get("decisionSet.canCreateBranch") is False


def test_report_branch_created_and_merged():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(
            tmpdir,
            opinions={"lifecycle": {"feature": {"deleteAfterMerge": True, "daysToKeep": 0}}},
        )
        engine.initialize()

        engine.report_event("branch-created", branch="AIPM_feature/login")
        info = engine.current_branch_info()
        assert engine.get("repositorySnapshot.currentBranch") == "AIPM_feature/login"
        assert info["parent"] == MAIN
        assert info["type"] == "feature"
        assert engine.get("decisionSet.mergeTarget") == MAIN

        engine.report_event("branch-merged", branch="AIPM_feature/login")
        info = engine.get(("repositorySnapshot", "branches", "AIPM_feature/login"))
        assert info["mergedTo"] == MAIN
        assert info["scheduledDelete"] == "immediate"
        assert [c["branch"] for c in engine.cleanup_branches()] == ["AIPM_feature/login"]


def test_report_files_modified_and_commit():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        engine.report_event("files-modified", count=2)
        assert engine.get("repositorySnapshot.uncommittedCount") == 2
        assert engine.get("decisionSet.canCreateBranch") is False

        engine.report_event("commit-created")
        assert engine.get("repositorySnapshot.workingTreeClean") is True
        assert engine.get("decisionSet.canCreateBranch") is True


def test_report_remote_updated():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        engine.report_event("remote-updated", ahead=2, behind=1)
        assert engine.get("repositorySnapshot.remoteStatus.diverged") is True


def test_report_unknown_event_rejected():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        before = engine.store.read_bytes()
        with pytest.raises(StateValidationError):
            engine.report_event("branch-teleported", branch="x")
        with pytest.raises(StateValidationError):
            engine.report_event("files-modified", count=-1)
        assert engine.store.read_bytes() == before


def test_history_is_bounded():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        for _ in range(HISTORY_LIMIT + 5):
            engine.report_event("branch-switched", branch=MAIN)
        history = engine.get("metadata.history")
        assert len(history) == HISTORY_LIMIT
        assert history[-1]["event"] == "branch-switched"


def test_document_is_a_private_copy():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        doc = engine.document()
        doc["repositorySnapshot"]["currentBranch"] = "tampered"
        assert engine.get("repositorySnapshot.currentBranch") == MAIN
        assert engine.document()["repositorySnapshot"]["currentBranch"] == MAIN


def test_refresh_records_reason():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        assert engine.initialize()["metadata"]["refreshReason"] == "missing"
        assert engine.refresh()["metadata"]["refreshReason"] == "requested"
        assert engine.refresh("decisions")["metadata"]["refreshReason"] == "requested"
        assert RefreshReason.REQUESTED.full


def test_refresh_sections():
    with tempfile.TemporaryDirectory() as tmpdir:
        vcs = FakeVersionControl()
        engine = make_engine(tmpdir, vcs)
        engine.initialize()

        vcs.current = "AIPM_feature/login"
        vcs.add_branch("AIPM_feature/login")
        doc = engine.refresh("runtime")
        assert doc["repositorySnapshot"]["currentBranch"] == "AIPM_feature/login"
        assert "AIPM_feature/login" not in doc["repositorySnapshot"]["branches"]

        doc = engine.refresh("branches")
        assert "AIPM_feature/login" in doc["repositorySnapshot"]["branches"]
        assert doc["decisionSet"]["mergeTarget"] == MAIN

        with pytest.raises(StateValidationError):
            engine.refresh("everything")


def test_sync_from_repository_stamps_git_sync():
    with tempfile.TemporaryDirectory() as tmpdir:
        vcs = FakeVersionControl()
        engine = make_engine(tmpdir, vcs)
        engine.initialize()
        vcs.changes = [("??", "scratch.txt")]
        doc = engine.sync_from_repository()
        assert doc["repositorySnapshot"]["uncommittedCount"] == 1
        assert doc["metadata"]["lastGitSync"] == NOW.isoformat()
        assert doc["metadata"]["lastOperation"] == "sync:git-to-state"


def test_ensure_refreshes_stale_runtime():
    with tempfile.TemporaryDirectory() as tmpdir:
        clock = Clock()
        vcs = FakeVersionControl()
        engine = make_engine(tmpdir, vcs, clock=clock, refresh_interval=60)
        engine.initialize()

        vcs.changes = [(" M", "a.py")]
        assert engine.ensure()["repositorySnapshot"]["uncommittedCount"] == 0

        clock.advance(seconds=120)
        assert engine.needs_refresh() == RefreshReason.STALE
        doc = engine.ensure()
        assert doc["repositorySnapshot"]["uncommittedCount"] == 1
        assert doc["metadata"]["lastOperation"] == "refresh:runtime"
        assert doc["metadata"]["refreshReason"] == "stale"


def test_fingerprint_change_forces_full_recompute():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()

        changed = make_engine(tmpdir, opinions={"team": {"fetchOnStart": False}})
        assert changed.needs_refresh() == RefreshReason.FINGERPRINT
        doc = changed.ensure()
        assert doc["metadata"]["lastOperation"] == "initialize"
        assert doc["metadata"]["configFingerprint"] == changed.config.fingerprint
        assert doc["compiledConfiguration"]["team"]["fetchOnStart"] is False
        assert doc["metadata"]["refreshReason"] == "fingerprint"


def test_refresh_computed_reclassifies():
    with tempfile.TemporaryDirectory() as tmpdir:
        vcs = FakeVersionControl()
        vcs.add_branch("AIPM_spike/idea", last_activity=days_ago(1))
        engine = make_engine(tmpdir, vcs)
        engine.initialize()
        assert engine.get(("repositorySnapshot", "branches", "AIPM_spike/idea", "type")) == "unknown"

        engine._config = build_configuration(merge_with_defaults({"naming": {"spike": "spike/{topic}"}}))
        engine._compiled = None
        engine.refresh("computed")
        assert engine.get(("repositorySnapshot", "branches", "AIPM_spike/idea", "type")) == "spike"


def test_refresh_policy_order():
    policy = RefreshPolicy(max_age_seconds=300)
    doc = {"metadata": {"version": STATE_VERSION, "configFingerprint": "abc", "lastRefresh": NOW.isoformat()}}
    assert policy.evaluate(None, "abc", NOW) == RefreshReason.MISSING
    assert policy.evaluate(doc, "abc", NOW) == RefreshReason.NONE
    assert policy.evaluate(doc, "xyz", NOW) == RefreshReason.FINGERPRINT
    assert RefreshReason.FINGERPRINT.full
    assert not RefreshReason.STALE.full

    old = {"metadata": dict(doc["metadata"], version="0.1")}
    assert policy.evaluate(old, "abc", NOW) == RefreshReason.VERSION


def test_summary_and_dump():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        engine.initialize()
        summary = engine.summary()
        assert summary["currentBranch"] == MAIN
        assert summary["workspace"] == "AIPM"
        assert summary["nextSessionName"] == "AIPM_session/20260301_120000"
        assert json.loads(engine.dump())["metadata"]["version"] == STATE_VERSION
