"""Tests for drift detection and repair."""

import tempfile

import pytest

from aipm.errors import InconsistentStateError
from aipm.sync.drift import DriftReconciler, DriftType, RepairMode

from helpers import MAIN, FakeVersionControl, make_engine


def _setup(tmpdir: str):
    vcs = FakeVersionControl()
    engine = make_engine(tmpdir, vcs)
    engine.initialize()
    return vcs, engine, DriftReconciler(engine)


def test_no_drift_after_initialize():
    with tempfile.TemporaryDirectory() as tmpdir:
        _, _, reconciler = _setup(tmpdir)
        report = reconciler.detect()
        assert not report.has_drift
        assert report.summary() == "No drift detected"


def test_detects_branch_switch_and_dirty_tree():
    with tempfile.TemporaryDirectory() as tmpdir:
        vcs, _, reconciler = _setup(tmpdir)
        vcs.add_branch("AIPM_feature/login")
        vcs.current = "AIPM_feature/login"
        vcs.changes = [(" M", "app.py")]

        report = reconciler.detect()
        assert report.has_drift
        assert set(report.drift_types) == {
            DriftType.CURRENT_BRANCH, DriftType.WORKING_TREE, DriftType.UNCOMMITTED,
        }


def test_branch_count_tolerance():
    with tempfile.TemporaryDirectory() as tmpdir:
        vcs, _, reconciler = _setup(tmpdir)
        for i in range(5):
            vcs.add_branch(f"AIPM_feature/f{i}")
        assert DriftType.BRANCH_COUNT not in reconciler.detect().drift_types

        vcs.add_branch("AIPM_feature/f5")
        assert DriftType.BRANCH_COUNT in reconciler.detect().drift_types


def test_report_only_never_mutates():
    with tempfile.TemporaryDirectory() as tmpdir:
        vcs, engine, reconciler = _setup(tmpdir)
        before = engine.store.read_bytes()
        vcs.changes = [(" M", "app.py")]
        report = reconciler.repair(RepairMode.REPORT_ONLY)
        assert report.has_drift
        assert not report.repaired
        assert engine.store.read_bytes() == before


def test_auto_repair_is_idempotent():
    with tempfile.TemporaryDirectory() as tmpdir:
        vcs, engine, reconciler = _setup(tmpdir)
        for i in range(8):
            vcs.add_branch(f"AIPM_feature/f{i}")
        vcs.current = "AIPM_feature/f0"
        vcs.changes = [("??", "new.txt")]
        vcs.remote = True

        first = reconciler.repair("auto")
        assert first.repaired
        assert engine.get("repositorySnapshot.currentBranch") == "AIPM_feature/f0"
        assert engine.get("repositorySnapshot.uncommittedChanges") == [{"file": "new.txt", "type": "untracked"}]
        assert len(engine.get("repositorySnapshot.branches")) == 9
        assert engine.get_or_default("metadata.lastRepair")

        second = reconciler.repair("auto")
        assert not second.has_drift
        assert not second.repaired


def test_interactive_declined():
    with tempfile.TemporaryDirectory() as tmpdir:
        vcs, engine, reconciler = _setup(tmpdir)
        before = engine.store.read_bytes()
        vcs.changes = [(" M", "app.py")]
        asked = []

        def decline(message, default=False):
            asked.append(message)
            return False

        report = reconciler.repair(RepairMode.INTERACTIVE, confirm=decline)
        assert asked
        assert not report.repaired
        assert engine.store.read_bytes() == before


def test_interactive_confirmed():
    with tempfile.TemporaryDirectory() as tmpdir:
        vcs, engine, reconciler = _setup(tmpdir)
        vcs.changes = [(" M", "app.py")]
        report = reconciler.repair(RepairMode.INTERACTIVE, confirm=lambda message, default=False: True)
        assert report.repaired
        assert engine.get("repositorySnapshot.uncommittedCount") == 1


def test_missing_state_reported_and_initialized():
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(tmpdir)
        reconciler = DriftReconciler(engine)
        report = reconciler.detect()
        assert report.state_missing
        assert reconciler.repair("auto").repaired
        assert engine.store.exists()


def test_validate_against_truth():
    with tempfile.TemporaryDirectory() as tmpdir:
        vcs, _, reconciler = _setup(tmpdir)
        assert reconciler.validate_against_truth()

        vcs.changes = [(" M", "app.py")]
        vcs.delete_branch(MAIN)
        with pytest.raises(InconsistentStateError) as excinfo:
            reconciler.validate_against_truth()
        mismatches = excinfo.value.mismatches
        assert any("Working tree clean" in m for m in mismatches)
        assert any("does not exist" in m for m in mismatches)
