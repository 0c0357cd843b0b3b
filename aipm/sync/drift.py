"""Drift detection: divergence between the cached state and the live repository.

Drift happens when git is used behind the engine's back:
1. The checked-out branch changed
2. Files were modified or committed
3. A remote was added or removed
4. Branches were created or deleted in bulk

Detection is cheap (no full snapshot). Repair rewrites the drifted runtime
fields and then re-inspects branches.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import click

from aipm.errors import InconsistentStateError
from aipm.repo.models import FileChange, categorize_status, to_iso

logger = logging.getLogger(__name__)

BRANCH_COUNT_TOLERANCE = 5


class DriftType:
    CURRENT_BRANCH = "current_branch"
    WORKING_TREE = "working_tree_clean"
    UNCOMMITTED = "uncommitted_count"
    REMOTE = "has_remote"
    BRANCH_COUNT = "branch_count"


class RepairMode(Enum):
    REPORT_ONLY = "report-only"
    INTERACTIVE = "interactive"
    AUTO = "auto"


# Drift type -> location in repositorySnapshot
_SNAPSHOT_FIELDS = {
    DriftType.CURRENT_BRANCH: "currentBranch",
    DriftType.WORKING_TREE: "workingTreeClean",
    DriftType.UNCOMMITTED: "uncommittedCount",
    DriftType.REMOTE: "hasRemote",
}


@dataclass
class DriftItem:
    drift_type: str
    cached: Any
    live: Any

    def describe(self) -> str:
        return f"{self.drift_type}: cached={self.cached!r} live={self.live!r}"


@dataclass
class DriftReport:
    """Itemized differences between cached state and the repository."""

    items: list[DriftItem] = field(default_factory=list)
    state_missing: bool = False
    repaired: bool = False

    @property
    def has_drift(self) -> bool:
        return self.state_missing or len(self.items) > 0

    @property
    def drift_types(self) -> list[str]:
        return [item.drift_type for item in self.items]

    def summary(self) -> str:
        if self.state_missing:
            return "No cached state: initialization required"
        if not self.has_drift:
            return "No drift detected"
        status = "repaired" if self.repaired else "DRIFT"
        return f"{status} [{', '.join(self.drift_types)}]"


class DriftReconciler:
    """Detects and repairs drift for a StateEngine."""

    def __init__(self, engine, tolerance: int = BRANCH_COUNT_TOLERANCE):
        self.engine = engine
        self.tolerance = tolerance

    def _live(self) -> dict:
        vcs = self.engine.vcs
        status = vcs.status()
        compiled = self.engine.compiled
        return {
            "status": status,
            DriftType.CURRENT_BRANCH: vcs.current_branch(),
            DriftType.UNCOMMITTED: len(status),
            DriftType.WORKING_TREE: not status,
            DriftType.REMOTE: vcs.has_remote(),
            DriftType.BRANCH_COUNT: len(self.engine.inspector(compiled).candidate_branches()),
        }

    def detect(self) -> DriftReport:
        doc = self.engine.store.read()
        if doc is None:
            return DriftReport(state_missing=True)

        snapshot = doc["repositorySnapshot"]
        live = self._live()
        report = DriftReport()

        for drift_type, key in _SNAPSHOT_FIELDS.items():
            cached = snapshot.get(key)
            if cached != live[drift_type]:
                report.items.append(DriftItem(drift_type, cached, live[drift_type]))

        cached_count = len(snapshot.get("branches", {}))
        if abs(cached_count - live[DriftType.BRANCH_COUNT]) > self.tolerance:
            report.items.append(DriftItem(DriftType.BRANCH_COUNT, cached_count, live[DriftType.BRANCH_COUNT]))

        return report

    def repair(
        self,
        mode: RepairMode | str = RepairMode.REPORT_ONLY,
        confirm: Callable[..., bool] | None = None,
    ) -> DriftReport:
        """Detect drift and, depending on ``mode``, fix it.

        ``report-only`` never mutates. ``interactive`` asks ``confirm``
        (``click.confirm`` by default) first. ``auto`` repairs directly.
        """
        mode = RepairMode(mode)
        report = self.detect()
        if not report.has_drift:
            return report

        for item in report.items:
            logger.info("Drift: %s", item.describe())

        if mode == RepairMode.REPORT_ONLY:
            return report

        if report.state_missing:
            if mode == RepairMode.INTERACTIVE and not (confirm or click.confirm)("Initialize workspace state?", default=True):
                return report
            self.engine.initialize()
            report.repaired = True
            return report

        if mode == RepairMode.INTERACTIVE:
            ask = confirm or click.confirm
            if not ask(f"Repair {len(report.items)} drifted field(s)?", default=False):
                logger.info("Drift repair declined")
                return report

        self._apply(report)
        report.repaired = True
        return report

    def _apply(self, report: DriftReport) -> None:
        live = self._live()
        with self.engine.transactions.transaction("repair:drift") as txn:
            doc = txn.document
            snapshot = doc["repositorySnapshot"]
            for item in report.items:
                key = _SNAPSHOT_FIELDS.get(item.drift_type)
                if key is not None:
                    snapshot[key] = live[item.drift_type]
            if DriftType.UNCOMMITTED in report.drift_types or DriftType.WORKING_TREE in report.drift_types:
                snapshot["uncommittedChanges"] = [
                    FileChange(path=path, change_type=categorize_status(code)).to_dict()
                    for code, path in live["status"]
                ]
            doc["metadata"]["lastRepair"] = to_iso(self.engine.clock())

        # Branch membership may have moved along with the runtime fields.
        self.engine.refresh("branches")

    def validate_against_truth(self) -> bool:
        """Fail closed when the cached state disagrees with the repository.

        Raises:
            InconsistentStateError: With one message per mismatch.
        """
        doc = self.engine.document()
        snapshot = doc["repositorySnapshot"]
        main_branch = doc["compiledConfiguration"]["mainBranch"]
        vcs = self.engine.vcs

        mismatches = []
        live_branch = vcs.current_branch()
        if snapshot.get("currentBranch") != live_branch:
            mismatches.append(f"Current branch: cached {snapshot.get('currentBranch')}, actual {live_branch}")
        live_clean = not vcs.status()
        if snapshot.get("workingTreeClean") != live_clean:
            mismatches.append(f"Working tree clean: cached {snapshot.get('workingTreeClean')}, actual {live_clean}")
        if not vcs.branch_exists(main_branch):
            mismatches.append(f"Main branch {main_branch} does not exist")

        if mismatches:
            raise InconsistentStateError("State does not match repository", mismatches)
        return True
