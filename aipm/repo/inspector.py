"""Repository inspector: builds a RepositorySnapshot from read-only git queries."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from aipm.config.models import CompiledConfiguration, DeletionTiming
from aipm.repo.models import (
    BranchInfo,
    FileChange,
    RepositorySnapshot,
    categorize_status,
)
from aipm.repo.vcs import VersionControl

logger = logging.getLogger(__name__)

NEVER_DELETED_TYPES = ("main", "user", "unknown")


class RepositoryInspector:
    """Captures repository facts relevant to the compiled configuration.

    ``clock`` returns the capture time; tests pass a fixed one.
    """

    def __init__(self, vcs: VersionControl, compiled: CompiledConfiguration, clock=None):
        self.vcs = vcs
        self.compiled = compiled
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Full and partial snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> RepositorySnapshot:
        snap = RepositorySnapshot(captured_at=self.clock())
        self._fill_runtime(snap)
        snap.branches = self.inspect_branches()
        return snap

    def refresh_runtime(self, snap: RepositorySnapshot) -> RepositorySnapshot:
        """Re-capture working tree and remote status, keeping branch data."""
        fresh = RepositorySnapshot(captured_at=self.clock(), branches=snap.branches)
        self._fill_runtime(fresh)
        return fresh

    def refresh_branches(self, snap: RepositorySnapshot) -> RepositorySnapshot:
        """Re-capture branch data, keeping the working tree view."""
        snap.captured_at = self.clock()
        snap.branches = self.inspect_branches()
        return snap

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def candidate_branches(self) -> list[str]:
        """Namespaced local branches plus protected non-namespaced ones."""
        prefix = self.compiled.prefix
        local = self.vcs.local_branches()
        protected_user = set(self.compiled.protected.user_branches)
        return [b for b in local if b.startswith(prefix) or b in protected_user]

    def inspect_branches(self) -> dict[str, BranchInfo]:
        branches = {}
        for name in self.candidate_branches():
            branches[name] = self.inspect_branch(name)
        return branches

    def inspect_branch(self, name: str) -> BranchInfo:
        compiled = self.compiled
        main = compiled.main_branch
        marker = compiled.initialization.get("marker", {}).get("message", "AIPM_INIT_HERE")

        info = BranchInfo(name=name)
        info.head = self.vcs.branch_head(name)
        info.exists = bool(info.head)
        info.last_activity = self.vcs.last_commit_date(name)
        info.created = self.vcs.first_commit_date(name, base=main) or info.last_activity
        info.merge_date = self.vcs.merge_date(name, main)
        if info.merge_date is not None:
            info.merged_to = main
        if name.startswith(compiled.prefix):
            info.parent = self.vcs.marker_parent(name, marker)

        info.type = compiled.classify(name)
        info.protection_reason = compiled.protected.reason_for(name)
        info.is_protected = bool(info.protection_reason)
        info.upstream = self.vcs.upstream(name)
        info.has_remote = bool(info.upstream)

        project_deletion(info, compiled)
        return info

    # ------------------------------------------------------------------
    # Working tree and remote
    # ------------------------------------------------------------------

    def _fill_runtime(self, snap: RepositorySnapshot) -> None:
        vcs = self.vcs
        snap.root = vcs.root()
        snap.user = vcs.user_name()
        snap.current_branch = vcs.current_branch()
        snap.changes = [FileChange(path=path, change_type=categorize_status(code)) for code, path in vcs.status()]
        snap.uncommitted_count = len(snap.changes)
        snap.working_tree_clean = not snap.changes
        snap.stash_count = vcs.stash_count()
        snap.operation_in_progress = vcs.operation_in_progress()
        snap.has_remote = vcs.has_remote()
        if snap.detached:
            snap.upstream, snap.ahead, snap.behind = "", 0, 0
        else:
            snap.upstream = vcs.upstream(snap.current_branch)
            snap.ahead, snap.behind = vcs.ahead_behind(snap.current_branch)
        logger.debug(
            "Runtime snapshot: branch=%s clean=%s changes=%d",
            snap.current_branch, snap.working_tree_clean, len(snap.changes),
        )


def project_deletion(info: BranchInfo, compiled: CompiledConfiguration) -> None:
    """Fill ``scheduled_delete``, ``delete_date`` and ``delete_reason``.

    The reference date is the merge date for delete-after-merge types and
    the last activity otherwise.
    """
    info.scheduled_delete, info.delete_date, info.delete_reason = "never", None, ""

    if info.is_protected:
        info.delete_reason = "Protected branch"
        return
    if info.type in NEVER_DELETED_TYPES:
        return

    rule = compiled.lifecycle_for(info.type)
    if rule is None or rule.timing == DeletionTiming.NEVER:
        info.delete_reason = rule.rationale if rule else ""
        return

    if rule.delete_after_merge:
        reference, event = info.merge_date, "merge"
        if reference is None:
            info.delete_reason = "Waiting for merge"
            return
    else:
        reference, event = info.last_activity, "last activity"
        if reference is None:
            return

    if rule.timing == DeletionTiming.IMMEDIATE:
        info.scheduled_delete = "immediate"
        info.delete_date = reference
        info.delete_reason = f"Immediate deletion after {event}"
    else:
        info.scheduled_delete = "scheduled"
        info.delete_date = reference + timedelta(days=rule.delete_after_days)
        info.delete_reason = f"Delete {rule.delete_after_days} days after {event}"
