"""Incremental snapshot updates for git operations reported by callers.

Each handler mutates the ``repositorySnapshot`` section of a working
document in place and returns the branch names whose deletion projection
must be recomputed.
"""

from __future__ import annotations

from datetime import datetime

from aipm.config.models import CompiledConfiguration
from aipm.errors import StateValidationError
from aipm.repo.models import BranchInfo, to_iso
from aipm.repo.inspector import project_deletion


class GitEvent:
    BRANCH_CREATED = "branch-created"
    BRANCH_SWITCHED = "branch-switched"
    BRANCH_DELETED = "branch-deleted"
    FILES_MODIFIED = "files-modified"
    COMMIT_CREATED = "commit-created"
    BRANCH_MERGED = "branch-merged"
    REMOTE_UPDATED = "remote-updated"


def _require(details: dict, key: str, event: str):
    value = details.get(key)
    if value in (None, ""):
        raise StateValidationError(f"Event '{event}' requires '{key}'")
    return value


def _branch_entry(snapshot: dict, name: str, compiled: CompiledConfiguration) -> dict:
    branches = snapshot.setdefault("branches", {})
    if name not in branches:
        reason = compiled.protected.reason_for(name)
        branches[name] = BranchInfo(
            name=name,
            type=compiled.classify(name),
            is_protected=bool(reason),
            protection_reason=reason,
        ).to_dict()
    return branches[name]


def _branch_created(snapshot, details, now, compiled):
    name = _require(details, "branch", GitEvent.BRANCH_CREATED)
    entry = _branch_entry(snapshot, name, compiled)
    entry.update({
        "exists": True,
        "created": now,
        "lastActivity": now,
        "parent": details.get("parent") or snapshot.get("currentBranch", ""),
    })
    if details.get("head"):
        entry["head"] = details["head"]
    snapshot["currentBranch"] = name
    return [name]


def _branch_switched(snapshot, details, now, compiled):
    snapshot["currentBranch"] = _require(details, "branch", GitEvent.BRANCH_SWITCHED)
    return []


def _branch_deleted(snapshot, details, now, compiled):
    name = _require(details, "branch", GitEvent.BRANCH_DELETED)
    snapshot.get("branches", {}).pop(name, None)
    return []


def _files_modified(snapshot, details, now, compiled):
    count = details.get("count", 1)
    if not isinstance(count, int) or isinstance(count, bool) or count < 0:
        raise StateValidationError(f"Event 'files-modified' count must be a non-negative integer, got {count!r}")
    snapshot["uncommittedCount"] = count
    snapshot["workingTreeClean"] = count == 0
    if count == 0:
        snapshot["uncommittedChanges"] = []
    return []


def _commit_created(snapshot, details, now, compiled):
    name = details.get("branch") or snapshot.get("currentBranch", "")
    snapshot["workingTreeClean"] = True
    snapshot["uncommittedCount"] = 0
    snapshot["uncommittedChanges"] = []
    if name in snapshot.get("branches", {}):
        entry = snapshot["branches"][name]
        entry["lastActivity"] = now
        if details.get("head"):
            entry["head"] = details["head"]
        return [name]
    return []


def _branch_merged(snapshot, details, now, compiled):
    name = details.get("branch") or snapshot.get("currentBranch", "")
    if not name:
        raise StateValidationError("Event 'branch-merged' requires 'branch'")
    entry = _branch_entry(snapshot, name, compiled)
    entry["mergeDate"] = now
    entry["mergedTo"] = details.get("target") or compiled.main_branch
    return [name]


def _remote_updated(snapshot, details, now, compiled):
    remote = snapshot.setdefault("remoteStatus", {})
    for key in ("ahead", "behind"):
        value = details.get(key, remote.get(key, 0))
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise StateValidationError(f"Event 'remote-updated' {key} must be a non-negative integer")
        remote[key] = value
    remote["diverged"] = remote["ahead"] > 0 and remote["behind"] > 0
    return []


EVENT_HANDLERS = {
    GitEvent.BRANCH_CREATED: _branch_created,
    GitEvent.BRANCH_SWITCHED: _branch_switched,
    GitEvent.BRANCH_DELETED: _branch_deleted,
    GitEvent.FILES_MODIFIED: _files_modified,
    GitEvent.COMMIT_CREATED: _commit_created,
    GitEvent.BRANCH_MERGED: _branch_merged,
    GitEvent.REMOTE_UPDATED: _remote_updated,
}


def apply_event(doc: dict, event: str, details: dict, now: datetime, compiled: CompiledConfiguration) -> None:
    """Apply ``event`` to the working document's snapshot section."""
    handler = EVENT_HANDLERS.get(event)
    if handler is None:
        raise StateValidationError(
            f"Unknown event '{event}'. Known events: {', '.join(sorted(EVENT_HANDLERS))}"
        )
    snapshot = doc["repositorySnapshot"]
    touched = handler(snapshot, details, to_iso(now), compiled)

    for name in touched:
        info = BranchInfo.from_dict(name, snapshot["branches"][name])
        project_deletion(info, compiled)
        snapshot["branches"][name] = info.to_dict()
