"""Repository snapshot types.

Timestamps are timezone-aware UTC datetimes in memory and ISO-8601 strings
on disk.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


class ChangeType:
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"
    UNTRACKED = "untracked"
    OTHER = "other"


class Operation:
    NONE = ""
    MERGE = "merge"
    REBASE = "rebase"
    CHERRY_PICK = "cherry-pick"


DETACHED_HEAD = "HEAD"


def categorize_status(code: str) -> str:
    """Map a two-letter porcelain status code to a ChangeType."""
    if code == "??":
        return ChangeType.UNTRACKED
    if "R" in code:
        return ChangeType.RENAMED
    if "A" in code:
        return ChangeType.ADDED
    if "D" in code:
        return ChangeType.DELETED
    if "M" in code:
        return ChangeType.MODIFIED
    return ChangeType.OTHER


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class FileChange:
    path: str
    change_type: str

    def to_dict(self) -> dict:
        return {"file": self.path, "type": self.change_type}

    @classmethod
    def from_dict(cls, data: dict) -> "FileChange":
        return cls(path=data["file"], change_type=data.get("type", ChangeType.OTHER))


@dataclass
class BranchInfo:
    """Everything recorded about one candidate branch."""

    name: str
    exists: bool = True
    head: str = ""
    parent: str = ""
    created: datetime | None = None
    last_activity: datetime | None = None
    merge_date: datetime | None = None
    merged_to: str = ""
    is_protected: bool = False
    protection_reason: str = ""
    type: str = "unknown"
    scheduled_delete: str = "never"
    delete_date: datetime | None = None
    delete_reason: str = ""
    upstream: str = ""
    has_remote: bool = False

    @property
    def merged(self) -> bool:
        return self.merge_date is not None

    def to_dict(self) -> dict:
        return {
            "exists": self.exists,
            "head": self.head,
            "parent": self.parent,
            "created": to_iso(self.created),
            "lastActivity": to_iso(self.last_activity),
            "mergeDate": to_iso(self.merge_date),
            "mergedTo": self.merged_to,
            "isProtected": self.is_protected,
            "protectionReason": self.protection_reason,
            "type": self.type,
            "scheduledDelete": self.scheduled_delete,
            "deleteDate": to_iso(self.delete_date),
            "deleteReason": self.delete_reason,
            "upstream": self.upstream,
            "hasRemote": self.has_remote,
        }

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "BranchInfo":
        return cls(
            name=name,
            exists=data.get("exists", True),
            head=data.get("head", ""),
            parent=data.get("parent", ""),
            created=from_iso(data.get("created")),
            last_activity=from_iso(data.get("lastActivity")),
            merge_date=from_iso(data.get("mergeDate")),
            merged_to=data.get("mergedTo", ""),
            is_protected=data.get("isProtected", False),
            protection_reason=data.get("protectionReason", ""),
            type=data.get("type", "unknown"),
            scheduled_delete=data.get("scheduledDelete", "never"),
            delete_date=from_iso(data.get("deleteDate")),
            delete_reason=data.get("deleteReason", ""),
            upstream=data.get("upstream", ""),
            has_remote=data.get("hasRemote", False),
        )


@dataclass
class RepositorySnapshot:
    """Read-only view of the repository at ``captured_at``."""

    captured_at: datetime
    current_branch: str = DETACHED_HEAD
    working_tree_clean: bool = True
    changes: list[FileChange] = field(default_factory=list)
    stash_count: int = 0
    ahead: int = 0
    behind: int = 0
    upstream: str = ""
    has_remote: bool = False
    operation_in_progress: str = Operation.NONE
    root: str = ""
    user: str = ""
    branches: dict[str, BranchInfo] = field(default_factory=dict)
    uncommitted_count: int = 0

    def __post_init__(self):
        # Events may report a count without the file list.
        if not self.uncommitted_count:
            self.uncommitted_count = len(self.changes)

    @property
    def diverged(self) -> bool:
        return self.ahead > 0 and self.behind > 0

    @property
    def detached(self) -> bool:
        return self.current_branch in ("", DETACHED_HEAD)

    def to_dict(self) -> dict:
        return {
            "capturedAt": to_iso(self.captured_at),
            "currentBranch": self.current_branch,
            "workingTreeClean": self.working_tree_clean,
            "uncommittedChanges": [c.to_dict() for c in self.changes],
            "uncommittedCount": self.uncommitted_count,
            "stashCount": self.stash_count,
            "remoteStatus": {
                "ahead": self.ahead,
                "behind": self.behind,
                "diverged": self.diverged,
                "upstream": self.upstream,
            },
            "hasRemote": self.has_remote,
            "operationInProgress": self.operation_in_progress,
            "repository": {"root": self.root, "user": self.user},
            "branches": {name: b.to_dict() for name, b in sorted(self.branches.items())},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RepositorySnapshot":
        remote = data.get("remoteStatus", {})
        repository = data.get("repository", {})
        changes = [FileChange.from_dict(c) for c in data.get("uncommittedChanges", [])]
        return cls(
            captured_at=from_iso(data.get("capturedAt")) or datetime.now(timezone.utc),
            current_branch=data.get("currentBranch") or DETACHED_HEAD,
            working_tree_clean=data.get("workingTreeClean", not changes),
            changes=changes,
            uncommitted_count=data.get("uncommittedCount", len(changes)),
            stash_count=data.get("stashCount", 0),
            ahead=remote.get("ahead", 0),
            behind=remote.get("behind", 0),
            upstream=remote.get("upstream", ""),
            has_remote=data.get("hasRemote", False),
            operation_in_progress=data.get("operationInProgress", Operation.NONE),
            root=repository.get("root", ""),
            user=repository.get("user", ""),
            branches={
                name: BranchInfo.from_dict(name, b)
                for name, b in data.get("branches", {}).items()
            },
        )
