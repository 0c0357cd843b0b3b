"""Decision set: everything callers may ask without re-deriving it."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class SyncAction(Enum):
    """Tri-state outcome for fetch/push questions."""

    YES = "yes"
    NO = "no"
    ASK_USER = "ask-user"


@dataclass
class SyncDecision:
    action: SyncAction
    reason: str = ""

    @property
    def needs_prompt(self) -> bool:
        return self.action == SyncAction.ASK_USER


@dataclass
class StaleBranch:
    branch: str
    days_old: int
    reason: str

    def to_dict(self) -> dict:
        return {"branch": self.branch, "daysOld": self.days_old, "reason": self.reason}


@dataclass
class CleanupCandidate:
    branch: str
    reason: str

    def to_dict(self) -> dict:
        return {"branch": self.branch, "reason": self.reason}


@dataclass
class DecisionSet:
    computed_at: str = ""
    can_create_branch: bool = True
    cannot_create_reasons: list[str] = field(default_factory=list)
    suggested_branch_type: str = "feature"
    type_suggestion_reason: str = ""
    create_from: str = ""
    can_merge_current_branch: bool = False
    cannot_merge_reasons: list[str] = field(default_factory=list)
    merge_target: str = ""
    merge_strategy: str = ""
    stale_branches: list[StaleBranch] = field(default_factory=list)
    branches_for_cleanup: list[CleanupCandidate] = field(default_factory=list)
    next_session_name: str = ""
    validation_mode: str = "strict"
    fetch_on_start: SyncDecision = field(default_factory=lambda: SyncDecision(SyncAction.NO))
    push_on_stop: SyncDecision = field(default_factory=lambda: SyncDecision(SyncAction.NO))
    prompts: dict[str, dict] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "computedAt": self.computed_at,
            "canCreateBranch": self.can_create_branch,
            "cannotCreateReasons": list(self.cannot_create_reasons),
            "suggestedBranchType": self.suggested_branch_type,
            "typeSuggestionReason": self.type_suggestion_reason,
            "createFrom": self.create_from,
            "canMergeCurrentBranch": self.can_merge_current_branch,
            "cannotMergeReasons": list(self.cannot_merge_reasons),
            "mergeTarget": self.merge_target,
            "mergeStrategy": self.merge_strategy,
            "staleBranches": [s.to_dict() for s in self.stale_branches],
            "branchesForCleanup": [c.to_dict() for c in self.branches_for_cleanup],
            "nextSessionName": self.next_session_name,
            "validationMode": self.validation_mode,
            "shouldFetchOnStart": self.fetch_on_start.action.value,
            "fetchReason": self.fetch_on_start.reason,
            "shouldPushOnStop": self.push_on_stop.action.value,
            "pushReason": self.push_on_stop.reason,
            "prompts": dict(self.prompts),
        }
