"""Compiled configuration: the derived tables every decision reads from.

All types serialize to camelCase JSON through explicit ``to_dict`` /
``from_dict`` pairs. Branch names and glob keys appear as dict keys, so the
serializers never rewrite keys inside those tables.
"""

from __future__ import annotations

import copy
import fnmatch
import re
from dataclasses import dataclass, field
from enum import Enum


class DeletionTiming(str, Enum):
    NEVER = "never"
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


class DeletionTrigger(str, Enum):
    SINCE_MERGE = "since-merge"
    SINCE_LAST_ACTIVITY = "since-last-activity"


# Prompt name -> (workflow, prompt key) inside CompiledConfiguration.workflows
PROMPT_LOCATIONS = {
    "protectedBranch": ("branchCreation", "protected"),
    "branchType": ("branchCreation", "typeSelection"),
    "featureComplete": ("merging", "featureComplete"),
    "mergeConflict": ("merging", "mergeConflict"),
    "pullOnStart": ("synchronization", "pullOnStart"),
    "pushOnStop": ("synchronization", "pushOnStop"),
    "afterMerge": ("cleanup", "afterMerge"),
    "selectSource": ("branchFlow", "selectSource"),
    "selectTarget": ("branchFlow", "selectTarget"),
}


@dataclass
class PromptOption:
    key: str
    text: str
    action: str = ""
    value: str = ""

    def to_dict(self) -> dict:
        data = {"key": self.key, "text": self.text}
        if self.action:
            data["action"] = self.action
        if self.value:
            data["value"] = self.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PromptOption":
        return cls(
            key=str(data["key"]),
            text=data["text"],
            action=data.get("action", ""),
            value=data.get("value", ""),
        )


@dataclass
class PromptTemplate:
    """A question plus its ordered answer options."""

    message: str
    options: list[PromptOption] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"message": self.message, "options": [o.to_dict() for o in self.options]}

    @classmethod
    def from_dict(cls, data: dict) -> "PromptTemplate":
        return cls(
            message=data["message"],
            options=[PromptOption.from_dict(o) for o in data.get("options", [])],
        )


@dataclass
class BranchPattern:
    """Naming pattern for one branch type in every form callers need."""

    type_name: str
    original: str
    full: str
    glob: str
    regex: str
    specificity: int

    def matches(self, branch: str) -> bool:
        return re.match(self.regex, branch) is not None

    def to_dict(self) -> dict:
        return {
            "original": self.original,
            "full": self.full,
            "glob": self.glob,
            "regex": self.regex,
            "specificity": self.specificity,
        }

    @classmethod
    def from_dict(cls, type_name: str, data: dict) -> "BranchPattern":
        return cls(
            type_name=type_name,
            original=data["original"],
            full=data["full"],
            glob=data["glob"],
            regex=data["regex"],
            specificity=data["specificity"],
        )


@dataclass
class ProtectedBranches:
    user_branches: list[str] = field(default_factory=list)
    aipm_branches: list[dict] = field(default_factory=list)
    all: list[str] = field(default_factory=list)

    def reason_for(self, branch: str) -> str:
        if branch in self.user_branches:
            return "user_protected"
        if any(entry["full"] == branch for entry in self.aipm_branches):
            return "aipm_protected"
        return ""

    def to_dict(self) -> dict:
        return {
            "userBranches": list(self.user_branches),
            "aipmBranches": copy.deepcopy(self.aipm_branches),
            "all": list(self.all),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProtectedBranches":
        return cls(
            user_branches=list(data.get("userBranches", [])),
            aipm_branches=copy.deepcopy(data.get("aipmBranches", [])),
            all=list(data.get("all", [])),
        )


@dataclass
class LifecycleRule:
    """Retention rule for one branch type."""

    delete_after_merge: bool
    days_to_keep: int | str | None
    timing: DeletionTiming
    delete_after_days: int | None
    trigger: DeletionTrigger
    rationale: str
    max_count: int | None = None

    def to_dict(self) -> dict:
        data = {
            "deleteAfterMerge": self.delete_after_merge,
            "daysToKeep": self.days_to_keep,
            "timing": self.timing.value,
            "deleteAfterDays": self.delete_after_days,
            "trigger": self.trigger.value,
            "rationale": self.rationale,
        }
        if self.max_count is not None:
            data["maxCount"] = self.max_count
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LifecycleRule":
        return cls(
            delete_after_merge=data["deleteAfterMerge"],
            days_to_keep=data.get("daysToKeep"),
            timing=DeletionTiming(data["timing"]),
            delete_after_days=data.get("deleteAfterDays"),
            trigger=DeletionTrigger(data["trigger"]),
            rationale=data.get("rationale", ""),
            max_count=data.get("maxCount"),
        )


@dataclass
class CompiledConfiguration:
    main_branch: str
    prefix: str
    branch_patterns: dict[str, BranchPattern] = field(default_factory=dict)
    protected: ProtectedBranches = field(default_factory=ProtectedBranches)
    lifecycle: dict[str, LifecycleRule] = field(default_factory=dict)
    lifecycle_global: dict = field(default_factory=dict)
    workflows: dict = field(default_factory=dict)
    validation: dict = field(default_factory=dict)
    memory: dict = field(default_factory=dict)
    team: dict = field(default_factory=dict)
    sessions: dict = field(default_factory=dict)
    defaults: dict = field(default_factory=dict)
    error_handling: dict = field(default_factory=dict)
    initialization: dict = field(default_factory=dict)
    settings: dict = field(default_factory=dict)

    # -- lookups ---------------------------------------------------------

    def patterns_by_specificity(self) -> list[BranchPattern]:
        """Patterns ordered most specific first; declaration order breaks ties."""
        ordered = list(self.branch_patterns.values())
        return sorted(ordered, key=lambda p: -p.specificity)

    def classify(self, branch: str) -> str:
        """Branch type name for ``branch``.

        ``main`` for the main branch, ``user`` for branches outside the
        namespace, ``unknown`` for namespaced branches matching no pattern.
        """
        if branch == self.main_branch:
            return "main"
        if not branch.startswith(self.prefix):
            return "user"
        for pattern in self.patterns_by_specificity():
            if pattern.matches(branch):
                return pattern.type_name
        return "unknown"

    def is_protected(self, branch: str) -> bool:
        return branch in self.protected.all

    def lifecycle_for(self, type_name: str) -> LifecycleRule | None:
        rule = self.lifecycle.get(type_name)
        if rule is None and type_name in self.branch_patterns:
            if self.error_handling.get("onMissingBranchType") == "use-feature":
                return self.lifecycle.get("feature")
        return rule

    def prompt(self, name: str) -> PromptTemplate | None:
        location = PROMPT_LOCATIONS.get(name)
        if location is None:
            return None
        workflow, key = location
        data = self.workflows.get(workflow, {}).get("prompts", {}).get(key)
        return PromptTemplate.from_dict(data) if data else None

    def flow_target_for(self, branch_suffix: str) -> str:
        """Merge target rule for a branch (suffix after the prefix).

        The most specific matching ``byType`` glob wins; otherwise the default.
        """
        targets = self.workflows.get("branchFlow", {}).get("targets", {})
        return _match_by_type(targets, branch_suffix)

    def flow_source_for(self, branch_suffix: str) -> str:
        sources = self.workflows.get("branchFlow", {}).get("sources", {})
        return _match_by_type(sources, branch_suffix)

    # -- serialization ---------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "mainBranch": self.main_branch,
            "prefix": self.prefix,
            "branchPatterns": {name: p.to_dict() for name, p in self.branch_patterns.items()},
            "protectedBranches": self.protected.to_dict(),
            "lifecycle": {
                "global": copy.deepcopy(self.lifecycle_global),
                "types": {name: r.to_dict() for name, r in self.lifecycle.items()},
            },
            "workflows": copy.deepcopy(self.workflows),
            "validation": copy.deepcopy(self.validation),
            "memory": copy.deepcopy(self.memory),
            "team": copy.deepcopy(self.team),
            "sessions": copy.deepcopy(self.sessions),
            "defaults": copy.deepcopy(self.defaults),
            "errorHandling": copy.deepcopy(self.error_handling),
            "initialization": copy.deepcopy(self.initialization),
            "settings": copy.deepcopy(self.settings),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CompiledConfiguration":
        lifecycle = data.get("lifecycle", {})
        return cls(
            main_branch=data["mainBranch"],
            prefix=data["prefix"],
            branch_patterns={
                name: BranchPattern.from_dict(name, p)
                for name, p in data.get("branchPatterns", {}).items()
            },
            protected=ProtectedBranches.from_dict(data.get("protectedBranches", {})),
            lifecycle={
                name: LifecycleRule.from_dict(r)
                for name, r in lifecycle.get("types", {}).items()
            },
            lifecycle_global=copy.deepcopy(lifecycle.get("global", {})),
            workflows=copy.deepcopy(data.get("workflows", {})),
            validation=copy.deepcopy(data.get("validation", {})),
            memory=copy.deepcopy(data.get("memory", {})),
            team=copy.deepcopy(data.get("team", {})),
            sessions=copy.deepcopy(data.get("sessions", {})),
            defaults=copy.deepcopy(data.get("defaults", {})),
            error_handling=copy.deepcopy(data.get("errorHandling", {})),
            initialization=copy.deepcopy(data.get("initialization", {})),
            settings=copy.deepcopy(data.get("settings", {})),
        )


def _glob_specificity(glob: str) -> int:
    return len(glob.replace("*", "").replace("?", ""))


def _match_by_type(table: dict, branch_suffix: str) -> str:
    """Target of the most specific matching glob; ties and misses use the default."""
    best = None
    best_score = -1
    tied = False
    for glob, target in table.get("byType", {}).items():
        if not fnmatch.fnmatchcase(branch_suffix, glob):
            continue
        score = _glob_specificity(glob)
        if score > best_score:
            best, best_score, tied = target, score, False
        elif score == best_score:
            tied = True
    if best is not None and not tied:
        return best
    return table.get("default", "")
