"""Config compiler: turns raw workspace opinions into decision tables.

Compilation is pure: no I/O, no clock, no environment. The same
``WorkspaceConfiguration`` always yields an equal ``CompiledConfiguration``.
"""

from __future__ import annotations

import copy
import logging
import re

from aipm.config.loader import WorkspaceConfiguration
from aipm.config.models import (
    BranchPattern,
    CompiledConfiguration,
    DeletionTiming,
    DeletionTrigger,
    LifecycleRule,
    PromptOption,
    PromptTemplate,
    ProtectedBranches,
)
from aipm.errors import ConfigurationError

logger = logging.getLogger(__name__)

_REFERENCE_RE = re.compile(r"\{naming\.([A-Za-z0-9_-]+)\}")
_PLACEHOLDER_RE = re.compile(r"\{[^{}]+\}")
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMG]?B)?\s*$", re.IGNORECASE)

_SIZE_UNITS = {"B": 1, "KB": 1024, "MB": 1024**2, "GB": 1024**3}

NEVER_VALUES = ("never", "-1", "")


def _prompt(message: str, *options: tuple[str, str, str]) -> PromptTemplate:
    """Build a template from (text, kind, target) triples; kind is action|value."""
    built = []
    for i, (text, kind, target) in enumerate(options, start=1):
        if kind == "value":
            built.append(PromptOption(key=str(i), text=text, value=target))
        else:
            built.append(PromptOption(key=str(i), text=text, action=target))
    return PromptTemplate(message=message, options=built)


def _builtin_prompts(main_branch: str) -> dict[str, dict[str, PromptTemplate]]:
    return {
        "branchCreation": {
            "protected": _prompt(
                "You're trying to save to main branch. What would you like to do?",
                ("Create feature branch", "action", "create-feature"),
                ("Create session branch", "action", "create-session"),
                ("Cancel", "action", "cancel"),
            ),
            "typeSelection": _prompt(
                "What type of work is this?",
                ("Feature - New functionality", "value", "feature"),
                ("Bug Fix - Fixing an issue", "value", "bugfix"),
                ("Documentation - Docs only", "value", "docs"),
                ("Experiment - Just trying", "value", "test"),
            ),
        },
        "merging": {
            "featureComplete": _prompt(
                "Is this feature complete and ready to merge?",
                ("Yes, merge now", "action", "merge"),
                ("No, keep working", "action", "continue"),
                ("Create PR for review", "action", "pr"),
            ),
            "mergeConflict": _prompt(
                "Merge conflict detected. How to resolve?",
                ("Open editor to resolve", "action", "editor"),
                ("Keep local version", "action", "local"),
                ("Keep remote version", "action", "remote"),
                ("Abort operation", "action", "abort"),
            ),
        },
        "synchronization": {
            "pullOnStart": _prompt(
                "Remote has new changes. Update now?",
                ("Yes, update", "action", "pull"),
                ("No, work offline", "action", "skip"),
                ("View changes first", "action", "diff"),
            ),
            "pushOnStop": _prompt(
                "You have unpushed changes. Share them?",
                ("Yes, push all", "action", "push-all"),
                ("Push some", "action", "push-select"),
                ("No, keep local", "action", "skip"),
            ),
        },
        "cleanup": {
            "afterMerge": _prompt(
                "Branch merged successfully. Delete it?",
                ("Yes, delete now", "action", "delete"),
                ("Keep for now", "action", "keep"),
                ("Archive it", "action", "archive"),
            ),
        },
        "branchFlow": {
            "selectSource": _prompt(
                "Create new branch from:",
                ("Current branch", "value", "current"),
                ("Main branch", "value", main_branch),
                ("Other branch", "value", "select"),
            ),
            "selectTarget": _prompt(
                "Merge this branch to:",
                ("Parent branch", "value", "parent"),
                ("Main branch", "value", main_branch),
                ("Other branch", "value", "select"),
            ),
        },
    }


class _ReferenceResolver:
    """Expands ``{naming.<type>}`` references, detecting cycles."""

    def __init__(self, naming: dict, error_handling: dict):
        self.naming = naming
        self.on_invalid = error_handling.get("onInvalidReference", "fail")
        self.on_circular = error_handling.get("onCircularReference", "fail")

    def resolve_type(self, type_name: str) -> str:
        return self.resolve(str(self.naming[type_name]), (type_name,))

    def resolve(self, text: str, stack: tuple[str, ...] = ()) -> str:
        def replace(match: re.Match) -> str:
            ref = match.group(1)
            if ref in stack:
                chain = " -> ".join(stack + (ref,))
                return self._handle(self.on_circular, f"Circular naming reference: {chain}", match.group(0))
            if ref not in self.naming:
                return self._handle(self.on_invalid, f"Unknown naming reference: {{naming.{ref}}}", match.group(0))
            return self.resolve(str(self.naming[ref]), stack + (ref,))

        return _REFERENCE_RE.sub(replace, text)

    @staticmethod
    def _handle(policy: str, message: str, literal: str) -> str:
        if policy == "fail":
            raise ConfigurationError(message)
        if policy == "warn":
            logger.warning("%s (left unresolved)", message)
        return literal


def compile_configuration(config: WorkspaceConfiguration) -> CompiledConfiguration:
    """Derive every decision table from ``config``.

    Raises:
        ConfigurationError: On unresolvable references (when configured to
            fail) or malformed retention/size values.
    """
    raw = config.raw
    prefix = raw["branching"]["prefix"]
    main_branch = prefix + raw["branching"].get("mainBranchSuffix", "MAIN")
    error_handling = copy.deepcopy(raw.get("errorHandling", {}))
    resolver = _ReferenceResolver(raw.get("naming", {}), error_handling)

    compiled = CompiledConfiguration(
        main_branch=main_branch,
        prefix=prefix,
        branch_patterns=compile_branch_patterns(config.branch_types, prefix, resolver),
        protected=compile_protected_branches(raw, prefix),
        lifecycle=compile_lifecycle(raw),
        lifecycle_global=copy.deepcopy(raw.get("lifecycle", {}).get("global", {})),
        workflows=compile_workflows(raw, main_branch),
        validation=compile_validation(raw),
        memory=compile_memory(raw, prefix),
        team=compile_team(raw),
        sessions=compile_sessions(raw, resolver),
        defaults=compile_defaults(raw),
        error_handling=compile_error_handling(error_handling),
        initialization=copy.deepcopy(raw.get("initialization", {})),
        settings=copy.deepcopy(raw.get("settings", {})),
    )
    logger.debug(
        "Compiled configuration %s: %d branch types, main branch %s",
        config.fingerprint[:12], len(compiled.branch_patterns), main_branch,
    )
    return compiled


# ---------------------------------------------------------------------------
# Branch patterns
# ---------------------------------------------------------------------------


def compile_branch_patterns(type_names: list[str], prefix: str, resolver: _ReferenceResolver) -> dict[str, BranchPattern]:
    patterns = {}
    for type_name in type_names:
        original = resolver.resolve_type(type_name)
        patterns[type_name] = build_branch_pattern(type_name, original, prefix)
    return patterns


def build_branch_pattern(type_name: str, original: str, prefix: str) -> BranchPattern:
    full = prefix + original
    literals = _PLACEHOLDER_RE.split(full)
    regex = "^" + "(.+)".join(re.escape(part) for part in literals) + "$"
    return BranchPattern(
        type_name=type_name,
        original=original,
        full=full,
        glob=_PLACEHOLDER_RE.sub("*", full),
        regex=regex,
        specificity=sum(len(part) for part in literals),
    )


def compile_protected_branches(raw: dict, prefix: str) -> ProtectedBranches:
    declared = raw["branching"].get("protectedBranches") or {}
    user = [str(b) for b in declared.get("userBranches") or []]
    aipm_branches = [
        {"suffix": str(suffix), "full": prefix + str(suffix)}
        for suffix in declared.get("aipmBranchSuffixes") or []
    ]

    combined: list[str] = []
    for name in user + [entry["full"] for entry in aipm_branches]:
        if name not in combined:
            combined.append(name)
    return ProtectedBranches(user_branches=user, aipm_branches=aipm_branches, all=combined)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def compile_lifecycle(raw: dict) -> dict[str, LifecycleRule]:
    rules = {}
    for type_name, rule in raw.get("lifecycle", {}).items():
        if type_name == "global" or not isinstance(rule, dict):
            continue
        rules[type_name] = build_lifecycle_rule(type_name, rule)
    return rules


def build_lifecycle_rule(type_name: str, rule: dict) -> LifecycleRule:
    delete_after_merge = _as_bool(rule.get("deleteAfterMerge", False))
    days_raw = rule.get("daysToKeep")
    days = parse_retention(days_raw, f"lifecycle.{type_name}.daysToKeep")
    trigger = DeletionTrigger.SINCE_MERGE if delete_after_merge else DeletionTrigger.SINCE_LAST_ACTIVITY
    event = "merge" if delete_after_merge else "last activity"

    if days is None:
        timing = DeletionTiming.NEVER
        rationale = "Keep forever"
    elif days == 0:
        timing = DeletionTiming.IMMEDIATE
        rationale = f"Delete immediately after {event}"
    else:
        timing = DeletionTiming.SCHEDULED
        rationale = f"Delete {days} days after {event}"

    max_count = rule.get("maxCount", rule.get("maxSessions"))
    return LifecycleRule(
        delete_after_merge=delete_after_merge,
        days_to_keep=days_raw,
        timing=timing,
        delete_after_days=days,
        trigger=trigger,
        rationale=rationale,
        max_count=int(max_count) if max_count is not None else None,
    )


def parse_retention(value, field_name: str = "daysToKeep") -> int | None:
    """Retention in days, or None when the branch is kept forever."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip().lower()
        if text in NEVER_VALUES:
            return None
        try:
            value = int(text)
        except ValueError:
            raise ConfigurationError(f"{field_name}: expected a number of days or 'never', got '{value}'")
    if value < 0:
        return None
    return int(value)


# ---------------------------------------------------------------------------
# Workflows and policies
# ---------------------------------------------------------------------------


def compile_workflows(raw: dict, main_branch: str) -> dict:
    workflows = copy.deepcopy(raw.get("workflows", {}))
    prompts = _builtin_prompts(main_branch)

    flow = workflows.setdefault("branchFlow", {})
    for side in ("sources", "targets"):
        table = flow.setdefault(side, {})
        table["default"] = _substitute_main(table.get("default") or "{mainBranch}", main_branch)
        table["byType"] = {
            glob: _substitute_main(str(target), main_branch)
            for glob, target in (table.get("byType") or {}).items()
        }

    for workflow, templates in prompts.items():
        section = workflows.setdefault(workflow, {})
        section["prompts"] = {name: t.to_dict() for name, t in templates.items()}

    return workflows


def compile_validation(raw: dict) -> dict:
    declared = raw.get("validation", {})
    mode = declared.get("mode", "strict")
    validation = {
        "mode": mode,
        "rules": copy.deepcopy(declared.get("rules", {})),
        "blockers": copy.deepcopy(declared.get("blockers", {})),
    }
    if mode == "gradual":
        gradual = declared.get("gradual", {})
        validation["gradual"] = {
            "startLevel": gradual.get("startLevel", "relaxed"),
            "endLevel": gradual.get("endLevel", "strict"),
            "progression": copy.deepcopy(gradual.get("progression", {})),
            "currentLevel": gradual.get("startLevel", "relaxed"),
        }
        validation["currentLevel"] = validation["gradual"]["currentLevel"]
    else:
        validation["currentLevel"] = mode
    return validation


def compile_memory(raw: dict, prefix: str) -> dict:
    declared = raw.get("memory", {})
    entity_prefix = declared.get("entityPrefix") or prefix
    categories = [str(c) for c in declared.get("categories") or []]
    max_size = declared.get("maxSize", "10MB")
    alternatives = "|".join(re.escape(c) for c in categories) or "[A-Z]+"
    return {
        "entityPrefix": entity_prefix,
        "categories": categories,
        "entityRegex": f"^{re.escape(entity_prefix)}({alternatives})_",
        "maxSize": max_size,
        "maxSizeBytes": parse_size(max_size, "memory.maxSize"),
        "categoryRules": copy.deepcopy(declared.get("categoryRules", {})),
        "examples": [f"{entity_prefix}{c}_DESCRIPTION" for c in categories],
    }


def compile_team(raw: dict) -> dict:
    team = copy.deepcopy(raw.get("team", {}))
    sync = team.setdefault("sync", {})
    sync.setdefault("prompt", {})["messages"] = {
        "remoteAhead": "Remote has updates. Sync now?",
        "diverged": "Your branch and remote have diverged. How to proceed?",
        "mergeConflicts": "Merge conflicts detected during sync.",
    }
    sync.setdefault("divergence", {})["prompts"] = {
        "resolve": _prompt(
            "Your branch and remote have diverged. How to proceed?",
            ("Merge remote changes", "action", "merge"),
            ("Rebase onto remote", "action", "rebase"),
            ("Keep mine only", "action", "force"),
            ("View differences", "action", "diff"),
        ).to_dict()
    }
    sync.setdefault("conflicts", {})["prompts"] = {
        "resolve": _prompt(
            "Merge conflict detected. How to resolve?",
            ("Keep my version", "action", "ours"),
            ("Take their version", "action", "theirs"),
            ("Manual merge", "action", "manual"),
            ("Abort operation", "action", "abort"),
        ).to_dict()
    }
    return team


def compile_sessions(raw: dict, resolver: _ReferenceResolver) -> dict:
    sessions = copy.deepcopy(raw.get("sessions", {}))
    pattern = str(sessions.get("namePattern") or "{naming.session}")
    sessions["namePattern"] = pattern
    sessions["resolvedNamePattern"] = resolver.resolve(pattern)
    sessions["prompts"] = {
        "conflict": _prompt(
            "Session has conflicts with parent branch. Continue?",
            ("Merge anyway", "action", "merge"),
            ("Keep session separate", "action", "keep"),
            ("Discard session", "action", "discard"),
        ).to_dict()
    }
    return sessions


def compile_defaults(raw: dict) -> dict:
    defaults = copy.deepcopy(raw.get("defaults", {}))
    limits = defaults.setdefault("limits", {})
    limits["memorySizeBytes"] = parse_size(limits.get("memorySize", "10MB"), "defaults.limits.memorySize")
    return defaults


def compile_error_handling(error_handling: dict) -> dict:
    compiled = copy.deepcopy(error_handling)
    compiled["prompts"] = {
        "missingBranchType": _prompt(
            "Unknown branch type. How to handle?",
            ("Use default rules", "action", "default"),
            ("Skip this branch", "action", "skip"),
            ("Abort operation", "action", "abort"),
        ).to_dict()
    }
    return compiled


def parse_size(value, field_name: str = "size") -> int:
    """Convert ``"10MB"``-style sizes to bytes. Bare numbers are megabytes."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value * _SIZE_UNITS["MB"])
    match = _SIZE_RE.match(str(value))
    if not match:
        raise ConfigurationError(f"{field_name}: invalid size '{value}'")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[(unit or "MB").upper()])


def _substitute_main(text: str, main_branch: str) -> str:
    return text.replace("{mainBranch}", main_branch)


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)
