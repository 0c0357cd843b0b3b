"""Decision engine: pure derivation of the DecisionSet.

``make_decisions`` reads only its two arguments. The snapshot's capture
time is the only clock it sees, so the same inputs always produce the same
output.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

from aipm.config.models import CompiledConfiguration
from aipm.decisions.models import (
    CleanupCandidate,
    DecisionSet,
    StaleBranch,
    SyncAction,
    SyncDecision,
)
from aipm.repo.models import BranchInfo, RepositorySnapshot, to_iso

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)

# Branch types whose names never get a merge target or cleanup entry.
UNMANAGED_TYPES = ("main", "user", "unknown")


def make_decisions(compiled: CompiledConfiguration, snapshot: RepositorySnapshot) -> DecisionSet:
    decisions = DecisionSet(computed_at=to_iso(snapshot.captured_at) or "")

    decisions.can_create_branch, decisions.cannot_create_reasons = decide_create(compiled, snapshot)
    decisions.suggested_branch_type, decisions.type_suggestion_reason = suggest_branch_type(compiled, snapshot)
    decisions.create_from = branch_source(compiled, snapshot, decisions.suggested_branch_type)
    _decide_merge(decisions, compiled, snapshot)
    decisions.stale_branches = find_stale_branches(compiled, snapshot)
    decisions.branches_for_cleanup = find_cleanup_candidates(compiled, snapshot)
    decisions.next_session_name = next_session_name(compiled, snapshot)
    decisions.validation_mode = compiled.validation.get("currentLevel") or compiled.validation.get("mode", "strict")
    decisions.fetch_on_start = decide_fetch(compiled, snapshot)
    decisions.push_on_stop = decide_push(compiled, snapshot)
    decisions.prompts = collect_prompts(decisions, compiled, snapshot)
    return decisions


# ---------------------------------------------------------------------------
# Branch creation
# ---------------------------------------------------------------------------


def decide_create(compiled: CompiledConfiguration, snapshot: RepositorySnapshot) -> tuple[bool, list[str]]:
    reasons = []
    if snapshot.operation_in_progress:
        reasons.append(f"Operation in progress: {snapshot.operation_in_progress}")
    if compiled.validation.get("rules", {}).get("requireCleanTree") and not snapshot.working_tree_clean:
        reasons.append("Working tree has uncommitted changes")
    return not reasons, reasons


def suggest_branch_type(compiled: CompiledConfiguration, snapshot: RepositorySnapshot) -> tuple[str, str]:
    default = compiled.workflows.get("branchCreation", {}).get("defaultType") or "feature"
    sessions = compiled.sessions

    if sessions.get("enabled") and "session" in compiled.branch_patterns:
        has_session = any(b.type == "session" and b.exists for b in snapshot.branches.values())
        if not has_session and (not sessions.get("allowMultiple") or sessions.get("autoCreate")):
            return "session", "Sessions enabled and no session branch exists"

    return default, "Default branch type"


def branch_source(compiled: CompiledConfiguration, snapshot: RepositorySnapshot, branch_type: str) -> str:
    """Branch a new ``branch_type`` branch is created from."""
    pattern = compiled.branch_patterns.get(branch_type)
    sample = re.sub(r"\{[^}]*\}", "x", pattern.original) if pattern else f"{branch_type}/x"
    rule = compiled.flow_source_for(sample)
    if rule == "current" and not snapshot.detached:
        return snapshot.current_branch
    if rule in ("", "current"):
        return compiled.main_branch
    return rule


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def _decide_merge(decisions: DecisionSet, compiled: CompiledConfiguration, snapshot: RepositorySnapshot) -> None:
    reasons: list[str] = []
    target = ""
    strategy = ""
    current = snapshot.current_branch

    if snapshot.detached:
        reasons.append("No current branch")
    elif current == compiled.main_branch:
        reasons.append("Cannot merge main branch")
    else:
        info = snapshot.branches.get(current)
        branch_type = info.type if info else compiled.classify(current)

        if compiled.is_protected(current):
            reasons.append("Branch is protected")
        if branch_type == "user":
            reasons.append("Branch is outside the workspace namespace")
        elif branch_type == "unknown":
            reasons.append("Branch type is unknown")
        else:
            rule = compiled.flow_target_for(current[len(compiled.prefix):])
            if rule == "none":
                reasons.append("Branch type does not merge back")
            elif rule == "parent":
                target = info.parent if info and info.parent else compiled.main_branch
            elif rule in ("", "current"):
                target = compiled.main_branch
            else:
                target = rule

            merging = compiled.workflows.get("merging", {})
            if branch_type == "session":
                strategy = merging.get("sessionMerge", "")
            else:
                strategy = merging.get("featureComplete", "")

    decisions.can_merge_current_branch = not reasons
    decisions.cannot_merge_reasons = reasons
    decisions.merge_target = target if not reasons else ""
    decisions.merge_strategy = strategy if not reasons else ""


# ---------------------------------------------------------------------------
# Staleness and cleanup
# ---------------------------------------------------------------------------


def _managed(info: BranchInfo) -> bool:
    return info.exists and not info.is_protected and info.type not in UNMANAGED_TYPES


def find_stale_branches(compiled: CompiledConfiguration, snapshot: RepositorySnapshot) -> list[StaleBranch]:
    threshold = int(compiled.defaults.get("limits", {}).get("branchAgeDays", 90))
    now = snapshot.captured_at
    stale = []
    for name, info in sorted(snapshot.branches.items()):
        if not info.exists or info.is_protected or info.type in ("main", "user") or info.last_activity is None:
            continue
        days = (now - info.last_activity).days
        if days > threshold:
            stale.append(StaleBranch(branch=name, days_old=days, reason=f"No activity for {days} days"))
    return stale


def find_cleanup_candidates(compiled: CompiledConfiguration, snapshot: RepositorySnapshot) -> list[CleanupCandidate]:
    now = snapshot.captured_at
    found: dict[str, str] = {}

    for name, info in sorted(snapshot.branches.items()):
        if not _managed(info):
            continue
        if info.scheduled_delete == "immediate":
            found[name] = "Scheduled for immediate deletion"
        elif info.scheduled_delete == "scheduled" and info.delete_date is not None and info.delete_date <= now:
            found[name] = "Deletion date reached"

    session_rule = compiled.lifecycle_for("session")
    max_sessions = session_rule.max_count if session_rule else None
    if max_sessions is not None:
        sessions = [info for info in snapshot.branches.values() if _managed(info) and info.type == "session"]
        if len(sessions) > max_sessions:
            sessions.sort(key=lambda b: (b.last_activity or _OLDEST, b.name))
            for info in sessions[: len(sessions) - max_sessions]:
                found.setdefault(info.name, "Exceeds max session count")

    return [CleanupCandidate(branch=name, reason=reason) for name, reason in found.items()]


# ---------------------------------------------------------------------------
# Sessions and validation
# ---------------------------------------------------------------------------


def next_session_name(compiled: CompiledConfiguration, snapshot: RepositorySnapshot) -> str:
    sessions = compiled.sessions
    if not sessions.get("enabled"):
        return ""
    pattern = sessions.get("resolvedNamePattern") or sessions.get("namePattern") or "session/{timestamp}"
    captured = snapshot.captured_at.astimezone(timezone.utc)
    user = re.sub(r"[^A-Za-z0-9._-]+", "-", snapshot.user.strip()).strip("-").lower() or "user"
    name = (
        pattern.replace("{timestamp}", captured.strftime("%Y%m%d_%H%M%S"))
        .replace("{date}", captured.strftime("%Y-%m-%d"))
        .replace("{user}", user)
    )
    return compiled.prefix + name


# ---------------------------------------------------------------------------
# Synchronization
# ---------------------------------------------------------------------------


def _current_type(compiled: CompiledConfiguration, snapshot: RepositorySnapshot) -> str:
    info = snapshot.branches.get(snapshot.current_branch)
    return info.type if info else compiled.classify(snapshot.current_branch)


def _resolve_sync_mode(mode: str, compiled: CompiledConfiguration, snapshot: RepositorySnapshot, verb: str) -> SyncDecision:
    if mode == "always":
        return SyncDecision(SyncAction.YES, f"Always {verb}")
    if mode == "never":
        return SyncDecision(SyncAction.NO, f"Never {verb}")
    if mode == "if-clean":
        if snapshot.working_tree_clean:
            return SyncDecision(SyncAction.YES, "Working tree is clean")
        return SyncDecision(SyncAction.NO, "Working tree has uncommitted changes")
    if mode == "if-feature":
        branch_type = _current_type(compiled, snapshot)
        if branch_type in ("feature", "bugfix"):
            return SyncDecision(SyncAction.YES, f"Current branch is a {branch_type} branch")
        return SyncDecision(SyncAction.NO, f"Current branch is a {branch_type} branch")
    return SyncDecision(SyncAction.ASK_USER, f"Configured to ask before {verb}ing")


def decide_fetch(compiled: CompiledConfiguration, snapshot: RepositorySnapshot) -> SyncDecision:
    if not compiled.team.get("fetchOnStart", True):
        return SyncDecision(SyncAction.NO, "Fetch on start disabled")
    if not snapshot.has_remote:
        return SyncDecision(SyncAction.NO, "No remote configured")
    mode = compiled.workflows.get("synchronization", {}).get("pullOnStart", "prompt")
    return _resolve_sync_mode(mode, compiled, snapshot, "fetch")


def decide_push(compiled: CompiledConfiguration, snapshot: RepositorySnapshot) -> SyncDecision:
    if not snapshot.has_remote:
        return SyncDecision(SyncAction.NO, "No remote configured")
    mode = compiled.workflows.get("synchronization", {}).get("pushOnStop", "prompt")
    return _resolve_sync_mode(mode, compiled, snapshot, "push")


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def collect_prompts(decisions: DecisionSet, compiled: CompiledConfiguration, snapshot: RepositorySnapshot) -> dict[str, dict]:
    """Templates for every decision that resolved to asking the user."""
    workflows = compiled.workflows
    wanted = []

    current = snapshot.current_branch
    creation = workflows.get("branchCreation", {})
    on_protected = current == compiled.main_branch or compiled.is_protected(current)
    if on_protected and creation.get("protectionResponse") == "prompt":
        wanted.append("protectedBranch")
    if creation.get("typeSelection") == "prompt":
        wanted.append("branchType")
    if decisions.can_merge_current_branch and decisions.merge_strategy == "prompt":
        wanted.append("featureComplete")
    if snapshot.operation_in_progress == "merge" and workflows.get("merging", {}).get("conflictHandling") in ("interactive", "prompt"):
        wanted.append("mergeConflict")
    if decisions.fetch_on_start.needs_prompt:
        wanted.append("pullOnStart")
    if decisions.push_on_stop.needs_prompt:
        wanted.append("pushOnStop")
    if decisions.branches_for_cleanup and workflows.get("cleanup", {}).get("afterMerge") == "prompt":
        wanted.append("afterMerge")

    prompts = {}
    for name in wanted:
        template = compiled.prompt(name)
        if template is not None:
            prompts[name] = template.to_dict()
    return prompts
