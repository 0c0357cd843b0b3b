"""State engine: the one entry point higher-level tooling talks to.

Ties the pieces together:

- configuration is loaded and compiled once per process,
- the repository is inspected through a ``VersionControl``,
- decisions are derived from (compiled configuration, snapshot),
- every write goes through a ``TransactionManager``.

Reads are served from the cached document without taking the lock.
"""

from __future__ import annotations

import copy
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from aipm.config.compiler import compile_configuration
from aipm.config.loader import WorkspaceConfiguration, load_configuration
from aipm.config.models import CompiledConfiguration
from aipm.config.settings import EngineSettings
from aipm.decisions.engine import make_decisions
from aipm.errors import StateValidationError
from aipm.repo.inspector import RepositoryInspector, project_deletion
from aipm.repo.models import BranchInfo, RepositorySnapshot, to_iso
from aipm.repo.vcs import DEFAULT_GIT_TIMEOUT, GitRepository, VersionControl
from aipm.state.events import apply_event
from aipm.state.lock import LockManager
from aipm.state.paths import PathLike, get_path, parse_path, remove_path, set_path
from aipm.state.refresh import RefreshPolicy, RefreshReason
from aipm.state.schema import REQUIRED_SECTIONS, STATE_VERSION
from aipm.state.store import LOCK_FILE, StateStore
from aipm.state.transaction import TransactionManager

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50

REFRESH_SECTIONS = ("all", "computed", "runtime", "branches", "decisions")

# Operation name -> (decision flag, reasons list)
OPERATIONS = {
    "create-branch": ("canCreateBranch", "cannotCreateReasons"),
    "merge": ("canMergeCurrentBranch", "cannotMergeReasons"),
}


class StateEngine:
    """Facade over the workspace state document."""

    def __init__(
        self,
        repo_root: str | Path = ".",
        settings: EngineSettings | None = None,
        vcs: VersionControl | None = None,
        config: WorkspaceConfiguration | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or EngineSettings.from_env(repo_root)
        self.store = StateStore(
            self.settings.state_dir,
            LockManager(self.settings.state_dir / LOCK_FILE, default_timeout=self.settings.lock_timeout),
        )
        self.transactions = TransactionManager(self.store)
        self.refresh_policy = RefreshPolicy(max_age_seconds=self.settings.refresh_interval)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._vcs = vcs
        self._config = config
        self._compiled: CompiledConfiguration | None = None

    # ------------------------------------------------------------------
    # Collaborators (lazy)
    # ------------------------------------------------------------------

    @property
    def config(self) -> WorkspaceConfiguration:
        if self._config is None:
            self._config = load_configuration(self.settings.opinions_path, repo_root=self.settings.repo_root)
        return self._config

    @property
    def compiled(self) -> CompiledConfiguration:
        if self._compiled is None:
            self._compiled = compile_configuration(self.config)
        return self._compiled

    @property
    def vcs(self) -> VersionControl:
        if self._vcs is None:
            timeout = self.compiled.defaults.get("timeouts", {}).get("gitSeconds", DEFAULT_GIT_TIMEOUT)
            self._vcs = GitRepository(self.settings.repo_root, timeout=float(timeout))
        return self._vcs

    def inspector(self, compiled: CompiledConfiguration | None = None) -> RepositoryInspector:
        return RepositoryInspector(self.vcs, compiled or self.compiled, clock=self.clock)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, reason: RefreshReason = RefreshReason.MISSING) -> dict:
        """Build the whole document from scratch and persist it."""
        with self.transactions.transaction("initialize", replace_corrupt=True) as txn:
            txn.document = self._build_document(previous=txn.document)
            txn.document["metadata"]["refreshReason"] = reason.value
        logger.info("Initialized workspace state at %s", self.store.state_path)
        return copy.deepcopy(self.store.cached)

    def ensure(self) -> dict:
        """Return a current document, refreshing first when it is out of date."""
        doc = self.store.read()
        reason = self.refresh_policy.evaluate(doc, self.config.fingerprint, self.clock())
        if reason == RefreshReason.NONE:
            return doc
        logger.debug("State refresh needed: %s", reason.value)
        if reason.full:
            return self.initialize(reason)
        return self.refresh("runtime", reason)

    def needs_refresh(self) -> RefreshReason:
        return self.refresh_policy.evaluate(self.store.read(), self.config.fingerprint, self.clock())

    def refresh(self, section: str = "all", reason: RefreshReason = RefreshReason.REQUESTED) -> dict:
        """Recompute one section of the document (or all of it).

        ``reason`` is recorded as ``metadata.refreshReason``; callers outside
        the engine are explicit requests.
        """
        if section not in REFRESH_SECTIONS:
            raise StateValidationError(
                f"Unknown refresh section '{section}'. Valid: {', '.join(REFRESH_SECTIONS)}"
            )
        if section == "all":
            return self.initialize(reason)
        if not self.store.exists():
            return self.initialize(RefreshReason.MISSING)

        with self.transactions.transaction(f"refresh:{section}") as txn:
            doc = txn.document
            if doc is None:
                doc = txn.document = self._build_document()
            elif section == "computed":
                self._refresh_computed(doc)
            elif section == "runtime":
                self._refresh_snapshot(doc, runtime=True)
            elif section == "branches":
                self._refresh_snapshot(doc, runtime=False)
            else:
                self._recompute_decisions(doc)
            doc["metadata"]["lastRefresh"] = to_iso(self.clock())
            doc["metadata"]["refreshReason"] = reason.value
        return copy.deepcopy(self.store.cached)

    def sync_from_repository(self) -> dict:
        """Pull live runtime facts into the document."""
        if not self.store.exists():
            return self.initialize()
        with self.transactions.transaction("sync:git-to-state") as txn:
            self._refresh_snapshot(self._working_document(txn), runtime=True)
            now = to_iso(self.clock())
            txn.document["metadata"]["lastGitSync"] = now
            txn.document["metadata"]["lastRefresh"] = now
        return copy.deepcopy(self.store.cached)

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def document(self) -> dict:
        """A private copy of the current document."""
        return copy.deepcopy(self._current())

    def _current(self) -> dict:
        # Shared with the store cache: read it, never mutate it.
        doc = self.store.load()
        if doc is None:
            doc = self.ensure()
        return doc

    def get(self, path: PathLike) -> Any:
        """Value at ``path``; raises KeyError when absent."""
        return copy.deepcopy(get_path(self._current(), path))

    def get_or_default(self, path: PathLike, default: Any = None) -> Any:
        return copy.deepcopy(get_path(self._current(), path, default))

    def dump(self) -> str:
        return json.dumps(self._current(), indent=2, ensure_ascii=False)

    def summary(self) -> dict:
        doc = self._current()
        snap = doc["repositorySnapshot"]
        decisions = doc["decisionSet"]
        metadata = doc["metadata"]
        return {
            "workspace": doc["rawConfiguration"].get("workspace", {}).get("name", ""),
            "mainBranch": doc["compiledConfiguration"].get("mainBranch", ""),
            "currentBranch": snap.get("currentBranch", ""),
            "workingTreeClean": snap.get("workingTreeClean", True),
            "uncommittedCount": snap.get("uncommittedCount", 0),
            "branchCount": len(snap.get("branches", {})),
            "canCreateBranch": decisions.get("canCreateBranch", False),
            "canMergeCurrentBranch": decisions.get("canMergeCurrentBranch", False),
            "mergeTarget": decisions.get("mergeTarget", ""),
            "cleanupCandidates": len(decisions.get("branchesForCleanup", [])),
            "staleBranches": len(decisions.get("staleBranches", [])),
            "nextSessionName": decisions.get("nextSessionName", ""),
            "lastRefresh": metadata.get("lastRefresh", ""),
            "lastOperation": metadata.get("lastOperation", ""),
        }

    def can_perform(self, operation: str) -> tuple[bool, list[str]]:
        """Whether ``operation`` is currently allowed, with blocking reasons."""
        decisions = self._current()["decisionSet"]
        if operation in OPERATIONS:
            flag, reasons = OPERATIONS[operation]
            return bool(decisions.get(flag)), list(decisions.get(reasons, []))
        if operation in ("fetch", "push"):
            key, reason_key = (
                ("shouldFetchOnStart", "fetchReason") if operation == "fetch"
                else ("shouldPushOnStop", "pushReason")
            )
            value = decisions.get(key)
            return value == "yes", [] if value == "yes" else [decisions.get(reason_key, "")]
        raise ValueError(f"Unknown operation '{operation}'")

    def get_prompt(self, name: str) -> dict | None:
        doc = self._current()
        prompt = doc["decisionSet"].get("prompts", {}).get(name)
        if prompt is not None:
            return copy.deepcopy(prompt)
        template = CompiledConfiguration.from_dict(doc["compiledConfiguration"]).prompt(name)
        return template.to_dict() if template else None

    def get_workflow_rule(self, path: PathLike) -> Any:
        return self.get_or_default(("compiledConfiguration", "workflows") + parse_path(path))

    def cleanup_branches(self) -> list[dict]:
        return self.get_or_default("decisionSet.branchesForCleanup", [])

    def current_branch_info(self) -> dict | None:
        snap = self._current()["repositorySnapshot"]
        return copy.deepcopy(snap.get("branches", {}).get(snap.get("currentBranch", "")))

    # ------------------------------------------------------------------
    # Write API
    # ------------------------------------------------------------------

    def set(self, path: PathLike, value: Any) -> None:
        self._mutate(f"update:{'.'.join(parse_path(path))}", [path], lambda doc: set_path(doc, path, value))

    def set_many(self, updates: dict | Iterable[tuple[PathLike, Any]]) -> None:
        """Apply several assignments in one transaction."""
        items = list(updates.items()) if isinstance(updates, dict) else list(updates)

        def apply(doc):
            for path, value in items:
                set_path(doc, path, value)

        self._mutate("update:batch", [p for p, _ in items], apply)

    def increment(self, path: PathLike, delta: int | float = 1) -> Any:
        result = {}

        def apply(doc):
            current = get_path(doc, path, 0)
            if not isinstance(current, (int, float)) or isinstance(current, bool):
                raise StateValidationError(f"Cannot increment non-numeric value at {'.'.join(parse_path(path))}")
            result["value"] = current + delta
            set_path(doc, path, result["value"])

        self._mutate(f"increment:{'.'.join(parse_path(path))}", [path], apply)
        return result["value"]

    def append(self, path: PathLike, item: Any, max_items: int | None = None) -> None:
        """Append to a list, keeping only the newest ``max_items`` entries."""
        def apply(doc):
            current = get_path(doc, path, None)
            if current is None:
                current = []
            elif not isinstance(current, list):
                raise StateValidationError(f"Cannot append to non-list at {'.'.join(parse_path(path))}")
            current.append(item)
            if max_items is not None and len(current) > max_items:
                del current[: len(current) - max_items]
            set_path(doc, path, current)

        self._mutate(f"append:{'.'.join(parse_path(path))}", [path], apply)

    def remove(self, path: PathLike) -> bool:
        result = {}

        def apply(doc):
            if len(parse_path(path)) < 2:
                raise StateValidationError("Cannot remove a whole section")
            result["removed"] = remove_path(doc, path)

        self._mutate(f"remove:{'.'.join(parse_path(path))}", [path], apply)
        return result["removed"]

    def report_event(self, event: str, **details) -> dict:
        """Record a git operation performed by the caller, in one transaction."""
        with self.transactions.transaction(f"event:{event}") as txn:
            doc = self._working_document(txn)
            compiled = CompiledConfiguration.from_dict(doc["compiledConfiguration"])
            now = self.clock()
            apply_event(doc, event, details, now, compiled)
            self._recompute_decisions(doc, compiled)
            history = doc["metadata"].setdefault("history", [])
            history.append({"event": event, "at": to_iso(now), "details": _jsonable(details)})
            del history[: max(0, len(history) - HISTORY_LIMIT)]
        return copy.deepcopy(self.store.cached)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _mutate(self, name: str, paths: list[PathLike], apply: Callable[[dict], None]) -> None:
        for path in paths:
            keys = parse_path(path)
            if not keys or keys[0] not in REQUIRED_SECTIONS:
                raise StateValidationError(
                    f"Invalid path '{'.'.join(keys)}': must start with one of {', '.join(REQUIRED_SECTIONS)}"
                )
        with self.transactions.transaction(name) as txn:
            doc = self._working_document(txn)
            apply(doc)
            if any(parse_path(p)[0] == "repositorySnapshot" for p in paths):
                self._recompute_decisions(doc)

    def _working_document(self, txn: TransactionManager) -> dict:
        if txn.document is None:
            txn.document = self._build_document()
        return txn.document

    def _build_document(self, previous: dict | None = None) -> dict:
        config = self.config
        compiled = self.compiled
        snapshot = self.inspector(compiled).snapshot()
        decisions = make_decisions(compiled, snapshot)
        now = to_iso(snapshot.captured_at)

        metadata = {
            "version": STATE_VERSION,
            "generatedAt": now,
            "lastRefresh": now,
            "configFingerprint": config.fingerprint,
            "configSource": config.source_path,
            "workspaceIdentity": {
                "name": config.raw["workspace"].get("name", ""),
                "type": config.raw["workspace"].get("type", ""),
                "root": snapshot.root,
            },
            "history": [],
        }
        if previous:
            metadata["history"] = list(previous.get("metadata", {}).get("history", []))[-HISTORY_LIMIT:]

        return {
            "metadata": metadata,
            "rawConfiguration": _jsonable(config.raw),
            "compiledConfiguration": compiled.to_dict(),
            "repositorySnapshot": snapshot.to_dict(),
            "decisionSet": decisions.to_dict(),
        }

    def _refresh_computed(self, doc: dict) -> None:
        compiled = self.compiled
        doc["rawConfiguration"] = _jsonable(self.config.raw)
        doc["compiledConfiguration"] = compiled.to_dict()
        doc["metadata"]["configFingerprint"] = self.config.fingerprint

        branches = doc["repositorySnapshot"].get("branches", {})
        for name, data in branches.items():
            snap_info = BranchInfo.from_dict(name, data)
            snap_info.type = compiled.classify(name)
            snap_info.protection_reason = compiled.protected.reason_for(name)
            snap_info.is_protected = bool(snap_info.protection_reason)
            project_deletion(snap_info, compiled)
            branches[name] = snap_info.to_dict()
        self._recompute_decisions(doc, compiled)

    def _refresh_snapshot(self, doc: dict, runtime: bool) -> None:
        compiled = CompiledConfiguration.from_dict(doc["compiledConfiguration"])
        inspector = self.inspector(compiled)
        snapshot = RepositorySnapshot.from_dict(doc["repositorySnapshot"])
        if runtime:
            snapshot = inspector.refresh_runtime(snapshot)
        else:
            snapshot = inspector.refresh_branches(snapshot)
        doc["repositorySnapshot"] = snapshot.to_dict()
        self._recompute_decisions(doc, compiled)

    def _recompute_decisions(self, doc: dict, compiled: CompiledConfiguration | None = None) -> None:
        compiled = compiled or CompiledConfiguration.from_dict(doc["compiledConfiguration"])
        snapshot = RepositorySnapshot.from_dict(doc["repositorySnapshot"])
        doc["decisionSet"] = make_decisions(compiled, snapshot).to_dict()


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))
