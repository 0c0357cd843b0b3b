"""Shared fixtures for the test modules: an in-memory repository and a fixed clock."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

from aipm.config.compiler import compile_configuration
from aipm.config.loader import build_configuration, merge_with_defaults
from aipm.config.settings import EngineSettings
from aipm.repo.models import DETACHED_HEAD
from aipm.repo.vcs import VersionControl
from aipm.state.engine import StateEngine

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
MAIN = "AIPM_MAIN"


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)


def make_compiled(opinions: dict | None = None):
    return compile_configuration(build_configuration(merge_with_defaults(opinions or {})))


class FakeVersionControl(VersionControl):
    """Repository facts held in plain attributes."""

    def __init__(self, current: str = MAIN, remote: bool = False, user: str = "Dev Person"):
        self.current = current
        self.branches: dict[str, dict] = {}
        self.changes: list[tuple[str, str]] = []
        self.remote = remote
        self.operation = ""
        self.user = user
        self.add_branch(MAIN, last_activity=days_ago(1))

    def add_branch(self, name, last_activity=None, created=None, merged=None, parent="", upstream=""):
        self.branches[name] = {
            "head": f"{abs(hash(name)):040x}"[:40],
            "last": last_activity or NOW,
            "first": created or last_activity or NOW,
            "merged": merged,
            "parent": parent,
            "upstream": upstream,
        }

    def delete_branch(self, name):
        self.branches.pop(name, None)

    def root(self) -> str:
        return "/work/repo"

    def current_branch(self) -> str:
        return self.current or DETACHED_HEAD

    def local_branches(self) -> list[str]:
        return sorted(self.branches)

    def branch_head(self, branch):
        return self.branches.get(branch, {}).get("head", "")

    def last_commit_date(self, branch):
        return self.branches.get(branch, {}).get("last")

    def first_commit_date(self, branch, base=None):
        return self.branches.get(branch, {}).get("first")

    def merge_date(self, branch, into):
        if into != MAIN:
            return None
        return self.branches.get(branch, {}).get("merged")

    def upstream(self, branch):
        return self.branches.get(branch, {}).get("upstream", "")

    def marker_subject(self, branch, marker):
        parent = self.branches.get(branch, {}).get("parent")
        return f"{marker} from {parent}" if parent else ""

    def status(self):
        return list(self.changes)

    def stash_count(self):
        return 0

    def ahead_behind(self, branch):
        return 0, 0

    def has_remote(self, name="origin"):
        return self.remote

    def operation_in_progress(self):
        return self.operation

    def user_name(self):
        return self.user


class Clock:
    """Settable clock; starts at NOW."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_engine(tmpdir: str, vcs: VersionControl | None = None, opinions: dict | None = None,
                clock=None, refresh_interval: float = 300.0) -> StateEngine:
    settings = EngineSettings(
        repo_root=Path(tmpdir),
        state_dir=Path(tmpdir) / ".aipm" / "state",
        lock_timeout=0.5,
        refresh_interval=refresh_interval,
    )
    return StateEngine(
        tmpdir,
        settings=settings,
        vcs=vcs or FakeVersionControl(),
        config=build_configuration(merge_with_defaults(opinions or {})),
        clock=clock or Clock(),
    )
