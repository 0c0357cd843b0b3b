"""Read-only version control access.

``VersionControl`` is the narrow interface the inspector and drift
reconciler depend on. ``GitRepository`` implements it with GitPython; every
subprocess it starts is bounded by ``timeout`` seconds.
"""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from aipm.errors import RepositoryError, RepositoryTimeoutError
from aipm.repo.models import DETACHED_HEAD, Operation

logger = logging.getLogger(__name__)

DEFAULT_GIT_TIMEOUT = 120.0

_MARKER_PARENT_RE = re.compile(r"from (\S+)")


class VersionControl(ABC):
    """Everything the state engine is allowed to ask the repository."""

    @abstractmethod
    def root(self) -> str: ...

    @abstractmethod
    def current_branch(self) -> str:
        """Checked-out branch name, or ``"HEAD"`` when detached."""

    @abstractmethod
    def local_branches(self) -> list[str]: ...

    @abstractmethod
    def branch_head(self, branch: str) -> str: ...

    @abstractmethod
    def last_commit_date(self, branch: str) -> datetime | None: ...

    @abstractmethod
    def first_commit_date(self, branch: str, base: str | None = None) -> datetime | None:
        """Date of the oldest commit on ``branch`` that is not on ``base``."""

    @abstractmethod
    def merge_date(self, branch: str, into: str) -> datetime | None:
        """When ``branch`` was merged into ``into``, or None if it was not."""

    @abstractmethod
    def upstream(self, branch: str) -> str: ...

    @abstractmethod
    def marker_subject(self, branch: str, marker: str) -> str:
        """Subject of the newest commit on ``branch`` containing ``marker``."""

    @abstractmethod
    def status(self) -> list[tuple[str, str]]:
        """Porcelain ``(code, path)`` pairs for the working tree."""

    @abstractmethod
    def stash_count(self) -> int: ...

    @abstractmethod
    def ahead_behind(self, branch: str) -> tuple[int, int]: ...

    @abstractmethod
    def has_remote(self, name: str = "origin") -> bool: ...

    @abstractmethod
    def operation_in_progress(self) -> str: ...

    @abstractmethod
    def user_name(self) -> str: ...

    def branch_exists(self, branch: str) -> bool:
        return branch in self.local_branches()

    def marker_parent(self, branch: str, marker: str) -> str:
        """Parent branch recorded in the initialization marker commit."""
        subject = self.marker_subject(branch, marker)
        match = _MARKER_PARENT_RE.search(subject) if subject else None
        return match.group(1) if match else ""


class GitRepository(VersionControl):
    """``VersionControl`` over a local git checkout."""

    def __init__(self, path: str | Path, timeout: float = DEFAULT_GIT_TIMEOUT):
        try:
            self.repo = Repo(path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise RepositoryError(f"Not a git repository: {path}") from e
        self.timeout = timeout

    # -- plumbing --------------------------------------------------------

    def _git(self, *args: str) -> str:
        started = time.monotonic()
        try:
            return self.repo.git.execute(["git", *args], kill_after_timeout=self.timeout)
        except GitCommandError as e:
            if time.monotonic() - started >= self.timeout:
                raise RepositoryTimeoutError(
                    f"git {' '.join(args)} exceeded {self.timeout:g}s"
                ) from e
            raise RepositoryError(f"git {' '.join(args)} failed: {e.stderr.strip() if e.stderr else e}") from e

    def _git_optional(self, *args: str) -> str:
        """Like ``_git`` but a non-zero exit means "no answer"."""
        try:
            return self._git(*args)
        except RepositoryTimeoutError:
            raise
        except RepositoryError as e:
            logger.debug("%s", e)
            return ""

    # -- VersionControl ---------------------------------------------------

    def root(self) -> str:
        return str(self.repo.working_tree_dir or "")

    def current_branch(self) -> str:
        if self.repo.head.is_detached:
            return DETACHED_HEAD
        try:
            return self.repo.active_branch.name
        except TypeError:
            return DETACHED_HEAD

    def local_branches(self) -> list[str]:
        return sorted(head.name for head in self.repo.heads)

    def branch_head(self, branch: str) -> str:
        return self._git_optional("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")

    def last_commit_date(self, branch: str) -> datetime | None:
        return _parse_date(self._git_optional("log", "-1", "--format=%cI", f"refs/heads/{branch}"))

    def first_commit_date(self, branch: str, base: str | None = None) -> datetime | None:
        args = ["log", "--reverse", "--format=%cI"]
        if base and base != branch and self.branch_exists(base):
            args.append(f"refs/heads/{base}..refs/heads/{branch}")
        else:
            args.append(f"refs/heads/{branch}")
        lines = self._git_optional(*args).splitlines()
        return _parse_date(lines[0]) if lines else None

    def merge_date(self, branch: str, into: str) -> datetime | None:
        if branch == into or not self.branch_exists(into):
            return None
        head = self.branch_head(branch)
        if not head:
            return None
        log = self._git_optional(
            "log", "--merges", "--first-parent", "--format=%H %cI %P", f"refs/heads/{into}"
        )
        for line in log.splitlines():
            parts = line.split()
            if len(parts) >= 4 and head in parts[3:]:
                return _parse_date(parts[1])
        return None

    def upstream(self, branch: str) -> str:
        return self._git_optional("rev-parse", "--abbrev-ref", f"{branch}@{{upstream}}")

    def marker_subject(self, branch: str, marker: str) -> str:
        log = self._git_optional(
            "log", "-n", "100", "--format=%s", f"--grep={marker}", "--fixed-strings", f"refs/heads/{branch}"
        )
        lines = log.splitlines()
        return lines[0] if lines else ""

    def status(self) -> list[tuple[str, str]]:
        output = self._git("status", "--porcelain", "--untracked-files=all")
        entries = []
        for line in output.splitlines():
            if len(line) < 4:
                continue
            code, path = line[:2], line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            entries.append((code, path))
        return entries

    def stash_count(self) -> int:
        output = self._git_optional("stash", "list")
        return len(output.splitlines()) if output else 0

    def ahead_behind(self, branch: str) -> tuple[int, int]:
        if not self.upstream(branch):
            return 0, 0
        counts = self._git_optional(
            "rev-list", "--left-right", "--count", f"refs/heads/{branch}...{branch}@{{upstream}}"
        ).split()
        if len(counts) != 2:
            return 0, 0
        return int(counts[0]), int(counts[1])

    def has_remote(self, name: str = "origin") -> bool:
        return any(remote.name == name for remote in self.repo.remotes)

    def operation_in_progress(self) -> str:
        git_dir = Path(self.repo.git_dir)
        if (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists():
            return Operation.REBASE
        if (git_dir / "MERGE_HEAD").exists():
            return Operation.MERGE
        if (git_dir / "CHERRY_PICK_HEAD").exists():
            return Operation.CHERRY_PICK
        return Operation.NONE

    def user_name(self) -> str:
        reader = self.repo.config_reader()
        try:
            return str(reader.get_value("user", "name", ""))
        finally:
            reader.release()


def _parse_date(value: str) -> datetime | None:
    value = (value or "").strip()
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)
    except ValueError:
        logger.debug("Unparseable git date: %s", value)
        return None
