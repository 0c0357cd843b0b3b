"""Durable storage for the workspace state document.

Layout under the state directory::

    workspace.json   the document
    workspace.hash   SHA-256 of the bytes in workspace.json
    workspace.lock   present only while a writer holds the lock

Writes go to a temp file in the same directory, are fsynced, then renamed
over the target, so a reader sees either the old document or the new one.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path

from aipm.errors import CorruptStateError, StateValidationError
from aipm.state.lock import LockManager
from aipm.state.schema import validate_structure

logger = logging.getLogger(__name__)

STATE_FILE = "workspace.json"
HASH_FILE = "workspace.hash"
LOCK_FILE = "workspace.lock"


class StateStore:
    """Reads and atomically replaces the state document."""

    def __init__(self, state_dir: str | Path, lock: LockManager | None = None):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.state_path = self.state_dir / STATE_FILE
        self.hash_path = self.state_dir / HASH_FILE
        self.lock = lock or LockManager(self.state_dir / LOCK_FILE)
        self._cache: dict | None = None
        self._cache_digest = ""

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.state_path.exists() and self.state_path.stat().st_size > 0

    def read(self) -> dict | None:
        """Load the document from disk.

        Returns None when no document exists (missing or empty file).

        Raises:
            CorruptStateError: The file has content that is not a valid document.
        """
        try:
            raw = self.state_path.read_bytes()
        except FileNotFoundError:
            self._cache = None
            return None

        if not raw.strip():
            self._cache = None
            return None

        try:
            doc = json.loads(raw)
        except ValueError as e:
            raise CorruptStateError(f"State file {self.state_path} is not valid JSON: {e}") from e

        issues = validate_structure(doc)
        if issues:
            raise CorruptStateError(
                f"State file {self.state_path} is malformed: " + "; ".join(issues)
            )

        self._cache = doc
        self._cache_digest = self.digest()
        return copy.deepcopy(doc)

    @property
    def cached(self) -> dict | None:
        """Last document read or written by this store, without touching disk."""
        return self._cache

    def load(self) -> dict | None:
        """Cached document unless the digest file says it changed on disk."""
        if self._cache is not None and self.digest() == self._cache_digest:
            return self._cache
        return self.read()

    def invalidate(self) -> None:
        self._cache = None

    def digest(self) -> str:
        """SHA-256 recorded for the current document, or empty string."""
        try:
            return self.hash_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return ""

    def has_changed(self, since_digest: str) -> bool:
        return self.digest() != since_digest

    # ------------------------------------------------------------------
    # Writes (lock required)
    # ------------------------------------------------------------------

    def write(self, doc: dict) -> str:
        """Validate and atomically persist ``doc``. Returns its digest."""
        self.lock.validate_held()

        issues = validate_structure(doc)
        if issues:
            raise StateValidationError("Refusing to write malformed state document", issues)

        payload = (json.dumps(doc, indent=2, ensure_ascii=False) + "\n").encode("utf-8")
        digest = hashlib.sha256(payload).hexdigest()

        _atomic_write(self.state_path, payload)
        _atomic_write(self.hash_path, (digest + "\n").encode("utf-8"))

        self._cache = copy.deepcopy(doc)
        self._cache_digest = digest
        logger.debug("Wrote state document %s (%d bytes)", self.state_path, len(payload))
        return digest

    def write_bytes(self, payload: bytes) -> None:
        """Restore exact prior bytes (used by rollback)."""
        self.lock.validate_held()
        _atomic_write(self.state_path, payload)
        _atomic_write(
            self.hash_path,
            (hashlib.sha256(payload).hexdigest() + "\n").encode("utf-8"),
        )
        self._cache = None

    def read_bytes(self) -> bytes | None:
        try:
            return self.state_path.read_bytes()
        except FileNotFoundError:
            return None

    def delete(self) -> None:
        self.lock.validate_held()
        for path in (self.state_path, self.hash_path):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        self._cache = None


def _atomic_write(target: Path, payload: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
