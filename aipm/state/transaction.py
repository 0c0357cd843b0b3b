"""Transactions over the state document.

A transaction holds the write lock from ``begin`` until ``commit`` or
``rollback``. Mutations happen on an in-memory working copy; nothing touches
disk until commit validates the whole document.

Usage::

    with manager.transaction("update:runtime") as txn:
        txn.document["repositorySnapshot"]["currentBranch"] = "AIPM_MAIN"
    # committed here, or rolled back if the block raised
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator

from aipm.errors import (
    CorruptStateError,
    LockUnavailableError,
    StateValidationError,
    TransactionError,
)
from aipm.state.schema import validate_document
from aipm.state.store import StateStore

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMMITTING = "committing"
    ROLLING_BACK = "rolling_back"


class TransactionManager:
    """Serializes writers and guarantees all-or-nothing document updates."""

    def __init__(self, store: StateStore, lock_timeout: float | None = None):
        self.store = store
        self.lock = store.lock
        self.lock_timeout = lock_timeout
        self.state = TransactionState.IDLE
        self.name = ""
        self.document: dict | None = None
        self._original: bytes | None = None
        self._started = 0.0

    @property
    def active(self) -> bool:
        return self.state == TransactionState.ACTIVE

    def begin(self, name: str, replace_corrupt: bool = False) -> dict | None:
        """Acquire the lock and load the working copy.

        Returns the working document, or None when no document exists yet
        (or when it is unreadable and ``replace_corrupt`` is set).

        Raises:
            TransactionError: A transaction is already active.
            LockUnavailableError: The lock timed out.
            CorruptStateError: The stored document is unreadable.
        """
        if self.state != TransactionState.IDLE:
            raise TransactionError(
                f"Cannot begin '{name}': transaction '{self.name}' is {self.state.value}"
            )
        if not self.lock.acquire(self.lock_timeout):
            raise LockUnavailableError(
                f"Could not acquire state lock for '{name}' (held by {self.lock.owner()})"
            )

        try:
            self._original = self.store.read_bytes()
            self.document = self.store.read()
        except CorruptStateError as e:
            if not replace_corrupt:
                self._reset()
                raise
            logger.warning("Replacing unreadable state document: %s", e)
            self.document = None
        except BaseException:
            # OSError and friends: nothing loaded, so give the lock back.
            self._reset()
            raise

        self.name = name
        self._started = time.monotonic()
        self.state = TransactionState.ACTIVE
        logger.debug("Began transaction '%s'", name)
        return self.document

    def commit(self) -> None:
        """Validate and persist the working copy, then release the lock.

        Raises:
            StateValidationError: The document is invalid; it was rolled back.
        """
        if self.state != TransactionState.ACTIVE:
            raise TransactionError(f"Cannot commit: no active transaction (state {self.state.value})")
        self.state = TransactionState.COMMITTING
        name = self.name

        doc = self.document
        issues = validate_document(doc) if doc is not None else ["document is empty"]
        if issues:
            logger.error("Transaction '%s' failed validation: %s", name, "; ".join(issues))
            self._rollback()
            raise StateValidationError(f"Transaction '{name}' produced an invalid document", issues)

        metadata = doc["metadata"]
        metadata["lastOperation"] = name
        metadata["lastUpdate"] = datetime.now(timezone.utc).isoformat()
        metadata["operationDuration"] = round(time.monotonic() - self._started, 3)

        try:
            self.store.write(doc)
        except Exception as e:
            logger.error("Commit of '%s' failed: %s", name, e)
            self._rollback()
            raise

        self._reset()
        logger.debug("Committed transaction '%s'", name)

    def rollback(self) -> bool:
        """Restore the pre-transaction document and release the lock.

        Restore failures are logged, not raised. Always returns True.
        """
        if self.state == TransactionState.IDLE:
            self.lock.release()
            return True
        self._rollback()
        return True

    @contextmanager
    def transaction(self, name: str, replace_corrupt: bool = False) -> Iterator["TransactionManager"]:
        self.begin(name, replace_corrupt=replace_corrupt)
        try:
            yield self
        except BaseException as exc:
            if self.state == TransactionState.ACTIVE:
                logger.warning("Transaction '%s' failed with %s: %s - rolling back",
                               name, type(exc).__name__, exc)
                self._rollback()
            raise
        else:
            if self.state == TransactionState.ACTIVE:
                self.commit()

    # ------------------------------------------------------------------

    def _rollback(self) -> None:
        name = self.name
        self.state = TransactionState.ROLLING_BACK
        try:
            current = self.store.read_bytes()
            if current != self._original:
                if self._original is None:
                    self.store.delete()
                else:
                    self.store.write_bytes(self._original)
                logger.warning("Rolled back state document for '%s'", name)
            self.store.invalidate()
        except Exception as e:
            logger.error("Rollback of '%s' could not restore state: %s", name, e)
        finally:
            self._reset()

    def _reset(self) -> None:
        self.lock.release()
        self.document = None
        self._original = None
        self.name = ""
        self.state = TransactionState.IDLE
