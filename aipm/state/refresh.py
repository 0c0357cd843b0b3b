"""When is the cached document no longer good enough?"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from aipm.repo.models import from_iso
from aipm.state.schema import STATE_VERSION


class RefreshReason(Enum):
    NONE = "none"
    MISSING = "missing"
    VERSION = "version"
    FINGERPRINT = "fingerprint"
    STALE = "stale"
    REQUESTED = "requested"

    @property
    def full(self) -> bool:
        """Whether this reason requires recomputing everything."""
        return self in (RefreshReason.MISSING, RefreshReason.VERSION, RefreshReason.FINGERPRINT,
                        RefreshReason.REQUESTED)


@dataclass
class RefreshPolicy:
    """Explicit invalidation rules for the cached state document.

    Order matters: structural reasons (missing, version, fingerprint) win
    over age, so a configuration change forces a full rebuild even when the
    document is young.
    """

    max_age_seconds: float = 300.0

    def evaluate(self, doc: dict | None, fingerprint: str, now: datetime) -> RefreshReason:
        if not doc:
            return RefreshReason.MISSING
        metadata = doc.get("metadata", {})
        if metadata.get("version") != STATE_VERSION:
            return RefreshReason.VERSION
        if metadata.get("configFingerprint") != fingerprint:
            return RefreshReason.FINGERPRINT

        try:
            last_refresh = from_iso(metadata.get("lastRefresh"))
        except (TypeError, ValueError):
            last_refresh = None
        if last_refresh is None:
            return RefreshReason.STALE
        if (now - last_refresh).total_seconds() > self.max_age_seconds:
            return RefreshReason.STALE
        return RefreshReason.NONE
