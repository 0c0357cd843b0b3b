"""Persistent workspace state.

This package provides:
- Locking: one writer at a time across processes
- Storage: atomic writes of the JSON document plus its digest
- Transactions: begin/commit/rollback around every mutation
- The StateEngine facade that ties these to config, repo and decisions
"""

from aipm.state.schema import STATE_VERSION

__all__ = ["STATE_VERSION"]
