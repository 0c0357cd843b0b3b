"""Process-level engine settings resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from aipm.errors import ConfigurationError

STATE_RELATIVE_DIR = Path(".aipm") / "state"

DEFAULT_LOCK_TIMEOUT = 30.0
DEFAULT_REFRESH_INTERVAL = 300.0


@dataclass
class EngineSettings:
    """Where state lives and how long to wait for things."""

    repo_root: Path
    state_dir: Path
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    refresh_interval: float = DEFAULT_REFRESH_INTERVAL
    opinions_path: Path | None = None

    @classmethod
    def from_env(cls, repo_root: str | Path, environ: dict | None = None) -> "EngineSettings":
        """Build settings for ``repo_root``, honouring ``AIPM_STATE_*`` overrides."""
        env = os.environ if environ is None else environ
        repo_root = Path(repo_root)

        state_dir = Path(env["AIPM_STATE_DIR"]) if env.get("AIPM_STATE_DIR") else repo_root / STATE_RELATIVE_DIR
        opinions = Path(env["AIPM_OPINIONS_PATH"]) if env.get("AIPM_OPINIONS_PATH") else None

        return cls(
            repo_root=repo_root,
            state_dir=state_dir,
            lock_timeout=_float_env(env, "AIPM_STATE_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT),
            refresh_interval=_float_env(env, "AIPM_STATE_REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL),
            opinions_path=opinions,
        )


def _float_env(env, name: str, default: float) -> float:
    value = env.get(name)
    if value in (None, ""):
        return default
    try:
        parsed = float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{value}'")
    if parsed < 0:
        raise ConfigurationError(f"{name} must not be negative, got '{value}'")
    return parsed
