"""Workspace configuration loader: reads ``opinions.yaml`` over built-in defaults."""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from aipm.config.defaults import (
    DEFAULT_OPINIONS,
    HANDLE_UNCOMMITTED,
    PREFIX_PATTERN,
    REFERENCE_POLICIES,
    REQUIRED_SECTIONS,
    SYNC_MODES,
    VALIDATION_MODES,
    WORKSPACE_TYPES,
)
from aipm.errors import ConfigurationError

logger = logging.getLogger(__name__)

OPINIONS_RELATIVE_PATH = Path(".aipm") / "opinions.yaml"


@dataclass(frozen=True)
class WorkspaceConfiguration:
    """Raw configuration plus its content fingerprint.

    ``raw`` is the fully merged mapping (file values over defaults). Treat it
    as read-only; the compiler never mutates it.
    """

    raw: dict = field(default_factory=dict)
    fingerprint: str = ""
    source_path: str = ""

    @property
    def prefix(self) -> str:
        return self.raw["branching"]["prefix"]

    @property
    def branch_types(self) -> list[str]:
        """Declared branch types, in declaration order."""
        return list(self.raw.get("naming", {}))

    @property
    def uses_defaults_only(self) -> bool:
        return not self.source_path


def load_configuration(
    path: str | Path | None = None,
    repo_root: str | Path | None = None,
) -> WorkspaceConfiguration:
    """Load and validate workspace opinions.

    Resolution order for the file: explicit ``path``, ``AIPM_OPINIONS_PATH``,
    then ``<repo_root>/.aipm/opinions.yaml``. A missing file is not an error;
    defaults are used.

    Raises:
        ConfigurationError: The file cannot be parsed or fails validation.
    """
    opinions_path = _resolve_path(path, repo_root)

    file_data: dict = {}
    source = ""
    if opinions_path is not None and opinions_path.exists():
        try:
            loaded = yaml.safe_load(opinions_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse {opinions_path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"{opinions_path}: top level must be a mapping")
        file_data = loaded
        source = str(opinions_path)
    else:
        logger.warning("opinions.yaml not found, using defaults only")

    on_error = file_data.get("loading", {}).get("validation", {}).get("onError", "fail")

    issues = []
    if file_data:
        issues.extend(check_required_sections(file_data))
    raw = merge_with_defaults(file_data)
    issues.extend(validate_configuration(raw))

    if issues:
        message = "Invalid workspace configuration: " + "; ".join(issues)
        if on_error == "warn":
            logger.warning(message)
        elif on_error == "use-defaults":
            logger.warning("%s. Using defaults only.", message)
            raw = merge_with_defaults({})
            source = ""
        else:
            raise ConfigurationError(message)

    for type_name in raw["naming"]:
        if type_name not in raw["lifecycle"]:
            logger.warning("Branch type '%s' has no lifecycle rule", type_name)

    return build_configuration(raw, source_path=source)


def build_configuration(raw: dict, source_path: str = "") -> WorkspaceConfiguration:
    """Freeze an already merged mapping into a WorkspaceConfiguration."""
    raw = copy.deepcopy(raw)
    return WorkspaceConfiguration(raw=raw, fingerprint=fingerprint(raw), source_path=source_path)


def fingerprint(raw: dict) -> str:
    """SHA-256 over a canonical JSON rendering of the configuration."""
    canonical = json.dumps(raw, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def merge_with_defaults(file_data: dict) -> dict:
    """Deep-merge ``file_data`` over the built-in defaults.

    Mappings merge key by key; any other value (lists included) replaces.
    """
    merged = _deep_merge(copy.deepcopy(DEFAULT_OPINIONS), file_data)

    branching = file_data.get("branching") or {}
    if not branching.get("prefix"):
        name = merged["workspace"].get("name") or "AIPM"
        merged["branching"]["prefix"] = f"{name}_"

    if not merged["memory"].get("entityPrefix"):
        merged["memory"]["entityPrefix"] = merged["branching"]["prefix"]

    return merged


def check_required_sections(file_data: dict) -> list[str]:
    required = (
        file_data.get("loading", {}).get("validation", {}).get("required")
        or list(REQUIRED_SECTIONS)
    )
    missing = [s for s in required if not file_data.get(s)]
    if missing:
        return [f"Missing required sections: {', '.join(missing)}"]
    return []


def validate_configuration(raw: dict) -> list[str]:
    """Check enums and prefix consistency on a merged configuration.

    Returns:
        List of error messages. Empty list means valid.
    """
    issues: list[str] = []

    prefix = raw["branching"].get("prefix") or ""
    entity_prefix = raw["memory"].get("entityPrefix") or ""
    if prefix != entity_prefix:
        issues.append(
            f"Prefix mismatch: branching.prefix ({prefix}) != memory.entityPrefix ({entity_prefix})"
        )
    if not re.match(PREFIX_PATTERN, prefix):
        issues.append(f"Invalid prefix format: '{prefix}'. Must match pattern: {PREFIX_PATTERN}")

    _check_enum(issues, raw["workspace"].get("type"), "workspace.type", WORKSPACE_TYPES)
    _check_enum(issues, raw["validation"].get("mode"), "validation.mode", VALIDATION_MODES)
    _check_enum(
        issues,
        raw["lifecycle"].get("global", {}).get("handleUncommitted"),
        "lifecycle.global.handleUncommitted",
        HANDLE_UNCOMMITTED,
    )
    sync = raw["workflows"].get("synchronization", {})
    _check_enum(issues, sync.get("pullOnStart"), "workflows.synchronization.pullOnStart", SYNC_MODES)
    _check_enum(issues, sync.get("pushOnStop"), "workflows.synchronization.pushOnStop", SYNC_MODES)
    errors = raw.get("errorHandling", {})
    _check_enum(issues, errors.get("onInvalidReference"), "errorHandling.onInvalidReference", REFERENCE_POLICIES)
    _check_enum(issues, errors.get("onCircularReference"), "errorHandling.onCircularReference", REFERENCE_POLICIES)

    if not isinstance(raw.get("naming"), dict) or not raw["naming"]:
        issues.append("naming: at least one branch type must be declared")

    return issues


def _check_enum(issues: list[str], value, field_name: str, allowed: tuple[str, ...]) -> None:
    if value in (None, ""):
        return
    if value not in allowed:
        issues.append(f"Invalid value '{value}' for {field_name}. Valid options: {', '.join(allowed)}")


def _deep_merge(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        elif value is not None:
            base[key] = copy.deepcopy(value)
    return base


def _resolve_path(path, repo_root) -> Path | None:
    if path:
        return Path(path)
    env_path = os.environ.get("AIPM_OPINIONS_PATH")
    if env_path:
        return Path(env_path)
    if repo_root is not None:
        return Path(repo_root) / OPINIONS_RELATIVE_PATH
    return None
