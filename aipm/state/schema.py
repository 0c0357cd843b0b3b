"""Structural validation for the persisted state document.

Two levels are exposed:

- ``validate_structure``: the shape every stored document must have. The
  store refuses to read or write anything that fails it.
- ``validate_document``: structure plus the critical fields and pinned
  version a transaction must satisfy before it may commit.
"""

from __future__ import annotations

STATE_VERSION = "1.0"

REQUIRED_SECTIONS = (
    "metadata",
    "rawConfiguration",
    "compiledConfiguration",
    "repositorySnapshot",
    "decisionSet",
)

# Fields without which no consumer can make a decision.
CRITICAL_FIELDS = (
    ("repositorySnapshot", "currentBranch"),
    ("compiledConfiguration", "mainBranch"),
    ("rawConfiguration", "workspace", "type"),
)

SECTION_FIELDS: dict[str, dict[str, type]] = {
    "metadata": {
        "version": str,
        "generatedAt": str,
        "lastRefresh": str,
        "configFingerprint": str,
        "history": list,
    },
    "rawConfiguration": {},
    "compiledConfiguration": {
        "branchPatterns": dict,
        "protectedBranches": dict,
        "lifecycle": dict,
        "workflows": dict,
    },
    "repositorySnapshot": {
        "branches": dict,
        "uncommittedChanges": list,
        "uncommittedCount": int,
        "workingTreeClean": bool,
    },
    "decisionSet": {
        "cannotCreateReasons": list,
        "branchesForCleanup": list,
        "prompts": dict,
    },
}


def validate_structure(doc) -> list[str]:
    """Validate the overall shape of a state document.

    Returns:
        List of error messages. Empty list means valid.
    """
    if not isinstance(doc, dict):
        return [f"/: state document must be an object, got {type(doc).__name__}"]

    issues: list[str] = []
    for section, fields in SECTION_FIELDS.items():
        if section not in doc:
            issues.append(f"/: missing section '{section}'")
            continue
        body = doc[section]
        if not isinstance(body, dict):
            issues.append(f".{section}: must be an object, got {type(body).__name__}")
            continue
        for name, expected in fields.items():
            if name in body and not _is_kind(body[name], expected):
                issues.append(
                    f".{section}.{name}: expected {expected.__name__}, got {type(body[name]).__name__}"
                )

    if isinstance(doc.get("metadata"), dict) and "version" not in doc["metadata"]:
        issues.append(".metadata: missing 'version'")
    return issues


def validate_document(doc) -> list[str]:
    """Validate a document for commit: structure, critical fields, version."""
    issues = validate_structure(doc)
    if issues:
        return issues

    for path in CRITICAL_FIELDS:
        node = doc
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
        if node in (None, ""):
            issues.append(f".{'.'.join(path)}: critical field is missing or empty")

    version = doc["metadata"].get("version")
    if version != STATE_VERSION:
        issues.append(f".metadata.version: expected '{STATE_VERSION}', got '{version}'")

    return issues


def _is_kind(value, expected: type) -> bool:
    # bool is an int subclass; JSON keeps them apart.
    if expected is int and isinstance(value, bool):
        return False
    return isinstance(value, expected)
