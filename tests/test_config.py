"""Tests for opinions loading and configuration compilation."""

import tempfile
from pathlib import Path

import pytest
import yaml

from aipm.config.compiler import (
    build_branch_pattern,
    compile_configuration,
    parse_retention,
    parse_size,
)
from aipm.config.loader import (
    build_configuration,
    load_configuration,
    merge_with_defaults,
    validate_configuration,
)
from aipm.config.models import CompiledConfiguration, DeletionTiming, DeletionTrigger
from aipm.config.settings import EngineSettings
from aipm.errors import ConfigurationError


def _write_opinions(tmpdir: str, data: dict) -> Path:
    path = Path(tmpdir) / ".aipm" / "opinions.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.dump(data))
    return path


def _minimal_opinions(**overrides) -> dict:
    data = {
        "workspace": {"type": "project", "name": "DEMO"},
        "branching": {"prefix": "DEMO_", "mainBranchSuffix": "MAIN"},
        "naming": {"feature": "feature/{description}", "session": "session/{timestamp}"},
        "lifecycle": {
            "feature": {"deleteAfterMerge": True, "daysToKeep": 0},
            "session": {"deleteAfterMerge": False, "daysToKeep": "never"},
        },
        "workflows": {"branchCreation": {"typeSelection": "prompt"}},
        "memory": {"entityPrefix": "DEMO_"},
    }
    data.update(overrides)
    return data


def _compile(data: dict) -> CompiledConfiguration:
    return compile_configuration(build_configuration(merge_with_defaults(data)))


# --- Loading ---


def test_missing_file_uses_defaults():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = load_configuration(repo_root=tmpdir)
        assert config.uses_defaults_only
        assert config.prefix == "AIPM_"
        assert config.fingerprint


def test_load_file_over_defaults():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_opinions(tmpdir, _minimal_opinions())
        config = load_configuration(path)
        assert config.source_path == str(path)
        assert config.prefix == "DEMO_"
        # untouched defaults survive the merge
        assert config.raw["team"]["fetchOnStart"] is True


def test_invalid_yaml_raises():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "opinions.yaml"
        path.write_text("workspace: [unclosed")
        with pytest.raises(ConfigurationError):
            load_configuration(path)


def test_missing_required_section_fails():
    with tempfile.TemporaryDirectory() as tmpdir:
        data = _minimal_opinions()
        del data["lifecycle"]
        path = _write_opinions(tmpdir, data)
        with pytest.raises(ConfigurationError, match="lifecycle"):
            load_configuration(path)


def test_on_error_use_defaults():
    with tempfile.TemporaryDirectory() as tmpdir:
        data = _minimal_opinions(loading={"validation": {"onError": "use-defaults"}})
        data["workspace"]["type"] = "spaceship"
        path = _write_opinions(tmpdir, data)
        config = load_configuration(path)
        assert config.raw["workspace"]["type"] == "framework"
        assert config.uses_defaults_only


def test_prefix_mismatch_detected():
    raw = merge_with_defaults(_minimal_opinions(memory={"entityPrefix": "OTHER_"}))
    issues = validate_configuration(raw)
    assert any("Prefix mismatch" in i for i in issues)


def test_invalid_prefix_format():
    raw = merge_with_defaults(_minimal_opinions(branching={"prefix": "demo"}, memory={"entityPrefix": "demo"}))
    issues = validate_configuration(raw)
    assert any("Invalid prefix format" in i for i in issues)


def test_fingerprint_changes_with_content():
    a = build_configuration(merge_with_defaults(_minimal_opinions()))
    b = build_configuration(merge_with_defaults(_minimal_opinions()))
    c = build_configuration(merge_with_defaults(_minimal_opinions(team={"fetchOnStart": False})))
    assert a.fingerprint == b.fingerprint
    assert a.fingerprint != c.fingerprint


def test_settings_from_env():
    settings = EngineSettings.from_env(
        "/work/repo",
        environ={"AIPM_STATE_LOCK_TIMEOUT": "5", "AIPM_STATE_DIR": "/tmp/state"},
    )
    assert settings.lock_timeout == 5.0
    assert settings.state_dir == Path("/tmp/state")
    assert settings.refresh_interval == 300.0


def test_settings_reject_bad_number():
    with pytest.raises(ConfigurationError):
        EngineSettings.from_env("/work/repo", environ={"AIPM_STATE_REFRESH_INTERVAL": "soon"})


# --- Compilation ---


def test_main_branch_and_prefix():
    compiled = _compile(_minimal_opinions())
    assert compiled.main_branch == "DEMO_MAIN"
    assert compiled.prefix == "DEMO_"


def test_branch_pattern_forms():
    pattern = build_branch_pattern("bugfix", "bugfix/{issue-id}-{description}", "AIPM_")
    assert pattern.full == "AIPM_bugfix/{issue-id}-{description}"
    assert pattern.glob == "AIPM_bugfix/*-*"
    assert pattern.matches("AIPM_bugfix/123-login")
    assert not pattern.matches("AIPM_feature/login")
    assert pattern.specificity == len("AIPM_bugfix/") + len("-")


def test_classification():
    compiled = _compile(_minimal_opinions())
    assert compiled.classify("DEMO_MAIN") == "main"
    assert compiled.classify("DEMO_feature/login") == "feature"
    assert compiled.classify("DEMO_session/20260301_120000") == "session"
    assert compiled.classify("DEMO_spike/x") == "unknown"
    assert compiled.classify("develop") == "user"


def test_more_specific_pattern_wins():
    data = _minimal_opinions(naming={"feature": "feature/{description}", "ui": "feature/ui-{description}"})
    compiled = _compile(data)
    assert compiled.classify("DEMO_feature/ui-button") == "ui"
    assert compiled.classify("DEMO_feature/backend") == "feature"


def test_naming_reference_resolution():
    data = _minimal_opinions(naming={"feature": "feature/{description}", "hotfix": "{naming.feature}-hot"})
    compiled = _compile(data)
    assert compiled.branch_patterns["hotfix"].original == "feature/{description}-hot"


def test_circular_reference_fails():
    data = _minimal_opinions(naming={"a": "{naming.b}", "b": "{naming.a}"})
    with pytest.raises(ConfigurationError, match="Circular"):
        _compile(data)


def test_invalid_reference_warn_keeps_literal():
    data = _minimal_opinions(
        naming={"feature": "feature/{description}", "odd": "{naming.missing}/x"},
        errorHandling={"onInvalidReference": "warn"},
    )
    compiled = _compile(data)
    assert compiled.branch_patterns["odd"].original == "{naming.missing}/x"


def test_lifecycle_matrix():
    compiled = _compile(_minimal_opinions())
    feature = compiled.lifecycle["feature"]
    assert feature.timing == DeletionTiming.IMMEDIATE
    assert feature.trigger == DeletionTrigger.SINCE_MERGE
    assert feature.rationale == "Delete immediately after merge"

    session = compiled.lifecycle["session"]
    assert session.timing == DeletionTiming.NEVER
    assert session.rationale == "Keep forever"


def test_scheduled_lifecycle():
    compiled = _compile(_minimal_opinions(lifecycle={"feature": {"deleteAfterMerge": False, "daysToKeep": 30}}))
    rule = compiled.lifecycle["feature"]
    assert rule.timing == DeletionTiming.SCHEDULED
    assert rule.delete_after_days == 30
    assert rule.trigger == DeletionTrigger.SINCE_LAST_ACTIVITY
    assert rule.rationale == "Delete 30 days after last activity"


def test_parse_retention():
    assert parse_retention("never") is None
    assert parse_retention(-1) is None
    assert parse_retention("7") == 7
    assert parse_retention(0) == 0
    with pytest.raises(ConfigurationError):
        parse_retention("a week")


def test_parse_size():
    assert parse_size("10MB") == 10 * 1024 * 1024
    assert parse_size("512KB") == 512 * 1024
    assert parse_size(2) == 2 * 1024 * 1024


def test_protected_branches():
    data = _minimal_opinions(
        branching={
            "prefix": "DEMO_",
            "protectedBranches": {"userBranches": ["develop"], "aipmBranchSuffixes": ["RELEASE"]},
        }
    )
    compiled = _compile(data)
    assert compiled.protected.all == ["develop", "DEMO_RELEASE"]
    assert compiled.protected.reason_for("develop") == "user_protected"
    assert compiled.protected.reason_for("DEMO_RELEASE") == "aipm_protected"
    assert compiled.protected.reason_for("DEMO_feature/x") == ""


def test_workflows_resolve_main_branch_and_prompts():
    compiled = _compile(_minimal_opinions())
    targets = compiled.workflows["branchFlow"]["targets"]
    assert targets["default"] == "DEMO_MAIN"
    assert targets["byType"]["feature/*"] == "DEMO_MAIN"
    assert compiled.flow_target_for("session/20260301") == "parent"
    prompt = compiled.prompt("branchType")
    assert prompt.message == "What type of work is this?"
    assert [o.value for o in prompt.options] == ["feature", "bugfix", "docs", "test"]


def test_memory_compilation():
    compiled = _compile(_minimal_opinions())
    assert compiled.memory["entityPrefix"] == "DEMO_"
    assert compiled.memory["entityRegex"].startswith("^DEMO_(")
    assert "DEMO_CONTEXT_DESCRIPTION" in compiled.memory["examples"]


def test_compilation_is_deterministic_and_round_trips():
    first = _compile(_minimal_opinions())
    second = _compile(_minimal_opinions())
    assert first.to_dict() == second.to_dict()
    assert CompiledConfiguration.from_dict(first.to_dict()).to_dict() == first.to_dict()


def test_missing_lifecycle_falls_back_to_feature():
    data = _minimal_opinions(naming={"feature": "feature/{description}", "spike": "spike/{description}"})
    compiled = _compile(data)
    assert "spike" not in compiled.lifecycle
    assert compiled.lifecycle_for("spike") == compiled.lifecycle["feature"]


def test_flow_target_ties_fall_back_to_default():
    data = _minimal_opinions(workflows={
        "branchFlow": {
            "targets": {
                "default": "DEMO_integration",
                "byType": {"feature/*": "DEMO_first", "*eature/x": "DEMO_second"},
            },
        },
    })
    compiled = _compile(data)
    assert compiled.flow_target_for("feature/x") == "DEMO_integration"
    assert compiled.flow_target_for("feature/y") == "DEMO_first"
    assert compiled.flow_target_for("chore/y") == "DEMO_integration"


def test_gradual_validation_compilation():
    data = _minimal_opinions(validation={
        "mode": "gradual",
        "gradual": {
            "startLevel": "relaxed",
            "endLevel": "strict",
            "progression": {"trigger": "commits", "value": 50, "warnings": 3},
        },
    })
    validation = _compile(data).validation
    assert validation["mode"] == "gradual"
    assert validation["currentLevel"] == "relaxed"
    assert validation["gradual"] == {
        "startLevel": "relaxed",
        "endLevel": "strict",
        "progression": {"trigger": "commits", "value": 50, "warnings": 3},
        "currentLevel": "relaxed",
    }


def test_strict_validation_has_no_gradual_block():
    validation = _compile(_minimal_opinions()).validation
    assert validation["currentLevel"] == "strict"
    assert "gradual" not in validation


def test_branch_types_follow_declaration_order():
    config = build_configuration(merge_with_defaults(_minimal_opinions()))
    assert config.branch_types[:2] == ["feature", "session"]
    assert list(compile_configuration(config).branch_patterns) == config.branch_types
