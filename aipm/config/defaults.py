"""Built-in workspace opinions.

Anything not set in ``opinions.yaml`` falls back to these values. The
structure mirrors the YAML file one to one.
"""

from __future__ import annotations

DEFAULT_OPINIONS: dict = {
    "workspace": {
        "type": "framework",
        "name": "AIPM",
        "description": "AI Project Manager",
    },
    "branching": {
        "prefix": "AIPM_",
        "mainBranchSuffix": "MAIN",
        "protectedBranches": {
            "userBranches": [],
            "aipmBranchSuffixes": [],
        },
    },
    "naming": {
        "feature": "feature/{description}",
        "bugfix": "bugfix/{issue-id}-{description}",
        "test": "test/{scope}",
        "session": "session/{timestamp}",
        "release": "release/{version}",
        "framework": "framework/{component}",
        "refactor": "refactor/{scope}",
        "docs": "docs/{scope}",
        "chore": "chore/{task}",
    },
    "lifecycle": {
        "global": {
            "handleUncommitted": "stash",
            "conflictResolution": "interactive",
            "allowOverride": False,
            "trackActivity": True,
        },
        "feature": {"deleteAfterMerge": False, "daysToKeep": 30},
        "session": {"deleteAfterMerge": True, "daysToKeep": 7, "maxSessions": 5},
        "test": {"deleteAfterMerge": True, "daysToKeep": 14},
        "release": {"deleteAfterMerge": False, "daysToKeep": "never"},
        "framework": {"deleteAfterMerge": False, "daysToKeep": 90},
        "refactor": {"deleteAfterMerge": True, "daysToKeep": 30},
        "docs": {"deleteAfterMerge": True, "daysToKeep": 60},
        "chore": {"deleteAfterMerge": True, "daysToKeep": 7},
        "bugfix": {"deleteAfterMerge": True, "daysToKeep": 14},
    },
    "memory": {
        "entityPrefix": None,  # defaults to branching.prefix
        "categories": ["CONTEXT", "DECISION", "LEARNING", "TASK", "REVIEW"],
        "maxSize": "10MB",
        "categoryRules": {
            "strict": True,
            "allowDynamic": False,
            "uncategorized": "warn",
            "caseInsensitive": True,
        },
    },
    "team": {
        "syncMode": "prompt",
        "fetchOnStart": True,
        "warnOnDivergence": True,
        "requirePullRequest": False,
        "sync": {
            "prompt": {"timeout": 30, "default": "fetch"},
            "divergence": {"resolution": "prompt", "showDiff": True},
            "conflicts": {"strategy": "manual", "backup": True, "abortOnFail": False},
        },
    },
    "sessions": {
        "enabled": True,
        "autoCreate": True,
        "autoMerge": False,
        "allowMultiple": False,
        "namePattern": "{naming.session}",
        "promptOnConflict": True,
        "cleanupOnMerge": True,
    },
    "validation": {
        "mode": "strict",
        "rules": {
            "enforceNaming": True,
            "blockWrongPrefix": True,
            "requireCleanTree": True,
            "validateMemory": True,
        },
        "blockers": {
            "wrongWorkspace": True,
            "invalidPrefix": True,
            "corruptMemory": True,
        },
        "gradual": {
            "startLevel": "relaxed",
            "endLevel": "strict",
            "progression": {"trigger": "days", "value": 30, "warnings": 7},
        },
    },
    "initialization": {
        "marker": {
            "type": "commit",
            "message": "AIPM_INIT_HERE",
            "includeMetadata": True,
            "verifyOnStart": True,
        },
        "branchCreation": {
            "requireClean": True,
            "backupOriginal": True,
            "showDiff": True,
        },
        "main": {"suffix": "MAIN", "fromCommit": "HEAD"},
    },
    "defaults": {
        "timeouts": {
            "sessionSeconds": 3600,
            "operationSeconds": 30,
            "gitSeconds": 120,
            "promptSeconds": 30,
        },
        "limits": {
            "memorySize": "10MB",
            "backupCount": 10,
            "sessionHistoryDays": 30,
            "branchAgeDays": 90,
        },
        "logging": {
            "level": "info",
            "location": ".aipm/logs",
            "rotate": True,
            "retain": 7,
        },
    },
    "workflows": {
        "branchCreation": {
            "startBehavior": "prompt",
            "protectionResponse": "warn",
            "typeSelection": "prompt",
            "defaultType": "feature",
        },
        "merging": {
            "sessionMerge": "on-stop",
            "featureComplete": "prompt",
            "conflictHandling": "interactive",
        },
        "synchronization": {
            "pullOnStart": "prompt",
            "pushOnStop": "prompt",
            "autoBackup": True,
        },
        "cleanup": {
            "afterMerge": "prompt",
            "staleHandling": "notify",
            "failedWork": "archive",
        },
        "branchFlow": {
            "sources": {
                "default": "{mainBranch}",
                "byType": {
                    "feature/*": "{mainBranch}",
                    "bugfix/*": "{mainBranch}",
                    "session/*": "current",
                    "test/*": "current",
                    "release/*": "{mainBranch}",
                },
            },
            "targets": {
                "default": "{mainBranch}",
                "byType": {
                    "feature/*": "{mainBranch}",
                    "bugfix/*": "{mainBranch}",
                    "session/*": "parent",
                    "test/*": "parent",
                    "release/*": "none",
                },
            },
            "parentTracking": True,
        },
    },
    "errorHandling": {
        "onMissingBranchType": "use-feature",
        "onInvalidReference": "fail",
        "onCircularReference": "fail",
        "recovery": {
            "autoRecover": True,
            "createBackup": True,
            "notifyUser": True,
        },
    },
    "settings": {
        "schemaVersion": "1.0",
        "frameworkPaths": {
            "modules": ".aipm/scripts/modules",
            "tests": ".aipm/scripts/test",
            "docs": "AIPM_Design_Docs",
            "templates": ".aipm/templates",
        },
        "workflow": {
            "requireTests": False,
            "requireDocs": False,
            "requireReview": False,
        },
    },
}

REQUIRED_SECTIONS = ("workspace", "branching", "naming", "lifecycle", "workflows")

WORKSPACE_TYPES = ("framework", "project")
VALIDATION_MODES = ("strict", "relaxed", "gradual")
HANDLE_UNCOMMITTED = ("stash", "commit", "fail")
SYNC_MODES = ("always", "if-clean", "if-feature", "prompt", "never")
REFERENCE_POLICIES = ("fail", "warn", "ignore")

PREFIX_PATTERN = r"^[A-Z][A-Z0-9_]*_$"
