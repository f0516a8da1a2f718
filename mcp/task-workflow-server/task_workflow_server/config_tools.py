"""
Configuration Tools for the Task Workflow MCP Server

Handles the YAML configuration cascade:
  1. Built-in defaults (DEFAULT_CONFIG)
  2. Global config:     ~/.pi/task-workflow.yaml (or ~/.claude/task-workflow.yaml)
  3. Project config:    <workspace>/.pi/task-workflow.yaml (or .claude/)
  4. Workspace config:  <workspace>/.tasks/config.yaml

Each level is deep-merged over the previous one. Unknown keys and wrong value
types are reported as warnings; they never stop the workflow.
"""

import logging
import re
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "task-workflow.yaml"
WORKSPACE_CONFIG_NAME = "config.yaml"
PLATFORM_DIRS = [".pi", ".claude"]

DEFAULT_MANUAL_TEST_PASS_PATTERN = r"\bMANUAL\s+TESTS?\s+PASSED\b"

DEFAULT_CONFIG = {
    "tracker": {
        "command": "tk",
        "timeout_seconds": 30,
    },
    "vcs": {
        "command": "jj",
        "timeout_seconds": 120,
    },
    "agent_start_timeout_seconds": 10,
    "manual_test_pass_pattern": DEFAULT_MANUAL_TEST_PASS_PATTERN,
    "debug": {
        "transition_capture": False,
    },
    "logging": {
        "level": "INFO",
    },
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_config(config: dict, defaults: dict, prefix: str = "") -> list[str]:
    """Validate config against defaults, returning warnings for unknown keys and bad types."""
    warnings = []
    for key, value in config.items():
        full_key = f"{prefix}.{key}" if prefix else key
        if key not in defaults:
            warnings.append(f"Unknown config key: '{full_key}'")
            continue

        default = defaults[key]
        if isinstance(default, dict):
            if isinstance(value, dict):
                warnings.extend(_validate_config(value, default, full_key))
            else:
                warnings.append(f"Invalid type for '{full_key}': expected mapping, got {type(value).__name__}")
        elif value is None:
            continue
        elif _is_number(default):
            if not _is_number(value):
                warnings.append(f"Invalid type for '{full_key}': expected number, got {type(value).__name__}")
        elif not isinstance(value, type(default)):
            warnings.append(
                f"Invalid type for '{full_key}': expected {type(default).__name__}, got {type(value).__name__}"
            )
    return warnings


def _deep_merge(base: dict, override: dict) -> dict:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> Optional[dict]:
    if not path.exists():
        return None

    try:
        with open(path) as f:
            loaded = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Skipping unreadable config %s: %s", path, exc)
        return None

    if loaded is None:
        return None
    if not isinstance(loaded, dict):
        logger.warning("Skipping config %s: top level must be a mapping", path)
        return None
    return loaded


def _first_existing(base: Path) -> Path:
    for platform_dir in PLATFORM_DIRS:
        path = base / platform_dir / CONFIG_FILE_NAME
        if path.exists():
            return path
    return base / PLATFORM_DIRS[0] / CONFIG_FILE_NAME


def _get_global_config_path() -> Path:
    return _first_existing(Path.home())


def _get_project_config_path(root: Optional[str] = None) -> Path:
    return _first_existing(Path(root) if root else Path.cwd())


def _get_workspace_config_path(root: Optional[str] = None) -> Path:
    base = Path(root) if root else Path.cwd()
    return base / ".tasks" / WORKSPACE_CONFIG_NAME


def config_get_effective(root: Optional[str] = None) -> dict[str, Any]:
    config = _deep_merge({}, DEFAULT_CONFIG)
    warnings = []
    sources = []
    loaded = {}

    levels = [
        ("global", _get_global_config_path()),
        ("project", _get_project_config_path(root)),
        ("workspace", _get_workspace_config_path(root)),
    ]
    for level, path in levels:
        level_config = _load_yaml(path)
        loaded[level] = level_config is not None
        if level_config is None:
            continue
        warnings.extend(_validate_config(level_config, DEFAULT_CONFIG))
        config = _deep_merge(config, level_config)
        sources.append(str(path))

    for warning in warnings:
        logger.warning("Config: %s", warning)

    return {
        "config": config,
        "sources": sources,
        "warnings": warnings,
        "has_global": loaded["global"],
        "has_project": loaded["project"],
        "has_workspace": loaded["workspace"]
    }


def get_manual_test_pass_regex(config: dict) -> re.Pattern:
    """Compile the manual-test confirmation pattern, falling back to the default on a bad regex."""
    pattern = config.get("manual_test_pass_pattern") or DEFAULT_MANUAL_TEST_PASS_PATTERN
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        logger.warning("Invalid manual_test_pass_pattern %r (%s); using default", pattern, exc)
        return re.compile(DEFAULT_MANUAL_TEST_PASS_PATTERN, re.IGNORECASE)


def get_agent_start_timeout(config: dict) -> float:
    value = config.get("agent_start_timeout_seconds")
    if not _is_number(value) or value <= 0:
        return DEFAULT_CONFIG["agent_start_timeout_seconds"]
    return float(value)


def get_logging_level(config: dict) -> str:
    section = config.get("logging")
    level = section.get("level") if isinstance(section, dict) else None
    if isinstance(level, str) and level.strip():
        return level.strip().upper()
    return DEFAULT_CONFIG["logging"]["level"]
