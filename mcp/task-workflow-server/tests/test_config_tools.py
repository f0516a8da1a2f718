"""
Tests for the config cascade (global -> project -> workspace).

Run with: pytest tests/test_config_tools.py -v
"""

import pytest
from pathlib import Path
from unittest.mock import patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from task_workflow_server.config_tools import (
    DEFAULT_CONFIG,
    DEFAULT_MANUAL_TEST_PASS_PATTERN,
    _deep_merge,
    _get_global_config_path,
    _get_project_config_path,
    _get_workspace_config_path,
    _load_yaml,
    _validate_config,
    config_get_effective,
    get_agent_start_timeout,
    get_logging_level,
    get_manual_test_pass_regex,
)


@pytest.fixture
def home(tmp_path):
    """An empty home directory so the real global config never leaks in."""
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    with patch("task_workflow_server.config_tools.Path.home", return_value=home_dir):
        yield home_dir


@pytest.fixture
def project(tmp_path):
    project_dir = tmp_path / "project"
    project_dir.mkdir()
    return project_dir


def write_config(base, platform_dir, text):
    directory = base / platform_dir
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "task-workflow.yaml"
    path.write_text(text)
    return path


class TestConfigPaths:
    def test_global_path_prefers_pi(self, home):
        write_config(home, ".pi", "vcs: {}")
        write_config(home, ".claude", "vcs: {}")
        assert ".pi" in str(_get_global_config_path())

    def test_global_path_falls_back_to_claude(self, home):
        write_config(home, ".claude", "vcs: {}")
        assert ".claude" in str(_get_global_config_path())

    def test_defaults_to_pi_when_neither_exists(self, home):
        result = _get_global_config_path()
        assert ".pi" in str(result)
        assert not result.exists()

    def test_project_path_uses_cwd_when_no_root(self, project):
        write_config(project, ".claude", "vcs: {}")
        with patch("task_workflow_server.config_tools.Path.cwd", return_value=project):
            assert ".claude" in str(_get_project_config_path())

    def test_workspace_path(self, project):
        assert _get_workspace_config_path(str(project)) == project / ".tasks" / "config.yaml"


class TestCascade:
    def test_defaults_only(self, home, project):
        result = config_get_effective(str(project))
        assert result["config"] == DEFAULT_CONFIG
        assert result["sources"] == []
        assert result["has_global"] is False
        assert result["warnings"] == []

    def test_levels_override_in_order(self, home, project):
        write_config(home, ".pi", "tracker:\n  command: tk-global\n  timeout_seconds: 5\n")
        write_config(project, ".pi", "tracker:\n  command: tk-project\n")
        (project / ".tasks").mkdir()
        (project / ".tasks" / "config.yaml").write_text("vcs:\n  timeout_seconds: 300\n")

        result = config_get_effective(str(project))
        config = result["config"]
        assert config["tracker"] == {"command": "tk-project", "timeout_seconds": 5}
        assert config["vcs"] == {"command": "jj", "timeout_seconds": 300}
        assert len(result["sources"]) == 3
        assert result["has_global"] and result["has_project"] and result["has_workspace"]

    def test_defaults_not_mutated(self, home, project):
        write_config(project, ".pi", "debug:\n  transition_capture: true\n")
        assert config_get_effective(str(project))["config"]["debug"]["transition_capture"] is True
        assert DEFAULT_CONFIG["debug"]["transition_capture"] is False

    def test_unknown_keys_warn_but_load(self, home, project):
        write_config(project, ".pi", "colour: blue\nvcs:\n  command: 7\n")
        result = config_get_effective(str(project))
        assert "Unknown config key: 'colour'" in result["warnings"]
        assert any("vcs.command" in w for w in result["warnings"])
        assert result["config"]["colour"] == "blue"

    def test_broken_yaml_is_skipped(self, home, project):
        path = write_config(project, ".pi", "tracker: [unclosed\n")
        assert _load_yaml(path) is None
        assert config_get_effective(str(project))["has_project"] is False

    def test_non_mapping_file_is_skipped(self, home, project):
        path = write_config(project, ".pi", "- just\n- a list\n")
        assert _load_yaml(path) is None


class TestValidation:
    def test_int_and_float_are_both_numbers(self):
        assert _validate_config({"agent_start_timeout_seconds": 2.5}, DEFAULT_CONFIG) == []
        assert _validate_config({"agent_start_timeout_seconds": True}, DEFAULT_CONFIG) != []

    def test_mapping_expected(self):
        warnings = _validate_config({"logging": "DEBUG"}, DEFAULT_CONFIG)
        assert warnings == ["Invalid type for 'logging': expected mapping, got str"]

    def test_deep_merge(self):
        merged = _deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}, "d": 4})
        assert merged == {"a": {"b": 1, "c": 3}, "d": 4}


class TestGetters:
    def test_manual_test_regex(self):
        regex = get_manual_test_pass_regex({"manual_test_pass_pattern": r"\bLGTM\b"})
        assert regex.search("lgtm from me")
        default = get_manual_test_pass_regex({})
        assert default.pattern == DEFAULT_MANUAL_TEST_PASS_PATTERN

    def test_bad_regex_falls_back(self):
        regex = get_manual_test_pass_regex({"manual_test_pass_pattern": "(unclosed"})
        assert regex.pattern == DEFAULT_MANUAL_TEST_PASS_PATTERN

    @pytest.mark.parametrize("value,expected", [(3, 3.0), (0, 10), (-1, 10), ("5", 10), (None, 10)])
    def test_agent_start_timeout(self, value, expected):
        assert get_agent_start_timeout({"agent_start_timeout_seconds": value}) == expected

    def test_logging_level(self):
        assert get_logging_level({"logging": {"level": " debug "}}) == "DEBUG"
        assert get_logging_level({"logging": "loud"}) == "INFO"
        assert get_logging_level({}) == "INFO"
