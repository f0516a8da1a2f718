"""
Tests for workflow persistence, validation and transitioned documents.

Run with: pytest tests/test_state_tools.py -v
"""

import json
import pytest
from pathlib import Path
from unittest.mock import patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from task_workflow_server.state_machine import ActiveTarget, CURRENT, NEXT_SIBLING, PARENT, ROOT, first_created_child
from task_workflow_server.state_tools import (
    UNBOUND_SESSION_LEAF_ID,
    WorkflowError,
    bind_session_leaf,
    build_machine_snapshot,
    build_transitioned_workflow,
    create_initial_workflow,
    get_workflow_dir,
    get_workflow_path,
    load_workflow,
    persist_consumed_assistant_id,
    persist_session_file_path,
    resolve_next_active_task_id,
    save_workflow_atomic,
    validate_workflow,
    workflow_get_state,
    workflow_initialize,
    workflow_validate,
)
from task_workflow_server.task_tree import make_task_node


def implementing_workflow():
    """A workflow in implement on S1 with two plan subtasks."""
    workflow = create_initial_workflow("ROOT-1", "Add login")
    workflow["subtasks"] = [make_task_node("S1", "Form"), make_task_node("S2", "Endpoint")]
    workflow["state"] = "implement"
    workflow["active_task_id"] = "S1"
    workflow["active_path_ids"] = ["ROOT-1", "S1"]
    return workflow


class TestInitialWorkflow:
    def test_initial_document(self):
        workflow = create_initial_workflow("ROOT-1", "Add login")
        assert workflow["state"] == "refine"
        assert workflow["version"] == 1
        assert workflow["active_path_ids"] == ["ROOT-1"]
        assert workflow["session_leaf_id"] == UNBOUND_SESSION_LEAF_ID
        assert workflow["last_transition"]["event"] == "initialize"
        assert validate_workflow(workflow) is None

    def test_initialize_tool(self, tmp_path):
        result = workflow_initialize("ROOT-1", "Add login", root=str(tmp_path))
        assert result["success"] is True
        assert result["state"] == "refine"
        assert get_workflow_path(tmp_path).exists()

    def test_initialize_fails_if_exists(self, tmp_path):
        workflow_initialize("ROOT-1", "Add login", root=str(tmp_path))
        result = workflow_initialize("ROOT-1", "Add login", root=str(tmp_path))
        assert result["success"] is False
        assert "already exists" in result["error"]


class TestValidation:
    def test_active_path_mismatch(self):
        workflow = implementing_workflow()
        workflow["active_path_ids"] = ["S1", "ROOT-1"]
        assert "does not match root->active path" in validate_workflow(workflow)

    def test_depth_incompatible_with_state(self):
        workflow = implementing_workflow()
        workflow["state"] = "refine"
        assert validate_workflow(workflow) == "state refine is incompatible with active depth 1"

    def test_schema_mismatch(self):
        workflow = create_initial_workflow("ROOT-1", "Add login")
        workflow["schema_version"] = 2
        assert "schema mismatch" in validate_workflow(workflow)

    @pytest.mark.parametrize("version", [0, "1", 1.0, True])
    def test_version_must_be_positive_int(self, version):
        workflow = create_initial_workflow("ROOT-1", "Add login")
        workflow["version"] = version
        assert validate_workflow(workflow) == "workflow.version must be an integer >= 1"

    def test_unknown_active_task(self):
        workflow = create_initial_workflow("ROOT-1", "Add login")
        workflow["active_task_id"] = "GHOST"
        assert "not found in tree" in validate_workflow(workflow)

    def test_cursor_must_be_non_empty(self):
        workflow = create_initial_workflow("ROOT-1", "Add login")
        workflow["last_consumed_assistant_id"] = "  "
        assert "last_consumed_assistant_id" in validate_workflow(workflow)


class TestLoadSave:
    def test_round_trip(self, tmp_path):
        workflow = implementing_workflow()
        save_workflow_atomic(tmp_path, workflow)
        assert load_workflow(tmp_path) == workflow

    def test_no_temp_files_left_behind(self, tmp_path):
        save_workflow_atomic(tmp_path, implementing_workflow())
        leftovers = [p.name for p in get_workflow_dir(tmp_path).iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_refuses_invalid_document(self, tmp_path):
        save_workflow_atomic(tmp_path, create_initial_workflow("ROOT-1", "Add login"))
        bad = implementing_workflow()
        bad["state"] = "plan"
        with pytest.raises(WorkflowError, match="Refusing to save invalid workflow"):
            save_workflow_atomic(tmp_path, bad)
        assert load_workflow(tmp_path)["state"] == "refine"

    def test_failed_replace_keeps_previous_document(self, tmp_path):
        save_workflow_atomic(tmp_path, create_initial_workflow("ROOT-1", "Add login"))
        with patch("task_workflow_server.state_tools.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(WorkflowError, match="Failed to save workflow atomically"):
                save_workflow_atomic(tmp_path, implementing_workflow())
        assert load_workflow(tmp_path)["state"] == "refine"
        assert not [p for p in get_workflow_dir(tmp_path).iterdir() if p.name.endswith(".tmp")]

    def test_missing_file(self, tmp_path):
        with pytest.raises(WorkflowError, match="Missing workflow file"):
            load_workflow(tmp_path)

    def test_invalid_json(self, tmp_path):
        get_workflow_dir(tmp_path).mkdir()
        get_workflow_path(tmp_path).write_text("{not json")
        with pytest.raises(WorkflowError, match=r"Invalid JSON .* Manual cleanup required\."):
            load_workflow(tmp_path)

    def test_invariant_failure_on_load(self, tmp_path):
        workflow = implementing_workflow()
        workflow["active_path_ids"] = ["ROOT-1"]
        get_workflow_dir(tmp_path).mkdir()
        get_workflow_path(tmp_path).write_text(json.dumps(workflow))
        with pytest.raises(WorkflowError) as exc_info:
            load_workflow(tmp_path)
        assert str(exc_info.value).endswith("Manual cleanup required.")

    def test_transition_appends_audit_entry(self, tmp_path):
        workflow = create_initial_workflow("ROOT-1", "Add login")
        save_workflow_atomic(tmp_path, workflow)
        save_workflow_atomic(tmp_path, build_transitioned_workflow(workflow, "plan", "ROOT-1", "machine:complete:refine"))

        lines = (get_workflow_dir(tmp_path) / "interactions.jsonl").read_text().splitlines()
        entry = json.loads(lines[-1])
        assert entry["type"] == "state_change"
        assert entry["metadata"]["event"] == "machine:complete:refine"
        assert entry["metadata"]["version"] == {"from": 1, "to": 2}


class TestTransitionedWorkflow:
    def test_version_increments_once_and_records_transition(self):
        workflow = create_initial_workflow("ROOT-1", "Add login")
        next_doc = build_transitioned_workflow(workflow, "plan", "ROOT-1", "machine:complete:refine")
        assert next_doc["version"] == 2
        assert next_doc["last_transition"]["from_state"] == "refine"
        assert next_doc["last_transition"]["to_state"] == "plan"
        assert workflow["version"] == 1

    def test_created_children_replace_previous_batch(self):
        workflow = implementing_workflow()
        workflow["state"] = "review"
        workflow["subtasks"][0]["subtasks"] = [make_task_node("F1", "One"), make_task_node("F2", "Two")]
        created = {"S1": [make_task_node("F1", "One"), make_task_node("F3", "Three")]}
        next_doc = build_transitioned_workflow(workflow, "implement-review", "F1", "machine:complete:review", created)

        assert [n["task_id"] for n in next_doc["subtasks"][0]["subtasks"]] == ["F1", "F3"]
        assert [n["task_id"] for n in next_doc["subtasks"]] == ["S1", "S2"]
        assert len(workflow["subtasks"][0]["subtasks"]) == 2

    def test_repeated_child_in_batch_kept_once(self):
        workflow = create_initial_workflow("ROOT-1", "Add login")
        workflow["state"] = "review-plan"
        created = {"ROOT-1": [make_task_node("S1", "Form"), make_task_node("S1", "Form"), make_task_node("S2", "Endpoint")]}
        next_doc = build_transitioned_workflow(workflow, "implement", "S1", "machine:complete:review-plan", created)
        assert [n["task_id"] for n in next_doc["subtasks"]] == ["S1", "S2"]
        assert next_doc["active_path_ids"] == ["ROOT-1", "S1"]

    def test_consumed_assistant_id_written_with_transition(self):
        workflow = create_initial_workflow("ROOT-1", "Add login")
        next_doc = build_transitioned_workflow(
            workflow, "plan", "ROOT-1", "machine:complete:refine", consumed_assistant_id="a-7"
        )
        assert next_doc["last_consumed_assistant_id"] == "a-7"
        assert next_doc["version"] == 2

    def test_invalid_target_raises(self):
        workflow = create_initial_workflow("ROOT-1", "Add login")
        with pytest.raises(WorkflowError):
            build_transitioned_workflow(workflow, "plan", "GHOST", "x")
        with pytest.raises(WorkflowError, match="violates workflow invariants"):
            build_transitioned_workflow(workflow, "implement", "ROOT-1", "x")


class TestSnapshotAndTargets:
    def test_snapshot(self):
        snapshot = build_machine_snapshot(implementing_workflow())
        assert snapshot.active_task_id == "S1"
        assert snapshot.active_task_parent_id == "ROOT-1"
        assert snapshot.active_task_next_sibling_id == "S2"

    def test_resolve_targets(self):
        workflow = implementing_workflow()
        assert resolve_next_active_task_id(workflow, "S1", CURRENT) == "S1"
        assert resolve_next_active_task_id(workflow, "S1", ROOT) == "ROOT-1"
        assert resolve_next_active_task_id(workflow, "S1", PARENT) == "ROOT-1"
        assert resolve_next_active_task_id(workflow, "S1", NEXT_SIBLING) == "S2"

    def test_first_created_child_prefers_created(self):
        workflow = implementing_workflow()
        created = {"ROOT-1": [make_task_node("S2", "Endpoint")]}
        assert resolve_next_active_task_id(workflow, "ROOT-1", first_created_child("ROOT-1"), created) == "S2"
        assert resolve_next_active_task_id(workflow, "ROOT-1", first_created_child("ROOT-1")) == "S1"

    def test_unresolvable_targets_raise(self):
        workflow = implementing_workflow()
        with pytest.raises(WorkflowError, match="No next sibling"):
            resolve_next_active_task_id(workflow, "S2", NEXT_SIBLING)
        with pytest.raises(WorkflowError, match="No parent"):
            resolve_next_active_task_id(workflow, "ROOT-1", PARENT)
        with pytest.raises(WorkflowError, match="No children"):
            resolve_next_active_task_id(workflow, "S1", first_created_child("S1"))
        with pytest.raises(WorkflowError, match="Unknown active task target"):
            resolve_next_active_task_id(workflow, "S1", ActiveTarget("sideways"))


class TestCursorUpdates:
    def test_consumed_id_does_not_bump_version(self, workspace):
        workflow = load_workflow(workspace)
        updated = persist_consumed_assistant_id(workspace, workflow, "m-9")
        assert updated["last_consumed_assistant_id"] == "m-9"
        assert updated["version"] == 1
        assert load_workflow(workspace)["last_consumed_assistant_id"] == "m-9"

    def test_blank_id_is_noop(self, workspace):
        workflow = load_workflow(workspace)
        assert persist_consumed_assistant_id(workspace, workflow, None) is workflow

    def test_bind_and_session_file(self, workspace):
        workflow = bind_session_leaf(workspace, load_workflow(workspace), "leaf-7")
        workflow = persist_session_file_path(workspace, workflow, "  /tmp/s.jsonl  ")
        stored = load_workflow(workspace)
        assert stored["session_leaf_id"] == "leaf-7"
        assert stored["session_file_path"] == "/tmp/s.jsonl"
        assert stored["version"] == 1

    def test_bind_empty_leaf_rejected(self, workspace):
        with pytest.raises(WorkflowError):
            bind_session_leaf(workspace, load_workflow(workspace), "")


class TestStateTools:
    def test_get_state(self, workspace):
        state = workflow_get_state(root=str(workspace))
        assert state["state"] == "refine"
        assert state["version"] == 1
        assert state["is_complete"] is False
        assert state["ticket_count"] == 1

    def test_get_state_missing(self, tmp_path):
        assert "Missing workflow file" in workflow_get_state(root=str(tmp_path))["error"]

    def test_validate(self, workspace, tmp_path_factory):
        assert workflow_validate(root=str(workspace))["valid"] is True
        empty = tmp_path_factory.mktemp("empty")
        assert workflow_validate(root=str(empty))["valid"] is False
