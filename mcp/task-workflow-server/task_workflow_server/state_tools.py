"""
State Management Tools for the Task Workflow MCP Server

Persists the workflow document for one task workspace in
`<workspace>/.tasks/workflow.json`. Every load and every save runs the full
invariant check; a document that fails it is never trusted and never written.
Writes go to a temp file that is renamed over the target under a file lock,
so a crash mid-write leaves the previous valid document in place.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from filelock import FileLock

from .states import FINAL_STATE, INITIAL_STATE, is_workflow_state, state_allows_active_depth
from .task_tree import (
    clone_task_node,
    compute_path_to_id,
    find_node_by_id,
    find_parent_by_id,
    iter_nodes,
    next_sibling,
    validate_task_tree,
)
from .state_machine import ActiveTarget, WorkflowSnapshot

logger = logging.getLogger(__name__)

WORKFLOW_SCHEMA_VERSION = 1
WORKFLOW_DIR_NAME = ".tasks"
WORKFLOW_FILE_NAME = "workflow.json"
INTERACTIONS_FILE_NAME = "interactions.jsonl"
UNBOUND_SESSION_LEAF_ID = "unbound"


class WorkflowError(Exception):
    """Engine fault: the persisted workflow cannot be trusted or updated.

    The persisted document is never modified when this is raised; the message
    is meant to be shown to a human verbatim.
    """


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def resolve_workspace_root(root: Optional[str] = None) -> Path:
    return Path(root) if root else Path.cwd()


def get_workflow_dir(root) -> Path:
    return Path(root) / WORKFLOW_DIR_NAME


def get_workflow_path(root) -> Path:
    return get_workflow_dir(root) / WORKFLOW_FILE_NAME


def _is_optional_non_empty_string(value: Any) -> bool:
    return value is None or (isinstance(value, str) and bool(value.strip()))


# ============================================================================
# Validation
# ============================================================================

def validate_workflow(workflow: Any) -> Optional[str]:
    """Return the first invariant violation in a workflow document, or None."""
    if not isinstance(workflow, dict):
        return "workflow root must be an object"

    schema_version = workflow.get("schema_version")
    if not isinstance(schema_version, int) or isinstance(schema_version, bool):
        return "workflow.schema_version must be an integer"
    if schema_version != WORKFLOW_SCHEMA_VERSION:
        return f"workflow schema mismatch (expected {WORKFLOW_SCHEMA_VERSION}, found {schema_version})"

    version = workflow.get("version")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        return "workflow.version must be an integer >= 1"

    session_leaf_id = workflow.get("session_leaf_id")
    if not isinstance(session_leaf_id, str) or not session_leaf_id.strip():
        return "workflow.session_leaf_id must be a non-empty string"

    if not _is_optional_non_empty_string(workflow.get("session_file_path")):
        return "workflow.session_file_path must be null or a non-empty string"

    if not _is_optional_non_empty_string(workflow.get("last_consumed_assistant_id")):
        return "workflow.last_consumed_assistant_id must be null or a non-empty string"

    state = workflow.get("state")
    if not is_workflow_state(state):
        return f"workflow.state is invalid: {state}"

    tree_error = validate_task_tree(workflow)
    if tree_error:
        return tree_error

    active_task_id = workflow.get("active_task_id")
    if not isinstance(active_task_id, str) or find_node_by_id(workflow, active_task_id) is None:
        return f"workflow.active_task_id not found in tree: {active_task_id}"

    expected_path = compute_path_to_id(workflow, active_task_id)
    active_path_ids = workflow.get("active_path_ids")
    if not isinstance(active_path_ids, list) or len(active_path_ids) != len(expected_path):
        return f"workflow.active_path_ids length mismatch for active task {active_task_id}"
    if active_path_ids != expected_path:
        return f"workflow.active_path_ids does not match root->active path for {active_task_id}"

    active_depth = len(active_path_ids) - 1
    if not state_allows_active_depth(state, active_depth):
        return f"state {state} is incompatible with active depth {active_depth}"

    return None


# ============================================================================
# Documents
# ============================================================================

def create_initial_workflow(
    root_task_id: str,
    root_title: str,
    session_leaf_id: str = UNBOUND_SESSION_LEAF_ID
) -> dict[str, Any]:
    now = _now()
    return {
        "schema_version": WORKFLOW_SCHEMA_VERSION,
        "task_id": root_task_id,
        "title": root_title.strip() or root_task_id,
        "subtasks": [],
        "state": INITIAL_STATE,
        "active_task_id": root_task_id,
        "active_path_ids": [root_task_id],
        "session_leaf_id": session_leaf_id,
        "session_file_path": None,
        "last_consumed_assistant_id": None,
        "version": 1,
        "updated_at": now,
        "last_transition": {
            "event": "initialize",
            "from_state": INITIAL_STATE,
            "to_state": INITIAL_STATE,
            "from_active_task_id": root_task_id,
            "to_active_task_id": root_task_id,
            "at": now,
        },
    }


def clone_workflow(workflow: dict) -> dict[str, Any]:
    draft = clone_task_node(workflow)
    for key, value in workflow.items():
        if key in ("task_id", "title", "subtasks"):
            continue
        if key == "active_path_ids":
            draft[key] = list(value)
        elif key == "last_transition" and isinstance(value, dict):
            draft[key] = dict(value)
        else:
            draft[key] = value
    return draft


def load_workflow(root) -> dict[str, Any]:
    workflow_path = get_workflow_path(root)
    if not workflow_path.exists():
        raise WorkflowError(
            f"Missing workflow file: {workflow_path}. Manual cleanup required: "
            f"create a valid {WORKFLOW_DIR_NAME}/{WORKFLOW_FILE_NAME} before running the task loop."
        )

    try:
        raw = workflow_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise WorkflowError(f"Failed to read workflow file {workflow_path}: {exc}. Manual cleanup required.") from exc

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise WorkflowError(f"Invalid JSON in {workflow_path}: {exc}. Manual cleanup required.") from exc

    if not isinstance(parsed, dict):
        raise WorkflowError(
            f"Invalid workflow schema in {workflow_path}: root must be an object. Manual cleanup required."
        )

    error = validate_workflow(parsed)
    if error:
        raise WorkflowError(
            f"Invalid workflow schema/invariants in {workflow_path}: {error}. Manual cleanup required."
        )

    return parsed


def _log_state_changes(root, old_state: dict, new_state: dict) -> None:
    """Append a state_change entry to interactions.jsonl when the transition record changes."""
    try:
        transition = new_state.get("last_transition") or {}
        if transition == (old_state.get("last_transition") or {}):
            return

        entry = {
            "timestamp": _now(),
            "role": "system",
            "type": "state_change",
            "content": (
                f"State changed: {transition.get('from_state')}/{transition.get('from_active_task_id')}"
                f" -> {transition.get('to_state')}/{transition.get('to_active_task_id')}"
            ),
            "metadata": {
                "event": transition.get("event"),
                "version": {"from": old_state.get("version"), "to": new_state.get("version")},
            },
        }

        interactions_file = get_workflow_dir(root) / INTERACTIONS_FILE_NAME
        lock_file = get_workflow_dir(root) / f"{INTERACTIONS_FILE_NAME}.lock"
        with FileLock(str(lock_file), timeout=5):
            with open(interactions_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")
    except Exception:
        logger.warning("Could not append transition to %s", INTERACTIONS_FILE_NAME, exc_info=True)


def save_workflow_atomic(root, workflow: dict) -> None:
    """Validate and atomically replace the workflow document.

    Raises:
        WorkflowError: if the document violates an invariant or cannot be written.
    """
    error = validate_workflow(workflow)
    if error:
        raise WorkflowError(f"Refusing to save invalid workflow: {error}")

    workflow_dir = get_workflow_dir(root)
    workflow_dir.mkdir(parents=True, exist_ok=True)
    target = get_workflow_path(root)
    lock_file = workflow_dir / f"{WORKFLOW_FILE_NAME}.lock"

    old_state = None
    with FileLock(str(lock_file)):
        if target.exists():
            try:
                old_state = json.loads(target.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                old_state = None

        fd, tmp_path = tempfile.mkstemp(dir=str(workflow_dir), prefix=f".{WORKFLOW_FILE_NAME}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(workflow, indent=2) + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, target)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise WorkflowError(f"Failed to save workflow atomically: {exc}") from exc

    if isinstance(old_state, dict):
        _log_state_changes(root, old_state, workflow)


# ============================================================================
# Transition helpers
# ============================================================================

def build_machine_snapshot(workflow: dict) -> WorkflowSnapshot:
    parent = find_parent_by_id(workflow, workflow["active_task_id"])
    sibling = next_sibling(workflow, workflow["active_task_id"])
    return WorkflowSnapshot(
        state=workflow["state"],
        root_task_id=workflow["task_id"],
        active_task_id=workflow["active_task_id"],
        active_task_parent_id=parent["task_id"] if parent else None,
        active_task_next_sibling_id=sibling["task_id"] if sibling else None,
    )


def apply_created_children(workflow: dict, created_children: dict[str, list]) -> None:
    """Replace each parent's subtasks with the batch created (or reused) for this transition.

    Children from an earlier review round are dropped from the tree, so sibling
    moves only walk the current batch. Their tickets stay in the tracker.
    """
    for parent_task_id, children in created_children.items():
        parent = find_node_by_id(workflow, parent_task_id)
        if parent is None:
            raise WorkflowError(f"Parent task not found while applying CREATE_TICKET effects: {parent_task_id}")
        batch = {}
        for child in children:
            batch.setdefault(child["task_id"], clone_task_node(child))
        parent["subtasks"] = list(batch.values())


def resolve_next_active_task_id(
    workflow: dict,
    current_active_task_id: str,
    target: ActiveTarget,
    created_children: Optional[dict[str, list]] = None
) -> str:
    """Resolve a symbolic pointer move against the (already extended) tree."""
    if target.kind == "current":
        return current_active_task_id

    if target.kind == "root":
        return workflow["task_id"]

    if target.kind == "parent":
        parent = find_parent_by_id(workflow, current_active_task_id)
        if parent is None:
            raise WorkflowError(f"No parent found for active task {current_active_task_id}")
        return parent["task_id"]

    if target.kind == "next-sibling":
        sibling = next_sibling(workflow, current_active_task_id)
        if sibling is None:
            raise WorkflowError(f"No next sibling found for active task {current_active_task_id}")
        return sibling["task_id"]

    if target.kind == "first-created-child":
        parent = find_node_by_id(workflow, target.parent_task_id)
        if parent is None:
            raise WorkflowError(f"Parent task not found for first-created-child target: {target.parent_task_id}")
        created = (created_children or {}).get(target.parent_task_id) or parent["subtasks"]
        if not created:
            raise WorkflowError(
                f"No children found under parent {target.parent_task_id} for first-created-child target"
            )
        return created[0]["task_id"]

    raise WorkflowError(f"Unknown active task target: {target.kind}")


def build_transitioned_workflow(
    workflow: dict,
    to_state: str,
    active_task_id: str,
    event: str,
    created_children: Optional[dict[str, list]] = None,
    consumed_assistant_id: Optional[str] = None
) -> dict[str, Any]:
    """Build the next document. A consumed assistant id is written in the same save as the transition."""
    draft = clone_workflow(workflow)
    if created_children:
        apply_created_children(draft, created_children)

    next_path = compute_path_to_id(draft, active_task_id)
    if next_path is None:
        raise WorkflowError(f"Transition produced invalid active task id: {active_task_id}")

    draft["state"] = to_state
    draft["active_task_id"] = active_task_id
    draft["active_path_ids"] = next_path
    if consumed_assistant_id and consumed_assistant_id.strip():
        draft["last_consumed_assistant_id"] = consumed_assistant_id
    draft["version"] = workflow["version"] + 1
    draft["updated_at"] = _now()
    draft["last_transition"] = {
        "event": event,
        "from_state": workflow["state"],
        "to_state": to_state,
        "from_active_task_id": workflow["active_task_id"],
        "to_active_task_id": active_task_id,
        "at": draft["updated_at"],
    }

    error = validate_workflow(draft)
    if error:
        raise WorkflowError(f"Transition violates workflow invariants: {error}")

    return draft


def _update_field(root, workflow: dict, key: str, value: Any) -> dict[str, Any]:
    if workflow.get(key) == value:
        return workflow
    updated = clone_workflow(workflow)
    updated[key] = value
    updated["updated_at"] = _now()
    save_workflow_atomic(root, updated)
    return updated


def persist_consumed_assistant_id(root, workflow: dict, assistant_message_id: Optional[str]) -> dict[str, Any]:
    """Advance the replay cursor. Does not bump the workflow version."""
    if not assistant_message_id or not assistant_message_id.strip():
        return workflow
    return _update_field(root, workflow, "last_consumed_assistant_id", assistant_message_id)


def persist_session_file_path(root, workflow: dict, session_file_path: Optional[str]) -> dict[str, Any]:
    normalized = session_file_path.strip() if session_file_path and session_file_path.strip() else None
    return _update_field(root, workflow, "session_file_path", normalized)


def bind_session_leaf(root, workflow: dict, session_leaf_id: str) -> dict[str, Any]:
    if not session_leaf_id or not session_leaf_id.strip():
        raise WorkflowError("Cannot bind workflow to an empty session leaf id")
    return _update_field(root, workflow, "session_leaf_id", session_leaf_id)


# ============================================================================
# Tools
# ============================================================================

def workflow_initialize(
    root_task_id: str,
    title: str,
    root: Optional[str] = None,
    session_leaf_id: Optional[str] = None
) -> dict[str, Any]:
    workspace = resolve_workspace_root(root)
    workflow_path = get_workflow_path(workspace)

    if workflow_path.exists():
        return {
            "success": False,
            "error": f"Workflow already exists at {workflow_path}",
            "task_id": root_task_id
        }

    workflow = create_initial_workflow(root_task_id, title, session_leaf_id or UNBOUND_SESSION_LEAF_ID)
    try:
        save_workflow_atomic(workspace, workflow)
    except WorkflowError as e:
        return {"success": False, "error": str(e), "task_id": root_task_id}

    logger.info("Initialized workflow for %s in %s", root_task_id, workflow_path)
    return {
        "success": True,
        "task_id": root_task_id,
        "workflow_path": str(workflow_path),
        "state": INITIAL_STATE,
        "version": 1,
        "message": f"Initialized workflow for {root_task_id}, starting with {INITIAL_STATE}"
    }


def workflow_get_state(root: Optional[str] = None) -> dict[str, Any]:
    workspace = resolve_workspace_root(root)
    try:
        workflow = load_workflow(workspace)
    except WorkflowError as e:
        return {"error": str(e)}

    return {
        "task_id": workflow["task_id"],
        "title": workflow["title"],
        "state": workflow["state"],
        "active_task_id": workflow["active_task_id"],
        "active_path_ids": workflow["active_path_ids"],
        "version": workflow["version"],
        "session_leaf_id": workflow["session_leaf_id"],
        "last_consumed_assistant_id": workflow.get("last_consumed_assistant_id"),
        "last_transition": workflow.get("last_transition"),
        "is_complete": workflow["state"] == FINAL_STATE,
        "ticket_count": sum(1 for _ in iter_nodes(workflow)),
        "updated_at": workflow.get("updated_at"),
        "workflow_path": str(get_workflow_path(workspace))
    }


def workflow_validate(root: Optional[str] = None) -> dict[str, Any]:
    """Report whether the persisted document passes every invariant. Never repairs it."""
    workspace = resolve_workspace_root(root)
    try:
        workflow = load_workflow(workspace)
    except WorkflowError as e:
        return {"valid": False, "error": str(e), "workflow_path": str(get_workflow_path(workspace))}

    return {
        "valid": True,
        "state": workflow["state"],
        "version": workflow["version"],
        "workflow_path": str(get_workflow_path(workspace))
    }
