"""
MCP Resources for the Task Workflow Server

Provides URI-based access to the workflow of the current workspace.

Resource URIs:
  - workflow://current        - State summary of the workspace workflow
  - workflow://current/tree   - Task tree (root -> subtasks -> findings)
  - config://effective        - Fully merged effective config

The workspace is $TASK_WORKFLOW_ROOT when set, otherwise the working directory.
"""

import json
import os
from typing import Any, Optional

from .config_tools import config_get_effective
from .state_tools import WorkflowError, load_workflow, resolve_workspace_root, workflow_get_state
from .task_tree import iter_nodes

WORKSPACE_ROOT_ENV = "TASK_WORKFLOW_ROOT"


def get_workspace_root(root: Optional[str] = None) -> str:
    return str(resolve_workspace_root(root or os.environ.get(WORKSPACE_ROOT_ENV)))


def get_current_state(root: Optional[str] = None) -> dict[str, Any]:
    return workflow_get_state(root=get_workspace_root(root))


def get_current_tree(root: Optional[str] = None) -> dict[str, Any]:
    try:
        workflow = load_workflow(get_workspace_root(root))
    except WorkflowError as e:
        return {"error": str(e)}

    active_path = set(workflow["active_path_ids"])
    nodes = [
        {
            "task_id": node["task_id"],
            "title": node["title"],
            "depth": depth,
            "is_active": node["task_id"] == workflow["active_task_id"],
            "on_active_path": node["task_id"] in active_path,
        }
        for node, depth in iter_nodes(workflow)
    ]
    return {
        "task_id": workflow["task_id"],
        "state": workflow["state"],
        "active_task_id": workflow["active_task_id"],
        "nodes": nodes,
        "count": len(nodes)
    }


def get_effective_config(root: Optional[str] = None) -> dict[str, Any]:
    return config_get_effective(root=get_workspace_root(root))


def resolve_resource(uri: str, root: Optional[str] = None) -> str:
    if uri == "workflow://current":
        return json.dumps(get_current_state(root), indent=2)

    if uri == "workflow://current/tree":
        return json.dumps(get_current_tree(root), indent=2)

    if uri == "config://effective":
        return json.dumps(get_effective_config(root), indent=2)

    return json.dumps({"error": f"Unknown resource URI: {uri}"})


RESOURCE_DESCRIPTIONS = {
    "workflow://current": {
        "name": "Current workflow",
        "description": "State, active ticket and version of the workspace workflow",
        "mimeType": "application/json"
    },
    "workflow://current/tree": {
        "name": "Current task tree",
        "description": "Root ticket, plan subtasks and review findings with depth and active path",
        "mimeType": "application/json"
    },
    "config://effective": {
        "name": "Effective configuration",
        "description": "Fully merged task workflow configuration from all sources",
        "mimeType": "application/json"
    }
}
