"""
Task Tree Helpers for the Task Workflow MCP Server

The workflow document owns a small tree of tickets:

    root ticket (depth 0)
      -> plan subtasks (depth 1)
           -> review findings (depth 2)

Nodes are plain dicts ({"task_id", "title", "subtasks"}) so they serialize
straight into .tasks/workflow.json. Parent and sibling lookups are computed on
demand from the root; nodes never hold back references.
"""

from typing import Any, Iterator, Optional

MAX_TREE_DEPTH = 2


def make_task_node(task_id: str, title: str) -> dict[str, Any]:
    return {"task_id": task_id, "title": title, "subtasks": []}


def clone_task_node(node: dict) -> dict[str, Any]:
    return {
        "task_id": node["task_id"],
        "title": node["title"],
        "subtasks": [clone_task_node(child) for child in node.get("subtasks", [])],
    }


def iter_nodes(root: dict, depth: int = 0) -> Iterator[tuple[dict, int]]:
    """Depth-first walk yielding (node, depth) in creation order."""
    yield root, depth
    for child in root.get("subtasks", []):
        yield from iter_nodes(child, depth + 1)


def find_node_by_id(root: dict, task_id: str) -> Optional[dict]:
    if root.get("task_id") == task_id:
        return root
    for child in root.get("subtasks", []):
        found = find_node_by_id(child, task_id)
        if found is not None:
            return found
    return None


def find_parent_by_id(root: dict, task_id: str) -> Optional[dict]:
    for child in root.get("subtasks", []):
        if child.get("task_id") == task_id:
            return root
        found = find_parent_by_id(child, task_id)
        if found is not None:
            return found
    return None


def compute_path_to_id(root: dict, task_id: str) -> Optional[list[str]]:
    """Return the ids from root down to task_id, or None if absent."""
    if root.get("task_id") == task_id:
        return [root["task_id"]]
    for child in root.get("subtasks", []):
        child_path = compute_path_to_id(child, task_id)
        if child_path is not None:
            return [root["task_id"]] + child_path
    return None


def next_sibling(root: dict, task_id: str) -> Optional[dict]:
    parent = find_parent_by_id(root, task_id)
    if parent is None:
        return None
    siblings = parent.get("subtasks", [])
    for index, item in enumerate(siblings):
        if item.get("task_id") == task_id:
            if index + 1 < len(siblings):
                return siblings[index + 1]
            return None
    return None


def _validate_node(node: Any, depth: int, seen: set[str]) -> Optional[str]:
    if not isinstance(node, dict):
        return "workflow node must be an object"

    task_id = node.get("task_id")
    if not isinstance(task_id, str) or not task_id:
        return "workflow node is missing non-empty string task_id"

    title = node.get("title")
    if not isinstance(title, str) or not title:
        return f"workflow node {task_id} is missing non-empty title"

    subtasks = node.get("subtasks")
    if not isinstance(subtasks, list):
        return f"workflow node {task_id} has invalid subtasks"

    if task_id in seen:
        return f"duplicate task id in workflow tree: {task_id}"
    seen.add(task_id)

    if depth > MAX_TREE_DEPTH:
        return f"workflow tree depth exceeds {MAX_TREE_DEPTH} at {task_id}"

    for child in subtasks:
        error = _validate_node(child, depth + 1, seen)
        if error:
            return error

    return None


def validate_task_tree(root: Any) -> Optional[str]:
    """Check ids, titles, uniqueness and depth. Returns the first problem found."""
    return _validate_node(root, 0, set())
