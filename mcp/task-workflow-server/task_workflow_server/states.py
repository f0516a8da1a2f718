"""
Workflow states and the tree depth each one works at.
"""

WORKFLOW_STATES = [
    "refine",
    "plan",
    "review-plan",
    "implement",
    "review",
    "implement-review",
    "subtask-commit",
    "manual-test",
    "commit",
    "complete",
]

# Depth of the active ticket: 0 = root, 1 = plan subtask, 2 = review finding
STATE_ACTIVE_DEPTH = {
    "refine": 0,
    "plan": 0,
    "review-plan": 0,
    "implement": 1,
    "review": 1,
    "implement-review": 2,
    "subtask-commit": 1,
    "manual-test": 0,
    "commit": 0,
    "complete": 0,
}

INITIAL_STATE = "refine"
FINAL_STATE = "complete"


def is_workflow_state(value) -> bool:
    return isinstance(value, str) and value in WORKFLOW_STATES


def state_allows_active_depth(state: str, depth: int) -> bool:
    if depth < 0 or state not in STATE_ACTIVE_DEPTH:
        return False
    return STATE_ACTIVE_DEPTH[state] == depth
