#!/usr/bin/env python3
"""
Stop Hook: Validate Task Workflow

Runs when the agent is about to stop. Blocks the stop when the workspace's
.tasks/workflow.json is corrupt or violates its invariants (the agent must not
walk away from a workspace that needs manual cleanup), and reminds about the
state the workflow was left in otherwise.

Workspaces without a workflow document are not task workspaces: exit 0.

Usage in .claude/settings.json:
{
  "hooks": {
    "Stop": [{
      "hooks": [{
        "type": "command",
        "command": "python scripts/validate-workflow.py"
      }]
    }]
  }
}
"""

import json
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "mcp" / "task-workflow-server"))
from task_workflow_server.state_tools import WorkflowError, get_workflow_path, load_workflow

WAITING_STATES = {
    "manual-test": "waiting for the human to confirm MANUAL TESTS PASSED",
    "complete": "complete; the workspace is ready to merge",
}


def check_env_skip():
    return os.environ.get("TASK_WORKFLOW_SKIP_VALIDATION") == "1"


def _workspace_root() -> Path:
    return Path(os.environ.get("TASK_WORKFLOW_ROOT") or Path.cwd())


def evaluate(root: Path):
    """Return (exit_code, response) for the workflow under root."""
    if not get_workflow_path(root).exists():
        return 0, None

    try:
        workflow = load_workflow(root)
    except WorkflowError as e:
        return 2, {"decision": "block", "reason": f"Task workflow is unusable: {e}"}

    state = workflow["state"]
    detail = WAITING_STATES.get(state, f"in {state} on ticket {workflow['active_task_id']}; run /task to continue")
    return 0, {
        "decision": "warn",
        "reason": f"Task workflow {workflow['task_id']} (v{workflow['version']}) is {detail}.",
    }


def main():
    if check_env_skip():
        sys.exit(0)

    code, response = evaluate(_workspace_root())
    if response:
        print(json.dumps(response))
    sys.exit(code)


if __name__ == "__main__":
    main()
