#!/usr/bin/env python3
"""
Task Workflow MCP Server

Exposes the deterministic task workflow (refine -> plan -> review-plan ->
implement -> review -> implement-review -> subtask-commit -> manual-test ->
commit -> complete) as MCP tools, so the host agent drives transitions
through structured calls instead of ad-hoc ticket and VCS commands.
"""

import asyncio
import json
import logging
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    Tool,
    TextContent,
    Resource,
)

from .config_tools import config_get_effective, get_logging_level
from .orchestration_tools import (
    task_dispatch_complete,
    task_force_lgtm,
    task_manual_tests_passed,
    task_replay_assistant_message,
)
from .resources import RESOURCE_DESCRIPTIONS, get_workspace_root, resolve_resource
from .state_tools import workflow_get_state, workflow_initialize, workflow_validate

logger = logging.getLogger(__name__)

server = Server("task-workflow-server")

_ROOT_PROPERTY = {
    "type": "string",
    "description": "Task workspace root. Defaults to $TASK_WORKFLOW_ROOT or the working directory."
}


TOOLS = [
    Tool(
        name="task_workflow_initialize",
        description="Create .tasks/workflow.json for a root ticket, starting in the refine state.",
        inputSchema={
            "type": "object",
            "properties": {
                "root_task_id": {
                    "type": "string",
                    "description": "Ticket id of the root task"
                },
                "title": {
                    "type": "string",
                    "description": "Title of the root task"
                },
                "session_leaf_id": {
                    "type": "string",
                    "description": "Conversation leaf to bind to. Defaults to 'unbound'."
                },
                "root": _ROOT_PROPERTY
            },
            "required": ["root_task_id", "title"]
        }
    ),
    Tool(
        name="task_workflow_get_state",
        description="Get the current workflow state, active ticket, active path and version.",
        inputSchema={
            "type": "object",
            "properties": {"root": _ROOT_PROPERTY},
            "required": []
        }
    ),
    Tool(
        name="task_workflow_validate",
        description="Check the persisted workflow against all invariants. Never repairs it.",
        inputSchema={
            "type": "object",
            "properties": {"root": _ROOT_PROPERTY},
            "required": []
        }
    ),
    Tool(
        name="task_dispatch_complete",
        description=(
            "Feed a finished assistant turn into the workflow. Directives in the text "
            "(<transition>, <review-findings>, <commit-message>) decide the next state."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "assistant_message": {
                    "type": "string",
                    "description": "Full text of the assistant turn"
                },
                "assistant_message_id": {
                    "type": "string",
                    "description": "Id of the assistant turn, recorded so it is never replayed"
                },
                "root": _ROOT_PROPERTY
            },
            "required": ["assistant_message"]
        }
    ),
    Tool(
        name="task_replay_assistant_message",
        description="Replay an assistant turn that was produced outside the task loop, at most once per id.",
        inputSchema={
            "type": "object",
            "properties": {
                "assistant_message_id": {"type": "string"},
                "assistant_message": {"type": "string"},
                "root": _ROOT_PROPERTY
            },
            "required": ["assistant_message_id", "assistant_message"]
        }
    ),
    Tool(
        name="task_force_lgtm",
        description="Force approval of the current review stage (review-plan or review).",
        inputSchema={
            "type": "object",
            "properties": {"root": _ROOT_PROPERTY},
            "required": []
        }
    ),
    Tool(
        name="task_manual_tests_passed",
        description="Record the human's MANUAL TESTS PASSED confirmation and advance manual-test to commit.",
        inputSchema={
            "type": "object",
            "properties": {"root": _ROOT_PROPERTY},
            "required": []
        }
    ),
    Tool(
        name="config_get_effective",
        description="Get the merged task workflow configuration with its sources and warnings.",
        inputSchema={
            "type": "object",
            "properties": {"root": _ROOT_PROPERTY},
            "required": []
        }
    ),
]


@server.list_tools()
async def list_tools() -> list[Tool]:
    return TOOLS


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    try:
        root = get_workspace_root(arguments.get("root"))

        if name == "task_workflow_initialize":
            result = workflow_initialize(
                root_task_id=arguments["root_task_id"],
                title=arguments["title"],
                root=root,
                session_leaf_id=arguments.get("session_leaf_id")
            )
        elif name == "task_workflow_get_state":
            result = workflow_get_state(root=root)
        elif name == "task_workflow_validate":
            result = workflow_validate(root=root)
        elif name == "task_dispatch_complete":
            result = task_dispatch_complete(
                assistant_message=arguments["assistant_message"],
                root=root,
                assistant_message_id=arguments.get("assistant_message_id")
            )
        elif name == "task_replay_assistant_message":
            result = task_replay_assistant_message(
                assistant_message_id=arguments["assistant_message_id"],
                assistant_message=arguments["assistant_message"],
                root=root
            )
        elif name == "task_force_lgtm":
            result = task_force_lgtm(root=root)
        elif name == "task_manual_tests_passed":
            result = task_manual_tests_passed(root=root)
        elif name == "config_get_effective":
            result = config_get_effective(root=root)
        else:
            result = {"error": f"Unknown tool: {name}"}

        return [TextContent(type="text", text=json.dumps(result, indent=2))]

    except Exception as e:
        logger.exception(f"Error executing tool {name}")
        return [TextContent(
            type="text",
            text=json.dumps({"error": str(e), "tool": name}, indent=2)
        )]


@server.list_resources()
async def list_resources() -> list[Resource]:
    return [
        Resource(uri=uri, name=info["name"], mimeType=info["mimeType"], description=info["description"])
        for uri, info in RESOURCE_DESCRIPTIONS.items()
    ]


@server.read_resource()
async def read_resource(uri) -> str:
    return resolve_resource(str(uri))


async def async_main():
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options()
        )


def main():
    """Entry point for the MCP server."""
    config = config_get_effective(root=get_workspace_root())["config"]
    logging.basicConfig(level=getattr(logging, get_logging_level(config), logging.INFO))
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
