"""
Orchestration Tools for the Task Workflow MCP Server

The imperative shell around the pure state machine:

  - dispatch_workflow_event: snapshot -> transition -> effects -> persist
  - replay_pending_assistant_transition: recover an assistant turn that was
    produced but never consumed (crash, or a turn outside the task loop)
  - run_task_loop: the single-driver loop that prompts the assistant, waits for
    its turn and feeds the result back into the machine

The host conversation (chat session) is reached through the small
`Conversation` protocol, so the loop can be driven by any agent runtime.
"""

import logging
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Protocol

from .backends import IssueTracker, TrackerError, VersionControl, build_backends
from .config_tools import (
    DEFAULT_MANUAL_TEST_PASS_PATTERN,
    config_get_effective,
    get_agent_start_timeout,
    get_manual_test_pass_regex,
)
from .effect_tools import EffectError, interpret_effects
from .state_machine import (
    Complete,
    ForceLgtm,
    ManualTestsPassed,
    IGNORED,
    REJECTED,
    can_replay_complete,
    event_audit_label,
    event_needs_root_markdown,
    transition,
)
from .state_tools import (
    UNBOUND_SESSION_LEAF_ID,
    WorkflowError,
    apply_created_children,
    bind_session_leaf,
    build_machine_snapshot,
    build_transitioned_workflow,
    clone_workflow,
    get_workflow_path,
    load_workflow,
    persist_consumed_assistant_id,
    persist_session_file_path,
    resolve_next_active_task_id,
    resolve_workspace_root,
    save_workflow_atomic,
    validate_workflow,
)

logger = logging.getLogger(__name__)

DEFAULT_AGENT_START_TIMEOUT = 10
MANUAL_TEST_PASS_PHRASE = "MANUAL TESTS PASSED"
MANUAL_TEST_PASS_RE = re.compile(DEFAULT_MANUAL_TEST_PASS_PATTERN, re.IGNORECASE)
READY_TO_MERGE_NOTICE = "Final commit succeeded. Task workspace is ready to merge."
PENDING_TRANSITION_NOTICE = (
    "The agent has requested a transition outside the tool loop, please run /task to continue."
)

TICKET_METADATA_HEADER = "## Ticket Metadata"
TICKET_CONTENTS_HEADER = "## Ticket Contents"


# ============================================================================
# Conversation access
# ============================================================================

@dataclass
class ConversationMessage:
    role: str
    text: str
    id: Optional[str] = None
    stop_reason: Optional[str] = None
    error_message: Optional[str] = None
    is_error: bool = False


class Conversation(Protocol):
    """What the task loop needs from the host chat session."""

    def messages(self) -> list[ConversationMessage]: ...

    def leaf_id(self) -> Optional[str]: ...

    def session_file(self) -> Optional[str]: ...

    def send_user_message(self, text: str) -> None: ...

    def wait_for_idle(self) -> None: ...


def extract_message_text(content: Any) -> str:
    """Flatten a host message payload (string, content parts, nested dicts) into text."""
    seen = set()

    def walk(value: Any) -> list[str]:
        if isinstance(value, str):
            return [value]
        if not isinstance(value, (list, dict)) or id(value) in seen:
            return []
        seen.add(id(value))

        if isinstance(value, list):
            return [part for item in value for part in walk(item)]

        parts = []
        if isinstance(value.get("text"), str):
            parts.append(value["text"])
        for key in ("content", "parts", "messages", "items", "output", "result"):
            if key in value:
                parts.extend(walk(value[key]))
        return parts

    return "".join(walk(content))


def latest_assistant_message(conversation: Conversation) -> Optional[ConversationMessage]:
    for message in reversed(conversation.messages()):
        if message.role == "assistant":
            return message
    return None


def is_injected_task_prompt(text: str) -> bool:
    return TICKET_METADATA_HEADER in text and TICKET_CONTENTS_HEADER in text


def user_confirmed_manual_tests(conversation: Conversation, pattern: Optional[re.Pattern] = None) -> bool:
    """Check the newest human-written user message for the manual test confirmation."""
    regex = pattern or MANUAL_TEST_PASS_RE
    for message in reversed(conversation.messages()):
        if message.role != "user":
            continue
        text = message.text.strip()
        if not text or is_injected_task_prompt(text):
            continue
        return regex.search(text) is not None
    return False


def turn_ended_with_error(conversation: Conversation) -> bool:
    """True when the newest assistant turn (or tool result) errored or was aborted."""
    for message in reversed(conversation.messages()):
        if message.role == "assistant":
            return (message.stop_reason in ("error", "aborted")
                    or isinstance(message.error_message, str))
        if message.role == "toolResult":
            return message.is_error
        return False
    return False


def _capture_log(enabled: bool, msg: str, *args) -> None:
    logger.log(logging.INFO if enabled else logging.DEBUG, "transition-capture: " + msg, *args)


def _preview(text: str) -> str:
    return re.sub(r"\s+", " ", text)[:180]


# ============================================================================
# Loop guard and agent-start waiter
# ============================================================================

class TaskLoopGuard:
    """Reentrancy guard for the task loop. Owned by the loop context, never global."""

    def __init__(self):
        self._depth = 0

    @property
    def is_active(self) -> bool:
        return self._depth > 0

    @contextmanager
    def enter(self) -> Iterator[None]:
        if self._depth > 0:
            raise WorkflowError("Task loop is already running")
        self._depth += 1
        try:
            yield
        finally:
            self._depth = max(0, self._depth - 1)


class AgentStartWaiter:
    """Bounded wait for the assistant to start a turn after a prompt is sent.

    Only one wait may be pending. `arm()` must be called before the prompt is
    sent so a start notification arriving first is not lost.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._event: Optional[threading.Event] = None

    @property
    def is_waiting(self) -> bool:
        with self._lock:
            return self._event is not None

    def arm(self) -> None:
        with self._lock:
            if self._event is not None:
                raise WorkflowError("Already waiting for agent_start")
            self._event = threading.Event()

    def disarm(self) -> None:
        with self._lock:
            self._event = None

    def notify_started(self) -> None:
        with self._lock:
            if self._event is not None:
                self._event.set()

    def wait(self, timeout: float = DEFAULT_AGENT_START_TIMEOUT) -> bool:
        with self._lock:
            event = self._event
        if event is None:
            raise WorkflowError("Not armed: call arm() before waiting for agent_start")
        try:
            return event.wait(timeout)
        finally:
            self.disarm()


# ============================================================================
# Dispatch
# ============================================================================

def completion_ready_to_merge_notice(changed: bool, next_state: str) -> Optional[str]:
    if not changed or next_state != "complete":
        return None
    return READY_TO_MERGE_NOTICE


def pending_transition_notice(
    workflow: dict,
    latest: Optional[ConversationMessage],
    loop_active: bool
) -> Optional[str]:
    """Warn when an assistant turn outside the loop asked for a transition nobody consumed."""
    if loop_active or latest is None or not latest.id:
        return None
    if workflow.get("last_consumed_assistant_id") == latest.id:
        return None
    if not can_replay_complete(workflow["state"], latest.text):
        return None
    return PENDING_TRANSITION_NOTICE


def load_ticket_markdown(tracker: IssueTracker, task_id: str) -> str:
    try:
        return tracker.show(task_id)
    except TrackerError as exc:
        raise WorkflowError(f"Failed to read ticket {task_id}: {exc}") from exc


def _with_root_ticket_markdown(tracker: IssueTracker, workflow: dict, snapshot, event):
    if not event_needs_root_markdown(snapshot, event):
        return event

    if isinstance(event, Complete) and event.root_ticket_markdown.strip():
        return event
    if isinstance(event, ForceLgtm) and event.root_ticket_markdown and event.root_ticket_markdown.strip():
        return event

    markdown = load_ticket_markdown(tracker, workflow["task_id"])
    if isinstance(event, Complete):
        return Complete(event.completed_state, event.assistant_message, markdown)
    return ForceLgtm(event.completed_state, markdown)


def dispatch_workflow_event(
    root,
    workflow: dict,
    event,
    tracker: IssueTracker,
    vcs: VersionControl,
    consumed_assistant_id: Optional[str] = None
) -> dict[str, Any]:
    """Run one event through the machine and persist the outcome.

    When the event came from an assistant turn, pass its id as
    `consumed_assistant_id` so the replay cursor lands in the same save as an
    applied transition.

    Returns:
        {"changed", "workflow", "kind", "reason"}. Ignored and rejected events
        leave the document untouched.

    Raises:
        WorkflowError: engine fault; the persisted document is unchanged.
        EffectError: a fatal effect failed; the persisted document is unchanged
            but effects run before the failure are not undone.
    """
    workflow_path = get_workflow_path(root)

    def cleanup_error(message: str) -> WorkflowError:
        return WorkflowError(f"{message.rstrip('.')}. Manual cleanup required in {workflow_path}.")

    before_error = validate_workflow(workflow)
    if before_error:
        raise cleanup_error(f"Workflow invariant failure before transition: {before_error}")

    snapshot = build_machine_snapshot(workflow)
    machine_event = _with_root_ticket_markdown(tracker, workflow, snapshot, event)
    decision = transition(snapshot, machine_event)

    if decision.kind == IGNORED:
        if decision.reason:
            logger.debug("workflow transition ignored: %s", decision.reason)
        return {"changed": False, "workflow": workflow, "kind": decision.kind, "reason": decision.reason}

    if decision.kind == REJECTED:
        logger.warning("workflow transition rejected: %s", decision.reason)
        return {"changed": False, "workflow": workflow, "kind": decision.kind, "reason": decision.reason}

    try:
        created_children = interpret_effects(tracker, vcs, decision.effects)
    except EffectError as exc:
        raise EffectError(
            f"{str(exc).rstrip('.')}. Manual cleanup required in {workflow_path}."
        ) from exc

    try:
        preview = clone_workflow(workflow)
        apply_created_children(preview, created_children)
        next_active_task_id = resolve_next_active_task_id(
            preview, workflow["active_task_id"], decision.target, created_children
        )
        transitioned = build_transitioned_workflow(
            workflow,
            decision.state,
            next_active_task_id,
            event_audit_label(machine_event),
            created_children,
            consumed_assistant_id,
        )
    except WorkflowError as exc:
        raise cleanup_error(str(exc)) from exc

    save_workflow_atomic(root, transitioned)

    logger.info(
        "workflow transition v%s→v%s: %s/%s -> %s/%s",
        workflow["version"], transitioned["version"],
        workflow["state"], workflow["active_task_id"],
        transitioned["state"], transitioned["active_task_id"],
    )
    return {"changed": True, "workflow": transitioned, "kind": decision.kind, "reason": None}


# ============================================================================
# Replay / recovery
# ============================================================================

def _replay_assistant_message(
    root,
    workflow: dict,
    latest: Optional[ConversationMessage],
    tracker: IssueTracker,
    vcs: VersionControl,
    capture: bool = False
) -> dict[str, Any]:
    if latest is None or not latest.id:
        return {"changed": False, "workflow": workflow}
    if workflow.get("last_consumed_assistant_id") == latest.id:
        return {"changed": False, "workflow": workflow}
    if not can_replay_complete(workflow["state"], latest.text):
        return {"changed": False, "workflow": workflow}

    _capture_log(capture, "replay: attempting COMPLETE from assistant %s in state %s", latest.id, workflow["state"])
    _capture_log(capture, "replay: assistant-preview: %s", _preview(latest.text))

    result = dispatch_workflow_event(
        root, workflow, Complete(workflow["state"], latest.text), tracker, vcs, latest.id
    )
    consumed = persist_consumed_assistant_id(root, result["workflow"], latest.id)

    _capture_log(capture, "replay: result changed=%s", "yes" if result["changed"] else "no")
    return {
        "changed": result["changed"],
        "workflow": consumed,
        "notice": completion_ready_to_merge_notice(result["changed"], consumed["state"]),
    }


def replay_pending_assistant_transition(
    root,
    workflow: dict,
    conversation: Conversation,
    tracker: IssueTracker,
    vcs: VersionControl,
    capture: bool = False
) -> dict[str, Any]:
    """Consume the newest assistant turn if it was never dispatched and is replayable.

    Returns {"changed", "workflow"} plus an optional completion "notice".
    """
    return _replay_assistant_message(
        root, workflow, latest_assistant_message(conversation), tracker, vcs, capture
    )


# ============================================================================
# Prompt assembly
# ============================================================================

def build_ticket_context(tracker: IssueTracker, path_ids: list[str]) -> str:
    if not path_ids:
        raise WorkflowError("Workflow active path is empty")
    chunks = [load_ticket_markdown(tracker, task_id).strip() for task_id in path_ids]
    return "\n\n---\n\n".join(chunks)


def build_task_prompt(workflow: dict, ticket_context: str, body: str) -> str:
    header = "\n".join([
        TICKET_METADATA_HEADER,
        f"- Workflow Version: {workflow['version']}",
        f"- Workflow State: {workflow['state']}",
        f"- Active Ticket ID: {workflow['active_task_id']}",
        f"- Active Path: {' -> '.join(workflow['active_path_ids'])}",
        "",
        "## Ticket Handling Rules (critical)",
        "- Do NOT manually edit YAML frontmatter in ticket files (`--- ... ---`).",
        "- Do NOT change `status` (open/in_progress/closed) manually.",
        "",
        TICKET_CONTENTS_HEADER,
        "The following is the current contents of the ticket file chain (root -> ... -> active):",
    ])
    return f"{header}\n\n{ticket_context}\n\n---\n\n{body.strip()}"


# ============================================================================
# Task loop
# ============================================================================

@dataclass
class LoopContext:
    root: Path
    conversation: Conversation
    tracker: IssueTracker
    vcs: VersionControl
    prompt_for_state: Callable[[str], str]
    waiter: AgentStartWaiter = field(default_factory=AgentStartWaiter)
    guard: TaskLoopGuard = field(default_factory=TaskLoopGuard)
    agent_start_timeout: float = DEFAULT_AGENT_START_TIMEOUT
    manual_test_pattern: re.Pattern = MANUAL_TEST_PASS_RE
    transition_capture: bool = False
    new_message_timeout: float = 1.5
    poll_interval: float = 0.05


def build_loop_context(
    root,
    conversation: Conversation,
    prompt_for_state: Callable[[str], str],
    waiter: Optional[AgentStartWaiter] = None,
    tracker: Optional[IssueTracker] = None,
    vcs: Optional[VersionControl] = None
) -> LoopContext:
    """Build a loop context from the effective configuration of the workspace."""
    workspace = resolve_workspace_root(root)
    config = config_get_effective(str(workspace))["config"]
    if tracker is None or vcs is None:
        default_tracker, default_vcs = build_backends(workspace, config)
        tracker = tracker if tracker is not None else default_tracker
        vcs = vcs if vcs is not None else default_vcs

    debug = config.get("debug") if isinstance(config.get("debug"), dict) else {}
    return LoopContext(
        root=workspace,
        conversation=conversation,
        tracker=tracker,
        vcs=vcs,
        prompt_for_state=prompt_for_state,
        waiter=waiter or AgentStartWaiter(),
        agent_start_timeout=get_agent_start_timeout(config),
        manual_test_pattern=get_manual_test_pass_regex(config),
        transition_capture=bool(debug.get("transition_capture")),
    )


def _wait_for_new_assistant_message(ctx: LoopContext, previous_id: Optional[str]) -> None:
    if not previous_id:
        _capture_log(ctx.transition_capture, "no previous assistant id; skipping new-message wait")
        return

    deadline = time.monotonic() + ctx.new_message_timeout
    while time.monotonic() < deadline:
        latest = latest_assistant_message(ctx.conversation)
        if latest and latest.id and latest.id != previous_id:
            _capture_log(ctx.transition_capture, "detected new assistant message %s", latest.id)
            return
        time.sleep(ctx.poll_interval)

    _capture_log(ctx.transition_capture, "timed out waiting for new assistant message")


def _capture_assistant_turn(ctx: LoopContext, previous_id: Optional[str]) -> ConversationMessage:
    latest = latest_assistant_message(ctx.conversation)
    if latest is None:
        raise WorkflowError("No assistant message found after task prompt.")
    if previous_id and latest.id == previous_id:
        raise WorkflowError("No new assistant message was recorded after task prompt.")

    _capture_log(ctx.transition_capture, "previous=%s latest=%s", previous_id or "(none)", latest.id or "(none)")
    _capture_log(ctx.transition_capture, "assistant-preview: %s", _preview(latest.text))
    return latest


def _send_and_wait_for_start(ctx: LoopContext, message: str) -> bool:
    ctx.waiter.arm()
    try:
        ctx.conversation.send_user_message(message)
    except Exception:
        ctx.waiter.disarm()
        raise

    if not ctx.waiter.wait(ctx.agent_start_timeout):
        return False
    ctx.conversation.wait_for_idle()
    return True


def _bind_session(ctx: LoopContext, workflow: dict, notices: list[str]) -> dict:
    leaf_id = ctx.conversation.leaf_id()
    if not leaf_id:
        raise WorkflowError("No session leaf ID available")

    stored = workflow["session_leaf_id"]
    fresh = (
        workflow["version"] == 1
        and workflow["state"] == "refine"
        and workflow["active_task_id"] == workflow["task_id"]
        and (workflow.get("last_transition") or {}).get("event") == "initialize"
    )

    if stored == UNBOUND_SESSION_LEAF_ID:
        workflow = bind_session_leaf(ctx.root, workflow, leaf_id)
        notices.append(f"workflow: bound session_leaf_id to current session leaf {leaf_id}")
    elif stored != leaf_id and fresh:
        workflow = bind_session_leaf(ctx.root, workflow, leaf_id)
        notices.append(f"workflow: rebound initial session_leaf_id to current session leaf {leaf_id}")
    elif stored != leaf_id:
        notices.append(
            f"workflow: current session leaf is {leaf_id}; resuming from stored workflow leaf {stored}"
        )

    return persist_session_file_path(ctx.root, workflow, ctx.conversation.session_file())


def _loop_result(status: str, workflow: Optional[dict], notices: list[str], error: Optional[str] = None) -> dict:
    result = {
        "status": status,
        "state": workflow["state"] if workflow else None,
        "version": workflow["version"] if workflow else None,
        "messages": notices,
    }
    if error:
        result["error"] = error
    return result


def _run_task_loop(ctx: LoopContext, notices: list[str]) -> dict[str, Any]:
    while True:
        ctx.conversation.wait_for_idle()

        workflow = load_workflow(ctx.root)
        workflow = _bind_session(ctx, workflow, notices)

        if workflow["state"] == "complete":
            notices.append("Workflow already complete. Workspace is ready to merge.")
            return _loop_result("complete", workflow, notices)

        if workflow["state"] == "manual-test" and user_confirmed_manual_tests(
            ctx.conversation, ctx.manual_test_pattern
        ):
            gate = dispatch_workflow_event(ctx.root, workflow, ManualTestsPassed(), ctx.tracker, ctx.vcs)
            if gate["changed"]:
                continue

        replayed = replay_pending_assistant_transition(
            ctx.root, workflow, ctx.conversation, ctx.tracker, ctx.vcs, ctx.transition_capture
        )
        workflow = replayed["workflow"]
        if replayed.get("notice"):
            notices.append(replayed["notice"])
        if replayed["changed"]:
            continue

        body = (ctx.prompt_for_state(workflow["state"]) or "").strip()
        if not body:
            raise WorkflowError(f"Task prompt for state {workflow['state']} is empty")

        ticket_context = build_ticket_context(ctx.tracker, workflow["active_path_ids"])
        message = build_task_prompt(workflow, ticket_context, body)

        previous = latest_assistant_message(ctx.conversation)
        previous_id = previous.id if previous else None
        _capture_log(
            ctx.transition_capture, "state=%s version=%s previous-assistant=%s",
            workflow["state"], workflow["version"], previous_id or "(none)",
        )

        if not _send_and_wait_for_start(ctx, message):
            return _loop_result("error", workflow, notices, "Timed out waiting for agent_start")

        _wait_for_new_assistant_message(ctx, previous_id)

        if turn_ended_with_error(ctx.conversation):
            notices.append("Assistant turn ended with an error or was aborted; workflow not advanced.")
            return _loop_result("stopped", workflow, notices)

        captured = _capture_assistant_turn(ctx, previous_id)
        result = dispatch_workflow_event(
            ctx.root, workflow, Complete(workflow["state"], captured.text), ctx.tracker, ctx.vcs, captured.id
        )
        if result["kind"] == REJECTED and result["reason"]:
            notices.append(f"workflow transition rejected: {result['reason']}")

        workflow = persist_consumed_assistant_id(ctx.root, result["workflow"], captured.id)

        notice = completion_ready_to_merge_notice(result["changed"], workflow["state"])
        if notice:
            notices.append(notice)

        should_continue = result["changed"] and workflow["state"] != "complete"
        _capture_log(
            ctx.transition_capture, "dispatch result changed=%s continue=%s",
            "yes" if result["changed"] else "no", "yes" if should_continue else "no",
        )

        if not should_continue:
            if workflow["state"] == "complete":
                return _loop_result("complete", workflow, notices)
            if workflow["state"] == "manual-test":
                notices.append(
                    f"Waiting for explicit user confirmation: {MANUAL_TEST_PASS_PHRASE} "
                    "(or MANUAL TEST PASSED). Then run /task again."
                )
            return _loop_result("waiting", workflow, notices)


def run_task_loop(ctx: LoopContext) -> dict[str, Any]:
    """Drive the workflow until it needs a human, completes, or fails.

    Returns:
        {"status": "complete" | "waiting" | "stopped" | "error", "state",
        "version", "messages"} plus "error" for failures.
    """
    notices: list[str] = []
    try:
        with ctx.guard.enter():
            return _run_task_loop(ctx, notices)
    except (WorkflowError, EffectError) as e:
        logger.error("Task loop stopped: %s", e)
        return _loop_result("error", None, notices, str(e))


# ============================================================================
# Tool wrappers
# ============================================================================

def _open_workspace(root, tracker, vcs):
    workspace = resolve_workspace_root(root)
    if tracker is None or vcs is None:
        config = config_get_effective(str(workspace))["config"]
        default_tracker, default_vcs = build_backends(workspace, config)
        tracker = tracker if tracker is not None else default_tracker
        vcs = vcs if vcs is not None else default_vcs
    return workspace, tracker, vcs


def _dispatch_result(result: dict, extra: Optional[dict] = None) -> dict[str, Any]:
    workflow = result["workflow"]
    response = {
        "success": True,
        "changed": result["changed"],
        "kind": result.get("kind"),
        "reason": result.get("reason"),
        "state": workflow["state"],
        "active_task_id": workflow["active_task_id"],
        "version": workflow["version"],
        "notice": completion_ready_to_merge_notice(result["changed"], workflow["state"]),
    }
    if extra:
        response.update(extra)
    return response


def task_dispatch_complete(
    assistant_message: str,
    root: Optional[str] = None,
    assistant_message_id: Optional[str] = None,
    tracker: Optional[IssueTracker] = None,
    vcs: Optional[VersionControl] = None
) -> dict[str, Any]:
    """Dispatch a COMPLETE event for the current state with the given assistant turn."""
    workspace, tracker, vcs = _open_workspace(root, tracker, vcs)
    try:
        workflow = load_workflow(workspace)
        result = dispatch_workflow_event(
            workspace, workflow, Complete(workflow["state"], assistant_message), tracker, vcs,
            assistant_message_id,
        )
        result["workflow"] = persist_consumed_assistant_id(workspace, result["workflow"], assistant_message_id)
    except (WorkflowError, EffectError) as e:
        return {"success": False, "error": str(e)}
    return _dispatch_result(result)


def task_force_lgtm(
    root: Optional[str] = None,
    tracker: Optional[IssueTracker] = None,
    vcs: Optional[VersionControl] = None
) -> dict[str, Any]:
    """Manual override approving the current review stage (review-plan or review)."""
    workspace, tracker, vcs = _open_workspace(root, tracker, vcs)
    try:
        workflow = load_workflow(workspace)
        result = dispatch_workflow_event(workspace, workflow, ForceLgtm(workflow["state"]), tracker, vcs)
    except (WorkflowError, EffectError) as e:
        return {"success": False, "error": str(e)}

    if not result["changed"]:
        return {"success": False, "error": result["reason"], "state": workflow["state"]}
    return _dispatch_result(result, {"message": f"/task lgtm applied in {workflow['state']}."})


def task_manual_tests_passed(
    root: Optional[str] = None,
    tracker: Optional[IssueTracker] = None,
    vcs: Optional[VersionControl] = None
) -> dict[str, Any]:
    workspace, tracker, vcs = _open_workspace(root, tracker, vcs)
    try:
        workflow = load_workflow(workspace)
        result = dispatch_workflow_event(workspace, workflow, ManualTestsPassed(), tracker, vcs)
    except (WorkflowError, EffectError) as e:
        return {"success": False, "error": str(e)}

    if not result["changed"]:
        return {"success": False, "error": result["reason"], "state": workflow["state"]}
    return _dispatch_result(result)


def task_replay_assistant_message(
    assistant_message_id: str,
    assistant_message: str,
    root: Optional[str] = None,
    tracker: Optional[IssueTracker] = None,
    vcs: Optional[VersionControl] = None
) -> dict[str, Any]:
    """Replay an assistant turn produced outside the task loop, at most once per message id."""
    workspace, tracker, vcs = _open_workspace(root, tracker, vcs)
    latest = ConversationMessage(role="assistant", text=assistant_message, id=assistant_message_id)
    try:
        workflow = load_workflow(workspace)
        result = _replay_assistant_message(workspace, workflow, latest, tracker, vcs)
    except (WorkflowError, EffectError) as e:
        return {"success": False, "error": str(e)}
    return _dispatch_result(result)
