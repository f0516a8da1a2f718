"""
Task Workflow State Machine

Pure transition logic for the task workflow. `transition(snapshot, event)`
performs no I/O: everything it needs (including the root ticket markdown) is
carried by the snapshot and the event, and everything it wants done is
returned as an ordered list of effects for the interpreter in effect_tools.

Outcomes:
  - applied:  the event is valid; move to `state`, point the active ticket at
              `target`, run `effects`
  - ignored:  a valid, non-advancing turn (e.g. a clarifying question)
  - rejected: the event does not satisfy the current state's contract
"""

from dataclasses import asdict, dataclass, field
from typing import Optional, Union

from .directives import (
    DirectiveError,
    TicketDraft,
    append_fixes_trailer,
    parse_assistant_output,
    parse_plan_subtasks,
)

FORCE_LGTM_PLAN_NOTE = "Forced LGTM via /task lgtm (skipping plan review findings)."
FORCE_LGTM_REVIEW_NOTE = "Forced LGTM via /task lgtm (skipping review findings)."

APPLIED = "applied"
IGNORED = "ignored"
REJECTED = "rejected"


# ============================================================================
# Events
# ============================================================================

@dataclass(frozen=True)
class Complete:
    """An assistant turn finished while the workflow was in `completed_state`."""

    completed_state: str
    assistant_message: str = ""
    root_ticket_markdown: str = ""
    type: str = field(default="COMPLETE", init=False)


@dataclass(frozen=True)
class ForceLgtm:
    """Manual override approving a review stage."""

    completed_state: str
    root_ticket_markdown: Optional[str] = None
    type: str = field(default="FORCE_LGTM", init=False)


@dataclass(frozen=True)
class ManualTestsPassed:
    type: str = field(default="MANUAL_TESTS_PASSED", init=False)


WorkflowEvent = Union[Complete, ForceLgtm, ManualTestsPassed]


# ============================================================================
# Effects
# ============================================================================

@dataclass(frozen=True)
class CreateTicket:
    parent_task_id: str
    title: str
    description: str
    idempotency_key: str
    type: str = field(default="CREATE_TICKET", init=False)


@dataclass(frozen=True)
class CloseTicket:
    task_id: str
    type: str = field(default="CLOSE_TICKET", init=False)


@dataclass(frozen=True)
class AddNote:
    task_id: str
    note: str
    type: str = field(default="ADD_NOTE", init=False)


@dataclass(frozen=True)
class RunCommit:
    message: str
    type: str = field(default="RUN_COMMIT", init=False)


WorkflowEffect = Union[CreateTicket, CloseTicket, AddNote, RunCommit]


def effect_to_dict(effect: WorkflowEffect) -> dict:
    return asdict(effect)


# ============================================================================
# Snapshot, targets, decisions
# ============================================================================

@dataclass(frozen=True)
class WorkflowSnapshot:
    """Read-only projection of the persisted workflow the machine decides on."""

    state: str
    root_task_id: str
    active_task_id: str
    active_task_parent_id: Optional[str] = None
    active_task_next_sibling_id: Optional[str] = None


@dataclass(frozen=True)
class ActiveTarget:
    """Where the active pointer moves: current, root, parent, next-sibling or first-created-child."""

    kind: str
    parent_task_id: Optional[str] = None


CURRENT = ActiveTarget("current")
ROOT = ActiveTarget("root")
PARENT = ActiveTarget("parent")
NEXT_SIBLING = ActiveTarget("next-sibling")


def first_created_child(parent_task_id: str) -> ActiveTarget:
    return ActiveTarget("first-created-child", parent_task_id)


@dataclass(frozen=True)
class TransitionDecision:
    kind: str
    state: str
    target: ActiveTarget = CURRENT
    effects: tuple = ()
    reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.kind == APPLIED

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "state": self.state,
            "target": asdict(self.target),
            "effects": [effect_to_dict(e) for e in self.effects],
            "reason": self.reason,
        }


def _move(state: str, target: ActiveTarget, effects: Optional[list] = None) -> TransitionDecision:
    return TransitionDecision(APPLIED, state, target, tuple(effects or ()))


def _stay(snapshot: WorkflowSnapshot) -> TransitionDecision:
    return TransitionDecision(APPLIED, snapshot.state, CURRENT)


def _ignored(snapshot: WorkflowSnapshot, reason: Optional[str] = None) -> TransitionDecision:
    return TransitionDecision(IGNORED, snapshot.state, CURRENT, (), reason)


def _rejected(snapshot: WorkflowSnapshot, reason: str) -> TransitionDecision:
    return TransitionDecision(REJECTED, snapshot.state, CURRENT, (), reason)


def _create_ticket_effects(parent_task_id: str, drafts: list[TicketDraft]) -> list[CreateTicket]:
    return [
        CreateTicket(
            parent_task_id=parent_task_id,
            title=draft.title,
            description=draft.description,
            idempotency_key=f"{parent_task_id}::{draft.title}",
        )
        for draft in drafts
    ]


def _plan_drafts(root_ticket_markdown: Optional[str], prefix: str) -> Union[list, str]:
    """Parse plan subtasks, returning the drafts or a rejection reason."""
    try:
        drafts = parse_plan_subtasks(root_ticket_markdown)
    except DirectiveError as exc:
        return f"{prefix}: {exc}"
    if not drafts:
        return f"{prefix}: no plan subtasks found in root ticket markdown"
    return drafts


# ============================================================================
# Helpers used by the imperative shell
# ============================================================================

def event_needs_root_markdown(snapshot: WorkflowSnapshot, event: WorkflowEvent) -> bool:
    """Whether the shell must load the root ticket markdown into the event first."""
    if isinstance(event, Complete):
        return (event.completed_state == snapshot.state
                and snapshot.state in ("plan", "review-plan", "commit"))
    if isinstance(event, ForceLgtm):
        return event.completed_state == snapshot.state and snapshot.state == "review-plan"
    return False


def event_audit_label(event: WorkflowEvent) -> str:
    if isinstance(event, Complete):
        return f"machine:complete:{event.completed_state}"
    if isinstance(event, ForceLgtm):
        return f"machine:force-lgtm:{event.completed_state}"
    return "machine:manual-tests-passed"


def can_replay_complete(state: str, assistant_message: str) -> bool:
    """True when the assistant text alone satisfies the state's directive contract."""
    try:
        parsed = parse_assistant_output(assistant_message, state)
    except DirectiveError:
        return False

    requested = parsed.requested_state
    if state == "refine":
        return requested == "plan"
    if state == "plan":
        return requested == "review-plan"
    if state == "review-plan":
        return requested in ("review-plan", "implement")
    if state == "review":
        return requested == "subtask-commit" or (
            requested == "implement-review" and len(parsed.review_findings) > 0
        )
    if state in ("subtask-commit", "commit"):
        return bool(parsed.commit_message)
    return False


# ============================================================================
# Transition
# ============================================================================

def _force_lgtm(snapshot: WorkflowSnapshot, event: ForceLgtm) -> TransitionDecision:
    if event.completed_state != snapshot.state:
        return _rejected(snapshot, "Stale FORCE_LGTM event for a different state")

    if snapshot.state == "review-plan":
        drafts = _plan_drafts(event.root_ticket_markdown, "Cannot force approval")
        if isinstance(drafts, str):
            return _rejected(snapshot, drafts)
        effects = _create_ticket_effects(snapshot.root_task_id, drafts)
        effects.append(AddNote(snapshot.active_task_id, FORCE_LGTM_PLAN_NOTE))
        return _move("implement", first_created_child(snapshot.root_task_id), effects)

    if snapshot.state == "review":
        return _move("subtask-commit", CURRENT, [AddNote(snapshot.active_task_id, FORCE_LGTM_REVIEW_NOTE)])

    return _rejected(snapshot, "FORCE_LGTM is only valid in review-plan or review")


def _complete(snapshot: WorkflowSnapshot, event: Complete) -> TransitionDecision:
    if event.completed_state != snapshot.state:
        return _rejected(snapshot, "Stale COMPLETE event for a different state")

    state = snapshot.state

    # States that do not read the assistant text at all
    if state == "implement":
        return _move("review", CURRENT)

    if state == "implement-review":
        if not snapshot.active_task_parent_id:
            return _rejected(snapshot, "implement-review requires active_task_parent_id in snapshot")
        effects = [CloseTicket(snapshot.active_task_id)]
        if snapshot.active_task_next_sibling_id:
            return _move("implement-review", NEXT_SIBLING, effects)
        return _move("review", PARENT, effects)

    if state == "manual-test":
        return _rejected(
            snapshot,
            "Manual test gate is advanced by MANUAL_TESTS_PASSED, not assistant COMPLETE",
        )

    if state == "complete":
        return _ignored(snapshot, "Workflow is complete")

    try:
        parsed = parse_assistant_output(event.assistant_message, state)
    except DirectiveError as exc:
        return _rejected(snapshot, str(exc))

    requested = parsed.requested_state

    if state == "refine":
        if requested is None:
            return _ignored(snapshot)
        if requested == "plan":
            return _move("plan", ROOT)
        return _rejected(snapshot, "Expected <transition>plan</transition>")

    if state == "plan":
        if requested is None:
            return _ignored(snapshot)
        if requested == "review-plan":
            try:
                drafts = parse_plan_subtasks(event.root_ticket_markdown)
            except DirectiveError as exc:
                return _rejected(snapshot, f"Cannot move to review-plan: {exc}")
            if not drafts:
                return _rejected(
                    snapshot,
                    "Expected non-empty ## Plan/<subtasks>...</subtasks> in root ticket before moving to review-plan",
                )
            return _move("review-plan", ROOT)
        return _rejected(snapshot, "Expected <transition>review-plan</transition>")

    if state == "review-plan":
        if requested is None:
            return _ignored(snapshot)
        if requested == "review-plan":
            drafts = _plan_drafts(event.root_ticket_markdown, "Cannot re-review")
            if isinstance(drafts, str):
                return _rejected(snapshot, drafts)
            return _stay(snapshot)
        if requested == "implement":
            drafts = _plan_drafts(event.root_ticket_markdown, "Cannot approve plan")
            if isinstance(drafts, str):
                return _rejected(snapshot, drafts)
            return _move(
                "implement",
                first_created_child(snapshot.root_task_id),
                _create_ticket_effects(snapshot.root_task_id, drafts),
            )
        return _rejected(
            snapshot,
            "Expected <transition>implement</transition> or <transition>review-plan</transition>",
        )

    if state == "review":
        if requested == "subtask-commit":
            return _move("subtask-commit", CURRENT)
        if requested == "implement-review":
            if not parsed.review_findings:
                return _rejected(
                    snapshot,
                    "Got <transition>implement-review</transition> but no <review-findings> block",
                )
            return _move(
                "implement-review",
                first_created_child(snapshot.active_task_id),
                _create_ticket_effects(snapshot.active_task_id, parsed.review_findings),
            )
        return _rejected(
            snapshot,
            "Expected <transition>subtask-commit</transition> or findings + <transition>implement-review</transition>",
        )

    if state == "subtask-commit":
        if not parsed.commit_message:
            return _rejected(snapshot, "Expected <commit-message>...</commit-message>")
        effects = [CloseTicket(snapshot.active_task_id), RunCommit(parsed.commit_message)]
        if snapshot.active_task_next_sibling_id:
            return _move("implement", NEXT_SIBLING, effects)
        return _move("manual-test", ROOT, effects)

    if state == "commit":
        if not parsed.commit_message:
            return _rejected(snapshot, "Expected <commit-message>...</commit-message>")
        message = append_fixes_trailer(parsed.commit_message, event.root_ticket_markdown)
        return _move("complete", ROOT, [CloseTicket(snapshot.root_task_id), RunCommit(message)])

    return _rejected(snapshot, f"Event COMPLETE is not handled in state {state}")


def transition(snapshot: WorkflowSnapshot, event: WorkflowEvent) -> TransitionDecision:
    """Decide what an event means in the snapshot's state. Never performs I/O."""
    if isinstance(event, ManualTestsPassed):
        if snapshot.state == "manual-test":
            return _move("commit", ROOT)
        return _rejected(snapshot, "Manual tests can only pass in manual-test state")

    if isinstance(event, ForceLgtm):
        return _force_lgtm(snapshot, event)

    if isinstance(event, Complete):
        return _complete(snapshot, event)

    return _rejected(snapshot, f"Event {getattr(event, 'type', event)!r} is not handled in state {snapshot.state}")
