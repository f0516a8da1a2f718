"""
Effect interpreter: executes the effects a transition decision asks for.

Effects run in order. Ticket creation is idempotent (an existing child with
the same title under the same parent is reused), so replaying a crashed
transition never duplicates tickets. Notes are best-effort; everything else
is fatal and stops the remaining effects. Already-executed effects are not
rolled back.
"""

import json
import logging
from datetime import datetime
from typing import Optional

from .backends import IssueTracker, TrackerError, VcsError, VersionControl
from .state_machine import AddNote, CloseTicket, CreateTicket, RunCommit
from .task_tree import make_task_node

logger = logging.getLogger(__name__)

_STATUS_RANK = {"in_progress": 0, "open": 1, "closed": 2}


class EffectError(Exception):
    """A fatal effect failed; the transition must not be persisted."""


def _created_timestamp(created: Optional[str]) -> float:
    if not created:
        return 0
    try:
        return datetime.fromisoformat(created.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0


def _match_sort_key(item: dict) -> tuple:
    return (_STATUS_RANK.get(item["status"], 3), _created_timestamp(item["created"]), item["id"])


def find_existing_child(tracker: IssueTracker, parent_id: str, title: str) -> Optional[str]:
    """Return the best existing child of parent_id titled exactly `title`, if any."""
    expr = f"select(.parent == {json.dumps(parent_id)} and .title == {json.dumps(title)})"
    try:
        items = tracker.search(expr)
    except TrackerError as exc:
        logger.warning("Ticket lookup failed for %r under %s, creating instead: %s", title, parent_id, exc)
        return None

    matches = []
    for item in items:
        item_id = item.get("id")
        if not isinstance(item_id, str) or not item_id.strip():
            continue
        created = item.get("created")
        status = item.get("status")
        matches.append({
            "id": item_id.strip(),
            "created": created.strip() if isinstance(created, str) else "",
            "status": status.strip() if isinstance(status, str) else "",
        })

    if not matches:
        return None
    matches.sort(key=_match_sort_key)
    return matches[0]["id"]


def create_or_reuse_child_ticket(tracker: IssueTracker, parent_id: str, title: str, description: str) -> str:
    existing = find_existing_child(tracker, parent_id, title)
    if existing:
        return existing

    try:
        return tracker.create(parent_id, title, description)
    except TrackerError as exc:
        raise EffectError(f'Failed to create child task "{title}": {exc}') from exc


def run_commit_with_clean_check(vcs: VersionControl, message: str) -> None:
    try:
        vcs.commit(message)
    except VcsError as exc:
        raise EffectError(f"Commit failed: {exc}") from exc

    try:
        remaining = vcs.diff()
    except VcsError as exc:
        raise EffectError(f"Failed to check working copy diff: {exc}") from exc

    if remaining.strip():
        raise EffectError("Working copy still has uncommitted changes after commit.")


def interpret_effects(tracker: IssueTracker, vcs: VersionControl, effects) -> dict[str, list]:
    """Execute effects in order.

    Returns:
        {parent_task_id: [child task nodes]} for every CREATE_TICKET, in
        emission order, so the caller can extend the tree.

    Raises:
        EffectError: on the first fatal failure.
    """
    created_children: dict[str, list] = {}

    for effect in effects:
        if isinstance(effect, CreateTicket):
            task_id = create_or_reuse_child_ticket(
                tracker, effect.parent_task_id, effect.title, effect.description
            )
            created_children.setdefault(effect.parent_task_id, []).append(
                make_task_node(task_id, effect.title)
            )
            logger.info("workflow effect: created/reused task %s (%s)", task_id, effect.title)

        elif isinstance(effect, AddNote):
            try:
                tracker.add_note(effect.task_id, effect.note)
            except TrackerError as exc:
                logger.warning("Could not add note to %s: %s", effect.task_id, exc)

        elif isinstance(effect, CloseTicket):
            try:
                tracker.close(effect.task_id)
            except TrackerError as exc:
                raise EffectError(f"Failed to close task {effect.task_id}: {exc}") from exc
            logger.info("workflow effect: closed task %s", effect.task_id)

        elif isinstance(effect, RunCommit):
            subject = effect.message.split("\n")[0].strip() or "(empty subject)"
            logger.info("workflow effect: running commit (%s)", subject)
            run_commit_with_clean_check(vcs, effect.message)
            logger.info("workflow effect: commit succeeded (%s)", subject)

        else:
            raise EffectError(f"Unknown workflow effect: {effect!r}")

    return created_children
