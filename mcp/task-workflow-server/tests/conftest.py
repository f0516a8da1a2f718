"""
Shared fixtures: in-memory ticket tracker, VCS and conversation doubles.
"""

import itertools
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from task_workflow_server.backends import TrackerError, VcsError
from task_workflow_server.orchestration_tools import AgentStartWaiter, ConversationMessage
from task_workflow_server.state_tools import create_initial_workflow, save_workflow_atomic


PLAN_MARKDOWN = """# Add login

Users need to log in.

Fixes: #42

## Plan

<subtasks>
- title: Add login form
  description: Render the form
- title: Wire auth endpoint
  description: POST to /auth
</subtasks>
"""


class FakeTracker:
    """IssueTracker double keeping tickets in a dict."""

    def __init__(self):
        self.tickets = {}
        self.notes = []
        self.closed = []
        self.calls = []
        self.fail_on = set()
        self._ids = itertools.count(1)

    def add_ticket(self, task_id, title, parent=None, status="open", created="", markdown=None):
        self.tickets[task_id] = {
            "id": task_id,
            "title": title,
            "parent": parent,
            "status": status,
            "created": created,
            "markdown": markdown if markdown is not None else f"# {title}\n",
        }

    def _check(self, op):
        self.calls.append(op)
        if op in self.fail_on:
            raise TrackerError(f"tk {op} failed: boom")

    def create(self, parent_id, title, description):
        self._check("create")
        task_id = f"t-{next(self._ids)}"
        self.add_ticket(task_id, title, parent=parent_id, markdown=f"# {title}\n\n{description}\n")
        return task_id

    def close(self, task_id):
        self._check("close")
        self.closed.append(task_id)
        if task_id in self.tickets:
            self.tickets[task_id]["status"] = "closed"

    def start(self, task_id):
        self._check("start")
        self.tickets[task_id]["status"] = "in_progress"

    def get(self, task_id):
        self._check("get")
        if task_id not in self.tickets:
            raise TrackerError(f"Task not found: {task_id}")
        return dict(self.tickets[task_id])

    def show(self, task_id):
        self._check("show")
        if task_id not in self.tickets:
            raise TrackerError(f"Task not found: {task_id}")
        return self.tickets[task_id]["markdown"]

    def add_note(self, task_id, text):
        self._check("add_note")
        self.notes.append((task_id, text))

    def search(self, expr=None):
        self._check("search")
        # Only the parent+title lookup used by the effect interpreter is understood
        results = []
        for ticket in self.tickets.values():
            if expr and (f'.parent == "{ticket["parent"]}"' not in expr
                         or f'.title == "{ticket["title"]}"' not in expr):
                continue
            results.append({k: v for k, v in ticket.items() if k != "markdown"})
        return results


class FakeVcs:
    def __init__(self, dirty_after_commit=False):
        self.commits = []
        self.dirty_after_commit = dirty_after_commit
        self.fail_commit = False

    def commit(self, message):
        if self.fail_commit:
            raise VcsError("jj commit failed: conflict")
        self.commits.append(message)

    def diff(self):
        return "M src/app.py\n" if self.dirty_after_commit else ""


class FakeConversation:
    """Conversation double. Each prompt sent is answered with the next scripted reply."""

    def __init__(self, waiter=None, leaf="leaf-1", session_file="/tmp/session.jsonl"):
        self.history = []
        self.replies = []
        self.sent = []
        self.waiter = waiter
        self.leaf = leaf
        self.file = session_file
        self.start_agent = True
        self._ids = itertools.count(1)

    def add(self, role, text, **kwargs):
        message_id = kwargs.pop("id", None) or f"m-{next(self._ids)}"
        self.history.append(ConversationMessage(role=role, text=text, id=message_id, **kwargs))
        return message_id

    def messages(self):
        return list(self.history)

    def leaf_id(self):
        return self.leaf

    def session_file(self):
        return self.file

    def send_user_message(self, text):
        self.sent.append(text)
        self.add("user", text)
        if not self.start_agent:
            return
        if self.waiter is not None:
            self.waiter.notify_started()
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, dict):
                self.add("assistant", reply.pop("text"), **reply)
            else:
                self.add("assistant", reply)

    def wait_for_idle(self):
        pass


@pytest.fixture
def tracker():
    t = FakeTracker()
    t.add_ticket("ROOT-1", "Add login", markdown=PLAN_MARKDOWN)
    return t


@pytest.fixture
def vcs():
    return FakeVcs()


@pytest.fixture
def waiter():
    return AgentStartWaiter()


@pytest.fixture
def conversation(waiter):
    return FakeConversation(waiter=waiter)


@pytest.fixture
def workspace(tmp_path):
    """A task workspace with a freshly initialized workflow for ROOT-1."""
    save_workflow_atomic(tmp_path, create_initial_workflow("ROOT-1", "Add login"))
    return tmp_path
