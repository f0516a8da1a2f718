"""
Issue tracker and version control backends.

The workflow engine only talks to these two narrow interfaces. The concrete
implementations shell out to the `tk` ticket CLI and the `jj` VCS from the
workspace root; both carry no workflow logic.
"""

import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


class TrackerError(Exception):
    """A ticket tracker command failed."""


class VcsError(Exception):
    """A version control command failed."""


class IssueTracker(Protocol):
    def create(self, parent_id: str, title: str, description: str) -> str: ...

    def close(self, task_id: str) -> None: ...

    def start(self, task_id: str) -> None: ...

    def get(self, task_id: str) -> dict: ...

    def show(self, task_id: str) -> str: ...

    def add_note(self, task_id: str, text: str) -> None: ...

    def search(self, expr: Optional[str] = None) -> list[dict]: ...


class VersionControl(Protocol):
    def commit(self, message: str) -> None: ...

    def diff(self) -> str: ...


def _run(
    args: list[str],
    cwd: Path,
    timeout: float,
    error_cls: type
) -> subprocess.CompletedProcess:
    """Run a command, raising error_cls with its stderr on any failure."""
    cmd_str = " ".join(args[:2])
    try:
        result = subprocess.run(args, capture_output=True, text=True, cwd=str(cwd), timeout=timeout)
    except FileNotFoundError as exc:
        raise error_cls(f"{args[0]} not found on PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise error_cls(f"{cmd_str} timed out after {timeout}s") from exc

    if result.returncode != 0:
        detail = result.stderr.strip() or f"exit code {result.returncode}"
        raise error_cls(f"{cmd_str} failed: {detail}")
    return result


def parse_query_objects(output: str) -> list[dict]:
    """Parse `tk query` output: a JSON array, a single object, or JSON lines."""
    trimmed = output.strip()
    if not trimmed:
        return []

    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        parsed = None
    else:
        if isinstance(parsed, list):
            return [item for item in parsed if isinstance(item, dict)]
        if isinstance(parsed, dict):
            return [parsed]

    items = []
    for line in trimmed.splitlines():
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(item, dict):
            items.append(item)
    return items


class TicketCli:
    """IssueTracker backed by the `tk` command line."""

    def __init__(self, root, command: str = "tk", timeout: float = 30):
        self.root = Path(root)
        self.command = command
        self.timeout = timeout

    def _tk(self, *args: str) -> subprocess.CompletedProcess:
        return _run([self.command, *args], self.root, self.timeout, TrackerError)

    def create(self, parent_id: str, title: str, description: str) -> str:
        result = self._tk("create", title, "-d", description, "--parent", parent_id)
        task_id = result.stdout.strip()
        if not task_id:
            raise TrackerError(f'{self.command} create returned empty task id for "{title}"')
        return task_id

    def close(self, task_id: str) -> None:
        self._tk("close", task_id)

    def start(self, task_id: str) -> None:
        self._tk("start", task_id)

    def get(self, task_id: str) -> dict:
        items = self.search(f"select(.id == {json.dumps(task_id)})")
        if not items:
            raise TrackerError(f"Task not found: {task_id}")
        return items[0]

    def show(self, task_id: str) -> str:
        return self._tk("show", task_id).stdout

    def add_note(self, task_id: str, text: str) -> None:
        self._tk("add-note", task_id, text)

    def search(self, expr: Optional[str] = None) -> list[dict]:
        args = ["query", expr] if expr else ["query"]
        return parse_query_objects(self._tk(*args).stdout)


class JujutsuRepository:
    """VersionControl backed by the `jj` command line."""

    def __init__(self, root, command: str = "jj", timeout: float = 120):
        self.root = Path(root)
        self.command = command
        self.timeout = timeout

    def commit(self, message: str) -> None:
        _run([self.command, "commit", "-m", message], self.root, self.timeout, VcsError)

    def diff(self) -> str:
        return _run([self.command, "diff"], self.root, self.timeout, VcsError).stdout


def build_backends(root, config: dict[str, Any]) -> tuple[TicketCli, JujutsuRepository]:
    tracker_cfg = config.get("tracker") if isinstance(config.get("tracker"), dict) else {}
    vcs_cfg = config.get("vcs") if isinstance(config.get("vcs"), dict) else {}
    tracker = TicketCli(
        root,
        command=tracker_cfg.get("command", "tk"),
        timeout=tracker_cfg.get("timeout_seconds", 30),
    )
    vcs = JujutsuRepository(
        root,
        command=vcs_cfg.get("command", "jj"),
        timeout=vcs_cfg.get("timeout_seconds", 120),
    )
    logger.debug("Using tracker %r and vcs %r in %s", tracker.command, vcs.command, root)
    return tracker, vcs
