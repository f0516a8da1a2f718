"""
Directive Parsing for Assistant Turns

Extracts the structured parts of an assistant message that the workflow
engine acts on:

  - <transition>STATE</transition>      requested next state (last one wins)
  - <review-findings> YAML list </...>  follow-up tickets from code review
  - <commit-message> text </...>        literal commit message

and the plan subtasks from the root ticket markdown (`## Plan` section with a
<subtasks> YAML list).
"""

import re
from dataclasses import dataclass
from typing import Optional

import yaml

from .states import WORKFLOW_STATES


class DirectiveError(ValueError):
    """Raised when a structured block in assistant or ticket text is malformed."""


@dataclass(frozen=True)
class TicketDraft:
    title: str
    description: str = ""
    tdd: bool = True


@dataclass(frozen=True)
class ParsedAssistantOutput:
    requested_state: Optional[str]
    review_findings: list
    commit_message: Optional[str]


_TRANSITION_RE = re.compile(r"<transition>\s*([a-z-]+)\s*</transition>", re.IGNORECASE)
_PLAN_HEADER_RE = re.compile(r"^## Plan\s*$", re.MULTILINE)
_FIXES_LINE_RE = re.compile(r"^\s*(Fixes:\s*\S.*?)\s*$", re.MULTILINE)


def normalize_newlines(value: str) -> str:
    return value.replace("\r\n", "\n").replace("\r", "\n")


def parse_requested_state(message: str) -> Optional[str]:
    """Return the last <transition> tag naming a known workflow state."""
    for raw in reversed(_TRANSITION_RE.findall(message or "")):
        normalized = raw.strip().lower()
        if normalized in WORKFLOW_STATES:
            return normalized
    return None


def _extract_block(text: str, tag: str) -> Optional[str]:
    # Own-line tags first, so an inline mention in prose does not win.
    start = re.search(rf"^[ \t]*<{tag}>[ \t]*$", text, re.MULTILINE)
    if start:
        after_start = text[start.end():]
        newline = after_start.find("\n")
        body = "" if newline == -1 else after_start[newline + 1:]
        end = re.search(rf"^[ \t]*</{tag}>[ \t]*$", body, re.MULTILINE)
        if not end:
            return None
        return body[:end.start()].strip()

    open_tag = f"<{tag}>"
    start_idx = text.find(open_tag)
    if start_idx == -1:
        return None
    end_idx = text.find(f"</{tag}>", start_idx + len(open_tag))
    if end_idx == -1:
        return None
    return text[start_idx + len(open_tag):end_idx].strip()


def extract_tagged_block(text: str, tag: str) -> Optional[str]:
    return _extract_block(normalize_newlines(text or ""), tag)


def extract_plan_block(ticket_markdown: str) -> Optional[str]:
    """Return the <subtasks> body under the first `## Plan` heading."""
    normalized = normalize_newlines(ticket_markdown)
    header = _PLAN_HEADER_RE.search(normalized)
    if not header:
        return None
    return _extract_block(normalized[header.end():], "subtasks")


def parse_ticket_list(yaml_text: str, label: str) -> list[TicketDraft]:
    try:
        parsed = yaml.safe_load(yaml_text)
    except yaml.YAMLError as exc:
        raise DirectiveError(f"Failed to parse {label} YAML block: {exc}") from exc

    if not parsed:
        return []

    if not isinstance(parsed, list):
        raise DirectiveError(f"{label} YAML block must be a list (a YAML sequence).")

    drafts = []
    for index, item in enumerate(parsed, start=1):
        if not isinstance(item, dict):
            raise DirectiveError(f"{label} {index} is not an object.")

        title = item.get("title")
        title = title.strip() if isinstance(title, str) else ""
        if not title:
            raise DirectiveError(f"{label} {index} is missing a non-empty string 'title'.")

        description = item.get("description")
        if not isinstance(description, str):
            description = ""

        tdd = item.get("tdd")
        drafts.append(TicketDraft(
            title=title,
            description=description,
            tdd=tdd if isinstance(tdd, bool) else True,
        ))

    return drafts


def parse_plan_subtasks(root_ticket_markdown: Optional[str]) -> list[TicketDraft]:
    if not root_ticket_markdown:
        raise DirectiveError("Root ticket markdown is required.")

    block = extract_plan_block(root_ticket_markdown)
    if block is None:
        raise DirectiveError("Could not find a `## Plan` section with a <subtasks>...</subtasks> block.")

    return parse_ticket_list(block, "Subtask")


def parse_review_findings(message: str) -> list[TicketDraft]:
    block = extract_tagged_block(message, "review-findings")
    if block is None:
        return []
    return parse_ticket_list(block, "Finding")


def parse_commit_message(message: str) -> Optional[str]:
    block = extract_tagged_block(message, "commit-message")
    if not block:
        return None
    return block


def parse_assistant_output(message: str, state: Optional[str] = None) -> ParsedAssistantOutput:
    """Parse one assistant turn.

    Review findings are only parsed in the review state (or when no state is
    given); a broken findings block quoted in any other state is ignored.

    Raises:
        DirectiveError: if findings are parsed and malformed.
    """
    findings: list[TicketDraft] = []
    if state is None or state == "review":
        findings = parse_review_findings(message)

    return ParsedAssistantOutput(
        requested_state=parse_requested_state(message),
        review_findings=findings,
        commit_message=parse_commit_message(message),
    )


def extract_fixes_line(root_ticket_markdown: Optional[str]) -> Optional[str]:
    """Return the first `Fixes: ...` line anywhere in the root ticket."""
    if not root_ticket_markdown:
        return None
    match = _FIXES_LINE_RE.search(normalize_newlines(root_ticket_markdown))
    return match.group(1) if match else None


def append_fixes_trailer(commit_message: str, root_ticket_markdown: Optional[str]) -> str:
    fixes = extract_fixes_line(root_ticket_markdown)
    if not fixes or "\n" not in commit_message:
        return commit_message

    existing = {line.strip() for line in commit_message.split("\n")}
    if fixes in existing:
        return commit_message

    return f"{commit_message.rstrip()}\n\n{fixes}"
