"""Ticket body formatting and parsing.

A ticket body carries the user-visible request plus machine-readable
blocks the sessions keep up to date, hidden in a collapsed details
section:

    <open-swe-issue-content>
    ...user request...
    </open-swe-issue-content>

    <details>
    <summary>Agent Context</summary>
    <open-swe-do-not-edit-task-plan>
    {"tasks": [...], "activeTaskIndex": 0}
    </open-swe-do-not-edit-task-plan>
    </details>

Extracting a task plan from a rendered body and rendering it again
yields an equivalent plan.
"""

import json
import logging
import re
from typing import List, Optional, Tuple

from pydantic import ValidationError

from src.manager.state.models import TaskPlan


logger = logging.getLogger(__name__)


ISSUE_TITLE_OPEN_TAG = "<open-swe-issue-title>"
ISSUE_TITLE_CLOSE_TAG = "</open-swe-issue-title>"
ISSUE_CONTENT_OPEN_TAG = "<open-swe-issue-content>"
ISSUE_CONTENT_CLOSE_TAG = "</open-swe-issue-content>"
TASK_PLAN_OPEN_TAG = "<open-swe-do-not-edit-task-plan>"
TASK_PLAN_CLOSE_TAG = "</open-swe-do-not-edit-task-plan>"
PROPOSED_PLAN_OPEN_TAG = "<open-swe-do-not-edit-proposed-plan>"
PROPOSED_PLAN_CLOSE_TAG = "</open-swe-do-not-edit-proposed-plan>"

AGENT_CONTEXT_SUMMARY = "<summary>Agent Context</summary>"

_DETAILS_RE = re.compile(r"<details>.*?</details>", re.DOTALL)


def _between(text: str, open_tag: str, close_tag: str) -> Optional[str]:
    start = text.find(open_tag)
    if start == -1:
        return None
    end = text.find(close_tag, start + len(open_tag))
    if end == -1:
        return None
    return text[start + len(open_tag):end].strip()


def strip_details(text: str) -> str:
    """Remove collapsed ``<details>`` blocks from markdown text."""
    return _DETAILS_RE.sub("", text).strip()


def format_content_for_issue_body(content: str) -> str:
    """Wrap request content in the issue-content markers."""
    return f"{ISSUE_CONTENT_OPEN_TAG}\n{content.strip()}\n{ISSUE_CONTENT_CLOSE_TAG}"


def extract_issue_content(body: str) -> str:
    """Return the user-visible request part of a ticket body."""
    content = _between(body, ISSUE_CONTENT_OPEN_TAG, ISSUE_CONTENT_CLOSE_TAG)
    if content is not None:
        return content
    return strip_details(body)


def extract_title_and_content(text: str) -> Tuple[Optional[str], str]:
    """Split a message into an explicit title (if tagged) and its content."""
    title = _between(text, ISSUE_TITLE_OPEN_TAG, ISSUE_TITLE_CLOSE_TAG)
    content = _between(text, ISSUE_CONTENT_OPEN_TAG, ISSUE_CONTENT_CLOSE_TAG)
    if content is None:
        content = text
        if title is not None:
            start = text.find(ISSUE_TITLE_OPEN_TAG)
            end = text.find(ISSUE_TITLE_CLOSE_TAG) + len(ISSUE_TITLE_CLOSE_TAG)
            content = (text[:start] + text[end:]).strip()
    return title, content


def format_tagged_request(title: str, content: str) -> str:
    """Message text carrying an explicit title and content."""
    return (
        f"{ISSUE_TITLE_OPEN_TAG}\n  {title}\n{ISSUE_TITLE_CLOSE_TAG}\n\n"
        f"{ISSUE_CONTENT_OPEN_TAG}\n  {content}\n{ISSUE_CONTENT_CLOSE_TAG}"
    )


def message_content_from_issue(title: str, body: Optional[str]) -> str:
    """Human message text materialised from a ticket."""
    content = extract_issue_content(body or "")
    return f"**{title}**\n\n{content}".strip()


def extract_task_plan(body: Optional[str]) -> Optional[TaskPlan]:
    """Parse the task-plan block from a ticket body.

    Returns None when the block is missing or malformed; a malformed
    block is logged since it usually means the body was hand-edited.
    """
    if not body:
        return None
    raw = _between(body, TASK_PLAN_OPEN_TAG, TASK_PLAN_CLOSE_TAG)
    if raw is None:
        return None
    try:
        return TaskPlan.model_validate_json(raw)
    except ValidationError as e:
        logger.warning(
            "Malformed task plan block in ticket body",
            extra={"error": str(e), "block_preview": raw[:200]},
        )
        return None


def extract_proposed_plan(body: Optional[str]) -> Optional[List[str]]:
    """Parse the proposed (not yet accepted) plan block, if any."""
    if not body:
        return None
    raw = _between(body, PROPOSED_PLAN_OPEN_TAG, PROPOSED_PLAN_CLOSE_TAG)
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Malformed proposed plan block", extra={"error": str(e)})
        return None
    if not isinstance(data, list):
        return None
    return [str(item) for item in data]


def render_issue_body(
    content: str,
    task_plan: Optional[TaskPlan] = None,
    proposed_plan: Optional[List[str]] = None,
) -> str:
    """Render a full ticket body from its parts."""
    body = format_content_for_issue_body(content)
    blocks = []
    if task_plan is not None:
        blocks.append(
            f"{TASK_PLAN_OPEN_TAG}\n"
            f"{task_plan.model_dump_json(by_alias=True)}\n"
            f"{TASK_PLAN_CLOSE_TAG}"
        )
    if proposed_plan is not None:
        blocks.append(
            f"{PROPOSED_PLAN_OPEN_TAG}\n"
            f"{json.dumps(proposed_plan)}\n"
            f"{PROPOSED_PLAN_CLOSE_TAG}"
        )
    if not blocks:
        return body
    inner = "\n".join(blocks)
    return f"{body}\n\n<details>\n{AGENT_CONTEXT_SUMMARY}\n{inner}\n</details>"


def replace_task_plan(body: str, task_plan: TaskPlan) -> str:
    """Re-render a ticket body with an updated task plan."""
    return render_issue_body(
        extract_issue_content(body),
        task_plan=task_plan,
        proposed_plan=extract_proposed_plan(body),
    )
