"""Tracker synchronisation.

Keeps the conversation's message log and the tracker ticket consistent:
- Creates the ticket the first time a conversation needs one
- Re-reads the task plan from the ticket body (the body wins over the
  in-memory plan because it may have been edited by hand)
- Mirrors human messages that are not yet on the ticket as comments
- Materialises the first human message from a ticket for conversations
  that were started from the tracker

Mirroring is idempotent: a message carrying a comment id, or originating
from the conversation's own ticket, is never posted again. Mirroring is
not transactional; a failed pass may leave some comments posted and is
safe to re-drive.
"""

import asyncio
import logging
from typing import List, Optional

from pydantic import BaseModel

from src.manager.classifier.models import Route
from src.manager.github.client import GitHubAPIError, GitHubClient
from src.manager.state.models import (
    ConversationState,
    Message,
    RequestSource,
    StateUpdate,
    TaskPlan,
)
from src.manager.tracker.fields import IssueFieldsWriter
from src.manager.tracker.issue_body import (
    extract_proposed_plan,
    extract_task_plan,
    extract_title_and_content,
    format_content_for_issue_body,
    message_content_from_issue,
)


logger = logging.getLogger(__name__)


class TicketNotFoundError(Exception):
    """Raised when a recorded ticket id no longer resolves."""

    def __init__(self, owner: str, repo: str, ticket_id: int):
        self.owner = owner
        self.repo = repo
        self.ticket_id = ticket_id
        self.message = f"Ticket {owner}/{repo}#{ticket_id} not found"
        super().__init__(self.message)


class TrackerSyncError(Exception):
    """Raised when a ticket or comment cannot be created or read."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


class IssuePlans(BaseModel):
    """Plans extracted from a ticket body."""

    task_plan: Optional[TaskPlan] = None
    proposed_plan: Optional[List[str]] = None


class TicketSyncResult(BaseModel):
    """Outcome of ensure_ticket.

    Attributes:
        ticket_id: The conversation's ticket number.
        task_plan: Plan from the ticket body, else the in-memory plan.
        created: Whether the ticket was created in this pass.
        update: Delta to fold into the conversation (ticket id, re-tagged
            first message).
    """

    ticket_id: int
    task_plan: Optional[TaskPlan] = None
    created: bool = False
    update: StateUpdate = StateUpdate()


class TrackerSync:
    """Reconciles a conversation with its tracker ticket.

    Attributes:
        fields_writer: Generates ticket titles from the conversation.
    """

    def __init__(self, fields_writer: IssueFieldsWriter):
        self.fields_writer = fields_writer

    async def fetch_ticket(
        self,
        state: ConversationState,
        github: GitHubClient,
    ) -> Optional[dict]:
        """Fetch the conversation's ticket, or None when it has none.

        Raises:
            TicketNotFoundError: If the recorded ticket does not resolve.
            TrackerSyncError: If the ticket cannot be read.
        """
        if state.tracker_issue_id is None:
            return None
        return await self._fetch_issue(state, github)

    async def _fetch_issue(self, state: ConversationState, github: GitHubClient) -> dict:
        repo = state.target_repository
        try:
            issue = await github.get_issue(repo.owner, repo.repo, state.tracker_issue_id)
        except GitHubAPIError as e:
            raise TrackerSyncError(f"Failed to fetch ticket: {e}", cause=e) from e
        if issue is None:
            logger.error(
                "Ticket not found",
                extra={
                    "repository": repo.full_name,
                    "issue_number": state.tracker_issue_id,
                },
            )
            raise TicketNotFoundError(repo.owner, repo.repo, state.tracker_issue_id)
        return issue

    async def load_plans(
        self,
        state: ConversationState,
        github: GitHubClient,
        issue: Optional[dict] = None,
    ) -> IssuePlans:
        """Read the task plan and proposed plan from the ticket body.

        Falls back to the in-memory task plan when the conversation has
        no ticket or the body carries no plan. An already fetched ticket
        is read instead of fetching it again.
        """
        if state.tracker_issue_id is None:
            return IssuePlans(task_plan=state.task_plan)

        if issue is None:
            issue = await self._fetch_issue(state, github)
        body = issue.get("body") or ""
        return IssuePlans(
            task_plan=extract_task_plan(body) or state.task_plan,
            proposed_plan=extract_proposed_plan(body),
        )

    async def initialize(
        self,
        state: ConversationState,
        github: GitHubClient,
        issue: Optional[dict] = None,
    ) -> StateUpdate:
        """Prepare a conversation for classification.

        With human messages present only the task plan is refreshed from
        the ticket. Without any, the request is materialised from the
        ticket as the first human message.

        Raises:
            TicketNotFoundError: If the recorded ticket does not resolve.
            ValueError: If there is neither a human message nor a ticket.
        """
        if state.human_messages:
            if state.tracker_issue_id is None:
                return StateUpdate()
            plans = await self.load_plans(state, github, issue=issue)
            return StateUpdate(task_plan=plans.task_plan)

        if state.tracker_issue_id is None:
            raise ValueError("Conversation has no human message and no ticket to read one from")

        if issue is None:
            issue = await self._fetch_issue(state, github)
        body = issue.get("body") or ""
        message = Message.human(
            message_content_from_issue(issue.get("title", ""), body),
            originating_ticket_id=state.tracker_issue_id,
            is_original_issue=True,
            request_source=RequestSource.TRACKER_EVENT,
        )
        logger.info(
            "Materialised request from ticket",
            extra={"thread_id": state.thread_id, "issue_number": state.tracker_issue_id},
        )
        return StateUpdate(
            messages=[message],
            task_plan=extract_task_plan(body) or state.task_plan,
        )

    async def ensure_ticket(
        self,
        state: ConversationState,
        github: GitHubClient,
        plans: Optional[IssuePlans] = None,
    ) -> TicketSyncResult:
        """Make sure the conversation has a ticket.

        Creates the ticket from the latest human request when none is
        recorded, and re-tags that request as originating from it. For an
        existing ticket, plans already loaded in this pass are reused.

        Raises:
            TicketNotFoundError: If a recorded ticket no longer resolves.
            TrackerSyncError: If the ticket cannot be created or read.
        """
        if state.tracker_issue_id is not None:
            if plans is None:
                plans = await self.load_plans(state, github)
            return TicketSyncResult(
                ticket_id=state.tracker_issue_id,
                task_plan=plans.task_plan,
            )

        request = state.latest_human_message()
        if request is None:
            raise TrackerSyncError("Cannot create a ticket without a human message")

        title, content = extract_title_and_content(request.content)
        if title is None:
            try:
                fields = await self.fields_writer.generate(state.visible_messages)
            except Exception as e:
                logger.error(
                    "Failed to generate ticket title",
                    extra={"thread_id": state.thread_id, "error": str(e)},
                )
                raise TrackerSyncError(f"Failed to generate ticket title: {e}", cause=e) from e
            title = fields.title

        repo = state.target_repository
        try:
            issue = await github.create_issue(
                repo.owner,
                repo.repo,
                title,
                format_content_for_issue_body(content),
            )
        except GitHubAPIError as e:
            raise TrackerSyncError(f"Failed to create ticket: {e}", cause=e) from e

        ticket_id = issue["number"]
        logger.info(
            "Ticket created",
            extra={
                "thread_id": state.thread_id,
                "issue_number": ticket_id,
                "issue_url": issue.get("html_url"),
            },
        )
        return TicketSyncResult(
            ticket_id=ticket_id,
            task_plan=state.task_plan,
            created=True,
            update=StateUpdate(
                tracker_issue_id=ticket_id,
                messages=[
                    request.tagged(originating_ticket_id=ticket_id, is_original_issue=True)
                ],
            ),
        )

    async def mirror_messages(
        self,
        state: ConversationState,
        route: Route,
        github: GitHubClient,
    ) -> List[Message]:
        """Post every not-yet-mirrored human message as a ticket comment.

        Comments are created concurrently; no ordering between them is
        guaranteed. Each mirrored message is superseded by a tagged copy.

        Returns:
            The tagged copies, to be appended to the log.

        Raises:
            TrackerSyncError: If any comment cannot be created. Comments
                created before the failure are not rolled back.
        """
        ticket_id = state.tracker_issue_id
        if ticket_id is None:
            raise TrackerSyncError("Cannot mirror messages before a ticket exists")

        pending = [
            m for m in state.human_messages if not m.metadata.is_mirrored(ticket_id)
        ]
        if not pending:
            return []

        repo = state.target_repository
        is_followup = route == Route.START_PLANNER_FOR_FOLLOWUP
        logger.info(
            "Mirroring messages to ticket",
            extra={"issue_number": ticket_id, "pending": len(pending)},
        )

        async def _mirror(message: Message) -> Message:
            comment = await github.create_comment(
                repo.owner, repo.repo, ticket_id, message.content
            )
            if not comment.get("id"):
                raise TrackerSyncError("Comment creation returned no id")
            return message.tagged(
                ticket_comment_id=comment["id"],
                is_followup=is_followup,
            )

        results = await asyncio.gather(
            *(_mirror(m) for m in pending), return_exceptions=True
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.error(
                "Failed to mirror messages",
                extra={
                    "issue_number": ticket_id,
                    "failed": len(failures),
                    "mirrored": len(results) - len(failures),
                },
            )
            first = failures[0]
            if isinstance(first, TrackerSyncError):
                raise first
            raise TrackerSyncError(f"Failed to create ticket comment: {first}", cause=first)

        return list(results)
