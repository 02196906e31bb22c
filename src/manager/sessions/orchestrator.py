"""Session orchestrator.

Acts on a chosen route by creating, resuming or forking sessions on the
run-execution service:
- start_planner / start_planner_for_followup: create a planner run on a
  stable thread id with "create if absent" semantics
- resume_and_update_planner: send a resume signal to the interrupted
  planner thread
- create_new_issue: fork a new conversation with its own ticket and a
  new top-level thread, and start its planner
- update_planner / update_programmer: nothing to do, the running session
  reads the mirrored ticket comment

Every operation returns a StateUpdate; the caller folds it into the
conversation. Failures to create or resume a run are raised as
SessionStartError and never retried here.

Source:
- src/manager/runs/client.py (RunServiceClient)
- src/manager/github/app.py (GitHubApp installation tokens)
- src/manager/tracker/fields.py (IssueFieldsWriter, fork ticket fields)
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from src.manager.github.app import GitHubApp, GitHubAppAuthError
from src.manager.github.client import GitHubAPIError, GitHubClient
from src.manager.runs.client import DEFAULT_STREAM_MODE, RunServiceClient, RunServiceError
from src.manager.sessions.context import RequestContext
from src.manager.state.models import (
    ConversationState,
    Message,
    MessageRole,
    Session,
    SessionStatus,
    StateUpdate,
    apply_update,
)
from src.manager.state.registry import ensure_thread_id
from src.manager.tracker.fields import IssueFieldsWriter
from src.manager.tracker.issue_body import (
    format_content_for_issue_body,
    format_tagged_request,
)


logger = logging.getLogger(__name__)


PLANNER_RESUME_SIGNAL = {"type": "response", "args": "resume planner"}
FORK_INTRO_MESSAGE = (
    "I've successfully created a new GitHub issue for your request, "
    "and started a planning session for it!"
)


class InvalidResumeStateError(Exception):
    """Raised when resuming a planner that is not interrupted."""

    def __init__(self, status: SessionStatus):
        self.status = status
        self.message = f"Cannot resume planner in status '{status.value}'"
        super().__init__(self.message)


class SessionStartError(Exception):
    """Raised when a session cannot be created, resumed or forked.

    Attributes:
        message: Human-readable error description.
        cause: The underlying exception that caused the failure.
    """

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


class ForkResult(BaseModel):
    """Outcome of create_new_session.

    Attributes:
        conversation: The new top-level conversation, with its planner
            session already started. The caller persists it.
        update: Delta for the parent conversation (confirmation reply only).
    """

    conversation: ConversationState
    update: StateUpdate

    @property
    def thread_id(self) -> str:
        return self.conversation.thread_id

    @property
    def run_id(self) -> str:
        return self.conversation.planner_session.run_id

    @property
    def issue_number(self) -> Optional[int]:
        return self.conversation.tracker_issue_id


def new_branch_name(prefix: str) -> str:
    return f"{prefix}/{uuid.uuid4()}"


def run_message(message: Message) -> Dict[str, Any]:
    """Serialise a log message into the run service's message format."""
    return {
        "id": message.id,
        "type": "human" if message.role == MessageRole.HUMAN else "ai",
        "content": message.content,
        "additional_kwargs": message.metadata.model_dump(
            mode="json",
            by_alias=True,
            exclude_defaults=True,
            exclude={"request_source"},
        ),
    }


def fork_confirmation(thread_id: str) -> str:
    return (
        f"Success! I just created a new session for your request. "
        f"Thread ID: `{thread_id}`\n\n"
        f"Click [here](/chat/{thread_id}) to view the thread."
    )


class SessionOrchestrator:
    """Creates, resumes and forks sessions for a conversation.

    Attributes:
        run_client: Base client for the run-execution service. Per-call
            credentials are attached as extra headers.
        github_app: Mints installation tokens. None disables refreshing.
        fields_writer: Generates the forked ticket's title and body.
        planner_graph_id: Graph id of the planner.
        recursion_limit: Recursion limit passed with every run.
        branch_prefix: Prefix for generated branch names.
        stream_mode: Stream modes recorded for every run.
    """

    def __init__(
        self,
        run_client: RunServiceClient,
        fields_writer: IssueFieldsWriter,
        github_app: Optional[GitHubApp] = None,
        planner_graph_id: str = "planner",
        recursion_limit: int = 400,
        branch_prefix: str = "open-swe",
        stream_mode: Optional[List[str]] = None,
    ):
        self.run_client = run_client
        self.fields_writer = fields_writer
        self.github_app = github_app
        self.planner_graph_id = planner_graph_id
        self.recursion_limit = recursion_limit
        self.branch_prefix = branch_prefix
        self.stream_mode = stream_mode or list(DEFAULT_STREAM_MODE)

    async def _refresh_credentials(self, context: RequestContext) -> RequestContext:
        """Mint a fresh installation token unless a static one is in use."""
        if not context.needs_token_refresh:
            return context
        if self.github_app is None or context.installation_id is None:
            return context

        logger.info(
            "Regenerating installation token before starting run",
            extra={"installation_id": context.installation_id},
        )
        token = await self.github_app.get_installation_access_token(
            context.installation_id
        )
        return context.with_installation_token(token)

    def _run_config(self, context: RequestContext) -> Dict[str, Any]:
        configurable = dict(context.configurable)
        if context.local_mode:
            configurable["x-local-mode"] = "true"
        return {"recursion_limit": self.recursion_limit, "configurable": configurable}

    async def start_planner(
        self,
        state: ConversationState,
        context: RequestContext,
        followup: bool = False,
    ) -> StateUpdate:
        """Start (or re-enqueue) the planner for this conversation.

        The planner thread id is reused when one exists, so submitting
        twice never creates a second session.

        Args:
            state: Current conversation snapshot.
            context: Caller credentials and configuration.
            followup: Include the latest human message as run input.

        Returns:
            StateUpdate carrying the planner session pointer and, when
            generated, the branch name.

        Raises:
            SessionStartError: If credentials or the run cannot be obtained.
        """
        thread_id = ensure_thread_id(state.planner_session)
        branch_name = state.branch_name or new_branch_name(self.branch_prefix)

        run_input: Dict[str, Any] = {
            "githubIssueId": state.tracker_issue_id,
            "targetRepository": state.target_repository.model_dump(),
            "taskPlan": (
                state.task_plan.model_dump(mode="json", by_alias=True)
                if state.task_plan
                else None
            ),
            "branchName": branch_name,
            "autoAcceptPlan": state.auto_accept_plan,
        }
        request = state.latest_human_message()
        if request is not None and (followup or context.local_mode):
            run_input["messages"] = [run_message(request)]

        logger.info(
            "Starting planner session",
            extra={
                "thread_id": state.thread_id,
                "planner_thread_id": thread_id,
                "is_new_thread": state.planner_session is None,
                "issue_number": state.tracker_issue_id,
                "followup": followup,
            },
        )

        try:
            context = await self._refresh_credentials(context)
            async with self.run_client.with_headers(context.run_headers()) as runs:
                run = await runs.create_run(
                    thread_id,
                    self.planner_graph_id,
                    input=run_input,
                    config=self._run_config(context),
                    stream_mode=self.stream_mode,
                )
        except (RunServiceError, GitHubAppAuthError) as e:
            logger.error(
                "Failed to start planner",
                extra={"planner_thread_id": thread_id, "error": str(e)},
            )
            raise SessionStartError(f"Failed to start planner: {e.message}", cause=e) from e

        session = Session(thread_id=thread_id).with_run(run.run_id)
        logger.info(
            "Planner run created",
            extra={"planner_thread_id": thread_id, "run_id": run.run_id},
        )
        return StateUpdate(
            planner_session=session,
            branch_name=None if state.branch_name else branch_name,
        )

    async def resume_and_update_planner(
        self,
        state: ConversationState,
        planner_status: SessionStatus,
        context: RequestContext,
    ) -> StateUpdate:
        """Resume the interrupted planner so it re-plans.

        Raises:
            InvalidResumeStateError: If the planner is not interrupted.
            SessionStartError: If the resume cannot be submitted.
        """
        if state.planner_session is None or planner_status != SessionStatus.INTERRUPTED:
            raise InvalidResumeStateError(planner_status)

        thread_id = state.planner_session.thread_id
        logger.info("Resuming planner session", extra={"planner_thread_id": thread_id})

        try:
            async with self.run_client.with_headers(context.run_headers()) as runs:
                run = await runs.resume_run(
                    thread_id,
                    self.planner_graph_id,
                    resume=PLANNER_RESUME_SIGNAL,
                    stream_mode=self.stream_mode,
                )
        except RunServiceError as e:
            logger.error(
                "Failed to resume planner",
                extra={"planner_thread_id": thread_id, "error": str(e)},
            )
            raise SessionStartError(f"Failed to resume planner: {e.message}", cause=e) from e

        logger.info(
            "Planner session resumed",
            extra={"planner_thread_id": thread_id, "run_id": run.run_id},
        )
        return StateUpdate(planner_session=state.planner_session.with_run(run.run_id))

    async def create_new_session(
        self,
        state: ConversationState,
        context: RequestContext,
        github: Optional[GitHubClient] = None,
    ) -> ForkResult:
        """Fork the request into a brand-new conversation.

        Creates a ticket from the whole visible history, builds a new
        top-level conversation bound to it and starts that conversation's
        planner. The parent conversation only receives a confirmation
        reply. Without a GitHub client (local mode) no ticket is created.

        Raises:
            SessionStartError: If the ticket or the new run cannot be created.
        """
        repo = state.target_repository
        try:
            fields = await self.fields_writer.generate(state.visible_messages)
        except Exception as e:
            logger.error(
                "Failed to generate ticket fields for new session",
                extra={"thread_id": state.thread_id, "error": str(e)},
            )
            raise SessionStartError(f"Failed to generate ticket fields: {e}", cause=e) from e

        issue_number = None
        if github is not None:
            try:
                issue = await github.create_issue(
                    repo.owner,
                    repo.repo,
                    fields.title,
                    format_content_for_issue_body(fields.body),
                )
            except GitHubAPIError as e:
                raise SessionStartError(
                    f"Failed to create ticket for new session: {e.message}", cause=e
                ) from e
            issue_number = issue["number"]
            logger.info(
                "Ticket created for new session",
                extra={"issue_number": issue_number, "issue_url": issue.get("html_url")},
            )

        child = ConversationState(
            messages=[
                Message.human(
                    format_tagged_request(fields.title, fields.body),
                    originating_ticket_id=issue_number,
                    is_original_issue=issue_number is not None,
                ),
                Message.assistant(FORK_INTRO_MESSAGE),
            ],
            tracker_issue_id=issue_number,
            target_repository=repo,
            branch_name=state.branch_name or new_branch_name(self.branch_prefix),
        )
        child = apply_update(child, await self.start_planner(child, context))

        logger.info(
            "New session created",
            extra={
                "thread_id": state.thread_id,
                "new_thread_id": child.thread_id,
                "issue_number": issue_number,
                "run_id": child.planner_session.run_id,
            },
        )
        return ForkResult(
            conversation=child,
            update=StateUpdate(messages=[Message.assistant(fork_confirmation(child.thread_id))]),
        )
