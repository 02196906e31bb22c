"""Ingress adapter for labeled-issue webhook events.

Turns an ``issues.labeled`` delivery into a planner session:

    received → validated → authorized → dispatched → acknowledged | failed

- validated: the payload parses and carries one of the trigger labels;
  anything else is dropped silently
- authorized: the sender is on the allow-list; anyone else is dropped
  silently so the service does not reveal itself to arbitrary accounts
- dispatched: a new conversation is created from the issue and the
  planner is started directly, without classification. Auto-accept
  labels set ``auto_accept_plan``; max labels select the escalated model
  for planner and programmer
- acknowledged: a comment with the run and thread ids is posted back
- failed: an error comment is attempted; failure to post it is logged
  and swallowed

Source:
- src/manager/webhook/handler.py (payload parsing, allow-list)
- src/manager/sessions/orchestrator.py (start_planner)
- src/manager/state/repository.py (conversation persistence)
"""

import json
import logging
from typing import Any, Dict, List, Optional

from src.manager.events.emitter import EventEmitter, NullEventEmitter
from src.manager.events.models import EventType, PipelineEvent
from src.manager.github.app import GitHubApp
from src.manager.github.client import GitHubClient
from src.manager.sessions.context import RequestContext
from src.manager.sessions.orchestrator import SessionOrchestrator
from src.manager.state.models import (
    ConversationState,
    Message,
    RequestSource,
    TargetRepository,
    apply_update,
)
from src.manager.state.repository import ConversationRepository
from src.manager.tracker.issue_body import extract_task_plan, message_content_from_issue
from src.manager.webhook.handler import WebhookHandler, is_allowed_user
from src.manager.webhook.models import (
    IngressResult,
    IngressState,
    IssueLabeledEvent,
    TriggerLabel,
    WebhookHeaders,
)


logger = logging.getLogger(__name__)


ERROR_COMMENT_TEMPLATE = (
    "The session manager encountered an error while processing this issue. "
    "Please check the logs or try again later.\n\nError: {error}"
)


class UnauthorizedSenderError(Exception):
    """Raised when the label was applied by an account not on the allow-list."""

    def __init__(self, login: str):
        self.login = login
        self.message = f"Sender '{login}' is not allowed to trigger sessions"
        super().__init__(self.message)


class MalformedEventError(Exception):
    """Raised when a delivery is not a recognized labeled-issue event."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def dev_metadata_comment(run_id: str, thread_id: str) -> str:
    """Collapsed block carrying run and thread ids for traceability."""
    payload = json.dumps({"runId": run_id, "threadId": thread_id}, indent=2)
    return f"<details>\n  <summary>Dev Metadata</summary>\n  {payload}\n</details>"


def acknowledgement_comment(
    run_id: str,
    planner_thread_id: str,
    thread_id: str,
    user_login: str,
    app_url: Optional[str] = None,
) -> str:
    parts = ["The session manager has been triggered for this issue. Processing..."]
    if app_url:
        parts.append(
            f"View the run [here]({app_url.rstrip('/')}/chat/{thread_id}) "
            f"(this URL will only work for @{user_login})"
        )
    parts.append(dev_metadata_comment(run_id, planner_thread_id))
    return "\n\n".join(parts)


class IngressAdapter:
    """Drives one labeled-issue delivery through the ingress states.

    Attributes:
        handler: Payload parser.
        github_app: Mints installation tokens and clients.
        orchestrator: Starts the planner session.
        repository: Stores the conversation created for the issue.
        trigger_labels: Recognized label names and what they ask for.
        allowed_users: Logins allowed to trigger sessions.
        max_tier_model: Model used for both roles under a max label.
        app_url: Optional base URL for "view run" links.
    """

    def __init__(
        self,
        handler: WebhookHandler,
        github_app: GitHubApp,
        orchestrator: SessionOrchestrator,
        repository: ConversationRepository,
        trigger_labels: Dict[str, TriggerLabel],
        allowed_users: List[str],
        max_tier_model: str,
        app_url: Optional[str] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.handler = handler
        self.github_app = github_app
        self.orchestrator = orchestrator
        self.repository = repository
        self.trigger_labels = trigger_labels
        self.allowed_users = allowed_users
        self.max_tier_model = max_tier_model
        self.app_url = app_url
        self.event_emitter = event_emitter or NullEventEmitter()

    async def _emit(self, event_type: EventType, repository: str, **details: Any) -> None:
        """Emit an event, swallowing exceptions so handle() never raises."""
        try:
            await self.event_emitter.emit(
                PipelineEvent(
                    event_type=event_type,
                    repository=repository or "unknown/unknown",
                    thread_id=details.pop("thread_id", None),
                    issue_number=details.pop("issue_number", None),
                    details=details,
                )
            )
        except Exception:
            logger.exception(
                "Failed to emit ingress event",
                extra={"event_type": event_type.value},
            )

    def _validate(self, headers: WebhookHeaders, payload: Any) -> tuple:
        event = self.handler.parse_labeled_event(headers.event_name, payload)
        if event is None:
            raise MalformedEventError(
                f"Not a labeled-issue event: {headers.event_name}"
            )
        label = self.trigger_labels.get(event.label)
        if label is None:
            raise MalformedEventError(f"Unrecognized label: {event.label}")
        if event.installation_id is None:
            raise MalformedEventError("No installation id in payload")
        return event, label

    def _authorize(self, event: IssueLabeledEvent) -> None:
        if not is_allowed_user(event.sender_login, self.allowed_users):
            raise UnauthorizedSenderError(event.sender_login)

    def _configurable(self, label: TriggerLabel) -> Dict[str, Any]:
        if not label.max_tier:
            return {}
        return {
            "plannerModelName": self.max_tier_model,
            "programmerModelName": self.max_tier_model,
        }

    def _conversation(self, event: IssueLabeledEvent, label: TriggerLabel) -> ConversationState:
        return ConversationState(
            messages=[
                Message.human(
                    message_content_from_issue(event.title, event.body),
                    originating_ticket_id=event.issue_number,
                    is_original_issue=True,
                    request_source=RequestSource.TRACKER_EVENT,
                )
            ],
            tracker_issue_id=event.issue_number,
            target_repository=TargetRepository(owner=event.owner, repo=event.repository),
            task_plan=extract_task_plan(event.body),
            auto_accept_plan=label.auto_accept,
        )

    async def handle(self, headers: WebhookHeaders, payload: Any) -> IngressResult:
        """Handle one webhook delivery.

        Never raises: drops and failures are reported in the result.
        """
        state = IngressState.RECEIVED
        try:
            event, label = self._validate(headers, payload)
            state = IngressState.VALIDATED
            self._authorize(event)
            state = IngressState.AUTHORIZED
        except (MalformedEventError, UnauthorizedSenderError) as e:
            logger.info(
                "Dropping webhook event",
                extra={
                    "delivery_id": headers.delivery_id,
                    "event_name": headers.event_name,
                    "state": state.value,
                    "reason": e.message,
                },
            )
            await self._emit(
                EventType.INGRESS_DROPPED,
                self._repository_name(payload),
                reason=type(e).__name__,
            )
            return IngressResult(state=IngressState.DROPPED, reason=e.message)

        logger.info(
            "'%s' label added to issue %s",
            event.label,
            event.issue_id,
            extra={"auto_accept": label.auto_accept, "max_tier": label.max_tier},
        )

        github: Optional[GitHubClient] = None
        try:
            # One token serves the tracker client and the planner run.
            token = await self.github_app.get_installation_access_token(event.installation_id)
            github = await self.github_app.client_for(token=token)
            context = RequestContext(
                installation_id=str(event.installation_id),
                installation_name=event.owner,
                user_id=str(event.sender_id) if event.sender_id is not None else None,
                user_login=event.sender_login,
                configurable=self._configurable(label),
            ).with_installation_token(token)

            conversation = self._conversation(event, label)
            update = await self.orchestrator.start_planner(conversation, context)
            conversation = apply_update(conversation, update)
            state = IngressState.DISPATCHED
            await self.repository.save(conversation)

            planner = conversation.planner_session
            await github.create_comment(
                event.owner,
                event.repository,
                event.issue_number,
                acknowledgement_comment(
                    planner.run_id,
                    planner.thread_id,
                    conversation.thread_id,
                    event.sender_login,
                    self.app_url,
                ),
            )
            state = IngressState.ACKNOWLEDGED
        except Exception as e:
            logger.error(
                "Error processing webhook event",
                extra={
                    "issue_id": event.issue_id,
                    "label": event.label,
                    "sender": event.sender_login,
                    "state": state.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            await self._emit(
                EventType.ERROR,
                event.full_repository,
                issue_number=event.issue_number,
                stage="ingress",
                error_message=str(e),
                error_type=type(e).__name__,
            )
            await self._post_error_comment(event, e, github)
            return IngressResult(state=IngressState.FAILED, reason=str(e))
        finally:
            if github is not None:
                await github.close()

        logger.info(
            "Created planner session from issue",
            extra={
                "issue_id": event.issue_id,
                "thread_id": conversation.thread_id,
                "planner_thread_id": planner.thread_id,
                "run_id": planner.run_id,
                "auto_accept": label.auto_accept,
            },
        )
        await self._emit(
            EventType.SESSION_STARTED,
            event.full_repository,
            thread_id=conversation.thread_id,
            issue_number=event.issue_number,
            planner_thread_id=planner.thread_id,
            run_id=planner.run_id,
            ingress_outcome="acknowledged",
        )
        return IngressResult(
            state=IngressState.ACKNOWLEDGED,
            thread_id=conversation.thread_id,
            planner_thread_id=planner.thread_id,
            run_id=planner.run_id,
        )

    async def _post_error_comment(
        self,
        event: IssueLabeledEvent,
        error: Exception,
        github: Optional[GitHubClient],
    ) -> None:
        """Best-effort error comment; never raises."""
        owned = github is None
        try:
            if owned:
                github = await self.github_app.get_installation_client(event.installation_id)
            await github.create_comment(
                event.owner,
                event.repository,
                event.issue_number,
                ERROR_COMMENT_TEMPLATE.format(error=error),
            )
            logger.info("Error comment added to issue", extra={"issue_id": event.issue_id})
        except Exception as comment_error:
            logger.error(
                "Failed to add error comment to issue",
                extra={"issue_id": event.issue_id, "comment_error": str(comment_error)},
            )
        finally:
            if owned and github is not None:
                await github.close()

    @staticmethod
    def _repository_name(payload: Any) -> str:
        if isinstance(payload, dict) and isinstance(payload.get("repository"), dict):
            full_name = payload["repository"].get("full_name")
            if isinstance(full_name, str) and full_name:
                return full_name
        return "unknown/unknown"
