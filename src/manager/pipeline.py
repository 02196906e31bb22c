"""Manager pipeline connecting all stages of one pass.

Drives a conversation through one trigger:
initialize → refresh sessions → load plans → classify → ensure ticket
→ mirror messages → act on route.

Each pass works on a snapshot and folds the delta of every step into a
new snapshot with apply_update. Errors from required steps propagate to
the caller unmodified after an ERROR event is emitted; the caller owns
persistence and turns errors into user-facing text.

Source:
- src/manager/tracker/sync.py (TrackerSync)
- src/manager/state/registry.py (SessionRegistry)
- src/manager/classifier/agent.py (RouteClassifier)
- src/manager/sessions/orchestrator.py (SessionOrchestrator)
- src/manager/events/emitter.py (EventEmitter)
"""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel

from src.manager.classifier.agent import ClassificationFailedError, RouteClassifier
from src.manager.classifier.models import Route, RouteDecision
from src.manager.events.emitter import EventEmitter, NullEventEmitter
from src.manager.events.models import EventType, PipelineEvent
from src.manager.github.app import GitHubApp, GitHubAppAuthError
from src.manager.github.client import GitHubClient
from src.manager.sessions.context import RequestContext
from src.manager.sessions.orchestrator import ForkResult, SessionOrchestrator
from src.manager.state.models import (
    ConversationState,
    Message,
    StateUpdate,
    apply_update,
)
from src.manager.state.registry import SessionRegistry
from src.manager.tracker.sync import TrackerSync, TrackerSyncError


logger = logging.getLogger(__name__)


LOCAL_MODE_ROUTES = frozenset(
    {
        Route.NO_OP,
        Route.CREATE_NEW_ISSUE,
        Route.START_PLANNER,
        Route.START_PLANNER_FOR_FOLLOWUP,
    }
)


class StepResult(BaseModel):
    """Outcome of one pipeline pass.

    Attributes:
        state: The conversation after every step's delta was applied.
        decision: The classifier's route and reply.
        ticket_created: Whether a ticket was created in this pass.
        fork: The forked conversation, for create_new_issue.
    """

    state: ConversationState
    decision: RouteDecision
    ticket_created: bool = False
    fork: Optional[ForkResult] = None

    @property
    def route(self) -> Route:
        return self.decision.route


class ManagerPipeline:
    """Runs the classification and orchestration pipeline for one message.

    Attributes:
        tracker: Ticket reconciliation.
        registry: Session status lookups.
        classifier: Route classifier.
        orchestrator: Session creation, resume and fork.
        github_app: Provides GitHub clients for the caller's credentials.
        event_emitter: Sink for pipeline events.
    """

    def __init__(
        self,
        tracker: TrackerSync,
        registry: SessionRegistry,
        classifier: RouteClassifier,
        orchestrator: SessionOrchestrator,
        github_app: Optional[GitHubApp] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.tracker = tracker
        self.registry = registry
        self.classifier = classifier
        self.orchestrator = orchestrator
        self.github_app = github_app
        self.event_emitter = event_emitter or NullEventEmitter()

    async def _emit(
        self,
        event_type: EventType,
        state: ConversationState,
        **details: Any,
    ) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the pass."""
        event = PipelineEvent(
            event_type=event_type,
            repository=state.target_repository.full_name,
            thread_id=state.thread_id,
            issue_number=state.tracker_issue_id,
            details=details,
        )
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit manager event",
                extra={"event_type": event_type.value, "thread_id": state.thread_id},
            )

    async def _github_for(self, context: RequestContext) -> GitHubClient:
        if self.github_app is None:
            raise TrackerSyncError("No GitHub App configured for tracker access")
        try:
            return await self.github_app.client_for(
                token=context.github_token,
                installation_id=context.installation_id,
            )
        except GitHubAppAuthError as e:
            raise TrackerSyncError(f"Failed to obtain GitHub credentials: {e.message}", cause=e) from e

    async def process_message(
        self,
        state: ConversationState,
        context: RequestContext,
    ) -> StepResult:
        """Run one pipeline pass for the conversation's latest message.

        Args:
            state: Conversation snapshot, already holding the new message
                (or a ticket id for a conversation started from a ticket).
            context: Caller credentials and configuration.

        Returns:
            StepResult with the updated conversation.

        Raises:
            NoUserMessageError, ClassificationFailedError: From classification.
            TicketNotFoundError, TrackerSyncError: From tracker sync.
            InvalidResumeStateError, SessionStartError: From orchestration.
        """
        stages = {"current": "initialize"}
        github: Optional[GitHubClient] = None
        try:
            if not context.local_mode:
                github = await self._github_for(context)
            return await self._run(state, context, github, stages)
        except Exception as e:
            stage = stages["current"]
            logger.error(
                "Pipeline pass failed",
                extra={
                    "thread_id": state.thread_id,
                    "stage": stage,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            await self._emit(
                EventType.ERROR,
                state,
                stage=stage,
                error_message=str(e),
                error_type=type(e).__name__,
            )
            raise
        finally:
            if github is not None:
                await github.close()

    async def _run(
        self,
        state: ConversationState,
        context: RequestContext,
        github: Optional[GitHubClient],
        stages: Dict[str, str],
    ) -> StepResult:
        local = context.local_mode

        if not local:
            issue = await self.tracker.fetch_ticket(state, github)
            if not state.human_messages:
                state = apply_update(
                    state, await self.tracker.initialize(state, github, issue=issue)
                )
            plans = await self.tracker.load_plans(state, github, issue=issue)
        else:
            plans = None

        stages["current"] = "refresh_sessions"
        snapshot = await self.registry.refresh(state, local_mode=local)
        state = apply_update(
            state,
            StateUpdate(
                planner_session=snapshot.planner,
                programmer_session=snapshot.programmer,
                task_plan=plans.task_plan if plans else None,
            ),
        )

        stages["current"] = "classify"
        decision = await self.classifier.classify(
            history=state.visible_messages,
            planner_status=snapshot.planner_status,
            programmer_status=snapshot.programmer_status,
            task_plan=state.task_plan,
            proposed_plan=plans.proposed_plan if plans else None,
        )
        route = decision.route
        await self._emit(EventType.ROUTE_CLASSIFIED, state, route=route.value)

        if local and route not in LOCAL_MODE_ROUTES:
            raise ClassificationFailedError(
                f"Route '{route.value}' is not available in local mode"
            )

        reply = StateUpdate(messages=[Message.assistant(decision.response)])

        if route == Route.NO_OP:
            return StepResult(state=apply_update(state, reply), decision=decision)

        if route == Route.CREATE_NEW_ISSUE:
            stages["current"] = "fork"
            fork = await self.orchestrator.create_new_session(state, context, github)
            state = apply_update(state, reply.merge(fork.update))
            await self._emit(
                EventType.SESSION_FORKED,
                state,
                new_thread_id=fork.thread_id,
                run_id=fork.run_id,
            )
            return StepResult(state=state, decision=decision, fork=fork)

        ticket_created = False
        if not local:
            stages["current"] = "ensure_ticket"
            ticket = await self.tracker.ensure_ticket(state, github, plans=plans)
            state = apply_update(
                state,
                ticket.update.merge(StateUpdate(task_plan=ticket.task_plan)),
            )
            ticket_created = ticket.created
            if ticket_created:
                await self._emit(EventType.TICKET_CREATED, state)

            stages["current"] = "mirror_messages"
            mirrored = await self.tracker.mirror_messages(state, route, github)
            if mirrored:
                state = apply_update(state, StateUpdate(messages=mirrored))
                await self._emit(EventType.MESSAGES_MIRRORED, state, count=len(mirrored))

        stages["current"] = "orchestrate"
        if route == Route.START_PLANNER or route == Route.START_PLANNER_FOR_FOLLOWUP:
            update = await self.orchestrator.start_planner(
                state,
                context,
                followup=route == Route.START_PLANNER_FOR_FOLLOWUP,
            )
            event_type = EventType.SESSION_STARTED
        elif route == Route.RESUME_AND_UPDATE_PLANNER:
            update = await self.orchestrator.resume_and_update_planner(
                state, snapshot.planner_status, context
            )
            event_type = EventType.SESSION_RESUMED
        elif route == Route.UPDATE_PLANNER or route == Route.UPDATE_PROGRAMMER:
            # The running session reads the mirrored comment from the ticket.
            update = StateUpdate()
            event_type = None
        else:
            raise ValueError(f"Unhandled route: {route.value}")

        state = apply_update(state, reply.merge(update))
        if event_type is not None:
            await self._emit(
                event_type,
                state,
                planner_thread_id=state.planner_session.thread_id,
                run_id=state.planner_session.run_id,
            )

        logger.info(
            "Pipeline pass completed",
            extra={
                "thread_id": state.thread_id,
                "route": route.value,
                "issue_number": state.tracker_issue_id,
            },
        )
        return StepResult(state=state, decision=decision, ticket_created=ticket_created)
