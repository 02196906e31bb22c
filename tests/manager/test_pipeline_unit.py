"""Unit tests for ManagerPipeline.

Wires the real tracker sync, session registry and orchestrator against
mocked GitHub, run-service and classifier collaborators, and drives full
passes through the pipeline.
"""

import asyncio
import itertools
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.manager.classifier.agent import ClassificationFailedError
from src.manager.classifier.models import Route, RouteDecision
from src.manager.events.models import EventType
from src.manager.pipeline import ManagerPipeline
from src.manager.runs.client import RunInfo, ThreadInfo, ThreadStatus
from src.manager.sessions.context import RequestContext
from src.manager.sessions.orchestrator import PLANNER_RESUME_SIGNAL, SessionOrchestrator
from src.manager.state.models import (
    ConversationState,
    Message,
    Session,
    SessionStatus,
    TargetRepository,
)
from src.manager.state.registry import SessionRegistry
from src.manager.tracker.fields import IssueFields
from src.manager.tracker.issue_body import render_issue_body
from src.manager.tracker.sync import TicketNotFoundError, TrackerSync


def run_async(coro):
    """Run an async coroutine synchronously for testing."""
    return asyncio.run(coro)


def _decision(route: Route, response: str = "Sure, working on it.") -> RouteDecision:
    return RouteDecision(route=route, response=response, reasoning="test")


class Harness:
    """Pipeline with mocked external collaborators."""

    def __init__(self, decision: RouteDecision):
        comment_ids = itertools.count(500)
        self.github = MagicMock()
        self.github.create_issue = AsyncMock(return_value={"number": 7, "html_url": "u"})
        self.github.get_issue = AsyncMock(
            return_value={"number": 7, "title": "Fix login", "body": render_issue_body("Fix login")}
        )
        self.github.create_comment = AsyncMock(
            side_effect=lambda *args: {"id": next(comment_ids)}
        )
        self.github.close = AsyncMock()

        self.github_app = MagicMock()
        self.github_app.client_for = AsyncMock(return_value=self.github)
        self.github_app.get_installation_access_token = AsyncMock(return_value="ghs_fresh")

        self.runs = MagicMock()
        self.runs.create_run = AsyncMock(return_value=RunInfo(run_id="run-1", thread_id="x"))
        self.runs.resume_run = AsyncMock(return_value=RunInfo(run_id="run-2", thread_id="x"))
        self.run_client = MagicMock()
        self.run_client.get_thread = AsyncMock(return_value=None)
        self.run_client.with_headers.return_value.__aenter__.return_value = self.runs

        self.fields_writer = MagicMock()
        self.fields_writer.generate = AsyncMock(
            return_value=IssueFields(title="Fix the login bug", body="details")
        )

        self.classifier = MagicMock()
        self.classifier.classify = AsyncMock(return_value=decision)

        self.events = []
        self.emitter = MagicMock()
        self.emitter.emit = AsyncMock(side_effect=self.events.append)

        self.pipeline = ManagerPipeline(
            tracker=TrackerSync(self.fields_writer),
            registry=SessionRegistry(self.run_client),
            classifier=self.classifier,
            orchestrator=SessionOrchestrator(
                run_client=self.run_client,
                fields_writer=self.fields_writer,
                github_app=self.github_app,
            ),
            github_app=self.github_app,
            event_emitter=self.emitter,
        )

    def event_types(self):
        return [e.event_type for e in self.events]


def _state(**overrides) -> ConversationState:
    defaults = {
        "thread_id": "thread-1",
        "target_repository": TargetRepository(owner="acme", repo="widgets"),
    }
    defaults.update(overrides)
    return ConversationState(**defaults)


def _context(**overrides) -> RequestContext:
    defaults = {"installation_id": "42", "installation_token": "ghs_old", "user_login": "octocat"}
    defaults.update(overrides)
    return RequestContext(**defaults)


class TestStartPlannerPass:
    def test_first_request_creates_ticket_and_planner(self):
        harness = Harness(_decision(Route.START_PLANNER))
        request = Message.human("Fix the login bug")
        state = _state(messages=[request])

        result = run_async(harness.pipeline.process_message(state, _context()))

        assert result.route == Route.START_PLANNER
        assert result.ticket_created is True
        new_state = result.state
        assert new_state.tracker_issue_id == 7
        assert new_state.planner_session.run_id == "run-1"
        assert new_state.planner_session.thread_id
        assert new_state.branch_name.startswith("open-swe/")

        tagged = new_state.latest_human_message()
        assert tagged.supersedes == request.id
        assert tagged.metadata.originating_ticket_id == 7
        assert new_state.visible_messages[-1].content == "Sure, working on it."

        harness.github.create_issue.assert_awaited_once()
        harness.github.create_comment.assert_not_awaited()
        harness.github.close.assert_awaited_once()
        harness.runs.create_run.assert_awaited_once()
        assert harness.event_types() == [
            EventType.ROUTE_CLASSIFIED,
            EventType.TICKET_CREATED,
            EventType.SESSION_STARTED,
        ]

    def test_classifier_sees_refreshed_statuses(self):
        harness = Harness(_decision(Route.START_PLANNER))

        run_async(
            harness.pipeline.process_message(
                _state(messages=[Message.human("Fix it")]), _context()
            )
        )

        kwargs = harness.classifier.classify.await_args.kwargs
        assert kwargs["planner_status"] == SessionStatus.NOT_STARTED
        assert kwargs["programmer_status"] == SessionStatus.NOT_STARTED
        assert [m.content for m in kwargs["history"]] == ["Fix it"]

    def test_followup_mirrors_and_reuses_planner_thread(self):
        harness = Harness(_decision(Route.START_PLANNER_FOR_FOLLOWUP))
        harness.run_client.get_thread.return_value = ThreadInfo(
            thread_id="planner-1", status=ThreadStatus.IDLE
        )
        state = _state(
            tracker_issue_id=7,
            planner_session=Session(thread_id="planner-1", run_id="run-0"),
            branch_name="open-swe/existing",
            messages=[
                Message.human("Fix login", originating_ticket_id=7),
                Message.assistant("Done"),
                Message.human("Now add tests"),
            ],
        )

        result = run_async(harness.pipeline.process_message(state, _context()))

        assert result.state.planner_session.thread_id == "planner-1"
        assert result.state.planner_session.run_id == "run-1"
        harness.github.create_comment.assert_awaited_once()
        assert result.state.latest_human_message().metadata.is_followup is True
        sent = harness.runs.create_run.await_args.kwargs["input"]["messages"]
        assert sent[0]["content"] == "Now add tests"
        harness.github.get_issue.assert_awaited_once()


class TestResumePass:
    def test_interrupted_planner_is_resumed_on_same_thread(self):
        harness = Harness(_decision(Route.RESUME_AND_UPDATE_PLANNER))
        harness.run_client.get_thread.return_value = ThreadInfo(
            thread_id="planner-1", status=ThreadStatus.INTERRUPTED
        )
        state = _state(
            tracker_issue_id=7,
            planner_session=Session(thread_id="planner-1", run_id="run-0"),
            messages=[
                Message.human("Fix login", originating_ticket_id=7),
                Message.assistant("Here is my plan"),
                Message.human("Use OAuth instead"),
            ],
        )

        result = run_async(harness.pipeline.process_message(state, _context()))

        assert result.state.planner_session.thread_id == "planner-1"
        assert result.state.planner_session.run_id == "run-2"
        owner, repo, number, body = harness.github.create_comment.await_args.args
        assert (owner, repo, number, body) == ("acme", "widgets", 7, "Use OAuth instead")
        assert harness.runs.resume_run.await_args.kwargs["resume"] == PLANNER_RESUME_SIGNAL
        harness.runs.create_run.assert_not_awaited()
        assert EventType.SESSION_RESUMED in harness.event_types()


class TestOtherRoutes:
    def test_no_op_only_replies(self):
        harness = Harness(_decision(Route.NO_OP, "Happy to help!"))
        state = _state(messages=[Message.human("thanks")])

        result = run_async(harness.pipeline.process_message(state, _context()))

        assert result.state.visible_messages[-1].content == "Happy to help!"
        assert result.state.tracker_issue_id is None
        harness.github.create_issue.assert_not_awaited()
        harness.run_client.with_headers.assert_not_called()

    def test_update_planner_only_mirrors(self):
        harness = Harness(_decision(Route.UPDATE_PLANNER))
        harness.run_client.get_thread.return_value = ThreadInfo(
            thread_id="planner-1", status=ThreadStatus.BUSY
        )
        planner = Session(thread_id="planner-1", run_id="run-0")
        state = _state(
            tracker_issue_id=7,
            planner_session=planner,
            messages=[
                Message.human("Fix login", originating_ticket_id=7),
                Message.human("Also the signup form"),
            ],
        )

        result = run_async(harness.pipeline.process_message(state, _context()))

        harness.github.create_comment.assert_awaited_once()
        harness.run_client.with_headers.assert_not_called()
        assert result.state.planner_session.run_id == "run-0"
        assert result.state.planner_session.status == SessionStatus.RUNNING

    def test_create_new_issue_forks(self):
        harness = Harness(_decision(Route.CREATE_NEW_ISSUE))
        harness.github.create_issue.return_value = {"number": 12, "html_url": "u"}
        state = _state(
            tracker_issue_id=7,
            messages=[
                Message.human("Fix login", originating_ticket_id=7),
                Message.human("Unrelated: add dark mode"),
            ],
        )

        result = run_async(harness.pipeline.process_message(state, _context()))

        assert result.fork.issue_number == 12
        assert result.state.tracker_issue_id == 7
        assert result.state.planner_session is None
        harness.github.create_comment.assert_not_awaited()
        assert result.state.visible_messages[-1].content.startswith("Success!")
        assert EventType.SESSION_FORKED in harness.event_types()

        child = result.fork.conversation
        assert child.tracker_issue_id == 12
        assert child.planner_session.run_id == "run-1"
        assert child.thread_id in result.state.visible_messages[-1].content

    def test_conversation_started_from_ticket(self):
        harness = Harness(_decision(Route.START_PLANNER))
        state = _state(tracker_issue_id=7)

        result = run_async(harness.pipeline.process_message(state, _context()))

        (request,) = result.state.human_messages
        assert request.content.startswith("**Fix login**")
        assert result.ticket_created is False
        harness.github.create_comment.assert_not_awaited()
        harness.github.get_issue.assert_awaited_once()


class TestLocalMode:
    def test_local_mode_skips_tracker(self):
        harness = Harness(_decision(Route.START_PLANNER))
        state = _state(messages=[Message.human("Fix it")])

        result = run_async(
            harness.pipeline.process_message(state, RequestContext(local_mode=True))
        )

        assert result.state.tracker_issue_id is None
        assert result.state.planner_session.run_id == "run-1"
        harness.github_app.client_for.assert_not_awaited()
        harness.run_client.get_thread.assert_not_awaited()

    def test_tracker_routes_rejected_in_local_mode(self):
        harness = Harness(_decision(Route.UPDATE_PLANNER))
        state = _state(messages=[Message.human("Fix it")])

        with pytest.raises(ClassificationFailedError):
            run_async(
                harness.pipeline.process_message(state, RequestContext(local_mode=True))
            )


class TestFailures:
    def test_classification_failure_emits_error_and_propagates(self):
        harness = Harness(_decision(Route.NO_OP))
        harness.classifier.classify.side_effect = ClassificationFailedError("no tool call")
        state = _state(messages=[Message.human("Fix it")])

        with pytest.raises(ClassificationFailedError):
            run_async(harness.pipeline.process_message(state, _context()))

        (event,) = harness.events
        assert event.event_type == EventType.ERROR
        assert event.details["stage"] == "classify"
        harness.github.close.assert_awaited_once()

    def test_missing_ticket_propagates(self):
        harness = Harness(_decision(Route.START_PLANNER))
        harness.github.get_issue.return_value = None
        state = _state(tracker_issue_id=7, messages=[Message.human("more")])

        with pytest.raises(TicketNotFoundError):
            run_async(harness.pipeline.process_message(state, _context()))

        harness.classifier.classify.assert_not_awaited()
