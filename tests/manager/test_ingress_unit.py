"""Unit tests for the labeled-issue ingress adapter and payload parsing."""

import asyncio
import copy
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, settings, strategies as st

from src.manager.events.models import EventType
from src.manager.github.app import GitHubAppAuthError
from src.manager.runs.client import RunInfo, RunServiceError
from src.manager.sessions.orchestrator import SessionOrchestrator
from src.manager.state.models import RequestSource
from src.manager.state.repository import InMemoryConversationRepository
from src.manager.webhook.handler import (
    WebhookHandler,
    build_trigger_labels,
    is_allowed_user,
)
from src.manager.webhook.ingress import IngressAdapter, acknowledgement_comment
from src.manager.webhook.models import IngressState, WebhookHeaders


MAX_MODEL = "anthropic:claude-opus-4-1"


def run_async(coro):
    """Run an async coroutine synchronously for testing."""
    return asyncio.run(coro)


def _headers(event_name: str = "issues") -> WebhookHeaders:
    return WebhookHeaders(
        delivery_id="delivery-1",
        event_name=event_name,
        installation_target_id="99",
        target_type="integration",
    )


def _payload(label: str = "open-swe", sender: str = "octocat", **overrides) -> dict:
    payload = {
        "action": "labeled",
        "label": {"name": label},
        "issue": {
            "number": 7,
            "title": "Fix the login bug",
            "body": "The form crashes on submit",
        },
        "repository": {
            "name": "widgets",
            "full_name": "acme/widgets",
            "owner": {"login": "acme"},
        },
        "sender": {"login": sender, "id": 1001},
        "installation": {"id": 1234},
    }
    payload.update(overrides)
    return payload


class Harness:
    def __init__(self, allowed_users=("octocat",), app_url: Optional[str] = "https://swe.example"):
        self.github = MagicMock()
        self.github.create_comment = AsyncMock(return_value={"id": 1})
        self.github.close = AsyncMock()

        self.github_app = MagicMock()
        self.github_app.get_installation_client = AsyncMock(return_value=self.github)
        self.github_app.client_for = AsyncMock(return_value=self.github)
        self.github_app.get_installation_access_token = AsyncMock(return_value="ghs_install")

        self.runs = MagicMock()
        self.runs.create_run = AsyncMock(return_value=RunInfo(run_id="run-1", thread_id="x"))
        self.run_client = MagicMock()
        self.run_client.with_headers.return_value.__aenter__.return_value = self.runs

        self.repository = InMemoryConversationRepository()
        self.events = []
        emitter = MagicMock()
        emitter.emit = AsyncMock(side_effect=self.events.append)

        self.adapter = IngressAdapter(
            handler=WebhookHandler(),
            github_app=self.github_app,
            orchestrator=SessionOrchestrator(
                run_client=self.run_client,
                fields_writer=MagicMock(),
                github_app=self.github_app,
            ),
            repository=self.repository,
            trigger_labels=build_trigger_labels(
                "open-swe", "open-swe-auto", "open-swe-max", "open-swe-max-auto"
            ),
            allowed_users=list(allowed_users),
            max_tier_model=MAX_MODEL,
            app_url=app_url,
            event_emitter=emitter,
        )


class TestDispatch:
    def test_max_auto_accept_label_starts_planner(self):
        harness = Harness()

        result = run_async(
            harness.adapter.handle(_headers(), _payload(label="open-swe-max-auto"))
        )

        assert result.state == IngressState.ACKNOWLEDGED
        assert result.run_id == "run-1"

        kwargs = harness.runs.create_run.await_args.kwargs
        assert kwargs["input"]["autoAcceptPlan"] is True
        assert kwargs["input"]["githubIssueId"] == 7
        assert kwargs["config"]["configurable"] == {
            "plannerModelName": MAX_MODEL,
            "programmerModelName": MAX_MODEL,
        }

        harness.github.create_comment.assert_awaited_once()
        owner, repo, number, body = harness.github.create_comment.await_args.args
        assert (owner, repo, number) == ("acme", "widgets", 7)
        assert result.run_id in body
        assert result.planner_thread_id in body
        assert f"/chat/{result.thread_id}" in body
        harness.github.close.assert_awaited_once()

    def test_conversation_is_stored_bound_to_issue(self):
        harness = Harness()

        result = run_async(harness.adapter.handle(_headers(), _payload(label="open-swe-auto")))
        stored = run_async(harness.repository.get(result.thread_id))

        assert stored.tracker_issue_id == 7
        assert stored.auto_accept_plan is True
        assert stored.planner_session.thread_id == result.planner_thread_id
        (request,) = stored.human_messages
        assert request.content == "**Fix the login bug**\n\nThe form crashes on submit"
        assert request.metadata.originating_ticket_id == 7
        assert request.metadata.request_source == RequestSource.TRACKER_EVENT
        assert request.metadata.is_original_issue is True

    def test_standard_label_has_no_overrides(self):
        harness = Harness()

        run_async(harness.adapter.handle(_headers(), _payload(label="open-swe")))

        kwargs = harness.runs.create_run.await_args.kwargs
        assert kwargs["input"]["autoAcceptPlan"] is False
        assert kwargs["config"]["configurable"] == {}

    def test_run_headers_carry_installation_token(self):
        harness = Harness()

        run_async(harness.adapter.handle(_headers(), _payload()))

        headers = harness.run_client.with_headers.call_args.args[0]
        assert headers["x-github-installation-id"] == "1234"
        assert headers["x-github-installation-token"] == "ghs_install"
        assert headers["x-github-user-login"] == "octocat"

    def test_one_installation_token_per_event(self):
        harness = Harness()

        run_async(harness.adapter.handle(_headers(), _payload()))

        harness.github_app.get_installation_access_token.assert_awaited_once_with(1234)
        harness.github_app.client_for.assert_awaited_once_with(token="ghs_install")
        harness.github_app.get_installation_client.assert_not_awaited()

    def test_acknowledged_event_emitted(self):
        harness = Harness()

        run_async(harness.adapter.handle(_headers(), _payload()))

        (event,) = harness.events
        assert event.event_type == EventType.SESSION_STARTED
        assert event.details["ingress_outcome"] == "acknowledged"


class TestDrop:
    def test_unauthorized_sender_is_dropped_silently(self):
        harness = Harness(allowed_users=["maintainer"])

        result = run_async(
            harness.adapter.handle(_headers(), _payload(label="open-swe-max-auto", sender="stranger"))
        )

        assert result.state == IngressState.DROPPED
        harness.github.create_comment.assert_not_awaited()
        harness.runs.create_run.assert_not_awaited()
        harness.github_app.get_installation_client.assert_not_awaited()
        harness.github_app.get_installation_access_token.assert_not_awaited()
        (event,) = harness.events
        assert event.event_type == EventType.INGRESS_DROPPED

    def test_unrecognized_label_is_dropped(self):
        harness = Harness()

        result = run_async(harness.adapter.handle(_headers(), _payload(label="bug")))

        assert result.state == IngressState.DROPPED
        harness.runs.create_run.assert_not_awaited()

    def test_other_event_is_dropped(self):
        harness = Harness()

        result = run_async(harness.adapter.handle(_headers("push"), _payload()))

        assert result.state == IngressState.DROPPED

    def test_missing_installation_is_dropped(self):
        harness = Harness()
        payload = _payload()
        del payload["installation"]

        result = run_async(harness.adapter.handle(_headers(), payload))

        assert result.state == IngressState.DROPPED

    def test_empty_allow_list_admits_nobody(self):
        harness = Harness(allowed_users=[])

        result = run_async(harness.adapter.handle(_headers(), _payload()))

        assert result.state == IngressState.DROPPED

    def test_emitter_failure_does_not_escape(self):
        harness = Harness()
        harness.adapter.event_emitter.emit.side_effect = RuntimeError("sink down")

        result = run_async(harness.adapter.handle(_headers(), _payload(sender="mallory")))

        assert result.state == IngressState.DROPPED


class TestFailure:
    def test_run_failure_posts_error_comment(self):
        harness = Harness()
        harness.runs.create_run.side_effect = RunServiceError("boom", status_code=500)

        result = run_async(harness.adapter.handle(_headers(), _payload()))

        assert result.state == IngressState.FAILED
        (call,) = harness.github.create_comment.await_args_list
        assert "encountered an error" in call.args[3]
        assert harness.events[-1].event_type == EventType.ERROR
        assert harness.events[-1].details["stage"] == "ingress"

    def test_error_comment_failure_is_swallowed(self):
        harness = Harness()
        harness.runs.create_run.side_effect = RunServiceError("boom", status_code=500)
        harness.github.create_comment.side_effect = RuntimeError("comment failed")

        result = run_async(harness.adapter.handle(_headers(), _payload()))

        assert result.state == IngressState.FAILED

    def test_token_failure_still_attempts_error_comment(self):
        harness = Harness()
        harness.github_app.get_installation_access_token.side_effect = GitHubAppAuthError("denied")

        result = run_async(harness.adapter.handle(_headers(), _payload()))

        assert result.state == IngressState.FAILED
        harness.runs.create_run.assert_not_awaited()


class TestPayloadParsing:
    def test_parses_labeled_event(self):
        event = WebhookHandler().parse_labeled_event("issues", _payload())

        assert event.issue_number == 7
        assert event.label == "open-swe"
        assert event.issue_id == "acme/widgets#7"
        assert event.sender_id == 1001
        assert event.installation_id == 1234

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda p: p.update(action="opened"),
            lambda p: p.pop("issue"),
            lambda p: p.pop("label"),
            lambda p: p.pop("sender"),
            lambda p: p["issue"].update(number=0),
            lambda p: p["issue"].update(title="  "),
            lambda p: p["repository"].update(name=""),
            lambda p: p["repository"].pop("owner"),
        ],
    )
    def test_invalid_payloads_return_none(self, mutate):
        payload = copy.deepcopy(_payload())
        mutate(payload)
        assert WebhookHandler().parse_labeled_event("issues", payload) is None

    def test_non_dict_payload(self):
        assert WebhookHandler().parse_labeled_event("issues", ["not", "a", "dict"]) is None

    def test_trigger_labels(self):
        labels = build_trigger_labels("a", "b", "c", "d")
        assert not labels["a"].auto_accept and not labels["a"].max_tier
        assert labels["b"].auto_accept and not labels["b"].max_tier
        assert labels["c"].max_tier and not labels["c"].auto_accept
        assert labels["d"].auto_accept and labels["d"].max_tier


class TestAllowList:
    @given(login=st.from_regex(r"[A-Za-z][A-Za-z0-9-]{0,20}", fullmatch=True))
    @settings(max_examples=50)
    def test_case_insensitive(self, login):
        assert is_allowed_user(login.upper(), [login.lower()])
        assert is_allowed_user(login, [f"  {login}  "])

    def test_unlisted_user(self):
        assert not is_allowed_user("stranger", ["octocat"])
        assert not is_allowed_user("octocat", [])


class TestHeaders:
    def test_all_headers_required(self):
        headers = {
            "x-github-delivery": "d",
            "x-github-event": "issues",
            "x-github-hook-installation-target-id": "1",
        }
        assert WebhookHeaders.from_mapping(headers) is None
        assert WebhookHeaders.missing(headers) == ["x-github-hook-installation-target-type"]

        headers["x-github-hook-installation-target-type"] = "integration"
        parsed = WebhookHeaders.from_mapping(headers)
        assert parsed.event_name == "issues"


def test_acknowledgement_without_app_url():
    body = acknowledgement_comment("run-1", "planner-1", "thread-1", "octocat")
    assert "/chat/" not in body
    assert '"runId": "run-1"' in body
    assert '"threadId": "planner-1"' in body
