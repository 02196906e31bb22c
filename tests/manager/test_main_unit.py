"""HTTP-level tests for the FastAPI app with mocked components.

The app is exercised without running its lifespan; the module-level
components are replaced per test.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

import src.manager.main as main
from src.manager.classifier.agent import ClassificationFailedError
from src.manager.classifier.models import Route, RouteDecision
from src.manager.pipeline import StepResult
from src.manager.sessions.orchestrator import ForkResult, fork_confirmation
from src.manager.state.models import (
    ConversationState,
    Message,
    Session,
    StateUpdate,
    apply_update,
)
from src.manager.state.repository import InMemoryConversationRepository
from src.manager.webhook.models import IngressResult, IngressState


WEBHOOK_HEADERS = {
    "x-github-delivery": "delivery-1",
    "x-github-event": "issues",
    "x-github-hook-installation-target-id": "99",
    "x-github-hook-installation-target-type": "integration",
}


def _start_planner_pass(state, context):
    update = StateUpdate(
        messages=[Message.assistant("On it!")],
        tracker_issue_id=7,
        planner_session=Session(thread_id="planner-1").with_run("run-1"),
    )
    return StepResult(
        state=apply_update(state, update),
        decision=RouteDecision(route=Route.START_PLANNER, response="On it!"),
        ticket_created=True,
    )



def _fork_pass(state, context):
    child = ConversationState(
        thread_id="forked-1",
        target_repository=state.target_repository,
        tracker_issue_id=12,
        messages=[Message.human("Add dark mode", originating_ticket_id=12)],
        planner_session=Session(thread_id="planner-9").with_run("run-9"),
    )
    fork = ForkResult(
        conversation=child,
        update=StateUpdate(messages=[Message.assistant(fork_confirmation(child.thread_id))]),
    )
    return StepResult(
        state=apply_update(state, fork.update),
        decision=RouteDecision(route=Route.CREATE_NEW_ISSUE, response="Forking"),
        fork=fork,
    )


def _no_op_pass(state, context):
    return StepResult(
        state=state,
        decision=RouteDecision(route=Route.NO_OP, response="Noted"),
    )

@pytest.fixture
def components(monkeypatch):
    repository = InMemoryConversationRepository()
    pipeline = MagicMock()
    pipeline.process_message = AsyncMock(side_effect=_start_planner_pass)
    ingress = MagicMock()
    ingress.handle = AsyncMock(return_value=IngressResult(state=IngressState.ACKNOWLEDGED))
    monkeypatch.setattr(main, "repository", repository)
    monkeypatch.setattr(main, "pipeline", pipeline)
    monkeypatch.setattr(main, "ingress", ingress)
    return repository, pipeline, ingress


@pytest.fixture
def client():
    return TestClient(main.app)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200


class TestPostMessage:
    def test_new_thread(self, client, components):
        repository, pipeline, _ = components

        response = client.post(
            "/threads/thread-1/messages",
            json={
                "content": "Fix the login bug",
                "target_repository": {"owner": "acme", "repo": "widgets"},
            },
            headers={"x-github-installation-id": "42", "x-github-user-login": "octocat"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["route"] == "start_planner"
        assert data["tracker_issue_id"] == 7
        assert data["planner_thread_id"] == "planner-1"
        assert data["planner_run_id"] == "run-1"

        state, context = pipeline.process_message.await_args.args
        assert context.installation_id == "42"
        assert context.user_login == "octocat"
        assert state.latest_human_message().content == "Fix the login bug"

        client_state = client.get("/threads/thread-1").json()
        assert client_state["tracker_issue_id"] == 7
        assert client_state["version"] == 2

    def test_new_thread_requires_repository(self, client, components):
        response = client.post("/threads/thread-1/messages", json={"content": "hi"})
        assert response.status_code == 400

    def test_existing_thread_appends(self, client, components):
        body = {
            "content": "Fix the login bug",
            "target_repository": {"owner": "acme", "repo": "widgets"},
        }
        client.post("/threads/thread-1/messages", json=body)

        response = client.post("/threads/thread-1/messages", json={"content": "Also signup"})

        assert response.status_code == 200
        stored = client.get("/threads/thread-1").json()
        assert stored["version"] == 4

    def test_pipeline_error_keeps_message(self, client, components):
        _, pipeline, _ = components
        pipeline.process_message.side_effect = ClassificationFailedError("no tool call")

        response = client.post(
            "/threads/thread-1/messages",
            json={
                "content": "Fix the login bug",
                "target_repository": {"owner": "acme", "repo": "widgets"},
            },
        )

        assert response.status_code == 502
        assert response.json()["error"] == "ClassificationFailedError"
        stored = client.get("/threads/thread-1").json()
        assert [m["content"] for m in stored["messages"]] == ["Fix the login bug"]

    def test_unknown_thread(self, client, components):
        assert client.get("/threads/missing").status_code == 404

    def test_forked_thread_is_stored_and_continues(self, client, components):
        _, pipeline, _ = components
        pipeline.process_message.side_effect = _fork_pass

        response = client.post(
            "/threads/parent/messages",
            json={
                "content": "Unrelated: add dark mode",
                "target_repository": {"owner": "acme", "repo": "widgets"},
            },
        )

        assert response.status_code == 200
        assert response.json()["forked_thread_id"] == "forked-1"

        forked = client.get("/threads/forked-1")
        assert forked.status_code == 200
        child = forked.json()
        assert child["tracker_issue_id"] == 12
        assert child["planner_session"]["thread_id"] == "planner-9"
        assert child["version"] == 1
        assert client.get("/threads/parent").json()["tracker_issue_id"] is None

        pipeline.process_message.side_effect = _no_op_pass
        followup = client.post("/threads/forked-1/messages", json={"content": "Thanks"})

        assert followup.status_code == 200
        state, _ = pipeline.process_message.await_args.args
        assert state.tracker_issue_id == 12
        assert state.latest_human_message().content == "Thanks"


class TestWebhook:
    def test_missing_headers(self, client, components):
        headers = dict(WEBHOOK_HEADERS)
        del headers["x-github-delivery"]

        response = client.post("/webhooks/github", json={"action": "labeled"}, headers=headers)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing webhook headers"}

    def test_invalid_json(self, client, components):
        response = client.post(
            "/webhooks/github",
            content=b"not json",
            headers={**WEBHOOK_HEADERS, "content-type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Missing payload"}

    def test_accepted(self, client, components):
        response = client.post(
            "/webhooks/github", json={"action": "labeled"}, headers=WEBHOOK_HEADERS
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "delivery_id": "delivery-1"}

    def test_not_initialized(self, client, monkeypatch):
        monkeypatch.setattr(main, "ingress", None)

        response = client.post(
            "/webhooks/github", json={"action": "labeled"}, headers=WEBHOOK_HEADERS
        )

        assert response.status_code == 503
