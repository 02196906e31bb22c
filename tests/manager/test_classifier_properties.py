"""Property-based tests for route selection.

The routes offered to the model depend only on the session statuses, and
the classifier never returns a route it did not offer.
"""

import pytest
from hypothesis import given, settings, strategies as st

from src.manager.classifier.agent import ClassificationFailedError, parse_tool_call
from src.manager.classifier.models import Route
from src.manager.classifier.prompts import (
    TOOL_NAME,
    available_routes,
    build_classification_prompt,
    build_tool_schema,
)
from src.manager.state.models import Message, RequestSource, SessionStatus


statuses = st.sampled_from(list(SessionStatus))


class TestAvailableRoutes:
    @given(planner=statuses, programmer=statuses)
    @settings(max_examples=100)
    def test_reply_routes_always_offered(self, planner, programmer):
        routes = available_routes(planner, programmer)
        assert Route.NO_OP in routes
        assert Route.CREATE_NEW_ISSUE in routes
        assert len(routes) == len(set(routes))

    @given(planner=statuses, programmer=statuses)
    @settings(max_examples=100)
    def test_status_gated_routes(self, planner, programmer):
        routes = available_routes(planner, programmer)

        assert (Route.START_PLANNER in routes) == (planner == SessionStatus.NOT_STARTED)
        assert (Route.UPDATE_PLANNER in routes) == (planner == SessionStatus.RUNNING)
        assert (Route.RESUME_AND_UPDATE_PLANNER in routes) == (
            planner == SessionStatus.INTERRUPTED
        )
        assert (Route.UPDATE_PROGRAMMER in routes) == (programmer == SessionStatus.RUNNING)

    @given(planner=statuses, programmer=statuses)
    @settings(max_examples=100)
    def test_followup_only_after_planner_finished(self, planner, programmer):
        routes = available_routes(planner, programmer)
        expected = (
            planner in (SessionStatus.COMPLETED, SessionStatus.ERRORED)
            and programmer != SessionStatus.RUNNING
        )
        assert (Route.START_PLANNER_FOR_FOLLOWUP in routes) == expected

    def test_fresh_conversation_offers_start(self):
        routes = available_routes(SessionStatus.NOT_STARTED, SessionStatus.NOT_STARTED)
        assert routes == [Route.NO_OP, Route.CREATE_NEW_ISSUE, Route.START_PLANNER]


class TestToolSchema:
    @given(planner=statuses, programmer=statuses)
    @settings(max_examples=50)
    def test_route_enum_matches_offered_routes(self, planner, programmer):
        routes = available_routes(planner, programmer)
        schema = build_tool_schema(routes)

        function = schema["function"]
        assert function["name"] == TOOL_NAME
        assert function["parameters"]["properties"]["route"]["enum"] == [
            r.value for r in routes
        ]
        assert set(function["parameters"]["required"]) == {
            "internal_reasoning",
            "response",
            "route",
        }


class TestParseToolCall:
    @given(planner=statuses, programmer=statuses, data=st.data())
    @settings(max_examples=100)
    def test_offered_route_is_accepted(self, planner, programmer, data):
        routes = available_routes(planner, programmer)
        route = data.draw(st.sampled_from(routes))
        calls = [
            {
                "name": TOOL_NAME,
                "args": {"route": route.value, "response": "ok", "internal_reasoning": "r"},
                "id": "call-1",
            }
        ]

        decision = parse_tool_call(calls, routes)

        assert decision.route == route
        assert decision.response == "ok"
        assert decision.reasoning == "r"

    @given(planner=statuses, programmer=statuses, data=st.data())
    @settings(max_examples=100)
    def test_route_outside_offered_set_is_rejected(self, planner, programmer, data):
        routes = available_routes(planner, programmer)
        others = [r for r in Route if r not in routes]
        route = data.draw(st.sampled_from(others))
        calls = [{"name": TOOL_NAME, "args": {"route": route.value, "response": "ok"}}]

        with pytest.raises(ClassificationFailedError):
            parse_tool_call(calls, routes)

    def test_missing_tool_call(self):
        routes = available_routes(SessionStatus.NOT_STARTED, SessionStatus.NOT_STARTED)
        with pytest.raises(ClassificationFailedError, match="No tool call"):
            parse_tool_call([], routes)
        with pytest.raises(ClassificationFailedError):
            parse_tool_call(None, routes)
        with pytest.raises(ClassificationFailedError):
            parse_tool_call([{"name": "other_tool", "args": {}}], routes)

    def test_more_than_one_tool_call_is_rejected(self):
        routes = available_routes(SessionStatus.NOT_STARTED, SessionStatus.NOT_STARTED)
        calls = [
            {"name": TOOL_NAME, "args": {"route": "no_op", "response": "ok"}, "id": "call-1"},
            {
                "name": TOOL_NAME,
                "args": {"route": "create_new_issue", "response": "ok"},
                "id": "call-2",
            },
        ]
        with pytest.raises(ClassificationFailedError, match="exactly one"):
            parse_tool_call(calls, routes)

    def test_unknown_route_value(self):
        routes = available_routes(SessionStatus.NOT_STARTED, SessionStatus.NOT_STARTED)
        calls = [{"name": TOOL_NAME, "args": {"route": "deploy", "response": "ok"}}]
        with pytest.raises(ClassificationFailedError, match="Malformed"):
            parse_tool_call(calls, routes)

    def test_missing_response(self):
        routes = available_routes(SessionStatus.NOT_STARTED, SessionStatus.NOT_STARTED)
        calls = [{"name": TOOL_NAME, "args": {"route": "no_op"}}]
        with pytest.raises(ClassificationFailedError):
            parse_tool_call(calls, routes)


class TestClassificationPrompt:
    def test_lists_only_offered_routes(self):
        routes = available_routes(SessionStatus.RUNNING, SessionStatus.NOT_STARTED)
        prompt = build_classification_prompt(
            routes, SessionStatus.RUNNING, SessionStatus.NOT_STARTED, history=[]
        )
        assert "- update_planner:" in prompt
        assert "- start_planner:" not in prompt
        assert "(no earlier messages)" in prompt

    def test_includes_history_and_proposed_plan(self):
        routes = available_routes(SessionStatus.INTERRUPTED, SessionStatus.NOT_STARTED)
        prompt = build_classification_prompt(
            routes,
            SessionStatus.INTERRUPTED,
            SessionStatus.NOT_STARTED,
            history=[Message.human("Fix login"), Message.assistant("Planning")],
            proposed_plan=["Read the form", "Patch the handler"],
        )
        assert "<human>Fix login</human>" in prompt
        assert "1. Read the form" in prompt
        assert "2. Patch the handler" in prompt

    def test_mentions_ticket_origin(self):
        routes = available_routes(SessionStatus.NOT_STARTED, SessionStatus.NOT_STARTED)
        prompt = build_classification_prompt(
            routes,
            SessionStatus.NOT_STARTED,
            SessionStatus.NOT_STARTED,
            history=[],
            request_source=RequestSource.TRACKER_EVENT,
        )
        assert "GitHub issue" in prompt
