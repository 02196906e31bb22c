"""Prompt and tool-schema construction for route classification.

The set of routes offered to the model is derived from the current
session statuses, so the model can never pick a structurally invalid
transition:
- start_planner only while no planner session exists
- resume_and_update_planner only while the planner is interrupted
- update_planner only while the planner is running
- update_programmer only while the programmer is running
- start_planner_for_followup once the planner has finished and no
  programmer is running
- no_op and create_new_issue are always available
"""

from typing import Any, Dict, List, Optional

from src.manager.classifier.models import Route
from src.manager.state.models import Message, RequestSource, SessionStatus, TaskPlan


TOOL_NAME = "respond_and_route"
TOOL_DESCRIPTION = "Respond to the user's message and determine how to route it."

ROUTE_DESCRIPTIONS: Dict[Route, str] = {
    Route.NO_OP: (
        "The message is conversational or a question that needs no planning "
        "or code changes. Reply only."
    ),
    Route.CREATE_NEW_ISSUE: (
        "The message is a new, independent request unrelated to the current "
        "task. It will be tracked in a brand-new issue and session."
    ),
    Route.START_PLANNER: (
        "The message is a request that requires planning and code changes. "
        "Start the planning agent."
    ),
    Route.START_PLANNER_FOR_FOLLOWUP: (
        "The previous work is finished and the message is a follow-up "
        "request building on it. Start a new planning pass for the follow-up."
    ),
    Route.UPDATE_PLANNER: (
        "The planner is currently running and the message adds information "
        "or changes the request. The planner will pick it up."
    ),
    Route.UPDATE_PROGRAMMER: (
        "The programmer is currently running and the message adds "
        "information or corrections for the implementation. The programmer "
        "will pick it up."
    ),
    Route.RESUME_AND_UPDATE_PLANNER: (
        "The planner is paused waiting for input and the message changes "
        "the request or answers its question. Resume it so it re-plans."
    ),
}

FOLLOWUP_PLANNER_STATUSES = {SessionStatus.COMPLETED, SessionStatus.ERRORED}


def available_routes(
    planner_status: SessionStatus,
    programmer_status: SessionStatus,
) -> List[Route]:
    """Routes that are structurally valid for the given session statuses."""
    routes = [Route.NO_OP, Route.CREATE_NEW_ISSUE]

    if planner_status == SessionStatus.NOT_STARTED:
        routes.append(Route.START_PLANNER)
    elif planner_status == SessionStatus.RUNNING:
        routes.append(Route.UPDATE_PLANNER)
    elif planner_status == SessionStatus.INTERRUPTED:
        routes.append(Route.RESUME_AND_UPDATE_PLANNER)

    if programmer_status == SessionStatus.RUNNING:
        routes.append(Route.UPDATE_PROGRAMMER)
    elif planner_status in FOLLOWUP_PLANNER_STATUSES:
        routes.append(Route.START_PLANNER_FOR_FOLLOWUP)

    return routes


def build_tool_schema(routes: List[Route]) -> Dict[str, Any]:
    """OpenAI-style function tool restricted to the offered routes."""
    return {
        "type": "function",
        "function": {
            "name": TOOL_NAME,
            "description": TOOL_DESCRIPTION,
            "parameters": {
                "type": "object",
                "properties": {
                    "internal_reasoning": {
                        "type": "string",
                        "description": "Brief reasoning for the route choice. Not shown to the user.",
                    },
                    "response": {
                        "type": "string",
                        "description": "The reply shown to the user.",
                    },
                    "route": {
                        "type": "string",
                        "enum": [route.value for route in routes],
                        "description": "Where to route the message.",
                    },
                },
                "required": ["internal_reasoning", "response", "route"],
            },
        },
    }


def _format_task_plan(task_plan: Optional[TaskPlan]) -> str:
    if task_plan is None or not task_plan.tasks:
        return "No tasks have been planned yet."

    lines = []
    for task in task_plan.tasks:
        marker = "active" if task.task_index == task_plan.active_task_index else (
            "completed" if task.completed else "pending"
        )
        lines.append(f"- Task {task.task_index} ({marker}): {task.title or task.request}")
        for item in task.plans:
            check = "x" if item.completed else " "
            lines.append(f"  - [{check}] {item.plan}")
    return "\n".join(lines)


def _format_history(messages: List[Message]) -> str:
    if not messages:
        return "(no earlier messages)"
    return "\n".join(
        f"<{m.role.value}>{m.content}</{m.role.value}>" for m in messages
    )


def build_classification_prompt(
    routes: List[Route],
    planner_status: SessionStatus,
    programmer_status: SessionStatus,
    history: List[Message],
    task_plan: Optional[TaskPlan] = None,
    proposed_plan: Optional[List[str]] = None,
    request_source: Optional[RequestSource] = None,
) -> str:
    """System prompt describing the situation and the offered routes."""
    route_lines = "\n".join(
        f"- {route.value}: {ROUTE_DESCRIPTIONS[route]}" for route in routes
    )

    proposed = ""
    if proposed_plan:
        steps = "\n".join(f"{i + 1}. {step}" for i, step in enumerate(proposed_plan))
        proposed = f"\n\n## Proposed plan awaiting approval\n{steps}"

    source = ""
    if request_source == RequestSource.TRACKER_EVENT:
        source = (
            "\n\nThe latest message was created from a GitHub issue the user "
            "explicitly asked to be worked on."
        )

    return f"""You route messages from a user to a team of software engineering agents: a planner that writes a plan, and a programmer that implements it. Reply to the user and pick exactly one route by calling the `{TOOL_NAME}` tool.

## Session status
- Planner: {planner_status.value}
- Programmer: {programmer_status.value}

## Current task plan
{_format_task_plan(task_plan)}{proposed}

## Conversation so far
{_format_history(history)}{source}

## Routes
{route_lines}

Keep your reply short and friendly. Do not promise work that the chosen route will not start."""
