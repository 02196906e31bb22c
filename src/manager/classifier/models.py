"""Route classification models.

Requirements:
- The route is a closed enumeration; every value is handled explicitly
- The classifier returns a user-facing reply alongside the route
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Route(str, Enum):
    """Next action chosen for a new message.

    Attributes:
        NO_OP: Just reply; nothing to start or update.
        CREATE_NEW_ISSUE: The request is an independent task; fork a new
            conversation with its own ticket.
        START_PLANNER: Start the first planning session.
        START_PLANNER_FOR_FOLLOWUP: Plan a follow-up request after the
            previous sessions finished.
        UPDATE_PLANNER: The running planner picks the message up from the
            ticket.
        UPDATE_PROGRAMMER: The running programmer picks the message up
            from the ticket.
        RESUME_AND_UPDATE_PLANNER: Resume the interrupted planner so it
            re-plans with the new message.
    """

    NO_OP = "no_op"
    CREATE_NEW_ISSUE = "create_new_issue"
    START_PLANNER = "start_planner"
    START_PLANNER_FOR_FOLLOWUP = "start_planner_for_followup"
    UPDATE_PLANNER = "update_planner"
    UPDATE_PROGRAMMER = "update_programmer"
    RESUME_AND_UPDATE_PLANNER = "resume_and_update_planner"


START_ROUTES = frozenset({Route.START_PLANNER, Route.START_PLANNER_FOR_FOLLOWUP})
UPDATE_ROUTES = frozenset({Route.UPDATE_PLANNER, Route.UPDATE_PROGRAMMER})


class RouteDecision(BaseModel):
    """Structured output of the classifier.

    Attributes:
        route: The chosen route.
        response: Reply shown to the user.
        reasoning: Model's internal reasoning for the choice, not shown to
            the user.
    """

    route: Route = Field(..., description="The chosen route")
    response: str = Field(..., description="Reply shown to the user")
    reasoning: Optional[str] = Field(
        default=None,
        description="Internal reasoning for the route choice",
    )
