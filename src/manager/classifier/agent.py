"""LLM-based route classifier for the session manager.

Given the conversation, the current session statuses and the task plan,
asks a model to pick exactly one route and write the reply shown to the
user. The model is forced to answer through a single tool call whose
``route`` argument is restricted to the routes valid for the current
statuses.

The call is made once; there is no internal retry. A missing or
malformed tool call aborts the pipeline pass with
ClassificationFailedError, and the next trigger retries classification.

Source:
- src/manager/classifier/prompts.py (route set, prompt, tool schema)
- src/manager/config.py (llm_url, router_model)
"""

import logging
from typing import List, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import ValidationError

from src.manager.classifier.models import Route, RouteDecision
from src.manager.classifier.prompts import (
    TOOL_NAME,
    available_routes,
    build_classification_prompt,
    build_tool_schema,
)
from src.manager.state.models import (
    Message,
    RequestSource,
    SessionStatus,
    TaskPlan,
)
from src.manager.tracker.issue_body import strip_details


logger = logging.getLogger(__name__)


class NoUserMessageError(Exception):
    """Raised when the history holds no human-authored message."""

    def __init__(self, message: str = "No human message found in conversation"):
        self.message = message
        super().__init__(message)


class ClassificationFailedError(Exception):
    """Raised when the model does not return a usable route choice.

    Attributes:
        message: Human-readable error description.
        cause: The underlying exception that caused the failure.
    """

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


def _last_human_index(history: List[Message]) -> Optional[int]:
    for index in range(len(history) - 1, -1, -1):
        if history[index].is_human:
            return index
    return None


def parse_tool_call(tool_calls: list, offered: List[Route]) -> RouteDecision:
    """Turn the model's tool calls into a RouteDecision.

    Raises:
        ClassificationFailedError: If the response does not hold exactly one
            call to the routing tool, its arguments are malformed, or the
            route was not offered.
    """
    tool_calls = tool_calls or []
    if not tool_calls:
        raise ClassificationFailedError("No tool call found in model response")
    if len(tool_calls) != 1:
        raise ClassificationFailedError(
            f"Expected exactly one tool call, got {len(tool_calls)}"
        )
    call = tool_calls[0]
    if call.get("name") != TOOL_NAME:
        raise ClassificationFailedError(f"Unexpected tool call: {call.get('name')}")

    args = call.get("args") or {}
    try:
        decision = RouteDecision(
            route=args.get("route"),
            response=args.get("response"),
            reasoning=args.get("internal_reasoning"),
        )
    except ValidationError as e:
        raise ClassificationFailedError(f"Malformed route choice: {e}", cause=e) from e

    if decision.route not in offered:
        raise ClassificationFailedError(
            f"Model chose route '{decision.route.value}' which was not offered"
        )
    return decision


class RouteClassifier:
    """Classifies the latest human message into a route.

    Attributes:
        llm_url: URL of the OpenAI-compatible endpoint.
        model_name: Router model name.
        api_key: API key for the endpoint.
        timeout: Request timeout in seconds.
        supports_parallel_tool_calls: Whether the endpoint accepts the
            ``parallel_tool_calls`` parameter.

    Example:
        >>> classifier = RouteClassifier(llm_url="http://localhost:8000/v1", model_name="router")
        >>> decision = await classifier.classify(
        ...     history=[Message.human("Fix the login bug")],
        ...     planner_status=SessionStatus.NOT_STARTED,
        ...     programmer_status=SessionStatus.NOT_STARTED,
        ... )
        >>> decision.route
        <Route.START_PLANNER: 'start_planner'>
    """

    def __init__(
        self,
        llm_url: str,
        model_name: str,
        api_key: str = "not-needed",
        timeout: float = 30.0,
        temperature: float = 0.0,
        supports_parallel_tool_calls: bool = True,
    ):
        self.llm_url = llm_url
        self.model_name = model_name
        self.api_key = api_key
        self.timeout = timeout
        self.temperature = temperature
        self.supports_parallel_tool_calls = supports_parallel_tool_calls
        self._llm: Optional[ChatOpenAI] = None

    @property
    def llm(self) -> ChatOpenAI:
        if self._llm is None:
            self._llm = ChatOpenAI(
                base_url=self.llm_url,
                model=self.model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                api_key=self.api_key,
            )
        return self._llm

    async def classify(
        self,
        history: List[Message],
        planner_status: SessionStatus,
        programmer_status: SessionStatus,
        task_plan: Optional[TaskPlan] = None,
        proposed_plan: Optional[List[str]] = None,
        request_source: Optional[RequestSource] = None,
    ) -> RouteDecision:
        """Pick a route for the latest human message.

        Args:
            history: Visible conversation messages, oldest first.
            planner_status: Current planner session status.
            programmer_status: Current programmer session status.
            task_plan: Current task plan, if any.
            proposed_plan: Plan awaiting approval, if any.
            request_source: Where the latest message came from. Defaults to
                the message's own metadata.

        Returns:
            RouteDecision with the route and the user-facing reply.

        Raises:
            NoUserMessageError: If history has no human message.
            ClassificationFailedError: If the model call fails or returns
                no usable choice.
        """
        index = _last_human_index(history)
        if index is None:
            logger.error(
                "No human message found in history",
                extra={"messages_count": len(history)},
            )
            raise NoUserMessageError()

        user_message = history[index]
        source = request_source or user_message.metadata.request_source
        routes = available_routes(planner_status, programmer_status)

        prompt = build_classification_prompt(
            routes=routes,
            planner_status=planner_status,
            programmer_status=programmer_status,
            history=history[:index],
            task_plan=task_plan,
            proposed_plan=proposed_plan,
            request_source=source,
        )

        bind_kwargs = {"tool_choice": TOOL_NAME}
        if self.supports_parallel_tool_calls:
            bind_kwargs["parallel_tool_calls"] = False
        model = self.llm.bind_tools([build_tool_schema(routes)], **bind_kwargs)

        logger.info(
            "Classifying message",
            extra={
                "planner_status": planner_status.value,
                "programmer_status": programmer_status.value,
                "offered_routes": [r.value for r in routes],
                "prompt_length": len(prompt),
            },
        )

        try:
            response = await model.ainvoke(
                [
                    SystemMessage(content=prompt),
                    HumanMessage(content=strip_details(user_message.content)),
                ]
            )
        except Exception as e:
            logger.error(
                "Router model invocation failed",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            raise ClassificationFailedError(f"LLM invocation failed: {e}", cause=e) from e

        decision = parse_tool_call(getattr(response, "tool_calls", None), routes)
        logger.info(
            "Message classified",
            extra={
                "route": decision.route.value,
                "response_length": len(decision.response),
            },
        )
        return decision
