"""GitHub webhook event models for the session manager.

Only one event drives the manager: a label applied to an issue. The
headers GitHub sends with every delivery identify the delivery, the
event name and the App installation it targets; all four must be present
before a payload is looked at.

The models use Pydantic for validation, consistent with state/models.py.
"""

from enum import Enum
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


DELIVERY_HEADER = "x-github-delivery"
EVENT_HEADER = "x-github-event"
TARGET_ID_HEADER = "x-github-hook-installation-target-id"
TARGET_TYPE_HEADER = "x-github-hook-installation-target-type"

REQUIRED_HEADERS = (DELIVERY_HEADER, EVENT_HEADER, TARGET_ID_HEADER, TARGET_TYPE_HEADER)


class WebhookHeaders(BaseModel):
    """Delivery metadata sent with every webhook request."""

    delivery_id: str = Field(..., min_length=1)
    event_name: str = Field(..., min_length=1)
    installation_target_id: str = Field(..., min_length=1)
    target_type: str = Field(..., min_length=1)

    @classmethod
    def from_mapping(cls, headers: Mapping[str, str]) -> Optional["WebhookHeaders"]:
        """Build from request headers, or None if any required header is missing.

        Header lookup is case-insensitive when ``headers`` is (as with
        Starlette's Headers); plain dicts are expected to use lowercase keys.
        """
        values = {name: headers.get(name) or "" for name in REQUIRED_HEADERS}
        if not all(values.values()):
            return None
        return cls(
            delivery_id=values[DELIVERY_HEADER],
            event_name=values[EVENT_HEADER],
            installation_target_id=values[TARGET_ID_HEADER],
            target_type=values[TARGET_TYPE_HEADER],
        )

    @staticmethod
    def missing(headers: Mapping[str, str]) -> list:
        return [name for name in REQUIRED_HEADERS if not headers.get(name)]


class TriggerLabel(BaseModel):
    """What a recognized trigger label asks for.

    Attributes:
        name: The label name.
        auto_accept: Proceed with the generated plan without approval.
        max_tier: Run planner and programmer on the escalated model.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    auto_accept: bool = False
    max_tier: bool = False


class IssueLabeledEvent(BaseModel):
    """Parsed ``issues.labeled`` webhook event.

    Attributes:
        issue_number: The issue number within the repository.
        title: The issue title.
        body: The issue body. May be empty.
        label: Name of the label that was applied.
        owner: Repository owner (user or organization).
        repository: Repository name (without owner prefix).
        sender_login: Login of the account that applied the label.
        sender_id: Id of the account that applied the label.
        installation_id: App installation the event belongs to.
    """

    issue_number: int = Field(..., gt=0)
    title: str = Field(..., min_length=1)
    body: str = ""
    label: str = Field(..., min_length=1)
    owner: str = Field(..., min_length=1)
    repository: str = Field(..., min_length=1)
    sender_login: str = Field(..., min_length=1)
    sender_id: Optional[int] = None
    installation_id: Optional[int] = None

    @property
    def full_repository(self) -> str:
        return f"{self.owner}/{self.repository}"

    @property
    def issue_id(self) -> str:
        return f"{self.owner}/{self.repository}#{self.issue_number}"


class IngressState(str, Enum):
    """States an ingress event moves through.

    RECEIVED → VALIDATED → AUTHORIZED → DISPATCHED → ACKNOWLEDGED | FAILED.
    DROPPED is terminal for events rejected during validation or
    authorization; it has no user-visible side effect.
    """

    RECEIVED = "received"
    VALIDATED = "validated"
    AUTHORIZED = "authorized"
    DISPATCHED = "dispatched"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"
    DROPPED = "dropped"


class IngressResult(BaseModel):
    """Outcome of handling one webhook delivery.

    Attributes:
        state: Terminal state reached.
        reason: Why the event was dropped or failed.
        thread_id: Conversation created for the issue.
        planner_thread_id: Planner session thread id.
        run_id: Planner run id.
    """

    state: IngressState
    reason: Optional[str] = None
    thread_id: Optional[str] = None
    planner_thread_id: Optional[str] = None
    run_id: Optional[str] = None
