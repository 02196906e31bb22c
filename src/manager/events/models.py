"""Pipeline event models for observability.

This module defines the data models for manager events, including:
- EventType: Enum of every event the manager emits
- PipelineEvent: Structured event with conversation and repository context

Events are emitted after each significant step of a pipeline pass
(classification, ticket creation, mirroring, session start/resume/fork)
and when the ingress adapter drops or fails an event.

The models use Pydantic for validation, consistent with state/models.py.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the session manager.

    Attributes:
        ROUTE_CLASSIFIED: The classifier chose a route for a message.
        TICKET_CREATED: A ticket was created for a conversation.
        MESSAGES_MIRRORED: Human messages were posted as ticket comments.
        SESSION_STARTED: A planner run was created.
        SESSION_RESUMED: An interrupted planner was resumed.
        SESSION_FORKED: A request was forked into a new conversation.
        INGRESS_DROPPED: A webhook event was dropped without side effects.
        ERROR: A pipeline pass or ingress dispatch failed.
    """

    ROUTE_CLASSIFIED = "route_classified"
    TICKET_CREATED = "ticket_created"
    MESSAGES_MIRRORED = "messages_mirrored"
    SESSION_STARTED = "session_started"
    SESSION_RESUMED = "session_resumed"
    SESSION_FORKED = "session_forked"
    INGRESS_DROPPED = "ingress_dropped"
    ERROR = "error"


class PipelineEvent(BaseModel):
    """Structured event emitted by the session manager.

    Attributes:
        event_type: The category of event.
        repository: Full repository path in format "{owner}/{repo}".
        thread_id: Conversation the event belongs to, when known.
        issue_number: Ticket the event concerns, when known.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        ROUTE_CLASSIFIED: ``route``
        SESSION_STARTED / SESSION_RESUMED: ``planner_thread_id``, ``run_id``
        SESSION_FORKED: ``new_thread_id``, ``run_id``
        MESSAGES_MIRRORED: ``count``
        INGRESS_DROPPED: ``reason``
        ERROR: ``stage``, ``error_message``, ``error_type``
    """

    event_type: EventType = Field(..., description="The category of event being emitted")
    repository: str = Field(
        ...,
        min_length=1,
        description='Full repository path in format "{owner}/{repo}"',
    )
    thread_id: Optional[str] = Field(default=None, description="Conversation thread id")
    issue_number: Optional[int] = Field(default=None, description="Ticket number")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )
    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flat dictionary representation for structured logging."""
        return {
            "event_type": self.event_type.value,
            "repository": self.repository,
            "thread_id": self.thread_id,
            "issue_number": self.issue_number,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
