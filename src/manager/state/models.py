"""Conversation state models for the session manager.

This module defines the data models that flow through every orchestration
step, including:
- Message: One entry of the append-only conversation log
- Session: Identity and last-known status of a planning/programming session
- TaskPlan: Ordered tasks with an active-task pointer
- ConversationState: The snapshot handed to and returned from each step
- StateUpdate: The delta a step returns

Messages are never mutated or removed. Re-tagging a message appends a new
entry whose ``supersedes`` field names the entry it replaces, and
``ConversationState.visible_messages`` hides superseded entries.

The models use Pydantic for validation, consistent with the rest of the
package.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MessageRole(str, Enum):
    """Author of a conversation message."""

    HUMAN = "human"
    ASSISTANT = "assistant"


class RequestSource(str, Enum):
    """Where a human message entered the system."""

    DIRECT_USER = "direct_user"
    TRACKER_EVENT = "tracker_event"


class SessionStatus(str, Enum):
    """Last-known status of an externally executed session.

    Attributes:
        NOT_STARTED: No run has ever been created for the session.
        RUNNING: A run is currently executing.
        INTERRUPTED: The run paused and is waiting for a resume signal.
        COMPLETED: The most recent run finished.
        ERRORED: The most recent run failed.
    """

    NOT_STARTED = "not_started"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    ERRORED = "errored"


class MessageMetadata(BaseModel):
    """Tracker bookkeeping attached to a message.

    Attributes:
        originating_ticket_id: Ticket the message was first materialised
            from (or created for).
        ticket_comment_id: Comment id once the message is mirrored.
        is_followup: Set when mirrored for a follow-up planning request.
        is_original_issue: The message is the ticket's own title and body.
        request_source: Where the message entered the system.

    Serialising with ``by_alias=True`` yields the keys the run service
    reads from a message's ``additional_kwargs``.
    """

    model_config = ConfigDict(frozen=True)

    originating_ticket_id: Optional[int] = Field(
        default=None, serialization_alias="githubIssueId"
    )
    ticket_comment_id: Optional[int] = Field(
        default=None, serialization_alias="githubIssueCommentId"
    )
    is_followup: bool = Field(default=False, serialization_alias="isFollowup")
    is_original_issue: bool = Field(default=False, serialization_alias="isOriginalIssue")
    request_source: Optional[RequestSource] = None

    def is_mirrored(self, ticket_id: Optional[int]) -> bool:
        """Whether the message is already represented on the ticket."""
        if self.ticket_comment_id is not None:
            return True
        return ticket_id is not None and self.originating_ticket_id == ticket_id


class Message(BaseModel):
    """A single entry in the append-only conversation log."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: MessageRole
    content: str
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    supersedes: Optional[str] = Field(
        default=None,
        description="Id of the log entry this message replaces",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_human(self) -> bool:
        return self.role == MessageRole.HUMAN

    def tagged(self, **metadata: Any) -> "Message":
        """Return a superseding copy of this message with updated metadata."""
        return Message(
            role=self.role,
            content=self.content,
            metadata=self.metadata.model_copy(update=metadata),
            supersedes=self.id,
        )

    @classmethod
    def human(cls, content: str, **metadata: Any) -> "Message":
        return cls(
            role=MessageRole.HUMAN,
            content=content,
            metadata=MessageMetadata(**metadata),
        )

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content)


class Session(BaseModel):
    """Pointer to an externally executed session.

    The thread id is generated once and reused across resumes; only the
    run id and status change.
    """

    model_config = ConfigDict(frozen=True)

    thread_id: str = Field(..., min_length=1)
    run_id: Optional[str] = None
    status: SessionStatus = SessionStatus.NOT_STARTED

    def with_run(
        self,
        run_id: str,
        status: SessionStatus = SessionStatus.RUNNING,
    ) -> "Session":
        return Session(thread_id=self.thread_id, run_id=run_id, status=status)


class _CamelModel(BaseModel):
    """Base for models that round-trip through the ticket body as JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PlanItem(_CamelModel):
    """One step of a task's plan."""

    index: int = Field(..., ge=0)
    plan: str
    completed: bool = False
    summary: Optional[str] = None


class Task(_CamelModel):
    """A single user request tracked in the task plan."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task_index: int = Field(..., ge=0)
    request: str
    title: str = ""
    completed: bool = False
    plans: List[PlanItem] = Field(default_factory=list)
    summary: Optional[str] = None


class TaskPlan(_CamelModel):
    """Ordered list of tasks and the index of the active one."""

    tasks: List[Task] = Field(default_factory=list)
    active_task_index: int = Field(default=0, ge=0)

    @property
    def active_task(self) -> Optional[Task]:
        if 0 <= self.active_task_index < len(self.tasks):
            return self.tasks[self.active_task_index]
        return None


class TargetRepository(BaseModel):
    """Repository the conversation operates on."""

    model_config = ConfigDict(frozen=True)

    owner: str = Field(..., min_length=1)
    repo: str = Field(..., min_length=1)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


class ConversationState(BaseModel):
    """Snapshot of one conversation, keyed externally by thread id.

    Attributes:
        thread_id: Identity of the top-level conversation.
        messages: Raw append-only message log.
        tracker_issue_id: Ticket number, set at most once.
        target_repository: Repository the conversation operates on.
        task_plan: Last known task plan.
        planner_session: Planning session pointer, if one was started.
        programmer_session: Programming session pointer, as reported by
            the planner's own state.
        auto_accept_plan: Proceed with generated plans without approval.
        branch_name: Working branch for the sessions.
        version: Optimistic locking version used by the repository.
    """

    thread_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    messages: List[Message] = Field(default_factory=list)
    tracker_issue_id: Optional[int] = Field(default=None, gt=0)
    target_repository: TargetRepository
    task_plan: Optional[TaskPlan] = None
    planner_session: Optional[Session] = None
    programmer_session: Optional[Session] = None
    auto_accept_plan: bool = False
    branch_name: Optional[str] = None
    version: int = Field(default=1, ge=1)

    @property
    def visible_messages(self) -> List[Message]:
        """Messages not superseded by a later entry, in log order."""
        superseded = {m.supersedes for m in self.messages if m.supersedes}
        return [m for m in self.messages if m.id not in superseded]

    @property
    def human_messages(self) -> List[Message]:
        return [m for m in self.visible_messages if m.is_human]

    def latest_human_message(self) -> Optional[Message]:
        humans = self.human_messages
        return humans[-1] if humans else None


class StateUpdate(BaseModel):
    """Delta returned by an orchestration step.

    Only fields that are set are applied. ``messages`` are appended to the
    log in order.
    """

    messages: List[Message] = Field(default_factory=list)
    tracker_issue_id: Optional[int] = None
    task_plan: Optional[TaskPlan] = None
    planner_session: Optional[Session] = None
    programmer_session: Optional[Session] = None
    branch_name: Optional[str] = None

    def merge(self, other: "StateUpdate") -> "StateUpdate":
        """Combine two deltas, later values winning for scalar fields."""
        return StateUpdate(
            messages=self.messages + other.messages,
            tracker_issue_id=other.tracker_issue_id or self.tracker_issue_id,
            task_plan=other.task_plan or self.task_plan,
            planner_session=other.planner_session or self.planner_session,
            programmer_session=other.programmer_session or self.programmer_session,
            branch_name=other.branch_name or self.branch_name,
        )


class TrackerIssueIdConflictError(Exception):
    """Raised when an update tries to change an already-set ticket id."""

    def __init__(self, current: int, attempted: int):
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Conversation is bound to ticket #{current}; refusing to change it to #{attempted}"
        )


def apply_update(state: ConversationState, update: StateUpdate) -> ConversationState:
    """Fold a delta into a new conversation snapshot.

    Raises:
        TrackerIssueIdConflictError: If the update would change a ticket id
            that is already set.
    """
    if (
        update.tracker_issue_id is not None
        and state.tracker_issue_id is not None
        and update.tracker_issue_id != state.tracker_issue_id
    ):
        raise TrackerIssueIdConflictError(state.tracker_issue_id, update.tracker_issue_id)

    changes: Dict[str, Any] = {"messages": state.messages + update.messages}
    if update.tracker_issue_id is not None:
        changes["tracker_issue_id"] = update.tracker_issue_id
    if update.task_plan is not None:
        changes["task_plan"] = update.task_plan
    if update.planner_session is not None:
        changes["planner_session"] = update.planner_session
    if update.programmer_session is not None:
        changes["programmer_session"] = update.programmer_session
    if update.branch_name is not None:
        changes["branch_name"] = update.branch_name

    return state.model_copy(update=changes)
