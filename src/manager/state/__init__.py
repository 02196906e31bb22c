"""Conversation state, session registry and persistence.

ConversationState is the snapshot each pipeline pass reads; steps return
StateUpdate deltas that apply_update folds into a new snapshot. The
message log is append-only.
"""

from src.manager.state.models import (
    ConversationState,
    Message,
    MessageMetadata,
    MessageRole,
    PlanItem,
    RequestSource,
    Session,
    SessionStatus,
    StateUpdate,
    TargetRepository,
    Task,
    TaskPlan,
    TrackerIssueIdConflictError,
    apply_update,
)
from src.manager.state.registry import SessionRegistry, SessionSnapshot
from src.manager.state.repository import (
    ConversationRepository,
    DatabaseError,
    InMemoryConversationRepository,
    PostgresConversationRepository,
    VersionConflictError,
)

__all__ = [
    # Models
    "ConversationState",
    "Message",
    "MessageMetadata",
    "MessageRole",
    "PlanItem",
    "RequestSource",
    "Session",
    "SessionStatus",
    "StateUpdate",
    "TargetRepository",
    "Task",
    "TaskPlan",
    "TrackerIssueIdConflictError",
    "apply_update",
    # Registry
    "SessionRegistry",
    "SessionSnapshot",
    # Repository
    "ConversationRepository",
    "DatabaseError",
    "InMemoryConversationRepository",
    "PostgresConversationRepository",
    "VersionConflictError",
]
