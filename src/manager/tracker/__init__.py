"""Keeps the conversation and its GitHub issue consistent.

- issue_body: ticket body formatting and task-plan extraction
- fields: LLM-generated ticket titles and bodies
- sync: ticket creation, plan refresh and comment mirroring
"""

from src.manager.tracker.fields import IssueFields, IssueFieldsWriter
from src.manager.tracker.sync import (
    IssuePlans,
    TicketNotFoundError,
    TicketSyncResult,
    TrackerSync,
    TrackerSyncError,
)

__all__ = [
    "IssueFields",
    "IssueFieldsWriter",
    "IssuePlans",
    "TicketNotFoundError",
    "TicketSyncResult",
    "TrackerSync",
    "TrackerSyncError",
]
