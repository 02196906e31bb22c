"""Session registry.

Tracks the identity and last-known status of the planning and
programming sessions attached to a conversation. The planner session is
owned by the conversation; the programmer session is discovered through
the planner thread's own state values, since the planner is what starts
it.

Requirements covered:
- A session's thread id is generated once and never changes on resume
- Statuses are refreshed from the run-execution service on each pass
- Local mode skips lookups and reports every session as not started
"""

import logging
import uuid
from typing import Optional

from pydantic import BaseModel

from src.manager.runs.client import RunServiceClient, ThreadInfo, ThreadStatus
from src.manager.state.models import ConversationState, Session, SessionStatus


logger = logging.getLogger(__name__)


# Thread statuses as reported by the run-execution service, mapped onto the
# session lifecycle. An idle thread that has had a run has finished it.
THREAD_STATUS_MAP = {
    ThreadStatus.BUSY: SessionStatus.RUNNING,
    ThreadStatus.INTERRUPTED: SessionStatus.INTERRUPTED,
    ThreadStatus.IDLE: SessionStatus.COMPLETED,
    ThreadStatus.ERROR: SessionStatus.ERRORED,
}


class SessionSnapshot(BaseModel):
    """Refreshed planner and programmer session pointers."""

    planner: Optional[Session] = None
    programmer: Optional[Session] = None

    @property
    def planner_status(self) -> SessionStatus:
        return self.planner.status if self.planner else SessionStatus.NOT_STARTED

    @property
    def programmer_status(self) -> SessionStatus:
        return self.programmer.status if self.programmer else SessionStatus.NOT_STARTED


def session_status_from_thread(thread: Optional[ThreadInfo]) -> SessionStatus:
    if thread is None:
        return SessionStatus.NOT_STARTED
    return THREAD_STATUS_MAP[thread.status]


def ensure_thread_id(session: Optional[Session]) -> str:
    """Reuse a session's thread id, generating one only when absent."""
    if session is not None:
        return session.thread_id
    return str(uuid.uuid4())


class SessionRegistry:
    """Resolves the current sessions for a conversation.

    Attributes:
        run_client: Client for the run-execution service.
    """

    def __init__(self, run_client: RunServiceClient):
        self.run_client = run_client

    async def refresh(
        self,
        state: ConversationState,
        local_mode: bool = False,
    ) -> SessionSnapshot:
        """Refresh planner and programmer status from the run service.

        Args:
            state: Current conversation snapshot.
            local_mode: When set, no lookups are made.

        Returns:
            SessionSnapshot with refreshed statuses. Thread ids are never
            altered; only status (and, for the programmer, discovery) change.
        """
        if local_mode:
            logger.info("Local mode, skipping session status lookups")
            return SessionSnapshot()

        if state.planner_session is None:
            return SessionSnapshot()

        planner_thread = await self.run_client.get_thread(
            state.planner_session.thread_id
        )
        planner = Session(
            thread_id=state.planner_session.thread_id,
            run_id=state.planner_session.run_id,
            status=session_status_from_thread(planner_thread),
        )

        programmer = None
        programmer_ref = (planner_thread.values if planner_thread else {}).get(
            "programmerSession"
        ) or {}
        programmer_thread_id = programmer_ref.get("threadId")
        if programmer_thread_id:
            programmer_thread = await self.run_client.get_thread(programmer_thread_id)
            programmer = Session(
                thread_id=programmer_thread_id,
                run_id=programmer_ref.get("runId"),
                status=session_status_from_thread(programmer_thread),
            )

        logger.info(
            "Session statuses refreshed",
            extra={
                "thread_id": state.thread_id,
                "planner_status": planner.status.value,
                "programmer_status": (
                    programmer.status.value
                    if programmer
                    else SessionStatus.NOT_STARTED.value
                ),
            },
        )
        return SessionSnapshot(planner=planner, programmer=programmer)
