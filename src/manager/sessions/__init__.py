"""Session creation, resume and fork on the run-execution service."""

from src.manager.sessions.context import RequestContext
from src.manager.sessions.orchestrator import (
    ForkResult,
    InvalidResumeStateError,
    SessionOrchestrator,
    SessionStartError,
)

__all__ = [
    "ForkResult",
    "InvalidResumeStateError",
    "RequestContext",
    "SessionOrchestrator",
    "SessionStartError",
]
