"""Client for the run-execution service hosting the agent graphs."""

from src.manager.runs.client import (
    RunInfo,
    RunServiceClient,
    RunServiceError,
    ThreadInfo,
    ThreadStatus,
)

__all__ = [
    "RunInfo",
    "RunServiceClient",
    "RunServiceError",
    "ThreadInfo",
    "ThreadStatus",
]
