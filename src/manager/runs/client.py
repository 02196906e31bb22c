"""Async client for the run-execution service.

The run-execution service hosts the manager, planner and programmer
graphs. This client only covers the three calls the session manager
needs:
- Creating a run on a thread with "create if absent" semantics
- Resuming an interrupted thread with an explicit resume signal
- Reading a thread's status and values

No retry logic lives here: a failed create/resume is surfaced to the
caller, and re-delivery of the triggering event is the retry mechanism.
Timeouts belong to the underlying httpx client.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


DEFAULT_STREAM_MODE = ["values", "updates", "messages-tuple", "custom"]


class RunServiceError(Exception):
    """Raised when a run-execution service request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code, if a response was received.
        response_body: Response body, if a response was received.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class ThreadStatus(str, Enum):
    """Thread status values reported by the run-execution service."""

    IDLE = "idle"
    BUSY = "busy"
    INTERRUPTED = "interrupted"
    ERROR = "error"


class RunInfo(BaseModel):
    """A created or resumed run."""

    run_id: str = Field(..., min_length=1)
    thread_id: str = Field(..., min_length=1)
    status: Optional[str] = None


class ThreadInfo(BaseModel):
    """A thread's status and current state values."""

    thread_id: str
    status: ThreadStatus
    values: Dict[str, Any] = Field(default_factory=dict)


class RunServiceClient:
    """Thin async wrapper around the run-execution service HTTP API.

    Attributes:
        base_url: Base URL of the run-execution service.
        api_key: Optional API key sent as ``x-api-key``.
        timeout: Request timeout in seconds.
        default_headers: Headers attached to every request (credentials,
            caller identity).
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        default_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.default_headers = dict(default_headers or {})
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json", **self.default_headers}
            if self.api_key:
                headers["x-api-key"] = self.api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def with_headers(self, headers: Dict[str, str]) -> "RunServiceClient":
        """Return a client for the same service with extra default headers."""
        return RunServiceClient(
            base_url=self.base_url,
            api_key=self.api_key,
            timeout=self.timeout,
            default_headers={**self.default_headers, **headers},
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RunServiceClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            response = await self.client.request(method, path, json=json_data)
        except httpx.RequestError as e:
            logger.error(
                "Run service request failed",
                extra={"path": path, "method": method, "error": str(e)},
            )
            raise RunServiceError(f"Run service request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(
                "Run service error",
                extra={
                    "status_code": response.status_code,
                    "path": path,
                    "method": method,
                    "response_body": response.text[:500],
                },
            )
            raise RunServiceError(
                f"Run service error: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )
        return response

    async def create_run(
        self,
        thread_id: str,
        graph_id: str,
        input: Optional[Dict[str, Any]] = None,
        config: Optional[Dict[str, Any]] = None,
        command: Optional[Dict[str, Any]] = None,
        stream_mode: Optional[List[str]] = None,
        stream_resumable: bool = True,
        if_not_exists: str = "create",
    ) -> RunInfo:
        """Create a run on a thread.

        With ``if_not_exists="create"`` the thread is created when absent,
        and submitting again for a thread with a pending run does not start
        a second execution.

        Args:
            thread_id: Target thread.
            graph_id: Graph (assistant) to run.
            input: Graph input values.
            config: Run configuration (recursion limit, configurable fields).
            command: Optional command, such as ``{"resume": ...}``.
            stream_mode: Stream modes to record.
            stream_resumable: Whether the stream may be rejoined later.
            if_not_exists: Thread creation behaviour.

        Returns:
            RunInfo for the created run.

        Raises:
            RunServiceError: If the request fails.
        """
        body: Dict[str, Any] = {
            "assistant_id": graph_id,
            "if_not_exists": if_not_exists,
            "stream_resumable": stream_resumable,
            "stream_mode": stream_mode or DEFAULT_STREAM_MODE,
        }
        if input is not None:
            body["input"] = input
        if config is not None:
            body["config"] = config
        if command is not None:
            body["command"] = command

        logger.info(
            "Creating run",
            extra={"thread_id": thread_id, "graph_id": graph_id},
        )
        response = await self._request("POST", f"/threads/{thread_id}/runs", body)
        data = response.json()
        run = RunInfo(
            run_id=data["run_id"],
            thread_id=data.get("thread_id") or thread_id,
            status=data.get("status"),
        )
        logger.info(
            "Run created",
            extra={"thread_id": thread_id, "run_id": run.run_id, "status": run.status},
        )
        return run

    async def resume_run(
        self,
        thread_id: str,
        graph_id: str,
        resume: Any,
        stream_mode: Optional[List[str]] = None,
    ) -> RunInfo:
        """Resume an interrupted thread by sending a resume command."""
        return await self.create_run(
            thread_id,
            graph_id,
            command={"resume": resume},
            stream_mode=stream_mode,
            if_not_exists="reject",
        )

    async def get_thread(self, thread_id: str) -> Optional[ThreadInfo]:
        """Fetch a thread, returning None if it does not exist."""
        try:
            response = await self._request("GET", f"/threads/{thread_id}")
        except RunServiceError as e:
            if e.status_code == 404:
                return None
            raise
        data = response.json()
        return ThreadInfo(
            thread_id=data.get("thread_id") or thread_id,
            status=ThreadStatus(data.get("status", ThreadStatus.IDLE.value)),
            values=data.get("values") or {},
        )
