"""GitHub API client for tracker ticket interactions.

This module provides an async wrapper around the GitHub issues API for:
- Creating issues (the conversation's ticket)
- Fetching an issue's title, body and state
- Creating issue comments (mirrored messages, status comments)

Read requests are retried with exponential backoff on transient
failures. Writes are sent once: a failed comment or issue creation is
reported to the caller, which re-drives the whole step instead.
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, Optional

import httpx


logger = logging.getLogger(__name__)


class GitHubAPIError(Exception):
    """Raised when a GitHub API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body from GitHub API.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(GitHubAPIError):
    """Raised when GitHub API rate limit is exceeded.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


class GitHubClient:
    """Async GitHub issues client.

    Attributes:
        token: Installation token or personal access token.
        base_url: Base URL for GitHub API (default: https://api.github.com).
        max_retries: Maximum number of retry attempts for read requests.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.

    Example:
        >>> async with GitHubClient(token="ghs_xxx") as client:
        ...     issue = await client.create_issue("acme", "widgets", "Fix login", "...")
        ...     await client.create_comment("acme", "widgets", issue["number"], "Hello!")
    """

    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
    RETRYABLE_METHODS = {"GET"}

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "SessionManager/1.0",
        }

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        exponential_delay = self.base_delay * (2 ** attempt)
        capped_delay = min(exponential_delay, self.max_delay)
        return random.uniform(0, capped_delay)

    def _parse_int_header(self, headers: httpx.Headers, name: str) -> Optional[int]:
        value = headers.get(name)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                pass
        return None

    def _rate_limit_error(self, response: httpx.Response) -> RateLimitError:
        reset_at = self._parse_int_header(response.headers, "x-ratelimit-reset")

        retry_after = None
        if reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))
        retry_after_header = self._parse_int_header(response.headers, "retry-after")
        if retry_after_header is not None:
            retry_after = retry_after_header

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={"reset_at": reset_at, "retry_after": retry_after},
        )
        return RateLimitError(
            message="GitHub API rate limit exceeded",
            status_code=response.status_code,
            reset_at=reset_at,
            retry_after=retry_after,
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an HTTP request, retrying idempotent reads on transient errors.

        Raises:
            GitHubAPIError: If the request fails.
            RateLimitError: If rate limit is exceeded.
        """
        retries = self.max_retries if method in self.RETRYABLE_METHODS else 0
        last_exception: Optional[Exception] = None

        for attempt in range(retries + 1):
            try:
                response = await self.client.request(
                    method=method,
                    url=path,
                    json=json_data,
                )
            except httpx.RequestError as e:
                last_exception = e
                if attempt < retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request error, retrying",
                        extra={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                    continue
                break

            if response.status_code == 429 or (
                response.status_code == 403
                and self._parse_int_header(response.headers, "x-ratelimit-remaining") == 0
            ):
                raise self._rate_limit_error(response)

            if response.status_code in self.RETRYABLE_STATUS_CODES and attempt < retries:
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Retryable error from GitHub API",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                error_body = response.text
                logger.error(
                    "GitHub API error",
                    extra={
                        "status_code": response.status_code,
                        "path": path,
                        "method": method,
                        "response_body": error_body[:500],
                    },
                )
                raise GitHubAPIError(
                    message=f"GitHub API error: {response.status_code}",
                    status_code=response.status_code,
                    response_body=error_body,
                    request_url=str(response.url),
                )

            return response

        logger.error(
            "GitHub API request failed",
            extra={"path": path, "method": method, "last_error": str(last_exception)},
        )
        raise GitHubAPIError(
            message=f"Request failed: {last_exception}",
            request_url=f"{self.base_url}{path}",
        )

    async def create_issue(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
    ) -> Dict[str, Any]:
        """Create an issue.

        Args:
            owner: Repository owner (user or organization).
            repo: Repository name.
            title: Issue title.
            body: Issue body in markdown format.

        Returns:
            The created issue data (``number``, ``html_url``, ...).

        Raises:
            GitHubAPIError: If the request fails.
        """
        logger.info(
            "Creating issue",
            extra={"owner": owner, "repo": repo, "title_length": len(title)},
        )
        response = await self._request(
            method="POST",
            path=f"/repos/{owner}/{repo}/issues",
            json_data={"title": title, "body": body},
        )
        result = response.json()
        logger.info(
            "Issue created successfully",
            extra={
                "owner": owner,
                "repo": repo,
                "issue_number": result.get("number"),
                "issue_url": result.get("html_url"),
            },
        )
        return result

    async def get_issue(
        self,
        owner: str,
        repo: str,
        issue_number: int,
    ) -> Optional[Dict[str, Any]]:
        """Get issue details, or None if the issue does not exist.

        Raises:
            GitHubAPIError: If the request fails for any reason other than 404.
        """
        logger.debug(
            "Getting issue details",
            extra={"owner": owner, "repo": repo, "issue_number": issue_number},
        )
        try:
            response = await self._request(
                method="GET",
                path=f"/repos/{owner}/{repo}/issues/{issue_number}",
            )
        except GitHubAPIError as e:
            if e.status_code in (404, 410):
                return None
            raise
        return response.json()

    async def create_comment(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        body: str,
    ) -> Dict[str, Any]:
        """Create a comment on an issue.

        Returns:
            The created comment data from GitHub API (includes ``id``).

        Raises:
            GitHubAPIError: If the request fails.
        """
        logger.info(
            "Creating comment on issue",
            extra={
                "owner": owner,
                "repo": repo,
                "issue_number": issue_number,
                "body_length": len(body),
            },
        )
        response = await self._request(
            method="POST",
            path=f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            json_data={"body": body},
        )
        result = response.json()
        logger.info(
            "Comment created successfully",
            extra={
                "owner": owner,
                "repo": repo,
                "issue_number": issue_number,
                "comment_id": result.get("id"),
            },
        )
        return result
