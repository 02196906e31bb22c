"""GitHub App authentication.

Signs a short-lived app JWT with the App's private key and exchanges it
for installation-scoped access tokens. Installation tokens are what the
sessions use to read tickets and push branches, so one is minted each
time a long-running session is started.
"""

import logging
import time
from typing import Any, Optional

import httpx
import jwt

from src.manager.github.client import GitHubClient


logger = logging.getLogger(__name__)


class GitHubAppAuthError(Exception):
    """Raised when an installation token cannot be obtained."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class GitHubApp:
    """Mints installation tokens and installation-scoped clients.

    Attributes:
        app_id: Numeric GitHub App id.
        private_key: PEM-encoded App private key.
        base_url: Base URL for GitHub API.
    """

    JWT_TTL_SECONDS = 540

    def __init__(
        self,
        app_id: str,
        private_key: str,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.app_id = app_id
        self.private_key = private_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def create_app_jwt(self, now: Optional[int] = None) -> str:
        """Create the RS256-signed JWT that authenticates as the App."""
        issued_at = int(now if now is not None else time.time()) - 60
        payload = {
            "iat": issued_at,
            "exp": issued_at + self.JWT_TTL_SECONDS,
            "iss": str(self.app_id),
        }
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    async def get_installation_access_token(self, installation_id: Any) -> str:
        """Exchange the App JWT for an installation access token.

        Raises:
            GitHubAppAuthError: If GitHub rejects the exchange.
        """
        headers = {
            "Authorization": f"Bearer {self.create_app_jwt()}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        path = f"/app/installations/{installation_id}/access_tokens"

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(path, headers=headers)
            except httpx.RequestError as e:
                raise GitHubAppAuthError(
                    f"Installation token request failed: {e}"
                ) from e

        if response.status_code >= 400:
            logger.error(
                "Failed to obtain installation token",
                extra={
                    "installation_id": installation_id,
                    "status_code": response.status_code,
                },
            )
            raise GitHubAppAuthError(
                f"Installation token request failed: {response.status_code}",
                status_code=response.status_code,
            )

        logger.info(
            "Obtained installation token",
            extra={"installation_id": installation_id},
        )
        return response.json()["token"]

    async def get_installation_client(self, installation_id: Any) -> GitHubClient:
        """Return a GitHubClient authenticated as the installation."""
        token = await self.get_installation_access_token(installation_id)
        return GitHubClient(
            token=token,
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def client_for(
        self,
        token: Optional[str] = None,
        installation_id: Any = None,
    ) -> GitHubClient:
        """Return a GitHubClient for the given credentials.

        A static personal token or an already-minted installation token is
        used as-is; otherwise a token is minted for the installation.

        Raises:
            GitHubAppAuthError: If no credential is available or minting fails.
        """
        if token:
            return GitHubClient(
                token=token,
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        if installation_id is None:
            raise GitHubAppAuthError("Request carries no GitHub credentials")
        return await self.get_installation_client(installation_id)
