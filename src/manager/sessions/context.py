"""Per-call request context.

Carries the caller's credentials and identity through one pipeline pass.
The context is never stored in conversation state; it is rebuilt for
every trigger (webhook delivery or user request).
"""

from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


GITHUB_INSTALLATION_TOKEN_HEADER = "x-github-installation-token"
GITHUB_INSTALLATION_ID_HEADER = "x-github-installation-id"
GITHUB_INSTALLATION_NAME_HEADER = "x-github-installation-name"
GITHUB_USER_ID_HEADER = "x-github-user-id"
GITHUB_USER_LOGIN_HEADER = "x-github-user-login"
GITHUB_PAT_HEADER = "x-github-pat"
LOCAL_MODE_HEADER = "x-local-mode"


class RequestContext(BaseModel):
    """Credentials, identity and run configuration for one call.

    Attributes:
        installation_id: GitHub App installation the request belongs to.
        installation_token: Installation token, refreshed before starting
            a long-running session.
        installation_name: Account the installation belongs to.
        user_id: Id of the requesting user.
        user_login: Login of the requesting user.
        github_pat: Static personal token. When present, installation
            tokens are never refreshed (evaluation and replay paths).
        local_mode: Bypass tracker integration entirely.
        token_refreshed: The installation token was minted for this call,
            so starting a session does not mint another.
        configurable: Extra configurable fields forwarded to runs (model
            overrides and the like).
    """

    model_config = ConfigDict(frozen=True)

    installation_id: Optional[str] = None
    installation_token: Optional[str] = None
    installation_name: Optional[str] = None
    user_id: Optional[str] = None
    user_login: Optional[str] = None
    github_pat: Optional[str] = None
    local_mode: bool = False
    token_refreshed: bool = False
    configurable: Dict[str, Any] = Field(default_factory=dict)

    @property
    def github_token(self) -> Optional[str]:
        """Token to use for tracker calls, preferring the static one."""
        return self.github_pat or self.installation_token

    @property
    def needs_token_refresh(self) -> bool:
        return not (self.local_mode or self.github_pat or self.token_refreshed)

    def with_installation_token(self, token: str) -> "RequestContext":
        return self.model_copy(update={"installation_token": token, "token_refreshed": True})

    def run_headers(self) -> Dict[str, str]:
        """Headers that identify the caller to the run-execution service."""
        if self.local_mode:
            return {LOCAL_MODE_HEADER: "true"}

        candidates = {
            GITHUB_INSTALLATION_TOKEN_HEADER: self.installation_token,
            GITHUB_INSTALLATION_ID_HEADER: self.installation_id,
            GITHUB_INSTALLATION_NAME_HEADER: self.installation_name,
            GITHUB_USER_ID_HEADER: self.user_id,
            GITHUB_USER_LOGIN_HEADER: self.user_login,
            GITHUB_PAT_HEADER: self.github_pat,
        }
        return {name: str(value) for name, value in candidates.items() if value}

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        configurable: Optional[Dict[str, Any]] = None,
    ) -> "RequestContext":
        """Build a context from the caller's request headers."""
        return cls(
            installation_id=headers.get(GITHUB_INSTALLATION_ID_HEADER),
            installation_token=headers.get(GITHUB_INSTALLATION_TOKEN_HEADER),
            installation_name=headers.get(GITHUB_INSTALLATION_NAME_HEADER),
            user_id=headers.get(GITHUB_USER_ID_HEADER),
            user_login=headers.get(GITHUB_USER_LOGIN_HEADER),
            github_pat=headers.get(GITHUB_PAT_HEADER),
            local_mode=(headers.get(LOCAL_MODE_HEADER) or "").lower() == "true",
            configurable=configurable or {},
        )
