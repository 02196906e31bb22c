"""Session manager configuration using pydantic-settings.

Reads configuration from environment variables with the MANAGER_ prefix.
Credentials for the GitHub App, the run-execution service URL and the
classification model endpoint are required; everything else has a
default.
"""

from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.manager.runs.client import DEFAULT_STREAM_MODE


class ManagerSettings(BaseSettings):
    """Session manager configuration from environment variables.

    All environment variables are prefixed with MANAGER_ (e.g.,
    MANAGER_GITHUB_APP_ID).

    Required fields:
    - github_app_id / github_app_private_key: GitHub App credentials
    - run_service_url: Base URL of the run-execution service
    - llm_url / router_model: Classification model endpoint and model
    """

    model_config = SettingsConfigDict(
        env_prefix="MANAGER_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub App
    # -------------------------------------------------------------------------
    github_app_id: str
    github_app_private_key: str
    github_base_url: str = "https://api.github.com"

    # Retained; signature validation happens in front of the service
    github_webhook_secret: Optional[str] = None

    # -------------------------------------------------------------------------
    # Run-execution service
    # -------------------------------------------------------------------------
    run_service_url: str
    run_service_api_key: Optional[str] = None
    planner_graph_id: str = "planner"
    recursion_limit: int = 400
    stream_mode: List[str] = list(DEFAULT_STREAM_MODE)

    # -------------------------------------------------------------------------
    # Classification model
    # -------------------------------------------------------------------------
    llm_url: str
    llm_api_key: str = "not-needed"
    router_model: str

    # Defaults to router_model
    issue_fields_model: Optional[str] = None
    llm_timeout_seconds: float = 60.0

    # Model for planner and programmer when a max label triggers a run
    max_tier_model: str = "anthropic:claude-opus-4-1"

    # -------------------------------------------------------------------------
    # Ingress
    # -------------------------------------------------------------------------
    # Comma-separated logins allowed to trigger sessions by label
    allowed_users: str = ""
    label_standard: str = "open-swe"
    label_auto_accept: str = "open-swe-auto"
    label_max: str = "open-swe-max"
    label_max_auto_accept: str = "open-swe-max-auto"
    app_url: Optional[str] = None
    branch_prefix: str = "open-swe"

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; in-memory storage when unset
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Server
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    @property
    def allowed_user_list(self) -> List[str]:
        return [user.strip() for user in self.allowed_users.split(",") if user.strip()]

    @property
    def fields_model(self) -> str:
        return self.issue_fields_model or self.router_model

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_app_id", "github_app_private_key", "router_model")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v

    @field_validator("llm_url", "run_service_url", "github_base_url")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        """Validate that the URL is non-empty and uses http(s)."""
        if not v or not v.strip():
            raise ValueError("URL cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("recursion_limit")
    @classmethod
    def validate_recursion_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("recursion_limit must be at least 1")
        return v

    @field_validator("llm_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("llm_timeout_seconds must be positive")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


def get_settings() -> ManagerSettings:
    """Create and return a ManagerSettings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return ManagerSettings()
