"""GitHub integration: issues client and App authentication."""

from src.manager.github.app import GitHubApp, GitHubAppAuthError
from src.manager.github.client import GitHubAPIError, GitHubClient, RateLimitError

__all__ = [
    "GitHubAPIError",
    "GitHubApp",
    "GitHubAppAuthError",
    "GitHubClient",
    "RateLimitError",
]
