"""GitHub code-host adapter (gh CLI)."""

from .service import GitHubError, GitHubService

__all__ = ["GitHubError", "GitHubService"]
