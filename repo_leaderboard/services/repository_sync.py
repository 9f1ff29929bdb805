"""Materializes a repository's bare copy and enforces size ceilings."""

from pathlib import Path

import httpx
import structlog
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from repo_leaderboard.core.config import Settings, settings as default_settings
from repo_leaderboard.core.exceptions import (
    GitSyncError,
    RateLimitExceededError,
    RepositoryTooLargeError,
)
from repo_leaderboard.core.urls import parse_github_owner_name, redact, with_credentials
from repo_leaderboard.services.github_service import GitHubService
from repo_leaderboard.storage.base import RepositoryStorage
from repo_leaderboard.storage.git_ops import count_commits

logger = structlog.get_logger()


def classify_git_error(exc: GitCommandError, token: str | None = None) -> GitSyncError:
    """Map git's stderr onto a stable error category."""
    detail = redact(str(exc.stderr or exc), token).strip()
    lowered = detail.lower()
    if "could not resolve host" in lowered:
        return GitSyncError("network", "Network error: could not reach the git host", detail)
    if "not found" in lowered:
        return GitSyncError("not_found", "Repository not found", detail)
    if "permission denied" in lowered or "authentication failed" in lowered:
        return GitSyncError("permission_denied", "Permission denied", detail)
    if "unable to access" in lowered or "connection timed out" in lowered:
        return GitSyncError("network", "Network error: could not reach the git host", detail)
    return GitSyncError("unknown", "Failed to process repository", detail)


class RepositorySyncService:
    """Clone or fetch through a storage backend, then check the ceilings."""

    def __init__(
        self,
        storage: RepositoryStorage,
        settings: Settings | None = None,
        github: GitHubService | None = None,
    ) -> None:
        self.storage = storage
        self.settings = settings or default_settings
        self.github = github

    def sync(self, url: str, key: str) -> Path:
        """Bring the copy for ``key`` up to date with ``url`` and return its local path.

        Raises RepositoryTooLargeError (after deleting the copy) or GitSyncError.
        """
        self.check_remote_size(url, key)

        token = self.settings.github_token
        remote = with_credentials(url, token)
        try:
            if self.storage.exists(key):
                try:
                    self.storage.fetch_updates(key, remote_url=remote)
                except (InvalidGitRepositoryError, NoSuchPathError):
                    logger.warning("Stored copy unusable, cloning again", key=key)
                    self.storage.delete(key)
                    self.storage.clone_from_git(remote, key, clean_url=url)
            else:
                self.storage.clone_from_git(remote, key, clean_url=url)
        except GitCommandError as exc:
            error = classify_git_error(exc, token)
            logger.error(
                "Git sync failed",
                key=key,
                category=error.category,
                detail=error.detail,
            )
            raise error from None

        path = self.storage.get_local_path(key)
        self.enforce_limits(key, path)
        return path

    def check_remote_size(self, url: str, key: str) -> None:
        """Reject oversize GitHub repositories before any clone work.

        Skipped when the API is unavailable or would have to wait for quota;
        the on-disk check after cloning still applies.
        """
        owner_name = parse_github_owner_name(url)
        if self.github is None or owner_name is None:
            return
        if self.github.governor.seconds_until_ready() > 0:
            logger.info("Skipping remote size check while rate limited", key=key)
            return
        try:
            info = self.github.get_repository(*owner_name)
        except (RateLimitExceededError, httpx.HTTPError) as exc:
            logger.warning("Remote size check failed", key=key, error=str(exc))
            return
        if not info or info.get("size") is None:
            return
        size_bytes = int(info["size"]) * 1024
        if size_bytes > self.settings.max_repo_size_bytes:
            raise RepositoryTooLargeError(key, "bytes", size_bytes, self.settings.max_repo_size_bytes)

    def enforce_limits(self, key: str, path: Path) -> None:
        size_bytes = self.storage.measure_size(key)
        if size_bytes > self.settings.max_repo_size_bytes:
            self.storage.delete(key)
            logger.warning("Repository exceeds size limit", key=key, size_bytes=size_bytes)
            raise RepositoryTooLargeError(key, "bytes", size_bytes, self.settings.max_repo_size_bytes)

        commits = count_commits(path)
        if commits > self.settings.max_commit_count:
            self.storage.delete(key)
            logger.warning("Repository exceeds commit limit", key=key, commits=commits)
            raise RepositoryTooLargeError(key, "commits", commits, self.settings.max_commit_count)

        logger.info("Repository within limits", key=key, size_bytes=size_bytes, commits=commits)
