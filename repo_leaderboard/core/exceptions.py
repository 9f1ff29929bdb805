"""Error taxonomy for the processing pipeline.

Size-limit and git transport errors are terminal for the current attempt and
leave the repository ``failed``. Rate-limit errors are expected and only delay
identity resolution. Storage errors are retryable up to the configured cap.
"""

from datetime import datetime
from typing import Literal


class LeaderboardError(Exception):
    """Base class for all pipeline errors."""


class InvalidRepositoryUrlError(LeaderboardError, ValueError):
    """The supplied URL is not a supported git remote."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Invalid GitHub repository URL: {url}")
        self.url = url


class RepositoryNotFoundError(LeaderboardError, LookupError):
    """No repository row matches the requested URL."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Repository not tracked: {url}")
        self.url = url


class RepositoryTooLargeError(LeaderboardError):
    """Repository exceeds the configured byte or commit-count ceiling."""

    def __init__(self, key: str, measure: Literal["bytes", "commits"], value: int, limit: int) -> None:
        super().__init__(f"Repository {key} is too large: {value} {measure} exceeds limit of {limit}")
        self.key = key
        self.measure = measure
        self.value = value
        self.limit = limit


GitErrorCategory = Literal["network", "not_found", "permission_denied", "unknown"]


class GitSyncError(LeaderboardError):
    """Clone or fetch failed; ``category`` is stable across git versions."""

    def __init__(self, category: GitErrorCategory, message: str, detail: str | None = None) -> None:
        super().__init__(message)
        self.category = category
        self.detail = detail


class RateLimitExceededError(LeaderboardError):
    """The identity API refused a request because the quota is exhausted."""

    def __init__(self, reset_at: datetime | None, message: str = "GitHub API rate limit exceeded") -> None:
        super().__init__(message)
        self.reset_at = reset_at


class StorageError(LeaderboardError):
    """Moving a working copy to or from the object store failed. Retryable."""


class MalformedJobPayloadError(LeaderboardError):
    """A dequeued job carries a payload that does not match its job type."""

    def __init__(self, job_id: int | None, reason: str) -> None:
        super().__init__(f"Malformed payload for job {job_id}: {reason}")
        self.job_id = job_id
        self.reason = reason


class InvalidStateTransitionError(LeaderboardError):
    """A repository was asked to move to a state its current state cannot reach."""

    def __init__(self, repository_id: int, current: str | None, target: str) -> None:
        super().__init__(f"Repository {repository_id} cannot transition from {current} to {target}")
        self.repository_id = repository_id
        self.current = current
        self.target = target


class WorkerShutdownError(LeaderboardError):
    """Raised out of a back-off wait when the process is shutting down."""


class JobLeaseLostError(LeaderboardError):
    """The worker no longer owns its job: recovery removed or reassigned it."""

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Job {job_id} is no longer running under this worker")
        self.job_id = job_id
