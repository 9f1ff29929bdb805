from datetime import datetime

from pydantic import BaseModel, ConfigDict


class LeaderboardEntry(BaseModel):
    """A single ranked contributor."""

    model_config = ConfigDict(from_attributes=True)

    rank: int
    username: str | None = None
    email: str | None = None
    profile_url: str | None = None
    commit_count: int


class LeaderboardResponse(BaseModel):
    """Leaderboard for one repository.

    ``partial`` is true while identity resolution is still running; entries
    then come straight from per-email commit counts.
    """

    repository_url: str
    state: str
    partial: bool
    total_commits: int
    unique_contributors: int
    last_processed_at: datetime | None = None
    entries: list[LeaderboardEntry]


class RepositoryStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    url: str
    state: str
    total_commits: int
    unique_contributors: int
    last_attempt: datetime | None = None
    last_processed_at: datetime | None = None
    failure_reason: str | None = None
