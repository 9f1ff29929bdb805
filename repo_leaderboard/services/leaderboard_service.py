import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from repo_leaderboard.core.exceptions import RepositoryNotFoundError
from repo_leaderboard.core.urls import normalize_repo_url
from repo_leaderboard.db.models.commit_record import CommitRecord
from repo_leaderboard.db.models.contributor import Contributor, RepositoryContributor
from repo_leaderboard.db.models.repository import Repository, RepositoryState
from repo_leaderboard.schemas.leaderboard import LeaderboardEntry, LeaderboardResponse

logger = structlog.get_logger()

FINISHED_STATES = {RepositoryState.COMPLETED, RepositoryState.COMPLETED_PARTIAL}


class LeaderboardService:
    """Read-only leaderboard queries."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_leaderboard(self, url: str, limit: int = 100) -> LeaderboardResponse:
        """Ranked contributors for a repository, most commits first.

        Finished repositories read the materialized rows; anything earlier
        falls back to raw per-email counts.
        """
        repository = self.db.execute(
            select(Repository).where(Repository.url == normalize_repo_url(url))
        ).scalar_one_or_none()
        if repository is None:
            raise RepositoryNotFoundError(url)

        state = RepositoryState(repository.state)
        partial = state not in FINISHED_STATES
        rows = self._partial_rows(repository.id, limit) if partial else self._final_rows(repository.id, limit)

        entries = [
            LeaderboardEntry(
                rank=rank,
                username=username,
                email=email,
                profile_url=profile_url,
                commit_count=commit_count,
            )
            for rank, (username, email, profile_url, commit_count) in enumerate(rows, start=1)
        ]
        return LeaderboardResponse(
            repository_url=repository.url,
            state=state.value,
            partial=partial,
            total_commits=repository.total_commits,
            unique_contributors=repository.unique_contributors,
            last_processed_at=repository.last_processed_at,
            entries=entries,
        )

    def _final_rows(self, repository_id: int, limit: int) -> list[tuple]:
        display_name = func.coalesce(Contributor.username, Contributor.email)
        result = self.db.execute(
            select(
                Contributor.username,
                Contributor.email,
                Contributor.profile_url,
                RepositoryContributor.commit_count,
            )
            .join(Contributor, Contributor.id == RepositoryContributor.contributor_id)
            .where(RepositoryContributor.repository_id == repository_id)
            .order_by(RepositoryContributor.commit_count.desc(), display_name.asc())
            .limit(limit)
        )
        return [tuple(row) for row in result.all()]

    def _partial_rows(self, repository_id: int, limit: int) -> list[tuple]:
        display_name = func.coalesce(Contributor.username, CommitRecord.author_email)
        result = self.db.execute(
            select(
                Contributor.username,
                CommitRecord.author_email,
                Contributor.profile_url,
                CommitRecord.commit_count,
            )
            .outerjoin(Contributor, Contributor.id == CommitRecord.contributor_id)
            .where(CommitRecord.repository_id == repository_id)
            .order_by(CommitRecord.commit_count.desc(), display_name.asc())
            .limit(limit)
        )
        return [tuple(row) for row in result.all()]
