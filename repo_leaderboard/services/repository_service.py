import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from repo_leaderboard.core.exceptions import InvalidRepositoryUrlError, RepositoryNotFoundError
from repo_leaderboard.core.urls import is_valid_github_url, normalize_repo_url, repository_key
from repo_leaderboard.db.models.base import utcnow
from repo_leaderboard.db.models.repository import Repository, RepositoryState
from repo_leaderboard.db.upsert import insert_for
from repo_leaderboard.services.job_queue import JobQueue
from repo_leaderboard.services.state_machine import RepositoryStateMachine
from repo_leaderboard.storage.base import RepositoryStorage

logger = structlog.get_logger()


class RepositoryService:
    """Service for processing requests and repository administration."""

    def __init__(self, db: Session, queue: JobQueue | None = None) -> None:
        self.db = db
        self.queue = queue or JobQueue(db)
        self.state_machine = RepositoryStateMachine(db)

    def get_by_url(self, url: str) -> Repository | None:
        """Look up a repository by any spelling of its URL."""
        return self.db.execute(
            select(Repository).where(Repository.url == normalize_repo_url(url))
        ).scalar_one_or_none()

    def require_by_url(self, url: str) -> Repository:
        repository = self.get_by_url(url)
        if repository is None:
            raise RepositoryNotFoundError(url)
        return repository

    def request_processing(self, url: str) -> Repository:
        """Track a repository and queue its commit extraction.

        A repository that is already tracked is returned unchanged; use
        ``retry`` to reprocess a failed one.
        """
        if not is_valid_github_url(url):
            raise InvalidRepositoryUrlError(url)
        normalized = normalize_repo_url(url)

        existing = self.get_by_url(normalized)
        if existing is not None:
            logger.info("Repository already tracked", url=normalized, state=existing.state)
            return existing

        now = utcnow()
        stmt = (
            insert_for(self.db, Repository)
            .values(
                url=normalized,
                path_name=repository_key(normalized),
                state=RepositoryState.PENDING.value,
                total_commits=0,
                unique_contributors=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["url"])
        )
        created = self.db.execute(stmt).rowcount == 1
        repository = self.require_by_url(normalized)
        if created:
            self.queue.enqueue_commit_job(repository.id)
            logger.info("Repository added", url=normalized, repo_id=repository.id)
        return repository

    def retry(self, url: str) -> Repository:
        """Move a failed repository back to pending and queue a fresh commit job."""
        repository = self.require_by_url(url)
        self.state_machine.transition(
            repository.id,
            RepositoryState.PENDING,
            from_states={RepositoryState.FAILED},
            failure_reason=None,
        )
        self.queue.enqueue_commit_job(repository.id)
        self.db.refresh(repository)
        logger.info("Repository retry queued", url=repository.url, repo_id=repository.id)
        return repository

    def delete_repository(self, url: str, storage: RepositoryStorage) -> bool:
        """Administrative cleanup: drop the working copy and every row for the repository."""
        repository = self.get_by_url(url)
        if repository is None:
            return False
        storage.delete(repository.path_name)
        self.db.delete(repository)
        self.db.flush()
        logger.info("Repository deleted", url=repository.url, repo_id=repository.id)
        return True
