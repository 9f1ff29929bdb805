"""Per-author commit counting from a local bare repository.

Extraction reads the default branch history once and never touches the
network, which keeps it cheap to retry. Persisting the counts is an upsert
keyed on (repository, email): running it twice yields the same rows.
"""

from collections import Counter
from dataclasses import dataclass
from pathlib import Path

import structlog
from git import Repo
from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from repo_leaderboard.core.config import Settings, settings as default_settings
from repo_leaderboard.db.models.base import utcnow
from repo_leaderboard.db.models.commit_record import CommitRecord
from repo_leaderboard.db.models.contributor import RepositoryContributor
from repo_leaderboard.db.models.job import PipelineJob
from repo_leaderboard.db.models.repository import Repository
from repo_leaderboard.db.upsert import insert_for
from repo_leaderboard.services.job_queue import JobQueue

logger = structlog.get_logger()

UPSERT_CHUNK_SIZE = 500


@dataclass(frozen=True)
class AuthorCount:
    email: str
    count: int


def extract_author_counts(path: Path) -> list[AuthorCount]:
    """Count commits per author email on the default branch.

    Emails are trimmed and lowercased; commits without an email are skipped.
    Results are ordered by count descending, then email.
    """
    repo = Repo(str(path))
    if not repo.head.is_valid():
        return []
    counter: Counter[str] = Counter()
    for line in repo.git.log("--format=%ae").splitlines():
        email = line.strip().lower()
        if email:
            counter[email] += 1
    return [
        AuthorCount(email=email, count=count)
        for email, count in sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    ]


class CommitExtractor:
    """Writes extraction results and queues identity resolution."""

    def __init__(self, db: Session, settings: Settings | None = None) -> None:
        self.db = db
        self.settings = settings or default_settings
        self.queue = JobQueue(db, self.settings)

    def persist(self, repository: Repository, counts: list[AuthorCount]) -> list[PipelineJob]:
        """Replace the repository's commit records with ``counts``.

        Every written row starts unprocessed, emails no longer in history are
        removed, and the leaderboard rows are cleared so resolution rebuilds
        them. Returns the queued user-processing jobs.
        """
        now = utcnow()
        emails = [c.email for c in counts]

        for start in range(0, len(counts), UPSERT_CHUNK_SIZE):
            chunk = counts[start : start + UPSERT_CHUNK_SIZE]
            stmt = insert_for(self.db, CommitRecord).values(
                [
                    {
                        "repository_id": repository.id,
                        "author_email": c.email,
                        "commit_count": c.count,
                        "processed": False,
                        "created_at": now,
                        "updated_at": now,
                    }
                    for c in chunk
                ]
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["repository_id", "author_email"],
                set_={
                    "commit_count": stmt.excluded.commit_count,
                    "processed": False,
                    "contributor_id": None,
                    "updated_at": now,
                },
            )
            self.db.execute(stmt)

        stale = delete(CommitRecord).where(CommitRecord.repository_id == repository.id)
        if emails:
            stale = stale.where(CommitRecord.author_email.not_in(emails))
        removed = self.db.execute(stale.execution_options(synchronize_session=False)).rowcount

        self.db.execute(
            delete(RepositoryContributor)
            .where(RepositoryContributor.repository_id == repository.id)
            .execution_options(synchronize_session=False)
        )

        self.db.execute(
            update(Repository)
            .where(Repository.id == repository.id)
            .values(
                total_commits=sum(c.count for c in counts),
                unique_contributors=len(counts),
                commits_processed_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )

        jobs = self.queue.enqueue_user_batches(repository.id, emails)
        logger.info(
            "Commit records persisted",
            repository_id=repository.id,
            contributors=len(counts),
            total_commits=sum(c.count for c in counts),
            stale_removed=removed,
            batches=len(jobs),
        )
        return jobs
