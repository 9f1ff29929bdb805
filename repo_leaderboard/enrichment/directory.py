"""Shared contributor directory and leaderboard row maintenance."""

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from repo_leaderboard.db.models.base import utcnow
from repo_leaderboard.db.models.commit_record import CommitRecord
from repo_leaderboard.db.models.contributor import Contributor, RepositoryContributor
from repo_leaderboard.db.upsert import insert_for

logger = structlog.get_logger()


class ContributorDirectory:
    """Lookups and upserts for Contributor rows shared by all repositories."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def find_by_email(self, email: str) -> Contributor | None:
        """Best match for an email, preferring rows that carry a username."""
        return self.db.execute(
            select(Contributor)
            .where(Contributor.email == email)
            .order_by(Contributor.username.is_(None), Contributor.id)
            .limit(1)
        ).scalar_one_or_none()

    def find_by_username(self, username: str) -> Contributor | None:
        return self.db.execute(
            select(Contributor)
            .where(Contributor.username == username)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def upsert_by_username(
        self,
        username: str,
        profile_url: str | None,
        email: str | None = None,
    ) -> Contributor:
        """Create or refresh the contributor for a platform handle.

        An existing email is kept; ``email`` only fills an empty one.
        """
        now = utcnow()
        stmt = insert_for(self.db, Contributor).values(
            username=username,
            email=email,
            profile_url=profile_url,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["username"],
            set_={
                "profile_url": func.coalesce(stmt.excluded.profile_url, Contributor.profile_url),
                "email": func.coalesce(Contributor.email, stmt.excluded.email),
                "updated_at": now,
            },
        )
        self.db.execute(stmt)
        return self.db.execute(
            select(Contributor)
            .where(Contributor.username == username)
            .execution_options(populate_existing=True)
        ).scalar_one()

    def create_email_only(self, email: str) -> Contributor:
        contributor = Contributor(email=email)
        self.db.add(contributor)
        self.db.flush()
        logger.info("Email-only contributor created", contributor_id=contributor.id)
        return contributor

    def touch(self, contributor: Contributor) -> None:
        contributor.updated_at = utcnow()
        self.db.flush()

    # -------------------------------------------------------------------------
    # Leaderboard rows
    # -------------------------------------------------------------------------
    def link_commit_record(self, record: CommitRecord, contributor: Contributor) -> None:
        """Attribute a commit record to ``contributor`` and refresh affected rows."""
        previous = record.contributor_id
        record.contributor_id = contributor.id
        self.db.flush()
        self.recompute_repository_contributor(record.repository_id, contributor.id)
        if previous is not None and previous != contributor.id:
            self.recompute_repository_contributor(record.repository_id, previous)

    def recompute_repository_contributor(self, repository_id: int, contributor_id: int) -> int:
        """Set the row's count to the sum of the contributor's linked records.

        Recomputing from commit records (instead of adding to the row) keeps
        the result identical however many times a batch is replayed.
        """
        total = self.db.execute(
            select(func.coalesce(func.sum(CommitRecord.commit_count), 0)).where(
                CommitRecord.repository_id == repository_id,
                CommitRecord.contributor_id == contributor_id,
            )
        ).scalar_one()

        if total == 0:
            self.db.execute(
                delete(RepositoryContributor)
                .where(
                    RepositoryContributor.repository_id == repository_id,
                    RepositoryContributor.contributor_id == contributor_id,
                )
                .execution_options(synchronize_session=False)
            )
            return 0

        now = utcnow()
        stmt = insert_for(self.db, RepositoryContributor).values(
            repository_id=repository_id,
            contributor_id=contributor_id,
            commit_count=total,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["repository_id", "contributor_id"],
            set_={"commit_count": stmt.excluded.commit_count, "updated_at": now},
        )
        self.db.execute(stmt)
        return total

    def merge(self, duplicate: Contributor, into: Contributor) -> None:
        """Fold ``duplicate`` into ``into`` and delete it.

        Commit records are re-pointed first, then every affected leaderboard
        row is recomputed, so per-repository totals are unchanged.
        """
        if duplicate.id == into.id:
            return
        repository_ids = list(
            self.db.execute(
                select(CommitRecord.repository_id)
                .where(CommitRecord.contributor_id == duplicate.id)
                .distinct()
            ).scalars()
        )
        self.db.execute(
            update(CommitRecord)
            .where(CommitRecord.contributor_id == duplicate.id)
            .values(contributor_id=into.id)
            .execution_options(synchronize_session="fetch")
        )
        for repository_id in repository_ids:
            self.recompute_repository_contributor(repository_id, into.id)
            self.recompute_repository_contributor(repository_id, duplicate.id)
        if into.email is None and duplicate.email is not None:
            into.email = duplicate.email
        self.db.delete(duplicate)
        self.db.flush()
        logger.info(
            "Contributors merged",
            kept_id=into.id,
            removed_id=duplicate.id,
            repositories=len(repository_ids),
        )
