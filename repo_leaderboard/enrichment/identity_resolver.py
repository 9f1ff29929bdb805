"""Resolves commit author emails to contributors.

Resolution order for each email:

1. GitHub no-reply addresses carry the handle, so they resolve locally.
2. A fresh directory entry (updated within the refresh window) is reused.
3. Otherwise the GitHub user search runs, paced by the rate limit governor.
   No match, a failed call or disabled external lookups all end in an
   email-only contributor.

Each email is resolved and marked processed in its own transaction, so a
batch interrupted at any point leaves exactly the unresolved emails behind.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from repo_leaderboard.core.config import Settings, settings as default_settings
from repo_leaderboard.core.exceptions import RateLimitExceededError
from repo_leaderboard.db.database import get_sync_db
from repo_leaderboard.db.models.base import as_utc, utcnow
from repo_leaderboard.db.models.commit_record import CommitRecord
from repo_leaderboard.db.models.contributor import Contributor
from repo_leaderboard.enrichment.directory import ContributorDirectory
from repo_leaderboard.services.github_service import GitHubService

logger = structlog.get_logger()

NOREPLY_DOMAIN = "users.noreply.github.com"
_NOREPLY_EMAIL = re.compile(r"^(?:[^@+]+\+)?([^@+]+)@users\.noreply\.github\.com$", re.IGNORECASE)


@dataclass(frozen=True)
class NoReplyIdentity:
    username: str
    profile_url: str


def parse_noreply_email(email: str) -> NoReplyIdentity | None:
    """Derive the handle from ``[prefix+]handle@users.noreply.github.com``."""
    match = _NOREPLY_EMAIL.match(email.strip())
    if not match:
        return None
    username = match.group(1)
    return NoReplyIdentity(username=username, profile_url=f"https://github.com/{username}")


def is_noreply_email(email: str) -> bool:
    return email.strip().lower().endswith("@" + NOREPLY_DOMAIN)


@dataclass
class BatchResult:
    processed: int = 0
    rate_limit_hit: bool = False
    reset_at: datetime | None = None


class IdentityResolver:
    """Resolves one repository's author emails in batches."""

    def __init__(
        self,
        session_maker: sessionmaker[Session] | None = None,
        github: GitHubService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.session_maker = session_maker
        self.github = github
        self.settings = settings or default_settings

    @property
    def refresh_window(self) -> timedelta:
        return timedelta(hours=self.settings.contributor_refresh_hours)

    def is_fresh(self, contributor: Contributor) -> bool:
        updated_at = as_utc(contributor.updated_at)
        return updated_at is not None and utcnow() - updated_at < self.refresh_window

    def resolve_batch(
        self,
        repository_id: int,
        emails: list[str],
        allow_external: bool = True,
    ) -> BatchResult:
        """Resolve every still-unprocessed email in ``emails``.

        Stops at the first rate-limit error without marking the remaining
        emails, and reports it through ``rate_limit_hit``.
        """
        result = BatchResult()
        for email in emails:
            try:
                with get_sync_db(self.session_maker) as db:
                    record = db.execute(
                        select(CommitRecord).where(
                            CommitRecord.repository_id == repository_id,
                            CommitRecord.author_email == email,
                        )
                    ).scalar_one_or_none()
                    if record is None or record.processed:
                        continue

                    contributor = self.resolve_email(db, email, allow_external)
                    ContributorDirectory(db).link_commit_record(record, contributor)
                    record.processed = True
            except RateLimitExceededError as exc:
                result.rate_limit_hit = True
                result.reset_at = exc.reset_at
                logger.warning(
                    "Rate limit hit, stopping batch",
                    repository_id=repository_id,
                    processed=result.processed,
                    remaining=len(emails) - result.processed,
                    reset_at=exc.reset_at.isoformat() if exc.reset_at else None,
                )
                break
            result.processed += 1

        logger.info(
            "User batch resolved",
            repository_id=repository_id,
            processed=result.processed,
            rate_limit_hit=result.rate_limit_hit,
        )
        return result

    def resolve_email(self, db: Session, email: str, allow_external: bool = True) -> Contributor:
        """Find or create the contributor for one email."""
        directory = ContributorDirectory(db)

        noreply = parse_noreply_email(email)
        if noreply is not None:
            return directory.upsert_by_username(noreply.username, noreply.profile_url, email=email)

        existing = directory.find_by_email(email)
        if existing is not None and self.is_fresh(existing):
            return existing

        if not allow_external or self.github is None or not self.github.has_token:
            return existing or directory.create_email_only(email)

        try:
            match = self.github.search_user_by_email(email)
        except httpx.HTTPError as exc:
            logger.warning("User search failed, keeping email-only contributor", error=str(exc))
            return existing or directory.create_email_only(email)

        if match is None:
            if existing is not None:
                directory.touch(existing)
                return existing
            return directory.create_email_only(email)

        contributor = directory.upsert_by_username(match.username, match.profile_url, email=email)
        if existing is not None and existing.id != contributor.id and existing.username is None:
            directory.merge(existing, into=contributor)
        return contributor
