"""Periodic refresh of partially resolved contributors."""

from dataclasses import dataclass
from datetime import timedelta

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from repo_leaderboard.core.config import Settings, settings as default_settings
from repo_leaderboard.core.exceptions import RateLimitExceededError
from repo_leaderboard.db.database import get_sync_db
from repo_leaderboard.db.models.base import utcnow
from repo_leaderboard.db.models.contributor import Contributor
from repo_leaderboard.db.models.repository import Repository, RepositoryState
from repo_leaderboard.enrichment.directory import ContributorDirectory
from repo_leaderboard.enrichment.identity_resolver import is_noreply_email
from repo_leaderboard.services.github_service import GitHubService
from repo_leaderboard.services.state_machine import RepositoryStateMachine

logger = structlog.get_logger()


@dataclass
class RefreshResult:
    checked: int = 0
    updated: int = 0
    rate_limit_hit: bool = False
    promoted_repositories: int = 0


class ContributorRefresher:
    """Retries the user search for email-only contributors."""

    def __init__(
        self,
        github: GitHubService,
        session_maker: sessionmaker[Session] | None = None,
        limit: int = 500,
        settings: Settings | None = None,
    ) -> None:
        self.github = github
        self.session_maker = session_maker
        self.limit = limit
        self.settings = settings or default_settings

    def refresh_contributors(self) -> RefreshResult:
        """Look up contributors that have an email but no username or profile.

        Only rows untouched for ``contributor_refresh_hours`` are searched again.

        Stops at the first rate-limit error; the rest are picked up next run.
        """
        result = RefreshResult()
        if not self.github.has_token:
            logger.info("No GitHub token configured, skipping contributor refresh")
            return result

        stale_before = utcnow() - timedelta(hours=self.settings.contributor_refresh_hours)
        with get_sync_db(self.session_maker) as db:
            candidate_ids = list(
                db.execute(
                    select(Contributor.id)
                    .where(
                        Contributor.email.is_not(None),
                        Contributor.username.is_(None) | Contributor.profile_url.is_(None),
                        Contributor.updated_at < stale_before,
                    )
                    .order_by(Contributor.updated_at, Contributor.id)
                    .limit(self.limit)
                ).scalars()
            )

        for contributor_id in candidate_ids:
            try:
                with get_sync_db(self.session_maker) as db:
                    contributor = db.get(Contributor, contributor_id)
                    if contributor is None or is_noreply_email(contributor.email or ""):
                        continue
                    result.checked += 1
                    if self._refresh_one(db, contributor):
                        result.updated += 1
            except RateLimitExceededError:
                result.rate_limit_hit = True
                logger.warning("Rate limit hit during contributor refresh", checked=result.checked)
                break

        logger.info(
            "Contributor refresh finished",
            checked=result.checked,
            updated=result.updated,
            rate_limit_hit=result.rate_limit_hit,
        )
        return result

    def _refresh_one(self, db: Session, contributor: Contributor) -> bool:
        directory = ContributorDirectory(db)
        try:
            match = self.github.search_user_by_email(contributor.email)
        except httpx.HTTPError as exc:
            logger.warning("Contributor refresh lookup failed", contributor_id=contributor.id, error=str(exc))
            return False
        if match is None:
            directory.touch(contributor)
            return False

        owner = directory.find_by_username(match.username)
        if owner is not None and owner.id != contributor.id:
            owner.profile_url = match.profile_url
            owner.updated_at = utcnow()
            directory.merge(contributor, into=owner)
        else:
            contributor.username = match.username
            contributor.profile_url = match.profile_url
            contributor.updated_at = utcnow()
            db.flush()
        return True

    def refresh_partial_repositories(self) -> RefreshResult:
        """Refresh contributors, then promote ``completed_partial`` repositories.

        Promotion only happens when the refresh pass ran without hitting the
        rate limit.
        """
        result = self.refresh_contributors()
        if result.rate_limit_hit:
            return result

        with get_sync_db(self.session_maker) as db:
            state_machine = RepositoryStateMachine(db)
            partial_ids = list(
                db.execute(
                    select(Repository.id).where(
                        Repository.state == RepositoryState.COMPLETED_PARTIAL.value
                    )
                ).scalars()
            )
            now = utcnow()
            for repository_id in partial_ids:
                if state_machine.try_transition(
                    repository_id,
                    RepositoryState.COMPLETED,
                    rate_limited_at=None,
                    last_processed_at=now,
                ):
                    result.promoted_repositories += 1

        logger.info("Partial repositories promoted", count=result.promoted_repositories)
        return result
