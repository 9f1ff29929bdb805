"""Cross-stage bookkeeping: completion, stuck-job recovery and re-enqueue sweeps."""

from dataclasses import dataclass, field
from datetime import timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from repo_leaderboard.core.config import Settings, settings as default_settings
from repo_leaderboard.core.exceptions import MalformedJobPayloadError
from repo_leaderboard.db.models.base import utcnow
from repo_leaderboard.db.models.commit_record import CommitRecord
from repo_leaderboard.db.models.job import JobType
from repo_leaderboard.db.models.repository import Repository, RepositoryState
from repo_leaderboard.schemas.jobs import UserProcessingPayload, parse_job_payload
from repo_leaderboard.services.job_queue import JobQueue
from repo_leaderboard.services.state_machine import RepositoryStateMachine

logger = structlog.get_logger()


@dataclass
class RecoveryReport:
    removed_jobs: int = 0
    reset_repositories: list[int] = field(default_factory=list)
    requeued_batches: int = 0


@dataclass
class SweepReport:
    commit_jobs: int = 0
    user_batches: int = 0
    completed: int = 0
    reset: int = 0


class PipelineCoordinator:
    """Keeps repositories moving when workers crash or jobs go missing."""

    def __init__(self, db: Session, settings: Settings | None = None) -> None:
        self.db = db
        self.settings = settings or default_settings
        self.queue = JobQueue(db, self.settings)
        self.state_machine = RepositoryStateMachine(db)

    def unprocessed_emails(self, repository_id: int) -> list[str]:
        return list(
            self.db.execute(
                select(CommitRecord.author_email)
                .where(
                    CommitRecord.repository_id == repository_id,
                    CommitRecord.processed.is_(False),
                )
                .order_by(CommitRecord.author_email)
            ).scalars()
        )

    def count_unprocessed(self, repository_id: int) -> int:
        return self.db.execute(
            select(func.count(CommitRecord.id)).where(
                CommitRecord.repository_id == repository_id,
                CommitRecord.processed.is_(False),
            )
        ).scalar_one()

    def complete_if_resolved(self, repository_id: int) -> RepositoryState | None:
        """Finish identity resolution once no unprocessed records remain.

        Repositories that had to skip the external API end up
        ``completed_partial`` until a refresh pass promotes them.
        """
        if self.count_unprocessed(repository_id) > 0:
            return None
        rate_limited_at = self.db.execute(
            select(Repository.rate_limited_at).where(Repository.id == repository_id)
        ).scalar_one_or_none()
        target = RepositoryState.COMPLETED_PARTIAL if rate_limited_at else RepositoryState.COMPLETED
        now = utcnow()
        if self.state_machine.try_transition(
            repository_id,
            target,
            from_states={RepositoryState.USERS_PROCESSING},
            users_processed_at=now,
            last_processed_at=now,
        ):
            logger.info("Repository processing finished", repository_id=repository_id, state=target.value)
            return target
        return None

    def recover_stuck_jobs(
        self,
        job_type: JobType | None = None,
        stale_after_seconds: int | None = None,
    ) -> RecoveryReport:
        """Remove running jobs whose claim has expired and reschedule their work.

        A claim not renewed for ``stuck_job_timeout_seconds`` means its worker
        died or hung; live workers renew theirs through JobQueue.heartbeat.
        Commit jobs reset the repository to ``pending`` with a fresh job; user
        jobs re-queue whichever of their emails are still unprocessed.
        """
        timeout = (
            self.settings.stuck_job_timeout_seconds
            if stale_after_seconds is None
            else stale_after_seconds
        )
        cutoff = utcnow() - timedelta(seconds=timeout)
        report = RecoveryReport()

        for job in self.queue.list_active(job_type, claimed_before=cutoff):
            repository_id = job.repository_id
            stuck_type = JobType(job.job_type)
            stored_payload = job.payload
            logger.warning(
                "Removing stuck job",
                job_id=job.id,
                job_type=stuck_type.value,
                repository_id=repository_id,
                claimed_at=job.claimed_at.isoformat() if job.claimed_at else None,
            )
            self.queue.remove(job)
            report.removed_jobs += 1

            if stuck_type == JobType.COMMIT_PROCESSING:
                self.state_machine.try_transition(
                    repository_id,
                    RepositoryState.PENDING,
                    from_states={RepositoryState.COMMITS_PROCESSING},
                )
                state = self.db.execute(
                    select(Repository.state).where(Repository.id == repository_id)
                ).scalar_one_or_none()
                if state == RepositoryState.PENDING:
                    self.queue.enqueue_commit_job(repository_id)
                    report.reset_repositories.append(repository_id)
            else:
                report.requeued_batches += self._requeue_user_job(repository_id, stored_payload)

        if report.removed_jobs:
            logger.info(
                "Stuck job recovery finished",
                removed_jobs=report.removed_jobs,
                reset_repositories=report.reset_repositories,
                requeued_batches=report.requeued_batches,
            )
        return report

    def _requeue_user_job(self, repository_id: int, stored_payload: dict) -> int:
        remaining = set(self.unprocessed_emails(repository_id))
        attempt = 0
        try:
            payload = parse_job_payload(JobType.USER_PROCESSING.value, stored_payload)
        except MalformedJobPayloadError:
            payload = None
        if isinstance(payload, UserProcessingPayload):
            emails = remaining.intersection(payload.emails)
            attempt = payload.attempt
        else:
            emails = remaining
        if not emails:
            return 0
        return len(self.queue.enqueue_user_batches(repository_id, emails, attempt=attempt))

    def reenqueue_stalled_work(self) -> SweepReport:
        """Queue work for repositories that have none but still need some."""
        report = SweepReport()
        cutoff = utcnow() - timedelta(seconds=self.settings.stuck_job_timeout_seconds)

        users_ids = self._repository_ids(RepositoryState.USERS_PROCESSING)
        for repository_id in users_ids:
            if self.queue.has_open_job(repository_id, JobType.USER_PROCESSING):
                continue
            emails = self.unprocessed_emails(repository_id)
            if emails:
                report.user_batches += len(self.queue.enqueue_user_batches(repository_id, emails))
            elif self.complete_if_resolved(repository_id):
                report.completed += 1

        stalled = self.db.execute(
            select(Repository.id).where(
                Repository.state == RepositoryState.COMMITS_PROCESSING.value,
                (Repository.last_attempt.is_(None)) | (Repository.last_attempt < cutoff),
            )
        ).scalars()
        for repository_id in list(stalled):
            if self.queue.has_open_job(repository_id, JobType.COMMIT_PROCESSING):
                continue
            if self.state_machine.try_transition(
                repository_id,
                RepositoryState.PENDING,
                from_states={RepositoryState.COMMITS_PROCESSING},
            ):
                report.reset += 1

        for repository_id in self._repository_ids(RepositoryState.PENDING):
            if not self.queue.has_open_job(repository_id, JobType.COMMIT_PROCESSING):
                self.queue.enqueue_commit_job(repository_id)
                report.commit_jobs += 1

        logger.info(
            "Stalled work sweep finished",
            commit_jobs=report.commit_jobs,
            user_batches=report.user_batches,
            completed=report.completed,
            reset=report.reset,
        )
        return report

    def _repository_ids(self, state: RepositoryState) -> list[int]:
        return list(
            self.db.execute(
                select(Repository.id).where(Repository.state == state.value).order_by(Repository.id)
            ).scalars()
        )
