"""Identity-resolution stage."""

from datetime import timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from repo_leaderboard.core.config import Settings, settings as default_settings
from repo_leaderboard.core.exceptions import MalformedJobPayloadError, WorkerShutdownError
from repo_leaderboard.db.database import get_sync_db
from repo_leaderboard.db.models.base import utcnow
from repo_leaderboard.db.models.commit_record import CommitRecord
from repo_leaderboard.db.models.repository import Repository, RepositoryState
from repo_leaderboard.enrichment.identity_resolver import IdentityResolver
from repo_leaderboard.schemas.jobs import UserProcessingPayload
from repo_leaderboard.services.job_queue import ClaimedJob, JobQueue
from repo_leaderboard.services.pipeline_coordinator import PipelineCoordinator
from repo_leaderboard.services.state_machine import RepositoryStateMachine
from repo_leaderboard.workers.heartbeat import JobHeartbeat

logger = structlog.get_logger()


class UserWorker:
    def __init__(
        self,
        resolver: IdentityResolver,
        session_maker: sessionmaker[Session] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.resolver = resolver
        self.session_maker = session_maker
        self.settings = settings or default_settings

    def process(self, job: ClaimedJob) -> dict:
        """Resolve one batch of emails and settle the job.

        A rate-limit stop re-queues the unresolved emails for after the reset.
        After ``max_rate_limit_retries`` such stops the batch runs without the
        external API and the repository ends ``completed_partial``.
        """
        payload = job.payload
        if not isinstance(payload, UserProcessingPayload):
            raise MalformedJobPayloadError(job.id, "expected a user-processing payload")
        repository_id = job.repository_id
        allow_external = payload.attempt < self.settings.max_rate_limit_retries

        with get_sync_db(self.session_maker) as db:
            queue = JobQueue(db, self.settings)
            queue.heartbeat(job)
            repository = db.get(Repository, repository_id)
            if repository is None or repository.state != RepositoryState.USERS_PROCESSING:
                queue.ack(job)
                logger.warning(
                    "Repository not resolving users, dropping batch",
                    job_id=job.id,
                    repository_id=repository_id,
                    state=repository.state if repository else None,
                )
                return {"status": "skipped", "job_id": job.id, "repository_id": repository_id}
            if not allow_external and repository.rate_limited_at is None:
                repository.rate_limited_at = utcnow()
                logger.warning(
                    "Rate limit retries exhausted, resolving without GitHub API",
                    repository_id=repository_id,
                    attempt=payload.attempt,
                )

        try:
            with JobHeartbeat(job, self.session_maker, self.settings.job_heartbeat_seconds):
                result = self.resolver.resolve_batch(repository_id, payload.emails, allow_external=allow_external)
        except WorkerShutdownError:
            with get_sync_db(self.session_maker) as db:
                JobQueue(db, self.settings).release(job, "Worker shut down", delay_seconds=0)
            raise
        except Exception as exc:
            return self._retry_or_fail(job, exc)

        with get_sync_db(self.session_maker) as db:
            queue = JobQueue(db, self.settings)
            queue.ack(job)
            remaining = self._unprocessed(db, repository_id, payload.emails) if result.rate_limit_hit else []
            if remaining:
                resume_at = result.reset_at or utcnow() + timedelta(
                    seconds=self.settings.job_retry_delay_seconds
                )
                queue.enqueue_user_batches(
                    repository_id,
                    remaining,
                    attempt=payload.attempt + 1,
                    available_at=resume_at,
                )
                logger.warning(
                    "User batch deferred until rate limit reset",
                    job_id=job.id,
                    repository_id=repository_id,
                    remaining=len(remaining),
                    resume_at=resume_at.isoformat(),
                )
                return {
                    "status": "rate_limited",
                    "job_id": job.id,
                    "repository_id": repository_id,
                    "processed": result.processed,
                    "remaining": len(remaining),
                }

            final_state = PipelineCoordinator(db, self.settings).complete_if_resolved(repository_id)

        return {
            "status": "completed",
            "job_id": job.id,
            "repository_id": repository_id,
            "processed": result.processed,
            "repository_state": final_state.value if final_state else RepositoryState.USERS_PROCESSING.value,
        }

    def _unprocessed(self, db: Session, repository_id: int, emails: list[str]) -> list[str]:
        return list(
            db.execute(
                select(CommitRecord.author_email).where(
                    CommitRecord.repository_id == repository_id,
                    CommitRecord.author_email.in_(emails),
                    CommitRecord.processed.is_(False),
                )
            ).scalars()
        )

    def _retry_or_fail(self, job: ClaimedJob, exc: Exception) -> dict:
        reason = str(exc) or exc.__class__.__name__
        logger.error("User batch failed", job_id=job.id, repository_id=job.repository_id, error=reason)
        with get_sync_db(self.session_maker) as db:
            if JobQueue(db, self.settings).release(job, reason):
                return {"status": "retrying", "job_id": job.id, "repository_id": job.repository_id, "error": reason}
            RepositoryStateMachine(db).try_transition(
                job.repository_id,
                RepositoryState.FAILED,
                last_attempt=utcnow(),
                failure_reason=f"Identity resolution failed: {reason}",
            )
        return {"status": "failed", "job_id": job.id, "repository_id": job.repository_id, "error": reason}
