"""Commit-processing stage.

Claims move the repository to ``commits_processing``; the clone or fetch and
the history walk happen outside any transaction; the results, the state
change to ``users_processing``, the queued batches and the job ack are then
committed together.
"""

import structlog
from sqlalchemy.orm import Session, sessionmaker

from repo_leaderboard.core.config import Settings, settings as default_settings
from repo_leaderboard.core.exceptions import GitSyncError, RepositoryTooLargeError, StorageError
from repo_leaderboard.db.database import get_sync_db
from repo_leaderboard.db.models.base import utcnow
from repo_leaderboard.db.models.repository import Repository, RepositoryState
from repo_leaderboard.services.commit_extractor import CommitExtractor, extract_author_counts
from repo_leaderboard.services.job_queue import ClaimedJob, JobQueue
from repo_leaderboard.services.repository_sync import RepositorySyncService
from repo_leaderboard.services.state_machine import RepositoryStateMachine
from repo_leaderboard.workers.heartbeat import JobHeartbeat

logger = structlog.get_logger()


class CommitWorker:
    def __init__(
        self,
        sync_service: RepositorySyncService,
        session_maker: sessionmaker[Session] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.sync_service = sync_service
        self.session_maker = session_maker
        self.settings = settings or default_settings

    def process(self, job: ClaimedJob) -> dict:
        """Run one commit-processing job to a settled state."""
        repository_id = job.repository_id
        logger.info("Processing commits", job_id=job.id, repository_id=repository_id)

        with get_sync_db(self.session_maker) as db:
            queue = JobQueue(db, self.settings)
            queue.heartbeat(job)
            repository = db.get(Repository, repository_id)
            if repository is None:
                queue.fail(job, "Repository no longer exists")
                return {"status": "skipped", "job_id": job.id, "reason": "missing repository"}
            started = RepositoryStateMachine(db).try_transition(
                repository_id,
                RepositoryState.COMMITS_PROCESSING,
                last_attempt=utcnow(),
            )
            if not started:
                logger.warning(
                    "Repository not pending, dropping commit job",
                    job_id=job.id,
                    repository_id=repository_id,
                    state=repository.state,
                )
                queue.ack(job)
                return {
                    "status": "skipped",
                    "job_id": job.id,
                    "state": RepositoryState(repository.state).value,
                }
            url = repository.url
            key = repository.path_name

        try:
            with JobHeartbeat(job, self.session_maker, self.settings.job_heartbeat_seconds):
                path = self.sync_service.sync(url, key)
                counts = extract_author_counts(path)
        except (RepositoryTooLargeError, GitSyncError) as exc:
            self._fail_repository(job, str(exc))
            return {"status": "failed", "job_id": job.id, "repository_id": repository_id, "error": str(exc)}
        except StorageError as exc:
            return self._retry_or_fail(job, exc)
        except Exception as exc:
            logger.error("Commit processing crashed", job_id=job.id, repository_id=repository_id, error=str(exc))
            self._fail_repository(job, "Failed to process repository")
            raise

        with get_sync_db(self.session_maker) as db:
            repository = db.get(Repository, repository_id)
            state_machine = RepositoryStateMachine(db)
            queue = JobQueue(db, self.settings)
            # Raises if recovery took the job away; nothing below is committed then
            queue.ack(job)
            CommitExtractor(db, self.settings).persist(repository, counts)
            now = utcnow()
            if counts:
                state_machine.transition(repository_id, RepositoryState.USERS_PROCESSING, rate_limited_at=None)
            else:
                state_machine.transition(
                    repository_id,
                    RepositoryState.COMPLETED,
                    users_processed_at=now,
                    last_processed_at=now,
                )

        logger.info(
            "Commit processing completed",
            job_id=job.id,
            repository_id=repository_id,
            contributors=len(counts),
            total_commits=sum(c.count for c in counts),
        )
        return {
            "status": "completed",
            "job_id": job.id,
            "repository_id": repository_id,
            "contributors": len(counts),
            "total_commits": sum(c.count for c in counts),
        }

    def _fail_repository(self, job: ClaimedJob, reason: str) -> None:
        with get_sync_db(self.session_maker) as db:
            RepositoryStateMachine(db).try_transition(
                job.repository_id,
                RepositoryState.FAILED,
                last_attempt=utcnow(),
                failure_reason=reason,
            )
            JobQueue(db, self.settings).fail(job, reason)
        logger.error("Repository processing failed", repository_id=job.repository_id, reason=reason)

    def _retry_or_fail(self, job: ClaimedJob, exc: StorageError) -> dict:
        reason = str(exc)
        with get_sync_db(self.session_maker) as db:
            queue = JobQueue(db, self.settings)
            state_machine = RepositoryStateMachine(db)
            if queue.release(job, reason):
                state_machine.try_transition(
                    job.repository_id,
                    RepositoryState.PENDING,
                    from_states={RepositoryState.COMMITS_PROCESSING},
                )
                logger.warning("Storage error, commit job requeued", job_id=job.id, error=reason)
                return {"status": "retrying", "job_id": job.id, "repository_id": job.repository_id, "error": reason}
            state_machine.try_transition(
                job.repository_id,
                RepositoryState.FAILED,
                last_attempt=utcnow(),
                failure_reason=reason,
            )
        logger.error("Storage error, retries exhausted", job_id=job.id, error=reason)
        return {"status": "failed", "job_id": job.id, "repository_id": job.repository_id, "error": reason}
