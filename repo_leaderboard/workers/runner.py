"""Bounded worker invocations.

A run recovers stuck jobs, processes a fixed number of jobs and returns.
Something external (Celery beat, cron, a job scheduler) decides when the
next run happens.
"""

from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

import structlog
from sqlalchemy.orm import Session, sessionmaker

from repo_leaderboard.core.config import Settings, settings as default_settings
from repo_leaderboard.core.exceptions import JobLeaseLostError
from repo_leaderboard.core.shutdown import ShutdownSignal
from repo_leaderboard.db.database import get_sync_db
from repo_leaderboard.db.models.job import JobType
from repo_leaderboard.enrichment.identity_resolver import IdentityResolver
from repo_leaderboard.services.github_service import GitHubService
from repo_leaderboard.services.job_queue import ClaimedJob, JobQueue
from repo_leaderboard.services.pipeline_coordinator import PipelineCoordinator
from repo_leaderboard.services.repository_sync import RepositorySyncService
from repo_leaderboard.storage.base import RepositoryStorage
from repo_leaderboard.storage.factory import get_storage
from repo_leaderboard.workers.commit_worker import CommitWorker
from repo_leaderboard.workers.user_worker import UserWorker

logger = structlog.get_logger()


@dataclass
class RunSummary:
    claimed: int = 0
    failed: int = 0
    recovered: int = 0
    results: list[dict] = field(default_factory=list)

    def record(self, result: dict) -> None:
        self.results.append(result)
        if result.get("status") == "failed":
            self.failed += 1


def _superseded(job: ClaimedJob, exc: JobLeaseLostError) -> dict:
    logger.warning("Job superseded after losing its claim", job_id=job.id, job_type=job.job_type.value)
    return {"status": "superseded", "job_id": job.id, "repository_id": job.repository_id, "error": str(exc)}


class PipelineRunner:
    """Wires storage, the GitHub client and both workers to one database."""

    def __init__(
        self,
        session_maker: sessionmaker[Session] | None = None,
        settings: Settings | None = None,
        storage: RepositoryStorage | None = None,
        github: GitHubService | None = None,
        shutdown: ShutdownSignal | None = None,
    ) -> None:
        self.session_maker = session_maker
        self.settings = settings or default_settings
        self.shutdown = shutdown or ShutdownSignal()
        self._storage = storage
        self.github = github or GitHubService.from_settings(self.settings, shutdown=self.shutdown)

    @property
    def storage(self) -> RepositoryStorage:
        if self._storage is None:
            self._storage = get_storage(self.settings)
        return self._storage

    def commit_worker(self) -> CommitWorker:
        sync_service = RepositorySyncService(self.storage, self.settings, github=self.github)
        return CommitWorker(sync_service, self.session_maker, self.settings)

    def user_worker(self) -> UserWorker:
        resolver = IdentityResolver(self.session_maker, github=self.github, settings=self.settings)
        return UserWorker(resolver, self.session_maker, self.settings)

    def recover(self, job_type: JobType | None = None) -> int:
        with get_sync_db(self.session_maker) as db:
            report = PipelineCoordinator(db, self.settings).recover_stuck_jobs(job_type)
        return report.removed_jobs

    def claim(self, job_type: JobType) -> ClaimedJob | None:
        with get_sync_db(self.session_maker) as db:
            return JobQueue(db, self.settings).dequeue_next(job_type)

    def run_commit_jobs(self, max_jobs: int = 1) -> RunSummary:
        """Simple mode: process commit jobs one after another, ``max_jobs`` at most."""
        summary = RunSummary(recovered=self.recover(JobType.COMMIT_PROCESSING))
        worker = self.commit_worker()
        while summary.claimed < max_jobs and not self.shutdown.is_set():
            job = self.claim(JobType.COMMIT_PROCESSING)
            if job is None:
                break
            summary.claimed += 1
            self._run_one(worker.process, job, summary)
        logger.info(
            "Commit worker run finished",
            claimed=summary.claimed,
            failed=summary.failed,
            recovered=summary.recovered,
        )
        return summary

    def run_user_jobs(
        self,
        max_jobs: int | None = None,
        concurrency: int | None = None,
    ) -> RunSummary:
        """Parallel-batch mode: up to ``max_jobs`` batches, ``concurrency`` at a time.

        Claims happen on this thread; the per-repository lane keeps batches of
        one repository from running side by side.
        """
        max_jobs = max_jobs or self.settings.max_jobs_per_execution
        concurrency = concurrency or self.settings.max_concurrent_jobs
        summary = RunSummary(recovered=self.recover(JobType.USER_PROCESSING))
        worker = self.user_worker()
        in_flight: dict[Future, ClaimedJob] = {}

        def collect(done: set[Future]) -> None:
            for future in done:
                job = in_flight.pop(future)
                try:
                    summary.record(future.result())
                except JobLeaseLostError as exc:
                    summary.record(_superseded(job, exc))
                except Exception as exc:
                    summary.failed += 1
                    logger.error("User job crashed", job_id=job.id, error=str(exc))

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="user-worker") as pool:
            while summary.claimed < max_jobs and not self.shutdown.is_set():
                if len(in_flight) >= concurrency:
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    collect(done)
                    continue
                job = self.claim(JobType.USER_PROCESSING)
                if job is None:
                    if not in_flight:
                        break
                    # A finishing batch may unblock its repository's lane
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    collect(done)
                    continue
                summary.claimed += 1
                in_flight[pool.submit(worker.process, job)] = job
            if in_flight:
                done, _ = wait(in_flight)
                collect(done)

        logger.info(
            "User worker run finished",
            claimed=summary.claimed,
            failed=summary.failed,
            recovered=summary.recovered,
        )
        return summary

    def _run_one(self, handler: Callable[[ClaimedJob], dict], job: ClaimedJob, summary: RunSummary) -> None:
        try:
            summary.record(handler(job))
        except JobLeaseLostError as exc:
            summary.record(_superseded(job, exc))
        except Exception as exc:
            summary.failed += 1
            logger.error("Job crashed", job_id=job.id, job_type=job.job_type.value, error=str(exc))
