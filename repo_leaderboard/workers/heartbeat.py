"""Claim renewal for jobs whose stages outlast the stuck-job timeout."""

import threading

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from repo_leaderboard.core.exceptions import JobLeaseLostError
from repo_leaderboard.db.database import get_sync_db
from repo_leaderboard.services.job_queue import ClaimedJob, JobQueue

logger = structlog.get_logger()


class JobHeartbeat:
    """Renews ``job``'s claim every ``interval`` seconds while the block runs.

    Renewal stops once the job turns out to be gone (``lost`` becomes True);
    the worker's final ack then raises JobLeaseLostError and its results are
    rolled back.

        with JobHeartbeat(job, session_maker, settings.job_heartbeat_seconds):
            path = sync_service.sync(url, key)
    """

    def __init__(
        self,
        job: ClaimedJob,
        session_maker: sessionmaker[Session] | None,
        interval: float,
    ) -> None:
        self.job = job
        self.session_maker = session_maker
        self.interval = interval
        self.lost = False
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"job-heartbeat-{job.id}", daemon=True)

    def __enter__(self) -> "JobHeartbeat":
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._stop.set()
        self._thread.join()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                with get_sync_db(self.session_maker) as db:
                    JobQueue(db).heartbeat(self.job)
            except JobLeaseLostError:
                self.lost = True
                logger.warning("Job claim lost", job_id=self.job.id, job_type=self.job.job_type.value)
                return
            except SQLAlchemyError as exc:
                # Next tick retries; the lease outlasts several missed renewals
                logger.warning("Job heartbeat failed", job_id=self.job.id, error=str(exc))
