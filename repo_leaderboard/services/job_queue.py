"""Durable job queue stored in the ``pipeline_jobs`` table.

Delivery is at-least-once: a claimed job that is never acknowledged is
picked up again by stuck-job recovery, so every handler must be idempotent.

Two partial unique indexes carry the concurrency rules:

* ``dedup_key`` is unique among open (queued or running) jobs, so repeated
  enqueue requests for the same commit job collapse into one.
* ``lane_key`` is unique among running jobs, so identity-resolution batches
  for one repository run strictly one at a time across all workers.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from repo_leaderboard.core.config import Settings, settings as default_settings
from repo_leaderboard.core.exceptions import JobLeaseLostError, MalformedJobPayloadError
from repo_leaderboard.db.models.base import utcnow
from repo_leaderboard.db.models.job import (
    OPEN_JOB_PREDICATE,
    JobStatus,
    JobType,
    PipelineJob,
)
from repo_leaderboard.db.upsert import insert_for
from repo_leaderboard.schemas.jobs import (
    CommitProcessingPayload,
    UserProcessingPayload,
    parse_job_payload,
)

logger = structlog.get_logger()

OPEN_STATUSES = [JobStatus.QUEUED.value, JobStatus.RUNNING.value]


def commit_dedup_key(repository_id: int) -> str:
    return f"commit-{repository_id}"


def user_lane_key(repository_id: int) -> str:
    return f"user-{repository_id}"


def chunk_emails(emails: Iterable[str], size: int) -> list[list[str]]:
    """Split emails into sorted, fixed-size batches.

    Sorting first keeps batch boundaries identical across re-runs.
    """
    if size <= 0:
        raise ValueError("Batch size must be positive")
    ordered = sorted(set(emails))
    return [ordered[i : i + size] for i in range(0, len(ordered), size)]


@dataclass(frozen=True)
class ClaimedJob:
    """A job this worker now owns, with its validated payload."""

    id: int
    job_type: JobType
    repository_id: int
    attempts: int
    payload: CommitProcessingPayload | UserProcessingPayload


class JobQueue:
    """Enqueue, claim and settle pipeline jobs."""

    def __init__(self, db: Session, settings: Settings | None = None) -> None:
        self.db = db
        self.settings = settings or default_settings

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------
    def enqueue(
        self,
        job_type: JobType,
        payload: CommitProcessingPayload | UserProcessingPayload,
        dedup_key: str | None = None,
        lane_key: str | None = None,
        available_at: datetime | None = None,
    ) -> PipelineJob:
        """Add a job. With a dedup key, an existing open job is returned instead."""
        now = utcnow()
        values = {
            "repository_id": payload.repository_id,
            "job_type": job_type.value,
            "status": JobStatus.QUEUED.value,
            "payload": payload.model_dump(mode="json"),
            "dedup_key": dedup_key,
            "lane_key": lane_key,
            "attempts": 0,
            "available_at": available_at or now,
        }

        if dedup_key is None:
            job = PipelineJob(**values)
            self.db.add(job)
            self.db.flush()
            logger.info("Job enqueued", job_id=job.id, job_type=job_type.value)
            return job

        stmt = (
            insert_for(self.db, PipelineJob)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["dedup_key"], index_where=OPEN_JOB_PREDICATE)
        )
        inserted = self.db.execute(stmt).rowcount == 1
        job = self.db.execute(
            select(PipelineJob).where(
                PipelineJob.dedup_key == dedup_key,
                PipelineJob.status.in_(OPEN_STATUSES),
            )
        ).scalar_one()
        if inserted:
            logger.info("Job enqueued", job_id=job.id, job_type=job_type.value, dedup_key=dedup_key)
        else:
            logger.info("Job already open", job_id=job.id, job_type=job_type.value, dedup_key=dedup_key)
        return job

    def enqueue_commit_job(self, repository_id: int) -> PipelineJob:
        return self.enqueue(
            JobType.COMMIT_PROCESSING,
            CommitProcessingPayload(repository_id=repository_id),
            dedup_key=commit_dedup_key(repository_id),
        )

    def enqueue_user_batches(
        self,
        repository_id: int,
        emails: Iterable[str],
        attempt: int = 0,
        available_at: datetime | None = None,
    ) -> list[PipelineJob]:
        """Queue one identity-resolution job per batch of emails."""
        jobs = []
        for batch in chunk_emails(emails, self.settings.user_batch_size):
            jobs.append(
                self.enqueue(
                    JobType.USER_PROCESSING,
                    UserProcessingPayload(
                        repository_id=repository_id,
                        emails=batch,
                        attempt=attempt,
                    ),
                    lane_key=user_lane_key(repository_id),
                    available_at=available_at,
                )
            )
        if jobs:
            logger.info(
                "User batches enqueued",
                repository_id=repository_id,
                batches=len(jobs),
                attempt=attempt,
            )
        return jobs

    # -------------------------------------------------------------------------
    # Claim
    # -------------------------------------------------------------------------
    def dequeue_next(
        self,
        job_type: JobType,
        exclude_ids: Iterable[int] = (),
    ) -> ClaimedJob | None:
        """Claim the oldest available job of ``job_type``.

        Call at the start of a transaction: losing a lane race to another
        worker rolls the session back before trying the next candidate.
        Jobs with malformed payloads are marked failed and skipped.
        """
        skipped = set(exclude_ids)
        while True:
            now = utcnow()
            running = aliased(PipelineJob)
            lane_busy = exists().where(
                running.lane_key == PipelineJob.lane_key,
                running.status == JobStatus.RUNNING.value,
            )
            stmt = (
                select(PipelineJob)
                .where(
                    PipelineJob.job_type == job_type.value,
                    PipelineJob.status == JobStatus.QUEUED.value,
                    PipelineJob.available_at <= now,
                    or_(PipelineJob.lane_key.is_(None), ~lane_busy),
                )
                .order_by(PipelineJob.available_at, PipelineJob.id)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            if skipped:
                stmt = stmt.where(PipelineJob.id.not_in(sorted(skipped)))

            job = self.db.execute(stmt).scalar_one_or_none()
            if job is None:
                return None

            job_id = job.id
            attempts = job.attempts + 1
            try:
                claimed = self.db.execute(
                    update(PipelineJob)
                    .where(PipelineJob.id == job_id, PipelineJob.status == JobStatus.QUEUED.value)
                    .values(
                        status=JobStatus.RUNNING.value,
                        claimed_at=now,
                        attempts=attempts,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError:
                # Another worker claimed a job in the same lane first
                self.db.rollback()
                skipped.add(job_id)
                continue
            if claimed.rowcount != 1:
                skipped.add(job_id)
                continue

            try:
                payload = parse_job_payload(job.job_type, job.payload, job_id)
            except MalformedJobPayloadError as exc:
                logger.error("Discarding job with malformed payload", job_id=job_id, error=exc.reason)
                self._settle(job_id, attempts, status=JobStatus.FAILED.value, completed_at=now, error_message=str(exc))
                skipped.add(job_id)
                continue

            logger.info(
                "Job claimed",
                job_id=job_id,
                job_type=job_type.value,
                repository_id=job.repository_id,
                attempts=attempts,
            )
            return ClaimedJob(
                id=job_id,
                job_type=job_type,
                repository_id=job.repository_id,
                attempts=attempts,
                payload=payload,
            )

    # -------------------------------------------------------------------------
    # Settle
    # -------------------------------------------------------------------------
    def ack(self, job: PipelineJob | ClaimedJob) -> None:
        """Mark a job completed.

        Every settle call raises JobLeaseLostError when the job is no longer
        running under this claim, so the caller's transaction rolls back.
        """
        now = utcnow()
        self._settle(job.id, job.attempts, status=JobStatus.COMPLETED.value, completed_at=now, error_message=None)

    def fail(self, job: PipelineJob | ClaimedJob, error: str) -> None:
        """Mark a job permanently failed."""
        now = utcnow()
        self._settle(job.id, job.attempts, status=JobStatus.FAILED.value, completed_at=now, error_message=error)
        logger.warning("Job failed", job_id=job.id, error=error)

    def release(
        self,
        job: PipelineJob | ClaimedJob,
        error: str,
        delay_seconds: float | None = None,
    ) -> bool:
        """Put a job back in the queue after a retryable failure.

        Returns False (and fails the job) once it has used up its retries.
        Back-off is linear in the number of attempts.
        """
        if job.attempts > self.settings.job_max_retries:
            self.fail(job, error)
            return False
        if delay_seconds is None:
            delay_seconds = self.settings.job_retry_delay_seconds * max(job.attempts, 1)
        self._settle(
            job.id,
            job.attempts,
            status=JobStatus.QUEUED.value,
            claimed_at=None,
            available_at=utcnow() + timedelta(seconds=delay_seconds),
            error_message=error,
        )
        logger.info("Job released for retry", job_id=job.id, attempts=job.attempts, delay_seconds=delay_seconds)
        return True

    def heartbeat(self, job: PipelineJob | ClaimedJob) -> None:
        """Renew the claim on a running job so recovery leaves it alone."""
        self._settle(job.id, job.attempts, claimed_at=utcnow())

    def remove(self, job: PipelineJob | ClaimedJob) -> None:
        """Delete a job outright."""
        self.db.execute(
            delete(PipelineJob)
            .where(PipelineJob.id == job.id)
            .execution_options(synchronize_session=False)
        )

    def _settle(self, job_id: int, attempts: int, **values) -> None:
        result = self.db.execute(
            update(PipelineJob)
            .where(
                PipelineJob.id == job_id,
                PipelineJob.status == JobStatus.RUNNING.value,
                PipelineJob.attempts == attempts,
            )
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise JobLeaseLostError(job_id)

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------
    def list_active(
        self,
        job_type: JobType | None = None,
        claimed_before: datetime | None = None,
    ) -> list[PipelineJob]:
        """Running jobs, optionally only those claimed before a cutoff."""
        query = select(PipelineJob).where(PipelineJob.status == JobStatus.RUNNING.value)
        if job_type is not None:
            query = query.where(PipelineJob.job_type == job_type.value)
        if claimed_before is not None:
            query = query.where(PipelineJob.claimed_at < claimed_before)
        return list(self.db.execute(query.order_by(PipelineJob.id)).scalars().all())

    def has_open_job(self, repository_id: int, job_type: JobType) -> bool:
        return self.db.execute(
            select(
                exists().where(
                    PipelineJob.repository_id == repository_id,
                    PipelineJob.job_type == job_type.value,
                    PipelineJob.status.in_(OPEN_STATUSES),
                )
            )
        ).scalar_one()

    def get(self, job_id: int) -> PipelineJob | None:
        return self.db.get(PipelineJob, job_id)
