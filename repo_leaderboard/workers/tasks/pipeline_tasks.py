"""Celery tasks that drive the pipeline.

Each task is one bounded worker invocation: the durable queue lives in the
database, Celery only decides when a run happens.
"""

import structlog

from repo_leaderboard.workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(bind=True, max_retries=3)
def process_commit_jobs(self, max_jobs: int = 1) -> dict:
    """Simple mode: process a single commit-extraction job."""
    logger.info("Starting commit worker run", task_id=self.request.id)

    try:
        # Import here to avoid circular imports and lazy-load sync session
        from repo_leaderboard.workers.runner import PipelineRunner

        summary = PipelineRunner().run_commit_jobs(max_jobs=max_jobs)
        return {
            "status": "completed",
            "claimed": summary.claimed,
            "failed": summary.failed,
            "recovered": summary.recovered,
            "results": summary.results,
        }

    except Exception as exc:
        logger.error("Commit worker run failed", error=str(exc), retries=self.request.retries)
        raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1)) from exc


@celery_app.task(bind=True, max_retries=3)
def process_user_jobs(self, max_jobs: int | None = None, concurrency: int | None = None) -> dict:
    """Parallel-batch mode: resolve up to ``max_jobs`` email batches."""
    logger.info("Starting user worker run", task_id=self.request.id)

    try:
        from repo_leaderboard.workers.runner import PipelineRunner

        summary = PipelineRunner().run_user_jobs(max_jobs=max_jobs, concurrency=concurrency)
        return {
            "status": "completed",
            "claimed": summary.claimed,
            "failed": summary.failed,
            "recovered": summary.recovered,
        }

    except Exception as exc:
        logger.error("User worker run failed", error=str(exc), retries=self.request.retries)
        raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1)) from exc


@celery_app.task
def reenqueue_stalled_work() -> dict:
    """Queue jobs for repositories that are waiting on work nobody will do."""
    from repo_leaderboard.db.database import get_sync_db
    from repo_leaderboard.services.pipeline_coordinator import PipelineCoordinator

    with get_sync_db() as db:
        report = PipelineCoordinator(db).reenqueue_stalled_work()

    return {
        "status": "completed",
        "commit_jobs": report.commit_jobs,
        "user_batches": report.user_batches,
        "completed": report.completed,
        "reset": report.reset,
    }


@celery_app.task
def refresh_partial_repositories() -> dict:
    """Retry enrichment for email-only contributors and promote partial repositories."""
    from repo_leaderboard.enrichment.refresh import ContributorRefresher
    from repo_leaderboard.services.github_service import GitHubService

    result = ContributorRefresher(GitHubService.from_settings()).refresh_partial_repositories()

    return {
        "status": "completed",
        "checked": result.checked,
        "updated": result.updated,
        "rate_limit_hit": result.rate_limit_hit,
        "promoted_repositories": result.promoted_repositories,
    }
