from celery import Celery

from repo_leaderboard.core.config import settings

celery_app = Celery(
    "repo_leaderboard",
    broker=settings.celery_broker_url or settings.redis_url,
    backend=settings.celery_result_backend or settings.redis_url,
    include=[
        "repo_leaderboard.workers.tasks.pipeline_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.job_default_timeout,
    task_soft_time_limit=settings.job_default_timeout - 60,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Periodic tasks; each invocation is bounded and exits
celery_app.conf.beat_schedule = {
    "process-commit-jobs": {
        "task": "repo_leaderboard.workers.tasks.pipeline_tasks.process_commit_jobs",
        "schedule": 60.0,  # Every minute
    },
    "process-user-jobs": {
        "task": "repo_leaderboard.workers.tasks.pipeline_tasks.process_user_jobs",
        "schedule": 120.0,  # Every 2 minutes
    },
    "reenqueue-stalled-work": {
        "task": "repo_leaderboard.workers.tasks.pipeline_tasks.reenqueue_stalled_work",
        "schedule": 900.0,  # Every 15 minutes
    },
    "refresh-partial-repositories": {
        "task": "repo_leaderboard.workers.tasks.pipeline_tasks.refresh_partial_repositories",
        "schedule": 3600.0,  # Every hour
    },
}
