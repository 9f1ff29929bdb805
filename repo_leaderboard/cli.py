"""Command line entry point for operators and schedulers.

    python -m repo_leaderboard process https://github.com/pallets/flask
    python -m repo_leaderboard worker commits
    python -m repo_leaderboard worker users --max-jobs 50 --concurrency 10
    python -m repo_leaderboard leaderboard https://github.com/pallets/flask
"""

import argparse
import json
import logging
import sys

import structlog

from repo_leaderboard.core.config import settings
from repo_leaderboard.core.exceptions import LeaderboardError
from repo_leaderboard.core.shutdown import ShutdownSignal
from repo_leaderboard.db.database import get_sync_db, init_db
from repo_leaderboard.db.models.repository import RepositoryState

logger = structlog.get_logger()


def _configure_logging(verbose: bool) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if verbose or settings.debug else logging.INFO
        ),
    )


def _print_json(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


def _summary(repository) -> dict:
    return {
        "id": repository.id,
        "url": repository.url,
        "state": RepositoryState(repository.state).value,
    }


def cmd_init_db(args: argparse.Namespace) -> int:
    init_db()
    print("Database tables created")
    return 0


def cmd_process(args: argparse.Namespace) -> int:
    from repo_leaderboard.services.repository_service import RepositoryService

    with get_sync_db() as db:
        repository = RepositoryService(db).request_processing(args.url)
        _print_json(_summary(repository))
    return 0


def cmd_retry(args: argparse.Namespace) -> int:
    from repo_leaderboard.services.repository_service import RepositoryService

    with get_sync_db() as db:
        repository = RepositoryService(db).retry(args.url)
        _print_json(_summary(repository))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    from repo_leaderboard.schemas.leaderboard import RepositoryStatusResponse
    from repo_leaderboard.services.repository_service import RepositoryService

    with get_sync_db() as db:
        repository = RepositoryService(db).require_by_url(args.url)
        status = RepositoryStatusResponse(
            id=repository.id,
            url=repository.url,
            state=RepositoryState(repository.state).value,
            total_commits=repository.total_commits,
            unique_contributors=repository.unique_contributors,
            last_attempt=repository.last_attempt,
            last_processed_at=repository.last_processed_at,
            failure_reason=repository.failure_reason,
        )
    print(status.model_dump_json(indent=2))
    return 0


def cmd_leaderboard(args: argparse.Namespace) -> int:
    from repo_leaderboard.services.leaderboard_service import LeaderboardService

    with get_sync_db() as db:
        leaderboard = LeaderboardService(db).get_leaderboard(args.url, limit=args.limit)
    print(leaderboard.model_dump_json(indent=2))
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    from repo_leaderboard.workers.runner import PipelineRunner

    shutdown = ShutdownSignal()
    shutdown.install_handlers()
    runner = PipelineRunner(shutdown=shutdown)
    if args.stage == "commits":
        summary = runner.run_commit_jobs(max_jobs=args.max_jobs or 1)
    else:
        summary = runner.run_user_jobs(max_jobs=args.max_jobs, concurrency=args.concurrency)
    _print_json({"claimed": summary.claimed, "failed": summary.failed, "recovered": summary.recovered})
    return 1 if summary.failed else 0


def cmd_recover(args: argparse.Namespace) -> int:
    from repo_leaderboard.services.pipeline_coordinator import PipelineCoordinator

    with get_sync_db() as db:
        report = PipelineCoordinator(db).recover_stuck_jobs(stale_after_seconds=args.stale_after)
    _print_json(
        {
            "removed_jobs": report.removed_jobs,
            "reset_repositories": report.reset_repositories,
            "requeued_batches": report.requeued_batches,
        }
    )
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    from repo_leaderboard.services.pipeline_coordinator import PipelineCoordinator

    with get_sync_db() as db:
        report = PipelineCoordinator(db).reenqueue_stalled_work()
    _print_json(report.__dict__)
    return 0


def cmd_refresh(args: argparse.Namespace) -> int:
    from repo_leaderboard.enrichment.refresh import ContributorRefresher
    from repo_leaderboard.services.github_service import GitHubService

    shutdown = ShutdownSignal()
    shutdown.install_handlers()
    result = ContributorRefresher(GitHubService.from_settings(shutdown=shutdown)).refresh_partial_repositories()
    _print_json(result.__dict__)
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    from repo_leaderboard.services.repository_service import RepositoryService
    from repo_leaderboard.storage.factory import get_storage

    with get_sync_db() as db:
        deleted = RepositoryService(db).delete_repository(args.url, get_storage())
    print("Repository deleted" if deleted else "Repository not tracked")
    return 0 if deleted else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="repo-leaderboard",
        description="Build contributor leaderboards from git commit history",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables").set_defaults(func=cmd_init_db)

    for name, func, help_text in (
        ("process", cmd_process, "Track a repository and queue processing"),
        ("retry", cmd_retry, "Retry a failed repository"),
        ("status", cmd_status, "Show a repository's processing state"),
        ("delete", cmd_delete, "Delete a repository and its working copy"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("url")
        command.set_defaults(func=func)

    leaderboard = sub.add_parser("leaderboard", help="Print a repository leaderboard as JSON")
    leaderboard.add_argument("url")
    leaderboard.add_argument("--limit", type=int, default=100)
    leaderboard.set_defaults(func=cmd_leaderboard)

    worker = sub.add_parser("worker", help="Run one bounded worker invocation")
    worker.add_argument("stage", choices=["commits", "users"])
    worker.add_argument("--max-jobs", type=int, default=None)
    worker.add_argument("--concurrency", type=int, default=None)
    worker.set_defaults(func=cmd_worker)

    recover = sub.add_parser("recover", help="Remove stuck jobs and reschedule their work")
    recover.add_argument(
        "--stale-after",
        type=int,
        default=None,
        help="Treat claims older than this many seconds as abandoned (0 = all running jobs)",
    )
    recover.set_defaults(func=cmd_recover)

    sub.add_parser("sweep", help="Re-enqueue work for stalled repositories").set_defaults(func=cmd_sweep)
    sub.add_parser("refresh", help="Refresh email-only contributors").set_defaults(func=cmd_refresh)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        return args.func(args)
    except LeaderboardError as exc:
        logger.error("Command failed", command=args.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
