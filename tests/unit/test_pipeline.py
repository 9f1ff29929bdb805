"""End-to-end runs of both worker stages against local git repositories."""

from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from repo_leaderboard.core.config import Settings
from repo_leaderboard.core.exceptions import MalformedJobPayloadError
from repo_leaderboard.core.shutdown import ShutdownSignal
from repo_leaderboard.db.database import get_sync_db
from repo_leaderboard.db.models.base import utcnow
from repo_leaderboard.db.models.commit_record import CommitRecord
from repo_leaderboard.db.models.contributor import Contributor, RepositoryContributor
from repo_leaderboard.db.models.job import JobStatus, JobType, PipelineJob
from repo_leaderboard.db.models.repository import Repository, RepositoryState
from repo_leaderboard.enrichment.refresh import ContributorRefresher
from repo_leaderboard.schemas.jobs import CommitProcessingPayload, UserProcessingPayload
from repo_leaderboard.services.job_queue import ClaimedJob, JobQueue, user_lane_key
from repo_leaderboard.services.pipeline_coordinator import PipelineCoordinator
from repo_leaderboard.services.state_machine import RepositoryStateMachine
from repo_leaderboard.storage.filesystem import FilesystemStorage
from repo_leaderboard.storage.object_store import ObjectStoreStorage
from repo_leaderboard.workers.runner import PipelineRunner

AUTHORS = [
    ("Ann", "a@x.io"),
    ("Carol", "carol@x.io"),
    ("Ann", "a@x.io"),
    ("Bob", "b@x.io"),
    ("Carol", "Carol@X.io"),
    ("Ann", "a@x.io"),
]


@pytest.fixture
def storage(test_settings: Settings) -> FilesystemStorage:
    storage = FilesystemStorage(test_settings.repo_base_path)
    storage.ensure_directory()
    return storage


@pytest.fixture
def make_runner(session_maker, test_settings: Settings, storage: FilesystemStorage, make_github, github_api):
    github_api.users["carol@x.io"] = "carol"

    def _make(settings: Settings | None = None, **overrides) -> PipelineRunner:
        overrides.setdefault("storage", storage)
        overrides.setdefault("github", make_github())
        return PipelineRunner(session_maker, settings or test_settings, **overrides)

    return _make


@pytest.fixture
def track(db: Session, add_local_repository, test_settings: Settings):
    """Track a local source repository and queue its commit job."""

    def _track(source: Path) -> Repository:
        repository = add_local_repository(source)
        JobQueue(db, test_settings).enqueue_commit_job(repository.id)
        db.commit()
        return repository

    return _track


def _repository(db: Session, repository_id: int) -> Repository:
    return db.execute(
        select(Repository).where(Repository.id == repository_id).execution_options(populate_existing=True)
    ).scalar_one()


def _ranking(db: Session, repository_id: int) -> list[tuple[str, int]]:
    rows = db.execute(
        select(Contributor.username, Contributor.email, RepositoryContributor.commit_count)
        .join(Contributor, Contributor.id == RepositoryContributor.contributor_id)
        .where(RepositoryContributor.repository_id == repository_id)
        .order_by(RepositoryContributor.commit_count.desc(), func.coalesce(Contributor.username, Contributor.email))
    ).all()
    return [(username or email, count) for username, email, count in rows]


def _requeue(db: Session, repository_id: int, settings: Settings, state: RepositoryState) -> None:
    """Put a settled repository back to pending with a fresh commit job."""
    db.execute(
        update(Repository)
        .where(Repository.id == repository_id, Repository.state == state.value)
        .values(state=RepositoryState.PENDING.value, failure_reason=None)
    )
    JobQueue(db, settings).enqueue_commit_job(repository_id)
    db.commit()


def _age_running_jobs(db: Session) -> None:
    db.execute(
        update(PipelineJob)
        .where(PipelineJob.status == JobStatus.RUNNING.value)
        .values(claimed_at=utcnow() - timedelta(hours=1))
    )
    db.commit()


EXPECTED_RANKING = [("a@x.io", 3), ("carol", 2), ("b@x.io", 1)]


class TestCommitStage:
    """Tests for the commit-processing worker."""

    def test_commit_job_moves_to_users_processing(self, db: Session, make_git_repo, track, make_runner) -> None:
        repository = track(make_git_repo("stage_one", AUTHORS))

        summary = make_runner().run_commit_jobs()

        assert summary.claimed == 1
        assert summary.results[0]["status"] == "completed"
        stored = _repository(db, repository.id)
        assert stored.state == RepositoryState.USERS_PROCESSING
        assert stored.total_commits == 6
        assert stored.unique_contributors == 3
        assert stored.last_attempt is not None
        user_jobs = db.execute(
            select(PipelineJob).where(PipelineJob.job_type == JobType.USER_PROCESSING.value).order_by(PipelineJob.id)
        ).scalars().all()
        assert [job.payload["emails"] for job in user_jobs] == [["a@x.io", "b@x.io"], ["carol@x.io"]]

    def test_empty_history_completes_directly(self, db: Session, make_git_repo, track, make_runner) -> None:
        repository = track(make_git_repo("no_commits", []))

        make_runner().run_commit_jobs()

        stored = _repository(db, repository.id)
        assert stored.state == RepositoryState.COMPLETED
        assert stored.total_commits == 0
        user_jobs = db.execute(
            select(func.count(PipelineJob.id)).where(PipelineJob.job_type == JobType.USER_PROCESSING.value)
        ).scalar_one()
        assert user_jobs == 0

    def test_git_failure_marks_repository_failed(self, db: Session, tmp_path: Path, track, make_runner) -> None:
        repository = track(tmp_path / "does_not_exist")

        summary = make_runner().run_commit_jobs()

        assert summary.failed == 1
        stored = _repository(db, repository.id)
        assert stored.state == RepositoryState.FAILED
        assert stored.failure_reason
        [job] = db.execute(select(PipelineJob)).scalars().all()
        assert job.status == JobStatus.FAILED

    def test_size_limit_then_retry(
        self, db: Session, make_git_repo, track, make_runner, storage, test_settings: Settings
    ) -> None:
        repository = track(make_git_repo("too_big", AUTHORS))
        tiny = test_settings.model_copy(update={"max_repo_size_bytes": 1})

        make_runner(tiny).run_commit_jobs()

        stored = _repository(db, repository.id)
        assert stored.state == RepositoryState.FAILED
        assert "too large" in stored.failure_reason
        assert not storage.exists(repository.path_name)

        with_limit = test_settings.model_copy(update={"max_commit_count": 5})
        _requeue(db, repository.id, test_settings, RepositoryState.FAILED)
        make_runner(with_limit).run_commit_jobs()
        stored = _repository(db, repository.id)
        assert stored.state == RepositoryState.FAILED
        assert "6 commits" in stored.failure_reason

        _requeue(db, repository.id, test_settings, RepositoryState.FAILED)
        make_runner().run_commit_jobs()
        stored = _repository(db, repository.id)
        assert stored.state == RepositoryState.USERS_PROCESSING
        assert stored.failure_reason is None
        assert storage.exists(repository.path_name)

    def test_leftover_partial_clone_is_replaced(
        self, db: Session, make_git_repo, track, make_runner, storage
    ) -> None:
        repository = track(make_git_repo("interrupted", AUTHORS))
        leftover = storage.get_local_path(repository.path_name)
        leftover.mkdir(parents=True)
        (leftover / "HEAD").write_text("ref: refs/heads/main\n")

        summary = make_runner().run_commit_jobs()

        assert summary.failed == 0
        stored = _repository(db, repository.id)
        assert stored.state == RepositoryState.USERS_PROCESSING
        assert stored.total_commits == 6
        assert storage.exists(repository.path_name)

    def test_job_recovered_mid_clone_is_superseded(
        self, db: Session, make_git_repo, track, make_runner, session_maker, test_settings: Settings
    ) -> None:
        class RecoveringStorage(FilesystemStorage):
            """Lets recovery take the job away while the clone is running."""

            recovered = False

            def clone_from_git(self, remote_url, key, clean_url=None):
                if not self.recovered:
                    self.recovered = True
                    with get_sync_db(session_maker) as session:
                        PipelineCoordinator(session, test_settings).recover_stuck_jobs(stale_after_seconds=0)
                return super().clone_from_git(remote_url, key, clean_url=clean_url)

        repository = track(make_git_repo("taken_over", AUTHORS))
        storage = RecoveringStorage(test_settings.repo_base_path)

        summary = make_runner(storage=storage).run_commit_jobs(max_jobs=2)

        assert [result["status"] for result in summary.results] == ["superseded", "completed"]
        assert summary.failed == 0
        stored = _repository(db, repository.id)
        assert stored.state == RepositoryState.USERS_PROCESSING
        assert stored.total_commits == 6
        records = db.execute(
            select(func.count(CommitRecord.id)).where(CommitRecord.repository_id == repository.id)
        ).scalar_one()
        assert records == 3

    def test_storage_error_requeues_commit_job(
        self, db: Session, make_git_repo, track, make_runner, s3_client, tmp_path: Path
    ) -> None:
        repository = track(make_git_repo("flaky_store", AUTHORS))
        object_store = ObjectStoreStorage(s3_client, "repos-bucket", tmp_path / "object-cache")
        s3_client.fail_uploads = True

        summary = make_runner(storage=object_store).run_commit_jobs()

        assert summary.results[0]["status"] == "retrying"
        assert _repository(db, repository.id).state == RepositoryState.PENDING
        [job] = db.execute(select(PipelineJob).execution_options(populate_existing=True)).scalars().all()
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 1

        s3_client.fail_uploads = False
        make_runner(storage=object_store).run_commit_jobs()

        assert _repository(db, repository.id).state == RepositoryState.USERS_PROCESSING

    def test_refetch_updates_counts(self, db: Session, make_git_repo, track, make_runner, test_settings) -> None:
        source = make_git_repo("growing", AUTHORS)
        repository = track(source)
        make_runner().run_commit_jobs()
        make_runner().run_user_jobs()
        assert _repository(db, repository.id).state == RepositoryState.COMPLETED

        make_git_repo("growing", [("Bob", "b@x.io"), ("Bob", "b@x.io"), ("Bob", "b@x.io")])
        _requeue(db, repository.id, test_settings, RepositoryState.COMPLETED)
        make_runner().run_commit_jobs()
        make_runner().run_user_jobs()

        assert _repository(db, repository.id).total_commits == 9
        assert _ranking(db, repository.id) == [("b@x.io", 4), ("a@x.io", 3), ("carol", 2)]

    def test_shutdown_stops_before_claiming(self, db: Session, make_git_repo, track, make_runner) -> None:
        track(make_git_repo("never_run", AUTHORS))
        shutdown = ShutdownSignal()
        shutdown.set()

        summary = make_runner(shutdown=shutdown).run_commit_jobs()

        assert summary.claimed == 0


class TestFullPipeline:
    """Tests for both stages together."""

    def test_leaderboard_built(self, db: Session, make_git_repo, track, make_runner) -> None:
        repository = track(make_git_repo("full_run", AUTHORS))
        runner = make_runner()

        runner.run_commit_jobs()
        summary = runner.run_user_jobs()

        assert summary.claimed == 2
        assert summary.failed == 0
        stored = _repository(db, repository.id)
        assert stored.state == RepositoryState.COMPLETED
        assert stored.users_processed_at is not None
        assert stored.last_processed_at is not None
        assert _ranking(db, repository.id) == EXPECTED_RANKING
        total = db.execute(
            select(func.sum(RepositoryContributor.commit_count)).where(
                RepositoryContributor.repository_id == repository.id
            )
        ).scalar_one()
        assert total == stored.total_commits == 6
        assert not db.execute(
            select(CommitRecord).where(CommitRecord.repository_id == repository.id, CommitRecord.processed.is_(False))
        ).first()

    def test_crashed_workers_recover_to_same_result(
        self, db: Session, make_git_repo, track, make_runner, test_settings: Settings
    ) -> None:
        repository = track(make_git_repo("crashy", AUTHORS))
        runner = make_runner()

        # Commit worker dies after claiming
        claimed = runner.claim(JobType.COMMIT_PROCESSING)
        RepositoryStateMachine(db).transition(repository.id, RepositoryState.COMMITS_PROCESSING)
        db.commit()
        assert claimed is not None
        _age_running_jobs(db)

        summary = runner.run_commit_jobs()
        assert summary.recovered == 1
        assert _repository(db, repository.id).state == RepositoryState.USERS_PROCESSING

        # User worker dies after resolving part of its batch
        batch = runner.claim(JobType.USER_PROCESSING)
        assert batch is not None
        runner.user_worker().resolver.resolve_batch(repository.id, batch.payload.emails[:1])
        _age_running_jobs(db)

        summary = runner.run_user_jobs()

        assert summary.recovered == 1
        assert _repository(db, repository.id).state == RepositoryState.COMPLETED
        assert _ranking(db, repository.id) == EXPECTED_RANKING

    def test_parallel_batches_across_repositories(
        self, db: Session, make_git_repo, track, make_runner
    ) -> None:
        authors = [("Dev", f"dev{i}@x.io") for i in range(5)]
        first = track(make_git_repo("parallel_one", authors))
        second = track(make_git_repo("parallel_two", authors + [("Ann", "a@x.io")]))
        runner = make_runner()

        commit_summary = runner.run_commit_jobs(max_jobs=2)
        summary = runner.run_user_jobs(concurrency=2)

        assert commit_summary.claimed == 2
        assert summary.claimed == 6
        assert summary.failed == 0
        assert _repository(db, first.id).state == RepositoryState.COMPLETED
        assert _repository(db, second.id).state == RepositoryState.COMPLETED
        assert dict(_ranking(db, second.id)) == {**{f"dev{i}@x.io": 1 for i in range(5)}, "a@x.io": 1}

    def test_max_jobs_bounds_a_run(self, db: Session, make_git_repo, track, make_runner) -> None:
        track(make_git_repo("bounded", AUTHORS))
        runner = make_runner()
        runner.run_commit_jobs()

        summary = runner.run_user_jobs(max_jobs=1)

        assert summary.claimed == 1
        queued = db.execute(
            select(func.count(PipelineJob.id)).where(PipelineJob.status == JobStatus.QUEUED.value)
        ).scalar_one()
        assert queued == 1


class TestRateLimitedResolution:
    """Tests for identity resolution under an exhausted quota."""

    def test_rate_limited_batch_deferred_then_finished(
        self, db: Session, make_git_repo, track, make_runner, github_api
    ) -> None:
        repository = track(make_git_repo("throttled", AUTHORS))
        runner = make_runner()
        runner.run_commit_jobs()
        github_api.rate_limited.add("b@x.io")

        summary = runner.run_user_jobs(max_jobs=1)

        assert summary.results[0]["status"] == "rate_limited"
        assert _repository(db, repository.id).state == RepositoryState.USERS_PROCESSING
        deferred = db.execute(
            select(PipelineJob).where(PipelineJob.status == JobStatus.QUEUED.value).order_by(PipelineJob.id)
        ).scalars().all()
        assert [(job.payload["emails"], job.payload["attempt"]) for job in deferred] == [
            (["carol@x.io"], 0),
            (["b@x.io"], 1),
        ]

        github_api.rate_limited.clear()
        runner.run_user_jobs()

        stored = _repository(db, repository.id)
        assert stored.state == RepositoryState.COMPLETED
        assert _ranking(db, repository.id) == EXPECTED_RANKING

    def test_exhausted_retries_end_partial_then_promote(
        self, db: Session, add_repository, make_runner, make_github, github_api, session_maker,
        test_settings: Settings,
    ) -> None:
        repository = add_repository(state=RepositoryState.USERS_PROCESSING)
        db.add(CommitRecord(repository_id=repository.id, author_email="carol@x.io", commit_count=2))
        JobQueue(db, test_settings).enqueue(
            JobType.USER_PROCESSING,
            UserProcessingPayload(
                repository_id=repository.id,
                emails=["carol@x.io"],
                attempt=test_settings.max_rate_limit_retries,
            ),
            lane_key=user_lane_key(repository.id),
        )
        db.commit()

        summary = make_runner().run_user_jobs()

        assert summary.results[0]["repository_state"] == RepositoryState.COMPLETED_PARTIAL.value
        assert github_api.calls == []
        stored = _repository(db, repository.id)
        assert stored.state == RepositoryState.COMPLETED_PARTIAL
        assert stored.rate_limited_at is not None
        assert _ranking(db, repository.id) == [("carol@x.io", 2)]

        db.execute(update(Contributor).values(updated_at=utcnow() - timedelta(days=2)))
        db.commit()
        result = ContributorRefresher(make_github(), session_maker).refresh_partial_repositories()

        assert result.updated == 1
        assert result.promoted_repositories == 1
        stored = _repository(db, repository.id)
        assert stored.state == RepositoryState.COMPLETED
        assert _ranking(db, repository.id) == [("carol", 2)]


class TestUserWorker:
    """Tests for the identity-resolution worker on its own."""

    def test_commit_payload_rejected(self, make_runner) -> None:
        job = ClaimedJob(
            id=7,
            job_type=JobType.USER_PROCESSING,
            repository_id=1,
            attempts=1,
            payload=CommitProcessingPayload(repository_id=1),
        )

        with pytest.raises(MalformedJobPayloadError):
            make_runner().user_worker().process(job)
