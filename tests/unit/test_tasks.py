import pytest

from repo_leaderboard.workers import runner as runner_module
from repo_leaderboard.workers.celery_app import celery_app
from repo_leaderboard.workers.runner import RunSummary
from repo_leaderboard.workers.tasks import pipeline_tasks


class FakeRunner:
    calls: list[tuple] = []

    def run_commit_jobs(self, max_jobs: int = 1) -> RunSummary:
        FakeRunner.calls.append(("commits", max_jobs))
        return RunSummary(claimed=1, results=[{"status": "completed", "job_id": 1}])

    def run_user_jobs(self, max_jobs=None, concurrency=None) -> RunSummary:
        FakeRunner.calls.append(("users", max_jobs, concurrency))
        return RunSummary(claimed=3, failed=1, recovered=1)


@pytest.fixture
def fake_runner(monkeypatch):
    FakeRunner.calls = []
    monkeypatch.setattr(runner_module, "PipelineRunner", FakeRunner)
    return FakeRunner


class TestPipelineTasks:
    """Tests for the Celery entry points."""

    def test_beat_schedule_covers_every_periodic_task(self) -> None:
        scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}

        assert scheduled == {
            "repo_leaderboard.workers.tasks.pipeline_tasks.process_commit_jobs",
            "repo_leaderboard.workers.tasks.pipeline_tasks.process_user_jobs",
            "repo_leaderboard.workers.tasks.pipeline_tasks.reenqueue_stalled_work",
            "repo_leaderboard.workers.tasks.pipeline_tasks.refresh_partial_repositories",
        }

    def test_process_commit_jobs_reports_summary(self, fake_runner) -> None:
        result = pipeline_tasks.process_commit_jobs(max_jobs=2)

        assert fake_runner.calls == [("commits", 2)]
        assert result["claimed"] == 1
        assert result["results"] == [{"status": "completed", "job_id": 1}]

    def test_process_user_jobs_reports_summary(self, fake_runner) -> None:
        result = pipeline_tasks.process_user_jobs(max_jobs=10, concurrency=4)

        assert fake_runner.calls == [("users", 10, 4)]
        assert (result["claimed"], result["failed"], result["recovered"]) == (3, 1, 1)
