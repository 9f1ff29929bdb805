"""Test configuration and fixtures.

Every test gets its own SQLite database under ``tmp_path``. Git fixtures
build small source repositories with GitPython; the GitHub API is served by
an ``httpx.MockTransport`` and the object store by an in-memory fake.
"""

import shutil
from collections.abc import Callable, Generator
from pathlib import Path

import httpx
import pytest
from botocore.exceptions import ClientError
from git import Actor, Repo
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from repo_leaderboard.core.config import Settings
from repo_leaderboard.db.database import create_sync_engine, init_db
from repo_leaderboard.db.models.repository import Repository, RepositoryState
from repo_leaderboard.enrichment.rate_limit import RateLimitGovernor
from repo_leaderboard.services.github_service import GitHubService

# Past reset time: rate-limited responses never make the governor sleep
PAST_RESET_EPOCH = 1_700_000_000


def pytest_configure(config):
    """Register integration test marker."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test requiring git"
    )


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing at a throwaway database and storage root."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        github_token=None,
        repo_base_path=str(tmp_path / "repos"),
        object_store_temp_path=str(tmp_path / "object-cache"),
        user_batch_size=2,
        job_retry_delay_seconds=0,
        job_max_retries=2,
        max_rate_limit_retries=2,
        max_concurrent_jobs=2,
        max_jobs_per_execution=20,
    )


@pytest.fixture
def engine(test_settings: Settings) -> Generator[Engine, None, None]:
    engine = create_sync_engine(test_settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_maker(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db(session_maker: sessionmaker[Session]) -> Generator[Session, None, None]:
    """A session for arranging and asserting; commit explicitly when workers must see data."""
    session = session_maker()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def add_repository(db: Session) -> Callable[..., Repository]:
    """Insert a repository row directly, bypassing URL validation."""

    def _add(
        url: str = "https://github.com/octo/example",
        path_name: str | None = None,
        state: RepositoryState = RepositoryState.PENDING,
        **values,
    ) -> Repository:
        repository = Repository(
            url=url,
            path_name=path_name or url.split("://", 1)[-1],
            state=state.value,
            **values,
        )
        db.add(repository)
        db.commit()
        return repository

    return _add


# =============================================================================
# Git
# =============================================================================
@pytest.fixture
def make_git_repo(tmp_path: Path) -> Callable[..., Path]:
    """Build a source repository from ``[(name, email), ...]`` commit authors.

    Calling it again with the same name adds commits to the existing repository.
    """
    if shutil.which("git") is None:
        pytest.skip("git executable not available")

    def _make(name: str, authors: list[tuple[str, str]]) -> Path:
        path = tmp_path / "sources" / name
        repo = Repo.init(str(path))
        offset = len(list(path.glob("change_*.txt")))
        for index, (author_name, email) in enumerate(authors, start=offset):
            file_path = path / f"change_{index}.txt"
            file_path.write_text(f"change {index}\n")
            repo.index.add([str(file_path)])
            actor = Actor(author_name, email)
            repo.index.commit(f"Change {index}", author=actor, committer=actor)
        return path

    return _make


@pytest.fixture
def add_local_repository(
    add_repository: Callable[..., Repository],
) -> Callable[[Path], Repository]:
    """Track a local source repository; its URL is the filesystem path."""

    def _add(source: Path, **values) -> Repository:
        return add_repository(url=str(source), path_name=f"local/{source.name}", **values)

    return _add


# =============================================================================
# GitHub API
# =============================================================================
class FakeGitHubApi:
    """Answers ``/search/users`` from a mapping and counts requests.

    ``users`` maps an email to a login; emails in ``rate_limited`` get a 403
    quota response and emails in ``broken`` a 422.
    """

    def __init__(self) -> None:
        self.users: dict[str, str] = {}
        self.rate_limited: set[str] = set()
        self.broken: set[str] = set()
        self.repositories: dict[str, dict] = {}
        self.calls: list[str] = []
        self.reset_epoch = PAST_RESET_EPOCH

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        headers = {
            "x-ratelimit-limit": "30",
            "x-ratelimit-remaining": "29",
            "x-ratelimit-reset": str(self.reset_epoch),
        }
        if request.url.path == "/search/users":
            email = request.url.params["q"].split(" ", 1)[0]
            if email in self.rate_limited:
                headers["x-ratelimit-remaining"] = "0"
                return httpx.Response(403, headers=headers, json={"message": "API rate limit exceeded"})
            if email in self.broken:
                return httpx.Response(422, headers=headers, json={"message": "Validation Failed"})
            login = self.users.get(email)
            items = [{"login": login, "html_url": f"https://github.com/{login}"}] if login else []
            return httpx.Response(200, headers=headers, json={"total_count": len(items), "items": items})
        if request.url.path.startswith("/repos/"):
            full_name = request.url.path[len("/repos/") :]
            if full_name not in self.repositories:
                return httpx.Response(404, headers=headers, json={"message": "Not Found"})
            return httpx.Response(200, headers=headers, json=self.repositories[full_name])
        return httpx.Response(404, headers=headers)


@pytest.fixture
def github_api() -> FakeGitHubApi:
    return FakeGitHubApi()


@pytest.fixture
def make_github(github_api: FakeGitHubApi) -> Callable[..., GitHubService]:
    def _make(token: str | None = "test-token") -> GitHubService:
        return GitHubService(
            token=token,
            governor=RateLimitGovernor(low_water_mark=0, wait_buffer_seconds=0),
            transport=httpx.MockTransport(github_api.handler),
        )

    return _make


# =============================================================================
# Object store
# =============================================================================
def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """The subset of the boto3 S3 client used by ObjectStoreStorage."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self.uploads: list[dict] = []
        self.fail_uploads = False

    def head_object(self, Bucket: str, Key: str) -> dict:
        if (Bucket, Key) not in self.objects:
            raise _client_error("404", "HeadObject")
        return {"ContentLength": len(self.objects[(Bucket, Key)])}

    def download_file(self, Bucket: str, Key: str, Filename: str) -> None:
        if (Bucket, Key) not in self.objects:
            raise _client_error("404", "HeadObject")
        Path(Filename).write_bytes(self.objects[(Bucket, Key)])

    def upload_file(self, Filename: str, Bucket: str, Key: str, ExtraArgs: dict | None = None) -> None:
        if self.fail_uploads:
            raise _client_error("InternalError", "PutObject")
        self.objects[(Bucket, Key)] = Path(Filename).read_bytes()
        self.uploads.append({"bucket": Bucket, "key": Key, "extra_args": ExtraArgs or {}})

    def delete_object(self, Bucket: str, Key: str) -> dict:
        self.objects.pop((Bucket, Key), None)
        return {}


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()
