"""Synchronous GitHub API client for pipeline workers."""

from dataclasses import dataclass

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from repo_leaderboard.core.config import Settings, settings as default_settings
from repo_leaderboard.core.shutdown import ShutdownSignal
from repo_leaderboard.enrichment.rate_limit import RateLimitGovernor

logger = structlog.get_logger()


@dataclass(frozen=True)
class GitHubUserMatch:
    username: str
    profile_url: str


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


_transient_retry = retry(
    retry=retry_if_exception(_is_transient),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


class GitHubService:
    """GitHub REST client paced by a RateLimitGovernor.

    Every request goes through the governor first, and every response feeds
    its rate-limit headers back into it.
    """

    def __init__(
        self,
        token: str | None = None,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        governor: RateLimitGovernor | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Accept": "application/vnd.github.v3+json"}
        if token:
            self.headers["Authorization"] = f"token {token}"
        self.has_token = bool(token)
        self.timeout = httpx.Timeout(timeout)
        self.governor = governor or RateLimitGovernor()
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        shutdown: ShutdownSignal | None = None,
    ) -> "GitHubService":
        settings = settings or default_settings
        governor = RateLimitGovernor(
            low_water_mark=settings.github_rate_limit_low_water,
            wait_buffer_seconds=settings.github_rate_limit_wait_buffer_seconds,
            shutdown=shutdown,
        )
        return cls(
            token=settings.github_token,
            base_url=settings.github_api_base_url,
            timeout=settings.github_request_timeout,
            governor=governor,
        )

    def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        self.governor.before_request()
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            response = client.get(
                f"{self.base_url}{path}",
                headers=self.headers,
                params=params,
            )
        self.governor.update_from_headers(response.headers)
        self.governor.raise_for_rate_limit(response)
        return response

    @_transient_retry
    def search_user_by_email(self, email: str) -> GitHubUserMatch | None:
        """Find the account that has ``email`` as a public or commit email."""
        response = self._get("/search/users", params={"q": f"{email} in:email"})
        response.raise_for_status()
        items = response.json().get("items") or []
        if not items:
            return None
        first = items[0]
        login = first.get("login")
        if not login:
            return None
        return GitHubUserMatch(
            username=login,
            profile_url=first.get("html_url") or f"https://github.com/{login}",
        )

    @_transient_retry
    def get_repository(self, owner: str, name: str) -> dict | None:
        """Fetch repository metadata; ``size`` is reported in KiB."""
        response = self._get(f"/repos/{owner}/{name}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()
