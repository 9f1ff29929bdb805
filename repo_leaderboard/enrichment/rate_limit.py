"""Client-side pacing for the GitHub REST API quota."""

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx
import structlog

from repo_leaderboard.core.exceptions import RateLimitExceededError, WorkerShutdownError
from repo_leaderboard.core.shutdown import ShutdownSignal

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitState:
    remaining: int | None = None
    reset_epoch: int | None = None
    limit: int | None = None

    @property
    def reset_at(self) -> datetime | None:
        if self.reset_epoch is None:
            return None
        return datetime.fromtimestamp(self.reset_epoch, UTC)


def _header_int(headers: Mapping[str, str], name: str) -> int | None:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class RateLimitGovernor:
    """Learns the quota from response headers and throttles before it runs out.

    One governor belongs to one API client (one credential). It is safe to
    share between the threads of a worker process.
    """

    def __init__(
        self,
        low_water_mark: int = 10,
        wait_buffer_seconds: float = 5,
        shutdown: ShutdownSignal | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.low_water_mark = low_water_mark
        self.wait_buffer_seconds = wait_buffer_seconds
        self.shutdown = shutdown or ShutdownSignal()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = RateLimitState()

    @property
    def state(self) -> RateLimitState:
        with self._lock:
            return self._state

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Record ``x-ratelimit-*`` values from the latest response."""
        remaining = _header_int(headers, "x-ratelimit-remaining")
        if remaining is None:
            return
        with self._lock:
            self._state = RateLimitState(
                remaining=remaining,
                reset_epoch=_header_int(headers, "x-ratelimit-reset"),
                limit=_header_int(headers, "x-ratelimit-limit"),
            )

    def seconds_until_ready(self) -> float:
        """How long the next call would have to wait; 0 when quota is available."""
        with self._lock:
            state = self._state
        if state.remaining is None or state.remaining > self.low_water_mark:
            return 0.0
        if state.reset_epoch is None:
            return 0.0
        return max(0.0, state.reset_epoch + self.wait_buffer_seconds - self._clock())

    def before_request(self) -> None:
        """Block until the quota has reset if we are at the low-water mark.

        The wait ends early with WorkerShutdownError when shutdown is requested.
        """
        wait_seconds = self.seconds_until_ready()
        if wait_seconds > 0:
            state = self.state
            logger.warning(
                "Rate limit low, waiting for reset",
                remaining=state.remaining,
                reset_at=state.reset_at.isoformat() if state.reset_at else None,
                wait_seconds=round(wait_seconds, 1),
            )
            if self.shutdown.wait(wait_seconds):
                raise WorkerShutdownError("Shutdown requested during rate limit wait")
        with self._lock:
            if self._state.remaining is not None and self._state.remaining <= self.low_water_mark:
                self._state = RateLimitState()

    def raise_for_rate_limit(self, response: httpx.Response) -> None:
        """Turn a quota rejection into RateLimitExceededError."""
        if response.status_code not in (403, 429):
            return
        remaining = _header_int(response.headers, "x-ratelimit-remaining")
        if remaining != 0 and "rate limit" not in response.text.lower():
            return
        reset_epoch = _header_int(response.headers, "x-ratelimit-reset")
        reset_at = datetime.fromtimestamp(reset_epoch, UTC) if reset_epoch is not None else None
        logger.warning(
            "GitHub rate limit exceeded",
            status_code=response.status_code,
            reset_at=reset_at.isoformat() if reset_at else None,
        )
        raise RateLimitExceededError(reset_at)
