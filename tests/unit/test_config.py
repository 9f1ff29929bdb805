import pytest
from pydantic import ValidationError

from repo_leaderboard.core.config import Settings


class TestSettings:
    """Tests for settings validation."""

    def test_heartbeat_must_fit_inside_lease(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, stuck_job_timeout_seconds=60, job_heartbeat_seconds=60)

    def test_defaults_renew_well_before_timeout(self) -> None:
        settings = Settings(_env_file=None)

        assert settings.job_heartbeat_seconds < settings.stuck_job_timeout_seconds
