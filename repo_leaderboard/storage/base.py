from abc import ABC, abstractmethod
from pathlib import Path

from repo_leaderboard.storage.git_ops import directory_size


class RepositoryStorage(ABC):
    """Uniform access to bare working copies, keyed by ``host/owner/name``."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Whether a durable copy exists for ``key``."""

    @abstractmethod
    def get_local_path(self, key: str) -> Path:
        """Local path of the working copy, materializing it if needed."""

    @abstractmethod
    def clone_from_git(self, remote_url: str, key: str, clean_url: str | None = None) -> Path:
        """Create (or replace) the copy for ``key`` from ``remote_url``."""

    @abstractmethod
    def fetch_updates(self, key: str, remote_url: str | None = None) -> None:
        """Bring an existing copy up to date with its remote."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove every copy of ``key``. Missing copies are not an error."""

    @abstractmethod
    def ensure_directory(self) -> None:
        """Create the local root directory."""

    def measure_size(self, key: str) -> int:
        """On-disk size of the local working copy in bytes."""
        return directory_size(self.get_local_path(key))
