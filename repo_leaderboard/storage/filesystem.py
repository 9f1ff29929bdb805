import shutil
from pathlib import Path

import structlog

from repo_leaderboard.storage.base import RepositoryStorage
from repo_leaderboard.storage.git_ops import bare_clone, fetch_heads, is_git_repository

logger = structlog.get_logger()


class FilesystemStorage(RepositoryStorage):
    """Bare repositories kept directly under a base directory."""

    def __init__(self, base_path: str | Path = "/data/repos") -> None:
        self.base_path = Path(base_path)

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if not path.is_relative_to(self.base_path.resolve()):
            raise ValueError(f"Storage key escapes base path: {key!r}")
        return path

    def exists(self, key: str) -> bool:
        """Whether a usable bare repository is stored at ``key``.

        A directory that does not open as a repository (left by a worker that
        died mid-clone, for example) is removed and reported as absent.
        """
        path = self._path(key)
        if not path.exists():
            return False
        if is_git_repository(path):
            return True
        logger.warning("Discarding unusable repository copy", key=key, path=str(path))
        shutil.rmtree(path)
        return False

    def get_local_path(self, key: str) -> Path:
        return self._path(key)

    def clone_from_git(self, remote_url: str, key: str, clean_url: str | None = None) -> Path:
        path = self._path(key)
        bare_clone(remote_url, path, clean_url=clean_url)
        logger.info("Repository cloned", key=key, path=str(path))
        return path

    def fetch_updates(self, key: str, remote_url: str | None = None) -> None:
        fetch_heads(self._path(key), remote_url)
        logger.info("Repository fetched", key=key)

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            shutil.rmtree(path)
            logger.info("Repository copy deleted", key=key)

    def ensure_directory(self) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)
