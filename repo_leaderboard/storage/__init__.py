from repo_leaderboard.storage.base import RepositoryStorage
from repo_leaderboard.storage.factory import get_storage
from repo_leaderboard.storage.filesystem import FilesystemStorage
from repo_leaderboard.storage.object_store import ObjectStoreStorage

__all__ = ["RepositoryStorage", "FilesystemStorage", "ObjectStoreStorage", "get_storage"]
