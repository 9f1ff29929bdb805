import boto3

from repo_leaderboard.core.config import Settings, settings as default_settings
from repo_leaderboard.storage.base import RepositoryStorage
from repo_leaderboard.storage.filesystem import FilesystemStorage
from repo_leaderboard.storage.object_store import ObjectStoreStorage


def get_storage(settings: Settings | None = None) -> RepositoryStorage:
    """Build the storage backend selected by ``storage_backend``."""
    settings = settings or default_settings
    if settings.storage_backend == "object_store":
        client = boto3.client(
            "s3",
            endpoint_url=settings.object_store_endpoint_url,
            aws_access_key_id=settings.object_store_access_key_id,
            aws_secret_access_key=settings.object_store_secret_access_key,
            region_name=settings.object_store_region,
        )
        storage: RepositoryStorage = ObjectStoreStorage(
            client,
            bucket=settings.object_store_bucket,
            temp_path=settings.object_store_temp_path,
        )
    else:
        storage = FilesystemStorage(settings.repo_base_path)
    storage.ensure_directory()
    return storage
