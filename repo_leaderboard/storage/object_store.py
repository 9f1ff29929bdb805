"""Bare repositories archived as ``<key>.tar.gz`` in an S3-compatible bucket.

The bucket is the source of truth. A local copy under ``temp_path`` is
extracted on first use and reused while it exists; every clone or fetch is
followed by an upload so the archive never lags behind git.
"""

import shutil
import tarfile
from pathlib import Path

import structlog
from botocore.exceptions import BotoCoreError, ClientError

from repo_leaderboard.core.exceptions import StorageError
from repo_leaderboard.storage.base import RepositoryStorage
from repo_leaderboard.storage.git_ops import bare_clone, fetch_heads, is_git_repository

logger = structlog.get_logger()

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class ObjectStoreStorage(RepositoryStorage):
    def __init__(self, client, bucket: str, temp_path: str | Path = "/tmp/repos") -> None:
        self.client = client
        self.bucket = bucket
        self.temp_path = Path(temp_path)

    def _object_key(self, key: str) -> str:
        return f"{key}.tar.gz"

    def _local_path(self, key: str) -> Path:
        path = (self.temp_path / key).resolve()
        if not path.is_relative_to(self.temp_path.resolve()):
            raise ValueError(f"Storage key escapes temp path: {key!r}")
        return path

    def _archive_path(self, key: str) -> Path:
        local = self._local_path(key)
        return local.with_name(f"{local.name}.tar.gz")

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._object_key(key))
        except ClientError as exc:
            if str(exc.response.get("Error", {}).get("Code")) in _MISSING_CODES:
                return False
            raise StorageError(f"Could not check object store for {key}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Could not check object store for {key}") from exc
        return True

    def get_local_path(self, key: str) -> Path:
        local = self._local_path(key)
        if is_git_repository(local):
            return local
        # Missing, or left half-extracted by an interrupted download
        self._remove_local(key)
        self._download(key, local)
        return local

    def clone_from_git(self, remote_url: str, key: str, clean_url: str | None = None) -> Path:
        local = self._local_path(key)
        bare_clone(remote_url, local, clean_url=clean_url)
        self._upload(key, local)
        logger.info("Repository cloned to object store", key=key, bucket=self.bucket)
        return local

    def fetch_updates(self, key: str, remote_url: str | None = None) -> None:
        local = self.get_local_path(key)
        fetch_heads(local, remote_url)
        self._upload(key, local)
        logger.info("Repository fetched and uploaded", key=key, bucket=self.bucket)

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._object_key(key))
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Could not delete archive for {key}") from exc
        self._remove_local(key)
        logger.info("Repository copy deleted", key=key, bucket=self.bucket)

    def ensure_directory(self) -> None:
        self.temp_path.mkdir(parents=True, exist_ok=True)

    def _remove_local(self, key: str) -> None:
        local = self._local_path(key)
        if local.exists():
            shutil.rmtree(local)
        self._archive_path(key).unlink(missing_ok=True)

    def _download(self, key: str, local: Path) -> None:
        archive = self._archive_path(key)
        archive.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(self.bucket, self._object_key(key), str(archive))
            with tarfile.open(archive, "r:gz") as tar:
                tar.extractall(local.parent, filter="data")
            if not local.exists():
                raise StorageError(f"Archive for {key} does not contain {local.name}/")
        except (BotoCoreError, ClientError, OSError, tarfile.TarError) as exc:
            self._remove_local(key)
            raise StorageError(f"Failed to download repository {key}") from exc
        except StorageError:
            self._remove_local(key)
            raise
        finally:
            archive.unlink(missing_ok=True)
        logger.info("Repository downloaded from object store", key=key, path=str(local))

    def _upload(self, key: str, local: Path) -> None:
        archive = self._archive_path(key)
        try:
            with tarfile.open(archive, "w:gz") as tar:
                tar.add(local, arcname=local.name)
            self.client.upload_file(
                str(archive),
                self.bucket,
                self._object_key(key),
                ExtraArgs={"ContentType": "application/gzip"},
            )
        except (BotoCoreError, ClientError, OSError, tarfile.TarError) as exc:
            # The local copy is ahead of the archive; drop it so a retry starts clean
            self._remove_local(key)
            raise StorageError(f"Failed to upload repository {key}") from exc
        finally:
            archive.unlink(missing_ok=True)
