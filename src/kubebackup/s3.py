from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
import logging
import os

import boto3
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .archive import ARCHIVE_PREFIX, parse_archive_timestamp
from .config import S3Config
from .models import RemoteObject

logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD_BYTES = 64 * 1024 * 1024
CUSTOM_CA_FILE_NAME = "s3-custom-ca.pem"


class StorageError(RuntimeError):
    """Raised when an object storage request fails."""


class RetentionError(StorageError):
    """Raised when remote archives cannot be listed for pruning."""


def persist_custom_ca(ca_content: str, directory: Path) -> str:
    # Fixed name: a restart overwrites the previous bundle instead of leaking a new one.
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / CUSTOM_CA_FILE_NAME
    path.write_text(ca_content, encoding="utf-8")
    os.chmod(path, 0o600)
    return str(path)


def remove_custom_ca(directory: Path) -> None:
    (directory / CUSTOM_CA_FILE_NAME).unlink(missing_ok=True)


def build_s3_client(settings: S3Config, *, ca_dir: Path) -> Any:
    verify: bool | str = True
    if settings.custom_ca_path:
        verify = settings.custom_ca_path
    elif settings.custom_ca:
        verify = persist_custom_ca(settings.custom_ca, ca_dir)

    endpoint_url = None
    client_config = Config(retries={"max_attempts": 5, "mode": "standard"})
    if settings.endpoint:
        scheme = "http" if settings.disable_ssl else "https"
        endpoint_url = settings.endpoint if "://" in settings.endpoint else f"{scheme}://{settings.endpoint}"
        client_config = client_config.merge(Config(s3={"addressing_style": "path"}))

    return boto3.client(
        "s3",
        region_name=settings.region or None,
        endpoint_url=endpoint_url,
        aws_access_key_id=settings.access_key_id or None,
        aws_secret_access_key=settings.secret_access_key or None,
        use_ssl=not settings.disable_ssl,
        verify=verify,
        config=client_config,
    )


class ObjectStore:
    """The three storage operations a backup run needs, on one bucket."""

    def __init__(self, s3_client: Any, bucket: str) -> None:
        if not bucket:
            raise ValueError("bucket is required")
        self.s3_client = s3_client
        self.bucket = bucket

    def put_file(self, path: Path, key: str) -> None:
        try:
            self.s3_client.upload_file(
                str(path),
                self.bucket,
                key,
                Config=TransferConfig(multipart_threshold=MULTIPART_THRESHOLD_BYTES),
            )
        except (BotoCoreError, ClientError, S3UploadFailedError) as error:
            raise StorageError(f"failed to upload {path.name} to s3://{self.bucket}/{key}: {error}") from error

    def list(self, prefix: str) -> list[RemoteObject]:
        objects: list[RemoteObject] = []
        try:
            paginator = self.s3_client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for entry in page.get("Contents", []):
                    objects.append(RemoteObject(key=entry["Key"], last_modified=entry["LastModified"]))
        except (BotoCoreError, ClientError) as error:
            raise StorageError(f"error listing objects in s3://{self.bucket}/{prefix}: {error}") from error
        return objects

    def delete(self, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as error:
            raise StorageError(f"error deleting s3://{self.bucket}/{key}: {error}") from error


class RetentionManager:
    def __init__(self, store: ObjectStore, *, folder: str, retention_days: int) -> None:
        self.store = store
        self.folder = folder.strip("/")
        self.retention_days = retention_days

    def key_for(self, archive_name: str) -> str:
        return f"{self.folder}/{archive_name}" if self.folder else archive_name

    def upload(self, archive_path: Path) -> str:
        key = self.key_for(archive_path.name)
        logger.info("Uploading file: %s to s3://%s/%s", archive_path, self.store.bucket, key)
        self.store.put_file(archive_path, key)
        logger.info("Backup successfully uploaded to S3: %s/%s", self.store.bucket, key)
        return key

    def prune(self, now: datetime | None = None) -> list[str]:
        """Delete remote archives strictly older than the retention window.

        Only keys named like a backup archive directly under the folder are
        candidates; anything else sharing the bucket is left alone. Returns the
        deleted keys. Individual delete failures are logged and the remaining
        candidates are still processed.
        """
        if self.retention_days <= 0:
            logger.info("Retention is disabled; skipping cleanup of old backups")
            return []

        threshold = (now or datetime.now(tz=UTC)) - timedelta(days=self.retention_days)
        prefix = self.key_for(ARCHIVE_PREFIX)
        logger.info("Cleaning up backups older than %d days under s3://%s/%s", self.retention_days, self.store.bucket, prefix)
        try:
            objects = self.store.list(prefix)
        except StorageError as error:
            raise RetentionError(str(error)) from error

        deleted: list[str] = []
        for remote in sorted(objects, key=lambda item: item.key):
            if not self._is_archive_key(remote.key):
                logger.debug("Ignoring non-archive object %s", remote.key)
                continue
            if _as_utc(remote.last_modified) >= threshold:
                continue
            logger.info("Deleting object %s from S3 bucket", remote.key)
            try:
                self.store.delete(remote.key)
            except StorageError as error:
                logger.error("Failed to delete expired backup %s: %s", remote.key, error)
                continue
            deleted.append(remote.key)
        return deleted

    def _is_archive_key(self, key: str) -> bool:
        name = key[len(self.folder) + 1:] if self.folder else key
        return "/" not in name and parse_archive_timestamp(name) is not None


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)
