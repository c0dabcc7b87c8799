from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import Mock

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.stub import Stubber

from kubebackup.archive import archive_name
from kubebackup.config import S3Config
from kubebackup.models import RemoteObject
from kubebackup.s3 import (
    CUSTOM_CA_FILE_NAME,
    ObjectStore,
    RetentionError,
    RetentionManager,
    StorageError,
    build_s3_client,
    remove_custom_ca,
)

_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


def _client_error(operation: str) -> ClientError:
    return ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, operation)


def _real_s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


def _store_with(objects: list[RemoteObject]) -> Mock:
    store = Mock(spec=ObjectStore)
    store.bucket = "backups"
    store.list.return_value = objects
    return store


def _archive_key(days: int, folder: str = "") -> str:
    name = archive_name(_NOW - timedelta(days=days))
    return f"{folder}/{name}" if folder else name


def _aged_archive(days: int, folder: str = "") -> RemoteObject:
    return RemoteObject(key=_archive_key(days, folder), last_modified=_NOW - timedelta(days=days))


def test_prune_with_thirty_day_retention_deletes_only_older_archives() -> None:
    fresh, month, old = _aged_archive(5, "kb"), _aged_archive(31, "kb"), _aged_archive(90, "kb")
    store = _store_with([fresh, month, old])
    manager = RetentionManager(store, folder="kb", retention_days=30)

    deleted = manager.prune(now=_NOW)

    assert sorted(deleted) == sorted([month.key, old.key])
    store.list.assert_called_once_with("kb/kubebackup_")
    assert fresh.key not in [call.args[0] for call in store.delete.call_args_list]


def test_prune_with_shared_bucket_leaves_non_archive_objects_in_place() -> None:
    foreign = RemoteObject(key="app-data/db.dump", last_modified=_NOW - timedelta(days=90))
    lookalike = RemoteObject(key="kubebackup_notes.txt", last_modified=_NOW - timedelta(days=90))
    nested = RemoteObject(key=f"kubebackup_old/{archive_name(_NOW)}", last_modified=_NOW - timedelta(days=90))
    archive = _aged_archive(90)
    store = _store_with([foreign, lookalike, nested, archive])

    deleted = RetentionManager(store, folder="", retention_days=30).prune(now=_NOW)

    assert deleted == [archive.key]
    store.list.assert_called_once_with("kubebackup_")
    store.delete.assert_called_once_with(archive.key)


def test_prune_with_archive_exactly_at_threshold_keeps_it() -> None:
    store = _store_with([_aged_archive(30)])

    assert RetentionManager(store, folder="", retention_days=30).prune(now=_NOW) == []
    store.delete.assert_not_called()


def test_prune_with_retention_disabled_does_not_list_or_delete() -> None:
    store = _store_with([_aged_archive(400)])

    assert RetentionManager(store, folder="", retention_days=0).prune(now=_NOW) == []
    store.list.assert_not_called()
    store.delete.assert_not_called()


def test_prune_with_naive_timestamps_treats_them_as_utc() -> None:
    key = _archive_key(45)
    naive = RemoteObject(key=key, last_modified=(_NOW - timedelta(days=45)).replace(tzinfo=None))
    store = _store_with([naive])

    assert RetentionManager(store, folder="", retention_days=30).prune(now=_NOW) == [key]


def test_prune_with_failing_delete_continues_with_remaining_candidates() -> None:
    first, second = _aged_archive(50), _aged_archive(40)
    store = _store_with([first, second])
    store.delete.side_effect = [StorageError("denied"), None]

    deleted = RetentionManager(store, folder="", retention_days=30).prune(now=_NOW)

    assert deleted == [second.key]
    assert store.delete.call_count == 2


def test_prune_with_listing_failure_raises_retention_error() -> None:
    store = _store_with([])
    store.list.side_effect = StorageError("bucket unreachable")

    with pytest.raises(RetentionError, match="bucket unreachable"):
        RetentionManager(store, folder="", retention_days=30).prune(now=_NOW)


def test_key_for_with_and_without_folder() -> None:
    store = _store_with([])

    assert RetentionManager(store, folder="/cluster-a/", retention_days=30).key_for("b.tar.gz") == "cluster-a/b.tar.gz"
    assert RetentionManager(store, folder="", retention_days=30).key_for("b.tar.gz") == "b.tar.gz"


def test_upload_with_folder_puts_file_under_prefixed_key(tmp_path: Path) -> None:
    archive = tmp_path / "kubebackup_2024-06-01_12-00-00.tar.gz"
    archive.write_bytes(b"data")
    store = _store_with([])

    key = RetentionManager(store, folder="kb", retention_days=30).upload(archive)

    assert key == "kb/kubebackup_2024-06-01_12-00-00.tar.gz"
    store.put_file.assert_called_once_with(archive, key)


def test_object_store_list_with_pages_collects_every_entry() -> None:
    s3_client = Mock()
    s3_client.get_paginator.return_value.paginate.return_value = [
        {"Contents": [{"Key": "kb/a.tar.gz", "LastModified": _NOW}]},
        {},
        {"Contents": [{"Key": "kb/b.tar.gz", "LastModified": _NOW}]},
    ]

    objects = ObjectStore(s3_client, "backups").list("kb/")

    assert [item.key for item in objects] == ["kb/a.tar.gz", "kb/b.tar.gz"]
    s3_client.get_paginator.assert_called_once_with("list_objects_v2")
    s3_client.get_paginator.return_value.paginate.assert_called_once_with(Bucket="backups", Prefix="kb/")


def test_object_store_put_file_with_rejected_upload_raises_storage_error(tmp_path: Path) -> None:
    archive = tmp_path / "kubebackup_2024-06-01_12-00-00.tar.gz"
    archive.write_bytes(b"data")
    s3_client = _real_s3_client()

    with Stubber(s3_client) as stubber:
        stubber.add_client_error("put_object", service_error_code="AccessDenied", http_status_code=403)
        with pytest.raises(StorageError, match="failed to upload"):
            ObjectStore(s3_client, "backups").put_file(archive, archive.name)


def test_object_store_delete_with_rejected_request_raises_storage_error() -> None:
    s3_client = _real_s3_client()

    with Stubber(s3_client) as stubber:
        stubber.add_client_error("delete_object", service_error_code="AccessDenied", http_status_code=403)
        with pytest.raises(StorageError, match="error deleting"):
            ObjectStore(s3_client, "backups").delete("a.tar.gz")


def test_object_store_without_bucket_raises_value_error() -> None:
    with pytest.raises(ValueError, match="bucket"):
        ObjectStore(Mock(), "")


def test_build_s3_client_with_plain_endpoint_uses_http_and_path_addressing(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    client_factory = Mock(return_value="client")
    monkeypatch.setattr("kubebackup.s3.boto3.client", client_factory)

    result = build_s3_client(
        S3Config(
            bucket="backups",
            region="us-east-1",
            endpoint="minio.local:9000",
            access_key_id="key",
            secret_access_key="secret",
            disable_ssl=True,
        ),
        ca_dir=tmp_path,
    )

    assert result == "client"
    kwargs = client_factory.call_args.kwargs
    assert client_factory.call_args.args == ("s3",)
    assert kwargs["endpoint_url"] == "http://minio.local:9000"
    assert kwargs["use_ssl"] is False
    assert kwargs["verify"] is True
    assert kwargs["aws_access_key_id"] == "key"
    assert kwargs["config"].s3 == {"addressing_style": "path"}
    assert not (tmp_path / CUSTOM_CA_FILE_NAME).exists()


def test_build_s3_client_with_inline_ca_writes_bundle_under_ca_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    client_factory = Mock()
    monkeypatch.setattr("kubebackup.s3.boto3.client", client_factory)

    build_s3_client(S3Config(bucket="backups", custom_ca="-----BEGIN CERTIFICATE-----\n"), ca_dir=tmp_path)

    verify = client_factory.call_args.kwargs["verify"]
    assert verify == str(tmp_path / CUSTOM_CA_FILE_NAME)
    assert Path(verify).read_text(encoding="utf-8") == "-----BEGIN CERTIFICATE-----\n"
    assert client_factory.call_args.kwargs["endpoint_url"] is None

    remove_custom_ca(tmp_path)

    assert not Path(verify).exists()
