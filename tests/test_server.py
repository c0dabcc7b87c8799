from __future__ import annotations

import threading

from fastapi.testclient import TestClient

from kubebackup import __version__
from kubebackup.metrics import BackupMetrics
from kubebackup.models import BackupRunResult, TreeBuildReport
from kubebackup.scheduler import BackupScheduler
from kubebackup.server import create_app


def _result() -> BackupRunResult:
    return BackupRunResult(archive_name="a.tar.gz", archive_path=None, remote_key="a.tar.gz", report=TreeBuildReport())


def _client(run_backup=_result) -> tuple[TestClient, BackupScheduler, BackupMetrics]:
    metrics = BackupMetrics()
    scheduler = BackupScheduler(run_backup, metrics=metrics)
    return TestClient(create_app(scheduler, metrics)), scheduler, metrics


def test_healthz_returns_plain_ok() -> None:
    client, _, _ = _client()

    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.text == "ok"


def test_status_before_any_run_reports_unknown_and_idle() -> None:
    client, _, _ = _client()

    body = client.get("/status").json()

    assert body["status"] == "unknown"
    assert body["message"] == "No backups have been run yet."
    assert body["running"] is False


def test_post_backup_when_idle_returns_accepted_and_records_success() -> None:
    client, scheduler, _ = _client()

    response = client.post("/backup")

    assert response.status_code == 202
    assert response.json()["detail"].startswith("Backup triggered successfully at ")
    assert scheduler.wait_for_idle(5) is True
    assert client.get("/status").json()["status"] == "success"


def test_post_backup_while_running_returns_conflict() -> None:
    release = threading.Event()

    def _slow() -> BackupRunResult:
        assert release.wait(5)
        return _result()

    client, scheduler, _ = _client(_slow)

    assert client.post("/backup").status_code == 202
    response = client.post("/backup")
    assert client.get("/status").json()["running"] is True
    release.set()

    assert response.status_code == 409
    assert response.json() == {"detail": "Another task is already running"}
    assert scheduler.wait_for_idle(5) is True


def test_metrics_exposes_backup_collectors() -> None:
    client, scheduler, _ = _client()
    scheduler.run_once()

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "kubebackup_last_backup_status 1.0" in response.text
    assert 'kubebackup_runs_total{result="success"} 1.0' in response.text


def test_index_and_version_describe_the_service() -> None:
    client, _, _ = _client()

    assert client.get("/").json()["endpoints"]["backup"] == "/backup"
    assert client.get("/version").json() == {"version": __version__}
