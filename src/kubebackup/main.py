from __future__ import annotations

from pathlib import Path
import logging
import os
import signal
import sys
import threading

from .backup import BackupPipeline, BackupPipelineConfig
from .config import BACKUP_TARGET_S3, AppConfig, ConfigError, ensure_directories, validate_config
from .k8s import (
    ClusterReader,
    KubernetesAuthenticationError,
    KubernetesDiscoveryError,
    load_kubernetes_clients,
    verify_cluster_access,
)
from .logging_config import configure_logging
from .metrics import BackupMetrics
from .models import BackupState
from .s3 import ObjectStore, RetentionManager, build_s3_client, remove_custom_ca
from .scheduler import BackupScheduler, RunState
from .server import ControlServer, create_app
from .tree import ObjectErrorPolicy

logger = logging.getLogger(__name__)

SERVICEACCOUNT_TOKEN_PATH = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")


def build_pipeline(config: AppConfig, reader: ClusterReader, metrics: BackupMetrics) -> BackupPipeline:
    retention = None
    if config.backup_target == BACKUP_TARGET_S3:
        store = ObjectStore(build_s3_client(config.s3, ca_dir=config.work_dir), config.s3.bucket)
        retention = RetentionManager(store, folder=config.s3.folder, retention_days=config.retention_days)

    return BackupPipeline(
        source=reader,
        config=BackupPipelineConfig(
            work_dir=config.work_dir,
            backup_dir=config.backup_dir,
            max_parallel_namespaces=config.max_parallel_namespaces,
            on_object_error=ObjectErrorPolicy(config.on_object_error),
            strip_managed_fields=config.strip_managed_fields,
        ),
        retention=retention,
        metrics=metrics,
    )


def main() -> int:
    config = AppConfig.from_env()
    configure_logging(config.log_level)

    try:
        validate_config(config)
        ensure_directories(config)
    except (ConfigError, OSError) as error:
        logger.critical("Configuration validation failed: %s", error)
        return 2

    in_cluster = not config.kubeconfig_path and _is_incluster_service_account_environment()
    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=config.kubeconfig_path,
            context=config.context,
            in_cluster=in_cluster,
        )
        logger.info("Verifying access to the Kubernetes cluster...")
        verify_cluster_access(clients, request_timeout_seconds=config.request_timeout_seconds)
    except (KubernetesAuthenticationError, KubernetesDiscoveryError) as error:
        logger.critical("%s", error)
        return 1
    logger.info("Access to the Kubernetes cluster verified successfully.")

    metrics = BackupMetrics()
    reader = ClusterReader(clients, request_timeout_seconds=config.request_timeout_seconds)
    pipeline = build_pipeline(config, reader, metrics)
    scheduler = BackupScheduler(
        pipeline.run,
        state=RunState(),
        metrics=metrics,
        cron_schedule=config.cron_schedule,
        interval_seconds=config.interval_seconds,
    )

    server = ControlServer(create_app(scheduler, metrics), port=config.metrics_port)
    server.start()
    try:
        return _serve(config, scheduler)
    finally:
        server.stop()
        remove_custom_ca(config.work_dir)
        logger.info("Exiting gracefully.")


def _serve(config: AppConfig, scheduler: BackupScheduler) -> int:
    if config.run_once:
        logger.info("RunOnce flag is enabled. Performing a single backup and exiting.")
        status = scheduler.run_once()
        return 0 if status.state is BackupState.SUCCESS else 1

    stop_event = threading.Event()

    def _request_shutdown(signum: int, _frame: object) -> None:
        logger.info("Received %s, shutting down...", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_shutdown)
    signal.signal(signal.SIGTERM, _request_shutdown)

    if config.disable_cron:
        logger.info("Cron scheduling is disabled; backups run only when triggered over HTTP.")
        while not stop_event.wait(1.0):
            pass
    else:
        scheduler.serve_forever(stop_event)

    if not scheduler.wait_for_idle(config.shutdown_grace_seconds):
        logger.warning("Backup still running after %ds; abandoning it.", config.shutdown_grace_seconds)
    return 0


def _is_incluster_service_account_environment() -> bool:
    return bool(os.getenv("KUBERNETES_SERVICE_HOST") and SERVICEACCOUNT_TOKEN_PATH.exists())


if __name__ == "__main__":
    sys.exit(main())
