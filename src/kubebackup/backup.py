from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, Protocol
import logging
import shutil
import tempfile

from .archive import ArchiveError, archive_name, create_archive
from .k8s import KubernetesDiscoveryError
from .metrics import BackupMetrics
from .models import BackupRunResult, DiscoveryOutcome, DiscoveryState, TreeBuildReport
from .s3 import RetentionError, RetentionManager, StorageError
from .tree import BackupTreeBuilder, ObjectErrorPolicy, ObjectExtractor, ObjectSource

logger = logging.getLogger(__name__)

TREE_DIR_PREFIX = "kubebackup-"


class ClusterSource(ObjectSource, Protocol):
    def list_resource_types(self) -> DiscoveryOutcome: ...

    def list_namespaces(self) -> list[str]: ...


@dataclass(frozen=True)
class BackupPipelineConfig:
    work_dir: Path
    backup_dir: Path
    max_parallel_namespaces: int = 8
    on_object_error: ObjectErrorPolicy = ObjectErrorPolicy.SKIP
    strip_managed_fields: bool = True


class BackupStageError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


class BackupPipeline:
    """One full backup: discover, build the tree, archive, upload, prune.

    With no ``retention`` manager the archive is written to ``backup_dir`` and
    kept there. Otherwise it is built in ``work_dir``, uploaded, and removed
    locally once the upload is confirmed. Pruning runs only after a confirmed
    upload of a complete tree.
    """

    def __init__(
        self,
        *,
        source: ClusterSource,
        config: BackupPipelineConfig,
        retention: RetentionManager | None = None,
        metrics: BackupMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.source = source
        self.config = config
        self.retention = retention
        self.metrics = metrics
        self.clock = clock or (lambda: datetime.now(tz=UTC))
        self._last_archive_name: str | None = None

    def run(self) -> BackupRunResult:
        name = self._next_archive_name()

        logger.info("Fetching namespaces...")
        try:
            namespaces = self.source.list_namespaces()
        except KubernetesDiscoveryError as error:
            raise BackupStageError(stage="namespaces", reason=str(error)) from error
        logger.info("Found %d namespaces.", len(namespaces))

        logger.info("Discovering API resource types...")
        outcome = self.source.list_resource_types()
        if outcome.state is DiscoveryState.FAILED:
            raise BackupStageError(stage="discovery", reason=outcome.error or "resource discovery failed")
        for warning in outcome.warnings:
            logger.warning("Partial discovery error: %s", warning)
        logger.info(
            "Found %d namespaced and %d cluster-scoped resource types.",
            len(outcome.namespaced),
            len(outcome.cluster),
        )

        archive_path = self._archive_path(name)
        report = self._build_and_archive(outcome, namespaces, archive_path)
        if self.metrics is not None:
            self.metrics.record_tree(report)

        tree_error = report.combined_error()
        if self.retention is None:
            logger.info("Backup tarball created at: %s", archive_path)
            return BackupRunResult(archive_name=name, archive_path=str(archive_path), remote_key=None, report=report)

        try:
            remote_key = self.retention.upload(archive_path)
        except StorageError as error:
            logger.error("Upload failed; keeping local archive at %s", archive_path)
            raise BackupStageError(stage="upload", reason=str(error)) from error
        archive_path.unlink(missing_ok=True)

        pruned: list[str] = []
        if tree_error:
            logger.warning("Backup tree is incomplete; skipping cleanup of old backups")
        else:
            try:
                pruned = self.retention.prune()
            except RetentionError as error:
                logger.error("Error cleaning up old backups: %s", error)

        return BackupRunResult(
            archive_name=name,
            archive_path=None,
            remote_key=remote_key,
            report=report,
            pruned_keys=tuple(pruned),
        )

    def _next_archive_name(self) -> str:
        """Name for this run's archive, always later than the previous run's name.

        A run started in the same second as the previous one, or colliding with
        an archive already in ``backup_dir``, moves its timestamp forward a second.
        """
        moment = self.clock()
        name = archive_name(moment)
        while (self._last_archive_name is not None and name <= self._last_archive_name) or (
            self.retention is None and (self.config.backup_dir / name).exists()
        ):
            moment += timedelta(seconds=1)
            name = archive_name(moment)
        self._last_archive_name = name
        return name

    def _archive_path(self, name: str) -> Path:
        directory = self.config.backup_dir if self.retention is None else self.config.work_dir
        return directory / name

    def _build_and_archive(self, outcome: DiscoveryOutcome, namespaces: list[str], archive_path: Path) -> TreeBuildReport:
        try:
            self.config.work_dir.mkdir(parents=True, exist_ok=True)
            tree_dir = Path(tempfile.mkdtemp(prefix=TREE_DIR_PREFIX, dir=self.config.work_dir))
        except OSError as error:
            raise BackupStageError(stage="workdir", reason=f"error creating temporary directory: {error}") from error
        logger.info("Created temporary directory: %s", tree_dir)

        try:
            builder = BackupTreeBuilder(
                ObjectExtractor(
                    self.source,
                    on_object_error=self.config.on_object_error,
                    strip_managed_fields=self.config.strip_managed_fields,
                ),
                max_workers=self.config.max_parallel_namespaces,
            )
            report = builder.build(outcome.namespaced, outcome.cluster, namespaces, tree_dir)
            logger.info(
                "Backup tree built: %d objects written, %d objects skipped.",
                report.objects_written,
                report.objects_failed,
            )
            try:
                create_archive(tree_dir, archive_path)
            except ArchiveError as error:
                raise BackupStageError(stage="archive", reason=str(error)) from error
            return report
        finally:
            logger.info("Cleaning up temporary directory: %s", tree_dir)
            shutil.rmtree(tree_dir, onexc=_log_cleanup_failure)


def _log_cleanup_failure(function: Callable[..., object], path: str, error: BaseException) -> None:
    logger.error("Failed to clean up %s: %s", path, error)
