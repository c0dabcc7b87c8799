from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Protocol, Sequence
import logging

import yaml

from .k8s import KubernetesRequestError
from .models import NamespaceResult, ObjectRecord, ResourceType, TreeBuildReport

logger = logging.getLogger(__name__)

CLUSTER_SCOPED_DIR = "cluster-scoped"
NAMESPACE_SCOPED_DIR = "namespace-scoped"
OBJECT_FILE_SUFFIX = ".yaml"


class ObjectSource(Protocol):
    def list_object_names(self, resource_type: ResourceType, namespace: str = "") -> list[str]: ...

    def fetch_object(self, resource_type: ResourceType, namespace: str, name: str) -> dict: ...


class ObjectErrorPolicy(str, Enum):
    """What the extractor does when a single object cannot be written.

    ``SKIP`` logs the failure and moves on to the next object. ``FAIL`` raises
    ``ObjectExtractionError`` so the containing resource type (cluster scope)
    or namespace (namespace scope) is reported as failed.
    """

    SKIP = "skip"
    FAIL = "fail"


class ObjectExtractionError(RuntimeError):
    """Raised for a per-object failure under ``ObjectErrorPolicy.FAIL``."""


@dataclass
class ResourceExtraction:
    written: int = 0
    failed: int = 0


class ObjectExtractor:
    def __init__(
        self,
        source: ObjectSource,
        *,
        on_object_error: ObjectErrorPolicy = ObjectErrorPolicy.SKIP,
        strip_managed_fields: bool = True,
    ) -> None:
        self.source = source
        self.on_object_error = on_object_error
        self.strip_managed_fields = strip_managed_fields

    def extract_resource(self, resource_type: ResourceType, namespace: str, dest_dir: Path) -> ResourceExtraction:
        """Write every object of ``resource_type`` in ``namespace`` under ``dest_dir``.

        A failure to list the resource propagates as ``KubernetesRequestError``;
        per-object failures are routed through the error policy.
        """
        names = self.source.list_object_names(resource_type, namespace)
        extraction = ResourceExtraction()
        if not names:
            logger.debug("No objects found for %s%s", resource_type.dir_name, _in_namespace(namespace))
            return extraction

        logger.debug("Found %d objects for %s%s", len(names), resource_type.dir_name, _in_namespace(namespace))
        dest_dir.mkdir(parents=True, exist_ok=True)
        for name in names:
            try:
                record = ObjectRecord(
                    resource_type=resource_type,
                    namespace=namespace,
                    name=name,
                    document=self.source.fetch_object(resource_type, namespace, name),
                )
                write_object(record, dest_dir, strip_managed_fields=self.strip_managed_fields)
            except Exception as error:  # pylint: disable=broad-except
                extraction.failed += 1
                self._handle_object_error(resource_type, namespace, name, error)
                continue
            extraction.written += 1
        return extraction

    def _handle_object_error(self, resource_type: ResourceType, namespace: str, name: str, error: Exception) -> None:
        message = f"failed to back up {resource_type.dir_name}/{name}{_in_namespace(namespace)}: {_error_message(error)}"
        if self.on_object_error is ObjectErrorPolicy.FAIL:
            raise ObjectExtractionError(message) from error
        logger.error("Skipping object: %s", message)


def write_object(record: ObjectRecord, dest_dir: Path, *, strip_managed_fields: bool = True) -> Path:
    document = record.document
    if strip_managed_fields and isinstance(document.get("metadata"), dict) and "managedFields" in document["metadata"]:
        document = {**document, "metadata": {k: v for k, v in document["metadata"].items() if k != "managedFields"}}
    content = yaml.safe_dump(document, default_flow_style=False, sort_keys=True, allow_unicode=True)
    path = dest_dir / f"{_object_file_stem(record.name)}{OBJECT_FILE_SUFFIX}"
    path.write_text(content, encoding="utf-8")
    return path


@dataclass
class _NamespaceOutcome:
    result: NamespaceResult
    failed: int = 0
    resource_counts: dict[str, int] = field(default_factory=dict)


class BackupTreeBuilder:
    """Drives the extractor across the catalog and namespace set.

    Cluster-scoped types are processed sequentially. Namespaces are processed
    in parallel, one task per namespace, with resource types in discovery order
    inside each task. A namespace failure never cancels its siblings.
    """

    def __init__(self, extractor: ObjectExtractor, *, max_workers: int = 8) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self.extractor = extractor
        self.max_workers = max_workers

    def build(
        self,
        namespaced_types: Sequence[ResourceType],
        cluster_types: Sequence[ResourceType],
        namespaces: Iterable[str],
        dest_root: Path,
    ) -> TreeBuildReport:
        report = TreeBuildReport()
        self._build_cluster_scoped(cluster_types, dest_root / CLUSTER_SCOPED_DIR, report)

        namespace_list = list(dict.fromkeys(namespaces))
        outcomes = self._build_namespaces(namespaced_types, namespace_list, dest_root / NAMESPACE_SCOPED_DIR)
        for outcome in outcomes:
            report.namespace_results.append(outcome.result)
            report.objects_written += outcome.result.objects_written
            report.objects_failed += outcome.failed
            _merge_counts(report.resource_counts, outcome.resource_counts)

        for failure in report.failed_namespaces:
            logger.error("Error processing namespace '%s': %s", failure.namespace, failure.error)
        return report

    def _build_cluster_scoped(self, cluster_types: Sequence[ResourceType], base_dir: Path, report: TreeBuildReport) -> None:
        base_dir.mkdir(parents=True, exist_ok=True)
        for resource_type in cluster_types:
            logger.info("Processing cluster-scoped resource: %s", resource_type.dir_name)
            try:
                extraction = self.extractor.extract_resource(resource_type, "", base_dir / resource_type.dir_name)
            except (KubernetesRequestError, ObjectExtractionError) as error:
                logger.error("Skipping cluster-scoped resource '%s': %s", resource_type.dir_name, error)
                continue
            report.objects_written += extraction.written
            report.objects_failed += extraction.failed
            if extraction.written:
                _merge_counts(report.resource_counts, {resource_type.dir_name: extraction.written})

    def _build_namespaces(
        self,
        namespaced_types: Sequence[ResourceType],
        namespaces: list[str],
        base_dir: Path,
    ) -> list[_NamespaceOutcome]:
        if not namespaces:
            return []

        outcomes: list[_NamespaceOutcome] = []
        workers = min(self.max_workers, len(namespaces))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kubebackup-ns") as executor:
            futures = {
                namespace: executor.submit(self._process_namespace, namespace, namespaced_types, base_dir / namespace)
                for namespace in namespaces
            }
            for namespace, future in futures.items():
                try:
                    outcomes.append(future.result())
                except Exception as error:  # pylint: disable=broad-except
                    outcomes.append(
                        _NamespaceOutcome(result=NamespaceResult(namespace=namespace, ok=False, error=_error_message(error)))
                    )
        return outcomes

    def _process_namespace(
        self,
        namespace: str,
        namespaced_types: Sequence[ResourceType],
        namespace_dir: Path,
    ) -> _NamespaceOutcome:
        logger.info("Processing namespace %s", namespace)
        try:
            _validate_path_component(namespace)
            namespace_dir.mkdir(parents=True, exist_ok=True)
        except (OSError, ValueError) as error:
            return _NamespaceOutcome(
                result=NamespaceResult(namespace=namespace, ok=False, error=f"cannot create directory: {error}")
            )

        written = 0
        failed = 0
        first_error: str | None = None
        counts: dict[str, int] = {}
        for resource_type in namespaced_types:
            try:
                extraction = self.extractor.extract_resource(
                    resource_type, namespace, namespace_dir / resource_type.dir_name
                )
            except KubernetesRequestError as error:
                logger.error("Error processing resource '%s' in namespace '%s': %s", resource_type.dir_name, namespace, error)
                continue
            except ObjectExtractionError as error:
                first_error = first_error or str(error)
                continue
            written += extraction.written
            failed += extraction.failed
            if extraction.written:
                counts[resource_type.dir_name] = extraction.written

        return _NamespaceOutcome(
            result=NamespaceResult(
                namespace=namespace,
                ok=first_error is None,
                objects_written=written,
                error=first_error,
            ),
            failed=failed,
            resource_counts=counts,
        )


def _merge_counts(target: dict[str, int], source: dict[str, int]) -> None:
    for key, value in source.items():
        target[key] = target.get(key, 0) + value


def _object_file_stem(name: str) -> str:
    _validate_path_component(name)
    return name


def _validate_path_component(value: str) -> None:
    if not value or value in {".", ".."} or "/" in value or "\\" in value or "\x00" in value:
        raise ValueError(f"unsafe name for a backup path: {value!r}")


def _in_namespace(namespace: str) -> str:
    return f" in namespace '{namespace}'" if namespace else ""


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
