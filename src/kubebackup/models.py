from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ResourceScope(str, Enum):
    NAMESPACED = "Namespaced"
    CLUSTER = "Cluster"


class DiscoveryState(str, Enum):
    COMPLETE = "complete"
    DEGRADED = "degraded"
    FAILED = "failed"


class BackupState(str, Enum):
    UNKNOWN = "unknown"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class ResourceType:
    group: str
    version: str
    resource: str
    scope: ResourceScope

    @property
    def group_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def api_path(self) -> str:
        if not self.group:
            return f"/api/{self.version}"
        return f"/apis/{self.group}/{self.version}"

    @property
    def dir_name(self) -> str:
        # resource.group keeps same-named resources of different groups apart (events vs events.events.k8s.io).
        return f"{self.resource}.{self.group}" if self.group else self.resource

    @property
    def namespaced(self) -> bool:
        return self.scope is ResourceScope.NAMESPACED


@dataclass(frozen=True)
class DiscoveryOutcome:
    """Tagged result of resource discovery.

    ``DEGRADED`` carries the warnings of the group-versions that were skipped;
    ``FAILED`` carries the error and no resource types.
    """

    state: DiscoveryState
    namespaced: tuple[ResourceType, ...] = ()
    cluster: tuple[ResourceType, ...] = ()
    warnings: tuple[str, ...] = ()
    error: str | None = None

    @classmethod
    def failed(cls, error: str) -> DiscoveryOutcome:
        return cls(state=DiscoveryState.FAILED, error=error)


@dataclass(frozen=True)
class ObjectRecord:
    resource_type: ResourceType
    namespace: str
    name: str
    document: dict


@dataclass(frozen=True)
class NamespaceResult:
    namespace: str
    ok: bool
    objects_written: int = 0
    error: str | None = None


@dataclass
class TreeBuildReport:
    objects_written: int = 0
    objects_failed: int = 0
    resource_counts: dict[str, int] = field(default_factory=dict)
    namespace_results: list[NamespaceResult] = field(default_factory=list)

    @property
    def failed_namespaces(self) -> list[NamespaceResult]:
        return [result for result in self.namespace_results if not result.ok]

    def combined_error(self) -> str | None:
        failures = sorted(self.failed_namespaces, key=lambda item: item.namespace)
        if not failures:
            return None
        return "; ".join(f"namespace '{item.namespace}': {item.error}" for item in failures)


@dataclass(frozen=True)
class RemoteObject:
    key: str
    last_modified: datetime


@dataclass(frozen=True)
class BackupRunResult:
    archive_name: str
    archive_path: str | None
    remote_key: str | None
    report: TreeBuildReport
    pruned_keys: tuple[str, ...] = ()


@dataclass(frozen=True)
class RunStatus:
    state: BackupState = BackupState.UNKNOWN
    message: str = "No backups have been run yet."
    started_at: str = ""
    duration_seconds: float = 0.0

    def as_dict(self) -> dict[str, object]:
        return {
            "status": self.state.value,
            "message": self.message,
            "time": self.started_at,
            "duration_seconds": round(self.duration_seconds, 3),
        }
