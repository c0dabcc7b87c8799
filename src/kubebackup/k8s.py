from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar
from urllib.parse import quote
import logging

from kubernetes import client, config
from kubernetes.client import ApiException

from .models import DiscoveryOutcome, DiscoveryState, ResourceScope, ResourceType

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
DEFAULT_LIST_PAGE_SIZE = 500
REQUIRED_VERBS = frozenset({"get", "list"})
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class KubernetesDiscoveryError(RuntimeError):
    """Raised when namespaces or resource types cannot be discovered."""


class KubernetesRequestError(RuntimeError):
    """Raised when listing or reading objects of one resource type fails."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(api_client=api_client, core_api=client.CoreV1Api(api_client))


def verify_cluster_access(clients: KubernetesClients, *, request_timeout_seconds: int) -> None:
    _safe_kubernetes_call(
        operation="verify access to the cluster",
        hint="Confirm cluster connectivity and RBAC verbs for namespaces.",
        error_class=KubernetesDiscoveryError,
        func=lambda: clients.core_api.list_namespace(limit=1, _request_timeout=request_timeout_seconds),
    )


class ClusterReader:
    """Read-only view of the cluster used by a backup run.

    Discovery goes through the raw discovery endpoints rather than the typed
    APIs so that custom resources are catalogued alongside built-in ones.
    """

    def __init__(
        self,
        clients: KubernetesClients,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        page_size: int = DEFAULT_LIST_PAGE_SIZE,
    ) -> None:
        if request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.clients = clients
        self.request_timeout_seconds = request_timeout_seconds
        self.page_size = page_size

    def list_resource_types(self) -> DiscoveryOutcome:
        try:
            group_versions = self._preferred_group_versions()
        except KubernetesDiscoveryError as error:
            return DiscoveryOutcome.failed(str(error))
        if not group_versions:
            return DiscoveryOutcome.failed("discovery returned no API group versions")

        namespaced: list[ResourceType] = []
        cluster: list[ResourceType] = []
        warnings: list[str] = []
        for group, version in group_versions:
            path = f"/api/{version}" if not group else f"/apis/{group}/{version}"
            try:
                resource_list = self._get_json(path)
            except ApiException as error:
                warnings.append(_format_api_exception_message(
                    operation=f"discover resources for {path}",
                    hint="The API group is skipped for this run.",
                    error=error,
                ))
                continue
            except Exception as error:  # pylint: disable=broad-except
                warnings.append(f"Kubernetes discovery failed for {path}: {error}")
                continue

            for resource_type in _parse_resource_list(group, version, resource_list):
                if resource_type.namespaced:
                    namespaced.append(resource_type)
                else:
                    cluster.append(resource_type)

        if warnings and not (namespaced or cluster):
            return DiscoveryOutcome.failed("; ".join(warnings))
        return DiscoveryOutcome(
            state=DiscoveryState.DEGRADED if warnings else DiscoveryState.COMPLETE,
            namespaced=tuple(namespaced),
            cluster=tuple(cluster),
            warnings=tuple(warnings),
        )

    def list_namespaces(self) -> list[str]:
        namespaces = _safe_kubernetes_call(
            operation="list namespaces",
            hint="Confirm cluster connectivity and RBAC verbs for namespaces.",
            error_class=KubernetesDiscoveryError,
            func=lambda: self.clients.core_api.list_namespace(_request_timeout=self.request_timeout_seconds).items,
        )
        return [item.metadata.name for item in namespaces if item.metadata and item.metadata.name]

    def list_object_names(self, resource_type: ResourceType, namespace: str = "") -> list[str]:
        path = _collection_path(resource_type, namespace)
        names: list[str] = []
        continue_token = ""
        while True:
            query: list[tuple[str, Any]] = [("limit", self.page_size)]
            if continue_token:
                query.append(("continue", continue_token))
            page = _safe_kubernetes_call(
                operation=f"list {_describe(resource_type, namespace)}",
                hint="Check RBAC list verbs for this resource and confirm the namespace still exists.",
                error_class=KubernetesRequestError,
                func=lambda query=query: self._get_json(path, query),
            )
            for item in page.get("items") or []:
                name = (item.get("metadata") or {}).get("name")
                if name:
                    names.append(name)
            continue_token = (page.get("metadata") or {}).get("continue") or ""
            if not continue_token:
                return names

    def fetch_object(self, resource_type: ResourceType, namespace: str, name: str) -> dict:
        path = f"{_collection_path(resource_type, namespace)}/{quote(name, safe='')}"
        document = _safe_kubernetes_call(
            operation=f"get '{name}' from {_describe(resource_type, namespace)}",
            hint="The object may have been deleted since it was listed.",
            error_class=KubernetesRequestError,
            func=lambda: self._get_json(path),
        )
        if not isinstance(document, dict):
            raise KubernetesRequestError(f"unexpected response type for {path}: {type(document).__name__}")
        return document

    def _preferred_group_versions(self) -> list[tuple[str, str]]:
        core = _safe_kubernetes_call(
            operation="discover core API versions",
            hint="Confirm cluster connectivity.",
            error_class=KubernetesDiscoveryError,
            func=lambda: self._get_json("/api"),
        )
        groups = _safe_kubernetes_call(
            operation="discover API groups",
            hint="Confirm cluster connectivity.",
            error_class=KubernetesDiscoveryError,
            func=lambda: self._get_json("/apis"),
        )

        group_versions: list[tuple[str, str]] = []
        core_versions = core.get("versions") or []
        if core_versions:
            group_versions.append(("", core_versions[0]))
        for group in groups.get("groups") or []:
            name = group.get("name")
            preferred = (group.get("preferredVersion") or {}).get("version")
            if not preferred:
                versions = group.get("versions") or []
                preferred = versions[0].get("version") if versions else None
            if name and preferred:
                group_versions.append((name, preferred))
        return group_versions

    def _get_json(self, path: str, query: list[tuple[str, Any]] | None = None) -> Any:
        return self.clients.api_client.call_api(
            path,
            "GET",
            query_params=query or [],
            header_params={"Accept": "application/json"},
            auth_settings=["BearerToken"],
            response_type="object",
            _return_http_data_only=True,
            _request_timeout=self.request_timeout_seconds,
        )


def _parse_resource_list(group: str, version: str, resource_list: Any) -> list[ResourceType]:
    resource_types: list[ResourceType] = []
    for entry in (resource_list or {}).get("resources") or []:
        name = entry.get("name") or ""
        # Subresources such as pods/log cannot be listed on their own.
        if not name or "/" in name:
            continue
        if not REQUIRED_VERBS.issubset(set(entry.get("verbs") or [])):
            continue
        scope = ResourceScope.NAMESPACED if entry.get("namespaced") else ResourceScope.CLUSTER
        resource_types.append(ResourceType(group=group, version=version, resource=name, scope=scope))
    return resource_types


def _collection_path(resource_type: ResourceType, namespace: str) -> str:
    if resource_type.namespaced:
        if not namespace:
            raise ValueError(f"namespace is required for namespaced resource {resource_type.resource}")
        return f"{resource_type.api_path}/namespaces/{quote(namespace, safe='')}/{resource_type.resource}"
    return f"{resource_type.api_path}/{resource_type.resource}"


def _describe(resource_type: ResourceType, namespace: str) -> str:
    qualified = f"{resource_type.resource} ({resource_type.group_version})"
    return f"{qualified} in namespace '{namespace}'" if namespace else qualified


def _safe_kubernetes_call(
    *,
    operation: str,
    hint: str,
    error_class: type[RuntimeError],
    func: Callable[[], T],
) -> T:
    try:
        return func()
    except ApiException as error:
        message = _format_api_exception_message(operation=operation, hint=hint, error=error)
        if error_class is KubernetesRequestError:
            raise KubernetesRequestError(message, status=error.status) from error
        raise error_class(message) from error
    except Exception as error:
        raise error_class(f"Kubernetes request failed while trying to {operation}: {error}. {hint}") from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes request failed while trying to {operation}: API status {status} ({reason}). {hint}"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
