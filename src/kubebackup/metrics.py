from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest

from .models import BackupState, RunStatus, TreeBuildReport


class BackupMetrics:
    """Prometheus collectors for backup runs, on a private registry."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.last_backup_status = Gauge(
            "kubebackup_last_backup_status",
            "The status of the last backup: 1 for success, 0 for failure.",
            registry=self.registry,
        )
        self.last_backup_timestamp = Gauge(
            "kubebackup_last_backup_timestamp",
            "Start time of the last successful backup as a Unix timestamp.",
            registry=self.registry,
        )
        self.last_backup_duration = Gauge(
            "kubebackup_last_backup_duration_seconds",
            "Duration of the last backup in seconds.",
            registry=self.registry,
        )
        self.runs_total = Counter(
            "kubebackup_runs_total",
            "Completed backup runs by result.",
            ["result"],
            registry=self.registry,
        )
        self.objects_total = Counter(
            "kubebackup_objects_total",
            "Objects written to backup archives, by resource type.",
            ["resource"],
            registry=self.registry,
        )
        self.namespaces_total = Gauge(
            "kubebackup_namespaces_total",
            "Number of namespaces included in the last backup.",
            registry=self.registry,
        )
        self.running = Gauge(
            "kubebackup_running",
            "1 while a backup run is in flight.",
            registry=self.registry,
        )

    def run_started(self) -> None:
        self.running.set(1)

    def run_finished(self, status: RunStatus, started_at_unix: float) -> None:
        succeeded = status.state is BackupState.SUCCESS
        self.last_backup_status.set(1 if succeeded else 0)
        self.last_backup_duration.set(status.duration_seconds)
        if succeeded:
            self.last_backup_timestamp.set(started_at_unix)
        self.runs_total.labels(result=status.state.value).inc()
        self.running.set(0)

    def record_tree(self, report: TreeBuildReport) -> None:
        self.namespaces_total.set(len(report.namespace_results))
        for resource, count in report.resource_counts.items():
            self.objects_total.labels(resource=resource).inc(count)

    def render(self) -> bytes:
        return generate_latest(self.registry)
