from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
import logging
import os
import tempfile

from croniter import croniter

logger = logging.getLogger(__name__)

BACKUP_TARGET_S3 = "s3"
BACKUP_TARGET_LOCAL = "local"
OBJECT_ERROR_POLICIES = frozenset({"skip", "fail"})

_TRUTHY = frozenset({"1", "t", "true", "yes", "on", "enabled"})
_FALSY = frozenset({"0", "f", "false", "no", "off", "disabled"})


class ConfigError(ValueError):
    """Raised when the runtime configuration cannot be used."""


@dataclass(frozen=True)
class S3Config:
    bucket: str = ""
    folder: str = ""
    region: str = ""
    endpoint: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    disable_ssl: bool = False
    custom_ca: str = ""
    custom_ca_path: str = ""


@dataclass(frozen=True)
class AppConfig:
    kubeconfig_path: str | None = None
    context: str | None = None
    request_timeout_seconds: int = 30
    work_dir: Path = Path(tempfile.gettempdir())
    backup_dir: Path = Path("./backups")
    backup_target: str = BACKUP_TARGET_S3
    cron_schedule: str = "0 0 * * *"
    interval_seconds: int = 0
    run_once: bool = False
    disable_cron: bool = False
    retention_days: int = 30
    max_parallel_namespaces: int = 8
    strip_managed_fields: bool = True
    on_object_error: str = "skip"
    metrics_port: int = 9999
    log_level: str = "info"
    shutdown_grace_seconds: int = 300
    s3: S3Config = S3Config()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AppConfig:
        env = os.environ if environ is None else environ
        debug = _env_bool(env, "DEBUG", False)
        return cls(
            kubeconfig_path=_env_str(env, "KUBECONFIG") or None,
            context=_env_str(env, "KUBE_CONTEXT") or None,
            request_timeout_seconds=_env_int(env, "REQUEST_TIMEOUT_SECONDS", 30),
            work_dir=Path(_env_str(env, "WORK_DIR", tempfile.gettempdir())),
            backup_dir=Path(_env_str(env, "BACKUP_DIR", "./backups")),
            backup_target=_env_str(env, "BACKUP_TARGET", BACKUP_TARGET_S3).lower(),
            cron_schedule=_env_str(env, "CRON_SCHEDULE", "0 0 * * *"),
            interval_seconds=_env_int(env, "BACKUP_INTERVAL_SECONDS", 0),
            run_once=_env_bool(env, "RUN_ONCE", False),
            disable_cron=_env_bool(env, "DISABLE_CRON", False),
            retention_days=_env_int(env, "RETENTION", 30),
            max_parallel_namespaces=_env_int(env, "MAX_PARALLEL_NAMESPACES", 8),
            strip_managed_fields=_env_bool(env, "STRIP_MANAGED_FIELDS", True),
            on_object_error=_env_str(env, "ON_OBJECT_ERROR", "skip").lower(),
            metrics_port=_env_int(env, "METRICS_PORT", 9999),
            log_level="debug" if debug else _env_str(env, "LOG_LEVEL", "info").lower(),
            shutdown_grace_seconds=_env_int(env, "SHUTDOWN_GRACE_SECONDS", 300),
            s3=S3Config(
                bucket=_env_str(env, "S3_BUCKET"),
                folder=_env_str(env, "S3_FOLDER").strip("/"),
                region=_env_str(env, "S3_REGION"),
                endpoint=_env_str(env, "S3_ENDPOINT"),
                access_key_id=_env_str(env, "S3_ACCESS_KEY_ID"),
                secret_access_key=_env_str(env, "S3_SECRET_ACCESS_KEY"),
                disable_ssl=_env_bool(env, "S3_DISABLE_SSL", False),
                custom_ca=_env_str(env, "S3_CUSTOM_CA"),
                custom_ca_path=_env_str(env, "S3_CUSTOM_CA_PATH"),
            ),
        )


def validate_config(config: AppConfig) -> None:
    errors: list[str] = []
    if config.interval_seconds <= 0 and not config.disable_cron and not config.run_once:
        if not config.cron_schedule.strip():
            errors.append("CRON_SCHEDULE cannot be empty")
        elif not croniter.is_valid(config.cron_schedule):
            errors.append(f"CRON_SCHEDULE is not a valid cron expression: {config.cron_schedule!r}")

    if config.backup_target not in {BACKUP_TARGET_S3, BACKUP_TARGET_LOCAL}:
        errors.append(f"BACKUP_TARGET must be 's3' or 'local', got {config.backup_target!r}")
    elif config.backup_target == BACKUP_TARGET_S3:
        if not config.s3.access_key_id or not config.s3.secret_access_key:
            errors.append("S3 configuration is incomplete: missing AccessKeyID or SecretAccessKey")
        if not config.s3.bucket:
            errors.append("S3 configuration is incomplete: missing Bucket")

    if config.on_object_error not in OBJECT_ERROR_POLICIES:
        errors.append(f"ON_OBJECT_ERROR must be one of {sorted(OBJECT_ERROR_POLICIES)}")
    if config.max_parallel_namespaces <= 0:
        errors.append("MAX_PARALLEL_NAMESPACES must be positive")
    if config.request_timeout_seconds <= 0:
        errors.append("REQUEST_TIMEOUT_SECONDS must be positive")

    if errors:
        raise ConfigError("; ".join(errors))


def ensure_directories(config: AppConfig) -> None:
    config.work_dir.mkdir(parents=True, exist_ok=True)
    if config.backup_target == BACKUP_TARGET_LOCAL:
        config.backup_dir.mkdir(parents=True, exist_ok=True)


def _env_str(env: Mapping[str, str], key: str, default: str = "") -> str:
    value = env.get(key, "").strip()
    return value or default


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Failed to parse environment variable %s=%r; using default %d", key, value, default)
        return default


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    value = env.get(key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    logger.warning("Failed to parse %s=%r as bool; using default %s", key, value, default)
    return default
