from __future__ import annotations

from pathlib import Path

import pytest

from kubebackup.config import AppConfig, ConfigError, S3Config, ensure_directories, validate_config

_S3_ENV = {
    "S3_BUCKET": "backups",
    "S3_ACCESS_KEY_ID": "key",
    "S3_SECRET_ACCESS_KEY": "secret",
}


def _valid_s3() -> S3Config:
    return S3Config(bucket="backups", access_key_id="key", secret_access_key="secret")


def test_from_env_with_empty_environment_uses_defaults() -> None:
    config = AppConfig.from_env({})

    assert config.backup_target == "s3"
    assert config.cron_schedule == "0 0 * * *"
    assert config.retention_days == 30
    assert config.metrics_port == 9999
    assert config.run_once is False
    assert config.disable_cron is False
    assert config.strip_managed_fields is True
    assert config.on_object_error == "skip"
    assert config.log_level == "info"


def test_from_env_with_values_parses_types_and_normalizes_folder() -> None:
    config = AppConfig.from_env(
        {
            **_S3_ENV,
            "S3_FOLDER": "/cluster-a/",
            "S3_DISABLE_SSL": "true",
            "RETENTION": "7",
            "RUN_ONCE": "1",
            "DISABLE_CRON": "yes",
            "METRICS_PORT": "8080",
            "BACKUP_TARGET": "LOCAL",
            "ON_OBJECT_ERROR": "Fail",
            "MAX_PARALLEL_NAMESPACES": "3",
            "KUBECONFIG": "~/.kube/config",
            "KUBE_CONTEXT": "prod",
        }
    )

    assert config.s3.folder == "cluster-a"
    assert config.s3.disable_ssl is True
    assert config.retention_days == 7
    assert config.run_once is True
    assert config.disable_cron is True
    assert config.metrics_port == 8080
    assert config.backup_target == "local"
    assert config.on_object_error == "fail"
    assert config.max_parallel_namespaces == 3
    assert config.kubeconfig_path == "~/.kube/config"
    assert config.context == "prod"


def test_from_env_with_unparseable_values_falls_back_to_defaults() -> None:
    config = AppConfig.from_env({"RETENTION": "thirty", "RUN_ONCE": "maybe"})

    assert config.retention_days == 30
    assert config.run_once is False


def test_from_env_with_debug_flag_sets_debug_level() -> None:
    assert AppConfig.from_env({"DEBUG": "true", "LOG_LEVEL": "warning"}).log_level == "debug"


def test_validate_config_with_complete_s3_settings_passes() -> None:
    validate_config(AppConfig(s3=_valid_s3()))


def test_validate_config_with_missing_credentials_and_bucket_reports_both() -> None:
    with pytest.raises(ConfigError) as excinfo:
        validate_config(AppConfig())

    message = str(excinfo.value)
    assert "missing AccessKeyID or SecretAccessKey" in message
    assert "missing Bucket" in message


def test_validate_config_with_local_target_does_not_require_s3() -> None:
    validate_config(AppConfig(backup_target="local"))


def test_validate_config_with_invalid_cron_raises_config_error() -> None:
    with pytest.raises(ConfigError, match="not a valid cron expression"):
        validate_config(AppConfig(backup_target="local", cron_schedule="every night"))


def test_validate_config_with_interval_ignores_cron_expression() -> None:
    validate_config(AppConfig(backup_target="local", cron_schedule="every night", interval_seconds=600))


def test_validate_config_with_unknown_target_and_policy_reports_both() -> None:
    with pytest.raises(ConfigError) as excinfo:
        validate_config(AppConfig(backup_target="ftp", on_object_error="retry"))

    assert "BACKUP_TARGET must be 's3' or 'local'" in str(excinfo.value)
    assert "ON_OBJECT_ERROR" in str(excinfo.value)


def test_validate_config_with_non_positive_parallelism_raises_config_error() -> None:
    with pytest.raises(ConfigError, match="MAX_PARALLEL_NAMESPACES"):
        validate_config(AppConfig(backup_target="local", max_parallel_namespaces=0))


def test_ensure_directories_with_local_target_creates_backup_dir(tmp_path: Path) -> None:
    config = AppConfig(backup_target="local", work_dir=tmp_path / "work", backup_dir=tmp_path / "out")

    ensure_directories(config)

    assert (tmp_path / "work").is_dir()
    assert (tmp_path / "out").is_dir()
