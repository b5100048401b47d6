import pytest
from pydantic import ValidationError

from pipewatch.adapters.config.settings_loader import load_settings
from pipewatch.core.domain.settings import SLASettings, SystemSettings


def test_system_settings_defaults():
    settings = SystemSettings()
    assert settings.store_type == "memory"
    assert settings.prometheus_url is None
    assert settings.definitions_file == "definitions.yaml"
    assert settings.scheduler.max_concurrent_jobs == 5
    assert settings.analytics.anomaly.zscore_threshold == 2.5
    assert settings.alerting.default_environment == "production"


def test_load_settings_from_env(monkeypatch):
    monkeypatch.setenv("PROMETHEUS_URL", "http://vm:8428")
    monkeypatch.setenv("PIPEWATCH_STORE_TYPE", "mongo")
    monkeypatch.setenv("PIPEWATCH_MAX_CONCURRENT_JOBS", "8")

    settings = load_settings(path="non_existent.yaml")

    assert settings.prometheus_url == "http://vm:8428"
    assert settings.store_type == "mongo"
    assert settings.scheduler.max_concurrent_jobs == 8


def test_load_settings_from_file(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("""
mongo_db_name: "pipewatch_staging"
scheduler:
  max_concurrent_jobs: 3
  history_limit: 20
analytics:
  anomaly:
    zscore_threshold: 3.0
    """)

    settings = load_settings(path=str(config_file))

    assert settings.mongo_db_name == "pipewatch_staging"
    assert settings.scheduler.max_concurrent_jobs == 3
    assert settings.scheduler.history_limit == 20
    assert settings.analytics.anomaly.zscore_threshold == 3.0
    # Defaults preserved
    assert settings.scheduler.queue_size == 50
    assert settings.analytics.anomaly.iqr_multiplier == 1.5


def test_load_settings_env_overrides_file(tmp_path, monkeypatch):
    config_file = tmp_path / "config.yaml"
    config_file.write_text('mongo_url: "mongodb://file:27017"\nscheduler: {max_concurrent_jobs: 3}')

    monkeypatch.setenv("MONGO_URL", "mongodb://env:27017")
    monkeypatch.setenv("PIPEWATCH_MAX_CONCURRENT_JOBS", "9")

    settings = load_settings(path=str(config_file))

    assert settings.mongo_url == "mongodb://env:27017"
    assert settings.scheduler.max_concurrent_jobs == 9


def test_config_file_from_env(tmp_path, monkeypatch):
    config_file = tmp_path / "custom.yaml"
    config_file.write_text("log_level: DEBUG")
    monkeypatch.setenv("PIPEWATCH_CONFIG_FILE", str(config_file))

    assert load_settings().log_level == "DEBUG"


def test_corrupt_config_file(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("scheduler: [unclosed")
    with pytest.raises(RuntimeError):
        load_settings(path=str(config_file))


def test_non_integer_concurrency_env_names_the_variable(monkeypatch):
    monkeypatch.setenv("PIPEWATCH_MAX_CONCURRENT_JOBS", "eight")
    with pytest.raises(RuntimeError, match="PIPEWATCH_MAX_CONCURRENT_JOBS"):
        load_settings(path="non_existent.yaml")


def test_non_mapping_config_file(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("- just\n- a list\n")
    with pytest.raises(RuntimeError, match="must be a mapping"):
        load_settings(path=str(config_file))


def test_sla_bands_must_be_ordered():
    with pytest.raises(ValidationError):
        SLASettings(minor_below=30, major_below=20)
    with pytest.raises(ValidationError):
        SystemSettings(analytics={"sla": {"minor_below": 10, "major_below": 10}})
