import os

import yaml

from pipewatch.core.domain.settings import SystemSettings

ENV_OVERRIDES = {
    "PROMETHEUS_URL": "prometheus_url",
    "MONGO_URL": "mongo_url",
    "MONGO_DB_NAME": "mongo_db_name",
    "PIPEWATCH_STORE_TYPE": "store_type",
    "PIPEWATCH_DEFINITIONS_FILE": "definitions_file",
    "KAFKA_BOOTSTRAP_SERVERS": "kafka_bootstrap_servers",
    "LOG_LEVEL": "log_level",
}


def load_settings(path: str | None = None) -> SystemSettings:
    """
    Load system settings from a YAML file.
    Falls back to environment variables if file doesn't exist or is not provided.

    Args:
        path: Path to config.yaml. Defaults to PIPEWATCH_CONFIG_FILE env var or "config.yaml".
    """
    if path is None:
        path = os.getenv("PIPEWATCH_CONFIG_FILE", "config.yaml")

    config_data = {}

    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                config_data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise RuntimeError(f"Failed to load configuration from {path}: {e}")
        if not isinstance(config_data, dict):
            raise RuntimeError(f"Failed to load configuration from {path}: top level must be a mapping")

    # Env vars > File > Defaults
    for env_var, field_name in ENV_OVERRIDES.items():
        if os.getenv(env_var):
            config_data[field_name] = os.getenv(env_var)

    max_jobs = os.getenv("PIPEWATCH_MAX_CONCURRENT_JOBS")
    if max_jobs:
        try:
            config_data.setdefault("scheduler", {})["max_concurrent_jobs"] = int(max_jobs)
        except ValueError:
            raise RuntimeError(f"PIPEWATCH_MAX_CONCURRENT_JOBS must be an integer, got '{max_jobs}'")

    return SystemSettings(**config_data)
