"""
YAML Definitions Loader - file-based jobs and alert configurations.

The file has two top-level lists::

    jobs:
      - id: nightly-duration-anomalies
        name: nightly-duration-anomalies
        type: anomaly
        schedule: "0 2 * * *"
        pipeline_id: web-app
    alert_configurations:
      - id: duration-anomaly
        name: duration-anomaly
        type: anomaly
        channels: [{id: ops-hook, type: webhook, config: {url: "https://..."}}]

Give every entry an id: entries whose id is already registered (restored
from the record store) are left alone, while entries without one get a
fresh id on every start.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from pipewatch.core.domain.errors import ConfigurationInvalid

logger = logging.getLogger(__name__)


class YamlDefinitionStore:
    """
    Reads job and alert configuration definitions from a YAML file.
    """

    def __init__(self, config_path: str | Path):
        self.config_path = Path(config_path)
        self._data: dict[str, Any] | None = None

    def _ensure_loaded(self) -> dict[str, Any]:
        if self._data is None:
            self._data = self._load()
        return self._data

    def _load(self) -> dict[str, Any]:
        if not self.config_path.exists():
            logger.info(f"No definitions file at {self.config_path}")
            return {}
        try:
            with open(self.config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationInvalid(f"Definitions file is not valid YAML: {e}", path=str(self.config_path)) from e
        if not isinstance(data, dict):
            raise ConfigurationInvalid("Definitions file must be a mapping", path=str(self.config_path))
        return data

    def jobs(self) -> list[dict[str, Any]]:
        return list(self._ensure_loaded().get("jobs") or [])

    def alert_configurations(self) -> list[dict[str, Any]]:
        return list(self._ensure_loaded().get("alert_configurations") or [])

    async def apply(self, scheduler, alerts) -> dict[str, int]:
        """
        Register every definition through the services so each one goes through
        the same validation as an API call. Invalid entries are logged and skipped.

        Returns:
            Counts of loaded and rejected definitions
        """
        counts = {"jobs": 0, "alert_configurations": 0, "rejected": 0, "existing": 0}
        known_configurations = {c.id for c in alerts.list_configurations()}
        known_jobs = {j.id for j in scheduler.list_jobs()}
        for data in self.alert_configurations():
            if isinstance(data, dict) and data.get("id") in known_configurations:
                counts["existing"] += 1
                logger.info(f"Alert configuration {data['id']} already registered, keeping stored version")
                continue
            try:
                await alerts.create_configuration(data)
                counts["alert_configurations"] += 1
            except ConfigurationInvalid as e:
                counts["rejected"] += 1
                logger.error(f"Rejected alert configuration from {self.config_path}: {e}")
        for data in self.jobs():
            if isinstance(data, dict) and data.get("id") in known_jobs:
                counts["existing"] += 1
                logger.info(f"Job {data['id']} already registered, keeping stored version")
                continue
            try:
                await scheduler.create_job(data)
                counts["jobs"] += 1
            except ConfigurationInvalid as e:
                counts["rejected"] += 1
                logger.error(f"Rejected job from {self.config_path}: {e}")
        return counts

