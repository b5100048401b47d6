"""
RecordStore Port - Interface for persisting jobs, executions, alert
configurations and alerts.

A minimal document store: records are JSON-compatible dicts addressed by
collection and id.
"""

from abc import ABC, abstractmethod
from typing import Any

JOBS = "jobs"
EXECUTIONS = "job_executions"
ALERT_CONFIGURATIONS = "alert_configurations"
ALERTS = "alerts"


class RecordStore(ABC):
    """
    Abstract interface for record storage.

    Implementations:
    - InMemoryRecordStore: process-local, used by default and in tests
    - MongoRecordStore: MongoDB via motor

    Implementations raise StoreUnavailable when the backend cannot be reached.
    """

    @abstractmethod
    async def save(self, collection: str, key: str, document: dict[str, Any]) -> None:
        """
        Create or replace a record.

        Args:
            collection: Collection name
            key: Record id
            document: JSON-compatible payload
        """
        ...

    @abstractmethod
    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        """
        Read a record by id.

        Returns:
            The document, or None if absent
        """
        ...

    @abstractmethod
    async def list(self, collection: str) -> list[dict[str, Any]]:
        """List every record in a collection."""
        ...

    @abstractmethod
    async def delete(self, collection: str, key: str) -> bool:
        """
        Delete a record by id.

        Returns:
            True if deleted, False if not found
        """
        ...
