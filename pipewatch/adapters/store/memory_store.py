import copy
from typing import Any

from pipewatch.core.ports.record_store import RecordStore


class InMemoryRecordStore(RecordStore):
    """
    Process-local record store. Documents are deep-copied on the way in and
    out so callers cannot mutate stored state.
    """

    def __init__(self):
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    async def save(self, collection: str, key: str, document: dict[str, Any]) -> None:
        self._collections.setdefault(collection, {})[key] = copy.deepcopy(document)

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        doc = self._collections.get(collection, {}).get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def list(self, collection: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(doc) for doc in self._collections.get(collection, {}).values()]

    async def delete(self, collection: str, key: str) -> bool:
        return self._collections.get(collection, {}).pop(key, None) is not None
