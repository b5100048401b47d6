import logging
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from pipewatch.core.domain.errors import StoreUnavailable
from pipewatch.core.domain.settings import SystemSettings
from pipewatch.core.ports.record_store import RecordStore

logger = logging.getLogger(__name__)


class MongoRecordStore(RecordStore):
    """
    MongoDB-backed implementation of RecordStore.
    Each collection maps to a Mongo collection; the record id is the document ``_id``.
    """

    def __init__(self, settings: SystemSettings):
        self.settings = settings
        self.client = AsyncIOMotorClient(settings.mongo_url)
        self.db = self.client[settings.mongo_db_name]

    async def save(self, collection: str, key: str, document: dict[str, Any]) -> None:
        try:
            await self.db[collection].replace_one(
                {"_id": key},
                {**document, "_id": key},
                upsert=True,
            )
        except PyMongoError as e:
            raise StoreUnavailable(f"Failed to save record: {e}", collection=collection, key=key) from e

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        try:
            doc = await self.db[collection].find_one({"_id": key})
        except PyMongoError as e:
            raise StoreUnavailable(f"Failed to read record: {e}", collection=collection, key=key) from e
        if not doc:
            return None
        doc.pop("_id", None)  # Pydantic doesn't expect _id
        return doc

    async def list(self, collection: str) -> list[dict[str, Any]]:
        docs = []
        try:
            async for doc in self.db[collection].find():
                doc.pop("_id", None)
                docs.append(doc)
        except PyMongoError as e:
            raise StoreUnavailable(f"Failed to list records: {e}", collection=collection) from e
        return docs

    async def delete(self, collection: str, key: str) -> bool:
        try:
            result = await self.db[collection].delete_one({"_id": key})
        except PyMongoError as e:
            raise StoreUnavailable(f"Failed to delete record: {e}", collection=collection, key=key) from e
        return result.deleted_count > 0

    def close(self) -> None:
        self.client.close()
