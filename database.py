import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from errors import StorageUnavailable
from settings import RoomSettings

logger = logging.getLogger(__name__)

ROOM_STATE_COLLECTION = "room_state"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def connect(database_url: str, database_name: str, timeout_ms: int = 5000) -> Database:
    try:
        client = MongoClient(database_url, serverSelectionTimeoutMS=timeout_ms)
        client.admin.command("ping")
    except PyMongoError as e:
        raise StorageUnavailable(f"Cannot reach database {database_name}", e) from e
    return client[database_name]


class MongoMessageBackend:
    """Keeps the whole message list in one document, keyed like the room's storage slot."""

    def __init__(self, db: Database, key: str = "messages"):
        self.collection = db[ROOM_STATE_COLLECTION]
        self.key = key

    def load(self) -> List[Dict[str, Any]]:
        try:
            doc = self.collection.find_one({"_id": self.key})
        except PyMongoError as e:
            raise StorageUnavailable("Cannot read stored messages", e) from e
        if not doc:
            return []
        return list(doc.get("messages") or [])

    def save(self, messages: List[Dict[str, Any]]) -> None:
        try:
            self.collection.replace_one(
                {"_id": self.key},
                {"_id": self.key, "messages": messages, "updated_at": now_utc()},
                upsert=True,
            )
        except PyMongoError as e:
            raise StorageUnavailable("Cannot write stored messages", e) from e


class MemoryMessageBackend:
    def __init__(self):
        self.messages: List[Dict[str, Any]] = []
        self.saves = 0

    def load(self) -> List[Dict[str, Any]]:
        return list(self.messages)

    def save(self, messages: List[Dict[str, Any]]) -> None:
        self.messages = list(messages)
        self.saves += 1


def open_backend(settings: RoomSettings):
    if not settings.database_url:
        logger.warning("DATABASE_URL not set; message history is kept in memory only")
        return MemoryMessageBackend()
    db = connect(settings.database_url, settings.database_name)
    logger.info("Using MongoDB database %s for message history", settings.database_name)
    return MongoMessageBackend(db, key=settings.storage_key)
