from __future__ import annotations
import logging
from typing import Any, Optional
from datetime import datetime, timezone

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from config import settings
from errors import PersistenceError

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(
            settings.DATABASE_URL,
            serverSelectionTimeoutMS=int(settings.EXTERNAL_TIMEOUT_SECONDS * 1000),
        )
        _db = _client[settings.DATABASE_NAME]
    return _db


def close_db() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None


async def ensure_indexes(db) -> None:
    # order.stripe_session_id is what makes webhook replays idempotent
    await db["order"].create_index("stripe_session_id", unique=True)
    await db["order"].create_index([("created_at", DESCENDING)])
    await db["coupon"].create_index("code", unique=True)
    await db["category"].create_index("slug_path", unique=True)
    await db["product"].create_index("category_id")
    await db["shippingrule"].create_index([("min_amount", ASCENDING)])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = doc.copy()
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    # Convert any nested ObjectIds if present
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d


async def create_document(db, collection_name: str, data: dict[str, Any]) -> dict[str, Any]:
    now = utcnow()
    data_with_meta = {**data, "created_at": now, "updated_at": now}
    try:
        result = await db[collection_name].insert_one(data_with_meta)
        inserted = await db[collection_name].find_one({"_id": result.inserted_id})
    except PyMongoError as e:
        logger.exception("Database Error: insert into %s failed", collection_name)
        raise PersistenceError(f"Failed to create {collection_name}.") from e
    return serialize_doc(inserted) or {}


async def get_documents(
    db,
    collection_name: str,
    filter_dict: dict[str, Any] | None = None,
    limit: int = 100,
    sort: list[tuple[str, int]] | None = None,
) -> list[dict[str, Any]]:
    try:
        cursor = db[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=None)
    except PyMongoError as e:
        logger.exception("Database Error: query on %s failed", collection_name)
        raise PersistenceError(f"Failed to fetch {collection_name}.") from e
    return [serialize_doc(d) for d in docs]


async def update_document(db, collection_name: str, doc_id: Any, changes: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Apply ``$set`` changes and return the updated document, or None if it doesn't exist."""
    try:
        result = await db[collection_name].update_one(
            {"_id": doc_id}, {"$set": {**changes, "updated_at": utcnow()}}
        )
        if result.matched_count == 0:
            return None
        doc = await db[collection_name].find_one({"_id": doc_id})
    except PyMongoError as e:
        logger.exception("Database Error: update on %s failed", collection_name)
        raise PersistenceError(f"Failed to update {collection_name}.") from e
    return serialize_doc(doc)


async def delete_document(db, collection_name: str, doc_id: Any) -> bool:
    try:
        result = await db[collection_name].delete_one({"_id": doc_id})
    except PyMongoError as e:
        logger.exception("Database Error: delete on %s failed", collection_name)
        raise PersistenceError(f"Failed to delete {collection_name}.") from e
    return result.deleted_count > 0
