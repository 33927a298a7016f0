"""
MongoDB access for the parking API.

The module-level ``db`` handle is created from ``DATABASE_URL`` /
``DATABASE_NAME``; request handlers receive it through the ``get_db``
dependency so tests can substitute an in-memory database.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings
from errors import InternalError, NotFoundError

logger = logging.getLogger("parking.database")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL:
    client = MongoClient(settings.DATABASE_URL)
    db = client[settings.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise InternalError("Database not configured")
    return db


def utcnow() -> datetime:
    return to_utc(datetime.now(timezone.utc))


def to_utc(value: datetime) -> datetime:
    """Normalize to a naive UTC datetime at BSON (millisecond) precision."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def parse_object_id(value: Any, entity: str) -> ObjectId:
    """Parse a path/body identifier; malformed ids resolve to nothing."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"{entity} not found")


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict.setdefault("createdAt", utcnow())
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    sort: Optional[list] = None,
    limit: Optional[int] = None,
) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    database["slot"].create_index([("locationId", ASCENDING), ("slotNumber", ASCENDING)], unique=True)
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["booking"].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    database["booking"].create_index([("locationId", ASCENDING), ("slotId", ASCENDING)])
    database["location"].create_index([("coordinates.lat", ASCENDING), ("coordinates.long", ASCENDING)])
    database["payment"].create_index([("idempotencyKey", ASCENDING)])
    logger.info("indexes ensured on %s", database.name)


def serialize(value: Any) -> Any:
    """Make a stored document JSON friendly (ObjectIds become strings)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


def serialize_many(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [serialize(d) for d in docs]
