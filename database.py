"""
MongoDB access helpers.

Route modules talk to collections through ``db`` directly and use the helpers
here for the repetitive parts: inserting with timestamps, id parsing, and
turning documents into JSON-friendly dicts.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient

from settings import get_settings

_settings = get_settings()

client = MongoClient(_settings.database_url)
db = client[_settings.database_name]

PRIVATE_FIELDS = {"password_hash"}


def utcnow() -> datetime:
    # pymongo hands datetimes back naive (in UTC), so everything we write is naive UTC too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def find_by_id(collection_name: str, doc_id: Any, **extra) -> Optional[dict]:
    oid = to_object_id(doc_id)
    if oid is None:
        return None
    return db[collection_name].find_one({"_id": oid, **extra})


def update_by_id(collection_name: str, doc_id: Any, fields: Dict[str, Any]) -> Optional[dict]:
    """Set ``fields`` (plus ``updated_at``) and return the updated document."""
    oid = to_object_id(doc_id)
    if oid is None:
        return None
    db[collection_name].update_one({"_id": oid}, {"$set": {**fields, "updated_at": utcnow()}})
    return db[collection_name].find_one({"_id": oid})


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    now = utcnow()
    doc = {**data, "created_at": now, "updated_at": now}
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List[tuple]] = None,
    skip: int = 0,
) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(value: Any) -> Any:
    """Recursively expose ``_id`` as ``id`` and stringify ObjectIds."""
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        out = {}
        for key, val in value.items():
            if key in PRIVATE_FIELDS:
                continue
            if key == "_id":
                out["id"] = str(val)
            else:
                out[key] = serialize(val)
        return out
    return value
