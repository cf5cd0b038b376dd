"""
MongoDB access helpers.

Collections follow the schema convention in schemas.py: the collection name
is the lowercased model class name (DraftOrder -> "draftorder").
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL
from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

try:
    client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000, connect=False)
    db: Optional[Database] = client[DATABASE_NAME]
except Exception as e:
    logger.error("MongoDB client could not be created: %s", e)
    client = None
    db = None


def get_db() -> Database:
    """FastAPI dependency returning the active database handle."""
    if db is None:
        raise RuntimeError("Database not available")
    return db


def now_utc() -> datetime:
    # Mongo hands back naive datetimes, so everything stored is naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def oid(id_str: Union[str, ObjectId], what: str = "id") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not id_str or not ObjectId.is_valid(str(id_str)):
        raise ValidationError(f"Invalid {what} format")
    return ObjectId(str(id_str))


def serialize(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        d[k] = _plain(v)
    return d


def _plain(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = {**data}
    stamp = now_utc()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(database: Database, collection_name: str, doc_id: str, what: str = "Document") -> Dict[str, Any]:
    doc = database[collection_name].find_one({"_id": oid(doc_id, what.lower() + " id")})
    if not doc:
        raise NotFoundError(f"{what} not found")
    return doc


def next_sequence(database: Database, name: str, start: int) -> int:
    """Atomically hands out the next number of a named counter, beginning at `start`."""
    counter = database["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return start + counter["seq"] - 1
