"""
Database helpers

A single pymongo client is created from DATABASE_URL. Collections are named
after the lower-cased schema model (see schemas.py).
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import structlog
from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL
from errors import NotFoundError

logger = structlog.get_logger(__name__)

_client = MongoClient(DATABASE_URL) if DATABASE_URL else None
db = _client[DATABASE_NAME] if _client is not None else None


def get_db():
    """FastAPI dependency; tests override it with a mongomock database."""
    if db is None:
        raise RuntimeError("DATABASE_URL is not configured")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def to_object_id(id_str: str, resource: str) -> ObjectId:
    if not ObjectId.is_valid(id_str or ""):
        raise NotFoundError(resource, id_str)
    return ObjectId(id_str)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def ensure_indexes(database) -> None:
    database["user"].create_index("email", unique=True)
    database["product"].create_index("slug", unique=True)
    database["product"].create_index("category")
    database["category"].create_index("slug", unique=True)
    database["setting"].create_index("key", unique=True)
    database["media"].create_index("hash", unique=True)
    database["auth_token"].create_index("token_hash", unique=True)
    database["order"].create_index("idempotency_key", unique=True, sparse=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("indexes_ensured", database=database.name)
