"""
MongoDB access. ``db`` is None until DATABASE_URL and DATABASE_NAME are set,
which lets the app boot (and report itself on /test) without a database.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from settings import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, tz_aware=True)
    db = client[DATABASE_NAME]


def ensure_indexes(database) -> None:
    """Create the indexes the attendance flows rely on for atomicity."""
    database["attendance"].create_index(
        [("sessionId", ASCENDING), ("userId", ASCENDING)], unique=True, name="attendance_unique_idx"
    )
    database["session"].create_index([("sessionId", ASCENDING)], unique=True)
    database["session"].create_index([("teacherId", ASCENDING), ("status", ASCENDING)])
    database["user"].create_index([("userId", ASCENDING)], unique=True)
    database["user"].create_index([("className", ASCENDING), ("role", ASCENDING)])
    database["locationping"].create_index([("sessionId", ASCENDING), ("userId", ASCENDING)])
    logger.info("Database indexes ensured")


def _to_document(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database=None) -> str:
    database = db if database is None else database
    if database is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    doc = _to_document(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    database=None,
) -> List[Dict[str, Any]]:
    database = db if database is None else database
    if database is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
