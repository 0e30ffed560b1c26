import logging
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient

import config

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
_db = None


def get_db():
    global _client, _db
    if _db is None:
        _client = MongoClient(config.DATABASE_URL)
        _db = _client[config.DATABASE_NAME]
        logger.info("Connected to MongoDB database %s", config.DATABASE_NAME)
    return _db


def set_db(db) -> None:
    """Swap the active database handle (tests point this at an in-memory client)."""
    global _db
    _db = db


def utcnow() -> datetime:
    # BSON dates keep millisecond precision; trim so stored and returned stamps agree
    now = datetime.utcnow()
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize_document(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["_id"] = str(out["_id"])
    return out


def ensure_indexes(db=None) -> None:
    db = db if db is not None else get_db()
    db["quiz"].create_index("code", unique=True)
    db["attempt"].create_index(
        [("quizId", ASCENDING), ("studentId", ASCENDING), ("attemptNumber", ASCENDING)],
        unique=True,
    )
    db["attempt"].create_index([("quizId", ASCENDING), ("status", ASCENDING)])
    db["attempt"].create_index([("studentId", ASCENDING), ("status", ASCENDING)])


def create_document(collection_name: str, data: Dict[str, Any]) -> str:
    db = get_db()
    now = utcnow()
    data.setdefault("createdAt", now)
    data.setdefault("updatedAt", now)
    result = db[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Dict[str, Any] | None = None,
    limit: int = 100,
    skip: int = 0,
    sort: List[Tuple[str, int]] | None = None,
) -> List[Dict[str, Any]]:
    db = get_db()
    filter_dict = filter_dict or {}
    cursor = db[collection_name].find(filter_dict)
    if sort:
        cursor = cursor.sort(sort)
    cursor = cursor.skip(skip).limit(limit)
    return [serialize_document(doc) for doc in cursor]


NEWEST_FIRST = [("startedAt", DESCENDING)]
