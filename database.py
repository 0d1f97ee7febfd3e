"""
MongoDB access

`db` is None when DATABASE_URL is not configured; the app factory accepts an
explicit database handle instead (tests pass a mongomock database).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import MongoClient

import config

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db = None

if config.DATABASE_URL:
    _client = MongoClient(config.DATABASE_URL, tz_aware=True)
    db = _client[config.DATABASE_NAME]
    logger.info("MongoDB client created for database %s", config.DATABASE_NAME)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database=None) -> str:
    """Insert a document, stamping createdAt when missing. Returns the new id as a string."""
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not available")
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    doc.setdefault("createdAt", datetime.now(timezone.utc))
    res = target[collection_name].insert_one(doc)
    return str(res.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None, database=None) -> List[Dict[str, Any]]:
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not available")
    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def close():
    if _client is not None:
        _client.close()
        logger.info("Database connection closed")
