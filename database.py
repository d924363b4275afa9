"""
Database helpers for the BargainMart API

`db` is a pymongo Database handle, or None when DATABASE_URL / DATABASE_NAME
are not configured. Collections are named after the lowercase schema class.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pymongo import MongoClient, ReturnDocument
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    try:
        _client = MongoClient(DATABASE_URL)
        db = _client[DATABASE_NAME]
        logger.info("MongoDB client created for database %s", DATABASE_NAME)
    except Exception as e:
        logger.error("MongoDB connection error: %s", e)
        db = None
else:
    logger.warning("DATABASE_URL or DATABASE_NAME not set; database disabled")


def _now():
    return datetime.now(timezone.utc)


def _require_db():
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id."""
    _require_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="python")
    else:
        data_dict = dict(data)
    data_dict["created_at"] = _now()
    data_dict["updated_at"] = _now()
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List] = None,
) -> List[Dict[str, Any]]:
    _require_db()
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def apply_update(collection_name: str, filter_dict: Dict[str, Any], update: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Run a raw update ($set, $push, ...) with an updated_at stamp.

    Returns the updated document, or None when nothing matched `filter_dict`.
    """
    _require_db()
    update = dict(update)
    update["$set"] = {**update.get("$set", {}), "updated_at": _now()}
    return db[collection_name].find_one_and_update(filter_dict, update, return_document=ReturnDocument.AFTER)


def update_document(collection_name: str, filter_dict: Dict[str, Any], updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """$set the given fields, refresh updated_at and return the updated document."""
    return apply_update(collection_name, filter_dict, {"$set": updates})
