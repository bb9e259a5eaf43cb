"""
MongoDB connection and small document helpers.

`db` is None when DATABASE_URL / DATABASE_NAME are not set; routes get the
handle through `get_db` so a missing configuration surfaces as a 500.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING
from pymongo.database import Database
from bson import ObjectId

from dotenv import load_dotenv
load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    logger.info("Indexes ensured on %s", database.name)


def id_candidates(value: str) -> List[Union[ObjectId, str]]:
    # a 24-hex id may be stored as an ObjectId or as the plain string
    if isinstance(value, str) and ObjectId.is_valid(value):
        return [ObjectId(value), value]
    return [value]


def to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["_id"] = str(d["_id"])
    return d


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at; returns the new id as a string."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = datetime.now(timezone.utc)
    doc["created_at"] = now
    doc["updated_at"] = now
    res = database[collection_name].insert_one(doc)
    return str(res.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return [to_public(d) for d in cursor]
