"""
Database bootstrap

Creates the MongoDB client from environment variables and exposes `db`
plus a few small helpers used by the API and the migration tooling.
`db` is None when DATABASE_URL / DATABASE_NAME are not usable, so the API
can still start and report the problem from /test.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "ecom_db")

# Collection names used by the catalog
DEPARTMENTS = "departments"
CATEGORIES = "categories"
SUBCATEGORIES = "subcategories"
PRODUCTS = "products"
USERS = "user"
MIGRATION_LOCKS = "migration_locks"

_client: Optional[MongoClient] = None
db: Optional[Database] = None

try:
    _client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = _client[DATABASE_NAME]
except Exception as e:
    logger.error(f"Could not create MongoDB client: {e}")
    db = None


def get_db() -> Database:
    if db is None:
        raise RuntimeError("Database not configured")
    return db


def create_document(collection_name: str, data: Union[BaseModel, dict], database: Optional[Database] = None) -> str:
    """Insert a document with created/updated timestamps and return its id as a string."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    target = database if database is not None else get_db()
    result = target[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    skip: int = 0,
    sort: Optional[List[tuple]] = None,
    database: Optional[Database] = None,
) -> List[dict]:
    target = database if database is not None else get_db()
    cursor = target[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
