"""
Database Helper Functions

MongoDB helper functions ready to use in your backend code.
Import and use these functions in your API endpoints for database operations.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.errors import PyMongoError

load_dotenv()
logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "curated_crate")

_client = None
db = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def ensure_indexes(database):
    """Create the unique indexes the collections rely on; safe to call repeatedly."""
    database["user"].create_index("email", unique=True)
    database["discount"].create_index("code", unique=True)
    # one review per user per target; a review carries either productId or themedBoxId
    for target in ("productId", "themedBoxId"):
        database["review"].create_index(
            [(target, ASCENDING), ("userId", ASCENDING)],
            unique=True,
            partialFilterExpression={target: {"$type": "string"}},
        )


if db is not None:
    try:
        ensure_indexes(db)
    except PyMongoError as exc:
        logger.warning("Unable to ensure indexes: %s", exc)


def _require_db():
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def to_document(data: Union[BaseModel, dict]) -> dict:
    """Convert a schema instance to the camelCase dict stored in MongoDB."""
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True)
    return dict(data)


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a single document with timestamps and return its id as a string"""
    database = _require_db()
    data_dict = to_document(data)
    now = datetime.now(timezone.utc)
    data_dict["createdAt"] = now
    data_dict["updatedAt"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: dict = None, limit: int = None, sort: list = None):
    """Get documents from a collection"""
    database = _require_db()
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
