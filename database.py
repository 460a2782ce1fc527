"""
Database Helper Functions

MongoDB client plus the small helpers the API and repositories share.
``db`` is None until DATABASE_URL and DATABASE_NAME are configured; code that
needs a database takes it as an argument so tests can hand in mongomock.
"""

import logging
from datetime import datetime, timezone
from typing import Union

from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING, DESCENDING

import config

logger = logging.getLogger(__name__)

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=config.DB_TIMEOUT_MS)
    db = _client[config.DATABASE_NAME]


def utcnow() -> datetime:
    """Naive UTC timestamp, the form pymongo hands back by default."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _resolve(database):
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return database


def create_document(collection_name: str, data: Union[BaseModel, dict], database=None) -> str:
    """Insert a single document with timestamps and return its id."""
    database = _resolve(database)
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude={"id"})
    else:
        data_dict = {k: v for k, v in data.items() if k != "id"}
    now = utcnow()
    data_dict["created_at"] = data_dict.get("created_at") or now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def ensure_indexes(database=None):
    """Create the indexes the atomic updates and list queries rely on."""
    database = _resolve(database)
    database["bloodrequest"].create_index([("status", ASCENDING), ("urgency", ASCENDING), ("created_at", DESCENDING)])
    database["bloodrequest"].create_index([("organization_id", ASCENDING), ("status", ASCENDING)])
    database["bloodrequest"].create_index([("blood_group", ASCENDING), ("status", ASCENDING)])
    database["bloodunit"].create_index([("organization_id", ASCENDING), ("status", ASCENDING)])
    database["bloodunit"].create_index([("reserved_for", ASCENDING)])
    database["bloodunit"].create_index([("expiry_date", ASCENDING)])
    database["donorinterest"].create_index([("request_id", ASCENDING), ("donor_id", ASCENDING)], unique=True)
    database["notification"].create_index([("recipient_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("Indexes ensured on %s", database.name)
