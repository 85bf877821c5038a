"""
MongoDB connection for the transport dispatch API.

The database handle is created from DATABASE_URL / DATABASE_NAME. When
DATABASE_URL is unset `db` stays None and every request answers 500.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from errors import StorageFailure

logger = logging.getLogger(__name__)

DRIVERS = "drivers"
VEHICLES = "vehicles"
TRANSPORT_JOBS = "transport_jobs"

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "coco_transport")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise StorageFailure("Database not available")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId for value, or None when it cannot be one."""
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str):
        return None
    try:
        return ObjectId(value)
    except InvalidId:
        return None


def to_str_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy a document for JSON output: _id becomes id and ObjectIds become strings."""
    if doc is None:
        return None
    d = {}
    for key, value in doc.items():
        if key == "_id":
            d["id"] = str(value)
        else:
            d[key] = _stringify(value)
    return d


def _stringify(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [_stringify(v) for v in value]
    if isinstance(value, dict):
        return {k: _stringify(v) for k, v in value.items()}
    return value


def ensure_indexes(database: Database) -> None:
    database[DRIVERS].create_index([("email", ASCENDING)], unique=True)
    database[DRIVERS].create_index([("licenseNumber", ASCENDING)], unique=True)
    database[VEHICLES].create_index([("licensePlate", ASCENDING)], unique=True)
    for name in (DRIVERS, VEHICLES, TRANSPORT_JOBS):
        database[name].create_index([("status", ASCENDING)])
    logger.info("Indexes ensured on %s", database.name)
