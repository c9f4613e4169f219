"""
MongoDB access helpers.

The module-level `db` is created from DATABASE_URL / DATABASE_NAME and is
`None` when the database is not configured. Route handlers receive it through
the `get_db` dependency so tests can swap in another database.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Union

from bson.objectid import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import OperationFailure

import config
from errors import AppError, ValidationError

logger = logging.getLogger(__name__)

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def get_db():
    if db is None:
        raise AppError("Database not configured")
    return db


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, so everything stored is naive UTC too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_document(database, collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a document and return its id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True, exclude_none=True)
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("createdAt", now)
    data_dict.setdefault("updatedAt", now)
    result = database[collection_name].insert_one(data_dict, session=session)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None):
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def parse_object_id(value: str, label: str = "ID") -> ObjectId:
    if not value or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {label}")
    return ObjectId(value)


def to_str_id(doc):
    """Return a JSON-friendly copy of a document with `_id` rendered as a string."""
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if _id is not None:
        doc["_id"] = str(_id)
    return doc


@contextmanager
def transaction(database):
    """
    Yield a session running a multi-document transaction, or None when
    transactions are disabled (standalone servers do not support them).
    """
    if not config.MONGO_TRANSACTIONS:
        yield None
        return
    with database.client.start_session() as session:
        with session.start_transaction():
            yield session


def _unique_index(collection, keys, **kwargs):
    try:
        collection.create_index(keys, unique=True, **kwargs)
    except OperationFailure as e:
        # existing duplicates block the build until the cleanup job has run
        logger.warning(f"Could not create unique index {keys} on {collection.name}: {e}")


def ensure_indexes(database):
    registration = database["registration"]
    _unique_index(
        registration,
        [("email", ASCENDING), ("registrationType", ASCENDING)],
        partialFilterExpression={"email": {"$type": "string", "$gt": ""}},
    )
    _unique_index(
        registration,
        [("contactNumber", ASCENDING), ("registrationType", ASCENDING)],
        partialFilterExpression={"contactNumber": {"$type": "string", "$gt": ""}},
    )
    _unique_index(
        registration,
        "serialNumber",
        partialFilterExpression={"serialNumber": {"$type": "number"}},
    )
    registration.create_index([("registrationDate", DESCENDING)])
    database["transaction"].create_index("idempotencyKey", unique=True, sparse=True)
    database["transaction"].create_index("registrationId")
    database["otpverification"].create_index("email")
    database["otpverification"].create_index("contactNumber")
    database["contactmessage"].create_index([("status", ASCENDING), ("priority", DESCENDING)])
    database["contactmessage"].create_index([("createdAt", DESCENDING)])
    logger.info("Database indexes ensured")
