"""
MongoDB access

`db` is None when DATABASE_URL is not set; routes answer 500 in that case.
Collection names are the lowercase schema class names ("user", "product").
"""
from datetime import datetime, timezone
from typing import Any, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL

client: Optional[MongoClient] = MongoClient(DATABASE_URL) if DATABASE_URL else None
db: Optional[Database] = client[DATABASE_NAME] if client is not None else None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_object_id(id_str: Any) -> Optional[ObjectId]:
    """ObjectId for a string id, or None when it is malformed."""
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        return None


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    now = utc_now()
    doc = {**data, "created_at": now, "updated_at": now}
    return str(database[collection_name].insert_one(doc).inserted_id)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["product"].create_index([("category", ASCENDING)])
    database["product"].create_index([("seller_id", ASCENDING)])
    database["product"].create_index([("created_at", DESCENDING)])
