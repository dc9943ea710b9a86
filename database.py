"""
Database Helper Functions

MongoDB helpers shared by the stores and the HTTP layer. The module-level
``db`` is created from DATABASE_URL / DATABASE_NAME and stays ``None`` when
no database is configured.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import get_settings
from schemas import (
    AuditLog,
    Classroom,
    ClassroomStudentAssignment,
    Event,
    Mentor,
    MentorClassroomAssignment,
    MentorStudentAssignment,
    Student,
)

logger = logging.getLogger(__name__)

HIDDEN_FIELDS = ("password_hash",)

_settings = get_settings()
client: Optional[MongoClient] = None
db: Optional[Database] = None

if _settings.database_url:
    client = MongoClient(_settings.database_url)
    db = client[_settings.database_name]


def collection_name(model_cls) -> str:
    return model_cls.__name__.lower()


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_bson(value: Any) -> Any:
    # pymongo encodes datetime but not date
    if isinstance(value, dict):
        return {k: _to_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_bson(v) for v in value]
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)
    return value


def to_document(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    return _to_bson(dict(data))


def create_document(
    name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None
) -> str:
    """Insert a document with created_at/updated_at stamps and return its id."""
    database = database if database is not None else get_db()
    doc = to_document(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    result = database[name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    database[collection_name(Mentor)].create_index("email", unique=True)
    database[collection_name(Student)].create_index("student_id", unique=True)
    database[collection_name(Classroom)].create_index("name", unique=True)
    for model, left, right in (
        (MentorStudentAssignment, "mentor", "student"),
        (MentorClassroomAssignment, "mentor", "classroom"),
        (ClassroomStudentAssignment, "classroom", "student"),
    ):
        records = database[collection_name(model)]
        records.create_index([(left, ASCENDING), (right, ASCENDING)], unique=True)
        records.create_index([(left, ASCENDING), ("assigned_at", DESCENDING)])
        records.create_index([(right, ASCENDING), ("assigned_at", DESCENDING)])
    events = database[collection_name(Event)]
    events.create_index([("mentor", ASCENDING), ("start", ASCENDING)])
    events.create_index([("student", ASCENDING), ("start", ASCENDING)])
    database[collection_name(AuditLog)].create_index([("created_at", DESCENDING)])
    logger.info("Indexes ensured on database %s", database.name)


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {k: v for k, v in doc.items() if k not in HIDDEN_FIELDS}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return {k: _serialize_value(v) for k, v in d.items()}


def serialize_list(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in docs]
