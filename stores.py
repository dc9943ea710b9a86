"""Document stores for the three entities and the assignment records.

Writes that touch relational fields take the caller's unit of work so that
they join its transaction (or its undo journal).
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from database import collection_name, create_document, to_document, utcnow
from errors import NotFoundError, ValidationError
from schemas import Classroom, Event, Mentor, Student
from uow import UnitOfWork

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def to_object_id(value: Any, code: str = "VALID001") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ValidationError(code, f"Invalid id {value!r}")
    return ObjectId(value)


def to_object_ids(values: Iterable[Any], code: str = "VALID001") -> List[ObjectId]:
    ids = [to_object_id(v, code) for v in values]
    if not ids:
        raise ValidationError(code, "At least one id is required")
    if len(set(ids)) != len(ids):
        raise ValidationError("VALID002", "Request contains repeated ids")
    return ids


def search_clause(query: Optional[str], fields: Sequence[str]) -> Dict[str, Any]:
    """Case-insensitive substring match of ``query`` over ``fields``."""
    if not query or not query.strip():
        return {}
    pattern = re.escape(query.strip())
    return {"$or": [{f: {"$regex": pattern, "$options": "i"}} for f in fields]}


def _session(uow: Optional[UnitOfWork]) -> Dict[str, Any]:
    return uow.session_options() if uow is not None else {}


class DocumentStore:
    model: type
    label: str
    not_found_code: str
    search_fields: Sequence[str] = ()
    projection: Optional[Dict[str, int]] = None

    def __init__(self, database: Database):
        self.db = database
        self.collection = database[collection_name(self.model)]

    # Reads

    def find_by_id(self, doc_id: Any, uow: Optional[UnitOfWork] = None) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"_id": to_object_id(doc_id)}, self.projection, **_session(uow))

    def get(self, doc_id: Any, uow: Optional[UnitOfWork] = None) -> Dict[str, Any]:
        doc = self.find_by_id(doc_id, uow)
        if doc is None:
            raise NotFoundError(self.not_found_code, f"{self.label} with id {doc_id} was not found")
        return doc

    def find_by_ids(self, ids: Sequence[ObjectId], uow: Optional[UnitOfWork] = None) -> List[Dict[str, Any]]:
        return list(self.collection.find({"_id": {"$in": list(ids)}}, self.projection, **_session(uow)))

    def count_where(self, filt: Dict[str, Any], uow: Optional[UnitOfWork] = None) -> int:
        return self.collection.count_documents(filt, **_session(uow))

    def find_page(
        self,
        filt: Dict[str, Any],
        page: int,
        limit: int,
        sort: Optional[List] = None,
    ) -> List[Dict[str, Any]]:
        cursor = (
            self.collection.find(filt, self.projection)
            .sort(sort or NEWEST_FIRST)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return list(cursor)

    # Plain CRUD

    def create(self, data) -> Dict[str, Any]:
        doc_id = create_document(self.collection.name, data, database=self.db)
        return self.get(doc_id)

    def update(self, doc_id: Any, values: Dict[str, Any]) -> Dict[str, Any]:
        values = to_document(values)
        values["updated_at"] = utcnow()
        doc = self.collection.find_one_and_update(
            {"_id": to_object_id(doc_id)},
            {"$set": values},
            projection=self.projection,
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFoundError(self.not_found_code, f"{self.label} with id {doc_id} was not found")
        return doc

    def delete(self, doc_id: ObjectId, uow: Optional[UnitOfWork] = None) -> Dict[str, Any]:
        doc = self.collection.find_one({"_id": doc_id}, **_session(uow))
        if doc is None:
            raise NotFoundError(self.not_found_code, f"{self.label} with id {doc_id} was not found")
        if uow is not None:
            uow.remember_delete(self.collection, doc)
        self.collection.delete_one({"_id": doc_id}, **_session(uow))
        return doc

    # Relational fields

    def add_to_array(self, doc_id: ObjectId, field: str, values: Sequence[ObjectId], uow: UnitOfWork) -> bool:
        uow.remember_update(self.collection, doc_id, (field,))
        result = self.collection.update_one(
            {"_id": doc_id},
            {"$addToSet": {field: {"$each": list(values)}}},
            **_session(uow),
        )
        return result.matched_count > 0

    def pull_from_array(self, doc_id: ObjectId, field: str, values: Sequence[ObjectId], uow: UnitOfWork) -> bool:
        uow.remember_update(self.collection, doc_id, (field,))
        result = self.collection.update_one(
            {"_id": doc_id},
            {"$pull": {field: {"$in": list(values)}}},
            **_session(uow),
        )
        return result.matched_count > 0

    def set_reference(self, doc_id: ObjectId, field: str, value: ObjectId, uow: UnitOfWork) -> bool:
        uow.remember_update(self.collection, doc_id, (field,))
        result = self.collection.update_one(
            {"_id": doc_id},
            {"$set": {field: value}},
            **_session(uow),
        )
        return result.matched_count > 0

    def clear_reference(self, doc_id: ObjectId, field: str, expected: ObjectId, uow: UnitOfWork) -> bool:
        """Null ``field`` only while it still points at ``expected``."""
        uow.remember_update(self.collection, doc_id, (field,))
        result = self.collection.update_one(
            {"_id": doc_id, field: expected},
            {"$set": {field: None}},
            **_session(uow),
        )
        return result.matched_count > 0

    def remove_referencing(self, key: str, value: ObjectId, uow: UnitOfWork) -> int:
        """Delete every document whose ``key`` is ``value``."""
        removed = 0
        for doc in list(self.collection.find({key: value}, **_session(uow))):
            uow.remember_delete(self.collection, doc)
            removed += self.collection.delete_one({"_id": doc["_id"]}, **_session(uow)).deleted_count
        return removed

    def detach_everywhere(self, field: str, value: ObjectId, many: bool, uow: UnitOfWork) -> int:
        """Remove ``value`` from ``field`` on every document that references it."""
        holders = list(self.collection.find({field: value}, {"_id": 1}, **_session(uow)))
        for holder in holders:
            if many:
                self.pull_from_array(holder["_id"], field, [value], uow)
            else:
                self.clear_reference(holder["_id"], field, value, uow)
        return len(holders)


class MentorStore(DocumentStore):
    model = Mentor
    label = "Mentor"
    not_found_code = "MENTOR404"
    search_fields = ("name", "email")
    projection = {"password_hash": 0}

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        # includes password_hash for sign-in
        return self.collection.find_one({"email": email})


class StudentStore(DocumentStore):
    model = Student
    label = "Student"
    not_found_code = "STUDENT404"
    search_fields = ("student_id", "name")


class ClassroomStore(DocumentStore):
    model = Classroom
    label = "Classroom"
    not_found_code = "CLASSR404"
    search_fields = ("name", "description")


class AssignmentRecordStore(DocumentStore):
    """Join records of one relation; never updated, only inserted and deleted."""

    label = "Assignment record"
    not_found_code = "ASSGMT404"

    def __init__(self, database: Database, model: type):
        self.model = model
        super().__init__(database)

    def find_pairs(
        self,
        anchor_key: str,
        anchor_id: ObjectId,
        target_key: str,
        target_ids: Sequence[ObjectId],
        uow: Optional[UnitOfWork] = None,
    ) -> List[Dict[str, Any]]:
        filt = {anchor_key: anchor_id, target_key: {"$in": list(target_ids)}}
        return list(self.collection.find(filt, **_session(uow)))

    def find_for_anchor(
        self,
        anchor_key: str,
        anchor_id: ObjectId,
        record_ids: Sequence[ObjectId],
        uow: Optional[UnitOfWork] = None,
    ) -> List[Dict[str, Any]]:
        filt = {"_id": {"$in": list(record_ids)}, anchor_key: anchor_id}
        return list(self.collection.find(filt, **_session(uow)))

    def insert(self, record, uow: UnitOfWork) -> Dict[str, Any]:
        doc = to_document(record)
        result = self.collection.insert_one(doc, **_session(uow))
        uow.remember_insert(self.collection, result.inserted_id)
        doc["_id"] = result.inserted_id
        return doc

    def remove(self, record: Dict[str, Any], uow: UnitOfWork) -> bool:
        uow.remember_delete(self.collection, record)
        result = self.collection.delete_one({"_id": record["_id"]}, **_session(uow))
        return result.deleted_count > 0


class EventStore(DocumentStore):
    model = Event
    label = "Event"
    not_found_code = "EVENT404"
    search_fields = ("title",)

    def find_for(self, key: str, value: ObjectId) -> List[Dict[str, Any]]:
        cursor = self.collection.find({key: value}).sort([("start", ASCENDING), ("_id", ASCENDING)])
        return list(cursor)
