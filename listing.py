"""Paginated listings of who is assigned to whom, and who is still available."""

from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING
from pymongo.database import Database

from database import serialize_list
from errors import ValidationError
from relations import CLASSROOM, MENTOR, RELATIONS, STUDENT, Relation
from stores import (
    AssignmentRecordStore,
    ClassroomStore,
    DocumentStore,
    MentorStore,
    StudentStore,
    search_clause,
    to_object_id,
)

Page = Tuple[List[Dict[str, Any]], int]

NEWEST_ASSIGNED = [("assigned_at", DESCENDING), ("_id", DESCENDING)]


def _check_page(page: int, limit: int) -> None:
    if page < 1 or limit < 1:
        raise ValidationError("VALID003", f"page and limit must be positive (got page={page}, limit={limit})")


class ListingService:
    def __init__(self, database: Database):
        self.stores = {
            MENTOR: MentorStore(database),
            STUDENT: StudentStore(database),
            CLASSROOM: ClassroomStore(database),
        }
        self.records = {r.name: AssignmentRecordStore(database, r.record_model) for r in RELATIONS}

    def store(self, kind: str) -> DocumentStore:
        return self.stores[kind]

    def find_assigned(
        self,
        relation: Relation,
        anchor_kind: str,
        anchor_id: str,
        page: int,
        limit: int,
        query: Optional[str] = None,
    ) -> Page:
        """Records of ``relation`` whose ``anchor_kind`` side is ``anchor_id``, newest first.

        The total count is taken with the same filter as the page, search
        clause included.
        """
        _check_page(page, limit)
        relation.side(anchor_kind)
        anchor_oid = to_object_id(anchor_id)
        self.store(anchor_kind).get(anchor_oid)

        records = self.records[relation.name]
        filt = {anchor_kind: anchor_oid, **search_clause(query, relation.search_fields)}
        docs = records.find_page(filt, page, limit, sort=NEWEST_ASSIGNED)
        return serialize_list(docs), records.count_where(filt)

    def find_unassigned(
        self,
        relation: Relation,
        anchor_kind: str,
        anchor_id: str,
        page: int,
        limit: int,
        query: Optional[str] = None,
    ) -> Page:
        """Entities on the other side of ``relation`` that are not linked to ``anchor_id``.

        A single-valued reference (Student.mentor) only offers entities that
        are free, since a linked one cannot take a second anchor. Mentor
        listings leave out admins.
        """
        _check_page(page, limit)
        relation.side(anchor_kind)
        anchor_oid = to_object_id(anchor_id)
        self.store(anchor_kind).get(anchor_oid)

        target_side = relation.other(anchor_kind)
        target_store = self.store(target_side.kind)
        if target_side.many:
            filt: Dict[str, Any] = {target_side.field: {"$nin": [anchor_oid]}}
        else:
            filt = {target_side.field: None}
        if target_side.kind == MENTOR:
            filt["role"] = "mentor"
        filt.update(search_clause(query, target_store.search_fields))

        docs = target_store.find_page(filt, page, limit)
        return serialize_list(docs), target_store.count_where(filt)

    def list_entities(self, kind: str, page: int, limit: int, query: Optional[str] = None) -> Page:
        _check_page(page, limit)
        store = self.store(kind)
        filt = search_clause(query, store.search_fields)
        return serialize_list(store.find_page(filt, page, limit)), store.count_where(filt)
