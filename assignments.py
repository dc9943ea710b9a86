"""Assignment orchestration.

Every operation runs as one unit of work: all checks (existence, duplicate
edges, conflicts, capacity) are evaluated before the first write, then both
sides of each edge are updated and the join record is written. Any failure
aborts the whole batch.

Batches on the same relation are serialised by a process-wide lock held from
the first read to commit, so two concurrent batches cannot both pass a
capacity check. Across processes this relies on MongoDB transactions.
"""

import logging
import threading
from contextlib import ExitStack
from typing import Any, Dict, List, Sequence

from bson import ObjectId
from pymongo.database import Database

from config import Settings
from database import serialize_doc, utcnow
from errors import (
    AppError,
    AssignmentConflictError,
    CapacityExceededError,
    DuplicateAssignmentError,
    NotFoundError,
    join_ids,
)
from events import EVENT_LOCK
from relations import (
    CLASSROOM,
    CLASSROOM_STUDENT,
    MENTOR,
    MENTOR_CLASSROOM,
    MENTOR_STUDENT,
    RELATIONS,
    STUDENT,
    Relation,
    Side,
)
from stores import (
    AssignmentRecordStore,
    ClassroomStore,
    DocumentStore,
    EventStore,
    MentorStore,
    StudentStore,
    to_object_id,
    to_object_ids,
)
from uow import UnitOfWork, start_unit_of_work

logger = logging.getLogger(__name__)

_RELATION_LOCKS = {relation.name: threading.Lock() for relation in RELATIONS}


class AssignmentService:
    def __init__(self, database: Database, settings: Settings):
        self.db = database
        self.settings = settings
        self.mentors = MentorStore(database)
        self.students = StudentStore(database)
        self.classrooms = ClassroomStore(database)
        self.records = {r.name: AssignmentRecordStore(database, r.record_model) for r in RELATIONS}
        self.events = EventStore(database)

    def store(self, kind: str) -> DocumentStore:
        return {MENTOR: self.mentors, STUDENT: self.students, CLASSROOM: self.classrooms}[kind]

    def _unit_of_work(self) -> UnitOfWork:
        return start_unit_of_work(self.db, self.settings)

    # Mentor <-> Student

    def assign_students_to_mentor(self, mentor_id: str, student_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return self.assign(MENTOR_STUDENT, MENTOR, mentor_id, student_ids)

    def unassign_students_from_mentor(self, mentor_id: str, record_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return self.unassign(MENTOR_STUDENT, MENTOR, mentor_id, record_ids)

    # Mentor <-> Classroom, from either side

    def assign_classrooms_to_mentor(self, mentor_id: str, classroom_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return self.assign(MENTOR_CLASSROOM, MENTOR, mentor_id, classroom_ids)

    def unassign_classrooms_from_mentor(self, mentor_id: str, record_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return self.unassign(MENTOR_CLASSROOM, MENTOR, mentor_id, record_ids)

    def assign_mentors_to_classroom(self, classroom_id: str, mentor_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return self.assign(MENTOR_CLASSROOM, CLASSROOM, classroom_id, mentor_ids)

    def unassign_mentors_from_classroom(self, classroom_id: str, record_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return self.unassign(MENTOR_CLASSROOM, CLASSROOM, classroom_id, record_ids)

    # Classroom <-> Student

    def add_students_to_classroom(self, classroom_id: str, student_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return self.assign(CLASSROOM_STUDENT, CLASSROOM, classroom_id, student_ids)

    def remove_students_from_classroom(self, classroom_id: str, record_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return self.unassign(CLASSROOM_STUDENT, CLASSROOM, classroom_id, record_ids)

    # Profile changes that touch capacity

    def update_mentor(self, mentor_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a profile update; demoting an admin must respect the classroom limit."""
        oid = to_object_id(mentor_id)
        with _RELATION_LOCKS[MENTOR_CLASSROOM.name]:
            if values.get("role") == "mentor":
                self._check_role_change(self.mentors.get(oid))
            doc = self.mentors.update(oid, values)
        logger.info("Updated mentor %s (%s)", mentor_id, ", ".join(sorted(values)))
        return serialize_doc(doc)

    # Entity removal

    def delete_mentor(self, mentor_id: str) -> Dict[str, Any]:
        return self.delete_entity(MENTOR, mentor_id)

    def delete_student(self, student_id: str) -> Dict[str, Any]:
        return self.delete_entity(STUDENT, student_id)

    def delete_classroom(self, classroom_id: str) -> Dict[str, Any]:
        return self.delete_entity(CLASSROOM, classroom_id)

    # Generic workflows

    def assign(
        self, relation: Relation, anchor_kind: str, anchor_id: str, target_ids: Sequence[str]
    ) -> List[Dict[str, Any]]:
        anchor_side = relation.side(anchor_kind)
        target_side = relation.other(anchor_kind)
        anchor_store = self.store(anchor_side.kind)
        target_store = self.store(target_side.kind)
        records = self.records[relation.name]

        try:
            anchor_oid = to_object_id(anchor_id)
            target_oids = to_object_ids(target_ids)
            with _RELATION_LOCKS[relation.name], self._unit_of_work() as uow:
                anchor = anchor_store.get(anchor_oid, uow)
                targets = self._load(target_store, target_oids, uow)

                self._check_duplicates(relation, anchor_side, target_side, anchor, targets, uow)
                self._check_conflicts(target_side, anchor, targets)
                self._check_capacity(relation, anchor_side, anchor, len(targets))
                for target in targets:
                    self._check_capacity(relation, target_side, target, 1)

                assigned_at = utcnow()
                created = []
                for target in targets:
                    self._link(target_store, target_side, target["_id"], anchor_oid, uow)
                    self._link(anchor_store, anchor_side, anchor_oid, target["_id"], uow)
                    record = relation.build_record(
                        {anchor_side.kind: anchor, target_side.kind: target}, assigned_at
                    )
                    created.append(records.insert(record, uow))
        except AppError as exc:
            logger.info("%s: assignment to %s %s rejected: %s", relation.name, anchor_kind, anchor_id, exc)
            raise

        logger.info(
            "%s: assigned %d %s(s) to %s %s",
            relation.name, len(created), target_side.kind, anchor_kind, anchor_id,
        )
        return [serialize_doc(r) for r in created]

    def unassign(
        self, relation: Relation, anchor_kind: str, anchor_id: str, record_ids: Sequence[str]
    ) -> List[Dict[str, Any]]:
        anchor_side = relation.side(anchor_kind)
        target_side = relation.other(anchor_kind)
        anchor_store = self.store(anchor_side.kind)
        target_store = self.store(target_side.kind)
        records = self.records[relation.name]

        try:
            anchor_oid = to_object_id(anchor_id)
            record_oids = to_object_ids(record_ids)
            with _RELATION_LOCKS[relation.name], self._unit_of_work() as uow:
                found = {
                    r["_id"]: r for r in records.find_for_anchor(anchor_side.kind, anchor_oid, record_oids, uow)
                }
                missing = [i for i in record_oids if i not in found]
                if missing:
                    raise NotFoundError(
                        "ASSGMT404",
                        f"Assigned record(s) {join_ids(missing)} not found for {anchor_kind} {anchor_id}",
                    )

                removed = []
                for record_id in record_oids:
                    record = found[record_id]
                    target_oid = record[target_side.kind]
                    self._unlink(target_store, target_side, target_oid, anchor_oid, uow)
                    self._unlink(anchor_store, anchor_side, anchor_oid, target_oid, uow)
                    records.remove(record, uow)
                    removed.append(record)
        except AppError as exc:
            logger.info("%s: unassignment from %s %s rejected: %s", relation.name, anchor_kind, anchor_id, exc)
            raise

        logger.info(
            "%s: unassigned %d %s(s) from %s %s",
            relation.name, len(removed), target_side.kind, anchor_kind, anchor_id,
        )
        return [serialize_doc(r) for r in removed]

    def delete_entity(self, kind: str, entity_id: str) -> Dict[str, Any]:
        """Delete an entity and every edge that touches it."""
        oid = to_object_id(entity_id)
        store = self.store(kind)
        touching = [r for r in RELATIONS if kind in (r.left.kind, r.right.kind)]

        with ExitStack() as stack:
            for relation in sorted(touching, key=lambda r: r.name):
                stack.enter_context(_RELATION_LOCKS[relation.name])
            if kind in (MENTOR, STUDENT):
                stack.enter_context(EVENT_LOCK)
            uow = stack.enter_context(self._unit_of_work())

            doc = store.get(oid, uow)
            detached = 0
            for relation in touching:
                other = relation.other(kind)
                detached += self.store(other.kind).detach_everywhere(other.field, oid, other.many, uow)
                self.records[relation.name].remove_referencing(kind, oid, uow)
            events = self.events.remove_referencing(kind, oid, uow) if kind in (MENTOR, STUDENT) else 0
            store.delete(oid, uow)

        logger.info(
            "Deleted %s %s, detached from %d document(s), removed %d event(s)", kind, entity_id, detached, events
        )
        return serialize_doc(doc)

    # Checks

    @staticmethod
    def _load(store: DocumentStore, ids: List[ObjectId], uow: UnitOfWork) -> List[Dict[str, Any]]:
        by_id = {doc["_id"]: doc for doc in store.find_by_ids(ids, uow)}
        missing = [i for i in ids if i not in by_id]
        if missing:
            raise NotFoundError(
                store.not_found_code, f"{store.label}(s) with id {join_ids(missing)} not found"
            )
        return [by_id[i] for i in ids]

    def _check_duplicates(
        self,
        relation: Relation,
        anchor_side: Side,
        target_side: Side,
        anchor: Dict[str, Any],
        targets: List[Dict[str, Any]],
        uow: UnitOfWork,
    ) -> None:
        target_ids = [t["_id"] for t in targets]
        existing = self.records[relation.name].find_pairs(
            anchor_side.kind, anchor["_id"], target_side.kind, target_ids, uow
        )
        duplicated = {r[target_side.kind] for r in existing}
        duplicated.update(set(target_ids) & set(anchor_side.references(anchor)))
        duplicated.update(t["_id"] for t in targets if anchor["_id"] in target_side.references(t))
        if duplicated:
            ordered = [i for i in target_ids if i in duplicated]
            raise DuplicateAssignmentError(
                "ASSGMT006",
                f"{target_side.kind.capitalize()}(s) {join_ids(ordered)} already assigned to "
                f"{anchor_side.kind} {anchor['_id']}",
            )

    def _check_role_change(self, mentor: Dict[str, Any]) -> None:
        side = MENTOR_CLASSROOM.side(MENTOR)
        limit = side.capacity(self.settings.capacity, {**mentor, "role": "mentor"})
        held = len(side.references(mentor))
        if limit is not None and held > limit:
            raise CapacityExceededError(
                side.error_code,
                f"Mentor {mentor['_id']} holds {held} classrooms; the mentor role allows at most "
                f"{limit} classrooms per mentor. Unassign classrooms first.",
                limit,
            )

    @staticmethod
    def _check_conflicts(target_side: Side, anchor: Dict[str, Any], targets: List[Dict[str, Any]]) -> None:
        if target_side.many:
            return
        taken = [t["_id"] for t in targets if target_side.references(t)]
        if taken:
            raise AssignmentConflictError(
                target_side.error_code,
                f"{target_side.kind.capitalize()}(s) {join_ids(taken)} already have a "
                f"{target_side.field}; unassign them first",
            )

    def _check_capacity(self, relation: Relation, side: Side, doc: Dict[str, Any], adding: int) -> None:
        limit = side.capacity(self.settings.capacity, doc)
        if limit is None:
            return
        current = len(side.references(doc))
        if current + adding > limit:
            other = relation.other(side.kind).kind
            raise CapacityExceededError(
                side.error_code,
                f"Cannot assign {adding} more {other}(s) to {side.kind} {doc['_id']} "
                f"({current} assigned). This operation would exceed the limit of "
                f"{limit} {other}s per {side.kind}.",
                limit,
            )

    # Edge writes

    @staticmethod
    def _link(store: DocumentStore, side: Side, doc_id: ObjectId, ref: ObjectId, uow: UnitOfWork) -> None:
        if side.many:
            matched = store.add_to_array(doc_id, side.field, [ref], uow)
        else:
            matched = store.set_reference(doc_id, side.field, ref, uow)
        if not matched:
            raise NotFoundError(store.not_found_code, f"{store.label} with id {doc_id} was not found")

    @staticmethod
    def _unlink(store: DocumentStore, side: Side, doc_id: ObjectId, ref: ObjectId, uow: UnitOfWork) -> None:
        if side.many:
            matched = store.pull_from_array(doc_id, side.field, [ref], uow)
        else:
            matched = store.clear_reference(doc_id, side.field, ref, uow)
        if not matched:
            raise NotFoundError(
                store.not_found_code, f"{store.label} with id {doc_id} was not found or not linked to {ref}"
            )
