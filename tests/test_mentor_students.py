"""Mentor <-> student assignment: linking, capacity, duplicates, conflicts, atomicity."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from conftest import ids, reload
from errors import (
    AssignmentConflictError,
    CapacityExceededError,
    DuplicateAssignmentError,
    NotFoundError,
    ValidationError,
)


def _records(db) -> list:
    return list(db["mentorstudentassignment"].find())


def test_assign_links_both_sides_and_snapshots_record(db, service, make_mentor, make_student) -> None:
    """Each assigned student points at the mentor, the mentor lists it, and a record is written."""
    mentor = make_mentor(name="Ada")
    s1 = make_student(student_id="S-1", name="Grace")
    s2 = make_student(student_id="S-2", name="Linus")

    created = service.assign_students_to_mentor(str(mentor["_id"]), ids(s1, s2))

    assert [r["student"] for r in created] == ids(s1, s2)
    assert created[0]["mentor_name"] == "Ada"
    assert created[0]["student_code"] == "S-1"
    assert created[0]["student_name"] == "Grace"
    assert created[0]["student_status"] == "active"
    assert "assigned_at" in created[0]

    assert reload(db, "mentor", mentor)["students"] == [s1["_id"], s2["_id"]]
    assert reload(db, "student", s1)["mentor"] == mentor["_id"]
    assert reload(db, "student", s2)["mentor"] == mentor["_id"]
    assert len(_records(db)) == 2


def test_capacity_rejects_whole_batch(db, service, make_mentor, make_student) -> None:
    """A batch that would overflow the mentor's student limit changes nothing."""
    mentor = make_mentor()
    first = [make_student(), make_student()]
    service.assign_students_to_mentor(str(mentor["_id"]), ids(*first))

    extra = [make_student(), make_student()]
    with pytest.raises(CapacityExceededError) as info:
        service.assign_students_to_mentor(str(mentor["_id"]), ids(*extra))

    assert info.value.code == "ASSGMT004"
    assert info.value.limit == 3
    assert "limit of 3" in str(info.value)
    assert reload(db, "mentor", mentor)["students"] == [s["_id"] for s in first]
    assert all(reload(db, "student", s)["mentor"] is None for s in extra)
    assert len(_records(db)) == 2


def test_batch_filling_capacity_exactly_succeeds(service, make_mentor, make_student) -> None:
    """Reaching the limit is allowed, only exceeding it is rejected."""
    mentor = make_mentor()
    students = [make_student() for _ in range(3)]

    created = service.assign_students_to_mentor(str(mentor["_id"]), ids(*students))

    assert len(created) == 3


def test_duplicate_assignment_is_rejected(db, service, make_mentor, make_student) -> None:
    mentor = make_mentor()
    linked = make_student()
    fresh = make_student()
    service.assign_students_to_mentor(str(mentor["_id"]), ids(linked))

    with pytest.raises(DuplicateAssignmentError) as info:
        service.assign_students_to_mentor(str(mentor["_id"]), ids(fresh, linked))

    assert info.value.code == "ASSGMT006"
    assert str(linked["_id"]) in str(info.value)
    assert reload(db, "student", fresh)["mentor"] is None
    assert len(_records(db)) == 1


def test_student_of_another_mentor_conflicts(db, service, make_mentor, make_student) -> None:
    """A student holds a single mentor; a second mentor must wait for an unassign."""
    first, second = make_mentor(), make_mentor()
    student = make_student()
    service.assign_students_to_mentor(str(first["_id"]), ids(student))

    with pytest.raises(AssignmentConflictError) as info:
        service.assign_students_to_mentor(str(second["_id"]), ids(student))

    assert info.value.code == "ASSGMT005"
    assert reload(db, "student", student)["mentor"] == first["_id"]
    assert reload(db, "mentor", second)["students"] == []


def test_missing_student_fails_batch(db, service, make_mentor, make_student) -> None:
    mentor = make_mentor()
    present = make_student()
    ghost = str(ObjectId())

    with pytest.raises(NotFoundError) as info:
        service.assign_students_to_mentor(str(mentor["_id"]), [str(present["_id"]), ghost])

    assert info.value.code == "STUDENT404"
    assert ghost in str(info.value)
    assert reload(db, "student", present)["mentor"] is None
    assert _records(db) == []


def test_missing_mentor_is_not_found(service, make_student) -> None:
    with pytest.raises(NotFoundError) as info:
        service.assign_students_to_mentor(str(ObjectId()), ids(make_student()))
    assert info.value.code == "MENTOR404"


@pytest.mark.parametrize("student_ids", [[], ["not-an-id"]])
def test_invalid_ids_are_rejected(service, make_mentor, student_ids) -> None:
    with pytest.raises(ValidationError):
        service.assign_students_to_mentor(str(make_mentor()["_id"]), student_ids)


def test_repeated_ids_are_rejected(service, make_mentor, make_student) -> None:
    student = make_student()
    with pytest.raises(ValidationError) as info:
        service.assign_students_to_mentor(str(make_mentor()["_id"]), ids(student, student))
    assert info.value.code == "VALID002"


def test_assign_then_unassign_twice(db, service, make_mentor, make_student) -> None:
    """Unassigning restores both sides; repeating the unassign is a not-found error."""
    mentor = make_mentor()
    student = make_student()
    record = service.assign_students_to_mentor(str(mentor["_id"]), ids(student))[0]

    removed = service.unassign_students_from_mentor(str(mentor["_id"]), [record["id"]])

    assert [r["id"] for r in removed] == [record["id"]]
    assert reload(db, "mentor", mentor)["students"] == []
    assert reload(db, "student", student)["mentor"] is None
    assert _records(db) == []

    with pytest.raises(NotFoundError) as info:
        service.unassign_students_from_mentor(str(mentor["_id"]), [record["id"]])
    assert info.value.code == "ASSGMT404"


def test_unassign_is_scoped_to_the_anchor(db, service, make_mentor, make_student) -> None:
    """A record owned by another mentor cannot be removed through this mentor."""
    owner, other = make_mentor(), make_mentor()
    student = make_student()
    record = service.assign_students_to_mentor(str(owner["_id"]), ids(student))[0]

    with pytest.raises(NotFoundError):
        service.unassign_students_from_mentor(str(other["_id"]), [record["id"]])

    assert reload(db, "student", student)["mentor"] == owner["_id"]
    assert len(_records(db)) == 1


def test_unassign_with_one_unknown_record_changes_nothing(db, service, make_mentor, make_student) -> None:
    mentor = make_mentor()
    students = [make_student(), make_student()]
    records = service.assign_students_to_mentor(str(mentor["_id"]), ids(*students))

    with pytest.raises(NotFoundError):
        service.unassign_students_from_mentor(str(mentor["_id"]), [records[0]["id"], str(ObjectId())])

    assert reload(db, "mentor", mentor)["students"] == [s["_id"] for s in students]
    assert len(_records(db)) == 2


def test_failure_mid_batch_rolls_back_earlier_writes(db, service, make_mentor, make_student, monkeypatch) -> None:
    """A storage failure on the second student undoes the first student's edge and record."""
    mentor = make_mentor()
    students = [make_student() for _ in range(3)]
    original = service.students.set_reference
    calls = {"n": 0}

    def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise PyMongoError("injected failure")
        return original(*args, **kwargs)

    monkeypatch.setattr(service.students, "set_reference", flaky)

    with pytest.raises(PyMongoError):
        service.assign_students_to_mentor(str(mentor["_id"]), ids(*students))

    assert reload(db, "mentor", mentor)["students"] == []
    assert all(reload(db, "student", s)["mentor"] is None for s in students)
    assert _records(db) == []


def test_unassign_then_reassign_to_another_mentor(db, service, make_mentor, make_student) -> None:
    first, second = make_mentor(), make_mentor()
    student = make_student()
    record = service.assign_students_to_mentor(str(first["_id"]), ids(student))[0]
    service.unassign_students_from_mentor(str(first["_id"]), [record["id"]])

    service.assign_students_to_mentor(str(second["_id"]), ids(student))

    assert reload(db, "student", student)["mentor"] == second["_id"]
    assert reload(db, "mentor", first)["students"] == []


def test_concurrent_batches_cannot_jointly_exceed_limit(db, service, make_mentor, make_student) -> None:
    """Two batches racing on one mentor: the second sees the first's writes and is refused."""
    mentor = make_mentor()
    service.assign_students_to_mentor(str(mentor["_id"]), ids(make_student()))
    batches = [ids(make_student(), make_student()), ids(make_student(), make_student())]
    barrier = threading.Barrier(len(batches))

    def run(batch):
        barrier.wait()
        return service.assign_students_to_mentor(str(mentor["_id"]), batch)

    with ThreadPoolExecutor(max_workers=len(batches)) as pool:
        futures = [pool.submit(run, batch) for batch in batches]
    errors = [f.exception() for f in futures]

    assert sum(isinstance(e, CapacityExceededError) for e in errors) == 1
    assert sum(e is None for e in errors) == 1
    assert len(reload(db, "mentor", mentor)["students"]) == 3
    assert len(_records(db)) == 3
