"""Classroom <-> student enrollment."""

from __future__ import annotations

import pytest

from conftest import ids, reload
from errors import CapacityExceededError, DuplicateAssignmentError


def test_student_can_join_several_classrooms(db, service, make_classroom, make_student) -> None:
    student = make_student()
    c1, c2 = make_classroom(), make_classroom()

    service.add_students_to_classroom(str(c1["_id"]), ids(student))
    service.add_students_to_classroom(str(c2["_id"]), ids(student))

    assert reload(db, "student", student)["classrooms"] == [c1["_id"], c2["_id"]]
    assert reload(db, "classroom", c1)["students"] == [student["_id"]]
    assert db["classroomstudentassignment"].count_documents({"student": student["_id"]}) == 2


def test_enrollment_does_not_touch_mentor_reference(db, service, make_mentor, make_classroom, make_student) -> None:
    mentor = make_mentor()
    student = make_student()
    service.assign_students_to_mentor(str(mentor["_id"]), ids(student))

    service.add_students_to_classroom(str(make_classroom()["_id"]), ids(student))

    assert reload(db, "student", student)["mentor"] == mentor["_id"]


def test_classroom_student_limit(db, service, make_classroom, make_student) -> None:
    classroom = make_classroom()
    students = [make_student() for _ in range(4)]

    with pytest.raises(CapacityExceededError) as info:
        service.add_students_to_classroom(str(classroom["_id"]), ids(*students))

    assert info.value.code == "ASSGSD003"
    assert reload(db, "classroom", classroom)["students"] == []
    assert all(reload(db, "student", s)["classrooms"] == [] for s in students)


def test_duplicate_enrollment(service, make_classroom, make_student) -> None:
    classroom = make_classroom()
    student = make_student()
    service.add_students_to_classroom(str(classroom["_id"]), ids(student))

    with pytest.raises(DuplicateAssignmentError):
        service.add_students_to_classroom(str(classroom["_id"]), ids(student))


def test_remove_student_from_classroom(db, service, make_classroom, make_student) -> None:
    classroom = make_classroom(name="Chemistry")
    keep, leave = make_student(), make_student()
    records = service.add_students_to_classroom(str(classroom["_id"]), ids(keep, leave))
    assert records[1]["classroom_name"] == "Chemistry"

    service.remove_students_from_classroom(str(classroom["_id"]), [records[1]["id"]])

    assert reload(db, "classroom", classroom)["students"] == [keep["_id"]]
    assert reload(db, "student", leave)["classrooms"] == []
    assert reload(db, "student", keep)["classrooms"] == [classroom["_id"]]
