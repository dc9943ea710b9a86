"""Declarative description of the three many-to-many relations.

A relation joins two entity kinds. Each side names the field on its own
documents that references the other side, whether that field holds many
references or a single one, and the capacity rule for that field.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel

from config import CapacityPolicy
from schemas import ClassroomStudentAssignment, MentorClassroomAssignment, MentorStudentAssignment

CapacityRule = Callable[[CapacityPolicy, Dict[str, Any]], Optional[int]]

MENTOR = "mentor"
STUDENT = "student"
CLASSROOM = "classroom"


def _unlimited(policy: CapacityPolicy, doc: Dict[str, Any]) -> Optional[int]:
    return None


def _mentor_students(policy: CapacityPolicy, doc: Dict[str, Any]) -> Optional[int]:
    return policy.mentor_students


def _mentor_classrooms(policy: CapacityPolicy, doc: Dict[str, Any]) -> Optional[int]:
    # admins are not bound by the classroom limit
    if doc.get("role", "mentor") != "mentor":
        return None
    return policy.mentor_classrooms


def _classroom_mentors(policy: CapacityPolicy, doc: Dict[str, Any]) -> Optional[int]:
    return policy.classroom_mentors


def _classroom_students(policy: CapacityPolicy, doc: Dict[str, Any]) -> Optional[int]:
    return policy.classroom_students


@dataclass(frozen=True)
class Side:
    kind: str
    field: str
    many: bool
    capacity: CapacityRule
    error_code: str

    def references(self, doc: Dict[str, Any]) -> list:
        value = doc.get(self.field)
        if self.many:
            return list(value or [])
        return [] if value is None else [value]


@dataclass(frozen=True)
class Relation:
    name: str
    record_model: type
    left: Side
    right: Side
    search_fields: Tuple[str, ...]
    snapshot: Callable[[Dict[str, Any], Dict[str, Any], datetime], BaseModel]

    def side(self, kind: str) -> Side:
        if kind == self.left.kind:
            return self.left
        if kind == self.right.kind:
            return self.right
        raise KeyError(f"{kind} is not part of relation {self.name}")

    def other(self, kind: str) -> Side:
        return self.right if kind == self.left.kind else self.left

    def build_record(self, docs: Dict[str, Dict[str, Any]], assigned_at: datetime) -> BaseModel:
        return self.snapshot(docs[self.left.kind], docs[self.right.kind], assigned_at)


def _mentor_student_record(mentor, student, assigned_at) -> MentorStudentAssignment:
    return MentorStudentAssignment(
        assigned_at=assigned_at,
        mentor=mentor["_id"],
        student=student["_id"],
        mentor_name=mentor["name"],
        student_code=student["student_id"],
        student_name=student["name"],
        student_status=student.get("status", "active"),
        student_avatar=student.get("avatar"),
    )


def _mentor_classroom_record(mentor, classroom, assigned_at) -> MentorClassroomAssignment:
    return MentorClassroomAssignment(
        assigned_at=assigned_at,
        mentor=mentor["_id"],
        classroom=classroom["_id"],
        mentor_name=mentor["name"],
        mentor_email=mentor["email"],
        mentor_status=mentor.get("status", "active"),
        mentor_avatar=mentor.get("avatar"),
        classroom_name=classroom["name"],
        classroom_description=classroom.get("description"),
        classroom_languages=classroom.get("languages") or [],
        classroom_cover=classroom.get("cover"),
    )


def _classroom_student_record(classroom, student, assigned_at) -> ClassroomStudentAssignment:
    return ClassroomStudentAssignment(
        assigned_at=assigned_at,
        classroom=classroom["_id"],
        student=student["_id"],
        classroom_name=classroom["name"],
        student_code=student["student_id"],
        student_name=student["name"],
        student_status=student.get("status", "active"),
        student_avatar=student.get("avatar"),
    )


MENTOR_STUDENT = Relation(
    name="mentor_student",
    record_model=MentorStudentAssignment,
    left=Side(MENTOR, "students", True, _mentor_students, "ASSGMT004"),
    right=Side(STUDENT, "mentor", False, _unlimited, "ASSGMT005"),
    search_fields=("student_code", "student_name"),
    snapshot=_mentor_student_record,
)

MENTOR_CLASSROOM = Relation(
    name="mentor_classroom",
    record_model=MentorClassroomAssignment,
    left=Side(MENTOR, "classrooms", True, _mentor_classrooms, "ASSGMT002"),
    right=Side(CLASSROOM, "mentors", True, _classroom_mentors, "ASSGMT003"),
    search_fields=("classroom_name", "mentor_name", "mentor_email"),
    snapshot=_mentor_classroom_record,
)

CLASSROOM_STUDENT = Relation(
    name="classroom_student",
    record_model=ClassroomStudentAssignment,
    left=Side(CLASSROOM, "students", True, _classroom_students, "ASSGSD003"),
    right=Side(STUDENT, "classrooms", True, _unlimited, "ASSGSD004"),
    search_fields=("student_code", "student_name", "classroom_name"),
    snapshot=_classroom_student_record,
)

RELATIONS = (MENTOR_STUDENT, MENTOR_CLASSROOM, CLASSROOM_STUDENT)
