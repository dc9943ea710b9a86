"""
Database Schemas for the Mentorship Administration backend

Each Pydantic model below maps to a MongoDB collection (class name lowercased).
Use these to validate data and as the source of truth for the application domain.

The relational fields (Mentor.classrooms, Mentor.students, Classroom.mentors,
Classroom.students, Student.classrooms, Student.mentor) are written only by
the assignment service, so the create/update payloads do not expose them.
"""

from datetime import date, datetime
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

Role = Literal["mentor", "admin"]
EventStatus = Literal["0", "1"]

DEFAULT_AVATAR = "default-avatar.png"
DEFAULT_COVER = "default-cover.png"


# Core identities
class Mentor(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    email: str
    name: str
    password_hash: str
    role: Role = "mentor"
    languages: List[str] = Field(default_factory=list)
    status: str = "active"
    avatar: str = DEFAULT_AVATAR
    classrooms: List[ObjectId] = Field(default_factory=list)
    students: List[ObjectId] = Field(default_factory=list)


class Student(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    student_id: str = Field(..., description="Business identifier, distinct from _id")
    name: str
    date_of_birth: Optional[date] = None
    address: Optional[str] = None
    gender: str = "0"
    languages: List[str] = Field(default_factory=list)
    status: str = "active"
    avatar: str = DEFAULT_AVATAR
    classrooms: List[ObjectId] = Field(default_factory=list)
    mentor: Optional[ObjectId] = None


class Classroom(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: Optional[str] = None
    languages: List[str] = Field(default_factory=list)
    cover: str = DEFAULT_COVER
    mentors: List[ObjectId] = Field(default_factory=list)
    students: List[ObjectId] = Field(default_factory=list)


# Assignment records: one collection per relation, snapshotting descriptive
# fields at assignment time.
class _AssignmentRecord(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    assigned_at: datetime


class MentorStudentAssignment(_AssignmentRecord):
    mentor: ObjectId
    student: ObjectId
    mentor_name: str
    student_code: str
    student_name: str
    student_status: str
    student_avatar: Optional[str] = None


class MentorClassroomAssignment(_AssignmentRecord):
    mentor: ObjectId
    classroom: ObjectId
    mentor_name: str
    mentor_email: str
    mentor_status: str
    mentor_avatar: Optional[str] = None
    classroom_name: str
    classroom_description: Optional[str] = None
    classroom_languages: List[str] = Field(default_factory=list)
    classroom_cover: Optional[str] = None


class ClassroomStudentAssignment(_AssignmentRecord):
    classroom: ObjectId
    student: ObjectId
    classroom_name: str
    student_code: str
    student_name: str
    student_status: str
    student_avatar: Optional[str] = None


class Event(BaseModel):
    """A scheduled session between one mentor and one student."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    title: str
    all_day: bool = False
    start: datetime
    end: datetime
    status: EventStatus = "0"
    student: ObjectId
    mentor: ObjectId


class AuditLog(BaseModel):
    user_id: Optional[str] = None
    role: Optional[str] = None
    action: str
    path: str
    method: str
    status: int
    duration_ms: Optional[float] = None
    ip: Optional[str] = None


# Request payloads
class MentorCreate(BaseModel):
    email: str
    name: str
    password: str = Field(..., min_length=6)
    role: Role = "mentor"
    languages: List[str] = Field(default_factory=list)
    status: str = "active"
    avatar: str = DEFAULT_AVATAR


class MentorUpdate(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    password: Optional[str] = Field(None, min_length=6)
    role: Optional[Role] = None
    languages: Optional[List[str]] = None
    status: Optional[str] = None
    avatar: Optional[str] = None


class StudentCreate(BaseModel):
    student_id: str
    name: str
    date_of_birth: Optional[date] = None
    address: Optional[str] = None
    gender: str = "0"
    languages: List[str] = Field(default_factory=list)
    status: str = "active"
    avatar: str = DEFAULT_AVATAR


class StudentUpdate(BaseModel):
    student_id: Optional[str] = None
    name: Optional[str] = None
    date_of_birth: Optional[date] = None
    address: Optional[str] = None
    gender: Optional[str] = None
    languages: Optional[List[str]] = None
    status: Optional[str] = None
    avatar: Optional[str] = None


class ClassroomCreate(BaseModel):
    name: str
    description: Optional[str] = None
    languages: List[str] = Field(default_factory=list)
    cover: str = DEFAULT_COVER


class ClassroomUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    languages: Optional[List[str]] = None
    cover: Optional[str] = None


class EventCreate(BaseModel):
    title: str = Field(..., min_length=1)
    all_day: bool = False
    start: datetime
    end: datetime
    status: EventStatus = "0"
    student: str
    mentor: str


class EventUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    all_day: Optional[bool] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    status: Optional[EventStatus] = None
    student: Optional[str] = None
    mentor: Optional[str] = None


class AssignPayload(BaseModel):
    ids: List[str] = Field(..., min_length=1, description="Ids of the entities to assign")


class UnassignPayload(BaseModel):
    assigned_ids: List[str] = Field(..., min_length=1, description="Ids of the assignment records to remove")


class SignInPayload(BaseModel):
    email: str
    password: str
