"""Shared fixtures: an in-memory MongoDB, services, entity factories and an HTTP client."""

from __future__ import annotations

import dataclasses
import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient

from assignments import AssignmentService
from auth import create_access_token, hash_password
from config import CapacityPolicy, get_settings
from database import ensure_indexes, get_db
from listing import ListingService
from main import app
from schemas import Classroom, Mentor, Student
from stores import ClassroomStore, MentorStore, StudentStore

PASSWORD = "correct-horse"
PASSWORD_HASH = hash_password(PASSWORD)


@pytest.fixture
def settings():
    # mongomock has no sessions, so batches run on the compensating unit of work
    return dataclasses.replace(
        get_settings(),
        use_transactions=False,
        capacity=CapacityPolicy(
            mentor_students=3,
            mentor_classrooms=2,
            classroom_mentors=3,
            classroom_students=3,
        ),
    )


@pytest.fixture
def db():
    database = mongomock.MongoClient().get_database("mentorship_test")
    ensure_indexes(database)
    return database


@pytest.fixture
def service(db, settings) -> AssignmentService:
    return AssignmentService(db, settings)


@pytest.fixture
def listing(db) -> ListingService:
    return ListingService(db)


@pytest.fixture
def make_mentor(db):
    counter = itertools.count(1)

    def _make(role: str = "mentor", **fields):
        n = next(counter)
        fields.setdefault("email", f"mentor{n}@example.com")
        fields.setdefault("name", f"Mentor {n}")
        mentor = Mentor(password_hash=PASSWORD_HASH, role=role, languages=["python"], **fields)
        return MentorStore(db).create(mentor)

    return _make


@pytest.fixture
def make_student(db):
    counter = itertools.count(1)

    def _make(**fields):
        n = next(counter)
        fields.setdefault("student_id", f"S{n:04d}")
        fields.setdefault("name", f"Student {n}")
        return StudentStore(db).create(Student(**fields))

    return _make


@pytest.fixture
def make_classroom(db):
    counter = itertools.count(1)

    def _make(**fields):
        n = next(counter)
        fields.setdefault("name", f"Classroom {n}")
        fields.setdefault("languages", ["python"])
        return ClassroomStore(db).create(Classroom(**fields))

    return _make


def ids(*docs) -> list[str]:
    return [str(d["_id"]) for d in docs]


def reload(db, collection: str, doc):
    return db[collection].find_one({"_id": doc["_id"]})


@pytest.fixture
def client(db, settings):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def token_for(settings):
    def _token(doc) -> dict:
        token = create_access_token(
            {"sub": str(doc["_id"]), "email": doc["email"], "role": doc["role"]}, settings
        )
        return {"Authorization": f"Bearer {token}"}

    return _token


@pytest.fixture
def admin_headers(make_mentor, token_for):
    return token_for(make_mentor(role="admin", email="admin@example.com", name="Admin"))
