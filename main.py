import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from assignments import AssignmentService
from auth import TokenResponse, authenticate, decode_user, ensure_admin, hash_password, require_roles
from config import Settings, get_settings
from database import collection_name, create_document, db, ensure_indexes, get_db, serialize_doc, utcnow
from errors import AppError, ErrorKind, ValidationError
from events import EventService
from listing import ListingService
from logging_config import setup_logging
from relations import CLASSROOM, CLASSROOM_STUDENT, MENTOR, MENTOR_CLASSROOM, MENTOR_STUDENT, STUDENT
from schemas import (
    AssignPayload,
    AuditLog,
    Classroom,
    ClassroomCreate,
    ClassroomUpdate,
    EventCreate,
    EventUpdate,
    Mentor,
    MentorCreate,
    MentorUpdate,
    SignInPayload,
    Student,
    StudentCreate,
    StudentUpdate,
    UnassignPayload,
)
from stores import ClassroomStore, MentorStore, StudentStore
from uow import UnitOfWorkError

settings = get_settings()
setup_logging(settings)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
        ensure_admin(MentorStore(db), settings)
    else:
        logger.warning("DATABASE_URL is not set; database endpoints will answer 500")
    yield


app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

admin_only = require_roles("admin")
any_member = require_roles("admin", "mentor")


# -------------------- Dependencies -------------------- #

def get_assignment_service(
    database: Database = Depends(get_db), settings: Settings = Depends(get_settings)
) -> AssignmentService:
    return AssignmentService(database, settings)


def get_listing_service(database: Database = Depends(get_db)) -> ListingService:
    return ListingService(database)


def get_event_service(database: Database = Depends(get_db)) -> EventService:
    return EventService(database)


class Paging:
    def __init__(
        self,
        page: int = Query(1, ge=1, description="Current page"),
        limit: Optional[int] = Query(None, ge=1, le=100, description="Limit per page"),
        query: Optional[str] = Query(None, alias="queryString", description="Search query string"),
        settings: Settings = Depends(get_settings),
    ):
        self.page = page
        self.limit = limit or settings.default_page_size
        self.query = query


def success(data: Any, gross_cnt: Optional[int] = None) -> Dict[str, Any]:
    body = {"status": "success", "data": data}
    if gross_cnt is not None:
        body["grossCnt"] = gross_cnt
    return body


def ensure_own_mentor(user: Dict[str, Any], mentor_id: str) -> None:
    if user.get("role") != "admin" and user.get("sub") != mentor_id:
        raise HTTPException(
            status_code=403, detail="AUTH403: Mentors may only access their own assignments and events"
        )


# -------------------- Error mapping -------------------- #

def _error_body(request: Request, status_code: int, detail: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "timestamp": utcnow().isoformat(),
        "path": request.url.path,
        **detail,
    }


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=_error_body(request, exc.status_code, exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    detail = {"kind": ErrorKind.VALIDATION.value, "code": "VALID000", "message": jsonable_encoder(exc.errors())}
    return JSONResponse(status_code=400, content=_error_body(request, 400, detail))


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    key_value = (exc.details or {}).get("keyValue")
    detail = {
        "kind": ErrorKind.VALIDATION.value,
        "code": "DUPKEY",
        "message": f"Duplicate field value {jsonable_encoder(key_value)}. Please use another value!",
    }
    return JSONResponse(status_code=400, content=_error_body(request, 400, detail))


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    detail = {"kind": "server_error", "code": "DB500", "message": "Database error"}
    return JSONResponse(status_code=500, content=_error_body(request, 500, detail))


@app.exception_handler(UnitOfWorkError)
async def unit_of_work_error_handler(request: Request, exc: UnitOfWorkError):
    logger.exception("Unit of work failed on %s %s", request.method, request.url.path, exc_info=exc)
    detail = {"kind": "server_error", "code": "UOW500", "message": str(exc)}
    return JSONResponse(status_code=500, content=_error_body(request, 500, detail))


# -------------------- Audit Middleware -------------------- #
@app.middleware("http")
async def audit_middleware(request: Request, call_next):
    start = time.perf_counter()
    user = decode_user(request, settings)
    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    logger.info("%s %s -> %s (%.2f ms)", request.method, request.url.path, response.status_code, duration_ms)
    if db is not None and request.method != "GET":
        log = AuditLog(
            user_id=(user or {}).get("sub"),
            role=(user or {}).get("role"),
            action="request",
            path=str(request.url.path),
            method=request.method,
            status=response.status_code,
            duration_ms=duration_ms,
            ip=request.client.host if request.client else None,
        )
        try:
            create_document(collection_name(AuditLog), log, database=db)
        except PyMongoError:
            logger.exception("Failed to persist audit log for %s %s", request.method, request.url.path)
    return response


# -------------------- Meta endpoints -------------------- #

@app.get("/")
def read_root():
    return {"message": "Mentorship administration backend is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.database_url else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is None:
        return response
    response["database_name"] = db.name
    try:
        response["collections"] = db.list_collection_names()[:50]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"⚠️  Connected but Error: {str(e)[:80]}"
    return response


# -------------------- Auth endpoints -------------------- #

@app.post("/auth/signin", response_model=TokenResponse)
def signin(payload: SignInPayload, database: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    return authenticate(MentorStore(database), payload.email, payload.password, settings)


@app.get("/auth/me")
def read_me(user=Depends(any_member), database: Database = Depends(get_db)):
    return success(serialize_doc(MentorStore(database).get(user["sub"])))


# -------------------- Mentor endpoints -------------------- #

@app.post("/mentors")
def create_mentor(payload: MentorCreate, user=Depends(admin_only), database: Database = Depends(get_db)):
    mentor = Mentor(
        **payload.model_dump(exclude={"password"}),
        password_hash=hash_password(payload.password),
    )
    return success(serialize_doc(MentorStore(database).create(mentor)))


@app.get("/mentors")
def list_mentors(
    paging: Paging = Depends(), user=Depends(admin_only), listing: ListingService = Depends(get_listing_service)
):
    data, count = listing.list_entities(MENTOR, paging.page, paging.limit, paging.query)
    return success(data, count)


@app.get("/mentors/{mentor_id}")
def get_mentor(mentor_id: str, user=Depends(admin_only), database: Database = Depends(get_db)):
    return success(serialize_doc(MentorStore(database).get(mentor_id)))


@app.patch("/mentors/{mentor_id}")
def update_mentor(
    mentor_id: str, payload: MentorUpdate, user=Depends(admin_only),
    service: AssignmentService = Depends(get_assignment_service),
):
    values = payload.model_dump(exclude_unset=True)
    if not values:
        raise ValidationError("VALID004", "Nothing to update")
    if "password" in values:
        values["password_hash"] = hash_password(values.pop("password"))
    return success(service.update_mentor(mentor_id, values))


@app.delete("/mentors/{mentor_id}")
def delete_mentor(mentor_id: str, user=Depends(admin_only), service: AssignmentService = Depends(get_assignment_service)):
    return success(service.delete_mentor(mentor_id))


# -------------------- Student endpoints -------------------- #

@app.post("/students")
def create_student(payload: StudentCreate, user=Depends(admin_only), database: Database = Depends(get_db)):
    return success(serialize_doc(StudentStore(database).create(Student(**payload.model_dump()))))


@app.get("/students")
def list_students(
    paging: Paging = Depends(), user=Depends(admin_only), listing: ListingService = Depends(get_listing_service)
):
    data, count = listing.list_entities(STUDENT, paging.page, paging.limit, paging.query)
    return success(data, count)


@app.get("/students/{student_id}")
def get_student(student_id: str, user=Depends(admin_only), database: Database = Depends(get_db)):
    return success(serialize_doc(StudentStore(database).get(student_id)))


@app.patch("/students/{student_id}")
def update_student(student_id: str, payload: StudentUpdate, user=Depends(admin_only), database: Database = Depends(get_db)):
    values = payload.model_dump(exclude_unset=True)
    if not values:
        raise ValidationError("VALID004", "Nothing to update")
    return success(serialize_doc(StudentStore(database).update(student_id, values)))


@app.delete("/students/{student_id}")
def delete_student(student_id: str, user=Depends(admin_only), service: AssignmentService = Depends(get_assignment_service)):
    return success(service.delete_student(student_id))


# -------------------- Classroom endpoints -------------------- #

@app.post("/classrooms")
def create_classroom(payload: ClassroomCreate, user=Depends(admin_only), database: Database = Depends(get_db)):
    return success(serialize_doc(ClassroomStore(database).create(Classroom(**payload.model_dump()))))


@app.get("/classrooms")
def list_classrooms(
    paging: Paging = Depends(), user=Depends(admin_only), listing: ListingService = Depends(get_listing_service)
):
    data, count = listing.list_entities(CLASSROOM, paging.page, paging.limit, paging.query)
    return success(data, count)


@app.get("/classrooms/{classroom_id}")
def get_classroom(classroom_id: str, user=Depends(admin_only), database: Database = Depends(get_db)):
    return success(serialize_doc(ClassroomStore(database).get(classroom_id)))


@app.patch("/classrooms/{classroom_id}")
def update_classroom(classroom_id: str, payload: ClassroomUpdate, user=Depends(admin_only), database: Database = Depends(get_db)):
    values = payload.model_dump(exclude_unset=True)
    if not values:
        raise ValidationError("VALID004", "Nothing to update")
    return success(serialize_doc(ClassroomStore(database).update(classroom_id, values)))


@app.delete("/classrooms/{classroom_id}")
def delete_classroom(classroom_id: str, user=Depends(admin_only), service: AssignmentService = Depends(get_assignment_service)):
    return success(service.delete_classroom(classroom_id))


# -------------------- Mentor assignment: students -------------------- #

@app.patch("/assign/mentor/{mentor_id}/students")
def assign_students_to_mentor(
    mentor_id: str, payload: AssignPayload, user=Depends(admin_only),
    service: AssignmentService = Depends(get_assignment_service),
):
    return success(service.assign_students_to_mentor(mentor_id, payload.ids))


@app.patch("/assign/mentor/{mentor_id}/students/unassign")
def unassign_students_from_mentor(
    mentor_id: str, payload: UnassignPayload, user=Depends(admin_only),
    service: AssignmentService = Depends(get_assignment_service),
):
    return success(service.unassign_students_from_mentor(mentor_id, payload.assigned_ids))


@app.get("/assign/mentor/{mentor_id}/students")
def list_mentor_students(
    mentor_id: str, paging: Paging = Depends(), user=Depends(any_member),
    listing: ListingService = Depends(get_listing_service),
):
    ensure_own_mentor(user, mentor_id)
    data, count = listing.find_assigned(MENTOR_STUDENT, MENTOR, mentor_id, paging.page, paging.limit, paging.query)
    return success(data, count)


@app.get("/assign/mentor/{mentor_id}/students/available")
def list_students_available_for_mentor(
    mentor_id: str, paging: Paging = Depends(), user=Depends(admin_only),
    listing: ListingService = Depends(get_listing_service),
):
    data, count = listing.find_unassigned(MENTOR_STUDENT, MENTOR, mentor_id, paging.page, paging.limit, paging.query)
    return success(data, count)


# -------------------- Mentor assignment: classrooms -------------------- #

@app.patch("/assign/mentor/{mentor_id}/classrooms")
def assign_classrooms_to_mentor(
    mentor_id: str, payload: AssignPayload, user=Depends(admin_only),
    service: AssignmentService = Depends(get_assignment_service),
):
    return success(service.assign_classrooms_to_mentor(mentor_id, payload.ids))


@app.patch("/assign/mentor/{mentor_id}/classrooms/unassign")
def unassign_classrooms_from_mentor(
    mentor_id: str, payload: UnassignPayload, user=Depends(admin_only),
    service: AssignmentService = Depends(get_assignment_service),
):
    return success(service.unassign_classrooms_from_mentor(mentor_id, payload.assigned_ids))


@app.get("/assign/mentor/{mentor_id}/classrooms")
def list_mentor_classrooms(
    mentor_id: str, paging: Paging = Depends(), user=Depends(any_member),
    listing: ListingService = Depends(get_listing_service),
):
    ensure_own_mentor(user, mentor_id)
    data, count = listing.find_assigned(MENTOR_CLASSROOM, MENTOR, mentor_id, paging.page, paging.limit, paging.query)
    return success(data, count)


@app.get("/assign/mentor/{mentor_id}/classrooms/available")
def list_classrooms_available_for_mentor(
    mentor_id: str, paging: Paging = Depends(), user=Depends(admin_only),
    listing: ListingService = Depends(get_listing_service),
):
    data, count = listing.find_unassigned(MENTOR_CLASSROOM, MENTOR, mentor_id, paging.page, paging.limit, paging.query)
    return success(data, count)


# -------------------- Classroom assignment: mentors -------------------- #

@app.patch("/assign/classroom/{classroom_id}/mentors")
def assign_mentors_to_classroom(
    classroom_id: str, payload: AssignPayload, user=Depends(admin_only),
    service: AssignmentService = Depends(get_assignment_service),
):
    return success(service.assign_mentors_to_classroom(classroom_id, payload.ids))


@app.patch("/assign/classroom/{classroom_id}/mentors/unassign")
def unassign_mentors_from_classroom(
    classroom_id: str, payload: UnassignPayload, user=Depends(admin_only),
    service: AssignmentService = Depends(get_assignment_service),
):
    return success(service.unassign_mentors_from_classroom(classroom_id, payload.assigned_ids))


@app.get("/assign/classroom/{classroom_id}/mentors")
def list_classroom_mentors(
    classroom_id: str, paging: Paging = Depends(), user=Depends(admin_only),
    listing: ListingService = Depends(get_listing_service),
):
    data, count = listing.find_assigned(
        MENTOR_CLASSROOM, CLASSROOM, classroom_id, paging.page, paging.limit, paging.query
    )
    return success(data, count)


@app.get("/assign/classroom/{classroom_id}/mentors/available")
def list_mentors_available_for_classroom(
    classroom_id: str, paging: Paging = Depends(), user=Depends(admin_only),
    listing: ListingService = Depends(get_listing_service),
):
    data, count = listing.find_unassigned(
        MENTOR_CLASSROOM, CLASSROOM, classroom_id, paging.page, paging.limit, paging.query
    )
    return success(data, count)


# -------------------- Classroom assignment: students -------------------- #

@app.patch("/assign/classroom/{classroom_id}/students")
def add_students_to_classroom(
    classroom_id: str, payload: AssignPayload, user=Depends(admin_only),
    service: AssignmentService = Depends(get_assignment_service),
):
    return success(service.add_students_to_classroom(classroom_id, payload.ids))


@app.patch("/assign/classroom/{classroom_id}/students/unassign")
def remove_students_from_classroom(
    classroom_id: str, payload: UnassignPayload, user=Depends(admin_only),
    service: AssignmentService = Depends(get_assignment_service),
):
    return success(service.remove_students_from_classroom(classroom_id, payload.assigned_ids))


@app.get("/assign/classroom/{classroom_id}/students")
def list_classroom_students(
    classroom_id: str, paging: Paging = Depends(), user=Depends(admin_only),
    listing: ListingService = Depends(get_listing_service),
):
    data, count = listing.find_assigned(
        CLASSROOM_STUDENT, CLASSROOM, classroom_id, paging.page, paging.limit, paging.query
    )
    return success(data, count)


@app.get("/assign/classroom/{classroom_id}/students/available")
def list_students_available_for_classroom(
    classroom_id: str, paging: Paging = Depends(), user=Depends(admin_only),
    listing: ListingService = Depends(get_listing_service),
):
    data, count = listing.find_unassigned(
        CLASSROOM_STUDENT, CLASSROOM, classroom_id, paging.page, paging.limit, paging.query
    )
    return success(data, count)


# -------------------- Events -------------------- #

@app.post("/events")
def create_event(
    payload: EventCreate, user=Depends(any_member), events: EventService = Depends(get_event_service)
):
    ensure_own_mentor(user, payload.mentor)
    return success(events.create(payload.model_dump()))


@app.get("/events/student/{student_id}")
def list_student_events(
    student_id: str, user=Depends(any_member), events: EventService = Depends(get_event_service)
):
    data = events.find_by_student(student_id)
    return success(data, len(data))


@app.get("/events/mentor/{mentor_id}")
def list_mentor_events(
    mentor_id: str, user=Depends(any_member), events: EventService = Depends(get_event_service)
):
    ensure_own_mentor(user, mentor_id)
    data = events.find_by_mentor(mentor_id)
    return success(data, len(data))


@app.get("/events/{event_id}")
def get_event(event_id: str, user=Depends(any_member), events: EventService = Depends(get_event_service)):
    event = events.get(event_id)
    ensure_own_mentor(user, event["mentor"])
    return success(event)


@app.patch("/events/{event_id}")
def update_event(
    event_id: str, payload: EventUpdate, user=Depends(any_member),
    events: EventService = Depends(get_event_service),
):
    ensure_own_mentor(user, events.get(event_id)["mentor"])
    values = payload.model_dump(exclude_unset=True)
    if values.get("mentor"):
        ensure_own_mentor(user, values["mentor"])
    return success(events.update(event_id, values))


@app.delete("/events/{event_id}")
def delete_event(event_id: str, user=Depends(any_member), events: EventService = Depends(get_event_service)):
    ensure_own_mentor(user, events.get(event_id)["mentor"])
    return success(events.delete(event_id))


# -------------------- Run -------------------- #

if __name__ == "__main__":
    import os

    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
