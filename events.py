"""Scheduling events between a mentor and a student.

Events reference both sides by id and are removed together with either of
them (see ``AssignmentService.delete_entity``). Writes hold ``EVENT_LOCK`` so
that the existence checks and the write cannot interleave with such a
cascade delete.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from pymongo.database import Database

from database import serialize_doc, serialize_list
from errors import ValidationError
from schemas import Event
from stores import EventStore, MentorStore, StudentStore

logger = logging.getLogger(__name__)

EVENT_LOCK = threading.Lock()


def _as_utc(value: datetime) -> datetime:
    # stored naive in UTC, the way pymongo hands datetimes back
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _check_window(start: datetime, end: datetime) -> Tuple[datetime, datetime]:
    start, end = _as_utc(start), _as_utc(end)
    if end < start:
        raise ValidationError(
            "EVENT400", f"Event end {end.isoformat()} is before its start {start.isoformat()}"
        )
    return start, end


class EventService:
    def __init__(self, database: Database):
        self.events = EventStore(database)
        self.mentors = MentorStore(database)
        self.students = StudentStore(database)

    def get(self, event_id: str) -> Dict[str, Any]:
        return serialize_doc(self.events.get(event_id))

    def create(self, values: Dict[str, Any]) -> Dict[str, Any]:
        values = dict(values)
        with EVENT_LOCK:
            values["mentor"] = self.mentors.get(values["mentor"])["_id"]
            values["student"] = self.students.get(values["student"])["_id"]
            values["start"], values["end"] = _check_window(values["start"], values["end"])
            doc = self.events.create(Event(**values))
        logger.info("Event %s scheduled for mentor %s and student %s", doc["_id"], doc["mentor"], doc["student"])
        return serialize_doc(doc)

    def update(self, event_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """Partial update; changed references must exist and the window must stay ordered."""
        values = {k: v for k, v in values.items() if v is not None}
        if not values:
            raise ValidationError("VALID004", "Nothing to update")
        with EVENT_LOCK:
            current = self.events.get(event_id)
            if "mentor" in values:
                values["mentor"] = self.mentors.get(values["mentor"])["_id"]
            if "student" in values:
                values["student"] = self.students.get(values["student"])["_id"]
            start, end = _check_window(values.get("start", current["start"]), values.get("end", current["end"]))
            if "start" in values:
                values["start"] = start
            if "end" in values:
                values["end"] = end
            doc = self.events.update(current["_id"], values)
        return serialize_doc(doc)

    def delete(self, event_id: str) -> Dict[str, Any]:
        with EVENT_LOCK:
            doc = self.events.delete(self.events.get(event_id)["_id"])
        logger.info("Event %s deleted", doc["_id"])
        return serialize_doc(doc)

    def find_by_student(self, student_id: str) -> List[Dict[str, Any]]:
        student = self.students.get(student_id)
        return serialize_list(self.events.find_for("student", student["_id"]))

    def find_by_mentor(self, mentor_id: str) -> List[Dict[str, Any]]:
        mentor = self.mentors.get(mentor_id)
        return serialize_list(self.events.find_for("mentor", mentor["_id"]))
