"""Error taxonomy shared by the stores, the assignment service and the HTTP layer.

Every error carries a coded message (``MENTOR404``, ``ASSGMT003``...) so a
failure seen by a client can be traced back to the check that raised it.
"""

from enum import Enum
from typing import Iterable


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    DUPLICATE_ASSIGNMENT = "duplicate_assignment"
    ASSIGNMENT_CONFLICT = "assignment_conflict"
    VALIDATION = "validation"


STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CAPACITY_EXCEEDED: 400,
    ErrorKind.DUPLICATE_ASSIGNMENT: 400,
    ErrorKind.ASSIGNMENT_CONFLICT: 400,
    ErrorKind.VALIDATION: 400,
}


class AppError(Exception):
    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "code": self.code, "message": str(self)}


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND


class CapacityExceededError(AppError):
    kind = ErrorKind.CAPACITY_EXCEEDED

    def __init__(self, code: str, message: str, limit: int):
        super().__init__(code, message)
        self.limit = limit


class DuplicateAssignmentError(AppError):
    kind = ErrorKind.DUPLICATE_ASSIGNMENT


class AssignmentConflictError(AppError):
    kind = ErrorKind.ASSIGNMENT_CONFLICT


class ValidationError(AppError):
    kind = ErrorKind.VALIDATION


def join_ids(ids: Iterable[object]) -> str:
    return ", ".join(str(i) for i in ids)
