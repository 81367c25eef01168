"""
Classified service outcomes.

Service functions return either their plain-data result or a
``ServiceError``; they never raise HTTP exceptions.  Routers pass every
result through ``unwrap`` which maps the error kind to its fixed status
code.  Anything a service cannot classify (driver errors, lost
connections) is not a ``ServiceError`` and propagates as an exception.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from fastapi import HTTPException, status

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    AUTHENTICATION = "authentication_error"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.AUTHENTICATION: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
}


@dataclass(frozen=True)
class ServiceError:
    kind: ErrorKind
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def validation(cls, message: str, **context: Any) -> "ServiceError":
        return cls(ErrorKind.VALIDATION, message, context)

    @classmethod
    def authentication(cls, message: str = "Could not validate credentials") -> "ServiceError":
        return cls(ErrorKind.AUTHENTICATION, message)

    @classmethod
    def forbidden(cls, message: str, **context: Any) -> "ServiceError":
        return cls(ErrorKind.FORBIDDEN, message, context)

    @classmethod
    def not_found(cls, resource: str, resource_id: Any = None) -> "ServiceError":
        if resource_id is None:
            return cls(ErrorKind.NOT_FOUND, f"{resource} not found")
        return cls(
            ErrorKind.NOT_FOUND,
            f"{resource} not found",
            {"resource": resource, "resource_id": resource_id},
        )

    @classmethod
    def conflict(cls, message: str, **context: Any) -> "ServiceError":
        return cls(ErrorKind.CONFLICT, message, context)


def unwrap(result: T | ServiceError) -> T:
    """Return *result*, or raise the ``HTTPException`` its error kind maps to."""
    if isinstance(result, ServiceError):
        headers = None
        if result.kind is ErrorKind.AUTHENTICATION:
            headers = {"WWW-Authenticate": "Bearer"}
        raise HTTPException(status_code=result.status_code, detail=result.message, headers=headers)
    return result
