"""
Error taxonomy for the query gateway.

Every error the core raises derives from AppError so the web layer can
render them with a single handler. Each subclass fixes the HTTP status it
maps to; extra() adds machine-readable fields to the response body.
"""

from typing import Any, Dict, Optional

from fastapi import status


class AppError(Exception):
    """Base exception for all query gateway errors."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def extra(self) -> Dict[str, Any]:
        return {}


class ParseError(AppError):
    """The submitted query text is not a supported single operation."""

    def __init__(self, message: str, position: Optional[int] = None):
        self.position = position
        super().__init__(message)

    def __str__(self) -> str:
        if self.position is None:
            return self.message
        return f"{self.message} (at position {self.position})"

    def extra(self) -> Dict[str, Any]:
        return {"error": "parse_error", "position": self.position}


class ValidationError(AppError):
    """Input is well-formed but not acceptable (missing comment, bad reviewer)."""

    def extra(self) -> Dict[str, Any]:
        return {"error": "validation_error"}


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND

    def extra(self) -> Dict[str, Any]:
        return {"error": "not_found"}


class ConflictError(AppError):
    """A state transition was requested from a state that does not allow it."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)

    def extra(self) -> Dict[str, Any]:
        return {"error": "conflict", "current_status": self.current_status}


class StoreConnectionError(AppError):
    """The target database could not be reached or refused our credentials."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    UNREACHABLE = "unreachable"
    INVALID_TARGET = "invalid_target"
    INACTIVE = "inactive"

    def __init__(self, message: str, kind: str = UNREACHABLE):
        self.kind = kind
        super().__init__(message)

    def extra(self) -> Dict[str, Any]:
        return {"error": "connection_error", "kind": self.kind}


class ExecutionError(AppError):
    """The target store rejected an operation at runtime.

    Never propagates past the executor: its message is stored on the request.
    """

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def extra(self) -> Dict[str, Any]:
        return {"error": "execution_error"}
