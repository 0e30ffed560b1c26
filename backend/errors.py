"""
Error taxonomy for the quiz attempt service.

Every failure raised by the attempt operations is one of these, detected
before any write is issued. The API layer turns them into JSON responses
using ``status_code`` and ``to_dict()``.
"""

from typing import Any, Dict, Optional


class QuizAppError(Exception):
    """Base exception for all quiz app errors"""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "code": self.code,
            **self.details,
        }


class NotFoundError(QuizAppError):
    """Identifier does not resolve to a stored document"""

    status_code = 404

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            f"{resource} not found",
            code="NOT_FOUND",
            details={"resource": resource, "id": identifier},
        )


class InvalidStateError(QuizAppError):
    """Mutation attempted on an attempt that is no longer in progress"""

    status_code = 409

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message, code="INVALID_STATE", details={"status": status})


class ValidationError(QuizAppError):
    """Missing or malformed required field"""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, code="VALIDATION_ERROR", details={"field": field} if field else None)


class ForbiddenError(QuizAppError):
    """Operation refused by quiz availability rules"""

    status_code = 403

    def __init__(self, message: str):
        super().__init__(message, code="FORBIDDEN")


class AttemptExpiredError(ForbiddenError):
    """Resumed attempt ran out of time and was closed"""

    def __init__(self, attempt_id: str):
        super().__init__("Quiz time has expired")
        self.code = "ATTEMPT_EXPIRED"
        self.details = {"attemptId": attempt_id, "expired": True}


class StorageFailure(QuizAppError):
    """Persistence layer unavailable. Not retried here."""

    status_code = 503

    def __init__(self, operation: str):
        super().__init__(f"Storage failure during {operation}", code="STORAGE_FAILURE")
