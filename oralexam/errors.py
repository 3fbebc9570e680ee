"""
oralexam/errors.py
Centralized API error contract

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}

HTTP STATUS CODE DISCIPLINE:
- 200: Successful request (including idempotent no-ops)
- 202: Accepted but deferred (exam queued in waiting)
- 400: Invalid input / malformed request
- 401: Webhook signature missing or invalid
- 403: Entity belongs to someone else
- 404: Resource does not exist
- 409: Entity is in the wrong state for the requested transition
- 422: Validation error (Pydantic)
- 429: Capacity exhausted, retry later
- 502: External provider failed or returned unusable output
- 500: NEVER caused by user input (internal only)
"""

import logging
import uuid
from typing import Optional, Dict, Any

from fastapi import status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    WEBHOOK_SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"
    OWNERSHIP_VIOLATION = "OWNERSHIP_VIOLATION"

    NOT_FOUND = "NOT_FOUND"

    # Precondition violations
    INVALID_STATE = "INVALID_STATE"
    STATE_TRANSITION_INVALID = "STATE_TRANSITION_INVALID"
    WINDOW_NOT_OPEN = "WINDOW_NOT_OPEN"
    WINDOW_CLOSED = "WINDOW_CLOSED"
    ALREADY_REVIEWED = "ALREADY_REVIEWED"
    ALREADY_BOOKED = "ALREADY_BOOKED"
    SLOT_MISMATCH = "SLOT_MISMATCH"

    # Admission denied
    AT_CAPACITY = "AT_CAPACITY"
    SLOT_FULL = "SLOT_FULL"
    RATE_LIMITED = "RATE_LIMITED"

    INTERNAL_ERROR = "INTERNAL_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"


class ErrorResponse(BaseModel):
    """Standard error response model"""
    success: bool = False
    error: str
    message: str
    code: str
    details: Optional[Dict[str, Any]] = None


class APIError(Exception):
    """Base API exception with consistent structure"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse"""
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class BadRequestError(APIError):
    """400 Bad Request - Invalid input"""
    def __init__(self, message: str, code: str = ErrorCode.INVALID_INPUT, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Bad Request",
            message=message,
            code=code,
            details=details
        )


class UnauthorizedError(APIError):
    """401 Unauthorized - Webhook could not be authenticated"""
    def __init__(self, message: str = "Invalid signature", code: str = ErrorCode.WEBHOOK_SIGNATURE_INVALID):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="Unauthorized",
            message=message,
            code=code
        )


class ForbiddenError(APIError):
    """403 Forbidden - Entity belongs to another user"""
    def __init__(self, message: str, code: str = ErrorCode.OWNERSHIP_VIOLATION):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error="Forbidden",
            message=message,
            code=code
        )


class NotFoundAPIError(APIError):
    """404 Not Found - Resource does not exist"""
    def __init__(self, message: str, code: str = ErrorCode.NOT_FOUND):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="Not Found",
            message=message,
            code=code
        )


class InvalidStateError(APIError):
    """409 Conflict - Entity is in the wrong state"""
    def __init__(self, message: str, code: str = ErrorCode.INVALID_STATE, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Invalid State",
            message=message,
            code=code,
            details=details
        )


class CapacityError(APIError):
    """429 Too Many Requests - Capacity exhausted, retryable"""
    def __init__(self, message: str, code: str = ErrorCode.AT_CAPACITY, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            error="At Capacity",
            message=message,
            code=code,
            details=details
        )


class ProviderAPIError(APIError):
    """502 Bad Gateway - Upstream provider failed"""
    def __init__(self, message: str, code: str = ErrorCode.PROVIDER_ERROR):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            error="Provider Error",
            message=message,
            code=code
        )


# Outcome codes that mean "try again later" rather than "wrong state"
CAPACITY_CODES = {"at_capacity", "slot_full"}


def outcome_to_error(outcome) -> APIError:
    """
    Translate a rejected service outcome into an API error.

    Outcomes carry a lowercase machine code, a reason string and optionally
    the current concurrency counters; the counters are surfaced in details so
    clients can decide whether to poll or give up.
    """
    details: Dict[str, Any] = {"retryable": bool(getattr(outcome, "retryable", False))}
    for field in ("current_status", "active_count", "max_concurrent"):
        value = getattr(outcome, field, None)
        if value is not None:
            details[field] = value

    code = (outcome.code or "invalid_state").upper()
    if outcome.code == "not_owner":
        return ForbiddenError(outcome.reason)
    if outcome.code == "not_found":
        return NotFoundAPIError(outcome.reason)
    if outcome.code == "provider_error":
        return ProviderAPIError(outcome.reason)
    if outcome.code in CAPACITY_CODES:
        return CapacityError(outcome.reason, code=code, details=details)
    return InvalidStateError(outcome.reason, code=code, details=details)


def new_log_id() -> str:
    return str(uuid.uuid4())[:8]


def internal_error_response(error: Exception, context: str = "") -> JSONResponse:
    """Log an internal error and build a safe 500 response"""
    log_id = new_log_id()
    logger.error(f"[{log_id}] Internal error in {context}: {type(error).__name__}: {str(error)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Internal Error",
            "message": "An unexpected error occurred. Please try again later.",
            "code": ErrorCode.INTERNAL_ERROR,
            "details": {"log_id": log_id}
        }
    )
