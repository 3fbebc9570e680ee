"""
Typed results returned across the service boundary.

Admission denials and precondition failures are normal results, not
exceptions: they carry a machine-readable code, a human reason, whether a
retry can help, and where relevant the concurrency counters.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from oralexam.orm.ai_grade import AIGrade
from oralexam.orm.review import Review
from oralexam.orm.seminar import Seminar, SeminarStatus


# Outcome codes
AT_CAPACITY = "at_capacity"
SLOT_FULL = "slot_full"
INVALID_STATE = "invalid_state"
ALREADY_IN_PROGRESS = "already_in_progress"
ALREADY_REVIEWED = "already_reviewed"
ALREADY_BOOKED = "already_booked"
WINDOW_NOT_OPEN = "window_not_open"
WINDOW_CLOSED = "window_closed"
SLOT_MISMATCH = "slot_mismatch"
NOT_OWNER = "not_owner"
MISSING_INPUT = "missing_input"
IN_FLIGHT = "in_flight"
NOT_FOUND = "not_found"
PROVIDER_FAILURE = "provider_error"


@dataclass
class ReviewEligibility:
    allowed: bool
    code: Optional[str] = None
    reason: Optional[str] = None
    current_status: Optional[str] = None


@dataclass
class ReviewOutcome:
    success: bool
    submission_id: int
    review: Optional[Review] = None
    code: Optional[str] = None
    reason: Optional[str] = None
    retryable: bool = False
    current_status: Optional[str] = None
    active_count: Optional[int] = None
    max_concurrent: Optional[int] = None


@dataclass
class StartDecision:
    allowed: bool
    code: Optional[str] = None
    reason: Optional[str] = None
    retryable: bool = False
    current_status: Optional[str] = None
    active_count: int = 0
    max_concurrent: int = 0


@dataclass
class StartOutcome:
    success: bool
    seminar_id: int
    status: SeminarStatus
    signed_url: Optional[str] = None
    prompt_override: Optional[Dict[str, Any]] = None
    code: Optional[str] = None
    reason: Optional[str] = None
    retryable: bool = False
    active_count: Optional[int] = None
    max_concurrent: Optional[int] = None

    @property
    def current_status(self) -> str:
        return self.status.value


@dataclass
class CompletionOutcome:
    """
    Result of either completion path.

    applied is True only for the call that moved the session out of
    in_progress; every other call reports the state it found.
    """
    seminar_id: int
    status: SeminarStatus
    applied: bool
    lease_released: bool = False
    duration_seconds: Optional[int] = None
    source: Optional[str] = None


@dataclass
class BookingOutcome:
    success: bool
    seminar: Optional[Seminar] = None
    code: Optional[str] = None
    reason: Optional[str] = None
    retryable: bool = False
    current_status: Optional[str] = None
    active_count: Optional[int] = None
    max_concurrent: Optional[int] = None


@dataclass
class GradingOutcome:
    success: bool
    seminar_id: int
    grade: Optional[AIGrade] = None
    code: Optional[str] = None
    reason: Optional[str] = None
    errors: Optional[List[str]] = None
