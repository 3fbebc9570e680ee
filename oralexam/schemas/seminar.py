"""
Pydantic Schemas for oral exam sessions, bookings, reviews and grades

Request/response models for the student, seminar and admin routes.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


# ============================================================================
# Seminar Schemas
# ============================================================================

class StartResponse(BaseModel):
    """Result of a start attempt."""
    success: bool
    seminar_id: int
    status: str
    signed_url: Optional[str] = None
    prompt_override: Optional[Dict[str, Any]] = None
    code: Optional[str] = None
    message: Optional[str] = None
    retryable: bool = False
    active_count: Optional[int] = None
    max_concurrent: Optional[int] = None


class SeminarStatusResponse(BaseModel):
    """Session details merged with the current start decision."""
    id: int
    submission_id: int
    slot_id: int
    language: str
    status: str
    conversation_id: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    can_start: bool
    can_start_reason: Optional[str] = None
    can_start_code: Optional[str] = None
    active_count: int
    max_concurrent: int
    target_time_minutes: int
    max_time_minutes: int


class ConversationRequest(BaseModel):
    """Voice engine conversation id reported by the browser after connecting."""
    conversation_id: str = Field(..., min_length=1, max_length=128)


class CompleteRequest(BaseModel):
    """Fallback completion reported by the browser."""
    status: Literal["ended", "error"]
    duration_seconds: Optional[int] = Field(None, ge=0)


class CompletionResponse(BaseModel):
    success: bool = True
    seminar_id: int
    status: str
    applied: bool
    duration_seconds: Optional[int] = None


class WebhookData(BaseModel):
    conversation_id: Optional[str] = None
    status: Optional[str] = None
    duration_seconds: Optional[int] = None


class WebhookEvent(BaseModel):
    """
    Voice engine webhook body; only a few fields are read.

    The event name arrives as "type" or "event_type", and the conversation id
    either inside "data" or at the top level.
    """
    model_config = ConfigDict(extra="allow")

    type: str = Field(validation_alias=AliasChoices("type", "event_type"))
    conversation_id: Optional[str] = None
    data: WebhookData = Field(default_factory=WebhookData)

    @model_validator(mode="after")
    def fill_conversation_id(self) -> "WebhookEvent":
        if not self.data.conversation_id and self.conversation_id:
            self.data.conversation_id = self.conversation_id
        return self


# ============================================================================
# Booking Schemas
# ============================================================================

class BookRequest(BaseModel):
    submission_id: int
    slot_id: int
    language: Literal["en", "sv"] = "en"


class SeminarResponse(BaseModel):
    """Stored seminar row."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    submission_id: int
    slot_id: int
    language: str
    status: str
    conversation_id: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None

    @classmethod
    def from_seminar(cls, seminar) -> "SeminarResponse":
        return cls(
            id=seminar.id,
            submission_id=seminar.submission_id,
            slot_id=seminar.slot_id,
            language=seminar.language,
            status=seminar.status.value,
            conversation_id=seminar.conversation_id,
            started_at=seminar.started_at,
            ended_at=seminar.ended_at,
            duration_seconds=seminar.duration_seconds,
        )


class SlotCreate(BaseModel):
    """Schema for creating a seminar slot"""
    assignment_id: int
    window_start: datetime
    window_end: datetime
    max_concurrent: Optional[int] = Field(None, ge=1, le=500)

    @model_validator(mode="after")
    def check_window(self):
        if self.window_end <= self.window_start:
            raise ValueError("window_end must be after window_start")
        return self


class SlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    assignment_id: int
    window_start: datetime
    window_end: datetime
    max_concurrent: int
    booked_count: Optional[int] = None


# ============================================================================
# Student Schemas
# ============================================================================

class AssignmentProgress(BaseModel):
    """One assignment with the student's submission and seminar state."""
    assignment_id: int
    title: str
    description: Optional[str] = None
    submission_id: Optional[int] = None
    submission_status: Optional[str] = None
    feedback: Optional[str] = None
    seminar: Optional[SeminarResponse] = None


# ============================================================================
# Review Schemas
# ============================================================================

class ReviewTriggerRequest(BaseModel):
    submission_id: int


class BatchReviewRequest(BaseModel):
    submission_ids: List[int] = Field(..., min_length=1, max_length=200)


class ReviewResultResponse(BaseModel):
    success: bool
    submission_id: int
    review_id: Optional[int] = None
    repaired: Optional[bool] = None
    code: Optional[str] = None
    message: Optional[str] = None
    retryable: bool = False
    active_count: Optional[int] = None
    max_concurrent: Optional[int] = None

    @classmethod
    def from_outcome(cls, outcome) -> "ReviewResultResponse":
        return cls(
            success=outcome.success,
            submission_id=outcome.submission_id,
            review_id=outcome.review.id if outcome.review else None,
            repaired=outcome.review.repaired if outcome.review else None,
            code=outcome.code,
            message=outcome.reason,
            retryable=outcome.retryable,
            active_count=outcome.active_count,
            max_concurrent=outcome.max_concurrent,
        )


class BatchReviewResponse(BaseModel):
    total: int
    succeeded: int
    results: List[ReviewResultResponse]


# ============================================================================
# Admin Schemas
# ============================================================================

class SemaphoreStatus(BaseModel):
    """Live gate occupancy for one resource."""
    namespace: str
    resource_id: int
    active_count: int
    max_concurrent: int
    holders: List[Dict[str, Any]] = []
