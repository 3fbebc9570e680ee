"""
oralexam/routes/admin.py
Course staff endpoints: reviews, seminar oversight, AI grades, slots and
live gate occupancy
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from oralexam.config.feature_flags import feature_flags
from oralexam.coordination.gates import ExamGate, ReviewGate
from oralexam.database import get_db
from oralexam.dependencies import exam_gate, llm_client, require_admin, review_gate
from oralexam.errors import BadRequestError, InvalidStateError, NotFoundAPIError, outcome_to_error
from oralexam.orm.seminar import Seminar, SeminarStatus
from oralexam.orm.seminar_slot import SeminarSlot
from oralexam.orm.user import User
from oralexam.schemas.seminar import (
    BatchReviewRequest,
    BatchReviewResponse,
    ReviewResultResponse,
    ReviewTriggerRequest,
    SemaphoreStatus,
    SeminarResponse,
    SlotCreate,
    SlotResponse,
)
from oralexam.services.booking_service import create_slot
from oralexam.services.grading_service import get_grade, retry_grading
from oralexam.services.llm_client import LLMClient
from oralexam.services.review_service import batch_review, run_review
from oralexam.services.seminar_service import mark_no_show, sweep_expired_bookings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["Admin"])


# ================= REVIEWS =================

@router.post("/reviews/trigger", response_model=ReviewResultResponse)
async def trigger_review(
    body: ReviewTriggerRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
    gate: ReviewGate = Depends(review_gate),
    llm: LLMClient = Depends(llm_client),
):
    """Run the LLM review for one pending submission."""
    outcome = await run_review(db, body.submission_id, gate=gate, llm=llm)
    if not outcome.success:
        raise outcome_to_error(outcome)
    return ReviewResultResponse.from_outcome(outcome)


@router.post("/reviews/batch", response_model=BatchReviewResponse)
async def trigger_batch_review(
    body: BatchReviewRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
    gate: ReviewGate = Depends(review_gate),
    llm: LLMClient = Depends(llm_client),
):
    """Review several submissions one after another; per-item failures are reported, not raised."""
    results = await batch_review(db, body.submission_ids, gate=gate, llm=llm)
    return BatchReviewResponse(
        total=len(results),
        succeeded=sum(1 for r in results if r.success),
        results=[ReviewResultResponse.from_outcome(r) for r in results],
    )


# ================= SEMINARS =================

@router.get("/seminars", response_model=List[SeminarResponse])
async def list_seminars(
    slot_id: Optional[int] = Query(None),
    status_filter: Optional[SeminarStatus] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    if feature_flags.FEATURE_SWEEP_ON_READ:
        await sweep_expired_bookings(db)

    query = select(Seminar).order_by(Seminar.id)
    if slot_id is not None:
        query = query.where(Seminar.slot_id == slot_id)
    if status_filter is not None:
        query = query.where(Seminar.status == status_filter)

    seminars = (await db.execute(query)).scalars().all()
    return [SeminarResponse.from_seminar(s) for s in seminars]


@router.post("/seminars/{seminar_id}/no-show", response_model=SeminarResponse)
async def seminar_no_show(
    seminar_id: int,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """Mark a booked or waiting seminar as not attended; the student can rebook."""
    outcome = await mark_no_show(db, seminar_id)
    if not outcome.applied and outcome.status != SeminarStatus.NO_SHOW:
        raise InvalidStateError(
            f"Seminar is {outcome.status.value}; only booked or waiting seminars can be marked no-show",
            details={"current_status": outcome.status.value, "retryable": False},
        )
    seminar = await db.get(Seminar, seminar_id, populate_existing=True)
    logger.info(f"[ADMIN NO-SHOW] seminar={seminar_id} by user={admin.id} applied={outcome.applied}")
    return SeminarResponse.from_seminar(seminar)


@router.get("/seminars/{seminar_id}/ai-grade")
async def get_ai_grade(
    seminar_id: int,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    grade = await get_grade(db, seminar_id)
    if grade is None:
        raise NotFoundAPIError(f"No AI grade for seminar {seminar_id}")
    return {"success": True, "grade": grade.to_dict()}


@router.post("/seminars/{seminar_id}/ai-grade")
async def run_ai_grade(
    seminar_id: int,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
    llm: LLMClient = Depends(llm_client),
):
    """Grade (or re-grade after a failure) a completed seminar; a finished grade is returned as is."""
    outcome = await retry_grading(db, seminar_id, llm=llm)
    if not outcome.success:
        raise outcome_to_error(outcome)
    return {
        "success": True,
        "grade": outcome.grade.to_dict(),
        "errors": outcome.errors or [],
    }


# ================= SLOTS =================

@router.post("/slots", response_model=SlotResponse, status_code=status.HTTP_201_CREATED)
async def create_seminar_slot(
    body: SlotCreate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    try:
        slot = await create_slot(
            db, body.assignment_id, body.window_start, body.window_end, body.max_concurrent,
        )
    except ValueError as e:
        raise BadRequestError(str(e)) from e
    return SlotResponse(
        id=slot.id,
        assignment_id=slot.assignment_id,
        window_start=slot.window_start,
        window_end=slot.window_end,
        max_concurrent=slot.max_concurrent,
        booked_count=0,
    )


# ================= SEMAPHORES =================

@router.get("/semaphores", response_model=List[SemaphoreStatus])
async def semaphore_status(
    slot_id: Optional[int] = Query(None),
    assignment_id: Optional[int] = Query(None),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
    exams: ExamGate = Depends(exam_gate),
    reviews: ReviewGate = Depends(review_gate),
):
    """
    Live lease counts.

    Without filters, reports the exam gate of every slot whose window is open.
    """
    results = []

    if slot_id is not None:
        slots = [await db.get(SeminarSlot, slot_id)]
        if slots[0] is None:
            raise NotFoundAPIError(f"Seminar slot {slot_id} not found")
    elif assignment_id is None:
        now = datetime.utcnow()
        slots = (await db.execute(
            select(SeminarSlot).where(SeminarSlot.window_start <= now, SeminarSlot.window_end >= now)
        )).scalars().all()
    else:
        slots = []

    for slot in slots:
        holders = await exams.holders(slot.id)
        results.append(SemaphoreStatus(
            namespace=exams.namespace,
            resource_id=slot.id,
            active_count=len(holders),
            max_concurrent=slot.max_concurrent,
            holders=[{"holder_id": h, "expires_at_ms": exp} for h, exp in holders],
        ))

    if assignment_id is not None:
        holders = await reviews.holders(assignment_id)
        results.append(SemaphoreStatus(
            namespace=reviews.namespace,
            resource_id=assignment_id,
            active_count=len(holders),
            max_concurrent=reviews.max_concurrent,
            holders=[{"holder_id": h, "expires_at_ms": exp} for h, exp in holders],
        ))

    return results
