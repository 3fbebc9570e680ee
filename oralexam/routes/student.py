"""
oralexam/routes/student.py
Student-facing APIs: assignment progress, open slots and booking
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from oralexam.config.feature_flags import feature_flags
from oralexam.database import get_db
from oralexam.dependencies import get_current_user
from oralexam.errors import outcome_to_error
from oralexam.orm.assignment import Assignment
from oralexam.orm.seminar import Seminar
from oralexam.orm.submission import Submission
from oralexam.orm.user import User
from oralexam.schemas.seminar import AssignmentProgress, BookRequest, SeminarResponse, SlotResponse
from oralexam.services.booking_service import book_seminar, list_available_slots
from oralexam.services.review_service import get_authoritative_review
from oralexam.services.seminar_service import sweep_expired_bookings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/student", tags=["Student"])


@router.get("/assignments", response_model=List[AssignmentProgress])
async def list_assignments(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    All assignments with the student's latest submission, review feedback and
    seminar. Expired bookings are swept first so stale ones show as no_show.
    """
    if feature_flags.FEATURE_SWEEP_ON_READ:
        await sweep_expired_bookings(db)

    assignments = (await db.execute(select(Assignment).order_by(Assignment.id))).scalars().all()
    submissions = (await db.execute(
        select(Submission)
        .where(Submission.student_id == current_user.id)
        .order_by(Submission.created_at.desc(), Submission.id.desc())
    )).scalars().all()

    latest_by_assignment = {}
    for submission in submissions:
        latest_by_assignment.setdefault(submission.assignment_id, submission)

    items = []
    for assignment in assignments:
        item = AssignmentProgress(
            assignment_id=assignment.id,
            title=assignment.title,
            description=assignment.description,
        )
        submission = latest_by_assignment.get(assignment.id)
        if submission is not None:
            item.submission_id = submission.id
            item.submission_status = submission.status.value

            review = await get_authoritative_review(db, submission.id)
            if review is not None:
                item.feedback = review.feedback

            seminar = (await db.execute(
                select(Seminar)
                .where(Seminar.submission_id == submission.id)
                .order_by(Seminar.id.desc())
                .limit(1)
            )).scalar_one_or_none()
            if seminar is not None:
                item.seminar = SeminarResponse.from_seminar(seminar)
        items.append(item)

    return items


@router.get("/slots", response_model=List[SlotResponse])
async def available_slots(
    assignment_id: int = Query(...),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Future slots for the assignment that still have free places."""
    slots = await list_available_slots(db, assignment_id)
    return [
        SlotResponse(
            id=entry.slot.id,
            assignment_id=entry.slot.assignment_id,
            window_start=entry.slot.window_start,
            window_end=entry.slot.window_end,
            max_concurrent=entry.slot.max_concurrent,
            booked_count=entry.booked_count,
        )
        for entry in slots
    ]


@router.post("/book", response_model=SeminarResponse, status_code=status.HTTP_201_CREATED)
async def book(
    body: BookRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    outcome = await book_seminar(
        db, current_user.id, body.submission_id, body.slot_id, language=body.language,
    )
    if not outcome.success:
        raise outcome_to_error(outcome)
    return SeminarResponse.from_seminar(outcome.seminar)
