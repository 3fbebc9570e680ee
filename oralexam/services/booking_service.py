"""
oralexam/services/booking_service.py
Slot booking with persisted capacity

Booking capacity is counted from stored sessions that still hold their
place (anything but failed / no_show). It is separate from the live exam
gate: a slot can hold max_concurrent bookings, and at most max_concurrent
of them may be running at once.

Check-then-insert is made safe without a serializable transaction: the
slot row is locked where the database supports it, and after the insert
is committed each booking re-validates its own rank among the slot's
bookings (ordered by id). A booking ranked at or beyond capacity deletes
itself again.
"""
import logging
from datetime import datetime
from typing import List, NamedTuple, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from oralexam.config.settings import settings
from oralexam.exceptions import NotFoundError
from oralexam.orm.assignment import Assignment
from oralexam.orm.seminar import RELEASED_STATES, SUPPORTED_LANGUAGES, Seminar, SeminarStatus
from oralexam.orm.seminar_slot import SeminarSlot
from oralexam.orm.submission import Submission, SubmissionStatus
from oralexam.services import outcomes
from oralexam.services.outcomes import BookingOutcome
from oralexam.state_machines.submission_status import transition_submission

logger = logging.getLogger(__name__)


class AvailableSlot(NamedTuple):
    slot: SeminarSlot
    booked_count: int


def _holds_place():
    return Seminar.status.notin_(RELEASED_STATES)


async def count_bookings(db: AsyncSession, slot_id: int) -> int:
    result = await db.execute(
        select(func.count(Seminar.id)).where(Seminar.slot_id == slot_id, _holds_place())
    )
    return result.scalar_one()


async def _booking_rank(db: AsyncSession, slot_id: int, seminar_id: int) -> int:
    """Zero-based position of seminar_id among the slot's bookings by id."""
    result = await db.execute(
        select(func.count(Seminar.id)).where(
            Seminar.slot_id == slot_id,
            _holds_place(),
            Seminar.id < seminar_id,
        )
    )
    return result.scalar_one()


async def _discard_booking(db: AsyncSession, seminar_id: int) -> None:
    await db.execute(delete(Seminar).where(Seminar.id == seminar_id))
    await db.commit()


async def book_seminar(
    db: AsyncSession,
    student_id: int,
    submission_id: int,
    slot_id: int,
    language: Optional[str] = "en",
    now: Optional[datetime] = None,
) -> BookingOutcome:
    """
    Book an oral exam for a reviewed submission.

    Raises:
        NotFoundError: Unknown submission or slot
    """
    now = now or datetime.utcnow()

    submission = await db.get(Submission, submission_id, populate_existing=True)
    if submission is None:
        raise NotFoundError("Submission", submission_id)
    if submission.student_id != student_id:
        return BookingOutcome(success=False, code=outcomes.NOT_OWNER, reason="This submission does not belong to you")
    if submission.status != SubmissionStatus.REVIEWED:
        return BookingOutcome(
            success=False, code=outcomes.INVALID_STATE,
            reason=f"Submission status is '{submission.status.value}', expected 'reviewed'",
            current_status=submission.status.value,
        )

    active = await db.execute(
        select(Seminar.id).where(Seminar.submission_id == submission_id, _holds_place()).limit(1)
    )
    if active.scalar_one_or_none() is not None:
        return BookingOutcome(success=False, code=outcomes.ALREADY_BOOKED, reason="A seminar is already booked for this submission")

    slot = (await db.execute(
        select(SeminarSlot).where(SeminarSlot.id == slot_id).with_for_update()
    )).scalar_one_or_none()
    if slot is None:
        raise NotFoundError("Seminar slot", slot_id)
    if slot.assignment_id != submission.assignment_id:
        return BookingOutcome(success=False, code=outcomes.SLOT_MISMATCH, reason="This slot belongs to a different assignment")
    if slot.window_end <= now:
        return BookingOutcome(success=False, code=outcomes.WINDOW_CLOSED, reason="This slot has already ended")

    capacity = slot.max_concurrent
    booked = await count_bookings(db, slot.id)
    if booked >= capacity:
        await db.commit()
        logger.info(f"[BOOKING FULL] slot={slot_id} booked={booked}/{capacity}")
        return BookingOutcome(
            success=False, code=outcomes.SLOT_FULL, reason="This slot is fully booked",
            retryable=True, active_count=booked, max_concurrent=capacity,
        )

    seminar = Seminar(
        submission_id=submission_id,
        slot_id=slot.id,
        language=language if language in SUPPORTED_LANGUAGES else "en",
        status=SeminarStatus.BOOKED,
    )
    db.add(seminar)
    await db.commit()
    seminar_id = seminar.id

    # Re-validate against bookings committed concurrently
    rank = await _booking_rank(db, slot_id, seminar_id)
    if rank >= capacity:
        await _discard_booking(db, seminar_id)
        logger.info(f"[BOOKING FULL] slot={slot_id} lost race at rank {rank}")
        return BookingOutcome(
            success=False, code=outcomes.SLOT_FULL, reason="This slot is fully booked",
            retryable=True, active_count=capacity, max_concurrent=capacity,
        )

    moved = await transition_submission(
        db, submission_id, [SubmissionStatus.REVIEWED], SubmissionStatus.SEMINAR_PENDING
    )
    if not moved:
        await _discard_booking(db, seminar_id)
        return BookingOutcome(success=False, code=outcomes.ALREADY_BOOKED, reason="A seminar is already booked for this submission")
    await db.commit()

    logger.info(f"[BOOKING] seminar={seminar_id} submission={submission_id} slot={slot_id} rank={rank + 1}/{capacity}")
    return BookingOutcome(success=True, seminar=seminar, active_count=rank + 1, max_concurrent=capacity)


async def list_available_slots(
    db: AsyncSession,
    assignment_id: int,
    now: Optional[datetime] = None,
) -> List[AvailableSlot]:
    """Future slots for an assignment that still have room."""
    now = now or datetime.utcnow()
    booked = (
        select(Seminar.slot_id, func.count(Seminar.id).label("booked"))
        .where(_holds_place())
        .group_by(Seminar.slot_id)
        .subquery()
    )
    booked_count = func.coalesce(booked.c.booked, 0)
    result = await db.execute(
        select(SeminarSlot, booked_count)
        .outerjoin(booked, booked.c.slot_id == SeminarSlot.id)
        .where(
            SeminarSlot.assignment_id == assignment_id,
            SeminarSlot.window_start > now,
            booked_count < SeminarSlot.max_concurrent,
        )
        .order_by(SeminarSlot.window_start)
    )
    return [AvailableSlot(slot, count) for slot, count in result.all()]


async def create_slot(
    db: AsyncSession,
    assignment_id: int,
    window_start: datetime,
    window_end: datetime,
    max_concurrent: Optional[int] = None,
) -> SeminarSlot:
    if await db.get(Assignment, assignment_id) is None:
        raise NotFoundError("Assignment", assignment_id)
    if window_end <= window_start:
        raise ValueError("window_end must be after window_start")

    slot = SeminarSlot(
        assignment_id=assignment_id,
        window_start=window_start,
        window_end=window_end,
        max_concurrent=max_concurrent or settings.DEFAULT_SLOT_MAX_CONCURRENT,
    )
    db.add(slot)
    await db.commit()
    logger.info(f"[SLOT CREATED] slot={slot.id} assignment={assignment_id} max={slot.max_concurrent}")
    return slot
