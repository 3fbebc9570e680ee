"""
oralexam/services/seminar_service.py
Oral exam session lifecycle

Starting:
- only booked or waiting sessions inside their slot window may start
- the slot's exam gate must grant a lease, otherwise the session waits
- booked|waiting -> in_progress is a compare-and-set, so two racing start
  polls produce one start

Ending:
- the voice engine webhook and the browser fallback both end in
  finalize_session(), whose in_progress -> terminal compare-and-set picks
  exactly one winner
- only the winner releases the lease, updates the submission, captures
  transcript and recording, and schedules grading

Expired bookings are swept to no_show on reads; there is no scheduler.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from oralexam.config.feature_flags import feature_flags
from oralexam.config.settings import settings
from oralexam.coordination.gates import ExamGate, exam_holder_id, get_exam_gate
from oralexam.exceptions import NotFoundError, VoiceProviderError
from oralexam.orm.assignment import Assignment
from oralexam.orm.recording import Recording
from oralexam.orm.seminar import Seminar, SeminarStatus
from oralexam.orm.seminar_slot import SeminarSlot
from oralexam.orm.submission import Submission, SubmissionStatus
from oralexam.orm.transcript import Transcript
from oralexam.orm.user import User
from oralexam.services import outcomes
from oralexam.services.examiner_prompt import ExamContext, build_prompt_override, normalize_discussion_plan
from oralexam.services.outcomes import CompletionOutcome, StartDecision, StartOutcome
from oralexam.services.review_service import get_authoritative_review
from oralexam.services.voice_client import VoiceClient, get_voice_client
from oralexam.state_machines.seminar_session import STARTABLE_STATES, transition_seminar
from oralexam.state_machines.submission_status import transition_submission

logger = logging.getLogger(__name__)

GradingScheduler = Callable[[int], None]

# Statuses reported by the voice engine that mean the conversation ended normally
UPSTREAM_SUCCESS = ("done", "completed", "processing")
WEBHOOK_SUCCESS = ("completed", "done")

_background_tasks: Set[asyncio.Task] = set()


async def _grade_in_background(seminar_id: int) -> None:
    from oralexam.database import AsyncSessionLocal
    from oralexam.services.grading_service import run_grading

    async with AsyncSessionLocal() as db:
        try:
            result = await run_grading(db, seminar_id)
            logger.info(f"[GRADING TASK] seminar={seminar_id} success={result.success} code={result.code}")
        except Exception as e:
            logger.error(f"[GRADING TASK FAILED] seminar={seminar_id}: {type(e).__name__}: {e}")


def schedule_grading(seminar_id: int) -> None:
    """Run grading on the event loop without blocking the caller."""
    task = asyncio.create_task(_grade_in_background(seminar_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def _load_seminar(db: AsyncSession, seminar_id: int) -> Seminar:
    seminar = await db.get(Seminar, seminar_id, populate_existing=True)
    if seminar is None:
        raise NotFoundError("Seminar", seminar_id)
    return seminar


async def _load_slot(db: AsyncSession, slot_id: int) -> SeminarSlot:
    slot = await db.get(SeminarSlot, slot_id)
    if slot is None:
        raise NotFoundError("Seminar slot", slot_id)
    return slot


def _window_rejection(slot: SeminarSlot, now: datetime):
    if now < slot.window_start:
        return outcomes.WINDOW_NOT_OPEN, "The seminar window has not opened yet"
    if now > slot.window_end:
        return outcomes.WINDOW_CLOSED, "The seminar window has closed"
    return None


async def can_start(
    db: AsyncSession,
    seminar_id: int,
    gate: Optional[ExamGate] = None,
    now: Optional[datetime] = None,
) -> StartDecision:
    """Pure status query used by polling clients; never mutates."""
    gate = gate or get_exam_gate()
    now = now or datetime.utcnow()

    seminar = await _load_seminar(db, seminar_id)
    slot = await _load_slot(db, seminar.slot_id)
    active = await gate.active_count(slot.id)
    counters = dict(active_count=active, max_concurrent=slot.max_concurrent, current_status=seminar.status.value)

    if seminar.status == SeminarStatus.IN_PROGRESS:
        return StartDecision(False, code=outcomes.ALREADY_IN_PROGRESS, reason="Seminar is already in progress", **counters)
    if seminar.status not in STARTABLE_STATES:
        return StartDecision(False, code=outcomes.INVALID_STATE, reason=f"Seminar is {seminar.status.value}", **counters)

    rejection = _window_rejection(slot, now)
    if rejection:
        code, reason = rejection
        return StartDecision(False, code=code, reason=reason, **counters)

    if active >= slot.max_concurrent:
        return StartDecision(
            False,
            code=outcomes.AT_CAPACITY,
            reason="All seminar places are currently in use. Please wait.",
            retryable=True,
            **counters,
        )
    return StartDecision(True, **counters)


async def build_exam_context(db: AsyncSession, seminar: Seminar) -> ExamContext:
    submission = await db.get(Submission, seminar.submission_id)
    student = await db.get(User, submission.student_id)
    assignment = await db.get(Assignment, submission.assignment_id)
    review = await get_authoritative_review(db, submission.id)

    plan = normalize_discussion_plan(
        review.discussion_plan if review else None,
        review.feedback if review else None,
    )
    return ExamContext(
        student_name=student.full_name if student else "there",
        assignment_title=assignment.title,
        assignment_description=assignment.description or "",
        plan=plan,
        language=seminar.language or "en",
        target_time_minutes=assignment.target_time_minutes or settings.DEFAULT_TARGET_TIME_MINUTES,
        max_time_minutes=assignment.max_time_minutes or settings.DEFAULT_MAX_TIME_MINUTES,
    )


async def start_session(
    db: AsyncSession,
    seminar_id: int,
    gate: Optional[ExamGate] = None,
    voice: Optional[VoiceClient] = None,
    now: Optional[datetime] = None,
) -> StartOutcome:
    """
    Start (or retry starting) an oral exam.

    Returns:
        StartOutcome with the signed connection URL and prompt override on
        success, otherwise the reason and counters

    Raises:
        NotFoundError: Unknown seminar or slot
        VoiceProviderError: Connection handle could not be obtained; the
            lease has been released and the seminar is booked again
    """
    gate = gate or get_exam_gate()
    voice = voice or get_voice_client()
    now = now or datetime.utcnow()

    seminar = await _load_seminar(db, seminar_id)
    slot = await _load_slot(db, seminar.slot_id)

    if seminar.status == SeminarStatus.IN_PROGRESS:
        logger.info(f"[SEMINAR START] seminar={seminar_id} already in progress")
        return StartOutcome(
            success=False, seminar_id=seminar_id, status=seminar.status,
            code=outcomes.ALREADY_IN_PROGRESS, reason="Seminar is already in progress",
        )

    if seminar.status not in STARTABLE_STATES:
        return StartOutcome(
            success=False, seminar_id=seminar_id, status=seminar.status,
            code=outcomes.INVALID_STATE, reason=f"Seminar cannot be started from status '{seminar.status.value}'",
        )

    rejection = _window_rejection(slot, now)
    if rejection:
        code, reason = rejection
        return StartOutcome(success=False, seminar_id=seminar_id, status=seminar.status, code=code, reason=reason)

    context = await build_exam_context(db, seminar)
    holder_id = exam_holder_id(seminar_id)

    if not await gate.try_acquire(slot.id, holder_id, slot.max_concurrent):
        await transition_seminar(db, seminar_id, STARTABLE_STATES, SeminarStatus.WAITING)
        await db.commit()
        seminar = await _load_seminar(db, seminar_id)
        active = await gate.active_count(slot.id)
        logger.info(f"[SEMINAR WAITING] seminar={seminar_id} slot={slot.id} active={active}/{slot.max_concurrent}")
        return StartOutcome(
            success=False, seminar_id=seminar_id, status=seminar.status,
            code=outcomes.AT_CAPACITY, reason="All seminar places are currently in use. Please wait.",
            retryable=True, active_count=active, max_concurrent=slot.max_concurrent,
        )

    won = await transition_seminar(
        db, seminar_id, STARTABLE_STATES, SeminarStatus.IN_PROGRESS,
        started_at=now, ended_at=None, duration_seconds=None,
    )
    await db.commit()
    if not won:
        seminar = await _load_seminar(db, seminar_id)
        if seminar.status != SeminarStatus.IN_PROGRESS:
            # Nobody started it (swept or ended meanwhile); the lease is ours to give back
            await gate.release(slot.id, holder_id)
        return StartOutcome(
            success=False, seminar_id=seminar_id, status=seminar.status,
            code=outcomes.ALREADY_IN_PROGRESS if seminar.status == SeminarStatus.IN_PROGRESS else outcomes.INVALID_STATE,
            reason=f"Seminar is {seminar.status.value}",
        )

    try:
        prompt_override = build_prompt_override(context)
        signed_url = await voice.get_signed_url()
    except Exception as e:
        reverted = await transition_seminar(
            db, seminar_id, [SeminarStatus.IN_PROGRESS], SeminarStatus.BOOKED, started_at=None,
        )
        await db.commit()
        if reverted:
            await gate.release(slot.id, holder_id)
        logger.error(f"[SEMINAR START FAILED] seminar={seminar_id}: {type(e).__name__}: {e}")
        if isinstance(e, VoiceProviderError):
            raise
        raise VoiceProviderError(f"Could not start the voice session: {e}") from e

    active = await gate.active_count(slot.id)
    logger.info(f"[SEMINAR START] seminar={seminar_id} slot={slot.id} active={active}/{slot.max_concurrent}")
    return StartOutcome(
        success=True,
        seminar_id=seminar_id,
        status=SeminarStatus.IN_PROGRESS,
        signed_url=signed_url,
        prompt_override=prompt_override,
        active_count=active,
        max_concurrent=slot.max_concurrent,
    )


async def set_conversation_id(db: AsyncSession, seminar_id: int, conversation_id: str) -> bool:
    """Record the voice engine conversation id; only while in progress."""
    await _load_seminar(db, seminar_id)
    result = await db.execute(
        update(Seminar)
        .where(Seminar.id == seminar_id, Seminar.status == SeminarStatus.IN_PROGRESS)
        .values(conversation_id=conversation_id, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    updated = result.rowcount == 1
    if updated:
        logger.info(f"[SEMINAR CONVERSATION] seminar={seminar_id} conversation={conversation_id}")
    return updated


async def capture_session_artifacts(
    db: AsyncSession,
    seminar_id: int,
    conversation_id: Optional[str],
    voice: VoiceClient,
) -> None:
    """
    Store transcript and recording for a completed session.

    Provider failures are logged, not raised: the session outcome is already
    committed and grading reports a missing transcript on its own.
    """
    if not conversation_id:
        logger.warning(f"[SEMINAR CAPTURE] seminar={seminar_id} has no conversation id")
        return

    try:
        turns = await voice.get_transcript(conversation_id)
    except VoiceProviderError as e:
        logger.error(f"[SEMINAR CAPTURE] seminar={seminar_id} transcript failed: {e.message}")
    else:
        existing = (await db.execute(
            select(Transcript).where(Transcript.seminar_id == seminar_id)
        )).scalar_one_or_none()
        if existing is None:
            db.add(Transcript(seminar_id=seminar_id, turns=turns))
        else:
            existing.turns = turns
        await db.commit()
        logger.info(f"[SEMINAR CAPTURE] seminar={seminar_id} transcript turns={len(turns)}")

    if not feature_flags.FEATURE_RECORDING_CAPTURE:
        return

    try:
        audio = await voice.download_audio(conversation_id)
    except VoiceProviderError as e:
        logger.error(f"[SEMINAR CAPTURE] seminar={seminar_id} recording failed: {e.message}")
        return
    if audio is None:
        return

    existing = (await db.execute(
        select(Recording).where(Recording.seminar_id == seminar_id)
    )).scalar_one_or_none()
    if existing is None:
        db.add(Recording(
            seminar_id=seminar_id,
            source_url=audio.source_url,
            content_type=audio.content_type,
            size_bytes=len(audio.content),
            audio=audio.content,
        ))
        await db.commit()
        logger.info(f"[SEMINAR CAPTURE] seminar={seminar_id} recording bytes={len(audio.content)}")


async def finalize_session(
    db: AsyncSession,
    seminar_id: int,
    succeeded: bool,
    duration_seconds: Optional[int] = None,
    source: str = "unknown",
    gate: Optional[ExamGate] = None,
    voice: Optional[VoiceClient] = None,
    scheduler: Optional[GradingScheduler] = None,
    now: Optional[datetime] = None,
) -> CompletionOutcome:
    """
    Move an in-progress session to completed or failed, exactly once.

    Callers that lose the race get applied=False and the state they found.
    """
    gate = gate or get_exam_gate()
    voice = voice or get_voice_client()
    scheduler = scheduler or schedule_grading
    now = now or datetime.utcnow()

    seminar = await _load_seminar(db, seminar_id)
    if duration_seconds is None and seminar.started_at is not None:
        duration_seconds = max(0, int((now - seminar.started_at).total_seconds()))

    target = SeminarStatus.COMPLETED if succeeded else SeminarStatus.FAILED
    won = await transition_seminar(
        db, seminar_id, [SeminarStatus.IN_PROGRESS], target,
        ended_at=now, duration_seconds=duration_seconds,
    )
    if not won:
        seminar = await _load_seminar(db, seminar_id)
        logger.info(f"[SEMINAR FINALIZE] seminar={seminar_id} source={source} no-op, already {seminar.status.value}")
        return CompletionOutcome(seminar_id=seminar_id, status=seminar.status, applied=False, source=source)

    if succeeded:
        await transition_submission(
            db, seminar.submission_id, [SubmissionStatus.SEMINAR_PENDING], SubmissionStatus.SEMINAR_COMPLETED
        )
    else:
        await transition_submission(
            db, seminar.submission_id, [SubmissionStatus.SEMINAR_PENDING], SubmissionStatus.REVIEWED
        )
    await db.commit()

    try:
        released = await gate.release(seminar.slot_id, exam_holder_id(seminar_id))
    except RedisError as e:
        # The lease still expires on its own TTL
        logger.warning(f"[SEMINAR FINALIZE] seminar={seminar_id} lease release failed: {e}")
        released = False

    logger.info(
        f"[SEMINAR FINALIZE] seminar={seminar_id} source={source} -> {target.value} "
        f"duration={duration_seconds} released={released}"
    )

    if succeeded:
        seminar = await _load_seminar(db, seminar_id)
        try:
            await capture_session_artifacts(db, seminar_id, seminar.conversation_id, voice)
        except Exception as e:
            # Completion is already committed; grading must still be enqueued
            logger.error(f"[SEMINAR CAPTURE] seminar={seminar_id} capture aborted: {type(e).__name__}: {e}")
            await db.rollback()
        if feature_flags.FEATURE_AUTO_GRADING:
            scheduler(seminar_id)

    return CompletionOutcome(
        seminar_id=seminar_id,
        status=target,
        applied=True,
        lease_released=released,
        duration_seconds=duration_seconds,
        source=source,
    )


async def complete_from_webhook(
    db: AsyncSession,
    conversation_id: str,
    status: Optional[str],
    duration_seconds: Optional[int],
    **kwargs,
) -> CompletionOutcome:
    """Authoritative completion reported by the voice engine."""
    result = await db.execute(select(Seminar.id).where(Seminar.conversation_id == conversation_id))
    seminar_id = result.scalar_one_or_none()
    if seminar_id is None:
        raise NotFoundError("Seminar for conversation", conversation_id)

    succeeded = (status or "completed") in WEBHOOK_SUCCESS
    return await finalize_session(
        db, seminar_id, succeeded, duration_seconds=duration_seconds, source="webhook", **kwargs
    )


async def report_client_completion(
    db: AsyncSession,
    seminar_id: int,
    client_status: str,
    duration_seconds: Optional[int] = None,
    voice: Optional[VoiceClient] = None,
    **kwargs,
) -> CompletionOutcome:
    """
    Fallback completion reported by the browser.

    The voice engine's own status wins when it can be reached; the client's
    status is only used when that check fails or is inconclusive.
    """
    voice = voice or get_voice_client()
    seminar = await _load_seminar(db, seminar_id)

    if seminar.status != SeminarStatus.IN_PROGRESS:
        return CompletionOutcome(seminar_id=seminar_id, status=seminar.status, applied=False, source="client")

    if client_status == "error" or not seminar.conversation_id:
        succeeded = False
    else:
        try:
            info = await voice.get_conversation(seminar.conversation_id)
            if info.status in UPSTREAM_SUCCESS:
                succeeded = True
            elif info.status == "failed":
                succeeded = False
            else:
                succeeded = client_status == "ended"
            if info.duration_seconds is not None:
                duration_seconds = info.duration_seconds
        except VoiceProviderError as e:
            logger.warning(f"[SEMINAR COMPLETE] seminar={seminar_id} upstream check failed, using client status: {e.message}")
            succeeded = client_status == "ended"

    return await finalize_session(
        db, seminar_id, succeeded, duration_seconds=duration_seconds, source="client", voice=voice, **kwargs
    )


async def mark_no_show(db: AsyncSession, seminar_id: int, now: Optional[datetime] = None) -> CompletionOutcome:
    """Admin action: a booked or waiting session that was never attended."""
    now = now or datetime.utcnow()
    seminar = await _load_seminar(db, seminar_id)

    won = await transition_seminar(db, seminar_id, STARTABLE_STATES, SeminarStatus.NO_SHOW, ended_at=now)
    if won:
        await transition_submission(
            db, seminar.submission_id, [SubmissionStatus.SEMINAR_PENDING], SubmissionStatus.REVIEWED
        )
    await db.commit()

    seminar = await _load_seminar(db, seminar_id)
    return CompletionOutcome(seminar_id=seminar_id, status=seminar.status, applied=won, source="admin")


async def sweep_expired_bookings(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Move booked/waiting sessions whose slot window has ended to no_show.

    Idempotent and safe to call from every listing.

    Returns:
        Number of sessions moved
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        select(Seminar.id, Seminar.submission_id)
        .join(SeminarSlot, SeminarSlot.id == Seminar.slot_id)
        .where(Seminar.status.in_(STARTABLE_STATES), SeminarSlot.window_end < now)
    )
    expired = result.all()

    swept = 0
    for seminar_id, submission_id in expired:
        if await transition_seminar(db, seminar_id, STARTABLE_STATES, SeminarStatus.NO_SHOW, ended_at=now):
            await transition_submission(
                db, submission_id, [SubmissionStatus.SEMINAR_PENDING], SubmissionStatus.REVIEWED
            )
            swept += 1
    await db.commit()

    if swept:
        logger.info(f"[SWEEP] {swept} expired booking(s) marked no_show")
    return swept


async def get_status(
    db: AsyncSession,
    seminar_id: int,
    gate: Optional[ExamGate] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Session details merged with the start decision and exam timing."""
    seminar = await _load_seminar(db, seminar_id)
    submission = await db.get(Submission, seminar.submission_id)
    assignment = await db.get(Assignment, submission.assignment_id)
    decision = await can_start(db, seminar_id, gate=gate, now=now)

    return {
        "id": seminar.id,
        "submission_id": seminar.submission_id,
        "slot_id": seminar.slot_id,
        "language": seminar.language,
        "status": seminar.status.value,
        "conversation_id": seminar.conversation_id,
        "started_at": seminar.started_at,
        "ended_at": seminar.ended_at,
        "duration_seconds": seminar.duration_seconds,
        "can_start": decision.allowed,
        "can_start_reason": decision.reason,
        "can_start_code": decision.code,
        "active_count": decision.active_count,
        "max_concurrent": decision.max_concurrent,
        "target_time_minutes": assignment.target_time_minutes or settings.DEFAULT_TARGET_TIME_MINUTES,
        "max_time_minutes": assignment.max_time_minutes or settings.DEFAULT_MAX_TIME_MINUTES,
    }
