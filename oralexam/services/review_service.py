"""
oralexam/services/review_service.py
Semaphore-gated LLM code review of submissions

Flow for one submission:
1. Preconditions (pending, no review yet), checked before touching the gate
2. Acquire a lease on the assignment's review gate, or report at_capacity
3. pending -> reviewing, call the LLM, parse (with repair), store the review,
   reviewing -> reviewed
4. Any failure in step 3 puts the submission back to pending and re-raises
5. The lease is always released
"""
import logging
import time
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from oralexam.config.settings import settings
from oralexam.coordination.gates import ReviewGate, get_review_gate
from oralexam.exceptions import NotFoundError, OralExamException
from oralexam.orm.assignment import Assignment
from oralexam.orm.review import Review
from oralexam.orm.submission import Submission, SubmissionStatus
from oralexam.services import outcomes
from oralexam.services.code_review import (
    build_review_system_prompt,
    build_review_user_prompt,
    detect_language,
    parse_review_response,
)
from oralexam.services.llm_client import LLMClient, get_llm_client
from oralexam.services.outcomes import ReviewEligibility, ReviewOutcome
from oralexam.state_machines.submission_status import transition_submission

logger = logging.getLogger(__name__)


def review_holder_id(submission_id: int) -> str:
    return f"review:{submission_id}:{int(time.time() * 1000)}"


async def get_authoritative_review(db: AsyncSession, submission_id: int) -> Optional[Review]:
    """Latest review by creation time."""
    result = await db.execute(
        select(Review)
        .where(Review.submission_id == submission_id)
        .order_by(Review.created_at.desc(), Review.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def can_run_review(db: AsyncSession, submission_id: int) -> ReviewEligibility:
    submission = await db.get(Submission, submission_id, populate_existing=True)
    if submission is None:
        raise NotFoundError("Submission", submission_id)

    if submission.status != SubmissionStatus.PENDING:
        return ReviewEligibility(
            allowed=False,
            code=outcomes.INVALID_STATE,
            reason=f"Submission status is '{submission.status.value}', expected 'pending'",
            current_status=submission.status.value,
        )

    if await get_authoritative_review(db, submission_id) is not None:
        return ReviewEligibility(
            allowed=False,
            code=outcomes.ALREADY_REVIEWED,
            reason="Submission already has a review",
            current_status=submission.status.value,
        )

    return ReviewEligibility(allowed=True, current_status=submission.status.value)


async def run_review(
    db: AsyncSession,
    submission_id: int,
    gate: Optional[ReviewGate] = None,
    llm: Optional[LLMClient] = None,
) -> ReviewOutcome:
    """
    Review one submission.

    Returns:
        ReviewOutcome; capacity and precondition failures are reported here

    Raises:
        NotFoundError: Unknown submission
        ProviderError / MalformedResponseError: After the submission has been
            put back to pending
    """
    gate = gate or get_review_gate()
    llm = llm or get_llm_client()

    eligibility = await can_run_review(db, submission_id)
    if not eligibility.allowed:
        logger.info(f"[REVIEW REJECTED] submission={submission_id} reason={eligibility.reason}")
        return ReviewOutcome(
            success=False,
            submission_id=submission_id,
            code=eligibility.code,
            reason=eligibility.reason,
            current_status=eligibility.current_status,
        )

    submission = await db.get(Submission, submission_id)
    assignment_id = submission.assignment_id
    holder_id = review_holder_id(submission_id)

    if not await gate.try_acquire(assignment_id, holder_id):
        active = await gate.active_count(assignment_id)
        logger.info(f"[REVIEW AT CAPACITY] submission={submission_id} assignment={assignment_id} active={active}")
        return ReviewOutcome(
            success=False,
            submission_id=submission_id,
            code=outcomes.AT_CAPACITY,
            reason="Too many reviews are running for this assignment. Please try again shortly.",
            retryable=True,
            current_status=SubmissionStatus.PENDING.value,
            active_count=active,
            max_concurrent=gate.max_concurrent,
        )

    try:
        moved = await transition_submission(
            db, submission_id, [SubmissionStatus.PENDING], SubmissionStatus.REVIEWING
        )
        await db.commit()
        if not moved:
            return ReviewOutcome(
                success=False,
                submission_id=submission_id,
                code=outcomes.INVALID_STATE,
                reason="Submission is no longer pending",
            )

        try:
            review = await _review_submission(db, submission, llm)
        except Exception as e:
            await db.rollback()
            await transition_submission(
                db, submission_id, [SubmissionStatus.REVIEWING], SubmissionStatus.PENDING
            )
            await db.commit()
            logger.error(f"[REVIEW FAILED] submission={submission_id}: {type(e).__name__}: {e}")
            raise

        logger.info(f"[REVIEW COMPLETE] submission={submission_id} review={review.id} repaired={review.repaired}")
        return ReviewOutcome(success=True, submission_id=submission_id, review=review)

    finally:
        await gate.release(assignment_id, holder_id)


async def _review_submission(db: AsyncSession, submission: Submission, llm: LLMClient) -> Review:
    assignment = await db.get(Assignment, submission.assignment_id)
    language = detect_language(submission.file_name)

    completion = await llm.chat(
        build_review_system_prompt(language),
        build_review_user_prompt(
            submission.content,
            submission.file_name,
            language,
            assignment.review_prompt if assignment else None,
        ),
        model=settings.REVIEW_MODEL,
        max_completion_tokens=settings.REVIEW_MAX_COMPLETION_TOKENS,
        json_mode=True,
    )
    parsed = parse_review_response(completion)

    review = Review(
        submission_id=submission.id,
        feedback=parsed.feedback,
        issues=parsed.issues,
        discussion_plan=parsed.discussion_plan,
        model=completion.model,
        repaired=parsed.repaired,
    )
    db.add(review)
    await transition_submission(
        db, submission.id, [SubmissionStatus.REVIEWING], SubmissionStatus.REVIEWED
    )
    await db.commit()
    return review


async def batch_review(
    db: AsyncSession,
    submission_ids: Iterable[int],
    gate: Optional[ReviewGate] = None,
    llm: Optional[LLMClient] = None,
) -> List[ReviewOutcome]:
    """Review submissions one after another; one failure never stops the batch."""
    results = []
    for submission_id in submission_ids:
        try:
            results.append(await run_review(db, submission_id, gate=gate, llm=llm))
        except OralExamException as e:
            results.append(ReviewOutcome(
                success=False,
                submission_id=submission_id,
                code=outcomes.NOT_FOUND if isinstance(e, NotFoundError) else outcomes.PROVIDER_FAILURE,
                reason=e.message,
                retryable=not isinstance(e, NotFoundError),
            ))
    succeeded = sum(1 for r in results if r.success)
    logger.info(f"[BATCH REVIEW] {succeeded}/{len(results)} succeeded")
    return results
