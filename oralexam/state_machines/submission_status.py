"""
Submission status transitions.

pending -> reviewing -> reviewed -> seminar_pending -> seminar_completed -> approved | rejected
reviewing -> pending when a review fails
seminar_pending -> reviewed when the exam fails or is a no-show, so the student can rebook
"""
import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from oralexam.orm.submission import Submission, SubmissionStatus
from oralexam.state_machines.seminar_session import StateTransitionError

logger = logging.getLogger(__name__)


TRANSITIONS = {
    SubmissionStatus.PENDING: [SubmissionStatus.REVIEWING],
    SubmissionStatus.REVIEWING: [SubmissionStatus.REVIEWED, SubmissionStatus.PENDING],
    SubmissionStatus.REVIEWED: [SubmissionStatus.SEMINAR_PENDING],
    SubmissionStatus.SEMINAR_PENDING: [SubmissionStatus.SEMINAR_COMPLETED, SubmissionStatus.REVIEWED],
    SubmissionStatus.SEMINAR_COMPLETED: [SubmissionStatus.APPROVED, SubmissionStatus.REJECTED],
    SubmissionStatus.APPROVED: [],
    SubmissionStatus.REJECTED: [],
}


async def transition_submission(
    db: AsyncSession,
    submission_id: int,
    from_states: Iterable[SubmissionStatus],
    to_state: SubmissionStatus,
) -> bool:
    """Compare-and-set the submission status. Returns True if this call moved it."""
    from_states = list(from_states)
    for from_state in from_states:
        if to_state not in TRANSITIONS[from_state]:
            raise StateTransitionError(
                f"Invalid submission transition: {from_state.value} -> {to_state.value}",
                from_state=from_state,
                to_state=to_state,
                allowed_states=TRANSITIONS[from_state],
            )

    result = await db.execute(
        update(Submission)
        .where(Submission.id == submission_id, Submission.status.in_(from_states))
        .values(status=to_state, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    moved = result.rowcount == 1
    if moved:
        logger.info(f"[SUBMISSION STATUS] submission={submission_id} -> {to_state.value}")
    return moved
