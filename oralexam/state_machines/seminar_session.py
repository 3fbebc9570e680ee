"""
Seminar Session State Machine

State Flow:
    booked --start, capacity ok--------> in_progress
    booked --start, capacity exceeded--> waiting
    waiting --start, capacity ok-------> in_progress
    booked|waiting --window passed-----> no_show
    booked|waiting --admin no-show-----> no_show
    in_progress --success--------------> completed
    in_progress --failure/abandon------> failed
    in_progress --start failed upstream-> booked

completed, failed and no_show are terminal.

Every transition is a conditional UPDATE guarded on the current status, so
concurrent callers (two completion paths, two start polls, a sweep racing a
start) resolve to exactly one winner without in-process locks.
"""
import logging
from datetime import datetime
from typing import Iterable, List

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from oralexam.orm.seminar import Seminar, SeminarStatus

logger = logging.getLogger(__name__)


TRANSITIONS = {
    SeminarStatus.BOOKED: [SeminarStatus.IN_PROGRESS, SeminarStatus.WAITING, SeminarStatus.NO_SHOW],
    SeminarStatus.WAITING: [SeminarStatus.IN_PROGRESS, SeminarStatus.WAITING, SeminarStatus.NO_SHOW],
    SeminarStatus.IN_PROGRESS: [SeminarStatus.COMPLETED, SeminarStatus.FAILED, SeminarStatus.BOOKED],
    SeminarStatus.COMPLETED: [],
    SeminarStatus.FAILED: [],
    SeminarStatus.NO_SHOW: [],
}

TERMINAL_STATES = frozenset(
    state for state, targets in TRANSITIONS.items() if not targets
)

STARTABLE_STATES = (SeminarStatus.BOOKED, SeminarStatus.WAITING)


class StateTransitionError(Exception):
    """Raised when code asks for a transition the machine does not define."""

    def __init__(self, message: str, from_state=None, to_state=None, allowed_states: List = None):
        self.message = message
        self.from_state = from_state
        self.to_state = to_state
        self.allowed_states = allowed_states or []
        super().__init__(message)


def can_transition(from_state: SeminarStatus, to_state: SeminarStatus) -> bool:
    return to_state in TRANSITIONS.get(from_state, [])


def is_terminal(state: SeminarStatus) -> bool:
    return state in TERMINAL_STATES


def validate_transition(from_states: Iterable[SeminarStatus], to_state: SeminarStatus) -> None:
    for from_state in from_states:
        if not can_transition(from_state, to_state):
            allowed = TRANSITIONS.get(from_state, [])
            raise StateTransitionError(
                f"Invalid seminar transition: {from_state.value} -> {to_state.value}",
                from_state=from_state,
                to_state=to_state,
                allowed_states=allowed,
            )


async def transition_seminar(
    db: AsyncSession,
    seminar_id: int,
    from_states: Iterable[SeminarStatus],
    to_state: SeminarStatus,
    **values,
) -> bool:
    """
    Compare-and-set the seminar status.

    Args:
        db: Database session (caller commits)
        seminar_id: Seminar to move
        from_states: Statuses the row must currently be in
        to_state: Target status
        **values: Extra columns written in the same UPDATE

    Returns:
        True if this call performed the transition, False if the row was no
        longer in any of from_states (someone else won, or it never was).

    Raises:
        StateTransitionError: If any from_state -> to_state pair is undefined
    """
    from_states = list(from_states)
    validate_transition(from_states, to_state)

    result = await db.execute(
        update(Seminar)
        .where(Seminar.id == seminar_id, Seminar.status.in_(from_states))
        .values(status=to_state, updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    won = result.rowcount == 1

    if won:
        logger.info(
            f"[TRANSITION SUCCESS] seminar={seminar_id} "
            f"{'|'.join(s.value for s in from_states)} -> {to_state.value}"
        )
    else:
        logger.debug(f"[TRANSITION SKIPPED] seminar={seminar_id} not in {[s.value for s in from_states]}")
    return won
