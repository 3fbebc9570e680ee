"""
oralexam/services/grading_service.py
Multi-sample AI grading of oral exam transcripts

Three graders with different stances (strict, balanced, generous) see the
same transcript and discussion plan and run in parallel. Each grader's
failure is captured on its own. The suggested score is the rounded mean of
the successful scores, or their median when they disagree by more than the
configured spread and at least three succeeded.
"""
import asyncio
import json
import logging
import statistics
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oralexam.config.settings import settings
from oralexam.exceptions import MalformedResponseError, NotFoundError
from oralexam.orm.ai_grade import AIGrade, AIGradeStatus
from oralexam.orm.seminar import Seminar, SeminarStatus
from oralexam.orm.transcript import Transcript
from oralexam.services import outcomes
from oralexam.services.code_review import condense_discussion_plan
from oralexam.services.json_repair import strip_code_fence
from oralexam.services.llm_client import LLMClient, get_llm_client
from oralexam.services.outcomes import GradingOutcome
from oralexam.services.review_service import get_authoritative_review

logger = logging.getLogger(__name__)


GRADER_STANCES = {
    "strict": (
        "Grade strictly. Award high marks only for precise, complete explanations that show the "
        "student clearly wrote and understands the code. Vague or partially correct answers score low."
    ),
    "balanced": (
        "Grade in a balanced way. Weigh correct explanations against gaps and misunderstandings "
        "as an experienced, fair examiner would."
    ),
    "generous": (
        "Grade generously. Give credit for partial understanding and reasonable intuition even when "
        "the student's explanation is imprecise, while still penalising clear misunderstanding."
    ),
}


class SuggestedScore(NamedTuple):
    score: int
    method: str


class GraderResult(NamedTuple):
    stance: str
    score: Optional[int]
    reasoning: Optional[str]
    error: Optional[str]


def _round_half_up(value) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_suggested_score(
    scores: Sequence[Optional[float]],
    spread_threshold: Optional[int] = None,
) -> SuggestedScore:
    """
    Combine grader scores into one suggested score.

    Examples:
        [90, 60, 40] -> (60, "median")   spread 50, three samples
        [80, 85]     -> (83, "average")  82.5 rounds half up
        []           -> (0, "average")
    """
    threshold = settings.GRADING_SPREAD_THRESHOLD if spread_threshold is None else spread_threshold
    valid = [s for s in scores if s is not None]

    if not valid:
        return SuggestedScore(0, "average")
    if len(valid) == 1:
        return SuggestedScore(_round_half_up(valid[0]), "average")

    if max(valid) - min(valid) > threshold and len(valid) >= 3:
        return SuggestedScore(_round_half_up(statistics.median(valid)), "median")

    return SuggestedScore(_round_half_up(sum(valid) / len(valid)), "average")


def format_transcript(turns: List[Dict[str, Any]]) -> str:
    """Examiner/Student turns in call order, separated by blank lines."""
    ordered = sorted(
        (t for t in turns if isinstance(t, dict)),
        key=lambda t: t.get("time_in_call_secs") or 0,
    )
    lines = []
    for turn in ordered:
        speaker = "Examiner" if turn.get("role") == "agent" else "Student"
        lines.append(f"{speaker}: {turn.get('message') or ''}")
    return "\n\n".join(lines)


def build_grading_prompts(stance: str, plan_text: str, transcript_text: str, language: str):
    system_prompt = f"""You grade oral examinations in a programming course.
The student was questioned about code they submitted. Decide how well the
transcript shows that the student understands their own solution.

{GRADER_STANCES[stance]}

Respond ONLY with a JSON object: {{"score": <integer 0-100>, "reasoning": "<short justification>"}}"""

    language_note = "The conversation was held in Swedish." if language == "sv" else ""
    user_prompt = f"""## Discussion plan
{plan_text}

## Transcript
{transcript_text}

{language_note}""".strip()
    return system_prompt, user_prompt


def parse_grader_response(content: str) -> GraderResult:
    try:
        data = json.loads(strip_code_fence(content or ""))
    except ValueError as e:
        raise MalformedResponseError(f"Grader response is not JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedResponseError("Grader response is not a JSON object")
    score = data.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise MalformedResponseError("Grader response has no numeric score")

    reasoning = data.get("reasoning")
    return GraderResult(
        stance="",
        score=max(0, min(100, _round_half_up(score))),
        reasoning=reasoning if isinstance(reasoning, str) else "",
        error=None,
    )


async def grade_with_stance(
    llm: LLMClient,
    stance: str,
    plan_text: str,
    transcript_text: str,
    language: str,
) -> GraderResult:
    """One grader call; never raises, failures come back in the result."""
    system_prompt, user_prompt = build_grading_prompts(stance, plan_text, transcript_text, language)
    try:
        completion = await llm.chat(system_prompt, user_prompt, model=settings.GRADING_MODEL, json_mode=True)
        return parse_grader_response(completion.content)._replace(stance=stance)
    except Exception as e:
        logger.error(f"[GRADER FAILED] stance={stance}: {type(e).__name__}: {e}")
        return GraderResult(stance=stance, score=None, reasoning=None, error=str(e) or type(e).__name__)


async def get_grade(db: AsyncSession, seminar_id: int) -> Optional[AIGrade]:
    result = await db.execute(
        select(AIGrade)
        .where(AIGrade.seminar_id == seminar_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _claim_grade(db: AsyncSession, seminar_id: int, existing: Optional[AIGrade], now: datetime) -> Optional[AIGrade]:
    """
    Take ownership of the grade record for this run.

    Returns None if another run holds a fresh claim or already finished.
    """
    if existing is None:
        grade = AIGrade(seminar_id=seminar_id, status=AIGradeStatus.IN_PROGRESS, started_at=now)
        db.add(grade)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info(f"[GRADING] seminar={seminar_id} claimed concurrently")
            return None
        return grade

    stale_before = now - timedelta(seconds=settings.GRADING_STALE_AFTER_SECONDS)
    result = await db.execute(
        update(AIGrade)
        .where(
            AIGrade.id == existing.id,
            AIGrade.status != AIGradeStatus.COMPLETED,
            or_(
                AIGrade.status != AIGradeStatus.IN_PROGRESS,
                AIGrade.started_at.is_(None),
                AIGrade.started_at < stale_before,
            ),
        )
        .values(status=AIGradeStatus.IN_PROGRESS, started_at=now, error_message=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        return None
    return await get_grade(db, seminar_id)


async def run_grading(
    db: AsyncSession,
    seminar_id: int,
    llm: Optional[LLMClient] = None,
    now: Optional[datetime] = None,
) -> GradingOutcome:
    """
    Grade a completed seminar.

    A completed grade is returned untouched. A failed grade, or one stuck
    in progress past the stale threshold, is re-run from scratch.
    """
    llm = llm or get_llm_client()
    now = now or datetime.utcnow()

    seminar = await db.get(Seminar, seminar_id, populate_existing=True)
    if seminar is None:
        raise NotFoundError("Seminar", seminar_id)

    existing = await get_grade(db, seminar_id)
    if existing is not None and existing.status == AIGradeStatus.COMPLETED:
        logger.info(f"[GRADING] seminar={seminar_id} already graded (grade={existing.id})")
        return GradingOutcome(success=True, seminar_id=seminar_id, grade=existing)

    if seminar.status != SeminarStatus.COMPLETED:
        return GradingOutcome(
            success=False,
            seminar_id=seminar_id,
            code=outcomes.INVALID_STATE,
            reason=f"Seminar status is '{seminar.status.value}', expected 'completed'",
        )

    review = await get_authoritative_review(db, seminar.submission_id)
    if review is None:
        return GradingOutcome(
            success=False, seminar_id=seminar_id,
            code=outcomes.MISSING_INPUT, reason="No review found for this submission",
        )

    transcript = (await db.execute(
        select(Transcript).where(Transcript.seminar_id == seminar_id)
    )).scalar_one_or_none()
    if transcript is None or not transcript.turns:
        return GradingOutcome(
            success=False, seminar_id=seminar_id,
            code=outcomes.MISSING_INPUT, reason="No transcript found for this seminar",
        )

    language = seminar.language or "en"
    plan = review.discussion_plan if isinstance(review.discussion_plan, list) else []
    plan_text = condense_discussion_plan(plan)
    transcript_text = format_transcript(transcript.turns)

    grade = await _claim_grade(db, seminar_id, existing, now)
    if grade is None:
        current = await get_grade(db, seminar_id)
        if current is not None and current.status == AIGradeStatus.COMPLETED:
            return GradingOutcome(success=True, seminar_id=seminar_id, grade=current)
        return GradingOutcome(
            success=False, seminar_id=seminar_id, grade=current,
            code=outcomes.IN_FLIGHT, reason="Grading is already in progress",
        )

    logger.info(f"[GRADING START] seminar={seminar_id} grade={grade.id} transcript_chars={len(transcript_text)}")

    results = await asyncio.gather(*(
        grade_with_stance(llm, stance, plan_text, transcript_text, language)
        for stance in GRADER_STANCES
    ))

    for index, result in enumerate(results, start=1):
        setattr(grade, f"score_{index}", result.score)
        setattr(grade, f"reasoning_{index}", result.reasoning or result.error)
    grade.model = settings.GRADING_MODEL

    errors = [f"{r.stance}: {r.error}" for r in results if r.error]
    if all(r.score is None for r in results):
        grade.status = AIGradeStatus.FAILED
        grade.error_message = "; ".join(errors)
        grade.suggested_score = None
        grade.scoring_method = None
        await db.commit()
        logger.error(f"[GRADING FAILED] seminar={seminar_id} grade={grade.id}: {grade.error_message}")
        return GradingOutcome(
            success=False, seminar_id=seminar_id, grade=grade,
            code=outcomes.PROVIDER_FAILURE, reason="All grading instances failed", errors=errors,
        )

    suggested = calculate_suggested_score([r.score for r in results])
    grade.suggested_score = suggested.score
    grade.scoring_method = suggested.method
    grade.status = AIGradeStatus.COMPLETED
    grade.error_message = "; ".join(errors) or None
    grade.completed_at = datetime.utcnow()
    await db.commit()

    logger.info(
        f"[GRADING COMPLETE] seminar={seminar_id} grade={grade.id} "
        f"scores={[r.score for r in results]} suggested={suggested.score} method={suggested.method}"
    )
    return GradingOutcome(success=True, seminar_id=seminar_id, grade=grade, errors=errors or None)


async def retry_grading(db: AsyncSession, seminar_id: int, llm: Optional[LLMClient] = None) -> GradingOutcome:
    """Re-run grading; a no-op for an already completed grade."""
    logger.info(f"[GRADING RETRY] seminar={seminar_id}")
    return await run_grading(db, seminar_id, llm=llm)
