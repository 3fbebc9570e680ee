"""
Three-sample AI grading: aggregation, parsing and the grading run
"""
import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from oralexam.exceptions import LLMProviderError, MalformedResponseError, NotFoundError
from oralexam.orm.ai_grade import AIGrade, AIGradeStatus
from oralexam.orm.seminar import SeminarStatus
from oralexam.services import outcomes
from oralexam.services.grading_service import (
    GRADER_STANCES,
    calculate_suggested_score,
    format_transcript,
    parse_grader_response,
    retry_grading,
    run_grading,
)
from oralexam.services.llm_client import ChatCompletion, LLMClient
from oralexam.tests import factories


def grader_llm(scores):
    """LLM mock answering each stance with its own score, or raising it."""
    async def chat(system_prompt, user_prompt, model, **kwargs):
        for stance, text in GRADER_STANCES.items():
            if text in system_prompt:
                score = scores[stance]
                if isinstance(score, Exception):
                    raise score
                return ChatCompletion(
                    content=json.dumps({"score": score, "reasoning": f"{stance} reading"}),
                    finish_reason="stop",
                    model=model,
                    total_tokens=50,
                )
        raise AssertionError("unknown grader stance")

    client = AsyncMock(spec=LLMClient)
    client.chat.side_effect = chat
    return client


class TestSuggestedScore:
    """Mean normally, median when three graders disagree widely."""

    def test_wide_spread_uses_median(self):
        assert calculate_suggested_score([90, 60, 40]) == (60, "median")

    def test_two_scores_average_rounds_half_up(self):
        assert calculate_suggested_score([80, 85]) == (83, "average")

    def test_no_scores(self):
        assert calculate_suggested_score([]) == (0, "average")
        assert calculate_suggested_score([None, None, None]) == (0, "average")

    def test_single_score(self):
        assert calculate_suggested_score([None, 71, None]) == (71, "average")

    def test_narrow_spread_uses_average(self):
        assert calculate_suggested_score([80, 85, 90]) == (85, "average")

    def test_wide_spread_with_two_samples_still_averages(self):
        assert calculate_suggested_score([90, 60]) == (75, "average")

    def test_spread_exactly_at_threshold_averages(self):
        assert calculate_suggested_score([70, 80, 90], spread_threshold=20) == (80, "average")

    def test_custom_threshold(self):
        assert calculate_suggested_score([70, 75, 90], spread_threshold=10) == (75, "median")


class TestGraderParsing:

    def test_scores_are_clamped(self):
        assert parse_grader_response('{"score": 140, "reasoning": "x"}').score == 100
        assert parse_grader_response('{"score": -3, "reasoning": "x"}').score == 0

    def test_fenced_response(self):
        result = parse_grader_response('```json\n{"score": 72.5, "reasoning": "fine"}\n```')
        assert result.score == 73
        assert result.reasoning == "fine"

    @pytest.mark.parametrize("content", ['{"score": "high"}', '{"reasoning": "no score"}', "not json", "[80]"])
    def test_malformed_responses(self, content):
        with pytest.raises(MalformedResponseError):
            parse_grader_response(content)

    def test_transcript_is_ordered_by_call_time(self):
        text = format_transcript(factories.TRANSCRIPT_TURNS)
        assert text.splitlines()[0] == "Examiner: Hello Ada! Could you describe your code?"
        assert text.split("\n\n")[-1] == "Student: It stops when there are no children left."


@pytest_asyncio.fixture
async def completed_exam(db_session, exam):
    exam.seminar.status = SeminarStatus.COMPLETED
    exam.seminar.conversation_id = "conv-graded"
    await db_session.commit()
    await factories.create_transcript(db_session, exam.seminar)
    return exam


class TestRunGrading:
    """Grading a completed seminar, once."""

    @pytest.mark.asyncio
    async def test_grades_completed_seminar(self, db_session, completed_exam):
        llm = grader_llm({"strict": 40, "balanced": 60, "generous": 90})

        outcome = await run_grading(db_session, completed_exam.seminar.id, llm=llm)

        assert outcome.success
        grade = outcome.grade
        assert grade.status == AIGradeStatus.COMPLETED
        assert (grade.score_1, grade.score_2, grade.score_3) == (40, 60, 90)
        assert grade.suggested_score == 60
        assert grade.scoring_method == "median"
        assert grade.reasoning_1 == "strict reading"
        assert llm.chat.await_count == 3

    @pytest.mark.asyncio
    async def test_grader_prompts_carry_plan_and_transcript(self, db_session, completed_exam):
        llm = grader_llm({"strict": 70, "balanced": 70, "generous": 70})
        await run_grading(db_session, completed_exam.seminar.id, llm=llm)

        user_prompt = llm.chat.await_args_list[0].args[1]
        assert "Why does your traversal terminate?" in user_prompt
        assert "Student: It stops when there are no children left." in user_prompt

    @pytest.mark.asyncio
    async def test_completed_grade_is_not_rerun(self, db_session, completed_exam):
        llm = grader_llm({"strict": 80, "balanced": 85, "generous": 90})
        first = await run_grading(db_session, completed_exam.seminar.id, llm=llm)
        second = await retry_grading(db_session, completed_exam.seminar.id, llm=llm)

        assert second.success
        assert second.grade.id == first.grade.id
        assert llm.chat.await_count == 3

    @pytest.mark.asyncio
    async def test_partial_failure_still_completes(self, db_session, completed_exam):
        llm = grader_llm({"strict": LLMProviderError("timeout"), "balanced": 80, "generous": 85})

        outcome = await run_grading(db_session, completed_exam.seminar.id, llm=llm)

        assert outcome.success
        assert outcome.grade.score_1 is None
        assert outcome.grade.suggested_score == 83
        assert outcome.grade.scoring_method == "average"
        assert outcome.errors == ["strict: timeout"]

    @pytest.mark.asyncio
    async def test_all_graders_failing_marks_grade_failed(self, db_session, completed_exam):
        error = LLMProviderError("provider down")
        llm = grader_llm({"strict": error, "balanced": error, "generous": error})

        outcome = await run_grading(db_session, completed_exam.seminar.id, llm=llm)

        assert not outcome.success
        assert outcome.code == outcomes.PROVIDER_FAILURE
        assert outcome.grade.status == AIGradeStatus.FAILED
        assert outcome.grade.error_message.startswith("strict: provider down; balanced:")

    @pytest.mark.asyncio
    async def test_failed_grade_can_be_retried(self, db_session, completed_exam):
        error = LLMProviderError("provider down")
        await run_grading(db_session, completed_exam.seminar.id, llm=grader_llm(
            {"strict": error, "balanced": error, "generous": error}
        ))

        outcome = await retry_grading(db_session, completed_exam.seminar.id, llm=grader_llm(
            {"strict": 50, "balanced": 55, "generous": 60}
        ))

        assert outcome.success
        assert outcome.grade.status == AIGradeStatus.COMPLETED
        assert outcome.grade.suggested_score == 55
        assert outcome.grade.error_message is None

    @pytest.mark.asyncio
    async def test_fresh_in_progress_grade_is_in_flight(self, db_session, completed_exam):
        db_session.add(AIGrade(
            seminar_id=completed_exam.seminar.id,
            status=AIGradeStatus.IN_PROGRESS,
            started_at=datetime.utcnow(),
        ))
        await db_session.commit()
        llm = grader_llm({"strict": 50, "balanced": 55, "generous": 60})

        outcome = await run_grading(db_session, completed_exam.seminar.id, llm=llm)

        assert not outcome.success
        assert outcome.code == outcomes.IN_FLIGHT
        assert llm.chat.await_count == 0

    @pytest.mark.asyncio
    async def test_stale_in_progress_grade_is_rerun(self, db_session, completed_exam):
        db_session.add(AIGrade(
            seminar_id=completed_exam.seminar.id,
            status=AIGradeStatus.IN_PROGRESS,
            started_at=datetime.utcnow() - timedelta(hours=2),
        ))
        await db_session.commit()

        outcome = await run_grading(
            db_session, completed_exam.seminar.id,
            llm=grader_llm({"strict": 50, "balanced": 55, "generous": 60}),
        )

        assert outcome.success
        assert outcome.grade.status == AIGradeStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_seminar_must_be_completed(self, db_session, exam):
        outcome = await run_grading(db_session, exam.seminar.id, llm=grader_llm({}))
        assert not outcome.success
        assert outcome.code == outcomes.INVALID_STATE

    @pytest.mark.asyncio
    async def test_missing_transcript(self, db_session, exam):
        exam.seminar.status = SeminarStatus.COMPLETED
        await db_session.commit()

        outcome = await run_grading(db_session, exam.seminar.id, llm=grader_llm({}))

        assert outcome.code == outcomes.MISSING_INPUT
        assert "transcript" in outcome.reason

    @pytest.mark.asyncio
    async def test_empty_transcript_counts_as_missing(self, db_session, exam):
        exam.seminar.status = SeminarStatus.COMPLETED
        await db_session.commit()
        await factories.create_transcript(db_session, exam.seminar, turns=[])

        outcome = await run_grading(db_session, exam.seminar.id, llm=grader_llm({}))

        assert outcome.code == outcomes.MISSING_INPUT

    @pytest.mark.asyncio
    async def test_unknown_seminar(self, db_session):
        with pytest.raises(NotFoundError):
            await run_grading(db_session, 999, llm=grader_llm({}))
