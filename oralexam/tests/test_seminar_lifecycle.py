"""
Seminar session lifecycle: start admission, completion reconciliation,
no-show handling and the expiry sweep
"""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from oralexam.coordination.gates import exam_holder_id
from oralexam.exceptions import NotFoundError, VoiceProviderError
from oralexam.orm.recording import Recording
from oralexam.orm.seminar import Seminar, SeminarStatus
from oralexam.orm.submission import Submission, SubmissionStatus
from oralexam.orm.transcript import Transcript
from oralexam.services import outcomes
from oralexam.services.seminar_service import (
    can_start,
    complete_from_webhook,
    finalize_session,
    get_status,
    mark_no_show,
    report_client_completion,
    set_conversation_id,
    start_session,
    sweep_expired_bookings,
)
from oralexam.services.voice_client import AudioDownload, ConversationInfo, VoiceClient
from oralexam.state_machines.seminar_session import StateTransitionError, validate_transition
from oralexam.tests import factories


async def reload(db, model, entity_id):
    return await db.get(model, entity_id, populate_existing=True)


async def second_booking(db, exam, email="linus@example.edu"):
    student = await factories.create_user(db, email, full_name="Linus Torvalds")
    submission = await factories.create_submission(db, student, exam.assignment, SubmissionStatus.SEMINAR_PENDING)
    await factories.create_review(db, submission)
    return await factories.create_seminar(db, submission, exam.slot)


async def started(db, exam, exam_gate, voice, conversation_id="conv-1"):
    outcome = await start_session(db, exam.seminar.id, gate=exam_gate, voice=voice)
    assert outcome.success
    assert await set_conversation_id(db, exam.seminar.id, conversation_id)
    return outcome


class TestStartSession:
    """Admission through the exam gate."""

    @pytest.mark.asyncio
    async def test_start_acquires_lease_and_returns_connection(self, db_session, exam, exam_gate, voice):
        outcome = await start_session(db_session, exam.seminar.id, gate=exam_gate, voice=voice)

        assert outcome.success
        assert outcome.status == SeminarStatus.IN_PROGRESS
        assert outcome.signed_url == "wss://voice.test/convai?token=signed"
        assert outcome.active_count == 1
        assert outcome.max_concurrent == 2

        agent = outcome.prompt_override["agent"]
        assert agent["language"] == "en"
        assert agent["first_message"].startswith("Hello Ada!")
        assert "Why does your traversal terminate?" in agent["prompt"]["prompt"]

        seminar = await reload(db_session, Seminar, exam.seminar.id)
        assert seminar.status == SeminarStatus.IN_PROGRESS
        assert seminar.started_at is not None
        assert [h for h, _ in await exam_gate.holders(exam.slot.id)] == [exam_holder_id(exam.seminar.id)]

    @pytest.mark.asyncio
    async def test_swedish_first_message(self, db_session, exam, exam_gate, voice):
        exam.seminar.language = "sv"
        await db_session.commit()

        outcome = await start_session(db_session, exam.seminar.id, gate=exam_gate, voice=voice)

        assert outcome.prompt_override["agent"]["first_message"].startswith("Hej Ada!")
        assert outcome.prompt_override["agent"]["language"] == "sv"

    @pytest.mark.asyncio
    async def test_at_capacity_moves_to_waiting(self, db_session, exam, exam_gate, voice):
        exam.slot.max_concurrent = 1
        await db_session.commit()
        other = await second_booking(db_session, exam)
        assert (await start_session(db_session, other.id, gate=exam_gate, voice=voice)).success

        outcome = await start_session(db_session, exam.seminar.id, gate=exam_gate, voice=voice)

        assert not outcome.success
        assert outcome.code == outcomes.AT_CAPACITY
        assert outcome.retryable
        assert outcome.status == SeminarStatus.WAITING
        assert (outcome.active_count, outcome.max_concurrent) == (1, 1)
        assert await exam_gate.active_count(exam.slot.id) == 1

    @pytest.mark.asyncio
    async def test_waiting_seminar_starts_once_capacity_frees(self, db_session, exam, exam_gate, voice, scheduler):
        exam.slot.max_concurrent = 1
        await db_session.commit()
        other = await second_booking(db_session, exam)
        await start_session(db_session, other.id, gate=exam_gate, voice=voice)
        await start_session(db_session, exam.seminar.id, gate=exam_gate, voice=voice)

        await finalize_session(db_session, other.id, succeeded=False, gate=exam_gate, voice=voice, scheduler=scheduler)
        outcome = await start_session(db_session, exam.seminar.id, gate=exam_gate, voice=voice)

        assert outcome.success
        assert outcome.status == SeminarStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_window_not_open(self, db_session, exam, exam_gate, voice):
        exam.slot.window_start = datetime.utcnow() + timedelta(minutes=30)
        exam.slot.window_end = datetime.utcnow() + timedelta(minutes=90)
        await db_session.commit()

        outcome = await start_session(db_session, exam.seminar.id, gate=exam_gate, voice=voice)

        assert outcome.code == outcomes.WINDOW_NOT_OPEN
        assert not outcome.retryable
        assert outcome.status == SeminarStatus.BOOKED
        assert await exam_gate.active_count(exam.slot.id) == 0

    @pytest.mark.asyncio
    async def test_window_closed(self, db_session, exam, exam_gate, voice):
        outcome = await start_session(
            db_session, exam.seminar.id, gate=exam_gate, voice=voice,
            now=exam.slot.window_end + timedelta(seconds=1),
        )
        assert outcome.code == outcomes.WINDOW_CLOSED
        assert await exam_gate.active_count(exam.slot.id) == 0

    @pytest.mark.asyncio
    async def test_repeated_start_is_already_in_progress(self, db_session, exam, exam_gate, voice):
        await start_session(db_session, exam.seminar.id, gate=exam_gate, voice=voice)
        outcome = await start_session(db_session, exam.seminar.id, gate=exam_gate, voice=voice)

        assert outcome.code == outcomes.ALREADY_IN_PROGRESS
        assert await exam_gate.active_count(exam.slot.id) == 1
        assert voice.get_signed_url.await_count == 1

    @pytest.mark.asyncio
    async def test_terminal_seminar_cannot_start(self, db_session, exam, exam_gate, voice):
        exam.seminar.status = SeminarStatus.COMPLETED
        await db_session.commit()

        outcome = await start_session(db_session, exam.seminar.id, gate=exam_gate, voice=voice)

        assert outcome.code == outcomes.INVALID_STATE
        assert outcome.current_status == "completed"

    @pytest.mark.asyncio
    async def test_voice_failure_releases_lease_and_rebooks(self, db_session, exam, exam_gate, voice):
        voice.get_signed_url.side_effect = VoiceProviderError("voice engine down")

        with pytest.raises(VoiceProviderError):
            await start_session(db_session, exam.seminar.id, gate=exam_gate, voice=voice)

        seminar = await reload(db_session, Seminar, exam.seminar.id)
        assert seminar.status == SeminarStatus.BOOKED
        assert seminar.started_at is None
        assert await exam_gate.active_count(exam.slot.id) == 0

    @pytest.mark.asyncio
    async def test_unknown_seminar(self, db_session, exam_gate, voice):
        with pytest.raises(NotFoundError):
            await start_session(db_session, 404, gate=exam_gate, voice=voice)


class TestCanStart:
    """The polling query never mutates."""

    @pytest.mark.asyncio
    async def test_allowed(self, db_session, exam, exam_gate):
        decision = await can_start(db_session, exam.seminar.id, gate=exam_gate)
        assert decision.allowed
        assert (decision.active_count, decision.max_concurrent) == (0, 2)

    @pytest.mark.asyncio
    async def test_full_slot_reports_without_side_effects(self, db_session, exam, exam_gate):
        await exam_gate.try_acquire(exam.slot.id, "x", 2)
        await exam_gate.try_acquire(exam.slot.id, "y", 2)

        decision = await can_start(db_session, exam.seminar.id, gate=exam_gate)

        assert not decision.allowed
        assert decision.code == outcomes.AT_CAPACITY
        assert decision.retryable
        seminar = await reload(db_session, Seminar, exam.seminar.id)
        assert seminar.status == SeminarStatus.BOOKED

    @pytest.mark.asyncio
    async def test_status_view(self, db_session, exam, exam_gate):
        status = await get_status(db_session, exam.seminar.id, gate=exam_gate)

        assert status["status"] == "booked"
        assert status["can_start"] is True
        assert status["target_time_minutes"] == 20
        assert status["max_time_minutes"] == 25


class TestCompletion:
    """Webhook and client fallback converge on one terminal state."""

    @pytest.mark.asyncio
    async def test_webhook_completes_session(self, db_session, exam, exam_gate, voice, scheduler, monkeypatch):
        from oralexam.config.feature_flags import FeatureFlags
        monkeypatch.setattr(FeatureFlags, "FEATURE_AUTO_GRADING", True)
        voice.download_audio.return_value = AudioDownload("https://audio.test/conv-1", b"RIFF....", "audio/mpeg")
        await started(db_session, exam, exam_gate, voice)

        outcome = await complete_from_webhook(
            db_session, "conv-1", "done", 612, gate=exam_gate, voice=voice, scheduler=scheduler,
        )

        assert outcome.applied
        assert outcome.status == SeminarStatus.COMPLETED
        assert outcome.lease_released
        assert outcome.duration_seconds == 612
        assert await exam_gate.active_count(exam.slot.id) == 0

        submission = await reload(db_session, Submission, exam.submission.id)
        assert submission.status == SubmissionStatus.SEMINAR_COMPLETED

        transcript = (await db_session.execute(
            Transcript.__table__.select().where(Transcript.seminar_id == exam.seminar.id)
        )).first()
        assert transcript is not None
        recording = (await db_session.execute(
            Recording.__table__.select().where(Recording.seminar_id == exam.seminar.id)
        )).first()
        assert recording.size_bytes == 8
        scheduler.assert_called_once_with(exam.seminar.id)

    @pytest.mark.asyncio
    async def test_webhook_failure_status_fails_session(self, db_session, exam, exam_gate, voice, scheduler):
        await started(db_session, exam, exam_gate, voice)

        outcome = await complete_from_webhook(
            db_session, "conv-1", "failed", 30, gate=exam_gate, voice=voice, scheduler=scheduler,
        )

        assert outcome.status == SeminarStatus.FAILED
        submission = await reload(db_session, Submission, exam.submission.id)
        assert submission.status == SubmissionStatus.REVIEWED
        voice.get_transcript.assert_not_awaited()
        scheduler.assert_not_called()

    @pytest.mark.asyncio
    async def test_webhook_for_unknown_conversation(self, db_session, exam_gate, voice):
        with pytest.raises(NotFoundError):
            await complete_from_webhook(db_session, "conv-unknown", "done", 10, gate=exam_gate, voice=voice)

    @pytest.mark.parametrize("webhook_first", [True, False])
    @pytest.mark.asyncio
    async def test_both_paths_yield_one_terminal_state_and_one_release(
        self, session_factory, db_session, exam, exam_gate, voice, scheduler, monkeypatch, webhook_first,
    ):
        from oralexam.config.feature_flags import FeatureFlags
        monkeypatch.setattr(FeatureFlags, "FEATURE_AUTO_GRADING", True)
        await started(db_session, exam, exam_gate, voice)
        release_spy = AsyncMock(wraps=exam_gate.release)
        exam_gate.release = release_spy

        async def webhook():
            async with session_factory() as db:
                return await complete_from_webhook(
                    db, "conv-1", "done", 600, gate=exam_gate, voice=voice, scheduler=scheduler,
                )

        async def client():
            async with session_factory() as db:
                return await report_client_completion(
                    db, exam.seminar.id, "ended", 590, voice=voice, gate=exam_gate, scheduler=scheduler,
                )

        first, second = (webhook, client) if webhook_first else (client, webhook)
        a = await first()
        b = await second()

        assert [a.applied, b.applied] == [True, False]
        assert a.status == b.status == SeminarStatus.COMPLETED
        assert release_spy.await_count == 1
        scheduler.assert_called_once_with(exam.seminar.id)
        assert await exam_gate.active_count(exam.slot.id) == 0

    @pytest.mark.asyncio
    async def test_concurrent_paths_yield_one_terminal_state_and_one_release(
        self, session_factory, db_session, exam, exam_gate, voice, scheduler, monkeypatch,
    ):
        from oralexam.config.feature_flags import FeatureFlags
        monkeypatch.setattr(FeatureFlags, "FEATURE_AUTO_GRADING", True)
        await started(db_session, exam, exam_gate, voice)
        release_spy = AsyncMock(wraps=exam_gate.release)
        exam_gate.release = release_spy

        async def webhook():
            async with session_factory() as db:
                return await complete_from_webhook(
                    db, "conv-1", "done", 600, gate=exam_gate, voice=voice, scheduler=scheduler,
                )

        async def client():
            async with session_factory() as db:
                return await report_client_completion(
                    db, exam.seminar.id, "ended", 590, voice=voice, gate=exam_gate, scheduler=scheduler,
                )

        results = await asyncio.gather(webhook(), client())

        assert sorted(r.applied for r in results) == [False, True]
        assert all(r.status == SeminarStatus.COMPLETED for r in results)
        assert release_spy.await_count == 1
        scheduler.assert_called_once_with(exam.seminar.id)

    @pytest.mark.asyncio
    async def test_binary_audio_response_still_enqueues_grading(
        self, db_session, exam, exam_gate, voice, scheduler, monkeypatch,
    ):
        from oralexam.config.feature_flags import FeatureFlags
        monkeypatch.setattr(FeatureFlags, "FEATURE_AUTO_GRADING", True)
        await started(db_session, exam, exam_gate, voice)

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/transcript"):
                return httpx.Response(200, json={"transcript": [{"role": "agent", "message": "Hello"}]})
            return httpx.Response(200, content=b"\x1aE\xdf\xa3binary-webm", headers={"content-type": "audio/webm"})

        provider = VoiceClient(
            api_key="xi-test", agent_id="agent-1", base_url="https://voice.test/v1",
            transport=httpx.MockTransport(handler),
        )

        outcome = await complete_from_webhook(
            db_session, "conv-1", "done", 600, gate=exam_gate, voice=provider, scheduler=scheduler,
        )
        redelivery = await complete_from_webhook(
            db_session, "conv-1", "done", 600, gate=exam_gate, voice=provider, scheduler=scheduler,
        )

        assert outcome.applied
        assert outcome.status == SeminarStatus.COMPLETED
        assert not redelivery.applied
        scheduler.assert_called_once_with(exam.seminar.id)
        recording = (await db_session.execute(
            Recording.__table__.select().where(Recording.seminar_id == exam.seminar.id)
        )).first()
        assert recording is None

    @pytest.mark.asyncio
    async def test_unexpected_capture_error_still_enqueues_grading(
        self, db_session, exam, exam_gate, voice, scheduler, monkeypatch,
    ):
        from oralexam.config.feature_flags import FeatureFlags
        monkeypatch.setattr(FeatureFlags, "FEATURE_AUTO_GRADING", True)
        await started(db_session, exam, exam_gate, voice)
        voice.download_audio.side_effect = RuntimeError("decoder exploded")

        outcome = await complete_from_webhook(
            db_session, "conv-1", "done", 600, gate=exam_gate, voice=voice, scheduler=scheduler,
        )

        assert outcome.applied
        scheduler.assert_called_once_with(exam.seminar.id)
        seminar = await reload(db_session, Seminar, exam.seminar.id)
        assert seminar.status == SeminarStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_client_error_fails_session(self, db_session, exam, exam_gate, voice, scheduler):
        await started(db_session, exam, exam_gate, voice)

        outcome = await report_client_completion(
            db_session, exam.seminar.id, "error", 45, voice=voice, gate=exam_gate, scheduler=scheduler,
        )

        assert outcome.status == SeminarStatus.FAILED
        assert outcome.applied
        voice.get_conversation.assert_not_awaited()
        assert await exam_gate.active_count(exam.slot.id) == 0

    @pytest.mark.asyncio
    async def test_client_completion_prefers_upstream_status(self, db_session, exam, exam_gate, voice, scheduler):
        voice.get_conversation.return_value = ConversationInfo("conv-1", "failed", 12)
        await started(db_session, exam, exam_gate, voice)

        outcome = await report_client_completion(
            db_session, exam.seminar.id, "ended", 300, voice=voice, gate=exam_gate, scheduler=scheduler,
        )

        assert outcome.status == SeminarStatus.FAILED
        assert outcome.duration_seconds == 12

    @pytest.mark.asyncio
    async def test_client_completion_falls_back_when_upstream_unreachable(
        self, db_session, exam, exam_gate, voice, scheduler,
    ):
        voice.get_conversation.side_effect = VoiceProviderError("unreachable")
        await started(db_session, exam, exam_gate, voice)

        outcome = await report_client_completion(
            db_session, exam.seminar.id, "ended", 300, voice=voice, gate=exam_gate, scheduler=scheduler,
        )

        assert outcome.status == SeminarStatus.COMPLETED
        assert outcome.duration_seconds == 300

    @pytest.mark.asyncio
    async def test_client_completion_without_conversation_fails(self, db_session, exam, exam_gate, voice, scheduler):
        await start_session(db_session, exam.seminar.id, gate=exam_gate, voice=voice)

        outcome = await report_client_completion(
            db_session, exam.seminar.id, "ended", 5, voice=voice, gate=exam_gate, scheduler=scheduler,
        )

        assert outcome.status == SeminarStatus.FAILED

    @pytest.mark.asyncio
    async def test_completion_of_booked_session_is_a_no_op(self, db_session, exam, exam_gate, voice, scheduler):
        outcome = await report_client_completion(
            db_session, exam.seminar.id, "ended", 5, voice=voice, gate=exam_gate, scheduler=scheduler,
        )

        assert not outcome.applied
        assert outcome.status == SeminarStatus.BOOKED

    @pytest.mark.asyncio
    async def test_transcript_failure_does_not_undo_completion(self, db_session, exam, exam_gate, voice, scheduler):
        voice.get_transcript.side_effect = VoiceProviderError("transcript not ready")
        await started(db_session, exam, exam_gate, voice)

        outcome = await complete_from_webhook(
            db_session, "conv-1", "done", 600, gate=exam_gate, voice=voice, scheduler=scheduler,
        )

        assert outcome.applied
        seminar = await reload(db_session, Seminar, exam.seminar.id)
        assert seminar.status == SeminarStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_conversation_id_only_while_in_progress(self, db_session, exam):
        assert not await set_conversation_id(db_session, exam.seminar.id, "conv-early")
        seminar = await reload(db_session, Seminar, exam.seminar.id)
        assert seminar.conversation_id is None


class TestNoShowAndSweep:
    """Bookings whose window passed are released for rebooking."""

    @pytest.mark.asyncio
    async def test_admin_no_show(self, db_session, exam):
        outcome = await mark_no_show(db_session, exam.seminar.id)

        assert outcome.applied
        assert outcome.status == SeminarStatus.NO_SHOW
        submission = await reload(db_session, Submission, exam.submission.id)
        assert submission.status == SubmissionStatus.REVIEWED

    @pytest.mark.asyncio
    async def test_no_show_rejected_for_running_session(self, db_session, exam, exam_gate, voice):
        await start_session(db_session, exam.seminar.id, gate=exam_gate, voice=voice)

        outcome = await mark_no_show(db_session, exam.seminar.id)

        assert not outcome.applied
        assert outcome.status == SeminarStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_sweep_marks_expired_bookings_once(self, db_session, exam):
        waiting = await second_booking(db_session, exam)
        waiting.status = SeminarStatus.WAITING
        await db_session.commit()
        after_window = exam.slot.window_end + timedelta(minutes=1)

        assert await sweep_expired_bookings(db_session, now=after_window) == 2
        assert await sweep_expired_bookings(db_session, now=after_window) == 0

        for seminar_id in (exam.seminar.id, waiting.id):
            seminar = await reload(db_session, Seminar, seminar_id)
            assert seminar.status == SeminarStatus.NO_SHOW
        submission = await reload(db_session, Submission, exam.submission.id)
        assert submission.status == SubmissionStatus.REVIEWED

    @pytest.mark.asyncio
    async def test_sweep_leaves_open_windows_and_running_sessions(self, db_session, exam, exam_gate, voice):
        other = await second_booking(db_session, exam)
        await start_session(db_session, other.id, gate=exam_gate, voice=voice)

        assert await sweep_expired_bookings(db_session) == 0

        after_window = exam.slot.window_end + timedelta(minutes=1)
        assert await sweep_expired_bookings(db_session, now=after_window) == 1
        running = await reload(db_session, Seminar, other.id)
        assert running.status == SeminarStatus.IN_PROGRESS


class TestTransitionTable:

    def test_terminal_states_have_no_exits(self):
        with pytest.raises(StateTransitionError):
            validate_transition([SeminarStatus.COMPLETED], SeminarStatus.IN_PROGRESS)

    def test_waiting_may_start(self):
        validate_transition([SeminarStatus.BOOKED, SeminarStatus.WAITING], SeminarStatus.IN_PROGRESS)
