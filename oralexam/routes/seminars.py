"""
oralexam/routes/seminars.py
Oral exam session endpoints: start, status polling, completion and the voice
engine webhook
"""
import logging

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from oralexam.config.settings import settings
from oralexam.coordination.gates import ExamGate
from oralexam.database import get_db
from oralexam.dependencies import exam_gate, get_current_user, voice_client
from oralexam.errors import BadRequestError, ForbiddenError, outcome_to_error
from oralexam.exceptions import NotFoundError, WebhookSignatureError
from oralexam.orm.seminar import Seminar
from oralexam.orm.submission import Submission
from oralexam.orm.user import User, UserRole
from oralexam.rate_limit import limiter
from oralexam.schemas.seminar import (
    CompleteRequest,
    CompletionResponse,
    ConversationRequest,
    SeminarStatusResponse,
    StartResponse,
    WebhookEvent,
)
from oralexam.services import outcomes
from oralexam.services.seminar_service import (
    complete_from_webhook,
    get_status,
    report_client_completion,
    set_conversation_id,
    start_session,
)
from oralexam.services.voice_client import SIGNATURE_HEADER, VoiceClient, verify_webhook_signature

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/seminars", tags=["Seminars"])


async def _ensure_access(db: AsyncSession, seminar_id: int, user: User) -> Seminar:
    """Students may only touch their own seminars; admins may touch any."""
    seminar = await db.get(Seminar, seminar_id)
    if seminar is None:
        raise NotFoundError("Seminar", seminar_id)
    if user.role == UserRole.admin:
        return seminar
    submission = await db.get(Submission, seminar.submission_id)
    if submission is None or submission.student_id != user.id:
        raise ForbiddenError("This seminar does not belong to you")
    return seminar


def _completion_response(outcome) -> CompletionResponse:
    return CompletionResponse(
        seminar_id=outcome.seminar_id,
        status=outcome.status.value,
        applied=outcome.applied,
        duration_seconds=outcome.duration_seconds,
    )


@router.post("/webhook")
async def voice_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gate: ExamGate = Depends(exam_gate),
    voice: VoiceClient = Depends(voice_client),
):
    """
    Voice engine webhook.

    conversation.ended is the authoritative completion path; other events are
    logged and acknowledged.
    """
    payload = await request.body()
    if not verify_webhook_signature(payload, request.headers.get(SIGNATURE_HEADER), settings.ELEVENLABS_WEBHOOK_SECRET):
        logger.warning("[WEBHOOK] rejected delivery with invalid signature")
        raise WebhookSignatureError()

    try:
        event = WebhookEvent.model_validate_json(payload)
    except ValidationError as e:
        raise BadRequestError("Invalid webhook payload", details={"errors": [err["msg"] for err in e.errors()]}) from e

    data = event.data
    if event.type in ("conversation.started", "transcript.updated"):
        logger.info(f"[WEBHOOK] {event.type} conversation={data.conversation_id}")
        return {"success": True, "received": True}

    if event.type != "conversation.ended":
        logger.info(f"[WEBHOOK] ignoring event type {event.type}")
        return {"success": True, "received": True}

    if not data.conversation_id:
        raise BadRequestError("conversation.ended requires a conversation_id")

    try:
        outcome = await complete_from_webhook(
            db, data.conversation_id, data.status, data.duration_seconds, gate=gate, voice=voice,
        )
    except NotFoundError:
        # Conversations not started through this service are acknowledged so the engine stops retrying
        logger.warning(f"[WEBHOOK] no seminar for conversation={data.conversation_id}")
        return {"success": True, "received": True, "matched": False}

    return {
        "success": True,
        "received": True,
        "matched": True,
        "seminar_id": outcome.seminar_id,
        "status": outcome.status.value,
        "applied": outcome.applied,
    }


@router.post("/{seminar_id}/start", response_model=StartResponse)
@limiter.limit("30/minute")
async def start_seminar(
    request: Request,
    response: Response,
    seminar_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gate: ExamGate = Depends(exam_gate),
    voice: VoiceClient = Depends(voice_client),
):
    """
    Start or re-attempt an oral exam.

    At capacity the seminar is parked in waiting and the call answers 202 with
    the counters; the client keeps polling /status and calls start again.
    """
    await _ensure_access(db, seminar_id, current_user)
    outcome = await start_session(db, seminar_id, gate=gate, voice=voice)

    body = StartResponse(
        success=outcome.success,
        seminar_id=outcome.seminar_id,
        status=outcome.current_status,
        signed_url=outcome.signed_url,
        prompt_override=outcome.prompt_override,
        code=outcome.code,
        message=outcome.reason,
        retryable=outcome.retryable,
        active_count=outcome.active_count,
        max_concurrent=outcome.max_concurrent,
    )
    if outcome.success:
        return body
    if outcome.code == outcomes.AT_CAPACITY:
        response.status_code = status.HTTP_202_ACCEPTED
        return body
    raise outcome_to_error(outcome)


@router.get("/{seminar_id}/status", response_model=SeminarStatusResponse)
async def seminar_status(
    seminar_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gate: ExamGate = Depends(exam_gate),
):
    """Read-only polling endpoint; never changes the seminar."""
    await _ensure_access(db, seminar_id, current_user)
    return await get_status(db, seminar_id, gate=gate)


@router.post("/{seminar_id}/conversation")
async def record_conversation(
    seminar_id: int,
    body: ConversationRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    await _ensure_access(db, seminar_id, current_user)
    if not await set_conversation_id(db, seminar_id, body.conversation_id):
        seminar = await db.get(Seminar, seminar_id, populate_existing=True)
        raise outcome_to_error(outcomes.StartDecision(
            allowed=False,
            code=outcomes.INVALID_STATE,
            reason="A conversation can only be attached to a seminar in progress",
            current_status=seminar.status.value,
        ))
    return {"success": True, "seminar_id": seminar_id, "conversation_id": body.conversation_id}


@router.post("/{seminar_id}/complete", response_model=CompletionResponse)
@limiter.limit("30/minute")
async def complete_seminar(
    request: Request,
    seminar_id: int,
    body: CompleteRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gate: ExamGate = Depends(exam_gate),
    voice: VoiceClient = Depends(voice_client),
):
    """
    Browser fallback when the webhook may not arrive.

    Idempotent: a seminar that already ended reports its state with
    applied=false.
    """
    await _ensure_access(db, seminar_id, current_user)
    outcome = await report_client_completion(
        db, seminar_id, body.status, body.duration_seconds, voice=voice, gate=gate,
    )
    return _completion_response(outcome)
