"""
oralexam/dependencies.py
FastAPI dependencies shared by the routers

Authentication is handled by the platform in front of this service; the
caller's user id arrives in the X-User-Id header and is looked up here.
Gates and provider clients are exposed as dependencies so they can be
overridden.
"""
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from oralexam.coordination.gates import ExamGate, ReviewGate, get_exam_gate, get_review_gate
from oralexam.database import get_db
from oralexam.errors import ForbiddenError, UnauthorizedError
from oralexam.orm.user import User, UserRole
from oralexam.services.llm_client import LLMClient, get_llm_client
from oralexam.services.voice_client import VoiceClient, get_voice_client


async def get_current_user(
    x_user_id: Optional[int] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> User:
    if x_user_id is None:
        raise UnauthorizedError("Missing user identity", code="AUTH_REQUIRED")
    user = await db.get(User, x_user_id)
    if user is None:
        raise UnauthorizedError("Unknown user", code="AUTH_INVALID")
    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != UserRole.admin:
        raise ForbiddenError("Admin access required", code="PERMISSION_DENIED")
    return current_user


def exam_gate() -> ExamGate:
    return get_exam_gate()


def review_gate() -> ReviewGate:
    return get_review_gate()


def voice_client() -> VoiceClient:
    return get_voice_client()


def llm_client() -> LLMClient:
    return get_llm_client()
