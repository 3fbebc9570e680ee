"""
Shared fixtures

- a fresh SQLite file database per test (aiosqlite)
- fakeredis with Lua support, so the semaphore scripts really execute
- a controllable millisecond clock injected into the semaphore
- AsyncMock voice and LLM clients
"""
import json
import time
from types import SimpleNamespace
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from oralexam.config.feature_flags import FeatureFlags
from oralexam.coordination.gates import ExamGate, ReviewGate
from oralexam.coordination.semaphore import LeaseSemaphore
from oralexam.orm.base import Base
from oralexam.orm.submission import SubmissionStatus
from oralexam.orm.user import UserRole
from oralexam.services.llm_client import ChatCompletion, LLMClient
from oralexam.services.voice_client import ConversationInfo, VoiceClient
from oralexam.tests import factories


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = None):
        self.now_ms = start_ms if start_ms is not None else int(time.time() * 1000)

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)


@pytest.fixture(autouse=True)
def quiet_follow_ups(monkeypatch):
    """No background grading in tests; recording capture stays on but returns nothing."""
    monkeypatch.setattr(FeatureFlags, "FEATURE_AUTO_GRADING", False)
    monkeypatch.setattr(FeatureFlags, "FEATURE_RECORDING_CAPTURE", True)
    monkeypatch.setattr(FeatureFlags, "FEATURE_SWEEP_ON_READ", True)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'oralexam_test.db'}",
        connect_args={"timeout": 30.0},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def semaphore(redis_client, clock):
    return LeaseSemaphore(redis_client, clock=clock)


@pytest.fixture
def exam_gate(semaphore):
    return ExamGate(semaphore, prefix="test")


@pytest.fixture
def review_gate(semaphore):
    return ReviewGate(semaphore, max_concurrent=2, prefix="test")


@pytest.fixture
def voice():
    client = AsyncMock(spec=VoiceClient)
    client.get_signed_url.return_value = "wss://voice.test/convai?token=signed"
    client.get_conversation.return_value = ConversationInfo("conv-1", "done", 610)
    client.get_transcript.return_value = list(factories.TRANSCRIPT_TURNS)
    client.download_audio.return_value = None
    return client


def review_completion(payload=None, finish_reason: str = "stop", raw: str = None) -> ChatCompletion:
    if raw is None:
        raw = json.dumps(payload if payload is not None else {
            "feedback": "Solid solution with one off-by-one risk.",
            "issues": [{"type": "warning", "line": 3, "description": "Unchecked index", "severity": "major"}],
            "discussionPlan": factories.DISCUSSION_PLAN,
        })
    return ChatCompletion(content=raw, finish_reason=finish_reason, model="gpt-test", total_tokens=420)


@pytest.fixture
def llm():
    client = AsyncMock(spec=LLMClient)
    client.is_configured = MagicMock(return_value=True)
    client.chat.return_value = review_completion()
    return client


@pytest.fixture
def scheduler():
    return MagicMock()


@pytest_asyncio.fixture
async def exam(db_session):
    """A student with a reviewed, seminar-pending submission booked into an open slot."""
    student = await factories.create_user(db_session, "ada@example.edu")
    admin = await factories.create_user(db_session, "grace@example.edu", role=UserRole.admin, full_name="Grace Hopper")
    assignment = await factories.create_assignment(db_session)
    submission = await factories.create_submission(db_session, student, assignment, SubmissionStatus.SEMINAR_PENDING)
    review = await factories.create_review(db_session, submission)
    slot = await factories.create_slot(db_session, assignment, max_concurrent=2)
    seminar = await factories.create_seminar(db_session, submission, slot)
    return SimpleNamespace(
        student=student,
        admin=admin,
        assignment=assignment,
        submission=submission,
        review=review,
        slot=slot,
        seminar=seminar,
    )
