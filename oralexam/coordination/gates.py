"""
Capacity gates built on the leased semaphore.

Two namespaces share one Redis store:
- review gate: concurrent LLM code reviews per assignment (fixed max)
- exam gate: concurrently running oral exams per slot (max = slot capacity)

Booking capacity is a separate, persisted check; see booking_service.
"""
import logging
from typing import List, Optional, Tuple

from oralexam.config.settings import settings
from oralexam.coordination.redis_client import get_redis
from oralexam.coordination.semaphore import LeaseSemaphore

logger = logging.getLogger(__name__)


class CapacityGate:
    """A semaphore namespace with a default lease length."""

    def __init__(self, semaphore: LeaseSemaphore, namespace: str, ttl_seconds: int, prefix: Optional[str] = None):
        self.semaphore = semaphore
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix if prefix is not None else settings.REDIS_KEY_PREFIX

    def key(self, resource_id) -> str:
        return f"{self.prefix}:{self.namespace}:{resource_id}"

    async def try_acquire(self, resource_id, holder_id: str, max_holders: int) -> bool:
        return await self.semaphore.acquire(self.key(resource_id), holder_id, max_holders, self.ttl_seconds)

    async def release(self, resource_id, holder_id: str) -> bool:
        return await self.semaphore.release(self.key(resource_id), holder_id)

    async def extend(self, resource_id, holder_id: str, additional_ttl_seconds: Optional[int] = None) -> bool:
        ttl = additional_ttl_seconds if additional_ttl_seconds is not None else self.ttl_seconds
        return await self.semaphore.extend(self.key(resource_id), holder_id, ttl)

    async def active_count(self, resource_id) -> int:
        return await self.semaphore.count(self.key(resource_id))

    async def holders(self, resource_id) -> List[Tuple[str, int]]:
        return await self.semaphore.holders(self.key(resource_id))


class ReviewGate(CapacityGate):
    """Per-assignment cap on concurrent LLM reviews."""

    def __init__(self, semaphore: LeaseSemaphore, max_concurrent: Optional[int] = None, **kwargs):
        super().__init__(
            semaphore,
            namespace="semaphore:review",
            ttl_seconds=kwargs.pop("ttl_seconds", settings.REVIEW_LEASE_TTL_SECONDS),
            **kwargs,
        )
        self.max_concurrent = max_concurrent if max_concurrent is not None else settings.REVIEW_SEMAPHORE_MAX

    async def try_acquire(self, resource_id, holder_id: str, max_holders: Optional[int] = None) -> bool:
        limit = self.max_concurrent if max_holders is None else max_holders
        return await super().try_acquire(resource_id, holder_id, limit)


class ExamGate(CapacityGate):
    """Per-slot cap on exams running at the same time."""

    def __init__(self, semaphore: LeaseSemaphore, **kwargs):
        super().__init__(
            semaphore,
            namespace="active_seminars",
            ttl_seconds=kwargs.pop("ttl_seconds", settings.EXAM_LEASE_TTL_SECONDS),
            **kwargs,
        )


def exam_holder_id(seminar_id: int) -> str:
    """Exam leases are held by the seminar itself so either completion path can release them."""
    return str(seminar_id)


_review_gate: Optional[ReviewGate] = None
_exam_gate: Optional[ExamGate] = None


def get_review_gate() -> ReviewGate:
    global _review_gate
    if _review_gate is None:
        _review_gate = ReviewGate(LeaseSemaphore(get_redis()))
    return _review_gate


def get_exam_gate() -> ExamGate:
    global _exam_gate
    if _exam_gate is None:
        _exam_gate = ExamGate(LeaseSemaphore(get_redis()))
    return _exam_gate


def reset_gates() -> None:
    """Drop cached gates so the next call rebuilds them on the current Redis client."""
    global _review_gate, _exam_gate
    _review_gate = None
    _exam_gate = None
