"""
CLI command handlers

Each handler runs one coroutine on a fresh event loop and returns a process
exit code.
"""
import asyncio
from datetime import datetime

from redis.exceptions import RedisError

from oralexam.exceptions import OralExamException


class DbCommand:
    """Database CLI command handler."""

    def execute(self, args) -> int:
        if args.db_action == "init":
            return self._init()
        print("Error: Unknown database action")
        return 1

    def _init(self) -> int:
        from oralexam.database import close_db, init_db

        async def run():
            try:
                await init_db()
            finally:
                await close_db()

        print("=== Database Init ===")
        try:
            asyncio.run(run())
        except Exception as e:
            print(f"✗ Database init failed: {e}")
            return 1
        print("✓ Tables created")
        return 0


class SeminarsCommand:
    """Seminar maintenance command handler."""

    def execute(self, args) -> int:
        if args.seminars_action == "sweep":
            return self._sweep()
        print("Error: Unknown seminars action")
        return 1

    def _sweep(self) -> int:
        from oralexam.config.settings import settings
        from oralexam.tasks.sweep import run_sweep_once

        try:
            count = asyncio.run(run_sweep_once(settings.DATABASE_URL))
        except Exception as e:
            print(f"✗ Sweep failed: {e}")
            return 1
        print(f"✓ {count} expired booking(s) marked no_show")
        return 0


class SemaphoreCommand:
    """Gate occupancy command handler."""

    def execute(self, args) -> int:
        if args.semaphore_action == "status":
            return self._status(args)
        print("Error: Unknown semaphore action")
        return 1

    def _status(self, args) -> int:
        from oralexam.coordination.gates import get_exam_gate, get_review_gate, reset_gates
        from oralexam.coordination.redis_client import close_redis
        from oralexam.database import AsyncSessionLocal, close_db
        from oralexam.orm.seminar_slot import SeminarSlot

        async def run():
            try:
                if args.slot is not None:
                    async with AsyncSessionLocal() as db:
                        slot = await db.get(SeminarSlot, args.slot)
                    if slot is None:
                        raise OralExamException(f"Seminar slot {args.slot} not found")
                    gate = get_exam_gate()
                    return gate.key(slot.id), slot.max_concurrent, await gate.holders(slot.id)

                gate = get_review_gate()
                return gate.key(args.assignment), gate.max_concurrent, await gate.holders(args.assignment)
            finally:
                await close_redis()
                reset_gates()
                await close_db()

        try:
            key, maximum, holders = asyncio.run(run())
        except (OralExamException, RedisError) as e:
            print(f"✗ {e}")
            return 1

        print(f"=== {key} ===")
        print(f"Active: {len(holders)}/{maximum}")
        for holder_id, expires_ms in holders:
            expires = datetime.utcfromtimestamp(expires_ms / 1000).isoformat(timespec="seconds")
            print(f"  {holder_id}  expires {expires}Z")
        return 0


class GradingCommand:
    """AI grading command handler."""

    def execute(self, args) -> int:
        if args.grading_action == "retry":
            return self._retry(args)
        print("Error: Unknown grading action")
        return 1

    def _retry(self, args) -> int:
        from oralexam.database import AsyncSessionLocal, close_db
        from oralexam.services.grading_service import retry_grading

        async def run():
            try:
                async with AsyncSessionLocal() as db:
                    outcome = await retry_grading(db, args.seminar)
                    grade = outcome.grade.to_dict() if outcome.grade else None
                    return outcome, grade
            finally:
                await close_db()

        try:
            outcome, grade = asyncio.run(run())
        except OralExamException as e:
            print(f"✗ {e.message}")
            return 1

        if not outcome.success:
            print(f"✗ Grading failed ({outcome.code}): {outcome.reason}")
            for error in outcome.errors or []:
                print(f"  - {error}")
            return 1

        print(f"✓ Seminar {args.seminar}: suggested score {grade['suggested_score']} ({grade['scoring_method']})")
        print(f"  Scores: {grade['scores']}")
        return 0
