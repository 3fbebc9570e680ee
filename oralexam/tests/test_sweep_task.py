"""
Timer-driven no-show sweep
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from oralexam.tasks import sweep
from oralexam.tasks.sweep import run_sweep_once, start_sweep_task


class TestSweepTask:

    @pytest.mark.asyncio
    async def test_open_window_is_not_swept(self, engine, exam):
        url = engine.url.render_as_string(hide_password=False)

        assert await run_sweep_once(url) == 0

    @pytest.mark.asyncio
    async def test_loop_keeps_running_after_a_failed_cycle(self, monkeypatch):
        cycle = AsyncMock(side_effect=[RuntimeError("database locked"), 0, 0, 0, 0])
        monkeypatch.setattr(sweep, "run_sweep_once", cycle)

        task = start_sweep_task("sqlite+aiosqlite://", interval_seconds=0)
        for _ in range(50):
            if cycle.await_count >= 2:
                break
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert cycle.await_count >= 2
