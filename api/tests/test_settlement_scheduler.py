"""Tests for the settlement step scheduler.

Covers:
- compute_next_run for every-N-minutes, hourly, daily, weekly patterns
- compute_next_run with invalid expressions
- Scheduler start/stop lifecycle
- run_job error isolation
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from api.services.settlement_scheduler import SettlementScheduler, compute_next_run

# ---------------------------------------------------------------------------
# compute_next_run
# ---------------------------------------------------------------------------


class TestComputeNextRunEveryNMinutes:
    """Tests for ``*/N * * * *`` patterns."""

    def test_next_slot_in_hour(self) -> None:
        from_time = datetime(2026, 2, 21, 14, 10, 0, tzinfo=timezone.utc)
        assert compute_next_run("*/30 * * * *", from_time) == datetime(2026, 2, 21, 14, 30, tzinfo=timezone.utc)

    def test_exact_slot_moves_forward(self) -> None:
        from_time = datetime(2026, 2, 21, 14, 30, 0, tzinfo=timezone.utc)
        assert compute_next_run("*/30 * * * *", from_time) == datetime(2026, 2, 21, 15, 0, tzinfo=timezone.utc)

    def test_rolls_over_midnight(self) -> None:
        from_time = datetime(2026, 2, 21, 23, 55, 0, tzinfo=timezone.utc)
        assert compute_next_run("*/15 * * * *", from_time) == datetime(2026, 2, 22, 0, 0, tzinfo=timezone.utc)

    def test_zero_step_rejected(self) -> None:
        with pytest.raises(ValueError, match="out of range"):
            compute_next_run("*/0 * * * *", datetime(2026, 2, 21, tzinfo=timezone.utc))


class TestComputeNextRunHourly:
    def test_future_minute(self) -> None:
        from_time = datetime(2026, 2, 21, 14, 10, 0, tzinfo=timezone.utc)
        assert compute_next_run("30 * * * *", from_time) == datetime(2026, 2, 21, 14, 30, tzinfo=timezone.utc)

    def test_past_minute(self) -> None:
        from_time = datetime(2026, 2, 21, 14, 45, 0, tzinfo=timezone.utc)
        assert compute_next_run("30 * * * *", from_time) == datetime(2026, 2, 21, 15, 30, tzinfo=timezone.utc)


class TestComputeNextRunDaily:
    def test_midnight_tomorrow(self) -> None:
        from_time = datetime(2026, 2, 21, 0, 0, 0, tzinfo=timezone.utc)
        assert compute_next_run("0 0 * * *", from_time) == datetime(2026, 2, 22, 0, 0, tzinfo=timezone.utc)

    def test_later_today(self) -> None:
        from_time = datetime(2026, 2, 21, 6, 0, 0, tzinfo=timezone.utc)
        assert compute_next_run("30 9 * * *", from_time) == datetime(2026, 2, 21, 9, 30, tzinfo=timezone.utc)


class TestComputeNextRunWeekly:
    def test_next_sunday(self) -> None:
        # 2026-02-21 is a Saturday.
        from_time = datetime(2026, 2, 21, 12, 0, 0, tzinfo=timezone.utc)
        assert compute_next_run("0 3 * * 0", from_time) == datetime(2026, 2, 22, 3, 0, tzinfo=timezone.utc)

    def test_same_day_passed_moves_a_week(self) -> None:
        from_time = datetime(2026, 2, 21, 12, 0, 0, tzinfo=timezone.utc)
        assert compute_next_run("0 3 * * 6", from_time) == datetime(2026, 2, 28, 3, 0, tzinfo=timezone.utc)


class TestComputeNextRunInvalid:
    @pytest.mark.parametrize("expr", ["", "every day", "0 0 1 * *", "61 * * * *", "0 24 * * *", "0 0 * * 7"])
    def test_rejected(self, expr: str) -> None:
        with pytest.raises(ValueError):
            compute_next_run(expr, datetime(2026, 2, 21, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# Scheduler lifecycle
# ---------------------------------------------------------------------------


class TestSchedulerLifecycle:
    def test_invalid_schedule_rejected_up_front(self) -> None:
        with pytest.raises(ValueError, match="step2"):
            SettlementScheduler({"step2": ("whenever", AsyncMock())})

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        scheduler = SettlementScheduler(
            {"step1": ("0 0 * * *", AsyncMock()), "step2": ("*/30 * * * *", AsyncMock())}
        )
        assert scheduler.running is False

        await scheduler.start()
        assert scheduler.running is True
        assert len(scheduler._tasks) == 2

        await scheduler.stop()
        assert scheduler.running is False
        assert scheduler._tasks == []

    @pytest.mark.asyncio
    async def test_stop_without_start(self) -> None:
        scheduler = SettlementScheduler({})
        await scheduler.stop()
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_start_twice_ignored(self) -> None:
        scheduler = SettlementScheduler({"step1": ("0 0 * * *", AsyncMock())})
        await scheduler.start()
        first_tasks = list(scheduler._tasks)

        await scheduler.start()
        assert scheduler._tasks == first_tasks

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_due_job_runs(self) -> None:
        job = AsyncMock(return_value={"tx_id": "tx_1"})
        ran = asyncio.Event()
        job.side_effect = lambda: ran.set()
        # Clock sits one instant before the slot so the first sleep is ~0s.
        clock = lambda: datetime(2026, 2, 21, 14, 29, 59, 999999, tzinfo=timezone.utc)  # noqa: E731
        scheduler = SettlementScheduler({"step3": ("*/30 * * * *", job)}, clock=clock)

        await scheduler.start()
        await asyncio.wait_for(ran.wait(), timeout=2)
        await scheduler.stop()

        assert job.await_count >= 1


# ---------------------------------------------------------------------------
# run_job
# ---------------------------------------------------------------------------


class TestRunJob:
    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog: pytest.LogCaptureFixture) -> None:
        scheduler = SettlementScheduler({})
        job = AsyncMock(side_effect=RuntimeError("gateway down"))

        await scheduler.run_job("step1", job)

        assert "Scheduled step1 failed: gateway down" in caplog.text

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self) -> None:
        scheduler = SettlementScheduler({})
        job = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await scheduler.run_job("step1", job)
