"""Background scheduler that ticks each settlement step and housekeeping job on its own cron.

Runs one ``asyncio`` task per step.  A step that is not due yet (wrong phase
marker) returns immediately, so schedules can overlap freely; the pipeline's
phase marker decides what actually runs.  Supports a simple subset of cron
expressions without requiring a full cron parser dependency.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Cron expression helpers
# ---------------------------------------------------------------------------

_EVERY_N_MINUTES_RE = re.compile(r"^\*/(\d{1,2})\s+\*\s+\*\s+\*\s+\*$")
_HOURLY_RE = re.compile(r"^(\d{1,2})\s+\*\s+\*\s+\*\s+\*$")
_DAILY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+\*$")
_WEEKLY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+(\d)$")


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """Compute the next run time from a cron expression.

    Supported patterns:

    * ``*/N * * * *`` -- every *N* minutes, aligned to the hour.
    * ``M * * * *`` -- every hour at minute *M*.
    * ``M H * * *`` -- daily at *H*:*M*.
    * ``M H * * D`` -- weekly on day-of-week *D* (0=Sunday) at *H*:*M*.

    Raises
    ------
    ValueError
        If the expression is not one of the supported patterns or a field
        is out of range.
    """
    expr = cron_expression.strip()

    match = _EVERY_N_MINUTES_RE.match(expr)
    if match:
        step = int(match.group(1))
        if not 1 <= step <= 59:
            raise ValueError(f"Minute step out of range in cron expression: '{cron_expression}'")
        hour_start = from_time.replace(minute=0, second=0, microsecond=0)
        return hour_start + timedelta(minutes=(from_time.minute // step + 1) * step)

    match = _HOURLY_RE.match(expr)
    if match:
        minute = _check_range(int(match.group(1)), 59, cron_expression)
        candidate = from_time.replace(minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(hours=1)
        return candidate

    match = _DAILY_RE.match(expr)
    if match:
        minute = _check_range(int(match.group(1)), 59, cron_expression)
        hour = _check_range(int(match.group(2)), 23, cron_expression)
        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(days=1)
        return candidate

    match = _WEEKLY_RE.match(expr)
    if match:
        minute = _check_range(int(match.group(1)), 59, cron_expression)
        hour = _check_range(int(match.group(2)), 23, cron_expression)
        target_dow = _check_range(int(match.group(3)), 6, cron_expression)

        # Cron: Sunday=0; Python weekday(): Monday=0.
        python_dow = (target_dow - 1) % 7

        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        days_ahead = (python_dow - candidate.weekday()) % 7
        if days_ahead == 0 and candidate <= from_time:
            days_ahead = 7
        return candidate + timedelta(days=days_ahead)

    raise ValueError(
        f"Unsupported cron expression: '{cron_expression}'. "
        f"Supported patterns: '*/N * * * *', 'M * * * *' (hourly), "
        f"'M H * * *' (daily), 'M H * * D' (weekly)."
    )


def _check_range(value: int, upper: int, expr: str) -> int:
    if not 0 <= value <= upper:
        raise ValueError(f"Field value {value} out of range in cron expression: '{expr}'")
    return value


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

StepJob = Callable[[], Awaitable[Any]]


class SettlementScheduler:
    """AsyncIO background tasks that run settlement steps on cron schedules.

    Parameters
    ----------
    jobs:
        Mapping of job name to ``(cron_expression, coroutine_factory)``.
        Expressions are validated up front.
    clock:
        Returns the current UTC time.
    """

    def __init__(
        self,
        jobs: Mapping[str, tuple[str, StepJob]],
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        now = self._clock()
        for name, (cron, _) in jobs.items():
            try:
                compute_next_run(cron, now)
            except ValueError as exc:
                raise ValueError(f"Invalid schedule for {name}: {exc}") from exc
        self._jobs = dict(jobs)
        self._running = False
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        """Whether the scheduler loops are active."""
        return self._running

    async def start(self) -> None:
        """Start one background task per job."""
        if self._running:
            logger.warning("SettlementScheduler already running; ignoring start()")
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._run_loop(name, cron, job), name=f"settlement-{name}")
            for name, (cron, job) in self._jobs.items()
        ]
        logger.info("SettlementScheduler started with jobs: %s", ", ".join(self._jobs))

    async def stop(self) -> None:
        """Cancel every job task and wait for them to finish."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("SettlementScheduler stopped")

    async def _run_loop(self, name: str, cron: str, job: StepJob) -> None:
        while self._running:
            now = self._clock()
            next_run = compute_next_run(cron, now)
            await asyncio.sleep(max((next_run - now).total_seconds(), 0.0))
            await self.run_job(name, job)

    async def run_job(self, name: str, job: StepJob) -> None:
        """Run one job; failures are logged and the schedule keeps going."""
        logger.info("Running scheduled %s", name)
        try:
            result = await job()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Scheduled %s failed: %s", name, exc, exc_info=True)
            return
        if result is None:
            logger.info("Scheduled %s: nothing to do", name)
        else:
            logger.info("Scheduled %s complete: %s", name, result)
