"""
Scheduler with idempotent windowing.

Each cycle analyzes ``[lastRunAt, now]`` (clamped to the configured lookback
bounds). ``lastRunAt`` only moves forward when the window was actually
examined, so a failed cycle is retried with the same window on the next tick
and no interaction is analyzed twice.
"""

import asyncio
import zoneinfo
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import structlog
from croniter import croniter

from .config import PipelineSettings
from .errors import CoreBehaviorViolation, CycleInProgressError, FatalPipelineError
from .models import AnalysisWindow, CycleResult, CycleStatus, utcnow
from .pipeline import LearningCycle
from .state import RunStateStore

logger = structlog.get_logger(__name__)


def compute_window(
    last_run_at: Optional[datetime],
    now: datetime,
    settings: PipelineSettings,
) -> AnalysisWindow:
    """Window ending at ``now``.

    Its length is ``now - last_run_at`` (the default lookback on a first run),
    clamped to ``[min_lookback_hours, max_lookback_hours]``.
    """
    shortest = timedelta(hours=settings.min_lookback_hours)
    longest = timedelta(hours=settings.max_lookback_hours)

    if last_run_at is None:
        span = timedelta(hours=settings.default_lookback_hours)
    else:
        span = now - last_run_at

    span = max(shortest, min(span, longest))
    return AnalysisWindow(start=now - span, end=now)


def compute_next_run(schedule: str, tz_name: str, after: datetime) -> datetime:
    """Next cron fire time after ``after``, in UTC."""
    tz = zoneinfo.ZoneInfo(tz_name)
    base = after.astimezone(tz) if after.tzinfo else after.replace(tzinfo=tz)
    next_dt = croniter(schedule, base).get_next(datetime)
    if next_dt.tzinfo is None:
        next_dt = next_dt.replace(tzinfo=tz)
    return next_dt.astimezone(timezone.utc)


class Scheduler:
    """Drives one cycle per cron period, plus on-demand manual runs.

    A single lock guarantees at most one cycle in flight per process.
    """

    def __init__(
        self,
        cycle: LearningCycle,
        settings: PipelineSettings,
        state: Optional[RunStateStore] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not croniter.is_valid(settings.schedule_cron):
            raise ValueError(f"Invalid cron expression: '{settings.schedule_cron}'")
        self.cycle = cycle
        self.settings = settings
        self.state = state or RunStateStore(settings.state_dir)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def next_fire_time(self, after: datetime) -> datetime:
        return compute_next_run(self.settings.schedule_cron, self.settings.schedule_timezone, after)

    def is_eligible(self, now: datetime) -> bool:
        """Whether a scheduled (non-manual) cycle may start at ``now``."""
        due = self.state.next_run_at()
        return due is None or now >= due

    async def run_once(self, manual: bool = False) -> Optional[CycleResult]:
        """Run one cycle if eligible (always, when ``manual``).

        Returns None when a scheduled run is not yet due.

        Raises:
            CycleInProgressError: another cycle is running.
            FatalPipelineError: the cycle hit a fatal error.
            Exception: the cycle crashed; the window is retried next run.
        """
        if self._lock.locked():
            raise CycleInProgressError("A learning cycle is already running")

        async with self._lock:
            now = self._clock()
            if not manual and not self.is_eligible(now):
                logger.debug("cycle_not_due", next_analysis=str(self.state.next_run_at()))
                return None

            last_run_at = self.state.last_run_at()
            window = compute_window(last_run_at, now, self.settings)
            next_run = self.next_fire_time(now)
            logger.info(
                "scheduled_cycle_starting",
                manual=manual,
                last_analysis=last_run_at.isoformat() if last_run_at else None,
                window_hours=round(window.hours, 2),
            )

            try:
                result = await self.cycle.run(window)
            except CoreBehaviorViolation:
                # The window was examined; its output was refused.
                self.state.advance(now, next_run)
                raise
            except Exception:
                self.state.reschedule(next_run)
                raise

            if result.status.advances_window:
                self.state.advance(now, next_run)
            else:
                self.state.reschedule(next_run)
                if result.status == CycleStatus.FAILED:
                    logger.warning(
                        "window_not_advanced",
                        cycle_id=result.cycle_id,
                        retry_at=next_run.isoformat(),
                    )
            return result

    async def approve_pending(self) -> CycleResult:
        """Apply the pending proposal, never concurrently with a cycle."""
        if self._lock.locked():
            raise CycleInProgressError("A learning cycle is already running")
        async with self._lock:
            return await self.cycle.approve()

    async def run_forever(self) -> None:
        """Sleep until each fire time and run the cycle. Stops on fatal errors."""
        logger.info(
            "scheduler_started",
            cron=self.settings.schedule_cron,
            timezone=self.settings.schedule_timezone,
            agent_id=self.settings.agent_id,
        )
        while True:
            now = self._clock()
            due = self.state.next_run_at() or self.next_fire_time(now)
            delay = (due - now).total_seconds()
            if delay > 0:
                logger.info("scheduler_waiting", next_analysis=due.isoformat(), seconds=round(delay))
                await self._sleep(delay)

            try:
                await self.run_once()
            except CycleInProgressError:
                logger.info("scheduled_cycle_skipped_manual_run_in_progress")
                async with self._lock:
                    pass
            except FatalPipelineError as e:
                logger.critical("scheduler_stopped", error_type=type(e).__name__, error=str(e))
                raise
