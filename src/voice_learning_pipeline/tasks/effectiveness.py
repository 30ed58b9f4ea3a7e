"""
Improvement effectiveness.

Compares the success rate in the day before the most recently applied
improvement with the period since. A regression makes the next cycle more
conservative about how much data it needs before learning again.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from ..errors import HarvestError
from ..models import AnalysisWindow, CycleStatus, InteractionRecord, _parse_timestamp
from ..state import CycleLog
from .harvester import InteractionHarvester

logger = structlog.get_logger(__name__)


@dataclass
class PerformanceSnapshot:
    window: AnalysisWindow
    total: int
    successful: int

    @property
    def success_rate(self) -> float:
        if not self.total:
            return 0.0
        return round(self.successful / self.total * 100, 1)

    @classmethod
    def from_records(
        cls, window: AnalysisWindow, records: List[InteractionRecord]
    ) -> "PerformanceSnapshot":
        return cls(
            window=window,
            total=len(records),
            successful=sum(1 for r in records if r.successful is not False),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.window.to_dict(),
            "total": self.total,
            "success_rate": self.success_rate,
        }


@dataclass
class ImprovementLift:
    improved_at: datetime
    cycle_id: str
    before: PerformanceSnapshot
    after: PerformanceSnapshot

    @property
    def measurable(self) -> bool:
        return self.before.total > 0 and self.after.total > 0

    @property
    def success_rate_change(self) -> Optional[float]:
        """Change in percentage points."""
        if not self.measurable:
            return None
        return round(self.after.success_rate - self.before.success_rate, 1)

    @property
    def lift_percent(self) -> Optional[float]:
        """Relative change of the success rate, in percent of the rate before.

        None without data on both sides or when nothing succeeded before.
        """
        if not self.measurable or not self.before.successful:
            return None
        before = self.before.successful / self.before.total
        after = self.after.successful / self.after.total
        return round((after - before) / before * 100, 1)

    def regressed(self, threshold_percent: float) -> bool:
        lift = self.lift_percent
        return lift is not None and lift < threshold_percent

    def to_dict(self) -> Dict[str, Any]:
        return {
            "improved_at": self.improved_at.isoformat(),
            "cycle_id": self.cycle_id,
            "before": self.before.to_dict(),
            "after": self.after.to_dict(),
            "success_rate_change": self.success_rate_change,
            "lift_percent": self.lift_percent,
        }


class EffectivenessTracker:
    def __init__(
        self,
        harvester: InteractionHarvester,
        cycle_log: CycleLog,
        baseline_hours: float = 24.0,
    ):
        self._harvester = harvester
        self._cycle_log = cycle_log
        self.baseline_hours = baseline_hours

    async def measure(self, agent_ids: List[str], now: datetime) -> Optional[ImprovementLift]:
        """Lift of the last applied improvement across ``agent_ids``.

        None if there is no applied improvement to measure.
        """
        entry = self._cycle_log.last_with_status(CycleStatus.APPLIED.value)
        if entry is None:
            return None

        try:
            improved_at = _parse_timestamp(entry.get("timestamp"))
        except ValueError:
            improved_at = None
        if improved_at is None or improved_at >= now:
            return None

        before_window = AnalysisWindow(improved_at - timedelta(hours=self.baseline_hours), improved_at)
        after_window = AnalysisWindow(improved_at, now)
        before: List[InteractionRecord] = []
        after: List[InteractionRecord] = []
        try:
            for agent_id in agent_ids:
                before += await self._harvester.harvest(agent_id, before_window)
                after += await self._harvester.harvest(agent_id, after_window)
        except HarvestError as e:
            logger.warning("performance_tracking_failed", agent_ids=agent_ids, error=str(e))
            return None

        lift = ImprovementLift(
            improved_at=improved_at,
            cycle_id=entry.get("cycle_id", ""),
            before=PerformanceSnapshot.from_records(before_window, before),
            after=PerformanceSnapshot.from_records(after_window, after),
        )
        logger.info(
            "improvement_performance",
            cycle_id=lift.cycle_id,
            before_success_rate=lift.before.success_rate,
            after_success_rate=lift.after.success_rate,
            lift_percent=lift.lift_percent,
        )
        return lift
