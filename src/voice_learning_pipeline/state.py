"""
Local state that outlives a single cycle.

- RunStateStore: when the last window was closed and when the next is due
- CycleLog: append-only record of every cycle outcome

Both are owned by the single scheduler process. Unreadable files are treated
as absent; nothing here ever blocks a cycle.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from .models import CycleLogEntry, _parse_timestamp

logger = structlog.get_logger(__name__)

RUN_STATE_FILE = "last-analysis-timestamp.json"
CYCLE_LOG_FILE = "cycles.jsonl"


class RunStateStore:
    """Persists ``lastRunAt`` and the next eligible run."""

    def __init__(self, state_dir: Path):
        self.path = Path(state_dir) / RUN_STATE_FILE

    def _read(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError as e:
            logger.warning("run_state_corrupt", path=str(self.path), error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def _timestamp(self, key: str) -> Optional[datetime]:
        try:
            return _parse_timestamp(self._read().get(key))
        except (ValueError, TypeError, OverflowError) as e:
            logger.warning("run_state_corrupt", path=str(self.path), field=key, error=str(e))
            return None

    def last_run_at(self) -> Optional[datetime]:
        return self._timestamp("last_analysis")

    def next_run_at(self) -> Optional[datetime]:
        return self._timestamp("next_analysis")

    def save(self, last_run_at: Optional[datetime], next_run_at: Optional[datetime]) -> None:
        payload = {
            "last_analysis": last_run_at.isoformat() if last_run_at else None,
            "next_analysis": next_run_at.isoformat() if next_run_at else None,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def advance(self, now: datetime, next_run_at: Optional[datetime]) -> None:
        """Close the window at ``now``."""
        self.save(now, next_run_at)
        logger.info("last_run_advanced", last_analysis=now.isoformat())

    def reschedule(self, next_run_at: Optional[datetime]) -> None:
        """Keep ``lastRunAt`` and only move the next eligible run."""
        self.save(self.last_run_at(), next_run_at)


class CycleLog:
    """Append-only JSON-lines log of cycle outcomes."""

    def __init__(self, state_dir: Path):
        self.path = Path(state_dir) / CYCLE_LOG_FILE

    def append(self, entry: CycleLogEntry) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), default=str) + "\n")

    def entries(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Most recent entries last. Unparseable lines are skipped."""
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []

        entries = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except ValueError:
                logger.warning("cycle_log_line_unreadable", path=str(self.path), line=number)
        return entries[-limit:] if limit else entries

    def last_with_status(self, status: str) -> Optional[Dict[str, Any]]:
        for entry in reversed(self.entries()):
            if entry.get("status") == status:
                return entry
        return None
