"""
Interaction Harvester.

Fetches the completed calls for one agent and one analysis window. The
harvest is all-or-nothing: any platform error aborts the cycle so a partial
window is never mistaken for a complete one.
"""

from dataclasses import replace
from typing import List

import structlog

from ..clients import CallPlatformClient
from ..errors import HarvestError
from ..models import AnalysisWindow, InteractionRecord

logger = structlog.get_logger(__name__)


class InteractionHarvester:
    """Reads interaction records from the call platform. Never writes."""

    def __init__(self, platform: CallPlatformClient, limit: int = 100):
        self._platform = platform
        self.limit = limit

    async def harvest(self, agent_id: str, window: AnalysisWindow) -> List[InteractionRecord]:
        """Return the agent's phone calls that started inside ``window``.

        Raises:
            HarvestError: the platform could not be reached or answered badly,
                including any call payload that cannot be parsed.
        """
        raw_calls = await self._platform.list_calls(
            agent_id=agent_id,
            window_start=window.start,
            window_end=window.end,
            limit=self.limit,
        )

        records: List[InteractionRecord] = []
        skipped_web = 0
        skipped_outside = 0
        for call in raw_calls:
            try:
                record = InteractionRecord.from_platform(call)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                call_id = call.get("call_id") if isinstance(call, dict) else None
                logger.error("call_payload_malformed", agent_id=agent_id, call_id=call_id, error=repr(e))
                raise HarvestError(f"malformed call payload {call_id or '<no call_id>'}: {e!r}") from e
            if not record.agent_id:
                record = replace(record, agent_id=agent_id)
            if not record.is_phone_call:
                skipped_web += 1
                continue
            if not window.contains(record.timestamp):
                skipped_outside += 1
                continue
            records.append(record)

        logger.info(
            "interactions_harvested",
            agent_id=agent_id,
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
            total_calls=len(raw_calls),
            phone_calls=len(records),
            skipped_web=skipped_web,
            skipped_outside_window=skipped_outside,
        )
        return records
