"""
Anomaly Detector.

A sudden wave of near-identical transcripts in the last hour looks like a
scripted probing attempt rather than organic customer variety. Any report
returned here vetoes the whole cycle.
"""

import re
from collections import Counter
from datetime import datetime, timedelta
from typing import List

import structlog

from ..models import AnomalyReport, InteractionRecord

logger = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


def prefix_signature(transcript: str, prefix_chars: int = 100) -> str:
    """Normalized leading slice of a transcript used to group look-alikes."""
    normalized = _WHITESPACE.sub(" ", transcript.lower()).strip()
    return normalized[:prefix_chars]


def detect_anomalies(
    records: List[InteractionRecord],
    now: datetime,
    window_minutes: int = 60,
    min_interactions: int = 10,
    prefix_chars: int = 100,
    share_threshold: float = 0.30,
) -> List[AnomalyReport]:
    """Find transcript prefixes over-represented in the last rolling window."""
    cutoff = now - timedelta(minutes=window_minutes)
    recent = [r for r in records if r.timestamp > cutoff]

    if len(recent) <= min_interactions:
        return []

    signatures = Counter(
        sig
        for sig in (prefix_signature(r.transcript, prefix_chars) for r in recent)
        if sig
    )

    reports: List[AnomalyReport] = []
    for signature, count in signatures.most_common():
        share = count / len(recent)
        if share <= share_threshold:
            break
        reports.append(
            AnomalyReport(
                signature=signature,
                share_percent=round(share * 100, 1),
                matching_count=count,
                subset_size=len(recent),
            )
        )

    if reports:
        logger.error(
            "anomalies_detected",
            recent_interactions=len(recent),
            reports=[
                {"share_percent": r.share_percent, "count": r.matching_count}
                for r in reports
            ],
        )
    return reports
