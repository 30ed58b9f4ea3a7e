"""
Pattern Extractor.

Classifies filtered interactions into outcome buckets and named issue
categories and produces the AnalysisSummary handed to the synthesizer.
Deterministic and side-effect free.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from ..models import (
    AgentBreakdown,
    AnalysisSummary,
    EdgeCase,
    IssueAggregate,
    InteractionRecord,
    PatternMatch,
)


class IssueCategory(str, Enum):
    REORDER = "reorder"
    DISCOUNT_REQUEST = "discount-request"
    CANCELLATION = "cancellation"
    ESCALATION = "escalation"
    VOICEMAIL_SYSTEM = "voicemail-system"
    DELIVERY_INQUIRY = "delivery-inquiry"
    DIETARY_INQUIRY = "dietary-inquiry"
    COMPLAINT = "complaint"
    REPEATED_GREETING = "repeated-greeting"


@dataclass(frozen=True)
class CategoryDetector:
    category: IssueCategory
    pattern: Pattern[str]
    keywords: Tuple[str, ...]


# Ordered: a transcript emits one match per detector that fires, in this order.
CATEGORY_DETECTORS: Tuple[CategoryDetector, ...] = (
    CategoryDetector(
        IssueCategory.REORDER,
        re.compile(r"how do i (re)?order|\breorder", re.IGNORECASE),
        ("reorder", "order again"),
    ),
    CategoryDetector(
        IssueCategory.DISCOUNT_REQUEST,
        re.compile(r"discount|coupon|promo", re.IGNORECASE),
        ("discount", "coupon", "promo"),
    ),
    CategoryDetector(
        IssueCategory.CANCELLATION,
        re.compile(r"cancel", re.IGNORECASE),
        ("cancel", "cancellation"),
    ),
    CategoryDetector(
        IssueCategory.ESCALATION,
        re.compile(r"speak to (a )?human|manager|supervisor", re.IGNORECASE),
        ("human", "manager", "supervisor"),
    ),
    CategoryDetector(
        IssueCategory.VOICEMAIL_SYSTEM,
        re.compile(r"press \d|leave a message|voicemail", re.IGNORECASE),
        ("voicemail", "leave a message", "press"),
    ),
    CategoryDetector(
        IssueCategory.DELIVERY_INQUIRY,
        re.compile(r"when.*deliver|shipping|track", re.IGNORECASE),
        ("delivery", "shipping", "tracking"),
    ),
    CategoryDetector(
        IssueCategory.DIETARY_INQUIRY,
        re.compile(r"allergen|gluten|dietary", re.IGNORECASE),
        ("allergen", "gluten", "dietary"),
    ),
    CategoryDetector(
        IssueCategory.COMPLAINT,
        re.compile(r"complain|refund|damaged|spoiled|arrived (warm|thawed)", re.IGNORECASE),
        ("complaint", "refund", "damaged"),
    ),
    CategoryDetector(
        IssueCategory.REPEATED_GREETING,
        re.compile(r"(hi\b[^\n]{0,40}this is [^\n.,!]+).*\1", re.IGNORECASE | re.DOTALL),
        ("greeting", "repeat"),
    ),
)

NEGATIVE_SENTIMENTS = frozenset({"negative", "very_dissatisfied"})
PROBLEM_TOKENS = re.compile(r"\b(problem|issue|wrong|not)\b", re.IGNORECASE)
UNKNOWN_ISSUE = "Unknown issue"


def keywords_for(category: str) -> List[str]:
    for detector in CATEGORY_DETECTORS:
        if detector.category.value == category:
            return list(detector.keywords)
    return []


def extract_context(transcript: str, pattern: Pattern[str], context_chars: int = 100) -> str:
    """Text around the first match, flattened onto one line."""
    match = pattern.search(transcript)
    if not match:
        return ""
    start = max(0, match.start() - context_chars)
    end = min(len(transcript), match.end() + context_chars)
    return transcript[start:end].replace("\n", " ").strip()


def extract_issue(transcript: str) -> str:
    """First transcript line that names a problem."""
    for line in transcript.split("\n"):
        if PROBLEM_TOKENS.search(line):
            return line.strip()
    return UNKNOWN_ISSUE


def is_strongly_negative(sentiment: Optional[str]) -> bool:
    return bool(sentiment) and sentiment.strip().lower() in NEGATIVE_SENTIMENTS


class PatternExtractor:
    """Turns a list of interactions into an AnalysisSummary."""

    def __init__(
        self,
        detectors: Iterable[CategoryDetector] = CATEGORY_DETECTORS,
        max_examples: int = 3,
    ):
        self.detectors = tuple(detectors)
        self.max_examples = max_examples

    def extract(
        self,
        records: List[InteractionRecord],
        known_categories: Iterable[str] = (),
    ) -> AnalysisSummary:
        summary = AnalysisSummary(total=len(records))
        issues: Dict[str, IssueAggregate] = {}

        for record in records:
            breakdown = summary.by_agent.setdefault(record.agent_id, AgentBreakdown())
            breakdown.total += 1
            if record.in_voicemail:
                summary.voicemail += 1
                breakdown.voicemail += 1
            if record.successful is False:
                summary.failed += 1
                breakdown.failed += 1
            else:
                summary.successful += 1
                breakdown.successful += 1

            for match in self.match(record):
                summary.unhandled.append(match)
                issues.setdefault(match.category, IssueAggregate()).add(
                    record.interaction_id, self.max_examples
                )

            if is_strongly_negative(record.sentiment):
                summary.edge_cases.append(
                    EdgeCase(
                        interaction_id=record.interaction_id,
                        issue=extract_issue(record.transcript),
                        sentiment=record.sentiment,
                        resolution=record.custom_fields.get("resolution_preference"),
                    )
                )

        summary.issues = issues
        known = set(known_categories)
        summary.new_categories = [c for c in issues if c not in known]
        return summary

    def match(self, record: InteractionRecord) -> List[PatternMatch]:
        matches = []
        for detector in self.detectors:
            if detector.pattern.search(record.transcript):
                matches.append(
                    PatternMatch(
                        category=detector.category.value,
                        interaction_id=record.interaction_id,
                        excerpt=extract_context(record.transcript, detector.pattern),
                        sentiment=record.sentiment,
                    )
                )
        return matches
