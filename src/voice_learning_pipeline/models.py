"""
Data model for the learning cycle.

Domain objects are plain dataclasses. Anything parsed from an untrusted
external response (the generative service's proposal) is a pydantic model so
malformed payloads are rejected at the boundary.
"""

import hashlib
import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse epoch milliseconds or an ISO string into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class CycleStatus(str, Enum):
    """Outcome of one learning cycle."""

    APPLIED = "applied"
    NO_CHANGES = "no_changes"
    APPROVAL_REQUIRED = "approval_required"
    INSUFFICIENT_DATA = "insufficient_data"
    ANOMALY_BLOCKED = "anomaly_blocked"
    SAFETY_BLOCKED = "safety_blocked"
    CORE_BEHAVIOR_BLOCKED = "core_behavior_blocked"
    FAILED = "failed"

    @property
    def advances_window(self) -> bool:
        """Whether the window was examined and must not be analyzed again."""
        return self not in (CycleStatus.FAILED, CycleStatus.INSUFFICIENT_DATA)


# ---------------------------------------------------------------------------
# Interactions and windows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InteractionRecord:
    """One completed call as reported by the call platform. Read-only."""

    interaction_id: str
    transcript: str
    timestamp: datetime
    successful: Optional[bool] = None
    in_voicemail: bool = False
    sentiment: Optional[str] = None
    custom_fields: Dict[str, Any] = field(default_factory=dict)
    direction: str = "outbound"
    agent_id: str = ""
    from_number: Optional[str] = None
    to_number: Optional[str] = None

    @property
    def is_phone_call(self) -> bool:
        # Web calls carry no phone numbers
        return bool(self.from_number and self.to_number)

    @classmethod
    def from_platform(cls, call: Dict[str, Any]) -> "InteractionRecord":
        analysis = call.get("call_analysis") or {}
        return cls(
            interaction_id=call["call_id"],
            transcript=call.get("transcript") or "",
            timestamp=_parse_timestamp(call.get("start_timestamp")) or utcnow(),
            successful=analysis.get("call_successful"),
            in_voicemail=bool(analysis.get("in_voicemail", False)),
            sentiment=analysis.get("user_sentiment"),
            custom_fields=analysis.get("custom_analysis_data") or {},
            direction=call.get("direction") or "outbound",
            agent_id=call.get("agent_id") or "",
            from_number=call.get("from_number"),
            to_number=call.get("to_number"),
        )


@dataclass(frozen=True)
class AnalysisWindow:
    """Time span of interactions considered in one cycle."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    @property
    def hours(self) -> float:
        return (self.end - self.start).total_seconds() / 3600.0

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


@dataclass
class PatternMatch:
    category: str
    interaction_id: str
    excerpt: str
    sentiment: Optional[str] = None


@dataclass
class IssueAggregate:
    count: int = 0
    examples: List[str] = field(default_factory=list)

    def add(self, interaction_id: str, max_examples: int = 3) -> None:
        self.count += 1
        if len(self.examples) < max_examples:
            self.examples.append(interaction_id)


@dataclass
class EdgeCase:
    interaction_id: str
    issue: str
    sentiment: Optional[str] = None
    resolution: Optional[str] = None


@dataclass
class AgentBreakdown:
    """Outcome counts for one agent's interactions in a window."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    voicemail: int = 0


@dataclass
class AnomalyReport:
    """A concentration of near-identical transcripts in the last rolling hour."""

    signature: str
    share_percent: float
    matching_count: int
    subset_size: int
    anomaly_type: str = "coordinated_pattern"


@dataclass
class AnalysisSummary:
    """Everything the synthesizer learns about a window."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    voicemail: int = 0
    issues: Dict[str, IssueAggregate] = field(default_factory=dict)
    unhandled: List[PatternMatch] = field(default_factory=list)
    edge_cases: List[EdgeCase] = field(default_factory=list)
    new_categories: List[str] = field(default_factory=list)
    dropped_adversarial: int = 0
    by_agent: Dict[str, AgentBreakdown] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        if not self.total:
            return 0.0
        return round(self.successful / self.total * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success_rate"] = self.success_rate
        return data

    def digest(self) -> Dict[str, Any]:
        """Compact fingerprint of the summary for the cycle log."""
        encoded = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return {
            "sha256": hashlib.sha256(encoded.encode("utf-8")).hexdigest(),
            "total": self.total,
            "success_rate": self.success_rate,
            "issues": {name: agg.count for name, agg in self.issues.items()},
            "edge_cases": len(self.edge_cases),
            "new_categories": list(self.new_categories),
            "by_agent": {agent_id: asdict(counts) for agent_id, counts in self.by_agent.items()},
        }


# ---------------------------------------------------------------------------
# Proposals and verdicts
# ---------------------------------------------------------------------------


class ImprovementProposal(BaseModel):
    """Candidate behaviour change returned by the generative service."""

    new_sections: Dict[str, str] = {}
    modifications: Dict[str, str] = {}
    priority_fixes: List[str] = []
    expected_improvement: str = ""

    @field_validator("new_sections", "modifications", mode="before")
    @classmethod
    def _named_entries(cls, value: Any) -> Dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("expected an object of name -> text")
        cleaned: Dict[str, str] = {}
        for name, content in value.items():
            key = str(name).strip()
            if not key:
                raise ValueError("section names must not be empty")
            if key in cleaned:
                raise ValueError(f"duplicate section name: {key}")
            cleaned[key] = content if isinstance(content, str) else json.dumps(content)
        return cleaned

    @field_validator("priority_fixes", mode="before")
    @classmethod
    def _fix_list(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]

    @field_validator("expected_improvement", mode="before")
    @classmethod
    def _free_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @property
    def is_empty(self) -> bool:
        return not self.new_sections and not self.modifications


@dataclass
class SafetyVerdict:
    passed: bool
    category: Optional[str] = None
    detail: str = ""

    @classmethod
    def ok(cls) -> "SafetyVerdict":
        return cls(passed=True)

    @classmethod
    def fail(cls, category: str, detail: str = "") -> "SafetyVerdict":
        return cls(passed=False, category=category, detail=detail)


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------

_METADATA_LABELS = {
    "issue_type": "Issue Type",
    "first_seen": "First Identified",
    "frequency": "Frequency",
    "keywords": "Keywords",
    "origin_cycle": "Origin Cycle",
}
_LABEL_TO_KEY = {label: key for key, label in _METADATA_LABELS.items()}
_METADATA_LINE = re.compile(r"^\*\*(?P<label>[A-Za-z ]+)\*\*: (?P<value>.*)$")


@dataclass
class DocumentMetadata:
    issue_type: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
    first_seen: Optional[str] = None
    frequency: Optional[int] = None
    origin_cycle: Optional[str] = None


@dataclass
class KnowledgeDocument:
    """A learned document. ``title`` is unique inside one knowledge base."""

    title: str
    body: str
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)

    def render(self) -> str:
        """Render as retrieval-friendly text with trailing metadata lines."""
        parts = [f"# {self.title}", "", self.body.strip(), ""]
        meta = self.metadata
        if meta.issue_type:
            parts.append(f"**Issue Type**: {meta.issue_type}")
        if meta.first_seen:
            parts.append(f"**First Identified**: {meta.first_seen}")
        if meta.frequency is not None:
            parts.append(f"**Frequency**: {meta.frequency}")
        if meta.keywords:
            parts.append(f"**Keywords**: {', '.join(meta.keywords)}")
        if meta.origin_cycle:
            parts.append(f"**Origin Cycle**: {meta.origin_cycle}")
        return "\n".join(parts).rstrip() + "\n"

    def to_source(self) -> Dict[str, str]:
        return {"title": self.title, "text": self.render()}

    @classmethod
    def from_source(cls, source: Dict[str, Any]) -> "KnowledgeDocument":
        """Parse a stored text source; unknown formats keep the raw text as body."""
        title = source.get("title") or source.get("source_title") or "Untitled"
        text = (
            source.get("text")
            or source.get("source_text")
            or source.get("content")
            or ""
        )
        lines = text.rstrip().split("\n")
        if lines and lines[0].strip() == f"# {title}":
            lines = lines[1:]

        values: Dict[str, str] = {}
        while lines:
            match = _METADATA_LINE.match(lines[-1].strip())
            if not match or match.group("label") not in _LABEL_TO_KEY:
                break
            values[_LABEL_TO_KEY[match.group("label")]] = match.group("value").strip()
            lines.pop()

        metadata = DocumentMetadata(
            issue_type=values.get("issue_type"),
            keywords=[
                k.strip() for k in values.get("keywords", "").split(",") if k.strip()
            ],
            first_seen=values.get("first_seen"),
            frequency=int(values["frequency"])
            if values.get("frequency", "").isdigit()
            else None,
            origin_cycle=values.get("origin_cycle"),
        )
        return cls(title=title, body="\n".join(lines).strip(), metadata=metadata)


@dataclass
class KnowledgeBase:
    """An agent's knowledge base as last read.

    ``retrieved`` is False when ``kb_id`` could not be read back and the
    documents come from a staged set only.
    """

    kb_id: Optional[str]
    name: str
    documents: Dict[str, KnowledgeDocument] = field(default_factory=dict)
    agent_id: Optional[str] = None
    retrieved: bool = False
    staged: bool = False

    @property
    def titles(self) -> List[str]:
        return list(self.documents.keys())


# ---------------------------------------------------------------------------
# Approvals and cycle records
# ---------------------------------------------------------------------------


@dataclass
class PendingApproval:
    proposal: ImprovementProposal
    submitted_at: datetime
    agent_id: str
    cycle_id: str
    status: str = "pending"  # "pending", "approved", "rejected"
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal": self.proposal.model_dump(),
            "submitted_at": self.submitted_at.isoformat(),
            "agent_id": self.agent_id,
            "cycle_id": self.cycle_id,
            "status": self.status,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingApproval":
        return cls(
            proposal=ImprovementProposal.model_validate(data["proposal"]),
            submitted_at=_parse_timestamp(data["submitted_at"]),
            agent_id=data.get("agent_id", ""),
            cycle_id=data.get("cycle_id", ""),
            status=data.get("status", "pending"),
            resolved_at=_parse_timestamp(data.get("resolved_at")),
        )


@dataclass
class CycleResult:
    """What one cycle did. Also the source of its cycle log entry."""

    cycle_id: str
    status: CycleStatus
    agent_id: str
    window: Optional[AnalysisWindow] = None
    summary: Optional[AnalysisSummary] = None
    proposal: Optional[ImprovementProposal] = None
    verdict: Optional[SafetyVerdict] = None
    anomalies: List[AnomalyReport] = field(default_factory=list)
    knowledge_base_id: Optional[str] = None
    documents_added: int = 0
    performance: Optional[Dict[str, Any]] = None
    detail: str = ""
    agent_ids: List[str] = field(default_factory=list)
    knowledge_base_ids: Dict[str, str] = field(default_factory=dict)


@dataclass
class CycleLogEntry:
    timestamp: datetime
    cycle_id: str
    agent_id: str
    status: str
    window: Optional[Dict[str, str]] = None
    summary_digest: Optional[Dict[str, Any]] = None
    proposal: Optional[Dict[str, Any]] = None
    knowledge_base_id: Optional[str] = None
    anomalies: List[Dict[str, Any]] = field(default_factory=list)
    performance: Optional[Dict[str, Any]] = None
    detail: str = ""
    agent_ids: List[str] = field(default_factory=list)
    knowledge_base_ids: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_result(cls, result: CycleResult, timestamp: datetime) -> "CycleLogEntry":
        return cls(
            timestamp=timestamp,
            cycle_id=result.cycle_id,
            agent_id=result.agent_id,
            status=result.status.value,
            window=result.window.to_dict() if result.window else None,
            summary_digest=result.summary.digest() if result.summary else None,
            proposal=result.proposal.model_dump() if result.proposal else None,
            knowledge_base_id=result.knowledge_base_id,
            anomalies=[asdict(a) for a in result.anomalies],
            performance=result.performance,
            detail=result.detail,
            agent_ids=list(result.agent_ids),
            knowledge_base_ids=dict(result.knowledge_base_ids),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data
