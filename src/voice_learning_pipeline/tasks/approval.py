"""
Approval Gate.

Large proposals are parked for a human instead of being applied
automatically. The parked proposal lives in ``pending-approval.json`` until an
operator approves or rejects it; resolved proposals are archived next to it.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from ..errors import ApprovalNotFoundError
from ..models import ImprovementProposal, PendingApproval

logger = structlog.get_logger(__name__)

PENDING_FILE = "pending-approval.json"


class ApprovalGate:
    """Classifies proposals as significant (needs a human) or not."""

    def __init__(self, max_priority_fixes: int = 3, max_new_sections: int = 2):
        self.max_priority_fixes = max_priority_fixes
        self.max_new_sections = max_new_sections

    def is_significant(self, proposal: ImprovementProposal) -> bool:
        return (
            len(proposal.priority_fixes) > self.max_priority_fixes
            or len(proposal.new_sections) > self.max_new_sections
        )


class PendingApprovalStore:
    """File-backed queue holding at most one pending proposal."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / PENDING_FILE

    def load(self) -> Optional[PendingApproval]:
        """Return the pending approval, or None when absent or unreadable."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            approval = PendingApproval.from_dict(data)
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            logger.warning("pending_approval_unreadable", path=str(self.path), error=str(e))
            return None
        return approval if approval.status == "pending" else None

    def submit(
        self,
        proposal: ImprovementProposal,
        agent_id: str,
        cycle_id: str,
        submitted_at: datetime,
    ) -> PendingApproval:
        previous = self.load()
        if previous is not None:
            logger.warning(
                "pending_approval_replaced",
                previous_cycle_id=previous.cycle_id,
                submitted_at=previous.submitted_at.isoformat(),
            )

        approval = PendingApproval(
            proposal=proposal,
            submitted_at=submitted_at,
            agent_id=agent_id,
            cycle_id=cycle_id,
        )
        self._write(self.path, approval)
        logger.info(
            "approval_requested",
            agent_id=agent_id,
            cycle_id=cycle_id,
            new_sections=list(proposal.new_sections),
            priority_fixes=len(proposal.priority_fixes),
            path=str(self.path),
        )
        return approval

    def require(self) -> PendingApproval:
        approval = self.load()
        if approval is None:
            raise ApprovalNotFoundError("No pending improvements to review")
        return approval

    def resolve(self, approval: PendingApproval, status: str, resolved_at: datetime) -> Path:
        """Archive ``approval`` as approved or rejected and clear the queue."""
        if status not in ("approved", "rejected"):
            raise ValueError(f"unknown approval status: {status}")

        approval.status = status
        approval.resolved_at = resolved_at
        stamp = resolved_at.strftime("%Y%m%dT%H%M%S")
        archive = self.state_dir / f"{status}-{stamp}.json"
        self._write(archive, approval)
        self.path.unlink(missing_ok=True)

        logger.info(
            "approval_resolved",
            status=status,
            cycle_id=approval.cycle_id,
            archive=str(archive),
        )
        return archive

    def _write(self, path: Path, approval: PendingApproval) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(approval.to_dict(), indent=2), encoding="utf-8")
        tmp.replace(path)
