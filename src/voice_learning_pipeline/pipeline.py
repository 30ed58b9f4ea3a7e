"""
Learning cycle orchestrator.

Runs one cycle over one analysis window, strictly in order:

    discover -> harvest -> filter -> anomaly check -> extract -> synthesize
             -> safety -> core-behavior guard -> approval gate -> KB sync

Interactions from every target agent are analyzed together. The single
proposal that comes out is checked against, and merged into, each agent's
own knowledge base.

Every outcome is appended to the cycle log. Expected stops (too little data,
anomalies, blocked proposals, approval needed) end the cycle with a status;
external failures end it as ``failed``. Fatal and unexpected errors are
logged and re-raised.
"""

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog

from .clients import CallPlatformClient, KnowledgeStoreClient
from .config import PipelineSettings
from .errors import CoreBehaviorViolation, FatalPipelineError, LearningPipelineError
from .models import (
    AgentBreakdown,
    AnalysisSummary,
    AnalysisWindow,
    CycleLogEntry,
    CycleResult,
    CycleStatus,
    ImprovementProposal,
    utcnow,
)
from .state import CycleLog
from .tasks.adversarial_filter import filter_adversarial
from .tasks.anomaly_detector import detect_anomalies
from .tasks.approval import ApprovalGate, PendingApprovalStore
from .tasks.discovery import AgentDiscovery, AgentProfile
from .tasks.effectiveness import EffectivenessTracker
from .tasks.harvester import InteractionHarvester
from .tasks.kb_sync import KnowledgeBaseSynchronizer, documents_from_proposal
from .tasks.pattern_extractor import PatternExtractor
from .tasks.safety import CoreBehaviorGuard, SafetyValidator, compose_behavior_text
from .tasks.synthesizer import ImprovementSynthesizer

logger = structlog.get_logger(__name__)

CONSERVATIVE_MIN_INTERACTIONS = 10


def new_cycle_id(now: datetime) -> str:
    return f"cycle-{now.strftime('%Y%m%dT%H%M%S')}-{uuid.uuid4().hex[:6]}"


class LearningCycle:
    """
    The continuous-learning loop for a pinned agent or a discovered fleet.

    Owns the stage components and the local state they share. Use
    ``from_settings`` to build the production wiring; tests inject doubles
    for the platform, knowledge store and synthesizer.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        platform: CallPlatformClient,
        store: KnowledgeStoreClient,
        synthesizer: Optional[ImprovementSynthesizer] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.agent_id = settings.agent_id
        self.agent_name = settings.agent_name or settings.agent_id
        self.state_dir = Path(settings.state_dir)
        self._platform = platform
        self._store = store
        self._clock = clock

        self.discovery = AgentDiscovery(
            platform,
            include_patterns=settings.agent_include_patterns,
            exclude_patterns=settings.agent_exclude_patterns,
            require_llm=settings.agent_require_llm,
        )
        self.harvester = InteractionHarvester(platform, limit=settings.harvest_limit)
        self.extractor = PatternExtractor()
        self.synthesizer = synthesizer or ImprovementSynthesizer(
            model=settings.improvement_model,
            temperature=settings.improvement_temperature,
        )
        self.validator = SafetyValidator()
        self.guard = CoreBehaviorGuard(settings.core_behavior_tokens)
        self.gate = ApprovalGate(
            max_priority_fixes=settings.approval_max_priority_fixes,
            max_new_sections=settings.approval_max_new_sections,
        )
        self.approvals = PendingApprovalStore(self.state_dir)
        self.synchronizer = KnowledgeBaseSynchronizer(store, platform, self.state_dir, clock=clock)
        self.cycle_log = CycleLog(self.state_dir)
        self.effectiveness = EffectivenessTracker(self.harvester, self.cycle_log)

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "LearningCycle":
        return cls(
            settings=settings,
            platform=CallPlatformClient.from_settings(settings),
            store=KnowledgeStoreClient.from_settings(settings),
        )

    async def close(self) -> None:
        """Clean up resources."""
        await self._platform.aclose()
        await self._store.aclose()
        await self.synthesizer.aclose()

    async def agents(self) -> List[AgentProfile]:
        """The pinned agent, or every agent discovery keeps.

        Raises:
            PlatformError: the agent listing failed.
        """
        if self.agent_id:
            return [AgentProfile(agent_id=self.agent_id, agent_name=self.agent_name)]
        return await self.discovery.discover()

    async def knowledge_base_statistics(self) -> List[Dict[str, Any]]:
        stats = []
        for agent in await self.agents():
            entry = await self.synchronizer.statistics(agent.agent_id, agent.agent_name)
            entry["agent_id"] = agent.agent_id
            stats.append(entry)
        return stats

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run(self, window: AnalysisWindow, cycle_id: Optional[str] = None) -> CycleResult:
        """Run one cycle over ``window``.

        Raises:
            CoreBehaviorViolation: logged as core_behavior_blocked first.
            KnowledgeBaseCreateError: logged as failed first.
            Exception: anything unexpected, logged as failed first.
        """
        now = self._clock()
        result = CycleResult(
            cycle_id=cycle_id or new_cycle_id(now),
            status=CycleStatus.FAILED,
            agent_id=self.agent_id,
            window=window,
        )
        logger.info(
            "cycle_started",
            cycle_id=result.cycle_id,
            agent_id=self.agent_id or None,
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
            window_hours=round(window.hours, 2),
        )

        try:
            await self._execute(result, now)
        except CoreBehaviorViolation as e:
            result.status = CycleStatus.CORE_BEHAVIOR_BLOCKED
            result.detail = str(e)
            self._record(result)
            raise
        except FatalPipelineError as e:
            result.detail = str(e)
            self._record(result)
            raise
        except LearningPipelineError as e:
            result.status = CycleStatus.FAILED
            result.detail = str(e)
            logger.error(
                "cycle_failed",
                cycle_id=result.cycle_id,
                error_type=type(e).__name__,
                error=str(e),
            )
        except Exception as e:
            result.status = CycleStatus.FAILED
            result.detail = f"{type(e).__name__}: {e}"
            logger.exception("cycle_crashed", cycle_id=result.cycle_id)
            self._record(result)
            raise

        self._record(result)
        return result

    async def _execute(self, result: CycleResult, now: datetime) -> None:
        settings = self.settings

        agents = await self.agents()
        result.agent_ids = [a.agent_id for a in agents]
        if not agents:
            result.status = CycleStatus.INSUFFICIENT_DATA
            result.detail = "no agents to analyze"
            return
        result.agent_id = agents[0].agent_id

        min_required = settings.min_interactions
        lift = await self.effectiveness.measure(result.agent_ids, now)
        if lift is not None:
            result.performance = lift.to_dict()
            if lift.regressed(settings.regression_threshold_percent):
                min_required = max(2 * settings.min_interactions, CONSERVATIVE_MIN_INTERACTIONS)
                logger.warning(
                    "conservative_mode",
                    cycle_id=result.cycle_id,
                    lift_percent=lift.lift_percent,
                    min_interactions=min_required,
                )

        # 1. Harvest and filter
        records = []
        for agent in agents:
            records += await self.harvester.harvest(agent.agent_id, result.window)
        kept, dropped = filter_adversarial(records, settings.profanity_threshold)

        if len(kept) < min_required:
            result.status = CycleStatus.INSUFFICIENT_DATA
            result.detail = f"{len(kept)} interactions, {min_required} required"
            return

        # 2. Anomaly check
        anomalies = detect_anomalies(
            kept,
            now,
            window_minutes=settings.anomaly_window_minutes,
            min_interactions=settings.anomaly_min_interactions,
            prefix_chars=settings.anomaly_prefix_chars,
            share_threshold=settings.anomaly_share_threshold,
        )
        if anomalies:
            result.status = CycleStatus.ANOMALY_BLOCKED
            result.anomalies = anomalies
            result.detail = f"{len(anomalies)} coordinated pattern(s) in the last hour"
            return

        # 3. Extract. A category is known only once every agent's KB covers it.
        known = None
        for agent in agents:
            existing = await self.synchronizer.current_documents(agent.agent_id, agent.agent_name)
            covered = {d.metadata.issue_type for d in existing if d.metadata.issue_type}
            known = covered if known is None else known & covered
        summary = self.extractor.extract(kept, known_categories=known)
        summary.dropped_adversarial = dropped
        for agent in agents:
            summary.by_agent.setdefault(agent.agent_id, AgentBreakdown())
        result.summary = summary
        logger.info(
            "patterns_extracted",
            cycle_id=result.cycle_id,
            agents=len(agents),
            interactions=summary.total,
            success_rate=summary.success_rate,
            issues={name: agg.count for name, agg in summary.issues.items()},
            new_categories=summary.new_categories,
            edge_cases=len(summary.edge_cases),
            dropped_adversarial=dropped,
        )

        # 4. Synthesize against the first agent's behavior text
        behavior_texts = await self._behavior_texts(agents)
        proposal = await self.synthesizer.propose(summary, behavior_texts[agents[0].agent_id])
        result.proposal = proposal
        if proposal.is_empty:
            result.status = CycleStatus.NO_CHANGES
            return

        # 5. Validate
        if not self._validate(result, proposal):
            return
        self._guard(behavior_texts, proposal)

        # 6. Approval gate
        if settings.require_approval and self.gate.is_significant(proposal):
            self.approvals.submit(proposal, result.agent_id, result.cycle_id, now)
            result.status = CycleStatus.APPROVAL_REQUIRED
            result.detail = "proposal parked for operator approval"
            return

        # 7. Apply
        await self._apply(result, agents, proposal, summary, now)

    async def _behavior_texts(self, agents: List[AgentProfile]) -> Dict[str, str]:
        return {a.agent_id: await self._platform.get_behavior_text(a.agent_id) for a in agents}

    def _guard(self, behavior_texts: Dict[str, str], proposal: ImprovementProposal) -> None:
        for agent_id, text in behavior_texts.items():
            try:
                self.guard.check(compose_behavior_text(text, proposal))
            except CoreBehaviorViolation:
                logger.error("core_behavior_guard_tripped", agent_id=agent_id)
                raise

    def _validate(self, result: CycleResult, proposal: ImprovementProposal) -> bool:
        verdict = self.validator.validate(proposal)
        result.verdict = verdict
        if not verdict.passed:
            result.status = CycleStatus.SAFETY_BLOCKED
            result.detail = f"{verdict.category}: {verdict.detail}"
        return verdict.passed

    async def _apply(
        self,
        result: CycleResult,
        agents: List[AgentProfile],
        proposal: ImprovementProposal,
        summary: Optional[AnalysisSummary],
        now: datetime,
    ) -> None:
        documents = documents_from_proposal(proposal, summary, result.cycle_id, now)
        synced = []
        for agent in agents:
            sync = await self.synchronizer.synchronize(agent.agent_id, agent.agent_name, documents)
            result.knowledge_base_ids[agent.agent_id] = sync.kb_id
            result.documents_added += len(sync.added)
            synced.append(sync)
        result.status = CycleStatus.APPLIED
        result.knowledge_base_id = synced[0].kb_id
        result.detail = ", ".join(
            f"{agent.agent_id}: {sync.document_count} documents, {len(sync.superseded)} superseded"
            for agent, sync in zip(agents, synced)
        )

    def _record(self, result: CycleResult) -> None:
        self.cycle_log.append(CycleLogEntry.from_result(result, self._clock()))
        log = logger.warning if result.status == CycleStatus.FAILED else logger.info
        log(
            "cycle_completed",
            cycle_id=result.cycle_id,
            agent_ids=result.agent_ids or [result.agent_id],
            status=result.status.value,
            knowledge_base_ids=result.knowledge_base_ids,
            documents_added=result.documents_added,
            detail=result.detail,
        )

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def approve(self) -> CycleResult:
        """Apply the pending proposal to the current target agents.

        The proposal is validated again before any merge. A proposal that no
        longer passes stays pending so the operator can reject it.

        Raises:
            ApprovalNotFoundError: nothing is pending.
        """
        approval = self.approvals.require()
        now = self._clock()
        result = CycleResult(
            cycle_id=approval.cycle_id,
            status=CycleStatus.FAILED,
            agent_id=approval.agent_id or self.agent_id,
            proposal=approval.proposal,
        )
        logger.info("approval_applying", cycle_id=approval.cycle_id)

        try:
            agents = await self.agents()
            result.agent_ids = [a.agent_id for a in agents]
            if not agents:
                result.detail = "no agents to apply to"
            elif self._validate(result, approval.proposal):
                self._guard(await self._behavior_texts(agents), approval.proposal)
                await self._apply(result, agents, approval.proposal, None, now)
                self.approvals.resolve(approval, "approved", now)
        except CoreBehaviorViolation as e:
            result.status = CycleStatus.CORE_BEHAVIOR_BLOCKED
            result.detail = str(e)
            self._record(result)
            raise
        except FatalPipelineError as e:
            result.detail = str(e)
            self._record(result)
            raise
        except LearningPipelineError as e:
            result.detail = str(e)
            logger.error("approval_apply_failed", cycle_id=approval.cycle_id, error=str(e))

        self._record(result)
        return result

    def reject(self) -> Path:
        """Archive the pending proposal without applying it."""
        approval = self.approvals.require()
        return self.approvals.resolve(approval, "rejected", self._clock())
