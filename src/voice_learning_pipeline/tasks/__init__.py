"""
Pipeline stages for the Voice Learning Pipeline.

- discovery: Target agents by name pattern and LLM presence
- harvester: Completed calls for one analysis window
- adversarial_filter: Drops manipulation attempts and hostile calls
- anomaly_detector: Coordinated-pattern detection over the last hour
- pattern_extractor: Outcome buckets and issue categories
- synthesizer: Improvement proposals from the generative service
- safety: Forbidden-content checks and the core-behavior guard
- approval: Human approval for significant proposals
- kb_sync: Snapshot-merge-recreate knowledge base synchronization
- effectiveness: Success-rate lift of the last applied improvement
"""

from .adversarial_filter import filter_adversarial
from .anomaly_detector import detect_anomalies
from .approval import ApprovalGate, PendingApprovalStore
from .discovery import AgentDiscovery, AgentProfile
from .effectiveness import EffectivenessTracker
from .harvester import InteractionHarvester
from .kb_sync import KnowledgeBaseSynchronizer, documents_from_proposal
from .pattern_extractor import PatternExtractor
from .safety import CoreBehaviorGuard, SafetyValidator, compose_behavior_text
from .synthesizer import ImprovementSynthesizer

__all__ = [
    "AgentDiscovery",
    "AgentProfile",
    "ApprovalGate",
    "CoreBehaviorGuard",
    "EffectivenessTracker",
    "ImprovementSynthesizer",
    "InteractionHarvester",
    "KnowledgeBaseSynchronizer",
    "PatternExtractor",
    "PendingApprovalStore",
    "SafetyValidator",
    "compose_behavior_text",
    "detect_anomalies",
    "documents_from_proposal",
    "filter_adversarial",
]
