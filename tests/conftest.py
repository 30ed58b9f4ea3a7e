"""Shared test fixtures for Voice Learning Pipeline tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from voice_learning_pipeline.config import PipelineSettings
from voice_learning_pipeline.errors import HarvestError, KnowledgeStoreError, PlatformError
from voice_learning_pipeline.models import (
    ImprovementProposal,
    InteractionRecord,
    KnowledgeDocument,
)
from voice_learning_pipeline.pipeline import LearningCycle

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)

BEHAVIOR_TEXT = (
    "IDENTITY:\n"
    "You are Grace, a friendly agent for The Meatery.\n"
    "\n"
    "GREETING:\n"
    "Say hello and introduce yourself.\n"
    "\n"
    "VOICEMAIL DETECTION:\n"
    "Leave a short message with a callback number.\n"
)


# --- Call platform double ---


class FakeCallPlatform:
    """Returns canned calls. The real platform filters by window; this one only by agent."""

    def __init__(self, calls: Optional[List[Dict[str, Any]]] = None):
        self.calls = list(calls or [])
        self.behavior_text = BEHAVIOR_TEXT
        self.behavior_texts: Dict[str, str] = {}
        self.agents: List[Dict[str, Any]] = []
        self.unreachable: set = set()
        self.harvest_error: Optional[Exception] = None
        self.block: Optional[asyncio.Event] = None
        self.list_calls_count = 0
        self.linked: List[tuple] = []

    def add_agent(self, agent_id: str, agent_name: str, llm_id: Optional[str] = "llm_1") -> None:
        agent = {"agent_id": agent_id, "agent_name": agent_name}
        if llm_id:
            agent["response_engine"] = {"type": "retell-llm", "llm_id": llm_id}
        self.agents.append(agent)

    async def list_agents(self):
        return [dict(a) for a in self.agents]

    async def get_agent(self, agent_id):
        if agent_id in self.unreachable:
            raise PlatformError(f"fetching agent {agent_id} failed: 404")
        return next(a for a in self.agents if a.get("agent_id") == agent_id)

    async def get_llm(self, llm_id):
        if llm_id in self.unreachable:
            raise PlatformError(f"fetching llm {llm_id} failed: 404")
        return {"llm_id": llm_id, "general_prompt": self.behavior_text}

    async def list_calls(self, agent_id, window_start, window_end, limit=100):
        self.list_calls_count += 1
        if self.block is not None:
            await self.block.wait()
        if self.harvest_error is not None:
            raise self.harvest_error
        calls = [c for c in self.calls if c.get("agent_id", agent_id) == agent_id]
        return calls[:limit]

    async def get_behavior_text(self, agent_id):
        return self.behavior_texts.get(agent_id, self.behavior_text)

    async def link_knowledge_base(self, agent_id, kb_id, stale_ids=()):
        self.linked.append((agent_id, kb_id, list(stale_ids)))
        return True

    async def aclose(self):
        pass


# --- Knowledge store double ---


class InMemoryKnowledgeStore:
    """List/create/retrieve/delete store with per-operation failure injection."""

    def __init__(self):
        self.bases: Dict[str, Dict[str, Any]] = {}
        self.fail: set = set()
        self.operations: List[str] = []
        self._counter = 0

    def _check(self, operation: str) -> None:
        self.operations.append(operation)
        if operation in self.fail:
            raise KnowledgeStoreError(operation, "injected failure")

    def _add(self, name: str, sources: List[Dict[str, str]]) -> str:
        self._counter += 1
        kb_id = f"kb_{self._counter}"
        self.bases[kb_id] = {
            "name": name,
            "sources": [dict(s) for s in sources],
            "refreshed": self._counter,
        }
        return kb_id

    def seed(self, name: str, documents: List[KnowledgeDocument]) -> str:
        return self._add(name, [d.to_source() for d in documents])

    def titles(self, kb_id: str) -> List[str]:
        return [s["title"] for s in self.bases[kb_id]["sources"]]

    async def list(self):
        self._check("list")
        return [
            {
                "knowledge_base_id": kb_id,
                "knowledge_base_name": kb["name"],
                "last_refreshed_timestamp": kb["refreshed"],
            }
            for kb_id, kb in self.bases.items()
        ]

    async def create(self, name, documents):
        self._check("create")
        return self._add(name, documents)

    async def retrieve(self, kb_id):
        self._check("retrieve")
        if kb_id not in self.bases:
            raise KnowledgeStoreError("retrieve", f"{kb_id} not found")
        return [dict(s) for s in self.bases[kb_id]["sources"]]

    async def delete(self, kb_id):
        self._check("delete")
        if kb_id not in self.bases:
            raise KnowledgeStoreError("delete", f"{kb_id} not found")
        del self.bases[kb_id]

    async def aclose(self):
        pass


# --- Fixtures ---


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def behavior_text() -> str:
    return BEHAVIOR_TEXT


@pytest.fixture
def settings(tmp_path) -> PipelineSettings:
    return PipelineSettings(
        agent_id="agent_grace",
        agent_name="Grace - The Meatery",
        platform_api_key="test-key",
        state_dir=str(tmp_path / "state"),
    )


@pytest.fixture
def make_call():
    """Factory for raw platform call payloads."""

    def _make(
        call_id: str,
        transcript: str,
        minutes_ago: float = 120,
        successful: Optional[bool] = True,
        sentiment: str = "Positive",
        in_voicemail: bool = False,
        custom: Optional[Dict[str, Any]] = None,
        phone: bool = True,
        agent_id: str = "agent_grace",
    ) -> Dict[str, Any]:
        started = NOW - timedelta(minutes=minutes_ago)
        call = {
            "call_id": call_id,
            "agent_id": agent_id,
            "transcript": transcript,
            "start_timestamp": int(started.timestamp() * 1000),
            "direction": "outbound",
            "call_analysis": {
                "call_successful": successful,
                "in_voicemail": in_voicemail,
                "user_sentiment": sentiment,
                "custom_analysis_data": custom or {},
            },
        }
        if phone:
            call["from_number"] = "+15550001111"
            call["to_number"] = "+15552223333"
        return call

    return _make


@pytest.fixture
def make_record():
    """Factory for InteractionRecords relative to NOW."""

    def _make(
        interaction_id: str,
        transcript: str,
        minutes_ago: float = 120,
        successful: Optional[bool] = True,
        sentiment: Optional[str] = "Positive",
        in_voicemail: bool = False,
        custom: Optional[Dict[str, Any]] = None,
    ) -> InteractionRecord:
        return InteractionRecord(
            interaction_id=interaction_id,
            transcript=transcript,
            timestamp=NOW - timedelta(minutes=minutes_ago),
            successful=successful,
            in_voicemail=in_voicemail,
            sentiment=sentiment,
            custom_fields=custom or {},
            from_number="+15550001111",
            to_number="+15552223333",
        )

    return _make


@pytest.fixture
def platform() -> FakeCallPlatform:
    return FakeCallPlatform()


@pytest.fixture
def store() -> InMemoryKnowledgeStore:
    return InMemoryKnowledgeStore()


@pytest.fixture
def synthesizer():
    mock = MagicMock()
    mock.propose = AsyncMock(return_value=ImprovementProposal())
    mock.aclose = AsyncMock()
    return mock


@pytest.fixture
def cycle(settings, platform, store, synthesizer) -> LearningCycle:
    return LearningCycle(
        settings=settings,
        platform=platform,
        store=store,
        synthesizer=synthesizer,
        clock=lambda: NOW,
    )


@pytest.fixture
def harvest_failure() -> HarvestError:
    return HarvestError("listing calls for agent agent_grace failed: timed out")


# --- OpenAI mock ---


@pytest.fixture
def mock_openai_response():
    """Factory for mock OpenAI chat completion responses."""

    def _make(content: str):
        mock_choice = MagicMock()
        mock_choice.message.content = content
        mock_response = MagicMock()
        mock_response.choices = [mock_choice]
        return mock_response

    return _make
