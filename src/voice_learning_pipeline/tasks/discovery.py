"""
Agent discovery.

Lists the platform's agents and keeps the ones a cycle should learn for:

- an LLM must be configured (when required)
- the name must contain an include pattern, if any are configured
- the name must not contain an exclude pattern
- the agent and its LLM must be readable right now

Patterns are case-insensitive substrings. A pinned agent id in the settings
bypasses discovery entirely.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import structlog

from ..clients import CallPlatformClient
from ..errors import PlatformError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AgentProfile:
    agent_id: str
    agent_name: str
    llm_id: Optional[str] = None

    @classmethod
    def from_platform(cls, agent: Dict[str, Any]) -> "AgentProfile":
        engine = agent.get("response_engine") or {}
        agent_id = agent["agent_id"]
        return cls(
            agent_id=agent_id,
            agent_name=agent.get("agent_name") or agent_id,
            llm_id=engine.get("llm_id") or agent.get("llm_id"),
        )


def name_matches(name: str, include: Iterable[str], exclude: Iterable[str]) -> bool:
    lowered = name.lower()
    include = [p.lower() for p in include if p]
    if include and not any(p in lowered for p in include):
        return False
    return not any(p.lower() in lowered for p in exclude if p)


class AgentDiscovery:
    """Finds the agents to analyze in one cycle."""

    def __init__(
        self,
        platform: CallPlatformClient,
        include_patterns: Iterable[str] = (),
        exclude_patterns: Iterable[str] = (),
        require_llm: bool = True,
    ):
        self._platform = platform
        self.include_patterns = list(include_patterns)
        self.exclude_patterns = list(exclude_patterns)
        self.require_llm = require_llm

    async def discover(self) -> List[AgentProfile]:
        """Agents that pass every filter, in platform order.

        Raises:
            PlatformError: the agent listing itself failed.
        """
        listed = await self._platform.list_agents()

        candidates: List[AgentProfile] = []
        malformed = 0
        for agent in listed:
            try:
                candidates.append(AgentProfile.from_platform(agent))
            except (KeyError, TypeError, AttributeError):
                malformed += 1
        total = len(candidates)

        if self.require_llm:
            candidates = [a for a in candidates if a.llm_id]
        with_llm = len(candidates)

        candidates = [
            a
            for a in candidates
            if name_matches(a.agent_name, self.include_patterns, self.exclude_patterns)
        ]
        matching = len(candidates)

        agents: List[AgentProfile] = []
        for agent in candidates:
            try:
                await self._platform.get_agent(agent.agent_id)
                if agent.llm_id:
                    await self._platform.get_llm(agent.llm_id)
            except PlatformError as e:
                logger.warning("agent_unreachable", agent_id=agent.agent_id, agent_name=agent.agent_name, error=str(e))
                continue
            agents.append(agent)

        logger.info(
            "agents_discovered",
            listed=total,
            malformed=malformed,
            with_llm=with_llm,
            matching_patterns=matching,
            reachable=len(agents),
            agents={a.agent_id: a.agent_name for a in agents},
        )
        if not agents:
            logger.warning("no_agents_discovered", include=self.include_patterns, exclude=self.exclude_patterns)
        return agents
