"""
HTTP clients for the external services the pipeline consumes.

- CallPlatformClient: completed calls, agent listing and configuration, knowledge-base linking
- KnowledgeStoreClient: whole-resource knowledge bases (list/create/retrieve/delete)

Neither client retries. A failed call surfaces as a typed pipeline error and
the scheduler retries the whole window on its next tick.
"""

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx
import structlog

from .config import PipelineSettings
from .errors import HarvestError, KnowledgeStoreError, PlatformError

logger = structlog.get_logger(__name__)


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class CallPlatformClient:
    """Client for the voice-call platform and its agent-configuration API."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"} if api_key else {},
        )

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "CallPlatformClient":
        return cls(
            base_url=settings.platform_url,
            api_key=settings.platform_api_key,
            timeout=settings.platform_timeout,
        )

    async def list_calls(
        self,
        agent_id: str,
        window_start: datetime,
        window_end: datetime,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """List calls for one agent that started inside the window."""
        payload = {
            "filter_criteria": {
                "agent_id": [agent_id],
                "start_timestamp": {
                    "lower_threshold": _epoch_ms(window_start),
                    "upper_threshold": _epoch_ms(window_end),
                },
            },
            "limit": limit,
        }
        try:
            response = await self._client.post("/v2/list-calls", json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise HarvestError(f"listing calls for agent {agent_id} failed: {e}") from e

        calls = data if isinstance(data, list) else data.get("calls", [])
        logger.debug("calls_listed", agent_id=agent_id, count=len(calls))
        return calls

    async def list_agents(self) -> List[Dict[str, Any]]:
        """Every agent on the account, with its response engine."""
        try:
            response = await self._client.get("/list-agents")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PlatformError(f"listing agents failed: {e}") from e
        agents = data if isinstance(data, list) else data.get("agents", [])
        logger.debug("agents_listed", count=len(agents))
        return agents

    async def get_agent(self, agent_id: str) -> Dict[str, Any]:
        return await self._get(f"/get-agent/{agent_id}")

    async def get_llm(self, llm_id: str) -> Dict[str, Any]:
        return await self._get(f"/get-retell-llm/{llm_id}")

    async def get_behavior_text(self, agent_id: str) -> str:
        """Return the agent's live behaviour text (its general prompt)."""
        llm = await self.get_llm(await self._llm_id(agent_id))
        return llm.get("general_prompt") or ""

    async def link_knowledge_base(
        self,
        agent_id: str,
        kb_id: str,
        stale_ids: Iterable[str] = (),
    ) -> bool:
        """Point the agent at ``kb_id``, dropping references to ``stale_ids``.

        Returns True when the configuration was changed, False when the agent
        was already linked exactly as requested.
        """
        llm_id = await self._llm_id(agent_id)
        llm = await self.get_llm(llm_id)
        existing = list(llm.get("knowledge_base_ids") or [])
        stale = set(stale_ids) - {kb_id}

        linked = [i for i in existing if i not in stale]
        if kb_id not in linked:
            linked.append(kb_id)

        if linked == existing:
            logger.info("knowledge_base_already_linked", agent_id=agent_id, kb_id=kb_id)
            return False

        try:
            response = await self._client.patch(
                f"/update-retell-llm/{llm_id}",
                json={"knowledge_base_ids": linked},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise PlatformError(f"linking knowledge base {kb_id} failed: {e}") from e

        logger.info(
            "knowledge_base_linked",
            agent_id=agent_id,
            kb_id=kb_id,
            dropped=sorted(set(existing) - set(linked)),
        )
        return True

    async def _llm_id(self, agent_id: str) -> str:
        agent = await self.get_agent(agent_id)
        engine = agent.get("response_engine") or {}
        llm_id = engine.get("llm_id") or agent.get("llm_id")
        if not llm_id:
            raise PlatformError(f"agent {agent_id} has no LLM configured")
        return llm_id

    async def _get(self, path: str) -> Dict[str, Any]:
        try:
            response = await self._client.get(path)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PlatformError(f"GET {path} failed: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


class KnowledgeStoreClient:
    """Client for a knowledge store that only supports whole-resource replacement."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"} if api_key else {},
        )

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "KnowledgeStoreClient":
        return cls(
            base_url=settings.knowledge_store_url,
            api_key=settings.platform_api_key,
            timeout=settings.knowledge_store_timeout,
        )

    async def list(self) -> List[Dict[str, Any]]:
        data = await self._request("list", "GET", "/list-knowledge-bases")
        return data if isinstance(data, list) else data.get("knowledge_bases", [])

    async def create(self, name: str, documents: List[Dict[str, str]]) -> str:
        """Create a knowledge base holding ``documents``; returns its id."""
        data = await self._request(
            "create",
            "POST",
            "/create-knowledge-base",
            data={
                "knowledge_base_name": name,
                "knowledge_base_texts": json.dumps(documents),
            },
        )
        kb_id = data.get("knowledge_base_id")
        if not kb_id:
            raise KnowledgeStoreError("create", "response carried no knowledge_base_id")
        return kb_id

    async def retrieve(self, kb_id: str) -> List[Dict[str, Any]]:
        """Return the text sources of a knowledge base."""
        data = await self._request("retrieve", "GET", f"/get-knowledge-base/{kb_id}")
        sources = data.get("knowledge_base_sources") or data.get("text_content") or []
        return [
            s
            for s in sources
            if s.get("type", "text") == "text" or s.get("source_type") == "text"
        ]

    async def delete(self, kb_id: str) -> None:
        await self._request("delete", "DELETE", f"/delete-knowledge-base/{kb_id}")

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            if not response.content:
                return {}
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise KnowledgeStoreError(operation, str(e), cause=e) from e

    async def aclose(self) -> None:
        await self._client.aclose()
