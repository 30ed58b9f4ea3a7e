"""
Knowledge Base Synchronizer.

The knowledge store only offers list / create / retrieve / delete, so adding
documents means rebuilding the whole knowledge base:

1. Resolve the agent's knowledge base (cached id, else lookup by name)
2. Retrieve the full document set, overlaid with any staged set
3. Merge: same-title documents are replaced, everything else carries forward
4. Stage the merged set on local disk
5. Delete the old knowledge base (failure is tolerated)
6. Create the replacement in one call (failure is fatal, staging is kept)
7. Update the id cache, clear staging, relink the agent

A staged set left behind by a failed create is newer than anything live. It
is folded into every later read and replaces the live copy when the cached
id no longer exists, so a crash between delete and create cannot lose
documents.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from ..clients import CallPlatformClient, KnowledgeStoreClient
from ..errors import KnowledgeBaseCreateError, KnowledgeStoreError
from ..models import (
    AnalysisSummary,
    DocumentMetadata,
    ImprovementProposal,
    KnowledgeBase,
    KnowledgeDocument,
    utcnow,
)
from .pattern_extractor import keywords_for

logger = structlog.get_logger(__name__)

KB_CACHE_FILE = "knowledge-base-cache.json"
STAGING_DIR = "kb-staging"
MAX_KB_NAME_LENGTH = 39
GENERAL_ISSUE = "general"


def knowledge_base_name(agent_name: str) -> str:
    """Deterministic knowledge base name for an agent, e.g. "Grace KB"."""
    base = agent_name.split(" - ")[0].strip() or "Agent"
    name = f"{base} KB"
    if len(name) > MAX_KB_NAME_LENGTH:
        name = base[: MAX_KB_NAME_LENGTH - 3].rstrip() + " KB"
    return name


def merge_documents(
    existing: Iterable[KnowledgeDocument],
    incoming: Iterable[KnowledgeDocument],
) -> Dict[str, KnowledgeDocument]:
    """Union by title; incoming documents replace existing ones of the same title.

    A replacing document inherits the ``first_seen`` of the one it supersedes.
    """
    merged: Dict[str, KnowledgeDocument] = {}
    for doc in existing:
        merged[doc.title] = doc

    for doc in incoming:
        previous = merged.get(doc.title)
        if previous is not None and previous.metadata.first_seen:
            doc.metadata.first_seen = previous.metadata.first_seen
        merged[doc.title] = doc
    return merged


def infer_issue_type(title: str, content: str, summary: Optional[AnalysisSummary]) -> str:
    """Best matching issue category for a learned section."""
    if summary is None:
        return GENERAL_ISSUE
    text = f"{title} {content}".lower()
    ranked = sorted(summary.issues.items(), key=lambda item: -item[1].count)
    for category, _ in ranked:
        words = [category.replace("-", " ")] + keywords_for(category)
        if any(word in text for word in words):
            return category
    return GENERAL_ISSUE


def documents_from_proposal(
    proposal: ImprovementProposal,
    summary: Optional[AnalysisSummary],
    cycle_id: str,
    now: datetime,
) -> List[KnowledgeDocument]:
    """Knowledge documents for every section a proposal adds or modifies."""
    entries = list(proposal.new_sections.items()) + [
        (f"{target}_ENHANCED", content) for target, content in proposal.modifications.items()
    ]

    documents = []
    for title, content in entries:
        issue_type = infer_issue_type(title, content, summary)
        aggregate = summary.issues.get(issue_type) if summary else None
        documents.append(
            KnowledgeDocument(
                title=title,
                body=content.strip(),
                metadata=DocumentMetadata(
                    issue_type=issue_type,
                    keywords=keywords_for(issue_type),
                    first_seen=now.date().isoformat(),
                    frequency=aggregate.count if aggregate else None,
                    origin_cycle=cycle_id,
                ),
            )
        )
    return documents


class KnowledgeBaseCache:
    """agent id -> knowledge base id, persisted as JSON.

    A missing or corrupt file is treated as empty and rebuilt on next save.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._data is None:
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                if not isinstance(data, dict) or not isinstance(
                    data.get("knowledge_bases"), dict
                ):
                    raise ValueError("unexpected cache layout")
                self._data = data
            except FileNotFoundError:
                self._data = {"knowledge_bases": {}}
            except ValueError as e:
                logger.warning("kb_cache_corrupt", path=str(self.path), error=str(e))
                self._data = {"knowledge_bases": {}}
        return self._data

    def get(self, agent_id: str) -> Optional[str]:
        return self._load()["knowledge_bases"].get(agent_id)

    def set(self, agent_id: str, kb_id: str, now: datetime) -> None:
        data = self._load()
        data["knowledge_bases"][agent_id] = kb_id
        data["last_updated"] = now.isoformat()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp.replace(self.path)


@dataclass
class SyncResult:
    kb_id: str
    kb_name: str
    previous_kb_id: Optional[str]
    titles: List[str]
    added: List[str] = field(default_factory=list)
    superseded: List[str] = field(default_factory=list)
    delete_failed: bool = False
    recovered_from_staging: bool = False
    linked: bool = False

    @property
    def document_count(self) -> int:
        return len(self.titles)


class KnowledgeBaseSynchronizer:
    """Merges learned documents into one growing knowledge base per agent."""

    def __init__(
        self,
        store: KnowledgeStoreClient,
        platform: CallPlatformClient,
        state_dir: Path,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._platform = platform
        self.state_dir = Path(state_dir)
        self.cache = KnowledgeBaseCache(self.state_dir / KB_CACHE_FILE)
        self._clock = clock

    # -- lookup ----------------------------------------------------------------

    async def resolve_kb_id(self, agent_id: str, agent_name: str) -> Optional[str]:
        cached = self.cache.get(agent_id)
        if cached:
            logger.info("kb_found_in_cache", agent_id=agent_id, kb_id=cached)
            return cached

        name = knowledge_base_name(agent_name)
        matches = [kb for kb in await self._store.list() if kb.get("knowledge_base_name") == name]
        if not matches:
            return None

        freshest = max(matches, key=lambda kb: kb.get("last_refreshed_timestamp") or 0)
        logger.info(
            "kb_found_by_name",
            agent_id=agent_id,
            kb_name=name,
            kb_id=freshest["knowledge_base_id"],
            candidates=len(matches),
        )
        return freshest["knowledge_base_id"]

    async def snapshot(self, agent_id: str, agent_name: str) -> KnowledgeBase:
        """The agent's document set: the live knowledge base overlaid with staging.

        A staged set was written just before a create that failed, so it is
        never older than what is live and wins on title conflicts. When the
        resolved id can no longer be retrieved (it was deleted before the
        failed create) the staged set stands in for it.

        Raises:
            KnowledgeStoreError: lookup or retrieve failed and nothing is staged.
        """
        kb = KnowledgeBase(
            kb_id=await self.resolve_kb_id(agent_id, agent_name),
            name=knowledge_base_name(agent_name),
            agent_id=agent_id,
        )
        staged = self._load_staging(agent_id)
        kb.staged = staged is not None

        live: List[KnowledgeDocument] = []
        if kb.kb_id:
            try:
                live = [KnowledgeDocument.from_source(s) for s in await self._store.retrieve(kb.kb_id)]
                kb.retrieved = True
            except KnowledgeStoreError:
                if staged is None:
                    raise
                logger.warning("kb_snapshot_unavailable_using_staging", agent_id=agent_id, kb_id=kb.kb_id)

        kb.documents = merge_documents(live, staged or [])
        logger.info(
            "kb_snapshot_taken",
            agent_id=agent_id,
            kb_id=kb.kb_id,
            live=len(live),
            staged=len(staged or []),
        )
        return kb

    async def current_documents(self, agent_id: str, agent_name: str) -> List[KnowledgeDocument]:
        """Read-only view of the agent's documents (empty when none exist)."""
        kb = await self.snapshot(agent_id, agent_name)
        return list(kb.documents.values())

    async def statistics(self, agent_id: str, agent_name: str) -> Dict[str, Any]:
        kb = await self.snapshot(agent_id, agent_name)
        documents = list(kb.documents.values())
        return {
            "kb_id": kb.kb_id,
            "kb_name": kb.name,
            "total_documents": len(documents),
            "total_size_chars": sum(len(d.body) for d in documents),
            "documents": [
                {
                    "title": d.title,
                    "size_chars": len(d.body),
                    "issue_type": d.metadata.issue_type,
                    "first_seen": d.metadata.first_seen,
                }
                for d in documents
            ],
        }

    # -- synchronization -------------------------------------------------------

    async def synchronize(
        self,
        agent_id: str,
        agent_name: str,
        documents: List[KnowledgeDocument],
    ) -> SyncResult:
        """Rebuild the agent's knowledge base with ``documents`` merged in.

        Raises:
            KnowledgeStoreError: lookup or snapshot failed; nothing was destroyed.
            KnowledgeBaseCreateError: the replacement could not be created.
            PlatformError: the new knowledge base could not be linked.
        """
        current = await self.snapshot(agent_id, agent_name)
        old_id = current.kb_id
        base = current.documents
        merged = merge_documents(base.values(), documents)
        incoming = {doc.title for doc in documents}
        result = SyncResult(
            kb_id="",
            kb_name=current.name,
            previous_kb_id=old_id,
            titles=list(merged),
            added=[t for t in merged if t in incoming and t not in base],
            superseded=[t for t in base if t in incoming],
            recovered_from_staging=current.staged,
        )

        staging_path = self._write_staging(agent_id, current.name, old_id, merged.values())

        if old_id and current.retrieved:
            try:
                await self._store.delete(old_id)
                logger.info("kb_deleted", kb_id=old_id)
            except KnowledgeStoreError as e:
                result.delete_failed = True
                logger.warning("kb_delete_failed", kb_id=old_id, error=str(e))

        try:
            new_id = await self._store.create(current.name, [d.to_source() for d in merged.values()])
        except KnowledgeStoreError as e:
            logger.critical(
                "kb_create_failed",
                agent_id=agent_id,
                previous_kb_id=old_id,
                documents=len(merged),
                staging_path=str(staging_path),
                error=str(e),
            )
            raise KnowledgeBaseCreateError(agent_id, str(staging_path), cause=e) from e

        result.kb_id = new_id
        self.cache.set(agent_id, new_id, self._clock())
        staging_path.unlink(missing_ok=True)
        logger.info(
            "kb_created",
            agent_id=agent_id,
            kb_id=new_id,
            kb_name=current.name,
            documents=len(merged),
            added=result.added,
            superseded=result.superseded,
        )

        stale = [old_id] if old_id else []
        stale += await self._remove_duplicates(current.name, keep_id=new_id)
        result.linked = await self._platform.link_knowledge_base(agent_id, new_id, stale_ids=stale)
        return result

    async def _remove_duplicates(self, kb_name: str, keep_id: str) -> List[str]:
        """Best-effort removal of same-name leftovers from earlier failed deletes."""
        removed = []
        try:
            listing = await self._store.list()
        except KnowledgeStoreError as e:
            logger.warning("kb_duplicate_scan_failed", error=str(e))
            return removed

        for kb in listing:
            kb_id = kb.get("knowledge_base_id")
            if kb.get("knowledge_base_name") != kb_name or kb_id == keep_id:
                continue
            try:
                await self._store.delete(kb_id)
                removed.append(kb_id)
                logger.info("kb_duplicate_removed", kb_id=kb_id, kb_name=kb_name)
            except KnowledgeStoreError as e:
                logger.warning("kb_duplicate_remove_failed", kb_id=kb_id, error=str(e))
        return removed

    # -- staging ---------------------------------------------------------------

    def _staging_path(self, agent_id: str) -> Path:
        return self.state_dir / STAGING_DIR / f"{agent_id}.json"

    def _write_staging(
        self,
        agent_id: str,
        kb_name: str,
        old_id: Optional[str],
        documents: Iterable[KnowledgeDocument],
    ) -> Path:
        path = self._staging_path(agent_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "agent_id": agent_id,
            "kb_name": kb_name,
            "previous_kb_id": old_id,
            "staged_at": self._clock().isoformat(),
            "documents": [d.to_source() for d in documents],
        }
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(path)
        return path

    def _load_staging(self, agent_id: str) -> Optional[List[KnowledgeDocument]]:
        path = self._staging_path(agent_id)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            documents = [KnowledgeDocument.from_source(s) for s in payload["documents"]]
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.error("kb_staging_unreadable", path=str(path), error=str(e))
            return None
        logger.warning("kb_staging_found", agent_id=agent_id, documents=len(documents))
        return documents
