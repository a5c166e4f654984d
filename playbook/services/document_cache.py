"""
Document cache: read-through, TTL-refreshed, whole-set cache of playbook documents.

Responsibility: serve documents to the pipeline without a repository round-trip
per request. Lazy single-flight initialization, optional background refresh,
selective invalidation, pass-through when disabled. No eviction policy: the
whole active set is held in memory.

One instance is constructed at app startup and injected wherever it is needed.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from playbook.core.config import (
    DOCUMENT_CACHE_AUTO_REFRESH,
    DOCUMENT_CACHE_TTL_MINUTES,
    ENABLE_DOCUMENT_CACHE,
    SUMMARY_MAX_CHARS,
)
from playbook.services.document_repository import Document, DocumentRepository
from playbook.services.text_processing import summarize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentCacheEntry:
    id: str
    title: str
    full_text: str
    summary: str
    last_modified: datetime
    is_active: bool

    @classmethod
    def from_document(cls, doc: Document) -> "DocumentCacheEntry":
        return cls(
            id=doc.id,
            title=doc.title,
            full_text=doc.content,
            summary=summarize(doc.content, SUMMARY_MAX_CHARS),
            last_modified=doc.updated_at,
            is_active=doc.is_active,
        )

    def approx_bytes(self) -> int:
        # ~2 bytes per character
        return (len(self.id) + len(self.title) + len(self.full_text) + len(self.summary)) * 2


class DocumentCache:
    def __init__(
        self,
        repository: DocumentRepository,
        *,
        enabled: bool = ENABLE_DOCUMENT_CACHE,
        ttl_minutes: float = DOCUMENT_CACHE_TTL_MINUTES,
        auto_refresh: bool = DOCUMENT_CACHE_AUTO_REFRESH,
    ) -> None:
        self._repository = repository
        self.enabled = enabled
        self.ttl_minutes = ttl_minutes
        self.auto_refresh = auto_refresh
        self._entries: dict[str, DocumentCacheEntry] = {}
        self._initialized = False
        self._init_task: asyncio.Future | None = None
        self._refresh_task: asyncio.Task | None = None
        self._hits = 0
        self._misses = 0
        self._last_refresh: datetime | None = None
        # Full loads currently reading the repository, and when each id was last invalidated
        self._loads_in_flight = 0
        self._invalidation_seq = 0
        self._invalidated_at: dict[str, int] = {}
        logger.info(
            "[document_cache] configured enabled=%s ttl_minutes=%s auto_refresh=%s",
            enabled, ttl_minutes, auto_refresh,
        )

    # --- lifecycle ---

    def start(self) -> None:
        """Start the background refresh loop (no-op unless enabled with auto_refresh)."""
        if not (self.enabled and self.auto_refresh) or self._refresh_task is not None:
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.info("[document_cache:start] auto refresh every %s minutes", self.ttl_minutes)

    async def stop(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _refresh_loop(self) -> None:
        interval = max(self.ttl_minutes * 60, 0.001)
        while True:
            await asyncio.sleep(interval)
            await self.refresh()

    def is_ready(self) -> bool:
        return self._initialized

    # --- reads ---

    async def get_all(self) -> list[DocumentCacheEntry]:
        """All active documents, loading the cache on first use."""
        start = time.perf_counter()
        if not self.enabled:
            self._misses += 1
            docs = await self._repository.list_active()
            logger.info("[document_cache:get_all] disabled, fetched %d documents from repository", len(docs))
            return [DocumentCacheEntry.from_document(d) for d in docs if d.is_active]

        if self._initialized:
            self._hits += 1
        else:
            self._misses += 1
            await self._ensure_initialized()

        result = [e for e in self._entries.values() if e.is_active]
        logger.info(
            "[document_cache:get_all] OUT documents=%d in %.1fms hit_rate=%.0f%%",
            len(result), (time.perf_counter() - start) * 1000, self._hit_rate() * 100,
        )
        return result

    async def get_by_id(self, document_id: str) -> DocumentCacheEntry | None:
        if not self.enabled:
            self._misses += 1
            doc = await self._repository.find_by_id(document_id)
            return DocumentCacheEntry.from_document(doc) if doc and doc.is_active else None

        await self._ensure_initialized()
        entry = self._entries.get(document_id)
        if entry is not None:
            self._hits += 1
            return entry
        self._misses += 1
        return None

    # --- writes ---

    async def refresh(self) -> bool:
        """
        Reload the full set. On failure the existing contents are kept and the
        error is logged. Returns True when the reload succeeded.
        """
        if not self.enabled:
            logger.info("[document_cache:refresh] skipped, caching disabled")
            return False
        try:
            await self._load_all()
        except Exception:
            logger.exception("[document_cache:refresh] reload failed; keeping %d cached documents", len(self._entries))
            return False
        return True

    async def warm(self) -> bool:
        """Load the cache ahead of the first request. Returns True when documents were loaded."""
        if not self.enabled:
            logger.info("[document_cache:warm] skipped, caching disabled")
            return False
        if self._initialized:
            return await self.refresh()
        try:
            await self._ensure_initialized()
        except Exception:
            logger.exception("[document_cache:warm] initial load failed")
            return False
        return True

    async def invalidate(self, document_id: str) -> None:
        """
        Drop one entry and re-fetch only that document. It is re-inserted only
        when the repository still has it as active; on repository error it stays dropped.

        A full load already reading the repository when this is called does not
        restore its older copy of the document; see _load_all.
        """
        if not self.enabled:
            return
        self._invalidation_seq += 1
        self._invalidated_at[document_id] = self._invalidation_seq
        was_cached = self._entries.pop(document_id, None) is not None
        logger.info(
            "[document_cache:invalidate] IN  document_id=%s was_cached=%s loads_in_flight=%d",
            document_id, was_cached, self._loads_in_flight,
        )
        if not self._initialized and not self._loads_in_flight:
            return
        try:
            doc = await self._repository.find_by_id(document_id)
        except Exception as e:
            self._entries.pop(document_id, None)
            logger.warning("[document_cache:invalidate] re-fetch failed for %s, dropped: %s", document_id, e)
            return
        if doc is not None and doc.is_active:
            self._entries[document_id] = DocumentCacheEntry.from_document(doc)
            logger.info("[document_cache:invalidate] OUT refreshed document_id=%s", document_id)
        else:
            self._entries.pop(document_id, None)
            logger.info("[document_cache:invalidate] OUT removed document_id=%s", document_id)

    def clear(self) -> None:
        logger.info("[document_cache:clear] clearing %d documents", len(self._entries))
        self._entries = {}
        self._initialized = False
        self._hits = 0
        self._misses = 0

    def stats(self) -> dict[str, Any]:
        return {
            "count": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hit_rate(), 4),
            "last_refresh": self._last_refresh,
            "approx_memory_bytes": sum(e.approx_bytes() for e in self._entries.values()),
            "ready": self._initialized,
            "enabled": self.enabled,
        }

    # --- internals ---

    def _hit_rate(self) -> float:
        total = self._hits + self._misses
        return self._hits / total if total else 0.0

    async def _ensure_initialized(self) -> None:
        """Single-flight: concurrent callers await the same in-flight load."""
        if self._initialized:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def _initialize(self) -> None:
        start = time.perf_counter()
        logger.info("[document_cache:initialize] loading documents")
        await self._load_all()
        self._initialized = True
        logger.info(
            "[document_cache:initialize] complete documents=%d in %.1fms",
            len(self._entries), (time.perf_counter() - start) * 1000,
        )

    async def _load_all(self) -> None:
        since = self._invalidation_seq
        self._loads_in_flight += 1
        try:
            docs = await self._repository.list_active()
        finally:
            self._loads_in_flight -= 1
        entries = {
            d.id: DocumentCacheEntry.from_document(d) for d in docs if d.is_active
        }
        # Ids invalidated after this load started reading keep their targeted
        # re-fetch, or stay out until it lands
        for document_id, seq in self._invalidated_at.items():
            if seq <= since:
                continue
            current = self._entries.get(document_id)
            if current is not None:
                entries[document_id] = current
            else:
                entries.pop(document_id, None)
        self._entries = entries
        if not self._loads_in_flight:
            self._invalidated_at.clear()
        self._last_refresh = datetime.now(timezone.utc)
        logger.info("[document_cache:load_all] loaded %d documents", len(self._entries))
