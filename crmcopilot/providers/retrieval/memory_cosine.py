from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import threading
import time
from typing import Awaitable, Callable, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crmcopilot.core.errors import RetrievalError
from crmcopilot.domain.ai import ScoredChunk
from crmcopilot.persistence.repos.chunks import list_embedded_chunks


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexedChunk:
    chunk_id: str
    document_id: str
    content: str
    chunk_index: int
    embedding: tuple[float, ...]


ChunkLoader = Callable[[str, Sequence[str] | None], Awaitable[list[IndexedChunk]]]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    # Mismatched dimensions come from a model switch without reindexing; treat as unrelated.
    if len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    denominator = math.sqrt(norm_a) * math.sqrt(norm_b)
    if denominator == 0:
        return 0.0
    return dot / denominator


def sql_chunk_loader(session_factory: Callable[[], AsyncSession]) -> ChunkLoader:
    async def _load(tenant_id: str, document_ids: Sequence[str] | None) -> list[IndexedChunk]:
        try:
            async with session_factory() as session:
                rows = await list_embedded_chunks(session, tenant_id, document_ids=document_ids)
        except SQLAlchemyError as exc:
            raise RetrievalError() from exc
        chunks: list[IndexedChunk] = []
        for row in rows:
            if not isinstance(row.embedding, list) or not row.embedding:
                continue
            chunks.append(
                IndexedChunk(
                    chunk_id=str(row.id),
                    document_id=row.document_id,
                    content=row.content,
                    chunk_index=row.chunk_index,
                    embedding=tuple(float(v) for v in row.embedding),
                )
            )
        return chunks

    return _load


class InMemoryCosineIndex:
    """Tenant-scoped cosine search over persisted chunk embeddings.

    Full-tenant loads are cached for ``ttl_s`` seconds for at most
    ``max_tenants`` tenants; the oldest load is evicted first. Filtered
    loads (a document id subset) always hit the loader and are never cached.
    Sized for CRM-scale corpora held in application memory.
    """

    def __init__(
        self,
        loader: ChunkLoader,
        *,
        ttl_s: float = 300.0,
        max_tenants: int = 3,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._loader = loader
        self._ttl_s = ttl_s
        self._max_tenants = max(1, max_tenants)
        self._time_provider = time_provider or time.monotonic
        self._cache: dict[str, tuple[float, list[IndexedChunk]]] = {}
        # Guards cache bookkeeping only; never held while the loader awaits.
        self._lock = threading.Lock()

    def invalidate(self, tenant_id: str) -> None:
        with self._lock:
            self._cache.pop(tenant_id, None)

    def cached_tenants(self) -> list[str]:
        with self._lock:
            return list(self._cache)

    async def _chunks(self, tenant_id: str, document_ids: Sequence[str] | None) -> list[IndexedChunk]:
        if document_ids is not None:
            return await self._loader(tenant_id, document_ids)
        now = self._time_provider()
        with self._lock:
            cached = self._cache.get(tenant_id)
            if cached is not None and now - cached[0] < self._ttl_s:
                return cached[1]
        chunks = await self._loader(tenant_id, None)
        with self._lock:
            if tenant_id not in self._cache and len(self._cache) >= self._max_tenants:
                oldest = min(self._cache, key=lambda key: self._cache[key][0])
                del self._cache[oldest]
            self._cache[tenant_id] = (self._time_provider(), chunks)
        logger.debug("chunk_index_loaded tenant_id=%s chunks=%s", tenant_id, len(chunks))
        return chunks

    async def search(
        self,
        tenant_id: str,
        embedding: Sequence[float],
        *,
        top_k: int,
        min_score: float,
        document_ids: Sequence[str] | None = None,
    ) -> list[ScoredChunk]:
        if document_ids is not None and not document_ids:
            return []
        chunks = await self._chunks(tenant_id, document_ids)
        scored: list[ScoredChunk] = []
        for chunk in chunks:
            score = cosine_similarity(chunk.embedding, embedding)
            if score >= min_score:
                scored.append(
                    ScoredChunk(
                        chunk_id=chunk.chunk_id,
                        document_id=chunk.document_id,
                        content=chunk.content,
                        chunk_index=chunk.chunk_index,
                        score=score,
                    )
                )
        # Secondary keys keep ties deterministic.
        scored.sort(key=lambda item: (-item.score, item.document_id, item.chunk_index))
        return scored[: max(0, top_k)]
