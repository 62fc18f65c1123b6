from __future__ import annotations

import asyncio
import logging

from crmcopilot.core.config import Settings, get_settings
from crmcopilot.core.errors import CopilotError, RetrievalError
from crmcopilot.domain.ai import AIConfig, RetrievalResult, RetrievedChunk
from crmcopilot.domain.crm import CrmStore
from crmcopilot.providers.llm.base import EmbeddingHandle
from crmcopilot.providers.llm.factory import ProviderResolver
from crmcopilot.providers.retrieval.base import ChunkIndex
from crmcopilot.services.ai_config import AIConfigStore


logger = logging.getLogger(__name__)

UNKNOWN_DOCUMENT_NAME = "未知文件"


class RetrievalPipeline:
    """Embedding-similarity lookup of tenant document chunks.

    ``retrieve`` returns ``None`` when the tenant has no usable embedding
    configuration. That state is re-checked on every call and never cached.
    """

    def __init__(
        self,
        *,
        config_store: AIConfigStore,
        resolver: ProviderResolver,
        index: ChunkIndex,
        store: CrmStore,
        settings: Settings | None = None,
    ) -> None:
        self._config_store = config_store
        self._resolver = resolver
        self._index = index
        self._store = store
        self._settings = settings or get_settings()

    def _clamp_top_k(self, top_k: int | None) -> int:
        effective = self._settings.retrieval_top_k if top_k is None else int(top_k)
        return max(0, min(effective, self._settings.retrieval_max_top_k))

    async def retrieve(
        self,
        tenant_id: str,
        query: str,
        *,
        customer_id: str | None = None,
        top_k: int | None = None,
        min_score: float | None = None,
        config: AIConfig | None = None,
    ) -> RetrievalResult | None:
        resolved_config = config if config is not None else await self._config_store.get(tenant_id)
        embedder = self._resolver.resolve_embedder(resolved_config)
        if embedder is None:
            logger.info("retrieval_not_configured tenant_id=%s", tenant_id)
            return None

        effective_top_k = self._clamp_top_k(top_k)
        if effective_top_k == 0:
            return RetrievalResult(chunks=(), top_k=0)
        threshold = self._settings.retrieval_min_score if min_score is None else min_score

        try:
            chunks = await self._lookup(
                embedder,
                tenant_id,
                query,
                customer_id=customer_id,
                top_k=effective_top_k,
                min_score=threshold,
            )
        except CopilotError:
            raise
        except Exception as exc:
            # Store and index failures surface as one retrieval error, never as raw driver errors.
            logger.warning(
                "retrieval_lookup_failed tenant_id=%s error=%s",
                tenant_id,
                type(exc).__name__,
                exc_info=True,
            )
            raise RetrievalError() from exc
        logger.info(
            "retrieval_complete tenant_id=%s customer_filter=%s hits=%s top_k=%s",
            tenant_id,
            bool(customer_id),
            len(chunks),
            effective_top_k,
        )
        return RetrievalResult(chunks=chunks, top_k=effective_top_k)

    async def _lookup(
        self,
        embedder: EmbeddingHandle,
        tenant_id: str,
        query: str,
        *,
        customer_id: str | None,
        top_k: int,
        min_score: float,
    ) -> tuple[RetrievedChunk, ...]:
        embed_task = embedder.embed_one(query, timeout_s=self._settings.embedding_timeout_s)
        if customer_id:
            query_embedding, document_ids = await asyncio.gather(
                embed_task,
                self._store.customer_document_ids(tenant_id, customer_id),
            )
        else:
            query_embedding, document_ids = await embed_task, None

        hits = await self._index.search(
            tenant_id,
            query_embedding,
            top_k=top_k,
            min_score=min_score,
            document_ids=document_ids,
        )
        # Re-sort on full precision so ordering holds whatever index produced the hits.
        hits = sorted(hits, key=lambda hit: hit.score, reverse=True)[:top_k]
        names = await self._store.document_names(tenant_id, sorted({hit.document_id for hit in hits}))
        return tuple(
            RetrievedChunk(
                document_id=hit.document_id,
                document_name=names.get(hit.document_id, UNKNOWN_DOCUMENT_NAME),
                content=hit.content,
                chunk_index=hit.chunk_index,
                score=hit.score,
            )
            for hit in hits
        )


def format_citations(result: RetrievalResult) -> str:
    if not result.chunks:
        return ""
    blocks = [
        f"[文件 {idx}: {chunk.document_name} (相關度: {round(chunk.score * 100)}%)]\n{chunk.content}"
        for idx, chunk in enumerate(result.chunks, start=1)
    ]
    return "以下是與查詢相關的文件內容：\n\n" + "\n\n---\n\n".join(blocks)
