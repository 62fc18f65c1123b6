from __future__ import annotations

import logging
from typing import Callable, Protocol, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crmcopilot.core.config import Settings, get_settings
from crmcopilot.core.errors import DocumentUnavailableError, RetrievalError, RetrievalNotConfiguredError
from crmcopilot.domain.crm import CrmStore
from crmcopilot.ingestion.chunking import chunk_text
from crmcopilot.persistence.repos.chunks import clear_tenant_embeddings, replace_document_chunks
from crmcopilot.persistence.repos.crm import list_extracted_document_ids
from crmcopilot.providers.llm.factory import ProviderResolver
from crmcopilot.providers.retrieval.base import ChunkIndex
from crmcopilot.services.ai_config import AIConfigStore


logger = logging.getLogger(__name__)

# Embedding APIs cap batch sizes; 64 fits every supported provider.
EMBED_BATCH_SIZE = 64

ChunkRow = tuple[int, str, int, int, list[float]]


class ChunkSink(Protocol):
    async def save_chunks(
        self, tenant_id: str, document_id: str, chunks: Sequence[ChunkRow], *, embedding_model: str
    ) -> int:
        ...

    async def clear_embeddings(self, tenant_id: str) -> int:
        ...

    async def indexable_document_ids(self, tenant_id: str) -> list[str]:
        ...


class SqlChunkSink:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save_chunks(self, tenant_id, document_id, chunks, *, embedding_model):
        async with self._session_factory() as session:
            try:
                return await replace_document_chunks(
                    session,
                    tenant_id=tenant_id,
                    document_id=document_id,
                    chunks=chunks,
                    embedding_model=embedding_model,
                )
            except SQLAlchemyError as exc:
                await session.rollback()
                raise RetrievalError("文件索引寫入失敗。") from exc

    async def clear_embeddings(self, tenant_id):
        async with self._session_factory() as session:
            return await clear_tenant_embeddings(session, tenant_id)

    async def indexable_document_ids(self, tenant_id):
        async with self._session_factory() as session:
            return await list_extracted_document_ids(session, tenant_id)


class DocumentIndexer:
    """Chunks extracted document text, embeds it in batches and stores the vectors.

    Every write invalidates the tenant's cached chunk index so the next
    search sees the new chunks.
    """

    def __init__(
        self,
        *,
        config_store: AIConfigStore,
        resolver: ProviderResolver,
        store: CrmStore,
        sink: ChunkSink,
        index: ChunkIndex,
        settings: Settings | None = None,
    ) -> None:
        self._config_store = config_store
        self._resolver = resolver
        self._store = store
        self._sink = sink
        self._index = index
        self._settings = settings or get_settings()

    async def _embedder(self, tenant_id: str):
        config = await self._config_store.get(tenant_id)
        embedder = self._resolver.resolve_embedder(config)
        if embedder is None:
            raise RetrievalNotConfiguredError()
        return embedder

    async def index_document(self, tenant_id: str, document_id: str) -> int:
        embedder = await self._embedder(tenant_id)
        document = await self._store.get_document(tenant_id, document_id)
        if document is None:
            raise DocumentUnavailableError("找不到此文件")
        if not document.content or not document.content.strip():
            raise DocumentUnavailableError()

        pieces = chunk_text(document.content)
        texts = [content for content, _start, _end in pieces]
        embeddings: list[list[float]] = []
        for offset in range(0, len(texts), EMBED_BATCH_SIZE):
            batch = texts[offset : offset + EMBED_BATCH_SIZE]
            embeddings.extend(await embedder.embed(batch, timeout_s=self._settings.embedding_timeout_s))
        if len(embeddings) != len(texts):
            raise RetrievalError("Embedding 回傳數量不符。")

        rows: list[ChunkRow] = [
            (index, content, start, end, vector)
            for index, ((content, start, end), vector) in enumerate(zip(pieces, embeddings))
        ]
        stored = await self._sink.save_chunks(tenant_id, document_id, rows, embedding_model=embedder.model)
        self._index.invalidate(tenant_id)
        logger.info(
            "document_indexed tenant_id=%s document_id=%s chunks=%s model=%s",
            tenant_id,
            document_id,
            stored,
            embedder.model,
        )
        return stored

    async def reindex_tenant(self, tenant_id: str) -> dict[str, int]:
        """Re-embed every extracted document, e.g. after an embedding model switch.

        One failing document does not stop the rest; failures are counted.
        """
        await self._embedder(tenant_id)
        document_ids = await self._sink.indexable_document_ids(tenant_id)
        if not document_ids:
            return {"documents": 0, "reindexed": 0, "failed": 0}

        cleared = await self._sink.clear_embeddings(tenant_id)
        self._index.invalidate(tenant_id)
        logger.info("tenant_embeddings_cleared tenant_id=%s chunks=%s", tenant_id, cleared)

        reindexed = 0
        failed = 0
        for document_id in document_ids:
            try:
                await self.index_document(tenant_id, document_id)
            except (DocumentUnavailableError, RetrievalError) as exc:
                failed += 1
                logger.warning(
                    "document_reindex_failed tenant_id=%s document_id=%s code=%s",
                    tenant_id,
                    document_id,
                    exc.code,
                )
                continue
            reindexed += 1
        return {"documents": len(document_ids), "reindexed": reindexed, "failed": failed}
