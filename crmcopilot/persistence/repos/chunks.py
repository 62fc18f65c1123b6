from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crmcopilot.domain.models import DocumentChunk


async def list_embedded_chunks(
    session: AsyncSession, tenant_id: str, *, document_ids: Sequence[str] | None = None
) -> list[DocumentChunk]:
    stmt = select(DocumentChunk).where(
        DocumentChunk.tenant_id == tenant_id,
        DocumentChunk.embedding.is_not(None),
    )
    if document_ids is not None:
        stmt = stmt.where(DocumentChunk.document_id.in_(list(document_ids)))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def replace_document_chunks(
    session: AsyncSession,
    *,
    tenant_id: str,
    document_id: str,
    chunks: Sequence[tuple[int, str, int, int, list[float]]],
    embedding_model: str,
) -> int:
    # Reindexing a document swaps all of its chunks in one transaction.
    await session.execute(
        delete(DocumentChunk).where(
            DocumentChunk.tenant_id == tenant_id,
            DocumentChunk.document_id == document_id,
        )
    )
    embedded_at = datetime.now(timezone.utc)
    for chunk_index, content, start_offset, end_offset, embedding in chunks:
        session.add(
            DocumentChunk(
                tenant_id=tenant_id,
                document_id=document_id,
                chunk_index=chunk_index,
                content=content,
                start_offset=start_offset,
                end_offset=end_offset,
                embedding=embedding,
                embedding_model=embedding_model,
                embedded_at=embedded_at,
            )
        )
    await session.commit()
    return len(chunks)


async def clear_tenant_embeddings(session: AsyncSession, tenant_id: str) -> int:
    # Used before a full reindex after the tenant switches embedding model.
    result = await session.execute(
        update(DocumentChunk)
        .where(DocumentChunk.tenant_id == tenant_id)
        .values(embedding=None, embedding_model=None, embedded_at=None)
    )
    await session.commit()
    return int(result.rowcount or 0)
