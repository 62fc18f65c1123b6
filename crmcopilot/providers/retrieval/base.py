from __future__ import annotations

from typing import Protocol, Sequence

from crmcopilot.domain.ai import ScoredChunk


class ChunkIndex(Protocol):
    async def search(
        self,
        tenant_id: str,
        embedding: Sequence[float],
        *,
        top_k: int,
        min_score: float,
        document_ids: Sequence[str] | None = None,
    ) -> list[ScoredChunk]:
        ...

    def invalidate(self, tenant_id: str) -> None:
        ...
