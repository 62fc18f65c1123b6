from __future__ import annotations

import pytest

from crmcopilot.providers.retrieval.memory_cosine import IndexedChunk, InMemoryCosineIndex, cosine_similarity


class CountingLoader:
    def __init__(self, chunks: dict[str, list[IndexedChunk]]) -> None:
        self.chunks = chunks
        self.calls: list[tuple[str, tuple[str, ...] | None]] = []

    async def __call__(self, tenant_id, document_ids):
        self.calls.append((tenant_id, tuple(document_ids) if document_ids is not None else None))
        rows = self.chunks.get(tenant_id, [])
        if document_ids is not None:
            rows = [row for row in rows if row.document_id in set(document_ids)]
        return rows


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _chunk(doc: str, idx: int, vector: tuple[float, ...]) -> IndexedChunk:
    return IndexedChunk(chunk_id=f"{doc}-{idx}", document_id=doc, content=f"{doc} part {idx}", chunk_index=idx, embedding=vector)


def test_cosine_similarity_edge_cases() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    # Dimension mismatch after a model switch scores as unrelated.
    assert cosine_similarity([1.0, 0.0, 0.0], [1.0, 0.0]) == 0.0


@pytest.mark.asyncio
async def test_search_orders_by_score_and_applies_threshold() -> None:
    loader = CountingLoader(
        {
            "t1": [
                _chunk("d1", 0, (1.0, 0.0)),
                _chunk("d1", 1, (0.8, 0.6)),
                _chunk("d2", 0, (0.0, 1.0)),
            ]
        }
    )
    index = InMemoryCosineIndex(loader, time_provider=FakeClock())
    hits = await index.search("t1", [1.0, 0.0], top_k=5, min_score=0.7)
    assert [hit.chunk_id for hit in hits] == ["d1-0", "d1-1"]
    assert hits[0].score >= hits[1].score


@pytest.mark.asyncio
async def test_full_loads_are_cached_until_ttl() -> None:
    clock = FakeClock()
    loader = CountingLoader({"t1": [_chunk("d1", 0, (1.0, 0.0))]})
    index = InMemoryCosineIndex(loader, ttl_s=300.0, time_provider=clock)
    await index.search("t1", [1.0, 0.0], top_k=5, min_score=0.0)
    clock.now = 299.0
    await index.search("t1", [1.0, 0.0], top_k=5, min_score=0.0)
    assert len(loader.calls) == 1
    clock.now = 301.0
    await index.search("t1", [1.0, 0.0], top_k=5, min_score=0.0)
    assert len(loader.calls) == 2


@pytest.mark.asyncio
async def test_filtered_loads_bypass_the_cache() -> None:
    loader = CountingLoader({"t1": [_chunk("d1", 0, (1.0, 0.0)), _chunk("d2", 0, (1.0, 0.0))]})
    index = InMemoryCosineIndex(loader, time_provider=FakeClock())
    hits = await index.search("t1", [1.0, 0.0], top_k=5, min_score=0.0, document_ids=["d2"])
    await index.search("t1", [1.0, 0.0], top_k=5, min_score=0.0, document_ids=["d2"])
    assert [hit.document_id for hit in hits] == ["d2"]
    assert len(loader.calls) == 2
    assert index.cached_tenants() == []


@pytest.mark.asyncio
async def test_empty_document_filter_returns_nothing_without_loading() -> None:
    loader = CountingLoader({"t1": [_chunk("d1", 0, (1.0, 0.0))]})
    index = InMemoryCosineIndex(loader, time_provider=FakeClock())
    assert await index.search("t1", [1.0, 0.0], top_k=5, min_score=0.0, document_ids=[]) == []
    assert loader.calls == []


@pytest.mark.asyncio
async def test_oldest_tenant_is_evicted_beyond_capacity() -> None:
    clock = FakeClock()
    loader = CountingLoader({})
    index = InMemoryCosineIndex(loader, max_tenants=3, time_provider=clock)
    for tenant in ("t1", "t2", "t3", "t4"):
        clock.now += 1.0
        await index.search(tenant, [1.0], top_k=1, min_score=0.0)
    assert sorted(index.cached_tenants()) == ["t2", "t3", "t4"]


@pytest.mark.asyncio
async def test_invalidate_forces_reload() -> None:
    loader = CountingLoader({"t1": []})
    index = InMemoryCosineIndex(loader, time_provider=FakeClock())
    await index.search("t1", [1.0], top_k=1, min_score=0.0)
    index.invalidate("t1")
    await index.search("t1", [1.0], top_k=1, min_score=0.0)
    assert len(loader.calls) == 2


@pytest.mark.asyncio
async def test_tenants_never_see_each_others_chunks() -> None:
    loader = CountingLoader({"t1": [_chunk("d1", 0, (1.0, 0.0))], "t2": []})
    index = InMemoryCosineIndex(loader, time_provider=FakeClock())
    assert await index.search("t2", [1.0, 0.0], top_k=5, min_score=0.0) == []
