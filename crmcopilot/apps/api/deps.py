from __future__ import annotations

from functools import lru_cache
from typing import AsyncGenerator

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from crmcopilot.core.config import get_settings
from crmcopilot.domain.crm import Identity
from crmcopilot.persistence.db import SessionLocal, get_session
from crmcopilot.persistence.repos.crm import SqlCrmStore
from crmcopilot.providers.llm.factory import ProviderResolver
from crmcopilot.providers.retrieval.memory_cosine import InMemoryCosineIndex, sql_chunk_loader
from crmcopilot.services.ai_config import SqlAIConfigStore
from crmcopilot.services.audit import SqlAuditSink
from crmcopilot.services.context import ContextAssembler
from crmcopilot.services.ingestion import DocumentIndexer, SqlChunkSink
from crmcopilot.services.orchestrator import AIOrchestrator
from crmcopilot.services.rate_limit import FixedWindowRateLimiter
from crmcopilot.services.retrieval import RetrievalPipeline


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def get_identity(request: Request) -> Identity:
    # The upstream session layer authenticates and forwards identity in headers.
    tenant_id = request.headers.get("X-Tenant-Id")
    user_id = request.headers.get("X-User-Id")
    if not tenant_id or not user_id:
        raise _auth_error("請先登入")
    return Identity(tenant_id=tenant_id, user_id=user_id, user_name=request.headers.get("X-User-Name"))


@lru_cache
def get_rate_limiter() -> FixedWindowRateLimiter:
    # Process-wide counters; one limiter instance shared by every request.
    return FixedWindowRateLimiter()


@lru_cache
def get_config_store() -> SqlAIConfigStore:
    return SqlAIConfigStore(SessionLocal)


@lru_cache
def get_crm_store() -> SqlCrmStore:
    return SqlCrmStore(SessionLocal)


@lru_cache
def get_resolver() -> ProviderResolver:
    return ProviderResolver(settings=get_settings())


@lru_cache
def get_chunk_index() -> InMemoryCosineIndex:
    settings = get_settings()
    return InMemoryCosineIndex(
        sql_chunk_loader(SessionLocal),
        ttl_s=settings.embedding_cache_ttl_s,
        max_tenants=settings.embedding_cache_max_tenants,
    )


@lru_cache
def get_retrieval() -> RetrievalPipeline:
    return RetrievalPipeline(
        config_store=get_config_store(),
        resolver=get_resolver(),
        index=get_chunk_index(),
        store=get_crm_store(),
        settings=get_settings(),
    )


@lru_cache
def get_orchestrator() -> AIOrchestrator:
    settings = get_settings()
    store = get_crm_store()
    return AIOrchestrator(
        limiter=get_rate_limiter(),
        config_store=get_config_store(),
        resolver=get_resolver(),
        context=ContextAssembler(store, settings=settings),
        retrieval=get_retrieval(),
        store=store,
        audit=SqlAuditSink(SessionLocal),
        settings=settings,
    )


@lru_cache
def get_indexer() -> DocumentIndexer:
    return DocumentIndexer(
        config_store=get_config_store(),
        resolver=get_resolver(),
        store=get_crm_store(),
        sink=SqlChunkSink(SessionLocal),
        index=get_chunk_index(),
        settings=get_settings(),
    )
