from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from crmcopilot.apps.api.deps import get_identity, get_indexer, get_orchestrator, get_rate_limiter
from crmcopilot.apps.api.errors import outcome_response
from crmcopilot.apps.api.response import get_request_id, success_response
from crmcopilot.domain.crm import Identity
from crmcopilot.services.ingestion import DocumentIndexer
from crmcopilot.services.orchestrator import AIOrchestrator
from crmcopilot.services.rate_limit import FixedWindowRateLimiter, enforce_rate_limit


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/documents", tags=["documents"])


class SearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=1000)
    customer_id: str | None = None
    top_k: int | None = Field(default=None, ge=1, le=20)

    model_config = {"extra": "forbid"}


class AnalyzeRequest(BaseModel):
    analysis_type: str = "contract"

    model_config = {"extra": "forbid"}


@router.post("/search")
async def search_documents(
    payload: SearchRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    orchestrator: AIOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.search_documents(
        identity,
        payload.query,
        customer_id=payload.customer_id,
        top_k=payload.top_k,
        request_id=get_request_id(request),
    )
    return outcome_response(request, outcome)


@router.post("/reindex")
async def reindex_documents(
    request: Request,
    identity: Identity = Depends(get_identity),
    limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
    indexer: DocumentIndexer = Depends(get_indexer),
):
    enforce_rate_limit(limiter, "document_reindex", identity)
    summary = await indexer.reindex_tenant(identity.tenant_id)
    logger.info(
        "documents_reindexed tenant_id=%s user_id=%s documents=%s failed=%s",
        identity.tenant_id,
        identity.user_id,
        summary["documents"],
        summary["failed"],
    )
    return success_response(request=request, data=summary)


@router.post("/{document_id}/analyze")
async def analyze_document(
    document_id: str,
    payload: AnalyzeRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    orchestrator: AIOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.analyze_document(
        identity,
        document_id,
        analysis_type=payload.analysis_type,
        request_id=get_request_id(request),
    )
    return outcome_response(request, outcome)


@router.post("/{document_id}/index")
async def index_document(
    document_id: str,
    request: Request,
    identity: Identity = Depends(get_identity),
    indexer: DocumentIndexer = Depends(get_indexer),
):
    chunks = await indexer.index_document(identity.tenant_id, document_id)
    return success_response(request=request, data={"document_id": document_id, "chunks": chunks})
