from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from crmcopilot.apps.api.deps import get_config_store, get_identity, get_orchestrator
from crmcopilot.apps.api.errors import outcome_response
from crmcopilot.apps.api.response import get_request_id, success_response
from crmcopilot.core.errors import InvalidRequestError
from crmcopilot.domain.ai import SUPPORTED_PROVIDERS
from crmcopilot.domain.crm import Identity
from crmcopilot.providers.llm.factory import default_model_for, is_embedding_capable
from crmcopilot.services.ai_config import AIConfigUpdate, SqlAIConfigStore, describe_config
from crmcopilot.services.orchestrator import AIOrchestrator


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ai", tags=["ai"])

# Older turns are dropped so long conversations keep a bounded prompt.
MAX_HISTORY_MESSAGES = 20


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(max_length=10000)


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)
    organization_name: str | None = None

    model_config = {"extra": "forbid"}


class EmailDraftRequest(BaseModel):
    purpose: str
    tone: str = "formal"
    customer_id: str | None = None
    deal_id: str | None = None
    context: str | None = Field(default=None, max_length=2000)

    model_config = {"extra": "forbid"}


class ConnectionTestRequest(BaseModel):
    provider: str
    # "__USE_STORED__" tests the key already saved for the tenant.
    api_key: str | None = None
    model: str | None = None
    endpoint: str | None = None

    model_config = {"extra": "forbid"}


class ModelListRequest(BaseModel):
    provider: str
    api_key: str | None = None
    endpoint: str | None = None

    model_config = {"extra": "forbid"}


class SettingsUpdateRequest(BaseModel):
    provider: str
    api_key: str | None = None
    model: str | None = None
    ollama_endpoint: str | None = None
    features: dict[str, bool] | None = None
    embedding_provider: str | None = None
    embedding_model: str | None = None

    model_config = {"extra": "forbid"}


@router.post("/chat")
async def chat(
    payload: ChatRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    orchestrator: AIOrchestrator = Depends(get_orchestrator),
):
    *history, last = payload.messages
    if last.role != "user":
        raise InvalidRequestError("最後一則訊息必須來自使用者")
    outcome = await orchestrator.chat(
        identity,
        last.content,
        history=[message.model_dump() for message in history[-MAX_HISTORY_MESSAGES:]],
        organization_name=payload.organization_name,
        request_id=get_request_id(request),
    )
    return outcome_response(request, outcome)


@router.post("/email-draft")
async def email_draft(
    payload: EmailDraftRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    orchestrator: AIOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.draft_email(
        identity,
        purpose=payload.purpose,
        tone=payload.tone,
        customer_id=payload.customer_id,
        deal_id=payload.deal_id,
        context=payload.context,
        request_id=get_request_id(request),
    )
    return outcome_response(request, outcome)


@router.post("/insights")
async def insights(
    request: Request,
    identity: Identity = Depends(get_identity),
    orchestrator: AIOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.sales_insights(identity, request_id=get_request_id(request))
    return outcome_response(request, outcome)


def _settings_view(config) -> dict:
    return {
        "config": describe_config(config, default_model=default_model_for(config.provider or "")),
        "providers": [
            {
                "id": provider,
                "default_model": default_model_for(provider),
                "supports_embedding": is_embedding_capable(provider),
            }
            for provider in SUPPORTED_PROVIDERS
        ],
    }


@router.get("/settings")
async def get_settings_view(
    request: Request,
    identity: Identity = Depends(get_identity),
    config_store: SqlAIConfigStore = Depends(get_config_store),
):
    config = await config_store.get(identity.tenant_id)
    return success_response(request=request, data=_settings_view(config))


@router.put("/settings")
async def update_settings(
    payload: SettingsUpdateRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    config_store: SqlAIConfigStore = Depends(get_config_store),
):
    update = AIConfigUpdate(
        provider=payload.provider,
        api_key=payload.api_key,
        model_name=payload.model,
        ollama_endpoint=payload.ollama_endpoint,
        features=payload.features,
        embedding_provider=payload.embedding_provider,
        embedding_model=payload.embedding_model,
    )
    config = await config_store.save(identity.tenant_id, update)
    logger.info("ai_settings_updated tenant_id=%s user_id=%s", identity.tenant_id, identity.user_id)
    return success_response(request=request, data=_settings_view(config))


@router.post("/settings/test")
async def test_connection(
    payload: ConnectionTestRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    orchestrator: AIOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.test_connection(
        identity,
        provider=payload.provider,
        api_key=payload.api_key,
        model=payload.model,
        endpoint=payload.endpoint,
        request_id=get_request_id(request),
    )
    return outcome_response(request, outcome)


@router.post("/settings/models")
async def list_models(
    payload: ModelListRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    orchestrator: AIOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.list_models(
        identity,
        provider=payload.provider,
        api_key=payload.api_key,
        endpoint=payload.endpoint,
        request_id=get_request_id(request),
    )
    return outcome_response(request, outcome)
