from __future__ import annotations

from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from crmcopilot.apps.api import deps
from crmcopilot.apps.api.main import create_app
from crmcopilot.core.config import Settings
from crmcopilot.domain.ai import AIConfig
from crmcopilot.domain.crm import Identity
from crmcopilot.providers.llm.factory import ProviderResolver, ProviderSpec
from crmcopilot.providers.llm.fake import FakeEmbeddingAdapter, FakeModelAdapter
from crmcopilot.services.context import ContextAssembler
from crmcopilot.services.ingestion import DocumentIndexer
from crmcopilot.services.orchestrator import AIOrchestrator
from crmcopilot.services.rate_limit import CAPABILITY_LIMITS, FixedWindowRateLimiter, rate_limit_key
from crmcopilot.services.retrieval import RetrievalPipeline
from crmcopilot.tests.utils.fakes import (
    FakeChunkIndex,
    FakeChunkSink,
    FakeConfigStore,
    FakeCrmStore,
    RecordingAuditSink,
    TenantData,
    make_config,
)


HEADERS = {"X-Tenant-Id": "t1", "X-User-Id": "u1", "X-User-Name": "王業務"}
IDENTITY = Identity(tenant_id="t1", user_id="u1")
NOW = datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc)


def _wire(config: AIConfig | None = None, *, reply: str = "您好，這是 AI 回覆。"):
    # Build the service graph from in-memory fakes so no database is touched.
    settings = Settings()
    spec = ProviderSpec(
        default_model="fake-model",
        test_model="fake-model",
        requires_api_key=True,
        build=lambda params, _settings: FakeModelAdapter(reply),
    )
    resolver = ProviderResolver(providers={"openai": spec})
    limiter = FixedWindowRateLimiter(time_provider=lambda: 100.0)
    config_store = FakeConfigStore({"t1": config} if config is not None else {})
    store = FakeCrmStore({"t1": TenantData()})
    index = FakeChunkIndex()
    orchestrator = AIOrchestrator(
        limiter=limiter,
        config_store=config_store,
        resolver=resolver,
        context=ContextAssembler(store, settings=settings, now_provider=lambda: NOW),
        retrieval=RetrievalPipeline(
            config_store=config_store, resolver=resolver, index=index, store=store, settings=settings
        ),
        store=store,
        audit=RecordingAuditSink(),
        settings=settings,
    )
    embedding_spec = ProviderSpec(
        default_model="fake-model",
        test_model="fake-model",
        requires_api_key=True,
        build=lambda params, _settings: FakeEmbeddingAdapter(),
        default_embedding_model="fake-embed",
    )
    indexer = DocumentIndexer(
        config_store=config_store,
        resolver=ProviderResolver(providers={"openai": embedding_spec}),
        store=store,
        sink=FakeChunkSink(),
        index=index,
        settings=settings,
    )
    app = create_app()
    app.dependency_overrides[deps.get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[deps.get_rate_limiter] = lambda: limiter
    app.dependency_overrides[deps.get_config_store] = lambda: config_store
    app.dependency_overrides[deps.get_indexer] = lambda: indexer
    return app, limiter, config_store


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_echoes_request_id() -> None:
    app, _limiter, _store = _wire()
    async with _client(app) as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-health"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert body["data"]["providers"] == ["openai", "anthropic", "google", "ollama"]
    assert body["data"]["rate_limit_keys"] == 0
    assert body["meta"]["request_id"] == "req-health"
    assert response.headers["X-Request-Id"] == "req-health"


@pytest.mark.asyncio
async def test_missing_identity_is_unauthorized() -> None:
    app, _limiter, _store = _wire(make_config())
    async with _client(app) as client:
        response = await client.post("/v1/ai/chat", json={"messages": [{"role": "user", "content": "hi"}]})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_chat_success_envelope() -> None:
    app, _limiter, _store = _wire(make_config())
    payload = {
        "messages": [
            {"role": "user", "content": "你好"},
            {"role": "assistant", "content": "您好！"},
            {"role": "user", "content": "本月有哪些商機？"},
        ]
    }
    async with _client(app) as client:
        response = await client.post("/v1/ai/chat", json=payload, headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["reply"] == "您好，這是 AI 回覆。"
    assert body["data"]["model"] == "fake-model"
    assert body["meta"]["api_version"] == "v1"
    assert body["meta"]["request_id"]


@pytest.mark.asyncio
async def test_chat_last_message_must_be_from_user() -> None:
    app, _limiter, _store = _wire(make_config())
    payload = {"messages": [{"role": "assistant", "content": "您好！"}]}
    async with _client(app) as client:
        response = await client.post("/v1/ai/chat", json=payload, headers=HEADERS)
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "AI_INVALID_REQUEST"


@pytest.mark.asyncio
async def test_unknown_fields_are_rejected() -> None:
    app, _limiter, _store = _wire(make_config())
    payload = {"purpose": "follow_up", "tone": "formal", "temperature": 2}
    async with _client(app) as client:
        response = await client.post("/v1/ai/email-draft", json=payload, headers=HEADERS)
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "AI_INVALID_REQUEST"


@pytest.mark.asyncio
async def test_rate_limited_chat_returns_retry_after() -> None:
    app, limiter, config_store = _wire(make_config())
    policy = CAPABILITY_LIMITS["chat"]
    for _ in range(policy.max_requests):
        limiter.check(rate_limit_key("chat", IDENTITY), policy.max_requests, policy.window_s)

    async with _client(app) as client:
        response = await client.post(
            "/v1/ai/chat", json={"messages": [{"role": "user", "content": "hi"}]}, headers=HEADERS
        )

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    error = response.json()["error"]
    assert error["code"] == "AI_RATE_LIMITED"
    assert error["retry_after_s"] == 60
    assert response.json()["meta"]["capability"] == "chat"
    assert config_store.calls == []


@pytest.mark.asyncio
async def test_unconfigured_tenant_is_forbidden() -> None:
    app, _limiter, _store = _wire()
    async with _client(app) as client:
        response = await client.post("/v1/ai/insights", headers=HEADERS)
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "AI_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_settings_view_masks_credential() -> None:
    app, _limiter, _store = _wire(make_config())
    async with _client(app) as client:
        response = await client.get("/v1/ai/settings", headers=HEADERS)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["config"]["provider"] == "openai"
    assert data["config"]["has_api_key"] is True
    assert "sk-test-1234567890" not in response.text
    assert {provider["id"] for provider in data["providers"]} == {"openai", "anthropic", "google", "ollama"}


@pytest.mark.asyncio
async def test_reindex_is_rate_limited_per_organization() -> None:
    app, _limiter, _store = _wire(make_config())
    async with _client(app) as client:
        statuses = [
            (await client.post("/v1/documents/reindex", headers=HEADERS)).status_code for _ in range(3)
        ]
        last = await client.post("/v1/documents/reindex", headers=HEADERS)
    assert statuses == [200, 200, 429]
    assert "Retry-After" in last.headers
