from __future__ import annotations

from datetime import datetime, timezone

import pytest

from crmcopilot.agent.parsing import EMAIL_FALLBACK_SUBJECT
from crmcopilot.core.config import Settings
from crmcopilot.core.errors import UpstreamError
from crmcopilot.domain.ai import AIConfig, ScoredChunk
from crmcopilot.domain.crm import DealRecord, DocumentRecord, Identity
from crmcopilot.providers.llm.factory import ProviderResolver, ProviderSpec
from crmcopilot.providers.llm.fake import FakeEmbeddingAdapter, FakeModelAdapter
from crmcopilot.services.context import ContextAssembler
from crmcopilot.services.orchestrator import (
    STATUS_FAILED,
    STATUS_REJECTED,
    STATUS_SUCCESS,
    USE_STORED_CREDENTIAL,
    AIOrchestrator,
)
from crmcopilot.services.rate_limit import CAPABILITY_LIMITS, FixedWindowRateLimiter, rate_limit_key
from crmcopilot.services.retrieval import RetrievalPipeline
from crmcopilot.tests.utils.fakes import (
    FakeChunkIndex,
    FakeConfigStore,
    FakeCrmStore,
    RecordingAuditSink,
    TenantData,
    make_config,
)


NOW = datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc)
IDENTITY = Identity(tenant_id="t1", user_id="u1", user_name="王業務")


class ChatAndEmbedAdapter(FakeModelAdapter):
    """One adapter serving both generation and embeddings, like a real provider client."""

    def __init__(self, response: str = "This is a fake response.") -> None:
        super().__init__(response)
        self._embedder = FakeEmbeddingAdapter()
        self.embed_calls = self._embedder.calls

    async def embed(self, texts, *, model: str) -> list[list[float]]:
        return await self._embedder.embed(texts, model=model)


class Harness:
    def __init__(
        self,
        *,
        config: AIConfig | None = None,
        adapter: FakeModelAdapter | None = None,
        tenant: TenantData | None = None,
        failing: tuple[str, ...] = (),
        audit: RecordingAuditSink | None = None,
        settings: Settings | None = None,
        embeddings: bool = False,
        hits: list[ScoredChunk] | None = None,
    ) -> None:
        self.adapter = adapter or (ChatAndEmbedAdapter() if embeddings else FakeModelAdapter())
        self.built: list = []
        spec = ProviderSpec(
            default_model="fake-model",
            test_model="fake-test-model",
            requires_api_key=True,
            build=self._build,
            default_embedding_model="fake-embed" if embeddings else None,
        )
        # Retrieval is only configured when the harness is built with embeddings.
        resolver = ProviderResolver(providers={"openai": spec, "anthropic": spec})
        self.settings = settings or Settings()
        self.limiter = FixedWindowRateLimiter(time_provider=lambda: 100.0)
        self.config_store = FakeConfigStore({"t1": config} if config is not None else {})
        self.store = FakeCrmStore({"t1": tenant or TenantData()}, failing=failing)
        self.index = FakeChunkIndex({"t1": hits or []})
        self.audit = audit if audit is not None else RecordingAuditSink()
        self.orchestrator = AIOrchestrator(
            limiter=self.limiter,
            config_store=self.config_store,
            resolver=resolver,
            context=ContextAssembler(self.store, settings=self.settings, now_provider=lambda: NOW),
            retrieval=RetrievalPipeline(
                config_store=self.config_store,
                resolver=resolver,
                index=self.index,
                store=self.store,
                settings=self.settings,
            ),
            store=self.store,
            audit=self.audit,
            settings=self.settings,
            now_provider=lambda: NOW,
        )

    def _build(self, params, settings):
        self.built.append(params)
        return self.adapter

    def exhaust(self, capability: str) -> None:
        policy = CAPABILITY_LIMITS[capability]
        key = rate_limit_key(capability, IDENTITY)
        for _ in range(policy.max_requests):
            self.limiter.check(key, policy.max_requests, policy.window_s)


@pytest.mark.asyncio
async def test_chat_success_calls_model_once_and_audits() -> None:
    harness = Harness(config=make_config())
    outcome = await harness.orchestrator.chat(IDENTITY, "最近的商機狀況如何？", request_id="req-1")

    assert outcome.status == STATUS_SUCCESS
    assert outcome.data["reply"] == "This is a fake response."
    assert outcome.data["model"] == "fake-model"
    assert outcome.data["sources"] == []
    assert len(harness.adapter.calls) == 1
    assert "王業務" in harness.adapter.calls[0]["system"]
    event = harness.audit.events[0]
    assert event["event_type"] == "ai.chat"
    assert event["outcome"] == STATUS_SUCCESS
    assert event["request_id"] == "req-1"
    assert event["error_code"] is None


@pytest.mark.asyncio
async def test_rate_limited_call_touches_nothing_downstream() -> None:
    harness = Harness(config=make_config())
    harness.exhaust("chat")

    outcome = await harness.orchestrator.chat(IDENTITY, "hello")

    assert outcome.status == STATUS_REJECTED
    assert outcome.error.code == "AI_RATE_LIMITED"
    assert outcome.error.retry_after_s == 60
    assert harness.config_store.calls == []
    assert harness.store.calls == []
    assert harness.adapter.calls == []
    assert harness.audit.events == []


@pytest.mark.asyncio
async def test_model_listing_shares_connection_test_bucket() -> None:
    harness = Harness(config=make_config())
    harness.exhaust("settings_test")
    outcome = await harness.orchestrator.list_models(IDENTITY, provider="openai", api_key="sk-new")
    assert outcome.capability == "settings_models"
    assert outcome.error.code == "AI_RATE_LIMITED"


@pytest.mark.asyncio
async def test_timeout_is_single_failed_outcome() -> None:
    harness = Harness(
        config=make_config(),
        adapter=FakeModelAdapter(delay_s=1.0),
        settings=Settings(chat_timeout_s=0.05),
    )
    outcome = await harness.orchestrator.chat(IDENTITY, "hello")

    assert outcome.status == STATUS_FAILED
    assert outcome.error.code == "AI_TIMEOUT"
    assert len(harness.adapter.calls) == 1
    assert harness.audit.events[0]["error_code"] == "AI_TIMEOUT"


@pytest.mark.asyncio
async def test_upstream_error_is_not_retried() -> None:
    harness = Harness(config=make_config(), adapter=FakeModelAdapter(error=UpstreamError()))
    outcome = await harness.orchestrator.sales_insights(IDENTITY)
    assert outcome.status == STATUS_FAILED
    assert outcome.error.code == "AI_PROVIDER_ERROR"
    assert len(harness.adapter.calls) == 1


@pytest.mark.asyncio
async def test_unexpected_error_becomes_generic_failure() -> None:
    harness = Harness(config=make_config(), adapter=FakeModelAdapter(error=RuntimeError("secret detail")))
    outcome = await harness.orchestrator.chat(IDENTITY, "hello")
    assert outcome.status == STATUS_FAILED
    assert outcome.error.code == "AI_ERROR"
    assert "secret detail" not in outcome.error.message


@pytest.mark.asyncio
async def test_disabled_capability_is_rejected_before_model() -> None:
    harness = Harness(config=make_config(features={"email_draft": False}))
    outcome = await harness.orchestrator.draft_email(IDENTITY, purpose="follow_up", tone="formal")
    assert outcome.status == STATUS_REJECTED
    assert outcome.error.code == "AI_FEATURE_DISABLED"
    assert "Email 草稿生成" in outcome.error.message
    assert harness.adapter.calls == []


@pytest.mark.asyncio
async def test_unconfigured_tenant_is_rejected() -> None:
    harness = Harness()
    outcome = await harness.orchestrator.chat(IDENTITY, "hello")
    assert outcome.status == STATUS_REJECTED
    assert outcome.error.code == "AI_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_audit_failure_does_not_change_outcome() -> None:
    harness = Harness(config=make_config(), audit=RecordingAuditSink(fail=True))
    outcome = await harness.orchestrator.chat(IDENTITY, "hello")
    assert outcome.status == STATUS_SUCCESS


@pytest.mark.asyncio
async def test_empty_chat_message_is_rejected() -> None:
    harness = Harness(config=make_config())
    outcome = await harness.orchestrator.chat(IDENTITY, "   ")
    assert outcome.status == STATUS_REJECTED
    assert outcome.error.code == "AI_INVALID_REQUEST"
    assert harness.adapter.calls == []


@pytest.mark.asyncio
async def test_email_draft_falls_back_to_deal_customer_and_raw_text() -> None:
    tenant = TenantData(deals=[DealRecord(id="d1", title="ERP 導入案", stage="proposal", customer_name="李美華")])
    harness = Harness(config=make_config(), adapter=FakeModelAdapter("李經理您好，附上報價。"), tenant=tenant)

    outcome = await harness.orchestrator.draft_email(IDENTITY, purpose="follow_up", tone="friendly", deal_id="d1")

    assert outcome.status == STATUS_SUCCESS
    assert outcome.data["subject"] == EMAIL_FALLBACK_SUBJECT
    assert outcome.data["body"] == "李經理您好，附上報價。"
    assert "李美華" in harness.adapter.calls[0]["prompt"]
    assert "ERP 導入案" in harness.adapter.calls[0]["prompt"]
    assert harness.audit.events[0]["metadata"]["purpose"] == "follow_up"


@pytest.mark.asyncio
async def test_email_draft_rejects_unknown_purpose() -> None:
    harness = Harness(config=make_config())
    outcome = await harness.orchestrator.draft_email(IDENTITY, purpose="spam", tone="formal")
    assert outcome.status == STATUS_REJECTED
    assert outcome.error.code == "AI_INVALID_REQUEST"
    assert harness.adapter.calls == []


@pytest.mark.asyncio
async def test_insights_tolerate_a_failing_fetch() -> None:
    tenant = TenantData(
        deals=[
            DealRecord(
                id="d1",
                title="倉儲系統升級",
                stage="negotiation",
                updated_at=datetime(2026, 1, 5, tzinfo=timezone.utc),
            )
        ]
    )
    adapter = FakeModelAdapter('{"summary": "管道穩定", "atRiskDeals": [], "keyInsights": ["跟進倉儲案"]}')
    harness = Harness(config=make_config(), adapter=adapter, tenant=tenant, failing=("pipeline_snapshot",))

    outcome = await harness.orchestrator.sales_insights(IDENTITY)

    assert outcome.status == STATUS_SUCCESS
    assert outcome.data["summary"] == "管道穩定"
    assert outcome.data["key_insights"] == ["跟進倉儲案"]
    assert outcome.data["at_risk_count"] == 1
    assert "倉儲系統升級" in adapter.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_search_without_embeddings_is_not_configured() -> None:
    harness = Harness(config=make_config(features={"rag": True}))
    outcome = await harness.orchestrator.search_documents(IDENTITY, "付款條件")
    assert outcome.capability == "document_search"
    assert outcome.status == STATUS_FAILED
    assert outcome.error.code == "AI_RETRIEVAL_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_search_requires_rag_feature() -> None:
    harness = Harness(config=make_config())
    outcome = await harness.orchestrator.search_documents(IDENTITY, "付款條件")
    assert outcome.error.code == "AI_FEATURE_DISABLED"


def _contract_hit(score: float = 0.9127) -> ScoredChunk:
    return ScoredChunk(chunk_id="doc1-0", document_id="doc1", content="付款條件為月結 30 天。", chunk_index=0, score=score)


CONTRACT_TENANT = TenantData(documents=[DocumentRecord(id="doc1", name="合約.pdf")])


@pytest.mark.asyncio
async def test_chat_cites_retrieved_documents() -> None:
    harness = Harness(
        config=make_config(features={"rag": True}),
        tenant=CONTRACT_TENANT,
        embeddings=True,
        hits=[_contract_hit()],
    )

    outcome = await harness.orchestrator.chat(IDENTITY, "合約的付款條件是什麼？")

    assert outcome.status == STATUS_SUCCESS
    assert len(harness.adapter.calls) == 1
    system = harness.adapter.calls[0]["system"]
    assert "[文件 1: 合約.pdf (相關度: 91%)]" in system
    assert "付款條件為月結 30 天。" in system
    assert harness.adapter.embed_calls == [["合約的付款條件是什麼？"]]
    assert outcome.data["sources"] == [
        {
            "document_id": "doc1",
            "document_name": "合約.pdf",
            "content": "付款條件為月結 30 天。",
            "chunk_index": 0,
            "score": 0.91,
        }
    ]


@pytest.mark.asyncio
async def test_chat_answers_without_citations_when_lookup_fails() -> None:
    harness = Harness(
        config=make_config(features={"rag": True}),
        tenant=CONTRACT_TENANT,
        failing=("document_names",),
        embeddings=True,
        hits=[_contract_hit()],
    )

    outcome = await harness.orchestrator.chat(IDENTITY, "合約的付款條件是什麼？")

    assert outcome.status == STATUS_SUCCESS
    assert outcome.error is None
    assert len(harness.adapter.calls) == 1
    assert "合約.pdf" not in harness.adapter.calls[0]["system"]
    assert outcome.data["sources"] == []


@pytest.mark.asyncio
async def test_search_returns_rounded_results() -> None:
    harness = Harness(
        config=make_config(features={"rag": True}),
        tenant=CONTRACT_TENANT,
        embeddings=True,
        hits=[_contract_hit(0.87654)],
    )

    outcome = await harness.orchestrator.search_documents(IDENTITY, "付款條件", top_k=3, request_id="req-9")

    assert outcome.status == STATUS_SUCCESS
    assert outcome.data["query"] == "付款條件"
    assert outcome.data["total_results"] == 1
    result = outcome.data["results"][0]
    assert result["document_name"] == "合約.pdf"
    assert result["score"] == 0.88
    assert harness.index.searches[0]["top_k"] == 3
    # Search never calls the generation model.
    assert harness.adapter.calls == []
    assert harness.audit.events[0]["event_type"] == "ai.document_search"


@pytest.mark.asyncio
async def test_search_lookup_failure_is_retrieval_error() -> None:
    harness = Harness(
        config=make_config(features={"rag": True}),
        failing=("document_names",),
        embeddings=True,
        hits=[_contract_hit()],
    )

    outcome = await harness.orchestrator.search_documents(IDENTITY, "付款條件")

    assert outcome.status == STATUS_FAILED
    assert outcome.error.code == "AI_RETRIEVAL_ERROR"


@pytest.mark.asyncio
async def test_analyze_missing_and_pending_documents() -> None:
    tenant = TenantData(documents=[DocumentRecord(id="doc1", name="scan.pdf", extraction_status="unsupported")])
    harness = Harness(config=make_config(), tenant=tenant)

    missing = await harness.orchestrator.analyze_document(IDENTITY, "nope")
    assert missing.error.code == "AI_DOCUMENT_UNAVAILABLE"
    assert missing.error.message == "找不到此文件"

    unsupported = await harness.orchestrator.analyze_document(IDENTITY, "doc1")
    assert unsupported.error.code == "AI_DOCUMENT_UNAVAILABLE"
    assert "掃描 PDF" in unsupported.error.message
    assert harness.adapter.calls == []


@pytest.mark.asyncio
async def test_analyze_truncates_input() -> None:
    tenant = TenantData(documents=[DocumentRecord(id="doc1", name="合約.pdf", content="條" * 100)])
    adapter = FakeModelAdapter('{"summary": "合約摘要", "sentiment": "positive", "confidence": 0.8}')
    harness = Harness(
        config=make_config(),
        adapter=adapter,
        tenant=tenant,
        settings=Settings(analysis_max_input_chars=10),
    )

    outcome = await harness.orchestrator.analyze_document(IDENTITY, "doc1", analysis_type="contract")

    assert outcome.status == STATUS_SUCCESS
    assert outcome.data["summary"] == "合約摘要"
    assert outcome.data["document_id"] == "doc1"
    assert adapter.calls[0]["prompt"] == "條" * 10


@pytest.mark.asyncio
async def test_classify_is_best_effort() -> None:
    assert await Harness().orchestrator.classify_document("t1", "合約內容") is None

    harness = Harness(config=make_config(), adapter=FakeModelAdapter("quotation"))
    assert await harness.orchestrator.classify_document("t1", "報價單 總價 NT$ 120,000") == "quotation"

    failing = Harness(config=make_config(), adapter=FakeModelAdapter(error=UpstreamError()))
    assert await failing.orchestrator.classify_document("t1", "報價單") is None


@pytest.mark.asyncio
async def test_connection_test_reuses_stored_key() -> None:
    harness = Harness(config=make_config())
    outcome = await harness.orchestrator.test_connection(
        IDENTITY, provider="openai", api_key=USE_STORED_CREDENTIAL
    )
    assert outcome.status == STATUS_SUCCESS
    assert outcome.data["success"] is True
    assert outcome.data["model"] == "fake-test-model"
    assert harness.built[-1].api_key == "sk-test-1234567890"


@pytest.mark.asyncio
async def test_connection_test_without_stored_key() -> None:
    harness = Harness(config=make_config(api_key=None))
    outcome = await harness.orchestrator.test_connection(
        IDENTITY, provider="openai", api_key=USE_STORED_CREDENTIAL
    )
    assert outcome.status == STATUS_REJECTED
    assert outcome.error.code == "AI_NOT_CONFIGURED"
    assert harness.built == []
