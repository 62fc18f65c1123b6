from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable, Sequence

from crmcopilot.agent.parsing import (
    normalize_analysis,
    normalize_email_draft,
    normalize_insights,
    parse_document_type,
)
from crmcopilot.agent.prompts import (
    CLASSIFICATION_SYSTEM_PROMPT,
    DOCUMENT_TYPES,
    EMAIL_PURPOSES,
    EMAIL_TONES,
    build_chat_prompt,
    build_chat_system_prompt,
    build_document_analysis_system_prompt,
    build_email_draft_prompt,
    build_insights_prompt,
)
from crmcopilot.core.config import Settings, get_settings
from crmcopilot.core.errors import (
    AINotConfiguredError,
    CapabilityDisabledError,
    CopilotError,
    CredentialError,
    DocumentUnavailableError,
    InvalidRequestError,
    RateLimitExceededError,
    RetrievalNotConfiguredError,
)
from crmcopilot.domain.ai import (
    CAPABILITY_CHAT,
    CAPABILITY_DOCUMENT_ANALYSIS,
    CAPABILITY_EMAIL_DRAFT,
    CAPABILITY_INSIGHTS,
    CAPABILITY_RAG,
    PROVIDER_OLLAMA,
    SUPPORTED_PROVIDERS,
    AIConfig,
    RetrievalResult,
)
from crmcopilot.domain.crm import (
    ClosedDealCounts,
    CrmStore,
    CustomerRecord,
    DealRecord,
    Identity,
    PipelineSnapshot,
    TaskCounts,
)
from crmcopilot.providers.llm.factory import ProviderResolver
from crmcopilot.services.ai_config import AIConfigStore, is_configured, require_capability
from crmcopilot.services.audit import AuditSink
from crmcopilot.services.context import ContextAssembler
from crmcopilot.services.credentials import decrypt_credential
from crmcopilot.services.rate_limit import FixedWindowRateLimiter, enforce_rate_limit
from crmcopilot.services.retrieval import RetrievalPipeline, format_citations


logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_REJECTED = "rejected"
STATUS_FAILED = "failed"

# Sentinel the settings UI sends to reuse the stored key instead of a new one.
USE_STORED_CREDENTIAL = "__USE_STORED__"

_DOCUMENT_STATUS_MESSAGES = {
    "pending": "文件文字萃取中，請稍候再進行分析。",
    "processing": "文件文字萃取中，請稍候再進行分析。",
    "unsupported": "此檔案格式不支援文字萃取（可能為掃描 PDF）。請嘗試手動輸入文字內容。",
    "failed": "文字萃取失敗。請重新上傳檔案或手動輸入文字內容。",
}


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    message: str
    retry_after_s: float | None = None


@dataclass(frozen=True)
class Outcome:
    """Terminal state of one capability invocation."""

    capability: str
    status: str
    data: dict[str, Any] | None = None
    error: ErrorInfo | None = None
    audit: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS


def _status_for(exc: CopilotError) -> str:
    # Rejections happen before any provider cost is incurred.
    if isinstance(exc, (RateLimitExceededError, CapabilityDisabledError, InvalidRequestError)):
        return STATUS_REJECTED
    return STATUS_FAILED


def outcome_from_error(capability: str, exc: CopilotError) -> Outcome:
    retry_after = exc.retry_after_s if isinstance(exc, RateLimitExceededError) else None
    return Outcome(
        capability=capability,
        status=_status_for(exc),
        error=ErrorInfo(code=exc.code, message=exc.message, retry_after_s=retry_after),
    )


Work = Callable[[AIConfig], Awaitable[dict[str, Any]]]


class AIOrchestrator:
    """Runs each capability through rate limit, feature check, input gathering,
    provider resolution, one bounded model call, normalization and audit.

    There is no retry loop: a single upstream failure is surfaced as-is.
    """

    def __init__(
        self,
        *,
        limiter: FixedWindowRateLimiter,
        config_store: AIConfigStore,
        resolver: ProviderResolver,
        context: ContextAssembler,
        retrieval: RetrievalPipeline,
        store: CrmStore,
        audit: AuditSink | None = None,
        settings: Settings | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._limiter = limiter
        self._config_store = config_store
        self._resolver = resolver
        self._context = context
        self._retrieval = retrieval
        self._store = store
        self._audit = audit
        self._settings = settings or get_settings()
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    async def _run(
        self,
        capability: str,
        identity: Identity,
        work: Work,
        *,
        feature: str | None,
        rate_limit: str | None = None,
        request_id: str | None = None,
        audit_metadata: dict[str, Any] | None = None,
    ) -> Outcome:
        metadata = dict(audit_metadata or {})
        try:
            # Synchronous and in-memory; nothing below runs for a rejected identity.
            enforce_rate_limit(self._limiter, rate_limit or capability, identity)
        except RateLimitExceededError as exc:
            return outcome_from_error(capability, exc)

        try:
            config = await self._config_store.get(identity.tenant_id)
            if feature is not None:
                require_capability(config, feature)
            data = await work(config)
        except CopilotError as exc:
            outcome = outcome_from_error(capability, exc)
            logger.info(
                "ai_capability_%s capability=%s tenant_id=%s code=%s",
                outcome.status,
                capability,
                identity.tenant_id,
                exc.code,
            )
        except Exception:  # noqa: BLE001 - never surface internals to the caller
            logger.exception("ai_capability_error capability=%s tenant_id=%s", capability, identity.tenant_id)
            outcome = outcome_from_error(capability, CopilotError())
        else:
            outcome = Outcome(capability=capability, status=STATUS_SUCCESS, data=data)

        await self._record_audit(identity, capability, outcome, request_id=request_id, metadata=metadata)
        return outcome

    async def _record_audit(
        self,
        identity: Identity,
        capability: str,
        outcome: Outcome,
        *,
        request_id: str | None,
        metadata: dict[str, Any],
    ) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.record(
                tenant_id=identity.tenant_id,
                actor_id=identity.user_id,
                event_type=f"ai.{capability}",
                outcome=outcome.status,
                request_id=request_id,
                metadata=metadata,
                error_code=outcome.error.code if outcome.error else None,
            )
        except Exception:  # noqa: BLE001 - audit failures never fail the response
            logger.warning("ai_audit_failed capability=%s tenant_id=%s", capability, identity.tenant_id, exc_info=True)

    async def _optional_citations(self, identity: Identity, query: str, config: AIConfig) -> RetrievalResult | None:
        if not config.is_enabled(CAPABILITY_RAG):
            return None
        try:
            return await self._retrieval.retrieve(identity.tenant_id, query, config=config)
        except CopilotError as exc:
            # Chat still answers from the CRM digest when document lookup fails.
            logger.warning("chat_retrieval_skipped tenant_id=%s code=%s", identity.tenant_id, exc.code)
            return None

    async def chat(
        self,
        identity: Identity,
        message: str,
        *,
        history: Sequence[dict[str, str]] = (),
        organization_name: str | None = None,
        request_id: str | None = None,
    ) -> Outcome:
        async def work(config: AIConfig) -> dict[str, Any]:
            if not message.strip():
                raise InvalidRequestError("至少需要一則訊息")
            digest, citations = await asyncio.gather(
                self._context.build_context(identity.tenant_id, identity.user_id, message),
                self._optional_citations(identity, message, config),
            )
            handle = self._resolver.resolve(config)
            system = build_chat_system_prompt(
                user_name=identity.user_name or "使用者",
                organization_name=organization_name or "組織",
                crm_context=digest.text,
                citations=format_citations(citations) if citations is not None else "",
            )
            reply = await handle.invoke(
                build_chat_prompt(history, message),
                system=system,
                max_output_tokens=self._settings.chat_max_output_tokens,
                timeout_s=self._settings.chat_timeout_s,
            )
            return {
                "reply": reply,
                "model": handle.model,
                "context_categories": digest.categories,
                "context_truncated": digest.truncated,
                "sources": [chunk.as_dict() for chunk in citations.chunks] if citations else [],
            }

        return await self._run(
            CAPABILITY_CHAT,
            identity,
            work,
            feature=CAPABILITY_CHAT,
            request_id=request_id,
            audit_metadata={"message_count": len(history) + 1},
        )

    async def _lookup(self, label: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except CopilotError:
            raise
        except Exception:  # noqa: BLE001 - a missing lookup only weakens the prompt
            logger.warning("email_draft_lookup_failed lookup=%s", label, exc_info=True)
            return None

    async def draft_email(
        self,
        identity: Identity,
        *,
        purpose: str,
        tone: str,
        customer_id: str | None = None,
        deal_id: str | None = None,
        context: str | None = None,
        request_id: str | None = None,
    ) -> Outcome:
        async def work(config: AIConfig) -> dict[str, Any]:
            if purpose not in EMAIL_PURPOSES or tone not in EMAIL_TONES:
                raise InvalidRequestError()
            customer, deal = await asyncio.gather(
                self._lookup("customer", self._store.get_customer(identity.tenant_id, customer_id))
                if customer_id
                else _none(),
                self._lookup("deal", self._store.get_deal(identity.tenant_id, deal_id)) if deal_id else _none(),
            )
            customer_name, company_name = _email_recipient(customer, deal)
            handle = self._resolver.resolve(config)
            prompt = build_email_draft_prompt(
                purpose=purpose,
                tone=tone,
                customer_name=customer_name,
                company_name=company_name,
                deal=deal,
                additional_context=context,
            )
            text = await handle.invoke(
                prompt,
                max_output_tokens=self._settings.email_draft_max_output_tokens,
                timeout_s=self._settings.email_draft_timeout_s,
            )
            return normalize_email_draft(text, tone=tone)

        return await self._run(
            CAPABILITY_EMAIL_DRAFT,
            identity,
            work,
            feature=CAPABILITY_EMAIL_DRAFT,
            request_id=request_id,
            audit_metadata={
                "purpose": purpose,
                "tone": tone,
                "customer_id": customer_id,
                "deal_id": deal_id,
            },
        )

    async def sales_insights(self, identity: Identity, *, request_id: str | None = None) -> Outcome:
        async def work(config: AIConfig) -> dict[str, Any]:
            now = self._now_provider()
            tenant_id = identity.tenant_id
            stale_before = now - timedelta(days=self._settings.insights_stale_days)
            since = now - timedelta(days=self._settings.insights_closed_window_days)
            results = await asyncio.gather(
                self._store.pipeline_snapshot(tenant_id),
                self._store.at_risk_deals(tenant_id, now=now, stale_before=stale_before, limit=10),
                self._store.closed_deal_counts(tenant_id, since=since),
                self._store.task_counts(tenant_id, now=now),
                return_exceptions=True,
            )
            pipeline, at_risk, closed, tasks = (
                _or_default(results[0], PipelineSnapshot()),
                _or_default(results[1], []),
                _or_default(results[2], ClosedDealCounts(won=0, lost=0)),
                _or_default(results[3], TaskCounts(active=0, overdue=0)),
            )
            handle = self._resolver.resolve(config)
            prompt = build_insights_prompt(
                pipeline=pipeline,
                at_risk=at_risk,
                closed_won=closed.won,
                closed_lost=closed.lost,
                active_tasks=tasks.active,
                overdue_tasks=tasks.overdue,
                now=now,
                stale_days=self._settings.insights_stale_days,
            )
            text = await handle.invoke(
                prompt,
                max_output_tokens=self._settings.insights_max_output_tokens,
                timeout_s=self._settings.insights_timeout_s,
            )
            payload = normalize_insights(text)
            payload["at_risk_count"] = len(at_risk)
            return payload

        return await self._run(
            CAPABILITY_INSIGHTS,
            identity,
            work,
            feature=CAPABILITY_INSIGHTS,
            request_id=request_id,
        )

    async def search_documents(
        self,
        identity: Identity,
        query: str,
        *,
        customer_id: str | None = None,
        top_k: int | None = None,
        request_id: str | None = None,
    ) -> Outcome:
        async def work(config: AIConfig) -> dict[str, Any]:
            if not query.strip():
                raise InvalidRequestError("搜尋參數無效")
            result = await self._retrieval.retrieve(
                identity.tenant_id,
                query,
                customer_id=customer_id,
                top_k=top_k,
                config=config,
            )
            if result is None:
                raise RetrievalNotConfiguredError()
            return {
                "query": query,
                "results": [chunk.as_dict() for chunk in result.chunks],
                "total_results": len(result.chunks),
            }

        return await self._run(
            "document_search",
            identity,
            work,
            feature=CAPABILITY_RAG,
            request_id=request_id,
            audit_metadata={"customer_id": customer_id, "top_k": top_k},
        )

    async def analyze_document(
        self,
        identity: Identity,
        document_id: str,
        *,
        analysis_type: str = "contract",
        request_id: str | None = None,
    ) -> Outcome:
        async def work(config: AIConfig) -> dict[str, Any]:
            if analysis_type not in DOCUMENT_TYPES:
                raise InvalidRequestError()
            document = await self._store.get_document(identity.tenant_id, document_id)
            if document is None:
                raise DocumentUnavailableError("找不到此文件")
            if not document.content or not document.content.strip():
                raise DocumentUnavailableError(_DOCUMENT_STATUS_MESSAGES.get(document.extraction_status))
            handle = self._resolver.resolve(config)
            text = await handle.invoke(
                document.content[: self._settings.analysis_max_input_chars],
                system=build_document_analysis_system_prompt(analysis_type),
                max_output_tokens=self._settings.analysis_max_output_tokens,
                timeout_s=self._settings.analysis_timeout_s,
            )
            payload = normalize_analysis(text)
            payload.update({"document_id": document.id, "analysis_type": analysis_type})
            return payload

        return await self._run(
            CAPABILITY_DOCUMENT_ANALYSIS,
            identity,
            work,
            feature=CAPABILITY_DOCUMENT_ANALYSIS,
            request_id=request_id,
            audit_metadata={"document_id": document_id, "analysis_type": analysis_type},
        )

    async def classify_document(self, tenant_id: str, text_sample: str) -> str | None:
        """Best-effort document type guess; None when AI is unavailable."""
        config = await self._config_store.get(tenant_id)
        if not is_configured(config) or not text_sample.strip():
            return None
        try:
            handle = self._resolver.resolve(config)
            text = await handle.invoke(
                text_sample[: self._settings.classify_sample_chars],
                system=CLASSIFICATION_SYSTEM_PROMPT,
                max_output_tokens=self._settings.classify_max_output_tokens,
                timeout_s=self._settings.classify_timeout_s,
            )
        except CopilotError as exc:
            logger.warning("document_classification_failed tenant_id=%s code=%s", tenant_id, exc.code)
            return None
        return parse_document_type(text)

    async def _candidate_credential(self, tenant_id: str, provider: str, api_key: str | None) -> str | None:
        if provider not in SUPPORTED_PROVIDERS:
            raise InvalidRequestError("請提供有效的供應商和 API 金鑰")
        if api_key != USE_STORED_CREDENTIAL:
            if not api_key and provider != PROVIDER_OLLAMA:
                raise InvalidRequestError("請提供有效的供應商和 API 金鑰")
            return api_key
        stored = await self._config_store.get(tenant_id)
        if not stored.credential_reference:
            raise AINotConfiguredError("尚未儲存 API 金鑰，請先輸入金鑰")
        try:
            return decrypt_credential(stored.credential_reference)
        except CredentialError as exc:
            raise InvalidRequestError(exc.message) from exc

    async def test_connection(
        self,
        identity: Identity,
        *,
        provider: str,
        api_key: str | None,
        model: str | None = None,
        endpoint: str | None = None,
        request_id: str | None = None,
    ) -> Outcome:
        async def work(_config: AIConfig) -> dict[str, Any]:
            key = await self._candidate_credential(identity.tenant_id, provider, api_key)
            return await self._resolver.test_connection(provider, api_key=key, model=model, endpoint=endpoint)

        return await self._run(
            "settings_test",
            identity,
            work,
            feature=None,
            request_id=request_id,
            audit_metadata={"provider": provider, "model": model},
        )

    async def list_models(
        self,
        identity: Identity,
        *,
        provider: str,
        api_key: str | None,
        endpoint: str | None = None,
        request_id: str | None = None,
    ) -> Outcome:
        async def work(_config: AIConfig) -> dict[str, Any]:
            key = await self._candidate_credential(identity.tenant_id, provider, api_key)
            models = await self._resolver.list_models(provider, api_key=key, endpoint=endpoint)
            return {"provider": provider, "models": models}

        # Shares the connection-test bucket so model listing cannot bypass it.
        return await self._run(
            "settings_models",
            identity,
            work,
            feature=None,
            rate_limit="settings_test",
            request_id=request_id,
            audit_metadata={"provider": provider},
        )


async def _none() -> None:
    return None


def _or_default(value: Any, default: Any) -> Any:
    if isinstance(value, BaseException):
        if isinstance(value, asyncio.CancelledError):
            raise value
        logger.warning("insights_fetch_failed error=%s", type(value).__name__)
        return default
    return value


def _email_recipient(customer: CustomerRecord | None, deal: DealRecord | None) -> tuple[str, str | None]:
    if customer is not None:
        return customer.name, customer.company
    # Fall back to the deal's customer when no customer was given explicitly.
    if deal is not None and deal.customer_name:
        return deal.customer_name, deal.customer_company
    return "客戶", None
