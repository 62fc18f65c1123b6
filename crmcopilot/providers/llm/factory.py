from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Callable

import httpx

from crmcopilot.core.config import Settings, get_settings
from crmcopilot.core.errors import CredentialError, ProviderUnavailableError
from crmcopilot.domain.ai import (
    PROVIDER_ANTHROPIC,
    PROVIDER_GOOGLE,
    PROVIDER_OLLAMA,
    PROVIDER_OPENAI,
    AIConfig,
)
from crmcopilot.providers.llm.anthropic import AnthropicAdapter
from crmcopilot.providers.llm.base import (
    EmbeddingHandle,
    ModelHandle,
    call_with_deadline,
)
from crmcopilot.providers.llm.google import GoogleGeminiAdapter
from crmcopilot.providers.llm.ollama import OllamaAdapter
from crmcopilot.providers.llm.openai import OpenAIAdapter
from crmcopilot.services.credentials import decrypt_credential


logger = logging.getLogger(__name__)

CONNECTION_TEST_PROMPT = 'Say "OK" in one word.'
CONNECTION_TEST_MAX_TOKENS = 5
_CONNECTION_TEST_ECHO_CHARS = 50


@dataclass(frozen=True)
class AdapterParams:
    api_key: str | None
    model: str
    endpoint: str | None
    client: httpx.AsyncClient | None


AdapterBuilder = Callable[[AdapterParams, Settings], Any]


@dataclass(frozen=True)
class ProviderSpec:
    default_model: str
    test_model: str
    requires_api_key: bool
    build: AdapterBuilder
    # None means the provider exposes no embedding API.
    default_embedding_model: str | None = None


def _build_openai(params: AdapterParams, settings: Settings) -> OpenAIAdapter:
    return OpenAIAdapter(
        api_key=params.api_key or "",
        model=params.model,
        base_url=settings.openai_base_url,
        client=params.client,
    )


def _build_anthropic(params: AdapterParams, settings: Settings) -> AnthropicAdapter:
    return AnthropicAdapter(
        api_key=params.api_key or "",
        model=params.model,
        base_url=settings.anthropic_base_url,
        api_version=settings.anthropic_api_version,
        client=params.client,
    )


def _build_google(params: AdapterParams, settings: Settings) -> GoogleGeminiAdapter:
    return GoogleGeminiAdapter(
        api_key=params.api_key or "",
        model=params.model,
        base_url=settings.google_base_url,
        client=params.client,
    )


def _build_ollama(params: AdapterParams, settings: Settings) -> OllamaAdapter:
    return OllamaAdapter(
        model=params.model,
        base_url=params.endpoint or settings.ollama_default_endpoint,
        client=params.client,
    )


# Adding a provider means one row here plus one adapter module.
PROVIDERS: dict[str, ProviderSpec] = {
    PROVIDER_OPENAI: ProviderSpec(
        default_model="gpt-4o-mini",
        test_model="gpt-4o-mini",
        requires_api_key=True,
        build=_build_openai,
        default_embedding_model="text-embedding-3-small",
    ),
    PROVIDER_ANTHROPIC: ProviderSpec(
        default_model="claude-sonnet-4-5-20250929",
        test_model="claude-haiku-4-5-20251001",
        requires_api_key=True,
        build=_build_anthropic,
    ),
    PROVIDER_GOOGLE: ProviderSpec(
        default_model="gemini-2.0-flash",
        test_model="gemini-2.0-flash",
        requires_api_key=True,
        build=_build_google,
        default_embedding_model="text-embedding-004",
    ),
    PROVIDER_OLLAMA: ProviderSpec(
        default_model="llama3.2",
        test_model="llama3.2",
        requires_api_key=False,
        build=_build_ollama,
        default_embedding_model="nomic-embed-text",
    ),
}


def default_model_for(provider: str) -> str | None:
    spec = PROVIDERS.get(provider)
    return spec.default_model if spec is not None else None


def is_embedding_capable(provider: str) -> bool:
    spec = PROVIDERS.get(provider)
    return spec is not None and spec.default_embedding_model is not None


class ProviderResolver:
    """Turns a tenant AIConfig into callable model and embedding handles."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        providers: dict[str, ProviderSpec] | None = None,
        decrypt: Callable[[str], str] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        # Allow injecting a transport-mocked client for adapter tests.
        self._client = client
        self._providers = providers or PROVIDERS
        self._decrypt = decrypt or decrypt_credential

    def _spec(self, provider: str | None) -> ProviderSpec:
        spec = self._providers.get(provider or "")
        if spec is None:
            logger.warning("provider_unsupported provider=%s", provider)
            raise ProviderUnavailableError()
        return spec

    def _credential(self, config: AIConfig) -> str | None:
        if not config.credential_reference:
            return None
        try:
            return self._decrypt(config.credential_reference)
        except CredentialError as exc:
            # The stored key is unusable; the caller sees the same failure as a missing key.
            logger.warning("provider_credential_decrypt_failed tenant_id=%s", config.tenant_id)
            raise ProviderUnavailableError(CredentialError.default_message) from exc

    def build_handle(
        self,
        provider: str,
        *,
        api_key: str | None,
        model: str | None = None,
        endpoint: str | None = None,
    ) -> ModelHandle:
        spec = self._spec(provider)
        if spec.requires_api_key and not api_key:
            raise ProviderUnavailableError()
        resolved_model = model or spec.default_model
        params = AdapterParams(api_key=api_key, model=resolved_model, endpoint=endpoint, client=self._client)
        return ModelHandle(provider=provider, model=resolved_model, adapter=spec.build(params, self._settings))

    def resolve(self, config: AIConfig) -> ModelHandle:
        spec = self._spec(config.provider)
        api_key = self._credential(config) if spec.requires_api_key else None
        if spec.requires_api_key and not api_key:
            logger.info("provider_credential_missing tenant_id=%s provider=%s", config.tenant_id, config.provider)
            raise ProviderUnavailableError()
        return self.build_handle(
            config.provider or "",
            api_key=api_key,
            model=config.model_name,
            endpoint=config.ollama_endpoint,
        )

    def resolve_embedder(self, config: AIConfig) -> EmbeddingHandle | None:
        """Return an embedding handle, or None when embeddings are not configured.

        Checked fresh on every call so a tenant that configures embeddings is
        picked up immediately.
        """
        provider = config.embedding_provider or config.provider
        spec = self._providers.get(provider or "")
        if spec is None or spec.default_embedding_model is None:
            return None
        model = config.embedding_model or spec.default_embedding_model
        api_key: str | None = None
        if spec.requires_api_key:
            if not config.credential_reference:
                return None
            try:
                api_key = self._decrypt(config.credential_reference)
            except CredentialError:
                logger.warning("embedding_credential_decrypt_failed tenant_id=%s", config.tenant_id)
                return None
        params = AdapterParams(api_key=api_key, model=model, endpoint=config.ollama_endpoint, client=self._client)
        return EmbeddingHandle(provider=provider or "", model=model, adapter=spec.build(params, self._settings))

    async def test_connection(
        self,
        provider: str,
        *,
        api_key: str | None,
        model: str | None = None,
        endpoint: str | None = None,
    ) -> dict[str, Any]:
        spec = self._spec(provider)
        handle = self.build_handle(
            provider,
            api_key=api_key,
            model=model or spec.test_model,
            endpoint=endpoint,
        )
        start = time.monotonic()
        text = await handle.invoke(
            CONNECTION_TEST_PROMPT,
            max_output_tokens=CONNECTION_TEST_MAX_TOKENS,
            timeout_s=self._settings.connection_test_timeout_s,
        )
        latency_ms = int((time.monotonic() - start) * 1000)
        return {
            "success": True,
            "provider": provider,
            "model": handle.model,
            "latency_ms": latency_ms,
            "response": text[:_CONNECTION_TEST_ECHO_CHARS],
        }

    async def list_models(
        self,
        provider: str,
        *,
        api_key: str | None,
        endpoint: str | None = None,
    ) -> list[dict[str, Any]]:
        handle = self.build_handle(provider, api_key=api_key, endpoint=endpoint)
        return await call_with_deadline(
            provider,
            handle.adapter.list_models(),
            timeout_s=self._settings.model_list_timeout_s,
        )
