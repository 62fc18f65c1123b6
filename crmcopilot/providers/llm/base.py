from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Protocol, Sequence, TypeVar

import httpx

from crmcopilot.core.errors import AITimeoutError, UpstreamError


logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONNECT_ERROR_MESSAGE = "AI 服務連線失敗。請檢查網路連線或 Ollama 是否已啟動。"


class ModelAdapter(Protocol):
    async def generate(self, prompt: str, *, system: str | None, max_output_tokens: int) -> str:
        ...


class EmbeddingAdapter(Protocol):
    async def embed(self, texts: Sequence[str], *, model: str) -> list[list[float]]:
        ...


def upstream_error_for_status(status_code: int, body: str = "") -> UpstreamError:
    # Provider text can echo keys or internals, so only the status picks the message.
    if status_code in {401, 403}:
        message = "API 金鑰無效或已過期。請到設定頁面檢查 AI 設定。"
    elif status_code == 429:
        message = "AI 供應商速率限制已達上限。請稍後再試，或升級您的 API 方案。"
    elif status_code in {400, 404} and "model" in body.lower():
        message = "所選模型不可用。請到設定頁面更換模型。"
    elif status_code == 400:
        message = "AI 請求格式錯誤。請重試或聯繫管理員。"
    elif status_code >= 500:
        message = "AI 供應商暫時無法使用。請稍後再試。"
    else:
        message = f"AI 服務發生錯誤 ({status_code})。請稍後再試。"
    return UpstreamError(message, status_code=status_code)


class HttpAdapter:
    """Shared plumbing for provider adapters that speak JSON over HTTP."""

    provider_name = "http"

    def __init__(self, *, base_url: str, client: httpx.AsyncClient | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        # Injected clients are reused as-is; otherwise each call opens a short-lived client.
        self._client = client

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        # The caller's deadline governs total time; httpx only bounds connection setup.
        async with httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0)) as client:
            yield client

    def _headers(self) -> dict[str, str]:
        return {}

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        async with self._session() as client:
            response = await client.request(method, url, json=json, params=params, headers=self._headers())
        if response.status_code >= 400:
            body = response.text[:500]
            logger.debug(
                "provider_http_error provider=%s status=%s body=%s",
                self.provider_name,
                response.status_code,
                body,
            )
            raise upstream_error_for_status(response.status_code, body)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError("AI 供應商回傳了無法解析的回應。") from exc

    async def _post_json(self, path: str, payload: dict[str, Any]) -> Any:
        return await self._request_json("POST", path, json=payload)

    async def _get_json(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        return await self._request_json("GET", path, params=params)


def malformed_response(provider: str) -> UpstreamError:
    logger.warning("provider_malformed_response provider=%s", provider)
    return UpstreamError("AI 供應商回傳了無法解析的回應。")


async def call_with_deadline(provider: str, awaitable: Awaitable[T], *, timeout_s: float) -> T:
    """Await a provider call under a deadline and map transport failures.

    Expiry cancels the in-flight request. Client cancellation is not caught
    and propagates through the same await.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        logger.warning("provider_call_timeout provider=%s timeout_s=%s", provider, timeout_s)
        raise AITimeoutError() from exc
    except httpx.ConnectError as exc:
        logger.warning("provider_call_connect_failed provider=%s", provider)
        raise UpstreamError(_CONNECT_ERROR_MESSAGE) from exc
    except httpx.HTTPError as exc:
        logger.warning("provider_call_transport_error provider=%s error=%s", provider, type(exc).__name__)
        raise UpstreamError() from exc


@dataclass(frozen=True)
class ModelHandle:
    """Provider-agnostic invocation surface returned by the resolver."""

    provider: str
    model: str
    adapter: ModelAdapter

    async def invoke(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_output_tokens: int,
        timeout_s: float,
    ) -> str:
        # One attempt only; retries belong to the caller because model calls are not idempotent.
        start = time.monotonic()
        text = await call_with_deadline(
            self.provider,
            self.adapter.generate(prompt, system=system, max_output_tokens=max_output_tokens),
            timeout_s=timeout_s,
        )
        logger.info(
            "model_invoke_ok provider=%s model=%s latency_ms=%.1f",
            self.provider,
            self.model,
            (time.monotonic() - start) * 1000.0,
        )
        return text


@dataclass(frozen=True)
class EmbeddingHandle:
    provider: str
    model: str
    adapter: EmbeddingAdapter

    async def embed(self, texts: Sequence[str], *, timeout_s: float) -> list[list[float]]:
        if not texts:
            return []
        vectors = await call_with_deadline(
            self.provider,
            self.adapter.embed(texts, model=self.model),
            timeout_s=timeout_s,
        )
        if len(vectors) != len(texts):
            raise malformed_response(self.provider)
        return vectors

    async def embed_one(self, text: str, *, timeout_s: float) -> list[float]:
        vectors = await self.embed([text], timeout_s=timeout_s)
        return vectors[0]
