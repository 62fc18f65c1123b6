from __future__ import annotations

from typing import Any, Sequence

import httpx

from crmcopilot.providers.llm.base import HttpAdapter, malformed_response


# Prefixes of chat-capable model families in the /models listing.
_CHAT_MODEL_PREFIXES = ("gpt-", "o1", "o3", "o4", "chatgpt-")


class OpenAIAdapter(HttpAdapter):
    provider_name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url=base_url, client=client)
        self._api_key = api_key
        self._model = model

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    async def generate(self, prompt: str, *, system: str | None, max_output_tokens: int) -> str:
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload = {"model": self._model, "messages": messages, "max_tokens": max_output_tokens}
        data = await self._post_json("/chat/completions", payload)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise malformed_response(self.provider_name) from exc
        return content or ""

    async def embed(self, texts: Sequence[str], *, model: str) -> list[list[float]]:
        data = await self._post_json("/embeddings", {"model": model, "input": list(texts)})
        try:
            items = sorted(data["data"], key=lambda item: item["index"])
            return [[float(v) for v in item["embedding"]] for item in items]
        except (KeyError, TypeError) as exc:
            raise malformed_response(self.provider_name) from exc

    async def list_models(self) -> list[dict[str, Any]]:
        data = await self._get_json("/models")
        models = [
            {"id": item["id"], "name": item["id"]}
            for item in data.get("data") or []
            if str(item.get("id", "")).startswith(_CHAT_MODEL_PREFIXES)
        ]
        return sorted(models, key=lambda m: m["id"])
