from __future__ import annotations

from typing import Any

import httpx

from crmcopilot.providers.llm.base import HttpAdapter, malformed_response


class AnthropicAdapter(HttpAdapter):
    provider_name = "anthropic"

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://api.anthropic.com/v1",
        api_version: str = "2023-06-01",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url=base_url, client=client)
        self._api_key = api_key
        self._model = model
        self._api_version = api_version

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self._api_key, "anthropic-version": self._api_version}

    async def generate(self, prompt: str, *, system: str | None, max_output_tokens: int) -> str:
        payload: dict[str, Any] = {
            "model": self._model,
            "max_tokens": max_output_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        # The messages API takes the system prompt as a top-level field, not a message.
        if system:
            payload["system"] = system
        data = await self._post_json("/messages", payload)
        try:
            blocks = data["content"]
            return "".join(block.get("text", "") for block in blocks if block.get("type") == "text")
        except (KeyError, TypeError, AttributeError) as exc:
            raise malformed_response(self.provider_name) from exc

    async def list_models(self) -> list[dict[str, Any]]:
        data = await self._get_json("/models")
        models = [
            {"id": item["id"], "name": item.get("display_name") or item["id"]}
            for item in data.get("data") or []
        ]
        return sorted(models, key=lambda m: m["name"])
