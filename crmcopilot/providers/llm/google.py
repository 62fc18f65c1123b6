from __future__ import annotations

from typing import Any, Sequence

import httpx

from crmcopilot.providers.llm.base import HttpAdapter, malformed_response


class GoogleGeminiAdapter(HttpAdapter):
    provider_name = "google"

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url=base_url, client=client)
        self._api_key = api_key
        self._model = model

    def _headers(self) -> dict[str, str]:
        # Header auth keeps the key out of request URLs and client logs.
        return {"x-goog-api-key": self._api_key}

    async def generate(self, prompt: str, *, system: str | None, max_output_tokens: int) -> str:
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"maxOutputTokens": max_output_tokens},
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        data = await self._post_json(f"/models/{self._model}:generateContent", payload)
        try:
            parts = data["candidates"][0]["content"]["parts"]
            return "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise malformed_response(self.provider_name) from exc

    async def embed(self, texts: Sequence[str], *, model: str) -> list[list[float]]:
        requests = [
            {"model": f"models/{model}", "content": {"parts": [{"text": text}]}} for text in texts
        ]
        data = await self._post_json(f"/models/{model}:batchEmbedContents", {"requests": requests})
        try:
            return [[float(v) for v in item["values"]] for item in data["embeddings"]]
        except (KeyError, TypeError) as exc:
            raise malformed_response(self.provider_name) from exc

    async def list_models(self) -> list[dict[str, Any]]:
        data = await self._get_json("/models")
        models = []
        for item in data.get("models") or []:
            if "generateContent" not in (item.get("supportedGenerationMethods") or []):
                continue
            model_id = str(item["name"]).removeprefix("models/")
            models.append({"id": model_id, "name": item.get("displayName") or model_id})
        return sorted(models, key=lambda m: m["name"])
