from __future__ import annotations

from typing import Any, Sequence

import httpx

from crmcopilot.providers.llm.base import HttpAdapter, malformed_response


class OllamaAdapter(HttpAdapter):
    """Self-hosted models served by an Ollama endpoint on the local network."""

    provider_name = "ollama"

    def __init__(
        self,
        *,
        model: str,
        base_url: str = "http://localhost:11434",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url=base_url, client=client)
        self._model = model

    async def generate(self, prompt: str, *, system: str | None, max_output_tokens: int) -> str:
        payload: dict[str, Any] = {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "options": {"num_predict": max_output_tokens},
        }
        if system:
            payload["system"] = system
        data = await self._post_json("/api/generate", payload)
        try:
            return str(data["response"])
        except (KeyError, TypeError) as exc:
            raise malformed_response(self.provider_name) from exc

    async def embed(self, texts: Sequence[str], *, model: str) -> list[list[float]]:
        data = await self._post_json("/api/embed", {"model": model, "input": list(texts)})
        try:
            return [[float(v) for v in vector] for vector in data["embeddings"]]
        except (KeyError, TypeError) as exc:
            raise malformed_response(self.provider_name) from exc

    async def list_models(self) -> list[dict[str, Any]]:
        data = await self._get_json("/api/tags")
        models = [{"id": item["name"], "name": item["name"]} for item in data.get("models") or []]
        return sorted(models, key=lambda m: m["name"])
