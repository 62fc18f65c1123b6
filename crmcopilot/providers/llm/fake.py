from __future__ import annotations

import asyncio
import hashlib
import math
import re
from typing import Any, Sequence


class FakeModelAdapter:
    def __init__(
        self,
        response: str = "This is a fake response.",
        *,
        delay_s: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        # Deterministic response keeps tests stable without external calls.
        self._response = response
        self._delay_s = delay_s
        self._error = error
        self.calls: list[dict[str, Any]] = []

    async def generate(self, prompt: str, *, system: str | None, max_output_tokens: int) -> str:
        self.calls.append({"prompt": prompt, "system": system, "max_output_tokens": max_output_tokens})
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        if self._error is not None:
            raise self._error
        return self._response


_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+|[一-鿿]")


class FakeEmbeddingAdapter:
    """Hashes tokens into a fixed-size unit vector; similar text gives similar vectors."""

    def __init__(self, dimensions: int = 64) -> None:
        self._dimensions = dimensions
        self.calls: list[list[str]] = []

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self._dimensions
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
            idx = int(digest[:8], 16) % self._dimensions
            sign = 1.0 if int(digest[8:12], 16) % 2 == 0 else -1.0
            vector[idx] += sign
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]

    async def embed(self, texts: Sequence[str], *, model: str) -> list[list[float]]:
        _ = model
        self.calls.append(list(texts))
        return [self._vector(text) for text in texts]
