from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


PROVIDER_OPENAI = "openai"
PROVIDER_ANTHROPIC = "anthropic"
PROVIDER_GOOGLE = "google"
PROVIDER_OLLAMA = "ollama"
SUPPORTED_PROVIDERS = (PROVIDER_OPENAI, PROVIDER_ANTHROPIC, PROVIDER_GOOGLE, PROVIDER_OLLAMA)

CAPABILITY_CHAT = "chat"
CAPABILITY_DOCUMENT_ANALYSIS = "document_analysis"
CAPABILITY_EMAIL_DRAFT = "email_draft"
CAPABILITY_INSIGHTS = "insights"
CAPABILITY_RAG = "rag"

# Feature flags a tenant gets before it ever saves a feature map.
DEFAULT_CAPABILITIES: dict[str, bool] = {
    CAPABILITY_CHAT: True,
    CAPABILITY_DOCUMENT_ANALYSIS: True,
    CAPABILITY_EMAIL_DRAFT: True,
    CAPABILITY_INSIGHTS: True,
    CAPABILITY_RAG: False,
}

CAPABILITY_LABELS: dict[str, str] = {
    CAPABILITY_CHAT: "AI 對話助手",
    CAPABILITY_DOCUMENT_ANALYSIS: "文件智能分析",
    CAPABILITY_EMAIL_DRAFT: "Email 草稿生成",
    CAPABILITY_INSIGHTS: "銷售洞察",
    CAPABILITY_RAG: "RAG 文件檢索",
}


@dataclass(frozen=True)
class AIConfig:
    """Per-tenant AI configuration snapshot.

    Loaded once per orchestration call and never mutated in place. The
    credential stays encrypted here; it is only decrypted by the resolver
    at the moment a model handle is built.
    """

    tenant_id: str
    provider: str | None
    credential_reference: str | None = None
    model_name: str | None = None
    ollama_endpoint: str | None = None
    enabled_capabilities: frozenset[str] = field(default_factory=frozenset)
    embedding_provider: str | None = None
    embedding_model: str | None = None

    @property
    def has_credential(self) -> bool:
        return bool(self.credential_reference)

    def is_enabled(self, capability: str) -> bool:
        return capability in self.enabled_capabilities

    def capability_map(self) -> dict[str, bool]:
        return {name: name in self.enabled_capabilities for name in DEFAULT_CAPABILITIES}


@dataclass(frozen=True)
class ContextSection:
    category: str
    text: str


@dataclass(frozen=True)
class ContextDigest:
    sections: tuple[ContextSection, ...]
    text: str
    max_chars: int
    truncated: bool = False

    @property
    def categories(self) -> list[str]:
        return [section.category for section in self.sections]


@dataclass(frozen=True)
class RetrievedChunk:
    document_id: str
    document_name: str
    content: str
    chunk_index: int
    score: float

    @property
    def display_score(self) -> float:
        # Rounded for presentation only; ordering always uses the full-precision score.
        return round(self.score, 2)

    def as_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "document_name": self.document_name,
            "content": self.content,
            "chunk_index": self.chunk_index,
            "score": self.display_score,
        }


@dataclass(frozen=True)
class RetrievalResult:
    chunks: tuple[RetrievedChunk, ...]
    top_k: int

    def __len__(self) -> int:
        return len(self.chunks)


@dataclass(frozen=True)
class ScoredChunk:
    """Raw hit from a chunk index before document names are attached."""

    chunk_id: str
    document_id: str
    content: str
    chunk_index: int
    score: float
