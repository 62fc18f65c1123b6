from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from crmcopilot.core.errors import (
    AINotConfiguredError,
    CapabilityDisabledError,
    CredentialError,
    InvalidRequestError,
)
from crmcopilot.domain.ai import (
    CAPABILITY_LABELS,
    DEFAULT_CAPABILITIES,
    PROVIDER_OLLAMA,
    SUPPORTED_PROVIDERS,
    AIConfig,
)
from crmcopilot.persistence.repos.ai_settings import (
    KEY_API_KEY,
    KEY_EMBEDDING_MODEL,
    KEY_EMBEDDING_PROVIDER,
    KEY_FEATURES,
    KEY_MODEL,
    KEY_OLLAMA_ENDPOINT,
    KEY_PROVIDER,
    get_ai_settings,
    upsert_ai_setting,
)
from crmcopilot.services.credentials import decrypt_credential, encrypt_credential, mask_credential


logger = logging.getLogger(__name__)


class AIConfigStore(Protocol):
    async def get(self, tenant_id: str) -> AIConfig:
        ...


def parse_feature_map(raw: str | None) -> dict[str, bool]:
    features = dict(DEFAULT_CAPABILITIES)
    if not raw:
        return features
    try:
        stored = json.loads(raw)
    except ValueError:
        # A corrupt feature map falls back to defaults rather than failing every call.
        logger.warning("ai_features_invalid_json")
        return features
    if not isinstance(stored, dict):
        return features
    for name, enabled in stored.items():
        if name in features:
            features[name] = bool(enabled)
    return features


def parse_ai_config(tenant_id: str, raw: dict[str, str]) -> AIConfig:
    provider = raw.get(KEY_PROVIDER) or None
    if provider is not None and provider not in SUPPORTED_PROVIDERS:
        logger.warning("ai_provider_unsupported tenant_id=%s provider=%s", tenant_id, provider)
    features = parse_feature_map(raw.get(KEY_FEATURES))
    return AIConfig(
        tenant_id=tenant_id,
        provider=provider,
        credential_reference=raw.get(KEY_API_KEY) or None,
        model_name=raw.get(KEY_MODEL) or None,
        ollama_endpoint=raw.get(KEY_OLLAMA_ENDPOINT) or None,
        enabled_capabilities=frozenset(name for name, enabled in features.items() if enabled),
        embedding_provider=raw.get(KEY_EMBEDDING_PROVIDER) or None,
        embedding_model=raw.get(KEY_EMBEDDING_MODEL) or None,
    )


async def load_ai_config(session: AsyncSession, tenant_id: str) -> AIConfig:
    raw = await get_ai_settings(session, tenant_id)
    return parse_ai_config(tenant_id, raw)


@dataclass(frozen=True)
class AIConfigUpdate:
    """Settings form payload. ``api_key=None`` keeps the stored key."""

    provider: str
    api_key: str | None = None
    model_name: str | None = None
    ollama_endpoint: str | None = None
    features: dict[str, bool] | None = None
    embedding_provider: str | None = None
    embedding_model: str | None = None


def settings_rows(update: AIConfigUpdate, *, secret: str | None = None) -> dict[str, str]:
    """Key/value rows to persist for an update; the key is encrypted here."""
    if update.provider not in SUPPORTED_PROVIDERS:
        raise InvalidRequestError("不支援的 AI 供應商")
    if update.embedding_provider and update.embedding_provider not in SUPPORTED_PROVIDERS:
        raise InvalidRequestError("不支援的 Embedding 供應商")
    rows = {
        KEY_PROVIDER: update.provider,
        KEY_MODEL: update.model_name or "",
        KEY_OLLAMA_ENDPOINT: update.ollama_endpoint or "",
        KEY_EMBEDDING_PROVIDER: update.embedding_provider or "",
        KEY_EMBEDDING_MODEL: update.embedding_model or "",
    }
    if update.api_key:
        rows[KEY_API_KEY] = encrypt_credential(update.api_key, secret=secret)
    if update.features is not None:
        merged = dict(DEFAULT_CAPABILITIES)
        merged.update({name: bool(on) for name, on in update.features.items() if name in merged})
        rows[KEY_FEATURES] = json.dumps(merged, sort_keys=True)
    return rows


async def save_ai_config(session: AsyncSession, tenant_id: str, update: AIConfigUpdate) -> AIConfig:
    rows = settings_rows(update)
    for key, value in rows.items():
        await upsert_ai_setting(session, tenant_id=tenant_id, key=key, value=value, commit=False)
    await session.commit()
    logger.info(
        "ai_settings_saved tenant_id=%s provider=%s key_updated=%s",
        tenant_id,
        update.provider,
        KEY_API_KEY in rows,
    )
    return await load_ai_config(session, tenant_id)


class SqlAIConfigStore:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, tenant_id: str) -> AIConfig:
        async with self._session_factory() as session:
            return await load_ai_config(session, tenant_id)

    async def save(self, tenant_id: str, update: AIConfigUpdate) -> AIConfig:
        async with self._session_factory() as session:
            return await save_ai_config(session, tenant_id, update)


def is_configured(config: AIConfig) -> bool:
    if not config.provider:
        return False
    # Local models need no key but the tenant must still have chosen the provider.
    return config.provider == PROVIDER_OLLAMA or config.has_credential


def require_capability(config: AIConfig, capability: str) -> None:
    """Fail closed when the provider, credential or feature flag is missing."""
    if not is_configured(config):
        raise AINotConfiguredError()
    if not config.is_enabled(capability):
        label = CAPABILITY_LABELS.get(capability, capability)
        raise CapabilityDisabledError(f"AI 功能「{label}」已停用。請聯繫管理員啟用此功能。")


def masked_credential(config: AIConfig) -> str | None:
    if not config.credential_reference:
        return None
    try:
        return mask_credential(decrypt_credential(config.credential_reference))
    except CredentialError:
        return "****（解密失敗）"


def describe_config(config: AIConfig, *, default_model: str | None = None) -> dict[str, Any] | None:
    """Client-safe view of the tenant configuration."""
    if not config.provider:
        return None
    return {
        "provider": config.provider,
        "model": config.model_name or default_model,
        "features": config.capability_map(),
        "ollama_endpoint": config.ollama_endpoint,
        "has_api_key": config.has_credential,
        "masked_api_key": masked_credential(config),
        "embedding_provider": config.embedding_provider,
        "embedding_model": config.embedding_model,
    }
