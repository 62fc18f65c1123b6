from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crmcopilot.domain.models import AISetting


# Row keys used for per-tenant AI configuration.
KEY_PROVIDER = "ai_provider"
KEY_API_KEY = "ai_api_key"
KEY_MODEL = "ai_model"
KEY_OLLAMA_ENDPOINT = "ai_ollama_endpoint"
KEY_FEATURES = "ai_features"
KEY_EMBEDDING_PROVIDER = "ai_embedding_provider"
KEY_EMBEDDING_MODEL = "ai_embedding_model"

AI_SETTING_KEYS = (
    KEY_PROVIDER,
    KEY_API_KEY,
    KEY_MODEL,
    KEY_OLLAMA_ENDPOINT,
    KEY_FEATURES,
    KEY_EMBEDDING_PROVIDER,
    KEY_EMBEDDING_MODEL,
)


async def get_ai_settings(session: AsyncSession, tenant_id: str) -> dict[str, str]:
    # Only known keys are returned so unrelated tenant settings never leak into AI config.
    result = await session.execute(
        select(AISetting.key, AISetting.value).where(
            AISetting.tenant_id == tenant_id,
            AISetting.key.in_(AI_SETTING_KEYS),
        )
    )
    return {key: value for key, value in result.all() if value is not None}


async def upsert_ai_setting(
    session: AsyncSession,
    *,
    tenant_id: str,
    key: str,
    value: str,
    commit: bool = True,
) -> AISetting:
    result = await session.execute(
        select(AISetting).where(AISetting.tenant_id == tenant_id, AISetting.key == key)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = AISetting(tenant_id=tenant_id, key=key, value=value)
        session.add(row)
    else:
        row.value = value
    if commit:
        await session.commit()
    return row
