from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crmcopilot.domain.models import AuditEvent


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "credential", "content", "prompt"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


class AuditSink(Protocol):
    async def record(
        self,
        *,
        tenant_id: str | None,
        actor_id: str | None,
        event_type: str,
        outcome: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        request_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        error_code: str | None = None,
    ) -> None:
        ...


class SqlAuditSink:
    """Appends audit rows in their own session; write failures are logged and dropped."""

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        *,
        tenant_id: str | None,
        actor_id: str | None,
        event_type: str,
        outcome: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        request_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        error_code: str | None = None,
    ) -> None:
        event = AuditEvent(
            occurred_at=datetime.now(timezone.utc),
            tenant_id=tenant_id,
            actor_id=actor_id,
            event_type=event_type,
            outcome=outcome,
            resource_type=resource_type,
            resource_id=resource_id,
            request_id=request_id,
            metadata_json=sanitize_metadata(metadata or {}),
            error_code=error_code,
        )
        async with self._session_factory() as session:
            try:
                session.add(event)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning(
                    "audit_event_write_failed event_type=%s request_id=%s",
                    event_type,
                    request_id,
                    exc_info=exc,
                )
