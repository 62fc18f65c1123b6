from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from crmcopilot.core.errors import CopilotError
from crmcopilot.services.orchestrator import Outcome


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)
    # Set on capability responses so clients can tell which AI feature answered.
    capability: str | None = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    retry_after_s: float | None = None
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    """Return the id the middleware assigned, minting one for requests that bypassed it."""
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def _meta(request: Request, capability: str | None) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request), capability=capability).model_dump(exclude_none=True)


def success_response(*, request: Request, data: Any, capability: str | None = None) -> dict[str, Any]:
    return {"data": data, "meta": _meta(request, capability)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    retry_after_s: float | None = None,
    details: dict[str, Any] | None = None,
    capability: str | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, retry_after_s=retry_after_s, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request, capability)}


def outcome_payload(request: Request, outcome: Outcome) -> dict[str, Any]:
    if outcome.ok:
        return success_response(request=request, data=jsonable_encoder(outcome.data), capability=outcome.capability)
    error = outcome.error
    if error is None:
        return error_response(
            request=request,
            code=CopilotError.code,
            message=CopilotError.default_message,
            capability=outcome.capability,
        )
    return error_response(
        request=request,
        code=error.code,
        message=error.message,
        retry_after_s=error.retry_after_s,
        capability=outcome.capability,
    )
