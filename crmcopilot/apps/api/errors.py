from __future__ import annotations

import logging
import math
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from crmcopilot.apps.api.response import error_response, outcome_payload
from crmcopilot.core.errors import CopilotError, RateLimitExceededError
from crmcopilot.services.orchestrator import Outcome


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
}

# Error code to HTTP status for copilot outcomes; unknown codes are 500.
ERROR_STATUS: dict[str, int] = {
    "AI_RATE_LIMITED": 429,
    "AI_FEATURE_DISABLED": 403,
    "AI_NOT_CONFIGURED": 403,
    "AI_INVALID_REQUEST": 422,
    "AI_DOCUMENT_UNAVAILABLE": 422,
    "AI_RETRIEVAL_NOT_CONFIGURED": 424,
    "AI_PROVIDER_ERROR": 502,
    "AI_RETRIEVAL_ERROR": 502,
    "AI_PROVIDER_UNAVAILABLE": 503,
    "AI_CREDENTIAL_ERROR": 503,
    "AI_TIMEOUT": 504,
}


def status_for_code(code: str) -> int:
    return ERROR_STATUS.get(code, 500)


def _retry_headers(retry_after_s: float | None) -> dict[str, str] | None:
    if retry_after_s is None:
        return None
    return {"Retry-After": str(max(1, math.ceil(retry_after_s)))}


def outcome_response(request: Request, outcome: Outcome) -> JSONResponse:
    error = outcome.error
    if outcome.ok:
        status_code = 200
    else:
        status_code = status_for_code(error.code if error else CopilotError.code)
    return JSONResponse(
        content=outcome_payload(request, outcome),
        status_code=status_code,
        headers=_retry_headers(error.retry_after_s if error else None),
    )


async def copilot_exception_handler(request: Request, exc: CopilotError) -> JSONResponse:
    # Raised outside the orchestrator, e.g. by indexing or settings routes.
    retry_after = exc.retry_after_s if isinstance(exc, RateLimitExceededError) else None
    payload = error_response(request=request, code=exc.code, message=exc.message, retry_after_s=retry_after)
    return JSONResponse(
        content=payload,
        status_code=status_for_code(exc.code),
        headers=_retry_headers(retry_after),
    )


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    default_code = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        code = str(detail.get("code") or default_code)
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return default_code, detail, None
    return default_code, "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="AI_INVALID_REQUEST",
        message="請求參數不正確。",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces; the log carries the detail.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code=CopilotError.code, message=CopilotError.default_message)
    return JSONResponse(content=payload, status_code=500)
