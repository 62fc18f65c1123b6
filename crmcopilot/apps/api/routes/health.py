from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from crmcopilot.apps.api.deps import get_rate_limiter
from crmcopilot.apps.api.response import SuccessEnvelope, success_response
from crmcopilot.domain.ai import SUPPORTED_PROVIDERS
from crmcopilot.services.rate_limit import FixedWindowRateLimiter

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    providers: list[str]
    # Live rate-limit windows held by this process.
    rate_limit_keys: int


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, limiter: FixedWindowRateLimiter = Depends(get_rate_limiter)) -> dict:
    payload = HealthResponse(status="ok", providers=list(SUPPORTED_PROVIDERS), rate_limit_keys=len(limiter))
    return success_response(request=request, data=payload)
