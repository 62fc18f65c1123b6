from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import threading
import time
from typing import Callable

from crmcopilot.core.errors import RateLimitExceededError
from crmcopilot.domain.crm import Identity


logger = logging.getLogger(__name__)

SCOPE_USER = "user"
SCOPE_ORGANIZATION = "organization"

_SWEEP_INTERVAL_S = 300.0


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitPolicy:
    # Fixed ceilings per capability; tenants cannot raise or lower them.
    max_requests: int
    window_s: float
    scope: str


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    key: str
    remaining: int
    reset_at: float
    retry_after_s: float


CAPABILITY_LIMITS: dict[str, RateLimitPolicy] = {
    "chat": RateLimitPolicy(max_requests=30, window_s=60.0, scope=SCOPE_USER),
    "email_draft": RateLimitPolicy(max_requests=10, window_s=60.0, scope=SCOPE_USER),
    "insights": RateLimitPolicy(max_requests=5, window_s=60.0, scope=SCOPE_ORGANIZATION),
    "settings_test": RateLimitPolicy(max_requests=5, window_s=60.0, scope=SCOPE_ORGANIZATION),
    "document_search": RateLimitPolicy(max_requests=20, window_s=60.0, scope=SCOPE_USER),
    "document_analysis": RateLimitPolicy(max_requests=10, window_s=60.0, scope=SCOPE_ORGANIZATION),
    "document_reindex": RateLimitPolicy(max_requests=2, window_s=300.0, scope=SCOPE_ORGANIZATION),
}


class FixedWindowRateLimiter:
    """In-process fixed-window counters keyed by capability and identity.

    A window opens on the first request for a key and lasts ``window_s``
    seconds; requests beyond ``max_requests`` inside the window are rejected
    without delay. Two adjacent windows can admit up to twice the ceiling
    around the boundary, which is accepted for this limiter.

    State lives in the instance, so a multi-process deployment enforces the
    ceiling per process. Callers own the instance and inject it wherever it
    is needed.
    """

    def __init__(
        self,
        *,
        time_provider: Callable[[], float] | None = None,
        sweep_interval_s: float = _SWEEP_INTERVAL_S,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.monotonic
        self._sweep_interval_s = sweep_interval_s
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._last_sweep = self._time_provider()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def check(self, key: str, max_requests: int, window_s: float) -> RateLimitDecision:
        now = self._time_provider()
        # Read-modify-write happens under one lock acquisition so concurrent callers
        # can never push a live counter past the ceiling.
        with self._lock:
            self._maybe_sweep(now)
            entry = self._entries.get(key)
            if entry is None or now >= entry.reset_at:
                entry = RateLimitEntry(count=1, reset_at=now + window_s)
                self._entries[key] = entry
                return RateLimitDecision(
                    allowed=True,
                    key=key,
                    remaining=max(0, max_requests - 1),
                    reset_at=entry.reset_at,
                    retry_after_s=0.0,
                )
            if entry.count >= max_requests:
                return RateLimitDecision(
                    allowed=False,
                    key=key,
                    remaining=0,
                    reset_at=entry.reset_at,
                    retry_after_s=max(0.0, entry.reset_at - now),
                )
            entry.count += 1
            return RateLimitDecision(
                allowed=True,
                key=key,
                remaining=max(0, max_requests - entry.count),
                reset_at=entry.reset_at,
                retry_after_s=0.0,
            )

    def check_limit(self, key: str, max_requests: int, window_s: float) -> bool:
        return self.check(key, max_requests, window_s).allowed

    def reset_at(self, key: str) -> float | None:
        with self._lock:
            entry = self._entries.get(key)
            return entry.reset_at if entry is not None else None

    def sweep(self) -> int:
        now = self._time_provider()
        with self._lock:
            return self._sweep_locked(now)

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval_s:
            return
        removed = self._sweep_locked(now)
        if removed:
            logger.debug("rate_limit_sweep removed=%s remaining=%s", removed, len(self._entries))

    def _sweep_locked(self, now: float) -> int:
        self._last_sweep = now
        expired = [key for key, entry in self._entries.items() if entry.reset_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)


def rate_limit_key(capability: str, identity: Identity) -> str:
    policy = CAPABILITY_LIMITS[capability]
    subject = identity.tenant_id if policy.scope == SCOPE_ORGANIZATION else identity.user_id
    return f"ai:{capability}:{subject}"


def enforce_rate_limit(limiter: FixedWindowRateLimiter, capability: str, identity: Identity) -> None:
    # Synchronous: no await between the check and the increment.
    policy = CAPABILITY_LIMITS[capability]
    key = rate_limit_key(capability, identity)
    decision = limiter.check(key, policy.max_requests, policy.window_s)
    if decision.allowed:
        return
    retry_after_s = math.ceil(decision.retry_after_s)
    logger.info(
        "ai_rate_limited capability=%s tenant_id=%s user_id=%s retry_after_s=%s",
        capability,
        identity.tenant_id,
        identity.user_id,
        retry_after_s,
    )
    raise RateLimitExceededError(retry_after_s=retry_after_s)
