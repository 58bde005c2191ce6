"""Rate limiting: in-memory fixed-window counters per caller.

No external dependencies (no Redis). Used in two places:
- RateLimitMiddleware: every HTTP entry point, plus a lower budget for the
  conversational endpoints that fan out to the LLM
- Orchestrator: each tool invocation is charged to the calling user

Windows are aligned to multiples of ``window_seconds`` on the limiter's
clock. Increment-then-compare happens under a lock, so the (N+1)th call in a
window is always the one rejected, whatever the interleaving.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from discovery.config import settings
from discovery.models.errors import RateLimitExceededError

logger = logging.getLogger(__name__)

# Exempt from rate limiting
_EXEMPT_PATHS = frozenset({"/health", "/docs", "/openapi.json", "/redoc", "/"})

CALLER_HEADER = "X-Caller-Id"

_PRUNE_THRESHOLD = 10_000


def is_expensive(path: str) -> bool:
    """Conversational endpoints: POST .../turns and GET .../turns/stream."""
    return path.startswith("/api/v1/sessions/") and (
        path.endswith("/turns") or path.endswith("/turns/stream")
    )


@dataclass
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    reset_after: float  # seconds until the current window ends

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class FixedWindowLimiter:
    """``limit`` calls per ``window_seconds`` per key."""

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1 or window_seconds <= 0:
            raise ValueError("limit must be >= 1 and window_seconds > 0")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}  # key -> (window_start, count)
        self._lock = threading.Lock()

    def hit(self, key: str) -> RateLimitDecision:
        """Count one call for ``key`` and report whether it is allowed."""
        with self._lock:
            now = self._clock()
            window_start = math.floor(now / self.window_seconds) * self.window_seconds
            start, count = self._windows.get(key, (window_start, 0))
            if start != window_start:
                count = 0
            count += 1
            self._windows[key] = (window_start, count)
            if len(self._windows) > _PRUNE_THRESHOLD:
                self._prune(window_start)
            reset_after = window_start + self.window_seconds - now
        return RateLimitDecision(allowed=count <= self.limit, count=count, limit=self.limit, reset_after=reset_after)

    def check(self, key: str) -> RateLimitDecision:
        """Like hit(), but raises RateLimitExceededError when over budget."""
        decision = self.hit(key)
        if not decision.allowed:
            raise RateLimitExceededError(reset_after=decision.reset_after)
        return decision

    def _prune(self, current_start: float) -> None:
        stale = [k for k, (start, _) in self._windows.items() if start != current_start]
        for k in stale:
            del self._windows[k]


def caller_key(request: Request) -> str:
    caller = request.headers.get(CALLER_HEADER)
    if caller:
        return f"caller:{caller}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


def rate_limited_response(decision: RateLimitDecision, detail: str) -> JSONResponse:
    retry_after = max(1, math.ceil(decision.reset_after))
    return JSONResponse(
        status_code=429,
        content={"detail": detail, "error": "rate_limit", "retry_after": round(decision.reset_after, 3)},
        headers={"Retry-After": str(retry_after)},
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window limiter per caller.

    Args:
        requests: Requests per window per caller, all endpoints.
        window_seconds: Window length.
        expensive_requests: Requests per window for conversational endpoints.
        clock: Monotonic clock (injectable for tests).
    """

    def __init__(
        self,
        app,
        requests: int | None = None,
        window_seconds: float | None = None,
        expensive_requests: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(app)
        window = window_seconds or settings.rate_limit_window_seconds
        self.global_limiter = FixedWindowLimiter(requests or settings.rate_limit_requests, window, clock)
        self.expensive_limiter = FixedWindowLimiter(
            expensive_requests or settings.rate_limit_expensive_requests, window, clock
        )

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in _EXEMPT_PATHS:
            return await call_next(request)

        key = caller_key(request)

        decision = self.global_limiter.hit(key)
        if not decision.allowed:
            logger.warning("Rate limit exceeded for %s on %s", key, path)
            return rate_limited_response(decision, "Rate limit exceeded. Please retry later.")

        if is_expensive(path):
            decision = self.expensive_limiter.hit(key)
            if not decision.allowed:
                logger.warning("Conversation rate limit exceeded for %s on %s", key, path)
                return rate_limited_response(decision, "Rate limit exceeded for this endpoint. Please retry later.")

        return await call_next(request)
