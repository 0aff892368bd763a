"""Per-caller sliding-window admission control."""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from fastapi import Depends, Request, Response

from sitesnap import metrics
from sitesnap.auth import authenticate
from sitesnap.errors import RateLimitExceeded
from sitesnap.settings import ApiKey

LOGGER = logging.getLogger(__name__)

_LIMIT_SPEC = re.compile(r"^(\d+)/(second|minute)$")
_WINDOWS = {"second": 1.0, "minute": 60.0}
DEFAULT_LIMIT_SPEC = "10/second"


@dataclass(frozen=True, slots=True)
class LimitSpec:
    requests: int
    window_seconds: float


@dataclass(frozen=True, slots=True)
class RateDecision:
    """Outcome of one admission check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    window_seconds: float

    def headers(self) -> Dict[str, str]:
        window = "1s" if self.window_seconds == 1.0 else "1m"
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Window": window,
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


def parse_limit_spec(spec: str) -> LimitSpec:
    """Parse ``<count>/<second|minute>``; anything else falls back to 10/second."""

    match = _LIMIT_SPEC.match(spec.strip()) if spec else None
    if not match or int(match.group(1)) <= 0:
        LOGGER.warning("Invalid rate limit format %r, using default %s", spec, DEFAULT_LIMIT_SPEC)
        return LimitSpec(requests=10, window_seconds=1.0)
    return LimitSpec(requests=int(match.group(1)), window_seconds=_WINDOWS[match.group(2)])


class SlidingWindowRateLimiter:
    """Keeps a deque of request instants per caller key.

    Each key only ever touches its own deque, so callers never contend with
    one another; the lock just serialises the check-then-append per call.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        idle_window_s: float = 60.0,
    ) -> None:
        self._clock = clock
        self._idle_window_s = idle_window_s
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    async def admit(self, caller_key: str, limit_spec: str) -> RateDecision:
        spec = parse_limit_spec(limit_spec)
        async with self._lock:
            return self._admit(caller_key, spec)

    def _admit(self, caller_key: str, spec: LimitSpec) -> RateDecision:
        now = self._clock()
        window = self._windows.setdefault(caller_key, deque())
        while window and now - window[0] >= spec.window_seconds:
            window.popleft()

        if len(window) >= spec.requests:
            oldest = window[0]
            retry_after = max(1, math.ceil(oldest + spec.window_seconds - now))
            LOGGER.warning(
                "Rate limit exceeded",
                extra={"caller": caller_key, "count": len(window), "limit": spec.requests},
            )
            metrics.record_rate_limited()
            return RateDecision(
                allowed=False,
                limit=spec.requests,
                remaining=0,
                retry_after_seconds=retry_after,
                window_seconds=spec.window_seconds,
            )

        window.append(now)
        return RateDecision(
            allowed=True,
            limit=spec.requests,
            remaining=spec.requests - len(window),
            retry_after_seconds=0,
            window_seconds=spec.window_seconds,
        )

    def prune(self) -> int:
        """Drop timestamps older than the idle window and forget empty keys."""

        now = self._clock()
        removed = 0
        for key in list(self._windows):
            window = self._windows[key]
            while window and now - window[0] >= self._idle_window_s:
                window.popleft()
            if not window:
                del self._windows[key]
                removed += 1
        if removed:
            LOGGER.debug("Pruned %d idle rate limit windows", removed)
        return removed

    def tracked_keys(self) -> int:
        return len(self._windows)


async def enforce_rate_limit(
    request: Request,
    response: Response,
    api_key: Optional[ApiKey] = Depends(authenticate),
) -> Optional[RateDecision]:
    """FastAPI dependency: 429 when the caller's window is full.

    Requests are only limited when an API key table is configured.
    """

    if api_key is None:
        return None
    limiter: SlidingWindowRateLimiter = request.app.state.service.rate_limiter
    decision = await limiter.admit(api_key.name, api_key.rate_limit)
    if not decision.allowed:
        raise RateLimitExceeded(limit=decision.limit, retry_after_seconds=decision.retry_after_seconds)
    for header, value in decision.headers().items():
        response.headers[header] = value
    return decision


__all__ = [
    "DEFAULT_LIMIT_SPEC",
    "LimitSpec",
    "RateDecision",
    "SlidingWindowRateLimiter",
    "enforce_rate_limit",
    "parse_limit_spec",
]
