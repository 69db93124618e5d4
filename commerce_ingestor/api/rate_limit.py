"""Token bucket rate limiting for API endpoints and webhook deliveries."""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"middleware": "rate_limit"})


class RateLimiter:
    """
    Token bucket rate limiter.

    Implements a token bucket algorithm for rate limiting with configurable
    limits per time window. Buckets are keyed by caller (API key, IP, or a
    webhook connection id).
    """

    def __init__(
        self,
        requests_per_window: int = 100,
        window_seconds: int = 60,
        burst_size: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize rate limiter.

        Args:
            requests_per_window: Maximum requests allowed per time window
            window_seconds: Time window duration in seconds
            burst_size: Maximum burst size (defaults to requests_per_window)
            clock: Time source, overridable in tests
        """
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self.burst_size = burst_size or requests_per_window
        self._clock = clock

        # Token bucket state: {key: (tokens, last_refill_time)}
        self._buckets: dict[str, tuple[float, float]] = defaultdict(
            lambda: (float(self.burst_size), self._clock())
        )
        self._refill_rate = self.requests_per_window / self.window_seconds

    def _refill_bucket(self, key: str, current_time: float) -> float:
        tokens, last_refill = self._buckets[key]
        elapsed = current_time - last_refill
        new_tokens = min(tokens + (elapsed * self._refill_rate), self.burst_size)
        self._buckets[key] = (new_tokens, current_time)
        return new_tokens

    def is_allowed(self, key: str) -> tuple[bool, dict[str, int]]:
        """
        Check if request is allowed under rate limit.

        Returns:
            Tuple of (allowed, metadata) where metadata contains ``limit``,
            ``remaining`` and ``reset`` (unix timestamp of the next token).
        """
        current_time = self._clock()
        tokens = self._refill_bucket(key, current_time)

        if tokens >= 1.0:
            self._buckets[key] = (tokens - 1.0, current_time)
            allowed = True
        else:
            allowed = False

        tokens_after_consume = tokens - 1.0 if allowed else tokens
        if tokens_after_consume < 1.0:
            time_to_next_token = (1.0 - tokens_after_consume) / self._refill_rate
            reset_time = current_time + time_to_next_token
        else:
            reset_time = current_time

        metadata = {
            "limit": self.requests_per_window,
            "remaining": int(max(0, tokens_after_consume)),
            "reset": int(reset_time) + 1,
        }
        return allowed, metadata

    def cleanup_stale_buckets(self, max_age_seconds: int = 3600) -> None:
        """Remove buckets not refilled in ``max_age_seconds``."""
        current_time = self._clock()
        stale_keys = [
            key
            for key, (_, last_refill) in self._buckets.items()
            if current_time - last_refill > max_age_seconds
        ]
        for key in stale_keys:
            del self._buckets[key]

        if stale_keys:
            logger.debug(
                f"Cleaned up {len(stale_keys)} stale rate limit buckets",
                extra={"status": "info", "stale_count": len(stale_keys)},
            )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-API-key rate limiting for the management API.

    Webhook paths are exempt; they are limited per connection by the webhook
    processor instead. Returns 429 when the limit is exceeded and adds
    ``X-RateLimit-*`` headers to every limited response.
    """

    def __init__(
        self,
        app,
        *,
        enabled: bool = True,
        requests_per_window: int = 100,
        window_seconds: int = 60,
        exempt_paths: list[str] | None = None,
    ):
        super().__init__(app)
        self.enabled = enabled
        self.exempt_paths = exempt_paths or [
            "/health",
            "/metrics",
            "/webhooks",
            "/docs",
            "/openapi.json",
        ]
        self.limiter = RateLimiter(
            requests_per_window=requests_per_window,
            window_seconds=window_seconds,
        )

    def _get_rate_limit_key(self, request: Request) -> str:
        api_key = request.headers.get("X-API-Key", "")
        if api_key:
            return f"api_key:{api_key}"
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return f"ip:{forwarded_for.split(',')[0].strip()}"
        return f"ip:{request.client.host if request.client else 'unknown'}"

    def _is_exempt(self, path: str) -> bool:
        return any(path.startswith(exempt_path) for exempt_path in self.exempt_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled or self._is_exempt(request.url.path):
            return await call_next(request)

        allowed, metadata = self.limiter.is_allowed(self._get_rate_limit_key(request))
        headers = {
            "X-RateLimit-Limit": str(metadata["limit"]),
            "X-RateLimit-Remaining": str(metadata["remaining"]),
            "X-RateLimit-Reset": str(metadata["reset"]),
        }

        if not allowed:
            logger.warning(
                "API rate limit exceeded",
                extra={"status": "rate_limited", "path": request.url.path},
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded", "reset": metadata["reset"]},
                headers=headers,
            )

        response = await call_next(request)
        for header_name, header_value in headers.items():
            response.headers[header_name] = header_value
        return response
