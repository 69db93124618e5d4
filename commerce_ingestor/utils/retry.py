"""Async retry utilities for outbound provider calls."""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, cast

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

from ..exceptions import (
    RateLimitExceededError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)


class RetryableStatusError(Exception):
    """Internal exception used to signal retryable HTTP status codes."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"Retryable HTTP status {response.status_code}")
        self.response = response


_RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.TransportError,
    RetryableStatusError,
)


class RetryConfig(BaseModel):
    """Backoff policy: ``base_delay * multiplier ** (attempt - 1)``, capped at ``max_delay``."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, gt=0)
    max_retry_after: float = Field(default=60.0, gt=0)
    jitter: float = Field(default=0.0, ge=0)
    status_forcelist: list[int] = Field(default_factory=lambda: [429, 500, 502, 503, 504])
    respect_retry_after: bool = True

    @field_validator("status_forcelist", mode="before")
    @classmethod
    def _coerce_status_codes(cls, value: Any) -> list[int]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple, set)):
            raise ValueError("status_forcelist must be a sequence of integers")
        try:
            return [int(item) for item in value]
        except (TypeError, ValueError) as exc:
            raise ValueError("status_forcelist entries must be integers") from exc

    def should_retry_response(self, response: httpx.Response) -> bool:
        """Return True when the HTTP response warrants a retry."""

        return response.status_code in self.status_forcelist

    def backoff_for(self, attempt_number: int) -> float:
        """Return the exponential delay after ``attempt_number`` failed attempts."""

        attempt_number = max(attempt_number, 1)
        delay = self.base_delay * (self.multiplier ** (attempt_number - 1))
        return min(delay, self.max_delay)

    def describe(self) -> dict[str, Any]:
        """Return a serialisable summary useful for logging/metrics."""

        return {
            "enabled": self.enabled,
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "multiplier": self.multiplier,
            "max_delay": self.max_delay,
            "status_forcelist": sorted(self.status_forcelist),
        }


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    trimmed = value.strip()
    if trimmed == "":
        return None
    try:
        return max(float(trimmed), 0.0)
    except ValueError:
        pass
    try:
        parsed = parsedate_to_datetime(trimmed)
    except (TypeError, ValueError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    delay = (parsed - datetime.now(timezone.utc)).total_seconds()
    return max(delay, 0.0)


def _failed_response(retry_state: RetryCallState) -> httpx.Response | None:
    outcome = retry_state.outcome
    if outcome is None or not outcome.failed:
        return None
    exception = outcome.exception()
    if isinstance(exception, RetryableStatusError):
        return exception.response
    return None


def _wait_strategy(config: RetryConfig) -> Callable[[RetryCallState], float]:
    def _wait(retry_state: RetryCallState) -> float:
        delay = config.backoff_for(retry_state.attempt_number)

        response = _failed_response(retry_state)
        if config.respect_retry_after and response is not None and response.status_code == 429:
            header_delay = _parse_retry_after(response.headers.get("retry-after"))
            if header_delay is not None:
                return min(header_delay, config.max_retry_after)

        if config.jitter > 0:
            delay += random.uniform(0, config.jitter)
        return max(delay, 0.0)

    return _wait


def _raise_exhausted(provider: str) -> Callable[[RetryCallState], Any]:
    def _callback(retry_state: RetryCallState) -> Any:
        outcome = retry_state.outcome
        if outcome is None:
            raise RuntimeError("Retry attempt completed without outcome")
        attempts = retry_state.attempt_number
        exception = outcome.exception()
        if isinstance(exception, RetryableStatusError):
            response = exception.response
            if response.status_code == 429:
                raise RateLimitExceededError(
                    f"{provider} kept throttling after {attempts} attempts",
                    retry_after=_parse_retry_after(response.headers.get("retry-after")),
                ) from exception
            raise UpstreamUnavailableError(
                f"{provider} returned HTTP {response.status_code} after {attempts} attempts",
                status_code=response.status_code,
            ) from exception
        if isinstance(exception, httpx.TimeoutException):
            raise UpstreamTimeoutError(
                f"{provider} timed out after {attempts} attempts"
            ) from exception
        if isinstance(exception, httpx.TransportError):
            raise UpstreamUnavailableError(
                f"{provider} unreachable after {attempts} attempts: {exception}"
            ) from exception
        if exception is not None:
            raise exception
        return outcome.result()

    return _callback


async def execute_with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    retry_config: RetryConfig,
    provider: str = "provider",
    log: logging.Logger | logging.LoggerAdapter | None = None,
    on_retry: Callable[[RetryCallState], None] | None = None,
) -> httpx.Response:
    """Execute ``send`` until it yields a non-retryable response.

    Raises:
        RateLimitExceededError: 429 persisted through every attempt.
        UpstreamTimeoutError: the final attempt timed out.
        UpstreamUnavailableError: 5xx or network failure persisted.
    """

    max_attempts = retry_config.max_attempts if retry_config.enabled else 1

    logger_to_use = log or logger
    if isinstance(logger_to_use, logging.LoggerAdapter):
        sleep_logger = cast(logging.Logger, logger_to_use.logger)
    else:
        sleep_logger = logger_to_use
    log_before_sleep = before_sleep_log(sleep_logger, logging.WARNING)

    def _before_sleep(retry_state: RetryCallState) -> None:
        log_before_sleep(retry_state)
        if on_retry is not None:
            on_retry(retry_state)

    response: httpx.Response | None = None
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=_wait_strategy(retry_config),
        retry=retry_if_exception_type(_RETRYABLE_EXCEPTIONS),
        before_sleep=_before_sleep,
        reraise=False,
        retry_error_callback=_raise_exhausted(provider),
    ):
        with attempt:
            response = await send()
            if retry_config.should_retry_response(response):
                raise RetryableStatusError(response)

    if response is None:  # pragma: no cover
        raise RuntimeError("Retry loop exited without producing a response")

    return response
