"""Retry-with-backoff wrapper around a single outbound HTTP call."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, Iterable, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from core.config_defaults import (
    DEFAULT_RETRY_INITIAL_DELAY_MS,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    DEFAULT_RETRY_STATUS_CODES,
)
from core.errors import ProviderCallError

logger = logging.getLogger("RetryExecutor")

MAX_BACKOFF_MS = 30_000.0
JITTER_RATIO = 0.3


@dataclass(frozen=True, slots=True, kw_only=True)
class RetryConfig:
    # retries after the first call, so total attempts are max_attempts + 1
    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    initial_delay_ms: float = DEFAULT_RETRY_INITIAL_DELAY_MS
    retryable_status_codes: FrozenSet[int] = field(default_factory=lambda: frozenset(DEFAULT_RETRY_STATUS_CODES))

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryConfig":
        codes: Iterable[int] = getattr(settings, "retryable_status_codes", None) or DEFAULT_RETRY_STATUS_CODES
        return cls(
            max_attempts=max(0, int(getattr(settings, "max_attempts", DEFAULT_RETRY_MAX_ATTEMPTS))),
            initial_delay_ms=max(0.0, float(getattr(settings, "initial_delay_ms", DEFAULT_RETRY_INITIAL_DELAY_MS))),
            retryable_status_codes=frozenset(int(c) for c in codes),
        )


@dataclass(frozen=True, slots=True)
class RetryOutcome:
    response: httpx.Response
    attempts: int
    total_duration_ms: float


def compute_backoff_delay_ms(
    attempt_index: int,
    initial_delay_ms: float,
    *,
    rng: Optional[random.Random] = None,
) -> float:
    """Delay before the retry following 0-indexed attempt `attempt_index`.

    base = initial * 2^(n+1), jitter uniform in +/-30% of initial, clamped to [0, 30s].
    """
    base = float(initial_delay_ms) * (2.0 ** (attempt_index + 1))
    spread = JITTER_RATIO * float(initial_delay_ms)
    jitter = (rng or random).uniform(-spread, spread)
    return min(max(base + jitter, 0.0), MAX_BACKOFF_MS)


class BackoffWait(wait_base):
    """tenacity wait strategy that applies `compute_backoff_delay_ms`."""

    def __init__(self, initial_delay_ms: float, *, rng: Optional[random.Random] = None) -> None:
        self.initial_delay_ms = initial_delay_ms
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        attempt_index = max(0, retry_state.attempt_number - 1)
        return compute_backoff_delay_ms(attempt_index, self.initial_delay_ms, rng=self.rng) / 1000.0


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderCallError) and exc.retryable


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Provider call attempt %s failed (%s); retrying in %.2fs",
        retry_state.attempt_number,
        exc,
        delay,
    )


class RetryExecutor:
    """Send one HTTP request with bounded retries.

    2xx returns immediately. Status codes in the retryable set and transport
    errors are retried until attempts run out; anything else raises
    ProviderCallError on the spot.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._client = client
        self._sleep = sleep
        self._rng = rng

    async def execute_with_retry(self, request: httpx.Request, config: RetryConfig) -> RetryOutcome:
        started = time.monotonic()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(0, int(config.max_attempts)) + 1),
            wait=BackoffWait(config.initial_delay_ms, rng=self._rng),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=_log_before_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                response = await self._send_once(request, config, attempt_number)
                return RetryOutcome(
                    response=response,
                    attempts=attempt_number,
                    total_duration_ms=(time.monotonic() - started) * 1000.0,
                )
        raise ProviderCallError("retry loop exited without a result")  # pragma: no cover

    async def _send_once(self, request: httpx.Request, config: RetryConfig, attempt_number: int) -> httpx.Response:
        try:
            response = await self._client.send(request)
        except httpx.TransportError as exc:
            raise ProviderCallError(
                f"transport error calling {request.url}: {exc}",
                attempts=attempt_number,
                retryable=True,
            ) from exc

        if response.is_success:
            return response

        status = response.status_code
        body = response.text[:500] if response.content else ""
        raise ProviderCallError(
            f"provider returned HTTP {status}",
            status_code=status,
            attempts=attempt_number,
            retryable=status in config.retryable_status_codes,
            detail=body or None,
        )
