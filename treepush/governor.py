"""Admission control and retry policy for every outbound call.

One governor instance is shared by everything that uses the same credential,
because the remote quota is per credential rather than per push. It keeps a
``RateLimitState`` per scope:

* primary: the hourly quota reported by ``x-ratelimit-*`` headers. Running
  low shrinks the admitted concurrency to a single in-flight call until the
  window resets.
* secondary: short punitive windows ("abuse detection"). While throttled,
  nothing is admitted. Once the window clears, full concurrency comes back.

Transport failures (timeouts, resets, 502/503/504) get their own, smaller
retry budget. Any other status is handed back to the caller untouched.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import AsyncIterator, Awaitable, Callable

import httpx

from treepush.errors import NetworkError, RateLimitError
from treepush.models import RateLimitScope, RateLimitState, ScopeStatus


logger = logging.getLogger(__name__)

SendCallable = Callable[[], Awaitable[httpx.Response]]

RATE_LIMIT_STATUSES = {403, 429}
TRANSIENT_STATUSES = {502, 503, 504}
DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_LOW_QUOTA_THRESHOLD = 10


def _header_number(headers: httpx.Headers, name: str) -> float | None:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return float(value.strip())
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or ""
    if isinstance(payload, dict):
        return str(payload.get("message") or "")
    return ""


class RateLimitGovernor:
    def __init__(
        self,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_rate_limit_retries: int = 5,
        max_network_retries: int = 3,
        network_backoff_seconds: float = 1.0,
        secondary_backoff_seconds: float = 60.0,
        max_backoff_seconds: float = 300.0,
        max_wait_seconds: float = 900.0,
        jitter: float = 0.1,
        low_quota_threshold: int = DEFAULT_LOW_QUOTA_THRESHOLD,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self._max_concurrency = max(1, int(max_concurrency))
        self._max_rate_limit_retries = max(0, int(max_rate_limit_retries))
        self._max_network_retries = max(0, int(max_network_retries))
        self._network_backoff = network_backoff_seconds
        self._secondary_backoff = secondary_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._max_wait = max_wait_seconds
        self._jitter = max(0.0, jitter)
        self._low_quota_threshold = low_quota_threshold
        self._clock = clock
        self._sleep = sleep
        self._random = random_fn
        self._states = {scope: RateLimitState(scope=scope) for scope in RateLimitScope}
        self._in_flight = 0
        self._condition = asyncio.Condition()

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    def state(self, scope: RateLimitScope = RateLimitScope.PRIMARY) -> RateLimitState:
        """Read-only copy of the scope's state; only the governor mutates the original."""
        return replace(self._states[scope])

    def admitted_concurrency(self) -> int:
        primary = self._states[RateLimitScope.PRIMARY]
        if primary.remaining is None or primary.remaining > self._low_quota_threshold:
            return self._max_concurrency
        if primary.reset_at is not None and primary.reset_at <= self._clock():
            return self._max_concurrency
        return 1

    async def execute(self, send: SendCallable, *, label: str = "request") -> httpx.Response:
        rate_limit_attempts = 0
        network_attempts = 0

        while True:
            await self._wait_for_admission(label)
            try:
                async with self._slot():
                    response = await send()
            except httpx.TransportError as exc:
                network_attempts += 1
                await self._network_backoff_or_raise(label, network_attempts, str(exc) or exc.__class__.__name__, exc)
                continue

            self._observe_headers(response)

            if response.status_code in TRANSIENT_STATUSES:
                network_attempts += 1
                await self._network_backoff_or_raise(
                    label, network_attempts, f"HTTP {response.status_code}", None
                )
                continue

            scope = self._classify(response)
            if scope is None:
                if response.is_success and _header_number(response.headers, "x-ratelimit-remaining") == 0:
                    # Quota exhausted by this very call: hold later calls until the reset.
                    self._throttle(RateLimitScope.PRIMARY, response, attempt=1)
                return response

            rate_limit_attempts += 1
            wait_seconds = self._throttle(scope, response, attempt=rate_limit_attempts)
            if rate_limit_attempts > self._max_rate_limit_retries or wait_seconds > self._max_wait:
                retry_after = _header_number(response.headers, "retry-after")
                raise RateLimitError(
                    f"{label}: {scope.value} rate limit still active after "
                    f"{rate_limit_attempts} attempt(s)",
                    scope=scope.value,
                    retry_after=retry_after if retry_after is not None else wait_seconds,
                    status=response.status_code,
                    payload=_error_message(response),
                )
            logger.warning(
                "%s hit the %s rate limit (HTTP %s); retrying in %.1fs (attempt %d/%d)",
                label,
                scope.value,
                response.status_code,
                wait_seconds,
                rate_limit_attempts,
                self._max_rate_limit_retries,
            )

    async def _network_backoff_or_raise(
        self,
        label: str,
        attempt: int,
        reason: str,
        exc: BaseException | None,
    ) -> None:
        if attempt > self._max_network_retries:
            raise NetworkError(f"{label} failed after {attempt} attempt(s): {reason}") from exc
        delay = min(self._network_backoff * (2 ** (attempt - 1)), self._max_backoff)
        delay += delay * self._jitter * self._random()
        logger.warning(
            "%s failed (%s); retrying in %.1fs (attempt %d/%d)",
            label,
            reason,
            delay,
            attempt,
            self._max_network_retries,
        )
        await self._sleep(delay)

    async def _wait_for_admission(self, label: str) -> None:
        while True:
            now = self._clock()
            until = now
            for state in self._states.values():
                if state.status is not ScopeStatus.THROTTLED:
                    continue
                if state.blocked_until > now:
                    until = max(until, state.blocked_until)
                else:
                    state.status = ScopeStatus.OPEN
                    logger.info("%s rate limit window cleared", state.scope.value)
            if until <= now:
                return
            if until - now > self._max_wait:
                raise RateLimitError(
                    f"{label}: rate limit resets in {until - now:.0f}s, "
                    f"longer than the {self._max_wait:.0f}s wait budget",
                    retry_after=until - now,
                )
            logger.debug("%s waiting %.1fs for rate limit window", label, until - now)
            await self._sleep(until - now)

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: self._in_flight < self.admitted_concurrency())
            self._in_flight += 1
        try:
            yield
        finally:
            async with self._condition:
                self._in_flight -= 1
                self._condition.notify_all()

    def _observe_headers(self, response: httpx.Response) -> None:
        headers = response.headers
        remaining = _header_number(headers, "x-ratelimit-remaining")
        if remaining is None:
            return
        primary = self._states[RateLimitScope.PRIMARY]
        primary.remaining = int(remaining)
        limit = _header_number(headers, "x-ratelimit-limit")
        if limit is not None:
            primary.limit = int(limit)
        reset = _header_number(headers, "x-ratelimit-reset")
        if reset is not None:
            primary.reset_at = reset

    def _classify(self, response: httpx.Response) -> RateLimitScope | None:
        if response.status_code not in RATE_LIMIT_STATUSES:
            return None
        if _header_number(response.headers, "x-ratelimit-remaining") == 0:
            return RateLimitScope.PRIMARY
        if "retry-after" in response.headers or response.status_code == 429:
            return RateLimitScope.SECONDARY
        message = _error_message(response).lower()
        if "secondary rate limit" in message or "abuse" in message:
            return RateLimitScope.SECONDARY
        if "rate limit" in message:
            return RateLimitScope.PRIMARY
        # A plain 403 is a permission problem, not throttling.
        return None

    def _throttle(self, scope: RateLimitScope, response: httpx.Response, *, attempt: int) -> float:
        now = self._clock()
        state = self._states[scope]
        retry_after = _header_number(response.headers, "retry-after")
        if retry_after is not None:
            wait_seconds = max(0.0, retry_after)
        elif scope is RateLimitScope.PRIMARY and state.reset_at is not None:
            wait_seconds = max(0.0, state.reset_at - now)
        elif scope is RateLimitScope.SECONDARY:
            wait_seconds = min(self._secondary_backoff * (2 ** (attempt - 1)), self._max_backoff)
        else:
            wait_seconds = min(self._network_backoff * (2 ** (attempt - 1)), self._max_backoff)

        wait_seconds += wait_seconds * self._jitter * self._random()
        state.status = ScopeStatus.THROTTLED
        state.blocked_until = max(state.blocked_until, now + wait_seconds)
        state.hits += 1
        return wait_seconds
