"""Rate limiting and retry for model calls.

Every provider owns one ``RateLimitedRetrier``. Calls are admitted by a
rolling one-minute request/token budget, then retried with exponential
backoff and jitter while the failure looks transient.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)

from agentrelay.errors import (
    AgentRelayError,
    RetryExhaustedError,
    TransientProviderError,
)
from agentrelay.session.context import CancellationToken

logger = logging.getLogger(__name__)

R = TypeVar("R")

WINDOW_SECONDS = 60.0

DEFAULT_RPM = 200
DEFAULT_TPM = 150_000
DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 1.0

_TRANSIENT_MARKERS = (
    "rate limit",
    "ratelimit",
    "429",
    "too many requests",
    "usage cap",
    "overloaded",
    "temporarily unavailable",
)

# (attempt_number, error, upcoming_delay)
OnRetry = Callable[[int, BaseException, float], None]


def is_transient_error(exc: BaseException) -> bool:
    """Classify a failure as worth retrying.

    Our own errors say so themselves. Foreign exceptions are judged by type
    (connection drops, timeouts), then by the ``status_code`` litellm
    exceptions carry (408, 429, 5xx), then by the rate-limit wording in the
    message.
    """
    if isinstance(exc, AgentRelayError):
        return isinstance(exc, TransientProviderError)
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True

    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status in (408, 429) or status >= 500):
        return True

    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    jitter_ratio: float = 0.5,
    max_delay: float = 60.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``attempt`` (0-based).

    ``base * 2**attempt``, stretched by up to ``jitter_ratio`` of itself,
    capped at ``max_delay``.
    """
    delay = base_delay * (2**attempt)
    delay *= 1.0 + rand() * jitter_ratio
    return min(delay, max_delay)


class RateLimiter:
    """Rolling-window admission control for requests and tokens.

    Each admitted call records ``(timestamp, tokens)``. A call is admitted
    only while the last 60 seconds hold fewer than ``rpm`` requests and
    leave room for its tokens within ``tpm``. A call larger than the whole
    token budget is admitted once the window is empty.
    """

    def __init__(
        self,
        rpm: int = DEFAULT_RPM,
        tpm: int = DEFAULT_TPM,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rpm <= 0 or tpm <= 0:
            raise ValueError("rpm and tpm must be positive")
        self.rpm = rpm
        self.tpm = tpm
        self._clock = clock
        self._sleep = sleep
        self._entries: deque[tuple[float, int]] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._entries and now - self._entries[0][0] >= WINDOW_SECONDS:
            self._entries.popleft()

    def _wait_time(self, tokens: int, now: float) -> float:
        self._prune(now)
        if not self._entries:
            return 0.0
        used = sum(t for _, t in self._entries)
        if len(self._entries) < self.rpm and used + tokens <= self.tpm:
            return 0.0
        return max(self._entries[0][0] + WINDOW_SECONDS - now, 0.001)

    def usage(self) -> tuple[int, int]:
        """(requests, tokens) currently inside the window."""
        self._prune(self._clock())
        return len(self._entries), sum(t for _, t in self._entries)

    async def acquire(
        self, tokens: int = 0, token: CancellationToken | None = None
    ) -> None:
        """Wait until the call fits the window, then record it."""
        async with self._lock:
            while True:
                now = self._clock()
                wait = self._wait_time(tokens, now)
                if wait <= 0:
                    self._entries.append((now, tokens))
                    return
                logger.debug("Rate limit window full, waiting %.2fs", wait)
                if token is not None:
                    await token.sleep(wait)
                else:
                    await self._sleep(wait)


@dataclass
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    jitter_ratio: float = 0.5
    max_delay: float = 60.0


class RateLimitedRetrier:
    """Admission control plus transient-failure retry for one provider."""

    def __init__(
        self,
        limiter: RateLimiter | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.limiter = limiter or RateLimiter()
        self.policy = policy or RetryPolicy()

    def _wait(self, retry_state: RetryCallState) -> float:
        return backoff_delay(
            retry_state.attempt_number - 1,
            base_delay=self.policy.base_delay,
            jitter_ratio=self.policy.jitter_ratio,
            max_delay=self.policy.max_delay,
        )

    def _retrying(
        self, token: CancellationToken, on_retry: OnRetry | None
    ) -> AsyncRetrying:
        log_retry = before_sleep_log(logger, logging.WARNING)

        def _before_sleep(retry_state: RetryCallState) -> None:
            log_retry(retry_state)
            if on_retry is not None and retry_state.outcome is not None:
                error = retry_state.outcome.exception()
                delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
                if error is not None:
                    on_retry(retry_state.attempt_number, error, delay)

        return AsyncRetrying(
            retry=retry_if_exception(is_transient_error),
            stop=stop_after_attempt(self.policy.max_retries + 1),
            wait=self._wait,
            sleep=token.sleep,
            before_sleep=_before_sleep,
        )

    async def call(
        self,
        fn: Callable[[], Awaitable[R]],
        *,
        token: CancellationToken | None = None,
        estimated_tokens: int = 0,
        on_retry: OnRetry | None = None,
    ) -> R:
        """Run ``fn`` under the rate limit, retrying transient failures.

        Raises:
            RetryExhaustedError: transient failures outlasted ``max_retries``.
            RunCancelledError: the token fired while waiting or calling.
        """
        token = token or CancellationToken()
        try:
            async for attempt in self._retrying(token, on_retry):
                with attempt:
                    token.raise_if_cancelled()
                    await self.limiter.acquire(estimated_tokens, token)
                    return await token.race(fn())
        except RetryError as e:
            last = e.last_attempt.exception()
            attempts = e.last_attempt.attempt_number
            raise RetryExhaustedError(
                f"gave up after {attempts} attempts: {last}",
                attempts=attempts,
                last_error=last,
            ) from last
        raise AssertionError("unreachable")

    async def open_stream(
        self,
        factory: Callable[[], AsyncIterator[R]],
        *,
        token: CancellationToken | None = None,
        estimated_tokens: int = 0,
        on_retry: OnRetry | None = None,
        is_failure: Callable[[R], BaseException | None] | None = None,
    ) -> AsyncIterator[R]:
        """Open a stream, retrying until its first item arrives.

        ``is_failure`` maps an item to the error it reports (if any), so a
        stream that opens with a transient error item is retried like a
        raised exception. Once an item has been delivered there are no more
        retries.
        """
        token = token or CancellationToken()

        async def _open() -> tuple[AsyncIterator[R], R | None]:
            stream = factory()
            first = await _next_item(stream)
            if first is not None and is_failure is not None:
                error = is_failure(first)
                if error is not None and is_transient_error(error):
                    await _close(stream)
                    raise error
            return stream, first

        stream, item = await self.call(
            _open, token=token, estimated_tokens=estimated_tokens, on_retry=on_retry
        )
        try:
            while item is not None:
                yield item
                item = await token.race(_next_item(stream))
        finally:
            await _close(stream)


async def _next_item(stream: AsyncIterator[R]) -> R | None:
    try:
        return await anext(stream)
    except StopAsyncIteration:
        return None


async def _close(stream: AsyncIterator[R]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
