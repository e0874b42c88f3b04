"""Resilient Executor: deadline + capped exponential backoff with jitter.

Runs one remote call per attempt under a deadline and retries failures that
are classified as retryable:
  - 429 / rate-limit message  → retryable
  - 5xx                       → retryable
  - deadline expired          → retryable (timeout)
  - anything else             → fatal, returned immediately

Backoff before attempt i+1:
  delay = min(base * 2^i, max_delay) + random(0, jitter)

A timed-out attempt is abandoned, not cancelled: the underlying call keeps
running until its transport gives up and its late result is discarded. With
httpx the request therefore holds a socket for up to the client timeout.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from app.core.metrics import REMOTE_ATTEMPTS
from app.gateway.types import (
    FailureClass,
    FatalFailure,
    RemoteOutcome,
    RetryableFailure,
    Success,
)

logger = logging.getLogger(__name__)

AttemptFn = Callable[[], Awaitable[RemoteOutcome]]

_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "ratelimit", "resource_exhausted", "too many requests")


def classify_status(status_code: int, message: str = "") -> FailureClass | None:
    """Classify an HTTP-like status. Returns None for non-error statuses."""
    lowered = message.lower()
    if status_code == 429 or any(m in lowered for m in _RATE_LIMIT_MARKERS):
        return FailureClass.RATE_LIMITED
    if 500 <= status_code <= 599:
        return FailureClass.SERVER_ERROR
    if status_code >= 400:
        return FailureClass.CLIENT_ERROR
    return None


def failure_for(classification: FailureClass, message: str, status_code: int = 0) -> RetryableFailure | FatalFailure:
    if classification.retryable:
        return RetryableFailure(classification=classification, message=message, status_code=status_code)
    return FatalFailure(classification=classification, reason=message, status_code=status_code)


def classify_exception(exc: BaseException) -> RetryableFailure | FatalFailure:
    """Turn an exception escaping a remote call into a classified outcome."""
    message = str(exc) or type(exc).__name__

    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return RetryableFailure(classification=FailureClass.TIMEOUT, message=message)

    status_code = 0
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
    else:
        raw = getattr(exc, "status_code", None) or getattr(exc, "status", None) or getattr(exc, "code", None)
        if isinstance(raw, int):
            status_code = raw

    classification = classify_status(status_code, message)
    if classification is not None:
        return failure_for(classification, message, status_code)

    if isinstance(exc, httpx.TransportError):
        # Connection reset / refused: the remote never answered
        return RetryableFailure(classification=FailureClass.SERVER_ERROR, message=message)

    return FatalFailure(classification=FailureClass.PROTOCOL_ERROR, reason=message, status_code=status_code)


def calculate_backoff(
    attempt: int,
    base_delay: float = 0.75,
    max_delay: float = 10.0,
    jitter: float = 0.25,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """Capped exponential backoff with additive jitter.

    Formula: min(base * 2^attempt, max_delay) + random(0, jitter)
    """
    return min(max_delay, base_delay * (2**attempt)) + rng(0, jitter)


def _discard_late_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned attempt failed late: %s", exc)
    else:
        logger.info("Discarded late result of an abandoned attempt")


@dataclass
class Execution:
    """Outcome of ``ResilientExecutor.run`` with bookkeeping."""

    outcome: RemoteOutcome
    attempts: int
    waited: float  # seconds spent in backoff


class ResilientExecutor:
    """Wraps a remote call with a per-attempt deadline and bounded retries.

    Usage:
        executor = ResilientExecutor(timeout=45.0, max_attempts=3, base_delay=0.75)

        outcome = await executor.execute(lambda: adapter.send(request, model))
        if isinstance(outcome, Success):
            ...
    """

    def __init__(
        self,
        timeout: float = 45.0,
        max_attempts: int = 3,
        base_delay: float = 0.75,
        max_delay: float = 10.0,
        jitter: float = 0.25,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[float, float], float] = random.uniform,
    ):
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep
        self._rng = rng

    async def execute(
        self,
        fn: AttemptFn,
        timeout: float | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
    ) -> RemoteOutcome:
        """Run ``fn`` with retries and return the final outcome."""
        execution = await self.run(fn, timeout=timeout, max_attempts=max_attempts, base_delay=base_delay)
        return execution.outcome

    async def run(
        self,
        fn: AttemptFn,
        timeout: float | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
    ) -> Execution:
        timeout = self.timeout if timeout is None else timeout
        max_attempts = max(1, self.max_attempts if max_attempts is None else max_attempts)
        base_delay = self.base_delay if base_delay is None else base_delay

        waited = 0.0
        outcome: RemoteOutcome | None = None

        for attempt in range(max_attempts):
            outcome = await self._attempt(fn, timeout)
            self._record(outcome)

            if not isinstance(outcome, RetryableFailure):
                return Execution(outcome=outcome, attempts=attempt + 1, waited=waited)

            if attempt + 1 >= max_attempts:
                break

            delay = calculate_backoff(attempt, base_delay, self.max_delay, self.jitter, self._rng)
            logger.info(
                "Retrying after %s (attempt %d/%d) in %.2fs: %s",
                outcome.classification.value,
                attempt + 1,
                max_attempts,
                delay,
                outcome.message,
                extra={"attempt": attempt + 1},
            )
            await self._sleep(delay)
            waited += delay

        logger.warning(
            "Retries exhausted after %d attempts: %s",
            max_attempts,
            outcome.message if isinstance(outcome, RetryableFailure) else outcome,
        )
        return Execution(outcome=outcome, attempts=max_attempts, waited=waited)

    async def _attempt(self, fn: AttemptFn, timeout: float) -> RemoteOutcome:
        task = asyncio.ensure_future(fn())
        done, _ = await asyncio.wait({task}, timeout=timeout)

        if not done:
            task.add_done_callback(_discard_late_result)
            logger.warning("Remote call exceeded %.1fs deadline, abandoning attempt", timeout)
            return RetryableFailure(classification=FailureClass.TIMEOUT, message=f"No response within {timeout:.0f}s")

        try:
            outcome = task.result()
        except Exception as e:
            return classify_exception(e)

        if isinstance(outcome, (Success, RetryableFailure, FatalFailure)):
            return outcome
        return FatalFailure(
            classification=FailureClass.PROTOCOL_ERROR,
            reason=f"Unexpected remote result type: {type(outcome).__name__}",
        )

    @staticmethod
    def _record(outcome: RemoteOutcome) -> None:
        label = "success" if isinstance(outcome, Success) else outcome.classification.value
        REMOTE_ATTEMPTS.labels(outcome=label).inc()
