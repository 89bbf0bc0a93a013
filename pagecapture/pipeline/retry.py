"""
Bounded exponential-backoff retry for the navigation phase.
"""
from __future__ import annotations

import asyncio
import random
import re
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from loguru import logger

from pagecapture.pipeline.models import RetryPolicy

log = logger.bind(module="retry")

T = TypeVar("T")

# Message fragments that indicate a transient network condition
TRANSIENT_PATTERNS = (
    "dns",
    "getaddrinfo",
    "timeout",
    "timed out",
    "network",
    "connection",
    "err_name_not_resolved",
    "err_connection_reset",
    "err_connection_refused",
    "err_connection_timed_out",
    "err_internet_disconnected",
    "err_network_changed",
)

_STATUS_IN_MESSAGE = re.compile(r"status:\s*(\d+)")
_URL_IN_MESSAGE = re.compile(r"\b[a-z][a-z0-9+.-]*://\S+", re.IGNORECASE)

Observer = Callable[[str, Dict[str, Any]], None]


def error_status(error: BaseException) -> Optional[int]:
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status
    match = _STATUS_IN_MESSAGE.search(str(error))
    return int(match.group(1)) if match else None


def is_retryable(error: BaseException, policy: RetryPolicy, status: Optional[int] = None) -> bool:
    """
    Classify ``error`` as transient.

    An error that carries an HTTP status is judged by that status alone. Otherwise the
    message, with any URLs removed, is matched against the transient fragments and the
    policy's error codes.
    """
    if status is not None:
        return status in policy.retryable_status_codes
    message = _URL_IN_MESSAGE.sub("", str(error))
    lowered = message.lower()
    if any(pattern in lowered for pattern in TRANSIENT_PATTERNS):
        return True
    return any(code in message or code.lower() in lowered for code in policy.retryable_error_patterns)


def compute_delay(attempt: int, policy: RetryPolicy, rng: Callable[[], float] = random.random) -> float:
    """Delay in ms before ``attempt`` (2-based; attempt 1 never waits), jitter included."""
    if attempt < 2:
        return 0.0
    base = min(policy.initial_delay_ms * policy.backoff_multiplier ** (attempt - 2), policy.max_delay_ms)
    return base + rng() * 0.1 * base


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    observer: Optional[Observer] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    context: str = "retry",
) -> T:
    """
    Call ``fn`` until it succeeds, at most ``max_retries + 1`` times.

    Non-retryable errors and the error from the final attempt propagate unchanged.
    ``observer(event, data)`` receives ``attempt_failed``, ``succeeded`` and ``failed``.
    """
    policy = policy or RetryPolicy()
    total = policy.max_retries + 1

    def notify(event: str, data: Dict[str, Any]) -> None:
        if observer is not None:
            observer(event, data)

    attempt = 1
    while True:
        try:
            result = await fn()
        except Exception as exc:
            status = error_status(exc)
            retryable = is_retryable(exc, policy, status)
            if attempt >= total or not retryable:
                log.error(
                    "{}:failed attempt={} status={} retryable={} error={}", context, attempt, status, retryable, exc
                )
                notify(
                    "failed",
                    {"attempt": attempt, "error": str(exc), "status": status, "retryable": retryable},
                )
                raise
            delay_ms = compute_delay(attempt + 1, policy, rng)
            log.warning(
                "{}:attempt_failed attempt={} status={} retry_in={}ms error={}",
                context,
                attempt,
                status,
                int(delay_ms),
                exc,
            )
            notify(
                "attempt_failed",
                {"attempt": attempt, "error": str(exc), "status": status, "delay_ms": int(delay_ms)},
            )
            await sleep(delay_ms / 1000)
            attempt += 1
            continue

        if attempt > 1:
            log.info("{}:succeeded attempt={}", context, attempt)
        notify("succeeded", {"attempt": attempt, "total_attempts": attempt})
        return result


class RetryRecorder:
    """Retry observer that counts retried attempts and forwards events to a sink."""

    def __init__(self, emit: Optional[Callable[[str, Dict[str, Any]], Any]] = None, url: str = "") -> None:
        self.retry_attempts = 0
        self.events: list = []
        self._emit = emit
        self._url = url

    def __call__(self, event: str, data: Dict[str, Any]) -> None:
        self.events.append((event, data))
        if event == "attempt_failed":
            self.retry_attempts += 1
        if self._emit is not None:
            name = "retry.attempt" if event == "attempt_failed" else f"retry.{event}"
            self._emit(name, {"url": self._url, **data})


def policy_from_settings(settings, overrides: Optional[RetryPolicy] = None) -> RetryPolicy:
    if overrides is not None:
        return overrides
    return RetryPolicy(
        max_retries=settings.max_retries,
        initial_delay_ms=settings.retry_initial_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
    )
