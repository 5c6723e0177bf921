"""Retry policies for network operations.

Used for the bounded "wait for the relay" loops of the bridge and the
client connector.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Retry configuration."""

    attempts: int = 3
    min_delay_ms: int = 400
    max_delay_ms: int = 30000
    jitter: float = 0.1
    backoff: float = 2.0


def fixed_interval(attempts: int, interval_seconds: float) -> RetryConfig:
    """Build a RetryConfig that probes `attempts` times at a fixed interval."""
    delay_ms = int(interval_seconds * 1000)
    return RetryConfig(
        attempts=attempts,
        min_delay_ms=delay_ms,
        max_delay_ms=delay_ms,
        jitter=0.0,
        backoff=1.0,
    )


def compute_delay_ms(config: RetryConfig, attempt: int) -> float:
    """Delay before the retry following `attempt` (1-based)."""
    delay_ms = config.min_delay_ms * (config.backoff ** (attempt - 1))
    delay_ms = min(delay_ms, config.max_delay_ms)

    if config.jitter > 0:
        jitter_amount = delay_ms * config.jitter
        delay_ms += random.uniform(-jitter_amount, jitter_amount)

    return max(0, delay_ms)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[dict[str, Any]], None]] = None,
    label: Optional[str] = None,
) -> T:
    """Retry an async function.

    Args:
        fn: Async function to retry
        config: Retry configuration
        should_retry: Function to determine if error is retryable
        on_retry: Callback on retry
        label: Label for logging

    Returns:
        Result of fn()

    Raises:
        Last exception if all retries fail
    """
    if config is None:
        config = RetryConfig()

    last_error: Exception | None = None

    for attempt in range(1, config.attempts + 1):
        try:
            return await fn()
        except Exception as e:
            last_error = e

            if should_retry and not should_retry(e):
                raise

            if attempt >= config.attempts:
                raise

            delay_ms = compute_delay_ms(config, attempt)

            if on_retry:
                on_retry({
                    "attempt": attempt,
                    "max_attempts": config.attempts,
                    "delay_ms": delay_ms,
                    "label": label,
                    "error": str(e),
                })

            logger.debug(
                f"Retry {attempt}/{config.attempts} for {label or 'operation'} "
                f"after {delay_ms}ms: {e}"
            )

            await asyncio.sleep(delay_ms / 1000)

    raise last_error  # pragma: no cover


__all__ = [
    "RetryConfig",
    "compute_delay_ms",
    "fixed_interval",
    "retry_async",
]
