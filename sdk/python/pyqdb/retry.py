# Copyright (c) 2026 Firefly Software Solutions Inc.
# Licensed under the Apache License, Version 2.0

"""
Retry with exponential backoff.

Only transient failures are retried: connection timeouts, lost connections,
network errors and operation timeouts. Everything else propagates on the
first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from .exceptions import is_retryable
from .models import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryState(str, Enum):
    """States of one retried operation."""

    IDLE = "idle"
    ATTEMPTING = "attempting"
    BACKING_OFF = "backing_off"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


def backoff_delay_ms(config: RetryConfig, retry: int) -> float:
    """
    Delay before the given retry (1-based).

    Example:
        >>> [backoff_delay_ms(RetryConfig(), n) for n in (1, 2, 3)]
        [100.0, 200.0, 400.0]
    """
    delay = config.initial_backoff_ms * config.backoff_multiplier ** (retry - 1)
    return float(min(delay, config.max_backoff_ms))


class RetryExecutor:
    """
    Runs an operation until it succeeds, fails permanently or runs out of retries.

    An executor tracks the state of one operation at a time; use a new
    executor per concurrent operation.

    Example:
        >>> executor = RetryExecutor(RetryConfig(max_retries=2))
        >>> result = await executor.execute(lambda: conn.send_request(MessageType.DATA, b"x"))
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.config = config or RetryConfig()
        self.state = RetryState.IDLE
        self.attempts = 0
        self._sleep = sleep

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation with this executor's retry configuration."""
        return await self.execute_with_retry(operation, self.config)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_config: RetryConfig,
    ) -> T:
        """
        Run operation, retrying transient failures.

        Args:
            operation: Callable returning a fresh awaitable per attempt.
            retry_config: Retry limits and backoff.

        Returns:
            The operation's result.

        Raises:
            The last error, unchanged, when retries are exhausted or the
            error is not retryable.
        """
        self.attempts = 0
        retries = 0
        while True:
            self.state = RetryState.ATTEMPTING
            self.attempts += 1
            try:
                result = await operation()
            except Exception as e:
                if not is_retryable(e):
                    self.state = RetryState.FAILED
                    raise
                if retries >= retry_config.max_retries:
                    self.state = RetryState.EXHAUSTED
                    if retry_config.max_retries:
                        logger.warning("Giving up after %d attempts: %s", self.attempts, e)
                    raise
                retries += 1
                delay_ms = backoff_delay_ms(retry_config, retries)
                self.state = RetryState.BACKING_OFF
                logger.warning(
                    "Attempt %d failed (%s), retrying in %.0f ms", self.attempts, e, delay_ms
                )
                await self._sleep(delay_ms / 1000.0)
                continue

            self.state = RetryState.SUCCEEDED
            return result
