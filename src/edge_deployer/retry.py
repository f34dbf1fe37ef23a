"""Centralized retry policy with exponential backoff and jitter."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from .errors import FatalExecutorError, RetryExhaustedError

if TYPE_CHECKING:
    from .config import RetryConfig
    from .executor.base import DeploymentExecutor, ExecutorOperation, ExecutorResult

logger = logging.getLogger(__name__)

# (attempt, failed result, delay before next attempt)
RetryCallback = Callable[[int, "ExecutorResult", float], None]


@dataclass
class RetryPolicy:
    """Bounded retry with exponential backoff.

    ``max_attempts`` counts every call, including the first one. Delays grow as
    ``base_delay * backoff_factor ** (attempt - 1)`` capped at ``max_delay``;
    with ``jitter`` the actual delay is drawn uniformly from ``[0, delay]``
    (full jitter) so parallel domains do not retry in lockstep.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    jitter: bool = True
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_config(cls, config: "RetryConfig", **overrides: Any) -> "RetryPolicy":
        values = {
            "max_attempts": config.max_attempts,
            "base_delay": config.base_delay,
            "backoff_factor": config.backoff_factor,
            "max_delay": config.max_delay,
            "jitter": config.jitter,
        }
        values.update(overrides)
        return cls(**values)

    def with_attempts(self, max_attempts: int, base_delay: Optional[float] = None) -> "RetryPolicy":
        """Derive a policy with a different attempt count, keeping the sleep hook."""
        if base_delay is None:
            return replace(self, max_attempts=max_attempts)
        return replace(self, max_attempts=max_attempts, base_delay=base_delay)

    def compute_delay(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = min(self.max_delay, self.base_delay * (self.backoff_factor ** (attempt - 1)))
        if self.jitter:
            delay = random.uniform(0, delay)  # noqa: S311
        return delay

    def call(
        self,
        executor: "DeploymentExecutor",
        operation: "ExecutorOperation",
        domain: str,
        environment: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> "ExecutorResult":
        """Run one executor operation under this policy.

        Returns the successful ``ExecutorResult``.

        Raises:
            FatalExecutorError: the executor reported a non-retryable failure.
            RetryExhaustedError: a retryable failure persisted for every attempt.
        """
        params = params or {}
        attempt = 0
        while True:
            attempt += 1
            result = executor.execute(operation, domain, environment, params, timeout)
            if result.success:
                if attempt > 1:
                    logger.info(f"✅ {operation.value} succeeded for {domain} on attempt {attempt}")
                return result

            detail = result.error_detail or "unknown error"
            if not result.retryable:
                raise FatalExecutorError(operation.value, domain, detail, {"attempts": attempt})

            if attempt >= self.max_attempts:
                raise RetryExhaustedError(operation.value, domain, detail, attempt)

            delay = self.compute_delay(attempt)
            logger.warning(
                f"🔄 {operation.value} failed for {domain} "
                f"(attempt {attempt}/{self.max_attempts}): {detail}; retrying in {delay:.1f}s"
            )
            if on_retry is not None:
                on_retry(attempt, result, delay)
            self.sleep(delay)
