"""
Retry handler with exponential backoff for provider calls
"""

import asyncio
from typing import Dict, List, Any, Awaitable, Callable, Optional
from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
import random

from ..error_handling.exceptions import is_transient_provider_error
from ..logging.structured_logger import get_logger, EventType

logger = get_logger(__name__)


class RetryStrategy(Enum):
    """Retry strategies for different operations"""
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    FIXED_DELAY = "fixed_delay"
    JITTERED_BACKOFF = "jittered_backoff"


@dataclass
class RetryConfig:
    """Configuration for retry behavior"""
    max_retries: int = 5
    base_delay: float = 3.0
    max_delay: Optional[float] = None
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


class RetryFailure(Exception):
    """Raised when an operation fails for good, carrying the attempt count"""

    def __init__(self, operation_name: str, last_error: Exception, attempts: int, transient: bool):
        super().__init__(str(last_error))
        self.operation_name = operation_name
        self.last_error = last_error
        self.attempts = attempts
        self.transient = transient


class RetryHandler:
    """
    Runs an async operation, retrying only errors the classifier marks as
    transient. Attempt ``k`` (0-indexed) is followed by a wait of
    ``base_delay * 2**k`` before attempt ``k + 1``.
    """

    def __init__(
        self,
        config: RetryConfig = None,
        should_retry: Callable[[Exception], bool] = is_transient_provider_error,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self.should_retry = should_retry
        self._sleep = sleep
        self.attempt_history: List[Dict] = []

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        operation_name: str,
        before_attempt: Optional[Callable[[int], Awaitable[Any]]] = None,
    ) -> Any:
        """
        Execute operation with retry logic.

        ``before_attempt`` runs ahead of every attempt, including the first;
        it is where callers charge the token budget, since every attempt
        consumes provider quota.
        """
        for attempt in range(self.config.max_attempts):
            if before_attempt is not None:
                await before_attempt(attempt)

            try:
                result = await operation()
            except Exception as e:
                transient = self.should_retry(e)
                self._record_attempt(operation_name, attempt + 1, False, str(e))

                if not transient:
                    logger.warning(
                        f"[Retry] {operation_name} failed with non-retryable error: {e}",
                        event_type=EventType.ERROR_OCCURRED
                    )
                    raise RetryFailure(operation_name, e, attempt + 1, transient=False) from e

                if attempt >= self.config.max_retries:
                    logger.error(
                        f"[Retry] {operation_name} failed after {attempt + 1} attempts",
                        event_type=EventType.ERROR_OCCURRED
                    )
                    raise RetryFailure(operation_name, e, attempt + 1, transient=True) from e

                delay = self._calculate_delay(attempt)
                logger.info(
                    f"[Retry] Retrying {operation_name} in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{self.config.max_retries})",
                    event_type=EventType.EXTERNAL_SERVICE,
                    metadata={"error": str(e)[:200]}
                )
                await self._sleep(delay)
                continue

            self._record_attempt(operation_name, attempt + 1, True, None)
            if attempt > 0:
                logger.info(f"[Retry] {operation_name} succeeded on attempt {attempt + 1}")
            return result

        # max_attempts is always >= 1, so the loop returns or raises
        raise RuntimeError(f"Operation {operation_name} made no attempts")

    def _calculate_delay(self, attempt: int) -> float:
        """Delay after the given 0-indexed attempt"""
        if self.config.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            delay = self.config.base_delay * (2 ** attempt)
        elif self.config.strategy == RetryStrategy.JITTERED_BACKOFF:
            base_delay = self.config.base_delay * (2 ** attempt)
            delay = base_delay + random.uniform(0, 0.1 * base_delay)
        else:  # FIXED_DELAY
            delay = self.config.base_delay

        if self.config.max_delay is not None:
            delay = min(delay, self.config.max_delay)
        return delay

    def _record_attempt(self, operation: str, attempt: int, success: bool, error: Optional[str]):
        self.attempt_history.append({
            "operation": operation,
            "attempt": attempt,
            "success": success,
            "error": error,
            "timestamp": datetime.now(timezone.utc).isoformat()
        })
        # Keep the history bounded for long-lived handlers
        if len(self.attempt_history) > 1000:
            del self.attempt_history[:-1000]

    def get_retry_stats(self) -> Dict[str, Any]:
        if not self.attempt_history:
            return {"total_attempts": 0, "success_rate": 0.0}

        successful = sum(1 for a in self.attempt_history if a["success"])
        return {
            "total_attempts": len(self.attempt_history),
            "successful_attempts": successful,
            "failed_attempts": len(self.attempt_history) - successful,
            "success_rate": successful / len(self.attempt_history),
        }
