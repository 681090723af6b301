"""
Token budget scheduler: a sliding-window limiter on estimated provider tokens

One instance is shared by every running scan so the provider's
tokens-per-minute quota is respected no matter how many reports run at once.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from repo_scanner.config import settings
from ..logging.structured_logger import get_logger, EventType

logger = get_logger(__name__)


@dataclass
class TokenBudgetConfig:
    """Configuration for the token budget"""
    max_tokens_per_window: int = 1200000
    window_seconds: float = 60.0
    safety_margin: float = 0.8

    @property
    def effective_limit(self) -> float:
        return self.max_tokens_per_window * self.safety_margin

    @classmethod
    def from_settings(cls) -> "TokenBudgetConfig":
        return cls(
            max_tokens_per_window=settings.max_tpm,
            window_seconds=settings.tpm_window_seconds,
            safety_margin=settings.tpm_safety_margin,
        )


@dataclass
class TokenBudgetMetrics:
    total_reservations: int = 0
    total_tokens_reserved: int = 0
    waits_triggered: int = 0
    total_wait_seconds: float = 0.0
    oversized_reservations: int = 0
    last_wait_seconds: float = 0.0


class TokenBudgetScheduler:
    """
    Sliding-window budget on estimated tokens.

    ``reserve`` holds a single lock across the window check, the wait and the
    update, so two callers can never both pass the check before either one
    records its usage. Waiting happens with the lock held, which makes
    admission first-come first-served: a small reservation that would fit
    right now still queues behind a larger one that is waiting for headroom.
    """

    def __init__(
        self,
        config: Optional[TokenBudgetConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or TokenBudgetConfig()
        self.metrics = TokenBudgetMetrics()
        self._clock = clock
        self._sleep = sleep
        self._usage: Deque[Tuple[float, int]] = deque()
        self._used = 0
        self.lock = asyncio.Lock()

        logger.info(
            "Token budget scheduler initialized",
            event_type=EventType.RATE_LIMIT,
            metadata={
                "max_tokens_per_window": self.config.max_tokens_per_window,
                "window_seconds": self.config.window_seconds,
                "effective_limit": self.effective_limit,
            }
        )

    @property
    def effective_limit(self) -> float:
        return self.config.effective_limit

    @property
    def tokens_used(self) -> int:
        """Estimated tokens charged inside the current window"""
        self._expire(self._clock())
        return self._used

    @property
    def window_start(self) -> float:
        """Timestamp of the oldest charge still in the window"""
        now = self._clock()
        self._expire(now)
        return self._usage[0][0] if self._usage else now

    async def reserve(self, estimated_tokens: int) -> float:
        """
        Charge ``estimated_tokens`` against the budget, suspending the caller
        until the window has room. Returns the seconds spent waiting.
        """
        if estimated_tokens < 0:
            raise ValueError("estimated_tokens must not be negative")

        waited = 0.0
        async with self.lock:
            while True:
                now = self._clock()
                self._expire(now)

                if self._used + estimated_tokens <= self.effective_limit:
                    break

                if not self._usage:
                    # A single unit larger than the whole budget gets a window to itself
                    self.metrics.oversized_reservations += 1
                    logger.warning(
                        "Reservation exceeds the token budget on its own",
                        event_type=EventType.RATE_LIMIT,
                        metadata={"estimated_tokens": estimated_tokens, "effective_limit": self.effective_limit}
                    )
                    break

                delay = self._seconds_until_fits(now, estimated_tokens)
                logger.info(
                    f"TPM limit reached: {self._used}/{int(self.effective_limit)} tokens used. "
                    f"Waiting {delay:.1f}s",
                    event_type=EventType.RATE_LIMIT,
                    metadata={"estimated_tokens": estimated_tokens}
                )
                self.metrics.waits_triggered += 1
                await self._sleep(delay)
                waited += delay

            self._usage.append((now, estimated_tokens))
            self._used += estimated_tokens

            self.metrics.total_reservations += 1
            self.metrics.total_tokens_reserved += estimated_tokens
            self.metrics.total_wait_seconds += waited
            self.metrics.last_wait_seconds = waited

        return waited

    def _expire(self, now: float):
        """Drop charges that have left the window"""
        horizon = self.config.window_seconds - 1e-9
        while self._usage and now - self._usage[0][0] >= horizon:
            _, amount = self._usage.popleft()
            self._used -= amount

    def _seconds_until_fits(self, now: float, tokens: int) -> float:
        """Time until enough of the oldest charges expire to admit ``tokens``"""
        remaining = self._used
        for stamp, amount in self._usage:
            remaining -= amount
            if remaining + tokens <= self.effective_limit or remaining <= 0:
                return max(0.0, stamp + self.config.window_seconds - now)
        return 0.0

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "config": {
                "max_tokens_per_window": self.config.max_tokens_per_window,
                "window_seconds": self.config.window_seconds,
                "safety_margin": self.config.safety_margin,
                "effective_limit": self.effective_limit,
            },
            "metrics": {
                "tokens_used": self.tokens_used,
                "total_reservations": self.metrics.total_reservations,
                "total_tokens_reserved": self.metrics.total_tokens_reserved,
                "waits_triggered": self.metrics.waits_triggered,
                "total_wait_seconds": round(self.metrics.total_wait_seconds, 3),
                "oversized_reservations": self.metrics.oversized_reservations,
            }
        }

    async def reset(self):
        async with self.lock:
            self._usage.clear()
            self._used = 0
            self.metrics = TokenBudgetMetrics()
            logger.info("Token budget scheduler reset", event_type=EventType.RATE_LIMIT)


# Process-wide scheduler shared by all scan jobs
_token_scheduler: Optional[TokenBudgetScheduler] = None


def init_token_scheduler(config: Optional[TokenBudgetConfig] = None) -> TokenBudgetScheduler:
    """Create the shared scheduler; called once at process start"""
    global _token_scheduler
    _token_scheduler = TokenBudgetScheduler(config or TokenBudgetConfig.from_settings())
    return _token_scheduler


def get_token_scheduler() -> TokenBudgetScheduler:
    if _token_scheduler is None:
        return init_token_scheduler()
    return _token_scheduler
