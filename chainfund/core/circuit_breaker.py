import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from chainfund.core.errors import ProviderError

logger = structlog.get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(ProviderError):
    """Raised instead of calling a provider whose circuit is open"""
    code = "provider_unavailable"

    def __init__(self, name: str):
        super().__init__(f"{name} temporarily unavailable (circuit open)", transient=True)


class CircuitBreaker:
    """
    Circuit breaker guarding outbound payment provider calls.

    Only transient provider failures count towards opening the circuit;
    a declined transfer is a business outcome, not an outage.
    """

    def __init__(self,
                 name: str,
                 failure_threshold: int = 5,
                 recovery_timeout: timedelta = timedelta(seconds=30)):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.state = CircuitState.CLOSED
        self._lock = asyncio.Lock()

    def _should_attempt_reset(self) -> bool:
        if self.state != CircuitState.OPEN or not self.last_failure_time:
            return False
        return datetime.now() - self.last_failure_time >= self.recovery_timeout

    async def _on_success(self):
        async with self._lock:
            self.failure_count = 0
            self.last_failure_time = None
            if self.state != CircuitState.CLOSED:
                logger.info("Circuit breaker closed", breaker=self.name)
                self.state = CircuitState.CLOSED

    async def _on_failure(self):
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = datetime.now()
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != CircuitState.OPEN:
                    logger.warning("Circuit breaker opened",
                                   breaker=self.name,
                                   failure_count=self.failure_count,
                                   threshold=self.failure_threshold)
                self.state = CircuitState.OPEN

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run an async provider call under circuit protection"""
        if self._should_attempt_reset():
            logger.info("Circuit breaker attempting half-open state", breaker=self.name)
            self.state = CircuitState.HALF_OPEN

        if self.state == CircuitState.OPEN:
            raise CircuitBreakerError(self.name)

        try:
            result = await func(*args, **kwargs)
        except ProviderError as e:
            if e.transient:
                await self._on_failure()
            raise

        await self._on_success()
        return result

    def get_state(self) -> dict:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "recovery_timeout_seconds": self.recovery_timeout.total_seconds(),
        }


# One breaker per payment provider
provider_breakers: Dict[str, CircuitBreaker] = {
    "stripe": CircuitBreaker("stripe"),
    "paystack": CircuitBreaker("paystack"),
}


def get_breaker(provider: str) -> CircuitBreaker:
    return provider_breakers[provider]
