"""
Backoff for outbound calls that may fail transiently: Kafka publishes from
the outbox relay and HTTP calls to the mail API. Ledger writes are never
retried here; their failures go back to the payment provider, which
redelivers.
"""
import random
import time
from typing import Callable, Any, Optional, Sequence
import logging

logger = logging.getLogger(__name__)

class RetryConfig:

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[Sequence[type]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions or (Exception,))

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number `attempt` (1-based), capped at max_delay"""
    delay = min(config.base_delay * (config.exponential_base ** (attempt - 1)), config.max_delay)
    if config.jitter:
        # spread relays of several instances apart
        delay *= 0.5 + random.random() * 0.5
    return delay

def retry_call(func: Callable, config: RetryConfig, *args, sleep: Callable[[float], None] = time.sleep, **kwargs) -> Any:
    """Call func until it succeeds, a non-retryable error escapes, or attempts run out"""
    name = getattr(func, "__name__", repr(func))
    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == config.max_attempts:
                logger.error(f"Giving up on {name} after {attempt} attempt(s): {e}")
                raise
            delay = calculate_delay(attempt, config)
            logger.warning(f"Attempt {attempt}/{config.max_attempts} of {name} failed: {e}. Retrying in {delay:.2f}s")
            sleep(delay)

KAFKA_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=15.0,
)
