"""
Retry utilities for handling transient failures
"""
import random
import time
from typing import Callable, Any, Optional, List
import logging
import requests

logger = logging.getLogger(__name__)

class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [Exception]

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        delay *= (0.5 + random.random() * 0.5)

    return delay

def retry_call(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Blocking retry wrapper with exponential backoff"""
    last_exception = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            if not any(isinstance(e, exc_type) for exc_type in config.retryable_exceptions):
                raise

            if attempt == config.max_attempts:
                logger.error(f"Max retry attempts ({config.max_attempts}) reached for {getattr(func, '__name__', func)}")
                break

            delay = calculate_delay(attempt, config)
            logger.warning(f"Attempt {attempt}/{config.max_attempts} failed for {getattr(func, '__name__', func)}: {e}. Retrying in {delay:.2f}s")
            time.sleep(delay)

    raise last_exception

# Common retry configurations
_TRANSIENT_HTTP_ERRORS = [requests.exceptions.ConnectionError, requests.exceptions.Timeout]

CHAIN_RETRY_CONFIG = RetryConfig(
    max_attempts=2,
    base_delay=0.25,
    max_delay=2.0,
    retryable_exceptions=_TRANSIENT_HTTP_ERRORS
)

PRICE_FEED_RETRY_CONFIG = RetryConfig(
    max_attempts=2,
    base_delay=0.5,
    max_delay=2.0,
    retryable_exceptions=_TRANSIENT_HTTP_ERRORS
)

BOT_API_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=5.0,
    retryable_exceptions=_TRANSIENT_HTTP_ERRORS
)
