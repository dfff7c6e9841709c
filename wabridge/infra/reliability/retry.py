# =============================================================================
# File: wabridge/infra/reliability/retry.py
# Description: Async retry with capped exponential backoff
# =============================================================================

import asyncio
from typing import Any, Awaitable, Callable, Optional

from wabridge.config.logging_config import get_logger
from wabridge.config.reliability_config import RetryConfig

logger = get_logger("wabridge.infra.reliability.retry")


def compute_delay_ms(retry_config: RetryConfig, attempt: int) -> float:
    """Delay to wait after the given failed attempt (1-based)."""
    delay = retry_config.initial_delay_ms * (retry_config.backoff_factor ** (attempt - 1))
    return min(delay, retry_config.max_delay_ms)


async def retry_async(
        func: Callable[..., Awaitable[Any]],
        *args,
        retry_config: Optional[RetryConfig] = None,
        context: str = "operation",
        **kwargs
) -> Any:
    """
    Await `func(*args, **kwargs)` up to `retry_config.max_attempts` times.

    An error is raised at once when it is marked permanent (see
    `mark_permanent`) or when `retry_config.retry_condition` rejects it.
    The last error is raised once attempts run out.
    """
    retry_config = retry_config or RetryConfig()
    attempt = 0

    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if is_permanent(e):
                logger.debug(f"{context}: permanent error on attempt {attempt}: {e}")
                raise
            if retry_config.retry_condition is not None and not retry_config.retry_condition(e):
                logger.debug(f"{context}: error not retryable on attempt {attempt}: {e}")
                raise
            if attempt >= retry_config.max_attempts:
                logger.warning(f"{context}: giving up after {attempt} attempt(s): {e}")
                raise

            delay_seconds = compute_delay_ms(retry_config, attempt) / 1000
            logger.info(
                f"{context}: attempt {attempt}/{retry_config.max_attempts} failed ({e}), "
                f"retrying in {delay_seconds:.2f}s"
            )
            await asyncio.sleep(delay_seconds)


def mark_permanent(error: Exception) -> Exception:
    """Flag an exception so retry_async raises it without retrying."""
    error.__permanent__ = True
    return error


def is_permanent(error: Exception) -> bool:
    return getattr(error, '__permanent__', False)
