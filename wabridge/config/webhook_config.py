# =============================================================================
# File: wabridge/config/webhook_config.py
# Description: Outbound webhook delivery configuration
# =============================================================================

from functools import lru_cache

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from wabridge.common.base.base_config import BaseConfig, BASE_CONFIG_DICT
from wabridge.config.reliability_config import RetryConfig


class WebhookConfig(BaseConfig):
    """
    Webhook dispatcher configuration.

    Controls:
    - Per-call timeout and bounded concurrency
    - Single bounded retry for transient failures
    - Delivery log capacity
    """

    model_config = SettingsConfigDict(
        **BASE_CONFIG_DICT,
        env_prefix="WEBHOOK_",
    )

    request_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for a single delivery attempt"
    )

    max_concurrent_deliveries: int = Field(
        default=32,
        description="Upper bound on in-flight HTTP deliveries"
    )

    retry_transient_failures: bool = Field(
        default=True,
        description="Retry once on connect errors, timeouts and 5xx"
    )

    retry_delay_ms: int = Field(
        default=500,
        description="Delay before the single retry"
    )

    delivery_log_size: int = Field(
        default=10000,
        description="Number of events whose delivery outcomes are kept for inspection"
    )

    user_agent: str = Field(
        default="wabridge-webhook/1.0",
        description="User-Agent header sent with deliveries"
    )

    @property
    def retry_config(self) -> RetryConfig:
        """At most one retry: two attempts in total."""
        return RetryConfig(
            max_attempts=2 if self.retry_transient_failures else 1,
            initial_delay_ms=self.retry_delay_ms,
            max_delay_ms=self.retry_delay_ms,
        )


@lru_cache(maxsize=1)
def get_webhook_config() -> WebhookConfig:
    """Get webhook configuration singleton (cached)."""
    return WebhookConfig()


def reset_webhook_config() -> None:
    """Reset config singleton (for testing)."""
    get_webhook_config.cache_clear()
