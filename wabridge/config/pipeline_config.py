# =============================================================================
# File: wabridge/config/pipeline_config.py
# Description: Event pipeline configuration (buffering, flush, dispatch queue)
# =============================================================================

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import SettingsConfigDict

from wabridge.common.base.base_config import BaseConfig, BASE_CONFIG_DICT


class PipelineConfig(BaseConfig):
    """
    Event pipeline configuration.

    Controls:
    - Buffering window of the event normalizer
    - Flush loop cadence
    - Dispatch queue size and worker count
    """

    model_config = SettingsConfigDict(
        **BASE_CONFIG_DICT,
        env_prefix="PIPELINE_",
    )

    # =========================================================================
    # Buffering
    # =========================================================================

    buffer_idle_timeout_ms: int = Field(
        default=300,
        description="Flush a buffered subject+kind after this much inactivity"
    )

    flush_interval_ms: int = Field(
        default=100,
        description="How often the flush loop drains ready events"
    )

    prune_idle_slots_after: int = Field(
        default=1000,
        description="Retire idle buffer slots once this many exist"
    )

    # =========================================================================
    # Dispatch
    # =========================================================================

    dispatch_queue_size: int = Field(
        default=10000,
        description="Maximum events waiting for dispatch"
    )

    dispatch_workers: int = Field(
        default=4,
        description="Number of dispatch worker tasks"
    )

    shutdown_timeout_seconds: float = Field(
        default=10.0,
        description="How long stop() waits for the dispatch queue to drain"
    )

    # =========================================================================
    # Receipts
    # =========================================================================

    sync_read_receipts: bool = Field(
        default=True,
        description="Propagate READ receipts to the message store"
    )

    @field_validator('dispatch_workers', 'dispatch_queue_size')
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @property
    def buffer_idle_timeout_seconds(self) -> float:
        return self.buffer_idle_timeout_ms / 1000.0

    @property
    def flush_interval_seconds(self) -> float:
        return self.flush_interval_ms / 1000.0


@lru_cache(maxsize=1)
def get_pipeline_config() -> PipelineConfig:
    """Get pipeline configuration singleton (cached)."""
    return PipelineConfig()


def reset_pipeline_config() -> None:
    """Reset config singleton (for testing)."""
    get_pipeline_config.cache_clear()
