# =============================================================================
# File: wabridge/config/reliability_config.py
# Description: Reliability primitives configuration (retry)
# =============================================================================

from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field


class RetryConfig(BaseModel):
    """Retry policy for retry_async."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_attempts: int = Field(default=3, ge=1)
    initial_delay_ms: int = Field(default=100, ge=0)
    max_delay_ms: int = Field(default=10000, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    # Return False to raise the error without retrying
    retry_condition: Optional[Callable[[Exception], bool]] = None
