# =============================================================================
# File: tests/conftest.py
# Description: Shared fixtures
# =============================================================================

import pytest

from tests.fakes.builders import FakeClock
from wabridge.config.pipeline_config import PipelineConfig
from wabridge.config.webhook_config import WebhookConfig


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        buffer_idle_timeout_ms=300,
        flush_interval_ms=10,
        prune_idle_slots_after=1000,
        dispatch_queue_size=100,
        dispatch_workers=2,
        shutdown_timeout_seconds=2.0,
    )


@pytest.fixture
def webhook_config() -> WebhookConfig:
    return WebhookConfig(
        request_timeout_seconds=2.0,
        max_concurrent_deliveries=4,
        retry_transient_failures=True,
        retry_delay_ms=1,
        delivery_log_size=100,
    )
