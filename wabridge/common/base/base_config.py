# =============================================================================
# File: wabridge/common/base/base_config.py
# Description: Shared pydantic-settings base for wabridge configuration
# =============================================================================
#
# Every settings class derives from BaseConfig and extends BASE_CONFIG_DICT
# with its own env prefix:
#
#     class PipelineConfig(BaseConfig):
#         model_config = SettingsConfigDict(**BASE_CONFIG_DICT, env_prefix="PIPELINE_")
#
#     @lru_cache(maxsize=1)
#     def get_pipeline_config() -> PipelineConfig:
#         return PipelineConfig()
#
# Connection URIs are SecretStr fields; pydantic masks them in repr and dumps.
# =============================================================================

from typing import Any, Dict

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_CONFIG_DICT: Dict[str, Any] = dict(
    env_file=".env",
    env_file_encoding="utf-8",
    case_sensitive=False,
    extra="ignore",
    env_nested_delimiter="__",
)


class BaseConfig(BaseSettings):
    """Settings read from the environment (and .env), case-insensitive."""

    model_config = SettingsConfigDict(**BASE_CONFIG_DICT)
