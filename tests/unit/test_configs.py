from wabridge.config.database_config import DatabaseConfig
from wabridge.config.pipeline_config import PipelineConfig


def test_env_prefix_is_case_insensitive(monkeypatch):
    monkeypatch.setenv("pipeline_dispatch_workers", "7")

    assert PipelineConfig().dispatch_workers == 7


def test_connection_uri_is_masked():
    config = DatabaseConfig(connection_uri="postgresql+asyncpg://bridge:s3cret@db/wa")

    assert "s3cret" not in repr(config)
    assert "s3cret" not in str(config.model_dump())
    assert config.connection_uri.get_secret_value().endswith("s3cret@db/wa")
