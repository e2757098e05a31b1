"""
Tests for configuration defaults, profiles and validation.
"""

from unittest.mock import patch

from comic_aggregator.config import (
    AppConfig,
    IntegrityConfig,
    OperationPolicy,
    QueueConfig,
    StaleThresholdConfig,
)


class TestStaleThresholdConfig:
    """Test per-operation policies."""

    def test_standard_profile_table(self):
        table = StaleThresholdConfig.for_profile("standard")

        assert table["latest"] == OperationPolicy(180, 180)
        assert table["popular"].stale_seconds == 600
        assert table["genres"].cache_ttl_seconds == 3600

    def test_serverless_profile_is_shorter(self):
        standard = StaleThresholdConfig.for_profile("standard")
        serverless = StaleThresholdConfig.for_profile("serverless")

        for operation, policy in serverless.items():
            assert policy.stale_seconds <= standard[operation].stale_seconds

    def test_table_is_a_copy(self):
        table = StaleThresholdConfig.for_profile("standard")
        table["latest"] = OperationPolicy(1, 1)

        assert StaleThresholdConfig.for_profile("standard")["latest"] == OperationPolicy(180, 180)

    def test_unknown_operation_falls_back_to_default(self):
        policy = StaleThresholdConfig.get_policy("teleport", StaleThresholdConfig.for_profile("standard"))
        assert policy == StaleThresholdConfig.DEFAULT_POLICY


class TestAppConfig:
    """Test configuration validation."""

    def test_default_configuration_is_valid(self):
        is_valid, errors = AppConfig.validate()

        assert is_valid is True
        assert errors == []

    def test_invalid_values_reported(self):
        with patch.object(QueueConfig, "MAX_CONCURRENT", 0), \
                patch.object(IntegrityConfig, "HASH_ALGORITHM", "sha1"):
            is_valid, errors = AppConfig.validate()

        assert is_valid is False
        assert "QUEUE_MAX_CONCURRENT must be at least 1" in errors
        assert "HASH_ALGORITHM must be 'md5' or 'djb2'" in errors

    def test_metadata(self):
        assert AppConfig.APP_NAME == "Comic Aggregator"
        assert AppConfig.PROFILE in ("standard", "serverless")
