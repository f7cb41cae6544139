"""Tests for settings validation and computed URLs."""

import pytest
from pydantic import ValidationError

from merchant_billing.config import Settings


class TestSettings:
    def test_computed_urls(self):
        config = Settings(_env_file=None, postgres_host="db", redis_password="s3cret", redis_db=2)

        assert config.database_url.startswith("postgresql+asyncpg://billing:")
        assert "@db:5432/merchant_billing" in config.database_url
        assert config.redis_url == "redis://:s3cret@localhost:6379/2"

    def test_gateways_disabled_by_default(self):
        config = Settings(_env_file=None)
        assert not (config.enable_stripe_gateway or config.enable_payfast_gateway or config.enable_stcpay_gateway)

    @pytest.mark.parametrize("intervals", [[], [3, 0], [-1]])
    def test_rejects_bad_retry_intervals(self, intervals):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, default_dunning_retry_intervals_days=intervals)

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, gateway_timeout_seconds=0)
