"""Tests for fee composition and formatting."""

import pytest

from consult_lifecycle import config
from consult_lifecycle.fees import compose_fee, format_minor_units, platform_surcharge


class TestPlatformSurcharge:
    def test_five_percent(self):
        assert platform_surcharge(10_000, 500) == 500

    def test_rounds_half_up(self):
        # 1 * 5000 bps = 0.5 minor units
        assert platform_surcharge(1, 5_000) == 1
        assert platform_surcharge(1, 4_999) == 0

    def test_zero_rate(self):
        assert platform_surcharge(12_345, 0) == 0

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            platform_surcharge(-1, 500)


class TestComposeFee:
    def test_total(self):
        fee = compose_fee(5_000, rate_bps=500, processing_fee=30, currency="EUR")
        assert fee.platform_fee == 250
        assert fee.total == 5_280
        assert fee.currency == "EUR"

    def test_defaults_from_config(self, monkeypatch):
        monkeypatch.setattr(config, "PLATFORM_FEE_BPS", 1_000)
        monkeypatch.setattr(config, "PROCESSING_FEE_MINOR", 0)
        monkeypatch.setattr(config, "DEFAULT_CURRENCY", "GBP")
        fee = compose_fee(2_000)
        assert fee.platform_fee == 200
        assert fee.currency == "GBP"


class TestFormat:
    @pytest.mark.parametrize("amount, expected", [
        (0, "0.00 USD"),
        (5, "0.05 USD"),
        (12_345, "123.45 USD"),
        (123_456_789, "1,234,567.89 USD"),
        (-250, "-2.50 USD"),
    ])
    def test_format_minor_units(self, amount, expected):
        assert format_minor_units(amount) == expected
