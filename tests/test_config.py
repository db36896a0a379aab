"""
Tests for configuration loading
"""

import pytest
from pydantic import ValidationError as SettingsError

from lending_core import config as config_module
from lending_core.config import LendingConfig, get_config, reload_config
from lending_core.allocation import OverpaymentPolicy


class TestLendingConfig:
    """Test LendingConfig defaults and validation"""

    def test_defaults(self):
        """Test business rule defaults"""
        config = LendingConfig()

        assert config.currency_codes == ("SGD", "VND")
        assert config.term_counts == (3, 6)
        assert config.overpayment == OverpaymentPolicy.REJECT
        assert config.max_repayment_attempts == 3
        assert config.enable_audit_logging is True

    def test_custom_values(self):
        config = LendingConfig(
            allowed_currencies="sgd, vnd ,usd",
            allowed_terms="2,3,6",
            overpayment_policy="CREDIT"
        )

        assert config.currency_codes == ("SGD", "VND", "USD")
        assert config.term_counts == (2, 3, 6)
        assert config.overpayment_policy == "credit"
        assert config.overpayment == OverpaymentPolicy.CREDIT

    def test_invalid_terms(self):
        with pytest.raises(SettingsError):
            LendingConfig(allowed_terms="3,six")

    def test_zero_term_rejected(self, monkeypatch):
        """Test a zero term count is a configuration error, not a loan error"""
        with pytest.raises(SettingsError, match="Term count '0'"):
            LendingConfig(allowed_terms="0,3")

        monkeypatch.setenv("LENDING_ALLOWED_TERMS", "3,00")
        with pytest.raises(SettingsError):
            LendingConfig()

    def test_invalid_overpayment_policy(self):
        with pytest.raises(SettingsError):
            LendingConfig(overpayment_policy="ignore")

    def test_invalid_attempts(self):
        with pytest.raises(SettingsError):
            LendingConfig(max_repayment_attempts=0)

    def test_environment_prefix(self, monkeypatch):
        """Test settings are read from LENDING_-prefixed variables"""
        monkeypatch.setenv("LENDING_ALLOWED_TERMS", "3,6,12")
        monkeypatch.setenv("LENDING_OVERPAYMENT_POLICY", "refund")
        monkeypatch.setenv("LENDING_DATABASE_URL", ":memory:")

        config = LendingConfig()

        assert config.term_counts == (3, 6, 12)
        assert config.overpayment == OverpaymentPolicy.REFUND
        assert config.database_url == ":memory:"

    def test_reload_config(self, monkeypatch):
        """Test reload_config replaces the global instance"""
        original = config_module.config
        monkeypatch.setenv("LENDING_MAX_REPAYMENT_ATTEMPTS", "5")

        try:
            reloaded = reload_config()
            assert reloaded.max_repayment_attempts == 5
            assert get_config() is reloaded
        finally:
            config_module.config = original
