"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings
from typing import Optional, Tuple

from .allocation import OverpaymentPolicy


class LendingConfig(BaseSettings):
    """Lending core configuration"""

    # Database configuration
    database_url: str = "sqlite:///lending.db"  # ":memory:" for in-process storage

    # Business rules configuration
    allowed_currencies: str = "SGD,VND"  # Comma-separated closed set
    allowed_terms: str = "3,6"  # Comma-separated term counts in months
    overpayment_policy: str = "reject"  # reject, credit or refund
    max_repayment_attempts: int = 3

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False

    @field_validator("allowed_terms")
    @classmethod
    def _check_terms(cls, value: str) -> str:
        for item in value.split(","):
            item = item.strip()
            if item and (not item.isdigit() or int(item) < 1):
                raise ValueError(f"Term count '{item}' is not a positive integer")
        return value

    @field_validator("overpayment_policy")
    @classmethod
    def _check_policy(cls, value: str) -> str:
        value = value.strip().lower()
        OverpaymentPolicy(value)
        return value

    @field_validator("max_repayment_attempts")
    @classmethod
    def _check_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_repayment_attempts must be at least 1")
        return value

    @property
    def currency_codes(self) -> Tuple[str, ...]:
        """Allowed currency codes, upper-cased"""
        return tuple(
            code.strip().upper()
            for code in self.allowed_currencies.split(",")
            if code.strip()
        )

    @property
    def term_counts(self) -> Tuple[int, ...]:
        """Allowed loan terms in months"""
        return tuple(
            int(item.strip())
            for item in self.allowed_terms.split(",")
            if item.strip()
        )

    @property
    def overpayment(self) -> OverpaymentPolicy:
        """Overpayment policy as an enum"""
        return OverpaymentPolicy(self.overpayment_policy)


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
