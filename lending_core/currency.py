"""
Currency Conversion Module

Converts integer minor-unit amounts between currencies through a pluggable
rate source. Rates are Decimal and results are rounded half-up back to an
integer minor unit. NEVER uses float for monetary values.
"""

from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Tuple

from .exceptions import CurrencyConversionError
from .logging_config import get_logger


logger = get_logger("lending.currency")


# ISO 4217 minor-unit exponents for display
MINOR_UNIT_EXPONENTS: Dict[str, int] = {
    "SGD": 2,
    "VND": 0,
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "JPY": 0,
    "IDR": 2,
    "MYR": 2,
    "THB": 2,
    "PHP": 2,
}


def format_minor_units(amount: int, currency_code: str) -> str:
    """Format a minor-unit amount for display, e.g. 1050 SGD -> 'SGD 10.50'"""
    exponent = MINOR_UNIT_EXPONENTS.get(currency_code, 2)
    major = Decimal(amount).scaleb(-exponent)
    if exponent == 0:
        return f"{currency_code} {major:,.0f}"
    return f"{currency_code} {major:,.{exponent}f}"


@dataclass
class ExchangeRate:
    """Exchange rate between two currencies, minor unit to minor unit"""
    from_currency: str
    to_currency: str
    rate: Decimal
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not isinstance(self.rate, Decimal):
            self.rate = Decimal(str(self.rate))
        if self.rate <= Decimal('0'):
            raise CurrencyConversionError(
                f"Exchange rate {self.from_currency} -> {self.to_currency} must be positive"
            )


class RateSource(ABC):
    """Strategy interface supplying exchange rates to the converter"""

    @abstractmethod
    def get_rate(self, from_currency: str, to_currency: str) -> ExchangeRate:
        """
        Get the rate for a currency pair

        Raises:
            CurrencyConversionError: If no rate is available
        """
        pass


class PlaceholderRateSource(RateSource):
    """
    Rate source returning 1 for every pair.

    Cross-currency amounts pass through unconverted. Replace with a real
    source before accepting repayments in a currency other than the loan's.
    """

    def get_rate(self, from_currency: str, to_currency: str) -> ExchangeRate:
        return ExchangeRate(from_currency, to_currency, Decimal('1'))


class StaticRateSource(RateSource):
    """In-memory rate table, e.g. loaded from a daily rate file"""

    def __init__(self):
        self._rates: Dict[Tuple[str, str], ExchangeRate] = {}

    def set_rate(self, rate: ExchangeRate) -> None:
        """Set exchange rate for currency pair, and its inverse"""
        self._rates[(rate.from_currency, rate.to_currency)] = rate

        reverse_rate = ExchangeRate(
            from_currency=rate.to_currency,
            to_currency=rate.from_currency,
            rate=Decimal('1') / rate.rate,
            timestamp=rate.timestamp
        )
        self._rates[(rate.to_currency, rate.from_currency)] = reverse_rate

    def get_rate(self, from_currency: str, to_currency: str) -> ExchangeRate:
        rate = self._rates.get((from_currency, to_currency))
        if not rate:
            raise CurrencyConversionError(
                f"No exchange rate available for {from_currency} -> {to_currency}"
            )
        return rate

    def get_all_rates(self) -> Dict[Tuple[str, str], ExchangeRate]:
        """Get all current exchange rates"""
        return self._rates.copy()


class CurrencyConverter:
    """Converts minor-unit amounts using a pluggable rate source"""

    def __init__(self, rate_source: RateSource = None):
        self.rate_source = rate_source or PlaceholderRateSource()

    def convert(self, amount: int, from_currency: str, to_currency: str) -> int:
        """
        Convert an amount from one currency to another

        Args:
            amount: Amount in minor units of from_currency
            from_currency: Source currency code
            to_currency: Target currency code

        Returns:
            Amount in minor units of to_currency

        Raises:
            CurrencyConversionError: If the rate source has no rate for the pair
        """
        if from_currency == to_currency:
            return amount

        rate = self.rate_source.get_rate(from_currency, to_currency)
        converted = (Decimal(amount) * rate.rate).quantize(Decimal('1'), rounding=ROUND_HALF_UP)

        logger.debug(
            f"Converted {amount} {from_currency} to {converted} {to_currency} at {rate.rate}"
        )
        return int(converted)
