"""Exception hierarchy for the lending core."""


class LendingError(Exception):
    """Base exception for all lending core errors."""


class ValidationError(LendingError, ValueError):
    """Raised when service input is rejected before any mutation."""


class OverpaymentError(ValidationError):
    """Raised when a repayment exceeds what the loan still owes."""


class NotFoundError(LendingError, LookupError):
    """Raised when a referenced loan does not exist."""


class ConcurrencyConflict(LendingError):
    """Raised when a loan changed between load and save."""


class CurrencyConversionError(LendingError, ValueError):
    """Raised when an amount cannot be converted between currencies."""
