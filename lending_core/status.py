"""
Status Derivation Module

Pure functions deriving loan and installment statuses from outstanding
balances. The orchestrator calls them after every balance mutation; they
never read or write storage.
"""

from enum import Enum


class LoanStatus(Enum):
    """Loan lifecycle states"""
    DUE = "due"          # Something is still owed
    REPAID = "repaid"    # Outstanding reached zero (terminal)


class RepaymentStatus(Enum):
    """Scheduled repayment (installment) states"""
    DUE = "due"            # Nothing paid yet
    PARTIAL = "partial"    # Partly paid
    REPAID = "repaid"      # Fully paid (terminal)


def derive_installment_status(amount: int, outstanding_amount: int) -> RepaymentStatus:
    """
    Derive an installment status from its balances

    Args:
        amount: Amount owed at origination
        outstanding_amount: Unpaid remainder, 0 <= outstanding <= amount

    Returns:
        REPAID when nothing is left, DUE when nothing was paid, PARTIAL otherwise
    """
    if outstanding_amount < 0 or outstanding_amount > amount:
        raise ValueError(
            f"Outstanding amount {outstanding_amount} outside [0, {amount}]"
        )

    if outstanding_amount == 0:
        return RepaymentStatus.REPAID
    if outstanding_amount == amount:
        return RepaymentStatus.DUE
    return RepaymentStatus.PARTIAL


def derive_loan_status(outstanding_amount: int) -> LoanStatus:
    """Derive a loan status from its outstanding balance"""
    if outstanding_amount < 0:
        raise ValueError(f"Outstanding amount {outstanding_amount} is negative")
    return LoanStatus.REPAID if outstanding_amount == 0 else LoanStatus.DUE
