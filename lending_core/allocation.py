"""
Repayment Allocation Module

Applies a normalized repayment amount against a loan's installments,
earliest due date first, and keeps the loan's running totals in step.
"""

from dataclasses import dataclass, field
from typing import Dict, List
from enum import Enum


class OverpaymentPolicy(Enum):
    """What happens to money left after every installment is repaid"""
    REJECT = "reject"    # Refuse the repayment before anything is recorded
    CREDIT = "credit"    # Keep the surplus as credit on the loan
    REFUND = "refund"    # Record the surplus as owed back to the payer


@dataclass
class AllocationResult:
    """Outcome of allocating one repayment"""
    requested_amount: int
    applied: Dict[str, int] = field(default_factory=dict)  # installment id -> amount

    @property
    def total_applied(self) -> int:
        return sum(self.applied.values())

    @property
    def unapplied_amount(self) -> int:
        """Amount left over after all installments were exhausted"""
        return self.requested_amount - self.total_applied


class RepaymentAllocator:
    """
    Distributes a repayment over outstanding installments.

    Installments are paid oldest-due-first: each takes
    min(outstanding, remaining) until the amount or the installments run out.
    The loan's total_paid grows by exactly what was applied and its
    outstanding amount is re-derived from it.
    """

    def allocate(self, loan, installments: List, amount: int) -> AllocationResult:
        """
        Allocate a normalized amount, mutating balances in place

        Args:
            loan: Loan whose total_paid / outstanding_amount are updated
            installments: The loan's ScheduledRepayment records
            amount: Amount in the loan's currency, >= 0

        Returns:
            AllocationResult with per-installment applied amounts and any leftover
        """
        if amount < 0:
            raise ValueError(f"Cannot allocate a negative amount: {amount}")

        result = AllocationResult(requested_amount=amount)
        remaining = amount

        ordered = sorted(installments, key=lambda i: (i.due_date, i.installment_number))
        for installment in ordered:
            if remaining == 0:
                break
            if installment.outstanding_amount == 0:
                continue

            applied = min(installment.outstanding_amount, remaining)
            installment.outstanding_amount -= applied
            remaining -= applied
            result.applied[installment.id] = applied

        loan.total_paid += result.total_applied
        loan.outstanding_amount = loan.amount - loan.total_paid

        return result
