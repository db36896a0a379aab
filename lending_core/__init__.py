"""
Installment Lending Core

Loan origination with exact-sum installment schedules, currency-normalized
repayment allocation and derived loan/installment statuses. All monetary
values are integer minor units.
"""

__version__ = "1.0.0"
