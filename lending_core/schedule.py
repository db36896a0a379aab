"""
Repayment Schedule Module

Splits a principal into monthly installments that sum exactly to the
principal. Integer division leaves a remainder smaller than the term count;
the whole remainder goes on the final installment.
"""

from dataclasses import dataclass
from datetime import date
from typing import List
import calendar


@dataclass(frozen=True)
class ScheduleEntry:
    """Single installment in a repayment schedule"""
    installment_number: int   # 1-based position in the schedule
    amount: int               # Minor units
    due_date: date


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class ScheduleGenerator:
    """Generates equal-split monthly installment schedules"""

    def generate(self, principal: int, term_count: int, start_date: date) -> List[ScheduleEntry]:
        """
        Generate the installment schedule for a loan

        Args:
            principal: Loan amount in minor units, > 0
            term_count: Number of monthly installments, > 0
            start_date: Origination date; installment i is due i months later

        Returns:
            ScheduleEntry list in due-date order, length term_count
        """
        if principal <= 0:
            raise ValueError(f"Principal must be positive, got {principal}")
        if term_count <= 0:
            raise ValueError(f"Term count must be positive, got {term_count}")

        base, remainder = divmod(principal, term_count)

        schedule = []
        for number in range(1, term_count + 1):
            amount = base + remainder if number == term_count else base
            schedule.append(ScheduleEntry(
                installment_number=number,
                amount=amount,
                due_date=add_months(start_date, number)
            ))

        return schedule
