"""
Loan Module

Handles loan origination with its installment schedule, repayment
processing against that schedule, and persistence of the loan aggregate
(loan, scheduled repayments, received repayments).
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from contextlib import contextmanager
from enum import Enum
import threading
import weakref
import uuid

from .allocation import RepaymentAllocator, OverpaymentPolicy
from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .currency import CurrencyConverter, format_minor_units
from .exceptions import (
    ValidationError, OverpaymentError, NotFoundError, ConcurrencyConflict
)
from .logging_config import get_logger, log_action
from .schedule import ScheduleGenerator
from .status import (
    LoanStatus, RepaymentStatus, derive_loan_status, derive_installment_status
)
from .storage import StorageInterface, StorageRecord


logger = get_logger("lending.loans")


class OverpaymentTreatment(Enum):
    """How the unapplied part of a repayment was handled"""
    NONE = "none"        # Everything was applied to installments
    CREDIT = "credit"    # Surplus kept as credit on the loan
    REFUND = "refund"    # Surplus owed back to the payer


def _require_int(name: str, value, minimum: Optional[int] = None) -> None:
    """Reject non-integer (or bool) minor-unit values"""
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}")


def _parse_date(value: Union[str, date, datetime], field_name: str) -> date:
    """Accept a date, a datetime (date part) or an ISO-8601 string"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip()).date()
        except ValueError as e:
            raise ValidationError(f"{field_name} must be an ISO-8601 date, got {value!r}") from e
    raise ValidationError(f"{field_name} must be a date, got {type(value).__name__}")


@dataclass
class Loan(StorageRecord):
    """Installment loan with its running balances"""
    user_id: str
    amount: int                                  # Principal in minor units
    terms: int                                   # Number of monthly installments
    currency_code: str
    processed_at: date                           # Origination date
    outstanding_amount: Optional[int] = None     # Defaults to amount - total_paid
    status: Optional[LoanStatus] = None          # Derived when omitted
    total_paid: int = 0                          # Applied to installments, never decreases
    credit_balance: int = 0                      # Overpayment kept on the loan
    version: int = 0                             # Bumped on every saved repayment

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("Loan must belong to a user")
        if not self.currency_code:
            raise ValueError("Loan must have a currency code")
        _require_int("amount", self.amount, 1)
        _require_int("terms", self.terms, 1)
        _require_int("total_paid", self.total_paid, 0)
        _require_int("credit_balance", self.credit_balance, 0)
        _require_int("version", self.version, 0)

        if self.outstanding_amount is None:
            self.outstanding_amount = self.amount - self.total_paid
        _require_int("outstanding_amount", self.outstanding_amount, 0)

        if self.outstanding_amount > self.amount:
            raise ValueError(
                f"Outstanding amount {self.outstanding_amount} exceeds loan amount {self.amount}"
            )
        if self.outstanding_amount != self.amount - self.total_paid:
            raise ValueError(
                f"Outstanding amount {self.outstanding_amount} does not equal "
                f"amount {self.amount} - total paid {self.total_paid}"
            )

        derived = derive_loan_status(self.outstanding_amount)
        if self.status is None:
            self.status = derived
        elif self.status != derived:
            raise ValueError(
                f"Status {self.status.value} inconsistent with outstanding amount {self.outstanding_amount}"
            )

    @property
    def is_repaid(self) -> bool:
        return self.status == LoanStatus.REPAID

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Create Loan from its storage dictionary"""
        data = cls._parse_timestamps(data)
        data['processed_at'] = date.fromisoformat(data['processed_at'])
        data['status'] = LoanStatus(data['status'])
        return cls(**data)


@dataclass
class ScheduledRepayment(StorageRecord):
    """One installment of a loan's repayment schedule"""
    loan_id: str
    installment_number: int                      # 1-based schedule position
    amount: int                                  # Owed at origination
    currency_code: str
    due_date: date
    outstanding_amount: Optional[int] = None     # Defaults to amount
    status: Optional[RepaymentStatus] = None     # Derived when omitted

    def __post_init__(self):
        if not self.loan_id:
            raise ValueError("Scheduled repayment must belong to a loan")
        _require_int("installment_number", self.installment_number, 1)
        _require_int("amount", self.amount, 0)

        if self.outstanding_amount is None:
            self.outstanding_amount = self.amount
        _require_int("outstanding_amount", self.outstanding_amount, 0)

        derived = derive_installment_status(self.amount, self.outstanding_amount)
        if self.status is None:
            self.status = derived
        elif self.status != derived:
            raise ValueError(
                f"Status {self.status.value} inconsistent with outstanding "
                f"{self.outstanding_amount} of {self.amount}"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduledRepayment':
        """Create ScheduledRepayment from its storage dictionary"""
        data = cls._parse_timestamps(data)
        data['due_date'] = date.fromisoformat(data['due_date'])
        data['status'] = RepaymentStatus(data['status'])
        return cls(**data)


@dataclass
class ReceivedRepayment(StorageRecord):
    """Append-only record of one incoming payment"""
    loan_id: str
    amount: int                          # In the payment's own currency
    currency_code: str
    received_at: date
    normalized_amount: int               # Converted to the loan's currency
    applied_amount: int = 0              # Applied to installments
    unapplied_amount: int = 0            # Left after all installments were repaid
    overpayment_treatment: OverpaymentTreatment = OverpaymentTreatment.NONE

    def __post_init__(self):
        if not self.loan_id:
            raise ValueError("Received repayment must belong to a loan")
        _require_int("amount", self.amount, 1)
        _require_int("normalized_amount", self.normalized_amount, 0)
        _require_int("applied_amount", self.applied_amount, 0)
        _require_int("unapplied_amount", self.unapplied_amount, 0)

        if self.applied_amount + self.unapplied_amount != self.normalized_amount:
            raise ValueError(
                f"Applied {self.applied_amount} + unapplied {self.unapplied_amount} "
                f"does not equal normalized amount {self.normalized_amount}"
            )
        if (self.unapplied_amount > 0) != (self.overpayment_treatment != OverpaymentTreatment.NONE):
            raise ValueError("Overpayment treatment must be set exactly when an amount is unapplied")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReceivedRepayment':
        """Create ReceivedRepayment from its storage dictionary"""
        data = cls._parse_timestamps(data)
        data['received_at'] = date.fromisoformat(data['received_at'])
        data['overpayment_treatment'] = OverpaymentTreatment(data['overpayment_treatment'])
        return cls(**data)


@dataclass
class LoanAggregate:
    """Materialized loan with its schedule, loaded for one operation"""
    loan: Loan
    installments: List[ScheduledRepayment]


class LoanRepository:
    """
    Loads and saves loan aggregates through a storage backend.

    Every multi-record write runs inside ``storage.atomic()``.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage

        self.loans_table = "loans"
        self.schedules_table = "scheduled_repayments"
        self.received_table = "received_repayments"

    def create_loan_aggregate(self, loan: Loan, installments: List[ScheduledRepayment]) -> None:
        """Save a new loan and its full schedule as one unit"""
        with self.storage.atomic():
            if self.storage.exists(self.loans_table, loan.id):
                raise ValueError(f"Loan {loan.id} already exists")
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
            for installment in installments:
                self.storage.save(self.schedules_table, installment.id, installment.to_dict())

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def get_user_loans(self, user_id: str) -> List[Loan]:
        """Get all loans for a user, oldest first"""
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, {"user_id": user_id})]
        loans.sort(key=lambda x: x.created_at)
        return loans

    def get_scheduled_repayments(self, loan_id: str) -> List[ScheduledRepayment]:
        """Get a loan's installments in schedule order"""
        installments = [
            ScheduledRepayment.from_dict(data)
            for data in self.storage.find(self.schedules_table, {"loan_id": loan_id})
        ]
        installments.sort(key=lambda x: x.installment_number)
        return installments

    def get_received_repayments(self, loan_id: str) -> List[ReceivedRepayment]:
        """Get a loan's received repayments in arrival order"""
        received = [
            ReceivedRepayment.from_dict(data)
            for data in self.storage.find(self.received_table, {"loan_id": loan_id})
        ]
        received.sort(key=lambda x: (x.received_at, x.created_at))
        return received

    def load_loan_with_installments(self, loan_id: str) -> LoanAggregate:
        """
        Load a loan and its schedule

        Raises:
            NotFoundError: If the loan does not exist
        """
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return LoanAggregate(loan=loan, installments=self.get_scheduled_repayments(loan_id))

    def save_loan_aggregate(
        self,
        loan: Loan,
        installments: List[ScheduledRepayment],
        received: ReceivedRepayment,
        expected_version: int
    ) -> None:
        """
        Save a repaid loan, its touched installments and the payment record

        Args:
            loan: Loan with updated balances
            installments: Installments whose balances changed
            received: New received repayment record
            expected_version: Loan version the changes were computed from

        Raises:
            NotFoundError: If the loan was removed
            ConcurrencyConflict: If the stored loan version moved on
        """
        with self.storage.atomic():
            loan.version = expected_version + 1
            saved = self.storage.compare_and_save(
                self.loans_table, loan.id, loan.to_dict(), "version", expected_version
            )
            if not saved:
                loan.version = expected_version
                current = self.storage.load(self.loans_table, loan.id)
                if current is None:
                    raise NotFoundError(f"Loan {loan.id} not found")
                raise ConcurrencyConflict(
                    f"Loan {loan.id} is at version {current.get('version')}, "
                    f"expected {expected_version}"
                )

            for installment in installments:
                self.storage.save(self.schedules_table, installment.id, installment.to_dict())
            self.storage.save(self.received_table, received.id, received.to_dict())


class LoanService:
    """
    Originates loans and processes their repayments.

    Repayments on the same loan are serialized by an in-process lock and
    guarded across processes by the repository's version check (an atomic
    compare-and-save on the loan's version), which is
    retried up to ``max_repayment_attempts`` times.
    """

    def __init__(
        self,
        storage: StorageInterface,
        converter: Optional[CurrencyConverter] = None,
        config: Optional[LendingConfig] = None,
        audit_trail: Optional[AuditTrail] = None,
        allocator: Optional[RepaymentAllocator] = None,
        schedule_generator: Optional[ScheduleGenerator] = None
    ):
        self.storage = storage
        self.repository = LoanRepository(storage)
        self.config = config or get_config()
        self.converter = converter or CurrencyConverter()
        self.allocator = allocator or RepaymentAllocator()
        self.schedule_generator = schedule_generator or ScheduleGenerator()

        if audit_trail is None and self.config.enable_audit_logging:
            audit_trail = AuditTrail(storage)
        self.audit_trail = audit_trail

        # Entries disappear once no repayment holds or waits on the lock
        self._loan_locks = weakref.WeakValueDictionary()
        self._loan_locks_guard = threading.Lock()

    def create_loan(
        self,
        user_id: str,
        amount: int,
        currency_code: str,
        terms: int,
        processed_at: Union[str, date, datetime]
    ) -> Loan:
        """
        Create a loan together with its installment schedule

        Args:
            user_id: Borrower
            amount: Principal in minor units, > 0
            currency_code: One of the configured currencies
            terms: One of the configured term counts (months)
            processed_at: Origination date

        Returns:
            Created Loan

        Raises:
            ValidationError: If any input is outside the allowed values
        """
        self._validate_loan_creation_data(terms, currency_code, amount)
        if not user_id:
            raise ValidationError("A loan must belong to a user.")
        start_date = _parse_date(processed_at, "processed_at")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            amount=amount,
            terms=terms,
            currency_code=currency_code,
            processed_at=start_date
        )

        installments = [
            ScheduledRepayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                installment_number=entry.installment_number,
                amount=entry.amount,
                currency_code=loan.currency_code,
                due_date=entry.due_date
            )
            for entry in self.schedule_generator.generate(amount, terms, start_date)
        ]

        with self.storage.atomic():
            self.repository.create_loan_aggregate(loan, installments)
            self._audit(
                AuditEventType.LOAN_ORIGINATED, "loan", loan.id, user_id,
                {
                    "amount": amount,
                    "display_amount": format_minor_units(amount, currency_code),
                    "terms": terms,
                    "processed_at": start_date,
                    "installments": [i.amount for i in installments]
                }
            )

        log_action(
            logger, "info", f"Loan {loan.id} created",
            user_id=user_id, action="loan.create", resource=loan.id,
            extra={"amount": amount, "currency_code": currency_code, "terms": terms}
        )
        return loan

    def repay_loan(
        self,
        loan: Union[str, Loan],
        amount: int,
        currency_code: str,
        received_at: Union[str, date, datetime]
    ) -> ReceivedRepayment:
        """
        Record a repayment and allocate it over the loan's installments

        Args:
            loan: Loan or loan ID
            amount: Amount received, in minor units of currency_code
            currency_code: Currency the payment arrived in
            received_at: Date the payment was received

        Returns:
            The ReceivedRepayment record

        Raises:
            ValidationError: If amount or currency is invalid
            OverpaymentError: If the payment exceeds the outstanding amount
                under the reject policy
            NotFoundError: If the loan does not exist
            ConcurrencyConflict: If the loan kept changing underneath every attempt
        """
        loan_id = loan.id if isinstance(loan, Loan) else loan
        self._ensure_valid_amount(amount)
        self._ensure_valid_currency_code(currency_code)
        received_on = _parse_date(received_at, "received_at")

        attempts = self.config.max_repayment_attempts
        with self._loan_lock(loan_id):
            for attempt in range(1, attempts + 1):
                try:
                    return self._apply_repayment(loan_id, amount, currency_code, received_on)
                except ConcurrencyConflict:
                    log_action(
                        logger, "warning", f"Loan {loan_id} changed during repayment",
                        action="loan.repay.conflict", resource=loan_id,
                        extra={"attempt": attempt, "max_attempts": attempts}
                    )
                    if attempt == attempts:
                        raise

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by ID, raising NotFoundError if unknown"""
        loan = self.repository.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def get_user_loans(self, user_id: str) -> List[Loan]:
        """Get all loans for a user"""
        return self.repository.get_user_loans(user_id)

    def get_schedule(self, loan_id: str) -> List[ScheduledRepayment]:
        """Get a loan's installments in schedule order"""
        return self.repository.load_loan_with_installments(loan_id).installments

    def get_received_repayments(self, loan_id: str) -> List[ReceivedRepayment]:
        """Get a loan's received repayments"""
        self.get_loan(loan_id)
        return self.repository.get_received_repayments(loan_id)

    def _apply_repayment(
        self,
        loan_id: str,
        amount: int,
        currency_code: str,
        received_on: date
    ) -> ReceivedRepayment:
        """One load-allocate-save attempt"""
        aggregate = self.repository.load_loan_with_installments(loan_id)
        loan = aggregate.loan
        expected_version = loan.version
        was_repaid = loan.is_repaid

        normalized = self.converter.convert(amount, currency_code, loan.currency_code)

        policy = self.config.overpayment
        if policy == OverpaymentPolicy.REJECT and normalized > loan.outstanding_amount:
            log_action(
                logger, "warning", f"Repayment rejected for loan {loan.id}: overpayment",
                user_id=loan.user_id, action="loan.repay.rejected", resource=loan.id,
                extra={"normalized_amount": normalized, "outstanding_amount": loan.outstanding_amount}
            )
            raise OverpaymentError(
                f"Repayment of {format_minor_units(normalized, loan.currency_code)} exceeds the "
                f"outstanding {format_minor_units(loan.outstanding_amount, loan.currency_code)}."
            )

        result = self.allocator.allocate(loan, aggregate.installments, normalized)

        now = datetime.now(timezone.utc)
        touched = [i for i in aggregate.installments if i.id in result.applied]
        for installment in touched:
            installment.status = derive_installment_status(
                installment.amount, installment.outstanding_amount
            )
            installment.updated_at = now
        loan.status = derive_loan_status(loan.outstanding_amount)
        loan.updated_at = now

        treatment = OverpaymentTreatment.NONE
        if result.unapplied_amount:
            if policy == OverpaymentPolicy.CREDIT:
                loan.credit_balance += result.unapplied_amount
                treatment = OverpaymentTreatment.CREDIT
            else:
                treatment = OverpaymentTreatment.REFUND

        received = ReceivedRepayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            amount=amount,
            currency_code=currency_code,
            received_at=received_on,
            normalized_amount=normalized,
            applied_amount=result.total_applied,
            unapplied_amount=result.unapplied_amount,
            overpayment_treatment=treatment
        )

        with self.storage.atomic():
            self.repository.save_loan_aggregate(loan, touched, received, expected_version)
            self._audit(
                AuditEventType.LOAN_REPAYMENT_RECEIVED, "loan", loan.id, loan.user_id,
                {
                    "received_repayment_id": received.id,
                    "amount": amount,
                    "currency_code": currency_code,
                    "normalized_amount": normalized,
                    "applied": result.applied,
                    "outstanding_amount": loan.outstanding_amount
                }
            )
            if treatment == OverpaymentTreatment.CREDIT:
                self._audit(
                    AuditEventType.OVERPAYMENT_CREDITED, "loan", loan.id, loan.user_id,
                    {"received_repayment_id": received.id, "credited": result.unapplied_amount,
                     "credit_balance": loan.credit_balance}
                )
            elif treatment == OverpaymentTreatment.REFUND:
                self._audit(
                    AuditEventType.OVERPAYMENT_REFUND_DUE, "received_repayment", received.id, loan.user_id,
                    {"loan_id": loan.id, "refund_due": result.unapplied_amount}
                )
            if loan.is_repaid and not was_repaid:
                self._audit(
                    AuditEventType.LOAN_PAID_OFF, "loan", loan.id, loan.user_id,
                    {"total_paid": loan.total_paid}
                )

        log_action(
            logger, "info", f"Repayment {received.id} applied to loan {loan.id}",
            user_id=loan.user_id, action="loan.repay", resource=loan.id,
            extra={
                "normalized_amount": normalized,
                "applied_amount": result.total_applied,
                "unapplied_amount": result.unapplied_amount,
                "outstanding_amount": loan.outstanding_amount
            }
        )
        if loan.is_repaid and not was_repaid:
            log_action(
                logger, "info", f"Loan {loan.id} repaid in full",
                user_id=loan.user_id, action="loan.paid_off", resource=loan.id
            )

        return received

    @contextmanager
    def _loan_lock(self, loan_id: str):
        """Hold the per-loan lock for the duration of a repayment"""
        with self._loan_locks_guard:
            lock = self._loan_locks.setdefault(loan_id, threading.Lock())
        with lock:
            yield

    def _audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        user_id: str,
        metadata: Dict[str, Any]
    ) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                user_id=user_id
            )

    def _validate_loan_creation_data(self, terms: int, currency_code: str, amount: int) -> None:
        """
        Validate loan creation data

        Raises:
            ValidationError: On the first invalid value
        """
        allowed_terms = self.config.term_counts
        if not isinstance(terms, int) or isinstance(terms, bool) or terms not in allowed_terms:
            message = f"Loan terms must be one of: {', '.join(str(t) for t in allowed_terms)} months."
            log_action(logger, "warning", message, action="loan.create.rejected")
            raise ValidationError(message)

        self._ensure_valid_currency_code(currency_code)
        self._ensure_valid_amount(amount)

    def _ensure_valid_currency_code(self, currency_code: str) -> None:
        """Ensure the currency code is in the configured set"""
        allowed = self.config.currency_codes
        if currency_code not in allowed:
            message = f"The currency code must be in: {', '.join(allowed)}."
            log_action(logger, "warning", message, extra={"currency_code": currency_code})
            raise ValidationError(message)

    def _ensure_valid_amount(self, amount: int) -> None:
        """Ensure the amount is a positive integer of minor units"""
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ValidationError(f"Amount must be an integer number of minor units, got {amount!r}.")
        if amount <= 0:
            log_action(logger, "warning", "Amount must be greater than 0.", extra={"amount": amount})
            raise ValidationError("Amount must be greater than 0.")
