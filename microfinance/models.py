"""
Loan Records Module

Record types shared by every component: loan plans, borrowers, loans and
payments, plus the closed set of loan statuses. All monetary values are
Decimal and serialize to strings.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, date
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum

from .storage import StorageRecord, as_utc
from .exceptions import InvalidInputError


def as_decimal(value: Any, field_name: str = "value") -> Decimal:
    """Convert to Decimal without ever passing through binary floating point"""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise InvalidInputError(f"{field_name} must be a number, got {value!r}")
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidInputError(f"{field_name} must be a number, got {value!r}")
    if not result.is_finite():
        raise InvalidInputError(f"{field_name} must be finite, got {value!r}")
    return result


def _date_or_none(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _datetime_or_none(value: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(value)) if value else None


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Created, awaiting review
    APPROVED = "approved"      # Approved, funds not yet released
    REJECTED = "rejected"      # Application declined
    RELEASED = "released"      # Funds released, repayment schedule running
    CLOSED = "closed"          # Fully repaid

    @property
    def legacy_code(self) -> int:
        """Numeric code used by the legacy loan_list table"""
        return _LEGACY_CODES[self]

    @classmethod
    def from_legacy_code(cls, code: int) -> 'LoanStatus':
        """Read a status from a legacy numeric row value"""
        for status, legacy in _LEGACY_CODES.items():
            if legacy == code:
                return status
        raise InvalidInputError(f"Unknown legacy status code: {code!r}")


_LEGACY_CODES = {
    LoanStatus.PENDING: 0,
    LoanStatus.APPROVED: 1,
    LoanStatus.REJECTED: 2,
    LoanStatus.RELEASED: 3,
    LoanStatus.CLOSED: 4,
}


@dataclass
class LoanPlan(StorageRecord):
    """Reusable template of term length, interest rate and penalty rate"""
    months: int
    interest_percentage: Decimal   # Flat rate per month, e.g. 5 for 5%
    penalty_rate: Decimal = Decimal('0')

    def __post_init__(self):
        if isinstance(self.months, bool) or not isinstance(self.months, int) or self.months <= 0:
            raise InvalidInputError(f"Plan months must be a positive integer, got {self.months!r}")
        self.interest_percentage = as_decimal(self.interest_percentage, "interest_percentage")
        self.penalty_rate = as_decimal(self.penalty_rate, "penalty_rate")
        if self.interest_percentage < 0:
            raise InvalidInputError("Plan interest percentage cannot be negative")
        if self.penalty_rate < 0:
            raise InvalidInputError("Plan penalty rate cannot be negative")

    @property
    def label(self) -> str:
        return f"{self.months} Months @ {self.interest_percentage}%"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPlan':
        data['interest_percentage'] = Decimal(data['interest_percentage'])
        data['penalty_rate'] = Decimal(data['penalty_rate'])
        return super().from_dict(data)


@dataclass
class Borrower(StorageRecord):
    """Borrower contact record (maintained outside the loan core)"""
    firstname: str
    lastname: str
    id_no: str = ""
    contact_no: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.firstname} {self.lastname}".strip()


@dataclass
class Loan(StorageRecord):
    """
    Loan with rate/term frozen from its plan at creation time.

    Schedule fields (date_released, first_payment_date, next_payment_date,
    paid_days) are only ever written by the schedule tracker.
    """
    ref_no: str
    borrower_id: str
    plan_id: str
    amount: Decimal                 # Principal
    rate: Decimal                   # Monthly flat interest percentage snapshot
    term: int                       # Term in months snapshot
    status: LoanStatus = LoanStatus.PENDING
    loan_type_id: Optional[str] = None
    purpose: Optional[str] = None

    # Schedule
    date_released: Optional[datetime] = None
    first_payment_date: Optional[date] = None
    next_payment_date: Optional[date] = None
    paid_days: int = 0

    @property
    def date_created(self) -> datetime:
        return self.created_at

    @property
    def is_released(self) -> bool:
        return self.status == LoanStatus.RELEASED

    @property
    def has_schedule(self) -> bool:
        return self.first_payment_date is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data['amount'] = Decimal(data['amount'])
        data['rate'] = Decimal(data['rate'])
        status = data['status']
        data['status'] = LoanStatus.from_legacy_code(status) if isinstance(status, int) else LoanStatus(status)
        data['date_released'] = _datetime_or_none(data.get('date_released'))
        data['first_payment_date'] = _date_or_none(data.get('first_payment_date'))
        data['next_payment_date'] = _date_or_none(data.get('next_payment_date'))
        return super().from_dict(data)


@dataclass
class Payment(StorageRecord):
    """Repayment received against exactly one loan"""
    loan_id: str
    payee: str                      # Display name, not a borrower reference
    amount: Decimal
    penalty_amount: Decimal = Decimal('0')

    def __post_init__(self):
        # Payments of one loan are ordered by created_at
        self.created_at = as_utc(self.created_at)
        self.updated_at = as_utc(self.updated_at)
        self.amount = as_decimal(self.amount, "amount")
        self.penalty_amount = as_decimal(self.penalty_amount, "penalty_amount")
        if self.amount < 0:
            raise InvalidInputError("Payment amount cannot be negative")
        if self.penalty_amount < 0:
            raise InvalidInputError("Penalty amount cannot be negative")
        if self.amount + self.penalty_amount <= 0:
            raise InvalidInputError("Payment must carry a positive amount or penalty")

    @property
    def date_created(self) -> datetime:
        return self.created_at

    @property
    def total(self) -> Decimal:
        """Amount credited towards the loan, penalty included"""
        return self.amount + self.penalty_amount

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        data['amount'] = Decimal(data['amount'])
        data['penalty_amount'] = Decimal(data['penalty_amount'])
        return super().from_dict(data)
