"""
Due Classification Module

Labels a released loan for collections by comparing its next payment date
with the caller's "now" at day granularity, and assembles the upcoming
payments board used by dashboards. Read-only: nothing here modifies a loan.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

from .amortization import AmortizationCalculator
from .exceptions import ScheduleNotInitializedError
from .models import Borrower, Loan, LoanStatus
from .schedule import ScheduleTracker

DateLike = Union[date, datetime]


class DueLabel(Enum):
    """Collection status of a loan's next payment"""
    DUE_TODAY = "due_today"
    DUE_TOMORROW = "due_tomorrow"
    OVERDUE = "overdue"
    UPCOMING = "upcoming"

    @property
    def priority(self) -> int:
        """Sort rank on the collections board, lowest first"""
        return _PRIORITY[self]

    @property
    def title(self) -> str:
        return self.value.replace("_", " ").title()


_PRIORITY = {
    DueLabel.DUE_TODAY: 0,
    DueLabel.DUE_TOMORROW: 1,
    DueLabel.OVERDUE: 2,
    DueLabel.UPCOMING: 3,
}


def _as_date(value: DateLike) -> date:
    return value.date() if isinstance(value, datetime) else value


def days_between(next_payment_date: DateLike, now: DateLike) -> int:
    """Whole days from now until the next payment; negative when late"""
    return (_as_date(next_payment_date) - _as_date(now)).days


def describe_days_left(diff_days: int) -> str:
    if diff_days > 1:
        return f"{diff_days} days"
    if diff_days == 1:
        return "Tomorrow"
    if diff_days == 0:
        return "Today"
    return f"{abs(diff_days)} days late"


class DueClassifier:
    """Pure due/overdue labelling"""

    @staticmethod
    def label_for(diff_days: int) -> DueLabel:
        if diff_days == 0:
            return DueLabel.DUE_TODAY
        if diff_days == 1:
            return DueLabel.DUE_TOMORROW
        if diff_days < 0:
            return DueLabel.OVERDUE
        return DueLabel.UPCOMING

    @classmethod
    def classify(cls, loan: Loan, now: DateLike) -> DueLabel:
        """
        Label a loan from its current next_payment_date.

        Raises:
            ScheduleNotInitializedError: if the loan has no schedule
        """
        if loan.next_payment_date is None:
            raise ScheduleNotInitializedError(
                f"Loan {loan.ref_no} has no repayment schedule to classify"
            )
        return cls.label_for(days_between(loan.next_payment_date, now))


@dataclass(frozen=True)
class UpcomingPayment:
    """One row of the upcoming payments board"""
    loan_id: str
    ref_no: str
    borrower_name: str
    id_no: str
    release_date: Optional[date]
    next_payment_date: date
    due_date: Optional[date]
    diff_days: int
    days_left: str
    remaining_days: int
    daily_payment: Decimal
    label: DueLabel


class UpcomingPaymentsBoard:
    """Released loans labelled and ranked for collections"""

    def __init__(self, entries: List[UpcomingPayment]):
        self.entries = sorted(
            entries,
            key=lambda e: (e.label.priority, e.next_payment_date, e.ref_no)
        )

    @classmethod
    def build(
        cls,
        loans: Iterable[Loan],
        borrowers: Dict[str, Borrower],
        now: DateLike,
        schedule_tracker: Optional[ScheduleTracker] = None
    ) -> 'UpcomingPaymentsBoard':
        tracker = schedule_tracker or ScheduleTracker()
        entries = []
        for loan in loans:
            if loan.status != LoanStatus.RELEASED or loan.next_payment_date is None:
                continue
            borrower = borrowers.get(loan.borrower_id)
            diff_days = days_between(loan.next_payment_date, now)
            entries.append(UpcomingPayment(
                loan_id=loan.id,
                ref_no=loan.ref_no,
                borrower_name=borrower.display_name if borrower else "",
                id_no=borrower.id_no if borrower else "",
                release_date=loan.date_released.date() if loan.date_released else None,
                next_payment_date=loan.next_payment_date,
                due_date=tracker.due_date(loan),
                diff_days=diff_days,
                days_left=describe_days_left(diff_days),
                remaining_days=tracker.remaining_days(loan),
                daily_payment=AmortizationCalculator.summary_for(loan).daily_payment,
                label=DueClassifier.label_for(diff_days)
            ))
        return cls(entries)

    def filter(self, label: Optional[DueLabel] = None,
               search: Optional[str] = None) -> List[UpcomingPayment]:
        """Entries with the given label whose borrower name, id number or ref matches search"""
        needle = (search or "").strip().lower()
        results = []
        for entry in self.entries:
            if label is not None and entry.label != label:
                continue
            if needle and not (
                needle in entry.borrower_name.lower()
                or needle in entry.id_no.lower()
                or needle in entry.ref_no.lower()
            ):
                continue
            results.append(entry)
        return results

    def counts(self) -> Dict[DueLabel, int]:
        totals = {label: 0 for label in DueLabel}
        for entry in self.entries:
            totals[entry.label] += 1
        return totals
