"""
Repayment Schedule Module

Tracks a released loan's progress through its day-count schedule:
first_payment_date, next_payment_date and paid_days. Each recorded payment
advances the schedule by exactly one day whatever its amount; deleting a
payment moves it back by one day.
"""

from datetime import datetime, date, time, timedelta, timezone
from typing import Optional, Union

from .amortization import AmortizationCalculator
from .exceptions import ScheduleNotInitializedError
from .logging_config import get_logger
from .models import Loan
from .storage import as_utc


class ScheduleTracker:
    """Owns the schedule fields of a loan; nothing else writes them"""

    def __init__(self):
        self.logger = get_logger("microfinance.schedule")

    def total_days(self, loan: Loan) -> int:
        return AmortizationCalculator.summary_for(loan).total_days

    def initialize(self, loan: Loan, released_at: Union[datetime, date]) -> Loan:
        """Start the schedule: first payment falls the day after release"""
        if not isinstance(released_at, datetime):
            released_at = datetime.combine(released_at, time.min, tzinfo=timezone.utc)
        released_at = as_utc(released_at)

        loan.date_released = released_at
        loan.first_payment_date = released_at.date() + timedelta(days=1)
        loan.next_payment_date = loan.first_payment_date
        loan.paid_days = 0

        self.logger.debug(
            f"Schedule initialized for loan {loan.id}: first payment {loan.first_payment_date}"
        )
        return loan

    def reset(self, loan: Loan) -> Loan:
        """Clear the schedule when a release is reverted"""
        loan.date_released = None
        loan.first_payment_date = None
        loan.next_payment_date = None
        loan.paid_days = 0
        return loan

    def advance(self, loan: Loan) -> Loan:
        """Record one paid day; paid_days never passes total_days"""
        self._require_schedule(loan, "advance")
        loan.paid_days = min(loan.paid_days + 1, self.total_days(loan))
        loan.next_payment_date = loan.first_payment_date + timedelta(days=loan.paid_days)
        return loan

    def retreat(self, loan: Loan) -> Loan:
        """Undo one paid day"""
        self._require_schedule(loan, "retreat")
        loan.paid_days = max(loan.paid_days - 1, 0)
        loan.next_payment_date = loan.first_payment_date + timedelta(days=loan.paid_days)
        return loan

    def remaining_days(self, loan: Loan) -> int:
        return max(self.total_days(loan) - loan.paid_days, 0)

    def due_date(self, loan: Loan) -> Optional[date]:
        """Final due date: release date plus the full term in 30-day months"""
        if loan.date_released is None:
            return None
        return loan.date_released.date() + timedelta(days=self.total_days(loan))

    def is_complete(self, loan: Loan) -> bool:
        return loan.paid_days >= self.total_days(loan)

    def _require_schedule(self, loan: Loan, operation: str) -> None:
        if loan.first_payment_date is None:
            raise ScheduleNotInitializedError(
                f"Cannot {operation} schedule of loan {loan.id}: loan has not been released"
            )
