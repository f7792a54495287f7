"""
Test suite for schedule module

Tests schedule initialization on release, day-by-day advance and retreat,
and the paid_days bounds.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date, timedelta

from microfinance.exceptions import ScheduleNotInitializedError
from microfinance.models import Loan, LoanStatus
from microfinance.schedule import ScheduleTracker


def make_loan(term: int = 6) -> Loan:
    now = datetime.now(timezone.utc)
    return Loan(
        id="LOAN001", created_at=now, updated_at=now,
        ref_no="REF-AAAABBBBCCCC", borrower_id="B1", plan_id="P1",
        amount=Decimal('10000'), rate=Decimal('5'), term=term,
        status=LoanStatus.APPROVED
    )


class TestScheduleInitialization:
    """Test starting and clearing the schedule"""

    def setup_method(self):
        """Set up test fixtures"""
        self.tracker = ScheduleTracker()
        self.loan = make_loan()

    def test_first_payment_is_day_after_release(self):
        """Test release on D schedules the first payment on D+1"""
        released_at = datetime(2024, 1, 31, 15, 30, tzinfo=timezone.utc)

        self.tracker.initialize(self.loan, released_at)

        assert self.loan.date_released == released_at
        assert self.loan.first_payment_date == date(2024, 2, 1)
        assert self.loan.next_payment_date == date(2024, 2, 1)
        assert self.loan.paid_days == 0
        assert self.loan.has_schedule

    def test_initialize_with_plain_date(self):
        """Test a date release is stored as midnight UTC"""
        self.tracker.initialize(self.loan, date(2024, 12, 31))

        assert self.loan.date_released == datetime(2024, 12, 31, tzinfo=timezone.utc)
        assert self.loan.first_payment_date == date(2025, 1, 1)

    def test_reset_clears_schedule(self):
        """Test reverting a release nulls every schedule field"""
        self.tracker.initialize(self.loan, date(2024, 1, 1))
        self.tracker.advance(self.loan)

        self.tracker.reset(self.loan)

        assert self.loan.date_released is None
        assert self.loan.first_payment_date is None
        assert self.loan.next_payment_date is None
        assert self.loan.paid_days == 0
        assert not self.loan.has_schedule

    def test_due_date(self):
        """Test the final due date is release plus the full term in days"""
        assert self.tracker.due_date(self.loan) is None

        self.tracker.initialize(self.loan, date(2024, 1, 1))

        assert self.tracker.due_date(self.loan) == date(2024, 1, 1) + timedelta(days=180)


class TestScheduleProgress:
    """Test advancing and retreating the schedule"""

    def setup_method(self):
        """Set up test fixtures"""
        self.tracker = ScheduleTracker()
        self.loan = make_loan(term=1)
        self.tracker.initialize(self.loan, date(2024, 3, 1))

    def test_advance_moves_one_day(self):
        """Test n advances give paid_days n and next date first + n"""
        for _ in range(7):
            self.tracker.advance(self.loan)

        assert self.loan.paid_days == 7
        assert self.loan.next_payment_date == date(2024, 3, 2) + timedelta(days=7)
        assert self.tracker.remaining_days(self.loan) == 23

    def test_advance_clamped_at_total_days(self):
        """Test paid_days never passes the schedule length"""
        for _ in range(35):
            self.tracker.advance(self.loan)

        assert self.loan.paid_days == 30
        assert self.tracker.is_complete(self.loan)
        assert self.tracker.remaining_days(self.loan) == 0

    def test_retreat_moves_back_one_day(self):
        """Test retreat undoes an advance"""
        self.tracker.advance(self.loan)
        self.tracker.advance(self.loan)

        self.tracker.retreat(self.loan)

        assert self.loan.paid_days == 1
        assert self.loan.next_payment_date == date(2024, 3, 3)

    def test_retreat_floor_at_zero(self):
        """Test paid_days never goes negative"""
        self.tracker.retreat(self.loan)

        assert self.loan.paid_days == 0
        assert self.loan.next_payment_date == self.loan.first_payment_date

    def test_advance_without_schedule(self):
        """Test advancing an unreleased loan fails"""
        loan = make_loan()

        with pytest.raises(ScheduleNotInitializedError, match="has not been released"):
            self.tracker.advance(loan)

    def test_retreat_without_schedule(self):
        """Test retreating an unreleased loan fails"""
        loan = make_loan()

        with pytest.raises(ScheduleNotInitializedError, match="has not been released"):
            self.tracker.retreat(loan)
