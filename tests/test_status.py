"""
Test suite for status module

Tests the legal loan status edges, the schedule side effects of release and
revert, and the system-only closure edges.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from microfinance.exceptions import InvalidTransitionError
from microfinance.models import Loan, LoanStatus
from microfinance.status import LoanStatusMachine, coerce_status


def make_loan(status: LoanStatus = LoanStatus.PENDING) -> Loan:
    now = datetime.now(timezone.utc)
    return Loan(
        id="LOAN001", created_at=now, updated_at=now,
        ref_no="REF-0123456789AB", borrower_id="B1", plan_id="P1",
        amount=Decimal('10000'), rate=Decimal('5'), term=6,
        status=status
    )


class TestCoerceStatus:
    """Test status target resolution"""

    def test_members_and_names(self):
        """Test members, values and names resolve"""
        assert coerce_status(LoanStatus.APPROVED) == LoanStatus.APPROVED
        assert coerce_status("approved") == LoanStatus.APPROVED
        assert coerce_status("RELEASED") == LoanStatus.RELEASED

    @pytest.mark.parametrize("target", [1, 3, "3", None, "funded"])
    def test_rejects_codes_and_unknown_names(self, target):
        """Test numeric codes and unknown names are refused"""
        with pytest.raises(InvalidTransitionError, match="Unknown loan status"):
            coerce_status(target)


class TestLoanStatusMachine:
    """Test status transitions"""

    def setup_method(self):
        """Set up test fixtures"""
        self.machine = LoanStatusMachine()
        self.release_time = datetime(2024, 5, 10, 8, 0, tzinfo=timezone.utc)

    def test_approve_and_reject(self):
        """Test a pending loan can be approved or rejected"""
        loan = make_loan()
        self.machine.transition(loan, LoanStatus.APPROVED)
        assert loan.status == LoanStatus.APPROVED

        other = make_loan()
        self.machine.transition(other, "rejected")
        assert other.status == LoanStatus.REJECTED

    def test_release_initializes_schedule(self):
        """Test APPROVED to RELEASED starts the schedule"""
        loan = make_loan(LoanStatus.APPROVED)

        self.machine.transition(loan, LoanStatus.RELEASED, now=self.release_time)

        assert loan.status == LoanStatus.RELEASED
        assert loan.date_released == self.release_time
        assert loan.first_payment_date == date(2024, 5, 11)
        assert loan.next_payment_date == date(2024, 5, 11)
        assert loan.paid_days == 0

    def test_release_defaults_to_now(self):
        """Test releasing without a timestamp uses the current time"""
        loan = make_loan(LoanStatus.APPROVED)

        self.machine.transition(loan, LoanStatus.RELEASED)

        assert loan.date_released is not None
        assert loan.first_payment_date is not None

    def test_revert_to_pending_clears_schedule(self):
        """Test RELEASED to PENDING nulls the schedule"""
        loan = make_loan(LoanStatus.APPROVED)
        self.machine.transition(loan, LoanStatus.RELEASED, now=self.release_time)
        self.machine.schedule_tracker.advance(loan)

        self.machine.transition(loan, LoanStatus.PENDING)

        assert loan.status == LoanStatus.PENDING
        assert loan.date_released is None
        assert loan.first_payment_date is None
        assert loan.next_payment_date is None
        assert loan.paid_days == 0

    def test_cannot_skip_approval(self):
        """Test PENDING cannot jump straight to RELEASED"""
        loan = make_loan()

        with pytest.raises(InvalidTransitionError, match="Cannot move loan .* from pending to released"):
            self.machine.transition(loan, LoanStatus.RELEASED)
        assert loan.status == LoanStatus.PENDING

    def test_rejected_is_terminal(self):
        """Test nothing leaves REJECTED"""
        loan = make_loan(LoanStatus.REJECTED)

        for target in LoanStatus:
            with pytest.raises(InvalidTransitionError):
                self.machine.transition(loan, target)

    def test_external_close_refused(self):
        """Test callers cannot close a loan directly"""
        loan = make_loan(LoanStatus.APPROVED)
        self.machine.transition(loan, LoanStatus.RELEASED, now=self.release_time)

        with pytest.raises(InvalidTransitionError, match="from released to closed"):
            self.machine.transition(loan, LoanStatus.CLOSED)
        assert loan.status == LoanStatus.RELEASED

    def test_integer_target_refused(self):
        """Test legacy numeric codes are not accepted as targets"""
        loan = make_loan()

        with pytest.raises(InvalidTransitionError, match="Unknown loan status"):
            self.machine.transition(loan, 1)
        assert loan.status == LoanStatus.PENDING

    def test_system_close_and_reopen(self):
        """Test reconciliation can close and reopen a loan"""
        loan = make_loan(LoanStatus.APPROVED)
        self.machine.transition(loan, LoanStatus.RELEASED, now=self.release_time)
        self.machine.schedule_tracker.advance(loan)

        self.machine.close(loan)
        assert loan.status == LoanStatus.CLOSED

        self.machine.close(loan)
        assert loan.status == LoanStatus.CLOSED

        self.machine.reopen(loan)
        assert loan.status == LoanStatus.RELEASED
        assert loan.paid_days == 1
        assert loan.first_payment_date == date(2024, 5, 11)

    def test_closed_is_terminal_for_callers(self):
        """Test callers cannot move a closed loan anywhere"""
        loan = make_loan(LoanStatus.CLOSED)

        with pytest.raises(InvalidTransitionError):
            self.machine.transition(loan, LoanStatus.RELEASED)
        with pytest.raises(InvalidTransitionError):
            self.machine.transition(loan, LoanStatus.PENDING)

    def test_system_cannot_close_pending(self):
        """Test the system edge only applies to released loans"""
        loan = make_loan()

        with pytest.raises(InvalidTransitionError):
            self.machine.close(loan)

    def test_allowed_targets(self):
        """Test the edge tables"""
        assert self.machine.allowed_targets(LoanStatus.PENDING) == {
            LoanStatus.APPROVED, LoanStatus.REJECTED
        }
        assert LoanStatus.CLOSED not in self.machine.allowed_targets(LoanStatus.RELEASED)
        assert LoanStatus.CLOSED in self.machine.allowed_targets(LoanStatus.RELEASED, system=True)
        assert self.machine.can_transition(LoanStatus.APPROVED, "released")
        assert not self.machine.can_transition(LoanStatus.APPROVED, 3)
