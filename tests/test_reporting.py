"""
Test suite for reporting module

Tests loan positions, portfolio totals, monthly collections and the
dashboard summary.
"""

from decimal import Decimal
from datetime import datetime, timezone

from microfinance.config import MicrofinanceConfig
from microfinance.loans import LoanManager
from microfinance.models import LoanStatus
from microfinance.reporting import PortfolioReporter, PortfolioTotals
from microfinance.storage import InMemoryStorage


RELEASE_TIME = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class TestPortfolioReporter:
    """Test portfolio reporting"""

    def setup_method(self):
        """Set up test fixtures"""
        self.manager = LoanManager(InMemoryStorage(), config=MicrofinanceConfig(database_url="memory://"))
        self.reporter = self.manager.reporter
        self.maria = self.manager.borrowers.create_borrower(firstname="Maria", lastname="Santos")
        self.jose = self.manager.borrowers.create_borrower(firstname="Jose", lastname="Reyes")
        self.plan = self.manager.plans.create_plan(months=6, interest_percentage=Decimal('5'))

    def release(self, borrower_id: str, amount: Decimal):
        loan = self.manager.create_loan(borrower_id, self.plan.id, amount)
        self.manager.transition_status(loan.id, LoanStatus.APPROVED)
        return self.manager.transition_status(loan.id, LoanStatus.RELEASED, now=RELEASE_TIME)

    def test_position(self):
        """Test a loan's paid, pending and earned figures"""
        loan = self.release(self.maria.id, Decimal('10000'))
        self.manager.add_payment(loan.id, "Maria Santos", Decimal('6000'), Decimal('500'))

        [position] = self.reporter.positions()

        assert position.ref_no == loan.ref_no
        assert position.borrower_name == "Maria Santos"
        assert position.date_released == RELEASE_TIME.date()
        assert position.total_interest == Decimal('3000')
        assert position.total_payable == Decimal('13000')
        assert position.total_paid == Decimal('6500')
        assert position.pending_balance == Decimal('6500')
        assert position.interest_earned == Decimal('1500')

    def test_positions_only_released_by_default(self):
        self.release(self.maria.id, Decimal('10000'))
        self.manager.create_loan(self.jose.id, self.plan.id, Decimal('2000'))

        assert len(self.reporter.positions()) == 1
        assert len(self.reporter.positions(status=None)) == 2
        assert len(self.reporter.positions(status=None, borrower_id=self.jose.id)) == 1

    def test_totals(self):
        first = self.release(self.maria.id, Decimal('10000'))
        second = self.release(self.jose.id, Decimal('1000'))
        self.manager.add_payment(first.id, "Maria Santos", Decimal('1300'))
        self.manager.add_payment(second.id, "Jose Reyes", Decimal('650'))

        totals = self.reporter.totals(self.reporter.positions())

        assert totals == PortfolioTotals(
            loan_count=2,
            total_loan_value=Decimal('14300'),
            total_paid=Decimal('1950'),
            interest_earned=Decimal('300') + Decimal('150'),
            pending_balance=Decimal('12350')
        )

    def test_totals_empty(self):
        totals = self.reporter.totals([])

        assert totals.loan_count == 0
        assert totals.total_paid == Decimal('0')

    def test_monthly_collections(self):
        """Test collections are grouped by calendar month, penalty included"""
        loan = self.release(self.maria.id, Decimal('10000'))
        other = self.release(self.jose.id, Decimal('10000'))
        self.manager.add_payment(loan.id, "Maria Santos", Decimal('100'), Decimal('10'),
                                 now=datetime(2024, 1, 20, tzinfo=timezone.utc))
        self.manager.add_payment(loan.id, "Maria Santos", Decimal('100'),
                                 now=datetime(2024, 2, 3, tzinfo=timezone.utc))
        self.manager.add_payment(other.id, "Jose Reyes", Decimal('50'),
                                 now=datetime(2024, 1, 31, tzinfo=timezone.utc))

        assert self.reporter.monthly_collections() == {
            "2024-01": Decimal('160'),
            "2024-02": Decimal('100'),
        }
        assert self.reporter.monthly_collections([other.id]) == {"2024-01": Decimal('50')}
        assert list(self.reporter.monthly_collections()) == ["2024-01", "2024-02"]

    def test_dashboard_summary(self):
        released = self.release(self.maria.id, Decimal('10000'))
        self.manager.create_loan(self.jose.id, self.plan.id, Decimal('2000'))
        closed = self.release(self.jose.id, Decimal('100'))
        self.manager.add_payment(closed.id, "Jose Reyes", Decimal('130'))
        self.manager.add_payment(released.id, "Maria Santos", Decimal('1000'))

        summary = self.reporter.dashboard_summary()

        assert summary["total_borrowers"] == 2
        assert summary["loans_by_status"] == {
            "pending": 1, "approved": 0, "rejected": 0, "released": 1, "closed": 1
        }
        assert summary["active_loans"] == 1
        assert summary["total_receivable"] == Decimal('12000')

    def test_reporter_type(self):
        assert isinstance(self.reporter, PortfolioReporter)
