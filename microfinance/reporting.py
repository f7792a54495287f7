"""
Portfolio Reporting Module

Figures behind the collections reports and the dashboard: per-loan
positions (total payable, paid, pending balance, interest earned), portfolio
totals and monthly collection totals. Produces plain data; rendering and
export belong to the caller.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .amortization import AmortizationCalculator
from .directory import BorrowerRegistry
from .models import Loan, LoanStatus
from .stores import LoanStore, PaymentStore


@dataclass(frozen=True)
class LoanPosition:
    """Repayment position of a single loan"""
    loan_id: str
    ref_no: str
    borrower_name: str
    status: LoanStatus
    amount: Decimal
    rate: Decimal
    term: int
    date_released: Optional[date]
    total_interest: Decimal
    total_payable: Decimal
    total_paid: Decimal
    pending_balance: Decimal
    interest_earned: Decimal


@dataclass(frozen=True)
class PortfolioTotals:
    loan_count: int
    total_loan_value: Decimal
    total_paid: Decimal
    interest_earned: Decimal
    pending_balance: Decimal


class PortfolioReporter:
    """Computes report figures from the loan and payment stores"""

    def __init__(self, loan_store: LoanStore, payment_store: PaymentStore,
                 borrower_registry: BorrowerRegistry):
        self.loan_store = loan_store
        self.payment_store = payment_store
        self.borrower_registry = borrower_registry

    def position(self, loan: Loan, borrower_name: str = "") -> LoanPosition:
        summary = AmortizationCalculator.summary_for(loan)
        total_paid = self.payment_store.total_paid(loan.id)
        return LoanPosition(
            loan_id=loan.id,
            ref_no=loan.ref_no,
            borrower_name=borrower_name,
            status=loan.status,
            amount=loan.amount,
            rate=loan.rate,
            term=loan.term,
            date_released=loan.date_released.date() if loan.date_released else None,
            total_interest=summary.total_interest,
            total_payable=summary.total_payable,
            total_paid=total_paid,
            pending_balance=summary.pending_balance(total_paid),
            interest_earned=summary.interest_earned(total_paid)
        )

    def positions(self, status: Optional[LoanStatus] = LoanStatus.RELEASED,
                  borrower_id: Optional[str] = None) -> List[LoanPosition]:
        """Positions for loans in a status (all loans when status is None)"""
        filters = {}
        if status is not None:
            filters["status"] = status
        if borrower_id is not None:
            filters["borrower_id"] = borrower_id
        borrowers = self.borrower_registry.as_lookup()
        positions = []
        for loan in self.loan_store.list(filters):
            borrower = borrowers.get(loan.borrower_id)
            positions.append(self.position(loan, borrower.display_name if borrower else ""))
        return positions

    @staticmethod
    def totals(positions: Iterable[LoanPosition]) -> PortfolioTotals:
        positions = list(positions)
        zero = Decimal('0')
        return PortfolioTotals(
            loan_count=len(positions),
            total_loan_value=sum((p.total_payable for p in positions), zero),
            total_paid=sum((p.total_paid for p in positions), zero),
            interest_earned=sum((p.interest_earned for p in positions), zero),
            pending_balance=sum((p.pending_balance for p in positions), zero)
        )

    def monthly_collections(self, loan_ids: Optional[Iterable[str]] = None) -> Dict[str, Decimal]:
        """Amount + penalty collected per calendar month, keyed "YYYY-MM" in order"""
        wanted = set(loan_ids) if loan_ids is not None else None
        collected: Dict[str, Decimal] = {}
        for payment in self.payment_store.list_all():
            if wanted is not None and payment.loan_id not in wanted:
                continue
            key = payment.created_at.strftime("%Y-%m")
            collected[key] = collected.get(key, Decimal('0')) + payment.total
        return dict(sorted(collected.items()))

    def dashboard_summary(self) -> Dict[str, object]:
        loans = self.loan_store.list()
        by_status = {status.value: 0 for status in LoanStatus}
        for loan in loans:
            by_status[loan.status.value] += 1

        receivable = self.totals(self.positions(LoanStatus.RELEASED)).pending_balance
        return {
            "total_borrowers": len(self.borrower_registry.list()),
            "loans_by_status": by_status,
            "active_loans": by_status[LoanStatus.RELEASED.value],
            "total_receivable": receivable
        }
