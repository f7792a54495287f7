"""
Amortization Calculator Module

Flat-interest amortization: interest is charged once per month on the full
principal for the whole term, and the term is repaid in equal daily
instalments over 30-day months. This is the single place these figures are
computed; everything that shows a total payable, daily payment or pending
balance asks this module.

    total_interest = amount * (rate / 100) * term_months
    total_payable  = amount + total_interest
    total_days     = term_months * 30
    daily_payment  = total_payable / total_days
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any

from .exceptions import InvalidInputError
from .models import Loan, as_decimal

DAYS_PER_MONTH = 30

_HUNDRED = Decimal('100')
_ZERO = Decimal('0')
_ONE = Decimal('1')


@dataclass(frozen=True)
class AmortizationSummary:
    """Derived repayment figures for one principal/rate/term combination"""
    amount: Decimal
    rate_percent: Decimal
    term_months: int
    total_interest: Decimal
    total_payable: Decimal
    total_days: int
    daily_payment: Decimal

    @property
    def monthly_interest(self) -> Decimal:
        """Interest charged for one month on the full principal"""
        return self.amount * (self.rate_percent / _HUNDRED)

    @property
    def monthly_payment(self) -> Decimal:
        return self.total_payable / Decimal(self.term_months)

    def pending_balance(self, total_paid: Decimal) -> Decimal:
        """Amount still owed; negative when the borrower has overpaid"""
        return self.total_payable - total_paid

    def interest_earned(self, total_paid: Decimal) -> Decimal:
        """
        Interest recognised so far, pro rata to the share of the total
        payable already collected (capped at the full interest).
        """
        if total_paid <= _ZERO:
            return _ZERO
        ratio = min(total_paid / self.total_payable, _ONE)
        return self.total_interest * ratio


class AmortizationCalculator:
    """Pure flat-interest calculator"""

    @staticmethod
    def compute(amount: Any, rate_percent: Any, term_months: int) -> AmortizationSummary:
        """
        Compute the repayment figures for a loan.

        Args:
            amount: Principal, must be positive
            rate_percent: Flat monthly interest percentage, must not be negative
            term_months: Term in months, must be a positive integer

        Returns:
            AmortizationSummary with exact (unrounded) Decimal figures

        Raises:
            InvalidInputError: for a non-positive amount or term, or a negative rate
        """
        amount = as_decimal(amount, "amount")
        rate_percent = as_decimal(rate_percent, "rate_percent")
        if isinstance(term_months, bool) or not isinstance(term_months, int):
            raise InvalidInputError(f"term_months must be an integer, got {term_months!r}")
        if amount <= _ZERO:
            raise InvalidInputError(f"Loan amount must be positive, got {amount}")
        if term_months <= 0:
            raise InvalidInputError(f"Loan term must be positive, got {term_months}")
        if rate_percent < _ZERO:
            raise InvalidInputError(f"Interest rate cannot be negative, got {rate_percent}")

        total_interest = amount * (rate_percent / _HUNDRED) * Decimal(term_months)
        total_payable = amount + total_interest
        total_days = term_months * DAYS_PER_MONTH
        daily_payment = total_payable / Decimal(total_days)

        return AmortizationSummary(
            amount=amount,
            rate_percent=rate_percent,
            term_months=term_months,
            total_interest=total_interest,
            total_payable=total_payable,
            total_days=total_days,
            daily_payment=daily_payment
        )

    @classmethod
    def summary_for(cls, loan: Loan) -> AmortizationSummary:
        """Figures for a loan from its frozen rate/term snapshot"""
        return cls.compute(loan.amount, loan.rate, loan.term)


def compute(amount: Any, rate_percent: Any, term_months: int) -> AmortizationSummary:
    """Module-level shortcut for AmortizationCalculator.compute"""
    return AmortizationCalculator.compute(amount, rate_percent, term_months)
