"""
Loan Management Module

The loan core's public surface: loan creation and editing, status
transitions, payments, schedule summaries, due classification and the
reconciliation sweep. LoanManager wires the stores, the status machine,
the schedule tracker and the reconciler together; callers never touch
those directly to change a loan.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union
import uuid

from .amortization import AmortizationCalculator
from .audit import AuditTrail, AuditEventType
from .config import MicrofinanceConfig, get_config
from .directory import BorrowerRegistry, LoanPlanRegistry
from .due import DueClassifier, DueLabel, UpcomingPayment, UpcomingPaymentsBoard
from .exceptions import InvalidLoanStateError
from .locking import LoanLockRegistry
from .logging_config import get_logger, log_action
from .models import Loan, LoanStatus, Payment, as_decimal
from .reconciliation import PaymentReconciler, ReconcileSweeper
from .reporting import PortfolioReporter
from .schedule import ScheduleTracker
from .status import LoanStatusMachine, coerce_status
from .storage import StorageInterface, as_utc, create_storage
from .stores import LoanStore, PaymentStore


class LoanManager:
    """
    Manages the loan lifecycle from application through closure
    """

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[MicrofinanceConfig] = None,
        audit_trail: Optional[AuditTrail] = None,
        lock_registry: Optional[LoanLockRegistry] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.audit_trail = audit_trail or AuditTrail(
            storage, enabled=self.config.enable_audit_logging
        )
        self.lock_registry = lock_registry or LoanLockRegistry(self.config.lock_timeout_seconds)
        self.logger = get_logger("microfinance.loans")

        self.loan_store = LoanStore(storage)
        self.payment_store = PaymentStore(storage)
        self.plans = LoanPlanRegistry(storage, self.loan_store, self.audit_trail, self.lock_registry)
        self.borrowers = BorrowerRegistry(storage, self.loan_store, self.audit_trail)

        self.schedule_tracker = ScheduleTracker()
        self.status_machine = LoanStatusMachine(self.schedule_tracker)
        self.reconciler = PaymentReconciler(
            storage,
            self.loan_store,
            self.payment_store,
            status_machine=self.status_machine,
            lock_registry=self.lock_registry,
            audit_trail=self.audit_trail
        )
        self.reporter = PortfolioReporter(self.loan_store, self.payment_store, self.borrowers)

    @classmethod
    def from_config(cls, config: Optional[MicrofinanceConfig] = None) -> 'LoanManager':
        """Build a manager on the storage named by ``config.database_url``"""
        config = config or get_config()
        return cls(create_storage(config.database_url), config=config)

    def _new_ref_no(self) -> str:
        while True:
            ref_no = f"{self.config.ref_no_prefix}{uuid.uuid4().hex[:12].upper()}"
            if self.loan_store.find_by_ref_no(ref_no) is None:
                return ref_no

    # Loans

    def create_loan(
        self,
        borrower_id: str,
        plan_id: str,
        amount: Any,
        purpose: Optional[str] = None,
        loan_type_id: Optional[str] = None
    ) -> Loan:
        """
        Create a PENDING loan, snapshotting the plan's rate and term.

        Args:
            borrower_id: Existing borrower
            plan_id: Loan plan whose months/interest are frozen into the loan
            amount: Principal, must be positive
            purpose: Free-text purpose of the loan
            loan_type_id: Opaque loan type reference

        Returns:
            Created Loan

        Raises:
            NotFoundError: for an unknown borrower or plan
            InvalidInputError: for a non-positive amount
        """
        self.borrowers.require(borrower_id)
        plan = self.plans.require(plan_id)
        summary = AmortizationCalculator.compute(amount, plan.interest_percentage, plan.months)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            ref_no=self._new_ref_no(),
            borrower_id=borrower_id,
            plan_id=plan.id,
            amount=summary.amount,
            rate=plan.interest_percentage,
            term=plan.months,
            loan_type_id=loan_type_id,
            purpose=purpose
        )

        with self.storage.atomic():
            self.loan_store.create(loan)
            self._audit(AuditEventType.LOAN_CREATED, loan, {
                "ref_no": loan.ref_no,
                "borrower_id": borrower_id,
                "plan_id": plan.id,
                "amount": loan.amount,
                "rate": loan.rate,
                "term": loan.term,
                "total_payable": summary.total_payable
            })

        log_action(
            self.logger, "info", f"Loan {loan.ref_no} created",
            action="create_loan", resource=f"loan:{loan.id}",
            extra={"amount": str(loan.amount), "rate": str(loan.rate), "term": loan.term}
        )
        return loan

    def update_loan(
        self,
        loan_id: str,
        borrower_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        amount: Any = None,
        purpose: Optional[str] = None,
        loan_type_id: Optional[str] = None
    ) -> Loan:
        """
        Edit a loan that is still PENDING. Choosing another plan re-snapshots
        rate and term.

        Raises:
            InvalidLoanStateError: once the loan has left PENDING
        """
        with self.lock_registry.hold(loan_id):
            loan = self.loan_store.require(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidLoanStateError(
                    f"Only pending loans can be edited, loan {loan.ref_no} is {loan.status.value}"
                )

            changes: Dict[str, Any] = {}
            if borrower_id is not None and borrower_id != loan.borrower_id:
                self.borrowers.require(borrower_id)
                changes["borrower_id"] = borrower_id
            if plan_id is not None and plan_id != loan.plan_id:
                plan = self.plans.require(plan_id)
                changes["plan_id"] = plan.id
                changes["rate"] = plan.interest_percentage
                changes["term"] = plan.months
            if amount is not None:
                changes["amount"] = as_decimal(amount, "amount")
            if purpose is not None:
                changes["purpose"] = purpose
            if loan_type_id is not None:
                changes["loan_type_id"] = loan_type_id

            AmortizationCalculator.compute(
                changes.get("amount", loan.amount),
                changes.get("rate", loan.rate),
                changes.get("term", loan.term)
            )
            if not changes:
                return loan

            with self.storage.atomic():
                loan = self.loan_store.update(loan_id, changes)
                self._audit(AuditEventType.LOAN_UPDATED, loan, changes)

        log_action(
            self.logger, "info", f"Loan {loan.ref_no} updated",
            action="update_loan", resource=f"loan:{loan.id}",
            extra={"fields": sorted(changes)}
        )
        return loan

    def delete_loan(self, loan_id: str) -> None:
        """
        Delete a loan that has no payments on record.

        Raises:
            InvalidLoanStateError: if payments exist for the loan
        """
        with self.lock_registry.hold(loan_id):
            loan = self.loan_store.require(loan_id)
            if self.payment_store.list_by_loan(loan_id):
                raise InvalidLoanStateError(
                    f"Loan {loan.ref_no} has payments on record and cannot be deleted"
                )
            with self.storage.atomic():
                self.loan_store.delete(loan_id)
                self._audit(AuditEventType.LOAN_DELETED, loan, {
                    "ref_no": loan.ref_no,
                    "status": loan.status
                })
        self.lock_registry.discard(loan_id)

        log_action(
            self.logger, "info", f"Loan {loan.ref_no} deleted",
            action="delete_loan", resource=f"loan:{loan_id}"
        )

    def get_loan(self, loan_id: str) -> Loan:
        return self.loan_store.require(loan_id)

    def list_loans(self, status: Optional[Union[LoanStatus, str]] = None,
                   borrower_id: Optional[str] = None) -> List[Loan]:
        filters: Dict[str, Any] = {}
        if status is not None:
            filters["status"] = coerce_status(status)
        if borrower_id is not None:
            filters["borrower_id"] = borrower_id
        return self.loan_store.list(filters)

    def transition_status(
        self,
        loan_id: str,
        target_status: Union[LoanStatus, str],
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Move a loan along an external status edge.

        Args:
            loan_id: Loan to move
            target_status: APPROVED, REJECTED, RELEASED or PENDING
            now: Release timestamp when releasing (defaults to now)

        Raises:
            InvalidTransitionError: for an illegal edge or a CLOSED target
        """
        if isinstance(now, datetime):
            now = as_utc(now)

        # Lock order: loan, then its plan, then the storage transaction
        with self.lock_registry.hold(loan_id):
            loan = self.loan_store.require(loan_id)
            previous = loan.status

            with self.plans.hold(loan.plan_id):
                self.status_machine.transition(loan, target_status, now=now)
                with self.storage.atomic():
                    self.loan_store.save(loan)
                    self._audit(AuditEventType.LOAN_STATUS_CHANGED, loan, {
                        "from": previous,
                        "to": loan.status,
                        "date_released": loan.date_released,
                        "first_payment_date": loan.first_payment_date
                    })

        log_action(
            self.logger, "info",
            f"Loan {loan.ref_no} moved from {previous.value} to {loan.status.value}",
            action="transition_status", resource=f"loan:{loan.id}",
            extra={"from": previous.value, "to": loan.status.value}
        )
        return loan

    # Payments

    def add_payment(
        self,
        loan_id: str,
        payee: str,
        amount: Any,
        penalty_amount: Any = Decimal('0'),
        now: Optional[datetime] = None
    ) -> Tuple[Loan, Payment]:
        """
        Record a payment against a released loan; the schedule advances by
        one day and the loan closes once fully paid.

        Returns:
            Tuple of (updated loan, stored payment)
        """
        now = as_utc(now) if now else datetime.now(timezone.utc)
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            payee=payee,
            amount=amount,
            penalty_amount=penalty_amount
        )
        loan, payment = self.reconciler.apply_payment(loan_id, payment)

        if self.config.reconcile_after_payment:
            self.reconciler.reconcile_all(now)
        return loan, payment

    def edit_payment(
        self,
        payment_id: str,
        payee: Optional[str] = None,
        amount: Any = None,
        penalty_amount: Any = None
    ) -> Payment:
        _, payment = self.reconciler.revise_payment(
            payment_id, payee=payee, amount=amount, penalty_amount=penalty_amount
        )
        return payment

    def delete_payment(self, payment_id: str) -> Loan:
        """Reverse a payment; returns the loan with its schedule moved back"""
        return self.reconciler.reverse_payment(payment_id)

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        self.loan_store.require(loan_id)
        return self.payment_store.list_by_loan(loan_id)

    # Schedule and collections

    def get_schedule_summary(self, loan_id: str) -> Dict[str, Any]:
        """
        Repayment figures and schedule position of a loan

        Returns:
            Dictionary with total_payable, daily_payment, monthly_payment,
            next_payment_date, due_date, paid_days, remaining_days,
            total_paid, pending_balance and status
        """
        loan = self.loan_store.require(loan_id)
        summary = AmortizationCalculator.summary_for(loan)
        total_paid = self.payment_store.total_paid(loan_id)
        return {
            "loan_id": loan.id,
            "ref_no": loan.ref_no,
            "status": loan.status,
            "total_interest": summary.total_interest,
            "total_payable": summary.total_payable,
            "daily_payment": summary.daily_payment,
            "monthly_payment": summary.monthly_payment,
            "total_days": summary.total_days,
            "next_payment_date": loan.next_payment_date,
            "due_date": self.schedule_tracker.due_date(loan),
            "paid_days": loan.paid_days,
            "remaining_days": self.schedule_tracker.remaining_days(loan),
            "total_paid": total_paid,
            "pending_balance": summary.pending_balance(total_paid)
        }

    def classify_due(self, loan_id: str, now: Union[date, datetime]) -> DueLabel:
        return DueClassifier.classify(self.loan_store.require(loan_id), now)

    def upcoming_board(self, now: Union[date, datetime]) -> UpcomingPaymentsBoard:
        return UpcomingPaymentsBoard.build(
            self.loan_store.list({"status": LoanStatus.RELEASED}),
            self.borrowers.as_lookup(),
            now,
            schedule_tracker=self.schedule_tracker
        )

    def upcoming_payments(
        self,
        now: Union[date, datetime],
        label: Optional[DueLabel] = None,
        search: Optional[str] = None
    ) -> List[UpcomingPayment]:
        """Released loans ranked for collection, optionally filtered"""
        return self.upcoming_board(now).filter(label=label, search=search)

    def reconcile_all(self, now: Optional[datetime] = None) -> List[str]:
        return self.reconciler.reconcile_all(now)

    def create_sweeper(self) -> ReconcileSweeper:
        """Background sweeper running reconcile_all on the configured interval"""
        return ReconcileSweeper(self.reconciler, self.config.reconcile_interval_seconds)

    def _audit(self, event_type: AuditEventType, loan: Loan, metadata: dict) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata=metadata
            )
