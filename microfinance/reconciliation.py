"""
Payment Reconciliation Module

The only entry point that mutates a loan in response to a payment event.
Each operation runs under the loan's lock and inside one storage transaction:
the payment row, the schedule move, any status change and the audit events
are committed together or not at all.

A released loan closes when either of two criteria holds:

* paid_days >= total_days (every scheduled day has a payment), or
* total_paid >= total_payable (amount + penalty over all payments covers
  principal plus flat interest).
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional, Tuple
import threading

from .amortization import AmortizationCalculator
from .audit import AuditTrail, AuditEventType
from .exceptions import ConcurrencyConflictError, InvalidInputError, InvalidLoanStateError
from .locking import LoanLockRegistry
from .logging_config import get_logger, log_action
from .models import Loan, LoanStatus, Payment
from .status import LoanStatusMachine
from .storage import StorageInterface, as_utc
from .stores import LoanStore, PaymentStore


@dataclass(frozen=True)
class ClosureCheck:
    """Outcome of comparing a loan's ledger against its schedule"""
    paid_days: int
    total_days: int
    total_paid: Decimal
    total_payable: Decimal

    @property
    def by_days(self) -> bool:
        return self.paid_days >= self.total_days

    @property
    def by_amount(self) -> bool:
        return self.total_paid >= self.total_payable

    @property
    def satisfied(self) -> bool:
        return self.by_days or self.by_amount

    @property
    def reasons(self) -> List[str]:
        reasons = []
        if self.by_days:
            reasons.append("paid_days")
        if self.by_amount:
            reasons.append("total_paid")
        return reasons


class PaymentReconciler:
    """Applies, revises and reverses payments and decides loan closure"""

    def __init__(
        self,
        storage: StorageInterface,
        loan_store: LoanStore,
        payment_store: PaymentStore,
        status_machine: Optional[LoanStatusMachine] = None,
        lock_registry: Optional[LoanLockRegistry] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.loan_store = loan_store
        self.payment_store = payment_store
        self.status_machine = status_machine or LoanStatusMachine()
        self.schedule_tracker = self.status_machine.schedule_tracker
        self.lock_registry = lock_registry or LoanLockRegistry()
        self.audit_trail = audit_trail
        self.last_skipped: List[str] = []
        self.logger = get_logger("microfinance.reconciliation")

    def evaluate_closure(self, loan: Loan) -> ClosureCheck:
        """Recompute total paid from the payment store and test both criteria"""
        summary = AmortizationCalculator.summary_for(loan)
        return ClosureCheck(
            paid_days=loan.paid_days,
            total_days=summary.total_days,
            total_paid=self.payment_store.total_paid(loan.id),
            total_payable=summary.total_payable
        )

    def apply_payment(self, loan_id: str, payment: Payment) -> Tuple[Loan, Payment]:
        """
        Record a payment against a released loan.

        Args:
            loan_id: Loan receiving the payment
            payment: Unsaved payment record for that loan

        Returns:
            Tuple of (updated loan, stored payment)

        Raises:
            InvalidLoanStateError: if the loan is not released
            ConcurrencyConflictError: if the loan lock is not acquired in time
        """
        if payment.loan_id != loan_id:
            raise InvalidInputError(f"Payment {payment.id} belongs to loan {payment.loan_id}, not {loan_id}")

        with self.lock_registry.hold(loan_id):
            loan = self.loan_store.require(loan_id)
            if loan.status != LoanStatus.RELEASED:
                raise InvalidLoanStateError(
                    f"Payments can only be recorded against released loans, "
                    f"loan {loan.ref_no} is {loan.status.value}"
                )

            with self.storage.atomic():
                self.payment_store.create(payment)
                self.schedule_tracker.advance(loan)
                check = self._close_if_satisfied(loan)
                self.loan_store.save(loan)
                self._audit(AuditEventType.PAYMENT_RECORDED, loan, {
                    "payment_id": payment.id,
                    "payee": payment.payee,
                    "amount": payment.amount,
                    "penalty_amount": payment.penalty_amount,
                    "paid_days": loan.paid_days,
                    "next_payment_date": loan.next_payment_date,
                    "total_paid": check.total_paid
                })

        log_action(
            self.logger, "info", f"Payment recorded for loan {loan.ref_no}",
            action="apply_payment", resource=f"loan:{loan.id}",
            extra={
                "payment_id": payment.id,
                "amount": str(payment.amount),
                "penalty_amount": str(payment.penalty_amount),
                "paid_days": loan.paid_days,
                "status": loan.status.value
            }
        )
        return loan, payment

    def reverse_payment(self, payment_id: str) -> Loan:
        """
        Delete a payment and move the schedule back one day. A closed loan
        returns to released.

        Raises:
            NotFoundError: for an unknown payment
            ScheduleNotInitializedError: if the loan no longer has a schedule
        """
        loan_id = self.payment_store.require(payment_id).loan_id

        with self.lock_registry.hold(loan_id):
            payment = self.payment_store.require(payment_id)
            loan = self.loan_store.require(payment.loan_id)
            was_closed = loan.status == LoanStatus.CLOSED

            with self.storage.atomic():
                self.payment_store.delete(payment_id)
                self.schedule_tracker.retreat(loan)
                if was_closed:
                    self.status_machine.reopen(loan)
                self.loan_store.save(loan)
                self._audit(AuditEventType.PAYMENT_REVERSED, loan, {
                    "payment_id": payment.id,
                    "amount": payment.amount,
                    "penalty_amount": payment.penalty_amount,
                    "paid_days": loan.paid_days,
                    "next_payment_date": loan.next_payment_date
                })
                if was_closed:
                    self._audit(AuditEventType.LOAN_REOPENED, loan, {"payment_id": payment.id})

        log_action(
            self.logger, "info", f"Payment reversed for loan {loan.ref_no}",
            action="reverse_payment", resource=f"loan:{loan.id}",
            extra={"payment_id": payment_id, "paid_days": loan.paid_days,
                   "reopened": was_closed}
        )
        return loan

    def revise_payment(
        self,
        payment_id: str,
        payee: Optional[str] = None,
        amount: Any = None,
        penalty_amount: Any = None
    ) -> Tuple[Loan, Payment]:
        """
        Edit a payment's payee, amount or penalty and re-evaluate closure in
        both directions. The schedule does not move: it counts payments, not
        their size.
        """
        loan_id = self.payment_store.require(payment_id).loan_id

        with self.lock_registry.hold(loan_id):
            current = self.payment_store.require(payment_id)
            loan = self.loan_store.require(current.loan_id)

            revised = Payment(
                id=current.id,
                created_at=current.created_at,
                updated_at=current.updated_at,
                loan_id=current.loan_id,
                payee=current.payee if payee is None else payee,
                amount=current.amount if amount is None else amount,
                penalty_amount=current.penalty_amount if penalty_amount is None else penalty_amount
            )

            with self.storage.atomic():
                self.payment_store.save(revised)
                check = self.evaluate_closure(loan)
                if loan.status == LoanStatus.RELEASED and check.satisfied:
                    self.status_machine.close(loan)
                    self._audit(AuditEventType.LOAN_CLOSED, loan, self._closure_metadata(check))
                elif loan.status == LoanStatus.CLOSED and not check.satisfied:
                    self.status_machine.reopen(loan)
                    self._audit(AuditEventType.LOAN_REOPENED, loan, {"payment_id": revised.id})
                self.loan_store.save(loan)
                self._audit(AuditEventType.PAYMENT_REVISED, loan, {
                    "payment_id": revised.id,
                    "previous": {
                        "payee": current.payee,
                        "amount": current.amount,
                        "penalty_amount": current.penalty_amount
                    },
                    "payee": revised.payee,
                    "amount": revised.amount,
                    "penalty_amount": revised.penalty_amount
                })

        log_action(
            self.logger, "info", f"Payment revised for loan {loan.ref_no}",
            action="revise_payment", resource=f"loan:{loan.id}",
            extra={"payment_id": payment_id, "status": loan.status.value}
        )
        return loan, revised

    def reconcile_all(self, now: Optional[datetime] = None) -> List[str]:
        """
        Close every released loan whose ledger already satisfies a closure
        criterion, without recording a new payment.

        A loan whose lock is busy is skipped and left for the next run; the
        ids skipped by the latest run are kept in ``last_skipped``.

        Returns:
            Ids of the loans closed by this run
        """
        now = as_utc(now) if now else datetime.now(timezone.utc)
        closed: List[str] = []
        skipped: List[str] = []

        for candidate in self.loan_store.list({"status": LoanStatus.RELEASED}):
            try:
                if self._sweep_loan(candidate.id, now):
                    closed.append(candidate.id)
            except ConcurrencyConflictError:
                skipped.append(candidate.id)

        self.last_skipped = skipped
        if skipped:
            log_action(
                self.logger, "warning", f"Reconciliation skipped {len(skipped)} busy loan(s)",
                action="reconcile_all", extra={"skipped": skipped, "run_at": now.isoformat()}
            )
        log_action(
            self.logger, "info", f"Reconciliation closed {len(closed)} loan(s)",
            action="reconcile_all", extra={"closed": closed, "run_at": now.isoformat()}
        )
        return closed

    def _sweep_loan(self, loan_id: str, now: datetime) -> bool:
        """Close one released loan if its ledger satisfies closure"""
        with self.lock_registry.hold(loan_id):
            loan = self.loan_store.get(loan_id)
            if loan is None or loan.status != LoanStatus.RELEASED:
                return False
            check = self.evaluate_closure(loan)
            if not check.satisfied:
                return False
            with self.storage.atomic():
                self.status_machine.close(loan)
                self.loan_store.save(loan)
                metadata = self._closure_metadata(check)
                metadata["swept_at"] = now
                self._audit(AuditEventType.LOAN_CLOSED, loan, metadata)
        return True

    def _close_if_satisfied(self, loan: Loan) -> ClosureCheck:
        check = self.evaluate_closure(loan)
        if check.satisfied and loan.status == LoanStatus.RELEASED:
            self.status_machine.close(loan)
            self._audit(AuditEventType.LOAN_CLOSED, loan, self._closure_metadata(check))
            log_action(
                self.logger, "info", f"Loan {loan.ref_no} closed",
                action="close_loan", resource=f"loan:{loan.id}",
                extra={"reasons": check.reasons}
            )
        return check

    def _closure_metadata(self, check: ClosureCheck) -> dict:
        return {
            "reasons": check.reasons,
            "paid_days": check.paid_days,
            "total_days": check.total_days,
            "total_paid": check.total_paid,
            "total_payable": check.total_payable
        }

    def _audit(self, event_type: AuditEventType, loan: Loan, metadata: dict) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata=metadata
            )


class ReconcileSweeper:
    """
    Background thread that runs reconcile_all on a fixed interval, closing
    fully paid loans that no new payment touched.
    """

    def __init__(self, reconciler: PaymentReconciler, interval_seconds: float = 60.0):
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self.logger = get_logger("microfinance.sweeper")
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> List[str]:
        return self.reconciler.reconcile_all()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                # Keep sweeping; the next tick retries every loan
                self.logger.exception("Reconciliation sweep failed")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="reconcile-sweeper")
        self._thread.daemon = True
        self._thread.start()
        self.logger.info(f"Reconcile sweeper started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.logger.info("Reconcile sweeper stopped")
