"""
Plan and Borrower Directory

Read-mostly reference records the loan core looks up: loan plans (snapshotted
into loans at creation) and borrowers (used to decorate schedule output).
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, ContextManager, Dict, List, Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .exceptions import InvalidInputError, NotFoundError, PlanLockedError
from .locking import LoanLockRegistry
from .models import Borrower, LoanPlan, LoanStatus
from .storage import StorageInterface
from .stores import LoanStore


class LoanPlanRegistry:
    """
    Loan plans. A plan referenced by a released or closed loan is frozen;
    loans keep their own rate/term snapshot either way.

    Edits and deletes hold the plan's lock, which a loan also holds while it
    is being released, so the frozen check cannot race a release.
    """

    def __init__(self, storage: StorageInterface, loan_store: LoanStore,
                 audit_trail: Optional[AuditTrail] = None,
                 lock_registry: Optional[LoanLockRegistry] = None):
        self.storage = storage
        self.loan_store = loan_store
        self.audit_trail = audit_trail
        self.lock_registry = lock_registry or LoanLockRegistry()
        self.table_name = "loan_plans"

    def hold(self, plan_id: str) -> ContextManager[None]:
        """Hold the plan's lock; raises ConcurrencyConflictError on timeout"""
        return self.lock_registry.hold(f"plan:{plan_id}")

    def create_plan(self, months: int, interest_percentage: Any,
                    penalty_rate: Any = Decimal('0')) -> LoanPlan:
        now = datetime.now(timezone.utc)
        plan = LoanPlan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            months=months,
            interest_percentage=interest_percentage,
            penalty_rate=penalty_rate
        )
        with self.storage.atomic():
            self.storage.save(self.table_name, plan.id, plan.to_dict())
            self._audit(AuditEventType.PLAN_CREATED, plan)
        return plan

    def get(self, plan_id: str) -> Optional[LoanPlan]:
        data = self.storage.load(self.table_name, plan_id)
        return LoanPlan.from_dict(data) if data else None

    def require(self, plan_id: str) -> LoanPlan:
        plan = self.get(plan_id)
        if plan is None:
            raise NotFoundError(f"Loan plan {plan_id} not found")
        return plan

    def list(self) -> List[LoanPlan]:
        plans = [LoanPlan.from_dict(data) for data in self.storage.load_all(self.table_name)]
        plans.sort(key=lambda plan: (plan.months, plan.interest_percentage))
        return plans

    def is_locked(self, plan_id: str) -> bool:
        """True once any released or closed loan references the plan"""
        return any(
            loan.status in (LoanStatus.RELEASED, LoanStatus.CLOSED)
            for loan in self.loan_store.list({"plan_id": plan_id})
        )

    def update_plan(self, plan_id: str, months: Optional[int] = None,
                    interest_percentage: Any = None, penalty_rate: Any = None) -> LoanPlan:
        with self.hold(plan_id):
            plan = self.require(plan_id)
            if self.is_locked(plan_id):
                raise PlanLockedError(f"Loan plan {plan_id} is referenced by a released loan")

            updated = LoanPlan(
                id=plan.id,
                created_at=plan.created_at,
                updated_at=datetime.now(timezone.utc),
                months=plan.months if months is None else months,
                interest_percentage=(
                    plan.interest_percentage if interest_percentage is None else interest_percentage
                ),
                penalty_rate=plan.penalty_rate if penalty_rate is None else penalty_rate
            )
            with self.storage.atomic():
                self.storage.save(self.table_name, updated.id, updated.to_dict())
                self._audit(AuditEventType.PLAN_UPDATED, updated)
        return updated

    def delete_plan(self, plan_id: str) -> None:
        with self.hold(plan_id):
            plan = self.require(plan_id)
            if self.loan_store.list({"plan_id": plan_id}):
                raise PlanLockedError(f"Loan plan {plan_id} is referenced by existing loans")
            with self.storage.atomic():
                self.storage.delete(self.table_name, plan_id)
                self._audit(AuditEventType.PLAN_DELETED, plan)

    def _audit(self, event_type: AuditEventType, plan: LoanPlan) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="plan",
                entity_id=plan.id,
                metadata={
                    "months": plan.months,
                    "interest_percentage": plan.interest_percentage,
                    "penalty_rate": plan.penalty_rate
                }
            )


class BorrowerRegistry:
    """Borrower records"""

    _editable = ("firstname", "lastname", "id_no", "contact_no", "address", "email")

    def __init__(self, storage: StorageInterface, loan_store: LoanStore,
                 audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.loan_store = loan_store
        self.audit_trail = audit_trail
        self.table_name = "borrowers"

    def create_borrower(self, firstname: str, lastname: str, id_no: str = "",
                        contact_no: Optional[str] = None, address: Optional[str] = None,
                        email: Optional[str] = None) -> Borrower:
        if not firstname or not lastname:
            raise InvalidInputError("Borrower first and last name are required")
        now = datetime.now(timezone.utc)
        borrower = Borrower(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            firstname=firstname,
            lastname=lastname,
            id_no=id_no,
            contact_no=contact_no,
            address=address,
            email=email
        )
        with self.storage.atomic():
            self.storage.save(self.table_name, borrower.id, borrower.to_dict())
            self._audit(AuditEventType.BORROWER_CREATED, borrower)
        return borrower

    def get(self, borrower_id: str) -> Optional[Borrower]:
        data = self.storage.load(self.table_name, borrower_id)
        return Borrower.from_dict(data) if data else None

    def require(self, borrower_id: str) -> Borrower:
        borrower = self.get(borrower_id)
        if borrower is None:
            raise NotFoundError(f"Borrower {borrower_id} not found")
        return borrower

    def list(self) -> List[Borrower]:
        borrowers = [Borrower.from_dict(data) for data in self.storage.load_all(self.table_name)]
        borrowers.sort(key=lambda b: (b.lastname.lower(), b.firstname.lower()))
        return borrowers

    def as_lookup(self) -> Dict[str, Borrower]:
        return {borrower.id: borrower for borrower in self.list()}

    def update_borrower(self, borrower_id: str, **changes: Any) -> Borrower:
        unknown = set(changes) - set(self._editable)
        if unknown:
            raise InvalidInputError(f"Cannot update borrower fields: {sorted(unknown)}")
        borrower = self.require(borrower_id)
        for key, value in changes.items():
            setattr(borrower, key, value)
        borrower.updated_at = datetime.now(timezone.utc)
        with self.storage.atomic():
            self.storage.save(self.table_name, borrower.id, borrower.to_dict())
            self._audit(AuditEventType.BORROWER_UPDATED, borrower)
        return borrower

    def delete_borrower(self, borrower_id: str) -> None:
        borrower = self.require(borrower_id)
        if self.loan_store.list({"borrower_id": borrower_id}):
            raise InvalidInputError(f"Borrower {borrower_id} still has loans on record")
        with self.storage.atomic():
            self.storage.delete(self.table_name, borrower_id)
            self._audit(AuditEventType.BORROWER_DELETED, borrower)

    def _audit(self, event_type: AuditEventType, borrower: Borrower) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="borrower",
                entity_id=borrower.id,
                metadata={"name": borrower.display_name, "id_no": borrower.id_no}
            )
