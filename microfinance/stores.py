"""
Loan and Payment Stores

Typed record stores over a StorageInterface. These are the only classes that
touch the ``loans`` and ``payments`` tables; everything above them works with
Loan and Payment objects.
"""

from dataclasses import fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import InvalidInputError, NotFoundError
from .models import Loan, Payment
from .storage import StorageInterface


def _filter_value(value: Any) -> Any:
    """Match the serialized representation of a field value"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    return value


class LoanStore:
    """Persistence for Loan records"""

    def __init__(self, storage: StorageInterface, table_name: str = "loans"):
        self.storage = storage
        self.table_name = table_name
        self._fields = {f.name for f in fields(Loan)}

    def get(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.table_name, loan_id)
        return Loan.from_dict(data) if data else None

    def require(self, loan_id: str) -> Loan:
        loan = self.get(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[Loan]:
        """Loans matching field filters, oldest first"""
        query = {key: _filter_value(value) for key, value in (filters or {}).items()}
        loans = [Loan.from_dict(data) for data in self.storage.find(self.table_name, query)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def find_by_ref_no(self, ref_no: str) -> Optional[Loan]:
        matches = self.list({"ref_no": ref_no})
        return matches[0] if matches else None

    def create(self, loan: Loan) -> Loan:
        if self.storage.exists(self.table_name, loan.id):
            raise InvalidInputError(f"Loan {loan.id} already exists")
        self.storage.save(self.table_name, loan.id, loan.to_dict())
        return loan

    def save(self, loan: Loan) -> Loan:
        """Write the full loan record, stamping updated_at"""
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, loan.id, loan.to_dict())
        return loan

    def update(self, loan_id: str, patch: Dict[str, Any]) -> Loan:
        """Apply a partial update to named loan fields"""
        rejected = set(patch) - (self._fields - {"id", "created_at"})
        if rejected:
            raise InvalidInputError(f"Cannot update loan fields: {sorted(rejected)}")
        loan = self.require(loan_id)
        for key, value in patch.items():
            setattr(loan, key, value)
        return self.save(loan)

    def delete(self, loan_id: str) -> bool:
        return self.storage.delete(self.table_name, loan_id)


class PaymentStore:
    """Persistence for Payment records"""

    def __init__(self, storage: StorageInterface, table_name: str = "payments"):
        self.storage = storage
        self.table_name = table_name

    def get(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.table_name, payment_id)
        return Payment.from_dict(data) if data else None

    def require(self, payment_id: str) -> Payment:
        payment = self.get(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def create(self, payment: Payment) -> Payment:
        if self.storage.exists(self.table_name, payment.id):
            raise InvalidInputError(f"Payment {payment.id} already exists")
        self.storage.save(self.table_name, payment.id, payment.to_dict())
        return payment

    def save(self, payment: Payment) -> Payment:
        payment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, payment.id, payment.to_dict())
        return payment

    def delete(self, payment_id: str) -> bool:
        return self.storage.delete(self.table_name, payment_id)

    def list_by_loan(self, loan_id: str) -> List[Payment]:
        """Payments for one loan in the order they were recorded"""
        payments = [
            Payment.from_dict(data)
            for data in self.storage.find(self.table_name, {"loan_id": loan_id})
        ]
        payments.sort(key=lambda payment: payment.created_at)
        return payments

    def list_all(self) -> List[Payment]:
        payments = [Payment.from_dict(data) for data in self.storage.load_all(self.table_name)]
        payments.sort(key=lambda payment: payment.created_at)
        return payments

    def total_paid(self, loan_id: str) -> Decimal:
        """Sum of amount + penalty over every payment recorded for the loan"""
        return sum((payment.total for payment in self.list_by_loan(loan_id)), Decimal('0'))
