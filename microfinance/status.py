"""
Loan Status Machine Module

The legal loan status edges and the schedule side effects each one carries.

    PENDING  -> APPROVED | REJECTED
    APPROVED -> RELEASED             (starts the repayment schedule)
    RELEASED -> PENDING              (reverts the release, clears the schedule)
    RELEASED -> CLOSED               (reconciliation only)
    CLOSED   -> RELEASED             (reconciliation only, closure retracted)
    CLOSED   -> CLOSED               (reconciliation only, no-op)

Targets are LoanStatus members (or their names); legacy numeric codes are
never accepted.
"""

from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional, Union

from .exceptions import InvalidTransitionError
from .logging_config import get_logger
from .models import Loan, LoanStatus
from .schedule import ScheduleTracker


EXTERNAL_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING: frozenset({LoanStatus.APPROVED, LoanStatus.REJECTED}),
    LoanStatus.APPROVED: frozenset({LoanStatus.RELEASED}),
    LoanStatus.RELEASED: frozenset({LoanStatus.PENDING}),
    LoanStatus.REJECTED: frozenset(),
    LoanStatus.CLOSED: frozenset(),
}

SYSTEM_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.RELEASED: frozenset({LoanStatus.CLOSED}),
    LoanStatus.CLOSED: frozenset({LoanStatus.CLOSED, LoanStatus.RELEASED}),
}


def coerce_status(target: Union[LoanStatus, str]) -> LoanStatus:
    """Resolve a LoanStatus member or its name/value; anything else is rejected"""
    if isinstance(target, LoanStatus):
        return target
    if isinstance(target, str):
        key = target.strip()
        for status in LoanStatus:
            if key.lower() == status.value or key.upper() == status.name:
                return status
    raise InvalidTransitionError(f"Unknown loan status: {target!r}")


class LoanStatusMachine:
    """Validates status changes and applies their schedule side effects"""

    def __init__(self, schedule_tracker: Optional[ScheduleTracker] = None):
        self.schedule_tracker = schedule_tracker or ScheduleTracker()
        self.logger = get_logger("microfinance.status")

    def allowed_targets(self, current: LoanStatus, system: bool = False) -> FrozenSet[LoanStatus]:
        targets = EXTERNAL_TRANSITIONS.get(current, frozenset())
        if system:
            targets = targets | SYSTEM_TRANSITIONS.get(current, frozenset())
        return targets

    def can_transition(self, current: LoanStatus, target: Union[LoanStatus, str],
                       system: bool = False) -> bool:
        try:
            return coerce_status(target) in self.allowed_targets(current, system)
        except InvalidTransitionError:
            return False

    def transition(
        self,
        loan: Loan,
        target: Union[LoanStatus, str],
        now: Optional[datetime] = None,
        system: bool = False
    ) -> Loan:
        """
        Move a loan to a new status.

        Args:
            loan: Loan to update in place
            target: Requested status
            now: Release timestamp when moving into RELEASED (defaults to now)
            system: True only for reconciliation-driven changes (close/reopen)

        Returns:
            The same loan object, updated

        Raises:
            InvalidTransitionError: when the edge is not allowed for the caller
        """
        target = coerce_status(target)
        current = loan.status

        if system and current == LoanStatus.CLOSED and target == LoanStatus.CLOSED:
            return loan

        if target not in self.allowed_targets(current, system):
            raise InvalidTransitionError(
                f"Cannot move loan {loan.ref_no} from {current.value} to {target.value}"
            )

        if current == LoanStatus.APPROVED and target == LoanStatus.RELEASED:
            self.schedule_tracker.initialize(loan, now or datetime.now(timezone.utc))
        elif current == LoanStatus.RELEASED and target == LoanStatus.PENDING:
            self.schedule_tracker.reset(loan)

        loan.status = target
        self.logger.debug(f"Loan {loan.id} moved from {current.value} to {target.value}")
        return loan

    def close(self, loan: Loan) -> Loan:
        return self.transition(loan, LoanStatus.CLOSED, system=True)

    def reopen(self, loan: Loan) -> Loan:
        return self.transition(loan, LoanStatus.RELEASED, system=True)
