"""Exception hierarchy for the loan core."""


class MicrofinanceError(Exception):
    """Base exception for all loan core errors."""


class InvalidInputError(MicrofinanceError, ValueError):
    """Raised for a bad amount, term, rate or other rejected input value."""


class InvalidTransitionError(MicrofinanceError, ValueError):
    """Raised when a loan status change is not a legal edge."""


class InvalidLoanStateError(MicrofinanceError, ValueError):
    """Raised when an operation needs the loan in a different status."""


class PlanLockedError(InvalidInputError):
    """Raised when editing a loan plan already referenced by a released loan."""


class ScheduleNotInitializedError(MicrofinanceError):
    """Raised when a schedule operation runs on a loan that was never released."""


class NotFoundError(MicrofinanceError, LookupError):
    """Raised when a loan, payment, plan or borrower id is unknown."""


class ConcurrencyConflictError(MicrofinanceError):
    """Raised when the per-loan lock cannot be acquired in time."""
