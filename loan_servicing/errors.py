"""
Error Taxonomy Module

Every failure a caller of the servicing engine can observe maps to exactly one
of these types: rejected input, unknown entity, exhausted concurrency retries,
or a transient store failure. Collaborator failures never reach the caller.
"""


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors"""


class ValidationError(LoanServicingError):
    """Invalid amounts or arguments, rejected before anything is persisted"""


class InvalidTermsError(ValidationError):
    """Loan terms that cannot produce an amortization schedule"""


class NotFoundError(LoanServicingError):
    """Unknown loan, schedule, payment or reconciliation task"""


class ConcurrencyConflictError(LoanServicingError):
    """
    Optimistic-lock violation on a contended loan.

    Raised by storage when a versioned write loses the race, and surfaced to
    callers once the bounded retry budget is spent.
    """

    def __init__(self, message: str, table: str = "", record_id: str = ""):
        super().__init__(message)
        self.table = table
        self.record_id = record_id


class PersistenceFailureError(LoanServicingError):
    """Store unavailable or write rejected; the operation is safe to retry"""


class CollaboratorFailureError(LoanServicingError):
    """Audit sink or notification dispatcher failed"""
