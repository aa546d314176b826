"""Exception hierarchy for the loan ledger."""


class LoanLedgerError(Exception):
    """Base exception for all loan ledger errors."""


class ValidationError(LoanLedgerError, ValueError):
    """Raised when input is malformed or out of range. Never partially applied."""


class ConflictError(LoanLedgerError):
    """Raised when a write would violate a global invariant (e.g. duplicate open loan)."""


class InvalidStateError(LoanLedgerError):
    """Raised when an operation is not valid for the entity's lifecycle state."""


class NotFoundError(LoanLedgerError):
    """Raised when a referenced loan, customer or transaction does not exist."""


class ConcurrencyConflictError(LoanLedgerError):
    """Raised when an optimistic write lost a race. Safe to retry."""


class PersistenceError(LoanLedgerError):
    """Raised when the underlying store fails. Not retried by the core."""


class DuplicateRecordError(LoanLedgerError):
    """Raised by storage backends when an insert hits an existing id."""
