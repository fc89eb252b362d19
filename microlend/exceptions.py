"""Typed error hierarchy for the lending ledger."""


class LedgerError(Exception):
    """Base exception for all ledger errors."""


class NotFoundError(LedgerError):
    """Raised when a loan, installment or borrower is absent or not owned by the caller."""


class InvalidStateError(LedgerError):
    """Raised when the current status forbids the requested action."""


class InvalidParametersError(LedgerError, ValueError):
    """Raised when loan terms or a payment amount fall outside the allowed range."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


class ConflictingIdentifierError(LedgerError):
    """Raised when a unique identifier could not be generated within the retry budget."""


class PersistenceError(LedgerError):
    """Raised when an atomic unit of work could not be committed."""
