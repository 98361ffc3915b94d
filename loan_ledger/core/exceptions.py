"""Exception hierarchy for the balance ledger."""


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    status_code = 500


class LedgerValidationError(LedgerError):
    """Raised when input is rejected before any transaction begins."""

    status_code = 400


class NotFoundError(LedgerError):
    """Raised when a referenced loan or payment does not exist."""

    status_code = 404


class ConflictError(LedgerError):
    """Raised on lock timeout or concurrent modification; safe to retry."""

    status_code = 409


class InvariantViolationError(LedgerError):
    """Raised when a persisted balance disagrees with its payment history."""

    status_code = 500

    def __init__(self, message: str, loan_id=None, persisted=None, expected=None):
        super().__init__(message)
        self.loan_id = loan_id
        self.persisted = persisted
        self.expected = expected
