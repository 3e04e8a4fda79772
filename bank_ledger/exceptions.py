"""
Ledger Exception Hierarchy

Every error the ledger returns to a caller is a LedgerError subclass.
InvariantViolation is deliberately outside that hierarchy: it signals that
conservation has already been broken and must never be handled as a
business rejection.
"""


class LedgerError(Exception):
    """Base exception for all recoverable ledger errors."""


class NotFoundError(LedgerError):
    """Raised when an account, vault, loan or loan payment does not exist."""

    def __init__(self, entity_type: str, key: str):
        super().__init__(f"{entity_type} {key} not found")
        self.entity_type = entity_type
        self.key = key


class AlreadyExistsError(LedgerError):
    """Raised when an insert violates a uniqueness constraint."""


class InadequateFundsError(LedgerError):
    """Raised when a balance cannot cover a withdrawal, transfer or payment."""

    def __init__(self, message: str = "not enough funds in account"):
        super().__init__(message)


class InvalidDateError(LedgerError):
    """Raised when a computed due date falls after the loan's maturity date."""


class InvalidAmountError(LedgerError, ValueError):
    """Raised when an amount that must be positive is not."""


class InvalidStateError(LedgerError):
    """Raised when an entity is in the wrong lifecycle state for an operation."""


class OwnershipError(LedgerError):
    """Raised when an account does not belong to the expected owner."""


class SameAccountError(LedgerError):
    """Raised when a transfer names the same account as sender and receiver."""


class StorageFailureError(LedgerError):
    """Raised when the persistence layer fails; retry or escalate."""


class InvariantViolation(RuntimeError):
    """
    Fatal data-integrity error.

    Raised when a conservation invariant would be broken (for example a loan
    balance going negative). The unit of work is rolled back and the error
    propagates; it is never converted into a normal LedgerError.
    """
