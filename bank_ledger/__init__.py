"""
Bank Ledger

Account, vault and loan bookkeeping over a single authoritative store, with
Decimal money, an append-only transaction log and recompute-each-cycle loan
amortization.
"""

__version__ = "1.0.0"

from .accounts import Account, AccountKind, AccountStore
from .calendars import Calendar, FixedCalendar, SystemCalendar
from .exceptions import (
    AlreadyExistsError, InadequateFundsError, InvalidAmountError, InvalidDateError,
    InvalidStateError, InvariantViolation, LedgerError, NotFoundError,
    OwnershipError, SameAccountError, StorageFailureError,
)
from .ledger import LedgerService
from .loans import Loan, LoanPayment, LoanState
from .money import Amount
from .storage import InMemoryStorage, PostgreSQLStorage, SQLiteStorage, create_storage
from .transactions import AccountTransaction, BankTransaction, BankTransactionKind
from .vaults import Vault, VaultStore

__all__ = [
    "Account", "AccountKind", "AccountStore", "AccountTransaction", "AlreadyExistsError",
    "Amount", "BankTransaction", "BankTransactionKind", "Calendar", "FixedCalendar",
    "InMemoryStorage", "InadequateFundsError", "InvalidAmountError", "InvalidDateError",
    "InvalidStateError", "InvariantViolation", "LedgerError", "LedgerService", "Loan",
    "LoanPayment", "LoanState", "NotFoundError", "OwnershipError", "PostgreSQLStorage",
    "SameAccountError", "SQLiteStorage", "StorageFailureError", "SystemCalendar", "Vault",
    "VaultStore",
    "create_storage",
]
