"""
Account Store Module

User-held accounts. Balances change only through ``transact`` (and its
``increment``/``decrement`` wrappers), each of which is a single atomic
storage update.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import uuid

from .exceptions import InvalidStateError, NotFoundError
from .money import Amount, Numeric
from .storage import StorageInterface, StorageRecord


class AccountKind(Enum):
    """Account products offered to users"""
    CHECKING = "checking"
    SAVINGS = "savings"


@dataclass
class Account(StorageRecord):
    """User account; never deleted, closed via ``is_open``"""
    owner_id: str
    kind: AccountKind
    balance: Amount
    is_open: bool = True

    @property
    def opened_at(self) -> datetime:
        return self.created_at


class AccountStore:
    """
    Data store for user accounts
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "accounts"

    def create_account(self, owner_id: str, kind: AccountKind = AccountKind.CHECKING) -> Account:
        """Open a new zero-balance account for ``owner_id``"""
        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            kind=kind,
            balance=Amount.zero(),
        )
        self.storage.insert(self.table, account.id, account.to_dict())
        return account

    def find(self, account_id: str) -> Account:
        """Get account by ID, raising NotFoundError if absent"""
        data = self.storage.load(self.table, account_id)
        if data is None:
            raise NotFoundError("account", account_id)
        return Account.from_dict(data)

    def find_by_owner(self, owner_id: str) -> List[Account]:
        """Get all accounts belonging to a user"""
        return [Account.from_dict(data) for data in self.storage.find(self.table, {"owner_id": owner_id})]

    def close_account(self, account_id: str) -> Account:
        """Flag an account closed; a non-zero balance must be moved out first"""
        def apply(record):
            account = Account.from_dict(record)
            # Balance checked on the row being written
            if not account.balance.is_zero():
                raise InvalidStateError(f"account {account_id} still holds {account.balance.to_string()}")
            account.is_open = False
            account.updated_at = datetime.now(timezone.utc)
            return account.to_dict()

        data = self.storage.modify(self.table, account_id, apply)
        if data is None:
            raise NotFoundError("account", account_id)
        return Account.from_dict(data)

    def increment(self, account_id: str, amount: Numeric) -> Account:
        return self.transact(account_id, Amount.of(amount))

    def decrement(self, account_id: str, amount: Numeric, floor: Optional[Numeric] = None) -> Account:
        return self.transact(account_id, -Amount.of(amount), floor)

    def transact(self, account_id: str, delta: Amount, floor: Optional[Numeric] = None) -> Account:
        """
        Add a signed delta to the account balance in one atomic update.

        Args:
            account_id: Account to update
            delta: Signed amount to add
            floor: Lowest balance allowed after the update; InadequateFundsError
                is raised (and nothing changes) if the update would go below it

        Returns:
            The updated Account
        """
        floor_value: Optional[Decimal] = Amount.of(floor).value if floor is not None else None
        data = self.storage.increment(self.table, account_id, "balance", Amount.of(delta).value, floor_value)
        if data is None:
            raise NotFoundError("account", account_id)
        return Account.from_dict(data)
