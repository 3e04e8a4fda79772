"""
Transaction Log Module

Append-only audit records of every fund movement. Bank transactions record
account <-> vault movements, account transactions record transfers between
two accounts. Records are never updated or deleted.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List
from enum import Enum
import uuid

from .exceptions import InvalidAmountError, NotFoundError
from .money import Amount, Numeric
from .storage import StorageInterface, StorageRecord


class BankTransactionKind(Enum):
    """Kinds of account <-> vault movement"""
    DEPOSIT = "deposit"                        # account +, vault +
    WITHDRAW = "withdraw"                      # account -, vault -
    LOAN_PRINCIPAL = "loan_principal"          # vault -> borrower account
    PRINCIPAL_REPAYMENT = "principal_repayment"  # account -> vault
    INTEREST_REPAYMENT = "interest_repayment"    # account -> vault


# Sign of the balance change each kind applies to (account, vault)
BANK_TRANSACTION_SIGNS = {
    BankTransactionKind.DEPOSIT: (1, 1),
    BankTransactionKind.WITHDRAW: (-1, -1),
    BankTransactionKind.LOAN_PRINCIPAL: (1, -1),
    BankTransactionKind.PRINCIPAL_REPAYMENT: (-1, 1),
    BankTransactionKind.INTEREST_REPAYMENT: (-1, 1),
}

# Repayment legs may be zero (e.g. an interest-free loan) so a settled
# payment always carries both transaction ids
ZERO_AMOUNT_KINDS = {
    BankTransactionKind.PRINCIPAL_REPAYMENT,
    BankTransactionKind.INTEREST_REPAYMENT,
}


@dataclass
class BankTransaction(StorageRecord):
    """Transaction between a user's account and a bank vault"""
    account_id: str
    vault_name: str
    kind: BankTransactionKind
    amount: Amount


@dataclass
class AccountTransaction(StorageRecord):
    """Transfer of funds from one account to another"""
    sender_account_id: str
    receiver_account_id: str
    amount: Amount


class TransactionLog:
    """
    Append-only store for bank and account transactions
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.bank_table = "bank_transactions"
        self.account_table = "account_transactions"

    def create_bank_transaction(
        self,
        account_id: str,
        vault_name: str,
        kind: BankTransactionKind,
        amount: Numeric
    ) -> BankTransaction:
        """
        Append a bank transaction record

        Args:
            account_id: User account on one side of the movement
            vault_name: Vault on the other side
            kind: What the movement is
            amount: Positive amount moved (zero allowed for repayment legs)

        Returns:
            The created BankTransaction
        """
        amount = Amount.of(amount)
        if amount.is_negative() or (amount.is_zero() and kind not in ZERO_AMOUNT_KINDS):
            raise InvalidAmountError(f"Transaction amount must be positive, got {amount}")

        now = datetime.now(timezone.utc)
        transaction = BankTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            vault_name=vault_name,
            kind=kind,
            amount=amount,
        )
        self.storage.insert(self.bank_table, transaction.id, transaction.to_dict())
        return transaction

    def create_account_transaction(self, sender_id: str, receiver_id: str, amount: Numeric) -> AccountTransaction:
        """Append an account-to-account transfer record"""
        amount = Amount.of(amount)
        if not amount.is_positive():
            raise InvalidAmountError(f"Transaction amount must be positive, got {amount}")

        now = datetime.now(timezone.utc)
        transaction = AccountTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            sender_account_id=sender_id,
            receiver_account_id=receiver_id,
            amount=amount,
        )
        self.storage.insert(self.account_table, transaction.id, transaction.to_dict())
        return transaction

    def find_bank_transaction(self, transaction_id: str) -> BankTransaction:
        data = self.storage.load(self.bank_table, transaction_id)
        if data is None:
            raise NotFoundError("bank transaction", transaction_id)
        return BankTransaction.from_dict(data)

    def find_account_transaction(self, transaction_id: str) -> AccountTransaction:
        data = self.storage.load(self.account_table, transaction_id)
        if data is None:
            raise NotFoundError("account transaction", transaction_id)
        return AccountTransaction.from_dict(data)

    def bank_transactions_for_account(self, account_id: str) -> List[BankTransaction]:
        rows = self.storage.find(self.bank_table, {"account_id": account_id})
        return [BankTransaction.from_dict(data) for data in rows]

    def bank_transactions_for_vault(self, vault_name: str) -> List[BankTransaction]:
        rows = self.storage.find(self.bank_table, {"vault_name": vault_name})
        return [BankTransaction.from_dict(data) for data in rows]

    def account_transactions_for_account(self, account_id: str) -> List[AccountTransaction]:
        """Transfers where the account is either sender or receiver, oldest first"""
        sent = self.storage.find(self.account_table, {"sender_account_id": account_id})
        received = self.storage.find(self.account_table, {"receiver_account_id": account_id})
        seen = {}
        for data in sent + received:
            seen[data["id"]] = AccountTransaction.from_dict(data)
        return sorted(seen.values(), key=lambda t: t.created_at)
