"""
Reconciliation Module

Replays the transaction log and compares the result with stored balances.
An account's balance must equal the signed sum of its bank transactions
plus transfers received minus transfers sent; a vault's balance must equal
its opening balance plus the signed sum of its bank transactions.
"""

from dataclasses import dataclass
from typing import Optional

from .accounts import AccountStore
from .money import Amount, Numeric
from .transactions import BANK_TRANSACTION_SIGNS, TransactionLog
from .vaults import VaultStore


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of replaying the log for one account or vault"""
    entity_type: str
    entity_id: str
    expected: Amount
    actual: Amount

    @property
    def balanced(self) -> bool:
        return self.expected == self.actual

    @property
    def difference(self) -> Amount:
        return self.actual - self.expected


def expected_account_balance(log: TransactionLog, account_id: str) -> Amount:
    """Balance implied by every logged movement touching the account"""
    total = Amount.zero()
    for transaction in log.bank_transactions_for_account(account_id):
        account_sign, _ = BANK_TRANSACTION_SIGNS[transaction.kind]
        total = total + (transaction.amount if account_sign > 0 else -transaction.amount)
    for transfer in log.account_transactions_for_account(account_id):
        if transfer.receiver_account_id == account_id:
            total = total + transfer.amount
        if transfer.sender_account_id == account_id:
            total = total - transfer.amount
    return total


def expected_vault_balance(log: TransactionLog, vault_name: str, opening_balance: Optional[Numeric] = None) -> Amount:
    """Balance implied by the vault's opening balance and its logged movements"""
    total = Amount.of(opening_balance) if opening_balance is not None else Amount.zero()
    for transaction in log.bank_transactions_for_vault(vault_name):
        _, vault_sign = BANK_TRANSACTION_SIGNS[transaction.kind]
        total = total + (transaction.amount if vault_sign > 0 else -transaction.amount)
    return total


def reconcile_account(accounts: AccountStore, log: TransactionLog, account_id: str) -> ReconciliationResult:
    account = accounts.find(account_id)
    return ReconciliationResult(
        entity_type="account",
        entity_id=account_id,
        expected=expected_account_balance(log, account_id),
        actual=account.balance,
    )


def reconcile_vault(
    vaults: VaultStore,
    log: TransactionLog,
    vault_name: str,
    opening_balance: Optional[Numeric] = None
) -> ReconciliationResult:
    vault = vaults.find(vault_name)
    return ReconciliationResult(
        entity_type="vault",
        entity_id=vault_name,
        expected=expected_vault_balance(log, vault_name, opening_balance),
        actual=vault.balance,
    )
