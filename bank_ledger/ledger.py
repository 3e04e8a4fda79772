"""
Ledger Service Module

Orchestrates every fund movement. Each public operation runs as one unit of
work (``storage.atomic()``): the transaction-log records and the balance
updates are either all applied or none are, and any error rolls the unit
back before it reaches the caller.

Sufficient-funds checks run inside the unit of work and the decrement itself
is floor-conditional, so concurrent withdrawals cannot overdraw an account.
"""

from contextlib import contextmanager
from datetime import date
from typing import List, Optional
import logging

from .accounts import Account, AccountStore
from .calendars import Calendar, SystemCalendar, add_months
from .config import LedgerConfig, get_config
from .exceptions import (
    InadequateFundsError, InvalidAmountError, InvalidDateError, InvalidStateError,
    InvariantViolation, LedgerError, OwnershipError, SameAccountError,
)
from .logging_config import log_action, setup_logging
from .loans import Loan, LoanPayment, LoanPaymentStore, LoanState, LoanStore
from .money import Amount, Numeric
from .storage import StorageInterface, create_storage
from .transactions import AccountTransaction, BankTransactionKind, TransactionLog
from .vaults import Vault, VaultStore

logger = logging.getLogger(__name__)


class LedgerService:
    """
    Deposits, withdrawals, transfers and the loan lifecycle over a single
    authoritative store.
    """

    def __init__(
        self,
        storage: StorageInterface,
        calendar: Optional[Calendar] = None,
        accounts: Optional[AccountStore] = None,
        vaults: Optional[VaultStore] = None,
        transaction_log: Optional[TransactionLog] = None,
        loans: Optional[LoanStore] = None,
        loan_payments: Optional[LoanPaymentStore] = None
    ):
        self.storage = storage
        self.calendar = calendar or SystemCalendar()
        self.accounts = accounts or AccountStore(storage)
        self.vaults = vaults or VaultStore(storage)
        self.transaction_log = transaction_log or TransactionLog(storage)
        self.loans = loans or LoanStore(storage)
        self.loan_payments = loan_payments or LoanPaymentStore(storage)

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None, calendar: Optional[Calendar] = None) -> 'LedgerService':
        """Wire storage, logging and stores from configuration, creating the default vault if missing"""
        config = config or get_config()
        setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
        storage = create_storage(config.database_url)
        service = cls(storage, calendar=calendar)
        if not storage.exists(service.vaults.table, config.default_vault):
            service.vaults.create_vault(config.default_vault)
        logger.info(f"Ledger service started with {type(storage).__name__}")
        return service

    @contextmanager
    def _unit_of_work(self, action: str, resource: str):
        try:
            with self.storage.atomic():
                yield
        except InvariantViolation as e:
            log_action(logger, "critical", f"Invariant violated during {action}: {e}",
                       action=action, resource=resource)
            raise
        except LedgerError as e:
            log_action(logger, "warning", f"{action} rejected: {e}",
                       action=action, resource=resource, extra={"error": type(e).__name__})
            raise

    @staticmethod
    def _positive(amount: Numeric) -> Amount:
        try:
            amount = Amount.of(amount)
        except ValueError as e:
            raise InvalidAmountError(str(e)) from e
        if not amount.is_positive():
            raise InvalidAmountError(f"Amount must be positive, got {amount}")
        return amount

    def _open_account(self, account_id: str) -> Account:
        account = self.accounts.find(account_id)
        if not account.is_open:
            raise InvalidStateError(f"account {account_id} is closed")
        return account

    def _active_loan(self, loan_id: str) -> Loan:
        loan = self.loans.find(loan_id)
        if loan.state != LoanState.ACTIVE:
            raise InvalidStateError(f"loan {loan_id} is {loan.state.value}, not active")
        return loan

    # ------------------------------------------------------------------
    # Account <-> vault movements
    # ------------------------------------------------------------------

    def deposit(self, account_id: str, vault_name: str, amount: Numeric) -> Account:
        """
        Deposit funds to a user's account

        Args:
            account_id: Account the funds belong to
            vault_name: Vault where the funds are held for safekeeping
            amount: Positive amount deposited

        Returns:
            Updated Account
        """
        amount = self._positive(amount)
        with self._unit_of_work("deposit", f"account:{account_id}"):
            self._open_account(account_id)
            self.transaction_log.create_bank_transaction(account_id, vault_name, BankTransactionKind.DEPOSIT, amount)
            account = self.accounts.increment(account_id, amount)
            self.vaults.increment(vault_name, amount)

        log_action(logger, "info", "Deposit committed", action="deposit",
                   resource=f"account:{account_id}",
                   extra={"vault": vault_name, "amount": str(amount), "balance": str(account.balance)})
        return account

    def withdraw(self, account_id: str, vault_name: str, amount: Numeric) -> Account:
        """
        Withdraw funds from a user's account

        Raises:
            InadequateFundsError: balance is below ``amount``; nothing changes
        """
        amount = self._positive(amount)
        with self._unit_of_work("withdraw", f"account:{account_id}"):
            account = self._open_account(account_id)
            if account.balance < amount:
                raise InadequateFundsError()
            self.transaction_log.create_bank_transaction(account_id, vault_name, BankTransactionKind.WITHDRAW, amount)
            account = self.accounts.decrement(account_id, amount, floor=0)
            self.vaults.decrement(vault_name, amount)

        log_action(logger, "info", "Withdrawal committed", action="withdraw",
                   resource=f"account:{account_id}",
                   extra={"vault": vault_name, "amount": str(amount), "balance": str(account.balance)})
        return account

    def send_funds(self, sender_id: str, receiver_id: str, amount: Numeric) -> AccountTransaction:
        """
        Transfer funds from one user's account to another's

        Raises:
            InadequateFundsError: sender balance is below ``amount``
            SameAccountError: sender and receiver are the same account
        """
        amount = self._positive(amount)
        if sender_id == receiver_id:
            raise SameAccountError(f"account {sender_id} cannot send funds to itself")

        with self._unit_of_work("send_funds", f"account:{sender_id}"):
            sender = self._open_account(sender_id)
            self._open_account(receiver_id)
            if sender.balance < amount:
                raise InadequateFundsError()
            transaction = self.transaction_log.create_account_transaction(sender_id, receiver_id, amount)
            self.accounts.increment(receiver_id, amount)
            self.accounts.decrement(sender_id, amount, floor=0)

        log_action(logger, "info", "Transfer committed", action="send_funds",
                   resource=f"account:{sender_id}",
                   extra={"receiver": receiver_id, "amount": str(amount), "transaction_id": transaction.id})
        return transaction

    # ------------------------------------------------------------------
    # Loan lifecycle
    # ------------------------------------------------------------------

    def issue_loan(
        self,
        borrower_id: str,
        vault_name: str,
        principal: Numeric,
        interest_rate: int,
        issue_date: date,
        term_months: int,
        payment_frequency_months: int = 1,
        compound_frequency_months: int = 1
    ) -> Loan:
        """Create a loan awaiting approval; the vault must exist"""
        principal = self._positive(principal)
        with self._unit_of_work("issue_loan", f"borrower:{borrower_id}"):
            self.vaults.find(vault_name)
            loan = self.loans.create_loan(
                borrower_id=borrower_id,
                vault_name=vault_name,
                principal=principal,
                interest_rate=interest_rate,
                issue_date=issue_date,
                term_months=term_months,
                payment_frequency_months=payment_frequency_months,
                compound_frequency_months=compound_frequency_months,
            )

        log_action(logger, "info", "Loan issued", action="issue_loan", resource=f"loan:{loan.id}",
                   extra={"principal": str(principal), "interest_rate_bps": interest_rate,
                          "maturity_date": loan.maturity_date.isoformat()})
        return loan

    def activate_loan(self, loan_id: str) -> Loan:
        """Approve a pending loan"""
        with self._unit_of_work("activate_loan", f"loan:{loan_id}"):
            loan = self.loans.activate(loan_id)
        log_action(logger, "info", "Loan activated", action="activate_loan", resource=f"loan:{loan_id}")
        return loan

    def mark_default(self, loan_id: str) -> Loan:
        """Move an active loan to default; the missed-payment policy lives elsewhere"""
        with self._unit_of_work("mark_default", f"loan:{loan_id}"):
            loan = self.loans.set_state(loan_id, LoanState.DEFAULT)
        log_action(logger, "warning", "Loan defaulted", action="mark_default", resource=f"loan:{loan_id}",
                   extra={"balance": str(loan.balance)})
        return loan

    def disburse_loan(self, loan: Loan, account_id: str) -> Account:
        """
        Transfer the loan principal from the bank's vault to the borrower's account

        Args:
            loan: Active loan to disburse
            account_id: Borrower's account that receives the principal

        Raises:
            InvalidStateError: loan is not active or was already disbursed
            OwnershipError: account does not belong to the borrower
        """
        with self._unit_of_work("disburse_loan", f"loan:{loan.id}"):
            current = self._active_loan(loan.id)
            account = self._open_account(account_id)
            if account.owner_id != current.borrower_id:
                raise OwnershipError(f"account {account_id} does not belong to borrower {current.borrower_id}")

            self.loans.mark_disbursed(current.id, self.calendar.current_date())
            self.vaults.decrement(current.vault_name, current.orig_principal)
            self.transaction_log.create_bank_transaction(
                account_id, current.vault_name, BankTransactionKind.LOAN_PRINCIPAL, current.orig_principal
            )
            account = self.accounts.increment(account_id, current.orig_principal)

        log_action(logger, "info", "Loan disbursed", action="disburse_loan", resource=f"loan:{loan.id}",
                   extra={"account": account_id, "amount": str(current.orig_principal)})
        return account

    def accrue(self, loan: Loan) -> Loan:
        """
        Calculate interest for the current period and store it on the loan,
        replacing any unconsumed accrual
        """
        with self._unit_of_work("accrue", f"loan:{loan.id}"):
            current = self._active_loan(loan.id)
            updated = self.loans.set_accrued_interest(current.id, current.periodic_interest())

        logger.debug(f"Accrued {updated.accrued_interest} on loan {loan.id}")
        return updated

    def capitalize_interest(self, loan: Loan) -> Loan:
        """Fold the loan's accrued interest into its balance"""
        with self._unit_of_work("capitalize_interest", f"loan:{loan.id}"):
            self._active_loan(loan.id)
            updated = self.loans.capitalize(loan.id)

        log_action(logger, "info", "Interest capitalized", action="capitalize_interest",
                   resource=f"loan:{loan.id}",
                   extra={"balance": str(updated.balance), "capitalized": str(updated.capitalized_interest)})
        return updated

    def principal_due(self, loan: Loan, current_date: Optional[date] = None) -> Amount:
        """Principal installment owed this cycle, recomputed from the current balance"""
        return loan.principal_due(current_date or self.calendar.current_date())

    def get_or_create_next_payment(self, loan: Loan) -> LoanPayment:
        """
        Get the next loan payment due for the loan

        Refreshes the dues of the outstanding unpaid payment from the loan's
        current balance and accrued interest, or creates the next payment
        when none is outstanding.

        Raises:
            InvalidDateError: the next due date would fall after maturity
        """
        with self._unit_of_work("get_or_create_next_payment", f"loan:{loan.id}"):
            current = self._active_loan(loan.id)
            today = self.calendar.current_date()
            principal_due = current.principal_due(today)
            interest_due = current.accrued_interest

            outstanding = self.loan_payments.find_latest_unpaid(current.id)
            if outstanding is not None:
                return self.loan_payments.set_dues(outstanding.id, principal_due, interest_due)

            previous = self.loan_payments.find_last_paid(current.id)
            base_date = previous.due_date if previous is not None else current.issue_date
            due_date = add_months(base_date, current.payment_frequency_months)
            if due_date > current.maturity_date:
                raise InvalidDateError(
                    f"due date({due_date}) exceeds maturity date({current.maturity_date})"
                )

            payment = self.loan_payments.create_payment(current.id, principal_due, interest_due, due_date)

        log_action(logger, "info", "Loan payment scheduled", action="get_or_create_next_payment",
                   resource=f"loan:{loan.id}",
                   extra={"payment_id": payment.id, "due_date": due_date.isoformat(),
                          "principal_due": str(principal_due), "interest_due": str(interest_due)})
        return payment

    def pay_loan_payment_due(self, payment_id: str, account_id: str) -> LoanPayment:
        """
        Pay the current loan payment dues

        Args:
            payment_id: Loan payment being settled
            account_id: Account the dues are paid from

        Returns:
            The settled LoanPayment, stamped with both transaction ids

        Raises:
            InadequateFundsError: the account cannot cover principal + interest
            InvalidStateError: the payment is already settled or the loan is not active
            InvariantViolation: the loan balance would go negative (fatal)
        """
        with self._unit_of_work("pay_loan_payment_due", f"loan_payment:{payment_id}"):
            payment = self.loan_payments.find(payment_id)
            if not payment.is_unpaid:
                raise InvalidStateError(f"loan payment {payment_id} has already been settled")
            loan = self._active_loan(payment.loan_id)
            account = self._open_account(account_id)

            total = payment.principal_due + payment.interest_due
            if account.balance < total:
                raise InadequateFundsError()

            principal_transaction = self.transaction_log.create_bank_transaction(
                account_id, loan.vault_name, BankTransactionKind.PRINCIPAL_REPAYMENT, payment.principal_due
            )
            interest_transaction = self.transaction_log.create_bank_transaction(
                account_id, loan.vault_name, BankTransactionKind.INTEREST_REPAYMENT, payment.interest_due
            )

            # deduct funds from the user's account
            self.accounts.decrement(account_id, total, floor=0)

            # increment funds in the bank's vault
            self.vaults.increment(loan.vault_name, total)

            # fold accrual into the balance and subtract the payment
            loan = self.loans.decrement(loan.id, total)

            payment = self.loan_payments.set_transaction_ids(
                payment_id, principal_transaction.id, interest_transaction.id
            )

            if loan.balance.is_zero():
                loan = self.loans.set_state(loan.id, LoanState.PAID)

            if loan.balance.is_negative():
                raise InvariantViolation(f"loan {loan.id} balance is negative after settlement: {loan.balance}")

        log_action(logger, "info", "Loan payment settled", action="pay_loan_payment_due",
                   resource=f"loan:{loan.id}",
                   extra={"payment_id": payment_id, "total": str(total),
                          "balance": str(loan.balance), "state": loan.state.value})
        return payment

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def find_account(self, account_id: str) -> Account:
        return self.accounts.find(account_id)

    def find_vault(self, vault_name: str) -> Vault:
        return self.vaults.find(vault_name)

    def find_loan(self, loan_id: str) -> Loan:
        return self.loans.find(loan_id)

    def find_loan_payment(self, payment_id: str) -> LoanPayment:
        return self.loan_payments.find(payment_id)

    def loan_payments_for(self, loan_id: str) -> List[LoanPayment]:
        """All payments scheduled for a loan, ordered by due date"""
        self.loans.find(loan_id)
        return self.loan_payments.find_for_loan(loan_id)
