"""
Loan Module

Loan terms, running balance/accrual state, the loan lifecycle state machine
and the scheduled payment-due records.

Interest rates are stored as integer basis points and converted to a
fraction (bps / 10,000) only where used. Installments are recomputed every
cycle from the loan's current balance and current time to maturity rather
than fixed at issuance, so irregular payments shrink later installments.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Set
from enum import Enum
import uuid

from .calendars import add_months, months_between
from .exceptions import InvalidAmountError, InvalidStateError, InvariantViolation, NotFoundError
from .money import Amount, Numeric, round_amount
from .storage import StorageInterface, StorageRecord

BASIS_POINTS = Decimal('10000')
MONTHS_PER_YEAR = Decimal('12')


class LoanState(Enum):
    """Loan lifecycle states"""
    PENDING_APPROVAL = "pending_approval"  # Issued, awaiting approval
    ACTIVE = "active"                      # Approved, in repayment
    PAID = "paid"                          # Balance reached exactly zero
    DEFAULT = "default"                    # Missed payment, set by external policy


LOAN_TRANSITIONS: Dict[LoanState, Set[LoanState]] = {
    LoanState.PENDING_APPROVAL: {LoanState.ACTIVE},
    LoanState.ACTIVE: {LoanState.PAID, LoanState.DEFAULT},
    LoanState.PAID: set(),
    LoanState.DEFAULT: set(),
}


@dataclass
class Loan(StorageRecord):
    """Loan terms plus running balance and accrual state"""
    borrower_id: str
    vault_name: str
    orig_principal: Amount
    balance: Amount
    interest_rate: int                  # basis points, e.g. 200 for 2%
    issue_date: date
    maturity_date: date
    payment_frequency_months: int
    compound_frequency_months: int
    accrued_interest: Amount
    capitalized_interest: Amount
    state: LoanState = LoanState.PENDING_APPROVAL
    disbursed_on: Optional[date] = None

    @property
    def interest_rate_fraction(self) -> Decimal:
        """Annual rate as a fraction, e.g. 0.02 for 200 bps"""
        return Decimal(self.interest_rate) / BASIS_POINTS

    @property
    def is_active(self) -> bool:
        return self.state == LoanState.ACTIVE

    @property
    def is_paid(self) -> bool:
        return self.state == LoanState.PAID

    def periodic_interest(self) -> Amount:
        """
        Interest for one payment period on the current balance:
        balance * rate / (12 / payment_frequency_months), rounded once.
        """
        periods_per_year = MONTHS_PER_YEAR / Decimal(self.payment_frequency_months)
        return Amount(round_amount(self.balance.value * self.interest_rate_fraction / periods_per_year))

    def months_remaining(self, current_date: date) -> int:
        """Whole months from current_date to maturity, never less than 1"""
        return max(1, months_between(current_date, self.maturity_date))

    def principal_due(self, current_date: date) -> Amount:
        """
        Principal installment for the current cycle:
        balance / months_remaining * payment_frequency_months, capped at balance.
        """
        months = Decimal(self.months_remaining(current_date))
        due = Amount(round_amount(
            self.balance.value * Decimal(self.payment_frequency_months) / months
        ))
        return min(due, self.balance)


@dataclass
class LoanPayment(StorageRecord):
    """A scheduled payment due; paid once both transaction ids are stamped"""
    loan_id: str
    principal_due: Amount
    interest_due: Amount
    due_date: date
    principal_transaction_id: Optional[str] = None
    interest_transaction_id: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.principal_transaction_id is not None and self.interest_transaction_id is not None

    @property
    def is_unpaid(self) -> bool:
        return self.principal_transaction_id is None and self.interest_transaction_id is None

    @property
    def total_due(self) -> Amount:
        return self.principal_due + self.interest_due


def check_transition(current: LoanState, target: LoanState) -> None:
    """Raise InvalidStateError unless current -> target is a legal loan transition"""
    if target not in LOAN_TRANSITIONS[current]:
        raise InvalidStateError(f"loan cannot move from {current.value} to {target.value}")


class LoanStore:
    """
    Data store for loans
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "loans"

    def create_loan(
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
        """
        Create a loan in PENDING_APPROVAL

        Args:
            borrower_id: User borrowing the funds
            vault_name: Vault the principal is drawn from and repaid to
            principal: Original principal
            interest_rate: Annual rate in basis points
            issue_date: Date the loan is issued
            term_months: Months from issue to maturity
            payment_frequency_months: Months between payments
            compound_frequency_months: Months between interest capitalizations

        Returns:
            Created Loan
        """
        principal = Amount.of(principal)
        if not principal.is_positive():
            raise InvalidAmountError(f"Loan principal must be positive, got {principal}")
        if not isinstance(interest_rate, int) or interest_rate < 0:
            raise ValueError(f"Interest rate must be a non-negative integer of basis points, got {interest_rate!r}")
        if term_months <= 0 or payment_frequency_months <= 0 or compound_frequency_months <= 0:
            raise ValueError("Loan term and frequencies must be positive month counts")
        if payment_frequency_months > term_months:
            raise ValueError("Payment frequency cannot exceed the loan term")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_id=borrower_id,
            vault_name=vault_name,
            orig_principal=principal,
            balance=principal,
            interest_rate=interest_rate,
            issue_date=issue_date,
            maturity_date=add_months(issue_date, term_months),
            payment_frequency_months=payment_frequency_months,
            compound_frequency_months=compound_frequency_months,
            accrued_interest=Amount.zero(),
            capitalized_interest=Amount.zero(),
        )
        self.storage.insert(self.table, loan.id, loan.to_dict())
        return loan

    def find(self, loan_id: str) -> Loan:
        """Get loan by ID, raising NotFoundError if absent"""
        data = self.storage.load(self.table, loan_id)
        if data is None:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(data)

    def find_by_borrower(self, borrower_id: str) -> List[Loan]:
        return [Loan.from_dict(data) for data in self.storage.find(self.table, {"borrower_id": borrower_id})]

    def _modify(self, loan_id: str, mutator) -> Loan:
        def apply(record):
            loan = mutator(Loan.from_dict(record))
            loan.updated_at = datetime.now(timezone.utc)
            return loan.to_dict()
        data = self.storage.modify(self.table, loan_id, apply)
        if data is None:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(data)

    def set_state(self, loan_id: str, state: LoanState) -> Loan:
        """Move the loan to ``state``, enforcing the lifecycle"""
        def apply(loan: Loan) -> Loan:
            check_transition(loan.state, state)
            loan.state = state
            return loan
        return self._modify(loan_id, apply)

    def activate(self, loan_id: str) -> Loan:
        return self.set_state(loan_id, LoanState.ACTIVE)

    def mark_disbursed(self, loan_id: str, disbursed_on: date) -> Loan:
        """Record the disbursement date; a loan is disbursed at most once"""
        def apply(loan: Loan) -> Loan:
            if loan.disbursed_on is not None:
                raise InvalidStateError(f"loan {loan.id} was already disbursed on {loan.disbursed_on}")
            loan.disbursed_on = disbursed_on
            return loan
        return self._modify(loan_id, apply)

    def set_accrued_interest(self, loan_id: str, accrued_interest: Amount) -> Loan:
        """Replace (not add to) the loan's unconsumed accrual"""
        def apply(loan: Loan) -> Loan:
            loan.accrued_interest = accrued_interest
            return loan
        return self._modify(loan_id, apply)

    def capitalize(self, loan_id: str) -> Loan:
        """Fold accrued interest into the balance"""
        def apply(loan: Loan) -> Loan:
            loan.balance = loan.balance + loan.accrued_interest
            loan.capitalized_interest = loan.capitalized_interest + loan.accrued_interest
            loan.accrued_interest = Amount.zero()
            return loan
        return self._modify(loan_id, apply)

    def decrement(self, loan_id: str, amount: Amount) -> Loan:
        """
        Apply a payment: balance + accrued_interest - amount, accrual reset to zero.

        The folded accrual counts as capitalized interest. A negative result
        raises InvariantViolation and nothing is written.
        """
        def apply(loan: Loan) -> Loan:
            new_balance = loan.balance + loan.accrued_interest - amount
            if new_balance.is_negative():
                raise InvariantViolation(
                    f"loan {loan.id} balance would become {new_balance}: "
                    f"balance={loan.balance} accrued={loan.accrued_interest} payment={amount}"
                )
            loan.capitalized_interest = loan.capitalized_interest + loan.accrued_interest
            loan.balance = new_balance
            loan.accrued_interest = Amount.zero()
            return loan
        return self._modify(loan_id, apply)


class LoanPaymentStore:
    """
    Data store for scheduled loan payments
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "loan_payments"

    def create_payment(self, loan_id: str, principal_due: Amount, interest_due: Amount, due_date: date) -> LoanPayment:
        now = datetime.now(timezone.utc)
        payment = LoanPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            principal_due=principal_due,
            interest_due=interest_due,
            due_date=due_date,
        )
        self.storage.insert(self.table, payment.id, payment.to_dict())
        return payment

    def find(self, payment_id: str) -> LoanPayment:
        """Get loan payment by ID, raising NotFoundError if absent"""
        data = self.storage.load(self.table, payment_id)
        if data is None:
            raise NotFoundError("loan payment", payment_id)
        return LoanPayment.from_dict(data)

    def find_for_loan(self, loan_id: str) -> List[LoanPayment]:
        """All payments for a loan ordered by due date"""
        payments = [LoanPayment.from_dict(data) for data in self.storage.find(self.table, {"loan_id": loan_id})]
        payments.sort(key=lambda p: p.due_date)
        return payments

    def find_latest_unpaid(self, loan_id: str) -> Optional[LoanPayment]:
        unpaid = [p for p in self.find_for_loan(loan_id) if p.is_unpaid]
        return unpaid[-1] if unpaid else None

    def find_last_paid(self, loan_id: str) -> Optional[LoanPayment]:
        paid = [p for p in self.find_for_loan(loan_id) if p.is_paid]
        return paid[-1] if paid else None

    def _modify(self, payment_id: str, mutator) -> LoanPayment:
        def apply(record):
            payment = LoanPayment.from_dict(record)
            if not payment.is_unpaid:
                raise InvalidStateError(f"loan payment {payment_id} has already been settled")
            payment = mutator(payment)
            payment.updated_at = datetime.now(timezone.utc)
            return payment.to_dict()
        data = self.storage.modify(self.table, payment_id, apply)
        if data is None:
            raise NotFoundError("loan payment", payment_id)
        return LoanPayment.from_dict(data)

    def set_dues(self, payment_id: str, principal_due: Amount, interest_due: Amount) -> LoanPayment:
        """Refresh the amounts owed on an unpaid payment"""
        def apply(payment: LoanPayment) -> LoanPayment:
            payment.principal_due = principal_due
            payment.interest_due = interest_due
            return payment
        return self._modify(payment_id, apply)

    def set_transaction_ids(self, payment_id: str, principal_transaction_id: str, interest_transaction_id: str) -> LoanPayment:
        """Stamp both settlement transaction ids on an unpaid payment"""
        def apply(payment: LoanPayment) -> LoanPayment:
            payment.principal_transaction_id = principal_transaction_id
            payment.interest_transaction_id = interest_transaction_id
            return payment
        return self._modify(payment_id, apply)
