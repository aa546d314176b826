"""
Amortization Engine

Pure, deterministic computation of a loan's next state from its current
snapshot and an incoming ledger entry, plus the ledger-derived aggregates
and the replay used to reconcile stored loan counters against the ledger.
Nothing here touches storage.
"""

from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional

from .errors import ValidationError, InvalidStateError
from .money import Money
from .loans import Loan, LoanStatus, apply_repayment
from .transactions import Transaction, TransactionType


def next_state(loan: Loan, transaction: Transaction) -> Loan:
    """
    Compute the loan snapshot that results from applying a transaction

    A Disbursement is the ledger's opening entry and leaves the loan as is.
    A Repayment consumes one installment (see ``loans.apply_repayment``).

    Raises:
        InvalidStateError: Repayment against a loan that is not Active
    """
    if transaction.transaction_type == TransactionType.DISBURSEMENT:
        return loan
    return apply_repayment(loan, transaction.amount, transaction.transaction_date)


def ledger_order(transactions: Iterable[Transaction]) -> List[Transaction]:
    """Order entries the way they were applied to the loan"""
    return sorted(transactions, key=lambda t: (t.sequence, t.created_at))


def repayments_received(transactions: Iterable[Transaction]) -> Money:
    """Sum of all repayment amounts"""
    return sum((t.amount for t in transactions if t.is_repayment), Money.zero())


def repayments_pending(loan: Loan, transactions: Iterable[Transaction]) -> Money:
    """Outstanding amount against the total payable, never below zero"""
    return (loan.total_payable_amount - repayments_received(transactions)).clamp_to_zero()


def opening_snapshot(loan: Loan) -> Loan:
    """The loan as it stood the moment it was created"""
    return replace(
        loan,
        paid_emis=0,
        pending_emis=loan.tenure_months,
        next_emi_amount=loan.emi_amount,
        installment_date=loan.start_date,
        status=LoanStatus.ACTIVE
    )


def replay(loan: Loan, transactions: Iterable[Transaction]) -> Loan:
    """Rebuild the loan's counters by folding the ledger over its opening snapshot"""
    state = opening_snapshot(loan)
    for transaction in ledger_order(transactions):
        state = next_state(state, transaction)
    return state


@dataclass
class ReconciliationResult:
    """Outcome of checking a stored loan against its ledger"""
    loan_id: str
    repayments_received: Money
    repayments_pending: Money
    expected: Optional[Loan] = None
    discrepancies: List[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.discrepancies


_REPLAYED_FIELDS = ("paid_emis", "pending_emis", "next_emi_amount", "installment_date")


def reconcile(loan: Loan, transactions: Iterable[Transaction]) -> ReconciliationResult:
    """
    Compare a stored loan with what its ledger says it should be

    Checks the single disbursement, the denormalized ids, the repayment
    sequence, and every replayed counter. Administrative statuses
    (Defaulted, Closed) are not derivable from the ledger and are not
    compared.
    """
    entries = list(transactions)
    result = ReconciliationResult(
        loan_id=loan.id,
        repayments_received=repayments_received(entries),
        repayments_pending=repayments_pending(loan, entries)
    )

    disbursements = [t for t in entries if t.is_disbursement]
    if len(disbursements) != 1:
        result.discrepancies.append(f"expected 1 disbursement, found {len(disbursements)}")
    elif disbursements[0].amount != loan.principal_amount:
        result.discrepancies.append(
            f"disbursement {disbursements[0].amount} differs from principal {loan.principal_amount}"
        )

    for entry in entries:
        if entry.loan_id != loan.id or entry.customer_id != loan.customer_id:
            result.discrepancies.append(f"transaction {entry.id} does not belong to loan {loan.id}")

    sequences = sorted(t.sequence for t in entries if t.is_repayment)
    if sequences != list(range(1, len(sequences) + 1)):
        result.discrepancies.append(f"repayment sequence is not contiguous: {sequences}")

    try:
        expected = replay(loan, entries)
    except (ValidationError, InvalidStateError) as e:
        result.discrepancies.append(f"ledger cannot be replayed: {e}")
        return result
    result.expected = expected

    for name in _REPLAYED_FIELDS:
        stored, derived = getattr(loan, name), getattr(expected, name)
        if stored != derived:
            result.discrepancies.append(f"{name}: stored {stored}, ledger gives {derived}")

    if loan.status in (LoanStatus.ACTIVE, LoanStatus.COMPLETED) and loan.status != expected.status:
        result.discrepancies.append(
            f"status: stored {loan.status.value}, ledger gives {expected.status.value}"
        )

    return result
