"""
Transaction Ledger

Append-only store of every money movement against a loan. Entries are
inserted, never upserted; only their free-text description may change.
Repayment totals are derived from the entries, never stored.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import ConflictError, DuplicateRecordError, NotFoundError, ValidationError
from .money import Money
from .storage import StorageInterface
from .loans import Loan
from .transactions import Transaction, MUTABLE_TRANSACTION_FIELDS, check_description
from .amortization import ledger_order, repayments_received, repayments_pending


class TransactionLedger:
    """
    Ledger of loan transactions

    The ``loan_disbursements`` table holds one row per loan keyed by loan id;
    inserting it is the uniqueness constraint behind "one disbursement per
    loan".
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "loan_transactions"
        self.disbursements_table = "loan_disbursements"

    def append(self, transaction: Transaction) -> Transaction:
        """
        Insert a new entry

        Raises:
            ConflictError: If an entry with the same id already exists
        """
        try:
            self.storage.insert(self.table_name, transaction.id, transaction.to_dict())
        except DuplicateRecordError as e:
            raise ConflictError(f"Transaction {transaction.id} already recorded") from e
        return transaction

    def claim_disbursement(self, loan_id: str, transaction_id: str) -> None:
        """
        Reserve the loan's single disbursement slot

        Raises:
            ConflictError: If the loan already has a disbursement
        """
        try:
            self.storage.insert(self.disbursements_table, loan_id, {
                'loan_id': loan_id,
                'transaction_id': transaction_id
            })
        except DuplicateRecordError as e:
            raise ConflictError(f"Loan {loan_id} already has a disbursement") from e

    def get(self, transaction_id: str) -> Optional[Transaction]:
        """Get a transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def require(self, transaction_id: str) -> Transaction:
        transaction = self.get(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def for_loan(self, loan_id: str) -> List[Transaction]:
        """All entries of a loan in application order"""
        rows = self.storage.find(self.table_name, {'loan_id': loan_id})
        return ledger_order(Transaction.from_dict(row) for row in rows)

    def for_customer(self, customer_id: str) -> List[Transaction]:
        rows = self.storage.find(self.table_name, {'customer_id': customer_id})
        return sorted((Transaction.from_dict(row) for row in rows),
                      key=lambda t: (t.transaction_date, t.created_at))

    def all(self) -> List[Transaction]:
        return [Transaction.from_dict(row) for row in self.storage.load_all(self.table_name)]

    def disbursements_for(self, loan_id: str) -> List[Transaction]:
        return [t for t in self.for_loan(loan_id) if t.is_disbursement]

    def has_repayments(self, loan_id: str) -> bool:
        return any(t.is_repayment for t in self.for_loan(loan_id))

    def update_metadata(self, transaction_id: str, changes: Dict[str, Any],
                        acting_user: Optional[str] = None) -> Transaction:
        """
        Change non-financial metadata of an entry

        Raises:
            ValidationError: If any field other than the description is touched,
                or the description is not text
            NotFoundError: If the transaction does not exist
        """
        forbidden = set(changes) - MUTABLE_TRANSACTION_FIELDS
        if forbidden:
            raise ValidationError(
                f"Ledger entries are immutable; cannot change {', '.join(sorted(forbidden))}"
            )
        if "description" in changes:
            check_description(changes["description"])
        transaction = self.require(transaction_id)
        for key, value in changes.items():
            setattr(transaction, key, value)
        transaction.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction

    def remove_for_loan(self, loan_id: str) -> int:
        """Drop every entry of a loan along with its disbursement slot"""
        removed = 0
        for transaction in self.for_loan(loan_id):
            if self.storage.delete(self.table_name, transaction.id):
                removed += 1
        self.storage.delete(self.disbursements_table, loan_id)
        return removed

    def repayments_received(self, loan_id: str) -> Money:
        """Sum of repayments recorded against a loan"""
        return repayments_received(self.for_loan(loan_id))

    def repayments_pending(self, loan: Loan) -> Money:
        """Total payable minus repayments received, clamped at zero"""
        return repayments_pending(loan, self.for_loan(loan.id))
