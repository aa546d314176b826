"""
Reporting Module

Read-only views over loans and their ledger: per-loan summaries, filtered
and paged listings, upcoming installments and portfolio totals. Aggregates
are always derived from the ledger; nothing here writes to storage.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Union
import math

from .errors import NotFoundError, ValidationError
from .money import Money
from .storage import StorageInterface
from .config import LoanLedgerConfig, get_config
from .loans import Loan, LoanStatus, OPEN_STATUSES, coerce_status, parse_date
from .transactions import (
    Transaction, TransactionType, PaymentMode, coerce_transaction_type, coerce_payment_mode
)
from .amortization import repayments_received, repayments_pending
from .ledger import TransactionLedger


LOAN_SORT_FIELDS = ("created_at", "updated_at", "total_payable_amount", "status")


@dataclass
class Page:
    """One page of a listing"""
    items: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'items': self.items,
            'pagination': {
                'total': self.total,
                'page': self.page,
                'limit': self.limit,
                'total_pages': self.total_pages,
                'has_next_page': self.has_next_page,
                'has_previous_page': self.has_previous_page
            }
        }


def _loan_row(loan: Loan, transactions: List[Transaction]) -> Dict[str, Any]:
    row = loan.to_dict()
    row['payments_received'] = repayments_received(transactions).amount
    row['pending_amount'] = repayments_pending(loan, transactions).amount
    return row


class LoanReporting:
    """
    Loan portfolio reporting
    """

    def __init__(self, storage: StorageInterface, config: Optional[LoanLedgerConfig] = None):
        self.storage = storage
        self.config = config or get_config()
        self.ledger = TransactionLedger(storage)
        self.loans_table = "loans"

    def _load_loans(self, filters: Optional[Dict[str, Any]] = None) -> List[Loan]:
        if filters:
            rows = self.storage.find(self.loans_table, filters)
        else:
            rows = self.storage.load_all(self.loans_table)
        return [Loan.from_dict(row) for row in rows]

    def _paginate(self, rows: List[Dict[str, Any]], page: int, limit: Optional[int]) -> Page:
        if limit is None:
            limit = self.config.default_page_size
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        limit = min(limit, self.config.max_page_size)
        offset = (page - 1) * limit
        return Page(items=rows[offset:offset + limit], total=len(rows), page=page, limit=limit)

    def loan_summary(self, loan_id: str) -> Dict[str, Any]:
        """
        Loan details with derived payment totals

        Returns:
            The loan's fields plus ``payments_received``, ``pending_amount``
            and ``transactions`` (newest first)

        Raises:
            NotFoundError: Unknown loan
        """
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError(f"Loan {loan_id} not found")
        loan = Loan.from_dict(data)
        transactions = self.ledger.for_loan(loan_id)

        summary = _loan_row(loan, transactions)
        summary['transactions'] = [t.to_dict() for t in reversed(transactions)]
        return summary

    def list_loans(
        self,
        status: Union[LoanStatus, str, None] = None,
        customer_id: Optional[str] = None,
        sort_by: str = "created_at",
        descending: bool = True,
        page: int = 1,
        limit: Optional[int] = None
    ) -> Page:
        """
        Filtered, sorted and paged loan listing

        Unknown sort fields fall back to ``created_at``.
        """
        filters: Dict[str, Any] = {}
        if status is not None:
            filters['status'] = coerce_status(status).value
        if customer_id:
            filters['customer_id'] = customer_id
        if sort_by not in LOAN_SORT_FIELDS:
            sort_by = "created_at"

        loans = self._load_loans(filters)

        def sort_key(loan: Loan):
            value = getattr(loan, sort_by)
            if isinstance(value, Money):
                return value.amount
            if isinstance(value, LoanStatus):
                return value.value
            return value

        loans.sort(key=sort_key, reverse=descending)
        window = self._paginate(loans, page, limit)
        window.items = [_loan_row(loan, self.ledger.for_loan(loan.id)) for loan in window.items]
        return window

    def list_transactions(
        self,
        transaction_type: Union[TransactionType, str, None] = None,
        payment_mode: Union[PaymentMode, str, None] = None,
        customer_id: Optional[str] = None,
        loan_id: Optional[str] = None,
        start_date: Union[date, str, None] = None,
        end_date: Union[date, str, None] = None,
        page: int = 1,
        limit: Optional[int] = None
    ) -> Page:
        """
        Filtered and paged transaction listing, newest first

        ``start_date`` and ``end_date`` bound the value date inclusively.
        """
        filters: Dict[str, Any] = {}
        if transaction_type is not None:
            filters['transaction_type'] = coerce_transaction_type(transaction_type).value
        mode = coerce_payment_mode(payment_mode)
        if mode is not None:
            filters['payment_mode'] = mode.value
        if customer_id:
            filters['customer_id'] = customer_id
        if loan_id:
            filters['loan_id'] = loan_id
        start = parse_date(start_date, "start_date")
        end = parse_date(end_date, "end_date")
        if start and end and start > end:
            raise ValidationError("start_date cannot be after end_date")

        rows = self.storage.find(self.ledger.table_name, filters) if filters \
            else self.storage.load_all(self.ledger.table_name)
        transactions = [Transaction.from_dict(row) for row in rows]
        if start:
            transactions = [t for t in transactions if t.transaction_date >= start]
        if end:
            transactions = [t for t in transactions if t.transaction_date <= end]
        transactions.sort(key=lambda t: (t.transaction_date, t.created_at), reverse=True)

        window = self._paginate(transactions, page, limit)
        window.items = [t.to_dict() for t in window.items]
        return window

    def upcoming_emis(self, as_of: Optional[date] = None,
                      within_days: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Active loans whose next installment falls due within the window

        Installments already past due are included and flagged ``overdue``.
        """
        as_of = as_of or date.today()
        if within_days is None:
            within_days = self.config.upcoming_emi_window_days
        horizon = as_of + timedelta(days=within_days)

        due = []
        for loan in self._load_loans({'status': LoanStatus.ACTIVE.value}):
            if loan.installment_date is None or loan.installment_date > horizon:
                continue
            due.append({
                'loan_id': loan.id,
                'customer_id': loan.customer_id,
                'installment_date': loan.installment_date,
                'next_emi_amount': loan.next_emi_amount.amount,
                'installment_number': loan.paid_emis + 1,
                'pending_emis': loan.pending_emis,
                'overdue': loan.installment_date < as_of
            })
        due.sort(key=lambda row: (row['installment_date'], row['loan_id']))
        return due

    def portfolio_totals(self) -> Dict[str, Any]:
        """
        Portfolio-wide counts and amounts

        ``total_pending`` covers open loans only; closed and completed loans
        owe nothing further to the ledger.
        """
        counts = {status.value: 0 for status in LoanStatus}
        total_disbursed = Money.zero()
        total_received = Money.zero()
        total_pending = Money.zero()

        loans = self._load_loans()
        for loan in loans:
            counts[loan.status.value] += 1
            transactions = self.ledger.for_loan(loan.id)
            total_disbursed = total_disbursed + sum(
                (t.amount for t in transactions if t.is_disbursement), Money.zero()
            )
            total_received = total_received + repayments_received(transactions)
            if loan.status in OPEN_STATUSES:
                total_pending = total_pending + repayments_pending(loan, transactions)

        return {
            'loan_count': len(loans),
            'by_status': counts,
            'total_disbursed': total_disbursed.amount,
            'total_received': total_received.amount,
            'total_pending': total_pending.amount
        }
