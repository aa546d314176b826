"""
Test suite for transactions module

Tests ledger entry construction and validation.
"""

import pytest
from datetime import date, datetime, timezone

from loan_ledger.errors import ValidationError, InvalidStateError
from loan_ledger.money import Money
from loan_ledger.loans import LoanStatus, build_new_loan, transition
from loan_ledger.transactions import (
    Transaction, TransactionType, PaymentMode, MUTABLE_TRANSACTION_FIELDS,
    build_transaction, coerce_transaction_type, coerce_payment_mode
)


class TestBuildTransaction:
    """Test building ledger entries for a loan"""

    def setup_method(self):
        self.loan = build_new_loan(
            customer_id="CUST001",
            principal_amount="120000",
            interest_rate="6",
            tenure_months=12,
            emi_amount="10600",
            total_payable_amount="127200",
            start_date=date(2025, 1, 1)
        )

    def test_repayment(self):
        """Repayment carries the loan's ids and the next sequence number"""
        txn = build_transaction(
            self.loan, "10600", "Repayment", "2025-02-01",
            acting_user="USER001", payment_mode="upi", description="February"
        )

        assert txn.loan_id == self.loan.id
        assert txn.customer_id == "CUST001"
        assert txn.amount == Money.of("10600")
        assert txn.transaction_type == TransactionType.REPAYMENT
        assert txn.transaction_date == date(2025, 2, 1)
        assert txn.payment_mode == PaymentMode.UPI
        assert txn.sequence == 1
        assert txn.created_by == "USER001"
        assert txn.is_repayment
        assert not txn.is_disbursement

    def test_disbursement_must_equal_principal(self):
        txn = build_transaction(self.loan, "120000", TransactionType.DISBURSEMENT, date(2025, 1, 1))
        assert txn.sequence == 0
        with pytest.raises(ValidationError):
            build_transaction(self.loan, "100000", TransactionType.DISBURSEMENT, date(2025, 1, 1))

    @pytest.mark.parametrize("amount", ["0", "-1", None, "abc"])
    def test_invalid_amount(self, amount):
        with pytest.raises(ValidationError):
            build_transaction(self.loan, amount, TransactionType.REPAYMENT, date(2025, 2, 1))

    def test_date_required(self):
        with pytest.raises(ValidationError):
            build_transaction(self.loan, "100", TransactionType.REPAYMENT, None)

    def test_unknown_type_and_mode(self):
        with pytest.raises(ValidationError):
            build_transaction(self.loan, "100", "Refund", date(2025, 2, 1))
        with pytest.raises(ValidationError):
            build_transaction(self.loan, "100", "Repayment", date(2025, 2, 1), payment_mode="Card")

    def test_payment_mode_only_on_repayments(self):
        with pytest.raises(ValidationError):
            build_transaction(self.loan, "120000", TransactionType.DISBURSEMENT,
                              date(2025, 1, 1), payment_mode=PaymentMode.CASH)

    def test_repayment_needs_active_loan(self):
        defaulted = transition(self.loan, LoanStatus.DEFAULTED)
        with pytest.raises(InvalidStateError):
            build_transaction(defaulted, "100", TransactionType.REPAYMENT, date(2025, 2, 1))

    def test_round_trip_through_dict(self):
        txn = build_transaction(self.loan, "10600", TransactionType.REPAYMENT, date(2025, 2, 1),
                                payment_mode=PaymentMode.BANK)
        assert Transaction.from_dict(txn.to_dict()) == txn


class TestCoercion:
    """Test enum coercion helpers"""

    def test_transaction_type(self):
        assert coerce_transaction_type("disbursement") == TransactionType.DISBURSEMENT
        assert coerce_transaction_type("REPAYMENT") == TransactionType.REPAYMENT

    def test_payment_mode(self):
        assert coerce_payment_mode(None) is None
        assert coerce_payment_mode("") is None
        assert coerce_payment_mode("Cheque") == PaymentMode.CHEQUE
        assert coerce_payment_mode(PaymentMode.CASH) == PaymentMode.CASH

    def test_only_description_is_mutable(self):
        assert MUTABLE_TRANSACTION_FIELDS == {"description"}


class TestTransactionRecord:
    """Test direct construction guards"""

    def test_amount_must_be_positive(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError):
            Transaction(
                id="TXN001", created_at=now, updated_at=now,
                loan_id="LOAN001", customer_id="CUST001", amount=Money.zero(),
                transaction_type=TransactionType.REPAYMENT, transaction_date=date(2025, 1, 1)
            )
