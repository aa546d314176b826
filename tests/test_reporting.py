"""
Test suite for reporting module

Tests loan summaries, paged listings, upcoming installments and
portfolio totals.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_ledger.errors import NotFoundError, ValidationError
from loan_ledger.storage import InMemoryStorage
from loan_ledger.audit import AuditTrail
from loan_ledger.config import LoanLedgerConfig
from loan_ledger.loans import LoanStatus
from loan_ledger.lifecycle import LoanLifecycleManager
from loan_ledger.reporting import LoanReporting, Page


def terms(principal="120000", total="127200", emi="10600", start=date(2025, 1, 1)):
    return dict(
        principal_amount=principal,
        interest_rate="6",
        tenure_months=12,
        emi_amount=emi,
        total_payable_amount=total,
        start_date=start
    )


class TestPage:
    """Test pagination arithmetic"""

    def test_flags(self):
        page = Page(items=[], total=25, page=2, limit=10)
        assert page.total_pages == 3
        assert page.has_next_page
        assert page.has_previous_page

    def test_last_page(self):
        page = Page(items=[], total=20, page=2, limit=10)
        assert not page.has_next_page
        assert page.to_dict()["pagination"]["total_pages"] == 2

    def test_empty(self):
        page = Page()
        assert page.total_pages == 0
        assert not page.has_next_page
        assert not page.has_previous_page


class TestLoanReporting:
    """Test read-only views"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        config = LoanLedgerConfig(default_page_size=2, max_page_size=3, upcoming_emi_window_days=7)
        self.manager = LoanLifecycleManager(self.storage, AuditTrail(self.storage), config=config)
        self.reporting = LoanReporting(self.storage, config)

        self.loan_a = self.manager.create_loan("CUST_A", **terms())
        self.loan_b = self.manager.create_loan("CUST_B", **terms("50000", "53000", "4416.67",
                                                                 date(2025, 1, 10)))
        self.loan_c = self.manager.create_loan("CUST_C", **terms("10000", "10600", "883.33",
                                                                 date(2025, 1, 20)))

        self.manager.record_transaction(self.loan_a.id, "10600", "Repayment", "2025-02-01",
                                        payment_mode="Cash")
        self.manager.record_transaction(self.loan_a.id, "5000", "Repayment", "2025-03-01",
                                        payment_mode="UPI")
        self.manager.change_status(self.loan_c.id, LoanStatus.CLOSED)

    def test_loan_summary(self):
        summary = self.reporting.loan_summary(self.loan_a.id)

        assert summary["payments_received"] == Decimal("15600.00")
        assert summary["pending_amount"] == Decimal("111600.00")
        assert summary["next_emi_amount"] == "16200.00"
        dates = [t["transaction_date"] for t in summary["transactions"]]
        assert dates == ["2025-03-01", "2025-02-01", "2025-01-01"]

    def test_loan_summary_missing(self):
        with pytest.raises(NotFoundError):
            self.reporting.loan_summary("missing")

    def test_list_loans_default_page(self):
        """Newest first, default page size from config"""
        page = self.reporting.list_loans()
        assert page.total == 3
        assert page.limit == 2
        assert [row["id"] for row in page.items] == [self.loan_c.id, self.loan_b.id]
        assert page.has_next_page

    def test_list_loans_filters(self):
        active = self.reporting.list_loans(status="Active")
        assert {row["id"] for row in active.items} == {self.loan_a.id, self.loan_b.id}

        by_customer = self.reporting.list_loans(customer_id="CUST_A")
        assert by_customer.total == 1
        assert by_customer.items[0]["payments_received"] == Decimal("15600.00")

    def test_list_loans_sorting(self):
        page = self.reporting.list_loans(sort_by="total_payable_amount", descending=False, limit=3)
        assert [row["id"] for row in page.items] == [self.loan_c.id, self.loan_b.id, self.loan_a.id]

        # Unknown sort fields fall back to creation time
        fallback = self.reporting.list_loans(sort_by="customer_name", descending=False, limit=3)
        assert fallback.items[0]["id"] == self.loan_a.id

    def test_limit_is_capped(self):
        page = self.reporting.list_loans(limit=50)
        assert page.limit == 3
        assert len(page.items) == 3

    def test_invalid_page(self):
        with pytest.raises(ValidationError):
            self.reporting.list_loans(page=0)

    def test_list_transactions_filters(self):
        repayments = self.reporting.list_transactions(transaction_type="Repayment", limit=3)
        assert repayments.total == 2
        assert [t["amount"] for t in repayments.items] == ["5000.00", "10600.00"]

        upi = self.reporting.list_transactions(payment_mode="upi")
        assert upi.total == 1

        by_loan = self.reporting.list_transactions(loan_id=self.loan_a.id, limit=3)
        assert by_loan.total == 3

        by_customer = self.reporting.list_transactions(customer_id="CUST_B")
        assert by_customer.total == 1

    def test_list_transactions_date_range(self):
        window = self.reporting.list_transactions(start_date="2025-01-15", end_date="2025-02-28")
        assert window.total == 2
        dates = {t["transaction_date"] for t in window.items}
        assert dates == {"2025-01-20", "2025-02-01"}

        with pytest.raises(ValidationError):
            self.reporting.list_transactions(start_date="2025-03-01", end_date="2025-01-01")

    def test_upcoming_emis(self):
        """Active loans due within the window, overdue ones flagged"""
        due = self.reporting.upcoming_emis(as_of=date(2025, 1, 5))

        # Loan A's next installment is 2025-03-01, outside the window; C is closed
        assert [row["loan_id"] for row in due] == [self.loan_b.id]
        assert due[0]["installment_date"] == date(2025, 1, 10)
        assert due[0]["next_emi_amount"] == Decimal("4416.67")
        assert not due[0]["overdue"]

        wider = self.reporting.upcoming_emis(as_of=date(2025, 1, 5), within_days=60)
        assert [row["loan_id"] for row in wider] == [self.loan_b.id, self.loan_a.id]

    def test_upcoming_emis_overdue(self):
        due = self.reporting.upcoming_emis(as_of=date(2025, 4, 1), within_days=0)
        assert {row["loan_id"] for row in due} == {self.loan_a.id, self.loan_b.id}
        assert all(row["overdue"] for row in due)
        loan_a_row = next(row for row in due if row["loan_id"] == self.loan_a.id)
        assert loan_a_row["next_emi_amount"] == Decimal("16200.00")
        assert loan_a_row["installment_number"] == 3

    def test_portfolio_totals(self):
        totals = self.reporting.portfolio_totals()

        assert totals["loan_count"] == 3
        assert totals["by_status"]["Active"] == 2
        assert totals["by_status"]["Closed"] == 1
        assert totals["by_status"]["Completed"] == 0
        assert totals["total_disbursed"] == Decimal("180000.00")
        assert totals["total_received"] == Decimal("15600.00")
        assert totals["total_pending"] == Decimal("164600.00")

    def test_reporting_never_writes(self):
        before = self.storage.get_all_data()
        self.reporting.list_loans()
        self.reporting.list_transactions()
        self.reporting.upcoming_emis()
        self.reporting.portfolio_totals()
        self.reporting.loan_summary(self.loan_a.id)
        after = self.storage.get_all_data()
        assert {k: v for k, v in after.items() if v} == {k: v for k, v in before.items() if v}
