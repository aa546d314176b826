"""
Loan Lifecycle Module

Orchestrates every state-changing loan operation: creation with its
disbursement, recording repayments, administrative edits, status changes
and deletion. Each operation is one atomic storage unit; audit rows are
written inside the unit and domain events are published after it commits.
"""

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone, date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import (
    LoanLedgerError, ValidationError, ConflictError, InvalidStateError,
    NotFoundError, ConcurrencyConflictError, PersistenceError, DuplicateRecordError
)
from .money import AmountLike
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .config import LoanLedgerConfig, get_config
from .logging_config import get_logger, log_action
from .events import (
    EventDispatcher, EventPayload, LoanEvent,
    loan_created_event, transaction_recorded_event, loan_completed_event, loan_event
)
from .loans import (
    Loan, LoanStatus, OPEN_STATUSES, MUTABLE_LOAN_FIELDS,
    build_new_loan, transition, coerce_status, parse_date
)
from .transactions import (
    Transaction, TransactionType, PaymentMode, build_transaction, coerce_transaction_type
)
from .amortization import next_state, reconcile, ReconciliationResult
from .ledger import TransactionLedger


class LoanLifecycleManager:
    """
    Manages loans from disbursement through completion

    Uniqueness rules are enforced by claim rows inserted in the same unit
    as the change: ``open_loans`` holds one row per customer with an open
    loan, and the ledger's ``loan_disbursements`` one row per loan. Loan
    rows are written with a compare-and-swap on ``version``.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LoanLedgerConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.event_dispatcher = event_dispatcher
        self.config = config or get_config()
        self.ledger = TransactionLedger(storage)
        self.logger = get_logger("loan_ledger.lifecycle")

        self.loans_table = "loans"
        self.open_loans_table = "open_loans"

    # Loan creation

    def create_loan(
        self,
        customer_id: str,
        principal_amount: AmountLike,
        interest_rate: Union[Decimal, int, str],
        tenure_months: int,
        emi_amount: Optional[AmountLike],
        total_payable_amount: AmountLike,
        start_date: Union[date, str],
        acting_user: Optional[str] = None,
        end_date: Union[date, str, None] = None,
        description: Optional[str] = None
    ) -> Loan:
        """
        Create a loan and record its disbursement

        Args:
            customer_id: Borrower id
            principal_amount: Amount disbursed
            interest_rate: Annual rate in percent
            tenure_months: Number of monthly installments
            emi_amount: Fixed installment; derived from the total when omitted
            total_payable_amount: Principal plus total interest
            start_date: Disbursement date and first installment date
            acting_user: Audit user id
            end_date: Planned end date
            description: Free text

        Returns:
            The created Loan

        Raises:
            ValidationError: If the input is malformed (nothing is written)
            ConflictError: If the customer already has an open loan
        """
        loan = build_new_loan(
            customer_id=customer_id,
            principal_amount=principal_amount,
            interest_rate=interest_rate,
            tenure_months=tenure_months,
            emi_amount=emi_amount,
            total_payable_amount=total_payable_amount,
            start_date=start_date,
            acting_user=acting_user,
            end_date=end_date,
            description=description
        )
        disbursement = build_transaction(
            loan,
            loan.principal_amount,
            TransactionType.DISBURSEMENT,
            loan.start_date,
            acting_user=acting_user,
            description="Loan disbursed",
            now=loan.created_at
        )

        with self._unit("create_loan", acting_user, f"customer:{customer_id}"):
            existing = self.get_open_loan(customer_id)
            if existing is not None:
                raise ConflictError(
                    f"Customer {customer_id} already has an open loan {existing.id}"
                )
            self._claim_open_loan(loan)
            self.storage.insert(self.loans_table, loan.id, loan.to_dict())
            self.ledger.append(disbursement)
            self.ledger.claim_disbursement(loan.id, disbursement.id)

            self._audit(
                AuditEventType.LOAN_CREATED, "loan", loan.id,
                {
                    "customer_id": customer_id,
                    "principal_amount": loan.principal_amount.to_string(),
                    "interest_rate": str(loan.interest_rate),
                    "tenure_months": loan.tenure_months,
                    "emi_amount": loan.emi_amount.to_string(),
                    "total_payable_amount": loan.total_payable_amount.to_string(),
                    "start_date": loan.start_date.isoformat()
                },
                acting_user
            )
            self._audit(
                AuditEventType.DISBURSEMENT_RECORDED, "transaction", disbursement.id,
                {"loan_id": loan.id, "amount": disbursement.amount.to_string()},
                acting_user
            )

        log_action(
            self.logger, "info", "Loan created",
            user_id=acting_user, action="create_loan", resource=f"loan:{loan.id}",
            extra={
                "customer_id": customer_id,
                "principal_amount": loan.principal_amount.to_string(),
                "tenure_months": loan.tenure_months,
                "disbursement_id": disbursement.id
            }
        )
        self._publish(loan_created_event(loan))
        return loan

    # Ledger entries

    def record_transaction(
        self,
        loan_id: str,
        amount: AmountLike,
        transaction_type: Union[TransactionType, str],
        transaction_date: Union[date, str, None],
        acting_user: Optional[str] = None,
        payment_mode: Union[PaymentMode, str, None] = None,
        description: Optional[str] = None
    ) -> Tuple[Transaction, Loan]:
        """
        Record a ledger entry against a loan and advance its amortization

        Returns:
            The stored transaction and the updated loan

        Raises:
            ValidationError: Malformed input
            NotFoundError: Unknown loan
            ConflictError: Second disbursement for the loan
            InvalidStateError: Repayment against a loan that is not Active
            ConcurrencyConflictError: Lost every compare-and-swap retry
        """
        kind = coerce_transaction_type(transaction_type)

        def attempt() -> Tuple[Transaction, Loan]:
            loan = self.require_loan(loan_id)
            if kind == TransactionType.DISBURSEMENT:
                raise ConflictError(f"Loan {loan_id} already has its disbursement")

            transaction = build_transaction(
                loan, amount, kind, transaction_date,
                acting_user=acting_user, payment_mode=payment_mode, description=description
            )
            updated = self._next_version(next_state(loan, transaction), acting_user)

            with self._unit("record_transaction", acting_user, f"loan:{loan_id}"):
                self._swap(loan, updated)
                self.ledger.append(transaction)
                self._audit(
                    AuditEventType.REPAYMENT_RECORDED, "transaction", transaction.id,
                    {
                        "loan_id": loan.id,
                        "amount": transaction.amount.to_string(),
                        "sequence": transaction.sequence,
                        "paid_emis": updated.paid_emis,
                        "pending_emis": updated.pending_emis,
                        "next_emi_amount": updated.next_emi_amount.to_string()
                    },
                    acting_user
                )
                if updated.is_completed:
                    self._release_open_loan(updated)
                    self._audit(
                        AuditEventType.LOAN_COMPLETED, "loan", loan.id,
                        {"end_date": updated.end_date.isoformat() if updated.end_date else None},
                        acting_user
                    )
            return transaction, updated

        transaction, loan = self._with_retries("record_transaction", f"loan:{loan_id}", attempt)

        log_action(
            self.logger, "info", f"Transaction recorded: {transaction.transaction_type.value}",
            user_id=acting_user, action="record_transaction", resource=f"transaction:{transaction.id}",
            extra={
                "loan_id": loan.id,
                "amount": transaction.amount.to_string(),
                "paid_emis": loan.paid_emis,
                "pending_emis": loan.pending_emis,
                "status": loan.status.value
            }
        )
        self._publish(transaction_recorded_event(transaction))
        if loan.is_completed:
            self._publish(loan_completed_event(loan))
        return transaction, loan

    def record_repayment_for_customer(
        self,
        customer_id: str,
        amount: AmountLike,
        transaction_date: Union[date, str, None],
        acting_user: Optional[str] = None,
        payment_mode: Union[PaymentMode, str, None] = None,
        description: Optional[str] = None
    ) -> Tuple[Transaction, Loan]:
        """
        Record a repayment against the customer's Active loan

        Raises:
            NotFoundError: If the customer has no Active loan
        """
        loan = self.get_open_loan(customer_id)
        if loan is None or not loan.is_active:
            raise NotFoundError(f"No active loan found for customer {customer_id}")
        return self.record_transaction(
            loan.id, amount, TransactionType.REPAYMENT, transaction_date,
            acting_user=acting_user, payment_mode=payment_mode, description=description
        )

    # Administrative operations

    def update_loan(self, loan_id: str, changes: Dict[str, Any],
                    acting_user: Optional[str] = None) -> Loan:
        """
        Edit non-financial loan fields (description, end_date)

        Raises:
            ValidationError: If a financial or counter field is touched
            NotFoundError: Unknown loan
        """
        forbidden = set(changes) - MUTABLE_LOAN_FIELDS
        if forbidden:
            raise ValidationError(
                f"Cannot change {', '.join(sorted(forbidden))} on an existing loan"
            )
        normalized = dict(changes)
        if "end_date" in normalized:
            normalized["end_date"] = parse_date(normalized["end_date"], "end_date")

        def attempt() -> Loan:
            loan = self.require_loan(loan_id)
            updated = self._next_version(replace(loan, **normalized), acting_user)
            with self._unit("update_loan", acting_user, f"loan:{loan_id}"):
                self._swap(loan, updated)
                self._audit(
                    AuditEventType.LOAN_UPDATED, "loan", loan_id,
                    {key: (value.isoformat() if isinstance(value, date) else value)
                     for key, value in normalized.items()},
                    acting_user
                )
            return updated

        loan = self._with_retries("update_loan", f"loan:{loan_id}", attempt)
        log_action(
            self.logger, "info", "Loan updated",
            user_id=acting_user, action="update_loan", resource=f"loan:{loan_id}",
            extra={"fields": sorted(normalized)}
        )
        self._publish(loan_event(LoanEvent.LOAN_UPDATED, loan, fields=sorted(normalized)))
        return loan

    def change_status(self, loan_id: str, new_status: Union[LoanStatus, str],
                      acting_user: Optional[str] = None) -> Loan:
        """
        Move a loan along the lifecycle table (e.g. mark Defaulted, Close)

        Raises:
            InvalidStateError: If the transition is not allowed
            NotFoundError: Unknown loan
        """
        target = coerce_status(new_status)

        def attempt() -> Tuple[LoanStatus, Loan]:
            loan = self.require_loan(loan_id)
            updated = self._next_version(transition(loan, target, acting_user), acting_user)
            with self._unit("change_status", acting_user, f"loan:{loan_id}"):
                self._swap(loan, updated)
                if updated.status not in OPEN_STATUSES:
                    self._release_open_loan(updated)
                self._audit(
                    AuditEventType.LOAN_STATUS_CHANGED, "loan", loan_id,
                    {"old_status": loan.status.value, "new_status": target.value},
                    acting_user
                )
            return loan.status, updated

        old_status, loan = self._with_retries("change_status", f"loan:{loan_id}", attempt)
        log_action(
            self.logger, "info", f"Loan status changed to {target.value}",
            user_id=acting_user, action="change_status", resource=f"loan:{loan_id}",
            extra={"old_status": old_status.value, "new_status": target.value}
        )
        self._publish(loan_event(LoanEvent.LOAN_STATUS_CHANGED, loan, old_status=old_status.value))
        return loan

    def delete_loan(self, loan_id: str, acting_user: Optional[str] = None) -> bool:
        """
        Delete a loan that has no repayments, together with its disbursement

        Raises:
            NotFoundError: Unknown loan
            InvalidStateError: If repayments were recorded against the loan
        """
        with self._unit("delete_loan", acting_user, f"loan:{loan_id}"):
            loan = self.require_loan(loan_id)
            if loan.paid_emis > 0 or self.ledger.has_repayments(loan_id):
                raise InvalidStateError(
                    f"Loan {loan_id} has repayments and cannot be deleted"
                )
            removed = self.ledger.remove_for_loan(loan_id)
            self.storage.delete(self.loans_table, loan_id)
            self._release_open_loan(loan)
            self._audit(
                AuditEventType.LOAN_DELETED, "loan", loan_id,
                {"customer_id": loan.customer_id, "transactions_removed": removed},
                acting_user
            )

        log_action(
            self.logger, "info", "Loan deleted",
            user_id=acting_user, action="delete_loan", resource=f"loan:{loan_id}",
            extra={"customer_id": loan.customer_id}
        )
        self._publish(loan_event(LoanEvent.LOAN_DELETED, loan))
        return True

    def update_transaction(self, transaction_id: str, changes: Dict[str, Any],
                           acting_user: Optional[str] = None) -> Transaction:
        """
        Edit a ledger entry's description

        Raises:
            ValidationError: If any other field is touched
            NotFoundError: Unknown transaction
        """
        with self._unit("update_transaction", acting_user, f"transaction:{transaction_id}"):
            transaction = self.ledger.update_metadata(transaction_id, changes, acting_user)
            self._audit(
                AuditEventType.TRANSACTION_UPDATED, "transaction", transaction_id,
                dict(changes), acting_user
            )

        log_action(
            self.logger, "info", "Transaction metadata updated",
            user_id=acting_user, action="update_transaction",
            resource=f"transaction:{transaction_id}", extra={"fields": sorted(changes)}
        )
        self._publish(EventPayload(
            event_type=LoanEvent.TRANSACTION_UPDATED,
            entity_type="transaction",
            entity_id=transaction_id,
            data={"transaction_id": transaction_id, "loan_id": transaction.loan_id,
                  "fields": sorted(changes)}
        ))
        return transaction

    def delete_transaction(self, transaction_id: str, acting_user: Optional[str] = None) -> None:
        """
        Ledger entries are never deleted

        Raises:
            NotFoundError: Unknown transaction
            InvalidStateError: Always, for an existing transaction
        """
        self.ledger.require(transaction_id)
        log_action(
            self.logger, "warning", "Refused transaction deletion",
            user_id=acting_user, action="delete_transaction",
            resource=f"transaction:{transaction_id}"
        )
        raise InvalidStateError(
            f"Transaction {transaction_id} cannot be deleted; the ledger is append-only"
        )

    # Queries

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self.ledger.get(transaction_id)

    def get_loan_transactions(self, loan_id: str) -> List[Transaction]:
        return self.ledger.for_loan(loan_id)

    def get_customer_loans(self, customer_id: str) -> List[Loan]:
        """Get all loans for a customer, oldest first"""
        rows = self.storage.find(self.loans_table, {'customer_id': customer_id})
        return sorted((Loan.from_dict(row) for row in rows), key=lambda loan: loan.created_at)

    def get_open_loan(self, customer_id: str) -> Optional[Loan]:
        """The customer's open loan, if any"""
        for loan in self.get_customer_loans(customer_id):
            if loan.is_open:
                return loan
        return None

    def verify_loan(self, loan_id: str, acting_user: Optional[str] = None) -> ReconciliationResult:
        """
        Replay a loan's ledger and compare it with the stored counters

        Raises:
            NotFoundError: Unknown loan
        """
        loan = self.require_loan(loan_id)
        result = reconcile(loan, self.ledger.for_loan(loan_id))

        level = "info" if result.consistent else "warning"
        log_action(
            self.logger, level, "Loan reconciled against ledger",
            user_id=acting_user, action="verify_loan", resource=f"loan:{loan_id}",
            extra={"consistent": result.consistent, "discrepancies": result.discrepancies}
        )
        self._audit(
            AuditEventType.LEDGER_RECONCILED, "loan", loan_id,
            {"consistent": result.consistent, "discrepancies": list(result.discrepancies)},
            acting_user
        )
        return result

    # Internals

    @contextmanager
    def _unit(self, action: str, acting_user: Optional[str], resource: str):
        """Atomic unit that maps storage failures onto the domain errors"""
        try:
            with self.storage.atomic():
                yield
        except DuplicateRecordError as e:
            log_action(self.logger, "warning", f"{action} conflicted: {e}",
                       user_id=acting_user, action=action, resource=resource)
            raise ConflictError(str(e)) from e
        except (ConflictError, ConcurrencyConflictError) as e:
            log_action(self.logger, "warning", f"{action} conflicted: {e}",
                       user_id=acting_user, action=action, resource=resource)
            raise
        except LoanLedgerError:
            raise
        except Exception as e:
            log_action(self.logger, "error", f"{action} failed and was rolled back: {e}",
                       user_id=acting_user, action=action, resource=resource)
            raise PersistenceError(f"{action} failed: {e}") from e

    def _with_retries(self, action: str, resource: str, attempt: Callable[[], Any]) -> Any:
        attempts = max(self.config.max_write_retries, 0) + 1
        for number in range(1, attempts + 1):
            try:
                return attempt()
            except ConcurrencyConflictError:
                if number == attempts:
                    raise
                log_action(self.logger, "info", f"Retrying {action} after a concurrent write",
                           action=action, resource=resource, extra={"attempt": number})

    def _next_version(self, loan: Loan, acting_user: Optional[str]) -> Loan:
        return replace(loan, version=loan.version + 1, updated_by=acting_user,
                       updated_at=datetime.now(timezone.utc))

    def _swap(self, current: Loan, updated: Loan) -> None:
        if not self.storage.compare_and_save(self.loans_table, current.id,
                                             updated.to_dict(), current.version):
            raise ConcurrencyConflictError(
                f"Loan {current.id} was modified concurrently (expected version {current.version})"
            )

    def _claim_open_loan(self, loan: Loan) -> None:
        try:
            self.storage.insert(self.open_loans_table, loan.customer_id, {
                'customer_id': loan.customer_id,
                'loan_id': loan.id
            })
        except DuplicateRecordError as e:
            raise ConflictError(f"Customer {loan.customer_id} already has an open loan") from e

    def _release_open_loan(self, loan: Loan) -> None:
        claim = self.storage.load(self.open_loans_table, loan.customer_id)
        if claim and claim.get('loan_id') == loan.id:
            self.storage.delete(self.open_loans_table, loan.customer_id)

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               metadata: Dict[str, Any], acting_user: Optional[str]) -> None:
        if self.config.enable_audit_logging:
            self.audit_trail.log_event(event_type, entity_type, entity_id,
                                       metadata=metadata, user_id=acting_user)

    def _publish(self, event: EventPayload) -> None:
        if self.event_dispatcher is not None and self.config.enable_events:
            self.event_dispatcher.publish(event)
