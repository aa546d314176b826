"""
Transaction Module

Immutable records of money movement against a loan: one Disbursement when
the loan opens, then Repayments. Building a record validates it; the
record itself never mutates the loan.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
from enum import Enum
import uuid

from .errors import ValidationError, InvalidStateError
from .money import Money, AmountLike
from .storage import StorageRecord
from .loans import Loan, LoanStatus, parse_date


class TransactionType(Enum):
    """Kinds of ledger entries"""
    DISBURSEMENT = "Disbursement"  # Loan given
    REPAYMENT = "Repayment"        # Client paid


class PaymentMode(Enum):
    """How a repayment was received"""
    CASH = "Cash"
    BANK = "Bank"
    UPI = "UPI"
    CHEQUE = "Cheque"


# Only non-financial metadata may change after a transaction is written
MUTABLE_TRANSACTION_FIELDS = frozenset({"description"})


def _coerce_enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    for member in enum_cls:
        if isinstance(value, str) and value.lower() in (member.value.lower(), member.name.lower()):
            return member
    allowed = ", ".join(m.value for m in enum_cls)
    raise ValidationError(f"{field_name} must be one of {allowed}, got {value!r}")


def coerce_transaction_type(value: Union[TransactionType, str]) -> TransactionType:
    return _coerce_enum(TransactionType, value, "transaction_type")


def check_description(value: Any) -> Optional[str]:
    """Descriptions are free text or absent"""
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"description must be text, got {type(value).__name__}")
    return value


def coerce_payment_mode(value: Union[PaymentMode, str, None]) -> Optional[PaymentMode]:
    if value is None or value == "":
        return None
    return _coerce_enum(PaymentMode, value, "payment_mode")


@dataclass
class Transaction(StorageRecord):
    """A single ledger entry"""
    loan_id: str
    customer_id: str                # Denormalized from the loan
    amount: Money
    transaction_type: TransactionType
    transaction_date: date          # Value date of the movement
    payment_mode: Optional[PaymentMode] = None
    description: Optional[str] = None
    sequence: int = 0               # 0 for the disbursement, n for the n-th repayment
    created_by: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValidationError("Transaction amount must be positive")
        if self.transaction_date is None:
            raise ValidationError("transaction_date is required")
        if self.payment_mode is not None and self.transaction_type != TransactionType.REPAYMENT:
            raise ValidationError("payment_mode applies to repayments only")

    @property
    def is_repayment(self) -> bool:
        return self.transaction_type == TransactionType.REPAYMENT

    @property
    def is_disbursement(self) -> bool:
        return self.transaction_type == TransactionType.DISBURSEMENT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        """Rebuild a Transaction from its stored dictionary"""
        return cls(
            id=data['id'],
            created_at=cls.parse_timestamp(data['created_at']),
            updated_at=cls.parse_timestamp(data['updated_at']),
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            amount=Money(Decimal(data['amount'])),
            transaction_type=TransactionType(data['transaction_type']),
            transaction_date=date.fromisoformat(data['transaction_date']),
            payment_mode=PaymentMode(data['payment_mode']) if data.get('payment_mode') else None,
            description=data.get('description'),
            sequence=data.get('sequence', 0),
            created_by=data.get('created_by')
        )


def build_transaction(
    loan: Loan,
    amount: AmountLike,
    transaction_type: Union[TransactionType, str],
    transaction_date: Union[date, str, None],
    acting_user: Optional[str] = None,
    payment_mode: Union[PaymentMode, str, None] = None,
    description: Optional[str] = None,
    now: Optional[datetime] = None
) -> Transaction:
    """
    Validate and build a ledger entry for a loan

    Args:
        loan: Current snapshot of the target loan
        amount: Positive amount
        transaction_type: Disbursement or Repayment
        transaction_date: Value date of the movement
        acting_user: Audit user id
        payment_mode: Cash, Bank, UPI or Cheque (repayments only)
        description: Free text

    Returns:
        The unsaved Transaction

    Raises:
        ValidationError: Malformed input
        InvalidStateError: Repayment against a loan that is not Active
    """
    if amount is None:
        raise ValidationError("amount is required")
    money = Money.of(amount)
    if not money.is_positive():
        raise ValidationError("Transaction amount must be positive")

    kind = coerce_transaction_type(transaction_type)
    mode = coerce_payment_mode(payment_mode)
    value_date = parse_date(transaction_date, "transaction_date")
    if value_date is None:
        raise ValidationError("transaction_date is required")

    if kind == TransactionType.REPAYMENT and loan.status != LoanStatus.ACTIVE:
        raise InvalidStateError(
            f"Loan {loan.id} is {loan.status.value}; repayments need an Active loan"
        )
    if kind == TransactionType.DISBURSEMENT and money != loan.principal_amount:
        raise ValidationError("Disbursement amount must equal the loan principal")

    now = now or datetime.now(timezone.utc)
    return Transaction(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        loan_id=loan.id,
        customer_id=loan.customer_id,
        amount=money,
        transaction_type=kind,
        transaction_date=value_date,
        payment_mode=mode,
        description=check_description(description),
        sequence=loan.paid_emis + 1 if kind == TransactionType.REPAYMENT else 0,
        created_by=acting_user
    )
