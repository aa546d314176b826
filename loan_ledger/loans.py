"""
Loan Module

Loan entity, lifecycle status table and the field-level invariant guard.
Every Loan snapshot is validated on construction, so an invalid loan can
never be built, stored or returned.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone, date
from dataclasses import dataclass, replace
from typing import Any, Dict, FrozenSet, Optional, Union
from enum import Enum
import calendar
import uuid

from .errors import ValidationError, InvalidStateError
from .money import Money, AmountLike
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "Pending"
    ACTIVE = "Active"          # Accepting repayments
    COMPLETED = "Completed"    # All installments consumed
    DEFAULTED = "Defaulted"    # Set by an administrative action
    CLOSED = "Closed"          # Terminal manual close


OPEN_STATUSES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.ACTIVE, LoanStatus.PENDING, LoanStatus.DEFAULTED
})

LOAN_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING: frozenset({LoanStatus.ACTIVE, LoanStatus.CLOSED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.COMPLETED, LoanStatus.DEFAULTED, LoanStatus.CLOSED}),
    LoanStatus.DEFAULTED: frozenset({LoanStatus.CLOSED}),
    LoanStatus.COMPLETED: frozenset(),
    LoanStatus.CLOSED: frozenset(),
}

# Fields an administrator may edit without touching loan accounting
MUTABLE_LOAN_FIELDS = frozenset({"description", "end_date"})


def parse_date(value: Union[date, datetime, str, None], field_name: str) -> Optional[date]:
    """Coerce a date, datetime or ISO string to a date"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            raise ValidationError(f"{field_name} must be an ISO date, got {value!r}")
    raise ValidationError(f"{field_name} must be a date, got {type(value).__name__}")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the end of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass
class Loan(StorageRecord):
    """Loan record with its running amortization counters"""
    customer_id: str
    principal_amount: Money
    interest_rate: Decimal              # Percent, e.g. 12.50
    tenure_months: int
    emi_amount: Money                   # Nominal fixed installment
    total_payable_amount: Money         # Principal + total interest
    start_date: date
    paid_emis: int = 0
    pending_emis: Optional[int] = None
    next_emi_amount: Optional[Money] = None
    installment_date: Optional[date] = None  # Next due date; None once fully paid
    status: LoanStatus = LoanStatus.ACTIVE
    end_date: Optional[date] = None
    description: Optional[str] = None
    version: int = 1                    # Optimistic-concurrency counter
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    def __post_init__(self):
        if self.pending_emis is None:
            self.pending_emis = self.tenure_months - self.paid_emis
        if self.next_emi_amount is None:
            self.next_emi_amount = self.emi_amount
        validate_loan_invariants(self)

    @property
    def is_open(self) -> bool:
        """Open loans block a new loan for the same customer"""
        return self.status in OPEN_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def is_completed(self) -> bool:
        return self.status == LoanStatus.COMPLETED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Rebuild a Loan from its stored dictionary"""
        def money(key: str) -> Optional[Money]:
            return Money(Decimal(data[key])) if data.get(key) is not None else None

        return cls(
            id=data['id'],
            created_at=cls.parse_timestamp(data['created_at']),
            updated_at=cls.parse_timestamp(data['updated_at']),
            customer_id=data['customer_id'],
            principal_amount=money('principal_amount'),
            interest_rate=Decimal(data['interest_rate']),
            tenure_months=data['tenure_months'],
            emi_amount=money('emi_amount'),
            total_payable_amount=money('total_payable_amount'),
            start_date=date.fromisoformat(data['start_date']),
            paid_emis=data['paid_emis'],
            pending_emis=data['pending_emis'],
            next_emi_amount=money('next_emi_amount'),
            installment_date=parse_date(data.get('installment_date'), 'installment_date'),
            status=LoanStatus(data['status']),
            end_date=parse_date(data.get('end_date'), 'end_date'),
            description=data.get('description'),
            version=data.get('version', 1),
            created_by=data.get('created_by'),
            updated_by=data.get('updated_by')
        )


def validate_loan_invariants(loan: Loan) -> None:
    """
    Enforce the field-level invariants of a loan snapshot

    Raises:
        ValidationError: If any invariant is violated
    """
    if isinstance(loan.tenure_months, bool) or not isinstance(loan.tenure_months, int) \
            or loan.tenure_months <= 0:
        raise ValidationError(f"tenure_months must be a positive integer, got {loan.tenure_months!r}")
    if not loan.principal_amount.is_positive():
        raise ValidationError("principal_amount must be positive")
    if not loan.emi_amount.is_positive():
        raise ValidationError("emi_amount must be positive")
    if loan.total_payable_amount < loan.principal_amount:
        raise ValidationError("total_payable_amount cannot be less than principal_amount")
    if not loan.interest_rate.is_finite() or loan.interest_rate < 0:
        raise ValidationError("interest_rate must be a non-negative number")
    if loan.paid_emis < 0 or loan.pending_emis < 0:
        raise ValidationError("EMI counters cannot be negative")
    if loan.paid_emis + loan.pending_emis != loan.tenure_months:
        raise ValidationError(
            f"paid_emis ({loan.paid_emis}) + pending_emis ({loan.pending_emis}) "
            f"must equal tenure_months ({loan.tenure_months})"
        )
    if loan.next_emi_amount.is_negative():
        raise ValidationError("next_emi_amount cannot be negative")
    if loan.pending_emis == 0 and loan.installment_date is not None:
        raise ValidationError("A fully paid loan has no next installment date")
    if loan.status == LoanStatus.COMPLETED and loan.pending_emis != 0:
        raise ValidationError("A completed loan cannot have pending EMIs")
    if loan.end_date is not None and loan.end_date < loan.start_date:
        raise ValidationError("end_date cannot be before start_date")


def _positive_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be an integer, got {value!r}")
    if value <= 0:
        raise ValidationError(f"{field_name} must be positive")
    return value


def _money(value: Optional[AmountLike], field_name: str) -> Money:
    if value is None:
        raise ValidationError(f"{field_name} is required")
    return Money.of(value)


def build_new_loan(
    customer_id: str,
    principal_amount: AmountLike,
    interest_rate: Union[Decimal, int, str],
    tenure_months: int,
    emi_amount: Optional[AmountLike],
    total_payable_amount: AmountLike,
    start_date: Union[date, str],
    acting_user: Optional[str] = None,
    end_date: Union[date, str, None] = None,
    description: Optional[str] = None,
    now: Optional[datetime] = None
) -> Loan:
    """
    Validate create-loan input and build the opening snapshot

    The loan opens Active with no paid installments, the full tenure
    pending, the first installment due on the start date.

    Raises:
        ValidationError: If any input constraint is violated
    """
    if not customer_id:
        raise ValidationError("customer_id is required")
    tenure = _positive_int(tenure_months, "tenure_months")
    principal = _money(principal_amount, "principal_amount")
    total_payable = _money(total_payable_amount, "total_payable_amount")
    if emi_amount is None:
        # Original records allow EMI to be omitted; derive the flat installment
        emi = Money(total_payable.amount / Decimal(tenure))
    else:
        emi = Money.of(emi_amount)

    try:
        rate = interest_rate if isinstance(interest_rate, Decimal) else Decimal(str(interest_rate))
    except InvalidOperation:
        raise ValidationError(f"interest_rate must be numeric, got {interest_rate!r}")

    start = parse_date(start_date, "start_date")
    if start is None:
        raise ValidationError("start_date is required")

    now = now or datetime.now(timezone.utc)
    return Loan(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        customer_id=customer_id,
        principal_amount=principal,
        interest_rate=rate,
        tenure_months=tenure,
        emi_amount=emi,
        total_payable_amount=total_payable,
        start_date=start,
        paid_emis=0,
        pending_emis=tenure,
        next_emi_amount=emi,
        installment_date=start,
        status=LoanStatus.ACTIVE,
        end_date=parse_date(end_date, "end_date"),
        description=description,
        created_by=acting_user,
        updated_by=acting_user
    )


def is_open(loan: Loan) -> bool:
    """Check whether the loan blocks another loan for its customer"""
    return loan.is_open


def apply_repayment(loan: Loan, amount: AmountLike, value_date: Optional[date] = None) -> Loan:
    """
    Apply one repayment to a loan snapshot and return the next snapshot

    Each repayment consumes one installment whatever its size. The next due
    amount carries the shortfall (or surplus) forward:
    ``max(next_emi_amount - amount + emi_amount, 0)``. The next installment
    date is the start date advanced by the number of paid installments.
    The loan completes when no installments remain.

    Raises:
        ValidationError: If the amount is not positive
        InvalidStateError: If the loan is not Active
    """
    payment = Money.of(amount)
    if not payment.is_positive():
        raise ValidationError("Repayment amount must be positive")
    if loan.status != LoanStatus.ACTIVE:
        raise InvalidStateError(f"Loan {loan.id} is {loan.status.value}; repayments need an Active loan")

    paid = loan.paid_emis + 1
    pending = max(loan.tenure_months - paid, 0)
    next_emi = (loan.next_emi_amount - payment + loan.emi_amount).clamp_to_zero()

    if pending > 0:
        installment_date = add_months(loan.start_date, paid)
        status = loan.status
        end_date = loan.end_date
    else:
        installment_date = None
        status = LoanStatus.COMPLETED
        end_date = loan.end_date or value_date
        if end_date is not None and end_date < loan.start_date:
            end_date = loan.start_date

    return replace(
        loan,
        paid_emis=paid,
        pending_emis=pending,
        next_emi_amount=next_emi,
        installment_date=installment_date,
        status=status,
        end_date=end_date
    )


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    """Check the lifecycle transition table"""
    return target in LOAN_TRANSITIONS[current]


def transition(loan: Loan, target: LoanStatus, acting_user: Optional[str] = None,
               now: Optional[datetime] = None) -> Loan:
    """
    Move a loan to a new lifecycle status

    Raises:
        InvalidStateError: If the transition is not in the table
    """
    if not can_transition(loan.status, target):
        raise InvalidStateError(
            f"Cannot move loan {loan.id} from {loan.status.value} to {target.value}"
        )
    if target == LoanStatus.COMPLETED and loan.pending_emis != 0:
        raise InvalidStateError("A loan completes only when its last installment is repaid")
    return replace(loan, status=target, updated_by=acting_user,
                   updated_at=now or datetime.now(timezone.utc))


def coerce_status(value: Union[LoanStatus, str]) -> LoanStatus:
    """Accept a LoanStatus or its name/value"""
    if isinstance(value, LoanStatus):
        return value
    for status in LoanStatus:
        if value in (status.value, status.name) or str(value).lower() == status.value.lower():
            return status
    raise ValidationError(f"Unknown loan status {value!r}")
