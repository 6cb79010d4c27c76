"""
Loan State Machine

Pure decision function over the loan lifecycle. `decide()` takes the
current loan and a command and returns the loan as it should be after
the event, together with the side effects the caller must persist. It
never touches storage; a rejected command raises and leaves nothing to
undo.

    PENDING   --approve-->        APPROVED
    PENDING   --reject-->         REJECTED
    PENDING   --cancel-->         CANCELLED
    APPROVED  --disburse-->       ACTIVE
    APPROVED  --cancel-->         CANCELLED
    ACTIVE    --record_payment--> ACTIVE | REPAID
    ACTIVE    --mark_overdue-->   OVERDUE
    OVERDUE   --record_payment--> OVERDUE | REPAID
    OVERDUE   --mark_default-->   DEFAULTED
    ACTIVE    --restructure-->    RESTRUCTURED
    OVERDUE   --restructure-->    RESTRUCTURED
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import ClassVar, Dict, Optional, Tuple, Union

from .currency import Money, fraction_digits
from .errors import InvalidTransitionError, ValidationError
from .loans import Loan, LoanStatus, MAX_TEXT_LENGTH, RepaymentFrequency, as_utc, utcnow


class LoanEvent(Enum):
    """Events the lifecycle reacts to"""
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    DISBURSE = "disburse"
    RECORD_PAYMENT = "record_payment"
    MARK_OVERDUE = "mark_overdue"
    MARK_DEFAULT = "mark_default"
    RESTRUCTURE = "restructure"


class Effect(Enum):
    """Side effects a transition asks the caller to carry out"""
    APPEND_LEDGER_ENTRY = "append_ledger_entry"
    CREATE_SUCCESSOR_LOAN = "create_successor_loan"


TRANSITIONS: Dict[Tuple[LoanStatus, LoanEvent], LoanStatus] = {
    (LoanStatus.PENDING, LoanEvent.APPROVE): LoanStatus.APPROVED,
    (LoanStatus.PENDING, LoanEvent.REJECT): LoanStatus.REJECTED,
    (LoanStatus.PENDING, LoanEvent.CANCEL): LoanStatus.CANCELLED,
    (LoanStatus.APPROVED, LoanEvent.DISBURSE): LoanStatus.ACTIVE,
    (LoanStatus.APPROVED, LoanEvent.CANCEL): LoanStatus.CANCELLED,
    # Payments keep the status unless the balance reaches zero
    (LoanStatus.ACTIVE, LoanEvent.RECORD_PAYMENT): LoanStatus.ACTIVE,
    (LoanStatus.OVERDUE, LoanEvent.RECORD_PAYMENT): LoanStatus.OVERDUE,
    (LoanStatus.ACTIVE, LoanEvent.MARK_OVERDUE): LoanStatus.OVERDUE,
    (LoanStatus.OVERDUE, LoanEvent.MARK_DEFAULT): LoanStatus.DEFAULTED,
    (LoanStatus.ACTIVE, LoanEvent.RESTRUCTURE): LoanStatus.RESTRUCTURED,
    (LoanStatus.OVERDUE, LoanEvent.RESTRUCTURE): LoanStatus.RESTRUCTURED,
}


# Commands

@dataclass(frozen=True)
class Approve:
    approver_id: str
    approved_date: Optional[datetime] = None
    event: ClassVar[LoanEvent] = LoanEvent.APPROVE


@dataclass(frozen=True)
class Reject:
    reason: Optional[str]
    event: ClassVar[LoanEvent] = LoanEvent.REJECT


@dataclass(frozen=True)
class Cancel:
    reason: Optional[str] = None
    event: ClassVar[LoanEvent] = LoanEvent.CANCEL


@dataclass(frozen=True)
class Disburse:
    disbursed_date: Optional[datetime] = None
    event: ClassVar[LoanEvent] = LoanEvent.DISBURSE


@dataclass(frozen=True)
class RecordPayment:
    amount: Union[Decimal, Money, str, int]
    payment_date: Optional[datetime] = None
    notes: Optional[str] = None
    event: ClassVar[LoanEvent] = LoanEvent.RECORD_PAYMENT


@dataclass(frozen=True)
class MarkOverdue:
    as_of: Optional[datetime] = None
    event: ClassVar[LoanEvent] = LoanEvent.MARK_OVERDUE


@dataclass(frozen=True)
class MarkDefault:
    decided_by: Optional[str] = None
    reason: Optional[str] = None
    event: ClassVar[LoanEvent] = LoanEvent.MARK_DEFAULT


@dataclass(frozen=True)
class Restructure:
    interest_rate: Union[Decimal, str, int]
    duration_months: int
    due_date: datetime
    repayment_frequency: Optional[RepaymentFrequency] = None
    successor_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event: ClassVar[LoanEvent] = LoanEvent.RESTRUCTURE


Command = Union[Approve, Reject, Cancel, Disburse, RecordPayment,
                MarkOverdue, MarkDefault, Restructure]


@dataclass(frozen=True)
class PaymentApplication:
    """How one payment moved the running balance"""
    amount: Money
    payment_date: datetime
    balance_before: Money
    balance_after: Money
    excess_amount: Money
    status_after: LoanStatus
    notes: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    """Outcome of a successful decision"""
    event: LoanEvent
    from_status: LoanStatus
    to_status: LoanStatus
    loan: Loan
    command: Command
    effects: Tuple[Effect, ...] = ()
    payment: Optional[PaymentApplication] = None
    successor: Optional[Loan] = None

    @property
    def status_changed(self) -> bool:
        return self.from_status != self.to_status


# Input validation

def _required_text(value: Optional[str], field_name: str, message: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(message, field=field_name)
    return str(value).strip()


def _to_decimal(value, field_name: str) -> Decimal:
    if isinstance(value, Money):
        return value.amount
    if isinstance(value, (float, bool)) or value is None:
        raise ValidationError(f"{field_name} must be a decimal value", field=field_name)
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{field_name} must be a decimal value", field=field_name)
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number", field=field_name)
    return result


def payment_amount(value, loan: Loan) -> Money:
    """Validate a submitted payment amount in the loan's currency"""
    if isinstance(value, Money) and value.currency != loan.currency:
        raise ValidationError(
            f"Payment currency {value.currency.code} does not match loan currency {loan.currency.code}",
            field="amount",
        )
    amount = _to_decimal(value, "amount")
    if amount <= 0:
        raise ValidationError("Payment amount must be positive", field="amount")
    if fraction_digits(amount) > loan.currency.precision:
        raise ValidationError(
            f"Payment amount cannot have more than {loan.currency.precision} decimal places",
            field="amount",
        )
    return Money(amount, loan.currency)


def _validate_restructure(command: Restructure, now: datetime) -> Tuple[Decimal, datetime]:
    rate = _to_decimal(command.interest_rate, "interest_rate")
    if rate < 0 or rate > 100:
        raise ValidationError("Interest rate must be between 0 and 100", field="interest_rate")
    if fraction_digits(rate) > 2:
        raise ValidationError("Interest rate cannot have more than 2 decimal places",
                              field="interest_rate")
    if (not isinstance(command.duration_months, int) or isinstance(command.duration_months, bool)
            or command.duration_months < 1):
        raise ValidationError("Duration must be at least 1 month", field="duration_months")
    if command.due_date is None:
        raise ValidationError("Restructuring requires a new due date", field="due_date")
    _check_date(command.due_date, "due_date")
    due_date = as_utc(command.due_date)
    if due_date < now:
        raise ValidationError("New due date cannot be in the past", field="due_date")
    return rate, due_date


def _check_date(value, field_name: str) -> None:
    if value is not None and not isinstance(value, datetime):
        raise ValidationError(f"{field_name} must be a datetime", field=field_name)


def _validate(loan: Loan, command: Command, now: datetime):
    """Check command inputs before legality; returns normalized values"""
    if isinstance(command, Approve):
        _required_text(command.approver_id, "approved_by", "Approver ID is required for approval")
        _check_date(command.approved_date, "approved_date")
    elif isinstance(command, Reject):
        _required_text(command.reason, "rejection_reason",
                       "Rejection reason is required when rejecting a loan")
    elif isinstance(command, Disburse):
        _check_date(command.disbursed_date, "disbursed_date")
    elif isinstance(command, MarkOverdue):
        _check_date(command.as_of, "as_of")
    elif isinstance(command, RecordPayment):
        _check_date(command.payment_date, "payment_date")
        if command.notes is not None and len(command.notes) > MAX_TEXT_LENGTH:
            raise ValidationError(f"Notes cannot exceed {MAX_TEXT_LENGTH} characters", field="notes")
        return payment_amount(command.amount, loan)
    elif isinstance(command, Restructure):
        return _validate_restructure(command, now)
    elif not isinstance(command, (Cancel, MarkDefault)):
        raise ValidationError(f"Unsupported command {type(command).__name__}", field="status")
    return None


def _optional_date(value: Optional[datetime], now: datetime) -> datetime:
    return as_utc(value) if value is not None else now


# Decision

def decide(loan: Loan, command: Command, now: Optional[datetime] = None) -> Transition:
    """
    Decide the outcome of applying `command` to `loan`.

    Raises:
        ValidationError: malformed command input
        InvalidTransitionError: the event is not legal from the loan's status,
            or its guard does not hold
    """
    now = as_utc(now) if now is not None else utcnow()
    normalized = _validate(loan, command, now)

    event = command.event
    target = TRANSITIONS.get((loan.status, event))
    if target is None:
        raise InvalidTransitionError(loan.status.value, event.value)

    effects: Tuple[Effect, ...] = ()
    payment = None
    successor = None

    if isinstance(command, Approve):
        updated = replace(loan, status=target, approved_by=command.approver_id.strip(),
                          approved_date=_optional_date(command.approved_date, now))

    elif isinstance(command, Reject):
        updated = replace(loan, status=target, rejection_reason=command.reason.strip())

    elif isinstance(command, Cancel):
        updated = replace(loan, status=target)

    elif isinstance(command, Disburse):
        updated = replace(loan, status=target,
                          disbursed_date=_optional_date(command.disbursed_date, now))

    elif isinstance(command, RecordPayment):
        amount: Money = normalized
        new_amount_paid = loan.amount_paid + amount
        new_remaining = (loan.total_repayment_amount - new_amount_paid).clamp_to_zero()
        if new_remaining.is_zero():
            target = LoanStatus.REPAID
        payment = PaymentApplication(
            amount=amount,
            payment_date=_optional_date(command.payment_date, now),
            balance_before=loan.remaining_balance,
            balance_after=new_remaining,
            # Overpayment is kept on the ledger, not refunded
            excess_amount=(amount - loan.remaining_balance).clamp_to_zero(),
            status_after=target,
            notes=command.notes,
        )
        updated = replace(loan, status=target, amount_paid=new_amount_paid,
                          remaining_balance=new_remaining,
                          last_payment_date=payment.payment_date)
        effects = (Effect.APPEND_LEDGER_ENTRY,)

    elif isinstance(command, MarkOverdue):
        as_of = _optional_date(command.as_of, now)
        if not loan.is_past_due(as_of):
            raise InvalidTransitionError(
                loan.status.value, event.value,
                message=(f"Loan {loan.id} is not past due as of {as_of.isoformat()} "
                         f"(due {loan.due_date.isoformat()}, remaining "
                         f"{loan.remaining_balance.to_string()})"),
            )
        updated = replace(loan, status=target)

    elif isinstance(command, MarkDefault):
        updated = replace(loan, status=target)

    else:
        rate, due_date = normalized
        successor = Loan(
            id=command.successor_id,
            created_at=now,
            updated_at=now,
            farmer_id=loan.farmer_id,
            principal=loan.remaining_balance,
            interest_rate=rate,
            duration_months=command.duration_months,
            loan_type=loan.loan_type,
            issued_date=now,
            due_date=due_date,
            repayment_frequency=command.repayment_frequency or loan.repayment_frequency,
            status=LoanStatus.ACTIVE,
            approved_by=loan.approved_by,
            approved_date=now,
            disbursed_date=now,
            collateral=loan.collateral,
            notes=loan.notes,
            restructured_from_id=loan.id,
        )
        updated = replace(loan, status=target, restructured_into_id=successor.id)
        effects = (Effect.CREATE_SUCCESSOR_LOAN,)

    updated = replace(updated, updated_at=now)
    return Transition(
        event=event,
        from_status=loan.status,
        to_status=updated.status,
        loan=updated,
        command=command,
        effects=effects,
        payment=payment,
        successor=successor,
    )
