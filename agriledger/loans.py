"""
Loan Module

The persisted loan record: immutable terms, lifecycle status and the
running repayment balance. Interest is simple and non-compounding:

    total_repayment_amount = principal * (1 + interest_rate / 100)
    remaining_balance      = max(0, total_repayment_amount - amount_paid)
"""

from decimal import Decimal, ROUND_CEILING
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum

from .currency import Money, Currency
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "PENDING"              # Application submitted by the farmer
    APPROVED = "APPROVED"            # Approved, funds not yet disbursed
    REJECTED = "REJECTED"            # Application declined
    ACTIVE = "ACTIVE"                # Disbursed and in repayment
    OVERDUE = "OVERDUE"              # Past due date with balance outstanding
    REPAID = "REPAID"                # Fully repaid
    DEFAULTED = "DEFAULTED"          # Written down by an operator decision
    RESTRUCTURED = "RESTRUCTURED"    # Replaced by a successor loan with new terms
    CANCELLED = "CANCELLED"          # Withdrawn before disbursement


TERMINAL_STATUSES = frozenset({
    LoanStatus.REJECTED, LoanStatus.REPAID, LoanStatus.DEFAULTED, LoanStatus.CANCELLED,
})

PAYABLE_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE})

MAX_TEXT_LENGTH = 1000

# Terminal and settled: no outstanding obligation remains
ARCHIVABLE_STATUSES = frozenset({
    LoanStatus.REJECTED, LoanStatus.REPAID, LoanStatus.CANCELLED,
})

# Statuses a loan can only hold after it has been disbursed
_DISBURSED_STATUSES = frozenset({
    LoanStatus.ACTIVE, LoanStatus.OVERDUE, LoanStatus.REPAID,
    LoanStatus.DEFAULTED, LoanStatus.RESTRUCTURED,
})


class LoanType(Enum):
    """What the credit finances"""
    EQUIPMENT = "EQUIPMENT"
    SEEDS = "SEEDS"
    FERTILIZER = "FERTILIZER"
    SEASONAL = "SEASONAL"
    INFRASTRUCTURE = "INFRASTRUCTURE"
    EMERGENCY = "EMERGENCY"
    OTHER = "OTHER"


class RepaymentFrequency(Enum):
    """Payment frequency for loan repayments"""
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    BIANNUALLY = "BIANNUALLY"
    ANNUALLY = "ANNUALLY"
    LUMP_SUM = "LUMP_SUM"
    CUSTOM = "CUSTOM"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def total_repayment_for(principal: Money, interest_rate: Decimal) -> Money:
    """Principal plus simple interest, rounded once"""
    return Money(principal.amount * (Decimal('1') + interest_rate / Decimal('100')), principal.currency)


@dataclass
class Loan(StorageRecord):
    """One credit extension to one farmer"""
    farmer_id: str
    principal: Money
    interest_rate: Decimal               # Percentage, e.g. Decimal('10') for 10%
    duration_months: int
    loan_type: LoanType
    issued_date: datetime
    due_date: datetime
    repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    status: LoanStatus = LoanStatus.PENDING

    # Running balance
    amount_paid: Optional[Money] = None
    remaining_balance: Optional[Money] = None

    # Lifecycle fields
    approved_by: Optional[str] = None
    approved_date: Optional[datetime] = None
    disbursed_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    last_payment_date: Optional[datetime] = None

    collateral: Optional[str] = None
    notes: Optional[str] = None

    # Restructuring links and soft deletion
    restructured_from_id: Optional[str] = None
    restructured_into_id: Optional[str] = None
    archived_at: Optional[datetime] = None

    # Optimistic concurrency counter, bumped on every persisted write
    version: int = 0

    def __post_init__(self):
        if not isinstance(self.interest_rate, Decimal):
            self.interest_rate = Decimal(str(self.interest_rate))

        zero_amount = Money.zero(self.principal.currency)
        if self.amount_paid is None:
            self.amount_paid = zero_amount
        if self.remaining_balance is None:
            self.remaining_balance = (self.total_repayment_amount - self.amount_paid).clamp_to_zero()

        if self.amount_paid.currency != self.principal.currency:
            raise ValueError("Amount paid currency must match principal currency")
        if self.remaining_balance.currency != self.principal.currency:
            raise ValueError("Remaining balance currency must match principal currency")

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def total_repayment_amount(self) -> Money:
        """Principal plus simple (non-compounding) interest"""
        return total_repayment_for(self.principal, self.interest_rate)

    @property
    def monthly_payment(self) -> Money:
        """Even split of the total repayment across the loan duration"""
        if self.duration_months <= 0:
            return Money.zero(self.currency)
        return self.total_repayment_amount / Decimal(self.duration_months)

    @property
    def percentage_paid(self) -> Decimal:
        total = self.total_repayment_amount.amount
        if total == 0:
            return Decimal('0.00')
        return (self.amount_paid.amount / total * Decimal('100')).quantize(Decimal('0.01'))

    @property
    def remaining_payments(self) -> int:
        monthly = self.monthly_payment
        if monthly.is_zero():
            return self.duration_months
        return int((self.remaining_balance.amount / monthly.amount).to_integral_value(rounding=ROUND_CEILING))

    @property
    def overpayment(self) -> Money:
        """Excess paid beyond the total repayment amount; kept, never refunded here"""
        return (self.amount_paid - self.total_repayment_amount).clamp_to_zero()

    @property
    def status_display(self) -> str:
        return self.status.value.capitalize()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def accepts_payments(self) -> bool:
        return self.status in PAYABLE_STATUSES

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def is_past_due(self, as_of: datetime) -> bool:
        """Past its due date with a balance outstanding"""
        return as_of > self.due_date and self.remaining_balance.is_positive()

    def invariant_violations(self) -> List[str]:
        """Every broken loan invariant, empty when the record is consistent"""
        problems = []

        expected = (self.total_repayment_amount - self.amount_paid).clamp_to_zero()
        if self.remaining_balance != expected:
            problems.append(
                f"remaining_balance {self.remaining_balance.to_string()} != "
                f"total {self.total_repayment_amount.to_string()} - paid {self.amount_paid.to_string()}"
            )
        if self.remaining_balance.is_negative():
            problems.append("remaining_balance is negative")
        if self.amount_paid.is_negative():
            problems.append("amount_paid is negative")
        if not self.principal.is_positive():
            problems.append("principal must be positive")
        if self.due_date < self.issued_date:
            problems.append("due_date precedes issued_date")

        if self.rejection_reason and self.status != LoanStatus.REJECTED:
            problems.append(f"rejection_reason set on a {self.status.value} loan")
        if self.status == LoanStatus.REJECTED and not self.rejection_reason:
            problems.append("REJECTED loan without rejection_reason")
        if self.approved_date and self.status in (LoanStatus.PENDING, LoanStatus.REJECTED):
            problems.append(f"approved_date set on a {self.status.value} loan")
        if self.disbursed_date and self.status not in _DISBURSED_STATUSES:
            problems.append(f"disbursed_date set on a {self.status.value} loan")
        if self.last_payment_date and self.amount_paid.is_zero():
            problems.append("last_payment_date set without any payment")
        if self.status == LoanStatus.REPAID and self.remaining_balance.is_positive():
            problems.append("REPAID loan with outstanding balance")
        return problems

    def to_dict(self) -> Dict[str, Any]:
        """Convert loan to a storage document"""
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'farmer_id': self.farmer_id,
            'currency': self.currency.code,
            'principal': str(self.principal.amount),
            'interest_rate': str(self.interest_rate),
            'duration_months': self.duration_months,
            'loan_type': self.loan_type.value,
            'repayment_frequency': self.repayment_frequency.value,
            'status': self.status.value,
            'amount_paid': str(self.amount_paid.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'approved_by': self.approved_by,
            'rejection_reason': self.rejection_reason,
            'collateral': self.collateral,
            'notes': self.notes,
            'restructured_from_id': self.restructured_from_id,
            'restructured_into_id': self.restructured_into_id,
            'archived': self.archived_at is not None,
            'version': self.version,
        }

        # Convert dates
        for field in ['issued_date', 'due_date', 'approved_date', 'disbursed_date',
                      'last_payment_date', 'archived_at']:
            value = getattr(self, field)
            result[field] = value.isoformat() if value else None

        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Convert a storage document to a loan"""
        currency = Currency[data['currency']]

        def get_money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        def get_datetime(field: str) -> Optional[datetime]:
            if data.get(field):
                return datetime.fromisoformat(data[field])
            return None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            farmer_id=data['farmer_id'],
            principal=get_money('principal'),
            interest_rate=Decimal(data['interest_rate']),
            duration_months=data['duration_months'],
            loan_type=LoanType(data['loan_type']),
            repayment_frequency=RepaymentFrequency(data['repayment_frequency']),
            issued_date=get_datetime('issued_date'),
            due_date=get_datetime('due_date'),
            status=LoanStatus(data['status']),
            amount_paid=get_money('amount_paid'),
            remaining_balance=get_money('remaining_balance'),
            approved_by=data.get('approved_by'),
            approved_date=get_datetime('approved_date'),
            disbursed_date=get_datetime('disbursed_date'),
            rejection_reason=data.get('rejection_reason'),
            last_payment_date=get_datetime('last_payment_date'),
            collateral=data.get('collateral'),
            notes=data.get('notes'),
            restructured_from_id=data.get('restructured_from_id'),
            restructured_into_id=data.get('restructured_into_id'),
            archived_at=get_datetime('archived_at'),
            version=data.get('version', 0),
        )


def loan_summary(loan: Loan) -> Dict[str, Any]:
    """Plain view of a loan with its derived repayment figures"""
    summary = loan.to_dict()
    summary.update({
        'status_display': loan.status_display,
        'total_repayment_amount': str(loan.total_repayment_amount.amount),
        'monthly_payment': str(loan.monthly_payment.amount),
        'percentage_paid': str(loan.percentage_paid),
        'remaining_payments': loan.remaining_payments,
        'overpayment': str(loan.overpayment.amount),
    })
    return summary
