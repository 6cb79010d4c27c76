"""
Request validation schemas

Pydantic models for the inputs of loan operations. Any pydantic failure is
reported as a ValidationError naming the first offending field.
"""

from decimal import Decimal
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import AfterValidator, BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .currency import Currency, fraction_digits
from .errors import ValidationError
from .loans import LoanStatus, LoanType, MAX_TEXT_LENGTH, RepaymentFrequency, as_utc
from .state_machine import (
    Approve, Cancel, Command, Disburse, MarkDefault, MarkOverdue, Reject, Restructure,
)


ModelT = TypeVar("ModelT", bound=BaseModel)


def _max_two_decimals(value: Decimal) -> Decimal:
    if fraction_digits(value) > 2:
        raise ValueError("cannot have more than 2 decimal places")
    return value


TwoPlaces = Annotated[Decimal, AfterValidator(_max_two_decimals)]
UTCDateTime = Annotated[datetime, AfterValidator(as_utc)]


class CreateLoanRequest(BaseModel):
    """Farmer's loan application"""
    farmer_id: str = Field(..., min_length=1)
    amount: TwoPlaces = Field(..., gt=0, description="Principal")
    currency: Optional[str] = Field(None, description="ISO code; configured default when omitted")
    interest_rate: TwoPlaces = Field(..., ge=0, le=100, description="Percentage")
    duration_months: int = Field(..., ge=1)
    loan_type: LoanType
    repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    issued_date: Optional[UTCDateTime] = None
    due_date: UTCDateTime
    collateral: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)
    notes: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)

    @field_validator("farmer_id")
    @classmethod
    def strip_farmer_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("farmer_id cannot be blank")
        return value.strip()

    @field_validator("currency")
    @classmethod
    def known_currency(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        code = value.strip().upper()
        if code not in Currency.__members__:
            raise ValueError(f"unsupported currency {value}")
        return code

    @model_validator(mode="after")
    def due_after_issue(self) -> "CreateLoanRequest":
        if self.issued_date is not None and self.due_date < self.issued_date:
            raise ValidationError("Due date must be on or after the issued date", field="due_date")
        return self


class StatusUpdateRequest(BaseModel):
    """Target status plus the inputs that transition needs"""
    status: LoanStatus
    approved_by: Optional[str] = None
    approved_date: Optional[UTCDateTime] = None
    rejection_reason: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)
    disbursed_date: Optional[UTCDateTime] = None
    reason: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)
    decided_by: Optional[str] = None

    # Restructuring terms
    interest_rate: Optional[Decimal] = None
    duration_months: Optional[int] = None
    due_date: Optional[UTCDateTime] = None
    repayment_frequency: Optional[RepaymentFrequency] = None

    def to_command(self) -> Optional[Command]:
        """
        The state machine command for this update.

        None for PENDING and REPAID, which no status update can reach:
        PENDING is initial and REPAID follows only from payments.
        """
        status = self.status
        if status == LoanStatus.APPROVED:
            return Approve(approver_id=self.approved_by, approved_date=self.approved_date)
        if status == LoanStatus.REJECTED:
            return Reject(reason=self.rejection_reason)
        if status == LoanStatus.CANCELLED:
            return Cancel(reason=self.reason)
        if status == LoanStatus.ACTIVE:
            return Disburse(disbursed_date=self.disbursed_date)
        if status == LoanStatus.OVERDUE:
            # Judged against the service clock, never a caller-supplied time
            return MarkOverdue()
        if status == LoanStatus.DEFAULTED:
            return MarkDefault(decided_by=self.decided_by, reason=self.reason)
        if status == LoanStatus.RESTRUCTURED:
            return Restructure(
                interest_rate=self.interest_rate,
                duration_months=self.duration_months,
                due_date=self.due_date,
                repayment_frequency=self.repayment_frequency,
            )
        return None


class PaymentRequest(BaseModel):
    """A settled payment to apply to a loan"""
    amount: TwoPlaces = Field(..., gt=0)
    payment_date: Optional[UTCDateTime] = None
    notes: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)

    @field_validator("amount", mode="before")
    @classmethod
    def exact_amount(cls, value: Any) -> Any:
        if isinstance(value, (float, bool)):
            raise ValueError("must be a decimal string or Decimal, not a float")
        return value


class LoanSearchQuery(BaseModel):
    """Filters and pagination for loan search"""
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)
    sort_by: Literal["issued_date", "due_date", "created_at", "amount", "status", "interest_rate"] = "issued_date"
    sort_order: Literal["ASC", "DESC"] = "DESC"

    farmer_id: Optional[str] = None
    status: Optional[List[LoanStatus]] = None
    loan_type: Optional[List[LoanType]] = None
    min_amount: Optional[Decimal] = Field(None, ge=0)
    max_amount: Optional[Decimal] = Field(None, ge=0)
    from_date: Optional[UTCDateTime] = None
    to_date: Optional[UTCDateTime] = None
    overdue: Optional[bool] = None
    approved_by: Optional[str] = None
    include_archived: bool = False

    @field_validator("status", "loan_type", mode="before")
    @classmethod
    def as_list(cls, value: Any) -> Any:
        if value is None or isinstance(value, (list, tuple, set)):
            return value
        return [value]

    @field_validator("sort_order", mode="before")
    @classmethod
    def upper_sort_order(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def check_ranges(self) -> "LoanSearchQuery":
        if (self.min_amount is not None and self.max_amount is not None
                and self.max_amount < self.min_amount):
            raise ValidationError("Maximum amount must be greater than or equal to minimum amount",
                                  field="max_amount")
        if self.from_date is not None and self.to_date is not None and self.to_date < self.from_date:
            raise ValidationError("To date must be on or after from date", field="to_date")
        return self


def parse_request(model_cls: Type[ModelT], data: Union[ModelT, Dict[str, Any], None]) -> ModelT:
    """Validate raw input into `model_cls`, raising ValidationError on failure"""
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data or {})
    except PydanticValidationError as e:
        problems = [
            {
                "field": ".".join(str(part) for part in error["loc"]) or None,
                "message": error["msg"],
            }
            for error in e.errors()
        ]
        first = problems[0]
        message = f"{first['field']}: {first['message']}" if first["field"] else first["message"]
        raise ValidationError(message, field=first["field"], details={"errors": problems}) from e
