"""
Test suite for loans module

Tests the loan record: simple-interest figures, derived repayment
metrics, consistency checks and storage documents. All financial math
must be precise.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from agriledger.currency import Money, Currency
from agriledger.loans import (
    Loan, LoanStatus, LoanType, RepaymentFrequency, loan_summary, as_utc,
    total_repayment_for, TERMINAL_STATUSES, ARCHIVABLE_STATUSES
)


ISSUED = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)
DUE = ISSUED + timedelta(days=365)


def make_loan(principal='1000.00', rate='10', status=LoanStatus.PENDING, **kwargs) -> Loan:
    fields = dict(
        id="loan-001",
        created_at=ISSUED,
        updated_at=ISSUED,
        farmer_id="farmer-001",
        principal=Money(Decimal(principal), Currency.USD),
        interest_rate=Decimal(rate),
        duration_months=12,
        loan_type=LoanType.SEEDS,
        issued_date=ISSUED,
        due_date=DUE,
        status=status,
    )
    fields.update(kwargs)
    return Loan(**fields)


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


class TestLoanFigures:
    """Test simple-interest totals and derived repayment figures"""

    def test_total_repayment_amount(self):
        """1000.00 at 10% repays 1100.00"""
        loan = make_loan()
        assert loan.total_repayment_amount == usd('1100.00')
        assert loan.remaining_balance == usd('1100.00')
        assert loan.amount_paid == usd('0.00')

    def test_total_is_rounded_once(self):
        """333.33 * 1.005 = 334.99665 rounds half-up to 335.00"""
        assert total_repayment_for(usd('333.33'), Decimal('0.5')) == usd('335.00')

    def test_zero_interest(self):
        loan = make_loan(principal='250.00', rate='0')
        assert loan.total_repayment_amount == usd('250.00')

    def test_interest_rate_is_coerced_to_decimal(self):
        loan = make_loan(rate='12.5')
        assert isinstance(loan.interest_rate, Decimal)
        assert loan.total_repayment_amount == usd('1125.00')

    def test_monthly_payment_and_remaining_payments(self):
        loan = make_loan()
        assert loan.monthly_payment == usd('91.67')
        assert loan.remaining_payments == 12

        half_paid = make_loan(amount_paid=usd('550.00'), remaining_balance=usd('550.00'))
        assert half_paid.remaining_payments == 6

    def test_percentage_paid(self):
        """Percentage is measured against the total repayment amount"""
        assert make_loan().percentage_paid == Decimal('0.00')

        loan = make_loan(amount_paid=usd('550.00'), remaining_balance=usd('550.00'))
        assert loan.percentage_paid == Decimal('50.00')

        loan = make_loan(amount_paid=usd('100.00'), remaining_balance=usd('1000.00'))
        assert loan.percentage_paid == Decimal('9.09')

    def test_overpayment(self):
        loan = make_loan(status=LoanStatus.REPAID, amount_paid=usd('1200.00'),
                         remaining_balance=usd('0.00'))
        assert loan.overpayment == usd('100.00')
        assert make_loan().overpayment == usd('0.00')

    def test_status_display(self):
        assert make_loan(status=LoanStatus.ACTIVE).status_display == "Active"
        assert make_loan(status=LoanStatus.OVERDUE).status_display == "Overdue"

    def test_currency_mismatch_rejected(self):
        with pytest.raises(ValueError):
            make_loan(amount_paid=Money(Decimal('1'), Currency.KES))


class TestLoanStatusHelpers:
    """Test status classification helpers"""

    def test_terminal_statuses(self):
        assert make_loan(status=LoanStatus.REPAID).is_terminal
        assert make_loan(status=LoanStatus.DEFAULTED).is_terminal
        assert not make_loan(status=LoanStatus.OVERDUE).is_terminal
        assert LoanStatus.RESTRUCTURED not in TERMINAL_STATUSES

    def test_accepts_payments(self):
        assert make_loan(status=LoanStatus.ACTIVE).accepts_payments
        assert make_loan(status=LoanStatus.OVERDUE).accepts_payments
        assert not make_loan(status=LoanStatus.APPROVED).accepts_payments

    def test_archivable_statuses(self):
        assert ARCHIVABLE_STATUSES == {LoanStatus.REJECTED, LoanStatus.REPAID, LoanStatus.CANCELLED}

    def test_is_past_due(self):
        loan = make_loan(status=LoanStatus.ACTIVE)
        assert not loan.is_past_due(DUE)
        assert loan.is_past_due(DUE + timedelta(seconds=1))

        settled = make_loan(status=LoanStatus.REPAID, amount_paid=usd('1100.00'),
                            remaining_balance=usd('0.00'))
        assert not settled.is_past_due(DUE + timedelta(days=30))

    def test_as_utc_treats_naive_as_utc(self):
        naive = datetime(2026, 5, 1, 8, 30)
        assert as_utc(naive) == datetime(2026, 5, 1, 8, 30, tzinfo=timezone.utc)

        nairobi = timezone(timedelta(hours=3))
        assert as_utc(datetime(2026, 5, 1, 11, 30, tzinfo=nairobi)).hour == 8


class TestLoanInvariants:
    """Test consistency checks run before every write"""

    def test_consistent_loan(self):
        assert make_loan().invariant_violations() == []

        active = make_loan(status=LoanStatus.ACTIVE, approved_by="officer-1",
                           approved_date=ISSUED, disbursed_date=ISSUED,
                           amount_paid=usd('100.00'), remaining_balance=usd('1000.00'),
                           last_payment_date=ISSUED + timedelta(days=30))
        assert active.invariant_violations() == []

    def test_balance_mismatch(self):
        loan = make_loan(status=LoanStatus.ACTIVE, amount_paid=usd('100.00'),
                         remaining_balance=usd('1100.00'))
        violations = loan.invariant_violations()
        assert len(violations) == 1
        assert "remaining_balance" in violations[0]

    def test_rejection_reason_only_on_rejected(self):
        assert make_loan(status=LoanStatus.REJECTED).invariant_violations() == [
            "REJECTED loan without rejection_reason"
        ]
        assert make_loan(status=LoanStatus.REJECTED, rejection_reason="No collateral").invariant_violations() == []
        assert make_loan(rejection_reason="stale").invariant_violations() != []

    def test_lifecycle_dates(self):
        assert make_loan(approved_date=ISSUED).invariant_violations() != []
        assert make_loan(status=LoanStatus.APPROVED, disbursed_date=ISSUED).invariant_violations() != []
        assert make_loan(last_payment_date=ISSUED).invariant_violations() != []

    def test_due_before_issue(self):
        loan = make_loan(due_date=ISSUED - timedelta(days=1))
        assert "due_date precedes issued_date" in loan.invariant_violations()

    def test_repaid_with_balance(self):
        loan = make_loan(status=LoanStatus.REPAID)
        assert "REPAID loan with outstanding balance" in loan.invariant_violations()


class TestLoanSerialization:
    """Test storage documents"""

    def test_round_trip(self):
        loan = make_loan(
            status=LoanStatus.ACTIVE, approved_by="officer-1", approved_date=ISSUED,
            disbursed_date=ISSUED, amount_paid=usd('100.00'), remaining_balance=usd('1000.00'),
            last_payment_date=ISSUED + timedelta(days=10), collateral="2 ha maize",
            repayment_frequency=RepaymentFrequency.QUARTERLY, version=3,
        )
        data = loan.to_dict()

        assert data['principal'] == '1000.00'
        assert data['currency'] == 'USD'
        assert data['status'] == 'ACTIVE'
        assert data['archived'] is False
        assert data['disbursed_date'] == ISSUED.isoformat()

        assert Loan.from_dict(data) == loan

    def test_loan_summary(self):
        summary = loan_summary(make_loan())
        assert summary['total_repayment_amount'] == '1100.00'
        assert summary['monthly_payment'] == '91.67'
        assert summary['percentage_paid'] == '0.00'
        assert summary['remaining_payments'] == 12
        assert summary['status_display'] == 'Pending'
