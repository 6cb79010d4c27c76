"""
Repayment Ledger Module

Append-only record of settled payments per loan. Entries are written once,
in the same atomic unit as the loan balance update, and never modified;
their sum is the loan's amount paid.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .currency import Money, Currency
from .errors import ConcurrentModificationError, persistence_guard
from .loans import Loan, LoanStatus
from .state_machine import PaymentApplication
from .storage import StorageInterface, StorageRecord


@dataclass
class LedgerEntry(StorageRecord):
    """One immutable payment event applied to a loan"""
    loan_id: str
    sequence: int
    amount: Money
    payment_date: datetime
    balance_before: Money
    balance_after: Money
    excess_amount: Money
    status_after: LoanStatus
    notes: Optional[str] = None

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'sequence': self.sequence,
            'currency': self.currency.code,
            'amount': str(self.amount.amount),
            'payment_date': self.payment_date.isoformat(),
            'balance_before': str(self.balance_before.amount),
            'balance_after': str(self.balance_after.amount),
            'excess_amount': str(self.excess_amount.amount),
            'status_after': self.status_after.value,
            'notes': self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            sequence=data['sequence'],
            amount=Money(Decimal(data['amount']), currency),
            payment_date=datetime.fromisoformat(data['payment_date']),
            balance_before=Money(Decimal(data['balance_before']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            excess_amount=Money(Decimal(data['excess_amount']), currency),
            status_after=LoanStatus(data['status_after']),
            notes=data.get('notes'),
        )


class RepaymentLedger:
    """Per-loan, sequence-ordered payment history"""

    TABLE = "loan_ledger_entries"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    @staticmethod
    def entry_id(loan_id: str, sequence: int) -> str:
        return f"{loan_id}:{sequence:06d}"

    def _load_entries(self, loan_id: str) -> List[LedgerEntry]:
        with persistence_guard("ledger read"):
            rows = self.storage.find(self.TABLE, {'loan_id': loan_id})
            return sorted((LedgerEntry.from_dict(row) for row in rows),
                          key=lambda entry: entry.sequence)

    def append(self, loan_id: str, application: PaymentApplication, now: datetime) -> LedgerEntry:
        """
        Write the next entry for a loan.

        Must run inside the transaction that persists the loan update. An
        existing entry at the next sequence means another writer got there
        first.
        """
        with persistence_guard("ledger append"):
            sequence = len(self.storage.find(self.TABLE, {'loan_id': loan_id})) + 1
            entry_id = self.entry_id(loan_id, sequence)
            if self.storage.exists(self.TABLE, entry_id):
                raise ConcurrentModificationError(loan_id, sequence - 1, sequence)

            entry = LedgerEntry(
                id=entry_id,
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                sequence=sequence,
                amount=application.amount,
                payment_date=application.payment_date,
                balance_before=application.balance_before,
                balance_after=application.balance_after,
                excess_amount=application.excess_amount,
                status_after=application.status_after,
                notes=application.notes,
            )
            self.storage.save(self.TABLE, entry.id, entry.to_dict())
            return entry

    def entries(self, loan_id: str) -> List[LedgerEntry]:
        """All entries of a loan, oldest first"""
        return self._load_entries(loan_id)

    def count(self, loan_id: str) -> int:
        return len(self._load_entries(loan_id))

    def total_paid(self, loan_id: str, currency: Currency) -> Money:
        total = Money.zero(currency)
        for entry in self._load_entries(loan_id):
            total = total + entry.amount
        return total

    def reconcile(self, loan: Loan) -> Dict[str, Any]:
        """Compare the ledger against the loan's balance fields"""
        ledger_total = self.total_paid(loan.id, loan.currency)
        expected_remaining = (loan.total_repayment_amount - loan.amount_paid).clamp_to_zero()
        violations = loan.invariant_violations()
        if ledger_total != loan.amount_paid:
            violations.append(
                f"ledger total {ledger_total.to_string()} != amount_paid {loan.amount_paid.to_string()}"
            )

        return {
            'loan_id': loan.id,
            'consistent': not violations,
            'entry_count': self.count(loan.id),
            'ledger_total': str(ledger_total.amount),
            'amount_paid': str(loan.amount_paid.amount),
            'total_repayment_amount': str(loan.total_repayment_amount.amount),
            'remaining_balance': str(loan.remaining_balance.amount),
            'expected_remaining': str(expected_remaining.amount),
            'overpayment': str(loan.overpayment.amount),
            'violations': violations,
        }
