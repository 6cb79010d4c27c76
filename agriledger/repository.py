"""
Loan Repository

Explicit, injected persistence for loans. Every write goes through
`save()` with the version the caller read; a mismatch means another
writer committed in between and the write is refused.
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .errors import (
    ConcurrentModificationError, LedgerError, NotFoundError, ValidationError,
    persistence_guard,
)
from .loans import Loan, LoanStatus, PAYABLE_STATUSES
from .storage import StorageInterface


@dataclass
class LoanPage:
    """One page of search results"""
    loans: List[Loan]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


_SORT_KEYS: Dict[str, Callable[[Loan], Any]] = {
    'issued_date': lambda loan: loan.issued_date,
    'due_date': lambda loan: loan.due_date,
    'created_at': lambda loan: loan.created_at,
    'amount': lambda loan: loan.principal.amount,
    'status': lambda loan: loan.status.value,
    'interest_rate': lambda loan: loan.interest_rate,
}


class LoanRepository:
    """Loan persistence with optimistic version checks"""

    TABLE = "loans"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def get(self, loan_id: str) -> Optional[Loan]:
        with persistence_guard("loan read"):
            data = self.storage.load(self.TABLE, loan_id)
            return Loan.from_dict(data) if data else None

    def require(self, loan_id: str) -> Loan:
        loan = self.get(loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan

    def lock(self, loan_id: str, timeout: Optional[float] = None) -> None:
        """Row lock held until the current transaction ends, where the backend has one"""
        with persistence_guard("loan lock"):
            self.storage.lock_for_update(self.TABLE, loan_id, timeout)

    def _check_consistent(self, loan: Loan) -> None:
        violations = loan.invariant_violations()
        if violations:
            raise LedgerError(
                f"Refusing to persist inconsistent loan {loan.id}: {'; '.join(violations)}",
                {"loan_id": loan.id, "violations": violations},
            )

    def insert(self, loan: Loan) -> Loan:
        """Persist a new loan at version 1"""
        self._check_consistent(loan)
        with persistence_guard("loan insert"):
            if self.storage.exists(self.TABLE, loan.id):
                raise ValidationError(f"Loan with ID {loan.id} already exists", field="id")
            stored = replace(loan, version=1)
            self.storage.save(self.TABLE, stored.id, stored.to_dict())
            return stored

    def save(self, loan: Loan, expected_version: int) -> Loan:
        """Persist an update if the stored version is still `expected_version`"""
        self._check_consistent(loan)
        with persistence_guard("loan save"):
            current = self.storage.load(self.TABLE, loan.id)
            if current is None:
                raise NotFoundError("loan", loan.id)
            actual_version = current.get('version')
            if actual_version != expected_version:
                raise ConcurrentModificationError(loan.id, expected_version, actual_version)

            stored = replace(loan, version=expected_version + 1)
            self.storage.save(self.TABLE, stored.id, stored.to_dict())
            return stored

    def find_by_status(self, status: LoanStatus) -> List[Loan]:
        with persistence_guard("loan query"):
            return [Loan.from_dict(row)
                    for row in self.storage.find(self.TABLE, {'status': status.value})]

    def find_overdue_candidates(self, as_of: datetime) -> List[Loan]:
        """ACTIVE loans past their due date with a balance outstanding, oldest due first"""
        candidates = [loan for loan in self.find_by_status(LoanStatus.ACTIVE)
                      if loan.is_past_due(as_of)]
        return sorted(candidates, key=lambda loan: (loan.due_date, loan.id))

    def search(self, query, now: datetime) -> LoanPage:
        """
        Filter, sort and paginate loans.

        `query` carries the fields of a LoanSearchQuery. Reads committed
        state only and takes no locks.
        """
        with persistence_guard("loan search"):
            if query.farmer_id:
                rows = self.storage.find(self.TABLE, {'farmer_id': query.farmer_id})
            else:
                rows = self.storage.load_all(self.TABLE)
            loans = [Loan.from_dict(row) for row in rows]

        statuses = set(query.status or [])
        loan_types = set(query.loan_type or [])

        def matches(loan: Loan) -> bool:
            if loan.is_archived and not query.include_archived:
                return False
            if statuses and loan.status not in statuses:
                return False
            if loan_types and loan.loan_type not in loan_types:
                return False
            if query.min_amount is not None and loan.principal.amount < query.min_amount:
                return False
            if query.max_amount is not None and loan.principal.amount > query.max_amount:
                return False
            if query.from_date is not None and loan.issued_date < query.from_date:
                return False
            if query.to_date is not None and loan.issued_date > query.to_date:
                return False
            if query.approved_by and loan.approved_by != query.approved_by:
                return False
            if query.overdue is not None:
                past_due = loan.status in PAYABLE_STATUSES and loan.due_date < now
                if past_due != query.overdue:
                    return False
            return True

        selected = [loan for loan in loans if matches(loan)]
        sort_key = _SORT_KEYS[query.sort_by]
        descending = query.sort_order == "DESC"
        # Ties break on id, ascending
        selected.sort(key=lambda loan: loan.id)
        selected.sort(key=sort_key, reverse=descending)

        offset = (query.page - 1) * query.limit
        return LoanPage(
            loans=selected[offset:offset + query.limit],
            total=len(selected),
            page=query.page,
            limit=query.limit,
        )
