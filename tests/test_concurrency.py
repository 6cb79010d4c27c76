"""
Concurrency tests for loan mutations

Parallel payments on one loan must all apply exactly once, in some
serial order, on every embedded storage backend.
"""

import threading
import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from agriledger.config import AgriLedgerConfig
from agriledger.currency import Money, Currency
from agriledger.loans import LoanStatus
from agriledger.service import LoanService
from agriledger.storage import InMemoryStorage, SQLiteStorage
from agriledger.sweep import OverdueSweep


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


def make_storage(backend: str):
    if backend == "sqlite":
        return SQLiteStorage(":memory:")
    return InMemoryStorage()


def make_service(storage) -> LoanService:
    return LoanService(storage, config=AgriLedgerConfig(lock_timeout_seconds=30),
                       clock=lambda: NOW)


def open_loan(service: LoanService, amount: str, due_in_days: int = 90):
    loan = service.create_loan({
        "farmer_id": "coop-17",
        "amount": amount,
        "interest_rate": "0",
        "duration_months": 3,
        "loan_type": "SEASONAL",
        "issued_date": NOW - timedelta(days=120),
        "due_date": NOW + timedelta(days=due_in_days),
    })
    service.update_loan_status(loan.id, {"status": "APPROVED", "approved_by": "officer-1"})
    return service.update_loan_status(loan.id, {"status": "ACTIVE"})


def run_threads(targets):
    threads = [threading.Thread(target=target) for target in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    assert not any(thread.is_alive() for thread in threads)


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
class TestParallelPayments:
    """Test serialization of concurrent payments"""

    def test_parallel_payments_on_one_loan(self, backend):
        storage = make_storage(backend)
        service = make_service(storage)
        workers = 20
        installment = Decimal('5.00')
        loan = open_loan(service, amount='100.00')

        barrier = threading.Barrier(workers)
        errors = []

        def pay():
            barrier.wait()
            try:
                service.record_payment(loan.id, installment)
            except Exception as e:
                errors.append(e)

        run_threads([pay] * workers)

        assert errors == []
        final = service.get_loan_by_id(loan.id)
        assert final.amount_paid == usd('100.00')
        assert final.remaining_balance == usd('0.00')
        assert final.status == LoanStatus.REPAID
        assert final.version == 3 + workers

        history = service.get_payment_history(loan.id)
        assert [entry.sequence for entry in history] == list(range(1, workers + 1))
        balances = [entry.balance_after.amount for entry in history]
        assert balances == sorted(balances, reverse=True)
        assert history[-1].status_after == LoanStatus.REPAID
        assert all(entry.status_after == LoanStatus.ACTIVE for entry in history[:-1])

        assert service.reconcile_loan(loan.id)['consistent']
        assert service.verify_audit_integrity()['valid']
        storage.close()

    def test_sweep_racing_payments(self, backend):
        """Every past-due loan ends REPAID whether the sweep or the payment won"""
        storage = make_storage(backend)
        service = make_service(storage)
        loans = [open_loan(service, amount='100.00', due_in_days=-1) for _ in range(8)]

        errors = []
        results = []

        def pay(loan_id):
            try:
                service.record_payment(loan_id, Decimal('100.00'))
            except Exception as e:
                errors.append(e)

        def sweep():
            results.append(OverdueSweep(service, batch_size=3).run())

        run_threads([sweep] + [lambda loan_id=loan.id: pay(loan_id) for loan in loans])

        assert errors == []
        result = results[0]
        assert result.failed == []
        assert result.transitioned + result.skipped == result.examined
        for loan in loans:
            final = service.get_loan_by_id(loan.id)
            assert final.status == LoanStatus.REPAID
            assert service.reconcile_loan(loan.id)['consistent']
        storage.close()


class TestIndependentLoans:
    """Locks on one loan never delay another"""

    def test_other_loan_proceeds_while_one_is_held(self):
        service = make_service(InMemoryStorage())
        held = open_loan(service, amount='100.00')
        free = open_loan(service, amount='100.00')
        done = threading.Event()

        def pay_free_loan():
            service.record_payment(free.id, Decimal('40.00'))
            done.set()

        with service.locks.hold(held.id):
            worker = threading.Thread(target=pay_free_loan)
            worker.start()
            assert done.wait(timeout=5)
            worker.join(timeout=5)

        assert service.get_loan_by_id(free.id).amount_paid == usd('40.00')
        assert service.get_loan_by_id(held.id).amount_paid == usd('0.00')
