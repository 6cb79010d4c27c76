"""
Loan Service

The single entry point for loan operations. Every mutation of a loan:

1. takes the per-loan lock (bounded wait, BusyError on timeout)
2. opens a storage transaction and, where the backend supports it,
   a row lock on the loan
3. reads the current loan and asks the state machine for the outcome
4. writes the ledger entry, any successor loan and the loan itself
   (version-checked) in that one transaction
5. commits, then records the audit event while still holding the lock,
   and publishes domain events after releasing it

A rejected mutation rolls back and leaves loan and ledger untouched.
Reads take no locks and see committed state only.
"""

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from .audit import AuditEventType, AuditTrail
from .config import AgriLedgerConfig, get_config
from .currency import Currency, Money
from .errors import (
    InvalidTransitionError, LedgerError, PersistenceError, ValidationError,
    persistence_guard,
)
from .events import DomainEvent, EventDispatcher, create_loan_event
from .ledger import LedgerEntry, RepaymentLedger
from .loans import ARCHIVABLE_STATUSES, Loan, LoanStatus, as_utc, utcnow
from .locking import LoanLockManager
from .logging_config import get_logger, log_action
from .repository import LoanPage, LoanRepository
from .state_machine import (
    Command, Effect, LoanEvent, MarkOverdue, RecordPayment, Transition, decide,
)
from .storage import StorageInterface
from .sweep import OverdueSweep
from .validation import (
    CreateLoanRequest, LoanSearchQuery, PaymentRequest, StatusUpdateRequest, parse_request,
)


_AUDIT_EVENTS = {
    LoanEvent.APPROVE: AuditEventType.LOAN_APPROVED,
    LoanEvent.REJECT: AuditEventType.LOAN_REJECTED,
    LoanEvent.CANCEL: AuditEventType.LOAN_CANCELLED,
    LoanEvent.DISBURSE: AuditEventType.LOAN_DISBURSED,
    LoanEvent.RECORD_PAYMENT: AuditEventType.LOAN_PAYMENT_RECORDED,
    LoanEvent.MARK_OVERDUE: AuditEventType.LOAN_OVERDUE,
    LoanEvent.MARK_DEFAULT: AuditEventType.LOAN_DEFAULTED,
    LoanEvent.RESTRUCTURE: AuditEventType.LOAN_RESTRUCTURED,
}


@dataclass
class AppliedTransition:
    """A committed transition and what it wrote"""
    transition: Optional[Transition]
    loan: Loan
    entry: Optional[LedgerEntry] = None
    successor: Optional[Loan] = None


class LoanService:
    """Orchestrates loan lifecycle operations under per-loan mutual exclusion"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        lock_manager: Optional[LoanLockManager] = None,
        config: Optional[AgriLedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or get_config()
        self.storage = storage
        self.repository = LoanRepository(storage)
        self.ledger = RepaymentLedger(storage)

        if audit_trail is None and self.config.enable_audit_logging:
            audit_trail = AuditTrail(storage)
        self.audit_trail = audit_trail

        if event_dispatcher is None and self.config.enable_domain_events:
            event_dispatcher = EventDispatcher()
        self.event_dispatcher = event_dispatcher

        self.locks = lock_manager or LoanLockManager(self.config.lock_timeout_seconds)
        self.clock = clock or utcnow
        self.logger = get_logger("agriledger.service")

    def now(self) -> datetime:
        return as_utc(self.clock())

    # Transactions and locking

    @contextmanager
    def _transaction(self, operation: str):
        """Storage transaction; backend failures surface as PersistenceError"""
        with persistence_guard(f"{operation} begin"):
            self.storage.begin_transaction()
        try:
            yield
        except BaseException:
            self.storage.rollback()
            raise
        try:
            with persistence_guard(f"{operation} commit"):
                self.storage.commit()
        except PersistenceError:
            self.storage.rollback()
            raise

    def _mutate(self, loan_id: str, action: str,
                change: Callable[[Loan, datetime], AppliedTransition],
                actor_id: Optional[str], correlation_id: str,
                audit: Optional[Callable[[AppliedTransition], None]] = None,
                publish: bool = True) -> AppliedTransition:
        """Run `change` on the current loan under the loan lock and one transaction"""
        try:
            with self.locks.hold(loan_id):
                with self._transaction(action):
                    self.repository.lock(loan_id, self.config.lock_timeout_seconds)
                    loan = self.repository.require(loan_id)
                    applied = change(loan, self.now())
                # Audit inside the lock so the chain follows commit order per loan
                if audit is not None:
                    audit(applied)
                else:
                    self._audit(applied, actor_id, correlation_id)
        except LedgerError as e:
            self._log_rejection(action, loan_id, e, actor_id, correlation_id)
            raise

        if publish:
            self._publish(applied)
        return applied

    def _log_rejection(self, action: str, loan_id: str, error: LedgerError,
                       actor_id: Optional[str], correlation_id: Optional[str]) -> None:
        log_action(
            self.logger, "warning", f"{action} rejected for loan {loan_id}: {error.message}",
            user_id=actor_id, action=action, resource="loan",
            correlation_id=correlation_id, loan_id=loan_id,
            extra={"kind": error.kind, "code": error.code, "retryable": error.retryable,
                   **error.details},
        )

    def _apply(self, loan_id: str, command: Command, actor_id: Optional[str] = None,
               correlation_id: Optional[str] = None) -> AppliedTransition:
        correlation_id = correlation_id or str(uuid.uuid4())

        def change(loan: Loan, now: datetime) -> AppliedTransition:
            transition = decide(loan, command, now)
            entry = None
            successor = None
            if Effect.APPEND_LEDGER_ENTRY in transition.effects:
                entry = self.ledger.append(loan.id, transition.payment, now)
            if Effect.CREATE_SUCCESSOR_LOAN in transition.effects:
                successor = self.repository.insert(transition.successor)
            saved = self.repository.save(transition.loan, expected_version=loan.version)
            return AppliedTransition(transition, saved, entry, successor)

        applied = self._mutate(loan_id, command.event.value, change, actor_id, correlation_id)

        transition = applied.transition
        log_action(
            self.logger, "info",
            f"Loan {loan_id} {transition.event.value}: "
            f"{transition.from_status.value} -> {transition.to_status.value}",
            user_id=actor_id, action=transition.event.value, resource="loan",
            correlation_id=correlation_id, loan_id=loan_id,
            extra={
                "from_status": transition.from_status.value,
                "to_status": transition.to_status.value,
                "version": applied.loan.version,
                "remaining_balance": str(applied.loan.remaining_balance.amount),
            },
        )
        return applied

    # Audit and events, after commit

    def _audit(self, applied: AppliedTransition, actor_id: Optional[str],
               correlation_id: Optional[str]) -> None:
        if self.audit_trail is None:
            return
        transition = applied.transition
        loan = applied.loan
        metadata: Dict[str, Any] = {
            "from_status": transition.from_status.value,
            "to_status": transition.to_status.value,
            "version": loan.version,
        }
        command = transition.command
        for name in ("approver_id", "reason", "decided_by", "disbursed_date"):
            value = getattr(command, name, None)
            if value is not None:
                metadata[name] = value
        if applied.entry is not None:
            metadata.update({
                "amount": applied.entry.amount.amount,
                "sequence": applied.entry.sequence,
                "balance_before": applied.entry.balance_before.amount,
                "balance_after": applied.entry.balance_after.amount,
                "excess_amount": applied.entry.excess_amount.amount,
            })
        if applied.successor is not None:
            metadata["successor_id"] = applied.successor.id

        records = [(_AUDIT_EVENTS[transition.event], loan.id, metadata)]
        if transition.event == LoanEvent.RECORD_PAYMENT and transition.to_status == LoanStatus.REPAID:
            records.append((AuditEventType.LOAN_REPAID, loan.id,
                            {"amount_paid": loan.amount_paid.amount,
                             "overpayment": loan.overpayment.amount}))
        if applied.successor is not None:
            records.append((AuditEventType.LOAN_CREATED, applied.successor.id,
                            {"restructured_from_id": loan.id,
                             "principal": applied.successor.principal.amount}))
        for event_type, entity_id, data in records:
            self.record_audit(event_type, "loan", entity_id, data, actor_id, correlation_id)

    def record_audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                     metadata: Dict[str, Any], actor_id: Optional[str],
                     correlation_id: Optional[str]) -> None:
        """Append to the audit trail; failures are logged, not raised"""
        if self.audit_trail is None:
            return
        try:
            self.audit_trail.log_event(event_type, entity_type, entity_id, metadata,
                                       user_id=actor_id, correlation_id=correlation_id)
        except Exception:
            # Mutation already committed
            self.logger.exception(f"Failed to write audit event {event_type.value} for {entity_id}")

    def _publish(self, applied: AppliedTransition) -> None:
        if self.event_dispatcher is None:
            return
        transition = applied.transition
        loan = applied.loan
        events = []
        if transition.status_changed:
            events.append(create_loan_event(DomainEvent.LOAN_STATUS_CHANGED, loan,
                                            from_status=transition.from_status.value))
        if transition.event == LoanEvent.DISBURSE:
            events.append(create_loan_event(DomainEvent.LOAN_DISBURSED, loan,
                                            disbursed_date=loan.disbursed_date.isoformat()))
        if applied.entry is not None:
            events.append(create_loan_event(
                DomainEvent.LOAN_PAYMENT_RECORDED, loan,
                payment_amount=str(applied.entry.amount.amount),
                payment_date=applied.entry.payment_date.isoformat(),
                sequence=applied.entry.sequence,
                excess_amount=str(applied.entry.excess_amount.amount),
            ))
            if transition.to_status == LoanStatus.REPAID:
                events.append(create_loan_event(DomainEvent.LOAN_REPAID, loan))
        if transition.event == LoanEvent.MARK_OVERDUE:
            events.append(create_loan_event(DomainEvent.LOAN_OVERDUE, loan))
        if applied.successor is not None:
            events.append(create_loan_event(DomainEvent.LOAN_RESTRUCTURED, loan,
                                            successor_id=applied.successor.id))
            events.append(create_loan_event(DomainEvent.LOAN_CREATED, applied.successor,
                                            restructured_from_id=loan.id))
        for event in events:
            self.event_dispatcher.publish(event)

    # Public operations

    def create_loan(self, request: Union[CreateLoanRequest, Dict[str, Any]],
                    actor_id: Optional[str] = None) -> Loan:
        """Register a farmer's application as a PENDING loan"""
        correlation_id = str(uuid.uuid4())
        try:
            req = parse_request(CreateLoanRequest, request)
            if req.interest_rate > Decimal(self.config.max_interest_rate):
                raise ValidationError(
                    f"Interest rate cannot exceed {self.config.max_interest_rate}%",
                    field="interest_rate",
                )
            for name in ("collateral", "notes"):
                value = getattr(req, name)
                if value is not None and len(value) > self.config.max_text_length:
                    raise ValidationError(
                        f"{name} cannot exceed {self.config.max_text_length} characters", field=name)
            currency_code = req.currency or self.config.default_currency.upper()
            if currency_code not in Currency.__members__:
                raise ValidationError(f"Unsupported currency {currency_code}", field="currency")

            now = self.now()
            issued_date = req.issued_date or now
            if req.due_date < issued_date:
                raise ValidationError("Due date must be on or after the issued date", field="due_date")

            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                farmer_id=req.farmer_id,
                principal=Money(req.amount, Currency[currency_code]),
                interest_rate=req.interest_rate,
                duration_months=req.duration_months,
                loan_type=req.loan_type,
                issued_date=issued_date,
                due_date=req.due_date,
                repayment_frequency=req.repayment_frequency,
                collateral=req.collateral,
                notes=req.notes,
            )
            with self._transaction("create_loan"):
                loan = self.repository.insert(loan)
        except LedgerError as e:
            log_action(
                self.logger, "warning", f"create_loan rejected: {e.message}",
                user_id=actor_id, action="create_loan", resource="loan",
                correlation_id=correlation_id, extra={"kind": e.kind, "code": e.code, **e.details},
            )
            raise

        self.record_audit(AuditEventType.LOAN_CREATED, "loan", loan.id, {
            "farmer_id": loan.farmer_id,
            "principal": loan.principal.amount,
            "currency": loan.currency.code,
            "interest_rate": loan.interest_rate,
            "duration_months": loan.duration_months,
            "loan_type": loan.loan_type,
            "total_repayment_amount": loan.total_repayment_amount.amount,
        }, actor_id, correlation_id)
        log_action(
            self.logger, "info",
            f"Loan {loan.id} created for farmer {loan.farmer_id}: {loan.principal.to_string()}",
            user_id=actor_id, action="create_loan", resource="loan",
            correlation_id=correlation_id, loan_id=loan.id,
        )
        if self.event_dispatcher is not None:
            self.event_dispatcher.publish(create_loan_event(DomainEvent.LOAN_CREATED, loan))
        return loan

    def get_loan_by_id(self, loan_id: str) -> Loan:
        """Current committed state of a loan"""
        return self.repository.require(loan_id)

    def update_loan_status(self, loan_id: str,
                           update: Union[StatusUpdateRequest, Dict[str, Any]],
                           actor_id: Optional[str] = None,
                           correlation_id: Optional[str] = None) -> Loan:
        """
        Move a loan to a new status through the state machine.

        The update names the target status plus whatever that transition
        needs: approver for APPROVED, rejection reason for REJECTED, new
        terms for RESTRUCTURED. PENDING and REPAID cannot be set directly.
        """
        try:
            req = parse_request(StatusUpdateRequest, update)
        except ValidationError as e:
            self._log_rejection("update_status", loan_id, e, actor_id, correlation_id)
            raise

        command = req.to_command()
        if command is None:
            loan = self.get_loan_by_id(loan_id)
            error = InvalidTransitionError(
                loan.status.value, "update_status",
                message=(f"Cannot set status {req.status.value} directly on a loan in "
                         f"{loan.status.value} status"),
            )
            self._log_rejection("update_status", loan_id, error, actor_id, correlation_id)
            raise error

        return self._apply(loan_id, command, actor_id, correlation_id).loan

    def record_payment(self, loan_id: str, amount: Union[Money, Any],
                       payment_date: Optional[datetime] = None, notes: Optional[str] = None,
                       actor_id: Optional[str] = None,
                       correlation_id: Optional[str] = None) -> Loan:
        """
        Apply a settled payment to a loan's running balance.

        Reaching a zero balance moves the loan to REPAID. An amount larger
        than the remaining balance is accepted: the balance stops at zero,
        the ledger keeps the full amount and the entry records the excess.

        Raises:
            NotFoundError: unknown loan
            ValidationError: non-positive amount or more than 2 decimal places
            InvalidTransitionError: loan is not ACTIVE or OVERDUE
            BusyError: lock not acquired in time (retryable)
        """
        is_money = isinstance(amount, Money)
        try:
            req = parse_request(PaymentRequest, {
                "amount": amount.amount if is_money else amount,
                "payment_date": payment_date,
                "notes": notes,
            })
        except ValidationError as e:
            self._log_rejection("record_payment", loan_id, e, actor_id, correlation_id)
            raise

        # Money keeps its currency so the loan currency can be checked
        command = RecordPayment(amount=amount if is_money else req.amount,
                                payment_date=req.payment_date, notes=req.notes)
        return self._apply(loan_id, command, actor_id, correlation_id).loan

    def mark_overdue(self, loan_id: str, as_of: Optional[datetime] = None,
                     actor_id: Optional[str] = None,
                     correlation_id: Optional[str] = None) -> Loan:
        """ACTIVE -> OVERDUE when the loan is past due with a balance outstanding"""
        command = MarkOverdue(as_of=as_of or self.now())
        return self._apply(loan_id, command, actor_id, correlation_id).loan

    def run_overdue_sweep(self, cancel_event=None, as_of: Optional[datetime] = None) -> int:
        """Move every past-due ACTIVE loan to OVERDUE; returns how many moved"""
        sweep = OverdueSweep(self, batch_size=self.config.sweep_batch_size)
        return sweep.run(cancel_event=cancel_event, as_of=as_of).transitioned

    def search_loans(self, query: Union[LoanSearchQuery, Dict[str, Any], None] = None) -> LoanPage:
        """Filter and paginate loans; read-only"""
        if query is None:
            query = {}
        if isinstance(query, dict) and "limit" not in query:
            query = {**query, "limit": self.config.default_page_size}
        search = parse_request(LoanSearchQuery, query)
        if search.limit > self.config.max_page_size:
            raise ValidationError(f"Limit cannot exceed {self.config.max_page_size}", field="limit")
        return self.repository.search(search, now=self.now())

    def get_payment_history(self, loan_id: str) -> List[LedgerEntry]:
        """Ledger entries of a loan, oldest first"""
        self.repository.require(loan_id)
        return self.ledger.entries(loan_id)

    def reconcile_loan(self, loan_id: str) -> Dict[str, Any]:
        """Check a loan's balance fields against its ledger"""
        loan = self.repository.require(loan_id)
        report = self.ledger.reconcile(loan)
        if not report["consistent"]:
            log_action(self.logger, "error", f"Loan {loan_id} does not reconcile with its ledger",
                       action="reconcile", resource="loan", loan_id=loan_id,
                       extra={"violations": report["violations"]})
        return report

    def archive_loan(self, loan_id: str, actor_id: Optional[str] = None) -> Loan:
        """Soft-delete a settled loan (REJECTED, CANCELLED or REPAID)"""
        correlation_id = str(uuid.uuid4())

        def change(loan: Loan, now: datetime) -> AppliedTransition:
            if loan.is_archived:
                raise InvalidTransitionError(loan.status.value, "archive",
                                             message=f"Loan {loan.id} is already archived")
            if loan.status not in ARCHIVABLE_STATUSES:
                raise InvalidTransitionError(
                    loan.status.value, "archive",
                    message=f"Only REJECTED, CANCELLED or REPAID loans can be archived, not {loan.status.value}",
                )
            archived = replace(loan, archived_at=now, updated_at=now)
            saved = self.repository.save(archived, expected_version=loan.version)
            return AppliedTransition(transition=None, loan=saved)

        def audit_archive(applied: AppliedTransition) -> None:
            self.record_audit(AuditEventType.LOAN_ARCHIVED, "loan", applied.loan.id,
                            {"status": applied.loan.status.value, "version": applied.loan.version},
                            actor_id, correlation_id)

        applied = self._mutate(loan_id, "archive", change, actor_id, correlation_id,
                               audit=audit_archive, publish=False)
        log_action(self.logger, "info", f"Loan {loan_id} archived",
                   user_id=actor_id, action="archive", resource="loan",
                   correlation_id=correlation_id, loan_id=loan_id)
        return applied.loan

    def verify_audit_integrity(self, actor_id: Optional[str] = None) -> Dict[str, Any]:
        """Check the audit hash chain and record that the check ran"""
        if self.audit_trail is None:
            raise LedgerError("Audit logging is disabled")
        result = self.audit_trail.verify_integrity()
        self.record_audit(AuditEventType.AUDIT_INTEGRITY_CHECK, "audit", self.audit_trail.table_name,
                        {"valid": result["valid"], "total_events": result["total_events"],
                         "hash_errors": len(result["hash_errors"]),
                         "chain_breaks": len(result["chain_breaks"])},
                        actor_id, None)
        if not result["valid"]:
            log_action(self.logger, "error", "Audit chain integrity check failed",
                       user_id=actor_id, action="verify_audit", resource="audit",
                       extra={"hash_errors": len(result["hash_errors"]),
                              "chain_breaks": len(result["chain_breaks"])})
        return result
