"""
Overdue Sweep

Batch job that moves past-due ACTIVE loans to OVERDUE. Each loan goes
through LoanService.mark_overdue, so the sweep takes the same per-loan
lock and version check as interactive requests. Running it twice in a row
moves nothing the second time: the first run already took the matching
loans out of ACTIVE.

Cancellation is cooperative: the cancel event is checked before each loan,
never in the middle of one.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .audit import AuditEventType
from .errors import InvalidTransitionError, LedgerError, NotFoundError
from .loans import as_utc
from .logging_config import get_logger, log_action


@dataclass
class SweepResult:
    """Outcome of one sweep run"""
    run_id: str
    as_of: datetime
    examined: int = 0
    transitioned: int = 0
    skipped: int = 0
    failed: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'as_of': self.as_of.isoformat(),
            'examined': self.examined,
            'transitioned': self.transitioned,
            'skipped': self.skipped,
            'failed': list(self.failed),
            'cancelled': self.cancelled,
        }


class OverdueSweep:
    """One-shot overdue detection over all ACTIVE loans"""

    def __init__(self, service, batch_size: int = 500):
        self.service = service
        self.batch_size = max(1, batch_size)
        self.logger = get_logger("agriledger.sweep")

    def run(self, cancel_event=None, as_of: Optional[datetime] = None) -> SweepResult:
        """
        Examine every ACTIVE loan due before `as_of` (default now).

        Args:
            cancel_event: optional threading.Event; once set, no further
                loans are started
            as_of: the moment overdue is judged against

        Returns:
            SweepResult with per-outcome counts
        """
        as_of = as_utc(as_of) if as_of is not None else self.service.now()
        result = SweepResult(run_id=str(uuid.uuid4()), as_of=as_of)

        candidates = self.service.repository.find_overdue_candidates(as_of)
        log_action(self.logger, "info", f"Overdue sweep started: {len(candidates)} candidate loans",
                   action="overdue_sweep", resource="sweep", correlation_id=result.run_id,
                   extra={"as_of": as_of.isoformat()})

        for start in range(0, len(candidates), self.batch_size):
            batch = candidates[start:start + self.batch_size]
            for loan in batch:
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    break
                result.examined += 1
                self._sweep_one(loan.id, result)
            if result.cancelled:
                break
            self.logger.debug(f"Overdue sweep {result.run_id}: {result.examined}/{len(candidates)} examined")

        self._finish(result)
        return result

    def _sweep_one(self, loan_id: str, result: SweepResult) -> None:
        try:
            self.service.mark_overdue(loan_id, as_of=result.as_of, actor_id="overdue-sweep",
                                      correlation_id=result.run_id)
            result.transitioned += 1
        except (InvalidTransitionError, NotFoundError):
            # Paid, restructured or otherwise moved since the candidate query
            result.skipped += 1
        except LedgerError as e:
            result.failed.append({'loan_id': loan_id, 'kind': e.kind, 'message': e.message})
            log_action(self.logger, "error", f"Overdue sweep could not update loan {loan_id}: {e.message}",
                       action="overdue_sweep", resource="loan", correlation_id=result.run_id,
                       loan_id=loan_id, extra={"kind": e.kind, "retryable": e.retryable})

    def _finish(self, result: SweepResult) -> None:
        summary = result.to_dict()
        self.service.record_audit(AuditEventType.OVERDUE_SWEEP_COMPLETED, "sweep", result.run_id, {
            'as_of': summary['as_of'],
            'examined': result.examined,
            'transitioned': result.transitioned,
            'skipped': result.skipped,
            'failed': len(result.failed),
            'cancelled': result.cancelled,
        }, "overdue-sweep", result.run_id)
        log_action(
            self.logger, "warning" if result.failed or result.cancelled else "info",
            f"Overdue sweep finished: {result.transitioned} of {result.examined} loans moved to OVERDUE",
            action="overdue_sweep", resource="sweep", correlation_id=result.run_id, extra=summary,
        )
