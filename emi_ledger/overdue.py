"""
Overdue Processor Module

Daily sweep that accrues late penalties on unpaid installments past their due
date, plus the background scheduler that triggers it.

Penalty policy: ``interest_amount * days_overdue``, applied only when it is
larger than the penalty already on the installment. The loan's penalty total
grows by the difference, so re-running the sweep on the same day changes
nothing.
"""

import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

from .ledger import InstallmentLedger
from .reconciler import LoanAggregateReconciler
from .models import Installment
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, EventPublisherMixin, EventPayload, DomainEvent, RecipientScope
from .clock import Clock
from .exceptions import LedgerError, LoanAggregateMissingError
from .logging_config import get_logger, log_action


logger = get_logger("emi_ledger.overdue")


@dataclass
class _LoanPenaltySummary:
    borrower_id: str
    installment_ids: List[str] = field(default_factory=list)
    amount: int = 0


class OverdueProcessor(EventPublisherMixin):
    """Applies late penalties to past-due installments"""

    def __init__(
        self,
        ledger: InstallmentLedger,
        reconciler: LoanAggregateReconciler,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None
    ):
        self.ledger = ledger
        self.clock = ledger.clock
        self.reconciler = reconciler
        self.audit_trail = audit_trail
        self.events = events
        self.last_failures: List[str] = []

    def _cutoff(self, now: Optional[datetime]) -> date:
        if now is None:
            return self.clock.today()
        return now.astimezone(self.clock.tz).date() if now.tzinfo else now.date()

    @staticmethod
    def penalty_for(installment: Installment, cutoff: date) -> int:
        """Penalty owed on ``cutoff``; 0 unless at least one full day overdue"""
        days_overdue = (cutoff - installment.due_date).days
        if days_overdue < 1:
            return 0
        return installment.interest_amount * days_overdue

    def process(self, now: Optional[datetime] = None) -> int:
        """
        Run one sweep.

        Args:
            now: Reference instant; the clock's current time when omitted

        Returns:
            Number of installments whose penalty increased
        """
        cutoff = self._cutoff(now)
        self.last_failures = []
        summaries: Dict[str, _LoanPenaltySummary] = {}
        updated = 0

        for candidate in self.ledger.past_due_installments(cutoff):
            try:
                applied = self._apply_penalty(candidate.id, cutoff)
            except LedgerError as e:
                self.last_failures.append(candidate.id)
                log_action(logger, "error", f"Penalty not applied: {e}", action="overdue_sweep",
                           loan_id=candidate.loan_id, installment_id=candidate.id, exc_info=True)
                continue
            if applied is None:
                continue

            installment, delta = applied
            updated += 1
            summary = summaries.setdefault(
                installment.loan_id, _LoanPenaltySummary(borrower_id=installment.borrower_id)
            )
            summary.installment_ids.append(installment.id)
            summary.amount += delta

        for loan_id, summary in summaries.items():
            self.publish_event(EventPayload(
                event_type=DomainEvent.INSTALLMENTS_OVERDUE,
                loan_id=loan_id,
                borrower_id=summary.borrower_id,
                recipient_scope=RecipientScope.BORROWER,
                amount=summary.amount,
                count=len(summary.installment_ids),
                installment_id=summary.installment_ids[0] if len(summary.installment_ids) == 1 else None,
                data={"installment_ids": summary.installment_ids, "cutoff": cutoff.isoformat()}
            ))

        log_action(logger, "info", f"Overdue sweep updated {updated} installments",
                   action="overdue_sweep", actor="scheduler",
                   extra={"cutoff": cutoff.isoformat(), "loans": len(summaries),
                          "failures": len(self.last_failures)})
        return updated

    def _apply_penalty(self, installment_id: str, cutoff: date) -> Optional[Tuple[Installment, int]]:
        # Re-read under the lock: a settlement that committed since the scan wins
        with self.ledger.atomic():
            installment = self.ledger.get_installment(installment_id)
            if installment is None or installment.is_paid:
                return None

            new_penalty = self.penalty_for(installment, cutoff)
            if new_penalty <= installment.penalty_amount:
                return None

            loan = self.ledger.get_loan(installment.loan_id)
            if loan is None:
                log_action(logger, "error", "Installment references missing loan",
                           action="overdue_sweep", loan_id=installment.loan_id,
                           installment_id=installment.id)
                raise LoanAggregateMissingError(
                    f"Loan {installment.loan_id} for installment {installment.id} does not exist"
                )

            delta = installment.apply_penalty(new_penalty)
            self.ledger.save_installment(installment)
            self.reconciler.apply_penalty(loan, delta)
            self.ledger.save_loan(loan)

            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.PENALTY_APPLIED,
                    entity_type="installment",
                    entity_id=installment.id,
                    metadata={
                        "loan_id": loan.id,
                        "day_number": installment.day_number,
                        "penalty_amount": installment.penalty_amount,
                        "delta": delta,
                        "cutoff": cutoff.isoformat(),
                    },
                    actor="scheduler"
                )
        return installment, delta

    def remind_due(self, day: Optional[date] = None) -> int:
        """
        Publish one due-today reminder per loan with unpaid installments due on ``day``.

        Returns:
            Number of loans reminded
        """
        day = day or self.clock.today()
        per_loan: Dict[str, List[Installment]] = {}
        for installment in self.ledger.installments_due_on(day):
            if not installment.is_paid:
                per_loan.setdefault(installment.loan_id, []).append(installment)

        for loan_id, installments in per_loan.items():
            self.publish_event(EventPayload(
                event_type=DomainEvent.INSTALLMENT_DUE_TODAY,
                loan_id=loan_id,
                borrower_id=installments[0].borrower_id,
                recipient_scope=RecipientScope.BORROWER,
                amount=sum(i.total_amount for i in installments),
                count=len(installments),
                installment_id=installments[0].id if len(installments) == 1 else None,
                data={"due_date": day.isoformat()}
            ))
        return len(per_loan)


class OverdueSweepScheduler:
    """
    Background thread that runs the overdue sweep once per local day.

    Wakes every ``poll_interval`` seconds and runs when the clock's local hour
    has reached ``sweep_hour`` and today's sweep has not succeeded yet. A failed
    sweep is retried on the next wake-up.
    """

    def __init__(self, processor: OverdueProcessor, clock: Optional[Clock] = None,
                 sweep_hour: int = 0, poll_interval: float = 60.0,
                 send_reminders: bool = True):
        self.processor = processor
        self.clock = clock or processor.clock
        self.sweep_hour = sweep_hour
        self.poll_interval = poll_interval
        self.send_reminders = send_reminders
        self.last_run_date: Optional[date] = None
        self.last_result: Optional[int] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._run_lock = threading.Lock()

    def run_now(self) -> int:
        """Run the sweep immediately, regardless of the hour"""
        with self._run_lock:
            updated = self.processor.process()
            if self.send_reminders:
                self.processor.remind_due()
            self.last_run_date = self.clock.today()
            self.last_result = updated
            return updated

    def tick(self) -> Optional[int]:
        """Run the sweep if it is due; returns the update count or None"""
        local_now = self.clock.local_now()
        if local_now.hour < self.sweep_hour or self.last_run_date == local_now.date():
            return None
        try:
            return self.run_now()
        except Exception as e:
            log_action(logger, "error", f"Overdue sweep failed, retrying next tick: {e}",
                       action="overdue_sweep", actor="scheduler", exc_info=True)
            return None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(self.poll_interval)

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="overdue-sweep")
        self._thread.daemon = True
        self._thread.start()
        logger.info("Overdue sweep scheduler started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Overdue sweep scheduler stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
