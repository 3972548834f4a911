"""
Test suite for the overdue sweep

Penalty accrual by day, delta application to the loan, idempotence within a
day, races with settlement and the daily scheduler.
"""

import time
from datetime import datetime, timedelta, timezone, date

from emi_ledger.audit import AuditEventType
from emi_ledger.events import DomainEvent
from emi_ledger.models import InstallmentStatus
from emi_ledger.payments import SettlementSource
from emi_ledger.overdue import OverdueSweepScheduler

from conftest import approved_loan


def by_day(system, loan_id):
    return {i.day_number: i for i in system.ledger.get_installments(loan_id)}


class TestOverdueProcessor:
    """Test penalty application"""

    def test_three_days_overdue_penalty(self, system):
        loan = approved_loan(system)
        system.clock.advance(timedelta(days=4))  # local date 2024-01-14

        updated = system.overdue.process()

        assert updated == 3
        installments = by_day(system, loan.id)
        assert installments[1].penalty_amount == 60
        assert installments[1].total_amount == 180
        assert installments[1].status == InstallmentStatus.OVERDUE
        assert installments[2].penalty_amount == 40
        assert installments[3].penalty_amount == 20
        # Due today is not overdue yet
        assert installments[4].penalty_amount == 0
        assert installments[4].status == InstallmentStatus.PENDING

        assert system.ledger.get_loan(loan.id).penalty_amount == 120

    def test_second_sweep_same_day_is_noop(self, system):
        loan = approved_loan(system)
        system.clock.advance(timedelta(days=4))
        system.overdue.process()

        assert system.overdue.process() == 0
        assert system.ledger.get_loan(loan.id).penalty_amount == 120

    def test_penalty_grows_by_delta(self, system):
        loan = approved_loan(system)
        system.clock.advance(timedelta(days=4))
        system.overdue.process()
        system.clock.advance(timedelta(days=1))

        assert system.overdue.process() == 4

        installments = by_day(system, loan.id)
        assert installments[1].penalty_amount == 80
        assert installments[4].penalty_amount == 20
        assert system.ledger.get_loan(loan.id).penalty_amount == 200

    def test_explicit_reference_time(self, system):
        loan = approved_loan(system)

        updated = system.overdue.process(now=datetime(2024, 1, 14, 6, 30, tzinfo=timezone.utc))

        assert updated == 3
        assert by_day(system, loan.id)[1].penalty_amount == 60

    def test_nothing_past_due(self, system):
        approved_loan(system)
        assert system.overdue.process() == 0

    def test_paid_installments_are_skipped(self, system):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]
        system.payments.settle([first.id], "pay_1", SettlementSource.GATEWAY)
        system.clock.advance(timedelta(days=4))

        assert system.overdue.process() == 2

        paid = system.ledger.get_installment(first.id)
        assert paid.penalty_amount == 0
        assert paid.status == InstallmentStatus.PAID

    def test_settlement_between_scan_and_apply_wins(self, system, monkeypatch):
        loan = approved_loan(system)
        system.clock.advance(timedelta(days=4))
        scan = system.ledger.past_due_installments

        def scan_then_pay(cutoff):
            rows = scan(cutoff)
            system.payments.admin_mark_paid(rows[0].id, "admin-1")
            return rows

        monkeypatch.setattr(system.ledger, "past_due_installments", scan_then_pay)
        updated = system.overdue.process()

        assert updated == 2
        first = by_day(system, loan.id)[1]
        assert first.status == InstallmentStatus.PAID
        assert first.penalty_amount == 0
        assert system.ledger.get_loan(loan.id).penalty_amount == 60

    def test_paying_overdue_installment_collects_penalty(self, system):
        loan = approved_loan(system)
        system.clock.advance(timedelta(days=4))
        system.overdue.process()
        first = by_day(system, loan.id)[1]

        result = system.payments.settle([first.id], "pay_late", SettlementSource.GATEWAY)

        assert result.amount == 180
        stored = system.ledger.get_loan(loan.id)
        assert stored.total_paid == 180
        # Only the base amount reduces the remaining balance
        assert stored.remaining_balance == 11880
        assert stored.penalty_amount == 120

    def test_one_event_per_loan(self, system, published):
        first_loan = approved_loan(system, borrower_id="b-1")
        second_loan = approved_loan(system, borrower_id="b-2")
        system.clock.advance(timedelta(days=4))

        system.overdue.process()

        overdue = [e for e in published if e.event_type == DomainEvent.INSTALLMENTS_OVERDUE]
        assert {e.loan_id for e in overdue} == {first_loan.id, second_loan.id}
        assert all(e.count == 3 and e.amount == 120 for e in overdue)

    def test_missing_loan_is_reported_and_rolled_back(self, system):
        loan = approved_loan(system, total_days=5)
        system.storage.delete("loans", loan.id)
        system.clock.advance(timedelta(days=3))

        assert system.overdue.process() == 0

        assert len(system.overdue.last_failures) == 2
        assert all(i.penalty_amount == 0 for i in system.ledger.get_installments(loan.id))

    def test_penalty_is_audited(self, system):
        approved_loan(system)
        system.clock.advance(timedelta(days=2))
        system.overdue.process()

        penalties = system.audit_trail.get_events_by_type(AuditEventType.PENALTY_APPLIED)
        assert len(penalties) == 1
        assert penalties[0].metadata["penalty_amount"] == 20


class TestDueReminders:
    """Test due-today reminders"""

    def test_reminds_each_loan_once(self, system, published):
        loan = approved_loan(system)
        system.clock.advance(timedelta(days=1))

        assert system.overdue.remind_due() == 1

        reminders = [e for e in published if e.event_type == DomainEvent.INSTALLMENT_DUE_TODAY]
        assert len(reminders) == 1
        assert reminders[0].loan_id == loan.id
        assert reminders[0].amount == 120

    def test_paid_installments_are_not_reminded(self, system):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]
        system.payments.settle([first.id], "pay_1", SettlementSource.GATEWAY)

        assert system.overdue.remind_due(date(2024, 1, 11)) == 0


class TestOverdueSweepScheduler:
    """Test the daily trigger"""

    def test_tick_runs_once_per_day(self, system):
        approved_loan(system)
        scheduler = OverdueSweepScheduler(system.overdue, system.clock, sweep_hour=0)
        system.clock.advance(timedelta(days=4))

        assert scheduler.tick() == 3
        assert scheduler.tick() is None
        assert scheduler.last_run_date == date(2024, 1, 14)

        system.clock.advance(timedelta(days=1))
        assert scheduler.tick() == 4

    def test_waits_for_sweep_hour(self, system):
        # Local time is 12:00
        scheduler = OverdueSweepScheduler(system.overdue, system.clock, sweep_hour=13)

        assert scheduler.tick() is None
        system.clock.advance(timedelta(hours=1))
        assert scheduler.tick() == 0

    def test_failed_sweep_is_retried(self, system, monkeypatch):
        scheduler = OverdueSweepScheduler(system.overdue, system.clock)
        calls = []

        def flaky(now=None):
            calls.append(now)
            if len(calls) == 1:
                raise RuntimeError("storage unavailable")
            return 0

        monkeypatch.setattr(system.overdue, "process", flaky)

        assert scheduler.tick() is None
        assert scheduler.last_run_date is None
        assert scheduler.tick() == 0
        assert len(calls) == 2

    def test_background_thread(self, system):
        scheduler = OverdueSweepScheduler(system.overdue, system.clock, poll_interval=0.01)
        scheduler.start()
        try:
            deadline = time.time() + 2.0
            while scheduler.last_run_date is None and time.time() < deadline:
                time.sleep(0.01)
            assert scheduler.is_running()
            assert scheduler.last_run_date == date(2024, 1, 10)
        finally:
            scheduler.stop()

        assert not scheduler.is_running()
