"""
Test suite for loan aggregate reconciliation

Delta maintenance must agree with a full recompute; drift introduced behind the
ledger's back is detected, reported and repaired.
"""

import pytest
from datetime import timedelta

from emi_ledger.audit import AuditEventType
from emi_ledger.exceptions import AggregateDriftError, LoanNotFoundError
from emi_ledger.models import LoanStatus, InstallmentStatus
from emi_ledger.payments import SettlementSource

from conftest import apply_loan, approved_loan


class TestConsistency:
    """Delta updates match a recompute"""

    def test_fresh_loan_is_consistent(self, system):
        loan = approved_loan(system)

        report = system.reconciler.check(loan.id)

        assert report.is_consistent
        system.reconciler.verify(loan.id)

    def test_consistent_after_settlements_and_penalties(self, system):
        loan = approved_loan(system)
        system.payments.settle_next_batch(loan.id, "sub_pay_1", SettlementSource.SUBSCRIPTION)
        system.clock.advance(timedelta(days=10))
        system.overdue.process()
        overdue = system.ledger.unpaid_installments(loan.id, limit=2)
        system.payments.settle([i.id for i in overdue], "pay_2", SettlementSource.GATEWAY)

        expected = system.reconciler.compute(loan.id)
        stored = system.ledger.get_loan(loan.id)

        assert stored.total_paid == expected.total_paid
        assert stored.remaining_balance == expected.remaining_balance
        assert stored.penalty_amount == expected.penalty_amount
        assert expected.paid_count == 9
        assert system.reconciler.check(loan.id).is_consistent

    def test_pending_loan_without_installments(self, system):
        loan = apply_loan(system)
        assert system.reconciler.check(loan.id).is_consistent

    def test_unknown_loan(self, system):
        with pytest.raises(LoanNotFoundError):
            system.reconciler.check("missing")

    def test_ceiling_over_collection_goes_negative(self, system):
        loan = approved_loan(system, amount=1000, total_days=3)
        installments = system.ledger.get_installments(loan.id)

        system.payments.settle([i.id for i in installments], "pay_all", SettlementSource.GATEWAY)

        stored = system.ledger.get_loan(loan.id)
        assert stored.status == LoanStatus.COMPLETED
        assert stored.total_paid == 1203
        assert stored.remaining_balance == -3
        assert system.reconciler.check(loan.id).is_consistent


class TestDriftDetection:
    """Detect and repair totals edited outside the ledger operations"""

    def test_detects_total_paid_drift(self, system):
        loan = approved_loan(system)
        stored = system.ledger.get_loan(loan.id)
        stored.total_paid = 999
        system.ledger.save_loan(stored)

        report = system.reconciler.check(loan.id)

        assert not report.is_consistent
        assert report.drifted_fields == {"total_paid": (999, 0)}

    def test_verify_raises(self, system):
        loan = approved_loan(system)
        stored = system.ledger.get_loan(loan.id)
        stored.penalty_amount = 50
        system.ledger.save_loan(stored)

        with pytest.raises(AggregateDriftError) as exc_info:
            system.reconciler.verify(loan.id)

        assert exc_info.value.loan_id == loan.id
        assert "penalty_amount" in exc_info.value.drifted_fields

    def test_repair_restores_totals(self, system):
        loan = approved_loan(system)
        system.payments.settle_next_batch(loan.id, "sub_pay_1", SettlementSource.SUBSCRIPTION)
        stored = system.ledger.get_loan(loan.id)
        stored.total_paid = 0
        stored.remaining_balance = 12000
        system.ledger.save_loan(stored)

        report = system.reconciler.repair(loan.id, actor="admin-1")

        assert report.repaired
        repaired = system.ledger.get_loan(loan.id)
        assert repaired.total_paid == 840
        assert repaired.remaining_balance == 11160
        system.reconciler.verify(loan.id)

        audited = system.audit_trail.get_events_by_type(AuditEventType.AGGREGATES_REPAIRED)
        assert len(audited) == 1
        assert audited[0].actor == "admin-1"

    def test_repair_of_consistent_loan_changes_nothing(self, system):
        loan = approved_loan(system)

        report = system.reconciler.repair(loan.id)

        assert not report.repaired
        assert system.audit_trail.get_events_by_type(AuditEventType.AGGREGATES_REPAIRED) == []

    def test_completion_drift_is_repaired(self, system):
        loan = approved_loan(system, amount=1000, total_days=3)
        installments = system.ledger.get_installments(loan.id)
        system.payments.settle([i.id for i in installments], "pay_all", SettlementSource.GATEWAY)

        reverted = system.ledger.get_installment(installments[-1].id)
        reverted.status = InstallmentStatus.PENDING
        reverted.payment_reference = None
        reverted.paid_at = None
        system.ledger.save_installment(reverted)

        report = system.reconciler.check(loan.id)
        assert report.drifted_fields["status"] == ("completed", "approved")

        system.reconciler.repair(loan.id)
        stored = system.ledger.get_loan(loan.id)
        assert stored.status == LoanStatus.APPROVED
        assert stored.total_paid == 802

    def test_missing_installment_is_a_violation(self, system):
        loan = approved_loan(system, total_days=5)
        lost = system.ledger.get_installments(loan.id)[2]
        system.storage.delete("installments", lost.id)

        report = system.reconciler.check(loan.id)

        assert report.violations == ["day numbers are not exactly 1..5"]

    def test_check_all_lists_only_inconsistent_loans(self, system):
        good = approved_loan(system, borrower_id="b-1")
        bad = approved_loan(system, borrower_id="b-2")
        stored = system.ledger.get_loan(bad.id)
        stored.remaining_balance = 1
        system.ledger.save_loan(stored)

        reports = system.reconciler.check_all()

        assert [r.loan_id for r in reports] == [bad.id]
        assert good.id not in [r.loan_id for r in reports]
