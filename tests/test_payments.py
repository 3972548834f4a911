"""
Test suite for payment settlement

Single and batched settlement, idempotent re-delivery, completion, aggregate
deltas and rollback when the owning loan is missing.
"""

import threading

import pytest

from emi_ledger.payments import SettlementSource
from emi_ledger.gateway import compute_signature
from emi_ledger.events import DomainEvent
from emi_ledger.audit import AuditEventType
from emi_ledger.models import LoanStatus, InstallmentStatus
from emi_ledger.exceptions import (
    InstallmentAlreadyPaidError, InstallmentNotFoundError, LoanAggregateMissingError,
    AccessDeniedError, ConfigurationError, SignatureVerificationError, ValidationError
)

from conftest import approved_loan, KEY_SECRET


class TestSettle:
    """Test the core settlement path"""

    def test_single_settlement_updates_aggregates(self, system):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]

        result = system.payments.settle([first.id], "pay_001", SettlementSource.GATEWAY)

        assert result.count == 1
        assert result.amount == 120
        assert not result.duplicate

        paid = system.ledger.get_installment(first.id)
        assert paid.status == InstallmentStatus.PAID
        assert paid.payment_reference == "pay_001"
        assert paid.paid_at == system.clock.now()

        stored = system.ledger.get_loan(loan.id)
        assert stored.total_paid == 120
        assert stored.remaining_balance == 11880

    def test_redelivery_with_same_reference_is_noop(self, system, published):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]

        system.payments.settle([first.id], "pay_001", SettlementSource.GATEWAY)
        again = system.payments.settle([first.id], "pay_001", SettlementSource.GATEWAY)

        assert again.duplicate
        stored = system.ledger.get_loan(loan.id)
        assert stored.total_paid == 120
        paid_events = [e for e in published if e.event_type == DomainEvent.INSTALLMENT_PAID]
        assert len(paid_events) == 1

    def test_different_reference_on_paid_installment_conflicts(self, system):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]
        system.payments.settle([first.id], "pay_001", SettlementSource.GATEWAY)

        with pytest.raises(InstallmentAlreadyPaidError) as exc_info:
            system.payments.settle([first.id], "pay_002", SettlementSource.GATEWAY)

        assert exc_info.value.installment_ids == [first.id]
        assert system.ledger.get_loan(loan.id).total_paid == 120

    def test_partially_paid_batch_is_rejected_whole(self, system):
        loan = approved_loan(system)
        first, second = system.ledger.get_installments(loan.id)[:2]
        system.payments.settle([first.id], "pay_001", SettlementSource.GATEWAY)

        with pytest.raises(InstallmentAlreadyPaidError):
            system.payments.settle([first.id, second.id], "pay_002", SettlementSource.GATEWAY)

        assert system.ledger.get_installment(second.id).status == InstallmentStatus.PENDING

    def test_unknown_installment(self, system):
        with pytest.raises(InstallmentNotFoundError):
            system.payments.settle(["missing"], "pay_001", SettlementSource.GATEWAY)

    def test_requires_reference_and_targets(self, system):
        with pytest.raises(ValidationError):
            system.payments.settle([], "pay_001", SettlementSource.GATEWAY)
        with pytest.raises(ValidationError):
            system.payments.settle(["x"], "", SettlementSource.GATEWAY)

    def test_installments_of_two_loans_cannot_share_a_settlement(self, system):
        first_loan = approved_loan(system, borrower_id="b-1", total_days=3)
        second_loan = approved_loan(system, borrower_id="b-2", total_days=3)
        a = system.ledger.get_installments(first_loan.id)[0]
        b = system.ledger.get_installments(second_loan.id)[0]

        with pytest.raises(ValidationError):
            system.payments.settle([a.id, b.id], "pay_001", SettlementSource.GATEWAY)

    def test_missing_loan_rolls_back(self, system):
        loan = approved_loan(system, total_days=5)
        first = system.ledger.get_installments(loan.id)[0]
        system.storage.delete("loans", loan.id)

        with pytest.raises(LoanAggregateMissingError):
            system.payments.settle([first.id], "pay_001", SettlementSource.GATEWAY)

        stored = system.ledger.get_installment(first.id)
        assert stored.status == InstallmentStatus.PENDING
        assert stored.payment_reference is None

    def test_paying_every_installment_completes_loan(self, system, published):
        loan = approved_loan(system, amount=1000, total_days=3)
        ids = [i.id for i in system.ledger.get_installments(loan.id)]

        system.payments.settle(ids[:2], "pay_001", SettlementSource.GATEWAY)
        assert system.ledger.get_loan(loan.id).status == LoanStatus.APPROVED

        result = system.payments.settle(ids[2:], "pay_002", SettlementSource.GATEWAY)

        assert result.loan_completed
        stored = system.ledger.get_loan(loan.id)
        assert stored.status == LoanStatus.COMPLETED
        assert stored.total_paid == 1203
        # Ceiling rounding collects 3 more than principal plus interest
        assert stored.remaining_balance == -3
        assert any(e.event_type == DomainEvent.LOAN_COMPLETED for e in published)

    def test_completed_loan_has_nothing_to_settle(self, system):
        loan = approved_loan(system, total_days=2)
        ids = [i.id for i in system.ledger.get_installments(loan.id)]
        system.payments.settle(ids, "pay_001", SettlementSource.GATEWAY)

        assert system.ledger.get_loan(loan.id).status == LoanStatus.COMPLETED
        with pytest.raises(InstallmentAlreadyPaidError):
            system.payments.settle(ids[:1], "pay_002", SettlementSource.GATEWAY)

    def test_concurrent_settlements_of_one_installment(self, system):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]
        outcomes = []

        def pay(reference):
            try:
                system.payments.settle([first.id], reference, SettlementSource.GATEWAY)
                outcomes.append("paid")
            except InstallmentAlreadyPaidError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=pay, args=(f"pay_{n}",)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("paid") == 1
        assert outcomes.count("conflict") == 7
        assert system.ledger.get_loan(loan.id).total_paid == 120


class TestBatchSettlement:
    """Test subscription batches of up to seven installments"""

    def test_subscription_charge_settles_seven(self, system, published):
        loan = approved_loan(system)

        result = system.payments.settle_subscription_charge(loan.id, "pay_sub_1")

        assert result.count == 7
        assert result.amount == 840
        stored = system.ledger.get_loan(loan.id)
        assert stored.total_paid == 840
        assert stored.remaining_balance == 11160

        installments = system.ledger.get_installments(loan.id)
        assert [i.status for i in installments[:7]] == [InstallmentStatus.PAID] * 7
        assert installments[7].status == InstallmentStatus.PENDING

        paid_events = [e for e in published if e.event_type == DomainEvent.INSTALLMENT_PAID]
        assert len(paid_events) == 1
        assert paid_events[0].count == 7
        assert paid_events[0].amount == 840

    def test_batch_takes_oldest_unpaid_first(self, system):
        loan = approved_loan(system, total_days=10)
        installments = system.ledger.get_installments(loan.id)
        system.payments.settle([installments[1].id], "pay_manual", SettlementSource.GATEWAY)

        result = system.payments.settle_subscription_charge(loan.id, "pay_sub_1")

        settled_days = sorted(system.ledger.get_installment(i).day_number for i in result.installment_ids)
        assert settled_days == [1, 3, 4, 5, 6, 7, 8]

    def test_batch_redelivery_is_duplicate(self, system):
        loan = approved_loan(system)

        system.payments.settle_subscription_charge(loan.id, "pay_sub_1")
        again = system.payments.settle_subscription_charge(loan.id, "pay_sub_1")

        assert again.duplicate
        assert again.count == 7
        assert system.ledger.get_loan(loan.id).total_paid == 840

    def test_short_final_batch_and_completion(self, system):
        loan = approved_loan(system, amount=1000, total_days=10)

        system.payments.settle_subscription_charge(loan.id, "pay_sub_1")
        last = system.payments.settle_subscription_charge(loan.id, "pay_sub_2")

        assert last.count == 3
        assert last.loan_completed
        assert system.ledger.get_loan(loan.id).status == LoanStatus.COMPLETED

    def test_nothing_left_to_pay(self, system):
        loan = approved_loan(system, amount=1000, total_days=7)
        system.payments.settle_subscription_charge(loan.id, "pay_sub_1")

        result = system.payments.settle_subscription_charge(loan.id, "pay_sub_2")

        assert result.count == 0
        assert result.amount == 0


class TestEntryPoints:
    """Test gateway, simulated, admin and multi-installment entry points"""

    def test_verify_gateway_payment(self, system):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]
        system.payments.record_gateway_order(first.id, "order_1", borrower_id="borrower-1")
        signature = compute_signature(KEY_SECRET, "order_1|pay_1")

        result = system.payments.verify_gateway_payment(
            first.id, "order_1", "pay_1", signature, borrower_id="borrower-1"
        )

        assert result.source == SettlementSource.GATEWAY
        stored = system.ledger.get_installment(first.id)
        assert stored.payment_reference == "pay_1"
        assert stored.gateway_order_id == "order_1"

    def test_bad_signature_changes_nothing(self, system):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]

        with pytest.raises(SignatureVerificationError):
            system.payments.verify_gateway_payment(first.id, "order_1", "pay_1", "0" * 64)

        assert system.ledger.get_installment(first.id).status == InstallmentStatus.PENDING

    def test_order_raised_for_another_installment_is_rejected(self, system, published):
        loan = approved_loan(system)
        first, second = system.ledger.get_installments(loan.id)[:2]
        system.payments.record_gateway_order(first.id, "order_A", borrower_id="borrower-1")
        signature = compute_signature(KEY_SECRET, "order_A|pay_1")
        published.clear()

        with pytest.raises(ValidationError):
            system.payments.verify_gateway_payment(second.id, "order_A", "pay_1", signature)

        assert system.ledger.get_installment(second.id).status == InstallmentStatus.PENDING
        assert system.ledger.get_loan(loan.id).total_paid == 0
        assert published == []

    def test_redelivered_gateway_payment_is_duplicate(self, system, published):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]
        system.payments.record_gateway_order(first.id, "order_1")
        signature = compute_signature(KEY_SECRET, "order_1|pay_1")

        system.payments.verify_gateway_payment(first.id, "order_1", "pay_1", signature)
        again = system.payments.verify_gateway_payment(first.id, "order_1", "pay_1", signature)

        assert again.duplicate
        assert system.ledger.get_loan(loan.id).total_paid == 120
        assert [e.event_type for e in published].count(DomainEvent.INSTALLMENT_PAID) == 1

    def test_pay_multiple_checks_recorded_orders(self, system):
        loan = approved_loan(system)
        first, second = system.ledger.get_installments(loan.id)[:2]
        system.payments.record_gateway_order(second.id, "order_B")
        signature = compute_signature(KEY_SECRET, "order_A|pay_2")

        with pytest.raises(ValidationError):
            system.payments.pay_multiple([first.id, second.id], "borrower-1",
                                         payment_reference="pay_2", order_id="order_A",
                                         signature=signature)

        assert system.ledger.get_installment(first.id).status == InstallmentStatus.PENDING

    def test_simulated_payment_reference(self, system):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]

        result = system.payments.simulate_payment(first.id, "borrower-1")

        expected = int(system.clock.now().timestamp() * 1000)
        assert result.payment_reference == f"sim_{expected}"
        assert result.source == SettlementSource.SIMULATED

    def test_simulation_disabled(self, system):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]
        system.payments.config = system.payments.config.model_copy(update={"simulation_enabled": False})

        with pytest.raises(ConfigurationError):
            system.payments.simulate_payment(first.id, "borrower-1")

    def test_simulation_checks_ownership(self, system):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]

        with pytest.raises(AccessDeniedError):
            system.payments.simulate_payment(first.id, "someone-else")

    def test_admin_mark_paid(self, system, published):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]

        result = system.payments.admin_mark_paid(first.id, "admin-7")

        assert result.payment_reference.startswith("admin_admin-7_")
        assert published[-1].data["source"] == "admin"
        with pytest.raises(InstallmentAlreadyPaidError):
            system.payments.admin_mark_paid(first.id, "admin-7")

    def test_pay_multiple(self, system):
        loan = approved_loan(system)
        chosen = [i.id for i in system.ledger.get_installments(loan.id)[3:6]]

        result = system.payments.pay_multiple(chosen, "borrower-1", payment_reference="pay_multi")

        assert result.count == 3
        assert result.amount == 360
        assert system.ledger.get_loan(loan.id).total_paid == 360

    def test_pay_multiple_with_signature(self, system):
        loan = approved_loan(system)
        chosen = [i.id for i in system.ledger.get_installments(loan.id)[:2]]
        signature = compute_signature(KEY_SECRET, "order_9|pay_9")

        result = system.payments.pay_multiple(
            chosen, "borrower-1", payment_reference="pay_9", order_id="order_9", signature=signature
        )

        assert result.count == 2

    def test_pay_multiple_rejects_foreign_installments(self, system):
        loan = approved_loan(system)
        chosen = [i.id for i in system.ledger.get_installments(loan.id)[:2]]

        with pytest.raises(AccessDeniedError):
            system.payments.pay_multiple(chosen, "intruder", payment_reference="pay_x")

    def test_settlement_is_audited(self, system):
        loan = approved_loan(system)
        first = system.ledger.get_installments(loan.id)[0]

        system.payments.admin_mark_paid(first.id, "admin-7")

        settled = system.audit_trail.get_events_by_type(AuditEventType.INSTALLMENTS_SETTLED)
        assert len(settled) == 1
        assert settled[0].actor == "admin-7"
        assert system.audit_trail.verify_integrity()["valid"]
