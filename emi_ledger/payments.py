"""
Payment Applier Module

The single path by which an installment becomes paid. Every settlement source
(gateway verification, simulation, admin override, subscription charge, autopay
activation) ends in ``PaymentApplier.settle``, which marks the installments,
folds them into the loan totals and re-evaluates completion in one transaction.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from .ledger import InstallmentLedger
from .reconciler import LoanAggregateReconciler
from .gateway import GatewaySignatureVerifier
from .models import Installment
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, EventPublisherMixin, EventPayload, DomainEvent, RecipientScope
from .config import LedgerConfig, get_config
from .exceptions import (
    ValidationError, AccessDeniedError, ConfigurationError, InvalidLoanStateError,
    InstallmentAlreadyPaidError, LoanAggregateMissingError
)
from .logging_config import get_logger, log_action


logger = get_logger("emi_ledger.payments")


class SettlementSource(Enum):
    """Where a settlement came from"""
    GATEWAY = "gateway"
    SIMULATED = "simulated"
    ADMIN = "admin"
    SUBSCRIPTION = "subscription"
    AUTOPAY_ACTIVATION = "autopay_activation"


@dataclass
class SettlementResult:
    """Outcome of one logical settlement"""
    loan_id: Optional[str]
    borrower_id: Optional[str]
    payment_reference: str
    source: SettlementSource
    installment_ids: List[str] = field(default_factory=list)
    amount: int = 0
    duplicate: bool = False
    loan_completed: bool = False

    @property
    def count(self) -> int:
        return len(self.installment_ids)


class PaymentApplier(EventPublisherMixin):
    """Applies settlements to installments and their loan aggregates"""

    def __init__(
        self,
        ledger: InstallmentLedger,
        reconciler: LoanAggregateReconciler,
        verifier: Optional[GatewaySignatureVerifier] = None,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.ledger = ledger
        self.clock = ledger.clock
        self.reconciler = reconciler
        self.config = config or get_config()
        self.verifier = verifier or GatewaySignatureVerifier(
            self.config.gateway_key_secret, self.config.gateway_webhook_secret
        )
        self.audit_trail = audit_trail
        self.events = events

    def settle(
        self,
        installment_ids: Sequence[str],
        payment_reference: str,
        source: SettlementSource,
        actor: Optional[str] = None,
        publish: bool = True
    ) -> SettlementResult:
        """
        Mark installments of one loan as paid under ``payment_reference``.

        Re-delivery of a settlement whose every target is already paid with
        the same reference is a no-op result with ``duplicate=True``.

        Raises:
            InstallmentNotFoundError: an id does not resolve
            InstallmentAlreadyPaidError: a target was paid by another settlement
            LoanAggregateMissingError: the owning loan is gone; nothing is written
        """
        ids = list(dict.fromkeys(installment_ids))
        if not ids:
            raise ValidationError("At least one installment id is required")
        if not payment_reference:
            raise ValidationError("payment_reference is required")

        with self.ledger.atomic():
            installments = [self.ledger.require_installment(i) for i in ids]

            loan_ids = {i.loan_id for i in installments}
            if len(loan_ids) != 1:
                raise ValidationError("A settlement must target installments of a single loan")
            loan_id = installments[0].loan_id

            already_paid = [i for i in installments if i.is_paid]
            if already_paid:
                if len(already_paid) == len(installments) and all(
                    i.payment_reference == payment_reference for i in already_paid
                ):
                    log_action(logger, "info", f"Duplicate settlement {payment_reference} ignored",
                               action="settle", loan_id=loan_id, actor=actor,
                               extra={"source": source.value, "installments": len(ids)})
                    return SettlementResult(
                        loan_id=loan_id,
                        borrower_id=installments[0].borrower_id,
                        payment_reference=payment_reference,
                        source=source,
                        installment_ids=ids,
                        amount=sum(i.total_amount for i in installments),
                        duplicate=True,
                    )
                raise InstallmentAlreadyPaidError([i.id for i in already_paid])

            loan = self.ledger.get_loan(loan_id)
            if loan is None:
                log_action(logger, "error", f"Settlement {payment_reference} references missing loan",
                           action="settle", loan_id=loan_id, actor=actor,
                           extra={"installment_ids": ids})
                raise LoanAggregateMissingError(
                    f"Loan {loan_id} for installments {', '.join(ids)} does not exist"
                )
            if not loan.is_active:
                raise InvalidLoanStateError(
                    f"Loan {loan_id} is {loan.status.value}, installments cannot be settled"
                )

            paid_at = self.clock.now()
            for installment in installments:
                installment.mark_paid(payment_reference, paid_at)
            self.ledger.save_installments(installments)

            amount = self.reconciler.apply_settlement(loan, installments)
            completed = self.reconciler.evaluate_completion(loan)
            self.ledger.save_loan(loan)

            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.INSTALLMENTS_SETTLED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "installment_ids": ids,
                        "amount": amount,
                        "payment_reference": payment_reference,
                        "source": source.value,
                    },
                    actor=actor
                )

        result = SettlementResult(
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            payment_reference=payment_reference,
            source=source,
            installment_ids=ids,
            amount=amount,
            loan_completed=completed,
        )
        log_action(logger, "info", f"Settled {result.count} installments ({amount})",
                   action="settle", loan_id=loan.id, actor=actor,
                   installment_id=ids[0] if len(ids) == 1 else None,
                   extra={"source": source.value, "reference": payment_reference,
                          "completed": completed})

        if publish:
            self.publish_settlement(result, installments)
        return result

    def publish_settlement(self, result: SettlementResult,
                           installments: Optional[List[Installment]] = None,
                           event_type: DomainEvent = DomainEvent.INSTALLMENT_PAID) -> None:
        """One event per logical settlement, plus loan.completed when it closed the loan"""
        if result.duplicate:
            return
        day_numbers = [i.day_number for i in installments] if installments else []
        self.publish_event(EventPayload(
            event_type=event_type,
            loan_id=result.loan_id,
            borrower_id=result.borrower_id,
            recipient_scope=RecipientScope.ADMIN,
            amount=result.amount,
            count=result.count,
            installment_id=result.installment_ids[0] if result.count == 1 else None,
            data={
                "source": result.source.value,
                "payment_reference": result.payment_reference,
                "installment_ids": list(result.installment_ids),
                "day_numbers": day_numbers,
            }
        ))
        if result.loan_completed:
            self.publish_event(EventPayload(
                event_type=DomainEvent.LOAN_COMPLETED,
                loan_id=result.loan_id,
                borrower_id=result.borrower_id,
                recipient_scope=RecipientScope.BORROWER,
            ))

    def settle_next_batch(
        self,
        loan_id: str,
        payment_reference: str,
        source: SettlementSource = SettlementSource.SUBSCRIPTION,
        batch_size: Optional[int] = None,
        actor: Optional[str] = None,
        publish: bool = True
    ) -> SettlementResult:
        """
        Settle the oldest unpaid installments of a loan, up to ``batch_size``.

        Idempotent on ``payment_reference``: if any installment of the loan was
        already paid under it, the earlier settlement is reported as a duplicate.
        A loan with nothing left to pay yields an empty result.
        """
        batch_size = batch_size or self.config.subscription_batch_size
        with self.ledger.atomic():
            loan = self.ledger.require_loan(loan_id)
            installments = self.ledger.get_installments(loan_id)

            previous = [i for i in installments if i.payment_reference == payment_reference]
            if previous:
                log_action(logger, "info", f"Batch {payment_reference} already applied",
                           action="settle_batch", loan_id=loan_id, actor=actor)
                return SettlementResult(
                    loan_id=loan_id,
                    borrower_id=loan.borrower_id,
                    payment_reference=payment_reference,
                    source=source,
                    installment_ids=[i.id for i in previous],
                    amount=sum(i.total_amount for i in previous),
                    duplicate=True,
                )

            batch = [i for i in installments if not i.is_paid][:batch_size]
            if not batch:
                logger.info(f"No unpaid installments left for loan {loan_id}")
                return SettlementResult(
                    loan_id=loan_id,
                    borrower_id=loan.borrower_id,
                    payment_reference=payment_reference,
                    source=source,
                )

            result = self.settle([i.id for i in batch], payment_reference, source,
                                 actor=actor, publish=False)

        if publish:
            self.publish_settlement(result, batch)
        return result

    # Entry points

    def _reference_timestamp(self) -> int:
        return int(self.clock.now().timestamp() * 1000)

    def _owned_installment(self, installment_id: str, borrower_id: Optional[str]) -> Installment:
        installment = self.ledger.require_installment(installment_id)
        if borrower_id is not None and installment.borrower_id != borrower_id:
            raise AccessDeniedError(f"Installment {installment_id} does not belong to {borrower_id}")
        return installment

    def record_gateway_order(self, installment_id: str, order_id: str,
                             borrower_id: Optional[str] = None) -> Installment:
        """Remember the gateway order raised for an installment"""
        with self.ledger.atomic():
            installment = self._owned_installment(installment_id, borrower_id)
            if installment.is_paid:
                raise InstallmentAlreadyPaidError([installment_id])
            installment.gateway_order_id = order_id
            self.ledger.save_installment(installment)
        return installment

    def _check_gateway_order(self, installment: Installment, order_id: str) -> None:
        if installment.gateway_order_id and installment.gateway_order_id != order_id:
            log_action(logger, "warning", f"Payment for order {order_id} does not match installment order",
                       action="verify_payment", loan_id=installment.loan_id,
                       installment_id=installment.id,
                       extra={"expected_order": installment.gateway_order_id, "order_id": order_id})
            raise ValidationError(
                f"Order {order_id} was not raised for installment {installment.id}"
            )

    def verify_gateway_payment(self, installment_id: str, order_id: str, payment_id: str,
                               signature: str, borrower_id: Optional[str] = None) -> SettlementResult:
        """
        Settle one installment after checking the gateway's payment signature.

        When an order was recorded for the installment, the signed order must
        be that order.
        """
        self.verifier.verify_payment(order_id, payment_id, signature)
        with self.ledger.atomic():
            installment = self._owned_installment(installment_id, borrower_id)
            self._check_gateway_order(installment, order_id)
            result = self.settle([installment_id], payment_id, SettlementSource.GATEWAY,
                                 actor=borrower_id or "gateway", publish=False)
        self.publish_settlement(result, [installment])
        return result

    def simulate_payment(self, installment_id: str, borrower_id: str) -> SettlementResult:
        """Settle one installment without a gateway, for test deployments"""
        if not self.config.simulation_enabled:
            raise ConfigurationError("Payment simulation is disabled")
        if self._owned_installment(installment_id, borrower_id).is_paid:
            raise InstallmentAlreadyPaidError([installment_id])
        reference = f"sim_{self._reference_timestamp()}"
        return self.settle([installment_id], reference, SettlementSource.SIMULATED, actor=borrower_id)

    def admin_mark_paid(self, installment_id: str, admin_id: str) -> SettlementResult:
        """Operator override; an already-paid installment is rejected"""
        if self.ledger.require_installment(installment_id).is_paid:
            raise InstallmentAlreadyPaidError([installment_id])
        reference = f"admin_{admin_id}_{self._reference_timestamp()}"
        return self.settle([installment_id], reference, SettlementSource.ADMIN, actor=admin_id)

    def settle_subscription_charge(self, loan_id: str, payment_id: str) -> SettlementResult:
        """Apply one recurring charge: up to a week of installments, oldest first"""
        return self.settle_next_batch(
            loan_id, payment_id, SettlementSource.SUBSCRIPTION,
            batch_size=self.config.subscription_batch_size, actor="gateway"
        )

    def pay_multiple(
        self,
        installment_ids: Sequence[str],
        borrower_id: str,
        payment_reference: Optional[str] = None,
        order_id: Optional[str] = None,
        signature: Optional[str] = None
    ) -> SettlementResult:
        """
        Settle a caller-chosen set of the borrower's installments together.

        When ``order_id`` is given the payment signature is verified first.
        """
        if not installment_ids:
            raise ValidationError("At least one installment id is required")
        if order_id is not None:
            if not payment_reference:
                raise ValidationError("payment_reference is required with order_id")
            self.verifier.verify_payment(order_id, payment_reference, signature)
        reference = payment_reference or f"multi_{uuid.uuid4().hex[:12]}"
        with self.ledger.atomic():
            installments = [self._owned_installment(i, borrower_id)
                            for i in dict.fromkeys(installment_ids)]
            if order_id is not None:
                for installment in installments:
                    self._check_gateway_order(installment, order_id)
            result = self.settle(list(installment_ids), reference, SettlementSource.GATEWAY,
                                 actor=borrower_id, publish=False)
        self.publish_settlement(result, installments)
        return result
