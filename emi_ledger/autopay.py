"""
Autopay Module

Recurring-billing sub-state of a loan. A subscription charges a week of
installments at a time; the mandate payment that activates it settles the first
batch, and every later charge arrives through the subscription webhook.
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional, Any

from .ledger import InstallmentLedger
from .payments import PaymentApplier, SettlementResult, SettlementSource
from .gateway import GatewaySignatureVerifier
from .models import Loan, AutopayStatus, AUTOPAY_TRANSITIONS
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, EventPublisherMixin, EventPayload, DomainEvent, RecipientScope
from .config import LedgerConfig, get_config
from .exceptions import AccessDeniedError, AutopayStateError, InvalidLoanStateError
from .logging_config import get_logger, log_action


logger = get_logger("emi_ledger.autopay")


@dataclass
class AutopayPlan:
    """Billing plan handed to the gateway when a subscription is created"""
    loan_id: str
    subscription_id: str
    customer_id: Optional[str]
    charge_amount: int          # one charge covers batch_size installments
    batch_size: int
    interval_days: int
    billing_cycles: int
    unpaid_installments: int


class AutopayManager(EventPublisherMixin):
    """Drives the autopay state machine of loans"""

    def __init__(
        self,
        ledger: InstallmentLedger,
        payments: PaymentApplier,
        verifier: Optional[GatewaySignatureVerifier] = None,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.ledger = ledger
        self.payments = payments
        self.config = config or get_config()
        self.verifier = verifier or payments.verifier
        self.audit_trail = audit_trail
        self.events = events

    def _owned_loan(self, loan_id: str, borrower_id: Optional[str]) -> Loan:
        loan = self.ledger.require_loan(loan_id)
        if borrower_id is not None and loan.borrower_id != borrower_id:
            raise AccessDeniedError(f"Loan {loan_id} does not belong to {borrower_id}")
        return loan

    def _audit(self, loan: Loan, previous: AutopayStatus, actor: Optional[str], **metadata) -> None:
        if self.audit_trail:
            metadata.update({
                "from": previous.value,
                "to": loan.autopay_status.value,
                "subscription_id": loan.subscription_id,
            })
            self.audit_trail.log_event(
                AuditEventType.AUTOPAY_CHANGED,
                entity_type="loan",
                entity_id=loan.id,
                metadata=metadata,
                actor=actor
            )

    def request_autopay(self, loan_id: str, borrower_id: Optional[str], subscription_id: str,
                        customer_id: Optional[str] = None) -> AutopayPlan:
        """
        Record a newly created subscription and move autopay to pending.

        Returns:
            The plan the subscription must be created with
        """
        batch_size = self.config.subscription_batch_size
        with self.ledger.atomic():
            loan = self._owned_loan(loan_id, borrower_id)
            if not loan.is_active:
                raise InvalidLoanStateError(f"Loan {loan_id} is {loan.status.value}, autopay needs an approved loan")
            if loan.autopay_status == AutopayStatus.ACTIVE:
                raise AutopayStateError(f"Autopay is already active for loan {loan_id}")

            unpaid = self.ledger.count_unpaid(loan_id)
            if unpaid == 0:
                raise InvalidLoanStateError(f"Loan {loan_id} has no unpaid installments")

            previous = loan.autopay_status
            # A pending request may be replaced by a fresh subscription
            if previous != AutopayStatus.PENDING:
                loan.transition_autopay(AutopayStatus.PENDING)
            loan.subscription_id = subscription_id
            if customer_id:
                loan.gateway_customer_id = customer_id
            self.ledger.save_loan(loan)
            self._audit(loan, previous, borrower_id)

        plan = AutopayPlan(
            loan_id=loan.id,
            subscription_id=subscription_id,
            customer_id=loan.gateway_customer_id,
            charge_amount=loan.daily_installment * batch_size,
            batch_size=batch_size,
            interval_days=self.config.subscription_interval_days,
            billing_cycles=math.ceil(unpaid / batch_size),
            unpaid_installments=unpaid,
        )
        log_action(logger, "info", f"Autopay requested for loan {loan_id}", action="request_autopay",
                   loan_id=loan_id, actor=borrower_id,
                   extra={"subscription_id": subscription_id, "billing_cycles": plan.billing_cycles})
        return plan

    def activate_autopay(self, loan_id: str, subscription_id: str, payment_id: str,
                         signature: str, borrower_id: Optional[str] = None) -> SettlementResult:
        """
        Confirm the mandate and settle the first batch with its payment.

        Re-delivery with the same payment id returns the earlier settlement
        as a duplicate.
        """
        self.verifier.verify_subscription(payment_id, subscription_id, signature)

        with self.ledger.atomic():
            loan = self._owned_loan(loan_id, borrower_id)
            if loan.subscription_id and loan.subscription_id != subscription_id:
                raise AutopayStateError(
                    f"Subscription {subscription_id} does not match loan {loan_id}"
                )

            if loan.autopay_status == AutopayStatus.ACTIVE:
                if not any(i.payment_reference == payment_id for i in self.ledger.get_installments(loan_id)):
                    raise AutopayStateError(f"Autopay is already active for loan {loan_id}")
                return self.payments.settle_next_batch(
                    loan_id, payment_id, SettlementSource.AUTOPAY_ACTIVATION,
                    actor=borrower_id, publish=False
                )

            previous = loan.autopay_status
            loan.transition_autopay(AutopayStatus.ACTIVE)
            loan.subscription_id = subscription_id
            self.ledger.save_loan(loan)
            self._audit(loan, previous, borrower_id, payment_id=payment_id)

            result = self.payments.settle_next_batch(
                loan_id, payment_id, SettlementSource.AUTOPAY_ACTIVATION,
                batch_size=self.config.subscription_batch_size,
                actor=borrower_id, publish=False
            )

        log_action(logger, "info", f"Autopay activated for loan {loan_id}", action="activate_autopay",
                   loan_id=loan_id, actor=borrower_id,
                   extra={"settled": result.count, "amount": result.amount})
        self.payments.publish_settlement(result, event_type=DomainEvent.AUTOPAY_ACTIVATED)
        return result

    def _change(self, loan_id: str, target: AutopayStatus, borrower_id: Optional[str]) -> Loan:
        with self.ledger.atomic():
            loan = self._owned_loan(loan_id, borrower_id)
            if target == AutopayStatus.CANCELLED and not loan.subscription_id:
                raise AutopayStateError(f"Loan {loan_id} has no autopay subscription")
            previous = loan.autopay_status
            loan.transition_autopay(target)
            self.ledger.save_loan(loan)
            self._audit(loan, previous, borrower_id)

        log_action(logger, "info", f"Autopay for loan {loan_id} is now {target.value}",
                   action="change_autopay", loan_id=loan_id, actor=borrower_id)
        return loan

    def pause_autopay(self, loan_id: str, borrower_id: Optional[str] = None) -> Loan:
        return self._change(loan_id, AutopayStatus.PAUSED, borrower_id)

    def resume_autopay(self, loan_id: str, borrower_id: Optional[str] = None) -> Loan:
        return self._change(loan_id, AutopayStatus.ACTIVE, borrower_id)

    def cancel_autopay(self, loan_id: str, borrower_id: Optional[str] = None) -> Loan:
        loan = self._change(loan_id, AutopayStatus.CANCELLED, borrower_id)
        self._publish_cancelled(loan)
        return loan

    def handle_subscription_cancelled(self, loan_id: str, subscription_id: Optional[str] = None) -> bool:
        """
        Apply a gateway-side cancellation.

        Returns:
            True when the loan's autopay state changed
        """
        with self.ledger.atomic():
            loan = self.ledger.get_loan(loan_id)
            if loan is None:
                logger.warning(f"Subscription cancelled for unknown loan {loan_id}")
                return False
            if AutopayStatus.CANCELLED not in AUTOPAY_TRANSITIONS[loan.autopay_status]:
                logger.info(f"Ignoring subscription cancellation for loan {loan_id} "
                            f"in autopay state {loan.autopay_status.value}")
                return False
            if subscription_id and loan.subscription_id and subscription_id != loan.subscription_id:
                logger.info(f"Ignoring cancellation of stale subscription {subscription_id} for loan {loan_id}")
                return False

            previous = loan.autopay_status
            loan.transition_autopay(AutopayStatus.CANCELLED)
            self.ledger.save_loan(loan)
            self._audit(loan, previous, "gateway")

        log_action(logger, "info", f"Autopay cancelled by gateway for loan {loan_id}",
                   action="change_autopay", loan_id=loan_id, actor="gateway")
        self._publish_cancelled(loan)
        return True

    def _publish_cancelled(self, loan: Loan) -> None:
        self.publish_event(EventPayload(
            event_type=DomainEvent.AUTOPAY_CANCELLED,
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            recipient_scope=RecipientScope.ADMIN,
            data={"subscription_id": loan.subscription_id}
        ))

    def autopay_status(self, loan_id: str, borrower_id: Optional[str] = None) -> Dict[str, Any]:
        loan = self._owned_loan(loan_id, borrower_id)
        return {
            "loan_id": loan.id,
            "autopay_enabled": loan.autopay_enabled,
            "autopay_status": loan.autopay_status.value,
            "subscription_id": loan.subscription_id,
            "customer_id": loan.gateway_customer_id,
            "unpaid_installments": self.ledger.count_unpaid(loan.id),
        }
