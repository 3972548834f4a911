"""
Payment Gateway Contract Module

HMAC-SHA256 signature checks for gateway callbacks and the webhook payload
contract. Nothing here talks to the gateway; order and subscription creation
stay with the caller.

Canonical strings:
    payment verification   ``order_id|payment_id``         key secret
    mandate verification   ``payment_id|subscription_id``  key secret
    webhook                raw request body                 webhook secret
"""

import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Dict, Optional, Any, Union

from pydantic import BaseModel, Field, field_validator, ValidationError as PydanticValidationError

from .exceptions import SignatureVerificationError, ConfigurationError, ValidationError, NotFoundError
from .logging_config import get_logger, log_action


logger = get_logger("emi_ledger.gateway")


def compute_signature(secret: str, message: Union[str, bytes]) -> str:
    """Lowercase hex HMAC-SHA256 of ``message`` under ``secret``"""
    if isinstance(message, str):
        message = message.encode('utf-8')
    return hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()


class GatewaySignatureVerifier:
    """Verifies gateway signatures with constant-time comparison"""

    def __init__(self, key_secret: str = "", webhook_secret: str = ""):
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret

    @staticmethod
    def _verify(secret: str, message: Union[str, bytes], signature: Optional[str], what: str) -> None:
        if not signature:
            raise SignatureVerificationError(f"Missing {what} signature")
        expected = compute_signature(secret, message)
        if not hmac.compare_digest(expected.encode('utf-8'), signature.encode('utf-8')):
            log_action(logger, "warning", f"Rejected {what} signature", action="verify_signature",
                       extra={"kind": what})
            raise SignatureVerificationError(f"Invalid {what} signature")

    def _require(self, secret: str, name: str) -> str:
        if not secret:
            raise ConfigurationError(f"Gateway {name} is not configured")
        return secret

    def verify_payment(self, order_id: str, payment_id: str, signature: str) -> None:
        secret = self._require(self.key_secret, "key secret")
        self._verify(secret, f"{order_id}|{payment_id}", signature, "payment")

    def verify_subscription(self, payment_id: str, subscription_id: str, signature: str) -> None:
        secret = self._require(self.key_secret, "key secret")
        self._verify(secret, f"{payment_id}|{subscription_id}", signature, "subscription")

    def verify_webhook(self, raw_body: bytes, signature: str) -> None:
        secret = self._require(self.webhook_secret, "webhook secret")
        self._verify(secret, raw_body, signature, "webhook")


# Webhook payload contract

class SubscriptionEntity(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('notes', mode='before')
    @classmethod
    def _empty_notes(cls, value):
        # The gateway sends [] when a subscription has no notes
        return value or {}

    @property
    def loan_id(self) -> Optional[str]:
        return self.notes.get('loanId') or self.notes.get('loan_id')


class PaymentEntity(BaseModel):
    id: str
    amount: int = 0  # minor units (paise)
    status: Optional[str] = None

    @property
    def amount_major(self) -> int:
        return self.amount // 100


class SubscriptionWrapper(BaseModel):
    entity: SubscriptionEntity


class PaymentWrapper(BaseModel):
    entity: PaymentEntity


class WebhookBody(BaseModel):
    subscription: Optional[SubscriptionWrapper] = None
    payment: Optional[PaymentWrapper] = None


class WebhookEnvelope(BaseModel):
    event: str
    payload: WebhookBody = Field(default_factory=WebhookBody)


@dataclass
class WebhookResult:
    """Outcome of one webhook delivery"""
    event: str
    handled: bool
    loan_id: Optional[str] = None
    settled_count: int = 0
    duplicate: bool = False
    detail: str = ""


class WebhookProcessor:
    """
    Verifies and dispatches gateway webhooks.

    The signature is checked against the raw body before anything is parsed or
    mutated.
    """

    def __init__(self, verifier: GatewaySignatureVerifier, payments, autopay):
        self.verifier = verifier
        self.payments = payments
        self.autopay = autopay

    @staticmethod
    def parse(raw_body: bytes) -> WebhookEnvelope:
        try:
            return WebhookEnvelope.model_validate(json.loads(raw_body))
        except (ValueError, PydanticValidationError) as e:
            raise ValidationError(f"Malformed webhook payload: {e}") from e

    def handle(self, raw_body: bytes, signature: str) -> WebhookResult:
        if isinstance(raw_body, str):
            raw_body = raw_body.encode('utf-8')
        self.verifier.verify_webhook(raw_body, signature)
        envelope = self.parse(raw_body)

        log_action(logger, "info", f"Webhook {envelope.event} received", action="webhook",
                   actor="gateway")

        if envelope.event == "subscription.charged":
            return self._subscription_charged(envelope)
        if envelope.event == "subscription.cancelled":
            return self._subscription_cancelled(envelope)
        if envelope.event == "payment.captured":
            payment = envelope.payload.payment
            log_action(logger, "info", "Payment captured", action="webhook", actor="gateway",
                       extra={"payment_id": payment.entity.id if payment else None})
            return WebhookResult(event=envelope.event, handled=True, detail="logged")

        logger.info(f"Unhandled webhook event: {envelope.event}")
        return WebhookResult(event=envelope.event, handled=False, detail="unhandled event")

    def _subscription_charged(self, envelope: WebhookEnvelope) -> WebhookResult:
        subscription = envelope.payload.subscription
        payment = envelope.payload.payment
        if subscription is None or payment is None:
            raise ValidationError("subscription.charged payload needs subscription and payment entities")

        loan_id = subscription.entity.loan_id
        if not loan_id:
            logger.error("subscription.charged without loanId in subscription notes")
            return WebhookResult(event=envelope.event, handled=False, detail="missing loanId")

        try:
            result = self.payments.settle_subscription_charge(loan_id, payment.entity.id)
        except NotFoundError:
            log_action(logger, "error", f"subscription.charged for unknown loan {loan_id}",
                       action="webhook", loan_id=loan_id, actor="gateway")
            return WebhookResult(event=envelope.event, handled=False, loan_id=loan_id,
                                 detail="unknown loan")
        log_action(logger, "info", f"Subscription charge settled {result.count} installments",
                   action="webhook", loan_id=loan_id, actor="gateway",
                   extra={"payment_id": payment.entity.id, "charged": payment.entity.amount_major,
                          "settled": result.amount, "duplicate": result.duplicate})
        return WebhookResult(
            event=envelope.event,
            handled=True,
            loan_id=loan_id,
            settled_count=result.count,
            duplicate=result.duplicate,
        )

    def _subscription_cancelled(self, envelope: WebhookEnvelope) -> WebhookResult:
        subscription = envelope.payload.subscription
        loan_id = subscription.entity.loan_id if subscription else None
        if not loan_id:
            return WebhookResult(event=envelope.event, handled=False, detail="missing loanId")
        self.autopay.handle_subscription_cancelled(loan_id, subscription.entity.id)
        return WebhookResult(event=envelope.event, handled=True, loan_id=loan_id)
