"""
Event System Module

Publish/subscribe dispatcher for ledger domain events. Ledger components publish
after their transaction commits; subscribers (the notification emitter, metrics,
tests) can never fail or roll back the operation that produced the event.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events produced by the ledger"""

    # Loan lifecycle
    LOAN_REQUESTED = "loan.requested"
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    LOAN_COMPLETED = "loan.completed"

    # Installments
    INSTALLMENT_PAID = "installment.paid"
    INSTALLMENTS_OVERDUE = "installment.overdue"
    INSTALLMENT_DUE_TODAY = "installment.due_today"

    # Autopay
    AUTOPAY_ACTIVATED = "autopay.activated"
    AUTOPAY_CANCELLED = "autopay.cancelled"


class RecipientScope(Enum):
    """Who an event is addressed to"""
    ADMIN = "admin"
    BORROWER = "borrower"


@dataclass
class EventPayload:
    """
    Structured ledger event.

    ``amount`` and ``count`` are aggregated per logical operation: one batch
    settlement of seven installments is a single event with count=7.
    """
    event_type: DomainEvent
    loan_id: str
    borrower_id: str
    recipient_scope: RecipientScope
    amount: int = 0
    count: int = 0
    installment_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'loan_id': self.loan_id,
            'borrower_id': self.borrower_id,
            'recipient_scope': self.recipient_scope.value,
            'amount': self.amount,
            'count': self.count,
            'installment_id': self.installment_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        timestamp = data['timestamp']
        return cls(
            event_type=DomainEvent(data['event_type']),
            loan_id=data['loan_id'],
            borrower_id=data['borrower_id'],
            recipient_scope=RecipientScope(data['recipient_scope']),
            amount=data.get('amount', 0),
            count=data.get('count', 0),
            installment_id=data.get('installment_id'),
            data=data.get('data', {}),
            timestamp=datetime.fromisoformat(timestamp) if isinstance(timestamp, str) else timestamp,
            event_id=data['event_id']
        )


class EventDispatcher:
    """Central event dispatcher - publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("emi_ledger.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def unsubscribe_all(self, handler: Callable) -> None:
        """Remove a catch-all handler"""
        with self._lock:
            try:
                self._global_handlers.remove(handler)
            except ValueError:
                self.logger.warning(f"Global handler {_handler_name(handler)} was not subscribed")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers; handler failures are logged, never raised"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing {event.event_type.value} for loan {event.loan_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}",
                    exc_info=True
                )

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventPublisherMixin:
    """Mixin for ledger components that publish events after commit"""

    events: Optional[EventDispatcher] = None

    def publish_event(self, event: EventPayload) -> None:
        if self.events is None:
            return
        try:
            self.events.publish(event)
        except Exception as e:
            logging.getLogger("emi_ledger.events").error(
                f"Dropping {event.event_type.value} for loan {event.loan_id}: {e}"
            )
