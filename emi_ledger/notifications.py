"""
Notification Emitter Module

Turns ledger domain events into persisted notifications and hands them to a
broadcaster (push relay, socket gateway, log). Delivery runs on a background
executor; a failed delivery is logged and never reaches the ledger operation
that produced the event.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Any

import requests

from .storage import StorageInterface, StorageRecord
from .events import EventDispatcher, EventPayload, DomainEvent, RecipientScope
from .clock import Clock, SystemClock
from .exceptions import NotificationDeliveryError
from .logging_config import get_logger, log_action


logger = get_logger("emi_ledger.notifications")


class NotificationType(Enum):
    """Kinds of notification shown to borrowers and operators"""
    LOAN_REQUEST = "loan_request"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_COMPLETED = "loan_completed"
    EMI_PAID = "emi_paid"
    EMI_PENDING_TODAY = "emi_pending_today"
    EMI_OVERDUE = "emi_overdue"
    AUTOPAY_CANCELLED = "autopay_cancelled"


class NotificationFilter(Enum):
    PAID = "paid"
    PENDING = "pending"


_FILTER_TYPES = {
    (NotificationFilter.PAID, RecipientScope.BORROWER): {NotificationType.EMI_PAID},
    (NotificationFilter.PAID, RecipientScope.ADMIN): {NotificationType.EMI_PAID},
    (NotificationFilter.PENDING, RecipientScope.BORROWER): {
        NotificationType.EMI_PENDING_TODAY, NotificationType.EMI_OVERDUE,
    },
    (NotificationFilter.PENDING, RecipientScope.ADMIN): {
        NotificationType.LOAN_REQUEST, NotificationType.EMI_PENDING_TODAY, NotificationType.EMI_OVERDUE,
    },
}


@dataclass
class Notification(StorageRecord):
    """Persisted notification derived from one domain event"""
    notification_type: NotificationType
    recipient_scope: RecipientScope
    borrower_id: str
    loan_id: str
    title: str
    body: str
    installment_id: Optional[str] = None
    amount: int = 0
    count: int = 0
    read: bool = False
    event_id: Optional[str] = None

    @property
    def for_admin(self) -> bool:
        return self.recipient_scope == RecipientScope.ADMIN

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        data = dict(data)
        data['notification_type'] = NotificationType(data['notification_type'])
        data['recipient_scope'] = RecipientScope(data['recipient_scope'])
        return super().from_dict(data)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def render(event: EventPayload) -> Optional[Dict[str, Any]]:
    """Notification type, title and body for an event; None for events that notify nobody"""
    data = event.data or {}
    amount = f"{event.amount:,}"

    if event.event_type == DomainEvent.LOAN_REQUESTED:
        return {
            'type': NotificationType.LOAN_REQUEST,
            'title': "New Loan Request",
            'body': f"{data.get('applicant_name', 'A borrower')} applied for {amount}",
        }
    if event.event_type == DomainEvent.LOAN_APPROVED:
        return {
            'type': NotificationType.LOAN_APPROVED,
            'title': "Loan Approved",
            'body': f"Your loan of {amount} has been approved.",
        }
    if event.event_type == DomainEvent.LOAN_REJECTED:
        reason = data.get('reason')
        return {
            'type': NotificationType.LOAN_REJECTED,
            'title': "Loan Rejected",
            'body': f"Your loan application was rejected{': ' + reason if reason else '.'}",
        }
    if event.event_type == DomainEvent.LOAN_COMPLETED:
        return {
            'type': NotificationType.LOAN_COMPLETED,
            'title': "Loan Completed",
            'body': "All installments are paid. Your loan is closed.",
        }
    if event.event_type == DomainEvent.INSTALLMENT_PAID:
        source = data.get('source', 'gateway')
        return {
            'type': NotificationType.EMI_PAID,
            'title': "EMI Marked Paid (Admin)" if source == 'admin' else "EMI Paid",
            'body': f"{_plural(event.count, 'installment')} paid, {amount} collected ({source}).",
        }
    if event.event_type == DomainEvent.AUTOPAY_ACTIVATED:
        return {
            'type': NotificationType.EMI_PAID,
            'title': "Autopay Activated",
            'body': f"Autopay set up and {amount} collected for {_plural(event.count, 'installment')}.",
        }
    if event.event_type == DomainEvent.INSTALLMENTS_OVERDUE:
        return {
            'type': NotificationType.EMI_OVERDUE,
            'title': "EMI Overdue",
            'body': f"{_plural(event.count, 'installment')} overdue. Penalty increased by {amount}.",
        }
    if event.event_type == DomainEvent.INSTALLMENT_DUE_TODAY:
        return {
            'type': NotificationType.EMI_PENDING_TODAY,
            'title': "EMI Due Today",
            'body': f"{_plural(event.count, 'installment')} of {amount} due today.",
        }
    if event.event_type == DomainEvent.AUTOPAY_CANCELLED:
        subscription_id = data.get('subscription_id')
        return {
            'type': NotificationType.AUTOPAY_CANCELLED,
            'title': "Autopay Cancelled",
            'body': f"Autopay subscription {subscription_id} was cancelled." if subscription_id
                    else "Autopay subscription was cancelled.",
        }
    return None


class Broadcaster(ABC):
    """Outbound delivery capability"""

    @abstractmethod
    def send(self, notification: Notification) -> None:
        """Deliver or raise NotificationDeliveryError"""
        pass


class LogBroadcaster(Broadcaster):
    """Writes notifications to the log instead of delivering them"""

    def __init__(self, log=None):
        self.logger = log or logger

    def send(self, notification: Notification) -> None:
        audience = "admin" if notification.for_admin else f"borrower {notification.borrower_id}"
        self.logger.info(f"Notification to {audience}: {notification.title} | {notification.body[:100]}")


class HttpRelayBroadcaster(Broadcaster):
    """POSTs notifications as JSON to a relay (push/socket gateway)"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "for_admin": notification.for_admin,
            "borrower_id": notification.borrower_id,
            "loan_id": notification.loan_id,
            "installment_id": notification.installment_id,
            "title": notification.title,
            "body": notification.body,
            "amount": notification.amount,
            "timestamp": notification.created_at.isoformat(),
        }
        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            raise NotificationDeliveryError(f"Relay request failed: {e}") from e
        if response.status_code >= 300:
            raise NotificationDeliveryError(f"Relay returned HTTP {response.status_code}")


class NotificationEmitter:
    """
    Persists one notification per domain event and broadcasts it.

    Broadcasting always happens on the background executor, never on the
    publishing thread. Notifications emitted before ``start()`` wait in a
    queue and are handed to the executor when it starts.
    """

    notifications_table = "notifications"

    def __init__(self, storage: StorageInterface, broadcaster: Optional[Broadcaster] = None,
                 clock: Optional[Clock] = None, max_workers: int = 2):
        self.storage = storage
        self.broadcaster = broadcaster or LogBroadcaster()
        self.clock = clock or SystemClock()
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._dispatcher: Optional[EventDispatcher] = None
        self._pending: List[Notification] = []
        self._lock = threading.Lock()

    # Lifecycle

    def attach(self, dispatcher: EventDispatcher) -> None:
        dispatcher.subscribe_all(self.handle_event)
        self._dispatcher = dispatcher

    def detach(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.unsubscribe_all(self.handle_event)
            self._dispatcher = None

    def start(self) -> None:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                                    thread_name_prefix="notify")
            pending, self._pending = self._pending, []
            for notification in pending:
                self._executor.submit(self._deliver, notification)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    @property
    def pending_count(self) -> int:
        """Notifications waiting for ``start()``"""
        with self._lock:
            return len(self._pending)

    # Emission

    def handle_event(self, event: EventPayload) -> Optional[Notification]:
        rendered = render(event)
        if rendered is None:
            return None

        now = self.clock.now()
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            notification_type=rendered['type'],
            recipient_scope=event.recipient_scope,
            borrower_id=event.borrower_id,
            loan_id=event.loan_id,
            title=rendered['title'],
            body=rendered['body'],
            installment_id=event.installment_id,
            amount=event.amount,
            count=event.count,
            event_id=event.event_id,
        )
        self.storage.save(self.notifications_table, notification.id, notification.to_dict())

        with self._lock:
            if self._executor is not None:
                self._executor.submit(self._deliver, notification)
            else:
                self._pending.append(notification)
        return notification

    def _deliver(self, notification: Notification) -> bool:
        try:
            self.broadcaster.send(notification)
            return True
        except Exception as e:
            log_action(logger, "warning", f"Notification delivery failed: {e}", action="notify",
                       loan_id=notification.loan_id, extra={"notification_id": notification.id})
            return False

    # Queries

    def _list(self, filters: Dict[str, Any], scope: RecipientScope,
              notification_filter: Optional[NotificationFilter], limit: int) -> List[Notification]:
        notifications = [
            Notification.from_dict(data)
            for data in self.storage.find(self.notifications_table, filters)
        ]
        if notification_filter is not None:
            wanted = _FILTER_TYPES[(NotificationFilter(notification_filter), scope)]
            notifications = [n for n in notifications if n.notification_type in wanted]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit]

    def list_for_borrower(self, borrower_id: str,
                          notification_filter: Optional[NotificationFilter] = None,
                          limit: int = 50) -> List[Notification]:
        filters = {"recipient_scope": RecipientScope.BORROWER.value, "borrower_id": borrower_id}
        return self._list(filters, RecipientScope.BORROWER, notification_filter, limit)

    def list_for_admin(self, notification_filter: Optional[NotificationFilter] = None,
                       limit: int = 50) -> List[Notification]:
        filters = {"recipient_scope": RecipientScope.ADMIN.value}
        return self._list(filters, RecipientScope.ADMIN, notification_filter, limit)

    def unread_count(self, scope: RecipientScope, borrower_id: Optional[str] = None) -> int:
        filters: Dict[str, Any] = {"recipient_scope": scope.value, "read": False}
        if scope == RecipientScope.BORROWER:
            filters["borrower_id"] = borrower_id
        return len(self.storage.find(self.notifications_table, filters))

    def mark_read(self, notification_id: str) -> bool:
        data = self.storage.load(self.notifications_table, notification_id)
        if not data:
            return False
        notification = Notification.from_dict(data)
        if not notification.read:
            notification.read = True
            notification.updated_at = self.clock.now()
            self.storage.save(self.notifications_table, notification.id, notification.to_dict())
        return True

    def mark_all_read(self, scope: RecipientScope, borrower_id: Optional[str] = None) -> int:
        filters: Dict[str, Any] = {"recipient_scope": scope.value, "read": False}
        if scope == RecipientScope.BORROWER:
            filters["borrower_id"] = borrower_id
        marked = 0
        with self.storage.atomic():
            for data in self.storage.find(self.notifications_table, filters):
                if self.mark_read(data['id']):
                    marked += 1
        return marked
